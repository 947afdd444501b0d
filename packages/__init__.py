"""Shared data layer packages."""

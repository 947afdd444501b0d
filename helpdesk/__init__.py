"""Helpdesk ticket service."""

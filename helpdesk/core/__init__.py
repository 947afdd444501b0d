"""Configuration and observability helpers."""

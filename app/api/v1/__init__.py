"""API v1 module."""

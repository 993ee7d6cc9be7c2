"""Shared errors, configuration and device helpers."""

"""Ambient utilities: logging, errors, configuration."""

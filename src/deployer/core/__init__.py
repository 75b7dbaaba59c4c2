"""Errors, logging and settings."""

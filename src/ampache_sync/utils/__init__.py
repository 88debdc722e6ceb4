"""Logging and error reporting helpers."""

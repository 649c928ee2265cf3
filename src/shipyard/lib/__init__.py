"""Shared utilities: error hierarchy and logging configuration."""

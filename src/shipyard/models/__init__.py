"""Data models for Shipyard."""

"""Command line interface for Shipyard."""

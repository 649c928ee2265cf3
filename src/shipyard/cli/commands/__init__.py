"""Shipyard CLI subcommands."""

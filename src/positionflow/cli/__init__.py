"""Command-line interface for positionflow."""

"""Command-line tools for running the gateway."""

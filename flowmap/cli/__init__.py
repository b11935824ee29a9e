"""Command line entrypoint package."""

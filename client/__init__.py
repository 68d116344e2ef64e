"""Command-line chat client and local key storage."""

"""Key directory and message relay server."""

"""API-key authentication for external applications."""

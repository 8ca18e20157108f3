"""Command-line client for a running Herald service."""

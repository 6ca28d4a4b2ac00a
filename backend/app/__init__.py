"""Market data fan-out proxy application."""

"""Room management endpoints (membership-mutating path, pins, files)."""

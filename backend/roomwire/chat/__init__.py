"""WebSocket entry point of the realtime core."""

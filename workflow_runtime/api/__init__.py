"""HTTP and WebSocket surface of the workflow runtime."""

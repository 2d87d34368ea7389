"""HTTP and SSE surface of the relay."""

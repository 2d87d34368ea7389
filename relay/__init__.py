"""agent-relay: HTTP/SSE front for long-running Claude agent processes."""

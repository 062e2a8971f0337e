"""HTTP transport, endpoint addressing and retry policies."""

"""Contest voting HTTP API."""

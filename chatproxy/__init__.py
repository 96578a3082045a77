"""Chat proxy with tool-augmented completions and per-user session storage."""

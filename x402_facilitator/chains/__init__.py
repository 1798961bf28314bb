"""Per-family settlement adapters and the shared confirmation poller."""

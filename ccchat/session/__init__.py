"""Per-sender conversation sessions."""

"""Runtime counters and the read-only stats endpoint."""

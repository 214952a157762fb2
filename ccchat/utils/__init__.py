"""Small helpers shared by the relay."""

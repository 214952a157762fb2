"""Inbound message types."""

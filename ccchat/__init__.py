"""ccchat - relay Signal conversations to a long-running Claude assistant."""

__version__ = "0.1.0"

"""Luna — a conversational eldercare assistant."""

__version__ = "0.1.0"

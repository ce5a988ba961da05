"""One-way sync of birthday records into Google Calendar."""

__version__ = "0.1.0"

"""RelayChat: multi-room real-time chat client core and message relay."""

__version__ = "0.1.0"

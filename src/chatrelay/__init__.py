"""chatrelay: persist chats and stream AI responses to the browser."""

__version__ = "0.1.0"

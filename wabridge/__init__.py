"""WhatsApp Web bridge with supervised headless browser lifecycle."""

__version__ = "0.1.0"

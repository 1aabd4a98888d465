"""matchdesk - review queue controller for product matching results."""

__version__ = "0.1.0"

"""External service clients for matchdesk."""

from .backend import HttpReviewBackend, ReviewBackend

__all__ = ["HttpReviewBackend", "ReviewBackend"]

"""Local persistent mirror of the remote record collection."""

from .local_store import LocalStore

__all__ = ["LocalStore"]

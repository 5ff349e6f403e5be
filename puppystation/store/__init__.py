"""Station state: the Store (single writer) and the Projection Reader."""

from puppystation.store.reader import ProjectionReader
from puppystation.store.store import Store

__all__ = ["ProjectionReader", "Store"]

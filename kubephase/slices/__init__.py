"""ObjectSlice storage: content-addressed naming, CRUD and chunking."""

from kubephase.slices.chunking import (
    BinpackChunker,
    ChunkingStrategy,
    EachObjectChunker,
    NoOpChunker,
    chunker_for,
)
from kubephase.slices.hashing import name_for
from kubephase.slices.store import SliceCollisionError, SliceNotFoundError, SliceStore

__all__ = [
    "BinpackChunker",
    "ChunkingStrategy",
    "EachObjectChunker",
    "NoOpChunker",
    "SliceCollisionError",
    "SliceNotFoundError",
    "SliceStore",
    "chunker_for",
    "name_for",
]

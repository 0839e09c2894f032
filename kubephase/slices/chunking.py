"""Chunking strategies: which phase objects move out of line into slices.

A strategy maps phase names to ordered chunks of that phase's inline
objects.  Each chunk becomes one ObjectSlice; phases without chunks stay
inline.  Chunks of a phase together hold all of its inline objects in their
original order, so expanding the revision reproduces the template exactly.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from kubephase.models.api import CHUNKING_STRATEGY_ANNOTATION, ObjectSetObject, TemplatePhase
from kubephase.models.objects import Object, annotations_of
from kubephase.slices.hashing import canonical_json

Chunks = dict[str, list[list[ObjectSetObject]]]

DEFAULT_THRESHOLD_BYTES = 800_000


def object_size(obj: ObjectSetObject) -> int:
    return len(canonical_json(obj.to_dict()))


def phase_size(phase: TemplatePhase) -> int:
    return sum(object_size(o) for o in phase.objects)


class ChunkingStrategy(ABC):
    """Decides how a revision's phases are split into slices."""

    name: str = ""

    @abstractmethod
    def chunk(self, phases: list[TemplatePhase]) -> Chunks:
        """Return chunks per phase name for the phases that should be sliced."""


class NoOpChunker(ChunkingStrategy):
    """Keeps every object inline."""

    name = "NoOp"

    def chunk(self, phases: list[TemplatePhase]) -> Chunks:
        return {}


class EachObjectChunker(ChunkingStrategy):
    """Moves every object into its own slice."""

    name = "EachObject"

    def chunk(self, phases: list[TemplatePhase]) -> Chunks:
        return {phase.name: [[obj] for obj in phase.objects] for phase in phases if phase.objects}


class BinpackChunker(ChunkingStrategy):
    """Slices the largest phases until the inline remainder fits *threshold_bytes*.

    Objects of a sliced phase are packed greedily, in order, into slices of
    at most *threshold_bytes*; an object larger than the threshold gets a
    slice of its own.
    """

    name = "Binpack"

    def __init__(self, threshold_bytes: int = DEFAULT_THRESHOLD_BYTES) -> None:
        if threshold_bytes <= 0:
            raise ValueError("threshold_bytes must be positive")
        self.threshold_bytes = threshold_bytes

    def chunk(self, phases: list[TemplatePhase]) -> Chunks:
        sizes = {phase.name: phase_size(phase) for phase in phases}
        total = sum(sizes.values())
        chunks: Chunks = {}
        for phase in sorted(phases, key=lambda p: sizes[p.name], reverse=True):
            if total <= self.threshold_bytes:
                break
            if not phase.objects:
                continue
            chunks[phase.name] = self._pack(phase.objects)
            total -= sizes[phase.name]
        return chunks

    def _pack(self, objects: list[ObjectSetObject]) -> list[list[ObjectSetObject]]:
        packed: list[list[ObjectSetObject]] = []
        current: list[ObjectSetObject] = []
        current_size = 0
        for obj in objects:
            size = object_size(obj)
            if current and current_size + size > self.threshold_bytes:
                packed.append(current)
                current, current_size = [], 0
            current.append(obj)
            current_size += size
        if current:
            packed.append(current)
        return packed


def chunker_for(
    deployment: Object,
    default: str = BinpackChunker.name,
    threshold_bytes: int = DEFAULT_THRESHOLD_BYTES,
) -> ChunkingStrategy:
    """Select the strategy named by the deployment's annotation, else *default*.

    Raises:
        ValueError: for an unknown strategy name.
    """
    name = annotations_of(deployment).get(CHUNKING_STRATEGY_ANNOTATION) or default
    if name == NoOpChunker.name:
        return NoOpChunker()
    if name == EachObjectChunker.name:
        return EachObjectChunker()
    if name == BinpackChunker.name:
        return BinpackChunker(threshold_bytes)
    raise ValueError(f"unknown chunking strategy {name!r}")

"""Availability probes.

A probe inspects one live object and reports whether it is available plus a
message explaining why not.  ``parse_probes`` turns the
``availabilityProbes`` wire form into a single probe applied to every object
of a phase; probes only apply to objects matched by their kind and label
selector.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from kubephase.models.conditions import find_status_condition
from kubephase.models.objects import GroupKind, Object, generation_of, get_path, gvk_of, labels_of
from kubephase.models.selectors import LabelSelector


class ProbeParseError(ValueError):
    """An availability probe definition is malformed."""


class Probe(ABC):
    @abstractmethod
    def probe(self, obj: Object) -> tuple[bool, str]:
        """Return ``(available, message)``; the message is empty on success."""


@dataclass
class ConditionProbe(Probe):
    """Status condition *type* is present with *status* for the current generation."""

    type: str
    status: str

    def probe(self, obj: Object) -> tuple[bool, str]:
        conditions = (obj.get("status") or {}).get("conditions") or []
        cond = find_status_condition(conditions, self.type)
        if cond is None:
            return False, f'missing condition "{self.type}"'
        observed = cond.get("observedGeneration")
        if observed and observed != generation_of(obj):
            return False, f'condition "{self.type}" is outdated'
        if cond.get("status") != self.status:
            return False, f'condition "{self.type}" == "{cond.get("status")}", want "{self.status}"'
        return True, ""


@dataclass
class FieldsEqualProbe(Probe):
    """Two dotted paths hold equal values."""

    field_a: str
    field_b: str

    def probe(self, obj: Object) -> tuple[bool, str]:
        found_a, value_a = get_path(obj, self.field_a)
        if not found_a:
            return False, f'"{self.field_a}" missing'
        found_b, value_b = get_path(obj, self.field_b)
        if not found_b:
            return False, f'"{self.field_b}" missing'
        if value_a != value_b:
            return False, f'"{self.field_a}" != "{self.field_b}"'
        return True, ""


@dataclass
class FieldValueProbe(Probe):
    """A dotted path holds *value*."""

    field: str
    value: Any

    def probe(self, obj: Object) -> tuple[bool, str]:
        found, actual = get_path(obj, self.field)
        if not found:
            return False, f'"{self.field}" missing'
        if actual != self.value:
            return False, f'"{self.field}" == {actual!r}, want {self.value!r}'
        return True, ""


@dataclass
class ExistsProbe(Probe):
    """A dotted path is present."""

    field: str

    def probe(self, obj: Object) -> tuple[bool, str]:
        found, _ = get_path(obj, self.field)
        if not found:
            return False, f'"{self.field}" missing'
        return True, ""


@dataclass
class AllProbe(Probe):
    """Every member probe must pass; messages are joined."""

    probes: list[Probe] = field(default_factory=list)

    def probe(self, obj: Object) -> tuple[bool, str]:
        messages = []
        for member in self.probes:
            ok, message = member.probe(obj)
            if not ok:
                messages.append(message)
        return not messages, ", ".join(messages)


@dataclass
class SelectorProbe(Probe):
    """Runs *inner* only for objects of *group_kind* matching *selector*."""

    group_kind: GroupKind
    inner: Probe
    selector: LabelSelector | None = None

    def applies_to(self, obj: Object) -> bool:
        try:
            gk = gvk_of(obj).group_kind
        except ValueError:
            return False
        if gk != self.group_kind:
            return False
        return self.selector is None or self.selector.matches(labels_of(obj))

    def probe(self, obj: Object) -> tuple[bool, str]:
        if not self.applies_to(obj):
            return True, ""
        return self.inner.probe(obj)


def _parse_one(raw: dict[str, Any]) -> Probe:
    if len(raw) != 1:
        raise ProbeParseError(f"probe must set exactly one of condition, fieldsEqual, fieldValue, exists: {raw!r}")
    kind, body = next(iter(raw.items()))
    body = body or {}
    try:
        if kind == "condition":
            return ConditionProbe(type=str(body["type"]), status=str(body["status"]))
        if kind == "fieldsEqual":
            return FieldsEqualProbe(field_a=str(body["fieldA"]), field_b=str(body["fieldB"]))
        if kind == "fieldValue":
            return FieldValueProbe(field=str(body["field"]), value=body["value"])
        if kind == "exists":
            return ExistsProbe(field=str(body["field"]))
    except KeyError as exc:
        raise ProbeParseError(f"{kind} probe is missing {exc}") from exc
    raise ProbeParseError(f"unknown probe type {kind!r}")


def parse_probes(availability_probes: list[dict[str, Any]]) -> AllProbe:
    """Parse ``availabilityProbes`` into one probe.

    Raises:
        ProbeParseError: on an unknown probe type or missing fields.
    """
    selected: list[Probe] = []
    for entry in availability_probes:
        selector = entry.get("selector") or {}
        kind = selector.get("kind") or {}
        if not kind.get("kind"):
            raise ProbeParseError("probe selector must name a kind")
        label_selector = selector.get("selector")
        selected.append(
            SelectorProbe(
                group_kind=GroupKind(group=str(kind.get("group", "")), kind=str(kind["kind"])),
                inner=AllProbe([_parse_one(p) for p in entry.get("probes") or []]),
                selector=LabelSelector.from_dict(label_selector) if label_selector else None,
            )
        )
    return AllProbe(selected)

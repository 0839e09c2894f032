"""Label selectors (matchLabels + matchExpressions)."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class SelectorOperator(StrEnum):
    """Operators allowed in a matchExpressions requirement."""

    IN = "In"
    NOT_IN = "NotIn"
    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"


@dataclass(frozen=True)
class Requirement:
    """A single matchExpressions entry."""

    key: str
    operator: SelectorOperator
    values: tuple[str, ...] = ()

    def matches(self, labels: dict[str, str]) -> bool:
        if self.operator is SelectorOperator.EXISTS:
            return self.key in labels
        if self.operator is SelectorOperator.DOES_NOT_EXIST:
            return self.key not in labels
        if self.operator is SelectorOperator.IN:
            return self.key in labels and labels[self.key] in self.values
        return self.key not in labels or labels[self.key] not in self.values

    def to_query(self) -> str:
        if self.operator is SelectorOperator.EXISTS:
            return self.key
        if self.operator is SelectorOperator.DOES_NOT_EXIST:
            return f"!{self.key}"
        op = "in" if self.operator is SelectorOperator.IN else "notin"
        return f"{self.key} {op} ({','.join(sorted(self.values))})"


@dataclass
class LabelSelector:
    """Kubernetes label selector.  An empty selector matches everything."""

    match_labels: dict[str, str] = field(default_factory=dict)
    match_expressions: list[Requirement] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> LabelSelector:
        raw = raw or {}
        expressions = []
        for expr in raw.get("matchExpressions") or []:
            try:
                operator = SelectorOperator(expr.get("operator", ""))
            except ValueError as exc:
                raise ValueError(f"invalid label selector operator: {expr.get('operator')!r}") from exc
            expressions.append(
                Requirement(
                    key=str(expr.get("key", "")),
                    operator=operator,
                    values=tuple(str(v) for v in expr.get("values") or ()),
                )
            )
        return cls(
            match_labels={str(k): str(v) for k, v in (raw.get("matchLabels") or {}).items()},
            match_expressions=expressions,
        )

    @classmethod
    def from_labels(cls, labels: dict[str, str]) -> LabelSelector:
        return cls(match_labels=dict(labels))

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.match_labels:
            out["matchLabels"] = dict(self.match_labels)
        if self.match_expressions:
            out["matchExpressions"] = [
                {"key": r.key, "operator": str(r.operator), **({"values": list(r.values)} if r.values else {})}
                for r in self.match_expressions
            ]
        return out

    def is_empty(self) -> bool:
        return not self.match_labels and not self.match_expressions

    def matches(self, labels: dict[str, str] | None) -> bool:
        labels = labels or {}
        if any(labels.get(k) != v for k, v in self.match_labels.items()):
            return False
        return all(r.matches(labels) for r in self.match_expressions)

    def to_query(self) -> str:
        """Render the selector in the API server's ``labelSelector`` query syntax."""
        parts = [f"{k}={v}" for k, v in sorted(self.match_labels.items())]
        parts.extend(r.to_query() for r in self.match_expressions)
        return ",".join(parts)


def as_selector(selector: LabelSelector | dict[str, str] | None) -> LabelSelector:
    """Coerce a plain label mapping (or None) into a LabelSelector."""
    if selector is None:
        return LabelSelector()
    if isinstance(selector, LabelSelector):
        return selector
    return LabelSelector.from_labels(selector)

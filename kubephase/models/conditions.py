"""Status condition helpers.

Conditions are plain dicts in the ``metav1.Condition`` shape:
``type``, ``status``, ``reason``, ``message``, ``observedGeneration`` and
``lastTransitionTime``.  The setters report whether anything changed so that
reconcilers can skip status writes that would be no-ops.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

Condition = dict[str, Any]

TRUE = "True"
FALSE = "False"
UNKNOWN = "Unknown"


def _now() -> str:
    return datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def new_condition(
    type_: str,
    status: bool | str,
    reason: str,
    message: str = "",
    observed_generation: int = 0,
) -> Condition:
    if isinstance(status, bool):
        status = TRUE if status else FALSE
    return {
        "type": type_,
        "status": status,
        "reason": reason,
        "message": message,
        "observedGeneration": observed_generation,
    }


def find_status_condition(conditions: list[Condition], type_: str) -> Condition | None:
    for cond in conditions:
        if cond.get("type") == type_:
            return cond
    return None


def is_status_condition_true(conditions: list[Condition], type_: str) -> bool:
    cond = find_status_condition(conditions, type_)
    return cond is not None and cond.get("status") == TRUE


def set_status_condition(conditions: list[Condition], condition: Condition) -> bool:
    """Insert or update *condition* in place.

    ``lastTransitionTime`` only moves when the status flips.

    Returns:
        True when the list was modified.
    """
    existing = find_status_condition(conditions, condition["type"])
    if existing is None:
        new = dict(condition)
        new.setdefault("lastTransitionTime", _now())
        conditions.append(new)
        return True

    changed = False
    if existing.get("status") != condition["status"]:
        existing["status"] = condition["status"]
        existing["lastTransitionTime"] = condition.get("lastTransitionTime") or _now()
        changed = True
    for key in ("reason", "message", "observedGeneration"):
        if existing.get(key) != condition.get(key):
            existing[key] = condition.get(key)
            changed = True
    return changed


def remove_status_condition(conditions: list[Condition], type_: str) -> bool:
    for i, cond in enumerate(conditions):
        if cond.get("type") == type_:
            del conditions[i]
            return True
    return False


def is_mapped_condition(condition: Condition) -> bool:
    """Mapped conditions carry a prefix, e.g. ``my-prefix/Available``."""
    return "/" in str(condition.get("type", ""))


def map_conditions(
    src_generation: int,
    src_conditions: list[Condition],
    dest_generation: int,
    dest_conditions: list[Condition],
    mappings: dict[str, str],
) -> set[str]:
    """Copy up-to-date source conditions into *dest_conditions*.

    Args:
        mappings: source condition type -> destination type.  Destination
            types without a ``/`` prefix are ignored.

    Returns:
        The destination types that were written.
    """
    written: set[str] = set()
    for cond in src_conditions:
        dest_type = mappings.get(str(cond.get("type", "")))
        if dest_type is None or "/" not in dest_type:
            continue
        # Skip conditions the source controller has not refreshed for the current generation.
        if src_generation and cond.get("observedGeneration") not in (None, src_generation):
            continue
        set_status_condition(
            dest_conditions,
            new_condition(
                dest_type,
                str(cond.get("status", UNKNOWN)),
                str(cond.get("reason", "")),
                str(cond.get("message", "")),
                dest_generation,
            ),
        )
        written.add(dest_type)
    return written


def delete_mapped_conditions(conditions: list[Condition], keep: set[str] | None = None) -> bool:
    """Remove mapped conditions whose type is not in *keep*."""
    keep = keep or set()
    before = len(conditions)
    conditions[:] = [c for c in conditions if not is_mapped_condition(c) or c.get("type") in keep]
    return len(conditions) != before

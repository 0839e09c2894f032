"""Owner references.

An object has at most one *controller* owner reference.  Adoption moves the
controller flag to the new owner and keeps the previous controller as a plain
owner, so cascading deletion of either still finds the object.
"""

from __future__ import annotations

from typing import Any

from kubephase.models.objects import Object, metadata_of, name_of, owner_references_of, uid_of


class ObjectNotOwnedError(Exception):
    """The object is controlled by a foreign owner and must not be touched."""

    def __init__(self, obj: Object, controller: dict[str, Any]) -> None:
        meta = obj.get("metadata") or {}
        super().__init__(
            f"{obj.get('kind', '')} {meta.get('namespace', '')}/{meta.get('name', '')} is controlled by "
            f"{controller.get('kind', '')} {controller.get('name', '')}"
        )
        self.controller = controller


def get_controller_of(obj: Object) -> dict[str, Any] | None:
    """Return the controller owner reference of *obj*, if any."""
    for ref in owner_references_of(obj):
        if ref.get("controller"):
            return ref
    return None


class OwnerStrategy:
    """Builds and inspects owner references."""

    @staticmethod
    def owner_reference(owner: Object, controller: bool = True) -> dict[str, Any]:
        ref: dict[str, Any] = {
            "apiVersion": owner.get("apiVersion", ""),
            "kind": owner.get("kind", ""),
            "name": name_of(owner),
            "uid": uid_of(owner),
        }
        if controller:
            ref["controller"] = True
            ref["blockOwnerDeletion"] = True
        return ref

    def is_controller(self, owner: Object, obj: Object) -> bool:
        ref = get_controller_of(obj)
        return ref is not None and ref.get("uid") == uid_of(owner)

    def is_owner(self, owner: Object, obj: Object) -> bool:
        return any(ref.get("uid") == uid_of(owner) for ref in owner_references_of(obj))

    def controller_references(self, owner: Object, obj: Object) -> list[dict[str, Any]]:
        """Owner references of *obj* after making *owner* its controller.

        A previous controller is kept as a non-controlling owner.
        """
        refs = []
        for ref in owner_references_of(obj):
            if ref.get("uid") == uid_of(owner):
                continue
            if ref.get("controller"):
                ref = {k: v for k, v in ref.items() if k not in ("controller", "blockOwnerDeletion")}
            refs.append(ref)
        refs.append(self.owner_reference(owner))
        return refs

    def set_controller_reference(self, owner: Object, obj: Object) -> None:
        """Make *owner* the controller of *obj*.

        Raises:
            ObjectNotOwnedError: when another owner already controls *obj*.
        """
        current = get_controller_of(obj)
        if current is not None and current.get("uid") != uid_of(owner):
            raise ObjectNotOwnedError(obj, current)
        metadata_of(obj)["ownerReferences"] = self.controller_references(owner, obj)

    def references_without(self, owner: Object, obj: Object) -> list[dict[str, Any]]:
        """Owner references of *obj* with *owner* removed."""
        return [ref for ref in owner_references_of(obj) if ref.get("uid") != uid_of(owner)]

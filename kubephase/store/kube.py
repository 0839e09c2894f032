"""Kubernetes API binding of the object store, built on kubernetes-asyncio's dynamic client."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import structlog
from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]
from kubernetes_asyncio.client.exceptions import ApiException  # type: ignore[import-untyped]
from kubernetes_asyncio.dynamic import DynamicClient  # type: ignore[import-untyped]
from kubernetes_asyncio.dynamic.exceptions import DynamicApiError  # type: ignore[import-untyped]

from kubephase.models.objects import GroupVersionKind, Object, gvk_of, key_of
from kubephase.models.selectors import LabelSelector
from kubephase.store.base import EventType, ObjectList, ObjectStore, PropagationPolicy, WatchEvent
from kubephase.store.errors import StoreError, error_for_status

_log = structlog.get_logger(component="store.kube")

_MERGE_PATCH = "application/merge-patch+json"
# Server-side watch timeout; the informer reconnects from the last resourceVersion.
_WATCH_TIMEOUT_SECONDS = 300


def _as_dict(obj: Any) -> Object:
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if to_dict is not None:
        return to_dict()  # type: ignore[no-any-return]
    raise TypeError(f"cannot convert {type(obj).__name__} to dict")


def _translate(exc: Exception, what: str) -> StoreError:
    status = int(getattr(exc, "status", 0) or 0)
    reason = ""
    body = getattr(exc, "body", None)
    if body:
        try:
            reason = str(json.loads(body).get("reason", ""))
        except (TypeError, ValueError):
            reason = ""
    return error_for_status(status, reason or str(getattr(exc, "reason", "") or ""), f"{what}: {exc}")


class KubeStore(ObjectStore):
    """ObjectStore talking to a Kubernetes API server.

    Resource discovery (kind -> plural, namespaced or not) is delegated to the
    dynamic client, so any installed kind can be managed without code changes.
    """

    def __init__(self, api_client: k8s_client.ApiClient) -> None:
        self._api_client = api_client
        self._dynamic: DynamicClient | None = None

    @classmethod
    async def connect(cls) -> KubeStore:
        store = cls(k8s_client.ApiClient())
        store._dynamic = await DynamicClient(store._api_client)
        return store

    async def close(self) -> None:
        await self._api_client.close()

    async def _resource(self, gvk: GroupVersionKind) -> Any:
        if self._dynamic is None:
            self._dynamic = await DynamicClient(self._api_client)
        try:
            return await self._dynamic.resources.get(api_version=gvk.api_version, kind=gvk.kind)
        except (ApiException, DynamicApiError) as exc:
            raise _translate(exc, f"discovering {gvk}") from exc

    async def get(self, gvk: GroupVersionKind, namespace: str, name: str) -> Object:
        resource = await self._resource(gvk)
        try:
            result = await self._dynamic.get(resource, name=name, namespace=namespace or None)  # type: ignore[union-attr]
        except (ApiException, DynamicApiError) as exc:
            raise _translate(exc, f"getting {gvk.kind} {namespace}/{name}") from exc
        return _as_dict(result)

    async def list(
        self,
        gvk: GroupVersionKind,
        namespace: str | None = None,
        label_selector: LabelSelector | None = None,
    ) -> ObjectList:
        resource = await self._resource(gvk)
        kwargs: dict[str, Any] = {}
        if label_selector is not None and not label_selector.is_empty():
            kwargs["label_selector"] = label_selector.to_query()
        try:
            result = _as_dict(await self._dynamic.get(resource, namespace=namespace or None, **kwargs))  # type: ignore[union-attr]
        except (ApiException, DynamicApiError) as exc:
            raise _translate(exc, f"listing {gvk.kind}") from exc
        items = []
        for item in result.get("items") or []:
            item = _as_dict(item)
            # List items come back without apiVersion/kind.
            item.setdefault("apiVersion", gvk.api_version)
            item.setdefault("kind", gvk.kind)
            items.append(item)
        return ObjectList(items=items, resource_version=str((result.get("metadata") or {}).get("resourceVersion", "")))

    async def watch(
        self,
        gvk: GroupVersionKind,
        namespace: str | None = None,
        label_selector: LabelSelector | None = None,
        resource_version: str = "",
    ) -> AsyncIterator[WatchEvent]:
        resource = await self._resource(gvk)
        kwargs: dict[str, Any] = {"timeout": _WATCH_TIMEOUT_SECONDS}
        if label_selector is not None and not label_selector.is_empty():
            kwargs["label_selector"] = label_selector.to_query()
        if resource_version:
            kwargs["resource_version"] = resource_version
        try:
            async for event in self._dynamic.watch(resource, namespace=namespace or None, **kwargs):  # type: ignore[union-attr]
                raw = event.get("raw_object") or _as_dict(event.get("object"))
                event_type = str(event.get("type", ""))
                if event_type == "ERROR":
                    raise error_for_status(int(raw.get("code", 500)), str(raw.get("reason", "")), str(raw.get("message", "")))
                try:
                    yield WatchEvent(EventType(event_type), raw)
                except ValueError:
                    _log.debug("watch_event_ignored", kind=gvk.kind, type=event_type)
        except (ApiException, DynamicApiError) as exc:
            raise _translate(exc, f"watching {gvk.kind}") from exc

    async def create(self, obj: Object) -> Object:
        gvk = gvk_of(obj)
        key = key_of(obj)
        resource = await self._resource(gvk)
        try:
            result = await self._dynamic.create(resource, body=obj, namespace=key.namespace or None)  # type: ignore[union-attr]
        except (ApiException, DynamicApiError) as exc:
            raise _translate(exc, f"creating {gvk.kind} {key}") from exc
        return _as_dict(result)

    async def update(self, obj: Object) -> Object:
        gvk = gvk_of(obj)
        key = key_of(obj)
        resource = await self._resource(gvk)
        try:
            result = await self._dynamic.replace(resource, body=obj, name=key.name, namespace=key.namespace or None)  # type: ignore[union-attr]
        except (ApiException, DynamicApiError) as exc:
            raise _translate(exc, f"updating {gvk.kind} {key}") from exc
        return _as_dict(result)

    async def update_status(self, obj: Object) -> Object:
        gvk = gvk_of(obj)
        key = key_of(obj)
        resource = await self._resource(gvk)
        try:
            result = await self._dynamic.replace(  # type: ignore[union-attr]
                resource.subresources["status"], body=obj, name=key.name, namespace=key.namespace or None
            )
        except (ApiException, DynamicApiError) as exc:
            raise _translate(exc, f"updating status of {gvk.kind} {key}") from exc
        return _as_dict(result)

    async def patch(self, gvk: GroupVersionKind, namespace: str, name: str, patch: dict[str, Any]) -> Object:
        resource = await self._resource(gvk)
        try:
            result = await self._dynamic.patch(  # type: ignore[union-attr]
                resource, body=patch, name=name, namespace=namespace or None, content_type=_MERGE_PATCH
            )
        except (ApiException, DynamicApiError) as exc:
            raise _translate(exc, f"patching {gvk.kind} {namespace}/{name}") from exc
        return _as_dict(result)

    async def delete(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
        propagation_policy: PropagationPolicy | None = None,
    ) -> None:
        resource = await self._resource(gvk)
        body = None
        if propagation_policy is not None:
            body = {"apiVersion": "v1", "kind": "DeleteOptions", "propagationPolicy": str(propagation_policy)}
        try:
            await self._dynamic.delete(resource, name=name, namespace=namespace or None, body=body)  # type: ignore[union-attr]
        except (ApiException, DynamicApiError) as exc:
            raise _translate(exc, f"deleting {gvk.kind} {namespace}/{name}") from exc

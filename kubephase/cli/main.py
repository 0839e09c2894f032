"""kubephase CLI commands.

``run`` starts the controllers; ``slice-name`` computes the content-addressed
name an ObjectSlice would get; ``release-revisions`` orphan-deletes ObjectSets
and strips their finalizers, for recovering from a stuck teardown.
"""

from __future__ import annotations

import asyncio
import json
from typing import IO

import click

from kubephase.models.api import OBJECT_SET_GVK, ObjectSetObject
from kubephase.models.objects import name_of
from kubephase.models.selectors import LabelSelector
from kubephase.slices.hashing import name_for
from kubephase.store.base import ObjectStore, PropagationPolicy
from kubephase.store.errors import NotFoundError


@click.group()
@click.version_option(package_name="kubephase")
def cli() -> None:
    """Phased, revisioned rollouts of arbitrary Kubernetes objects."""


@cli.command()
def run() -> None:
    """Run the controllers until SIGTERM or SIGINT."""
    from kubephase.app import main

    asyncio.run(main())


@cli.command("slice-name")
@click.argument("owner")
@click.argument("file", type=click.File("r"))
@click.option("--salt", type=int, default=0, show_default=True, help="Collision salt.")
def slice_name(owner: str, file: IO[str], salt: int) -> None:
    """Print the ObjectSlice name for the JSON list of objects in FILE ("-" for stdin)."""
    try:
        raw = json.load(file)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"not valid JSON: {exc}", param_hint="FILE") from exc
    if not isinstance(raw, list):
        raise click.BadParameter("expected a JSON list of objects", param_hint="FILE")
    # Accept bare manifests as well as {"object": ...} entries.
    objects = [ObjectSetObject.from_dict(o if "object" in o else {"object": o}).to_dict() for o in raw]
    click.echo(name_for(owner, objects, salt))


def parse_selector(value: str) -> LabelSelector:
    """Parse ``key=value[,key=value...]`` into an equality selector."""
    labels: dict[str, str] = {}
    for term in filter(None, (t.strip() for t in value.split(","))):
        key, sep, val = term.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {term!r}", param_hint="--selector")
        labels[key.strip()] = val.strip()
    if not labels:
        raise click.BadParameter("selector must not be empty", param_hint="--selector")
    return LabelSelector.from_labels(labels)


async def release_revisions(store: ObjectStore, namespace: str, selector: LabelSelector) -> list[str]:
    """Orphan-delete matching ObjectSets and drop their finalizers.

    The managed objects stay in the cluster.  Returns the released names.
    """
    released: list[str] = []
    revisions = await store.list(OBJECT_SET_GVK, namespace, label_selector=selector)
    for revision in revisions.items:
        name = name_of(revision)
        try:
            await store.delete(OBJECT_SET_GVK, namespace, name, propagation_policy=PropagationPolicy.ORPHAN)
        except NotFoundError:
            continue
        try:
            await store.patch(OBJECT_SET_GVK, namespace, name, {"metadata": {"finalizers": None}})
        except NotFoundError:
            pass  # no finalizers, already gone
        released.append(name)
    return released


async def _release(namespace: str, selector: LabelSelector) -> list[str]:
    import kubernetes_asyncio.config as k8s_config  # type: ignore[import-untyped]

    from kubephase.store.kube import KubeStore

    try:
        k8s_config.load_incluster_config()
    except k8s_config.ConfigException:
        await k8s_config.load_kube_config()
    store = await KubeStore.connect()
    try:
        return await release_revisions(store, namespace, selector)
    finally:
        await store.close()


@cli.command("release-revisions")
@click.option("--namespace", "-n", required=True, help="Namespace of the ObjectSets.")
@click.option("--selector", "-l", required=True, help="Label selector, e.g. app=web.")
def release(namespace: str, selector: str) -> None:
    """Delete ObjectSets without tearing down the objects they manage."""
    names = asyncio.run(_release(namespace, parse_selector(selector)))
    for name in names:
        click.echo(f"released {namespace}/{name}")
    if not names:
        click.echo("no matching ObjectSets")

from __future__ import annotations

from .client import Client
from .models import SET_KIND, UNIT_KIND, Node, SetKey, Unit, controller_ref_of
from .selectors import matches


def map_unit_to_sets(client: Client, unit: Unit) -> list[SetKey] | None:
    """Which sets should look at a changed unit.

    Returns ``[]`` for a unit a set already controls (its owner is enqueued
    through the owner path instead), ``None`` when no set in the namespace
    selects the unit, and otherwise every selecting set. Several matches
    mean overlapping selectors; all of them are returned.
    """
    ref = controller_ref_of(unit)
    if ref is not None and ref.kind == SET_KIND:
        return []

    keys = [
        SetKey(s.metadata.namespace, s.metadata.name)
        for s in client.list(SET_KIND, unit.metadata.namespace)
        if matches(s.spec.selector, unit.metadata.labels)
    ]
    return keys or None


def map_node_to_sets(client: Client, node: Node) -> list[SetKey]:
    """Sets controlling a unit whose node reference points at ``node``."""
    out: list[SetKey] = []
    for unit in client.list(UNIT_KIND):
        ref = unit.status.node_ref
        if ref is None or ref.name != node.metadata.name:
            continue
        owner = controller_ref_of(unit)
        if owner is None or owner.kind != SET_KIND:
            continue
        key = SetKey(unit.metadata.namespace, owner.name)
        if key not in out:
            out.append(key)
    return out

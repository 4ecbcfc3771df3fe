from __future__ import annotations

from datetime import datetime, timezone

from .client import Client
from .db import parse_ts, utc_now
from .errors import ConflictError, NotFoundError
from .models import NODE_KIND, Condition, Unit, UnitSet, UnitSetStatus
from .selectors import selector_string


READY = "Ready"
SPEC_VALID = "SpecValid"
REPLICA_FAILURE = "ReplicaFailure"


def get_condition(conditions: list[Condition], cond_type: str) -> Condition | None:
    for c in conditions:
        if c.type == cond_type:
            return c
    return None


def set_condition(conditions: list[Condition], new: Condition) -> list[Condition]:
    """Insert or replace a condition by type.

    last_transition_time only moves when the status value changes.
    """
    out: list[Condition] = []
    replaced = False
    for c in conditions:
        if c.type != new.type:
            out.append(c)
            continue
        cond = new.model_copy()
        if c.status == new.status and c.last_transition_time:
            cond.last_transition_time = c.last_transition_time
        elif not cond.last_transition_time:
            cond.last_transition_time = utc_now()
        out.append(cond)
        replaced = True
    if not replaced:
        cond = new.model_copy()
        if not cond.last_transition_time:
            cond.last_transition_time = utc_now()
        out.append(cond)
    return out


def node_ready_condition(client: Client, unit: Unit) -> Condition | None:
    """The Ready=True condition of the unit's node, or None.

    None covers a missing node reference, a node that no longer exists, and a
    node whose Ready condition is absent or not True.
    """
    ref = unit.status.node_ref
    if ref is None or not ref.name:
        return None
    try:
        node = client.get(NODE_KIND, ref.namespace or "", ref.name)
    except NotFoundError:
        return None
    cond = get_condition(node.status.conditions, READY)
    if cond is None or cond.status != "True":
        return None
    return cond


def is_unit_ready(client: Client, unit: Unit) -> bool:
    return node_ready_condition(client, unit) is not None


def _available(cond: Condition, min_ready_seconds: int, now: datetime) -> bool:
    if min_ready_seconds <= 0:
        return True
    if not cond.last_transition_time:
        return False
    try:
        since = parse_ts(cond.last_transition_time)
    except ValueError:
        # Unreadable transition time: wait for the node to report a usable one.
        return False
    ready_for = (now - since).total_seconds()
    return ready_for >= min_ready_seconds


def compute_status(
    client: Client, unit_set: UnitSet, active: list[Unit], now: datetime | None = None
) -> UnitSetStatus:
    """Aggregate replica counts for ``active``.

    ready: node referenced and reporting Ready=True.
    available: ready for at least spec.min_ready_seconds (same as ready at 0).
    fully labeled: carries every template label.
    Existing conditions are carried over untouched.
    """
    now = now or datetime.now(timezone.utc)
    template_labels = unit_set.spec.template.metadata.labels
    min_ready = unit_set.spec.min_ready_seconds

    fully_labeled = ready = available = 0
    for unit in active:
        labels = unit.metadata.labels
        if all(labels.get(k) == v for k, v in template_labels.items()):
            fully_labeled += 1
        cond = node_ready_condition(client, unit)
        if cond is None:
            continue
        ready += 1
        if _available(cond, min_ready, now):
            available += 1

    return UnitSetStatus(
        replicas=len(active),
        fully_labeled_replicas=fully_labeled,
        ready_replicas=ready,
        available_replicas=available,
        observed_generation=unit_set.metadata.generation,
        selector=selector_string(unit_set.spec.selector),
        conditions=[c.model_copy() for c in unit_set.status.conditions],
    )


def write_status(client: Client, unit_set: UnitSet, status: UnitSetStatus, retries: int = 5) -> UnitSet:
    """Persist status, reloading the set and retrying the write on conflict.

    Only the status write is retried; the status itself is not recomputed.
    The last ConflictError is raised once retries run out.
    """
    current = unit_set
    attempt = 0
    while True:
        if current.status == status:
            return current
        candidate = current.model_copy(deep=True)
        candidate.status = status
        try:
            return client.update_status(candidate)
        except ConflictError:
            attempt += 1
            if attempt > retries:
                raise
            current = client.get(unit_set.kind, unit_set.metadata.namespace, unit_set.metadata.name)

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from .client import Client, EventRecorder, NullRecorder
from .errors import FleetError, NotFoundError, aggregate
from .models import (
    DELETE_UNIT_ANNOTATION,
    SET_NAME_LABEL,
    UNIT_KIND,
    ObjectMeta,
    ObjectReference,
    Unit,
    UnitSet,
    desired_replicas,
)
from .ownership import Ownership, adopt_orphan, classify, new_controller_ref, should_exclude
from .selectors import matches
from .settings import settings
from .status import is_unit_ready


InfraCloner = Callable[[UnitSet, Unit], ObjectReference]


@dataclass
class ConvergeResult:
    active: list[Unit] = field(default_factory=list)
    adopted: list[Unit] = field(default_factory=list)
    created: list[Unit] = field(default_factory=list)
    deleted: list[Unit] = field(default_factory=list)
    errors: list[Exception] = field(default_factory=list)
    # False when scaling was skipped because adoption did not settle.
    scaled: bool = True

    @property
    def error(self) -> Exception | None:
        return aggregate(self.errors)


def new_unit(unit_set: UnitSet) -> Unit:
    """Build (but do not create) one unit from the set's template.

    The controller reference is set here, so a created unit is owned from
    its first revision on.
    """
    tmpl = unit_set.spec.template
    labels = dict(tmpl.metadata.labels)
    labels[SET_NAME_LABEL] = unit_set.metadata.name
    return Unit(
        metadata=ObjectMeta(
            generate_name=f"{unit_set.metadata.name}-",
            namespace=unit_set.metadata.namespace,
            labels=labels,
            annotations=dict(tmpl.metadata.annotations),
            owner_references=[new_controller_ref(unit_set)],
        ),
        spec=tmpl.spec.model_copy(deep=True),
    )


def _deletion_rank(unit: Unit, ready: bool) -> int:
    if DELETE_UNIT_ANNOTATION in unit.metadata.annotations:
        return 0
    if unit.status.failure_reason or unit.status.failure_message:
        return 1
    if not ready:
        return 2
    return 3


def units_to_delete(units: list[Unit], count: int, policy: str, is_ready: Callable[[Unit], bool]) -> list[Unit]:
    """Pick ``count`` victims in a fixed order.

    Rank first: annotated for deletion, failed, not ready, ready. Within a
    rank, oldest first ("Oldest") or newest first ("Newest"), then by name.
    """
    if count <= 0:
        return []
    ready = {u.metadata.uid or u.metadata.name: is_ready(u) for u in units}
    ordered = sorted(units, key=lambda u: u.metadata.name)
    ordered = sorted(ordered, key=lambda u: u.metadata.creation_timestamp or "", reverse=(policy == "Newest"))
    ordered = sorted(ordered, key=lambda u: _deletion_rank(u, ready[u.metadata.uid or u.metadata.name]))
    return ordered[:count]


class ScalingEngine:
    """Drives a set's membership toward its desired replica count."""

    def __init__(
        self,
        client: Client,
        recorder: EventRecorder | None = None,
        infra_cloner: InfraCloner | None = None,
    ):
        self.client = client
        self.recorder = recorder or NullRecorder()
        self.infra_cloner = infra_cloner

    def _log(self, level: str, unit_set: UnitSet, message: str) -> None:
        self.recorder.log_event(level, message, namespace=unit_set.metadata.namespace, set_name=unit_set.metadata.name)

    def converge(self, unit_set: UnitSet) -> ConvergeResult:
        """One convergence pass.

        Listing failures are raised. Per-unit failures (adoption, creation,
        deletion) are collected in the result so the next pass only retries
        what is still missing.
        """
        result = ConvergeResult()
        units = self.client.list(UNIT_KIND, unit_set.metadata.namespace)

        orphans: list[Unit] = []
        for unit in units:
            if not matches(unit_set.spec.selector, unit.metadata.labels):
                continue
            if should_exclude(unit_set, unit):
                continue
            relation = classify(unit_set, unit)
            if relation is Ownership.OWNED:
                result.active.append(unit)
            elif relation is Ownership.UNOWNED:
                orphans.append(unit)
            # Controlled by something that is not a set: leave it alone.

        for orphan in orphans:
            try:
                adopted = adopt_orphan(self.client, unit_set, orphan)
            except FleetError as e:
                self._log("WARN", unit_set, f"Failed to adopt unit {orphan.metadata.name}: {e}")
                result.errors.append(e)
                continue
            self._log("INFO", unit_set, f"Adopted unit {adopted.metadata.name}")
            result.adopted.append(adopted)
            result.active.append(adopted)

        if result.errors:
            # A unit we could not adopt may still end up ours; creating a
            # replacement now could overshoot.
            result.scaled = False
            return result

        diff = desired_replicas(unit_set) - len(result.active)
        if diff > 0:
            self._scale_up(unit_set, diff, result)
        elif diff < 0:
            self._scale_down(unit_set, -diff, result)
        return result

    def _scale_up(self, unit_set: UnitSet, count: int, result: ConvergeResult) -> None:
        self._log("INFO", unit_set, f"Too few replicas: need {count} more, creating")
        for _ in range(count):
            unit = new_unit(unit_set)
            try:
                if self.infra_cloner is not None:
                    unit.spec.infrastructure_ref = self.infra_cloner(unit_set, unit)
                created = self.client.create(unit)
            except Exception as e:
                self._log("ERROR", unit_set, f"Failed to create unit: {type(e).__name__}: {e}")
                result.errors.append(e)
                continue
            result.created.append(created)
            result.active.append(created)
        self._log("INFO", unit_set, f"Created {len(result.created)}/{count} units")

    def _scale_down(self, unit_set: UnitSet, count: int, result: ConvergeResult) -> None:
        policy = unit_set.spec.delete_policy or settings.default_delete_policy
        victims = units_to_delete(result.active, count, policy, lambda u: is_unit_ready(self.client, u))
        self._log("INFO", unit_set, f"Too many replicas: deleting {count} ({policy} policy)")
        for unit in victims:
            try:
                self.client.delete(unit, unit.metadata.uid)
            except NotFoundError:
                # Already gone.
                pass
            except Exception as e:
                self._log("ERROR", unit_set, f"Failed to delete unit {unit.metadata.name}: {type(e).__name__}: {e}")
                result.errors.append(e)
                continue
            result.deleted.append(unit)
            result.active.remove(unit)

from __future__ import annotations

from enum import Enum

from .client import Client
from .models import SET_KIND, OwnerReference, Unit, UnitSet, controller_ref_of


class Ownership(str, Enum):
    """How a unit relates to one particular set. Always derived from the raw
    owner references, never stored."""

    UNOWNED = "unowned"
    OWNED = "owned"
    FOREIGN = "foreign"


def classify(unit_set: UnitSet, unit: Unit) -> Ownership:
    ref = controller_ref_of(unit)
    if ref is None:
        return Ownership.UNOWNED
    if ref.kind == SET_KIND and ref.uid == unit_set.metadata.uid:
        return Ownership.OWNED
    return Ownership.FOREIGN


def should_exclude(unit_set: UnitSet, unit: Unit) -> bool:
    """True when the unit must stay out of this set's membership.

    That is the case while the unit is being torn down, or when another set
    controls it. Labels are not looked at here.
    """
    if unit.metadata.deletion_timestamp is not None:
        return True
    ref = controller_ref_of(unit)
    if ref is not None and ref.kind == SET_KIND and ref.uid != unit_set.metadata.uid:
        return True
    return False


def new_controller_ref(unit_set: UnitSet) -> OwnerReference:
    return OwnerReference(
        api_version=unit_set.api_version,
        kind=unit_set.kind,
        name=unit_set.metadata.name,
        uid=unit_set.metadata.uid,
        controller=True,
        block_owner_deletion=True,
    )


def adopt_orphan(client: Client, unit_set: UnitSet, unit: Unit) -> Unit:
    """Make unit_set the controller of an orphan unit.

    The owner reference is appended in place on ``unit`` and persisted with a
    merge patch guarded by the unit's resource_version. ConflictError and
    NotFoundError reach the caller unchanged.
    """
    unit.metadata.owner_references.append(new_controller_ref(unit_set))
    refs = [r.model_dump(mode="json") for r in unit.metadata.owner_references]
    return client.patch(unit, {"metadata": {"owner_references": refs}})

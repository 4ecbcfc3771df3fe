"""Object model for unit sets, units and nodes.

One pydantic model per kind. Objects are stored as JSON documents, so every
model round-trips through ``model_dump(mode="json")`` / ``model_validate``.
"""
from __future__ import annotations

from typing import Any, NamedTuple

from pydantic import BaseModel, Field


API_VERSION = "fleet.io/v1alpha1"

SET_KIND = "UnitSet"
UNIT_KIND = "Unit"
NODE_KIND = "Node"

# Stamped on every unit a set creates, in addition to the template labels.
SET_NAME_LABEL = "fleet.io/set-name"
# Units carrying this annotation are the first picked on scale-down.
DELETE_UNIT_ANNOTATION = "fleet.io/delete-unit"

DELETE_POLICIES = ("Oldest", "Newest")


class SetKey(NamedTuple):
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class OwnerReference(BaseModel):
    api_version: str
    kind: str
    name: str
    uid: str = ""
    controller: bool | None = None
    block_owner_deletion: bool | None = None


class ObjectMeta(BaseModel):
    name: str = ""
    generate_name: str = ""
    namespace: str = "default"
    uid: str = ""
    resource_version: str = ""
    generation: int = 0
    creation_timestamp: str | None = None
    deletion_timestamp: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    owner_references: list[OwnerReference] = Field(default_factory=list)
    finalizers: list[str] = Field(default_factory=list)


class ObjectReference(BaseModel):
    api_version: str = ""
    kind: str = ""
    name: str = ""
    namespace: str = ""
    uid: str = ""


class Condition(BaseModel):
    type: str
    status: str = "Unknown"  # True|False|Unknown
    reason: str = ""
    message: str = ""
    last_transition_time: str | None = None


class LabelSelectorRequirement(BaseModel):
    key: str
    operator: str  # In|NotIn|Exists|DoesNotExist
    values: list[str] = Field(default_factory=list)


class LabelSelector(BaseModel):
    match_labels: dict[str, str] = Field(default_factory=dict)
    match_expressions: list[LabelSelectorRequirement] = Field(default_factory=list)


# --- Unit ---


class Bootstrap(BaseModel):
    data: str | None = None
    config_ref: ObjectReference | None = None


class UnitSpec(BaseModel):
    version: str | None = None
    bootstrap: Bootstrap = Field(default_factory=Bootstrap)
    # Opaque to this package; only passed through to created units.
    infrastructure_ref: ObjectReference | None = None
    provider_id: str | None = None


class UnitStatus(BaseModel):
    node_ref: ObjectReference | None = None
    conditions: list[Condition] = Field(default_factory=list)
    failure_reason: str | None = None
    failure_message: str | None = None


class Unit(BaseModel):
    api_version: str = API_VERSION
    kind: str = UNIT_KIND
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: UnitSpec = Field(default_factory=UnitSpec)
    status: UnitStatus = Field(default_factory=UnitStatus)


# --- UnitSet ---


class TemplateMeta(BaseModel):
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)


class UnitTemplate(BaseModel):
    metadata: TemplateMeta = Field(default_factory=TemplateMeta)
    spec: UnitSpec = Field(default_factory=UnitSpec)


class UnitSetSpec(BaseModel):
    # None means "default to 1".
    replicas: int | None = None
    min_ready_seconds: int = 0
    delete_policy: str | None = None
    selector: LabelSelector = Field(default_factory=LabelSelector)
    template: UnitTemplate = Field(default_factory=UnitTemplate)


class UnitSetStatus(BaseModel):
    replicas: int = 0
    fully_labeled_replicas: int = 0
    ready_replicas: int = 0
    available_replicas: int = 0
    observed_generation: int = 0
    selector: str = ""
    conditions: list[Condition] = Field(default_factory=list)


class UnitSet(BaseModel):
    api_version: str = API_VERSION
    kind: str = SET_KIND
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: UnitSetSpec = Field(default_factory=UnitSetSpec)
    status: UnitSetStatus = Field(default_factory=UnitSetStatus)


# --- Node ---


class NodeStatus(BaseModel):
    conditions: list[Condition] = Field(default_factory=list)


class Node(BaseModel):
    api_version: str = "v1"
    kind: str = NODE_KIND
    metadata: ObjectMeta = Field(default_factory=lambda: ObjectMeta(namespace=""))
    status: NodeStatus = Field(default_factory=NodeStatus)


KIND_MODELS: dict[str, type[BaseModel]] = {
    SET_KIND: UnitSet,
    UNIT_KIND: Unit,
    NODE_KIND: Node,
}


def key_of(obj: Any) -> SetKey:
    return SetKey(obj.metadata.namespace, obj.metadata.name)


def desired_replicas(unit_set: UnitSet) -> int:
    if unit_set.spec.replicas is None:
        return 1
    return unit_set.spec.replicas


def controller_ref_of(obj: Any) -> OwnerReference | None:
    """Return the owner reference flagged as controller, if any."""
    for ref in obj.metadata.owner_references:
        if ref.controller:
            return ref
    return None

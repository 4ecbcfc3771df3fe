import os as _os
import sys

import pytest

# Ensure project root is importable (so `import fleet` and `import main` work without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from fleet.db import Store  # noqa: E402
from fleet.models import (  # noqa: E402
    Condition,
    LabelSelector,
    Node,
    NodeStatus,
    ObjectMeta,
    ObjectReference,
    OwnerReference,
    TemplateMeta,
    Unit,
    UnitSet,
    UnitSetSpec,
    UnitStatus,
    UnitTemplate,
)


@pytest.fixture
def store(tmp_path):
    s = Store(str(tmp_path / "fleet.db"))
    s.init_db()
    return s


@pytest.fixture
def make_set(store):
    """Create a UnitSet selecting app=<name> with a matching template."""

    def _make(name="web", replicas=2, namespace="default", selector=None, template_labels=None, **spec):
        labels = template_labels if template_labels is not None else {"app": name}
        unit_set = UnitSet(
            metadata=ObjectMeta(name=name, namespace=namespace),
            spec=UnitSetSpec(
                replicas=replicas,
                selector=selector if selector is not None else LabelSelector(match_labels={"app": name}),
                template=UnitTemplate(metadata=TemplateMeta(labels=labels)),
                **spec,
            ),
        )
        return store.create(unit_set)

    return _make


@pytest.fixture
def make_unit(store):
    """Create a Unit; ``owner`` is a UnitSet (or an OwnerReference) to control it."""

    def _make(name, labels=None, namespace="default", owner=None, node=None, finalizers=None, annotations=None):
        refs = []
        if isinstance(owner, UnitSet):
            refs.append(
                OwnerReference(
                    api_version=owner.api_version,
                    kind=owner.kind,
                    name=owner.metadata.name,
                    uid=owner.metadata.uid,
                    controller=True,
                    block_owner_deletion=True,
                )
            )
        elif owner is not None:
            refs.append(owner)
        unit = Unit(
            metadata=ObjectMeta(
                name=name,
                namespace=namespace,
                labels=labels or {},
                annotations=annotations or {},
                owner_references=refs,
                finalizers=finalizers or [],
            ),
            status=UnitStatus(node_ref=ObjectReference(kind="Node", name=node) if node else None),
        )
        return store.create(unit)

    return _make


@pytest.fixture
def make_node(store):
    def _make(name, ready=True, last_transition_time=None):
        node = Node(
            metadata=ObjectMeta(name=name, namespace=""),
            status=NodeStatus(
                conditions=[
                    Condition(
                        type="Ready",
                        status="True" if ready else "False",
                        last_transition_time=last_transition_time or "2020-01-01T00:00:00.000000Z",
                    )
                ]
            ),
        )
        return store.create(node)

    return _make


class RecordingClient:
    """Passes everything through to the store and records mutations."""

    def __init__(self, store, fail_on=None):
        self.store = store
        self.calls = []
        # op name -> list of outcomes consumed per call; None passes, an exception is raised
        self.fail_on = dict(fail_on or {})

    def __getattr__(self, name):
        return getattr(self.store, name)

    def _maybe_fail(self, op):
        outcomes = self.fail_on.get(op)
        if outcomes:
            exc = outcomes.pop(0)
            if exc is not None:
                raise exc

    def create(self, obj):
        self.calls.append(("create", obj.metadata.generate_name or obj.metadata.name))
        self._maybe_fail("create")
        return self.store.create(obj)

    def delete(self, obj, uid=None):
        self.calls.append(("delete", obj.metadata.name))
        self._maybe_fail("delete")
        return self.store.delete(obj, uid)

    def patch(self, obj, diff):
        self.calls.append(("patch", obj.metadata.name))
        self._maybe_fail("patch")
        return self.store.patch(obj, diff)

    def update_status(self, obj):
        self.calls.append(("update_status", obj.metadata.name))
        self._maybe_fail("update_status")
        return self.store.update_status(obj)

    def mutations(self, op):
        return [c for c in self.calls if c[0] == op]


@pytest.fixture
def recording(store):
    return RecordingClient(store)

import pytest

from fleet.errors import ConflictError, NotFoundError
from fleet.models import SET_KIND, UNIT_KIND, ObjectMeta, OwnerReference, Unit, UnitSet
from fleet.ownership import Ownership, adopt_orphan, classify, should_exclude


def _set(uid="1", name="ms"):
    return UnitSet(metadata=ObjectMeta(name=name, uid=uid))


def _unit(name, refs=None, deleting=False, labels=None):
    return Unit(
        metadata=ObjectMeta(
            name=name,
            namespace="test",
            labels=labels or {},
            owner_references=refs or [],
            deletion_timestamp="2024-01-01T00:00:00.000000Z" if deleting else None,
        )
    )


def _ref(uid, kind=SET_KIND, controller=True):
    return OwnerReference(api_version="fleet.io/v1alpha1", kind=kind, name="Owner", uid=uid, controller=controller)


@pytest.mark.parametrize(
    "unit,expected",
    [
        (_unit("withNoMatchingOwnerRef", [_ref("not-1")]), True),
        (_unit("withMatchingOwnerRef", [_ref("1")]), False),
        (_unit("withMatchingLabels", labels={"foo": "bar"}), False),
        (_unit("withDeletionTimestamp", deleting=True, labels={"foo": "bar"}), True),
        (_unit("ownedButDeleting", [_ref("1")], deleting=True), True),
        (_unit("foreignAndDeleting", [_ref("not-1")], deleting=True), True),
        (_unit("nonControllerRef", [_ref("not-1", controller=False)]), False),
        (_unit("otherKindController", [_ref("9", kind="Deployment")]), False),
    ],
)
def test_should_exclude(unit, expected):
    assert should_exclude(_set(), unit) is expected


def test_foreign_unit_excluded_regardless_of_labels():
    for labels in ({}, {"foo": "bar"}, {"anything": "else"}):
        assert should_exclude(_set(), _unit("u", [_ref("other")], labels=labels)) is True


@pytest.mark.parametrize(
    "refs,expected",
    [
        ([], Ownership.UNOWNED),
        ([_ref("1", controller=False)], Ownership.UNOWNED),
        ([_ref("1")], Ownership.OWNED),
        ([_ref("2")], Ownership.FOREIGN),
        ([_ref("1", kind="Deployment")], Ownership.FOREIGN),
    ],
)
def test_classify(refs, expected):
    assert classify(_set(), _unit("u", refs)) is expected


def test_adopt_orphan_sets_controller_ref(store, make_set, make_unit):
    unit_set = make_set("adoptOrphanUnit")
    orphan = make_unit("orphanUnit", labels={"app": "adoptOrphanUnit"})

    adopted = adopt_orphan(store, unit_set, orphan)

    expected = [
        OwnerReference(
            api_version="fleet.io/v1alpha1",
            kind=SET_KIND,
            name="adoptOrphanUnit",
            uid=unit_set.metadata.uid,
            controller=True,
            block_owner_deletion=True,
        )
    ]
    assert orphan.metadata.owner_references == expected
    assert adopted.metadata.owner_references == expected
    assert store.get(UNIT_KIND, "default", "orphanUnit").metadata.owner_references == expected
    assert int(adopted.metadata.resource_version) == int(orphan.metadata.resource_version) + 1


def test_adopt_orphan_keeps_unrelated_fields(store, make_set, make_unit):
    unit_set = make_set("web")
    orphan = make_unit("u1", labels={"app": "web"}, annotations={"note": "keep"})
    adopted = adopt_orphan(store, unit_set, orphan)
    assert adopted.metadata.annotations == {"note": "keep"}
    assert adopted.metadata.uid == orphan.metadata.uid


def test_adopt_orphan_reports_conflict(store, make_set, make_unit):
    unit_set = make_set("web")
    stale = make_unit("u1", labels={"app": "web"})
    store.patch(stale, {"metadata": {"annotations": {"touched": "yes"}}})

    with pytest.raises(ConflictError):
        adopt_orphan(store, unit_set, stale)
    assert store.get(UNIT_KIND, "default", "u1").metadata.owner_references == []


def test_adopt_orphan_reports_not_found(store, make_set, make_unit):
    unit_set = make_set("web")
    unit = make_unit("u1", labels={"app": "web"})
    store.delete(unit, unit.metadata.uid)

    with pytest.raises(NotFoundError):
        adopt_orphan(store, unit_set, unit)

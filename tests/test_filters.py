from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_cluster, make_machine, owner_ref
from etcdcluster.filters import (
    and_,
    etcd_cluster_machines,
    has_annotation_key,
    has_controller_ref,
    has_deletion_timestamp,
    has_unhealthy_condition,
    in_failure_domains,
    is_active,
    is_ready,
    not_,
    or_,
    owned_by,
    should_rollout_after,
)
from etcdcluster.labels import CLUSTER_NAME_LABEL

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _always(machine: object) -> bool:
    return True


def _never(machine: object) -> bool:
    return False


def test_none_machine_is_rejected_by_every_predicate() -> None:
    cluster = make_cluster()
    predicates = [
        and_(),
        or_(_always),
        not_(_never),
        has_controller_ref,
        owned_by(cluster),
        is_active,
        has_deletion_timestamp,
        has_unhealthy_condition,
        is_ready,
        should_rollout_after(NOW, NOW - timedelta(hours=1)),
        has_annotation_key("x"),
        in_failure_domains(None),
        etcd_cluster_machines("prod"),
    ]
    assert [predicate(None) for predicate in predicates] == [False] * len(predicates)


def test_combinator_identities() -> None:
    machine = make_machine("m1")
    assert and_()(machine) is True
    assert or_()(machine) is False
    assert and_(_always, _never)(machine) is False
    assert or_(_never, _always)(machine) is True
    assert not_(_never)(machine) is True
    assert not_(and_(_always))(machine) is False


def test_has_controller_ref() -> None:
    controlled = make_machine("m1", owner_references=[{"kind": "X", "name": "a", "controller": True}])
    plain = make_machine("m2", owner_references=[{"kind": "X", "name": "a", "controller": False}])
    assert has_controller_ref(controlled) is True
    assert has_controller_ref(plain) is False
    assert has_controller_ref(make_machine("m3")) is False


def test_owned_by_matches_kind_name_and_uid() -> None:
    cluster = make_cluster("etcd-a")
    other = make_cluster("etcd-b")
    assert owned_by(cluster)(make_machine("m1", cluster=cluster)) is True
    assert owned_by(other)(make_machine("m1", cluster=cluster)) is False

    wrong_kind = dict(owner_ref(cluster), kind="KubeadmControlPlane")
    assert owned_by(cluster)(make_machine("m2", owner_references=[wrong_kind])) is False

    stale_uid = dict(owner_ref(cluster), uid="uid-of-a-previous-incarnation")
    assert owned_by(cluster)(make_machine("m3", owner_references=[stale_uid])) is False

    no_uid = dict(owner_ref(cluster), uid="")
    assert owned_by(cluster)(make_machine("m4", owner_references=[no_uid])) is True


def test_active_and_deleting_are_complements() -> None:
    alive = make_machine("m1")
    deleting = make_machine("m2", deletion_timestamp=NOW)
    assert is_active(alive) and not has_deletion_timestamp(alive)
    assert has_deletion_timestamp(deleting) and not is_active(deleting)


@pytest.mark.parametrize(
    ("health", "remediated", "expected"),
    [
        ("False", "False", True),
        ("False", "True", False),
        ("True", "False", False),
        ("Unknown", "False", False),
    ],
)
def test_has_unhealthy_condition(health: str, remediated: str, expected: bool) -> None:
    machine = make_machine(
        "m1",
        conditions=[
            {"type": "HealthCheckSucceeded", "status": health},
            {"type": "OwnerRemediated", "status": remediated},
        ],
    )
    assert has_unhealthy_condition(machine) is expected


def test_has_unhealthy_condition_requires_both_conditions() -> None:
    machine = make_machine("m1", conditions=[{"type": "HealthCheckSucceeded", "status": "False"}])
    assert has_unhealthy_condition(machine) is False


def test_is_ready() -> None:
    assert is_ready(make_machine("m1", conditions=[{"type": "Ready", "status": "True"}])) is True
    assert is_ready(make_machine("m2", conditions=[{"type": "Ready", "status": "Unknown"}])) is False
    assert is_ready(make_machine("m3")) is False


def test_should_rollout_after_is_strict() -> None:
    rollout_after = NOW - timedelta(hours=1)
    old = make_machine("old", created_at=NOW - timedelta(days=1))
    fresh = make_machine("fresh", created_at=NOW - timedelta(minutes=5))
    boundary = make_machine("boundary", created_at=rollout_after)

    matcher = should_rollout_after(NOW, rollout_after)
    assert matcher(old) is True
    assert matcher(fresh) is False
    assert matcher(boundary) is False

    # rollout_after has not been reached yet
    assert should_rollout_after(NOW, NOW + timedelta(hours=1))(old) is False
    assert should_rollout_after(NOW, NOW)(old) is False


def test_should_rollout_after_missing_times() -> None:
    old = make_machine("old", created_at=NOW - timedelta(days=1))
    assert should_rollout_after(None, NOW)(old) is False
    assert should_rollout_after(NOW, None)(old) is False
    assert should_rollout_after(NOW, NOW - timedelta(hours=1))(make_machine("no-created-at")) is False


def test_should_rollout_after_treats_naive_datetimes_as_utc() -> None:
    old = make_machine("old", created_at=datetime(2026, 2, 1, 0, 0))
    assert should_rollout_after(NOW, datetime(2026, 2, 15, 0, 0))(old) is True


def test_has_annotation_key() -> None:
    machine = make_machine("m1", annotations={"etcdcluster/upgrade": ""})
    assert has_annotation_key("etcdcluster/upgrade")(machine) is True
    assert has_annotation_key("other")(machine) is False
    assert has_annotation_key("x")(make_machine("m2", annotations=None)) is False


def test_in_failure_domains() -> None:
    zoned = make_machine("m1", failure_domain="zone-a")
    unzoned = make_machine("m2", failure_domain=None)
    assert in_failure_domains("zone-a", "zone-b")(zoned) is True
    assert in_failure_domains("zone-b")(zoned) is False
    assert in_failure_domains(None)(unzoned) is True
    assert in_failure_domains(None)(zoned) is False
    assert in_failure_domains()(zoned) is False


def test_etcd_cluster_machines_needs_both_labels() -> None:
    matcher = etcd_cluster_machines("prod")
    assert matcher(make_machine("m1", cluster_name="prod")) is True
    assert matcher(make_machine("m2", cluster_name="staging")) is False
    assert matcher(make_machine("m3", labels={CLUSTER_NAME_LABEL: "prod"})) is False
    assert matcher(make_machine("m4", labels=None)) is False

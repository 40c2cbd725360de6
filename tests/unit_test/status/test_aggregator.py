from unittest.mock import patch

from kubeloop.controller.registry import ReconcilerDefinition, ReconcilerRegistry
from kubeloop.db.models import KubeObject, ObjectKey
from kubeloop.exceptions import ConflictError
from kubeloop.status.aggregator import StatusAggregator, aggregate_replicas


def _registry():
    registry = ReconcilerRegistry()
    registry.register(
        ReconcilerDefinition(
            kind="ReplicaSet",
            expand=lambda parent, view: [],
            child_kind="Pod",
            aggregate=lambda parent, children, view: aggregate_replicas(children),
        )
    )
    return registry


def _setup(store, make_object, ready=(True, False)):
    store.put(make_object(kind="ReplicaSet", name="rs"))
    owner = store.get("ReplicaSet", "default", "rs")
    for i, is_ready in enumerate(ready):
        store.put(make_object(name=f"rs-{i}", owner_references=[owner.owner_reference()]))
        pod = store.get("Pod", "default", f"rs-{i}")
        store.put_status("Pod", "default", pod.name, {"ready": is_ready}, pod.resource_version)
    return owner.key


class TestAggregateReplicas:
    """Pure roll-up of child readiness"""

    def test_counts_live_and_ready_children(self):
        children = [
            KubeObject(kind="Pod", name="a", status={"ready": True}),
            KubeObject(kind="Pod", name="b", status={"ready": False}),
            KubeObject(kind="Pod", name="c", status={"ready": True}, deletion_timestamp=1.0),
        ]
        assert aggregate_replicas(children) == {"replicas": 2, "readyReplicas": 1, "availableReplicas": 1}


class TestStatusAggregator:
    """Debounced, change-only status writes"""

    def test_write_waits_for_debounce_window(self, store, clock, make_object):
        key = _setup(store, make_object)
        aggregator = StatusAggregator(store, _registry(), clock, debounce_seconds=0.1)
        aggregator.mark(key)
        assert aggregator.flush() == 0

        clock.advance(0.1)
        assert aggregator.flush() == 1
        status = store.get("ReplicaSet", "default", "rs").status
        assert status["replicas"] == 2
        assert status["readyReplicas"] == 1

    def test_burst_of_marks_costs_one_write(self, store, clock, make_object):
        key = _setup(store, make_object)
        aggregator = StatusAggregator(store, _registry(), clock, debounce_seconds=0.1)
        for _ in range(10):
            aggregator.mark(key)
            clock.advance(0.01)
        clock.advance(0.1)
        aggregator.flush()
        assert aggregator.write_count == 1

    def test_unchanged_status_is_not_rewritten(self, store, clock, make_object):
        key = _setup(store, make_object)
        aggregator = StatusAggregator(store, _registry(), clock, debounce_seconds=0)
        aggregator.mark(key)
        aggregator.flush()
        revision = store.revision
        aggregator.mark(key)
        assert aggregator.flush() == 0
        assert store.revision == revision

    def test_conditions_are_preserved(self, store, clock, make_object):
        key = _setup(store, make_object)
        rs = store.get("ReplicaSet", "default", "rs")
        conditions = [{"type": "Custom", "status": "True"}]
        store.put_status("ReplicaSet", "default", "rs", {"conditions": conditions}, rs.resource_version)
        aggregator = StatusAggregator(store, _registry(), clock, debounce_seconds=0)
        aggregator.mark(key)
        aggregator.flush()
        assert store.get("ReplicaSet", "default", "rs").status["conditions"] == conditions

    def test_conflicts_are_retried_later(self, store, clock, make_object):
        key = _setup(store, make_object)
        aggregator = StatusAggregator(store, _registry(), clock, debounce_seconds=0)
        aggregator.mark(key)
        with patch.object(aggregator, "write", side_effect=ConflictError("busy")):
            assert aggregator.flush() == 0
        assert aggregator.pending() == [key]
        assert aggregator.flush() == 1

    def test_missing_parent_is_skipped(self, store, clock):
        aggregator = StatusAggregator(store, _registry(), clock, debounce_seconds=0)
        aggregator.mark(ObjectKey("ReplicaSet", "default", "ghost"))
        assert aggregator.flush() == 0

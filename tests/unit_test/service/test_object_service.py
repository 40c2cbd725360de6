from unittest.mock import patch

import pytest

from kubeloop.db.models import CLUSTER_NAMESPACE, ReconcileState
from kubeloop.exceptions import ConflictError, NotFoundError, ValidationError
from kubeloop.service.object_service import FINALIZER_WRITE_ATTEMPTS


class TestSubmit:
    """Validation, apply and versioned updates"""

    def test_invalid_spec_is_rejected_before_storage(self, service, cluster):
        revision = cluster.store.revision
        with pytest.raises(ValidationError) as exc_info:
            service.submit("ReplicaSet", "default", "rs", {"replicas": -1, "selector": {}})
        assert exc_info.value.errors
        assert cluster.store.revision == revision

    def test_unknown_kind_is_rejected(self, service):
        with pytest.raises(ValidationError):
            service.submit("Gizmo", "default", "g", {})

    def test_defaults_are_filled_in(self, service, pod_template):
        service.submit("Deployment", "default", "web", pod_template())
        spec = service.get("Deployment", "default", "web").spec
        assert spec["replicas"] == 1
        assert spec["strategy"]["type"] == "RollingUpdate"

    def test_apply_overwrites_current_version(self, service, pod_template):
        first = service.submit("ReplicaSet", "default", "rs", {"replicas": 1, **pod_template()})
        second = service.submit("ReplicaSet", "default", "rs", {"replicas": 2, **pod_template()})
        rs = service.get("ReplicaSet", "default", "rs")
        assert second > first
        assert rs.spec["replicas"] == 2
        assert rs.generation == 2

    def test_apply_keeps_finalizers(self, service):
        service.submit("Node", None, "n1", {}, finalizers=["example.com/keep"])
        service.submit("Node", None, "n1", {"unschedulable": True})
        assert service.get("Node", None, "n1").finalizers == ["example.com/keep"]

    def test_stale_expected_version_conflicts(self, service):
        version = service.submit("Node", None, "n1", {})
        service.submit("Node", None, "n1", {"unschedulable": True}, expected_version=version)
        with pytest.raises(ConflictError) as exc_info:
            service.submit("Node", None, "n1", {}, expected_version=version)
        assert exc_info.value.current_version > version

    def test_cluster_scoped_kinds_ignore_namespace(self, service):
        service.submit("Node", "team-a", "n1", {})
        assert service.get("Node", None, "n1").namespace == CLUSTER_NAMESPACE


class TestRead:
    """Lists, selectors and status"""

    def test_list_with_label_selector(self, service):
        service.submit("Node", None, "n1", {}, labels={"zone": "z1"})
        service.submit("Node", None, "n2", {}, labels={"zone": "z2"})
        listed = service.list("Node", None, "zone=z2")
        assert [node.name for node in listed.items] == ["n2"]
        assert listed.resource_version >= 2

    def test_get_missing_raises(self, service):
        with pytest.raises(NotFoundError):
            service.get("Pod", "default", "nope")

    def test_status_reports_reconcile_state(self, cluster, service, add_nodes, pod_template):
        add_nodes("n1")
        service.submit("ReplicaSet", "default", "rs", {"replicas": 1, **pod_template()})
        cluster.run_until_settled()
        status = service.get_status("ReplicaSet", "default", "rs")
        assert status.generation == 1
        assert status.observed_generation == 1
        assert status.reconcile_state == ReconcileState.SETTLED.value


class TestDelete:
    """Deletes and finalizer removal"""

    def test_finalizer_holds_object_until_removed(self, service):
        service.submit("Node", None, "n1", {}, finalizers=["example.com/drain"])
        terminating = service.delete("Node", None, "n1")
        assert terminating.is_terminating
        assert service.get("Node", None, "n1").is_terminating

        service.remove_finalizer("Node", None, "n1", "example.com/drain")
        with pytest.raises(NotFoundError):
            service.get("Node", None, "n1")

    def test_delete_with_stale_version_conflicts(self, service):
        version = service.submit("Node", None, "n1", {})
        service.submit("Node", None, "n1", {"unschedulable": True})
        with pytest.raises(ConflictError):
            service.delete("Node", None, "n1", expected_version=version)

    def test_remove_finalizer_retries_after_conflict(self, service):
        service.submit("Node", None, "n1", {}, finalizers=["example.com/drain", "example.com/backup"])
        put = service.store.put
        attempts = []

        def racing_put(obj, expected_version=None):
            attempts.append(expected_version)
            if len(attempts) == 1:
                raise ConflictError("n1 changed", current_version=expected_version + 1)
            return put(obj, expected_version=expected_version)

        with patch.object(service.store, "put", side_effect=racing_put):
            service.remove_finalizer("Node", None, "n1", "example.com/drain")
        assert len(attempts) == 2
        assert service.get("Node", None, "n1").finalizers == ["example.com/backup"]

    def test_remove_finalizer_gives_up_on_persistent_conflicts(self, service):
        service.submit("Node", None, "n1", {}, finalizers=["example.com/drain"])
        with patch.object(service.store, "put", side_effect=ConflictError("n1 changed")) as put:
            with pytest.raises(ConflictError):
                service.remove_finalizer("Node", None, "n1", "example.com/drain")
        assert put.call_count == FINALIZER_WRITE_ATTEMPTS
        assert service.get("Node", None, "n1").finalizers == ["example.com/drain"]

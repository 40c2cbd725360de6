"""
Tests for the built-in kinds, each driven through a synchronous cluster
(store, engine, aggregator, garbage collector and a simulated node agent).
"""

import pytest

from kubeloop.config import settings
from kubeloop.controllers.autoscaler import desired_replicas
from kubeloop.controllers.pod_placement import POD_SCHEDULED
from kubeloop.controllers.workloads import POD_TEMPLATE_HASH_LABEL, template_hash
from kubeloop.db.models import ConditionStatus
from kubeloop.schema.specs import HorizontalPodAutoscalerSpec


def pods(service, namespace="default"):
    return {pod.name: pod for pod in service.list("Pod", namespace).items}


class TestPodPlacement:
    """Binding standalone pods to nodes"""

    def test_pod_is_bound_and_started(self, cluster, service, add_nodes):
        add_nodes("n1", "n2")
        service.submit("Pod", "default", "p", {"image": "app:1"})
        cluster.run_until_settled()

        pod = service.get("Pod", "default", "p")
        assert pod.spec["nodeName"] == "n1"
        assert pod.status["phase"] == "Running"
        assert pod.get_condition(POD_SCHEDULED).status == ConditionStatus.TRUE

    def test_unschedulable_pod_reports_condition(self, cluster, service, add_nodes):
        add_nodes("n1", labels={"disk": "hdd"})
        service.submit("Pod", "default", "p", {"image": "app:1", "nodeSelector": {"matchLabels": {"disk": "ssd"}}})
        cluster.run_until_settled()

        pod = service.get("Pod", "default", "p")
        assert "nodeName" not in pod.spec
        condition = pod.get_condition(POD_SCHEDULED)
        assert condition.status == ConditionStatus.FALSE
        assert condition.reason == "Unschedulable"
        assert "n1" in condition.message
        assert pod.status["phase"] == "Pending"

    def test_unschedulable_pod_is_retried_on_timer(self, cluster, service, clock):
        service.submit("Pod", "default", "p", {"image": "app:1"})
        cluster.run_until_settled()
        assert cluster.engine.queue.waiting_count() >= 1
        passes = cluster.engine.reconcile_count

        clock.advance(settings.unschedulable_retry_seconds)
        cluster.run_until_settled()
        assert cluster.engine.reconcile_count > passes
        assert service.get("Pod", "default", "p").get_condition(POD_SCHEDULED).status == ConditionStatus.FALSE

    def test_pending_pod_is_bound_when_node_appears(self, cluster, service, add_nodes):
        service.submit("Pod", "default", "p", {"image": "app:1", "nodeSelector": {"matchLabels": {"disk": "ssd"}}})
        cluster.run_until_settled()
        add_nodes("n1", labels={"disk": "ssd"})
        cluster.run_until_settled()

        pod = service.get("Pod", "default", "p")
        assert pod.spec["nodeName"] == "n1"
        assert pod.get_condition(POD_SCHEDULED).status == ConditionStatus.TRUE

    def test_staggered_resyncs_keep_one_retry_timer(self, cluster, service, clock):
        service.submit("Pod", "default", "p", {"image": "app:1"})
        cluster.run_until_settled()
        for _ in range(5):
            clock.advance(1)
            cluster.engine.resync()
            cluster.run_until_settled()

        period = int(settings.unschedulable_retry_seconds)
        passes_per_period = []
        for _ in range(4):
            before = cluster.engine.reconcile_count
            for _ in range(period):
                clock.advance(1)
                cluster.run_until_settled()
            passes_per_period.append(cluster.engine.reconcile_count - before)

        assert passes_per_period == [1, 1, 1, 1]
        assert cluster.engine.queue.waiting_count() == 1

    def test_pending_pod_is_bound_when_existing_node_is_relabeled(self, cluster, service, add_nodes):
        taints = [{"key": "dedicated", "value": "db", "effect": "NoSchedule"}]
        add_nodes("n1", labels={"disk": "hdd"}, taints=taints)
        service.submit(
            "Pod",
            "default",
            "p",
            {
                "image": "db:1",
                "nodeSelector": {"matchLabels": {"disk": "ssd"}},
                "tolerations": [{"key": "dedicated", "value": "db", "effect": "NoSchedule"}],
            },
        )
        cluster.run_until_settled()
        assert service.get("Pod", "default", "p").get_condition(POD_SCHEDULED).status == ConditionStatus.FALSE

        node = service.get("Node", None, "n1")
        service.submit(
            "Node", None, "n1", {"taints": taints}, labels={"disk": "ssd"}, expected_version=node.resource_version
        )
        cluster.run_until_settled()

        pod = service.get("Pod", "default", "p")
        assert pod.spec["nodeName"] == "n1"
        assert pod.get_condition(POD_SCHEDULED).status == ConditionStatus.TRUE

    def test_pending_pod_is_bound_when_node_taint_changes(self, cluster, service, add_nodes):
        add_nodes("n1", labels={"disk": "ssd"}, taints=[{"key": "dedicated", "value": "cache", "effect": "NoSchedule"}])
        service.submit(
            "Pod",
            "default",
            "p",
            {
                "image": "db:1",
                "nodeSelector": {"matchLabels": {"disk": "ssd"}},
                "tolerations": [{"key": "dedicated", "value": "db", "effect": "NoSchedule"}],
            },
        )
        cluster.run_until_settled()
        condition = service.get("Pod", "default", "p").get_condition(POD_SCHEDULED)
        assert condition.reason == "Unschedulable"

        node = service.get("Node", None, "n1")
        service.submit(
            "Node",
            None,
            "n1",
            {"taints": [{"key": "dedicated", "value": "db", "effect": "NoSchedule"}]},
            labels={"disk": "ssd"},
            expected_version=node.resource_version,
        )
        cluster.run_until_settled()
        assert service.get("Pod", "default", "p").spec["nodeName"] == "n1"

    def test_no_execute_taint_evicts_pod(self, cluster, service, add_nodes):
        add_nodes("n1")
        service.submit("Pod", "default", "p", {"image": "app:1"})
        cluster.run_until_settled()

        node = service.get("Node", None, "n1")
        service.submit(
            "Node",
            None,
            "n1",
            {"taints": [{"key": "maintenance", "effect": "NoExecute"}]},
            expected_version=node.resource_version,
        )
        cluster.run_until_settled()
        assert "p" not in pods(service)


class TestReplicaSet:
    """Fixed identity slots with Recreate ordering"""

    def test_creates_named_replicas(self, cluster, service, add_nodes, pod_template):
        add_nodes("n1")
        service.submit("ReplicaSet", "default", "rs", {"replicas": 3, **pod_template()})
        cluster.run_until_settled()

        assert sorted(pods(service)) == ["rs-0", "rs-1", "rs-2"]
        status = service.get_status("ReplicaSet", "default", "rs").status
        assert status["replicas"] == 3
        assert status["readyReplicas"] == 3
        assert status["observedGeneration"] == 1

    def test_failed_pod_is_replaced(self, cluster, service, add_nodes, pod_template):
        add_nodes("n1")
        service.submit("ReplicaSet", "default", "rs", {"replicas": 2, **pod_template()})
        cluster.run_until_settled()
        old_uid = service.get("Pod", "default", "rs-1").uid

        cluster.node_agent.fail_pod("default", "rs-1", reason="OOMKilled")
        cluster.run_until_settled()

        replacement = service.get("Pod", "default", "rs-1")
        assert replacement.uid != old_uid
        assert replacement.status["phase"] == "Running"

    def test_scale_down_removes_highest_ordinals(self, cluster, service, add_nodes, pod_template):
        add_nodes("n1")
        service.submit("ReplicaSet", "default", "rs", {"replicas": 3, **pod_template()})
        cluster.run_until_settled()
        service.submit("ReplicaSet", "default", "rs", {"replicas": 1, **pod_template()})
        cluster.run_until_settled()
        assert sorted(pods(service)) == ["rs-0"]


class TestDeployment:
    """Template revisions and rolling updates"""

    def test_pods_carry_template_hash(self, cluster, service, add_nodes, pod_template):
        add_nodes("n1")
        spec = {"replicas": 2, **pod_template()}
        service.submit("Deployment", "default", "web", spec)
        cluster.run_until_settled()

        deployment = service.get("Deployment", "default", "web")
        revision = template_hash(deployment.spec["template"])
        assert sorted(pods(service)) == [f"web-{revision}-0", f"web-{revision}-1"]
        assert all(p.labels[POD_TEMPLATE_HASH_LABEL] == revision for p in pods(service).values())
        status = deployment.status
        assert status["updatedReplicas"] == 2
        assert status["availableReplicas"] == 2

    def test_recreate_strategy_replaces_all_pods(self, cluster, service, add_nodes, pod_template):
        add_nodes("n1")
        spec = {"replicas": 2, "strategy": {"type": "Recreate"}, **pod_template()}
        service.submit("Deployment", "default", "web", spec)
        cluster.run_until_settled()

        service.submit("Deployment", "default", "web", {**spec, **pod_template(image="web:2")})
        cluster.run_until_settled()
        images = {p.spec["image"] for p in pods(service).values()}
        assert images == {"web:2"}
        assert len(pods(service)) == 2


class TestDaemonSet:
    """One pinned pod per eligible node"""

    def test_one_pod_per_eligible_node(self, cluster, service, add_nodes, pod_template):
        add_nodes("n1", "n2")
        add_nodes("n3", taints=[{"key": "dedicated", "effect": "NoSchedule"}])
        service.submit("DaemonSet", "default", "agent", pod_template(app="agent", image="agent:1"))
        cluster.run_until_settled()

        assert {p.name: p.spec["nodeName"] for p in pods(service).values()} == {
            "agent-n1": "n1",
            "agent-n2": "n2",
        }
        status = service.get_status("DaemonSet", "default", "agent").status
        assert status["desiredNumberScheduled"] == 2
        assert status["numberReady"] == 2

    def test_new_node_gets_a_pod(self, cluster, service, add_nodes, pod_template):
        add_nodes("n1")
        service.submit("DaemonSet", "default", "agent", pod_template(app="agent", image="agent:1"))
        cluster.run_until_settled()
        add_nodes("n2")
        cluster.run_until_settled()
        assert sorted(pods(service)) == ["agent-n1", "agent-n2"]
        assert service.get_status("DaemonSet", "default", "agent").status["currentNumberScheduled"] == 2


class TestHorizontalPodAutoscaler:
    """Utilization-driven scaling of a workload"""

    def test_desired_replicas_formula(self):
        spec = HorizontalPodAutoscalerSpec.model_validate(
            {"scaleTargetRef": {"kind": "Deployment", "name": "web"}, "minReplicas": 1, "maxReplicas": 10, "targetUtilization": 0.5}
        )
        assert desired_replicas(2, 1.0, spec, 0.1) == 4
        assert desired_replicas(4, 0.52, spec, 0.1) == 4
        assert desired_replicas(4, 0.1, spec, 0.1) == 1
        assert desired_replicas(4, 5.0, spec, 0.1) == 10
        assert desired_replicas(3, None, spec, 0.1) == 3

    def test_scales_target_on_sync_period(self, cluster, service, add_nodes, pod_template, clock):
        add_nodes("n1")
        service.submit("Deployment", "default", "web", {"replicas": 2, **pod_template()})
        service.submit(
            "HorizontalPodAutoscaler",
            "default",
            "web",
            {"scaleTargetRef": {"kind": "Deployment", "name": "web"}, "maxReplicas": 5, "targetUtilization": 0.5},
        )
        cluster.run_until_settled()
        for name in pods(service):
            cluster.node_agent.set_utilization("default", name, 1.0)

        clock.advance(settings.hpa_sync_seconds)
        cluster.run_until_settled()

        assert service.get("Deployment", "default", "web").spec["replicas"] == 4
        assert len(pods(service)) == 4
        status = service.get_status("HorizontalPodAutoscaler", "default", "web").status
        assert status["desiredReplicas"] == 4
        assert status["currentUtilization"] == 1.0

    def test_missing_target_is_reported(self, cluster, service):
        service.submit(
            "HorizontalPodAutoscaler",
            "default",
            "web",
            {"scaleTargetRef": {"kind": "Deployment", "name": "nope"}, "maxReplicas": 5, "targetUtilization": 0.5},
        )
        cluster.run_until_settled()
        hpa = service.get("HorizontalPodAutoscaler", "default", "web")
        assert hpa.get_condition("AbleToScale").reason == "TargetNotFound"


class TestVolumeBinding:
    """PersistentVolumeClaim to PersistentVolume binding"""

    @pytest.fixture
    def volumes(self, service):
        service.submit("PersistentVolume", None, "pv-small", {"capacity": "5Gi", "storageClassName": "fast"})
        service.submit("PersistentVolume", None, "pv-large", {"capacity": "20Gi", "storageClassName": "fast"})
        service.submit("PersistentVolume", None, "pv-slow", {"capacity": "5Gi", "storageClassName": "slow"})

    def test_claim_binds_smallest_fitting_volume(self, cluster, service, volumes):
        service.submit("PersistentVolumeClaim", "default", "data", {"request": "3Gi", "storageClassName": "fast"})
        cluster.run_until_settled()

        claim = service.get("PersistentVolumeClaim", "default", "data")
        assert claim.spec["volumeName"] == "pv-small"
        assert claim.status["phase"] == "Bound"
        volume = service.get("PersistentVolume", None, "pv-small")
        assert volume.spec["claimRef"]["uid"] == claim.uid
        assert volume.status["phase"] == "Bound"
        assert service.get("PersistentVolume", None, "pv-large").status["phase"] == "Available"

    def test_unbound_claim_waits_for_volume(self, cluster, service, volumes):
        service.submit("PersistentVolumeClaim", "default", "big", {"request": "50Gi", "storageClassName": "fast"})
        cluster.run_until_settled()
        assert service.get("PersistentVolumeClaim", "default", "big").status["phase"] == "Pending"

        service.submit("PersistentVolume", None, "pv-huge", {"capacity": "100Gi", "storageClassName": "fast"})
        cluster.run_until_settled()
        assert service.get("PersistentVolumeClaim", "default", "big").spec["volumeName"] == "pv-huge"

    def test_deleted_claim_releases_volume(self, cluster, service, volumes):
        service.submit("PersistentVolumeClaim", "default", "data", {"request": "1Gi", "storageClassName": "fast"})
        cluster.run_until_settled()
        service.delete("PersistentVolumeClaim", "default", "data")
        cluster.run_until_settled()
        assert service.get("PersistentVolume", None, "pv-small").status["phase"] == "Released"

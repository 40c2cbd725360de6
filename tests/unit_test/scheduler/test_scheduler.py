"""
Unit tests for pod placement: hard filters, soft scoring, determinism and
the per-node eligibility check used by DaemonSets.
"""

import random

import pytest

from kubeloop.db.models import KubeObject
from kubeloop.exceptions import Unschedulable
from kubeloop.scheduler import Scheduler, evicting_taints, node_is_eligible
from kubeloop.schema.specs import PodSpec


def node(name, labels=None, taints=None, unschedulable=False):
    return KubeObject(
        kind="Node",
        namespace="",
        name=name,
        uid=f"uid-{name}",
        labels=labels or {},
        spec={"taints": taints or [], "unschedulable": unschedulable},
    )


def pod(name="p", labels=None, node_name=None, **spec):
    spec = {"image": "app:1", **spec}
    if node_name:
        spec["nodeName"] = node_name
    return KubeObject(kind="Pod", name=name, uid=f"uid-{name}", labels=labels or {}, spec=spec)


def anti_affinity(required=True, weight=1, topology_key="zone", app="web"):
    return {
        "podAntiAffinity": [
            {
                "selector": {"matchLabels": {"app": app}},
                "topologyKey": topology_key,
                "required": required,
                "weight": weight,
            }
        ]
    }


class TestFilters:
    """Hard constraints"""

    def test_node_selector(self):
        nodes = [node("a", {"disk": "hdd"}), node("b", {"disk": "ssd"})]
        chosen = Scheduler().schedule(pod(nodeSelector={"matchLabels": {"disk": "ssd"}}), nodes)
        assert chosen == "b"

    def test_untolerated_no_schedule_taint_excludes_node(self):
        nodes = [node("a", taints=[{"key": "gpu", "value": "true", "effect": "NoSchedule"}]), node("b")]
        assert Scheduler().schedule(pod(), nodes) == "b"

    def test_toleration_admits_tainted_node(self):
        nodes = [node("a", labels={"gpu": "yes"}, taints=[{"key": "gpu", "value": "true", "effect": "NoSchedule"}])]
        tolerant = pod(tolerations=[{"key": "gpu", "operator": "Equal", "value": "true", "effect": "NoSchedule"}])
        assert Scheduler().schedule(tolerant, nodes) == "a"

    def test_unschedulable_node_is_skipped(self):
        assert Scheduler().schedule(pod(), [node("a", unschedulable=True), node("b")]) == "b"

    def test_reasons_are_reported_per_node(self):
        nodes = [
            node("a", unschedulable=True),
            node("b", {"disk": "ssd"}, taints=[{"key": "k", "effect": "NoExecute"}]),
            node("c", {"disk": "hdd"}),
        ]
        with pytest.raises(Unschedulable) as exc_info:
            Scheduler().schedule(pod(nodeSelector={"matchLabels": {"disk": "ssd"}}), nodes)
        reasons = exc_info.value.reasons
        assert set(reasons) == {"a", "b", "c"}
        assert "unschedulable" in reasons["a"]
        assert "taint" in reasons["b"]
        assert "selector" in reasons["c"]

    def test_no_nodes_is_unschedulable(self):
        with pytest.raises(Unschedulable):
            Scheduler().schedule(pod(), [])

    def test_required_anti_affinity_spreads_across_domains(self):
        nodes = [node("a", {"zone": "z1"}), node("b", {"zone": "z1"}), node("c", {"zone": "z2"})]
        placed = [pod("web-0", {"app": "web"}, node_name="a")]
        chosen = Scheduler().schedule(pod("web-1", {"app": "web"}, affinity=anti_affinity()), nodes, placed)
        assert chosen == "c"

    def test_required_anti_affinity_exhausted(self):
        nodes = [node("a", {"zone": "z1"})]
        placed = [pod("web-0", {"app": "web"}, node_name="a")]
        with pytest.raises(Unschedulable):
            Scheduler().schedule(pod("web-1", {"app": "web"}, affinity=anti_affinity()), nodes, placed)

    def test_required_affinity_follows_siblings(self):
        affinity = {
            "podAffinity": [{"selector": {"matchLabels": {"app": "db"}}, "topologyKey": "zone", "required": True}]
        }
        nodes = [node("a", {"zone": "z1"}), node("b", {"zone": "z2"})]
        placed = [pod("db-0", {"app": "db"}, node_name="b")]
        assert Scheduler().schedule(pod(affinity=affinity), nodes, placed) == "b"

    def test_required_affinity_without_siblings_anywhere(self):
        affinity = {
            "podAffinity": [{"selector": {"matchLabels": {"app": "db"}}, "topologyKey": "zone", "required": True}]
        }
        nodes = [node("a", {"zone": "z1"}), node("b", {"zone": "z2"})]
        assert Scheduler().schedule(pod(affinity=affinity), nodes) == "a"


class TestScoring:
    """Soft preferences and tie breaking"""

    def test_weighted_node_preference(self):
        affinity = {
            "nodePreferences": [
                {"weight": 10, "selector": {"matchLabels": {"zone": "z1"}}},
                {"weight": 50, "selector": {"matchLabels": {"disk": "ssd"}}},
            ]
        }
        nodes = [node("a", {"zone": "z1"}), node("b", {"disk": "ssd"})]
        assert Scheduler().schedule(pod(affinity=affinity), nodes) == "b"

    def test_prefer_no_schedule_is_avoided_not_forbidden(self):
        soft = [{"key": "spot", "effect": "PreferNoSchedule"}]
        assert Scheduler().schedule(pod(), [node("a", taints=soft), node("b")]) == "b"
        assert Scheduler().schedule(pod(), [node("a", taints=soft)]) == "a"

    def test_soft_anti_affinity_prefers_empty_domain(self):
        nodes = [node("a", {"zone": "z1"}), node("b", {"zone": "z2"})]
        placed = [pod("web-0", {"app": "web"}, node_name="a")]
        new = pod("web-1", {"app": "web"}, affinity=anti_affinity(required=False, weight=5))
        assert Scheduler().schedule(new, nodes, placed) == "b"

    def test_ties_break_by_node_name(self):
        nodes = [node("c"), node("a"), node("b")]
        assert Scheduler().schedule(pod(), nodes) == "a"

    def test_placement_is_deterministic(self):
        nodes = [node(f"n{i}", {"zone": f"z{i % 3}"}) for i in range(9)]
        placed = [pod(f"web-{i}", {"app": "web"}, node_name=f"n{i}") for i in range(4)]
        new = pod("web-9", {"app": "web"}, affinity=anti_affinity(required=False, weight=3))
        results = set()
        rng = random.Random(11)
        for _ in range(20):
            shuffled_nodes = list(nodes)
            shuffled_placed = list(placed)
            rng.shuffle(shuffled_nodes)
            rng.shuffle(shuffled_placed)
            results.add(Scheduler().schedule(new, shuffled_nodes, shuffled_placed))
        assert len(results) == 1


class TestNodeChecks:
    """Helpers shared with per-node workloads and eviction"""

    def test_node_is_eligible(self):
        spec = PodSpec.model_validate({"image": "agent:1", "nodeSelector": {"matchLabels": {"role": "worker"}}})
        assert node_is_eligible(spec, node("a", {"role": "worker"}))
        assert not node_is_eligible(spec, node("b", {"role": "master"}))
        tainted = node("c", {"role": "worker"}, taints=[{"key": "x", "effect": "NoSchedule"}])
        assert not node_is_eligible(spec, tainted)

    def test_evicting_taints(self):
        spec = PodSpec.model_validate({"image": "app:1"})
        tainted = node("a", taints=[{"key": "maintenance", "effect": "NoExecute"}])
        assert [t.key for t in evicting_taints(spec, tainted)] == ["maintenance"]
        tolerant = PodSpec.model_validate({"image": "app:1", "tolerations": [{"operator": "Exists"}]})
        assert evicting_taints(tolerant, tainted) == []

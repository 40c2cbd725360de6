# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Placement predicates and scorers.

A predicate returns None when the node passes, or a human readable reason
when it is filtered out. A scorer returns an integer contribution; the
scheduler sums them.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from kubeloop.config import settings
from kubeloop.db.models import KubeObject, Taint, TaintEffect, Toleration
from kubeloop.schema.specs import NodeSpec, PodAffinityTerm, PodSpec

HARD_TAINT_EFFECTS = (TaintEffect.NO_SCHEDULE, TaintEffect.NO_EXECUTE)


@dataclass
class PlacementContext:
    """What the scheduler knows while placing one pod"""

    pod: KubeObject
    pod_spec: PodSpec
    nodes: List[KubeObject]
    placed_pods: List[KubeObject] = field(default_factory=list)
    _nodes_by_name: Dict[str, KubeObject] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        self._nodes_by_name = {node.name: node for node in self.nodes}

    def siblings(self, term: PodAffinityTerm) -> List[KubeObject]:
        """Placed pods in the pod's namespace that the term selects"""
        return [
            other
            for other in self.placed_pods
            if other.namespace == self.pod.namespace
            and other.uid != self.pod.uid
            and term.selector.matches(other.labels)
        ]

    def siblings_in_domain(self, term: PodAffinityTerm, node: KubeObject) -> int:
        domain = node.labels.get(term.topology_key)
        if domain is None:
            return 0
        count = 0
        for sibling in self.siblings(term):
            host = self._nodes_by_name.get(sibling.spec.get("nodeName"))
            if host is not None and host.labels.get(term.topology_key) == domain:
                count += 1
        return count


Predicate = Callable[[PlacementContext, KubeObject, NodeSpec], Optional[str]]
Scorer = Callable[[PlacementContext, KubeObject, NodeSpec], int]


def untolerated_taints(
    tolerations: Iterable[Toleration], taints: Iterable[Taint], effects: Iterable[TaintEffect]
) -> List[Taint]:
    tolerations = list(tolerations)
    effects = set(effects)
    return [
        taint
        for taint in taints
        if taint.effect in effects and not any(toleration.tolerates(taint) for toleration in tolerations)
    ]


def match_node_selector(ctx: PlacementContext, node: KubeObject, node_spec: NodeSpec) -> Optional[str]:
    if ctx.pod_spec.node_selector.matches(node.labels):
        return None
    return "node selector does not match"


def tolerate_taints(ctx: PlacementContext, node: KubeObject, node_spec: NodeSpec) -> Optional[str]:
    blocking = untolerated_taints(ctx.pod_spec.tolerations, node_spec.taints, HARD_TAINT_EFFECTS)
    if not blocking:
        return None
    taint = blocking[0]
    return f"untolerated taint {taint.key}={taint.value}:{taint.effect.value}"


def node_schedulable(ctx: PlacementContext, node: KubeObject, node_spec: NodeSpec) -> Optional[str]:
    if node_spec.unschedulable:
        return "node is unschedulable"
    return None


def pod_anti_affinity(ctx: PlacementContext, node: KubeObject, node_spec: NodeSpec) -> Optional[str]:
    for term in ctx.pod_spec.affinity.pod_anti_affinity:
        if term.required and ctx.siblings_in_domain(term, node) > 0:
            return f"anti-affinity: a matching pod already runs in {term.topology_key}={node.labels.get(term.topology_key)}"
    return None


def pod_affinity(ctx: PlacementContext, node: KubeObject, node_spec: NodeSpec) -> Optional[str]:
    for term in ctx.pod_spec.affinity.pod_affinity:
        if not term.required:
            continue
        # The first pod of a group has nothing to co-locate with
        if not ctx.siblings(term):
            continue
        if ctx.siblings_in_domain(term, node) == 0:
            return f"affinity: no matching pod in {term.topology_key}={node.labels.get(term.topology_key)}"
    return None


def node_preference_score(ctx: PlacementContext, node: KubeObject, node_spec: NodeSpec) -> int:
    return sum(pref.weight for pref in ctx.pod_spec.affinity.node_preferences if pref.selector.matches(node.labels))


def prefer_no_schedule_score(ctx: PlacementContext, node: KubeObject, node_spec: NodeSpec) -> int:
    soft = untolerated_taints(ctx.pod_spec.tolerations, node_spec.taints, [TaintEffect.PREFER_NO_SCHEDULE])
    return -settings.prefer_no_schedule_penalty * len(soft)


def pod_spreading_score(ctx: PlacementContext, node: KubeObject, node_spec: NodeSpec) -> int:
    score = 0
    for term in ctx.pod_spec.affinity.pod_anti_affinity:
        if not term.required:
            score -= term.weight * ctx.siblings_in_domain(term, node)
    for term in ctx.pod_spec.affinity.pod_affinity:
        if not term.required and ctx.siblings_in_domain(term, node) > 0:
            score += term.weight
    return score


DEFAULT_PREDICATES: List[Predicate] = [
    node_schedulable,
    match_node_selector,
    tolerate_taints,
    pod_anti_affinity,
    pod_affinity,
]

DEFAULT_SCORERS: List[Scorer] = [
    node_preference_score,
    prefer_no_schedule_score,
    pod_spreading_score,
]

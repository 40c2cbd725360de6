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

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from kubeloop.db.models import KubeObject, TaintEffect
from kubeloop.exceptions import Unschedulable
from kubeloop.scheduler.predicates import (
    DEFAULT_PREDICATES,
    DEFAULT_SCORERS,
    HARD_TAINT_EFFECTS,
    PlacementContext,
    Predicate,
    Scorer,
    match_node_selector,
    untolerated_taints,
)
from kubeloop.schema.specs import NodeSpec, PodSpec

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Picks a node for a pod: filter, then score, then break ties by name.

    The result depends only on the inputs, so repeated runs over the same
    nodes and placed pods always pick the same node.
    """

    def __init__(self, predicates: Optional[List[Predicate]] = None, scorers: Optional[List[Scorer]] = None):
        self.predicates = list(DEFAULT_PREDICATES if predicates is None else predicates)
        self.scorers = list(DEFAULT_SCORERS if scorers is None else scorers)

    def filter(self, ctx: PlacementContext) -> Tuple[List[Tuple[KubeObject, NodeSpec]], Dict[str, str]]:
        feasible = []
        reasons: Dict[str, str] = {}
        for node in ctx.nodes:
            node_spec = NodeSpec.model_validate(node.spec)
            for predicate in self.predicates:
                reason = predicate(ctx, node, node_spec)
                if reason is not None:
                    reasons[node.name] = reason
                    break
            else:
                feasible.append((node, node_spec))
        return feasible, reasons

    def score(self, ctx: PlacementContext, node: KubeObject, node_spec: NodeSpec) -> int:
        return sum(scorer(ctx, node, node_spec) for scorer in self.scorers)

    def schedule(
        self, pod: KubeObject, nodes: Iterable[KubeObject], placed_pods: Iterable[KubeObject] = ()
    ) -> str:
        """
        Choose the node for ``pod``.

        Returns:
            The chosen node name

        Raises:
            Unschedulable: no node passes the filters; ``reasons`` maps each
                node to the first filter it failed
        """
        ctx = PlacementContext(
            pod=pod,
            pod_spec=PodSpec.model_validate(pod.spec),
            nodes=sorted((node for node in nodes if not node.is_terminating), key=lambda n: n.name),
            placed_pods=[p for p in placed_pods if p.spec.get("nodeName") and not p.is_terminating],
        )
        if not ctx.nodes:
            raise Unschedulable(f"0/0 nodes are available for {pod.key}")

        feasible, reasons = self.filter(ctx)
        if not feasible:
            raise Unschedulable(
                f"0/{len(ctx.nodes)} nodes are available for {pod.key}",
                reasons=reasons,
            )

        scored = [(self.score(ctx, node, node_spec), node.name) for node, node_spec in feasible]
        # Highest score wins, then the lexicographically smallest name
        best_score, best_node = min(scored, key=lambda item: (-item[0], item[1]))
        logger.debug(f"Scheduling {pod.key}: scores={scored}, chose {best_node}")
        return best_node


def node_is_eligible(pod_spec: PodSpec, node: KubeObject) -> bool:
    """Node-local checks a per-node workload applies before pinning a pod"""
    if node.is_terminating:
        return False
    ctx = PlacementContext(pod=KubeObject(kind="Pod", name=""), pod_spec=pod_spec, nodes=[node])
    node_spec = NodeSpec.model_validate(node.spec)
    if match_node_selector(ctx, node, node_spec) is not None:
        return False
    return not untolerated_taints(pod_spec.tolerations, node_spec.taints, HARD_TAINT_EFFECTS)


def evicting_taints(pod_spec: PodSpec, node: KubeObject):
    """NoExecute taints on the node the pod does not tolerate"""
    node_spec = NodeSpec.model_validate(node.spec)
    return untolerated_taints(pod_spec.tolerations, node_spec.taints, [TaintEffect.NO_EXECUTE])

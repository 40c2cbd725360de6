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

"""Binds pending pods to nodes and evicts pods from NoExecute-tainted nodes"""

import logging
from typing import List, Optional

from kubeloop.config import settings
from kubeloop.controller.context import ClusterView, ReconcileContext
from kubeloop.controller.registry import ReconcilerDefinition, SyncResult
from kubeloop.db.models import CLUSTER_NAMESPACE, Condition, ConditionStatus, KubeObject, ObjectKey, set_condition
from kubeloop.exceptions import Unschedulable
from kubeloop.scheduler import Scheduler, evicting_taints
from kubeloop.schema.specs import PodSpec

logger = logging.getLogger(__name__)

POD_SCHEDULED = "PodScheduled"
PENDING_PHASE = "Pending"


def _pending_pods(view: ClusterView, namespace: Optional[str] = None) -> List[ObjectKey]:
    return [
        pod.key
        for pod in view.list("Pod", namespace)
        if not pod.spec.get("nodeName") and not pod.is_terminating
    ]


def requeue_pending_on_node_event(node: KubeObject, view: ClusterView) -> List[ObjectKey]:
    """Any node change may make a pending pod schedulable"""
    return _pending_pods(view)


def requeue_pending_on_placement(pod: KubeObject, view: ClusterView) -> List[ObjectKey]:
    """A placed (or removed) pod may satisfy affinity or free an anti-affinity domain"""
    if not pod.spec.get("nodeName"):
        return []
    return [key for key in _pending_pods(view, pod.namespace) if key != pod.key]


def requeue_pods_on_node(node: KubeObject, view: ClusterView) -> List[ObjectKey]:
    """Bound pods must re-check NoExecute taints when their node changes"""
    return [pod.key for pod in view.list("Pod") if pod.spec.get("nodeName") == node.name]


class PodPlacementReconciler:
    def __init__(self, scheduler: Optional[Scheduler] = None):
        self.scheduler = scheduler or Scheduler()

    def sync(self, ctx: ReconcileContext) -> SyncResult:
        pod = ctx.parent
        pod_spec = PodSpec.model_validate(pod.spec)
        if pod_spec.node_name:
            return self._check_eviction(ctx, pod, pod_spec)

        nodes = ctx.view.list("Node", CLUSTER_NAMESPACE)
        placed = [other for other in ctx.view.list("Pod", pod.namespace) if other.spec.get("nodeName")]
        try:
            node_name = self.scheduler.schedule(pod, nodes, placed)
        except Unschedulable as e:
            reasons = "; ".join(f"{node}: {reason}" for node, reason in sorted(e.reasons.items()))
            logger.info(f"{pod.key} is unschedulable: {e} {reasons}")
            condition = Condition(
                type=POD_SCHEDULED,
                status=ConditionStatus.FALSE,
                reason="Unschedulable",
                message=f"{e}: {reasons}" if reasons else str(e),
            )
            now = ctx.clock.wall()
            ctx.patch_status(
                lambda status: set_condition({**status, "phase": status.get("phase") or PENDING_PHASE}, condition, now)
            )
            return SyncResult(settled=False, requeue_after=settings.unschedulable_retry_seconds)

        bound = pod.model_copy(deep=True)
        bound.spec["nodeName"] = node_name
        ctx.update(bound)
        ctx.set_condition(Condition(type=POD_SCHEDULED, status=ConditionStatus.TRUE, reason="Scheduled"))
        logger.info(f"Bound {pod.key} to node {node_name}")
        return SyncResult()

    def _check_eviction(self, ctx: ReconcileContext, pod: KubeObject, pod_spec: PodSpec) -> SyncResult:
        node = ctx.view.find("Node", CLUSTER_NAMESPACE, pod_spec.node_name)
        if node is None:
            return SyncResult()
        taints = evicting_taints(pod_spec, node)
        if taints:
            logger.info(f"Evicting {pod.key} from {node.name}: untolerated NoExecute taint {taints[0].key}")
            ctx.delete(pod)
        return SyncResult()

    def definition(self) -> ReconcilerDefinition:
        return ReconcilerDefinition(
            kind="Pod",
            sync=self.sync,
            watches={
                "Node": _chain(requeue_pending_on_node_event, requeue_pods_on_node),
                "Pod": requeue_pending_on_placement,
            },
            description="Places pods on nodes",
        )


def _chain(*mappers):
    def mapped(obj, view):
        keys = []
        for mapper in mappers:
            keys.extend(mapper(obj, view))
        return keys

    return mapped

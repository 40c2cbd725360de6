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

"""Controllers that stamp out pods from a template: ReplicaSet, Deployment, DaemonSet"""

import hashlib
import json
from typing import Any, Dict, List

from kubeloop.controller.context import ClusterView
from kubeloop.controller.diff import DesiredChild
from kubeloop.controller.registry import ReconcilerDefinition
from kubeloop.controller.strategy import StrategyType, UpdateStrategy
from kubeloop.db.models import CLUSTER_NAMESPACE, KubeObject, ObjectKey
from kubeloop.scheduler import node_is_eligible
from kubeloop.schema.specs import DeploymentSpec, PodSpec
from kubeloop.status.aggregator import aggregate_replicas

POD_TEMPLATE_HASH_LABEL = "pod-template-hash"


def template_hash(template: Dict[str, Any]) -> str:
    """Stable short hash of a pod template; changes whenever the template does"""
    encoded = json.dumps(template, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()[:10]


def _template(parent: KubeObject):
    template = parent.spec.get("template", {})
    return dict(template.get("labels", {})), dict(template.get("spec", {}))


# ReplicaSet


def expand_replicaset(parent: KubeObject, view: ClusterView) -> List[DesiredChild]:
    labels, spec = _template(parent)
    return [
        DesiredChild(identity=str(i), name=f"{parent.name}-{i}", spec=spec, labels=labels)
        for i in range(parent.spec.get("replicas", 1))
    ]


def aggregate_replicaset(parent: KubeObject, children: List[KubeObject], view: ClusterView) -> Dict[str, Any]:
    return aggregate_replicas(children)


def replicaset_definition() -> ReconcilerDefinition:
    return ReconcilerDefinition(
        kind="ReplicaSet",
        expand=expand_replicaset,
        child_kind="Pod",
        strategy=lambda parent: UpdateStrategy(type=StrategyType.RECREATE),
        aggregate=aggregate_replicaset,
        description="Keeps a fixed number of identically configured pods",
    )


# Deployment


def expand_deployment(parent: KubeObject, view: ClusterView) -> List[DesiredChild]:
    labels, spec = _template(parent)
    revision = template_hash(parent.spec.get("template", {}))
    labels[POD_TEMPLATE_HASH_LABEL] = revision
    return [
        DesiredChild(
            identity=f"{revision}/{i}",
            name=f"{parent.name}-{revision}-{i}",
            spec=spec,
            labels=labels,
        )
        for i in range(parent.spec.get("replicas", 1))
    ]


def deployment_strategy(parent: KubeObject) -> UpdateStrategy:
    return DeploymentSpec.model_validate(parent.spec).strategy.to_update_strategy()


def aggregate_deployment(parent: KubeObject, children: List[KubeObject], view: ClusterView) -> Dict[str, Any]:
    status = aggregate_replicas(children)
    revision = template_hash(parent.spec.get("template", {}))
    status["updatedReplicas"] = sum(
        1
        for child in children
        if not child.is_terminating and child.labels.get(POD_TEMPLATE_HASH_LABEL) == revision
    )
    return status


def deployment_definition() -> ReconcilerDefinition:
    return ReconcilerDefinition(
        kind="Deployment",
        expand=expand_deployment,
        child_kind="Pod",
        strategy=deployment_strategy,
        aggregate=aggregate_deployment,
        description="Rolls pods from one template revision to the next",
    )


# DaemonSet


def eligible_nodes(parent: KubeObject, view: ClusterView) -> List[KubeObject]:
    _, spec = _template(parent)
    pod_spec = PodSpec.model_validate(spec)
    return [node for node in view.list("Node", CLUSTER_NAMESPACE) if node_is_eligible(pod_spec, node)]


def expand_daemonset(parent: KubeObject, view: ClusterView) -> List[DesiredChild]:
    labels, spec = _template(parent)
    return [
        DesiredChild(
            identity=node.name,
            name=f"{parent.name}-{node.name}",
            spec={**spec, "nodeName": node.name},
            labels=labels,
        )
        for node in eligible_nodes(parent, view)
    ]


def aggregate_daemonset(parent: KubeObject, children: List[KubeObject], view: ClusterView) -> Dict[str, Any]:
    live = [child for child in children if not child.is_terminating]
    return {
        "desiredNumberScheduled": len(eligible_nodes(parent, view)),
        "currentNumberScheduled": sum(1 for child in live if child.spec.get("nodeName")),
        "numberReady": sum(1 for child in live if child.is_ready),
    }


def requeue_daemonsets(node: KubeObject, view: ClusterView) -> List[ObjectKey]:
    return [daemonset.key for daemonset in view.list("DaemonSet")]


def daemonset_definition() -> ReconcilerDefinition:
    return ReconcilerDefinition(
        kind="DaemonSet",
        expand=expand_daemonset,
        child_kind="Pod",
        strategy=lambda parent: UpdateStrategy(type=StrategyType.RECREATE),
        aggregate=aggregate_daemonset,
        watches={"Node": requeue_daemonsets},
        description="Runs one pod on every eligible node",
    )

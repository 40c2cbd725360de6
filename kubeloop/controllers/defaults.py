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

from typing import Optional

from kubeloop.controller.registry import ReconcilerRegistry
from kubeloop.controllers.autoscaler import autoscaler_definition
from kubeloop.controllers.pod_placement import PodPlacementReconciler
from kubeloop.controllers.volume_binding import claim_definition, volume_definition
from kubeloop.controllers.workloads import daemonset_definition, deployment_definition, replicaset_definition
from kubeloop.scheduler import Scheduler
from kubeloop.schema.specs import (
    DaemonSetSpec,
    DeploymentSpec,
    HorizontalPodAutoscalerSpec,
    NodeSpec,
    PersistentVolumeClaimSpec,
    PersistentVolumeSpec,
    PodSpec,
    ReplicaSetSpec,
)


def build_default_registry(scheduler: Optional[Scheduler] = None) -> ReconcilerRegistry:
    """Registry with every built-in kind and its reconciler"""
    registry = ReconcilerRegistry()

    registry.register_schema("Node", NodeSpec, cluster_scoped=True)
    registry.register_schema("PersistentVolume", PersistentVolumeSpec, cluster_scoped=True)
    registry.register_schema("Pod", PodSpec)
    registry.register_schema("ReplicaSet", ReplicaSetSpec)
    registry.register_schema("Deployment", DeploymentSpec)
    registry.register_schema("DaemonSet", DaemonSetSpec)
    registry.register_schema("HorizontalPodAutoscaler", HorizontalPodAutoscalerSpec)
    registry.register_schema("PersistentVolumeClaim", PersistentVolumeClaimSpec)

    registry.register(PodPlacementReconciler(scheduler).definition())
    registry.register(replicaset_definition())
    registry.register(deployment_definition())
    registry.register(daemonset_definition())
    registry.register(autoscaler_definition())
    registry.register(claim_definition())
    registry.register(volume_definition())
    return registry

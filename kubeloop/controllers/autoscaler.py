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
import math
from typing import List, Optional

from kubeloop.config import settings
from kubeloop.controller.context import ReconcileContext
from kubeloop.controller.registry import ReconcilerDefinition, SyncResult
from kubeloop.db.models import Condition, ConditionStatus, KubeObject, set_condition
from kubeloop.schema.specs import HorizontalPodAutoscalerSpec

logger = logging.getLogger(__name__)

ABLE_TO_SCALE = "AbleToScale"
UTILIZATION_FIELD = "utilization"


def average_utilization(pods: List[KubeObject]) -> Optional[float]:
    """Mean utilization reported by ready pods, None when nothing reports"""
    samples = [
        float(pod.status[UTILIZATION_FIELD])
        for pod in pods
        if pod.is_ready and pod.status.get(UTILIZATION_FIELD) is not None
    ]
    if not samples:
        return None
    return sum(samples) / len(samples)


def desired_replicas(
    current: int, utilization: Optional[float], spec: HorizontalPodAutoscalerSpec, tolerance: float
) -> int:
    desired = current
    if utilization is not None and current > 0:
        ratio = utilization / spec.target_utilization
        if abs(ratio - 1.0) > tolerance:
            desired = math.ceil(current * ratio)
    return max(spec.min_replicas, min(spec.max_replicas, desired))


def sync_autoscaler(ctx: ReconcileContext) -> SyncResult:
    hpa = ctx.parent
    spec = HorizontalPodAutoscalerSpec.model_validate(hpa.spec)
    ref = spec.scale_target_ref
    now = ctx.clock.wall()
    requeue = SyncResult(requeue_after=settings.hpa_sync_seconds)

    target = ctx.view.find(ref.kind, hpa.namespace, ref.name)
    if target is None or target.is_terminating:
        condition = Condition(
            type=ABLE_TO_SCALE,
            status=ConditionStatus.FALSE,
            reason="TargetNotFound",
            message=f"{ref.kind}/{ref.name} does not exist",
        )
        ctx.patch_status(lambda status: set_condition(status, condition, now))
        return requeue

    current = int(target.spec.get("replicas", 1))
    pods = ctx.view.children_of(target, "Pod")
    utilization = average_utilization(pods)
    desired = desired_replicas(current, utilization, spec, settings.hpa_tolerance)

    if desired != current:
        scaled = target.model_copy(deep=True)
        scaled.spec["replicas"] = desired
        ctx.update(scaled)
        logger.info(f"{hpa.key} scaled {target.key} from {current} to {desired} (utilization {utilization})")

    condition = Condition(type=ABLE_TO_SCALE, status=ConditionStatus.TRUE, reason="SucceededRescale")

    def record(status):
        status = dict(status)
        status["currentReplicas"] = current
        status["desiredReplicas"] = desired
        if utilization is not None:
            status["currentUtilization"] = round(utilization, 4)
        if desired != current:
            status["lastScaleTime"] = now
        return set_condition(status, condition, now)

    ctx.patch_status(record)
    return requeue


def autoscaler_definition() -> ReconcilerDefinition:
    return ReconcilerDefinition(
        kind="HorizontalPodAutoscaler",
        sync=sync_autoscaler,
        description="Scales a workload towards a target utilization",
    )

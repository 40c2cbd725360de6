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
Binds PersistentVolumeClaims to PersistentVolumes.

A claim binds to the smallest available volume of the same storage class
that is large enough. The volume is claimed first (its ``claimRef``), then
the claim records ``volumeName``; a crash between the two leaves a volume
whose claimRef already names the claim, which the next pass adopts.
"""

import logging
from typing import List, Optional

from kubeloop.controller.context import ClusterView, ReconcileContext
from kubeloop.controller.registry import ReconcilerDefinition, SyncResult
from kubeloop.db.models import CLUSTER_NAMESPACE, KubeObject, ObjectKey
from kubeloop.schema.specs import PersistentVolumeClaimSpec, PersistentVolumeSpec

logger = logging.getLogger(__name__)

PHASE_AVAILABLE = "Available"
PHASE_BOUND = "Bound"
PHASE_RELEASED = "Released"
PHASE_PENDING = "Pending"
PHASE_LOST = "Lost"


def _claimed_by(volume: KubeObject, claim: KubeObject) -> bool:
    ref = volume.spec.get("claimRef")
    return bool(ref) and ref.get("uid") == claim.uid


def find_best_volume(claim: KubeObject, volumes: List[KubeObject]) -> Optional[KubeObject]:
    """Smallest unclaimed volume that satisfies the claim, ties broken by name"""
    claim_spec = PersistentVolumeClaimSpec.model_validate(claim.spec)
    candidates = []
    for volume in volumes:
        if volume.is_terminating:
            continue
        volume_spec = PersistentVolumeSpec.model_validate(volume.spec)
        if volume_spec.claim_ref is not None:
            continue
        if volume_spec.storage_class_name != claim_spec.storage_class_name:
            continue
        if volume_spec.capacity_bytes < claim_spec.request_bytes:
            continue
        candidates.append((volume_spec.capacity_bytes, volume.name, volume))
    if not candidates:
        return None
    return min(candidates, key=lambda item: (item[0], item[1]))[2]


def sync_claim(ctx: ReconcileContext) -> SyncResult:
    claim = ctx.parent
    volume_name = claim.spec.get("volumeName")

    if volume_name:
        volume = ctx.view.find("PersistentVolume", CLUSTER_NAMESPACE, volume_name)
        if volume is None:
            ctx.patch_status(lambda status: {**status, "phase": PHASE_LOST})
            return SyncResult()
        if not volume.spec.get("claimRef"):
            claimed = volume.model_copy(deep=True)
            claimed.spec["claimRef"] = {"namespace": claim.namespace, "name": claim.name, "uid": claim.uid}
            ctx.update(claimed)
        elif not _claimed_by(volume, claim):
            ctx.patch_status(lambda status: {**status, "phase": PHASE_LOST})
            return SyncResult()
        capacity = volume.spec.get("capacity")
        ctx.patch_status(lambda status: {**status, "phase": PHASE_BOUND, "capacity": capacity})
        return SyncResult()

    volumes = ctx.view.list("PersistentVolume", CLUSTER_NAMESPACE)
    volume = next((v for v in volumes if _claimed_by(v, claim)), None)
    if volume is None:
        volume = find_best_volume(claim, volumes)
        if volume is None:
            ctx.patch_status(lambda status: {**status, "phase": PHASE_PENDING})
            # A new or released volume event brings the claim back
            return SyncResult(settled=False)
        claimed = volume.model_copy(deep=True)
        claimed.spec["claimRef"] = {"namespace": claim.namespace, "name": claim.name, "uid": claim.uid}
        ctx.update(claimed)

    bound = ctx.refresh_parent().model_copy(deep=True)
    bound.spec["volumeName"] = volume.name
    ctx.update(bound)
    logger.info(f"Bound {claim.key} to volume {volume.name}")
    return SyncResult()


def sync_volume(ctx: ReconcileContext) -> SyncResult:
    volume = ctx.parent
    ref = volume.spec.get("claimRef")
    if not ref:
        phase = PHASE_AVAILABLE
    else:
        claim = ctx.view.find("PersistentVolumeClaim", ref.get("namespace", ""), ref.get("name", ""))
        phase = PHASE_BOUND if claim is not None and claim.uid == ref.get("uid") else PHASE_RELEASED
    ctx.patch_status(lambda status: {**status, "phase": phase})
    return SyncResult()


def requeue_pending_claims(volume: KubeObject, view: ClusterView) -> List[ObjectKey]:
    return [claim.key for claim in view.list("PersistentVolumeClaim") if not claim.spec.get("volumeName")]


def requeue_claimed_volume(claim: KubeObject, view: ClusterView) -> List[ObjectKey]:
    keys = []
    volume_name = claim.spec.get("volumeName")
    if volume_name:
        keys.append(ObjectKey("PersistentVolume", CLUSTER_NAMESPACE, volume_name))
    for volume in view.list("PersistentVolume", CLUSTER_NAMESPACE):
        ref = volume.spec.get("claimRef") or {}
        if ref.get("uid") == claim.uid and volume.key not in keys:
            keys.append(volume.key)
    return keys


def claim_definition() -> ReconcilerDefinition:
    return ReconcilerDefinition(
        kind="PersistentVolumeClaim",
        sync=sync_claim,
        watches={"PersistentVolume": requeue_pending_claims},
        description="Binds claims to the smallest fitting volume",
    )


def volume_definition() -> ReconcilerDefinition:
    return ReconcilerDefinition(
        kind="PersistentVolume",
        sync=sync_volume,
        watches={"PersistentVolumeClaim": requeue_claimed_volume},
        description="Tracks volume phase from its claim",
    )

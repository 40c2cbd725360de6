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

"""Typed specs of the built-in kinds; stored specs are their camelCase dumps"""

import re
from typing import Dict, List, Optional

from pydantic import Field, field_validator, model_validator

from kubeloop.controller.strategy import StrategyType, UpdateStrategy
from kubeloop.db.models import CamelModel, LabelSelector, Taint, Toleration

_QUANTITY = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGTP]i?)?\s*$")
_UNITS = {
    None: 1,
    "K": 10**3,
    "M": 10**6,
    "G": 10**9,
    "T": 10**12,
    "P": 10**15,
    "Ki": 2**10,
    "Mi": 2**20,
    "Gi": 2**30,
    "Ti": 2**40,
    "Pi": 2**50,
}


def parse_quantity(value) -> int:
    """Parse a storage quantity such as ``10Gi`` or ``500M`` into bytes"""
    if isinstance(value, (int, float)):
        return int(value)
    match = _QUANTITY.match(str(value))
    if not match:
        raise ValueError(f"invalid quantity: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _UNITS[unit])


class NodeSpec(CamelModel):
    taints: List[Taint] = Field(default_factory=list)
    unschedulable: bool = False


class WeightedSelector(CamelModel):
    """Soft node preference: ``weight`` is added when the node matches"""

    weight: int = Field(ge=1, le=100)
    selector: LabelSelector


class PodAffinityTerm(CamelModel):
    """
    Co-location rule against already placed sibling pods.

    ``selector`` picks the siblings, ``topologyKey`` names the node label
    that defines a domain (host, zone, ...). Required terms are hard
    constraints; otherwise ``weight`` scales the preference.
    """

    selector: LabelSelector
    topology_key: str
    required: bool = False
    weight: int = Field(default=1, ge=1, le=100)


class Affinity(CamelModel):
    node_preferences: List[WeightedSelector] = Field(default_factory=list)
    pod_affinity: List[PodAffinityTerm] = Field(default_factory=list)
    pod_anti_affinity: List[PodAffinityTerm] = Field(default_factory=list)


class PodSpec(CamelModel):
    image: str = Field(min_length=1)
    node_selector: LabelSelector = Field(default_factory=LabelSelector)
    tolerations: List[Toleration] = Field(default_factory=list)
    affinity: Affinity = Field(default_factory=Affinity)
    node_name: Optional[str] = None


class PodTemplate(CamelModel):
    labels: Dict[str, str] = Field(default_factory=dict)
    spec: PodSpec


class _TemplatedWorkload(CamelModel):
    selector: LabelSelector
    template: PodTemplate

    @model_validator(mode="after")
    def _template_matches_selector(self):
        if self.selector.is_empty():
            raise ValueError("selector must not be empty")
        if not self.selector.matches(self.template.labels):
            raise ValueError("template labels must match the selector")
        return self


class ReplicaSetSpec(_TemplatedWorkload):
    replicas: int = Field(default=1, ge=0)


class RollingUpdateParams(CamelModel):
    max_surge: int = Field(default=1, ge=0)
    max_unavailable: int = Field(default=0, ge=0)


class DeploymentStrategy(CamelModel):
    type: StrategyType = StrategyType.ROLLING_UPDATE
    rolling_update: RollingUpdateParams = Field(default_factory=RollingUpdateParams)

    @model_validator(mode="after")
    def _can_make_progress(self):
        params = self.rolling_update
        if self.type == StrategyType.ROLLING_UPDATE and params.max_surge == 0 and params.max_unavailable == 0:
            raise ValueError("maxSurge and maxUnavailable cannot both be 0")
        return self

    def to_update_strategy(self) -> UpdateStrategy:
        return UpdateStrategy(
            type=self.type,
            max_surge=self.rolling_update.max_surge,
            max_unavailable=self.rolling_update.max_unavailable,
        )


class DeploymentSpec(_TemplatedWorkload):
    replicas: int = Field(default=1, ge=0)
    strategy: DeploymentStrategy = Field(default_factory=DeploymentStrategy)


class DaemonSetSpec(_TemplatedWorkload):
    max_unavailable: int = Field(default=1, ge=1)


class ScaleTargetRef(CamelModel):
    kind: str
    name: str


class HorizontalPodAutoscalerSpec(CamelModel):
    scale_target_ref: ScaleTargetRef
    min_replicas: int = Field(default=1, ge=1)
    max_replicas: int = Field(ge=1)
    # Average utilization the autoscaler steers towards, as a fraction
    target_utilization: float = Field(gt=0)

    @model_validator(mode="after")
    def _bounds(self):
        if self.min_replicas > self.max_replicas:
            raise ValueError("minReplicas must not exceed maxReplicas")
        return self


class ClaimRef(CamelModel):
    namespace: str
    name: str
    uid: str


class PersistentVolumeSpec(CamelModel):
    capacity: str
    storage_class_name: str = ""
    claim_ref: Optional[ClaimRef] = None

    @field_validator("capacity")
    @classmethod
    def _valid_capacity(cls, value: str) -> str:
        parse_quantity(value)
        return value

    @property
    def capacity_bytes(self) -> int:
        return parse_quantity(self.capacity)


class PersistentVolumeClaimSpec(CamelModel):
    request: str
    storage_class_name: str = ""
    volume_name: Optional[str] = None

    @field_validator("request")
    @classmethod
    def _valid_request(cls, value: str) -> str:
        parse_quantity(value)
        return value

    @property
    def request_bytes(self) -> int:
        return parse_quantity(self.request)

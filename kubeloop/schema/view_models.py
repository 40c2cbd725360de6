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

from typing import Any, Dict, List, Optional

from pydantic import Field

from kubeloop.db.models import CamelModel, KubeObject, OwnerReference


class ObjectSubmit(CamelModel):
    spec: Dict[str, Any] = Field(default_factory=dict)
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    finalizers: List[str] = Field(default_factory=list)
    owner_references: List[OwnerReference] = Field(default_factory=list)
    expected_version: Optional[int] = None


class ObjectList(CamelModel):
    items: List[KubeObject]
    resource_version: int


class ObjectStatus(CamelModel):
    kind: str
    namespace: str
    name: str
    resource_version: int
    generation: int
    observed_generation: Optional[int] = None
    reconcile_state: Optional[str] = None
    status: Dict[str, Any] = Field(default_factory=dict)


class SubmitResult(CamelModel):
    kind: str
    namespace: str
    name: str
    resource_version: int


class FailResponse(CamelModel):
    code: str
    message: str
    details: Optional[Any] = None

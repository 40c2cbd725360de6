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

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from kubeloop.db.models import KubeObject

IDENTITY_ANNOTATION = "kubeloop.io/identity"
FAILED_PHASE = "Failed"


@dataclass
class DesiredChild:
    """One child the parent's spec asks for, keyed by a stable identity"""

    identity: str
    name: str
    spec: Dict[str, Any]
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)


def identity_of(child: KubeObject) -> str:
    return child.annotations.get(IDENTITY_ANNOTATION, child.name)


def spec_matches(observed: Dict[str, Any], desired: Dict[str, Any]) -> bool:
    """
    Desired fields must match; fields the parent does not set (for
    example a node bound by the scheduler) belong to other writers.
    """
    return all(observed.get(key) == value for key, value in desired.items())


def needs_update(child: KubeObject, desired: DesiredChild) -> bool:
    if not spec_matches(child.spec, desired.spec):
        return True
    return any(child.labels.get(key) != value for key, value in desired.labels.items())


@dataclass
class ChildDiff:
    to_create: List[DesiredChild] = field(default_factory=list)
    to_delete: List[KubeObject] = field(default_factory=list)
    to_update: List[Tuple[KubeObject, DesiredChild]] = field(default_factory=list)
    # Creates whose name is still held by a terminating or doomed child
    blocked: List[DesiredChild] = field(default_factory=list)
    live: List[KubeObject] = field(default_factory=list)
    terminating: List[KubeObject] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.to_create or self.to_delete or self.to_update or self.blocked)

    @property
    def ready_count(self) -> int:
        return sum(1 for child in self.live if child.is_ready)


def compute_diff(desired: List[DesiredChild], observed: List[KubeObject]) -> ChildDiff:
    """
    Diff desired children against observed ones by identity, not by value.

    Observed children that are not desired, duplicate an identity already
    seen, or have failed are deleted; failed ones come back as creates once
    their name is free.
    """
    desired_by_id: Dict[str, DesiredChild] = {}
    for child in desired:
        if child.identity in desired_by_id:
            raise ValueError(f"duplicate desired identity {child.identity}")
        desired_by_id[child.identity] = child

    diff = ChildDiff()
    matched: Dict[str, KubeObject] = {}
    for child in sorted(observed, key=lambda c: c.name):
        if child.is_terminating:
            diff.terminating.append(child)
            continue
        diff.live.append(child)
        identity = identity_of(child)
        if identity not in desired_by_id or identity in matched:
            diff.to_delete.append(child)
        elif child.status.get("phase") == FAILED_PHASE:
            diff.to_delete.append(child)
        else:
            matched[identity] = child

    names_in_use = {child.name for child in diff.terminating} | {child.name for child in diff.to_delete}
    for identity, child in desired_by_id.items():
        if identity in matched:
            if needs_update(matched[identity], child):
                diff.to_update.append((matched[identity], child))
        elif child.name in names_in_use:
            diff.blocked.append(child)
        else:
            diff.to_create.append(child)
    return diff

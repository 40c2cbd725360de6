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
from enum import Enum
from typing import List, Tuple

from kubeloop.controller.diff import ChildDiff, DesiredChild
from kubeloop.db.models import KubeObject


class StrategyType(str, Enum):
    # Deletes first; creates wait until the identity slots are free
    RECREATE = "Recreate"
    # Creates first, bounded by surge and availability
    ROLLING_UPDATE = "RollingUpdate"


@dataclass
class UpdateStrategy:
    type: StrategyType = StrategyType.ROLLING_UPDATE
    max_surge: int = 1
    max_unavailable: int = 0


@dataclass
class Plan:
    creates: List[DesiredChild] = field(default_factory=list)
    updates: List[Tuple[KubeObject, DesiredChild]] = field(default_factory=list)
    deletes: List[KubeObject] = field(default_factory=list)
    deletes_first: bool = False
    # Part of the diff is held back until later watch events unblock it
    waiting: bool = False

    def is_empty(self) -> bool:
        return not (self.creates or self.updates or self.deletes)

    def steps(self) -> List[Tuple[str, object]]:
        """Intents in the order they must be applied"""
        creates = [("create", child) for child in self.creates]
        updates = [("update", pair) for pair in self.updates]
        deletes = [("delete", child) for child in self.deletes]
        if self.deletes_first:
            return deletes + updates + creates
        return creates + updates + deletes


def plan_recreate(diff: ChildDiff) -> Plan:
    if diff.to_delete:
        return Plan(
            deletes=list(diff.to_delete),
            updates=list(diff.to_update),
            deletes_first=True,
            waiting=bool(diff.to_create or diff.blocked),
        )
    return Plan(
        creates=list(diff.to_create),
        updates=list(diff.to_update),
        deletes_first=True,
        waiting=bool(diff.blocked),
    )


def plan_rolling(diff: ChildDiff, desired_count: int, strategy: UpdateStrategy) -> Plan:
    total = len(diff.live) + len(diff.terminating)
    allowed_creates = max(0, desired_count + strategy.max_surge - total)
    creates = diff.to_create[:allowed_creates]

    # Unready children can go at any time; ready ones only while enough stay available
    min_available = max(0, desired_count - strategy.max_unavailable)
    budget = max(0, diff.ready_count - min_available)
    unready = [child for child in diff.to_delete if not child.is_ready]
    ready = [child for child in diff.to_delete if child.is_ready]
    deletes = unready + ready[:budget]

    return Plan(
        creates=creates,
        updates=list(diff.to_update),
        deletes=deletes,
        deletes_first=False,
        waiting=len(creates) < len(diff.to_create) or len(deletes) < len(diff.to_delete) or bool(diff.blocked),
    )


def plan_intents(diff: ChildDiff, desired_count: int, strategy: UpdateStrategy) -> Plan:
    if strategy.type == StrategyType.RECREATE:
        return plan_recreate(diff)
    return plan_rolling(diff, desired_count, strategy)

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

import random
import uuid
from enum import Enum
from typing import Any, Dict, List, Mapping, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_NAMESPACE = "default"
# Cluster-scoped kinds (Node, PersistentVolume) live in the empty namespace
CLUSTER_NAMESPACE = ""


def random_id():
    """Generate a random ID string"""
    return "".join(random.sample(uuid.uuid4().hex, 16))


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase keys"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# Enums for choices
class EventType(str, Enum):
    ADDED = "Added"
    MODIFIED = "Modified"
    DELETED = "Deleted"


class TaintEffect(str, Enum):
    NO_SCHEDULE = "NoSchedule"
    PREFER_NO_SCHEDULE = "PreferNoSchedule"
    NO_EXECUTE = "NoExecute"


class TolerationOperator(str, Enum):
    EQUAL = "Equal"
    EXISTS = "Exists"


class SelectorOperator(str, Enum):
    IN = "In"
    NOT_IN = "NotIn"
    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"


class DeletionPropagation(str, Enum):
    BACKGROUND = "Background"
    ORPHAN = "Orphan"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ReconcileState(str, Enum):
    PENDING = "Pending"
    RECONCILING = "Reconciling"
    SETTLED = "Settled"
    FAILED = "Failed"


class ObjectKey(NamedTuple):
    kind: str
    namespace: str
    name: str

    def __str__(self):
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


class SelectorRequirement(CamelModel):
    key: str
    operator: SelectorOperator
    values: List[str] = Field(default_factory=list)

    def matches(self, labels: Mapping[str, str]) -> bool:
        if self.operator == SelectorOperator.EXISTS:
            return self.key in labels
        if self.operator == SelectorOperator.DOES_NOT_EXIST:
            return self.key not in labels
        if self.operator == SelectorOperator.IN:
            return self.key in labels and labels[self.key] in self.values
        # NotIn also matches objects that do not carry the key at all
        return labels.get(self.key) not in self.values


class LabelSelector(CamelModel):
    """Conjunction of exact-match labels and set-based requirements"""

    match_labels: Dict[str, str] = Field(default_factory=dict)
    match_expressions: List[SelectorRequirement] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.match_labels and not self.match_expressions

    def matches(self, labels: Optional[Mapping[str, str]]) -> bool:
        labels = labels or {}
        for key, value in self.match_labels.items():
            if labels.get(key) != value:
                return False
        return all(requirement.matches(labels) for requirement in self.match_expressions)

    @classmethod
    def parse(cls, text: Optional[str]) -> "LabelSelector":
        """
        Parse a comma separated selector string.

        Supported terms: ``key=value``, ``key!=value``, ``key in (a|b)``,
        ``key`` (exists) and ``!key`` (does not exist).
        """
        selector = cls()
        if not text:
            return selector
        for raw in text.split(","):
            term = raw.strip()
            if not term:
                continue
            if " in " in term:
                key, _, values = term.partition(" in ")
                values = values.strip().strip("()")
                selector.match_expressions.append(
                    SelectorRequirement(
                        key=key.strip(),
                        operator=SelectorOperator.IN,
                        values=[v.strip() for v in values.split("|") if v.strip()],
                    )
                )
            elif "!=" in term:
                key, _, value = term.partition("!=")
                selector.match_expressions.append(
                    SelectorRequirement(key=key.strip(), operator=SelectorOperator.NOT_IN, values=[value.strip()])
                )
            elif "=" in term:
                key, _, value = term.partition("=")
                selector.match_labels[key.strip()] = value.strip()
            elif term.startswith("!"):
                selector.match_expressions.append(
                    SelectorRequirement(key=term[1:].strip(), operator=SelectorOperator.DOES_NOT_EXIST)
                )
            else:
                selector.match_expressions.append(SelectorRequirement(key=term, operator=SelectorOperator.EXISTS))
        return selector


class Taint(CamelModel):
    key: str
    value: str = ""
    effect: TaintEffect


class Toleration(CamelModel):
    key: str = ""
    operator: TolerationOperator = TolerationOperator.EQUAL
    value: str = ""
    # An empty effect tolerates every effect
    effect: Optional[TaintEffect] = None

    def tolerates(self, taint: Taint) -> bool:
        if self.effect is not None and self.effect != taint.effect:
            return False
        if not self.key:
            return self.operator == TolerationOperator.EXISTS
        if self.key != taint.key:
            return False
        if self.operator == TolerationOperator.EXISTS:
            return True
        return self.value == taint.value


class OwnerReference(CamelModel):
    kind: str
    name: str
    uid: str
    controller: bool = False


class Condition(CamelModel):
    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[float] = None


class KubeObject(CamelModel):
    """A stored object: identity, metadata, desired spec and observed status"""

    kind: str
    namespace: str = DEFAULT_NAMESPACE
    name: str
    uid: str = ""
    resource_version: int = 0
    generation: int = 0
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    owner_references: List[OwnerReference] = Field(default_factory=list)
    finalizers: List[str] = Field(default_factory=list)
    deletion_timestamp: Optional[float] = None
    spec: Dict[str, Any] = Field(default_factory=dict)
    status: Dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.kind, self.namespace, self.name)

    @property
    def is_terminating(self) -> bool:
        return self.deletion_timestamp is not None

    @property
    def is_ready(self) -> bool:
        return bool(self.status.get("ready")) and not self.is_terminating

    def controller_ref(self) -> Optional[OwnerReference]:
        for ref in self.owner_references:
            if ref.controller:
                return ref
        return None

    def is_controlled_by(self, owner: "KubeObject") -> bool:
        ref = self.controller_ref()
        return ref is not None and ref.uid == owner.uid and ref.kind == owner.kind

    def owner_reference(self, controller: bool = True) -> OwnerReference:
        """Build a reference pointing at this object"""
        return OwnerReference(kind=self.kind, name=self.name, uid=self.uid, controller=controller)

    def get_condition(self, condition_type: str) -> Optional[Condition]:
        for raw in self.status.get("conditions", []):
            if raw.get("type") == condition_type:
                return Condition.model_validate(raw)
        return None


def set_condition(status: Dict[str, Any], condition: Condition, now: Optional[float] = None) -> Dict[str, Any]:
    """
    Return a copy of ``status`` with ``condition`` merged into its conditions.

    The transition time only moves when the condition status flips.
    """
    conditions = [dict(c) for c in status.get("conditions", [])]
    new = condition.to_dict()
    for index, existing in enumerate(conditions):
        if existing.get("type") != condition.type:
            continue
        if existing.get("status") == new["status"] and "lastTransitionTime" in existing:
            new["lastTransitionTime"] = existing["lastTransitionTime"]
        elif now is not None:
            new["lastTransitionTime"] = now
        conditions[index] = new
        break
    else:
        if now is not None:
            new["lastTransitionTime"] = now
        conditions.append(new)
    result = dict(status)
    result["conditions"] = conditions
    return result


def remove_condition(status: Dict[str, Any], condition_type: str) -> Dict[str, Any]:
    result = dict(status)
    conditions = [c for c in status.get("conditions", []) if c.get("type") != condition_type]
    if conditions:
        result["conditions"] = conditions
    else:
        result.pop("conditions", None)
    return result

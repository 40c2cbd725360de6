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
from typing import Any, Callable, Dict, Iterable, List, Optional, Type

import pydantic
from pydantic import BaseModel

from kubeloop.controller.strategy import UpdateStrategy
from kubeloop.db.models import KubeObject, ObjectKey
from kubeloop.exceptions import ValidationError

# expand(parent, view) -> ordered desired children
ExpandFunc = Callable[..., List[Any]]
# aggregate(parent, children, view) -> status fields
AggregateFunc = Callable[..., Dict[str, Any]]
# mapper(obj, view) -> parent keys to requeue
WatchMapper = Callable[..., Iterable[ObjectKey]]


@dataclass
class SyncResult:
    """Outcome of a custom sync handler"""

    settled: bool = True
    requeue_after: Optional[float] = None


@dataclass
class ReconcilerDefinition:
    """
    How the engine drives one kind.

    Either ``expand`` (plus ``child_kind``) for the generic
    desired-vs-observed children diff, or ``sync`` for kinds whose
    convergence is not a child set (placement, autoscaling, binding).
    """

    kind: str
    expand: Optional[ExpandFunc] = None
    child_kind: Optional[str] = None
    strategy: Callable[[KubeObject], UpdateStrategy] = field(default=lambda parent: UpdateStrategy())
    aggregate: Optional[AggregateFunc] = None
    sync: Optional[Callable[..., SyncResult]] = None
    watches: Dict[str, WatchMapper] = field(default_factory=dict)
    description: str = ""

    def __post_init__(self):
        if (self.expand is None) == (self.sync is None):
            raise ValueError(f"{self.kind}: exactly one of expand or sync must be set")
        if self.expand is not None and not self.child_kind:
            raise ValueError(f"{self.kind}: expand requires child_kind")


class ReconcilerRegistry:
    """Lookup table from kind to reconciler definition and spec schema"""

    def __init__(self):
        self._definitions: Dict[str, ReconcilerDefinition] = {}
        self._schemas: Dict[str, Type[BaseModel]] = {}
        self._cluster_scoped = set()

    def register(self, definition: ReconcilerDefinition) -> None:
        """Register a reconciler for a kind"""
        self._definitions[definition.kind] = definition

    def register_schema(self, kind: str, spec_model: Type[BaseModel], cluster_scoped: bool = False) -> None:
        """Register the spec model used to validate submitted specs"""
        self._schemas[kind] = spec_model
        if cluster_scoped:
            self._cluster_scoped.add(kind)

    def get(self, kind: str) -> ReconcilerDefinition:
        """Get a reconciler definition by kind"""
        if kind not in self._definitions:
            raise KeyError(f"Reconciler definition not found: {kind}")
        return self._definitions[kind]

    def find(self, kind: str) -> Optional[ReconcilerDefinition]:
        return self._definitions.get(kind)

    def list_definitions(self) -> List[ReconcilerDefinition]:
        """List all registered reconcilers"""
        return list(self._definitions.values())

    def kinds(self) -> List[str]:
        return sorted(set(self._schemas) | set(self._definitions))

    def is_cluster_scoped(self, kind: str) -> bool:
        return kind in self._cluster_scoped

    def validate(self, kind: str, spec: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate and normalize a spec.

        Returns:
            The spec with defaults filled in, in its stored (camelCase) form

        Raises:
            ValidationError: unknown kind or malformed spec
        """
        model = self._schemas.get(kind)
        if model is None:
            raise ValidationError(f"Unknown kind: {kind}")
        try:
            parsed = model.model_validate(spec or {})
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"Invalid {kind} spec: {e.error_count()} error(s)",
                errors=e.errors(include_url=False, include_context=False, include_input=False),
            ) from e
        return parsed.model_dump(by_alias=True, exclude_none=True, mode="json")

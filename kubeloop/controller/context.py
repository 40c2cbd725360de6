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
from typing import Any, Callable, Dict, List, Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt

from kubeloop.db.models import Condition, KubeObject, LabelSelector, remove_condition, set_condition
from kubeloop.exceptions import ConflictError, NotFoundError, ReconcileCancelled
from kubeloop.tasks.executor import Intent, IntentExecutor, IntentOperation, IntentResult

logger = logging.getLogger(__name__)

STATUS_WRITE_ATTEMPTS = 5


class ClusterView:
    """Read-only access to the store for expand, aggregate and sync functions"""

    def __init__(self, store):
        self._store = store

    def get(self, kind: str, namespace: str, name: str) -> KubeObject:
        return self._store.get(kind, namespace, name)

    def find(self, kind: str, namespace: str, name: str) -> Optional[KubeObject]:
        try:
            return self._store.get(kind, namespace, name)
        except NotFoundError:
            return None

    def list(
        self, kind: str, namespace: Optional[str] = None, selector: Optional[LabelSelector] = None
    ) -> List[KubeObject]:
        return list(self._store.list(kind, namespace, selector))

    def children_of(self, parent: KubeObject, child_kind: str) -> List[KubeObject]:
        """Children whose controller reference points at ``parent``"""
        return [
            child for child in self._store.list(child_kind, parent.namespace) if child.is_controlled_by(parent)
        ]


def patch_status(store, obj: KubeObject, mutate: Callable[[Dict[str, Any]], Dict[str, Any]]) -> bool:
    """
    Read-modify-write a status, retrying on conflicts.

    Returns:
        True when a write happened, False when the status was unchanged or
        the object is gone

    Raises:
        ConflictError: every attempt lost a race with another writer
    """
    latest = [obj]

    @retry(
        stop=stop_after_attempt(STATUS_WRITE_ATTEMPTS),
        retry=retry_if_exception_type(ConflictError),
        reraise=True,
    )
    def write() -> bool:
        current = latest[0]
        new_status = mutate(dict(current.status))
        if new_status == current.status:
            return False
        try:
            store.put_status(
                current.kind, current.namespace, current.name, new_status, expected_version=current.resource_version
            )
        except NotFoundError:
            return False
        except ConflictError:
            try:
                reread = store.get(obj.kind, obj.namespace, obj.name)
            except NotFoundError:
                return False
            if reread.uid != obj.uid:
                return False
            latest[0] = reread
            raise
        return True

    return write()


class ReconcileContext:
    """Everything one reconciliation pass of one parent may use"""

    def __init__(self, store, parent: KubeObject, executor: IntentExecutor, clock, registry=None):
        self.store = store
        self.parent = parent
        self.executor = executor
        self.clock = clock
        self.registry = registry
        self.view = ClusterView(store)
        self.generation = parent.generation
        self.applied: List[IntentResult] = []

    def check_cancelled(self):
        """
        Abort the pass when the parent's spec moved on or the parent is gone.

        Raises:
            ReconcileCancelled
        """
        try:
            current = self.store.get(self.parent.kind, self.parent.namespace, self.parent.name)
        except NotFoundError:
            raise ReconcileCancelled(f"{self.parent.key} was deleted")
        if current.uid != self.parent.uid:
            raise ReconcileCancelled(f"{self.parent.key} was replaced")
        if current.generation != self.generation:
            raise ReconcileCancelled(
                f"{self.parent.key} moved to generation {current.generation} while reconciling {self.generation}"
            )
        if current.is_terminating:
            raise ReconcileCancelled(f"{self.parent.key} is terminating")

    def apply(self, intent: Intent) -> IntentResult:
        self.check_cancelled()
        result = self.executor.apply(intent)
        self.applied.append(result)
        return result

    def create(self, obj: KubeObject) -> IntentResult:
        return self.apply(Intent(IntentOperation.CREATE, obj))

    def update(self, obj: KubeObject) -> IntentResult:
        return self.apply(Intent(IntentOperation.UPDATE, obj, expected_version=obj.resource_version))

    def delete(self, obj: KubeObject) -> IntentResult:
        return self.apply(Intent(IntentOperation.DELETE, obj))

    def refresh_parent(self) -> KubeObject:
        self.parent = self.store.get(self.parent.kind, self.parent.namespace, self.parent.name)
        return self.parent

    def patch_status(self, mutate: Callable[[Dict[str, Any]], Dict[str, Any]]) -> bool:
        return patch_status(self.store, self.parent, mutate)

    def set_condition(self, condition: Condition) -> bool:
        now = self.clock.wall()
        return self.patch_status(lambda status: set_condition(status, condition, now))

    def clear_condition(self, condition_type: str) -> bool:
        return self.patch_status(lambda status: remove_condition(status, condition_type))

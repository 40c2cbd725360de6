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
import threading
from typing import Any, Dict, Iterable, List, Optional

from kubeloop.config import settings
from kubeloop.controller.context import ClusterView, patch_status
from kubeloop.db.models import KubeObject, ObjectKey
from kubeloop.exceptions import ConflictError, NotFoundError
from kubeloop.utils.clock import Clock

logger = logging.getLogger(__name__)


def aggregate_replicas(children: Iterable[KubeObject]) -> Dict[str, Any]:
    """Roll child pods up into replica counts; never mutates the children"""
    live = [child for child in children if not child.is_terminating]
    ready = sum(1 for child in live if child.is_ready)
    return {
        "replicas": len(live),
        "readyReplicas": ready,
        "availableReplicas": ready,
    }


class StatusAggregator:
    """
    Recomputes parent status from children.

    Child changes only mark the parent; writes happen on ``flush`` once a
    parent has been marked for at least the debounce window, so a burst of
    child updates costs the parent a single resource version bump.
    """

    def __init__(self, store, registry, clock: Optional[Clock] = None, debounce_seconds: Optional[float] = None):
        self.store = store
        self.registry = registry
        self.clock = clock or Clock()
        self.debounce_seconds = settings.status_debounce_seconds if debounce_seconds is None else debounce_seconds
        self.view = ClusterView(store)
        self._pending: Dict[ObjectKey, float] = {}
        self._lock = threading.Lock()
        self.write_count = 0

    def mark(self, parent_key: ObjectKey):
        with self._lock:
            # Keep the first mark so a steady stream of updates cannot starve the write
            self._pending.setdefault(parent_key, self.clock.now())

    def forget(self, parent_key: ObjectKey):
        with self._lock:
            self._pending.pop(parent_key, None)

    def pending(self) -> List[ObjectKey]:
        with self._lock:
            return list(self._pending)

    def next_due(self) -> Optional[float]:
        with self._lock:
            if not self._pending:
                return None
            return min(self._pending.values()) + self.debounce_seconds

    def flush(self, force: bool = False) -> int:
        """
        Write every parent whose debounce window has elapsed.

        Returns:
            Number of parents whose status actually changed
        """
        now = self.clock.now()
        with self._lock:
            due = [key for key, marked in self._pending.items() if force or now - marked >= self.debounce_seconds]
            for key in due:
                del self._pending[key]

        written = 0
        for key in due:
            try:
                if self.write(key):
                    written += 1
            except ConflictError as e:
                logger.warning(f"Status write for {key} kept conflicting, retrying later: {e}")
                self.mark(key)
        return written

    def compute(self, parent: KubeObject) -> Optional[Dict[str, Any]]:
        definition = self.registry.find(parent.kind)
        if definition is None or definition.aggregate is None:
            return None
        children = self.view.children_of(parent, definition.child_kind) if definition.child_kind else []
        return definition.aggregate(parent, children, self.view)

    def write(self, key: ObjectKey) -> bool:
        try:
            parent = self.store.get(key.kind, key.namespace, key.name)
        except NotFoundError:
            return False
        fields = self.compute(parent)
        if fields is None:
            return False

        def merge(status: Dict[str, Any]) -> Dict[str, Any]:
            merged = dict(status)
            merged.update(fields)
            return merged

        changed = patch_status(self.store, parent, merge)
        if changed:
            self.write_count += 1
            logger.debug(f"Aggregated status for {key}: {fields}")
        return changed

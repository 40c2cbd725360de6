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
from typing import List, Optional

from kubeloop.db.models import EventType, KubeObject
from kubeloop.exceptions import NotFoundError, WatchClosedError
from kubeloop.store.object_store import ObjectStore
from kubeloop.watch.bus import Subscription

logger = logging.getLogger(__name__)


class GarbageCollector:
    """Cascade-deletes objects once every one of their owners is gone"""

    def __init__(self, store: ObjectStore):
        self.store = store
        self._subscription: Optional[Subscription] = None

    def start(self):
        self._subscription = self.store.subscribe()
        # Anything orphaned before we started watching
        self.collect_orphans()

    def stop(self):
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def pump(self, timeout: float = 0) -> int:
        """
        Handle pending deletion events.

        Returns:
            Number of events processed
        """
        if self._subscription is None:
            self.start()
        processed = 0
        while True:
            try:
                event = self._subscription.next(timeout=timeout if processed == 0 else 0)
            except WatchClosedError:
                logger.warning("Garbage collector watch closed, relisting")
                self._subscription = self.store.subscribe()
                self.collect_orphans()
                processed += 1
                continue
            if event is None:
                return processed
            processed += 1
            if event.type == EventType.DELETED:
                self.handle_deleted(event.object)

    def handle_deleted(self, owner: KubeObject) -> List[KubeObject]:
        deleted = []
        for dependent in self.store.dependents_of(owner.uid):
            if self._has_live_owner(dependent):
                continue
            if dependent.is_terminating:
                continue
            try:
                deleted.append(
                    self.store.delete(
                        dependent.kind, dependent.namespace, dependent.name, expected_version=None
                    )
                )
                logger.info(f"Cascade deleted {dependent.key} (owner {owner.key} is gone)")
            except NotFoundError:
                pass
        return deleted

    def _has_live_owner(self, obj: KubeObject) -> bool:
        return any(
            self.store.owner_exists(ref.kind, obj.namespace, ref.name, ref.uid) for ref in obj.owner_references
        )

    def collect_orphans(self) -> List[KubeObject]:
        """Full scan: delete every object whose owners have all disappeared"""
        deleted = []
        for obj in self.store.list():
            if not obj.owner_references or obj.is_terminating:
                continue
            if self._has_live_owner(obj):
                continue
            try:
                deleted.append(self.store.delete(obj.kind, obj.namespace, obj.name))
                logger.info(f"Collected orphan {obj.key}")
            except NotFoundError:
                pass
        return deleted

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
from typing import Callable, Dict, List, Optional

from kubeloop.db.models import EventType, KubeObject, LabelSelector, ObjectKey
from kubeloop.exceptions import WatchClosedError
from kubeloop.watch.bus import Subscription

logger = logging.getLogger(__name__)

EventHandler = Callable[[EventType, KubeObject], None]


class Informer:
    """
    Keeps a local cache of one kind in sync with the store using the
    relist-then-watch pattern, and forwards every change to handlers.

    Delivery is at-least-once: after a relist, objects that changed while
    disconnected are replayed and objects that vanished produce a synthetic
    Deleted event. Events older than the cached revision are dropped.
    """

    def __init__(
        self,
        store,
        kind: str,
        namespace: Optional[str] = None,
        selector: Optional[LabelSelector] = None,
    ):
        self.store = store
        self.kind = kind
        self.namespace = namespace
        self.selector = selector
        self.cache: Dict[ObjectKey, KubeObject] = {}
        self._handlers: List[EventHandler] = []
        self._subscription: Optional[Subscription] = None
        self.relist_count = 0

    def add_handler(self, handler: EventHandler):
        self._handlers.append(handler)

    def _emit(self, event_type: EventType, obj: KubeObject):
        for handler in self._handlers:
            try:
                handler(event_type, obj)
            except Exception:
                logger.exception(f"Informer handler failed for {event_type.value} {obj.key}")

    def start(self):
        """(Re)list current state, then resume the event stream"""
        if self._subscription is not None:
            self._subscription.cancel()
        snapshot, self._subscription = self.store.list_and_watch(self.kind, self.namespace, self.selector)
        self.relist_count += 1

        seen = set()
        for obj in snapshot:
            seen.add(obj.key)
            cached = self.cache.get(obj.key)
            if cached is not None and cached.resource_version >= obj.resource_version:
                continue
            self.cache[obj.key] = obj
            self._emit(EventType.ADDED if cached is None else EventType.MODIFIED, obj)

        for key in [k for k in self.cache if k not in seen]:
            self._emit(EventType.DELETED, self.cache.pop(key))

        logger.debug(f"Informer for {self.kind} listed {len(snapshot)} objects at rv={snapshot.resource_version}")

    def stop(self):
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def pump(self, timeout: float = 0) -> int:
        """
        Apply pending events to the cache and handlers.

        Returns:
            Number of events handled
        """
        if self._subscription is None:
            self.start()
        handled = 0
        while True:
            try:
                event = self._subscription.next(timeout=timeout if handled == 0 else 0)
            except WatchClosedError:
                logger.warning(f"Watch for {self.kind} closed, relisting")
                self.start()
                handled += 1
                continue
            if event is None:
                return handled
            handled += 1
            obj = event.object
            cached = self.cache.get(obj.key)
            if cached is not None and cached.resource_version >= obj.resource_version:
                continue
            if event.type == EventType.DELETED:
                self.cache.pop(obj.key, None)
            else:
                self.cache[obj.key] = obj
            self._emit(event.type, obj)

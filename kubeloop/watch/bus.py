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
import time
from collections import deque
from dataclasses import dataclass
from typing import List, Optional

from kubeloop.config import settings
from kubeloop.db.models import EventType, KubeObject, LabelSelector
from kubeloop.exceptions import WatchClosedError

logger = logging.getLogger(__name__)


@dataclass
class WatchEvent:
    type: EventType
    object: KubeObject


class Subscription:
    """
    Bounded, cancellable event stream for one subscriber.

    Iterating blocks until the next event arrives and stops once the
    subscription is cancelled. A subscriber that falls more than
    ``queue_size`` events behind is disconnected: its buffered events are
    dropped and the next read raises WatchClosedError.
    """

    def __init__(
        self,
        bus: "WatchBus",
        kind: Optional[str] = None,
        selector: Optional[LabelSelector] = None,
        namespace: Optional[str] = None,
        queue_size: Optional[int] = None,
    ):
        self._bus = bus
        self.kind = kind
        self.selector = selector or LabelSelector()
        self.namespace = namespace
        self.queue_size = queue_size or settings.watch_queue_size
        self._events = deque()
        self._cond = threading.Condition()
        self._cancelled = False
        self._error: Optional[WatchClosedError] = None

    def __repr__(self):
        return f"Subscription(kind={self.kind!r}, namespace={self.namespace!r}, pending={len(self._events)})"

    @property
    def closed(self) -> bool:
        return self._cancelled or self._error is not None

    def interested_in(self, obj: KubeObject, previous: Optional[KubeObject] = None) -> bool:
        if self.kind is not None and obj.kind != self.kind:
            return False
        if self.namespace is not None and obj.namespace != self.namespace:
            return False
        if self.selector.is_empty():
            return True
        if self.selector.matches(obj.labels):
            return True
        # Deliver the transition when an object leaves the selector's scope
        return previous is not None and self.selector.matches(previous.labels)

    def _offer(self, event: WatchEvent) -> bool:
        with self._cond:
            if self.closed:
                return False
            if len(self._events) >= self.queue_size:
                self._events.clear()
                self._error = WatchClosedError(
                    f"subscriber for kind={self.kind} exceeded {self.queue_size} buffered events, relist required"
                )
                logger.warning(f"Disconnecting slow subscriber {self!r}")
                self._cond.notify_all()
                return False
            self._events.append(event)
            self._cond.notify()
            return True

    def next(self, timeout: Optional[float] = None) -> Optional[WatchEvent]:
        """
        Return the next event, or None when ``timeout`` elapses or the
        subscription was cancelled.

        Raises:
            WatchClosedError: if the subscriber was disconnected
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._error is not None:
                    raise self._error
                if self._events:
                    return self._events.popleft()
                if self._cancelled:
                    return None
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def drain(self) -> List[WatchEvent]:
        """Return every buffered event without blocking"""
        with self._cond:
            if self._error is not None:
                raise self._error
            events = list(self._events)
            self._events.clear()
            return events

    def cancel(self):
        with self._cond:
            self._cancelled = True
            self._cond.notify_all()
        self._bus.unsubscribe(self)

    def __iter__(self):
        return self

    def __next__(self) -> WatchEvent:
        event = self.next()
        if event is None:
            raise StopIteration
        return event

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cancel()


class WatchBus:
    """Fan-out of store mutations to subscribers"""

    def __init__(self, queue_size: Optional[int] = None):
        self._lock = threading.Lock()
        self._subscribers: List[Subscription] = []
        self.queue_size = queue_size

    def subscribe(
        self,
        kind: Optional[str] = None,
        selector: Optional[LabelSelector] = None,
        namespace: Optional[str] = None,
        queue_size: Optional[int] = None,
    ) -> Subscription:
        subscription = Subscription(self, kind, selector, namespace, queue_size or self.queue_size)
        with self._lock:
            self._subscribers.append(subscription)
        logger.debug(f"New subscription {subscription!r}")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def publish(self, event_type: EventType, obj: KubeObject, previous: Optional[KubeObject] = None) -> int:
        """
        Deliver one event to every interested subscriber. Never blocks;
        the caller publishes in commit order.

        Returns:
            Number of subscribers the event was delivered to
        """
        with self._lock:
            subscribers = list(self._subscribers)

        delivered = 0
        for subscription in subscribers:
            if not subscription.interested_in(obj, previous):
                continue
            if subscription._offer(WatchEvent(event_type, obj.model_copy(deep=True))):
                delivered += 1
            elif subscription._error is not None:
                self.unsubscribe(subscription)
        return delivered

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

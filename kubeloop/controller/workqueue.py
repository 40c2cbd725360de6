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

import heapq
import itertools
import threading
import time
from collections import deque
from typing import Hashable, Optional

from kubeloop.utils.clock import Clock


class WorkQueue:
    """
    Deduplicating work queue with per-key serialization.

    - A key queued several times is processed once.
    - A key handed out by ``get`` is not handed out again until ``done``;
      adds that arrive meanwhile mark it dirty and it is requeued on done.
    - ``add_after`` parks a key until the clock reaches its deadline. A key
      parked several times keeps only its earliest deadline.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or Clock()
        self._queue = deque()
        self._dirty = set()
        self._processing = set()
        self._waiting = []
        self._deadlines = {}
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._shutdown = False

    def __len__(self):
        with self._cond:
            return len(self._queue)

    def _add_locked(self, key: Hashable):
        if self._shutdown or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add(self, key: Hashable):
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay: float):
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            ready_at = self.clock.now() + delay
            current = self._deadlines.get(key)
            if current is not None and current <= ready_at:
                return
            self._deadlines[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), key))
            self._cond.notify()

    def _drop_stale_locked(self):
        # Entries superseded by an earlier deadline for the same key
        while self._waiting:
            ready_at, _, key = self._waiting[0]
            if self._deadlines.get(key) == ready_at:
                return
            heapq.heappop(self._waiting)

    def _promote_ready_locked(self):
        now = self.clock.now()
        self._drop_stale_locked()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            del self._deadlines[key]
            self._add_locked(key)
            self._drop_stale_locked()

    def next_ready_at(self) -> Optional[float]:
        """Deadline of the earliest parked key, if any"""
        with self._cond:
            self._drop_stale_locked()
            return self._waiting[0][0] if self._waiting else None

    def waiting_count(self) -> int:
        with self._cond:
            return len(self._deadlines)

    def get(self, timeout: Optional[float] = None) -> Optional[Hashable]:
        """
        Hand out the next key, blocking up to ``timeout`` seconds.

        Returns:
            The key, or None on timeout or shutdown
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                self._promote_ready_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutdown:
                    return None
                wait = None
                if deadline is not None:
                    wait = deadline - time.monotonic()
                    if wait <= 0:
                        return None
                if self._waiting:
                    # Poll parked keys; the clock may be a fake one advanced elsewhere
                    wait = 0.05 if wait is None else min(wait, 0.05)
                self._cond.wait(wait)

    def done(self, key: Hashable):
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def is_processing(self, key: Hashable) -> bool:
        with self._cond:
            return key in self._processing

    def is_dirty(self, key: Hashable) -> bool:
        """True when the key is queued (or re-queued while processing)"""
        with self._cond:
            return key in self._dirty

    def shutdown(self):
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        return self._shutdown

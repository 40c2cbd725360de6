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
import threading
from collections import defaultdict
from typing import Hashable, Optional

from kubeloop.config import settings


class ExponentialBackoff:
    """Exponential backoff with full jitter: uniform(0, min(cap, base * 2**attempt))"""

    def __init__(self, base: Optional[float] = None, cap: Optional[float] = None, rng: Optional[random.Random] = None):
        self.base = settings.backoff_base_seconds if base is None else base
        self.cap = settings.backoff_cap_seconds if cap is None else cap
        self._rng = rng or random.Random()

    def ceiling(self, attempt: int) -> float:
        # Clamp the exponent so huge attempt counts cannot overflow
        return min(self.cap, self.base * (2 ** min(attempt, 64)))

    def delay(self, attempt: int) -> float:
        return self._rng.uniform(0, self.ceiling(attempt))


class ItemRateLimiter:
    """Tracks failures per work item and hands out the next backoff delay"""

    def __init__(self, backoff: Optional[ExponentialBackoff] = None):
        self.backoff = backoff or ExponentialBackoff()
        self._failures = defaultdict(int)
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            attempt = self._failures[item]
            self._failures[item] = attempt + 1
        return self.backoff.delay(attempt)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: Hashable):
        with self._lock:
            self._failures.pop(item, None)

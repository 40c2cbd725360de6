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
from typing import Optional

from kubeloop.config import settings
from kubeloop.controller.backoff import ExponentialBackoff, ItemRateLimiter
from kubeloop.controller.engine import ReconcilerEngine
from kubeloop.controller.registry import ReconcilerRegistry
from kubeloop.controllers.defaults import build_default_registry
from kubeloop.sim.node_agent import NodeAgentSimulator
from kubeloop.status.aggregator import StatusAggregator
from kubeloop.store.garbage_collector import GarbageCollector
from kubeloop.store.object_store import ObjectStore
from kubeloop.tasks.executor import create_intent_executor
from kubeloop.utils.clock import Clock

logger = logging.getLogger(__name__)


class ControllerManager:
    """
    Wires the store, engine, aggregator and garbage collector together.

    ``start``/``stop`` run everything on background threads.
    ``run_until_settled`` drives the same loop synchronously, which is what
    tests and the demo use.
    """

    def __init__(
        self,
        store: Optional[ObjectStore] = None,
        registry: Optional[ReconcilerRegistry] = None,
        clock: Optional[Clock] = None,
        node_agent: Optional[NodeAgentSimulator] = None,
        max_retries: Optional[int] = None,
        worker_count: Optional[int] = None,
        debounce_seconds: Optional[float] = None,
    ):
        self.clock = clock or Clock()
        self.store = store or ObjectStore(clock=self.clock)
        self.registry = registry or build_default_registry()
        self.executor = create_intent_executor(self.store)
        self.aggregator = StatusAggregator(self.store, self.registry, self.clock, debounce_seconds=debounce_seconds)
        backoff = ExponentialBackoff(settings.backoff_base_seconds, settings.backoff_cap_seconds)
        self.engine = ReconcilerEngine(
            self.store,
            self.registry,
            executor=self.executor,
            clock=self.clock,
            aggregator=self.aggregator,
            rate_limiter=ItemRateLimiter(backoff),
            max_retries=max_retries,
            worker_count=worker_count,
        )
        self.garbage_collector = GarbageCollector(self.store)
        self.node_agent = node_agent
        self._threads = []
        self._stop = threading.Event()
        self._last_resync = self.clock.now()

    def step(self) -> int:
        """
        One synchronous round: deliver events, reconcile ready keys, write
        due statuses, collect garbage.

        Returns:
            Amount of work done; zero means the round was idle
        """
        work = self.garbage_collector.pump()
        work += self.engine.pump_informers()
        while self.engine.process_next(timeout=0):
            work += 1
            work += self.engine.pump_informers()
        work += self.aggregator.flush()
        if self.node_agent is not None:
            work += self.node_agent.sync()
        return work

    def run_until_settled(self, max_iterations: int = 200, flush_status: bool = True) -> int:
        """
        Step until a round does no work.

        Keys parked for a later retry or timer are left parked; advance the
        clock to let them run. With ``flush_status`` the debounce window is
        skipped once everything else is idle.

        Returns:
            Number of rounds taken
        """
        for iteration in range(1, max_iterations + 1):
            if self.step():
                continue
            if flush_status and self.aggregator.pending():
                self.aggregator.flush(force=True)
                continue
            return iteration
        raise RuntimeError(f"cluster did not settle within {max_iterations} rounds")

    def _informer_loop(self):
        while not self._stop.is_set():
            try:
                if not self.engine.pump_informers(timeout=0.05):
                    self._stop.wait(0.01)
            except Exception:
                logger.exception("Informer loop failed, continuing")

    def _housekeeping_loop(self):
        while not self._stop.is_set():
            try:
                self.garbage_collector.pump()
                self.aggregator.flush()
                if self.node_agent is not None:
                    self.node_agent.sync()
                if self.clock.now() - self._last_resync >= settings.resync_seconds:
                    self._last_resync = self.clock.now()
                    self.engine.resync()
            except Exception:
                logger.exception("Housekeeping loop failed, continuing")
            self._stop.wait(min(0.05, self.aggregator.debounce_seconds or 0.05))

    def start(self):
        if self._threads:
            return
        self._stop.clear()
        self.garbage_collector.start()
        self.engine.setup_informers()
        self.engine.start()
        for target, name in ((self._informer_loop, "informers"), (self._housekeeping_loop, "housekeeping")):
            thread = threading.Thread(target=target, name=f"kubeloop-{name}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("Controller manager started")

    def stop(self):
        self._stop.set()
        self.engine.stop()
        for thread in self._threads:
            thread.join(timeout=5)
        self._threads = []
        self.garbage_collector.stop()
        self.executor.shutdown()
        logger.info("Controller manager stopped")

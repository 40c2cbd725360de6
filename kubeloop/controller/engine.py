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
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

from kubeloop.config import settings
from kubeloop.controller.backoff import ExponentialBackoff, ItemRateLimiter
from kubeloop.controller.context import ClusterView, ReconcileContext, patch_status
from kubeloop.controller.diff import IDENTITY_ANNOTATION, DesiredChild, compute_diff
from kubeloop.controller.registry import ReconcilerDefinition, ReconcilerRegistry, SyncResult
from kubeloop.controller.strategy import plan_intents
from kubeloop.controller.workqueue import WorkQueue
from kubeloop.db.models import (
    Condition,
    ConditionStatus,
    EventType,
    KubeObject,
    ObjectKey,
    ReconcileState,
    remove_condition,
    set_condition,
)
from kubeloop.exceptions import ConflictError, IntentApplyError, NotFoundError, ReconcileCancelled
from kubeloop.status.aggregator import StatusAggregator
from kubeloop.tasks.executor import IntentExecutor, LocalIntentExecutor
from kubeloop.utils.clock import Clock
from kubeloop.watch.informer import Informer

logger = logging.getLogger(__name__)

RECONCILE_FAILED = "ReconcileFailed"


class ReconcilerEngine:
    """
    Generic level-triggered control loop.

    Watch events only enqueue object keys; each pass re-reads the parent and
    its children from the store and converges on the latest desired state,
    so missed or duplicated events never matter. One key is reconciled at a
    time (the work queue serializes it) while distinct keys run in parallel
    on the worker pool.
    """

    def __init__(
        self,
        store,
        registry: ReconcilerRegistry,
        executor: Optional[IntentExecutor] = None,
        clock: Optional[Clock] = None,
        aggregator: Optional[StatusAggregator] = None,
        rate_limiter: Optional[ItemRateLimiter] = None,
        max_retries: Optional[int] = None,
        worker_count: Optional[int] = None,
    ):
        self.store = store
        self.registry = registry
        self.clock = clock or Clock()
        self.executor = executor or LocalIntentExecutor(store)
        self.aggregator = aggregator or StatusAggregator(store, registry, self.clock)
        self.rate_limiter = rate_limiter or ItemRateLimiter(ExponentialBackoff())
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self.worker_count = worker_count or settings.worker_count
        self.queue = WorkQueue(self.clock)
        self.informers: List[Informer] = []
        self._states: Dict[ObjectKey, ReconcileState] = {}
        self._states_lock = threading.Lock()
        self._seen_generations: Dict[ObjectKey, tuple] = {}
        self._pool: Optional[ThreadPoolExecutor] = None
        self._stop = threading.Event()
        self.reconcile_count = 0

    # State tracking

    def state_of(self, key: ObjectKey) -> Optional[ReconcileState]:
        with self._states_lock:
            return self._states.get(key)

    def _set_state(self, key: ObjectKey, state: ReconcileState):
        with self._states_lock:
            previous = self._states.get(key)
            self._states[key] = state
        if previous != state:
            logger.debug(f"{key}: {previous.value if previous else None} -> {state.value}")

    def _drop_state(self, key: ObjectKey):
        with self._states_lock:
            self._states.pop(key, None)

    # Event wiring

    def enqueue(self, key: ObjectKey):
        # A key mid-pass stays Reconciling; the queue hands it out again on done
        if not self.queue.is_processing(key):
            self._set_state(key, ReconcileState.PENDING)
        self.queue.add(key)

    def setup_informers(self) -> List[Informer]:
        """Create one informer per watched kind and route events to parent keys"""
        by_kind: Dict[str, Informer] = {}

        def informer_for(kind: str) -> Informer:
            if kind not in by_kind:
                by_kind[kind] = Informer(self.store, kind)
            return by_kind[kind]

        for definition in self.registry.list_definitions():
            informer_for(definition.kind).add_handler(self._parent_handler(definition))
            if definition.child_kind:
                informer_for(definition.child_kind).add_handler(self._child_handler(definition))
            for kind, mapper in definition.watches.items():
                informer_for(kind).add_handler(self._watch_handler(definition, mapper))

        self.informers = list(by_kind.values())
        return self.informers

    def _parent_handler(self, definition: ReconcilerDefinition):
        def handle(event_type: EventType, obj: KubeObject):
            if event_type == EventType.DELETED:
                self.forget(obj.key)
                return
            with self._states_lock:
                seen = self._seen_generations.get(obj.key)
                self._seen_generations[obj.key] = (obj.uid, obj.generation)
            # Status-only writes (ours included) never change the desired state
            if event_type == EventType.MODIFIED and seen == (obj.uid, obj.generation) and not obj.is_terminating:
                return
            self.enqueue(obj.key)
            if definition.aggregate is not None:
                self.aggregator.mark(obj.key)

        return handle

    def _child_handler(self, definition: ReconcilerDefinition):
        def handle(event_type: EventType, obj: KubeObject):
            ref = obj.controller_ref()
            if ref is None or ref.kind != definition.kind:
                return
            parent_key = ObjectKey(definition.kind, obj.namespace, ref.name)
            self.enqueue(parent_key)
            if definition.aggregate is not None:
                self.aggregator.mark(parent_key)

        return handle

    def _watch_handler(self, definition: ReconcilerDefinition, mapper):
        view = ClusterView(self.store)

        def handle(event_type: EventType, obj: KubeObject):
            for key in mapper(obj, view):
                self.enqueue(key)

        return handle

    def forget(self, key: ObjectKey):
        self._drop_state(key)
        with self._states_lock:
            self._seen_generations.pop(key, None)
        self.rate_limiter.forget(key)
        self.aggregator.forget(key)

    def pump_informers(self, timeout: float = 0) -> int:
        if not self.informers:
            self.setup_informers()
        return sum(informer.pump(timeout) for informer in self.informers)

    def resync(self):
        """Requeue every object of every reconciled kind"""
        for definition in self.registry.list_definitions():
            for obj in self.store.list(definition.kind):
                self.enqueue(obj.key)

    # Processing

    def process_next(self, timeout: Optional[float] = 0) -> bool:
        key = self.queue.get(timeout)
        if key is None:
            return False
        try:
            self.reconcile(key)
        finally:
            self.queue.done(key)
        return True

    def reconcile(self, key: ObjectKey):
        definition = self.registry.find(key.kind)
        if definition is None:
            logger.warning(f"No reconciler registered for {key.kind}, dropping {key}")
            return
        try:
            parent = self.store.get(key.kind, key.namespace, key.name)
        except NotFoundError:
            self.forget(key)
            return
        if parent.is_terminating:
            # Children follow through the garbage collector once the parent is purged
            self._set_state(key, ReconcileState.SETTLED)
            return

        self.reconcile_count += 1
        self._set_state(key, ReconcileState.RECONCILING)
        ctx = ReconcileContext(self.store, parent, self.executor, self.clock, self.registry)
        try:
            if definition.sync is not None:
                result = definition.sync(ctx)
            else:
                result = self._sync_children(ctx, definition)
        except ReconcileCancelled as e:
            logger.info(f"Cancelled reconcile of {key}: {e}")
            self.enqueue(key)
            return
        except ConflictError as e:
            logger.debug(f"Conflict while reconciling {key}, requeueing: {e}")
            self.enqueue(key)
            return
        except IntentApplyError as e:
            self._handle_failure(key, parent, e)
            return
        except Exception as e:
            logger.exception(f"Unexpected error reconciling {key}")
            self._handle_failure(key, parent, e)
            return

        self._handle_success(key, parent, definition, result)

    def _sync_children(self, ctx: ReconcileContext, definition: ReconcilerDefinition) -> SyncResult:
        parent = ctx.parent
        desired: List[DesiredChild] = definition.expand(parent, ctx.view)
        observed = ctx.view.children_of(parent, definition.child_kind)
        if self._adopt_orphans(ctx, definition.child_kind, desired, observed):
            # Adoption writes bring the parent back with the claimed children
            return SyncResult(settled=False)
        diff = compute_diff(desired, observed)
        plan = plan_intents(diff, len(desired), definition.strategy(parent))

        if plan.is_empty():
            return SyncResult(settled=not plan.waiting)

        logger.info(
            f"Reconciling {parent.key}: create={len(plan.creates)} update={len(plan.updates)} "
            f"delete={len(plan.deletes)} waiting={plan.waiting}"
        )
        for operation, payload in plan.steps():
            if operation == "create":
                ctx.create(self._build_child(parent, definition.child_kind, payload))
            elif operation == "update":
                child, wanted = payload
                updated = child.model_copy(deep=True)
                updated.spec = {**child.spec, **wanted.spec}
                updated.labels = {**child.labels, **wanted.labels}
                ctx.update(updated)
            else:
                ctx.delete(payload)
        # Intents are in flight; their watch events bring us back
        return SyncResult(settled=False)

    @staticmethod
    def _adopt_orphans(
        ctx: ReconcileContext, child_kind: str, desired: List[DesiredChild], observed: List[KubeObject]
    ) -> int:
        """
        Claim children left behind by an orphaning delete.

        A child is adopted only when it has no controller, is not
        terminating, and carries the name, identity and labels of a child
        the parent wants but does not own yet.

        Returns:
            Number of children adopted
        """
        owned = {child.name for child in observed}
        wanted = {child.name: child for child in desired if child.name not in owned}
        if not wanted:
            return 0
        adopted = 0
        for orphan in ctx.view.list(child_kind, ctx.parent.namespace):
            want = wanted.get(orphan.name)
            if want is None or orphan.controller_ref() is not None or orphan.is_terminating:
                continue
            if orphan.annotations.get(IDENTITY_ANNOTATION) != want.identity:
                continue
            if any(orphan.labels.get(key) != value for key, value in want.labels.items()):
                continue
            claimed = orphan.model_copy(deep=True)
            claimed.owner_references = [*orphan.owner_references, ctx.parent.owner_reference(controller=True)]
            ctx.update(claimed)
            logger.info(f"{ctx.parent.key} adopted {orphan.key}")
            adopted += 1
        return adopted

    @staticmethod
    def _build_child(parent: KubeObject, child_kind: str, desired: DesiredChild) -> KubeObject:
        return KubeObject(
            kind=child_kind,
            namespace=parent.namespace,
            name=desired.name,
            labels=dict(desired.labels),
            annotations={**desired.annotations, IDENTITY_ANNOTATION: desired.identity},
            owner_references=[parent.owner_reference(controller=True)],
            spec=dict(desired.spec),
        )

    def _handle_success(self, key: ObjectKey, parent: KubeObject, definition, result: SyncResult):
        self.rate_limiter.forget(key)

        def settle(status):
            status = remove_condition(status, RECONCILE_FAILED)
            if result.settled:
                status["observedGeneration"] = parent.generation
            return status

        try:
            patch_status(self.store, parent, settle)
        except ConflictError:
            self.enqueue(key)
            return

        if definition.aggregate is not None:
            self.aggregator.mark(key)
        if result.requeue_after is not None:
            self.queue.add_after(key, result.requeue_after)
        if self.queue.is_dirty(key):
            self._set_state(key, ReconcileState.PENDING)
        else:
            self._set_state(key, ReconcileState.SETTLED if result.settled else ReconcileState.RECONCILING)

    def _handle_failure(self, key: ObjectKey, parent: KubeObject, error: Exception):
        attempts = self.rate_limiter.num_requeues(key)
        if attempts < self.max_retries:
            delay = self.rate_limiter.when(key)
            logger.warning(f"Reconcile of {key} failed (attempt {attempts + 1}), retrying in {delay:.2f}s: {error}")
            self._set_state(key, ReconcileState.PENDING)
            self.queue.add_after(key, delay)
            return

        logger.error(f"Reconcile of {key} failed {attempts + 1} times, giving up: {error}")
        self.rate_limiter.forget(key)
        condition = Condition(
            type=RECONCILE_FAILED,
            status=ConditionStatus.TRUE,
            reason=type(error).__name__,
            message=str(error),
        )
        now = self.clock.wall()
        try:
            patch_status(self.store, parent, lambda status: set_condition(status, condition, now))
        except ConflictError as e:
            logger.warning(f"Could not record failure on {key}: {e}")
        self._set_state(key, ReconcileState.FAILED)

    # Background operation

    def _worker_loop(self):
        while not self._stop.is_set():
            try:
                self.process_next(timeout=0.1)
            except Exception:
                logger.exception("Reconcile worker crashed on an item, continuing")

    def start(self):
        """Run ``worker_count`` reconcile workers in the background"""
        if self._pool is not None:
            return
        if not self.informers:
            self.setup_informers()
        self._stop.clear()
        self._pool = ThreadPoolExecutor(max_workers=self.worker_count, thread_name_prefix="reconcile")
        for _ in range(self.worker_count):
            self._pool.submit(self._worker_loop)
        logger.info(f"Reconciler engine started with {self.worker_count} workers")

    def stop(self):
        self._stop.set()
        self.queue.shutdown()
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
        for informer in self.informers:
            informer.stop()
        logger.info("Reconciler engine stopped")

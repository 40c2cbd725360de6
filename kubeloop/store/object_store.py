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
from typing import Any, Dict, Iterator, List, Optional, Tuple

from kubeloop.db.models import (
    DeletionPropagation,
    EventType,
    KubeObject,
    LabelSelector,
    ObjectKey,
    random_id,
)
from kubeloop.exceptions import AlreadyExistsError, ConflictError, NotFoundError
from kubeloop.utils.clock import Clock
from kubeloop.watch.bus import Subscription, WatchBus

logger = logging.getLogger(__name__)


class ObjectList:
    """
    Snapshot of a list call.

    Iteration is lazy (objects are copied as they are yielded) and
    restartable: every ``iter()`` walks the same snapshot again.
    """

    def __init__(self, objects: List[KubeObject], resource_version: int):
        self._objects = tuple(objects)
        self.resource_version = resource_version

    def __iter__(self) -> Iterator[KubeObject]:
        for obj in self._objects:
            yield obj.model_copy(deep=True)

    def __len__(self):
        return len(self._objects)

    def __bool__(self):
        return bool(self._objects)

    def names(self) -> List[str]:
        return [obj.name for obj in self._objects]


class ObjectStore:
    """
    In-memory versioned object store with optimistic concurrency.

    Resource versions come from one store-wide counter, so they increase
    strictly per object and also order list snapshots. Stored objects are
    never mutated in place: each write swaps in a fresh copy, and every
    successful write publishes exactly one event while the lock is held so
    subscribers see commit order.
    """

    def __init__(self, watch_bus: Optional[WatchBus] = None, clock: Optional[Clock] = None):
        self._lock = threading.RLock()
        self._objects: Dict[ObjectKey, KubeObject] = {}
        self._revision = 0
        self.watch_bus = watch_bus or WatchBus()
        self.clock = clock or Clock()

    @property
    def revision(self) -> int:
        with self._lock:
            return self._revision

    def _next_revision(self) -> int:
        self._revision += 1
        return self._revision

    def _commit(self, event_type: EventType, obj: KubeObject, previous: Optional[KubeObject] = None):
        if event_type == EventType.DELETED:
            self._objects.pop(obj.key, None)
        else:
            self._objects[obj.key] = obj
        self.watch_bus.publish(event_type, obj, previous)
        logger.debug(f"{event_type.value} {obj.key} rv={obj.resource_version}")

    def _get_locked(self, kind: str, namespace: str, name: str) -> KubeObject:
        key = ObjectKey(kind, namespace, name)
        current = self._objects.get(key)
        if current is None:
            raise NotFoundError(f"{key} not found")
        return current

    @staticmethod
    def _check_version(current: KubeObject, expected_version: Optional[int]):
        if expected_version is not None and expected_version != current.resource_version:
            raise ConflictError(
                f"{current.key} is at version {current.resource_version}, not {expected_version}",
                current_version=current.resource_version,
            )

    def put(self, obj: KubeObject, expected_version: Optional[int] = None) -> int:
        """
        Create or update an object's desired state.

        Args:
            obj: Object carrying the new spec and metadata. Its status is ignored.
            expected_version: None to create, otherwise the resource version
                the caller read.

        Returns:
            The new resource version

        Raises:
            AlreadyExistsError: creating an object that already exists
            ConflictError: expected_version is stale
            NotFoundError: updating an object that does not exist
        """
        with self._lock:
            current = self._objects.get(obj.key)

            if expected_version is None:
                if current is not None:
                    raise AlreadyExistsError(f"{obj.key} already exists", current_version=current.resource_version)
                created = obj.model_copy(deep=True)
                created.uid = random_id()
                created.resource_version = self._next_revision()
                created.generation = 1
                created.status = {}
                created.deletion_timestamp = None
                self._commit(EventType.ADDED, created)
                return created.resource_version

            if current is None:
                raise NotFoundError(f"{obj.key} not found")
            self._check_version(current, expected_version)

            updated = current.model_copy(deep=True)
            if obj.spec != current.spec:
                updated.generation = current.generation + 1
            updated.spec = dict(obj.model_copy(deep=True).spec)
            updated.labels = dict(obj.labels)
            updated.annotations = dict(obj.annotations)
            updated.owner_references = [ref.model_copy() for ref in obj.owner_references]
            updated.finalizers = list(obj.finalizers)
            updated.resource_version = self._next_revision()

            if updated.is_terminating and not updated.finalizers:
                # Last finalizer removed: purge the object
                self._commit(EventType.DELETED, updated, current)
                logger.info(f"Purged {updated.key} after its finalizers were removed")
            else:
                self._commit(EventType.MODIFIED, updated, current)
            return updated.resource_version

    def put_status(
        self, kind: str, namespace: str, name: str, status: Dict[str, Any], expected_version: Optional[int] = None
    ) -> int:
        """Replace the observed status; generation and spec are untouched"""
        with self._lock:
            current = self._get_locked(kind, namespace, name)
            self._check_version(current, expected_version)
            updated = current.model_copy(deep=True)
            updated.status = dict(status)
            updated.resource_version = self._next_revision()
            self._commit(EventType.MODIFIED, updated, current)
            return updated.resource_version

    def get(self, kind: str, namespace: str, name: str) -> KubeObject:
        with self._lock:
            return self._get_locked(kind, namespace, name).model_copy(deep=True)

    def exists(self, kind: str, namespace: str, name: str) -> bool:
        with self._lock:
            return ObjectKey(kind, namespace, name) in self._objects

    def _select(self, kind: Optional[str], namespace: Optional[str], selector: Optional[LabelSelector]):
        matched = []
        for obj in self._objects.values():
            if kind is not None and obj.kind != kind:
                continue
            if namespace is not None and obj.namespace != namespace:
                continue
            if selector is not None and not selector.matches(obj.labels):
                continue
            matched.append(obj)
        matched.sort(key=lambda o: o.key)
        return matched

    def list(
        self, kind: Optional[str] = None, namespace: Optional[str] = None, selector: Optional[LabelSelector] = None
    ) -> ObjectList:
        """List objects; a None namespace lists across all namespaces"""
        with self._lock:
            return ObjectList(self._select(kind, namespace, selector), self._revision)

    def list_and_watch(
        self, kind: Optional[str] = None, namespace: Optional[str] = None, selector: Optional[LabelSelector] = None
    ) -> Tuple[ObjectList, Subscription]:
        """Atomically snapshot and subscribe so no event falls between the two"""
        with self._lock:
            snapshot = ObjectList(self._select(kind, namespace, selector), self._revision)
            subscription = self.watch_bus.subscribe(kind=kind, selector=selector, namespace=namespace)
            return snapshot, subscription

    def subscribe(
        self, kind: Optional[str] = None, selector: Optional[LabelSelector] = None, namespace: Optional[str] = None
    ) -> Subscription:
        return self.watch_bus.subscribe(kind=kind, selector=selector, namespace=namespace)

    def dependents_of(self, owner_uid: str) -> List[KubeObject]:
        with self._lock:
            return [
                obj.model_copy(deep=True)
                for obj in self._select(None, None, None)
                if any(ref.uid == owner_uid for ref in obj.owner_references)
            ]

    def owner_exists(self, kind: str, namespace: str, name: str, uid: str) -> bool:
        """Owner references resolve in the dependent's namespace or cluster scope"""
        with self._lock:
            for ns in (namespace, ""):
                obj = self._objects.get(ObjectKey(kind, ns, name))
                if obj is not None and obj.uid == uid:
                    return True
            return False

    def delete(
        self,
        kind: str,
        namespace: str,
        name: str,
        expected_version: Optional[int] = None,
        propagation: DeletionPropagation = DeletionPropagation.BACKGROUND,
    ) -> KubeObject:
        """
        Delete an object.

        Objects with finalizers enter the Terminating sub-state and are purged
        when the last finalizer is removed; others are purged immediately.
        With the Orphan policy the owner reference is stripped from every
        dependent so the garbage collector leaves them alone.

        Returns:
            The object as of the delete (terminating or purged)
        """
        with self._lock:
            current = self._get_locked(kind, namespace, name)
            self._check_version(current, expected_version)

            if propagation == DeletionPropagation.ORPHAN:
                self._orphan_dependents(current)

            if current.finalizers and current.is_terminating:
                return current.model_copy(deep=True)

            updated = current.model_copy(deep=True)
            updated.resource_version = self._next_revision()
            if current.finalizers:
                updated.deletion_timestamp = self.clock.wall()
                self._commit(EventType.MODIFIED, updated, current)
                logger.info(f"{updated.key} is terminating, waiting on finalizers {updated.finalizers}")
            else:
                self._commit(EventType.DELETED, updated, current)
                logger.debug(f"Deleted {updated.key}")
            return updated.model_copy(deep=True)

    def _orphan_dependents(self, owner: KubeObject):
        for dependent in list(self._objects.values()):
            if not any(ref.uid == owner.uid for ref in dependent.owner_references):
                continue
            updated = dependent.model_copy(deep=True)
            updated.owner_references = [ref for ref in dependent.owner_references if ref.uid != owner.uid]
            updated.resource_version = self._next_revision()
            self._commit(EventType.MODIFIED, updated, dependent)
            logger.info(f"Orphaned {updated.key} from {owner.key}")

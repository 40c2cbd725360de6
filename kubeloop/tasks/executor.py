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

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from collections import OrderedDict, deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Optional

from kubeloop.config import settings
from kubeloop.db.models import KubeObject
from kubeloop.exceptions import AlreadyExistsError, ConflictError, IntentApplyError, NotFoundError

logger = logging.getLogger(__name__)


class IntentOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class Intent:
    """A single create/update/delete the engine wants applied"""

    operation: IntentOperation
    object: KubeObject
    expected_version: Optional[int] = None
    intent_id: str = ""


@dataclass
class IntentResult:
    """Represents the result of an intent execution"""

    intent_id: str
    operation: IntentOperation
    target: str
    success: bool = True
    error: Optional[str] = None
    resource_version: Optional[int] = None


class IntentExecutor(ABC):
    """Abstract base class for intent executors"""

    @abstractmethod
    def apply(self, intent: Intent) -> IntentResult:
        """
        Apply one intent against the external target

        Args:
            intent: The create/update/delete to apply

        Returns:
            IntentResult of a successful application

        Raises:
            ConflictError: update against a stale version (caller re-reads)
            IntentApplyError: the intent failed or timed out (retryable)
        """
        pass

    @abstractmethod
    def get_result(self, intent_id: str) -> Optional[IntentResult]:
        """
        Get intent execution result

        Args:
            intent_id: Intent ID to check

        Returns:
            IntentResult or None if intent not found
        """
        pass


class LocalIntentExecutor(IntentExecutor):
    """Applies intents to the in-process object store on a bounded thread pool"""

    def __init__(
        self,
        store,
        timeout: Optional[float] = None,
        max_workers: Optional[int] = None,
        history_size: Optional[int] = None,
    ):
        self.store = store
        self.timeout = settings.intent_timeout_seconds if timeout is None else timeout
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers or settings.intent_workers, thread_name_prefix="intent"
        )
        self._counter = itertools.count(1)
        self._lock = threading.Lock()
        self.history_size = history_size or settings.intent_history_size
        self._results = OrderedDict()
        self.history: Deque[IntentResult] = deque(maxlen=self.history_size)

    def _execute(self, intent: Intent) -> Optional[int]:
        obj = intent.object
        if intent.operation == IntentOperation.CREATE:
            return self.store.put(obj, expected_version=None)
        if intent.operation == IntentOperation.UPDATE:
            return self.store.put(obj, expected_version=intent.expected_version)
        if intent.operation == IntentOperation.DELETE:
            try:
                return self.store.delete(
                    obj.kind, obj.namespace, obj.name, expected_version=intent.expected_version
                ).resource_version
            except NotFoundError:
                # Already gone: deleting is idempotent
                return None
        raise ValueError(f"Unknown intent operation: {intent.operation}")

    def _record(self, result: IntentResult):
        with self._lock:
            self._results[result.intent_id] = result
            self.history.append(result)
            # Only the most recent results stay queryable
            while len(self._results) > self.history_size:
                self._results.popitem(last=False)

    def apply(self, intent: Intent) -> IntentResult:
        if not intent.intent_id:
            intent.intent_id = f"intent_{next(self._counter)}"
        target = str(intent.object.key)

        future = self._pool.submit(self._execute, intent)
        try:
            version = future.result(timeout=self.timeout)
        except FutureTimeoutError:
            self._record(IntentResult(intent.intent_id, intent.operation, target, success=False, error="timeout"))
            raise IntentApplyError(
                f"{intent.operation.value} {target} timed out after {self.timeout}s", intent.intent_id
            )
        except AlreadyExistsError as e:
            self._record(IntentResult(intent.intent_id, intent.operation, target, success=False, error=str(e)))
            raise IntentApplyError(f"{intent.operation.value} {target} failed: {e}", intent.intent_id) from e
        except ConflictError as e:
            self._record(IntentResult(intent.intent_id, intent.operation, target, success=False, error=str(e)))
            raise
        except Exception as e:
            self._record(IntentResult(intent.intent_id, intent.operation, target, success=False, error=str(e)))
            raise IntentApplyError(f"{intent.operation.value} {target} failed: {e}", intent.intent_id) from e

        result = IntentResult(intent.intent_id, intent.operation, target, success=True, resource_version=version)
        self._record(result)
        logger.debug(f"Applied {intent.operation.value} {target} ({intent.intent_id})")
        return result

    def get_result(self, intent_id: str) -> Optional[IntentResult]:
        with self._lock:
            return self._results.get(intent_id)

    def shutdown(self):
        self._pool.shutdown(wait=False)


def create_intent_executor(store, executor_type: str = "local", **kwargs) -> IntentExecutor:
    """Build an executor by name"""
    if executor_type == "local":
        return LocalIntentExecutor(store, **kwargs)
    raise ValueError(f"Unknown intent executor type: {executor_type}")

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

from typing import Dict, List, Optional


class KubeloopError(Exception):
    """Base class for all errors raised by kubeloop"""


class ConflictError(KubeloopError):
    """The caller worked against a stale resource version and must re-read"""

    def __init__(self, message: str, current_version: Optional[int] = None):
        super().__init__(message)
        self.current_version = current_version


class AlreadyExistsError(ConflictError):
    """A create was submitted for an object that already exists"""


class NotFoundError(KubeloopError):
    """The requested object does not exist"""


class ValidationError(KubeloopError):
    """A submitted spec is malformed; it never reaches the store"""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        super().__init__(message)
        self.errors = errors or []


class Unschedulable(KubeloopError):
    """No candidate target can host the unit of work"""

    def __init__(self, message: str, reasons: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.reasons = reasons or {}


class IntentApplyError(KubeloopError):
    """A create/update/delete intent failed; retried with backoff"""

    def __init__(self, message: str, intent_id: Optional[str] = None):
        super().__init__(message)
        self.intent_id = intent_id


class WatchClosedError(KubeloopError):
    """The subscription was dropped; the consumer must relist"""


class ReconcileCancelled(KubeloopError):
    """A newer spec arrived while a reconciliation was in flight"""

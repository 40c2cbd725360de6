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
from typing import Any, Dict, Optional

from kubeloop.controller.context import patch_status
from kubeloop.db.models import KubeObject

logger = logging.getLogger(__name__)

PHASE_RUNNING = "Running"
PHASE_FAILED = "Failed"


class NodeAgentSimulator:
    """
    Stands in for the per-node agents: the only writer of pod run state.

    ``sync`` starts every pod bound to a node that is not running yet. The
    other helpers let tests and the demo inject failures and load.
    """

    def __init__(self, store, auto_ready: bool = True):
        self.store = store
        self.auto_ready = auto_ready

    def sync(self) -> int:
        """
        Mark bound pods Running and ready.

        Returns:
            Number of pods started
        """
        if not self.auto_ready:
            return 0
        started = 0
        for pod in self.store.list("Pod"):
            if not pod.spec.get("nodeName") or pod.is_terminating:
                continue
            if pod.status.get("phase") in (PHASE_RUNNING, PHASE_FAILED):
                continue
            if self._write(pod, {"phase": PHASE_RUNNING, "ready": True}):
                started += 1
                logger.debug(f"Started {pod.key} on {pod.spec['nodeName']}")
        return started

    def _write(self, pod: KubeObject, fields: Dict[str, Any]) -> bool:
        return patch_status(self.store, pod, lambda status: {**status, **fields})

    def _pod(self, namespace: str, name: str) -> KubeObject:
        return self.store.get("Pod", namespace, name)

    def set_ready(self, namespace: str, name: str, ready: bool = True) -> bool:
        return self._write(self._pod(namespace, name), {"phase": PHASE_RUNNING, "ready": ready})

    def fail_pod(self, namespace: str, name: str, reason: Optional[str] = None) -> bool:
        fields = {"phase": PHASE_FAILED, "ready": False}
        if reason:
            fields["reason"] = reason
        logger.info(f"Failing pod {namespace}/{name}: {reason or 'injected failure'}")
        return self._write(self._pod(namespace, name), fields)

    def set_utilization(self, namespace: str, name: str, utilization: float) -> bool:
        return self._write(self._pod(namespace, name), {"utilization": utilization})

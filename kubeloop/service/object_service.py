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
from typing import Dict, List, Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt

from kubeloop.controller.manager import ControllerManager
from kubeloop.db.models import (
    CLUSTER_NAMESPACE,
    DEFAULT_NAMESPACE,
    DeletionPropagation,
    KubeObject,
    LabelSelector,
    OwnerReference,
)
from kubeloop.exceptions import ConflictError, NotFoundError
from kubeloop.schema import view_models

logger = logging.getLogger(__name__)

FINALIZER_WRITE_ATTEMPTS = 5


class ObjectService:
    """Intent submission, read and status interface in front of the store"""

    def __init__(self, manager: ControllerManager):
        self.manager = manager
        self.store = manager.store
        self.registry = manager.registry

    def _namespace(self, kind: str, namespace: Optional[str]) -> str:
        if self.registry.is_cluster_scoped(kind):
            return CLUSTER_NAMESPACE
        return namespace or DEFAULT_NAMESPACE

    def submit(
        self,
        kind: str,
        namespace: Optional[str],
        name: str,
        spec: Dict,
        labels: Optional[Dict[str, str]] = None,
        expected_version: Optional[int] = None,
        annotations: Optional[Dict[str, str]] = None,
        finalizers: Optional[List[str]] = None,
        owner_references: Optional[List[OwnerReference]] = None,
    ) -> int:
        """
        Create or update an object's desired state.

        Without ``expected_version`` the submission is an apply: it creates
        the object or overwrites the current version. With it the write only
        succeeds against exactly that version.

        Returns:
            The new resource version

        Raises:
            ValidationError: unknown kind or invalid spec; nothing is stored
            ConflictError: ``expected_version`` is stale
            NotFoundError: ``expected_version`` given for a missing object
        """
        normalized = self.registry.validate(kind, spec)
        namespace = self._namespace(kind, namespace)
        obj = KubeObject(
            kind=kind,
            namespace=namespace,
            name=name,
            labels=labels or {},
            annotations=annotations or {},
            finalizers=finalizers or [],
            owner_references=owner_references or [],
            spec=normalized,
        )
        if expected_version is not None:
            return self.store.put(obj, expected_version=expected_version)

        try:
            version = self.store.put(obj)
            logger.info(f"Created {obj.key} at rv={version}")
            return version
        except ConflictError as e:
            current_version = e.current_version
        try:
            current = self.store.get(kind, namespace, name)
        except NotFoundError:
            # Deleted in between; the caller may simply retry
            raise ConflictError(f"{obj.key} changed while applying", current_version=current_version)
        # Controller-managed metadata survives an apply that does not mention it
        if owner_references is None:
            obj.owner_references = current.owner_references
        if finalizers is None:
            obj.finalizers = current.finalizers
        version = self.store.put(obj, expected_version=current.resource_version)
        logger.info(f"Updated {obj.key} to rv={version}")
        return version

    def submit_view(self, kind: str, namespace: str, name: str, body: view_models.ObjectSubmit) -> int:
        return self.submit(
            kind,
            namespace,
            name,
            body.spec,
            labels=body.labels,
            expected_version=body.expected_version,
            annotations=body.annotations,
            finalizers=body.finalizers if "finalizers" in body.model_fields_set else None,
            owner_references=body.owner_references if "owner_references" in body.model_fields_set else None,
        )

    def get(self, kind: str, namespace: Optional[str], name: str) -> KubeObject:
        return self.store.get(kind, self._namespace(kind, namespace), name)

    def list(
        self, kind: str, namespace: Optional[str] = None, label_selector: Optional[str] = None
    ) -> view_models.ObjectList:
        selector = LabelSelector.parse(label_selector) if label_selector else None
        if namespace is not None:
            namespace = self._namespace(kind, namespace)
        objects = self.store.list(kind, namespace, selector)
        return view_models.ObjectList(items=list(objects), resource_version=objects.resource_version)

    def get_status(self, kind: str, namespace: Optional[str], name: str) -> view_models.ObjectStatus:
        obj = self.get(kind, namespace, name)
        state = self.manager.engine.state_of(obj.key)
        return view_models.ObjectStatus(
            kind=obj.kind,
            namespace=obj.namespace,
            name=obj.name,
            resource_version=obj.resource_version,
            generation=obj.generation,
            observed_generation=obj.status.get("observedGeneration"),
            reconcile_state=state.value if state else None,
            status=obj.status,
        )

    def delete(
        self,
        kind: str,
        namespace: Optional[str],
        name: str,
        expected_version: Optional[int] = None,
        propagation: DeletionPropagation = DeletionPropagation.BACKGROUND,
    ) -> KubeObject:
        deleted = self.store.delete(
            kind, self._namespace(kind, namespace), name, expected_version=expected_version, propagation=propagation
        )
        logger.info(f"Delete requested for {deleted.key} ({propagation.value})")
        return deleted

    @retry(
        stop=stop_after_attempt(FINALIZER_WRITE_ATTEMPTS),
        retry=retry_if_exception_type(ConflictError),
        reraise=True,
    )
    def remove_finalizer(self, kind: str, namespace: Optional[str], name: str, finalizer: str) -> int:
        """Drop one finalizer; removing the last one purges a terminating object"""
        obj = self.get(kind, namespace, name)
        if finalizer not in obj.finalizers:
            return obj.resource_version
        obj.finalizers = [f for f in obj.finalizers if f != finalizer]
        return self.store.put(obj, expected_version=obj.resource_version)

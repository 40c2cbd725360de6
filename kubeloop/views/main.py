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
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from kubeloop.db.models import DeletionPropagation, KubeObject
from kubeloop.schema import view_models
from kubeloop.service.object_service import ObjectService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_object_service(request: Request) -> ObjectService:
    return request.app.state.object_service


@router.get("/kinds")
def list_kinds_view(service: ObjectService = Depends(get_object_service)) -> list:
    return service.registry.kinds()


@router.put("/namespaces/{namespace}/{kind}/{name}")
def submit_object_view(
    namespace: str,
    kind: str,
    name: str,
    body: view_models.ObjectSubmit,
    service: ObjectService = Depends(get_object_service),
) -> view_models.SubmitResult:
    version = service.submit_view(kind, namespace, name, body)
    obj = service.get(kind, namespace, name)
    return view_models.SubmitResult(kind=kind, namespace=obj.namespace, name=name, resource_version=version)


@router.get("/namespaces/{namespace}/{kind}")
def list_objects_view(
    namespace: str,
    kind: str,
    label_selector: Optional[str] = Query(default=None, alias="labelSelector"),
    service: ObjectService = Depends(get_object_service),
) -> view_models.ObjectList:
    return service.list(kind, namespace, label_selector)


@router.get("/namespaces/{namespace}/{kind}/{name}")
def get_object_view(
    namespace: str, kind: str, name: str, service: ObjectService = Depends(get_object_service)
) -> KubeObject:
    return service.get(kind, namespace, name)


@router.get("/namespaces/{namespace}/{kind}/{name}/status")
def get_object_status_view(
    namespace: str, kind: str, name: str, service: ObjectService = Depends(get_object_service)
) -> view_models.ObjectStatus:
    return service.get_status(kind, namespace, name)


@router.delete("/namespaces/{namespace}/{kind}/{name}")
def delete_object_view(
    namespace: str,
    kind: str,
    name: str,
    expected_version: Optional[int] = Query(default=None, alias="expectedVersion"),
    propagation: DeletionPropagation = Query(default=DeletionPropagation.BACKGROUND, alias="propagationPolicy"),
    service: ObjectService = Depends(get_object_service),
) -> KubeObject:
    return service.delete(kind, namespace, name, expected_version=expected_version, propagation=propagation)

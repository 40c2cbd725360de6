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
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from kubeloop.config import setup_logging
from kubeloop.controller.manager import ControllerManager
from kubeloop.exceptions import ConflictError, KubeloopError, NotFoundError, ValidationError
from kubeloop.schema.view_models import FailResponse
from kubeloop.service.object_service import ObjectService
from kubeloop.views.main import router as main_router

logger = logging.getLogger(__name__)


def _fail(status_code: int, code: str, exc: Exception, details=None) -> JSONResponse:
    body = FailResponse(code=code, message=str(exc), details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True, exclude_none=True))


def create_app(manager: Optional[ControllerManager] = None, run_controllers: bool = True) -> FastAPI:
    """
    Build the HTTP app around a controller manager.

    With ``run_controllers`` the manager's background loops run for the
    lifetime of the app.
    """
    manager = manager or ControllerManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        if run_controllers:
            manager.start()
        try:
            yield
        finally:
            if run_controllers:
                manager.stop()

    app = FastAPI(title="kubeloop", lifespan=lifespan)
    app.state.manager = manager
    app.state.object_service = ObjectService(manager)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _fail(404, "NotFound", exc)

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        return _fail(409, "Conflict", exc, {"currentVersion": exc.current_version})

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return _fail(422, "Invalid", exc, exc.errors)

    @app.exception_handler(KubeloopError)
    async def kubeloop_error_handler(request: Request, exc: KubeloopError):
        logger.warning(f"Unhandled {type(exc).__name__} on {request.url.path}: {exc}")
        return _fail(500, type(exc).__name__, exc)

    app.include_router(main_router, prefix="/api/v1")
    return app


app = create_app()

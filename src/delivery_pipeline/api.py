# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory for the delivery pipeline.

Endpoints:
    - ``GET /health``: liveness probe, no authentication
    - ``GET /metrics``: Prometheus exposition
    - ``POST /jobs``: enqueue trigger commands on the workflow topic
    - ``GET /messages/{id}``: message record
    - ``GET /messages/{id}/execution-details``: audit trail of a message
    - ``GET /jobs/{job_id}/execution-details``: audit trail of a job
    - ``PUT /integrations|subscribers|environments|tenants|layouts``:
      reference data upserts

Every endpoint except ``/health`` requires the ``X-API-Token`` header when
a token is configured.

Example:
    Creating and running the API application::

        service = DeliveryService(load_settings())
        app = create_app(service, api_token="secret-token")
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from .logger import get_logger
from .models import (
    Environment,
    ExecutionDetail,
    Integration,
    Layout,
    Message,
    Subscriber,
    Tenant,
    TriggerCommand,
)
from .service import DeliveryService

logger = get_logger("DeliveryAPI")

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


class CommandStatus(BaseModel):
    ok: bool
    error: str | None = None


class EnqueuePayload(BaseModel):
    """Trigger commands to enqueue."""

    commands: list[TriggerCommand]


class EnqueueResponse(CommandStatus):
    job_ids: list[str]


class MessageResponse(CommandStatus):
    message: Message


class ExecutionDetailsResponse(CommandStatus):
    execution_details: list[ExecutionDetail]


def create_app(
    svc: DeliveryService,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        svc: Service whose collaborators back the endpoints.
        api_token: Optional secret required in ``X-API-Token``.
        lifespan: Optional lifespan context manager for startup/shutdown.

    Returns:
        A configured application ready to be served by uvicorn.
    """
    api = FastAPI(title="Notification Delivery Pipeline", lifespan=lifespan)
    api.state.api_token = api_token
    api.state.service = svc

    async def require_token(token: str | None = Depends(api_key_scheme)) -> None:
        expected = api.state.api_token
        if expected is None:
            return
        if not token or token != expected:
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

    router = APIRouter(dependencies=[Depends(require_token)])

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.error("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @api.get("/health")
    async def health():
        return {"status": "ok"}

    @router.get("/metrics")
    async def metrics():
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    @router.post("/jobs", response_model=EnqueueResponse, response_model_exclude_none=True)
    async def enqueue_jobs(payload: EnqueuePayload):
        """Enqueue one or more trigger commands."""
        if not payload.commands:
            raise HTTPException(400, "No commands supplied")
        jobs = await svc.enqueue([command.model_dump() for command in payload.commands])
        return EnqueueResponse(ok=True, job_ids=[job.id for job in jobs])

    @router.get("/messages/{message_id}", response_model=MessageResponse, response_model_exclude_none=True)
    async def get_message(message_id: str):
        message = await svc.persistence.get_message(message_id)
        if message is None:
            raise HTTPException(404, f"Message '{message_id}' not found")
        return MessageResponse(ok=True, message=message)

    @router.get(
        "/messages/{message_id}/execution-details",
        response_model=ExecutionDetailsResponse,
        response_model_exclude_none=True,
    )
    async def message_execution_details(message_id: str):
        message, details = await svc.message_details(message_id)
        if message is None:
            raise HTTPException(404, f"Message '{message_id}' not found")
        return ExecutionDetailsResponse(ok=True, execution_details=details)

    @router.get(
        "/jobs/{job_id}/execution-details",
        response_model=ExecutionDetailsResponse,
        response_model_exclude_none=True,
    )
    async def job_execution_details(job_id: str):
        details = await svc.job_details(job_id)
        return ExecutionDetailsResponse(ok=True, execution_details=details)

    async def _upsert(adder: Callable[[Any], Any], entity: BaseModel) -> CommandStatus:
        await adder(entity)
        return CommandStatus(ok=True)

    @router.put("/integrations", response_model=CommandStatus, response_model_exclude_none=True)
    async def put_integration(payload: Integration):
        return await _upsert(svc.persistence.add_integration, payload)

    @router.put("/subscribers", response_model=CommandStatus, response_model_exclude_none=True)
    async def put_subscriber(payload: Subscriber):
        return await _upsert(svc.persistence.add_subscriber, payload)

    @router.put("/environments", response_model=CommandStatus, response_model_exclude_none=True)
    async def put_environment(payload: Environment):
        return await _upsert(svc.persistence.add_environment, payload)

    @router.put("/tenants", response_model=CommandStatus, response_model_exclude_none=True)
    async def put_tenant(payload: Tenant):
        return await _upsert(svc.persistence.add_tenant, payload)

    @router.put("/layouts", response_model=CommandStatus, response_model_exclude_none=True)
    async def put_layout(payload: Layout):
        return await _upsert(svc.persistence.add_layout, payload)

    api.include_router(router)
    return api


__all__ = ["API_TOKEN_HEADER_NAME", "create_app"]

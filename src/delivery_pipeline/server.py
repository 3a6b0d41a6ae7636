# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

Usage:
    uvicorn delivery_pipeline.server:app --host 0.0.0.0 --port 8000

Configuration is read with :func:`delivery_pipeline.config.load_settings`
(``NDP_CONFIG`` and the ``NDP_*`` environment variables).
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config import PipelineConfig, load_settings
from .service import DeliveryService


def build_app(config: PipelineConfig | None = None) -> FastAPI:
    """Create the service and an application that starts and stops it."""
    config = config or load_settings()
    service = DeliveryService(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await service.start()
        yield
        await service.stop()

    return create_app(service, api_token=config.api_token, lifespan=lifespan)


app = build_app()

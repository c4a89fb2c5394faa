from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse

from payrecon.config import settings
from payrecon.db.client import close_pool, init_pool
from payrecon.logging import setup_logging
from payrecon.routes import health, verification, webhooks
from payrecon.utils.security import require_docs_credentials

setup_logging()


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    if settings.db_enabled:
        init_pool()
    try:
        yield
    finally:
        close_pool()


app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(health.router)
app.include_router(webhooks.router)
app.include_router(verification.router)


@app.get("/openapi.json", include_in_schema=False)
def custom_openapi(_: None = Depends(require_docs_credentials)):
    return JSONResponse(content=app.openapi())


@app.get("/docs", include_in_schema=False)
def custom_swagger_ui(_: None = Depends(require_docs_credentials)):
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Payment Reconciliation API")


@app.get("/redoc", include_in_schema=False)
def custom_redoc(_: None = Depends(require_docs_credentials)):
    return get_redoc_html(openapi_url="/openapi.json", title="Payment Reconciliation API ReDoc")

"""
Sandbox Session HTTP API

FastAPI server exposing the E2BCode tool over HTTP for hosts that do not
embed it directly.

Endpoints:
- POST /api/sandbox/action - Run one sandbox action (JSON envelope response)
- GET /health - Health check
"""

import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import sentry_sdk
import uvicorn
from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from config import settings
from services import IdleReaper, SandboxManager
from tools import SandboxTool

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

if settings.sentry_dsn:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        traces_sample_rate=1.0,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            LoggingIntegration(
                level=logging.INFO,  # Capture INFO+ as breadcrumbs
                event_level=logging.ERROR,  # Create events for ERROR+
            ),
        ],
    )
    logger.info(f"[API] Sentry initialized (environment: {settings.sentry_environment})")


# =============================================================================
# Authentication
# =============================================================================

security = HTTPBearer(auto_error=False)


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """Verify API key from Authorization header."""
    # Skip auth in development mode if no API key is configured
    if not settings.sandbox_api_key:
        return True

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not secrets.compare_digest(credentials.credentials, settings.sandbox_api_key):
        raise HTTPException(
            status_code=401,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    activeSessions: int


# =============================================================================
# App State Management
# =============================================================================

def create_sandbox_tool() -> SandboxTool:
    return SandboxTool(SandboxManager())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("[API] Starting sandbox session API server")
    tool = create_sandbox_tool()
    manager = tool.manager

    await manager.store.connect()
    await manager.reconcile()
    reaper = IdleReaper(manager)
    reaper.start()

    app.state.sandbox_tool = tool
    app.state.reaper = reaper
    yield

    await reaper.stop()
    await manager.shutdown()
    logger.info("[API] Shutting down sandbox session API server")


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="E2B Sandbox Session API",
    description="HTTP API for the E2BCode sandbox tool",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(",") if settings.sandbox_api_key else ["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept"],
)


@app.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint."""
    tool = getattr(request.app.state, "sandbox_tool", None)
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version="1.0.0",
        activeSessions=len(tool.manager.registry) if tool else 0,
    )


@app.post("/api/sandbox/action", dependencies=[Depends(verify_api_key)])
async def sandbox_action(request: Request, payload: dict[str, Any] = Body(...)):
    """
    Run a single sandbox action.

    Always answers 200 with the tool's JSON envelope; callers branch on
    `success` rather than on the status code.
    """
    tool: SandboxTool = request.app.state.sandbox_tool
    return await tool.dispatch(payload)


# =============================================================================
# Main Entry Point
# =============================================================================

def start_server(host: str = "0.0.0.0", port: int = 8080, reload: bool = False):
    """Start the FastAPI server."""
    uvicorn.run(
        "api:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    start_server()

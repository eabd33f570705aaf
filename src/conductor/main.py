"""FastAPI application entry point for the Conductor webhook server.

Receives GitHub webhook deliveries, normalizes them with the EventIngestor
and hands them to the Orchestrator in a background task so the delivery is
acknowledged immediately. Signature validation happens in front of this
service.

Endpoints:
- POST /webhooks/github: webhook receiver
- GET /health: liveness
- GET /ready: readiness (GitHub API and spawn ledger)
- GET /metrics: Prometheus text format
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional, Set

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST

from .config import ConductorSettings, get_settings
from .events.emitter import EventSinkType, create_event_emitter
from .events.metrics import generate_metrics_output
from .github.client import GitHubClient
from .log import configure_logging
from .orchestrator import Orchestrator, build_orchestrator
from .spawn.repository import (
    SpawnRepository,
    close_spawn_repository,
    open_spawn_repository,
)
from .webhook.handler import EventIngestor
from .webhook.models import IngestedEvent

logger = structlog.get_logger()

# Global instances, initialized during lifespan startup
settings: Optional[ConductorSettings] = None
orchestrator: Optional[Orchestrator] = None
ingestor: Optional[EventIngestor] = None
github_client: Optional[GitHubClient] = None
spawn_repository: Optional[SpawnRepository] = None

# Strong references to in-flight handling tasks
_background_tasks: Set[asyncio.Task] = set()


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters.

    Args:
        value: The secret value to redact.
        visible_chars: Number of characters to show at the start.

    Returns:
        Redacted string with asterisks replacing hidden characters.
    """
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(cfg: ConductorSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info(
        "Conductor configuration",
        repository=cfg.repository,
        github_base_url=cfg.github_base_url,
        github_token=_redact_secret(cfg.github_token),
        github_max_retries=cfg.github_max_retries,
        database_url=_redact_secret(cfg.database_url, visible_chars=13),
        spawn_state_path=cfg.spawn_state_path,
        default_agent_type=cfg.default_agent_type,
        hold_labels=cfg.hold_labels,
        branch_prefix=cfg.branch_prefix,
        host=cfg.host,
        port=cfg.port,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown.

    Handles:
    - Configuration loading and validation
    - Logging configuration (with secrets redacted)
    - Dependency wiring for the orchestrator
    - Draining in-flight event tasks and closing clients on shutdown
    """
    global settings, orchestrator, ingestor, github_client, spawn_repository

    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Conductor starting up")
    _log_configuration(settings)

    github_client = GitHubClient(
        token=settings.github_token,
        base_url=settings.github_base_url,
        max_retries=settings.github_max_retries,
        base_delay=settings.github_backoff_base_seconds,
        max_delay=settings.github_backoff_max_seconds,
        timeout=settings.github_timeout_seconds,
    )
    spawn_repository = await open_spawn_repository(
        settings.database_url, settings.spawn_state_path
    )
    event_emitter = create_event_emitter(
        [EventSinkType.LOGGING, EventSinkType.METRICS]
    )
    orchestrator = build_orchestrator(
        settings, github_client, spawn_repository, event_emitter
    )
    ingestor = EventIngestor(branch_prefix=settings.branch_prefix)

    logger.info("Conductor started")

    yield

    logger.info("Conductor shutting down", pending_tasks=len(_background_tasks))

    if _background_tasks:
        await asyncio.gather(*_background_tasks, return_exceptions=True)
    await event_emitter.close()
    await close_spawn_repository(spawn_repository)
    await github_client.close()

    orchestrator = None
    ingestor = None

    logger.info("Conductor shutdown complete")


app = FastAPI(
    title="Conductor",
    description="Issue-driven agent orchestration for GitHub repositories",
    version="1.0.0",
    lifespan=lifespan,
)


async def _handle_event(event: IngestedEvent) -> None:
    """Run one event through the orchestrator, logging any failure.

    The orchestrator has already emitted an error event by the time an
    exception reaches here.
    """
    if orchestrator is None:
        return
    try:
        result = await orchestrator.handle_event(event)
        logger.info(
            "Event handled",
            kind=event.kind.value,
            issue_id=event.issue_id,
            changed=result.changed,
            spawned=bool(result.spawn and result.spawn.spawned),
            skipped=result.skipped or None,
        )
    except Exception as exc:
        logger.error(
            "Event handling failed",
            kind=event.kind.value,
            issue_id=event.issue_id,
            delivery_id=event.delivery_id,
            error=str(exc),
            exc_info=True,
        )


def _schedule(event: IngestedEvent) -> None:
    task = asyncio.create_task(_handle_event(event))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


@app.get("/health")
async def health():
    """Liveness probe endpoint."""
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness probe endpoint.

    Checks GitHub API reachability and the spawn ledger.

    Returns:
        dict: Status and dependency health information; 503 when any
        dependency is unhealthy.
    """
    github_ok = github_client is not None and await github_client.health_check()
    ledger_ok = spawn_repository is not None and await spawn_repository.health_check()

    body = {
        "status": "ready" if github_ok and ledger_ok else "not_ready",
        "dependencies": {
            "github": "healthy" if github_ok else "unhealthy",
            "spawn_ledger": "healthy" if ledger_ok else "unhealthy",
        },
    }
    if not (github_ok and ledger_ok):
        return JSONResponse(status_code=503, content=body)
    return body


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_metrics_output(), media_type=CONTENT_TYPE_LATEST)


@app.post("/webhooks/github")
async def github_webhook(request: Request):
    """GitHub webhook receiver endpoint.

    Returns:
        dict: Acknowledgment of webhook receipt.
    """
    if ingestor is None or orchestrator is None or settings is None:
        logger.error("Conductor not initialized")
        return JSONResponse(
            status_code=503,
            content={"status": "error", "message": "Conductor not initialized"},
        )

    event_name = request.headers.get("X-GitHub-Event", "")
    delivery_id = request.headers.get("X-GitHub-Delivery")

    try:
        payload = await request.json()
    except ValueError:
        return JSONResponse(
            status_code=400,
            content={"status": "error", "message": "Invalid JSON payload"},
        )

    event = ingestor.ingest(event_name, payload, delivery_id=delivery_id)
    if event is None:
        return {"status": "ignored", "message": "Unsupported or invalid event"}

    if event.full_repository.lower() != settings.repository.lower():
        logger.warning(
            "Ignoring event for unmanaged repository",
            repository=event.full_repository,
            delivery_id=delivery_id,
        )
        return {"status": "ignored", "message": "Repository not managed"}

    _schedule(event)

    return {"status": "accepted", "kind": event.kind.value, "issue_id": event.issue_id}


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "src.conductor.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )

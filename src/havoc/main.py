"""FastAPI application entry point for Havoc.

Receives GitHub webhooks, queues pipeline runs and exposes run state,
run events, health probes and Prometheus metrics.

Endpoints:
- GET /health: liveness
- GET /ready: Docker, sandbox image and database checks
- GET /metrics: Prometheus text format
- POST /webhooks/github: trigger intake
- GET /runs/{run_id}: run record
- GET /runs/{run_id}/events: buffered run events
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional, Union

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST

from havoc.config import HavocSettings, get_settings
from havoc.events.buffer import RunEventBuffer, get_event_buffer
from havoc.events.emitter import EventEmitter, EventSinkType, create_event_emitter
from havoc.events.metrics import generate_metrics_output
from havoc.github.client import GitHubClient
from havoc.github.credentials import StaticTokenProvider
from havoc.github.git import GitOperations
from havoc.llm.client import LLMClient
from havoc.orchestrator import PipelineInput, PipelineOrchestrator
from havoc.queue import RunQueue
from havoc.sandbox.manager import SandboxManager
from havoc.state.machine import RunStateMachine
from havoc.state.repository import InMemoryRunRepository, PostgresRunRepository
from havoc.store import ExpiringStore, InMemoryExpiringStore
from havoc.webhook.handler import WebhookHandler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

RunRepositoryImpl = Union[InMemoryRunRepository, PostgresRunRepository]

# Global instances, initialized during lifespan startup
settings: Optional[HavocSettings] = None
state_machine: Optional[RunStateMachine] = None
run_repository: Optional[RunRepositoryImpl] = None
run_queue: Optional[RunQueue] = None
webhook_handler: Optional[WebhookHandler] = None
delivery_store: Optional[ExpiringStore] = None
event_buffer: Optional[RunEventBuffer] = None
event_emitter: Optional[EventEmitter] = None
sandbox_manager: Optional[SandboxManager] = None
github_client: Optional[GitHubClient] = None


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters.

    Args:
        value: The secret value to redact.
        visible_chars: Number of characters to show at the start.

    Returns:
        Redacted string with asterisks replacing hidden characters.
    """
    if not value:
        return "(not set)"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(cfg: HavocSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Havoc configuration:")
    logger.info(f"  GitHub Base URL: {cfg.github_base_url}")
    logger.info(f"  GitHub Clone Host: {cfg.github_clone_host}")
    logger.info(f"  GitHub Token: {_redact_secret(cfg.github_token)}")
    logger.info(
        f"  GitHub Webhook Secret: {_redact_secret(cfg.github_webhook_secret)}"
    )
    logger.info(f"  LLM URL: {cfg.llm_url}")
    logger.info(f"  LLM Model: {cfg.llm_model}")
    logger.info(f"  LLM API Key: {_redact_secret(cfg.llm_api_key)}")
    logger.info(f"  Database URL: {_redact_secret(cfg.database_url, 13)}")
    logger.info(f"  Workspace Base Path: {cfg.workspace_base_path}")
    logger.info(f"  Sandbox Image: {cfg.sandbox_image}")
    logger.info(f"  Sandbox Timeout Seconds: {cfg.sandbox_timeout_seconds}")
    logger.info(f"  Sandbox Memory Limit: {cfg.sandbox_memory_limit}")
    logger.info(f"  Max Concurrent Runs: {cfg.max_concurrent_runs}")
    logger.info(f"  Host: {cfg.host}")
    logger.info(f"  Port: {cfg.port}")


async def _create_run_repository(cfg: HavocSettings) -> RunRepositoryImpl:
    """Connect to PostgreSQL when configured, otherwise keep runs in memory."""
    if cfg.database_url:
        repository = PostgresRunRepository(cfg.database_url)
        await repository.connect()
        return repository

    logger.warning("HAVOC_DATABASE_URL not set, runs are kept in memory only")
    return InMemoryRunRepository()


def _build_orchestrator(
    cfg: HavocSettings,
    machine: RunStateMachine,
    manager: SandboxManager,
    gh_client: GitHubClient,
    emitter: EventEmitter,
) -> PipelineOrchestrator:
    """Wire all pipeline dependencies into a PipelineOrchestrator."""
    llm = LLMClient(
        llm_url=cfg.llm_url,
        model_name=cfg.llm_model,
        timeout=cfg.llm_timeout_seconds,
        temperature=cfg.llm_temperature,
        api_key=cfg.llm_api_key,
    )

    return PipelineOrchestrator(
        state_machine=machine,
        sandbox_manager=manager,
        git=GitOperations(clone_host=cfg.github_clone_host),
        github=gh_client,
        credentials=StaticTokenProvider(cfg.github_token),
        llm=llm,
        workspace_base_path=cfg.workspace_base_path,
        event_emitter=emitter,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown.

    Handles:
    - Configuration loading and validation
    - Logging configuration (with secrets redacted)
    - Dependency wiring for the orchestrator and run queue
    - Graceful shutdown: waits for queued runs, then closes clients
    """
    global settings, state_machine, run_repository, run_queue, webhook_handler
    global delivery_store, event_buffer, event_emitter, sandbox_manager, github_client

    logger.info("Havoc starting up...")

    settings = get_settings()
    _log_configuration(settings)

    run_repository = await _create_run_repository(settings)
    state_machine = RunStateMachine(repository=run_repository)

    event_buffer = get_event_buffer()
    event_emitter = create_event_emitter(
        [EventSinkType.LOGGING, EventSinkType.METRICS, EventSinkType.BUFFER]
    )

    sandbox_manager = SandboxManager(
        image=settings.sandbox_image,
        memory_limit=settings.sandbox_memory_limit,
        user=settings.sandbox_user,
        timeout_seconds=settings.sandbox_timeout_seconds,
    )
    github_client = GitHubClient(
        token=settings.github_token,
        base_url=settings.github_base_url,
    )

    orchestrator = _build_orchestrator(
        settings, state_machine, sandbox_manager, github_client, event_emitter
    )
    run_queue = RunQueue(
        orchestrator.run_pipeline, max_concurrent=settings.max_concurrent_runs
    )
    webhook_handler = WebhookHandler(secret=settings.github_webhook_secret)
    delivery_store = InMemoryExpiringStore()

    logger.info("Havoc started successfully")

    yield

    logger.info("Havoc shutting down...")

    await run_queue.shutdown()
    await github_client.close()
    await event_emitter.close()
    if isinstance(run_repository, PostgresRunRepository):
        await run_repository.disconnect()

    logger.info("Havoc shutdown complete")


app = FastAPI(
    title="Havoc",
    description="Turns GitHub issues into reviewed, policy-gated pull requests",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health():
    """Liveness probe endpoint."""
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness probe endpoint.

    Checks the Docker daemon, the sandbox image and run persistence.

    Returns:
        Status and dependency health; HTTP 503 when any check fails.
    """
    dependencies = {
        "docker": "unhealthy",
        "sandbox_image": "missing",
        "database": "unhealthy",
    }

    if sandbox_manager is not None:
        if await asyncio.to_thread(sandbox_manager.check_docker):
            dependencies["docker"] = "healthy"
            if await asyncio.to_thread(sandbox_manager.check_sandbox_image):
                dependencies["sandbox_image"] = "present"

    if run_repository is not None and await run_repository.health_check():
        dependencies["database"] = "healthy"

    is_ready = (
        dependencies["docker"] == "healthy"
        and dependencies["sandbox_image"] == "present"
        and dependencies["database"] == "healthy"
    )
    return JSONResponse(
        status_code=200 if is_ready else 503,
        content={
            "status": "ready" if is_ready else "not_ready",
            "dependencies": dependencies,
        },
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_metrics_output(), media_type=CONTENT_TYPE_LATEST)


@app.post("/webhooks/github")
async def github_webhook(request: Request):
    """GitHub webhook receiver endpoint.

    Verifies the signature when a secret is configured, drops repeated
    deliveries, and queues a run for deliveries that trigger one.

    Returns:
        Acknowledgment of webhook receipt; 202 when a run was queued.
    """
    if webhook_handler is None or run_queue is None or delivery_store is None:
        logger.error("Havoc not initialized")
        raise HTTPException(status_code=503, detail="Havoc not initialized")

    body = await request.body()
    if not webhook_handler.verify_signature(
        body, request.headers.get("X-Hub-Signature-256")
    ):
        logger.warning("Rejected webhook with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    event_name = request.headers.get("X-GitHub-Event", "")
    if event_name == "ping":
        return {"status": "pong"}

    delivery_id = request.headers.get("X-GitHub-Delivery")
    if delivery_id:
        delivery_store.sweep_expired()
        if delivery_store.get(delivery_id) is not None:
            logger.info("Ignoring duplicate delivery", extra={"delivery_id": delivery_id})
            return {"status": "duplicate", "delivery_id": delivery_id}
        ttl = settings.delivery_ttl_seconds if settings is not None else 3600
        delivery_store.put(delivery_id, True, ttl)

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    trigger = webhook_handler.parse_trigger(event_name, payload)
    if trigger is None:
        return {"status": "ignored", "message": "Event does not trigger a run"}

    pipeline_input = PipelineInput(
        owner=trigger.owner,
        repo=trigger.repo,
        issue_number=trigger.issue_number,
        issue_title=trigger.title,
        issue_body=trigger.body,
        installation_id=trigger.installation_id,
        user_id=trigger.sender,
    )
    run_queue.submit(pipeline_input)

    return JSONResponse(
        status_code=202,
        content={
            "status": "accepted",
            "run_id": pipeline_input.run_id,
            "issue_id": trigger.issue_id,
        },
    )


@app.get("/runs/{run_id}")
async def get_run(run_id: str):
    """Return the persisted state of a run."""
    if state_machine is None:
        raise HTTPException(status_code=503, detail="Havoc not initialized")

    run = await state_machine.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    return run.model_dump(mode="json")


@app.get("/runs/{run_id}/events")
async def get_run_events(run_id: str):
    """Return the buffered events of a run, oldest first."""
    buffer = event_buffer if event_buffer is not None else get_event_buffer()
    return {
        "run_id": run_id,
        "events": [event.model_dump(mode="json") for event in buffer.get_events(run_id)],
    }


def main() -> None:
    import uvicorn

    cfg = get_settings()
    uvicorn.run(app, host=cfg.host, port=cfg.port)


if __name__ == "__main__":
    main()

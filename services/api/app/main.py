from __future__ import annotations

from typing import Any, Callable, Dict, Generator, List, Optional, Sequence

import redis
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from prometheus_client import Counter, Gauge, make_asgi_app
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from libs.core import logging as core_logging, models, prompts
from libs.core.errors import PipelineError, ValidationError
from libs.core.events import (
    KNOWN_EVENTS,
    PROJECT_CREATED_EVENT,
    PROJECT_DELETED_EVENT,
    PROJECT_UPDATED_EVENT,
    SNAPSHOT_EVENT,
    format_event,
)
from libs.core.generation import CacheOrGenerate, GenerationClient, GenerationRequest
from libs.core.generation_cache import GLOBAL_SCOPE, GenerationCache, RedisGenerationCache
from libs.core.llm_provider import LLMProvider, resolve_provider
from libs.core.notify import NotifyTrigger
from libs.core.realtime import EventBroadcaster, QueueSink, SubscriptionRegistry, user_key
from libs.core.request_keys import (
    COURSE_FIELDS,
    RESOURCE_SEARCH_FIELDS,
    ROADMAP_FIELDS,
    ROLE_ANALYSIS_FIELDS,
    KeyField,
    normalize_key,
)
from libs.core.snapshots import SnapshotBuilder
from . import project_store
from .cache_store import SqlGenerationCache
from .database import Base, SessionLocal, engine
from .settings import ApiSettings

core_logging.configure_logging("api")
logger = core_logging.get_logger("api")

settings = ApiSettings.from_env()

app = FastAPI(title="Career Sync API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def build_cache(api_settings: ApiSettings) -> GenerationCache:
    if api_settings.cache_backend == "redis":
        return RedisGenerationCache(redis.Redis.from_url(api_settings.redis_url, decode_responses=True))
    return SqlGenerationCache(SessionLocal)


def build_orchestrator(
    api_settings: ApiSettings,
    provider: Optional[LLMProvider] = None,
    cache: Optional[GenerationCache] = None,
) -> CacheOrGenerate:
    provider = provider or resolve_provider(
        api_settings.llm_provider,
        api_key=api_settings.openai_api_key,
        model=api_settings.openai_model,
        base_url=api_settings.openai_base_url,
        temperature=api_settings.openai_temperature,
        max_output_tokens=api_settings.openai_max_output_tokens,
        timeout_s=api_settings.openai_timeout_s,
        max_retries=api_settings.openai_max_retries,
    )
    client = GenerationClient(provider, timeout_s=api_settings.generation_timeout_s)
    return CacheOrGenerate(cache or build_cache(api_settings), client)


# One registry per process; handlers receive it through the dependencies below.
app.state.registry = SubscriptionRegistry()
app.state.snapshot_builder = SnapshotBuilder(project_store.project_rows_loader(SessionLocal))
app.state.notifier = NotifyTrigger(
    app.state.registry,
    app.state.snapshot_builder,
    EventBroadcaster(app.state.registry),
)
app.state.orchestrator = build_orchestrator(settings)


@app.on_event("startup")
def _init_db() -> None:
    Base.metadata.create_all(bind=engine)


generation_requests_total = Counter(
    "generation_requests_total", "Generation-backed requests served", ["kind", "source"]
)
generation_errors_total = Counter(
    "generation_errors_total", "Generation-backed requests that failed", ["kind", "status"]
)
realtime_notifications_total = Counter(
    "realtime_notifications_total", "Snapshot notifications requested", ["event"]
)


def event_label(event_name: str) -> str:
    # Caller-supplied names would otherwise grow the label set without bound.
    return event_name if event_name in KNOWN_EVENTS else "other"


realtime_connected_users = Gauge("realtime_connected_users", "Users with at least one live stream")
realtime_connected_sinks = Gauge("realtime_connected_sinks", "Live event streams")
realtime_connected_users.set_function(lambda: app.state.registry.stats().connected_users)
realtime_connected_sinks.set_function(lambda: app.state.registry.stats().connected_sinks)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_registry(request: Request) -> SubscriptionRegistry:
    return request.app.state.registry


def get_snapshot_builder(request: Request) -> SnapshotBuilder:
    return request.app.state.snapshot_builder


def get_notifier(request: Request) -> NotifyTrigger:
    return request.app.state.notifier


def get_orchestrator(request: Request) -> CacheOrGenerate:
    return request.app.state.orchestrator


def _http_error(exc: PipelineError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail)


def _generate(
    orchestrator: CacheOrGenerate,
    kind: models.GenerationKind,
    params: Dict[str, Any],
    fields: Sequence[KeyField],
    build_prompt: Callable[[Dict[str, Any]], str],
    system_prompt: str,
    schema: Dict[str, Any],
    refresh: bool,
    scope: str = GLOBAL_SCOPE,
) -> models.GenerationResult:
    try:
        key = normalize_key(kind.value, params, fields, schema_version=settings.schema_version)
        request = GenerationRequest(
            normalized_key=key,
            prompt=build_prompt(params),
            scope=scope,
            system_prompt=system_prompt,
            schema=schema,
        )
        result = orchestrator.run(request, force_refresh=refresh)
    except PipelineError as exc:
        generation_errors_total.labels(kind=kind.value, status=str(exc.status_code)).inc()
        logger.warning("generation_request_failed", kind=kind.value, status=exc.status_code, detail=exc.detail)
        raise _http_error(exc) from exc
    generation_requests_total.labels(kind=kind.value, source=result.source.value).inc()
    return result


@app.post("/roles/analyze", response_model=models.GenerationResult)
def analyze_role(
    body: models.RoleAnalysisRequest,
    orchestrator: CacheOrGenerate = Depends(get_orchestrator),
) -> models.GenerationResult:
    params = {"role": body.role, "level": body.level, "region": body.region}
    return _generate(
        orchestrator,
        models.GenerationKind.role_analysis,
        params,
        ROLE_ANALYSIS_FIELDS,
        prompts.role_analysis_prompt,
        prompts.CAREER_ANALYST_SYSTEM,
        prompts.ROLE_ANALYSIS_SCHEMA,
        body.refresh,
    )


@app.post("/roadmaps/generate", response_model=models.GenerationResult)
def generate_roadmap(
    body: models.RoadmapRequest,
    orchestrator: CacheOrGenerate = Depends(get_orchestrator),
) -> models.GenerationResult:
    params = {
        "role": body.role,
        "level": body.level,
        "region": body.region,
        "path": body.path,
        "qualifiers": body.qualifiers,
    }
    scope = GLOBAL_SCOPE
    if body.user_id is not None and body.user_id.strip():
        scope = f"user:{body.user_id.strip()}"
    return _generate(
        orchestrator,
        models.GenerationKind.roadmap,
        params,
        ROADMAP_FIELDS,
        prompts.roadmap_prompt,
        prompts.CURRICULUM_SYSTEM,
        prompts.ROADMAP_SCHEMA,
        body.refresh,
        scope=scope,
    )


@app.post("/resources/search", response_model=models.GenerationResult)
def search_resources(
    body: models.ResourceSearchRequest,
    orchestrator: CacheOrGenerate = Depends(get_orchestrator),
) -> models.GenerationResult:
    params = {"query": body.query, "role": body.role}
    return _generate(
        orchestrator,
        models.GenerationKind.resource_search,
        params,
        RESOURCE_SEARCH_FIELDS,
        prompts.resource_search_prompt,
        prompts.CURATOR_SYSTEM,
        prompts.RESOURCE_SEARCH_SCHEMA,
        body.refresh,
    )


@app.post("/resources/course", response_model=models.GenerationResult)
def generate_course(
    body: models.CourseRequest,
    orchestrator: CacheOrGenerate = Depends(get_orchestrator),
) -> models.GenerationResult:
    params = {"topic": body.topic, "level": body.level}
    return _generate(
        orchestrator,
        models.GenerationKind.course,
        params,
        COURSE_FIELDS,
        prompts.course_prompt,
        prompts.CURRICULUM_SYSTEM,
        prompts.COURSE_SCHEMA,
        body.refresh,
    )


@app.get("/realtime/stream")
async def stream_realtime(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    once: bool = False,
    registry: SubscriptionRegistry = Depends(get_registry),
    snapshot_builder: SnapshotBuilder = Depends(get_snapshot_builder),
):
    try:
        key = user_key(user_id)
    except ValidationError as exc:
        raise _http_error(exc) from exc
    sink = QueueSink(key, max_pending=settings.max_pending)

    async def event_generator():
        registry.subscribe(key, sink)
        try:
            try:
                snapshot = await run_in_threadpool(snapshot_builder.build, key)
            except Exception as exc:  # noqa: BLE001
                logger.error("initial_snapshot_failed", user_id=key, error=str(exc))
            else:
                yield format_event(SNAPSHOT_EVENT, snapshot.model_dump(mode="json"))
            if once:
                return
            sink.start_heartbeat(settings.heartbeat_s)
            async for message in sink.messages():
                yield message
        finally:
            sink.close()
            registry.unsubscribe(key, sink)

    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=SSE_HEADERS)


@app.post("/realtime/notify", response_model=models.NotifyResponse, response_model_by_alias=True)
def notify_user(
    body: models.NotifyRequest,
    notifier: NotifyTrigger = Depends(get_notifier),
) -> models.NotifyResponse:
    try:
        client_count = notifier.notify(body.user_id, body.event)
    except PipelineError as exc:
        raise _http_error(exc) from exc
    except Exception as exc:  # noqa: BLE001
        logger.error("notify_snapshot_failed", user_id=body.user_id, error=str(exc))
        raise HTTPException(status_code=500, detail="Failed to build snapshot") from exc
    realtime_notifications_total.labels(event=event_label(body.event)).inc()
    return models.NotifyResponse(client_count=client_count)


@app.get("/realtime/stats", response_model=models.StatsResponse, response_model_by_alias=True)
def realtime_stats(registry: SubscriptionRegistry = Depends(get_registry)) -> models.StatsResponse:
    stats = registry.stats()
    return models.StatsResponse(
        connected_users=stats.connected_users,
        connected_tabs=stats.connected_sinks,
    )


@app.post("/projects", response_model=models.Project)
def create_project(
    body: models.ProjectCreate,
    db: Session = Depends(get_db),
    notifier: NotifyTrigger = Depends(get_notifier),
) -> models.Project:
    try:
        user_key(body.user_id)
    except ValidationError as exc:
        raise _http_error(exc) from exc
    project = project_store.create_project(db, body)
    notifier.notify_quietly(project.user_id, PROJECT_CREATED_EVENT)
    return project


@app.get("/projects", response_model=List[models.Project])
def list_projects(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    db: Session = Depends(get_db),
) -> List[models.Project]:
    try:
        key = user_key(user_id)
    except ValidationError as exc:
        raise _http_error(exc) from exc
    return project_store.list_projects(db, key)


@app.patch("/projects/{project_id}", response_model=models.Project)
def update_project(
    project_id: str,
    body: models.ProjectUpdate,
    db: Session = Depends(get_db),
    notifier: NotifyTrigger = Depends(get_notifier),
) -> models.Project:
    try:
        project = project_store.update_project(db, project_id, body)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Project not found") from exc
    notifier.notify_quietly(project.user_id, PROJECT_UPDATED_EVENT)
    return project


@app.delete("/projects/{project_id}")
def delete_project(
    project_id: str,
    db: Session = Depends(get_db),
    notifier: NotifyTrigger = Depends(get_notifier),
) -> dict:
    try:
        owner = project_store.delete_project(db, project_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Project not found") from exc
    notifier.notify_quietly(owner, PROJECT_DELETED_EVENT)
    return {"success": True, "id": project_id}


@app.get("/health")
def health(
    db: Session = Depends(get_db),
    orchestrator: CacheOrGenerate = Depends(get_orchestrator),
) -> dict:
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("health_check_failed", error=str(exc))
        raise HTTPException(status_code=503, detail="database unavailable") from exc
    return {"status": "ok", "inflight_generations": orchestrator.inflight_count()}

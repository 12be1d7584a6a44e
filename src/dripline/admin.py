from __future__ import annotations

import logging
import os
from dataclasses import asdict
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel

from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    get_state_db_path,
    set_runtime_config,
)
from .db import DBConn
from .drip import ConfigurationError
from .services.monitor_service import (
    classify_topic_health,
    get_progress,
    health_to_dict,
    progress_to_dict,
)
from .services.release_service import (
    drip_preview,
    emergency_publish_all,
    enqueue_item,
    get_drip_settings,
    list_queue,
    schedule_releases,
    update_drip_settings,
)
from .services.sources_service import (
    create_source,
    deactivate_source,
    get_source,
    list_sources,
    record_poll_result,
    topic_availability,
    update_source,
)
from .storage import enqueue_job, get_topic, init_db, list_drip_events, list_jobs, upsert_topic
from .utils import configure_logging, log_event, parse_iso

app = FastAPI(title="Dripline Admin API")

_NOT_FOUND = {"topic_not_found", "source_not_found"}


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("DL_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


def _http_error(exc: ValueError) -> HTTPException:
    detail = str(exc)
    if detail in _NOT_FOUND:
        return HTTPException(status_code=404, detail=detail)
    return HTTPException(status_code=400, detail=detail)


class JobRequest(BaseModel):
    job_type: str
    topic_id: str | None = None


class RuntimeConfigRequest(BaseModel):
    config: dict


class TopicRequest(BaseModel):
    id: str
    name: str | None = None
    is_active: bool = True


class SourceRequest(BaseModel):
    id: str | None = None
    name: str | None = None
    topic_id: str | None = None
    cooldown_hours: float | None = None
    is_active: bool | None = None
    is_critical: bool | None = None


class PollResultRequest(BaseModel):
    ok: bool
    items_found: int = 0
    error: str | None = None
    polled_at: str | None = None


class DripConfigRequest(BaseModel):
    enabled: bool | None = None
    release_interval_hours: int | None = None
    items_per_release: int | None = None
    active_start_hour: int | None = None
    active_end_hour: int | None = None


class QueueItemRequest(BaseModel):
    title: str | None = None
    ready_at: str | None = None


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "Dripline Admin API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_get() -> dict[str, object]:
    conn = _get_conn()
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"config": cfg}


@app.put("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_set(payload: RuntimeConfigRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok"}


@app.post("/jobs/enqueue")
def enqueue(job: JobRequest, _: None = Depends(_require_admin_token)) -> dict[str, str]:
    logger = logging.getLogger("dripline.admin")
    conn = _get_conn()
    payload = {"topic_id": job.topic_id} if job.topic_id else None
    job_id = enqueue_job(conn, job.job_type, payload, debounce=True)
    log_event(
        logger,
        logging.INFO,
        "job_enqueued",
        job_id=job_id,
        job_type=job.job_type,
    )
    return {"job_id": job_id}


@app.get("/jobs")
def jobs(limit: int = 20) -> list[dict[str, object]]:
    conn = _get_conn()
    rows = []
    for job in list_jobs(conn, limit=limit):
        rows.append(
            {
                "id": job.id,
                "job_type": job.job_type,
                "status": job.status,
                "requested_at": job.requested_at,
                "started_at": job.started_at or "",
                "finished_at": job.finished_at or "",
                "error": job.error or "",
                "result": job.result or {},
            }
        )
    return rows


@app.get("/jobs/{job_id}/progress")
def job_progress(job_id: str, topic_id: str) -> dict[str, object]:
    conn = _get_conn()
    try:
        report = get_progress(conn, job_id, topic_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return progress_to_dict(report)


@app.post("/topics")
def topics_upsert(
    payload: TopicRequest, _: None = Depends(_require_admin_token)
) -> dict[str, object]:
    conn = _get_conn()
    try:
        upsert_topic(conn, payload.model_dump())
    except ValueError as exc:
        raise _http_error(exc) from exc
    topic = get_topic(conn, payload.id)
    return asdict(topic) if topic else {}


@app.get("/topics/{topic_id}/availability")
def topics_availability(topic_id: str) -> dict[str, object]:
    conn = _get_conn()
    if get_topic(conn, topic_id) is None:
        raise HTTPException(status_code=404, detail="topic_not_found")
    return asdict(topic_availability(conn, topic_id))


@app.get("/topics/{topic_id}/health")
def topics_health(topic_id: str) -> dict[str, object]:
    conn = _get_conn()
    try:
        report = classify_topic_health(conn, topic_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return health_to_dict(report)


@app.get("/topics/{topic_id}/drip")
def topics_drip_get(topic_id: str) -> dict[str, object]:
    conn = _get_conn()
    try:
        settings = get_drip_settings(conn, topic_id)
        settings["preview"] = drip_preview(conn, topic_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return settings


@app.put("/topics/{topic_id}/drip")
def topics_drip_set(
    topic_id: str, payload: DripConfigRequest, _: None = Depends(_require_admin_token)
) -> dict[str, object]:
    conn = _get_conn()
    try:
        return update_drip_settings(conn, topic_id, payload.model_dump(exclude_unset=True))
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/topics/{topic_id}/drip/events")
def topics_drip_events(topic_id: str, limit: int = 50) -> list[dict[str, object]]:
    conn = _get_conn()
    if get_topic(conn, topic_id) is None:
        raise HTTPException(status_code=404, detail="topic_not_found")
    return list_drip_events(conn, topic_id, limit=limit)


@app.post("/topics/{topic_id}/drip/schedule")
def topics_drip_schedule(
    topic_id: str, _: None = Depends(_require_admin_token)
) -> dict[str, object]:
    conn = _get_conn()
    try:
        result = schedule_releases(conn, topic_id)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise _http_error(exc) from exc
    return asdict(result)


@app.post("/topics/{topic_id}/drip/emergency-publish")
def topics_drip_emergency(
    topic_id: str, _: None = Depends(_require_admin_token)
) -> dict[str, object]:
    conn = _get_conn()
    try:
        released = emergency_publish_all(conn, topic_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {"topic_id": topic_id, "released": released}


@app.get("/topics/{topic_id}/queue")
def topics_queue(topic_id: str, include_published: bool = False) -> list[dict[str, object]]:
    conn = _get_conn()
    if get_topic(conn, topic_id) is None:
        raise HTTPException(status_code=404, detail="topic_not_found")
    return list_queue(conn, topic_id, include_published=include_published)


@app.post("/topics/{topic_id}/queue")
def topics_queue_add(
    topic_id: str, payload: QueueItemRequest, _: None = Depends(_require_admin_token)
) -> dict[str, object]:
    conn = _get_conn()
    try:
        ready_at = parse_iso(payload.ready_at) if payload.ready_at else None
        item_id = enqueue_item(conn, topic_id, payload.title, ready_at)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {"id": item_id, "topic_id": topic_id}


@app.get("/sources")
def sources_list(topic_id: str | None = None) -> list[dict[str, object]]:
    conn = _get_conn()
    return list_sources(conn, topic_id=topic_id)


@app.post("/sources")
def sources_create(
    payload: SourceRequest, _: None = Depends(_require_admin_token)
) -> dict[str, object]:
    conn = _get_conn()
    try:
        return create_source(conn, payload.model_dump(exclude_none=True))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/sources/{source_id}")
def sources_read(source_id: str) -> dict[str, object]:
    conn = _get_conn()
    source = get_source(conn, source_id)
    if not source:
        raise HTTPException(status_code=404, detail="source_not_found")
    return source


@app.patch("/sources/{source_id}")
def sources_update(
    source_id: str, payload: SourceRequest, _: None = Depends(_require_admin_token)
) -> dict[str, object]:
    conn = _get_conn()
    try:
        return update_source(conn, source_id, payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/sources/{source_id}/deactivate")
def sources_deactivate(
    source_id: str, _: None = Depends(_require_admin_token)
) -> dict[str, object]:
    conn = _get_conn()
    try:
        return deactivate_source(conn, source_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/sources/{source_id}/poll-result")
def sources_poll_result(
    source_id: str, payload: PollResultRequest, _: None = Depends(_require_admin_token)
) -> dict[str, object]:
    conn = _get_conn()
    try:
        polled_at = parse_iso(payload.polled_at) if payload.polled_at else None
        return record_poll_result(
            conn,
            source_id,
            payload.ok,
            items_found=payload.items_found,
            error=payload.error,
            polled_at=polled_at,
        )
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/sources/{source_id}/availability")
def sources_availability(source_id: str) -> dict[str, object]:
    conn = _get_conn()
    source = get_source(conn, source_id)
    if not source:
        raise HTTPException(status_code=404, detail="source_not_found")
    return {
        "id": source["id"],
        "is_ready": source["is_ready"],
        "hours_remaining": source["hours_remaining"],
    }


def _setup_logging() -> None:
    configure_logging("dripline.admin")


_setup_logging()


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("dripline")
    except Exception:  # noqa: BLE001
        return "unknown"


def _get_conn() -> DBConn:
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn

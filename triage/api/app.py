"""
Verdict engine HTTP API.

Thin FastAPI layer over VerdictEngine: every route maps engine errors to HTTP statuses and returns
the pydantic models as JSON. The engine (and its store) is built lazily from the environment.
"""

from __future__ import annotations

import logging
import os
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, ValidationError

from triage.core.errors import DuplicateVerdict, InvalidConfidence, StorageUnavailable
from triage.pipeline.engine import VerdictEngine

logger = logging.getLogger(__name__)

_engine: Optional[VerdictEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> VerdictEngine:
    global _engine
    with _engine_lock:
        if _engine is None:
            from triage.storage import build_store_from_env
            from triage.storage.config import load_storage_config

            cfg = load_storage_config()
            _engine = VerdictEngine(build_store_from_env(cfg), event_ttl_days=cfg.event_ttl_days)
        return _engine


def set_engine(engine: Optional[VerdictEngine]) -> None:
    """Swap the process engine (tests, embedding)."""
    global _engine
    with _engine_lock:
        _engine = engine


class ClassifyRequest(BaseModel):
    signals: List[Dict[str, Any]]


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, StorageUnavailable):
        return HTTPException(status_code=503, detail=f"Storage unavailable: {e}")
    if isinstance(e, DuplicateVerdict):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (InvalidConfidence, ValidationError, ValueError)):
        return HTTPException(status_code=422, detail=str(e))
    logger.exception("Unhandled error: %s", e)
    return HTTPException(status_code=500, detail=f"Internal server error: {e}")


app = FastAPI(title="Triage verdict engine")


@app.on_event("startup")
def _startup_maybe_migrate_db() -> None:
    """
    Optional dev behavior: auto-apply DB migrations when DB_AUTO_MIGRATE=1.

    Never prevents the server from starting; failures are logged.
    """
    try:
        from triage.storage.migrate import maybe_auto_migrate

        did_attempt, msg = maybe_auto_migrate()
        if did_attempt:
            logger.info("DB migrations: %s", msg)
    except Exception as e:
        logger.warning("DB migrations: startup auto-migrate failed: %s", str(e))


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


@app.post("/executions/{execution_id}/verdicts", status_code=201)
def create_verdict(execution_id: str, req: ClassifyRequest) -> Dict[str, Any]:
    try:
        verdict = get_engine().classify_and_record(execution_id, req.signals)
    except Exception as e:
        raise _http_error(e)
    return verdict.model_dump(mode="json")


@app.get("/executions/{execution_id}/verdicts")
def list_execution_verdicts(execution_id: str) -> List[Dict[str, Any]]:
    try:
        verdicts = get_engine().get_verdicts_for_execution(execution_id)
    except Exception as e:
        raise _http_error(e)
    return [v.model_dump(mode="json") for v in verdicts]


@app.get("/verdicts/{verdict_id}")
def get_verdict_summary(verdict_id: str) -> Dict[str, Any]:
    try:
        summary = get_engine().get_verdict_summary(verdict_id)
    except Exception as e:
        raise _http_error(e)
    if summary is None:
        raise HTTPException(status_code=404, detail="Verdict not found")
    return summary.model_dump(mode="json")


@app.get("/verdicts/{verdict_id}/policy")
def get_verdict_policy(verdict_id: str) -> Dict[str, Any]:
    try:
        out = get_engine().get_verdict_with_policy(verdict_id)
    except Exception as e:
        raise _http_error(e)
    if out is None:
        raise HTTPException(status_code=404, detail="Verdict not found")
    return out.model_dump(mode="json")


@app.get("/verdicts/{verdict_id}/audit-log")
def verdict_audit_log(verdict_id: str) -> List[Dict[str, Any]]:
    try:
        entries = get_engine().get_verdict_audit_log(verdict_id)
    except Exception as e:
        raise _http_error(e)
    return [x.model_dump(mode="json") for x in entries]


@app.get("/policy-snapshots/latest")
def latest_policy_snapshot() -> Dict[str, Any]:
    try:
        snapshot = get_engine().get_latest_policy_snapshot()
    except Exception as e:
        raise _http_error(e)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No policy snapshots yet")
    return snapshot.model_dump(mode="json")


@app.get("/consistency")
def consistency_report(since: Optional[datetime] = Query(None)) -> Dict[str, Any]:
    try:
        return get_engine().get_consistency_report(since).model_dump(mode="json")
    except Exception as e:
        raise _http_error(e)


@app.get("/kpis")
def kpis(since: Optional[datetime] = Query(None)) -> Dict[str, Any]:
    try:
        return get_engine().get_kpis(since).model_dump(mode="json")
    except Exception as e:
        raise _http_error(e)


@app.get("/statistics")
def verdict_statistics(since: Optional[datetime] = Query(None)) -> List[Dict[str, Any]]:
    try:
        stats = get_engine().get_verdict_statistics(since)
    except Exception as e:
        raise _http_error(e)
    return [s.model_dump(mode="json") for s in stats]


@app.get("/fingerprints/{fingerprint_id}/verdicts")
def fingerprint_verdicts(fingerprint_id: str, limit: int = Query(50, ge=1, le=1000)) -> List[Dict[str, Any]]:
    try:
        verdicts = get_engine().get_verdicts_for_fingerprint(fingerprint_id, limit)
    except Exception as e:
        raise _http_error(e)
    return [v.model_dump(mode="json") for v in verdicts]


@app.get("/fingerprints/{fingerprint_id}/stats")
def fingerprint_stats(fingerprint_id: str) -> Dict[str, Any]:
    try:
        return get_engine().get_fingerprint_stats(fingerprint_id).model_dump(mode="json")
    except Exception as e:
        raise _http_error(e)


@app.get("/fingerprints/{fingerprint_id}/events")
def fingerprint_events(fingerprint_id: str, limit: int = Query(50, ge=1, le=1000)) -> List[Dict[str, Any]]:
    try:
        events = get_engine().get_fingerprint_events(fingerprint_id, limit)
    except Exception as e:
        raise _http_error(e)
    return [e.model_dump(mode="json") for e in events]


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting verdict engine API on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)

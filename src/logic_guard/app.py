"""This module contains the FastAPI application for the Logic Guard service.

It defines the API endpoints for classifying logic builds, receiving build
events from the game server, health checks, version information and
statistics. It also handles the application lifespan, including the
initialization of the LogicBuildGuard and its BuildMonitor worker pool.
"""
from __future__ import annotations
import os
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

import requests
from fastapi import FastAPI, Request, status
from pydantic import BaseModel
from .guard import (
    BuildContext,
    BuildEndEvent,
    BuildMonitor,
    DEFAULT_CONFIG,
    LogicBuildGuard,
    SanctionEvent,
    log_sanction,
)
from prometheus_client import make_asgi_app

PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "0") == "1"
SERVICE_VERSION = "1.0.0"

logger = logging.getLogger("logic_guard")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config() -> dict:
    """Builds the guard configuration from defaults, a JSON file and env vars."""
    conf = DEFAULT_CONFIG.copy()
    config_path = os.getenv("LOGIC_GUARD_CONFIG_PATH")
    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable config file {config_path}: {e}")
        else:
            if isinstance(data, dict):
                conf.update({k: v for k, v in data.items() if k in DEFAULT_CONFIG})
    if os.getenv("LOGIC_GUARD_ENDPOINT"):
        conf["endpoint"] = os.environ["LOGIC_GUARD_ENDPOINT"]
    if os.getenv("LOGIC_GUARD_CACHE_SIZE"):
        conf["cache_size"] = int(os.environ["LOGIC_GUARD_CACHE_SIZE"])
    if os.getenv("LOGIC_GUARD_TIMEOUT"):
        conf["timeout"] = float(os.environ["LOGIC_GUARD_TIMEOUT"])
    if os.getenv("LOGIC_GUARD_DEFAULT_ACTION"):
        conf["default_action"] = os.environ["LOGIC_GUARD_DEFAULT_ACTION"].upper()
    conf["deep_search"] = _env_bool("LOGIC_GUARD_DEEP_SEARCH", conf["deep_search"])
    conf["cache_failures"] = _env_bool(
        "LOGIC_GUARD_CACHE_FAILURES", conf["cache_failures"]
    )
    return conf


def forward_sanction(event: SanctionEvent):
    """Default sanction handler: logs the event and forwards it to a webhook."""
    log_sanction(event, os.getenv("SANCTION_LOG_PATH"), logger)
    webhook = os.getenv("SANCTION_WEBHOOK_URL")
    if not webhook:
        return
    try:
        response = requests.post(
            webhook,
            data=event.to_json(),
            timeout=(2, 5),
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.warning(f"Failed to forward sanction for {event.actor}: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Builds the guard at startup and drains the worker pool at shutdown."""
    if getattr(app.state, "guard", None) is None:
        app.state.guard = LogicBuildGuard(load_config())
    if getattr(app.state, "monitor", None) is None:
        app.state.monitor = BuildMonitor(app.state.guard, forward_sanction)
    yield
    app.state.monitor.shutdown(wait=True)
    app.state.monitor = None
    app.state.guard = None


app = FastAPI(title="Logic Guard API", lifespan=lifespan)

if PROMETHEUS_ENABLED:
    app.mount("/metrics", make_asgi_app())


@app.get("/health")
def health():
    """Returns the health status of the service."""
    return {"status": "ok"}


@app.get("/version")
def version(request: Request):
    """Returns the version of the service and the active guard settings."""
    guard = request.app.state.guard
    return {
        "version": SERVICE_VERSION,
        "endpoint": guard.config["endpoint"],
        "mode": guard.mode.value,
    }


class ClassifyRequest(BaseModel):
    """The request model for the /classify endpoint."""
    x: int
    y: int
    code: str
    actor: str


class BuildEventRequest(BaseModel):
    """The request model for the /build-events endpoint."""
    x: int
    y: int
    code: str
    actor: Optional[str] = None
    breaking: bool = False


@app.post("/classify")
def classify(req: ClassifyRequest, request: Request):
    """Classifies a logic build synchronously."""
    verdict = request.app.state.guard.classify(
        BuildContext(x=req.x, y=req.y, code=req.code, actor=req.actor)
    )
    return {"verdict": verdict.value, "flagged": verdict.flagged}


@app.post("/build-events", status_code=status.HTTP_202_ACCEPTED)
def build_event(req: BuildEventRequest, request: Request):
    """Queues a build event; flagged builds are forwarded as sanctions."""
    future = request.app.state.monitor.on_build_end(
        BuildEndEvent(
            x=req.x, y=req.y, code=req.code, actor=req.actor, breaking=req.breaking
        )
    )
    return {"queued": future is not None}


@app.get("/stats")
def stats(request: Request):
    """Returns classification metrics and verdict cache statistics."""
    guard = request.app.state.guard
    return {"metrics": guard.metrics.summary(), "cache": guard.cache.stats()}

import logging
import os
import time
import uuid
from typing import Any, Literal

from typing_extensions import TypedDict

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .errors import ChainExhausted, FailureKind, classify_failure
from .router import ConfigWatcher
from .scheduler import Scheduler
from .types import CompletionRequest

logger = logging.getLogger(__name__)

app = FastAPI(title="llm-sched")

CONFIG_DIR = os.environ.get("SCHED_CONFIG_DIR", os.path.join(os.path.dirname(os.path.dirname(__file__)), "..", "config"))

TRUTHY_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})
FALSY_VALUES: frozenset[str] = frozenset({"0", "false", "no", "off"})


class _ModelInfo(TypedDict):
    id: str
    object: Literal["model"]
    owned_by: str


class _ModelListResponse(TypedDict):
    object: Literal["list"]
    data: list[_ModelInfo]


def _env_var_as_bool(name: str, *, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if not normalized:
        return default
    if normalized in TRUTHY_VALUES:
        return True
    if normalized in FALSY_VALUES:
        return False
    return default


def _parse_env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


USE_DUMMY: bool = _env_var_as_bool("SCHED_USE_DUMMY")
INBOUND_API_KEYS = frozenset(_parse_env_list(os.environ.get("SCHED_INBOUND_API_KEYS", "")))
API_KEY_HEADER = os.environ.get("SCHED_API_KEY_HEADER", "x-api-key")
BAD_GATEWAY_STATUS = 502

watcher = ConfigWatcher(CONFIG_DIR, use_dummy=USE_DUMMY)
scheduler = Scheduler(watcher)


def _require_api_key(req: Request) -> None:
    if not INBOUND_API_KEYS:
        return
    candidate = req.headers.get(API_KEY_HEADER)
    if candidate is None:
        auth_header = req.headers.get("authorization")
        if auth_header and auth_header.startswith("Bearer "):
            candidate = auth_header[7:]
    if candidate and candidate in INBOUND_API_KEYS:
        return
    raise HTTPException(status_code=401, detail="missing or invalid api key")


def _make_error_body(
    *,
    message: str,
    error_type: str,
    code: str,
    retry_after: int | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "message": message,
        "type": error_type,
        "code": code,
    }
    if retry_after is not None:
        payload["retry_after"] = retry_after
    return {"error": payload}


def _retry_after_seconds(exc: ChainExhausted) -> int | None:
    retry_after_ms = exc.retry_after_ms
    if retry_after_ms is None:
        return None
    return max(int(-(-retry_after_ms // 1000)), 0)


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    config = watcher.current()
    snapshot = scheduler.snapshot()
    return {
        "status": "ok",
        "configured_providers": sorted(config.providers),
        "providers": snapshot["providers"],
        "cooldowns": snapshot["cooldowns"],
    }


@app.get("/v1/models")
async def list_models() -> _ModelListResponse:
    models: list[_ModelInfo] = []
    for name, definition in sorted(watcher.current().providers.items()):
        for model in definition.models:
            models.append({"id": f"{name}:{model}", "object": "model", "owned_by": definition.type or name})
    return {"object": "list", "data": models}


@app.post("/v1/completions")
async def completions(req: Request, body: CompletionRequest):
    _require_api_key(req)
    req_id = str(uuid.uuid4())
    start = time.perf_counter()
    try:
        result = await scheduler.complete(body.system_prompt, body.user_prompt)
    except ChainExhausted as exc:
        latency_ms = int((time.perf_counter() - start) * 1000)
        logger.error(
            "completions failure req_id=%s attempted=%d skipped=%d latency_ms=%d detail=%s",
            req_id,
            exc.attempted,
            exc.skipped,
            latency_ms,
            str(exc)[:160],
        )
        kind = classify_failure(exc.last_error) if exc.last_error is not None else FailureKind.FATAL
        retry_after = _retry_after_seconds(exc)
        headers = {"x-sched-request-id": req_id, "x-sched-attempts": str(exc.attempted)}
        if retry_after is not None:
            headers["Retry-After"] = str(retry_after)
        return JSONResponse(
            _make_error_body(
                message=str(exc),
                error_type="chain_exhausted",
                code=kind.value,
                retry_after=retry_after,
            ),
            status_code=BAD_GATEWAY_STATUS,
            headers=headers,
        )
    latency_ms = int((time.perf_counter() - start) * 1000)
    logger.info(
        "completions success req_id=%s provider=%s model=%s attempts=%d latency_ms=%d",
        req_id,
        result.provider,
        result.model,
        result.attempts,
        latency_ms,
    )
    headers = {
        "x-sched-request-id": req_id,
        "x-sched-provider": result.provider,
        "x-sched-attempts": str(result.attempts),
    }
    return JSONResponse(result.model_dump(mode="json"), headers=headers)

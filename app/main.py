"""FastAPI app exposing the JSON:API module routes."""

from __future__ import annotations

import sys
from functools import partial
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import logging
import os
import time

import anyio
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.attachments import UploadStorage
from app.auth import SupabaseAuthMiddleware
from app.config import ServiceConfig, load_config
from app.db import get_db_stats, reset_db_stats
from app.default_modules import DEFAULT_MODULES
from app.errors import InvalidArgument, NotFound, RecordServiceError
from app.policy import PolicyEvaluator
from app.query_params import parse_fields, parse_list_query
from app.record_service import RecordService
from app.stores import MemoryRecordStore
from app.stores_db import DbRecordStore
from module_registry import ModuleRegistry

JSONAPI_MEDIA_TYPE = "application/vnd.api+json"
DEV_ACTOR = {
    "user_id": "dev-user",
    "email": "dev@example.com",
    "role": "admin",
    "roles": ["admin"],
    "claims": {},
}

logger = logging.getLogger("records")
logging.basicConfig(level=logging.INFO)

config = load_config()
PREFIX = config.api_prefix
logger.info("auth_disabled=%s supabase_url=%s supabase_aud=%s prefix=%s", config.disable_auth, config.supabase_url, config.supabase_aud, PREFIX)

_LOCAL_CORS_REGEX = r"http://localhost:\d+|http://127\.0\.0\.1:\d+"
_CORS_ORIGINS = {
    origin.strip().rstrip("/")
    for origin in os.getenv("RECORDS_CORS_ORIGINS", "").split(",")
    if origin.strip()
}


def build_registry(cfg: ServiceConfig) -> ModuleRegistry:
    reg = ModuleRegistry()
    if cfg.modules_file:
        results = reg.load_file(cfg.modules_file)
    else:
        results = reg.register_many(DEFAULT_MODULES)
    for result in results:
        if not result.get("ok"):
            logger.warning("module_register_failed errors=%s", result.get("errors"))
    logger.info("modules_registered count=%s source=%s", len(reg.list()), cfg.modules_file or "defaults")
    return reg


def build_store(cfg: ServiceConfig):
    if cfg.use_db:
        db_store = DbRecordStore()
        db_store.ensure_schema()
        return db_store
    return MemoryRecordStore()


def _upload_root(cfg: ServiceConfig) -> Path:
    path = Path(cfg.upload_dir)
    return path if path.is_absolute() else ROOT / path


registry = build_registry(config)
records_store = build_store(config)
policy = PolicyEvaluator(registry)
upload_storage = UploadStorage(_upload_root(config))
service = RecordService(registry, records_store, policy, config, storage=upload_storage)

app = FastAPI(title="Records API")


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_stats()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    auth_ms = getattr(request.state, "auth_ms", 0.0)
    db_stats = get_db_stats()
    db_ms = db_stats.get("total_ms", 0.0)
    route = request.scope.get("route")
    route_name = getattr(route, "name", None) or "unknown"
    logger.info(
        "%s %s %s route=%s total_ms=%.1f auth_ms=%.1f db_ms=%.1f db_q=%s",
        request.method,
        request.url.path,
        response.status_code,
        route_name,
        total_ms,
        auth_ms,
        db_ms,
        db_stats.get("queries", 0),
    )
    if total_ms >= config.req_slow_ms:
        logger.warning(
            "slow_request method=%s path=%s route=%s total_ms=%.1f db_ms=%.1f status=%s",
            request.method,
            request.url.path,
            route_name,
            total_ms,
            db_ms,
            response.status_code,
        )
    if config.is_dev:
        response.headers["X-Req-MS"] = f"{total_ms:.1f}"
        response.headers["X-Route"] = route_name
    return response


if not config.disable_auth:
    if not config.supabase_url:
        raise RuntimeError("SUPABASE_URL is required for auth")
    app.add_middleware(SupabaseAuthMiddleware, supabase_url=config.supabase_url, audience=config.supabase_aud)
# Outermost: CORS headers also apply to auth failures.
app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(_CORS_ORIGINS),
    allow_origin_regex=_LOCAL_CORS_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(status: int, code: str, title: str, detail: str, path: str | None = None, meta: dict | None = None) -> JSONResponse:
    error = {"status": status, "code": code, "title": title, "detail": detail}
    if path:
        error["source"] = {"pointer": path}
    if meta:
        error["meta"] = meta
    return JSONResponse(jsonable_encoder({"errors": [error]}), status_code=status, media_type=JSONAPI_MEDIA_TYPE)


def _document_response(document: dict, status: int = 200) -> JSONResponse:
    return JSONResponse(jsonable_encoder(document), status_code=status, media_type=JSONAPI_MEDIA_TYPE)


@app.exception_handler(RecordServiceError)
async def record_service_error_handler(request: Request, exc: RecordServiceError):
    if exc.status >= 500:
        logger.error("request_failed method=%s path=%s code=%s error=%s", request.method, request.url.path, exc.code, exc.message)
    else:
        logger.info("request_rejected method=%s path=%s status=%s code=%s", request.method, request.url.path, exc.status, exc.code)
    return _error_response(exc.status, exc.code, exc.title, exc.message, exc.path, exc.detail)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error method=%s path=%s", request.method, request.url.path)
    return _error_response(500, "INTERNAL_ERROR", "Internal server error", "Unexpected server error", meta={"error": str(exc)})


def _resolve_actor(request: Request) -> dict:
    user = getattr(request.state, "user", None)
    if isinstance(user, dict) and user.get("id"):
        return {
            "user_id": user.get("id"),
            "email": user.get("email"),
            "role": user.get("role"),
            "roles": user.get("roles") or [],
            "claims": user.get("claims") or {},
        }
    if config.disable_auth:
        return dict(DEV_ACTOR)
    raise RecordServiceError("Authenticated user required", code="AUTH_REQUIRED", status=401, path="Authorization")


async def _safe_json(request: Request) -> dict:
    try:
        return await request.json()
    except Exception:
        return {}


def _require_module(module: str) -> None:
    if not registry.has(module):
        raise NotFound(f"Module {module} not found", code="MODULE_NOT_FOUND", path="type")


def _module_path(module: str) -> str:
    return f"{PREFIX}/module/{module}"


def _body_data(body: dict, require_id: bool) -> tuple[str, str | None, dict]:
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict):
        raise InvalidArgument("Request body must contain a data object", code="PAYLOAD_INVALID", path="/data")
    module = data.get("type")
    if not isinstance(module, str) or not module.strip():
        raise InvalidArgument("data.type is required", code="PAYLOAD_INVALID", path="/data/type")
    record_id = data.get("id")
    if record_id is not None and (not isinstance(record_id, str) or not record_id.strip()):
        raise InvalidArgument("data.id must be a non-empty string", code="PAYLOAD_INVALID", path="/data/id")
    if require_id and record_id is None:
        raise InvalidArgument("data.id is required", code="PAYLOAD_INVALID", path="/data/id")
    attributes = data.get("attributes")
    if attributes is None:
        attributes = {}
    if not isinstance(attributes, dict):
        raise InvalidArgument("data.attributes must be an object", code="PAYLOAD_INVALID", path="/data/attributes")
    return module.strip(), record_id, attributes


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


@app.get(PREFIX + "/module/{module}/{record_id}")
async def get_module_record(request: Request, module: str, record_id: str):
    actor = _resolve_actor(request)
    _require_module(module)
    items = list(request.query_params.multi_items())
    fields = parse_fields(items, module, registry.object_name(module))
    document = await anyio.to_thread.run_sync(
        partial(
            service.get_record,
            module,
            record_id,
            fields=list(fields) if fields else None,
            path=request.url.path,
            actor=actor,
        )
    )
    return _document_response(document)


@app.get(PREFIX + "/module/{module}")
async def list_module_records(request: Request, module: str):
    actor = _resolve_actor(request)
    _require_module(module)
    items = list(request.query_params.multi_items())
    query = parse_list_query(items, registry, module)
    base_url = str(request.url.replace(query=""))
    document = await anyio.to_thread.run_sync(
        partial(
            service.list_records,
            query,
            path=request.url.path,
            base_url=base_url,
            params=items,
            actor=actor,
        )
    )
    return _document_response(document)


@app.post(PREFIX + "/module")
async def create_module_record(request: Request):
    actor = _resolve_actor(request)
    module, record_id, attributes = _body_data(await _safe_json(request), require_id=False)
    _require_module(module)
    document = await anyio.to_thread.run_sync(
        partial(service.create_record, module, record_id, attributes, path=_module_path(module), actor=actor)
    )
    return _document_response(document, status=201)


@app.patch(PREFIX + "/module")
async def update_module_record(request: Request):
    actor = _resolve_actor(request)
    module, record_id, attributes = _body_data(await _safe_json(request), require_id=True)
    _require_module(module)
    document = await anyio.to_thread.run_sync(
        partial(service.update_record, module, record_id, attributes, path=_module_path(module), actor=actor)
    )
    return _document_response(document)


@app.delete(PREFIX + "/module/{module}/{record_id}")
async def delete_module_record(request: Request, module: str, record_id: str):
    actor = _resolve_actor(request)
    _require_module(module)
    document = await anyio.to_thread.run_sync(partial(service.delete_record, module, record_id, actor=actor))
    return _document_response(document)

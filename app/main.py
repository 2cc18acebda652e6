"""FastAPI admin app for the stackpilot control plane."""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

import functools
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable

import anyio
import httpx
from fastapi import APIRouter, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from stack_spec import StackSpecError, StackSpecValidationError

from app.apply_engine import ApplyEngine, ApplyError
from app.auth import AdminTokenMiddleware
from app.automations_runtime import ActionRunner
from app.catalog import ExtensionCatalog, http_fetcher
from app.compose_runner import runner_from_env
from app.diagnostics import DEFAULT_HEALTH_TARGETS, check_service_health, list_provider_models
from app.scheduler import AutomationScheduler, SchedulerError
from app.secrets import SecretStoreError
from app.stack_manager import StackManager


logging.basicConfig(level=os.getenv("STACKPILOT_LOG_LEVEL", "INFO").strip().upper() or "INFO")
logger = logging.getLogger("stackpilot")

CONFLICT_CODES = {"cannot_delete_core_automation", "cannot_delete_builtin_channel", "automation_running", "scheduler_stopped"}


def _env_flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _status_for(code: str) -> int:
    if code.endswith("_not_found"):
        return 404
    if code.endswith("_in_use") or code in CONFLICT_CODES:
        return 409
    return 400


def _stack_error_response(exc: StackSpecError) -> JSONResponse:
    if isinstance(exc, StackSpecValidationError):
        body = {"ok": False, "errors": exc.issues, "warnings": []}
        return JSONResponse(jsonable_encoder(body), status_code=400)
    return _error_response(exc.code, exc.message, exc.path, exc.detail, status=_status_for(exc.code))


async def _safe_json(request: Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _services(request: Request):
    return request.app.state


async def _mutate(request: Request, fn: Callable[..., Any], *args: Any, reload_jobs: bool = False, **kwargs: Any) -> JSONResponse:
    try:
        spec = await anyio.to_thread.run_sync(functools.partial(fn, *args, **kwargs))
    except StackSpecError as exc:
        return _stack_error_response(exc)
    except SecretStoreError as exc:
        return _error_response("secret_store_error", str(exc), status=500)
    if reload_jobs:
        state = _services(request)
        state.scheduler.load(state.manager.list_automations())
    return _ok_response({"spec": spec})


router = APIRouter()


@router.get("/health")
async def health() -> dict:
    return {"ok": True}


# -- spec --------------------------------------------------------------------


@router.get("/stack/spec")
async def get_stack_spec(request: Request):
    try:
        spec = await anyio.to_thread.run_sync(_services(request).manager.get_spec)
    except StackSpecError as exc:
        return _stack_error_response(exc)
    return _ok_response({"spec": spec})


@router.post("/stack/access-scope")
async def set_access_scope(request: Request):
    body = await _safe_json(request)
    return await _mutate(request, _services(request).manager.set_access_scope, body.get("scope"))


@router.post("/stack/channels/{name}")
async def set_channel_access(name: str, request: Request):
    body = await _safe_json(request)
    changes = {key: body[key] for key in ("enabled", "exposure") if key in body}
    return await _mutate(request, _services(request).manager.set_channel_access, name, **changes)


@router.put("/stack/channels/{name}")
async def upsert_channel(name: str, request: Request):
    body = await _safe_json(request)
    return await _mutate(request, _services(request).manager.upsert_channel, name, body)


@router.delete("/stack/channels/{name}")
async def delete_channel(name: str, request: Request):
    return await _mutate(request, _services(request).manager.delete_channel, name)


@router.post("/stack/channels/{name}/config")
async def set_channel_config(name: str, request: Request):
    body = await _safe_json(request)
    return await _mutate(request, _services(request).manager.set_channel_config, name, body.get("config"))


@router.post("/stack/channels/{name}/secret")
async def map_channel_secret(name: str, request: Request):
    body = await _safe_json(request)
    return await _mutate(
        request, _services(request).manager.map_channel_secret, name, body.get("target"), body.get("name") or ""
    )


@router.put("/stack/services/{name}")
async def upsert_service(name: str, request: Request):
    body = await _safe_json(request)
    return await _mutate(request, _services(request).manager.upsert_service, name, body)


@router.delete("/stack/services/{name}")
async def delete_service(name: str, request: Request):
    return await _mutate(request, _services(request).manager.delete_service, name)


# -- secrets -----------------------------------------------------------------


@router.get("/secrets")
async def list_secrets(request: Request):
    try:
        state = await anyio.to_thread.run_sync(_services(request).manager.list_secret_manager_state)
    except StackSpecError as exc:
        return _stack_error_response(exc)
    except SecretStoreError as exc:
        return _error_response("secret_store_error", str(exc), status=500)
    return _ok_response(state)


@router.post("/secrets")
async def upsert_secret(request: Request):
    body = await _safe_json(request)
    return await _mutate(request, _services(request).manager.upsert_secret, body.get("name"), body.get("value", ""))


@router.delete("/secrets/{name}")
async def delete_secret(name: str, request: Request):
    return await _mutate(request, _services(request).manager.delete_secret, name)


# -- connections -------------------------------------------------------------


@router.get("/connections")
async def list_connections(request: Request):
    try:
        spec = await anyio.to_thread.run_sync(_services(request).manager.get_spec)
    except StackSpecError as exc:
        return _stack_error_response(exc)
    return _ok_response({"connections": spec["connections"]})


@router.post("/connections")
async def upsert_connection(request: Request):
    body = await _safe_json(request)
    return await _mutate(request, _services(request).manager.upsert_connection, body)


@router.delete("/connections/{connection_id}")
async def delete_connection(connection_id: str, request: Request):
    return await _mutate(request, _services(request).manager.delete_connection, connection_id)


# -- extensions --------------------------------------------------------------


@router.get("/extensions/catalog")
async def extension_catalog(request: Request):
    listing = await anyio.to_thread.run_sync(_services(request).manager.catalog.list_items)
    warnings = []
    if listing["stale"]:
        warnings.append({"code": "catalog_stale", "message": "Remote catalog unreachable; showing cached items", "path": None, "detail": None})
    return _ok_response(listing, warnings=warnings)


@router.post("/extensions/install")
async def install_extension(request: Request):
    body = await _safe_json(request)
    return await _mutate(
        request,
        _services(request).manager.install_extension,
        body.get("id"),
        connection_ids=body.get("connectionIds") or [],
        enabled=body.get("enabled", True),
    )


@router.post("/extensions/{extension_id}/enabled")
async def set_extension_enabled(extension_id: str, request: Request):
    body = await _safe_json(request)
    return await _mutate(request, _services(request).manager.set_extension_enabled, extension_id, body.get("enabled"))


@router.delete("/extensions/{extension_id}")
async def uninstall_extension(extension_id: str, request: Request):
    return await _mutate(request, _services(request).manager.uninstall_extension, extension_id)


# -- automations -------------------------------------------------------------


@router.get("/automations")
async def list_automations(request: Request):
    state = _services(request)
    try:
        jobs = await anyio.to_thread.run_sync(state.manager.list_automations)
    except StackSpecError as exc:
        return _stack_error_response(exc)
    next_fire = state.scheduler.next_fire_times()
    for job in jobs:
        fire = next_fire.get(job["id"])
        job["nextFire"] = fire.isoformat() if fire else None
        job["running"] = state.scheduler.is_running(job["id"])
    return _ok_response({"automations": jobs})


@router.post("/automations")
async def upsert_automation(request: Request):
    body = await _safe_json(request)
    return await _mutate(request, _services(request).manager.upsert_automation, body, reload_jobs=True)


@router.post("/automations/{automation_id}/enabled")
async def set_automation_enabled(automation_id: str, request: Request):
    body = await _safe_json(request)
    return await _mutate(
        request, _services(request).manager.set_automation_enabled, automation_id, body.get("enabled"), reload_jobs=True
    )


@router.delete("/automations/{automation_id}")
async def delete_automation(automation_id: str, request: Request):
    return await _mutate(request, _services(request).manager.delete_automation, automation_id, reload_jobs=True)


@router.post("/automations/{automation_id}/run")
async def run_automation(automation_id: str, request: Request):
    try:
        entry = await _services(request).scheduler.trigger_now(automation_id)
    except SchedulerError as exc:
        return _error_response(exc.code, exc.message, "id", status=_status_for(exc.code))
    return _ok_response({"run": entry})


@router.get("/automations/{automation_id}/history")
async def automation_history(automation_id: str, request: Request):
    return _ok_response({"history": _services(request).scheduler.history(automation_id)})


# -- render / apply ----------------------------------------------------------


@router.post("/stack/render")
async def render_stack(request: Request):
    try:
        result = await anyio.to_thread.run_sync(_services(request).manager.render_artifacts)
    except StackSpecError as exc:
        return _stack_error_response(exc)
    return _ok_response(result)


@router.post("/stack/apply")
async def apply_stack(request: Request):
    body = await _safe_json(request)
    execute = body.get("execute") is True
    try:
        result = await _services(request).engine.apply(execute=execute)
    except ApplyError as exc:
        return _error_response(exc.code, exc.message, detail=exc.detail, status=422)
    except StackSpecError as exc:
        return _stack_error_response(exc)
    warnings = result.pop("warnings")
    result.pop("ok")
    return _ok_response(result, warnings=warnings)


@router.get("/stack/services")
async def list_stack_services(request: Request):
    runner = _services(request).engine.runner
    result = await runner.list()
    warnings = []
    if not result["ok"]:
        warnings.append({"code": result["error"] or "runner_failed", "message": "Service listing unavailable", "path": None, "detail": None})
    return _ok_response({"configured": runner.configured, "services": result["services"]}, warnings=warnings)


@router.get("/stack/health")
async def stack_health(request: Request):
    results = await check_service_health(_services(request).health_targets)
    return _ok_response({"services": results})


@router.post("/providers/models")
async def provider_models(request: Request):
    body = await _safe_json(request)
    base_url = body.get("baseUrl")
    if not isinstance(base_url, str) or not base_url.strip():
        return _error_response("base_url_required", "baseUrl is required", "baseUrl")
    try:
        models = await anyio.to_thread.run_sync(list_provider_models, base_url.strip(), body.get("apiKey"))
    except (httpx.HTTPError, ValueError) as exc:
        return _error_response("provider_unreachable", "Provider model listing failed", "baseUrl", {"error": str(exc)}, status=502)
    return _ok_response({"models": models})


# -- app ---------------------------------------------------------------------


def create_lifespan(scheduler_enabled: bool):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler: AutomationScheduler = app.state.scheduler
        scheduler.load(app.state.manager.list_automations())
        if scheduler_enabled:
            scheduler.start()
        logger.info("admin_started scheduler_enabled=%s runner_configured=%s", scheduler_enabled, app.state.engine.runner.configured)
        try:
            yield
        finally:
            await scheduler.stop()

    return lifespan


def create_app(
    manager: StackManager | None = None,
    runner: Any = None,
    action_runner: Any = None,
    admin_token: str | None = None,
    scheduler_enabled: bool | None = None,
    health_targets: dict | None = None,
) -> FastAPI:
    if manager is None:
        catalog_url = os.getenv("STACKPILOT_CATALOG_URL", "").strip()
        catalog = ExtensionCatalog(fetcher=http_fetcher(catalog_url) if catalog_url else None)
        manager = StackManager(
            os.getenv("STACKPILOT_DATA_DIR", "./data").strip() or "./data",
            os.getenv("STACKPILOT_STATE_DIR", "./state").strip() or "./state",
            catalog=catalog,
        )
    if admin_token is None:
        admin_token = os.getenv("ADMIN_TOKEN", "").strip()
    if scheduler_enabled is None:
        scheduler_enabled = _env_flag("STACKPILOT_SCHEDULER_ENABLED", "1")
    if action_runner is None:
        action_runner = ActionRunner(
            admin_url=os.getenv("STACKPILOT_ADMIN_URL", "http://localhost:8100").strip(),
            admin_token=admin_token,
            assistant_url=os.getenv("STACKPILOT_ASSISTANT_URL", "http://assistant:4096").strip(),
        )

    app = FastAPI(title="stackpilot admin", lifespan=create_lifespan(scheduler_enabled))
    app.state.manager = manager
    app.state.engine = ApplyEngine(manager, runner if runner is not None else runner_from_env())
    app.state.scheduler = AutomationScheduler(
        action_runner,
        history_path=manager.history_path,
        default_timeout_ms=int(os.getenv("STACKPILOT_AUTOMATION_TIMEOUT_MS", "30000")),
    )
    app.state.health_targets = health_targets if health_targets is not None else dict(DEFAULT_HEALTH_TARGETS)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("request_failed path=%s", request.url.path)
        return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)

    if not admin_token and not _env_flag("STACKPILOT_DISABLE_AUTH"):
        logger.warning("admin_token_missing all_requests_rejected=true")
    app.add_middleware(AdminTokenMiddleware, token=admin_token)
    app.include_router(router)
    return app


app = create_app()

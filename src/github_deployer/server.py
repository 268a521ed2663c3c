"""aiohttp HTTP surface: GitHub webhook receiver and admin API.

Endpoints:
    GET    /health                                  - liveness (no auth)
    POST   /webhook                                 - GitHub deliveries (HMAC signed)
    GET    /status                                  - token and scheduler status
    GET    /repositories                            - tracked repositories
    POST   /repositories                            - start tracking a repository
    DELETE /repositories/{id}                       - stop tracking
    POST   /repositories/{id}/deploy                - redeploy a tracked repository
    POST   /repositories/{id}/auto-update           - toggle auto-update
    GET    /repositories/{owner}/{name}/backups     - list backups
    DELETE /repositories/{owner}/{name}/backups/{backup_id}
    POST   /deploy                                  - deploy owner/name@ref
    POST   /rollback                                - restore a backup
    POST   /check                                   - run an update sweep now

Admin endpoints require the ``X-Deployer-Secret`` header when a secret is
configured.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web

from github_deployer import __version__
from github_deployer.auth import SECRET_HEADER, validate_secret
from github_deployer.engine import DeploymentEngine
from github_deployer.errors import DeployerError, ErrorKind
from github_deployer.logging import bind_context, clear_context, get_logger
from github_deployer.models import DeploymentResult, DeployKind, parse_repository_reference

log = get_logger("github_deployer.server")

ENGINE_KEY = web.AppKey("engine", DeploymentEngine)
SECRET_KEY = web.AppKey("secret", str)

PUBLIC_PATHS = frozenset({"/health", "/webhook"})

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.BACKUP_NOT_FOUND: 404,
    ErrorKind.ALREADY_EXISTS: 409,
    ErrorKind.BUSY: 409,
    ErrorKind.INVALID_REPOSITORY_REFERENCE: 400,
    ErrorKind.INVALID_REQUEST: 422,
    ErrorKind.INCOMPATIBLE_ARCHIVE: 422,
    ErrorKind.METADATA_MISSING: 422,
    ErrorKind.METADATA_INVALID: 422,
    ErrorKind.TARGET_MISSING: 422,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.AUTH_REQUIRED: 502,
    ErrorKind.AUTH_INSUFFICIENT: 502,
    ErrorKind.TRANSPORT_ERROR: 502,
    ErrorKind.REMOTE_ERROR: 502,
    ErrorKind.DOWNLOAD_FAILED: 502,
}

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def status_for(kind: ErrorKind | None) -> int:
    if kind is None:
        return 200
    return _STATUS_BY_KIND.get(kind, 500)


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"success": False, "message": message}, status=status)


def _result_response(result: DeploymentResult) -> web.Response:
    return web.json_response(result.to_dict(), status=status_for(result.error_kind))


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise web.HTTPBadRequest(
            text=json.dumps({"success": False, "message": "Invalid JSON body"}),
            content_type="application/json",
        ) from exc
    if not isinstance(data, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"success": False, "message": "JSON body must be an object"}),
            content_type="application/json",
        )
    return data


def _require(data: dict[str, Any], *fields: str) -> str | None:
    missing = [f for f in fields if not data.get(f)]
    if missing:
        return f"Missing required fields: {', '.join(missing)}"
    return None


def _int_param(request: web.Request, name: str) -> int:
    try:
        return int(request.match_info[name])
    except ValueError as exc:
        raise web.HTTPBadRequest(
            text=json.dumps({"success": False, "message": f"{name} must be an integer"}),
            content_type="application/json",
        ) from exc


def _kind(value: Any) -> DeployKind | None:
    if value in (None, ""):
        return None
    try:
        return DeployKind(value)
    except ValueError as exc:
        raise web.HTTPBadRequest(
            text=json.dumps({"success": False, "message": f"Unknown kind: {value}"}),
            content_type="application/json",
        ) from exc


# ------------------------------------------------------------------
# Middleware
# ------------------------------------------------------------------


@web.middleware
async def auth_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    secret = request.app[SECRET_KEY]
    if secret and request.path not in PUBLIC_PATHS:
        if not validate_secret(request.headers.get(SECRET_HEADER), secret):
            return _error("Unauthorized", 401)
    return await handler(request)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except DeployerError as exc:
        log.info("request_failed", path=request.path, error_kind=exc.kind.value, error=exc.message)
        return web.json_response(
            {"success": False, "message": exc.message, "error": exc.to_dict()},
            status=status_for(exc.kind),
        )


# ------------------------------------------------------------------
# Handlers
# ------------------------------------------------------------------


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "version": __version__})


async def handle_webhook(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    event_type = request.headers.get("X-GitHub-Event")
    bind_context(delivery=request.headers.get("X-GitHub-Delivery"), github_event=event_type)
    try:
        payload = await request.read()
        outcome = await engine.handle_webhook(
            payload, request.headers.get("X-Hub-Signature-256"), event_type
        )
        log.info("webhook_handled", status=outcome.status.value, http_status=outcome.http_status)
    finally:
        clear_context()
    return web.json_response(outcome.to_dict(), status=outcome.http_status)


async def handle_status(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    last_run = engine.detector.last_run_at
    return web.json_response(
        {
            "version": __version__,
            "token": await engine.token_status(),
            "last_update_check": last_run.isoformat() if last_run else None,
        }
    )


async def handle_list_repositories(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    repos = await engine.list_repositories()
    return web.json_response({"repositories": [r.to_dict() for r in repos]})


async def handle_register_repository(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    data = await _json_body(request)
    problem = _require(data, "repository")
    if problem:
        return _error(problem, 400)
    repo = await engine.register_repository(
        str(data["repository"]),
        ref=data.get("ref") or None,
        kind=_kind(data.get("kind")),
        target_dir=data.get("target_dir") or None,
        auto_update=bool(data.get("auto_update", False)),
    )
    return web.json_response(repo.to_dict(), status=201)


async def handle_remove_repository(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    repo_id = _int_param(request, "repo_id")
    if not await engine.remove_repository(repo_id):
        return _error(f"Tracked repository {repo_id} not found", 404)
    return web.json_response({"success": True})


async def handle_deploy_by_id(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    result = await engine.deploy_by_id(_int_param(request, "repo_id"))
    return _result_response(result)


async def handle_auto_update(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    repo_id = _int_param(request, "repo_id")
    data = await _json_body(request)
    if not isinstance(data.get("enabled"), bool):
        return _error("Field 'enabled' must be true or false", 400)
    repo = await engine.set_auto_update(repo_id, data["enabled"])
    return web.json_response(repo.to_dict())


async def handle_list_backups(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    backups = await engine.list_backups(request.match_info["owner"], request.match_info["name"])
    return web.json_response({"backups": [b.to_dict() for b in backups]})


async def handle_delete_backup(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    await engine.delete_backup(
        request.match_info["owner"], request.match_info["name"], request.match_info["backup_id"]
    )
    return web.json_response({"success": True})


async def handle_deploy(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    data = await _json_body(request)
    if data.get("repository"):
        owner, name = parse_repository_reference(str(data["repository"]))
    else:
        problem = _require(data, "owner", "name")
        if problem:
            return _error(problem, 400)
        owner, name = str(data["owner"]), str(data["name"])

    auto_update = data.get("auto_update")
    result = await engine.deploy(
        owner,
        name,
        str(data.get("ref") or "main"),
        _kind(data.get("kind")) or DeployKind.PLUGIN,
        bool(data.get("update_existing", False)),
        target_dir=data.get("target_dir") or None,
        auto_update=bool(auto_update) if auto_update is not None else None,
    )
    return _result_response(result)


async def handle_rollback(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    data = await _json_body(request)
    problem = _require(data, "owner", "name", "backup_id")
    if problem:
        return _error(problem, 400)
    result = await engine.rollback(str(data["owner"]), str(data["name"]), str(data["backup_id"]))
    return _result_response(result)


async def handle_check(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    results = await engine.check_for_updates()
    return web.json_response({"results": [r.to_dict() for r in results]})


# ------------------------------------------------------------------
# App factory
# ------------------------------------------------------------------


def create_app(engine: DeploymentEngine, secret: str = "") -> web.Application:
    """Build the aiohttp application around an engine."""
    app = web.Application(middlewares=[auth_middleware, error_middleware])
    app[ENGINE_KEY] = engine
    app[SECRET_KEY] = secret

    app.router.add_get("/health", handle_health)
    app.router.add_post("/webhook", handle_webhook)
    app.router.add_get("/status", handle_status)
    app.router.add_get("/repositories", handle_list_repositories)
    app.router.add_post("/repositories", handle_register_repository)
    app.router.add_delete("/repositories/{repo_id}", handle_remove_repository)
    app.router.add_post("/repositories/{repo_id}/deploy", handle_deploy_by_id)
    app.router.add_post("/repositories/{repo_id}/auto-update", handle_auto_update)
    app.router.add_get("/repositories/{owner}/{name}/backups", handle_list_backups)
    app.router.add_delete(
        "/repositories/{owner}/{name}/backups/{backup_id}", handle_delete_backup
    )
    app.router.add_post("/deploy", handle_deploy)
    app.router.add_post("/rollback", handle_rollback)
    app.router.add_post("/check", handle_check)
    return app


class DeployerServer:
    """Owns the aiohttp runner for ``create_app``."""

    def __init__(
        self,
        engine: DeploymentEngine,
        *,
        host: str = "0.0.0.0",  # nosec B104
        port: int = 8090,
        secret: str = "",
    ) -> None:
        self._engine = engine
        self._host = host
        self._port = port
        self._secret = secret
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        app = create_app(self._engine, secret=self._secret)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        log.info("server_started", host=self._host, port=self._port)

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        log.info("server_stopped")

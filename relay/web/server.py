"""HTTP + SSE front for the session registry.

Endpoints:
    GET    /api/stream?session=&project=   SSE stream of one session
    POST   /api/message                    send a user turn
    POST   /api/sessions/{id}/stop         stop a session (always 200)
    GET    /api/sessions?project=          list session summaries
    POST   /api/sessions                   create an empty session
    GET    /api/sessions/{id}              paginated history
    DELETE /api/sessions/{id}              delete a session and its history
    GET    /api/projects                   list projects
    POST   /api/projects                   create a project
    PUT    /api/projects/{id}              update a project
    DELETE /api/projects/{id}              delete a project
    GET    /api/health, /api/config        server status and config summary
    GET    /, /chat.html, /vscode-shim.js, /webview/{path}   static UI
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from pathlib import Path
from typing import Any

from aiohttp import web

from relay.engine.config import RelayConfig
from relay.engine.errors import (
    ProjectNotFoundError,
    ProjectValidationError,
    SessionNotFoundError,
)
from relay.engine.registry import DEFAULT_PAGE_SIZE, SessionRegistry
from relay.shared.services.persistence import HistoryStore
from relay.shared.services.project import ProjectStore
from relay.web.sse import SseTransport

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def _parse_int(value: Any) -> int | None:
    """Lenient id parsing for query strings; garbage means absent."""
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class RelayServer:
    """aiohttp application wiring HTTP routes to a SessionRegistry."""

    def __init__(
        self,
        config: RelayConfig,
        *,
        registry: SessionRegistry | None = None,
    ) -> None:
        self._config = config
        self._host = config.host
        self._port = config.port
        if registry is None:
            history = HistoryStore(config.data_dir)
            projects = ProjectStore(config.data_dir)
            history.load()
            projects.load()
            registry = SessionRegistry(config, history, projects)
        self._registry = registry

        self._app = web.Application(
            middlewares=[self._cors_middleware, self._request_logging_middleware],
        )
        self._app.on_response_prepare.append(self._add_cors_headers)
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    # ── Middleware ──

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if request.method == "OPTIONS":
            return web.Response(status=200)
        return await handler(request)

    @staticmethod
    async def _add_cors_headers(request: web.Request, response: web.StreamResponse) -> None:
        for key, value in CORS_HEADERS.items():
            response.headers.setdefault(key, value)

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-relay-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException as exc:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id, exc.status, elapsed_ms,
            )
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/api/health", self._handle_health)
        r.add_get("/api/config", self._handle_get_config)

        r.add_get("/api/stream", self._handle_stream)
        r.add_post("/api/message", self._handle_message)

        r.add_get("/api/sessions", self._handle_list_sessions)
        r.add_post("/api/sessions", self._handle_create_session)
        r.add_get(r"/api/sessions/{id:\d+}", self._handle_get_session)
        r.add_delete(r"/api/sessions/{id:\d+}", self._handle_delete_session)
        r.add_post(r"/api/sessions/{id:\d+}/stop", self._handle_stop_session)

        r.add_get("/api/projects", self._handle_list_projects)
        r.add_post("/api/projects", self._handle_create_project)
        r.add_put(r"/api/projects/{id:\d+}", self._handle_update_project)
        r.add_delete(r"/api/projects/{id:\d+}", self._handle_delete_project)

        r.add_get("/", self._handle_index)
        r.add_get("/chat.html", self._handle_public_file)
        r.add_get("/vscode-shim.js", self._handle_public_file)
        r.add_get("/webview/{path:.*}", self._handle_webview_file)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Serve until cancelled, then stop every session."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        logger.info("Relay server listening on http://%s:%d", self._host, self._port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    async def _on_shutdown(self, app: web.Application) -> None:
        await self._registry.shutdown()

    # ── Helpers ──

    @staticmethod
    async def _read_json(request: web.Request) -> tuple[dict[str, Any] | None, web.Response | None]:
        if not request.can_read_body:
            return {}, None
        try:
            body = await request.json()
        except ValueError as exc:
            return None, web.json_response({"error": f"Invalid JSON body: {exc}"}, status=400)
        if not isinstance(body, dict):
            return None, web.json_response({"error": "Request body must be a JSON object"}, status=400)
        return body, None

    # ── Status ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        config = self._config
        return web.json_response({
            "status": "ok",
            "sessions": len(self._registry.active),
            "background_sessions": len(self._registry.background),
            "claude_binary": config.agent_binary,
            "claude_binary_found": self._registry.launcher.binary_available(),
            "api_key_configured": bool(config.resolve_api_key()),
            "base_url": config.base_url,
            "config_file": str(config.config_path) if config.config_path else None,
            "config_exists": config.config_exists,
        })

    async def _handle_get_config(self, request: web.Request) -> web.Response:
        config = self._config
        return web.json_response({
            "base_url": config.base_url,
            "api_key_configured": bool(config.resolve_api_key()),
            "permissions": config.permissions,
            "enabled_plugins": config.enabled_plugins,
            "timeout_ms": config.api_timeout_ms,
        })

    # ── Streaming and messages ──

    async def _handle_stream(self, request: web.Request) -> web.StreamResponse:
        requested_id = _parse_int(request.query.get("session"))
        project_id = _parse_int(request.query.get("project"))
        req_id = request.get("req_id", "unknown")

        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )
        await response.prepare(request)

        transport = SseTransport(label=req_id)
        supervisor = self._registry.open_stream(requested_id, project_id, transport)
        session_id = supervisor.session_id
        logger.info("SSE client connected session=%s req=%s", session_id, req_id)

        try:
            await transport.pump(request, response, self._config.keepalive_seconds)
        except asyncio.CancelledError:
            pass
        finally:
            logger.info(
                "SSE client disconnected session=%s req=%s events=%d",
                session_id, req_id, transport.sent,
            )
            transport.close()
            self._registry.release(session_id, transport)
        return response

    async def _handle_message(self, request: web.Request) -> web.Response:
        body, err = await self._read_json(request)
        if err:
            return err
        try:
            session_id = int(body.get("sessionId"))
        except (TypeError, ValueError):
            return web.json_response({"error": "sessionId must be an integer"}, status=400)
        message = body.get("message")
        if not isinstance(message, dict):
            return web.json_response({"error": "message must be an object"}, status=400)

        payload = {
            "type": "user",
            "message": {
                "role": "user",
                "content": message.get("content") or message.get("prompt") or "",
            },
        }
        try:
            await self._registry.route_message(session_id, payload)
        except SessionNotFoundError:
            return web.json_response({"error": "Session not found"}, status=404)
        return web.json_response({"success": True})

    # ── Sessions ──

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        project_id = _parse_int(request.query.get("project"))
        sessions = self._registry.list_sessions(project_id)
        return web.json_response({"total": len(sessions), "sessions": sessions})

    async def _handle_create_session(self, request: web.Request) -> web.Response:
        body, err = await self._read_json(request)
        if err:
            return err
        raw_project = body.get("projectId")
        project_id = _parse_int(raw_project)
        if raw_project not in (None, "") and project_id is None:
            return web.json_response({"error": "projectId must be an integer"}, status=400)
        record = self._registry.create_session(project_id)
        return web.json_response({"id": record.session_id, **record.to_dict()}, status=201)

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        session_id = int(request.match_info["id"])
        limit = _parse_int(request.query.get("limit")) or DEFAULT_PAGE_SIZE
        offset = _parse_int(request.query.get("offset")) or 0
        try:
            page = self._registry.get_history(session_id, limit=max(1, limit), offset=max(0, offset))
        except SessionNotFoundError:
            return web.json_response({"error": "Session not found"}, status=404)
        return web.json_response(page)

    async def _handle_delete_session(self, request: web.Request) -> web.Response:
        session_id = int(request.match_info["id"])
        try:
            self._registry.delete_session(session_id)
        except SessionNotFoundError:
            return web.json_response({"error": "Session not found"}, status=404)
        return web.json_response({"success": True})

    async def _handle_stop_session(self, request: web.Request) -> web.Response:
        session_id = int(request.match_info["id"])
        stopped = self._registry.stop(session_id)
        message = "Session stopped" if stopped else "Session not running"
        return web.json_response({"success": True, "message": message})

    # ── Projects ──

    async def _handle_list_projects(self, request: web.Request) -> web.Response:
        projects = self._registry.projects.list()
        return web.json_response({"projects": [p.to_dict() for p in projects]})

    async def _handle_create_project(self, request: web.Request) -> web.Response:
        body, err = await self._read_json(request)
        if err:
            return err
        try:
            project = self._registry.projects.create(body.get("name"), body.get("path"))
        except ProjectValidationError as exc:
            return web.json_response({"error": exc.reason}, status=400)
        return web.json_response(project.to_dict(), status=201)

    async def _handle_update_project(self, request: web.Request) -> web.Response:
        project_id = int(request.match_info["id"])
        body, err = await self._read_json(request)
        if err:
            return err
        try:
            project = self._registry.projects.update(
                project_id, name=body.get("name"), path=body.get("path"),
            )
        except ProjectNotFoundError:
            return web.json_response({"error": "Project not found"}, status=404)
        return web.json_response(project.to_dict())

    async def _handle_delete_project(self, request: web.Request) -> web.Response:
        project_id = int(request.match_info["id"])
        try:
            self._registry.projects.delete(project_id)
        except ProjectNotFoundError:
            return web.json_response({"error": "Project not found"}, status=404)
        return web.json_response({"success": True})

    # ── Static UI ──

    async def _handle_index(self, request: web.Request) -> web.Response:
        raise web.HTTPFound("/chat.html")

    async def _handle_public_file(self, request: web.Request) -> web.StreamResponse:
        return self._serve_file(self._config.public_dir, request.path.lstrip("/"))

    async def _handle_webview_file(self, request: web.Request) -> web.StreamResponse:
        return self._serve_file(self._config.webview_dir, request.match_info["path"])

    @staticmethod
    def _serve_file(base: Path | None, relative: str) -> web.StreamResponse:
        if base is None or not relative:
            return web.Response(status=404, text="Not found")
        root = Path(base).resolve()
        target = (root / relative).resolve()
        if not target.is_relative_to(root) or not target.is_file():
            return web.Response(status=404, text="Not found")
        return web.FileResponse(target)

"""HTTP + WebSocket server for the companion core.

Exposes sessions and agents as a REST API and streams each session's
events to observers over WebSockets.

Usage:
    companion [--host HOST] [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import sys
import time
import uuid
from typing import Any

from aiohttp import WSMsgType, web

from companion.adapters.event_bridge import Observer
from companion.engine.config import EngineConfig
from companion.engine.controller import AgentController
from companion.engine.errors import CompanionError
from companion.engine.models import AgentConfig

logger = logging.getLogger(__name__)

_APPROVAL_TYPES = {"plan", "permission"}


class CompanionServer:
    """REST API and WebSocket transport over an AgentController."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        controller: AgentController | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._host = self._config.host
        self._port = self._config.port
        self._controller = controller or AgentController(self._config)
        self._env_store = self._controller.env_store
        self._started_at = time.time()
        self._app = web.Application(
            middlewares=[self._request_logging_middleware, self._error_middleware],
        )
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def controller(self) -> AgentController:
        return self._controller

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
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
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        """Map core exceptions to JSON error responses."""
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except CompanionError as exc:
            logger.info("Request rejected (%d): %s", exc.status, exc)
            return web.json_response({"error": str(exc)}, status=exc.status)
        except ValueError as exc:
            return web.json_response({"error": str(exc)}, status=400)
        except Exception as exc:
            logger.exception("Unhandled error in %s %s", request.method, request.path)
            return web.json_response({"error": f"Internal error: {exc}"}, status=500)

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        # Sessions
        r.add_get("/api/sessions", self._handle_list_sessions)
        r.add_post("/api/sessions", self._handle_create_session)
        r.add_get("/api/sessions/{id}", self._handle_get_session)
        r.add_delete("/api/sessions/{id}", self._handle_remove_session)
        r.add_post("/api/sessions/{id}/kill", self._handle_kill_session)
        # Agents
        r.add_get("/api/sessions/{id}/agents", self._handle_list_agents)
        r.add_post("/api/sessions/{id}/agents", self._handle_spawn_agent)
        r.add_get("/api/sessions/{id}/agents/{name}/messages", self._handle_get_messages)
        r.add_post("/api/sessions/{id}/agents/{name}/send", self._handle_send)
        r.add_post("/api/sessions/{id}/agents/{name}/kill", self._handle_kill_agent)
        r.add_post("/api/sessions/{id}/agents/{name}/shutdown", self._handle_shutdown_agent)
        r.add_post("/api/sessions/{id}/agents/{name}/relaunch", self._handle_relaunch_agent)
        r.add_post("/api/sessions/{id}/agents/{name}/approve", self._handle_approve)
        # Environment bundles
        r.add_get("/api/envs", self._handle_list_envs)
        r.add_post("/api/envs", self._handle_create_env)
        r.add_get("/api/envs/{slug}", self._handle_get_env)
        r.add_put("/api/envs/{slug}", self._handle_update_env)
        r.add_delete("/api/envs/{slug}", self._handle_delete_env)
        # Live transport
        r.add_get("/ws/sessions/{id}", self._handle_ws)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server and serve until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("Companion server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("Companion server listening on %s:%d", self._host, actual_port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self._controller.shutdown()
            await runner.cleanup()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Helpers ──

    @staticmethod
    async def _read_body(request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except json.JSONDecodeError:
            raise ValueError("Request body must be valid JSON") from None
        if not isinstance(body, dict):
            raise ValueError("Request body must be a JSON object")
        return body

    async def _approve(self, session_id: str, name: str, body: dict[str, Any]) -> bool:
        request_id = body.get("requestId") or body.get("request_id")
        if not request_id:
            raise ValueError("requestId is required")
        kind = body.get("type", "permission")
        if kind not in _APPROVAL_TYPES:
            raise ValueError(f"type must be one of: {', '.join(sorted(_APPROVAL_TYPES))}")
        approve = body.get("approve", True) is not False
        feedback = body.get("feedback")
        logger.info(
            "Approve session=%s agent=%s request_id=%s type=%s approve=%s",
            session_id[:8], name, str(request_id)[:8], kind, approve,
        )
        if kind == "plan":
            return await self._controller.send_plan_approval(
                session_id, name, str(request_id), approve, feedback=feedback,
            )
        return await self._controller.send_permission_response(
            session_id, name, str(request_id), approve,
            message=feedback,
            updated_input=body.get("updatedInput"),
        )

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "sessions": len(self._controller.registry),
            "observers": self._controller.bridge.observer_count(),
            "uptimeSeconds": round(time.time() - self._started_at, 1),
        })

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        registry = self._controller.registry
        return web.json_response({
            "sessions": [registry.describe(s.session_id) for s in registry.list()],
        })

    async def _handle_create_session(self, request: web.Request) -> web.Response:
        body = await self._read_body(request)
        session = self._controller.create_session(
            cwd=body.get("cwd"), label=body.get("label"),
        )
        logger.info("Session created via API session=%s", session.session_id[:8])
        return web.json_response(self._controller.registry.describe(session.session_id))

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        return web.json_response(self._controller.registry.describe(session_id))

    async def _handle_remove_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        await self._controller.remove_session(session_id)
        return web.json_response({"ok": True})

    async def _handle_kill_session(self, request: web.Request) -> web.Response:
        session = await self._controller.kill_session(request.match_info["id"])
        return web.json_response({
            "ok": True,
            "session": self._controller.registry.describe(session.session_id),
        })

    async def _handle_list_agents(self, request: web.Request) -> web.Response:
        session = self._controller.get_session(request.match_info["id"])
        return web.json_response({"agents": [a.to_dict() for a in session.agents.values()]})

    async def _handle_spawn_agent(self, request: web.Request) -> web.Response:
        session = self._controller.get_session(request.match_info["id"])
        body = await self._read_body(request)
        name = body.get("name")
        if not name or not isinstance(name, str):
            raise ValueError("name is required")
        config = AgentConfig.from_request(
            body,
            default_binary=self._config.default_binary,
            default_cwd=session.cwd,
            default_model=self._config.default_model,
        )
        record = await self._controller.spawn_agent(session.session_id, name, config)
        return web.json_response({"agent": record.to_dict()})

    async def _handle_get_messages(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        name = request.match_info["name"]
        messages = self._controller.registry.messages(session_id, name)
        return web.json_response({"messages": [m.to_dict() for m in messages]})

    async def _handle_send(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        name = request.match_info["name"]
        body = await self._read_body(request)
        text = body.get("message") or body.get("text")
        if not text or not isinstance(text, str):
            raise ValueError("message is required")
        message = await self._controller.send(
            session_id, name, text, summary=body.get("summary"),
        )
        return web.json_response({"ok": True, "message": message.to_dict()})

    async def _handle_kill_agent(self, request: web.Request) -> web.Response:
        record = await self._controller.kill_agent(
            request.match_info["id"], request.match_info["name"],
        )
        return web.json_response({"ok": True, "agent": record.to_dict()})

    async def _handle_shutdown_agent(self, request: web.Request) -> web.Response:
        await self._controller.send_shutdown_request(
            request.match_info["id"], request.match_info["name"],
        )
        return web.json_response({"ok": True, "shutdownRequested": True})

    async def _handle_relaunch_agent(self, request: web.Request) -> web.Response:
        record = await self._controller.relaunch_agent(
            request.match_info["id"], request.match_info["name"],
        )
        return web.json_response({"ok": True, "agent": record.to_dict()})

    async def _handle_approve(self, request: web.Request) -> web.Response:
        body = await self._read_body(request)
        resolved = await self._approve(
            request.match_info["id"], request.match_info["name"], body,
        )
        return web.json_response({"ok": True, "resolved": resolved})

    async def _handle_list_envs(self, request: web.Request) -> web.Response:
        return web.json_response({"envs": [b.to_dict() for b in self._env_store.list()]})

    async def _handle_get_env(self, request: web.Request) -> web.Response:
        slug = request.match_info["slug"]
        bundle = self._env_store.get(slug)
        if bundle is None:
            return web.json_response({"error": f"Environment {slug} not found"}, status=404)
        return web.json_response(bundle.to_dict())

    async def _handle_create_env(self, request: web.Request) -> web.Response:
        body = await self._read_body(request)
        bundle = self._env_store.create(str(body.get("name") or ""), body.get("variables"))
        return web.json_response(bundle.to_dict())

    async def _handle_update_env(self, request: web.Request) -> web.Response:
        slug = request.match_info["slug"]
        body = await self._read_body(request)
        bundle = self._env_store.update(
            slug, name=body.get("name"), variables=body.get("variables"),
        )
        if bundle is None:
            return web.json_response({"error": f"Environment {slug} not found"}, status=404)
        return web.json_response(bundle.to_dict())

    async def _handle_delete_env(self, request: web.Request) -> web.Response:
        slug = request.match_info["slug"]
        if not self._env_store.delete(slug):
            return web.json_response({"error": f"Environment {slug} not found"}, status=404)
        return web.json_response({"ok": True})

    # ── WebSocket transport ──

    async def _handle_ws(self, request: web.Request) -> web.StreamResponse:
        session_id = request.match_info["id"]
        agent = request.query.get("agent") or None
        bridge = self._controller.bridge
        # Unknown session or agent raises before the upgrade and maps to 404.
        observer = bridge.attach(session_id, agent)

        ws = web.WebSocketResponse(heartbeat=30.0)
        try:
            await ws.prepare(request)
        except Exception:
            bridge.detach(observer)
            raise
        logger.info(
            "WebSocket observer connected req=%s session=%s agent=%s",
            request.get("req_id", "unknown"), session_id[:8], agent or "*",
        )

        sender = asyncio.create_task(self._pump_observer(ws, observer))
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    reply = await self._handle_ws_command(session_id, agent, msg.data)
                    if reply is not None:
                        await ws.send_json(reply)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket error session=%s: %s", session_id[:8], ws.exception())
        finally:
            sender.cancel()
            bridge.detach(observer)
            logger.info("WebSocket observer disconnected session=%s", session_id[:8])
        return ws

    @staticmethod
    async def _pump_observer(ws: web.WebSocketResponse, observer: Observer) -> None:
        try:
            async for payload in observer:
                await ws.send_json(payload)
        except (ConnectionResetError, asyncio.CancelledError):
            return
        # Observer closed by the bridge (session removed or too slow).
        await ws.close()

    async def _handle_ws_command(
        self,
        session_id: str,
        default_agent: str | None,
        raw: str,
    ) -> dict[str, Any] | None:
        """Route one inbound frame. Returns an error frame on failure."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return {"type": "error", "error": "frame must be valid JSON"}
        if not isinstance(data, dict):
            return {"type": "error", "error": "frame must be a JSON object"}

        kind = data.get("type")
        name = data.get("agent") or default_agent
        controller = self._controller
        try:
            if not name:
                raise ValueError("agent is required")
            if kind == "send":
                text = data.get("message") or data.get("text")
                if not text:
                    raise ValueError("message is required")
                await controller.send(session_id, name, str(text), summary=data.get("summary"))
            elif kind == "approve":
                await self._approve(session_id, name, data)
            elif kind == "kill":
                await controller.kill_agent(session_id, name)
            elif kind == "shutdown":
                await controller.send_shutdown_request(session_id, name)
            else:
                raise ValueError(f"unknown command type: {kind!r}")
        except (CompanionError, ValueError) as exc:
            return {"type": "error", "error": str(exc)}
        except Exception as exc:
            logger.exception("WebSocket command %r failed session=%s", kind, session_id[:8])
            return {"type": "error", "error": f"Internal error: {exc}"}
        return None

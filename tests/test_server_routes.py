from __future__ import annotations

import asyncio
import json
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import pytest
from aiohttp.test_utils import TestClient, TestServer

from companion.engine.config import EngineConfig
from companion.engine.errors import SessionNotFoundError
from companion.engine.models import AgentConfig, ApprovalKind
from companion.server.server import CompanionServer
from companion.shared.models.agent import AgentRecord
from companion.shared.models.message import Approval


@dataclass
class _Request:
    match_info: dict[str, str]
    query: dict[str, str] = field(default_factory=dict)
    body: dict | None = None
    method: str = "GET"
    path: str = "/"

    @property
    def can_read_body(self) -> bool:
        return self.body is not None

    async def json(self) -> dict:
        return self.body or {}


def _json_payload(resp) -> dict:
    return json.loads(resp.text)


def _build_server(tmpdir: str) -> CompanionServer:
    config = EngineConfig(
        port=0,
        default_cwd=tmpdir,
        env_dir=str(Path(tmpdir) / "envs"),
        grace_timeout_seconds=2.0,
        kill_timeout_seconds=2.0,
    )
    return CompanionServer(config)


@pytest.mark.asyncio
async def test_session_create_list_get_delete() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)
        created = _json_payload(await server._handle_create_session(
            _Request(match_info={}, body={"label": "review", "cwd": tmpdir}),
        ))
        sid = created["sessionId"]
        assert created["label"] == "review"
        assert created["agents"] == []

        listed = _json_payload(await server._handle_list_sessions(_Request(match_info={})))
        assert [s["sessionId"] for s in listed["sessions"]] == [sid]

        fetched = _json_payload(await server._handle_get_session(_Request(match_info={"id": sid})))
        assert fetched["sessionId"] == sid

        removed = _json_payload(await server._handle_remove_session(_Request(match_info={"id": sid})))
        assert removed == {"ok": True}
        with pytest.raises(SessionNotFoundError):
            await server._handle_get_session(_Request(match_info={"id": sid}))


@pytest.mark.asyncio
async def test_error_middleware_maps_exceptions() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)
        req = _Request(match_info={})

        async def missing(request):
            raise SessionNotFoundError("nope")

        async def invalid(request):
            raise ValueError("name is required")

        async def broken(request):
            raise RuntimeError("boom")

        not_found = await server._error_middleware(req, missing)
        bad_request = await server._error_middleware(req, invalid)
        internal = await server._error_middleware(req, broken)

        assert not_found.status == 404
        assert "nope" in _json_payload(not_found)["error"]
        assert bad_request.status == 400
        assert _json_payload(bad_request) == {"error": "name is required"}
        assert internal.status == 500
        assert _json_payload(internal)["error"] == "Internal error: boom"


@pytest.mark.asyncio
async def test_approve_validation_and_unknown_request() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)
        controller = server.controller
        sid = controller.create_session(tmpdir).session_id
        controller.registry.add_agent(AgentRecord("reviewer", sid, AgentConfig(cwd=tmpdir)))
        controller.registry.add_pending_approval(
            sid, Approval("other", ApprovalKind.PERMISSION, "reviewer"),
        )
        match = {"id": sid, "name": "reviewer"}

        with pytest.raises(ValueError, match="requestId"):
            await server._handle_approve(_Request(match_info=match, body={"approve": True}))
        with pytest.raises(ValueError, match="type must be"):
            await server._handle_approve(
                _Request(match_info=match, body={"requestId": "r1", "type": "nonsense"}),
            )

        resp = await server._handle_approve(
            _Request(match_info=match, body={"requestId": "r1", "type": "permission"}),
        )
        assert _json_payload(resp) == {"ok": True, "resolved": False}
        assert controller.registry.get_approval(sid, "other").status.value == "pending"


@pytest.mark.asyncio
async def test_send_requires_message_and_running_agent() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)
        controller = server.controller
        sid = controller.create_session(tmpdir).session_id
        controller.registry.add_agent(AgentRecord("reviewer", sid, AgentConfig(cwd=tmpdir)))
        match = {"id": sid, "name": "reviewer"}

        with pytest.raises(ValueError):
            await server._handle_send(_Request(match_info=match, body={}))
        # Record exists but no process was ever started.
        resp = await server._error_middleware(
            _Request(match_info=match, body={"message": "hi"}), server._handle_send,
        )
        assert resp.status == 400
        assert "not running" in _json_payload(resp)["error"]


@pytest.mark.asyncio
async def test_spawn_requires_name() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)
        sid = server.controller.create_session(tmpdir).session_id

        with pytest.raises(ValueError, match="name"):
            await server._handle_spawn_agent(_Request(match_info={"id": sid}, body={}))
        with pytest.raises(ValueError, match="permission mode"):
            await server._handle_spawn_agent(
                _Request(match_info={"id": sid}, body={"name": "a", "permissionMode": "yolo"}),
            )
        assert server.controller.get_session(sid).agents == {}


@pytest.mark.asyncio
async def test_spawn_rejects_string_where_list_expected() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)
        sid = server.controller.create_session(tmpdir).session_id

        resp = await server._error_middleware(
            _Request(match_info={"id": sid}, body={"name": "a", "allowedTools": "Bash"}),
            server._handle_spawn_agent,
        )

        assert resp.status == 400
        assert _json_payload(resp) == {"error": "allowedTools must be a list of strings"}
        assert server.controller.get_session(sid).agents == {}


@pytest.mark.asyncio
async def test_env_routes() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)

        created = _json_payload(await server._handle_create_env(
            _Request(match_info={}, body={"name": "Team Keys", "variables": {"A": "1"}}),
        ))
        assert created["slug"] == "team-keys"

        listed = _json_payload(await server._handle_list_envs(_Request(match_info={})))
        assert [e["slug"] for e in listed["envs"]] == ["team-keys"]

        updated = _json_payload(await server._handle_update_env(
            _Request(match_info={"slug": "team-keys"}, body={"variables": {"B": "2"}}),
        ))
        assert updated["variables"] == {"B": "2"}

        deleted = await server._handle_delete_env(_Request(match_info={"slug": "team-keys"}))
        assert _json_payload(deleted) == {"ok": True}
        missing = await server._handle_get_env(_Request(match_info={"slug": "team-keys"}))
        assert missing.status == 404
        with pytest.raises(ValueError):
            await server._handle_create_env(_Request(match_info={}, body={"name": ""}))


@pytest.mark.asyncio
async def test_ws_command_errors() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)
        sid = server.controller.create_session(tmpdir).session_id

        not_json = await server._handle_ws_command(sid, None, "{nope")
        no_agent = await server._handle_ws_command(sid, None, json.dumps({"type": "send"}))
        unknown_type = await server._handle_ws_command(
            sid, None, json.dumps({"type": "dance", "agent": "a"}),
        )
        unknown_agent = await server._handle_ws_command(
            sid, "ghost", json.dumps({"type": "kill"}),
        )

        assert not_json == {"type": "error", "error": "frame must be valid JSON"}
        assert no_agent == {"type": "error", "error": "agent is required"}
        assert "unknown command type" in unknown_type["error"]
        assert "ghost" in unknown_agent["error"]


async def _receive_until(ws, predicate, timeout: float = 10.0) -> list[dict]:
    frames = []
    while True:
        frame = await asyncio.wait_for(ws.receive_json(), timeout=timeout)
        frames.append(frame)
        if predicate(frame):
            return frames


@pytest.mark.asyncio
async def test_http_spawn_and_websocket_conversation(agent_command, wait_for) -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)
        controller = server.controller
        try:
            async with TestClient(TestServer(server.app)) as client:
                health = await client.get("/health")
                assert (await health.json())["status"] == "ok"

                resp = await client.post("/api/sessions", json={"label": "ws"})
                sid = (await resp.json())["sessionId"]
                resp = await client.post(
                    f"/api/sessions/{sid}/agents",
                    json={"name": "reviewer", "command": agent_command("echo")},
                )
                assert resp.status == 200
                assert (await resp.json())["agent"]["name"] == "reviewer"
                record = controller.registry.get_agent(sid, "reviewer")
                await wait_for(lambda: record.state.value == "idle")

                missing = await client.get("/ws/sessions/does-not-exist")
                assert missing.status == 404

                ws = await client.ws_connect(f"/ws/sessions/{sid}")
                first = await asyncio.wait_for(ws.receive_json(), timeout=10)
                assert first["type"] == "snapshot"
                assert first["session"]["agents"][0]["name"] == "reviewer"

                await ws.send_json({"type": "send", "agent": "reviewer", "message": "hello"})
                frames = await _receive_until(ws, lambda f: f["type"] == "message_complete")
                assert frames[0]["type"] == "message"
                assert frames[0]["message"]["text"] == "hello"
                assert frames[-1]["text"] == "echo: hello"

                await ws.send_json({"type": "approve", "agent": "reviewer"})
                error = await _receive_until(ws, lambda f: f["type"] == "error")
                assert error[-1]["error"] == "requestId is required"
                await ws.close()

                messages = await client.get(f"/api/sessions/{sid}/agents/reviewer/messages")
                texts = [m["text"] for m in (await messages.json())["messages"]]
                assert texts == ["hello", "echo: hello"]

                killed = await client.post(f"/api/sessions/{sid}/agents/reviewer/kill")
                assert (await killed.json())["agent"]["state"] == "killed"

                swept = await client.post(f"/api/sessions/{sid}/kill")
                body = await swept.json()
                assert body["ok"] is True
                assert body["session"]["agents"][0]["state"] == "killed"
                assert body["session"]["messageCount"] == 2
        finally:
            await controller.shutdown()


@pytest.mark.asyncio
async def test_kill_session_keeps_the_session() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)
        sid = server.controller.create_session(tmpdir).session_id

        resp = await server._handle_kill_session(_Request(match_info={"id": sid}, method="POST"))

        data = _json_payload(resp)
        assert data["ok"] is True
        assert data["session"]["sessionId"] == sid
        assert data["session"]["agents"] == []
        assert server.controller.get_session(sid).session_id == sid
        with pytest.raises(SessionNotFoundError):
            await server._handle_kill_session(_Request(match_info={"id": "missing"}))

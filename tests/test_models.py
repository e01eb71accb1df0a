"""Tests for spawn configuration and record serialization."""
from __future__ import annotations

import pytest

from companion.adapters.events import StateChanged, TextDelta, dict_to_event, event_to_dict
from companion.engine.models import AgentConfig, ApprovalKind, PermissionMode, Sender
from companion.shared.models.agent import AgentRecord
from companion.shared.models.message import Approval, Message, TaskItem
from companion.shared.models.session import Session


def test_build_argv_for_agent_cli() -> None:
    config = AgentConfig(
        binary="claude",
        model="sonnet",
        permission_mode=PermissionMode.PLAN,
        allowed_tools=["Read", "Grep"],
        extra_args=["--debug"],
    )

    argv = config.build_argv("/usr/bin/claude")

    assert argv[0] == "/usr/bin/claude"
    assert argv[argv.index("--input-format") + 1] == "stream-json"
    assert argv[argv.index("--output-format") + 1] == "stream-json"
    assert argv[argv.index("--model") + 1] == "sonnet"
    assert argv[argv.index("--permission-mode") + 1] == "plan"
    assert argv[argv.index("--allowedTools") + 1] == "Read,Grep"
    assert "--permission-prompt-tool" in argv
    assert argv[-1] == "--debug"


def test_bypass_mode_skips_prompt_tool() -> None:
    argv = AgentConfig(permission_mode=PermissionMode.BYPASS).build_argv()

    assert "--permission-prompt-tool" not in argv


def test_command_override_is_used_verbatim() -> None:
    config = AgentConfig(command=["agent", "--flag"], model="ignored")

    assert config.executable == "agent"
    assert config.build_argv("/opt/agent") == ["/opt/agent", "--flag"]


def test_build_env_precedence() -> None:
    config = AgentConfig(
        env={"B": "explicit", "C": "explicit"},
        api_key="sk-test",
        base_url="https://proxy.local",
    )

    env = config.build_env(
        bundle={"A": "bundle", "B": "bundle", "ANTHROPIC_API_KEY": "bundle-key"},
        base={"A": "base", "PATH": "/bin"},
    )

    assert env["PATH"] == "/bin"
    assert env["A"] == "bundle"
    assert env["B"] == "explicit"
    assert env["C"] == "explicit"
    assert env["ANTHROPIC_API_KEY"] == "sk-test"
    assert env["ANTHROPIC_BASE_URL"] == "https://proxy.local"


def test_config_never_serializes_credentials() -> None:
    config = AgentConfig(api_key="sk-secret", env={"TOKEN": "t"})

    data = config.to_dict()

    assert data["hasApiKey"] is True
    assert "sk-secret" not in repr(data)
    assert "sk-secret" not in repr(config)
    assert data["envKeys"] == ["TOKEN"]


def test_from_request_defaults_and_validation() -> None:
    config = AgentConfig.from_request(
        {"model": "opus", "permissionMode": "acceptEdits", "env": {"N": 1}},
        default_binary="claude-dev",
        default_cwd="/work",
    )

    assert config.binary == "claude-dev"
    assert config.cwd == "/work"
    assert config.permission_mode == PermissionMode.ACCEPT_EDITS
    assert config.env == {"N": "1"}

    with pytest.raises(ValueError, match="Unknown permission mode"):
        AgentConfig.from_request({"permissionMode": "yolo"})
    with pytest.raises(ValueError, match="env must be an object"):
        AgentConfig.from_request({"env": ["A=1"]})


@pytest.mark.parametrize("key", ["command", "allowedTools", "extraArgs"])
def test_from_request_rejects_bare_string_for_list_fields(key: str) -> None:
    with pytest.raises(ValueError, match=f"{key} must be a list of strings"):
        AgentConfig.from_request({key: "Bash"})


def test_from_request_keeps_list_fields_whole() -> None:
    config = AgentConfig.from_request({
        "command": ["agent-cli", "--fast"],
        "allowedTools": ["Bash", "Edit"],
        "extraArgs": ["--verbose", 3],
    })

    assert config.command == ["agent-cli", "--fast"]
    assert config.allowed_tools == ["Bash", "Edit"]
    assert config.extra_args == ["--verbose", "3"]

    argv = AgentConfig.from_request({"allowedTools": ["Bash", "Edit"]}).build_argv("/bin/claude")
    assert argv[argv.index("--allowedTools") + 1] == "Bash,Edit"


def test_session_descriptor_includes_agents() -> None:
    session = Session(cwd="/work", label="review")
    session.agents["reviewer"] = AgentRecord("reviewer", session.session_id, AgentConfig())

    data = session.to_dict()

    assert data["sessionId"] == session.session_id
    assert data["state"] == "active"
    assert data["agents"][0]["name"] == "reviewer"
    assert data["agents"][0]["state"] == "starting"
    assert data["agents"][0]["pid"] is None


def test_message_and_approval_dicts() -> None:
    msg = Message(Sender.USER, "hello", agent="reviewer", summary="hi")
    approval = Approval("r1", ApprovalKind.PLAN, "reviewer", payload={"plan": "x"})

    assert msg.to_dict()["from"] == "user"
    assert msg.to_dict()["summary"] == "hi"
    assert "summary" not in Message(Sender.AGENT, "x", agent="a").to_dict()
    assert approval.to_dict()["status"] == "pending"
    assert approval.to_dict()["kind"] == "plan"


def test_task_item_from_raw_tolerates_bad_status() -> None:
    task = TaskItem.from_raw({"content": "write docs", "status": "weird", "activeForm": "Writing docs"}, 0)

    assert task.id == "1"
    assert task.status.value == "pending"
    assert task.to_dict()["activeForm"] == "Writing docs"


def test_event_dict_round_trip_drops_none_fields() -> None:
    payload = event_to_dict(StateChanged(agent="a", state="idle"))

    assert payload == {"type": "state_change", "agent": "a", "state": "idle"}
    event = dict_to_event({"type": "text_delta", "agent": "a", "text": "x", "extra": 1})
    assert isinstance(event, TextDelta)
    assert event.text == "x"

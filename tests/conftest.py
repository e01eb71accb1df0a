"""Shared fixtures: scripted stand-ins for the agent CLI."""
from __future__ import annotations

import asyncio
import sys
import textwrap

import pytest

# Speaks the canonical record vocabulary on stdout and reads
# stream-json user/control records on stdin.
_ECHO_AGENT = textwrap.dedent("""
    import json, sys

    def emit(record):
        sys.stdout.write(json.dumps(record) + "\\n")
        sys.stdout.flush()

    emit({"type": "state_change", "state": "idle"})
    for line in sys.stdin:
        record = json.loads(line)
        kind = record.get("type")
        if kind == "user":
            text = record["message"]["content"][0]["text"]
            if text == "crash":
                emit({"type": "text_delta", "text": "partial"})
                sys.exit(0)
            if text == "fail":
                sys.stderr.write("fatal: something broke\\n")
                sys.stderr.flush()
                sys.exit(3)
            if text == "ask":
                emit({
                    "type": "permission_request",
                    "request_id": "req-1",
                    "tool_name": "Bash",
                    "input": {"command": "ls"},
                })
                continue
            if text == "plan":
                emit({"type": "plan_request", "request_id": "plan-1", "plan": "1. do it"})
                continue
            if text == "badtype":
                emit({"type": {"bad": 1}})
            if text == "garbage":
                sys.stdout.write("this is not json\\n")
                sys.stdout.flush()
            emit({"type": "state_change", "state": "busy"})
            emit({"type": "text_delta", "text": "echo: "})
            emit({"type": "text_delta", "text": text})
            emit({"type": "message_complete"})
            emit({"type": "state_change", "state": "idle"})
        elif kind == "control_response":
            behavior = record["response"]["response"]["behavior"]
            emit({"type": "message_complete", "text": "got " + behavior})
        elif kind == "control_request":
            break
""")

# Ignores SIGTERM so a kill has to escalate.
_STUBBORN_AGENT = textwrap.dedent("""
    import json, signal, sys, time
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    sys.stdout.write(json.dumps({"type": "state_change", "state": "idle"}) + "\\n")
    sys.stdout.flush()
    time.sleep(60)
""")

# Announces itself, then never reads its input.
_DEAF_AGENT = textwrap.dedent("""
    import json, sys, time
    sys.stdout.write(json.dumps({"type": "state_change", "state": "idle"}) + "\\n")
    sys.stdout.flush()
    time.sleep(60)
""")

# Leaves a helper outside its process group holding stdout open, so
# end of output arrives well after the agent itself is gone.
_LINGERING_AGENT = textwrap.dedent("""
    import json, subprocess, sys, time
    subprocess.Popen(
        [sys.executable, "-c", "import time; time.sleep(3)"],
        start_new_session=True,
    )
    sys.stdout.write(json.dumps({"type": "state_change", "state": "idle"}) + "\\n")
    sys.stdout.flush()
    time.sleep(60)
""")

_SCRIPTS = {
    "echo": _ECHO_AGENT,
    "stubborn": _STUBBORN_AGENT,
    "deaf": _DEAF_AGENT,
    "lingering": _LINGERING_AGENT,
    "quick": "pass",
}


@pytest.fixture
def agent_command():
    """Build a command line running one of the scripted agents."""

    def _build(kind: str = "echo") -> list[str]:
        return [sys.executable, "-c", _SCRIPTS[kind]]

    return _build


@pytest.fixture
def wait_for():
    """Poll a predicate until it holds or the timeout expires."""

    async def _wait(predicate, timeout: float = 10.0, interval: float = 0.02) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return _wait

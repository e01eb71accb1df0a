"""Tests for records written to agent stdin."""
from __future__ import annotations

import json

from companion.engine.protocol import (
    encode_record,
    interrupt_request,
    permission_response,
    plan_response,
    user_message,
)


def test_encode_record_is_one_terminated_line() -> None:
    raw = encode_record(user_message("multi\nline ünïcode"))

    assert raw.endswith(b"\n")
    assert raw.count(b"\n") == 1
    decoded = json.loads(raw)
    assert decoded["type"] == "user"
    assert decoded["message"]["content"][0]["text"] == "multi\nline ünïcode"


def test_permission_allow_carries_updated_input() -> None:
    record = permission_response("r1", True, updated_input={"command": "ls"})

    assert record["type"] == "control_response"
    assert record["response"]["request_id"] == "r1"
    assert record["response"]["response"] == {
        "behavior": "allow",
        "updatedInput": {"command": "ls"},
    }


def test_permission_deny_has_default_message() -> None:
    body = permission_response("r1", False)["response"]["response"]

    assert body == {"behavior": "deny", "message": "Denied by user"}


def test_plan_rejection_carries_feedback() -> None:
    body = plan_response("p1", False, feedback="split step 2")["response"]["response"]

    assert body["behavior"] == "deny"
    assert body["message"] == "split step 2"


def test_plan_rejection_without_feedback() -> None:
    body = plan_response("p1", False)["response"]["response"]

    assert body["message"] == "Plan rejected by user"


def test_plan_approval_echoes_plan_input() -> None:
    body = plan_response("p1", True, plan_input={"plan": "x"})["response"]["response"]

    assert body == {"behavior": "allow", "updatedInput": {"plan": "x"}}


def test_interrupt_request_gets_an_id() -> None:
    first = interrupt_request()
    second = interrupt_request("fixed")

    assert first["request"] == {"subtype": "interrupt"}
    assert first["request_id"]
    assert second["request_id"] == "fixed"

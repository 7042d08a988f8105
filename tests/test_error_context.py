# SPDX-License-Identifier: Apache-2.0
"""
Diagnostic context attached to reported errors.
Covers:
  • Description, code and argument snapshot on every reported error
  • Block shape validated against a JSON Schema (Draft 2020-12)
  • Decoded paths, callables skipped, non-JSON values repr'd
  • Best-effort attachment
"""
import pytest
from jsonschema import Draft202012Validator

from faultline_sdk.client.client_base import PermissionDenied
from faultline_sdk.core.error_context import attach_extra, get_extra, has_extra
from faultline_sdk.instrument.completion import snapshot_arguments

EXTRA_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["description", "code"],
    "properties": {
        "description": {"type": "string", "minLength": 1},
        "code": {"type": ["string", "null"]},
        "debug": {"type": "string"},
        "recoverable": {"type": "boolean"},
    },
    "patternProperties": {"^arg_[A-Za-z0-9_]+$": {"type": "string"}},
    "additionalProperties": False,
}


def assert_valid_extra(extra):
    errors = sorted(Draft202012Validator(EXTRA_SCHEMA).iter_errors(dict(extra)), key=str)
    assert not errors, "; ".join(error.message for error in errors)


@pytest.mark.asyncio
async def test_error_context_reported_error_carries_extra(database, context):
    ref = context.instrument(database.connect())

    with pytest.raises(PermissionDenied) as info:
        await ref.child("forbidden/ada lovelace").set_with_priority({"b": 2, "a": 1}, 3)

    extra = info.value.extra
    assert_valid_extra(extra)
    assert extra["description"] == "set_with_priority(/forbidden/ada lovelace): permission_denied"
    assert extra["code"] == "PERMISSION_DENIED"
    assert extra["arg_0"] == '{"a": 1, "b": 2}'
    assert extra["arg_1"] == "3"
    assert get_extra(info.value) is extra


@pytest.mark.asyncio
async def test_error_context_original_message_and_type_unchanged(database, context):
    ref = context.instrument(database.connect())

    with pytest.raises(PermissionDenied) as info:
        await ref.child("forbidden").remove()

    assert info.value.message == "permission_denied"
    assert str(info.value) == "permission_denied [code=PERMISSION_DENIED]"
    assert info.value.extra["description"] == "remove(/forbidden): permission_denied"


def test_error_context_snapshot_arguments():
    snapshot = snapshot_arguments(
        ("plain", lambda: None, {1, 2}),
        {"priority": None},
    )
    assert snapshot["arg_0"] == "plain"
    assert "arg_1" not in snapshot, "callables are skipped"
    assert snapshot["arg_2"].startswith("{")
    assert snapshot["arg_priority"] == "null"


def test_error_context_attach_merges_and_later_keys_win():
    exc = RuntimeError("boom")
    attach_extra(exc, description="first", code=None)
    block = attach_extra(exc, description="second", debug="note")

    assert block == {"description": "second", "code": None, "debug": "note"}
    assert has_extra(exc)
    assert get_extra(exc) == block


def test_error_context_attach_is_best_effort():
    class FrozenError(Exception):
        def __setattr__(self, name, value):
            raise AttributeError(name)

    exc = FrozenError("frozen")
    attach_extra(exc, description="ignored")

    assert get_extra(exc) == {}
    assert not has_extra(exc)


class RecoverableError(Exception):
    def __init__(self, message, recoverable):
        super().__init__(message)
        self.recoverable = recoverable


class FailingClient:
    def set(self, value, on_complete=None):
        on_complete(RecoverableError("network hiccup", recoverable=True))


@pytest.mark.asyncio
async def test_error_context_carries_recoverable_flag(context):
    ref = context.instrument(FailingClient())
    received = []

    ref.set(1, received.append)

    extra = received[0].extra
    assert_valid_extra(extra)
    assert extra["recoverable"] is True
    assert extra["code"] is None


@pytest.mark.asyncio
async def test_error_context_omits_recoverable_when_absent(database, context):
    ref = context.instrument(database.connect())

    with pytest.raises(PermissionDenied) as info:
        await ref.child("forbidden").set(1)

    assert "recoverable" not in info.value.extra

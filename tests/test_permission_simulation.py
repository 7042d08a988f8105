# SPDX-License-Identifier: Apache-2.0
"""
Permission-denied simulation.
Covers:
  • Denied writes, reads, queries, listeners and on-disconnect calls carry
    the reconstructed rule trace in error.extra["debug"]
  • The failing principal is handed to the token generator
  • Unreproducible denials, different errors and failed setup become notes
  • The duration bound delivers exactly once
  • Simulations run one at a time in failure order; a failure never blocks
    the next one
  • Disabled, zero-bound and filtered configurations skip simulation
"""
import asyncio
import logging

import pytest

from faultline_sdk.client.client_base import (
    AuthError,
    BadRequest,
    PermissionDenied,
)
from faultline_sdk.instrument.simulator import (
    NOTE_NOT_REPRODUCED,
    NOTE_TIMED_OUT,
    PermissionDebugConfig,
    SimulationQueue,
    accept_all_calls,
)

pytestmark = pytest.mark.asyncio

FORBIDDEN_WRITE = ' X write /forbidden "false"'
FORBIDDEN_READ = ' X read /forbidden "false"'


def enable(context, generator, max_ms=1_000, call_filter=accept_all_calls):
    context.permission_debug = PermissionDebugConfig(generator, max_ms, call_filter)


class ShadowErrorClient:
    """Client whose primary connection is denied and whose forks fail differently."""

    def __init__(self, error):
        self._error = error

    def ref(self):
        return self

    def get_auth(self):
        return {"uid": "ada"}

    def unauth(self):
        pass

    def fork(self, *, log_sink=None):
        return ShadowErrorClient(BadRequest("quota exceeded"))

    def auth(self, token, on_complete=None):
        asyncio.get_running_loop().call_soon(on_complete, None, {"uid": "sim"})

    def set(self, value, on_complete=None):
        asyncio.get_running_loop().call_soon(on_complete, self._error)


async def test_simulation_denied_write_carries_rule_trace(database, context, simulation_token):
    enable(context, simulation_token)
    ref = context.instrument(database.connect())

    with pytest.raises(PermissionDenied) as info:
        await ref.child("forbidden").set(True)

    assert info.value.extra["debug"] == FORBIDDEN_WRITE
    assert database.get("/forbidden") is None, "simulation never mutates data"


async def test_simulation_callback_and_observers_see_the_trace(database, context, simulation_token):
    enable(context, simulation_token)
    ref = context.instrument(database.connect())
    received, observed = [], []
    context.error_bus.register(lambda error, *_: observed.append(error.extra.get("debug")))

    with pytest.raises(PermissionDenied):
        await ref.child("forbidden").set(True, lambda error: received.append(error.extra.get("debug")))

    assert received == [FORBIDDEN_WRITE]
    assert observed == [FORBIDDEN_WRITE]


async def test_simulation_denied_query_read(database, context, simulation_token):
    enable(context, simulation_token)
    ref = context.instrument(database.connect())

    with pytest.raises(PermissionDenied) as info:
        await ref.child("forbidden").order_by_key().limit_to_first(3).once("value")

    assert info.value.extra["debug"] == FORBIDDEN_READ


async def test_simulation_denied_listener_replays_single_shot(database, context, simulation_token):
    enable(context, simulation_token)
    ref = context.instrument(database.connect())
    canceled = asyncio.get_running_loop().create_future()
    values = []

    ref.child("forbidden").on("value", values.append, canceled.set_result)
    error = await canceled

    assert isinstance(error, PermissionDenied)
    assert error.extra["debug"] == FORBIDDEN_READ
    assert values == []


async def test_simulation_denied_on_disconnect(database, context, simulation_token):
    enable(context, simulation_token)
    ref = context.instrument(database.connect())

    with pytest.raises(PermissionDenied) as info:
        await ref.child("forbidden").on_disconnect().set("offline")

    assert info.value.extra["debug"] == FORBIDDEN_WRITE


async def test_simulation_detail_lines_are_kept(make_database, context):
    database = make_database(rules={
        "/": {".read": "true", ".write": "true"},
        "/rooms": {".write": "auth.uid == 'owner'"},
    })
    enable(context, lambda identity: database.mint_token(identity, simulate=True, debug=True))
    ref = context.instrument(database.connect())
    await ref.auth(database.mint_token("guest"))

    with pytest.raises(PermissionDenied) as info:
        await ref.child("rooms/1").set({"topic": "x"})

    assert info.value.extra["debug"] == (
        ' X write /rooms "auth.uid == \'owner\'"\n'
        '   auth = {"uid": "guest"}'
    )


async def test_simulation_generator_receives_failing_identity(database, context):
    identities = []

    def generator(identity):
        identities.append(identity)
        return database.mint_token(identity, simulate=True, debug=True)

    enable(context, generator)
    ref = context.instrument(database.connect())
    await ref.auth(database.mint_token("ada"))

    with pytest.raises(PermissionDenied):
        await ref.child("forbidden").set(1)

    assert identities == ["ada"]


async def test_simulation_unauthenticated_identity_is_empty(database, context):
    identities = []

    def generator(identity):
        identities.append(identity)
        return database.mint_token("sim", simulate=True, debug=True)

    enable(context, generator)
    ref = context.instrument(database.connect())

    with pytest.raises(PermissionDenied):
        await ref.child("forbidden").set(1)

    assert identities == [""]


async def test_simulation_async_generator(database, context):
    async def generator(identity):
        await asyncio.sleep(0)
        return database.mint_token("sim", simulate=True, debug=True)

    enable(context, generator)
    ref = context.instrument(database.connect())

    with pytest.raises(PermissionDenied) as info:
        await ref.child("forbidden").set(1)

    assert info.value.extra["debug"] == FORBIDDEN_WRITE


async def test_simulation_unreproduced_denial(database, context, simulation_token):
    enable(context, simulation_token)
    ref = context.instrument(database.connect())

    # Unauthenticated primary is denied; the simulation credential is not.
    with pytest.raises(PermissionDenied) as info:
        await ref.child("private").set(1)

    assert info.value.extra["debug"] == NOTE_NOT_REPRODUCED


async def test_simulation_different_error(context):
    enable(context, lambda identity: "token")
    ref = context.instrument(ShadowErrorClient(PermissionDenied()))
    done = asyncio.get_running_loop().create_future()

    ref.set(1, done.set_result)
    error = await done

    assert error.extra["debug"] == (
        "Got a different error in simulation: quota exceeded [code=BAD_REQUEST]"
    )


async def test_simulation_rejected_credential(database, context):
    enable(context, lambda identity: "not-a-token")
    ref = context.instrument(database.connect())

    with pytest.raises(PermissionDenied) as info:
        await ref.child("forbidden").set(1)

    assert info.value.extra["debug"] == (
        "Unable to run simulation: invalid token [code=INVALID_TOKEN]"
    )


async def test_simulation_failing_generator_does_not_block_next(database, context):
    calls = []

    def generator(identity):
        calls.append(identity)
        if len(calls) == 1:
            raise RuntimeError("token service down")
        return database.mint_token("sim", simulate=True, debug=True)

    enable(context, generator)
    ref = context.instrument(database.connect())

    with pytest.raises(PermissionDenied) as first:
        await ref.child("forbidden").set(1)
    with pytest.raises(PermissionDenied) as second:
        await ref.child("forbidden").set(2)

    assert first.value.extra["debug"] == "Unable to run simulation: token service down"
    assert second.value.extra["debug"] == FORBIDDEN_WRITE


async def test_simulation_timeout_delivers_exactly_once(database, context):
    async def slow_generator(identity):
        await asyncio.sleep(1)
        return database.mint_token("sim", simulate=True, debug=True)

    enable(context, slow_generator, max_ms=30)
    ref = context.instrument(database.connect())
    received = []
    observed = []
    context.error_bus.register(lambda *event: observed.append(event))

    with pytest.raises(PermissionDenied) as info:
        await ref.child("forbidden").set(1, received.append)
    await context.simulation_queue.join()
    await asyncio.sleep(0.05)

    assert info.value.extra["debug"] == NOTE_TIMED_OUT
    assert len(received) == 1
    assert len(observed) == 1


async def test_simulation_runs_in_failure_order(database, context):
    requested = []
    finished = []

    async def generator(identity):
        requested.append(identity)
        # The first credential arrives last; delivery order must not change.
        if len(requested) == 1:
            await asyncio.sleep(0.03)
        return database.mint_token("sim", simulate=True, debug=True)

    enable(context, generator)
    ref = context.instrument(database.connect())

    first = ref.child("forbidden/a").set(1, lambda error: finished.append("a"))
    second = ref.child("forbidden/b").set(2, lambda error: finished.append("b"))
    results = await asyncio.gather(first, second, return_exceptions=True)

    assert finished == ["a", "b"]
    assert all(isinstance(result, PermissionDenied) for result in results)
    assert [result.extra["debug"] for result in results] == [FORBIDDEN_WRITE, FORBIDDEN_WRITE]


async def test_simulation_disabled_configurations_skip_trace(database, context, simulation_token):
    ref = context.instrument(database.connect())

    with pytest.raises(PermissionDenied) as disabled:
        await ref.child("forbidden").set(1)

    enable(context, simulation_token, max_ms=0)
    with pytest.raises(PermissionDenied) as zero_bound:
        await ref.child("forbidden").set(1)

    enable(context, simulation_token, call_filter=lambda target, method, args: method != "set")
    with pytest.raises(PermissionDenied) as filtered:
        await ref.child("forbidden").set(1)

    for info in (disabled, zero_bound, filtered):
        assert "debug" not in info.value.extra
    assert context.simulation_queue.idle


async def test_simulation_call_filter_sees_target_method_and_args(database, context, simulation_token):
    seen = []

    def call_filter(target, method_name, args):
        seen.append((target, method_name, args))
        return True

    enable(context, simulation_token, call_filter=call_filter)
    ref = context.instrument(database.connect())
    target = ref.child("forbidden")

    with pytest.raises(PermissionDenied):
        await target.update({"x": 1})

    assert seen == [(target, "update", [{"x": 1}])]


async def test_simulation_failing_call_filter_is_logged(database, context, simulation_token, caplog):
    def call_filter(*_):
        raise RuntimeError("filter bug")

    enable(context, simulation_token, call_filter=call_filter)
    ref = context.instrument(database.connect())

    with caplog.at_level(logging.WARNING, logger="faultline_sdk.instrument.simulator"):
        with pytest.raises(PermissionDenied) as info:
            await ref.child("forbidden").set(1)

    assert "debug" not in info.value.extra
    assert any("call filter failed" in r.getMessage() for r in caplog.records)


async def test_simulation_only_permission_denials_are_simulated(database, context, simulation_token):
    enable(context, simulation_token)
    ref = context.instrument(database.connect())

    with pytest.raises(AuthError) as info:
        await ref.auth("not-a-token")

    assert "debug" not in info.value.extra
    assert context.simulation_queue.idle


async def test_simulation_queue_preserves_order_and_survives_failures():
    queue = SimulationQueue()
    order = []

    async def link(name, delay, fail=False):
        await asyncio.sleep(delay)
        order.append(name)
        if fail:
            raise RuntimeError(name)

    queue.enqueue(lambda: link("slow", 0.03))
    queue.enqueue(lambda: link("broken", 0, fail=True))
    queue.enqueue(lambda: link("fast", 0))
    assert not queue.idle

    await queue.join()

    assert order == ["slow", "broken", "fast"]
    assert queue.idle


async def test_simulation_unreproduced_read_without_success_callback(database, context, simulation_token):
    enable(context, simulation_token, max_ms=500)
    ref = context.instrument(database.connect())
    loop = asyncio.get_running_loop()

    started = loop.time()
    with pytest.raises(PermissionDenied) as info:
        await ref.child("private").once("value")

    assert info.value.extra["debug"] == NOTE_NOT_REPRODUCED
    assert loop.time() - started < 0.4, "delivery must not wait for the bound"


async def test_simulation_listener_cancel_callback_by_keyword(database, context, simulation_token):
    enable(context, simulation_token)
    ref = context.instrument(database.connect())
    canceled = asyncio.get_running_loop().create_future()

    ref.child("forbidden").on("value", lambda snapshot: None, cancel_callback=canceled.set_result)
    error = await canceled

    assert isinstance(error, PermissionDenied)
    assert error.extra["debug"] == FORBIDDEN_READ


async def test_simulation_unreproduced_listener_without_callbacks(database, context, simulation_token):
    enable(context, simulation_token, max_ms=500)
    ref = context.instrument(database.connect())
    canceled = asyncio.get_running_loop().create_future()

    ref.child("private").on("value", None, canceled.set_result)
    error = await canceled

    assert error.extra["debug"] == NOTE_NOT_REPRODUCED

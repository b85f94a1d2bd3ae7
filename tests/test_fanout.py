import asyncio
import json
import time
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from buildpipe.fanout import FanOut, frame_for, parse_ws_path, process_request, serve_client
from buildpipe.models import Completed, LogAppended, Phase, StatusChanged

AT = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
KINDS = {"build-status": "status", "build-logs": "log", "build-completions": "completion"}


class FakeConnection:
    def __init__(self, path="/ws?clientId=c1", broken=False, incoming=(), stall=0):
        self.request = SimpleNamespace(path=path)
        self.broken = broken
        self.stall = stall
        self.frames = []
        self.incoming = list(incoming)

    async def send(self, text):
        if self.stall:
            await asyncio.sleep(self.stall)
        if self.broken:
            raise ConnectionResetError("peer gone")
        self.frames.append(json.loads(text))

    def respond(self, status, body):
        return (int(status), body)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.incoming:
            raise StopAsyncIteration
        return self.incoming.pop(0)


def test_frames_match_wire_shapes():
    assert frame_for(StatusChanged(build_id="b", phase=Phase.RUNNING, message="Build started", at=AT)) == {
        "type": "status", "buildId": "b", "status": "running", "message": "Build started",
        "time": AT.isoformat()}
    assert frame_for(LogAppended(build_id="b", line="npm install", at=AT)) == {
        "type": "log", "buildId": "b", "log": "npm install", "time": AT.isoformat()}
    assert frame_for(Completed(build_id="b", outcome=Phase.SUCCEEDED, artifact_reference="http://s/a",
                               duration=1200, at=AT)) == {
        "type": "completion", "buildId": "b", "status": "succeeded", "artifactUrl": "http://s/a",
        "duration": 1200, "time": AT.isoformat()}


@pytest.mark.asyncio
async def test_filtered_and_unfiltered_subscribers():
    fan = FanOut(KINDS)
    everything, only_b1, only_b2 = FakeConnection(), FakeConnection(), FakeConnection()
    fan.subscribe("all", everything)
    fan.subscribe("one", only_b1, "b1")
    fan.subscribe("two", only_b2, "b2")

    sent = await fan.on_progress_event(LogAppended(build_id="b1", line="hello"))

    assert sent == 2
    assert [f["log"] for f in everything.frames] == ["hello"]
    assert [f["buildId"] for f in only_b1.frames] == ["b1"]
    assert only_b2.frames == []


@pytest.mark.asyncio
async def test_broken_connection_is_unsubscribed():
    fan = FanOut(KINDS)
    good, bad = FakeConnection(), FakeConnection(broken=True)
    fan.subscribe("good", good)
    fan.subscribe("bad", bad)

    await fan.on_progress_event(StatusChanged(build_id="b", phase=Phase.RUNNING))

    assert len(fan) == 1
    assert len(good.frames) == 1
    await fan.on_progress_event(StatusChanged(build_id="b", phase=Phase.FAILED))
    assert len(good.frames) == 2


@pytest.mark.asyncio
async def test_stalled_client_does_not_hold_up_the_others():
    fan = FanOut(KINDS, send_timeout=0.05)
    slow, fast = FakeConnection(stall=10), FakeConnection()
    fan.subscribe("slow", slow)
    fan.subscribe("fast", fast)

    started = time.monotonic()
    sent = await fan.on_progress_event(LogAppended(build_id="b", line="x"))

    assert time.monotonic() - started < 5
    assert sent == 1
    assert [f["log"] for f in fast.frames] == ["x"]
    assert slow.frames == []
    assert len(fan) == 1


@pytest.mark.asyncio
async def test_resubscribe_replaces_previous_connection():
    fan = FanOut(KINDS)
    old, new = FakeConnection(), FakeConnection()
    fan.subscribe("c1", old)
    fan.subscribe("c1", new, "b9")
    # the old connection closing must not drop the new subscription
    fan.unsubscribe("c1", old)
    assert len(fan) == 1

    await fan.on_progress_event(LogAppended(build_id="b9", line="x"))
    assert old.frames == [] and len(new.frames) == 1


@pytest.mark.asyncio
async def test_handle_decodes_by_topic():
    fan = FanOut(KINDS)
    conn = FakeConnection()
    fan.subscribe("c1", conn)
    await fan.handle("build-completions", "b", {"build_id": "b", "outcome": "failed", "duration": 10})
    assert conn.frames[0]["type"] == "completion"
    assert conn.frames[0]["status"] == "failed"
    assert conn.frames[0]["artifactUrl"] == ""


def test_parse_ws_path():
    assert parse_ws_path("/ws?clientId=c1&buildId=b1") == ("/ws", "c1", "b1")
    assert parse_ws_path("/ws?clientId=c1") == ("/ws", "c1", None)
    assert parse_ws_path("/ws") == ("/ws", None, None)


@pytest.mark.asyncio
async def test_process_request_guards_upgrade():
    conn = FakeConnection()
    assert await process_request(conn, SimpleNamespace(path="/ws?clientId=c1")) is None
    assert (await process_request(conn, SimpleNamespace(path="/other?clientId=c1")))[0] == 404
    assert (await process_request(conn, SimpleNamespace(path="/ws?buildId=b1")))[0] == 400


@pytest.mark.asyncio
async def test_serve_client_registers_for_connection_lifetime():
    fan = FanOut(KINDS)
    conn = FakeConnection(path="/ws?clientId=c7&buildId=b3", incoming=["ping"])
    seen = []

    real_subscribe = fan.subscribe

    def spy(client_id, connection, build_id=None):
        seen.append((client_id, build_id))
        return real_subscribe(client_id, connection, build_id)

    fan.subscribe = spy
    await serve_client(fan, conn)
    assert seen == [("c7", "b3")]
    assert len(fan) == 0

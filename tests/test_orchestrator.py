import random
from datetime import datetime, timedelta, timezone

import pytest

from buildpipe.errors import BrokerUnavailable, SerializationError
from buildpipe.models import (
    PHASE_RANK, BuildRecord, Completed, LogAppended, Phase, StatusChanged, new_request,
)
from buildpipe.orchestrator import BuildOrchestrator, merge
from conftest import FakePublisher

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _record():
    return BuildRecord.from_request(new_request("https://example.com/app.git"), T0)


def _status(rec, phase, msg="", at=None):
    return StatusChanged(build_id=rec.id, phase=phase, message=msg, at=at or T0)


def _done(rec, outcome, ref=None, duration=1500, at=None):
    return Completed(build_id=rec.id, outcome=outcome, artifact_reference=ref, duration=duration, at=at or T0)


@pytest.fixture
def orch(store, publisher, topics):
    return BuildOrchestrator(store, publisher, topics, clock=lambda: T0)


# ── merge rules ───────────────────────────────────────────────────────────────

def test_running_sets_started_at_once():
    rec = _record()
    t1 = T0 + timedelta(seconds=1)
    rec = merge(rec, _status(rec, Phase.RUNNING, "Build started", at=t1), T0)
    assert rec.phase is Phase.RUNNING and rec.started_at == t1
    assert merge(rec, _status(rec, Phase.RUNNING, at=t1 + timedelta(seconds=5)), T0) is None


def test_status_never_moves_backwards():
    rec = _record()
    rec = merge(rec, _status(rec, Phase.RUNNING), T0)
    assert merge(rec, _status(rec, Phase.QUEUED), T0) is None


def test_succeeded_status_alone_does_not_finish_build():
    rec = _record()
    rec = merge(rec, _status(rec, Phase.RUNNING), T0)
    assert merge(rec, _status(rec, Phase.SUCCEEDED, "done"), T0) is None


def test_failed_status_is_terminal_without_artifact():
    rec = _record()
    rec = merge(rec, _status(rec, Phase.FAILED, "clone failed"), T0)
    assert rec.phase is Phase.FAILED
    assert rec.status_message == "clone failed"
    assert rec.artifact_reference is None


def test_success_completion_sets_artifact_and_duration():
    rec = _record()
    rec = merge(rec, _status(rec, Phase.RUNNING), T0)
    rec = merge(rec, _done(rec, Phase.SUCCEEDED, "http://store/artifacts/x", duration=4200), T0)
    assert rec.phase is Phase.SUCCEEDED
    assert rec.artifact_reference == "http://store/artifacts/x"
    assert rec.duration == 4200
    assert rec.completed_at == T0
    assert rec.status_message == "Build completed successfully"


def test_duplicate_completion_is_noop():
    rec = _record()
    evt = _done(rec, Phase.SUCCEEDED, "http://store/a")
    rec = merge(rec, evt, T0)
    assert merge(rec, evt, T0) is None


def test_conflicting_completion_keeps_first_outcome():
    rec = _record()
    rec = merge(rec, _done(rec, Phase.FAILED), T0)
    assert merge(rec, _done(rec, Phase.SUCCEEDED, "http://store/a"), T0) is None


def test_completion_after_failed_status_fills_in_duration():
    rec = _record()
    rec = merge(rec, _status(rec, Phase.FAILED, "npm run build failed"), T0)
    rec = merge(rec, _done(rec, Phase.FAILED, duration=900), T0)
    assert rec.phase is Phase.FAILED
    assert rec.duration == 900
    assert rec.status_message == "npm run build failed"


def test_status_after_terminal_is_ignored():
    rec = _record()
    rec = merge(rec, _done(rec, Phase.SUCCEEDED, "http://store/a"), T0)
    assert merge(rec, _status(rec, Phase.RUNNING), T0) is None
    assert merge(rec, _status(rec, Phase.FAILED, "late"), T0) is None


def test_random_event_orders_keep_invariants():
    rng = random.Random(1234)
    for _ in range(200):
        rec = _record()
        events = [
            _status(rec, Phase.RUNNING, "Build started"),
            _status(rec, Phase.RUNNING, "Build started"),
        ]
        if rng.random() < 0.5:
            events += [_done(rec, Phase.SUCCEEDED, "http://store/a"), _status(rec, Phase.SUCCEEDED)]
        else:
            events += [_done(rec, Phase.FAILED), _status(rec, Phase.FAILED, "boom")]
        events += rng.sample(events, 2)
        rng.shuffle(events)

        rank = PHASE_RANK[rec.phase]
        for evt in events:
            nxt = merge(rec, evt, T0)
            if nxt is not None:
                assert PHASE_RANK[nxt.phase] >= rank
                rank = PHASE_RANK[nxt.phase]
                rec = nxt
            assert bool(rec.artifact_reference) == (rec.phase is Phase.SUCCEEDED)
        assert rec.phase.terminal


# ── orchestrator with a real store ────────────────────────────────────────────

def test_request_creates_record_and_dispatches(orch, store, publisher, topics):
    req = new_request("https://example.com/app.git")
    rec = orch.on_build_request(req)
    assert rec.phase is Phase.QUEUED
    assert store.get_build(req.id).status_message == "Build queued for processing"
    assert [m.phase for m in publisher.on(topics["status"])] == [Phase.QUEUED]
    assert publisher.on(topics["jobs"]) == [req]


def test_redelivered_request_for_running_build_is_not_redispatched(orch, publisher, topics):
    req = new_request("https://example.com/app.git")
    orch.on_build_request(req)
    orch.on_progress_event(StatusChanged(build_id=req.id, phase=Phase.RUNNING))
    orch.on_build_request(req)
    assert len(publisher.on(topics["jobs"])) == 1


def test_redelivered_request_for_queued_build_dispatches_again(orch, publisher, topics):
    req = new_request("https://example.com/app.git")
    orch.on_build_request(req)
    orch.on_build_request(req)
    assert len(publisher.on(topics["jobs"])) == 2


def test_dispatch_failure_propagates_and_leaves_build_queued(store, topics):
    pub = FakePublisher(fail_on={topics["jobs"]: BrokerUnavailable("down")})
    orch = BuildOrchestrator(store, pub, topics, clock=lambda: T0)
    req = new_request("https://example.com/app.git")
    with pytest.raises(BrokerUnavailable):
        orch.on_build_request(req)
    assert store.get_build(req.id).phase is Phase.QUEUED


def test_full_lifecycle_through_handle(orch, store, topics):
    req = new_request("https://example.com/app.git")
    orch.handle(topics["requests"], req.id, req.model_dump(mode="json"))
    orch.handle(topics["status"], req.id, {"build_id": req.id, "phase": "running", "message": "Build started"})
    orch.handle(topics["logs"], req.id, {"build_id": req.id, "line": "npm install", "seq": 1})
    orch.handle(topics["logs"], req.id, {"build_id": req.id, "line": "npm install", "seq": 1})
    orch.handle(topics["completions"], req.id, {
        "build_id": req.id, "outcome": "succeeded", "artifact_reference": "http://store/artifacts/x",
        "duration": 3000,
    })
    # late log line after completion is still kept
    orch.handle(topics["logs"], req.id, {"build_id": req.id, "line": "Artifact uploaded", "seq": 2})

    rec = store.get_build(req.id)
    assert rec.phase is Phase.SUCCEEDED
    assert rec.started_at is not None
    assert rec.artifact_reference == "http://store/artifacts/x"
    assert [l.line for l in store.get_logs(req.id)] == ["npm install", "Artifact uploaded"]


def test_events_for_unknown_build_are_dropped(orch, store):
    assert orch.on_progress_event(StatusChanged(build_id="ghost", phase=Phase.RUNNING)) is None
    orch.on_progress_event(LogAppended(build_id="ghost", line="x"))
    assert store.get_logs("ghost") == []


def test_handle_rejects_malformed_payload(orch, topics):
    with pytest.raises(SerializationError):
        orch.handle(topics["status"], "b", {"build_id": "b", "phase": "bogus"})


def test_check_stalled_reports_queued_builds(store, publisher, topics, caplog):
    orch = BuildOrchestrator(store, publisher, topics)
    req = new_request("https://example.com/app.git")
    orch.on_build_request(req)
    with caplog.at_level("ERROR", logger="buildpipe.orchestrator"):
        stalled = orch.check_stalled(0)
    assert [r.id for r in stalled] == [req.id]
    assert "STALLED" in caplog.text
    assert orch.check_stalled(3600) == []


def test_lock_set_stays_fixed_for_unknown_builds(store, publisher, topics):
    orch = BuildOrchestrator(store, publisher, topics, lock_stripes=8)
    for i in range(500):
        orch.on_progress_event(StatusChanged(build_id=f"ghost-{i}", phase=Phase.RUNNING))
    assert len(orch._locks) == 8
    assert orch._lock_for("ghost-7") is orch._lock_for("ghost-7")

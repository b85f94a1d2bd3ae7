# buildpipe/orchestrator.py
"""Build state machine: the single writer of canonical build records.

Every other component only publishes events about a build; the orchestrator
folds them into the one record kept under the build id. Merges are idempotent
and phase only moves forward (Queued -> Running -> Succeeded|Failed), so
redelivered, duplicated or cross-topic reordered events are harmless.
"""
import logging
import threading
import zlib
from datetime import datetime
from typing import Callable, Dict, List, Optional

from buildpipe.errors import NotFoundError, SerializationError
from buildpipe.models import (
    PHASE_RANK, BuildRecord, BuildRequest, Completed, LogAppended, LogEntry,
    Phase, ProgressEvent, StatusChanged, parse_event, parse_request, utcnow,
)
from buildpipe.state import BuildStore

logger = logging.getLogger("buildpipe.orchestrator")

LOCK_STRIPES = 64


def merge(record: BuildRecord, event: ProgressEvent, now: Optional[datetime] = None) -> Optional[BuildRecord]:
    """Fold one event into a record. Returns the new record, or None if the event is a no-op."""
    now = now or utcnow()
    if isinstance(event, StatusChanged):
        return _merge_status(record, event, now)
    if isinstance(event, Completed):
        return _merge_completion(record, event, now)
    return None


def _merge_status(record: BuildRecord, evt: StatusChanged, now: datetime) -> Optional[BuildRecord]:
    if record.phase.terminal:
        logger.info("Ignoring status %s for build %s: already %s",
                    evt.phase.value, record.id, record.phase.value)
        return None
    if PHASE_RANK[evt.phase] <= PHASE_RANK[record.phase]:
        return None
    if evt.phase is Phase.SUCCEEDED:
        # Only a completion carries the artifact reference; it moves the phase.
        logger.info("Build %s reported succeeded ahead of its completion; waiting", record.id)
        return None

    changes = {"phase": evt.phase, "updated_at": now}
    if evt.message:
        changes["status_message"] = evt.message
    if evt.phase is Phase.RUNNING and record.started_at is None:
        changes["started_at"] = evt.at
    if evt.phase is Phase.FAILED:
        changes["artifact_reference"] = None
        changes["status_message"] = evt.message or "Build failed"
    return record.model_copy(update=changes)


def _merge_completion(record: BuildRecord, evt: Completed, now: datetime) -> Optional[BuildRecord]:
    if record.completed_at is not None:
        if record.phase is not evt.outcome:
            logger.warning("Conflicting completion for build %s: record %s, event %s; keeping record",
                           record.id, record.phase.value, evt.outcome.value)
        return None
    if record.phase.terminal and record.phase is not evt.outcome:
        logger.warning("Conflicting completion for build %s: record %s, event %s; keeping record",
                       record.id, record.phase.value, evt.outcome.value)
        return None

    changes = {
        "phase": evt.outcome,
        "completed_at": evt.at,
        "duration": evt.duration,
        "updated_at": now,
    }
    if evt.outcome is Phase.SUCCEEDED:
        changes["artifact_reference"] = evt.artifact_reference
        changes["status_message"] = evt.message or "Build completed successfully"
    else:
        changes["artifact_reference"] = None
        if not record.phase.terminal:
            changes["status_message"] = evt.message or "Build failed"
    return record.model_copy(update=changes)


class BuildOrchestrator:
    def __init__(self, store: BuildStore, publisher, topics: Dict[str, str],
                 clock: Callable[[], datetime] = utcnow, lock_stripes: int = LOCK_STRIPES):
        self.store = store
        self.publisher = publisher
        self.topics = topics
        self.clock = clock
        self._locks = tuple(threading.Lock() for _ in range(lock_stripes))

    def _lock_for(self, build_id: str) -> threading.Lock:
        # Fixed stripe set: a build id always maps to the same lock.
        return self._locks[zlib.crc32(build_id.encode("utf-8")) % len(self._locks)]

    # ── operations ───────────────────────────────────────────────────────────

    def on_build_request(self, req: BuildRequest) -> BuildRecord:
        """Persist the queued record, announce it, and dispatch the job.

        A store failure propagates (the submission must be retried). A
        redelivered request for a build that is still queued is dispatched
        again; the builder suppresses the duplicate if the first one got through.
        """
        with self._lock_for(req.id):
            record = BuildRecord.from_request(req, self.clock())
            if not self.store.create_build(record):
                existing = self.store.get_build(req.id)
                if existing.phase is not Phase.QUEUED:
                    logger.info("Duplicate request for build %s (%s); ignoring", req.id, existing.phase.value)
                    return existing
                logger.warning("Duplicate request for still-queued build %s; dispatching again", req.id)
                record = existing
            else:
                logger.info("Build %s queued for %s", req.id, req.repository_url)

            self.publisher.publish(self.topics["status"], req.id, StatusChanged(
                build_id=req.id, phase=Phase.QUEUED, message=record.status_message, at=record.created_at))
            try:
                self.publisher.publish(self.topics["jobs"], req.id, req)
            except Exception:
                logger.error("Dispatch of build %s failed; it stays queued until the stall alarm fires", req.id)
                raise
            logger.info("Dispatched build %s to %s", req.id, self.topics["jobs"])
            return record

    def on_progress_event(self, evt: ProgressEvent) -> Optional[BuildRecord]:
        """Idempotent merge of one progress event. Returns the record if it changed."""
        if isinstance(evt, LogAppended):
            self._append_log(evt)
            return None

        with self._lock_for(evt.build_id):
            try:
                record, changed = self.store.update_build(
                    evt.build_id, lambda r: merge(r, evt, self.clock()))
            except NotFoundError:
                logger.warning("Dropping %s event for unknown build %s", evt.kind, evt.build_id)
                return None
        if changed:
            logger.info("Build %s -> %s (%s)", record.id, record.phase.value, record.status_message)
            return record
        return None

    def _append_log(self, evt: LogAppended) -> None:
        if self.store.find_build(evt.build_id) is None:
            logger.warning("Dropping log line for unknown build %s", evt.build_id)
            return
        entry = LogEntry(build_id=evt.build_id, line=evt.line, emitted_at=evt.at, seq=evt.seq)
        if not self.store.append_log(entry):
            logger.debug("Duplicate log line %s#%s ignored", evt.build_id, evt.seq)

    def get_build(self, build_id: str) -> BuildRecord:
        return self.store.get_build(build_id)

    def check_stalled(self, max_queued_age_s: float) -> List[BuildRecord]:
        stalled = self.store.list_stalled(Phase.QUEUED, max_queued_age_s)
        for record in stalled:
            age = (self.clock() - record.created_at).total_seconds()
            logger.error("STALLED build %s queued for %ds (repo=%s)", record.id, int(age), record.repository_url)
        return stalled

    # ── bus entry point ──────────────────────────────────────────────────────

    def handle(self, topic: str, key: str, payload) -> None:
        if topic == self.topics["requests"]:
            req = parse_request(payload)
            self._check_key(topic, key, req.id)
            self.on_build_request(req)
            return
        kind = {
            self.topics["status"]: "status",
            self.topics["logs"]: "log",
            self.topics["completions"]: "completion",
        }.get(topic)
        if kind is None:
            raise SerializationError(f"unexpected topic {topic}")
        evt = parse_event(payload, kind)
        self._check_key(topic, key, evt.build_id)
        self.on_progress_event(evt)

    @staticmethod
    def _check_key(topic: str, key: str, build_id: str) -> None:
        if key and key != build_id:
            logger.warning("Message on %s keyed %s carries build %s", topic, key, build_id)

# buildpipe/builder.py
"""Worker side of the pipeline: turn one dispatched job into events.

clone -> checkout -> build (script or detected toolchain) -> package -> upload.
The first failing step ends the build; outcomes leave only as published
events, the canonical record is never touched from here.
"""
import logging
import tempfile
import threading
import time
from collections import OrderedDict
from pathlib import Path
from typing import Callable, List, Optional

from buildpipe import strategies
from buildpipe.artifacts import ArtifactClient, package_directory
from buildpipe.errors import BuildStepFailure, TransientInfraError
from buildpipe.models import BuildRequest, Completed, LogAppended, Phase, StatusChanged, parse_request
from buildpipe.proc import CommandResult, run_streaming

logger = logging.getLogger("buildpipe.builder")

DEFAULT_BRANCHES = {"main", "master"}
GIT_ENV = {"GIT_TERMINAL_PROMPT": "0"}  # never prompt for credentials

Runner = Callable[..., CommandResult]


class JobLedger:
    """Bounded memory of the job ids this worker has already taken."""

    def __init__(self, size: int = 1024):
        self.size = size
        self._ids: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()

    def claim(self, build_id: str) -> bool:
        """True the first time an id is seen, False for repeats."""
        with self._lock:
            if build_id in self._ids:
                self._ids.move_to_end(build_id)
                return False
            self._ids[build_id] = None
            while len(self._ids) > self.size:
                self._ids.popitem(last=False)
            return True


class _JobEvents:
    """Publishes events for one execution; numbers log lines so redelivery is idempotent."""

    def __init__(self, publisher, topics: dict, build_id: str):
        self.publisher = publisher
        self.topics = topics
        self.build_id = build_id
        self.seq = 0
        self.step = "setup"  # name of the step in progress, for failure messages

    def log(self, line: str) -> None:
        self.seq += 1
        self.publisher.publish(self.topics["logs"], self.build_id,
                               LogAppended(build_id=self.build_id, line=line, seq=self.seq))

    def status(self, phase: Phase, message: str) -> None:
        self.publisher.publish(self.topics["status"], self.build_id,
                               StatusChanged(build_id=self.build_id, phase=phase, message=message))

    def completed(self, outcome: Phase, duration_ms: int,
                  artifact_reference: Optional[str] = None, message: str = "") -> None:
        self.publisher.publish(self.topics["completions"], self.build_id, Completed(
            build_id=self.build_id, outcome=outcome, artifact_reference=artifact_reference,
            duration=duration_ms, message=message))


class Builder:
    def __init__(
        self,
        publisher,
        topics: dict,
        artifacts: ArtifactClient,
        work_dir: str | Path,
        step_timeout: Optional[float] = None,
        runner: Runner = run_streaming,
        store=None,
        ledger: Optional[JobLedger] = None,
    ):
        self.publisher = publisher
        self.topics = topics
        self.artifacts = artifacts
        self.work_dir = Path(work_dir)
        self.work_dir.mkdir(parents=True, exist_ok=True)
        self.step_timeout = step_timeout
        self.runner = runner
        self.store = store  # read-only view of canonical records, optional
        self.ledger = ledger or JobLedger()
        self.stopping = threading.Event()

    # ── bus entry point ──────────────────────────────────────────────────────

    def handle(self, topic: str, key: str, payload) -> None:
        job = parse_request(payload)
        self.execute(job)

    # ── execution ────────────────────────────────────────────────────────────

    def _is_duplicate(self, job: BuildRequest) -> bool:
        if not self.ledger.claim(job.id):
            logger.warning("Suppressing duplicate delivery of build %s", job.id)
            return True
        if self.store is not None:
            record = self.store.find_build(job.id)
            if record is not None and record.phase.terminal:
                logger.warning("Suppressing redelivered build %s: already %s", job.id, record.phase.value)
                return True
            if record is not None and record.phase is Phase.RUNNING:
                logger.warning("Build %s already marked running; assuming the previous worker died", job.id)
        return False

    def execute(self, job: BuildRequest, cancel: Optional[threading.Event] = None) -> bool:
        """Run one job to completion. Returns True on success; all outcomes are published.

        The producer is flushed before returning, so the job's offset is only
        committed once its terminal events have left this process.
        """
        if self._is_duplicate(job):
            return False
        try:
            return self._execute(job, cancel or self.stopping)
        finally:
            self.publisher.flush()

    def _execute(self, job: BuildRequest, cancel: threading.Event) -> bool:
        events = _JobEvents(self.publisher, self.topics, job.id)
        started = time.monotonic()
        logger.info("Running: build=%s repo=%s branch=%s", job.id, job.repository_url, job.branch or "-")

        events.status(Phase.RUNNING, "Build started")
        try:
            with tempfile.TemporaryDirectory(prefix=f"build-{job.id}-", dir=self.work_dir,
                                             ignore_cleanup_errors=True) as tmp:
                reference = self._build(events, job, Path(tmp), cancel)
        except BuildStepFailure as e:
            logger.info("Build %s failed at %s: %s", job.id, e.step, e.reason)
            self._fail(events, e.reason, started)
            return False
        except TransientInfraError:
            raise
        except Exception:
            logger.exception("Build %s crashed during %s", job.id, events.step)
            self._fail(events, f"internal builder error during {events.step}", started)
            return False

        events.log("Build completed successfully!")
        events.completed(Phase.SUCCEEDED, _elapsed_ms(started), artifact_reference=reference)
        events.status(Phase.SUCCEEDED, "Build completed successfully")
        logger.info("Build %s succeeded in %dms -> %s", job.id, _elapsed_ms(started), reference)
        return True

    def _build(self, events: _JobEvents, job: BuildRequest, tmp: Path, cancel: threading.Event) -> str:
        src = tmp / "src"

        events.log("Build started")
        events.log(f"Repository: {job.repository_url}")
        if job.branch:
            events.log(f"Branch: {job.branch}")

        events.log("Cloning repository...")
        self._run_step(events, "clone", ["git", "clone", job.repository_url, str(src)], tmp, cancel,
                       failure="Failed to clone repository", env=GIT_ENV)
        events.log("Repository cloned successfully")

        for ref, what in _refs_to_checkout(job):
            events.log(f"Checking out {what}: {ref}")
            self._run_step(events, "checkout", ["git", "checkout", ref], src, cancel,
                           failure=f"Failed to checkout {what} {ref}", env=GIT_ENV)

        events.step = "detect"
        strategy = strategies.resolve_strategy(src)
        for note in strategy.notes:
            events.log(note)
        for step in strategy.steps:
            events.log(f"Running {step.name}...")
            self._run_step(events, step.name, step.args, src, cancel, failure=f"{step.name} failed")
            events.log(f"{step.name} completed successfully")

        events.step = "package"
        events.log("Creating artifact...")
        archive = package_directory(src, tmp / f"{job.id}.tar.gz")
        events.step = "upload"
        events.log("Uploading artifact to storage...")
        reference = self.artifacts.upload(job.id, archive)
        events.log("Artifact uploaded successfully")
        return reference

    def _run_step(self, events: _JobEvents, step: str, args: List[str], cwd: Path,
                  cancel: threading.Event, failure: str, env: Optional[dict] = None) -> CommandResult:
        events.step = step
        try:
            result = self.runner(args, cwd=cwd, on_line=events.log, env=env,
                                 timeout=self.step_timeout, cancel=cancel)
        except OSError as e:
            raise BuildStepFailure(step, f"{failure}: {e}") from e
        if not result.ok:
            raise BuildStepFailure(step, f"{failure}: {result.describe()}")
        return result

    def _fail(self, events: _JobEvents, reason: str, started: float) -> None:
        events.log(f"Build failed: {reason}")
        events.completed(Phase.FAILED, _elapsed_ms(started), message=reason)
        events.status(Phase.FAILED, reason)


def _refs_to_checkout(job: BuildRequest):
    if job.branch and job.branch not in DEFAULT_BRANCHES:
        yield job.branch, "branch"
    if job.commit_hash:
        yield job.commit_hash, "commit"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)

# buildpipe/errors.py


class BuildPipeError(Exception):
    """Base class for every error raised by buildpipe."""


# ── Infrastructure (broker / store) ────────────────────────────────────────────

class TransientInfraError(BuildPipeError):
    """Broker or store unreachable. Retried at startup only, then fatal."""


class BrokerUnavailable(TransientInfraError):
    pass


class TopicsUnavailable(TransientInfraError):
    def __init__(self, missing, attempts: int):
        self.missing = sorted(missing)
        self.attempts = attempts
        super().__init__(f"topics {self.missing} not found after {attempts} attempts")


class StoreUnavailable(TransientInfraError):
    pass


# ── Per-build / per-message ───────────────────────────────────────────────────

class BuildStepFailure(BuildPipeError):
    """A clone/checkout/build/package/upload step failed. Terminal for that build only."""

    def __init__(self, step: str, reason: str):
        self.step = step
        self.reason = reason
        super().__init__(reason)


class SubmissionError(BuildPipeError):
    """Malformed submission, rejected before it enters the pipeline."""


class NotFoundError(BuildPipeError):
    pass


class SerializationError(BuildPipeError):
    """Malformed event payload; logged and dropped by consumers."""

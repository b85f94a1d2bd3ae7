import pytest

from buildpipe.bus import encode
from buildpipe.state import BuildStore

TOPICS = {
    "requests": "build-requests",
    "jobs": "build-jobs",
    "status": "build-status",
    "logs": "build-logs",
    "completions": "build-completions",
}


class FakePublisher:
    """Records what would have gone to the broker."""

    def __init__(self, fail_on=None):
        self.sent = []
        self.fail_on = fail_on or {}
        self.flushed_at = []  # len(sent) at each flush

    def publish(self, topic, key, message):
        if topic in self.fail_on:
            raise self.fail_on[topic]
        self.sent.append((topic, key, message))

    def flush(self, timeout=None):
        self.flushed_at.append(len(self.sent))

    def on(self, topic):
        return [m for t, _, m in self.sent if t == topic]

    def payloads(self, topic):
        return [encode(m) for m in self.on(topic)]


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def store(tmp_path):
    return BuildStore(tmp_path / "builds.sqlite3", retention_s=3600)


@pytest.fixture
def topics():
    return dict(TOPICS)

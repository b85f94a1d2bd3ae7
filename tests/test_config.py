from pathlib import Path

from buildpipe.config import load_config, topics


def test_defaults_and_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("APP_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("BROKERS", "r1:9092,r2:9092")
    monkeypatch.setenv("STATUS_TOPIC", "custom-status")
    monkeypatch.delenv("STATE_DB", raising=False)
    monkeypatch.delenv("WORK_DIR", raising=False)

    cfg = load_config()

    assert cfg["BROKERS"] == "r1:9092,r2:9092"
    assert cfg["RETENTION_S"] == 24 * 3600
    assert cfg["SUBSCRIBE_ATTEMPTS"] == 15
    assert Path(cfg["STATE_DB"]).parent == (tmp_path / "data").resolve()
    assert Path(cfg["WORK_DIR"]).is_dir()
    assert topics(cfg) == {
        "requests": "build-requests",
        "jobs": "build-jobs",
        "status": "custom-status",
        "logs": "build-logs",
        "completions": "build-completions",
    }


def test_builder_state_check_can_be_disabled(tmp_path, monkeypatch):
    monkeypatch.setenv("APP_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("BUILDER_STATE_CHECK", "0")
    assert load_config()["BUILDER_STATE_CHECK"] is False

# buildpipe/config.py
import os
from pathlib import Path
from typing import Dict


def _detect_workspace_root() -> Path:
    # 1) Allow explicit override
    ow = os.getenv("BUILDPIPE_ROOT")
    if ow:
        p = Path(ow).resolve()
        if p.exists():
            return p

    # 2) Infer by scanning upward for repo markers
    here = Path(__file__).resolve()
    for cand in here.parents:
        if (cand / ".git").exists() or (cand / "pyproject.toml").exists():
            return cand

    # 3) Fallback
    return Path.cwd()


def load_config() -> Dict:
    WORKSPACE_ROOT = _detect_workspace_root()

    # ── Local operational data (state db) ────────────────────────────────────────
    APP_DATA_DIR = Path(os.getenv("APP_DATA_DIR", WORKSPACE_ROOT / "data")).resolve()

    # ── Scratch area for per-job checkouts; each job gets its own temp dir ──────
    WORK_DIR = Path(os.getenv("WORK_DIR", APP_DATA_DIR / "work")).resolve()

    cfg = {
        "WORKSPACE_ROOT": str(WORKSPACE_ROOT),
        "APP_DATA_DIR": str(APP_DATA_DIR),
        "WORK_DIR": str(WORK_DIR),

        # State store
        "STATE_DB": str(Path(os.getenv("STATE_DB", APP_DATA_DIR / "builds.sqlite3")).resolve()),
        "RETENTION_S": int(os.getenv("RETENTION_S", str(24 * 3600))),

        # Broker / topics
        "BROKERS": os.getenv("BROKERS", "127.0.0.1:9092"),
        "REQUESTS_TOPIC": os.getenv("REQUESTS_TOPIC", "build-requests"),
        "JOBS_TOPIC": os.getenv("JOBS_TOPIC", "build-jobs"),
        "STATUS_TOPIC": os.getenv("STATUS_TOPIC", "build-status"),
        "LOGS_TOPIC": os.getenv("LOGS_TOPIC", "build-logs"),
        "COMPLETIONS_TOPIC": os.getenv("COMPLETIONS_TOPIC", "build-completions"),
        "SUBSCRIBE_ATTEMPTS": int(os.getenv("SUBSCRIBE_ATTEMPTS", "15")),
        "SUBSCRIBE_DELAY_S": float(os.getenv("SUBSCRIBE_DELAY_S", "2")),
        "SUBSCRIBE_BACKOFF": float(os.getenv("SUBSCRIBE_BACKOFF", "1.5")),

        # Builder
        "STORAGE_URL": os.getenv("STORAGE_URL", "http://127.0.0.1:8084").rstrip("/"),
        "UPLOAD_TIMEOUT_S": int(os.getenv("UPLOAD_TIMEOUT_S", "30")),
        "STEP_TIMEOUT_S": int(os.getenv("STEP_TIMEOUT_S", "1800")),
        "BUILDER_STATE_CHECK": os.getenv("BUILDER_STATE_CHECK", "1") not in ("0", "false", "no"),

        # Orchestrator stall alarm
        "MAX_QUEUED_AGE_S": int(os.getenv("MAX_QUEUED_AGE_S", "600")),
        "STALL_CHECK_S": int(os.getenv("STALL_CHECK_S", "60")),

        # Ports
        "WEB_PORT": int(os.getenv("WEB_PORT", "6066")),  # faust web, distinct per process
        "HTTP_PORT": int(os.getenv("HTTP_PORT", "8082")),
        "WS_HOST": os.getenv("WS_HOST", "0.0.0.0"),
        "WS_PORT": int(os.getenv("WS_PORT", "8085")),
        "WS_SEND_TIMEOUT_S": float(os.getenv("WS_SEND_TIMEOUT_S", "5")),

        "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO").upper(),
    }

    # Ensure directories exist
    for key in ("APP_DATA_DIR", "WORK_DIR"):
        Path(cfg[key]).mkdir(parents=True, exist_ok=True)
    Path(cfg["STATE_DB"]).parent.mkdir(parents=True, exist_ok=True)

    return cfg


def topics(cfg: Dict) -> Dict[str, str]:
    return {
        "requests": cfg["REQUESTS_TOPIC"],
        "jobs": cfg["JOBS_TOPIC"],
        "status": cfg["STATUS_TOPIC"],
        "logs": cfg["LOGS_TOPIC"],
        "completions": cfg["COMPLETIONS_TOPIC"],
    }

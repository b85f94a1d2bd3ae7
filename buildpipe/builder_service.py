# buildpipe/builder_service.py
import logging

from buildpipe import bus
from buildpipe.artifacts import ArtifactClient
from buildpipe.builder import Builder
from buildpipe.config import load_config, topics
from buildpipe.state import BuildStore

cfg = load_config()
TOPICS = topics(cfg)

logging.basicConfig(level=cfg["LOG_LEVEL"], format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("buildpipe.builder")

app = bus.create_app("builder", cfg)
builder = Builder(
    publisher=bus.Publisher(cfg["BROKERS"]),
    topics=TOPICS,
    artifacts=ArtifactClient(cfg["STORAGE_URL"], timeout=cfg["UPLOAD_TIMEOUT_S"]),
    work_dir=cfg["WORK_DIR"],
    step_timeout=cfg["STEP_TIMEOUT_S"],
    store=BuildStore.from_config(cfg) if cfg["BUILDER_STATE_CHECK"] else None,
)

bus.subscribe(app, [TOPICS["jobs"]], builder.handle, name="builder")


if __name__ == "__main__":
    logger.info("Builder starting; brokers=%s work_dir=%s storage=%s jobs=%s",
                cfg["BROKERS"], cfg["WORK_DIR"], cfg["STORAGE_URL"], TOPICS["jobs"])
    bus.wait_for_topics_or_exit(cfg, [TOPICS["jobs"], TOPICS["status"], TOPICS["logs"], TOPICS["completions"]])
    try:
        app.main()
    finally:
        builder.stopping.set()
        builder.publisher.flush()

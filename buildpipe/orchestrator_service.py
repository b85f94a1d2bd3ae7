# buildpipe/orchestrator_service.py
import logging

from buildpipe import bus
from buildpipe.config import load_config, topics
from buildpipe.orchestrator import BuildOrchestrator
from buildpipe.state import BuildStore

cfg = load_config()
TOPICS = topics(cfg)

logging.basicConfig(level=cfg["LOG_LEVEL"], format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("buildpipe.orchestrator")

app = bus.create_app("build-orchestrator", cfg)
orchestrator = BuildOrchestrator(BuildStore.from_config(cfg), bus.Publisher(cfg["BROKERS"]), TOPICS)

SUBSCRIBED = [TOPICS["requests"], TOPICS["status"], TOPICS["logs"], TOPICS["completions"]]
bus.subscribe(app, SUBSCRIBED, orchestrator.handle, name="orchestrator")


@app.timer(interval=cfg["STALL_CHECK_S"])
async def housekeeping() -> None:
    stalled = orchestrator.check_stalled(cfg["MAX_QUEUED_AGE_S"])
    if stalled:
        logger.error("%d build(s) stuck in queued longer than %ds", len(stalled), cfg["MAX_QUEUED_AGE_S"])
    purged = orchestrator.store.purge_expired()
    if purged:
        logger.info("Purged %d expired rows", purged)


if __name__ == "__main__":
    logger.info("Orchestrator starting; brokers=%s state_db=%s topics=%s",
                cfg["BROKERS"], cfg["STATE_DB"], SUBSCRIBED)
    bus.wait_for_topics_or_exit(cfg, SUBSCRIBED + [TOPICS["jobs"]])
    app.main()

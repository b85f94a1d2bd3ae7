# buildpipe/notification_service.py
import asyncio
import logging
from functools import partial

from websockets.asyncio.server import serve as ws_serve

from buildpipe import bus
from buildpipe.config import load_config, topics
from buildpipe.fanout import FanOut, process_request, serve_client

cfg = load_config()
TOPICS = topics(cfg)

logging.basicConfig(level=cfg["LOG_LEVEL"], format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("buildpipe.notification")

app = bus.create_app("notification", cfg)
fanout = FanOut({TOPICS["status"]: "status", TOPICS["logs"]: "log", TOPICS["completions"]: "completion"},
                send_timeout=cfg["WS_SEND_TIMEOUT_S"])

SUBSCRIBED = [TOPICS["status"], TOPICS["logs"], TOPICS["completions"]]
bus.subscribe(app, SUBSCRIBED, fanout.handle, name="fanout")


@app.task
async def websocket_server() -> None:
    async with ws_serve(partial(serve_client, fanout), cfg["WS_HOST"], cfg["WS_PORT"],
                        process_request=process_request):
        logger.info("WebSocket server: ws://%s:%d/ws", cfg["WS_HOST"], cfg["WS_PORT"])
        await asyncio.Future()  # run until the app stops


if __name__ == "__main__":
    logger.info("Notification service starting; brokers=%s topics=%s", cfg["BROKERS"], SUBSCRIBED)
    bus.wait_for_topics_or_exit(cfg, SUBSCRIBED)
    app.main()

# buildpipe/bus.py
import asyncio
import inspect
import json
import logging
import sys
import threading
import time
from typing import Any, Awaitable, Callable, Iterable, List, Optional

import faust
from kafka import KafkaConsumer, KafkaProducer
from kafka.admin import KafkaAdminClient, NewTopic
from kafka.errors import KafkaError, NoBrokersAvailable, TopicAlreadyExistsError
from pydantic import BaseModel

from buildpipe.errors import BrokerUnavailable, SerializationError, TopicsUnavailable, TransientInfraError

logger = logging.getLogger("buildpipe.bus")

# handler(topic, key, payload); may be a plain function (runs in the executor) or a coroutine function
Handler = Callable[[str, str, Any], Any]


def split_brokers(brokers: str) -> List[str]:
    return [b.strip() for b in brokers.split(",") if b.strip()]


def create_app(name: str, cfg: dict) -> faust.App:
    """Faust app for one service. Values stay raw bytes; decoding happens in ``deliver``."""
    return faust.App(
        name,
        broker=[f"kafka://{b}" for b in split_brokers(cfg["BROKERS"])],
        value_serializer="raw",
        key_serializer="raw",
        web_port=cfg["WEB_PORT"],  # distinct per process via env WEB_PORT
        topic_allow_declare=False,  # topics are created by scripts/create_topics.py
        topic_disable_leader=True,
    )


# ── publish ────────────────────────────────────────────────────────────────────

def encode(message: Any) -> dict:
    if isinstance(message, BaseModel):
        return message.model_dump(mode="json")
    return message


class Publisher:
    """publish(topic, key, message) over a thread-safe KafkaProducer.

    Returns once the record is buffered by the client, not once it is committed.
    The producer connects on first use.
    """

    def __init__(self, brokers: str, producer: Optional[KafkaProducer] = None):
        self.brokers = brokers
        self._producer = producer
        self._lock = threading.Lock()

    def _get(self) -> KafkaProducer:
        with self._lock:
            if self._producer is None:
                try:
                    self._producer = KafkaProducer(
                        bootstrap_servers=split_brokers(self.brokers),
                        key_serializer=lambda k: k.encode("utf-8"),
                        value_serializer=lambda v: json.dumps(v).encode("utf-8"),
                        acks=1,
                    )
                except NoBrokersAvailable as e:
                    raise BrokerUnavailable(f"no brokers available at {self.brokers}") from e
            return self._producer

    def publish(self, topic: str, key: str, message: Any) -> None:
        producer = self._get()
        try:
            producer.send(topic, key=key, value=encode(message))
        except KafkaError as e:
            raise BrokerUnavailable(f"publish to {topic} failed: {e}") from e
        logger.debug("published topic=%s key=%s", topic, key)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until everything published so far has been acknowledged."""
        if self._producer is None:
            return
        try:
            self._producer.flush(timeout=timeout)
        except KafkaError as e:
            raise BrokerUnavailable(f"flush failed: {e}") from e

    def close(self) -> None:
        if self._producer is not None:
            self._producer.close()


# ── subscribe ──────────────────────────────────────────────────────────────────

async def deliver(
    handler: Handler,
    topic: str,
    key: Optional[bytes],
    value: Optional[bytes],
    on_fatal: Optional[Callable[[BaseException], Awaitable[None]]] = None,
) -> bool:
    """Decode one delivery and run the handler. Returns True if the handler completed.

    Malformed payloads and handler errors are logged and the message dropped;
    infrastructure errors are handed to ``on_fatal`` (the app crashes and the
    supervisor restarts it).
    """
    k = key.decode("utf-8", errors="replace") if isinstance(key, bytes) else (key or "")
    try:
        payload = json.loads(value) if value is not None else None
    except (TypeError, ValueError) as e:
        logger.warning("Dropping undecodable message topic=%s key=%s: %s", topic, k, e)
        return False

    try:
        if inspect.iscoroutinefunction(handler):
            await handler(topic, k, payload)
        else:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, handler, topic, k, payload)
        return True
    except SerializationError as e:
        logger.warning("Dropping malformed message topic=%s key=%s: %s", topic, k, e)
    except TransientInfraError as e:
        logger.critical("Infrastructure failure while handling topic=%s key=%s: %s", topic, k, e)
        if on_fatal is None:
            raise
        await on_fatal(e)
    except Exception:
        logger.exception("Handler failed; message dropped: topic=%s key=%s", topic, k)
    return False


def subscribe(app: faust.App, topics: Iterable[str], handler: Handler, name: Optional[str] = None):
    """Register a faust agent that feeds every delivery on ``topics`` to ``handler``.

    One delivery is handled at a time; faust commits the offset after the
    handler returns, so a crash mid-handler means redelivery (at-least-once).
    """
    topics = list(topics)
    channel = app.topic(*topics, key_type=bytes, value_type=bytes)

    async def _crash(exc: BaseException) -> None:
        await app.crash(exc)

    async def pump(stream):
        async for event in stream.events():
            await deliver(handler, event.message.topic, event.key, event.value, on_fatal=_crash)

    agent_name = name or f"{getattr(handler, '__name__', 'handler')}"
    logger.info("Subscribing %s to %s", agent_name, topics)
    return app.agent(channel, name=agent_name, concurrency=1)(pump)


# ── startup race ───────────────────────────────────────────────────────────────

def wait_for_topics(
    brokers: str,
    topics: Iterable[str],
    attempts: int = 15,
    delay: float = 2.0,
    factor: float = 1.5,
    consumer_factory: Optional[Callable[[], Any]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Block until every topic exists, backing off 2s, 3s, 4.5s, ...

    Only "topic not found" is retried. Raises TopicsUnavailable after the last
    attempt and BrokerUnavailable straight away if the broker cannot be reached.
    """
    wanted = set(topics)
    factory = consumer_factory or (lambda: KafkaConsumer(bootstrap_servers=split_brokers(brokers)))
    try:
        consumer = factory()
    except NoBrokersAvailable as e:
        raise BrokerUnavailable(f"no brokers available at {brokers}") from e

    try:
        missing = wanted
        for attempt in range(1, attempts + 1):
            try:
                available = set(consumer.topics())
            except KafkaError as e:
                raise BrokerUnavailable(f"metadata request to {brokers} failed: {e}") from e
            missing = wanted - available
            if not missing:
                logger.info("Topics available: %s", sorted(wanted))
                return
            if attempt < attempts:
                logger.warning("Topics %s not found, retrying in %.1fs (attempt %d/%d)",
                               sorted(missing), delay, attempt, attempts)
                sleep(delay)
                delay *= factor
        raise TopicsUnavailable(missing, attempts)
    finally:
        consumer.close()


def wait_for_topics_or_exit(cfg: dict, topics: Iterable[str]) -> None:
    """Service entry guard: fail fast and let the supervisor restart us."""
    try:
        wait_for_topics(
            cfg["BROKERS"], topics,
            attempts=cfg["SUBSCRIBE_ATTEMPTS"],
            delay=cfg["SUBSCRIBE_DELAY_S"],
            factor=cfg["SUBSCRIBE_BACKOFF"],
        )
    except TransientInfraError as e:
        logger.critical("Cannot attach to topics: %s", e)
        sys.exit(1)


def create_topics(brokers: str, topics: Iterable[str], partitions: int = 5, replication: int = 1) -> List[str]:
    """Create any missing topics; returns the names that were created."""
    try:
        admin = KafkaAdminClient(bootstrap_servers=split_brokers(brokers), client_id="buildpipe-init")
    except NoBrokersAvailable as e:
        raise BrokerUnavailable(f"no brokers available at {brokers}") from e
    created = []
    try:
        for name in topics:
            try:
                admin.create_topics([NewTopic(name=name, num_partitions=partitions,
                                              replication_factor=replication)])
                created.append(name)
                logger.info("Created topic %s (partitions=%d)", name, partitions)
            except TopicAlreadyExistsError:
                logger.info("Topic %s already exists", name)
    finally:
        admin.close()
    return created

"""
Fulfillment events on Kafka.

Events are published after the coordinator has committed. Publishing is best
effort: a missing or broken broker is logged and never fails the request that
triggered the event.
"""
import asyncio
import concurrent.futures
import json
import logging
from typing import Optional

from aiokafka import AIOKafkaProducer

from .config import (
    KAFKA_BOOTSTRAP_SERVERS,
    KAFKA_CONNECT_RETRIES,
    KAFKA_RETRY_DELAY,
    KAFKA_TOPIC,
)
from .models import utcnow

logger = logging.getLogger(__name__)

ORDER_PLACED = "ORDER_PLACED"
ORDER_STATUS_CHANGED = "ORDER_STATUS_CHANGED"
RIDER_ASSIGNED = "RIDER_ASSIGNED"
ORDER_CANCELLED = "ORDER_CANCELLED"
ORDER_PAID = "ORDER_PAID"
PAYMENT_FAILED = "PAYMENT_FAILED"
PAYMENT_REFUNDED = "PAYMENT_REFUNDED"


class EventPublisher:
    def __init__(self, bootstrap_servers: str = KAFKA_BOOTSTRAP_SERVERS, topic: str = KAFKA_TOPIC):
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.producer: Optional[AIOKafkaProducer] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    async def start(self, max_retries: int = KAFKA_CONNECT_RETRIES, delay: float = KAFKA_RETRY_DELAY) -> bool:
        producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers)
        for i in range(max_retries):
            try:
                logger.info("connecting to Kafka at %s (attempt %d/%d)", self.bootstrap_servers, i + 1, max_retries)
                await producer.start()
            except Exception as e:
                logger.warning("Kafka not reachable yet: %s", e)
                if i < max_retries - 1:
                    await asyncio.sleep(delay)
            else:
                self.producer = producer
                self.loop = asyncio.get_running_loop()
                logger.info("Kafka producer connected")
                return True
        logger.error("giving up on Kafka; events will not be published")
        try:
            # release the client's sockets and background tasks
            await producer.stop()
        except Exception as e:
            logger.warning("error closing Kafka producer: %s", e)
        return False

    async def stop(self):
        if self.producer is not None:
            producer, self.producer = self.producer, None
            await producer.stop()

    @staticmethod
    def encode(event: str, payload: dict) -> bytes:
        message = {"event": event, "occurredAt": utcnow().isoformat(), **payload}
        return json.dumps(message, default=str).encode("utf-8")

    async def send(self, event: str, payload: dict):
        if self.producer is None:
            return
        try:
            await self.producer.send_and_wait(self.topic, self.encode(event, payload))
            logger.debug("event %s sent: %s", event, payload)
        except Exception as e:
            logger.error("failed to publish %s: %s", event, e)

    def publish(self, event: str, **payload) -> Optional[concurrent.futures.Future]:
        """Schedule an event from any thread; returns immediately.

        The returned future resolves once the send has finished. It is None
        when there is no producer and the event was dropped.
        """
        if self.producer is None or self.loop is None:
            logger.debug("Kafka disabled, dropping %s", event)
            return None
        return asyncio.run_coroutine_threadsafe(self.send(event, payload), self.loop)


publisher = EventPublisher()

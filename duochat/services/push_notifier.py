"""
Offline push notifications.

The messaging engine only decides whether to notify and with what payload.
Each notification is handed to the push delivery worker as one job on the
push Kafka topic; the worker owns the vendor SDK and device fan-out.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional

import pybreaker
from kafka.errors import KafkaError

from duochat.core.config import settings
from duochat.core.errors import CollaboratorFailure
from duochat.services.kafka_producer import KafkaProducerClient, get_kafka_producer

logger = logging.getLogger(__name__)

# Notification bodies never contain message text
PUSH_BODIES = {
    "text": "Sent you a message",
    "image": "Sent you a photo",
    "audio": "Sent you a voice message",
}


def push_body_for(message_type: str) -> str:
    return PUSH_BODIES.get(message_type, PUSH_BODIES["text"])


class PushNotifier:
    """Publishes push notification jobs."""

    def __init__(
        self,
        topic: Optional[str] = None,
        producer_factory: Callable[[], KafkaProducerClient] = get_kafka_producer
    ):
        self.topic = topic or settings.push_topic
        self._producer_factory = producer_factory

    def notify(self, tokens: Iterable[str], title: str, body: str, data: Dict[str, Any]) -> None:
        """
        Submit one notification for a set of device tokens.

        Blocking; call from a worker thread.

        Raises:
            CollaboratorFailure: if the job could not be handed off
        """
        token_list = sorted(set(tokens))
        if not token_list:
            return

        job = {
            "tokens": token_list,
            "notification": {"title": title, "body": body},
            "data": {key: str(value) for key, value in data.items()},
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        partition_key = str(data.get("conversationId", "")) or None

        try:
            self._producer_factory().publish_message(self.topic, job, partition_key=partition_key)
        except pybreaker.CircuitBreakerError as e:
            raise CollaboratorFailure(f"Push queue unavailable (circuit open): {e}") from e
        except KafkaError as e:
            raise CollaboratorFailure(f"Push job not accepted: {e}") from e

        logger.info(f"Push job queued for {len(token_list)} device(s)")

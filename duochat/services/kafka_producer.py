"""
Kafka producer client for publishing jobs to downstream workers.
Implements idempotent producer configuration and propagates the current
OpenTelemetry trace context in message headers.
Guarded by a circuit breaker so an unavailable broker fails fast.
"""
import json
import logging
from typing import Dict, Any, Optional
from kafka import KafkaProducer, KafkaAdminClient
from kafka.admin import NewTopic
from kafka.errors import KafkaError, TopicAlreadyExistsError
from opentelemetry import trace
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator
import pybreaker
from duochat.core.config import settings

logger = logging.getLogger(__name__)

# W3C Trace Context propagator
propagator = TraceContextTextMapPropagator()


class BreakerStateLogger(pybreaker.CircuitBreakerListener):
    """Log circuit breaker state transitions."""

    def state_change(self, cb, old_state, new_state):
        old_name = old_state.name if old_state else None
        logger.warning(f"Circuit breaker {cb.name}: {old_name} -> {new_state.name}")


kafka_circuit_breaker = pybreaker.CircuitBreaker(
    fail_max=5,  # Open circuit after 5 failures
    reset_timeout=30,  # Try half-open after 30 seconds
    name="kafka_producer",
    listeners=[BreakerStateLogger()]
)


class KafkaProducerClient:
    """Client for publishing messages to Kafka topics with idempotent configuration."""

    def __init__(self, bootstrap_servers: Optional[str] = None):
        try:
            servers = (bootstrap_servers or settings.kafka_bootstrap_servers).split(',')
            logger.info(f"Initializing Kafka producer with {len(servers)} brokers: {servers}")

            self.producer = KafkaProducer(
                bootstrap_servers=servers,
                value_serializer=lambda v: json.dumps(v).encode('utf-8'),
                enable_idempotence=True,
                acks='all',
                retries=5,
                max_in_flight_requests_per_connection=5,
                linger_ms=10,
                request_timeout_ms=30000,
            )
            self.admin_client = KafkaAdminClient(
                bootstrap_servers=servers,
                client_id='duochat-admin',
                request_timeout_ms=30000
            )
            self._create_topics(replication_factor=3 if len(servers) >= 3 else 1)

        except KafkaError as e:
            logger.error(f"Failed to initialize Kafka producer: {e}")
            raise

    def _create_topics(self, replication_factor: int) -> None:
        """Create the push notification topic if it does not exist."""
        topics = [
            NewTopic(
                name=settings.push_topic,
                num_partitions=12,
                replication_factor=replication_factor,
                topic_configs={'min.insync.replicas': '2'} if replication_factor == 3 else {}
            ),
        ]
        try:
            self.admin_client.create_topics(new_topics=topics, validate_only=False)
            logger.info(f"Created {len(topics)} Kafka topics (RF={replication_factor})")
        except TopicAlreadyExistsError:
            logger.info("Kafka topics already exist, skipping creation")
        except Exception as e:
            logger.warning(f"Could not create topics (may already exist): {e}")

    @kafka_circuit_breaker
    def publish_message(self, topic: str, message: Dict[str, Any], partition_key: Optional[str] = None) -> None:
        """
        Publish a message and wait for the broker acknowledgement.

        Args:
            topic: Kafka topic name
            message: Message dictionary to publish (will be JSON serialized)
            partition_key: Optional partition key for ordering

        Raises:
            KafkaError: if the broker does not acknowledge the message
            pybreaker.CircuitBreakerError: when the circuit is open
        """
        carrier = {}
        propagator.inject(carrier)
        headers = [(key, value.encode('utf-8')) for key, value in carrier.items()]

        tracer = trace.get_tracer(__name__)
        with tracer.start_as_current_span("kafka.publish") as span:
            span.set_attribute("messaging.system", "kafka")
            span.set_attribute("messaging.destination", topic)

            future = self.producer.send(
                topic,
                value=message,
                key=partition_key.encode('utf-8') if partition_key else None,
                headers=headers
            )
            record_metadata = future.get(timeout=10)

            logger.info(
                f"Message published to topic '{topic}': "
                f"partition={record_metadata.partition}, offset={record_metadata.offset}"
            )

    def close(self) -> None:
        """Close the Kafka producer connection."""
        if self.producer:
            self.producer.close()
            logger.info("Kafka producer closed")


# Global Kafka producer instance (initialized on first use)
_kafka_producer: KafkaProducerClient = None


def get_kafka_producer() -> KafkaProducerClient:
    """
    Get or create global Kafka producer instance.

    Construction goes through the circuit breaker: a broker that cannot be
    reached counts as a failure, and while the circuit is open no bootstrap
    is attempted.

    Returns:
        KafkaProducerClient instance

    Raises:
        KafkaError: if the producer could not be created
        pybreaker.CircuitBreakerError: when the circuit is open
    """
    global _kafka_producer
    if _kafka_producer is None:
        _kafka_producer = kafka_circuit_breaker.call(KafkaProducerClient)
    return _kafka_producer


def close_kafka_producer() -> None:
    global _kafka_producer
    if _kafka_producer is not None:
        _kafka_producer.close()
        _kafka_producer = None

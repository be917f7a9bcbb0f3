"""
AWS Lambda handler for processing messages from SQS.

Thin orchestration layer that wires the pipeline, persistence and meter
together and delegates each record to MessageProcessor.

Policy: pipeline outcomes (rejected, failed) are final and the message is
deleted. Messages whose durable record could not be written, and runs
cancelled at the Lambda deadline, are reported in batchItemFailures so SQS
redelivers them.
"""

import json
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from domain.errors import ConfigurationError, PersistenceError
from domain.message_processor import MessageProcessor
from domain.models import Message, OutcomeKind, ProcessingResult
from domain.stages import build_default_pipeline
from services.persistence import InMemoryStorageBackend, MessagePersistenceService
from services.stats import Meter

# Configure logging
logger = logging.getLogger()
logger.setLevel(os.environ.get('LOG_LEVEL', 'INFO').upper())

# Add console handler for local testing (AWS Lambda provides handlers automatically)
if not logger.handlers:
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(levelname)s - %(message)s')
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got: '{raw}'")
    if value < 1:
        raise ConfigurationError(f"{name} must be >= 1, got: {value}")
    return value


def _float_env(name: str) -> Optional[float]:
    raw = os.environ.get(name, '').strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got: '{raw}'")
    if not 0 < value < float('inf'):
        raise ConfigurationError(f"{name} must be a positive finite number, got: {value}")
    return value


def _bool_env(name: str, default: bool) -> bool:
    return os.environ.get(name, str(default)).strip().lower() in ('1', 'true', 'yes')


# Environment variables
ENVIRONMENT = os.environ.get('ENVIRONMENT', 'dev')
PERSISTENCE_S3_BUCKET = os.environ.get('PERSISTENCE_S3_BUCKET', '')
PERSISTENCE_KEY_PREFIX = os.environ.get('PERSISTENCE_KEY_PREFIX', 'records/')
PERSISTENCE_BACKEND = os.environ.get('PERSISTENCE_BACKEND', 's3' if PERSISTENCE_S3_BUCKET else 'memory')
PERSISTENCE_TIMEOUT_SECONDS = _float_env('PERSISTENCE_TIMEOUT_SECONDS')
PIPELINE_NAME = os.environ.get('PIPELINE_NAME', 'default')
DECODE_JSON_BODY = _bool_env('DECODE_JSON_BODY', False)
SKIP_PERSISTED = _bool_env('SKIP_PERSISTED', False)
MAX_WORKERS = _int_env('MAX_WORKERS', 4)

# Stop starting new stages this long before the Lambda deadline
SHUTDOWN_GRACE_MS = 5000


def _create_storage_backend():
    """
    Select the storage backend from PERSISTENCE_BACKEND.

    Raises:
        ConfigurationError: If the backend name is unknown or S3 is misconfigured
    """
    if PERSISTENCE_BACKEND == 'memory':
        logger.warning("Using in-memory persistence: records do not survive the process")
        return InMemoryStorageBackend()

    if PERSISTENCE_BACKEND == 's3':
        # boto3 is only needed by the s3 backend
        from integrations.s3_storage import S3StorageBackend
        return S3StorageBackend(
            bucket=PERSISTENCE_S3_BUCKET,
            prefix=PERSISTENCE_KEY_PREFIX,
            environment=ENVIRONMENT
        )

    raise ConfigurationError(
        f"PERSISTENCE_BACKEND must be 's3' or 'memory', got: '{PERSISTENCE_BACKEND}'"
    )


def create_message_processor(meter: Meter) -> MessageProcessor:
    """Build pipeline, persistence and processor from the environment."""
    pipeline = build_default_pipeline(name=PIPELINE_NAME, decode_json=DECODE_JSON_BODY)
    persistence = MessagePersistenceService(_create_storage_backend())
    logger.info(
        f"Message processor ready: pipeline={pipeline.describe()}, "
        f"backend={PERSISTENCE_BACKEND}, max_workers={MAX_WORKERS}"
    )
    return MessageProcessor(pipeline, persistence, meter, persistence_timeout=PERSISTENCE_TIMEOUT_SECONDS)


# Initialize once at module level (reused across invocations)
meter = Meter()
message_processor = create_message_processor(meter)


def record_to_message(record: Dict[str, Any]) -> Message:
    """Convert an SQS record into a Message."""
    attributes = {
        'source': 'sqs',
        'event_source_arn': record.get('eventSourceARN'),
        'sent_timestamp': record.get('attributes', {}).get('SentTimestamp'),
    }
    return Message.create(
        payload=record.get('body', ''),
        message_id=record.get('messageId'),
        attributes={k: v for k, v in attributes.items() if v is not None}
    )


def _already_persisted(message: Message) -> bool:
    """
    True if a final (non-cancelled) record exists for the message.

    Uses get() rather than exists(): a cancelled record must not count, so
    the stored outcome is needed.
    """
    if not SKIP_PERSISTED:
        return False
    try:
        record = message_processor.persistence_service.get(message.message_id)
        return record is not None and record.outcome != OutcomeKind.CANCELLED.value
    except PersistenceError as e:
        logger.warning(f"Could not check persisted state of {message.message_id}, processing anyway: {e}")
        return False


def _start_deadline_timer(context: Any, cancel_event: threading.Event) -> Optional[threading.Timer]:
    """Set cancel_event shortly before the Lambda deadline, if it is known."""
    get_remaining = getattr(context, 'get_remaining_time_in_millis', None)
    if not callable(get_remaining):
        return None

    remaining_ms = get_remaining()
    if not isinstance(remaining_ms, int):
        return None

    timer = threading.Timer(max(remaining_ms - SHUTDOWN_GRACE_MS, 0) / 1000, cancel_event.set)
    timer.daemon = True
    timer.start()
    return timer


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Process a batch of SQS messages.

    Args:
        event: Lambda event with SQS records
        context: Lambda context

    Returns:
        Dict with batchItemFailures (persistence failures and cancelled runs)
    """
    logger.info("=" * 70)
    logger.info("SQS Message Processor - Started")
    logger.info("=" * 70)

    records = event.get('Records', [])
    logger.info(f"Processing batch of {len(records)} message(s)")

    messages = [record_to_message(record) for record in records]
    pending = []
    for message in messages:
        if _already_persisted(message):
            logger.info(f"Skipping message {message.message_id}: already persisted")
            meter.increment('messages.skipped', {'reason': 'already_persisted'})
        else:
            pending.append(message)

    cancel_event = threading.Event()
    deadline_timer = _start_deadline_timer(context, cancel_event)

    results: List[ProcessingResult] = []
    try:
        if pending:
            # The worker pool size is the only bound on concurrent pipeline runs
            with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(pending))) as executor:
                results = list(executor.map(
                    lambda message: message_processor.process(message, cancel_event),
                    pending
                ))
    finally:
        if deadline_timer is not None:
            deadline_timer.cancel()

    failures = [
        {'itemIdentifier': result.message_id}
        for result in results
        if result.should_retry or result.outcome.kind is OutcomeKind.CANCELLED
    ]

    _log_summary(len(messages), results, len(messages) - len(pending))

    return {"batchItemFailures": failures}


def _log_summary(total: int, results: List[ProcessingResult], skipped: int) -> None:
    by_outcome: Dict[str, int] = {}
    for result in results:
        by_outcome[result.outcome.kind.value] = by_outcome.get(result.outcome.kind.value, 0) + 1

    logger.info("=" * 70)
    logger.info(f"Batch processing complete: {total} message(s)")
    for kind, count in sorted(by_outcome.items()):
        logger.info(f"  {kind.capitalize()}: {count}")
    logger.info(f"  Skipped: {skipped}")
    logger.info(f"  Persistence failures: {sum(1 for r in results if r.should_retry)}")
    logger.info("=" * 70)


def stats_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Return the current meter snapshot.
    """
    return {
        'statusCode': 200,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps({
            'environment': ENVIRONMENT,
            'pipeline': message_processor.pipeline.describe(),
            'metrics': meter.snapshot()
        })
    }


def health_check(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Simple health check endpoint for monitoring.
    """
    return {
        'statusCode': 200,
        'body': json.dumps({
            'status': 'healthy',
            'environment': ENVIRONMENT,
            'persistenceBackend': PERSISTENCE_BACKEND
        })
    }

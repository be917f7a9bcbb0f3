"""
Built-in stages and the default pipeline.

Stages take the current value (a Message for these built-ins) and return the
next one. They never mutate their input.
"""

import json
from datetime import datetime, timezone
from typing import Any

from .errors import StageRejection
from .message_processing import MessageProcessing, MessageProcessingBuilder, StagePolicy
from .models import Message

PERSIST_MARKER = 'message-processor'


def _is_empty(payload: Any) -> bool:
    if payload is None:
        return True
    if isinstance(payload, (str, bytes, dict, list, tuple)):
        return len(payload) == 0
    return False


def validate_payload(message: Message) -> Message:
    """Reject messages with an empty payload."""
    if _is_empty(message.payload):
        raise StageRejection("empty payload")
    return message


def decode_json_payload(message: Message) -> Message:
    """
    Decode a str/bytes JSON payload into Python objects.

    Already-decoded payloads pass through unchanged.

    Raises:
        StageRejection: If the payload is not valid JSON
    """
    payload = message.payload
    if not isinstance(payload, (str, bytes)):
        return message

    try:
        return message.with_payload(json.loads(payload))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise StageRejection(f"payload is not valid JSON: {e}")


def enrich_timestamp(message: Message) -> Message:
    """Attach a processed_at ISO-8601 UTC timestamp."""
    return message.with_attributes(
        processed_at=datetime.now(timezone.utc).isoformat()
    )


def persist_marker(message: Message) -> Message:
    """Mark the message as having gone through the persisting pipeline."""
    return message.with_attributes(persisted_by=PERSIST_MARKER)


def build_default_pipeline(
    name: str = 'default',
    version: str = '1',
    decode_json: bool = False
) -> MessageProcessing:
    """
    Build the standard pipeline: validate -> [decode_json] -> enrich -> persist-marker.

    Enrichment is best effort and runs with the CONTINUE policy.
    """
    builder = MessageProcessingBuilder(name=name, version=version)
    builder.add_stage('validate', validate_payload)
    if decode_json:
        builder.add_stage('decode_json', decode_json_payload)
    builder.add_stage('enrich', enrich_timestamp, policy=StagePolicy.CONTINUE)
    builder.add_stage('persist-marker', persist_marker)
    return builder.build()

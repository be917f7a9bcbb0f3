"""
Data models for the message processing domain.

These type-safe data structures define clear contracts between components.
"""

import hashlib
import itertools
import json
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import PersistenceError

_sequence = itertools.count(1)
_sequence_lock = threading.Lock()


def _next_sequence() -> int:
    with _sequence_lock:
        return next(_sequence)


def derive_message_id(payload: Any) -> str:
    """
    Derive a deterministic message identifier from payload content.

    Args:
        payload: str, bytes, or any JSON-serializable value

    Returns:
        str: "sha256-" followed by the hex digest of the payload
    """
    if isinstance(payload, bytes):
        raw = payload
    elif isinstance(payload, str):
        raw = payload.encode('utf-8')
    else:
        raw = json.dumps(payload, sort_keys=True, default=str).encode('utf-8')
    return f"sha256-{hashlib.sha256(raw).hexdigest()}"


@dataclass(frozen=True)
class Message:
    """
    Inbound message flowing through a pipeline.

    Attributes:
        message_id: Stable identifier, also the persistence deduplication key
        payload: Opaque payload (may be empty; stages decide what is valid)
        sequence: Process-wide monotonically increasing arrival number
        received_at: Epoch seconds when the message was created
        attributes: Free-form metadata attached by the producer or by stages
    """
    message_id: str
    payload: Any
    sequence: int = field(default_factory=_next_sequence)
    received_at: float = field(default_factory=time.time)
    attributes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        payload: Any,
        message_id: Optional[str] = None,
        attributes: Optional[Dict[str, Any]] = None
    ) -> 'Message':
        """Create a message, deriving the identifier from content when absent."""
        return cls(
            message_id=message_id or derive_message_id(payload),
            payload=payload,
            attributes=dict(attributes or {})
        )

    def with_payload(self, payload: Any) -> 'Message':
        """Return a copy carrying a new payload (identifier is unchanged)."""
        return replace(self, payload=payload)

    def with_attributes(self, **attributes: Any) -> 'Message':
        """Return a copy with extra attributes merged in."""
        merged = dict(self.attributes)
        merged.update(attributes)
        return replace(self, attributes=merged)


class OutcomeKind(str, Enum):
    """Terminal classification of one pipeline run."""
    PROCESSED = 'processed'
    REJECTED = 'rejected'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


@dataclass(frozen=True)
class StageError:
    """Failure of a single stage (fatal or skipped)."""
    stage: str
    error: BaseException

    @property
    def message(self) -> str:
        return f"{type(self.error).__name__}: {self.error}"


@dataclass(frozen=True)
class Outcome:
    """
    Result of running a message through a pipeline.

    Attributes:
        kind: processed, rejected, failed or cancelled
        stage: Name of the last stage executed (None if no stage ran)
        result: Final value (processed) or last good value (cancelled)
        reason: Rejection reason (rejected only)
        error: Originating exception (failed only)
        skipped: Continue-on-error stage failures recorded along the way
    """
    kind: OutcomeKind
    stage: Optional[str] = None
    result: Any = None
    reason: Optional[str] = None
    error: Optional[BaseException] = None
    skipped: List[StageError] = field(default_factory=list)

    @classmethod
    def processed(cls, stage: Optional[str], result: Any, skipped=None) -> 'Outcome':
        return cls(OutcomeKind.PROCESSED, stage=stage, result=result, skipped=list(skipped or []))

    @classmethod
    def rejected(cls, stage: str, reason: str, skipped=None) -> 'Outcome':
        return cls(OutcomeKind.REJECTED, stage=stage, reason=reason, skipped=list(skipped or []))

    @classmethod
    def failed(cls, stage: str, error: BaseException, skipped=None) -> 'Outcome':
        return cls(OutcomeKind.FAILED, stage=stage, error=error, skipped=list(skipped or []))

    @classmethod
    def cancelled(cls, stage: Optional[str], partial_result: Any = None, skipped=None) -> 'Outcome':
        return cls(OutcomeKind.CANCELLED, stage=stage, result=partial_result, skipped=list(skipped or []))

    @property
    def is_processed(self) -> bool:
        return self.kind is OutcomeKind.PROCESSED

    @property
    def detail(self) -> Optional[str]:
        """Human-readable reason for non-processed outcomes."""
        if self.kind is OutcomeKind.REJECTED:
            return self.reason
        if self.kind is OutcomeKind.FAILED and self.error is not None:
            return f"{type(self.error).__name__}: {self.error}"
        return None

    def __repr__(self) -> str:
        if self.kind is OutcomeKind.REJECTED:
            return f"Rejected({self.stage!r}, {self.reason!r})"
        if self.kind is OutcomeKind.FAILED:
            return f"Failed({self.stage!r}, {self.detail!r})"
        if self.kind is OutcomeKind.CANCELLED:
            return f"Cancelled(after={self.stage!r})"
        return f"Processed(stage={self.stage!r}, skipped={len(self.skipped)})"


def _jsonable(value: Any) -> Any:
    """Coerce a payload into something json.dumps can write."""
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return repr(value)


@dataclass(frozen=True)
class PersistedRecord:
    """
    Durable representation of one terminal message.

    At most one record exists per message_id.
    """
    message_id: str
    outcome: str
    stage: Optional[str] = None
    payload: Any = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    detail: Optional[str] = None
    skipped_stages: List[str] = field(default_factory=list)
    written_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @classmethod
    def from_outcome(cls, message: Message, outcome: Outcome) -> 'PersistedRecord':
        """
        Build the record for a message and its terminal outcome.

        Processed and cancelled runs store the (partial) result; rejected and
        failed runs store the original payload so it can be inspected.
        """
        if outcome.kind in (OutcomeKind.PROCESSED, OutcomeKind.CANCELLED):
            source = outcome.result
        else:
            source = message

        if isinstance(source, Message):
            payload = source.payload
            attributes = source.attributes
        else:
            payload = source
            attributes = message.attributes if source is not None else {}

        return cls(
            message_id=message.message_id,
            outcome=outcome.kind.value,
            stage=outcome.stage,
            payload=_jsonable(payload),
            attributes=_jsonable(dict(attributes)),
            detail=outcome.detail,
            skipped_stages=[s.stage for s in outcome.skipped]
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'message_id': self.message_id,
            'outcome': self.outcome,
            'stage': self.stage,
            'payload': self.payload,
            'attributes': self.attributes,
            'detail': self.detail,
            'skipped_stages': list(self.skipped_stages),
            'written_at': self.written_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PersistedRecord':
        return cls(
            message_id=data['message_id'],
            outcome=data['outcome'],
            stage=data.get('stage'),
            payload=data.get('payload'),
            attributes=data.get('attributes') or {},
            detail=data.get('detail'),
            skipped_stages=list(data.get('skipped_stages') or []),
            written_at=data.get('written_at', '')
        )


@dataclass
class ProcessingResult:
    """
    Result of one MessageProcessor.process() call.

    The pipeline outcome and the persistence status are kept apart: a
    persistence failure never changes the logical outcome.

    Attributes:
        message_id: Message identifier
        outcome: Pipeline outcome
        stored: True if the durable state changed, False if it was a no-op
        persistence_error: Set when the durable write failed
    """
    message_id: str
    outcome: Outcome
    stored: bool = False
    persistence_error: Optional[PersistenceError] = None

    @property
    def persisted(self) -> bool:
        return self.persistence_error is None

    @property
    def success(self) -> bool:
        return self.outcome.is_processed and self.persisted

    @property
    def should_retry(self) -> bool:
        """Only infrastructure failures are worth retrying."""
        return self.persistence_error is not None

    def __repr__(self) -> str:
        if self.persistence_error is not None:
            return (
                f"ProcessingResult(message_id={self.message_id}, outcome={self.outcome!r}, "
                f"persistence_error={self.persistence_error})"
            )
        return f"ProcessingResult(message_id={self.message_id}, outcome={self.outcome!r})"

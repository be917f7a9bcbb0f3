"""
Durable, idempotent storage of processed messages.

MessagePersistenceService sits on top of an injected StorageBackend:
- At most one record per message_id
- Same id + same outcome: no-op
- Same id + different outcome: overwrite (last call wins)
- Backend failures are always raised as PersistenceError
"""

import logging
import threading
import zlib
from typing import Any, Dict, List, Optional, Protocol

from domain.errors import PersistenceError
from domain.models import PersistedRecord

logger = logging.getLogger(__name__)

# Number of striped locks guarding check-then-write per message id
LOCK_STRIPES = 64


class StorageBackend(Protocol):
    """Minimal contract a durable medium must offer."""

    def get(self, message_id: str) -> Optional[Dict[str, Any]]:
        ...

    def put(self, message_id: str, document: Dict[str, Any]) -> None:
        ...

    def contains(self, message_id: str) -> bool:
        ...

    def count(self) -> int:
        ...


class InMemoryStorageBackend:
    """Dict-backed storage for local runs and tests."""

    def __init__(self):
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, message_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._documents.get(message_id)
            return dict(document) if document is not None else None

    def put(self, message_id: str, document: Dict[str, Any]) -> None:
        with self._lock:
            self._documents[message_id] = dict(document)

    def contains(self, message_id: str) -> bool:
        with self._lock:
            return message_id in self._documents

    def count(self) -> int:
        with self._lock:
            return len(self._documents)

    def message_ids(self) -> List[str]:
        with self._lock:
            return list(self._documents)


class MessagePersistenceService:
    """
    Idempotent record store, safe for concurrent use.

    Writes for the same message id are serialized; writes for different ids
    only contend when they hash to the same lock stripe.
    """

    def __init__(self, backend: StorageBackend):
        self.backend = backend
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    def _lock_for(self, message_id: str) -> threading.Lock:
        return self._locks[zlib.crc32(message_id.encode('utf-8')) % LOCK_STRIPES]

    def store(self, record: PersistedRecord) -> bool:
        """
        Write a record unless an equivalent one is already stored.

        Args:
            record: Record to persist

        Returns:
            True if the durable state changed, False if it was a no-op

        Raises:
            PersistenceError: If the backend read or write fails
        """
        message_id = record.message_id

        with self._lock_for(message_id):
            try:
                existing = self.backend.get(message_id)
            except Exception as e:
                raise PersistenceError(
                    f"Failed to read existing record for {message_id}: {e}", message_id
                ) from e

            if existing is not None and existing.get('outcome') == record.outcome:
                logger.debug(f"Record for {message_id} already stored as {record.outcome}, skipping")
                return False

            if existing is not None:
                logger.info(
                    f"Overwriting record for {message_id}: "
                    f"{existing.get('outcome')} -> {record.outcome}"
                )

            try:
                self.backend.put(message_id, record.to_dict())
            except Exception as e:
                raise PersistenceError(
                    f"Failed to write record for {message_id}: {e}", message_id
                ) from e

        logger.debug(f"Stored record for {message_id} ({record.outcome})")
        return True

    def exists(self, message_id: str) -> bool:
        """
        Check whether a record is durably stored.

        Raises:
            PersistenceError: If the backend cannot be queried
        """
        try:
            return self.backend.contains(message_id)
        except Exception as e:
            raise PersistenceError(f"Failed to check record for {message_id}: {e}", message_id) from e

    def get(self, message_id: str) -> Optional[PersistedRecord]:
        """Load a stored record, or None if absent."""
        try:
            document = self.backend.get(message_id)
        except Exception as e:
            raise PersistenceError(f"Failed to load record for {message_id}: {e}", message_id) from e
        return PersistedRecord.from_dict(document) if document is not None else None

    def count(self) -> int:
        """Number of stored records."""
        try:
            return self.backend.count()
        except Exception as e:
            raise PersistenceError(f"Failed to count records: {e}") from e

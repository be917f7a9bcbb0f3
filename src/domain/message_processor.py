"""
Message processing engine - core business logic.

For every message:
1. Run the pipeline stages in order (stop on rejection or fatal failure)
2. Store exactly one durable record for the terminal outcome
3. Record stage and pipeline metrics on the injected meter
4. Return a ProcessingResult (outcome + persistence status)

Stage errors are resolved according to the stage policy and reported in the
outcome. Persistence errors are reported separately. No exceptions propagate
out of process().
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Dict, List, Optional

from .errors import PersistenceError, StageRejection
from .message_processing import MessageProcessing, Stage
from .models import Message, Outcome, OutcomeKind, PersistedRecord, ProcessingResult, StageError

logger = logging.getLogger(__name__)


class MessageProcessor:
    """
    Executes a MessageProcessing pipeline against incoming messages.

    Safe to call from many threads at once: the pipeline is read-only and
    all shared mutable state lives in the persistence service and the meter.
    """

    def __init__(
        self,
        pipeline: MessageProcessing,
        persistence_service,
        meter,
        persistence_timeout: Optional[float] = None
    ):
        """
        Initialize message processor.

        Args:
            pipeline: Built pipeline to execute
            persistence_service: Object with store(record) -> bool
            meter: Object with increment(name, tags) and observe(name, value, tags)
            persistence_timeout: Seconds to wait for a store before treating it
                                 as a PersistenceError (None waits forever).
                                 A timed-out store that has not started is
                                 cancelled; one already running may still
                                 land, and later stores for the same id wait
                                 behind it.
        """
        self.pipeline = pipeline
        self.persistence_service = persistence_service
        self.meter = meter
        self.persistence_timeout = persistence_timeout
        self._store_executor = (
            ThreadPoolExecutor(max_workers=4, thread_name_prefix='persistence')
            if persistence_timeout is not None else None
        )
        self._inflight: Dict[str, Future] = {}
        self._inflight_lock = threading.Lock()

    def process(
        self,
        message: Message,
        cancel_event: Optional[threading.Event] = None
    ) -> ProcessingResult:
        """
        Process a single message.

        Args:
            message: Message to run through the pipeline
            cancel_event: Optional event; when set, the run stops before the next stage

        Returns:
            ProcessingResult with the outcome and persistence status
        """
        logger.debug(f"Processing message {message.message_id} with {self.pipeline.describe()}")
        started = time.perf_counter()

        outcome = self._run_pipeline(message, cancel_event)

        elapsed_ms = (time.perf_counter() - started) * 1000
        pipeline_tags = {'pipeline': self.pipeline.name, 'outcome': outcome.kind.value}
        self._increment('pipeline.completed', pipeline_tags)
        self._observe('pipeline.latency_ms', elapsed_ms, pipeline_tags)

        result = self._persist(message, outcome)
        self._log_outcome(result, elapsed_ms)
        return result

    def _run_pipeline(self, message: Message, cancel_event: Optional[threading.Event]) -> Outcome:
        value: Any = message
        last_stage: Optional[str] = None
        completed_any = False
        skipped: List[StageError] = []

        for stage in self.pipeline.stages:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(
                    f"Message {message.message_id} cancelled before stage '{stage.name}'"
                )
                return Outcome.cancelled(
                    last_stage,
                    partial_result=value if completed_any else None,
                    skipped=skipped
                )

            last_stage = stage.name
            tags = self._stage_tags(stage)
            self._increment('stage.entered', tags)
            stage_started = time.perf_counter()

            try:
                value = stage.run(value)
            except StageRejection as rejection:
                self._observe_stage(stage_started, tags)
                self._increment('stage.rejected', tags)
                logger.info(
                    f"Message {message.message_id} rejected at '{stage.name}': {rejection.reason}"
                )
                return Outcome.rejected(stage.name, rejection.reason, skipped=skipped)
            except Exception as e:
                self._observe_stage(stage_started, tags)
                self._increment('stage.failed', dict(tags, fatal=str(stage.is_fatal).lower()))

                if stage.is_fatal:
                    logger.error(
                        f"Stage '{stage.name}' failed for message {message.message_id}: {e}",
                        exc_info=True
                    )
                    return Outcome.failed(stage.name, e, skipped=skipped)

                logger.warning(
                    f"Stage '{stage.name}' failed for message {message.message_id}, "
                    f"continuing with last good value: {e}"
                )
                skipped.append(StageError(stage=stage.name, error=e))
                continue

            self._observe_stage(stage_started, tags)
            self._increment('stage.succeeded', tags)
            completed_any = True

        return Outcome.processed(last_stage, value, skipped=skipped)

    def _persist(self, message: Message, outcome: Outcome) -> ProcessingResult:
        """Store exactly one record for the outcome; never raises."""
        tags = {'pipeline': self.pipeline.name, 'outcome': outcome.kind.value}

        try:
            record = PersistedRecord.from_outcome(message, outcome)
            stored = self._store(record)
        except PersistenceError as e:
            self._increment('persistence.failed', tags)
            logger.error(f"Failed to persist message {message.message_id}: {e}")
            return ProcessingResult(
                message_id=message.message_id,
                outcome=outcome,
                persistence_error=e
            )
        except Exception as e:
            # Anything else from the persistence layer is still an infrastructure failure
            self._increment('persistence.failed', tags)
            logger.error(f"Unexpected error persisting message {message.message_id}: {e}", exc_info=True)
            error = PersistenceError(f"Unexpected persistence error: {e}", message.message_id)
            error.__cause__ = e
            return ProcessingResult(
                message_id=message.message_id,
                outcome=outcome,
                persistence_error=error
            )

        self._increment('persistence.stored' if stored else 'persistence.unchanged', tags)
        return ProcessingResult(message_id=message.message_id, outcome=outcome, stored=stored)

    def _store(self, record: PersistedRecord) -> bool:
        if self._store_executor is None:
            return self.persistence_service.store(record)

        message_id = record.message_id
        deadline = time.monotonic() + self.persistence_timeout

        # A write that timed out may still be running; later writes for the
        # same id wait for it so they always land after it.
        while True:
            with self._inflight_lock:
                previous = self._inflight.get(message_id)
                if previous is None or previous.done():
                    future = self._store_executor.submit(self.persistence_service.store, record)
                    self._inflight[message_id] = future
                    break
            if not wait([previous], timeout=max(deadline - time.monotonic(), 0)).done:
                raise PersistenceError(
                    f"Earlier write for {message_id} still in flight after {self.persistence_timeout}s",
                    message_id
                )

        future.add_done_callback(lambda done: self._clear_inflight(message_id, done))
        try:
            return future.result(timeout=max(deadline - time.monotonic(), 0))
        except FutureTimeoutError:
            if future.cancel():
                logger.warning(f"Store for {message_id} timed out before it started; dropped")
            else:
                logger.warning(f"Store for {message_id} timed out while running; it may still land")
            raise PersistenceError(
                f"Store timed out after {self.persistence_timeout}s",
                message_id
            )

    def _clear_inflight(self, message_id: str, future: Future) -> None:
        with self._inflight_lock:
            if self._inflight.get(message_id) is future:
                del self._inflight[message_id]

    def _stage_tags(self, stage: Stage) -> Dict[str, str]:
        return {'pipeline': self.pipeline.name, 'stage': stage.name}

    def _observe_stage(self, started: float, tags: Dict[str, str]) -> None:
        self._observe('stage.latency_ms', (time.perf_counter() - started) * 1000, tags)

    def _increment(self, name: str, tags: Dict[str, str]) -> None:
        try:
            self.meter.increment(name, tags)
        except Exception as e:
            logger.warning(f"Metering failed for {name}: {e}")

    def _observe(self, name: str, value: float, tags: Dict[str, str]) -> None:
        try:
            self.meter.observe(name, value, tags)
        except Exception as e:
            logger.warning(f"Metering failed for {name}: {e}")

    def _log_outcome(self, result: ProcessingResult, elapsed_ms: float) -> None:
        outcome = result.outcome
        if not result.persisted or outcome.kind in (OutcomeKind.FAILED, OutcomeKind.CANCELLED):
            logger.warning(f"Message {result.message_id} finished as {result!r} ({elapsed_ms:.1f}ms)")
        elif outcome.is_processed:
            logger.info(f"Processed message {result.message_id} in {elapsed_ms:.1f}ms")
        else:
            logger.info(f"Message {result.message_id} finished as {outcome!r} ({elapsed_ms:.1f}ms)")

    def shutdown(self) -> None:
        """Release the persistence executor, if one was created."""
        if self._store_executor is not None:
            self._store_executor.shutdown(wait=True)

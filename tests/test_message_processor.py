"""
Tests for MessageProcessor (pipeline execution engine).
"""

import threading
import time
import pytest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock
import sys
import os

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

from domain.errors import PersistenceError, StageRejection
from domain.message_processing import MessageProcessingBuilder, StagePolicy
from domain.message_processor import MessageProcessor
from domain.models import Message, OutcomeKind
from services.stats import Meter, Stats


class SpyStage:
    """Records every value it sees and passes it on (optionally transformed)."""

    def __init__(self, fn=None):
        self.calls = []
        self.fn = fn

    def __call__(self, value):
        self.calls.append(value)
        return self.fn(value) if self.fn else value


class GatedPersistence:
    """Persistence wrapper whose matching stores block until release is set."""

    def __init__(self, persistence, gated_ids=(), gated_outcomes=()):
        self.persistence = persistence
        self.gated_ids = set(gated_ids)
        self.gated_outcomes = set(gated_outcomes)
        self.started = threading.Event()
        self.release = threading.Event()
        self.finished = threading.Event()

    def store(self, record):
        if record.message_id in self.gated_ids or record.outcome in self.gated_outcomes:
            self.started.set()
            self.release.wait(timeout=5)
            stored = self.persistence.store(record)
            self.finished.set()
            return stored
        return self.persistence.store(record)


def reject(reason):
    def stage(value):
        raise StageRejection(reason)
    return stage


def fail(error):
    def stage(value):
        raise error
    return stage


def build(*stages):
    builder = MessageProcessingBuilder(name="test")
    for name, transform, policy in stages:
        builder.add_stage(name, transform, policy=policy)
    return builder.build()


FATAL = StagePolicy.FATAL
CONTINUE = StagePolicy.CONTINUE


class TestStageExecution:
    """Test ordering, rejection and failure policies."""

    def test_all_stages_succeed(self, persistence, meter):
        """Test final result is s_n applied after s_1..s_n-1."""
        pipeline = build(
            ("add", lambda m: m.with_payload(m.payload + 1), FATAL),
            ("double", lambda m: m.with_payload(m.payload * 2), FATAL),
            ("square", lambda m: m.with_payload(m.payload ** 2), FATAL),
        )
        processor = MessageProcessor(pipeline, persistence, meter)

        result = processor.process(Message.create(2, message_id="m1"))

        assert result.outcome.kind is OutcomeKind.PROCESSED
        assert result.outcome.stage == "square"
        assert result.outcome.result.payload == 36
        assert result.success is True

    def test_rejection_halts_pipeline(self, persistence, meter):
        """Test no stage after a rejecting stage ever observes the message."""
        spy = SpyStage()
        pipeline = build(
            ("first", lambda m: m, FATAL),
            ("gate", reject("not for us"), FATAL),
            ("spy", spy, FATAL),
        )
        processor = MessageProcessor(pipeline, persistence, meter)

        result = processor.process(Message.create("x", message_id="m1"))

        assert result.outcome.kind is OutcomeKind.REJECTED
        assert result.outcome.stage == "gate"
        assert result.outcome.reason == "not for us"
        assert spy.calls == []

    def test_rejection_in_continue_stage_still_halts(self, persistence, meter):
        """Test rejection is not a failure, so CONTINUE does not apply."""
        spy = SpyStage()
        pipeline = build(("gate", reject("no"), CONTINUE), ("spy", spy, FATAL))

        result = MessageProcessor(pipeline, persistence, meter).process(Message.create("x"))

        assert result.outcome.kind is OutcomeKind.REJECTED
        assert spy.calls == []

    def test_fatal_failure_halts_pipeline(self, persistence, meter):
        spy = SpyStage()
        error = RuntimeError("boom")
        pipeline = build(("explode", fail(error), FATAL), ("spy", spy, FATAL))

        result = MessageProcessor(pipeline, persistence, meter).process(Message.create("x", message_id="m1"))

        assert result.outcome.kind is OutcomeKind.FAILED
        assert result.outcome.stage == "explode"
        assert result.outcome.error is error
        assert spy.calls == []

    def test_continue_failure_carries_last_good_value(self, persistence, meter):
        """Test a skipped stage hands the previous stage's output to the next one."""
        spy = SpyStage()
        pipeline = build(
            ("tag", lambda m: m.with_attributes(tagged=True), FATAL),
            ("flaky", fail(ValueError("flaky")), CONTINUE),
            ("spy", spy, FATAL),
        )

        result = MessageProcessor(pipeline, persistence, meter).process(Message.create("x", message_id="m1"))

        assert result.outcome.kind is OutcomeKind.PROCESSED
        assert len(spy.calls) == 1
        assert spy.calls[0].attributes == {"tagged": True}
        assert [s.stage for s in result.outcome.skipped] == ["flaky"]

    def test_continue_failure_as_last_stage(self, persistence, meter):
        pipeline = build(
            ("tag", lambda m: m.with_attributes(tagged=True), FATAL),
            ("flaky", fail(ValueError("flaky")), CONTINUE),
        )

        result = MessageProcessor(pipeline, persistence, meter).process(Message.create("x"))

        assert result.outcome.kind is OutcomeKind.PROCESSED
        assert result.outcome.stage == "flaky"
        assert result.outcome.result.attributes == {"tagged": True}

    def test_empty_payload_passes_through(self, persistence, meter):
        """Test the processor itself never judges payloads."""
        spy = SpyStage()
        pipeline = build(("spy", spy, FATAL))

        result = MessageProcessor(pipeline, persistence, meter).process(Message.create("", message_id="e1"))

        assert result.outcome.kind is OutcomeKind.PROCESSED
        assert len(spy.calls) == 1

    def test_stage_exceptions_never_escape(self, persistence, meter):
        pipeline = build(("explode", fail(KeyError("missing")), FATAL))

        result = MessageProcessor(pipeline, persistence, meter).process(Message.create("x"))

        assert result.outcome.kind is OutcomeKind.FAILED


class TestPersistence:
    """Test exactly-one-store semantics and persistence failures."""

    @pytest.mark.parametrize("transform,expected", [
        (lambda m: m, OutcomeKind.PROCESSED),
        (reject("no"), OutcomeKind.REJECTED),
        (fail(RuntimeError("boom")), OutcomeKind.FAILED),
    ])
    def test_exactly_one_store_per_process(self, meter, transform, expected):
        persistence = Mock()
        persistence.store.return_value = True
        pipeline = build(("only", transform, FATAL))

        result = MessageProcessor(pipeline, persistence, meter).process(Message.create("x", message_id="m1"))

        assert result.outcome.kind is expected
        persistence.store.assert_called_once()
        record = persistence.store.call_args[0][0]
        assert record.message_id == "m1"
        assert record.outcome == expected.value

    def test_cancelled_run_is_stored_once(self, meter):
        persistence = Mock()
        cancel_event = threading.Event()
        cancel_event.set()
        pipeline = build(("only", lambda m: m, FATAL))

        result = MessageProcessor(pipeline, persistence, meter).process(
            Message.create("x", message_id="m1"), cancel_event
        )

        assert result.outcome.kind is OutcomeKind.CANCELLED
        persistence.store.assert_called_once()
        assert persistence.store.call_args[0][0].outcome == "cancelled"

    def test_persistence_error_reported_separately(self, meter):
        persistence = Mock()
        persistence.store.side_effect = PersistenceError("backend unavailable", "m1")
        pipeline = build(("only", lambda m: m, FATAL))

        result = MessageProcessor(pipeline, persistence, meter).process(Message.create("x", message_id="m1"))

        assert result.outcome.kind is OutcomeKind.PROCESSED
        assert isinstance(result.persistence_error, PersistenceError)
        assert result.should_retry is True
        assert meter.count("persistence.failed", {"pipeline": "test", "outcome": "processed"}) == 1

    def test_unexpected_persistence_exception_wrapped(self, meter):
        persistence = Mock()
        persistence.store.side_effect = OSError("disk full")
        pipeline = build(("only", lambda m: m, FATAL))

        result = MessageProcessor(pipeline, persistence, meter).process(Message.create("x"))

        assert isinstance(result.persistence_error, PersistenceError)
        assert isinstance(result.persistence_error.__cause__, OSError)

    def test_persistence_timeout(self, meter):
        persistence = Mock()
        persistence.store.side_effect = lambda record: time.sleep(0.5)
        pipeline = build(("only", lambda m: m, FATAL))
        processor = MessageProcessor(pipeline, persistence, meter, persistence_timeout=0.05)

        try:
            result = processor.process(Message.create("x", message_id="slow"))
        finally:
            processor.shutdown()

        assert isinstance(result.persistence_error, PersistenceError)
        assert "timed out" in str(result.persistence_error)

    def test_timed_out_store_is_never_overtaken(self, persistence, meter):
        """Test a newer outcome for an id is not overwritten by a late earlier write."""
        gated = GatedPersistence(persistence, gated_outcomes={"cancelled"})
        processor = MessageProcessor(
            build(("only", lambda m: m, FATAL)), gated, meter, persistence_timeout=0.2
        )
        cancel_event = threading.Event()
        cancel_event.set()

        try:
            first = processor.process(Message.create("x", message_id="m"), cancel_event)
            assert first.outcome.kind is OutcomeKind.CANCELLED
            assert "timed out" in str(first.persistence_error)
            assert gated.started.wait(timeout=2) is True

            blocked = processor.process(Message.create("x", message_id="m"))
            assert blocked.outcome.kind is OutcomeKind.PROCESSED
            assert "still in flight" in str(blocked.persistence_error)
            assert persistence.get("m") is None

            gated.release.set()
            assert gated.finished.wait(timeout=2) is True
            retried = processor.process(Message.create("x", message_id="m"))
        finally:
            gated.release.set()
            processor.shutdown()

        assert retried.persisted is True
        assert persistence.get("m").outcome == "processed"

    def test_timed_out_queued_store_never_runs(self, persistence, meter):
        """Test a store still waiting for a worker is dropped when it times out."""
        gated = GatedPersistence(persistence, gated_ids={f"busy-{i}" for i in range(4)})
        processor = MessageProcessor(
            build(("only", lambda m: m, FATAL)), gated, meter, persistence_timeout=0.2
        )

        try:
            for i in range(4):
                processor.process(Message.create("x", message_id=f"busy-{i}"))
            queued = processor.process(Message.create("x", message_id="queued"))
        finally:
            gated.release.set()
            processor.shutdown()

        assert "timed out" in str(queued.persistence_error)
        assert persistence.get("queued") is None
        assert persistence.count() == 4

    def test_duplicate_identifier_is_reprocessed(self, persistence, meter):
        """Test a message already on record still runs through the pipeline."""
        spy = SpyStage()
        processor = MessageProcessor(build(("spy", spy, FATAL)), persistence, meter)

        first = processor.process(Message.create("x", message_id="dup"))
        second = processor.process(Message.create("x", message_id="dup"))

        assert len(spy.calls) == 2
        assert first.stored is True
        assert second.stored is False
        assert persistence.count() == 1


class TestCancellation:
    """Test cancellation between stages."""

    def test_cancel_before_first_stage(self, persistence, meter):
        spy = SpyStage()
        cancel_event = threading.Event()
        cancel_event.set()
        processor = MessageProcessor(build(("spy", spy, FATAL)), persistence, meter)

        result = processor.process(Message.create("x", message_id="c1"), cancel_event)

        assert result.outcome.kind is OutcomeKind.CANCELLED
        assert result.outcome.result is None
        assert spy.calls == []
        record = persistence.get("c1")
        assert record.outcome == "cancelled"
        assert record.payload is None

    def test_cancel_between_stages_keeps_partial_result(self, persistence, meter):
        """Test a stage is never interrupted, but the next one never starts."""
        cancel_event = threading.Event()
        spy = SpyStage()

        def first(message):
            cancel_event.set()
            return message.with_payload("partial")

        processor = MessageProcessor(
            build(("first", first, FATAL), ("spy", spy, FATAL)), persistence, meter
        )

        result = processor.process(Message.create("x", message_id="c2"), cancel_event)

        assert result.outcome.kind is OutcomeKind.CANCELLED
        assert result.outcome.stage == "first"
        assert result.outcome.result.payload == "partial"
        assert spy.calls == []
        assert persistence.get("c2").payload == "partial"


class TestMetering:
    """Test metric recording and fail-open behavior."""

    def test_stage_and_pipeline_metrics(self, persistence, meter):
        pipeline = build(
            ("ok", lambda m: m, FATAL),
            ("flaky", fail(ValueError("x")), CONTINUE),
            ("gate", reject("no"), FATAL),
        )

        MessageProcessor(pipeline, persistence, meter).process(Message.create("x"))

        assert meter.count("stage.entered", {"pipeline": "test", "stage": "ok"}) == 1
        assert meter.count("stage.succeeded", {"pipeline": "test", "stage": "ok"}) == 1
        assert meter.count("stage.failed", {"pipeline": "test", "stage": "flaky", "fatal": "false"}) == 1
        assert meter.count("stage.rejected", {"pipeline": "test", "stage": "gate"}) == 1
        assert meter.count("pipeline.completed", {"pipeline": "test", "outcome": "rejected"}) == 1
        assert meter.count("persistence.stored", {"pipeline": "test", "outcome": "rejected"}) == 1

        snapshot = meter.snapshot()
        assert snapshot["pipeline.latency_ms{outcome=rejected,pipeline=test}"]["count"] == 1
        assert snapshot["stage.latency_ms{pipeline=test,stage=ok}"]["count"] == 1
        # Rejection is not an error
        assert "stage.failed{fatal=true,pipeline=test,stage=gate}" not in snapshot

    def test_fatal_failure_metric(self, persistence, meter):
        pipeline = build(("explode", fail(RuntimeError("x")), FATAL))

        MessageProcessor(pipeline, persistence, meter).process(Message.create("x"))

        assert meter.count("stage.failed", {"pipeline": "test", "stage": "explode", "fatal": "true"}) == 1
        assert meter.count("pipeline.completed", {"pipeline": "test", "outcome": "failed"}) == 1

    def test_broken_meter_storage_does_not_change_outcome(self, persistence):
        """Test a Meter whose internal storage fails never breaks processing."""
        stats = Mock(spec=Stats)
        stats.record_count.side_effect = RuntimeError("metrics storage broken")
        stats.record_sample.side_effect = RuntimeError("metrics storage broken")
        broken_meter = Meter(stats=stats)
        pipeline = build(("ok", lambda m: m.with_payload("done"), FATAL))

        result = MessageProcessor(pipeline, persistence, broken_meter).process(
            Message.create("x", message_id="m1")
        )

        assert result.outcome.kind is OutcomeKind.PROCESSED
        assert result.outcome.result.payload == "done"
        assert persistence.exists("m1") is True

    def test_raising_meter_does_not_change_outcome(self, persistence):
        """Test even a meter that raises from its public API is contained."""
        raising_meter = Mock()
        raising_meter.increment.side_effect = RuntimeError("boom")
        raising_meter.observe.side_effect = RuntimeError("boom")
        pipeline = build(("gate", reject("empty payload"), FATAL))

        result = MessageProcessor(pipeline, persistence, raising_meter).process(
            Message.create("", message_id="m2")
        )

        assert result.outcome.kind is OutcomeKind.REJECTED
        assert persistence.get("m2").outcome == "rejected"


class TestConcurrency:
    """Test concurrent process() calls against shared collaborators."""

    def test_concurrent_distinct_messages(self, persistence, backend):
        def slow(message):
            time.sleep(0.001)
            return message.with_attributes(seen=True)

        meter = Meter()
        pipeline = build(
            ("slow", slow, FATAL),
            ("flaky", fail(ValueError("x")), CONTINUE),
        )
        processor = MessageProcessor(pipeline, persistence, meter)
        messages = [Message.create(f"payload-{i}", message_id=f"msg-{i}") for i in range(200)]

        with ThreadPoolExecutor(max_workers=16) as executor:
            results = list(executor.map(processor.process, messages))

        assert all(r.outcome.kind is OutcomeKind.PROCESSED for r in results)
        assert all(r.stored for r in results)
        assert persistence.count() == 200
        assert sorted(backend.message_ids()) == sorted(m.message_id for m in messages)
        assert meter.count("pipeline.completed", {"pipeline": "test", "outcome": "processed"}) == 200
        assert meter.count("stage.entered", {"pipeline": "test", "stage": "slow"}) == 200
        assert meter.snapshot()["pipeline.latency_ms{outcome=processed,pipeline=test}"]["count"] == 200


if __name__ == '__main__':
    pytest.main([__file__, '-v'])

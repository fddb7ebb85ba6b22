"""Tests for the idempotency coordinator."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from conftest import FakeClassifier, FakeResolver, RacingStore, upload

from detectx.errors import InvariantViolation, MalformedContent, TransientUpstreamError
from detectx.models import ClassificationRecord, ContentFingerprint, InsertOutcome
from detectx.pipeline.coordinator import IdempotencyCoordinator, OutcomeStatus
from detectx.pipeline.result_store import InMemoryResultStore

# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    def test_cat_is_classified_and_stored(
        self, coordinator: IdempotencyCoordinator, store: InMemoryResultStore
    ) -> None:
        outcome = coordinator.process(upload("cat1.jpg"))

        assert outcome.status is OutcomeStatus.CLASSIFIED
        assert outcome.fingerprint == "abc123"
        assert outcome.result is not None
        assert outcome.result.is_match is True
        assert outcome.result.source_locator == "https://uploads.s3.amazonaws.com/cat1.jpg"

        record = store.lookup(ContentFingerprint("abc123"))
        assert record is not None
        assert record.is_match is True
        assert record.source_locator == "https://uploads.s3.amazonaws.com/cat1.jpg"

    def test_redelivery_is_served_from_cache(
        self, coordinator: IdempotencyCoordinator, classifier: FakeClassifier, store: InMemoryResultStore
    ) -> None:
        first = coordinator.process(upload("cat1.jpg"))
        second = coordinator.process(upload("cat1.jpg"))

        assert first.status is OutcomeStatus.CLASSIFIED
        assert second.status is OutcomeStatus.CACHE_HIT
        assert second.result is not None
        assert second.result.is_match is True
        assert classifier.calls == ["cat1.jpg"]
        assert len(store) == 1

    def test_identical_content_under_another_key_hits_cache(
        self, coordinator: IdempotencyCoordinator, classifier: FakeClassifier, store: InMemoryResultStore
    ) -> None:
        original = coordinator.process(upload("dog1.jpg"))
        copy = coordinator.process(upload("dog-copy.jpg"))

        assert original.result is not None
        assert original.result.is_match is False
        assert copy.status is OutcomeStatus.CACHE_HIT
        assert copy.fingerprint == "def456"
        assert copy.result is not None
        assert copy.result.is_match is False
        assert copy.result.source_locator == "https://uploads.s3.amazonaws.com/dog-copy.jpg"
        assert classifier.calls == ["dog1.jpg"]

        record = store.lookup(ContentFingerprint("def456"))
        assert record is not None
        assert record.source_locator.endswith("/dog1.jpg")

    def test_deleted_object_is_a_terminal_no_op(
        self, coordinator: IdempotencyCoordinator, classifier: FakeClassifier, store: InMemoryResultStore
    ) -> None:
        outcome = coordinator.process(upload("deleted.jpg"))

        assert outcome.status is OutcomeStatus.SKIPPED
        assert outcome.acknowledged is True
        assert outcome.retryable is False
        assert outcome.result is None
        assert classifier.calls == []
        assert len(store) == 0


# ---------------------------------------------------------------------------
# Failure classification
# ---------------------------------------------------------------------------


class TestFailures:
    def test_metadata_timeout_is_retryable(
        self, coordinator: IdempotencyCoordinator, resolver: FakeResolver, store: InMemoryResultStore
    ) -> None:
        resolver.error = TransientUpstreamError("Read timeout", service_name="s3")

        outcome = coordinator.process(upload("cat1.jpg"))

        assert outcome.status is OutcomeStatus.RETRY
        assert outcome.retryable is True
        assert isinstance(outcome.error, TransientUpstreamError)
        assert len(store) == 0

    def test_labeling_timeout_is_retryable_and_writes_nothing(
        self, coordinator: IdempotencyCoordinator, classifier: FakeClassifier, store: InMemoryResultStore
    ) -> None:
        classifier.error = TransientUpstreamError("DetectLabels failed: ThrottlingException", "rekognition")

        outcome = coordinator.process(upload("cat1.jpg"))

        assert outcome.retryable is True
        assert outcome.fingerprint == "abc123"
        assert len(store) == 0

    def test_malformed_content_is_terminal(
        self, coordinator: IdempotencyCoordinator, classifier: FakeClassifier, store: InMemoryResultStore
    ) -> None:
        classifier.error = MalformedContent("not an image", "rekognition")

        outcome = coordinator.process(upload("notes.txt"))

        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.acknowledged is True
        assert "not an image" in outcome.to_dict()["error"]  # type: ignore[operator]
        assert len(store) == 0

    def test_retry_after_persist_becomes_cache_hit(
        self, resolver: FakeResolver, classifier: FakeClassifier
    ) -> None:
        """A record persisted before a lost acknowledgement is reused on redelivery."""

        class FlakyStore(InMemoryResultStore):
            def __init__(self) -> None:
                super().__init__()
                self.fail_after_insert = True

            def try_insert(self, record: ClassificationRecord) -> InsertOutcome:
                outcome = super().try_insert(record)
                if self.fail_after_insert:
                    self.fail_after_insert = False
                    raise TransientUpstreamError("connection reset after write", "dynamodb")
                return outcome

        store = FlakyStore()
        coordinator = IdempotencyCoordinator(resolver=resolver, store=store, classifier=classifier)

        first = coordinator.process(upload("cat1.jpg"))
        second = coordinator.process(upload("cat1.jpg"))

        assert first.retryable is True
        assert second.status is OutcomeStatus.CACHE_HIT
        assert second.result is not None
        assert second.result.is_match is True
        assert classifier.calls == ["cat1.jpg"]

    def test_invariant_violation_propagates(self, resolver: FakeResolver, classifier: FakeClassifier) -> None:
        class BrokenStore(InMemoryResultStore):
            def try_insert(self, record: ClassificationRecord) -> InsertOutcome:
                raise InvariantViolation("conflict reported but no record stored")

        coordinator = IdempotencyCoordinator(resolver=resolver, store=BrokenStore(), classifier=classifier)

        with pytest.raises(InvariantViolation, match="no record stored"):
            coordinator.process(upload("cat1.jpg"))


# ---------------------------------------------------------------------------
# Convergence under races
# ---------------------------------------------------------------------------


class TestConvergence:
    def test_losing_writer_adopts_stored_answer(self, resolver: FakeResolver, classifier: FakeClassifier) -> None:
        store = RacingStore(competing_match=False)
        coordinator = IdempotencyCoordinator(resolver=resolver, store=store, classifier=classifier)

        outcome = coordinator.process(upload("cat1.jpg"))

        assert outcome.status is OutcomeStatus.CONVERGED
        assert outcome.result is not None
        # The locally computed True is discarded in favour of the stored False.
        assert outcome.result.is_match is False
        record = store.lookup(ContentFingerprint("abc123"))
        assert record is not None
        assert record.is_match is False
        assert record.source_locator.endswith("/other-worker.jpg")

    def test_concurrent_first_deliveries_store_one_record(
        self, resolver: FakeResolver, classifier: FakeClassifier, store: InMemoryResultStore
    ) -> None:
        workers = 8
        classifier.barrier = threading.Barrier(workers)
        coordinator = IdempotencyCoordinator(resolver=resolver, store=store, classifier=classifier)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(lambda _: coordinator.process(upload("cat1.jpg")), range(workers)))

        statuses = [outcome.status for outcome in outcomes]
        assert statuses.count(OutcomeStatus.CLASSIFIED) == 1
        assert statuses.count(OutcomeStatus.CONVERGED) == workers - 1
        assert {outcome.result.is_match for outcome in outcomes if outcome.result} == {True}
        assert len(store) == 1

    def test_concurrent_duplicates_across_keys_converge(
        self, resolver: FakeResolver, classifier: FakeClassifier, store: InMemoryResultStore
    ) -> None:
        keys = ["dog1.jpg", "dog-copy.jpg"] * 5
        coordinator = IdempotencyCoordinator(resolver=resolver, store=store, classifier=classifier)

        with ThreadPoolExecutor(max_workers=4) as pool:
            outcomes = list(pool.map(lambda key: coordinator.process(upload(key)), keys))

        assert len(store) == 1
        assert all(outcome.result is not None and outcome.result.is_match is False for outcome in outcomes)
        assert {outcome.fingerprint for outcome in outcomes} == {"def456"}

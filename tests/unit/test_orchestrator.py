from __future__ import annotations

import itertools
import threading
from unittest.mock import Mock

import pytest

from chunk_import.errors import (
    ConfigurationError,
    ImportCancelled,
    PersistenceError,
    SourceReadError,
    ValidationError,
)
from chunk_import.models.failure import Failure
from chunk_import.models.import_result import ImportState
from chunk_import.models.session import ImportSession
from chunk_import.rules.evaluator import RuleEvaluator
from chunk_import.services.orchestrator import ImportOrchestrator, run_import
from conftest import FakeStoreCursor, StoreConsumer

EMAILS = [["a@x.com"], ["bad"], ["c@x.com"]]


def orchestrate(store, consumer, rules=None, **session_kwargs) -> ImportOrchestrator:
    session = ImportSession(**session_kwargs)
    evaluator = RuleEvaluator(rules or {"0": "email"})
    return ImportOrchestrator(session, evaluator, consumer, store)


def committed_positions(store: FakeStoreCursor) -> list[int]:
    return [r["_position"] for r in store.committed]


class TestValidationPolicies:
    def test_aggregate_validation_error_persists_nothing(self, store, consumer):
        orch = orchestrate(store, consumer, chunk_size=3)
        with pytest.raises(ValidationError) as exc_info:
            orch.run(EMAILS)
        assert exc_info.value.failures == [Failure(row=2, attribute="0", errors=("invalid email",))]
        assert store.committed == []
        assert orch.state is ImportState.COMPLETE
        assert orch.result is not None
        assert orch.result.rolled_back_chunks == 1
        assert orch.result.persisted_rows == 0

    def test_skip_on_failure_persists_valid_rows(self, store, consumer):
        on_failure = Mock()
        orch = orchestrate(store, consumer, chunk_size=3, skip_on_failure=True, on_failure=on_failure)
        result = orch.run(EMAILS)
        on_failure.assert_called_once_with([Failure(row=2, attribute="0", errors=("invalid email",))])
        assert committed_positions(store) == [1, 3]
        assert result.state is ImportState.COMPLETE
        assert (result.committed_chunks, result.persisted_rows, result.failures) == (1, 2, 1)
        assert not result.succeeded

    def test_fail_fast_keeps_earlier_commits(self, store, consumer):
        rows = [["a@x.com"], ["b@x.com"], ["bad"], ["d@x.com"], ["bad2"], ["f@x.com"]]
        orch = orchestrate(store, consumer, chunk_size=2, fail_fast=True)
        with pytest.raises(ValidationError) as exc_info:
            orch.run(rows)
        assert [f.row for f in exc_info.value.failures] == [3]
        assert committed_positions(store) == [1, 2]
        assert orch.state is ImportState.ABORTED
        assert orch.result is not None
        assert [s.status for s in orch.result.chunk_stats] == ["committed", "rolled_back"]

    def test_gather_all_validates_every_chunk_without_committing_later_ones(self, store, consumer):
        rows = [["a@x.com"], ["b@x.com"], ["bad"], ["d@x.com"], ["e@x.com"], ["bad2"]]
        orch = orchestrate(store, consumer, chunk_size=2)
        with pytest.raises(ValidationError) as exc_info:
            orch.run(rows)
        # 失敗後のチャンクも検証されるが、コミットはされない
        assert [f.row for f in exc_info.value.failures] == [3, 6]
        assert committed_positions(store) == [1, 2]
        assert orch.result.committed_chunks == 1
        assert orch.result.rolled_back_chunks == 2
        assert orch.result.rows_read == 6

    def test_wildcard_distinct_is_chunk_local(self, store, consumer):
        rows = [["a"], ["a"], ["a"]]
        orch = orchestrate(store, consumer, rules={"*.0": "distinct"}, chunk_size=2, skip_on_failure=True, on_failure=Mock())
        orch.run(rows)
        # 3 行目は別チャンクのため重複扱いされない
        assert committed_positions(store) == [1, 3]


class TestPersistencePolicies:
    def test_persistence_error_aborts_and_rolls_back_current_chunk(self, store):
        consumer = StoreConsumer(store, fail_positions=[3])
        orch = orchestrate(store, consumer, rules={"0": "required"}, chunk_size=2)
        with pytest.raises(PersistenceError) as exc_info:
            orch.run([["a"], ["b"], ["c"], ["d"], ["e"]])
        assert exc_info.value.row == 3
        assert exc_info.value.chunk == 2
        assert committed_positions(store) == [1, 2]
        assert orch.state is ImportState.ABORTED
        assert not store.in_transaction
        assert store.statements[-1] == "ROLLBACK"
        # 5 行目以降は読まれない
        assert orch.result.rows_read == 4

    def test_skip_on_error_skips_only_the_failing_row(self, store):
        errors: list[PersistenceError] = []
        consumer = StoreConsumer(store, fail_positions=[2])
        orch = orchestrate(
            store, consumer, rules={"0": "required"}, chunk_size=3,
            skip_on_error=True, on_error=errors.append,
        )
        result = orch.run([["a"], ["b"], ["c"]])
        assert committed_positions(store) == [1, 3]
        assert [e.row for e in errors] == [2]
        assert result.skipped_errors == 1
        assert result.persisted_rows == 2

    def test_commit_failure_aborts(self):
        store = FakeStoreCursor(fail_on=["COMMIT"])
        orch = orchestrate(store, StoreConsumer(store), rules={"0": "required"}, chunk_size=2)
        with pytest.raises(PersistenceError, match="commit failed"):
            orch.run([["a"], ["b"]])
        assert orch.state is ImportState.ABORTED
        assert orch.result.rolled_back_chunks == 1

    def test_batch_inserts_use_persist_many(self, store, consumer):
        orch = orchestrate(store, consumer, rules={"0": "required"}, chunk_size=2, batch_inserts=True)
        result = orch.run([["a"], ["b"], ["c"]])
        assert consumer.batches == [2, 1]
        assert result.persisted_rows == 3


class TestFatalPaths:
    def test_source_error_mid_stream_keeps_committed_chunks(self, store, consumer):
        def source():
            yield ["a@x.com"]
            yield ["b@x.com"]
            yield ["c@x.com"]
            raise OSError("disk read failed")

        orch = orchestrate(store, consumer, chunk_size=2)
        with pytest.raises(SourceReadError) as exc_info:
            orch.run(source())
        assert exc_info.value.position == 4
        assert committed_positions(store) == [1, 2]
        assert orch.state is ImportState.ABORTED

    def test_non_sequence_row_is_source_error(self, store, consumer):
        with pytest.raises(SourceReadError):
            orchestrate(store, consumer).run([["a@x.com"], 42])

    def test_unknown_rule_reference_is_configuration_error(self, store, consumer):
        orch = orchestrate(store, consumer, rules={"phone": "required"}, use_heading_row=True)
        with pytest.raises(ConfigurationError):
            orch.run([["name", "email"], ["a", "a@x.com"]])
        assert store.statements == []
        assert orch.state is ImportState.ABORTED

    def test_cancel_stops_pulling_rows(self, store, consumer):
        orch = orchestrate(store, consumer, rules={"0": "required"}, chunk_size=2)

        def source():
            yield ["a"]
            yield ["b"]
            orch.cancel()
            yield ["c"]
            yield ["d"]

        with pytest.raises(ImportCancelled):
            orch.run(source())
        assert orch.cancelled
        assert committed_positions(store) == [1, 2]
        assert orch.result.rows_read <= 3

    def test_abort_stops_read_ahead_pulling_rows(self):
        released = threading.Event()
        pulled: list[int] = []

        class GatedStore(FakeStoreCursor):
            def execute(self, sql, params=None):
                super().execute(sql, params)
                if sql == "ROLLBACK":
                    released.set()

        store = GatedStore()
        orch = orchestrate(store, StoreConsumer(store, fail_positions=[2]), rules={"0": "required"},
                           chunk_size=3, read_ahead=True)

        def source():
            for n in itertools.count(1):
                # 5 行目以降は中断のロールバックまで待つ
                if n >= 5:
                    released.wait(5)
                pulled.append(n)
                yield [f"v{n}"]

        with pytest.raises(PersistenceError):
            orch.run(source())
        assert orch.state is ImportState.ABORTED
        assert not orch.cancelled
        # 2 チャンク目 (4-6 行目) は組み立て途中で打ち切られる
        assert max(pulled) <= 5

    def test_runs_only_once(self, store, consumer):
        orch = orchestrate(store, consumer)
        orch.run([["a@x.com"]])
        with pytest.raises(RuntimeError):
            orch.run([["a@x.com"]])


class TestStreaming:
    def test_heading_row_positions_and_attributes(self, store, consumer):
        orch = orchestrate(
            store, consumer, rules={"email": "email"}, chunk_size=10,
            use_heading_row=True, skip_on_failure=True, on_failure=Mock(),
        )
        orch.run([["Name", "Email"], ["Alice", "a@x.com"], ["Bob", "nope"]])
        assert store.committed == [{"_position": 2, "name": "Alice", "email": "a@x.com"}]

    def test_skip_empty_rows(self, store, consumer):
        orch = orchestrate(store, consumer, rules={"0": "required"}, skip_empty_rows=True)
        result = orch.run([["a"], [None, ""], ["c"]])
        assert committed_positions(store) == [1, 3]
        assert result.rows_read == 2

    def test_disabled_chunking_is_all_or_nothing(self, store, consumer):
        rows = [[f"u{i}@x.com"] for i in range(50)] + [["bad"]]
        orch = orchestrate(store, consumer, chunk_size=None, fail_fast=True)
        with pytest.raises(ValidationError):
            orch.run(rows)
        assert store.committed == []
        assert store.statements == ["BEGIN", "ROLLBACK"]

    def test_empty_source_completes(self, store, consumer):
        result = orchestrate(store, consumer).run([])
        assert result.state is ImportState.COMPLETE
        assert result.total_chunks == 0
        assert result.succeeded

    def test_read_ahead_commits_in_chunk_order(self, store, consumer):
        rows = [[f"u{i}@x.com"] for i in range(25)]
        orch = orchestrate(store, consumer, chunk_size=4, read_ahead=True)
        result = orch.run(rows)
        assert committed_positions(store) == list(range(1, 26))
        assert result.committed_chunks == 7
        assert [s.index for s in result.chunk_stats] == list(range(1, 8))

    def test_progress_advanced_per_chunk(self, store, consumer):
        progress = Mock()
        session = ImportSession(chunk_size=2)
        orch = ImportOrchestrator(session, RuleEvaluator({"0": "email"}), consumer, store, progress=progress)
        orch.run([["a@x.com"], ["b@x.com"], ["c@x.com"]])
        assert [c.args[0] for c in progress.advance.call_args_list] == [2, 1]
        progress.set_postfix.assert_called_with(committed=2, failures=0)

    def test_validation_of_next_chunk_waits_for_previous_commit(self, store):
        seen_open: list[bool] = []

        class Probe(StoreConsumer):
            def persist(self, row, attributes):
                seen_open.append(self.cursor.in_transaction)
                super().persist(row, attributes)

        evaluator = RuleEvaluator({"0": "email"})
        original = evaluator.evaluate_chunk

        def evaluate_chunk(rows, attributes):
            # 検証開始時点で前チャンクのスコープは閉じている
            assert not store.in_transaction
            return original(rows, attributes)

        evaluator.evaluate_chunk = evaluate_chunk
        orch = ImportOrchestrator(ImportSession(chunk_size=1), evaluator, Probe(store), store)
        orch.run([["a@x.com"], ["b@x.com"]])
        assert seen_open == [True, True]


def test_run_import_builds_evaluator_from_session(store, consumer):
    session = ImportSession(
        chunk_size=3,
        skip_on_failure=True,
        custom_messages={"0.email": ":attribute looks wrong"},
        custom_attributes={"0": "Email"},
        on_failure=Mock(),
    )
    result = run_import(EMAILS, session, {"0": "email"}, consumer, store)
    session.on_failure.assert_called_once_with([Failure(row=2, attribute="0", errors=("Email looks wrong",))])
    assert result.persisted_rows == 2


def test_cancel_from_another_thread(store):
    started = threading.Event()

    class Signalling(StoreConsumer):
        def persist(self, row, attributes):
            started.set()
            super().persist(row, attributes)

    orch = orchestrate(store, Signalling(store), rules={"0": "required"}, chunk_size=5)

    def cancel_when_started():
        started.wait(timeout=5)
        orch.cancel()

    canceller = threading.Thread(target=cancel_when_started)
    canceller.start()
    with pytest.raises(ImportCancelled):
        orch.run([f"r{i}"] for i in itertools.count())
    canceller.join(timeout=5)
    assert orch.state is ImportState.ABORTED
    assert not store.in_transaction
    # コミット済みチャンクは常に完全な 5 行単位
    assert len(store.committed) % 5 == 0

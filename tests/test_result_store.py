"""Tests for SharedResultStore and AggregatedKeyFiles."""

import threading
from pathlib import Path

import pytest

from keyrack.models import JobOutcome, JobStatus
from keyrack.result_store import AggregatedKeyFiles, SharedResultStore


def outcome_for(index: int) -> JobOutcome:
    """Every third job fails, every fifth is a partial success."""
    project_id = f"proj-{index:03d}"
    if index % 3 == 0:
        return JobOutcome.failure(project_id, "service_account: denied")
    key_path = Path(f"/keys/{project_id}-vertex-admin-20240101-000000.json")
    if index % 5 == 0:
        return JobOutcome(project_id, JobStatus.PARTIAL_SUCCESS, service_account_key_path=key_path)
    return JobOutcome(project_id, JobStatus.SUCCESS, service_account_key_path=key_path, api_key=f"AIza{index:03d}")


@pytest.fixture
def key_files(tmp_path):
    return AggregatedKeyFiles(tmp_path / "key.txt", tmp_path / "comma.txt")


@pytest.fixture
def store(tmp_path, key_files):
    return SharedResultStore(tmp_path / "workspace", key_files=key_files)


class TestSharedResultStore:

    def test_streams_exist_before_first_append(self, store):
        assert store.success_path.exists()
        assert store.failure_path.exists()

    def test_concurrent_appends_are_complete_and_uncorrupted(self, store, key_files):
        count = 60
        barrier = threading.Barrier(count)

        def worker(index):
            barrier.wait()
            store.append(outcome_for(index))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        successes, failures = store.drain()
        expected = [outcome_for(i) for i in range(count)]

        assert len(successes) + len(failures) == count
        recorded = {o.project_id for o in successes + failures}
        assert recorded == {o.project_id for o in expected}

        expected_failures = [o for o in expected if o.status is JobStatus.FAILURE]
        failure_lines = store.failure_path.read_text().splitlines()
        assert sorted(failure_lines) == sorted(o.project_id for o in expected_failures)

        success_lines = store.success_path.read_text().splitlines()
        assert len(success_lines) == len(successes)
        for line in success_lines:
            key_path, separator, api_key = line.partition(":::")
            assert separator == ":::"
            assert key_path.startswith("/keys/proj-")
            assert ":::" not in api_key

        expected_keys = sorted(o.api_key for o in expected if o.api_key)
        assert sorted(key_files.read_keys()) == expected_keys
        comma_text = key_files.comma_path.read_text()
        assert "\n" not in comma_text
        assert sorted(comma_text.split(",")) == expected_keys

    def test_partial_success_counts_as_success(self, store):
        partial = outcome_for(5)
        store.append(partial)
        successes, failures = store.drain()
        assert successes == [partial]
        assert failures == []
        assert store.success_path.read_text().endswith(":::\n")

    def test_insertion_order(self, store):
        for index in (4, 1, 2):
            store.append(outcome_for(index))
        successes, _ = store.drain()
        assert [o.project_id for o in successes] == ["proj-004", "proj-001", "proj-002"]

    def test_drain_once(self, store):
        store.drain()
        with pytest.raises(RuntimeError, match="already drained"):
            store.drain()

    def test_append_after_drain(self, store):
        store.drain()
        with pytest.raises(RuntimeError):
            store.append(outcome_for(1))

    def test_len(self, store):
        store.append(outcome_for(1))
        store.append(outcome_for(3))
        assert len(store) == 2


class TestAggregatedKeyFiles:

    def test_append_builds_both_files(self, key_files):
        for key in ("k1", "k2", "k3"):
            key_files.append(key)
        assert key_files.bare_path.read_text() == "k1\nk2\nk3\n"
        assert key_files.comma_path.read_text() == "k1,k2,k3"

    def test_appends_to_existing_files(self, key_files):
        key_files.bare_path.write_text("old\n")
        key_files.comma_path.write_text("old")
        key_files.append("new")
        assert key_files.read_keys() == ["old", "new"]
        assert key_files.comma_path.read_text() == "old,new"

    def test_empty_key_rejected(self, key_files):
        with pytest.raises(ValueError):
            key_files.append("")

    def test_read_keys_missing_file(self, key_files):
        assert key_files.read_keys() == []

"""Tests for extraction-job persistence."""

from __future__ import annotations

import threading
from datetime import timedelta
from unittest.mock import MagicMock, call

import fakeredis
import pytest

from rate_extract.schemas import ExtractionJob, JobStatus, SectionStatus
from rate_extract.schemas.jobs import compute_progress, utcnow
from rate_extract.stores.jobs import (
    ActiveJobExistsError,
    InMemoryJobStore,
    RedisJobStore,
    apply_progress,
    apply_status,
    build_job_store,
)


def _job(job_id: str = "job-1", contract_id: str = "contract-1", **overrides) -> ExtractionJob:
    fields = {
        "id": job_id,
        "tenant_id": "tenant-1",
        "contract_id": contract_id,
        "user_id": "user-1",
        "total_sections": 9,
        "output_directory": f"/tmp/out/{job_id}",
    }
    fields.update(overrides)
    return ExtractionJob(**fields)


def _progress(store, job_id, completed, *, section="BaseRates", tokens=0):
    return store.update_progress(
        job_id,
        completed_sections=completed,
        current_section=section,
        sections_status={},
        tokens_used=tokens,
    )


class TestComputeProgress:
    @pytest.mark.parametrize(
        ("completed", "total", "expected"),
        [(0, 9, 0), (1, 9, 11), (3, 9, 33), (5, 9, 56), (9, 9, 100), (1, 8, 13), (0, 0, 0)],
    )
    def test_rounding(self, completed, total, expected):
        assert compute_progress(completed, total) == expected


class TestStateRules:
    def test_progress_never_decreases(self):
        job = _job(completed_sections=4, tokens_used=500, status=JobStatus.PROCESSING)
        updated = apply_progress(
            job,
            completed_sections=2,
            current_section="Surcharges",
            sections_status={"Surcharges": SectionStatus.COMPLETED},
            tokens_used=100,
        )
        assert updated.completed_sections == 4
        assert updated.tokens_used == 500
        assert updated.current_section == "Surcharges"
        assert updated.sections_status == {"Surcharges": SectionStatus.COMPLETED}

    def test_progress_capped_at_total(self):
        job = _job(status=JobStatus.PROCESSING)
        updated = apply_progress(
            job,
            completed_sections=12,
            current_section=None,
            sections_status={},
            tokens_used=0,
        )
        assert updated.completed_sections == 9

    def test_terminal_job_is_frozen(self):
        job = _job(status=JobStatus.CANCELLED)
        assert (
            apply_progress(
                job,
                completed_sections=3,
                current_section="x",
                sections_status={},
                tokens_used=1,
            )
            is None
        )

    def test_status_stamps(self):
        processing = apply_status(_job(), JobStatus.PROCESSING, None)
        assert processing.started_at is not None
        assert processing.completed_at is None

        done = apply_status(
            processing.model_copy(update={"current_section": "Maintenance"}),
            JobStatus.COMPLETED,
            None,
        )
        assert done.completed_at is not None
        assert done.current_section is None

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (JobStatus.COMPLETED, JobStatus.PROCESSING),
            (JobStatus.CANCELLED, JobStatus.COMPLETED),
            (JobStatus.FAILED, JobStatus.CANCELLED),
            (JobStatus.PROCESSING, JobStatus.PENDING),
            (JobStatus.PENDING, JobStatus.COMPLETED),
        ],
    )
    def test_illegal_moves_rejected(self, current, target):
        assert apply_status(_job(status=current), target, None) is None


class TestInMemoryJobStore:
    def test_create_and_get_returns_copies(self):
        store = InMemoryJobStore()
        created = store.create_job(_job())
        created.completed_sections = 5
        assert store.get_job("job-1").completed_sections == 0

    def test_second_active_job_conflicts(self):
        store = InMemoryJobStore()
        store.create_job(_job("job-1"))
        with pytest.raises(ActiveJobExistsError) as exc_info:
            store.create_job(_job("job-2"))
        assert exc_info.value.job.id == "job-1"
        assert store.get_job("job-2") is None

    def test_new_job_allowed_once_previous_is_terminal(self):
        store = InMemoryJobStore()
        store.create_job(_job("job-1"))
        assert store.set_status("job-1", JobStatus.CANCELLED)
        store.create_job(_job("job-2"))
        assert store.find_active_job_for_contract("contract-1").id == "job-2"

    def test_other_contracts_unaffected(self):
        store = InMemoryJobStore()
        store.create_job(_job("job-1", "contract-1"))
        store.create_job(_job("job-2", "contract-2"))
        assert store.find_active_job_for_contract("contract-2").id == "job-2"

    def test_concurrent_creates_admit_exactly_one(self):
        store = InMemoryJobStore()
        barrier = threading.Barrier(8)
        created: list[str] = []
        refused: list[str] = []

        def attempt(n: int) -> None:
            barrier.wait()
            try:
                store.create_job(_job(f"job-{n}"))
                created.append(f"job-{n}")
            except ActiveJobExistsError:
                refused.append(f"job-{n}")

        threads = [threading.Thread(target=attempt, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(created) == 1
        assert len(refused) == 7

    def test_progress_is_monotonic(self):
        store = InMemoryJobStore()
        store.create_job(_job())
        store.set_status("job-1", JobStatus.PROCESSING)
        _progress(store, "job-1", 3, tokens=300)
        _progress(store, "job-1", 1, tokens=100)
        job = store.get_job("job-1")
        assert job.completed_sections == 3
        assert job.tokens_used == 300
        assert job.progress == 33

    def test_progress_frozen_after_cancel(self):
        store = InMemoryJobStore()
        store.create_job(_job())
        store.set_status("job-1", JobStatus.PROCESSING)
        _progress(store, "job-1", 2)
        store.set_status("job-1", JobStatus.CANCELLED)

        assert _progress(store, "job-1", 5) is None
        job = store.get_job("job-1")
        assert job.completed_sections == 2
        assert job.status == JobStatus.CANCELLED

    def test_cancelled_job_cannot_complete(self):
        store = InMemoryJobStore()
        store.create_job(_job())
        store.set_status("job-1", JobStatus.PROCESSING)
        store.set_status("job-1", JobStatus.CANCELLED)
        assert store.set_status("job-1", JobStatus.COMPLETED) is False
        assert store.get_job("job-1").status == JobStatus.CANCELLED

    def test_error_message_recorded(self):
        store = InMemoryJobStore()
        store.create_job(_job())
        store.set_status("job-1", JobStatus.FAILED, error_message="boom")
        assert store.get_job("job-1").error_message == "boom"

    def test_unknown_job(self):
        store = InMemoryJobStore()
        assert store.get_job("nope") is None
        assert store.set_status("nope", JobStatus.CANCELLED) is False
        assert _progress(store, "nope", 1) is None

    def test_list_newest_first(self):
        store = InMemoryJobStore()
        now = utcnow()
        store.create_job(_job("old", created_at=now - timedelta(minutes=5)))
        store.set_status("old", JobStatus.FAILED)
        store.create_job(_job("new", created_at=now))
        store.create_job(_job("elsewhere", "contract-2"))
        assert [j.id for j in store.list_jobs_for_contract("contract-1")] == ["new", "old"]


class TestRedisJobStore:
    @pytest.fixture
    def redis_client(self):
        return MagicMock()

    @pytest.fixture
    def store(self, redis_client):
        return RedisJobStore(client_factory=lambda: redis_client)

    def test_create_writes_document_then_claims_marker(self, store, redis_client):
        redis_client.set.return_value = True
        job = _job()

        store.create_job(job)

        assert redis_client.set.call_args_list == [
            call("extraction_job:job-1", job.model_dump_json()),
            call("contract_active_job:contract-1", "job-1", nx=True),
        ]
        redis_client.zadd.assert_called_once_with(
            "contract_jobs:contract-1",
            {"job-1": job.created_at.timestamp()},
        )
        redis_client.close.assert_called()

    def test_create_conflicts_with_active_holder(self, store, redis_client):
        holder = _job("job-0", status=JobStatus.PROCESSING)
        redis_client.set.return_value = None
        redis_client.get.side_effect = lambda key: {
            "contract_active_job:contract-1": "job-0",
            "extraction_job:job-0": holder.model_dump_json(),
        }.get(key)

        with pytest.raises(ActiveJobExistsError) as exc_info:
            store.create_job(_job("job-1"))

        assert exc_info.value.job.id == "job-0"
        redis_client.delete.assert_called_once_with("extraction_job:job-1")
        redis_client.zadd.assert_not_called()

    def test_get_job(self, store, redis_client):
        job = _job()
        redis_client.get.return_value = job.model_dump_json()
        assert store.get_job("job-1") == job
        redis_client.get.assert_called_with("extraction_job:job-1")

    def test_get_missing_job(self, store, redis_client):
        redis_client.get.return_value = None
        assert store.get_job("job-1") is None

    def test_list_reads_sorted_index(self, store, redis_client):
        first, second = _job("a"), _job("b")
        redis_client.zrevrange.return_value = ["b", "a"]
        redis_client.mget.return_value = [second.model_dump_json(), first.model_dump_json()]

        assert [j.id for j in store.list_jobs_for_contract("contract-1")] == ["b", "a"]
        redis_client.zrevrange.assert_called_once_with("contract_jobs:contract-1", 0, -1)


class TestRedisJobStoreConcurrentCreate:
    """Two creators racing for the same contract against one Redis server."""

    @pytest.fixture
    def server(self):
        return fakeredis.FakeServer()

    def _client(self, server):
        return fakeredis.FakeRedis(server=server, decode_responses=True)

    def _interleaved_store(self, server, *, after, other_create):
        """Store whose client runs *other_create* right after its first matching ``set``."""
        client = self._client(server)
        original_set = client.set
        fired: list[bool] = []

        def set_then_interleave(name, value, *args, **kwargs):
            result = original_set(name, value, *args, **kwargs)
            if not fired and after(name, kwargs):
                fired.append(True)
                other_create()
            return result

        client.set = set_then_interleave
        return RedisJobStore(client_factory=lambda: client)

    def _active_ids(self, server) -> list[str]:
        reader = RedisJobStore(client_factory=lambda: self._client(server))
        return [
            job.id
            for job in reader.list_jobs_for_contract("contract-1")
            if job.status.is_active
        ]

    def test_second_creator_after_marker_claim_is_refused(self, server):
        other = RedisJobStore(client_factory=lambda: self._client(server))
        outcomes: list[str] = []

        def create_b():
            try:
                other.create_job(_job("job-B"))
                outcomes.append("created")
            except ActiveJobExistsError as exc:
                outcomes.append(f"conflict:{exc.job.id}")

        store = self._interleaved_store(
            server,
            after=lambda name, kwargs: kwargs.get("nx") is True,
            other_create=create_b,
        )
        store.create_job(_job("job-A"))

        assert outcomes == ["conflict:job-A"]
        assert self._active_ids(server) == ["job-A"]
        assert other.find_active_job_for_contract("contract-1").id == "job-A"
        assert other.get_job("job-B") is None

    def test_second_creator_before_marker_claim_wins(self, server):
        other = RedisJobStore(client_factory=lambda: self._client(server))

        store = self._interleaved_store(
            server,
            after=lambda name, kwargs: name == "extraction_job:job-A",
            other_create=lambda: other.create_job(_job("job-B")),
        )
        with pytest.raises(ActiveJobExistsError) as exc_info:
            store.create_job(_job("job-A"))

        assert exc_info.value.job.id == "job-B"
        assert self._active_ids(server) == ["job-B"]
        assert other.get_job("job-A") is None

    def test_terminal_holder_marker_is_replaced(self, server):
        store = RedisJobStore(client_factory=lambda: self._client(server))
        store.create_job(_job("job-A"))
        store.set_status("job-A", JobStatus.PROCESSING)
        store.set_status("job-A", JobStatus.COMPLETED)
        # Leave the marker behind as if its release had been lost.
        self._client(server).set("contract_active_job:contract-1", "job-A")

        store.create_job(_job("job-B", created_at=utcnow() + timedelta(seconds=1)))

        assert store.find_active_job_for_contract("contract-1").id == "job-B"
        assert [j.id for j in store.list_jobs_for_contract("contract-1")] == ["job-B", "job-A"]


def test_build_job_store_memory():
    assert isinstance(build_job_store("memory"), InMemoryJobStore)


def test_build_job_store_redis():
    assert isinstance(build_job_store("redis"), RedisJobStore)

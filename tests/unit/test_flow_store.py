"""Unit tests for RedisFlowStore."""

from datetime import datetime, timedelta, timezone

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from flow_engine.enums import ErrorKind, FlowStatus, PauseReason
from flow_engine.errors import ConcurrencyConflictError, FlowNotFoundError
from flow_engine.models.definition import StepDefinition
from flow_engine.models.results import FlowQuery
from flow_engine.models.state import FlowState, StepState
from flow_engine.services.flow_store import RedisFlowStore


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=False)


@pytest.fixture
def store(redis_client):
    return RedisFlowStore(redis_client)


def new_flow(flow_type: str = "onboarding", **kwargs) -> FlowState:
    return FlowState(
        flow_type=flow_type,
        steps=[StepState.from_definition(StepDefinition(name="a"))],
        execution_plan=[["a"]],
        **kwargs,
    )


class TestRedisFlowStoreInit:
    """Tests for RedisFlowStore initialization."""

    def test_init_without_client_raises(self):
        with pytest.raises(ValueError, match="redis_client is required"):
            RedisFlowStore(None)


class TestCreateAndLoad:
    """Tests for inserting and reading flow documents."""

    def test_create_sets_version_one(self, store):
        flow = store.create(new_flow())
        assert flow.version == 1

    def test_load_returns_equal_document(self, store):
        flow = store.create(new_flow(user_id="u-1", data={"amount": 10}))
        loaded = store.load(flow.flow_id)
        assert loaded.flow_id == flow.flow_id
        assert loaded.user_id == "u-1"
        assert loaded.data == {"amount": 10}
        assert loaded.steps[0].name == "a"

    def test_create_duplicate_raises(self, store):
        flow = store.create(new_flow())
        with pytest.raises(ValueError, match="already exists"):
            store.create(flow.model_copy())

    def test_create_duplicate_leaves_indexes_untouched(self, store):
        flow = store.create(new_flow())
        with pytest.raises(ValueError, match="already exists"):
            store.create(new_flow(flow_id=flow.flow_id, status=FlowStatus.PAUSED))
        assert store.find(FlowQuery(statuses=[FlowStatus.PAUSED])) == []
        assert store.load(flow.flow_id).status == FlowStatus.PENDING

    def test_create_failure_writes_nothing(self, store, redis_client, monkeypatch):
        original = redis_client.pipeline

        def broken_pipeline(*args, **kwargs):
            pipe = original(*args, **kwargs)

            def lost(*a, **kw):
                raise RedisConnectionError("connection lost")

            pipe.execute = lost
            return pipe

        monkeypatch.setattr(redis_client, "pipeline", broken_pipeline)
        flow = new_flow()
        with pytest.raises(RedisConnectionError):
            store.create(flow)

        monkeypatch.undo()
        assert not store.exists(flow.flow_id)
        assert store.find(FlowQuery()) == []

    def test_create_none_raises(self, store):
        with pytest.raises(ValueError, match="flow is required"):
            store.create(None)

    def test_load_missing_raises(self, store):
        with pytest.raises(FlowNotFoundError) as exc:
            store.load("nonexistent")
        assert exc.value.flow_id == "nonexistent"
        assert exc.value.kind == ErrorKind.FLOW_NOT_FOUND

    def test_load_empty_id_raises(self, store):
        with pytest.raises(ValueError, match="flow_id is required"):
            store.load("")

    def test_exists(self, store):
        flow = store.create(new_flow())
        assert store.exists(flow.flow_id)
        assert not store.exists("nonexistent")


class TestSave:
    """Tests for optimistic-concurrency saves."""

    def test_save_increments_version(self, store):
        flow = store.create(new_flow())
        flow.status = FlowStatus.RUNNING
        store.save(flow)
        assert flow.version == 2
        assert store.load(flow.flow_id).version == 2

    def test_save_advances_updated_at(self, store):
        flow = store.create(new_flow())
        before = flow.updated_at
        store.save(flow)
        assert flow.updated_at >= before

    def test_stale_save_raises_conflict(self, store):
        flow = store.create(new_flow())
        first = store.load(flow.flow_id)
        second = store.load(flow.flow_id)

        first.status = FlowStatus.RUNNING
        store.save(first)

        second.status = FlowStatus.CANCELLED
        with pytest.raises(ConcurrencyConflictError) as exc:
            store.save(second)
        assert exc.value.expected == 1
        assert exc.value.actual == 2
        assert store.load(flow.flow_id).status == FlowStatus.RUNNING

    def test_save_missing_raises(self, store):
        with pytest.raises(FlowNotFoundError):
            store.save(new_flow())

    def test_save_moves_status_index(self, store):
        flow = store.create(new_flow())
        flow.status = FlowStatus.RUNNING
        store.save(flow)
        assert store.ids_with_status(FlowStatus.PENDING) == []
        assert store.ids_with_status(FlowStatus.RUNNING) == [flow.flow_id]


class TestQuery:
    """Tests for filtering and paging."""

    def test_query_by_status(self, store):
        pending = store.create(new_flow())
        running = store.create(new_flow())
        running.status = FlowStatus.RUNNING
        store.save(running)

        page = store.query(FlowQuery(statuses=[FlowStatus.RUNNING]))
        assert [s.flow_id for s in page.items] == [running.flow_id]
        assert page.total_count == 1
        assert pending.flow_id not in [s.flow_id for s in page.items]

    def test_query_by_user_and_type(self, store):
        store.create(new_flow(user_id="alice"))
        wanted = store.create(new_flow(flow_type="withdrawal", user_id="alice"))
        store.create(new_flow(flow_type="withdrawal", user_id="bob"))

        page = store.query(FlowQuery(user_id="alice", flow_type="withdrawal"))
        assert [s.flow_id for s in page.items] == [wanted.flow_id]

    def test_query_by_pause_reason(self, store):
        flow = store.create(new_flow())
        flow.status = FlowStatus.PAUSED
        flow.pause_reason = PauseReason.EXTERNAL_WAIT
        store.save(flow)
        store.create(new_flow())

        page = store.query(FlowQuery(pause_reason=PauseReason.EXTERNAL_WAIT))
        assert page.total_count == 1
        assert page.items[0].pause_reason == PauseReason.EXTERNAL_WAIT

    def test_query_by_date_range(self, store):
        now = datetime.now(timezone.utc)
        store.create(new_flow(created_at=now - timedelta(days=3)))
        recent = store.create(new_flow(created_at=now - timedelta(hours=1)))

        page = store.query(FlowQuery(created_after=now - timedelta(days=1), created_before=now))
        assert [s.flow_id for s in page.items] == [recent.flow_id]

    def test_query_pages_in_creation_order(self, store):
        now = datetime.now(timezone.utc)
        ids = [
            store.create(new_flow(created_at=now - timedelta(minutes=10 - i))).flow_id
            for i in range(5)
        ]

        first = store.query(FlowQuery(page=1, page_size=2))
        third = store.query(FlowQuery(page=3, page_size=2))
        assert [s.flow_id for s in first.items] == ids[:2]
        assert [s.flow_id for s in third.items] == ids[4:]
        assert first.total_count == 5
        assert first.total_pages == 3

    def test_summary_fields(self, store):
        flow = store.create(new_flow(correlation_id="corr-1"))
        summary = store.query().items[0]
        assert summary.flow_id == flow.flow_id
        assert summary.correlation_id == "corr-1"
        assert summary.total_steps == 1
        assert summary.status == FlowStatus.PENDING

    def test_find_empty_store(self, store):
        assert store.find() == []

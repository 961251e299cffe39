"""Redis-based durable store for flow state."""

import logging
from datetime import datetime, timezone

from redis import Redis
from redis.exceptions import WatchError

from flow_engine.enums import FlowStatus
from flow_engine.errors import ConcurrencyConflictError, FlowNotFoundError
from flow_engine.models.results import FlowQuery, FlowSummary, Page
from flow_engine.models.state import FlowState

logger = logging.getLogger(__name__)


class RedisFlowStore:
    """Persists flow documents in Redis with optimistic concurrency.

    Each flow is one JSON document carrying a ``version`` sequence. ``save``
    only succeeds when the stored version equals the caller's version, so two
    executors working from the same snapshot cannot both commit.
    """

    def __init__(self, redis_client: Redis):
        if redis_client is None:
            raise ValueError("redis_client is required")
        self._redis = redis_client

    def _flow_key(self, flow_id: str) -> str:
        return f"flow:{flow_id}"

    def _status_key(self, status: FlowStatus) -> str:
        return f"flows:status:{status.value}"

    def _created_index_key(self) -> str:
        return "flows:created"

    def _utc_now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _decode(value) -> str:
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def create(self, flow: FlowState) -> FlowState:
        """Insert a new flow document at version 1."""
        if flow is None:
            raise ValueError("flow is required")

        key = self._flow_key(flow.flow_id)
        flow.version = 1
        flow.updated_at = self._utc_now()

        # Document and both indexes are written atomically.
        with self._redis.pipeline() as pipe:
            try:
                pipe.watch(key)
                if pipe.exists(key):
                    raise ValueError(f"Flow already exists: {flow.flow_id}")
                pipe.multi()
                pipe.set(key, flow.model_dump_json())
                pipe.zadd(
                    self._created_index_key(), {flow.flow_id: flow.created_at.timestamp()}
                )
                pipe.sadd(self._status_key(flow.status), flow.flow_id)
                pipe.execute()
            except WatchError:
                flow.version = 0
                raise ValueError(f"Flow already exists: {flow.flow_id}") from None
            except ValueError:
                flow.version = 0
                raise

        logger.debug(f"Created flow {flow.flow_id} of type {flow.flow_type}")
        return flow

    def load(self, flow_id: str) -> FlowState:
        """Get flow state by ID."""
        if not flow_id:
            raise ValueError("flow_id is required")

        data = self._redis.get(self._flow_key(flow_id))
        if data is None:
            raise FlowNotFoundError(flow_id)
        return FlowState.model_validate_json(data)

    def exists(self, flow_id: str) -> bool:
        if not flow_id:
            raise ValueError("flow_id is required")
        return bool(self._redis.exists(self._flow_key(flow_id)))

    def save(self, flow: FlowState) -> FlowState:
        """Compare-and-swap the flow document against its version.

        On success the flow's ``version`` and ``updated_at`` are advanced in
        place. Raises ConcurrencyConflictError when the stored version moved.
        """
        if flow is None:
            raise ValueError("flow is required")

        key = self._flow_key(flow.flow_id)
        new_version = flow.version + 1
        now = self._utc_now()

        with self._redis.pipeline() as pipe:
            try:
                pipe.watch(key)
                raw = pipe.get(key)
                if raw is None:
                    raise FlowNotFoundError(flow.flow_id)

                stored = FlowState.model_validate_json(raw)
                if stored.version != flow.version:
                    raise ConcurrencyConflictError(
                        flow.flow_id, flow.version, stored.version
                    )

                document = flow.model_copy(
                    update={"version": new_version, "updated_at": now}
                )
                pipe.multi()
                pipe.set(key, document.model_dump_json())
                if stored.status != flow.status:
                    pipe.srem(self._status_key(stored.status), flow.flow_id)
                    pipe.sadd(self._status_key(flow.status), flow.flow_id)
                pipe.execute()
            except WatchError:
                raise ConcurrencyConflictError(flow.flow_id, flow.version, None)

        flow.version = new_version
        flow.updated_at = now
        logger.debug(
            f"Saved flow {flow.flow_id} v{new_version} with status {flow.status.value}"
        )
        return flow

    def _candidate_ids(self, query: FlowQuery) -> list[str]:
        """Flow ids in creation order, narrowed by the date and status indexes."""
        low = query.created_after.timestamp() if query.created_after else "-inf"
        high = query.created_before.timestamp() if query.created_before else "+inf"
        ids = [
            self._decode(i)
            for i in self._redis.zrangebyscore(self._created_index_key(), low, high)
        ]

        if query.statuses:
            allowed: set[str] = set()
            for status in query.statuses:
                allowed.update(
                    self._decode(i) for i in self._redis.smembers(self._status_key(status))
                )
            ids = [i for i in ids if i in allowed]
        return ids

    def find(self, query: FlowQuery | None = None) -> list[FlowState]:
        """Get all flows matching the query, ignoring paging."""
        query = query or FlowQuery()
        ids = self._candidate_ids(query)
        if not ids:
            return []

        flows = []
        for raw in self._redis.mget([self._flow_key(i) for i in ids]):
            if raw is None:
                continue
            flow = FlowState.model_validate_json(raw)
            if query.matches(flow):
                flows.append(flow)
        return flows

    def query(self, query: FlowQuery | None = None) -> Page:
        """Get one page of flow summaries matching the query."""
        query = query or FlowQuery()
        flows = self.find(query)
        start = (query.page - 1) * query.page_size
        items = [FlowSummary.from_state(f) for f in flows[start : start + query.page_size]]
        return Page(
            items=items,
            total_count=len(flows),
            page=query.page,
            page_size=query.page_size,
        )

    def ids_with_status(self, status: FlowStatus) -> list[str]:
        """Get ids of all flows currently in ``status``."""
        return sorted(
            self._decode(i) for i in self._redis.smembers(self._status_key(status))
        )

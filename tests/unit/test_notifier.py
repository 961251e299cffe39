"""Unit tests for notifiers, the active flow registry and logging setup."""

import json
import logging

import fakeredis
import pytest

from flow_engine.enums import FlowStatus, PauseReason
from flow_engine.models.state import FlowState
from flow_engine.services.active_flows import (
    ActiveFlowRegistry,
    FlowAlreadyAttachedError,
    PauseRequest,
)
from flow_engine.services.log_service import (
    SizeAndTimeRotatingHandler,
    configure_logging,
    parse_level,
)
from flow_engine.services.notifier import LoggingNotifier, RedisStatusNotifier, notify_safely


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def flow():
    return FlowState(
        flow_type="kyc",
        status=FlowStatus.PAUSED,
        pause_reason=PauseReason.EXTERNAL_WAIT,
        correlation_id="corr-9",
        current_step_name="verify",
    )


class TestRedisStatusNotifier:
    """Tests for pub/sub status publishing."""

    def test_init_without_client_raises(self):
        with pytest.raises(ValueError, match="redis_client is required"):
            RedisStatusNotifier(None)

    def test_payload(self, flow):
        payload = RedisStatusNotifier.payload(flow)
        assert payload["flow_id"] == flow.flow_id
        assert payload["status"] == "paused"
        assert payload["pause_reason"] == "external_wait"
        assert payload["correlation_id"] == "corr-9"
        assert payload["error"] is None

    def test_publishes_json(self, redis_client, flow):
        pubsub = redis_client.pubsub()
        pubsub.subscribe("flow-status")
        pubsub.get_message(timeout=1)

        RedisStatusNotifier(redis_client).notify_status_changed(flow)

        message = pubsub.get_message(timeout=1)
        assert message["type"] == "message"
        assert json.loads(message["data"])["flow_id"] == flow.flow_id


class TestNotifySafely:
    """Tests for failure isolation."""

    def test_swallows_errors(self, flow, caplog):
        class Broken:
            def notify_status_changed(self, flow):
                raise RuntimeError("down")

        with caplog.at_level(logging.WARNING):
            notify_safely(Broken(), flow)
        assert "Status notification failed" in caplog.text

    def test_none_notifier_is_noop(self, flow):
        notify_safely(None, flow)

    def test_logging_notifier(self, flow, caplog):
        with caplog.at_level(logging.INFO):
            LoggingNotifier().notify_status_changed(flow)
        assert f"Flow {flow.flow_id} (kyc) is now paused at step verify" in caplog.text


class TestActiveFlowRegistry:
    """Tests for the in-process attachment registry."""

    def test_attach_and_detach(self):
        registry = ActiveFlowRegistry()
        registry.attach("f-1")
        assert registry.is_attached("f-1")
        assert len(registry) == 1
        registry.detach("f-1")
        assert not registry.is_attached("f-1")

    def test_double_attach_raises(self):
        registry = ActiveFlowRegistry()
        registry.attach("f-1")
        with pytest.raises(FlowAlreadyAttachedError):
            registry.attach("f-1")

    def test_pause_request_taken_once(self):
        registry = ActiveFlowRegistry()
        registry.attach("f-1")
        assert registry.request_pause("f-1", PauseRequest(PauseReason.MANUAL_INTERVENTION))
        assert registry.take_pause_request("f-1").reason == PauseReason.MANUAL_INTERVENTION
        assert registry.take_pause_request("f-1") is None

    def test_flags_on_unattached_flow(self):
        registry = ActiveFlowRegistry()
        assert not registry.request_pause("f-1", PauseRequest(PauseReason.CUSTOM))
        assert not registry.request_cancel("f-1")


class TestLogService:
    """Tests for logging configuration."""

    def test_parse_level(self):
        assert parse_level("debug") == logging.DEBUG
        assert parse_level(logging.ERROR) == logging.ERROR
        with pytest.raises(ValueError, match="Unknown log level"):
            parse_level("loud")

    def test_configure_logging_writes_file(self, tmp_path):
        root = logging.getLogger()
        saved = root.handlers[:], root.level
        try:
            configure_logging(log_dir=str(tmp_path), level="info", console=False)
            assert any(isinstance(h, SizeAndTimeRotatingHandler) for h in root.handlers)
            logging.getLogger("flow_engine.test").info("hello")
            for handler in root.handlers:
                handler.flush()
            assert "hello" in (tmp_path / "flow_engine.log").read_text()
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers[:] = saved[0]
            root.setLevel(saved[1])

    def test_rollover_on_size(self, tmp_path):
        handler = SizeAndTimeRotatingHandler(
            str(tmp_path / "small.log"), max_bytes=10, when="midnight", encoding="utf-8"
        )
        try:
            record = logging.LogRecord("x", logging.INFO, __file__, 1, "a" * 50, None, None)
            handler.emit(record)
            assert handler.shouldRollover(record) == 1
        finally:
            handler.close()

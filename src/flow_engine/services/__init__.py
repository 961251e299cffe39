"""Services package."""

from flow_engine.services.active_flows import (
    ActiveFlowRegistry,
    FlowAlreadyAttachedError,
    PauseRequest,
)
from flow_engine.services.auto_resume import FlowAutoResumeService
from flow_engine.services.catalog import FlowCatalog, RegisteredFlow, StepHandler
from flow_engine.services.conditions import ConditionRegistry, UnknownPredicateError
from flow_engine.services.engine_service import FlowEngineService
from flow_engine.services.flow_executor import FlowExecutor
from flow_engine.services.flow_store import RedisFlowStore
from flow_engine.services.log_service import SizeAndTimeRotatingHandler, configure_logging
from flow_engine.services.notifier import (
    LoggingNotifier,
    RedisStatusNotifier,
    StatusNotifier,
    notify_safely,
)
from flow_engine.services.recovery import FlowRecoveryService

__all__ = [
    "ActiveFlowRegistry",
    "ConditionRegistry",
    "FlowAlreadyAttachedError",
    "FlowAutoResumeService",
    "FlowCatalog",
    "FlowEngineService",
    "FlowExecutor",
    "FlowRecoveryService",
    "LoggingNotifier",
    "PauseRequest",
    "RedisFlowStore",
    "RedisStatusNotifier",
    "RegisteredFlow",
    "SizeAndTimeRotatingHandler",
    "StatusNotifier",
    "StepHandler",
    "UnknownPredicateError",
    "configure_logging",
    "notify_safely",
]

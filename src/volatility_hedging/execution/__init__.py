"""Execution venue interface and mock venue."""

from volatility_hedging.execution.gateway import (
    Acknowledgement,
    ExecutionGateway,
    HedgeOrder,
    MockExecutionGateway,
    SessionMonitor,
)

__all__ = [
    "Acknowledgement",
    "ExecutionGateway",
    "HedgeOrder",
    "MockExecutionGateway",
    "SessionMonitor",
]

"""Order execution adapter and the pre-trade gate."""

from stagalgo.execution.gate import GateOutcome, TradeGate
from stagalgo.execution.gateway import ExecutionGateway, ExecutionRequest, ExecutionResult

__all__ = ["ExecutionGateway", "ExecutionRequest", "ExecutionResult", "GateOutcome", "TradeGate"]

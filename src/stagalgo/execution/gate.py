"""Validator → Overseer → gateway pipeline for a single trade."""

from typing import Any

from pydantic import BaseModel

from stagalgo.core.bus import EventBus
from stagalgo.core.event_payloads import TradeExecutedPayload, TradeFailedPayload
from stagalgo.core.types import EventType
from stagalgo.execution.gateway import ExecutionGateway, ExecutionRequest, ExecutionResult
from stagalgo.governance.models import GovernanceDecision, TradeIntent
from stagalgo.governance.overseer import Overseer
from stagalgo.logging import clear_trading_context, get_logger, log_exception, set_trading_context
from stagalgo.validation.rules import ValidationContext
from stagalgo.validation.validator import TradeValidator, ValidationResult

logger = get_logger(__name__)


class GateOutcome(BaseModel):
    trade_id: str
    stage: str
    executed: bool
    validation: ValidationResult
    decision: GovernanceDecision | None = None
    request: ExecutionRequest | None = None
    result: ExecutionResult | None = None
    error: str | None = None


class TradeGate:
    """Runs a trade through validation, position governance and execution.

    The Overseer is called directly rather than through ``trade.approved`` so
    the gate sees the decision for its own trade. ``trade.executed`` or
    ``trade.failed`` is published for every submission.
    """

    def __init__(
        self,
        bus: EventBus,
        validator: TradeValidator,
        overseer: Overseer,
        gateway: ExecutionGateway,
    ) -> None:
        self._bus = bus
        self._validator = validator
        self._overseer = overseer
        self._gateway = gateway

    async def submit(self, context: ValidationContext, request: ExecutionRequest) -> GateOutcome:
        intent = TradeIntent(
            user_id=context.user_id,
            symbol=context.symbol,
            side=context.side,
            quantity=context.quantity,
            price=context.price,
            order_type=context.order_type,
            stop_price=request.stop_price,
            stop_loss=request.stop_loss,
            take_profit=request.take_profit,
        )
        if context.trade_id:
            intent = intent.model_copy(update={"id": context.trade_id})
        else:
            context = context.model_copy(update={"trade_id": intent.id})

        set_trading_context(user_id=context.user_id, symbol=context.symbol, trade_id=intent.id)
        try:
            return await self._submit(context, intent, request)
        finally:
            clear_trading_context()

    async def _submit(
        self, context: ValidationContext, intent: TradeIntent, request: ExecutionRequest
    ) -> GateOutcome:
        validation = self._validator.validate_trade(context)
        if not validation.passed:
            blocking = "; ".join(v.message for v in validation.violations if v.block_trade)
            return self._fail(intent, "validation", validation, error=blocking or "Validation failed")

        decision = self._overseer.handle_approved_trade(intent)
        if decision.action == "hard_pull":
            return self._fail(intent, "governance", validation, decision=decision, error=decision.reasoning)

        final = decision.apply(intent)
        final_request = request.model_copy(
            update={"quantity": final.quantity, "stop_loss": final.stop_loss}
        )
        result = await self._gateway.execute(final_request)
        if not result.success:
            return self._fail(
                intent,
                "execution",
                validation,
                decision=decision,
                request=final_request,
                result=result,
                error=result.error or "Trade execution failed",
            )

        logger.info(f"Trade {intent.id} executed: {final.side} {final.quantity} {final.symbol}")
        self._publish(
            EventType.TRADE_EXECUTED,
            TradeExecutedPayload(
                trade_id=intent.id,
                user_id=intent.user_id,
                symbol=intent.symbol,
                side=final.side,
                quantity=final.quantity,
                price=final_request.price,
                order_id=result.order_id or "",
            ),
        )
        return GateOutcome(
            trade_id=intent.id,
            stage="executed",
            executed=True,
            validation=validation,
            decision=decision,
            request=final_request,
            result=result,
        )

    def _fail(
        self,
        intent: TradeIntent,
        stage: str,
        validation: ValidationResult,
        *,
        error: str,
        decision: GovernanceDecision | None = None,
        request: ExecutionRequest | None = None,
        result: ExecutionResult | None = None,
    ) -> GateOutcome:
        logger.warning(f"Trade {intent.id} stopped at {stage}: {error}")
        self._publish(
            EventType.TRADE_FAILED,
            TradeFailedPayload(
                trade_id=intent.id, user_id=intent.user_id, symbol=intent.symbol, error=error
            ),
        )
        return GateOutcome(
            trade_id=intent.id,
            stage=stage,
            executed=False,
            validation=validation,
            decision=decision,
            request=request,
            result=result,
            error=error,
        )

    def _publish(self, event_type: EventType, payload: Any) -> None:
        try:
            self._bus.emit(event_type, payload)
        except Exception as e:
            log_exception(logger, e, {"event_type": event_type.value})

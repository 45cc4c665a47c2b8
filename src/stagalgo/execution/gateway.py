"""HTTP adapter for the hosted trade-execution function."""

from typing import Any, Literal

import httpx
from pydantic import BaseModel, Field

from stagalgo.config import StagAlgoSettings, settings
from stagalgo.logging import get_logger

logger = get_logger(__name__)

EXECUTE_PATH = "/functions/v1/trade-execute"


class ExecutionRequest(BaseModel):
    symbol: str
    side: Literal["buy", "sell"]
    quantity: float = Field(gt=0)
    order_type: Literal["market", "limit", "stop", "stop_limit"] = "market"
    price: float | None = None
    stop_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None

    def body(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ExecutionResult(BaseModel):
    success: bool
    order_id: str | None = None
    error: str | None = None


class ExecutionGateway:
    """Posts approved orders to the backend. The core never fills orders itself.

    Transport and decoding failures are logged and returned as
    ``success=False``; no retries are attempted.
    """

    def __init__(
        self,
        config: StagAlgoSettings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = config or settings
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.backend_url,
                timeout=self._settings.execution_timeout_seconds,
            )
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._settings.backend_api_key:
            headers["apikey"] = self._settings.backend_api_key
            headers["Authorization"] = f"Bearer {self._settings.backend_api_key}"
        return headers

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Send ``request`` to the execution endpoint."""
        try:
            response = await self._get_client().post(
                EXECUTE_PATH, json=request.body(), headers=self._headers()
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Execution request failed for {request.symbol}: {e}")
            return ExecutionResult(success=False, error=str(e) or type(e).__name__)
        except ValueError as e:
            logger.error(f"Invalid execution response for {request.symbol}: {e}")
            return ExecutionResult(success=False, error="Invalid response from execution service")

        if not isinstance(data, dict):
            return ExecutionResult(success=False, error="Invalid response from execution service")

        success = bool(data.get("success"))
        order_id = data.get("order_id")
        error = data.get("error")
        if success and not order_id:
            return ExecutionResult(success=False, error="Execution response missing order_id")
        if success:
            logger.info(f"Order placed: {request.side} {request.quantity} {request.symbol} ({order_id})")
        else:
            logger.warning(f"Order rejected for {request.symbol}: {error}")
        return ExecutionResult(
            success=success,
            order_id=str(order_id) if order_id else None,
            error=None if success else (error or "Trade execution failed"),
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

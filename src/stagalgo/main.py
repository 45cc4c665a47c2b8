"""Command-line entrypoint for the StagAlgo core."""

import argparse
import asyncio
import json
import signal
import sys

from pydantic import ValidationError

from stagalgo.app import TradingCore
from stagalgo.config import settings
from stagalgo.logging import get_logger, setup_logging
from stagalgo.validation.rules import ValidationContext

logger = get_logger(__name__)


async def run_core() -> None:
    """Start the core and block until SIGINT/SIGTERM."""
    core = TradingCore()
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_stop(sig: signal.Signals) -> None:
        logger.warning(f"Received {sig.name}, shutting down")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_stop, sig)
        except NotImplementedError:
            # Windows event loops
            signal.signal(sig, lambda s, _f: loop.call_soon_threadsafe(stop_event.set))

    await core.start()
    logger.info("StagAlgo core running; press Ctrl+C to stop")
    try:
        await stop_event.wait()
    finally:
        await core.stop()


def print_health() -> int:
    core = TradingCore()
    core.init()
    health = core.health()
    core.shutdown()
    print(json.dumps(health, indent=2, default=str))
    return 0 if health["store"]["status"] != "unhealthy" else 1


def validate_trade(args: argparse.Namespace) -> int:
    try:
        context = ValidationContext(
            user_id=args.user,
            symbol=args.symbol,
            side=args.side,
            quantity=args.quantity,
            price=args.price,
            order_type=args.order_type,
            user_level=args.level,
        )
    except ValidationError as e:
        print(f"Invalid trade: {e}", file=sys.stderr)
        return 2

    core = TradingCore()
    core.init()
    result = core.validator.validate_trade(context)
    core.shutdown()
    print(result.model_dump_json(indent=2))
    return 0 if result.passed else 1


def main() -> None:
    """Main entrypoint."""
    parser = argparse.ArgumentParser(description="StagAlgo trading core")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("run", help="Run the core until interrupted")
    subparsers.add_parser("health", help="Print store health as JSON")

    validate_parser = subparsers.add_parser("validate", help="Validate a proposed trade")
    validate_parser.add_argument("symbol", help="Ticker symbol")
    validate_parser.add_argument("side", choices=["buy", "sell"])
    validate_parser.add_argument("quantity", type=float)
    validate_parser.add_argument("price", type=float)
    validate_parser.add_argument("--user", default="cli", help="User id")
    validate_parser.add_argument(
        "--order-type", default="market", choices=["market", "limit", "stop", "stop_limit"]
    )
    validate_parser.add_argument(
        "--level", default=None, choices=["beginner", "intermediate", "advanced", "expert"]
    )

    args = parser.parse_args()
    # logs share stdout with the JSON output of the one-shot commands
    default_level = settings.log_level if args.command == "run" else "WARNING"
    setup_logging(level=args.log_level or default_level)

    if args.command == "run":
        try:
            asyncio.run(run_core())
        except KeyboardInterrupt:
            pass
    elif args.command == "health":
        sys.exit(print_health())
    elif args.command == "validate":
        sys.exit(validate_trade(args))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()

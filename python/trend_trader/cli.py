"""Command-line interface for trend-trader.

Usage:
    trend-trader run [--mode=MODE] [--confirm-live] [--dashboard-port=PORT]
    trend-trader status
    trend-trader version
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from .config import load_config
from .orchestrator import Orchestrator, TradingMode


def setup_logging(level: str = "INFO", log_file: str = None) -> None:
    """Configure logging."""
    log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=log_format,
        handlers=handlers,
    )


async def _run(orchestrator: Orchestrator, dashboard_port: int = None) -> None:
    if dashboard_port is None:
        await orchestrator.start()
        return

    from .dashboard import create_app, serve_dashboard
    dashboard = asyncio.create_task(
        serve_dashboard(create_app(orchestrator), port=dashboard_port)
    )
    try:
        await orchestrator.start()
    finally:
        dashboard.cancel()
        await asyncio.gather(dashboard, return_exceptions=True)


def cmd_run(args: argparse.Namespace) -> int:
    """Run the trading system."""
    config = load_config(args.config)

    # Get credentials from environment
    api_key = os.environ.get("COINBASE_API_KEY")
    api_secret = os.environ.get("COINBASE_API_SECRET")
    passphrase = os.environ.get("COINBASE_API_PASSPHRASE")
    use_sandbox = os.environ.get("COINBASE_SANDBOX", "true").lower() == "true"

    mode = args.mode or os.environ.get("TRADING_MODE", TradingMode.PAPER)

    if mode == TradingMode.LIVE:
        if not api_key or not api_secret or not passphrase:
            print("Error: API credentials required for live trading")
            print("Set COINBASE_API_KEY, COINBASE_API_SECRET and COINBASE_API_PASSPHRASE")
            return 1

        # Safety check
        if not args.confirm_live:
            print("WARNING: You are about to start LIVE trading with real money!")
            print("Add --confirm-live flag to proceed")
            return 1

    log_level = os.environ.get("LOG_LEVEL", "INFO")
    log_file = os.environ.get("LOG_FILE")
    setup_logging(log_level, log_file)

    logger = logging.getLogger(__name__)
    logger.info(f"Starting trend-trader in {mode} mode")

    orchestrator = Orchestrator(
        config=config,
        mode=mode,
        api_key=api_key,
        api_secret=api_secret,
        passphrase=passphrase,
        use_sandbox=use_sandbox,
    )

    exit_code = 0
    try:
        asyncio.run(_run(orchestrator, args.dashboard_port))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.critical(f"Stopped: {e}")
        exit_code = 2

    stats = orchestrator.get_stats()
    print("\nFinal Statistics:")
    print(f"  Cycles started: {stats['cycles_started']}")
    print(f"  Triggers fired: {stats['triggers_fired']}")
    print(f"  Orders settled: {stats['orders_settled']}")
    print(f"  Machine restarts: {stats['machine_restarts']}")

    return exit_code


def cmd_status(args: argparse.Namespace) -> int:
    """Show configuration summary."""
    print("Trend Trader Status")
    print("=" * 40)
    print("No running instance detected")
    print("\nConfiguration:")

    config = load_config(args.config)
    print(f"  Product: {config.product.product_id}")
    print(f"  Signal threshold: {config.signal.threshold} ticks")
    print(f"  Stop loss: {config.signal.stop_loss_pct:.1%}")
    print(f"  Take profit: {config.orders.take_profit_pct:.2%}")
    print(f"  Feed: {config.feed.ws_url}")

    return 0


def cmd_version(args: argparse.Namespace) -> int:
    """Show version information."""
    from . import __version__
    print(f"trend-trader version {__version__}")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="trend-trader",
        description="Single-pair trend-following limit order agent",
    )
    parser.add_argument(
        "--config", "-c",
        help="Path to config file",
        default=None,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # run command
    run_parser = subparsers.add_parser("run", help="Run the trading system")
    run_parser.add_argument(
        "--mode", "-m",
        choices=[TradingMode.PAPER, TradingMode.LIVE, TradingMode.MOCK],
        default=None,
        help="Trading mode (default: paper)",
    )
    run_parser.add_argument(
        "--confirm-live",
        action="store_true",
        help="Confirm live trading (required for live mode)",
    )
    run_parser.add_argument(
        "--dashboard-port", "-p",
        type=int,
        default=None,
        help="Serve the diagnostics dashboard on this port",
    )
    run_parser.set_defaults(func=cmd_run)

    # status command
    status_parser = subparsers.add_parser("status", help="Show configuration summary")
    status_parser.set_defaults(func=cmd_status)

    # version command
    version_parser = subparsers.add_parser("version", help="Show version")
    version_parser.set_defaults(func=cmd_version)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

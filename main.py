"""
main.py - Spread Signal Trader Entry Point

Wires the components together and runs them on one event loop. This file
contains only orchestration: configuration, startup, shutdown.

Startup order:
1. Configuration (YAML + environment + CLI) and logging
2. Exchange connection and starting balance (failure is fatal)
3. Tracker, validator, sizer, orchestrator
4. Telegram transport, signal consumer, reconciliation loop, daily report
5. Optional read-only status API

Graceful shutdown on SIGINT/SIGTERM.
"""

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.config import DEFAULT_CONFIG_PATH, BotConfig, load_config
from core.environment import load_env_file
from core.lifecycle import LifecycleOrchestrator
from core.state import RunningStatistics
from data.exchange import BybitConnector, describe_error
from execution.gateway import OrderGateway, PositionMode
from execution.position_tracker import PositionTracker
from interfaces.api import create_app, create_server
from interfaces.telegram import TelegramTransport
from monitoring.logger import configure_logging, log_event
from monitoring.notifier import Notifier, format_shutdown, format_startup
from risk.position_sizing import PositionSizer
from signals.trading_hours import TradingHours
from signals.validator import SignalValidator

logger = logging.getLogger(__name__)


SHUTDOWN_GRACE_SECONDS = 10.0


class FatalStartupError(RuntimeError):
    """The bot cannot start safely (no exchange connection, no balance, no signal source)."""


class SignalTradingBot:
    """
    Process-level owner of every component.

    `connector` and `transport` may be injected (tests); otherwise they are
    built from the configuration.
    """

    def __init__(self, config: BotConfig, connector: Optional[BybitConnector] = None,
                 transport: Optional[TelegramTransport] = None):
        self.config = config
        self.dry_run = config.trading.dry_run
        self.connector = connector
        self.transport = transport
        self.statistics = RunningStatistics()
        self.trading_hours = TradingHours(config.trading_hours.start_hour, config.trading_hours.end_hour)
        self.gateway: Optional[OrderGateway] = None
        self.notifier: Optional[Notifier] = None
        self.tracker: Optional[PositionTracker] = None
        self.orchestrator: Optional[LifecycleOrchestrator] = None
        self.api_server = None
        self._api_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._started = False
        self._shutdown_done = False

    # -----------------------
    # Startup
    # -----------------------
    async def setup(self) -> None:
        cfg = self.config
        logger.info("=" * 60)
        logger.info("[INIT] SPREAD SIGNAL TRADER STARTING")
        logger.info("=" * 60)
        logger.info(f"[INIT] Configuration: {cfg.summary()}")
        if self.dry_run:
            logger.warning("[INIT] DRY RUN: orders are simulated, nothing is sent to the exchange or Telegram")

        if not self.dry_run and not cfg.exchange.has_credentials:
            raise FatalStartupError("BYBIT_API_KEY and BYBIT_API_SECRET are required for live trading")

        if self.connector is None:
            self.connector = BybitConnector(
                api_key=cfg.exchange.api_key,
                secret=cfg.exchange.api_secret,
                testnet=cfg.exchange.testnet,
                timeout=cfg.exchange.timeout,
                max_attempts=cfg.exchange.max_attempts,
            )
        self.gateway = OrderGateway(self.connector, PositionMode(cfg.exchange.position_mode))

        try:
            await self.connector.connect()
            balance = await self.gateway.get_balance()
        except Exception as exc:
            raise FatalStartupError(f"Exchange initialization failed: {describe_error(exc)}") from exc
        self.statistics.set_start_balance(balance)
        logger.info(f"[INIT] Starting balance: {balance:.2f} USDT")

        if self.transport is None:
            if not cfg.telegram.configured:
                raise FatalStartupError("TELEGRAM_BOT_TOKEN and TELEGRAM_CHANNEL_ID are required")
            self.transport = TelegramTransport(
                cfg.telegram.bot_token, cfg.telegram.channel_id, poll_timeout=cfg.telegram.poll_timeout
            )

        self.notifier = Notifier(self.transport, cfg.telegram.channel_id, dry_run=self.dry_run)
        self.tracker = PositionTracker(
            self.gateway, self.statistics, self.notifier,
            close_confirm_timeout=cfg.monitoring.close_confirm_timeout_seconds,
        )
        validator = SignalValidator(
            allowed_symbols=cfg.trading.allowed_symbols,
            trading_hours=self.trading_hours,
            max_open_positions=cfg.trading.max_open_positions,
            max_daily_trades=cfg.trading.max_daily_trades,
            tracker=self.tracker,
            gateway=self.gateway,
            statistics=self.statistics,
        )
        self.orchestrator = LifecycleOrchestrator(
            validator=validator,
            sizer=PositionSizer(cfg.risk.position_size_percent, cfg.risk.leverage),
            gateway=self.gateway,
            tracker=self.tracker,
            statistics=self.statistics,
            notifier=self.notifier,
            trading_hours=self.trading_hours,
            dry_run=self.dry_run,
            report_hour_utc=cfg.monitoring.daily_report_hour_utc,
            queue_size=cfg.trading.signal_queue_size,
        )

        self.transport.on_signal(self.orchestrator.submit)
        try:
            await self.transport.start()
        except Exception as exc:
            raise FatalStartupError(f"Telegram initialization failed: {exc}") from exc

        self.orchestrator.start()
        self.tracker.start_monitoring(cfg.monitoring.reconcile_interval_seconds)

        if cfg.api.enabled:
            app = create_app(self.tracker, self.statistics, dry_run=self.dry_run)
            self.api_server = create_server(app, cfg.api.host, cfg.api.port)
            self._api_task = asyncio.create_task(self.api_server.serve())
            logger.info(f"[INIT] Status API on http://{cfg.api.host}:{cfg.api.port}")

        self._started = True
        log_event("bot.started", {'balance': balance, **cfg.summary()})
        logger.info("[INIT] Bot started, waiting for signals")
        await self.notifier.send(format_startup(
            balance=balance,
            dry_run=self.dry_run,
            position_size_percent=cfg.risk.position_size_percent,
            leverage=cfg.risk.leverage,
            trading_hours=self.trading_hours.describe(),
        ))

    # -----------------------
    # Run / shutdown
    # -----------------------
    def request_shutdown(self) -> None:
        logger.info("[SHUTDOWN] Shutdown requested")
        if self._stop_event is not None:
            self._stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(self.request_shutdown))

    async def run(self) -> None:
        self._stop_event = asyncio.Event()
        self._install_signal_handlers()
        try:
            await self.setup()
            await self._stop_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        if self._shutdown_done:
            return
        self._shutdown_done = True
        logger.info("[SHUTDOWN] Stopping bot...")
        try:
            if self.tracker is not None:
                self.tracker.stop_monitoring()
                try:
                    await asyncio.wait_for(self.tracker.wait_stopped(), timeout=SHUTDOWN_GRACE_SECONDS)
                except asyncio.TimeoutError:
                    logger.warning("[SHUTDOWN] Reconciliation tick still running, not waiting further")

            if self.orchestrator is not None:
                await self.orchestrator.stop()

            if self._started and self.notifier is not None:
                await self.notifier.send(format_shutdown(
                    open_positions=self.tracker.get_open_positions_count(),
                    daily_trades=self.statistics.daily_trades,
                ))

            if self.transport is not None:
                await self.transport.stop()

            if self.api_server is not None:
                self.api_server.should_exit = True
                if self._api_task is not None:
                    await asyncio.gather(self._api_task, return_exceptions=True)

            if self.connector is not None:
                await self.connector.disconnect()

            log_event("bot.stopped", self.statistics.snapshot().to_dict())
        except Exception as exc:
            logger.error(f"[SHUTDOWN] Error during shutdown: {exc}", exc_info=True)
        logger.info("[SHUTDOWN] Bot stopped")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Spread signal trader for Bybit USDT perpetuals")
    parser.add_argument('-c', '--config', default=DEFAULT_CONFIG_PATH, help='Path to config YAML')
    parser.add_argument('--env-file', default='.env', help='Path to .env file')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--dry-run', dest='dry_run', action='store_true', help='Simulate orders')
    mode.add_argument('--live', dest='dry_run', action='store_false', help='Place real orders')
    parser.set_defaults(dry_run=None)
    parser.add_argument('--testnet', dest='testnet', action='store_true', default=None, help='Use Bybit testnet')
    parser.add_argument('--log-level', dest='log_level', help='Override log level (DEBUG/INFO/WARNING/ERROR)')
    return parser.parse_args(argv)


def cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if args.dry_run is not None:
        overrides.setdefault('trading', {})['dry_run'] = args.dry_run
    if args.testnet:
        overrides.setdefault('exchange', {})['testnet'] = True
    if args.log_level:
        overrides.setdefault('monitoring', {})['log_level'] = args.log_level.upper()
    return overrides


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(level=args.log_level or "INFO")
    load_env_file(args.env_file)

    try:
        config = load_config(args.config, overrides=cli_overrides(args))
    except ValueError as exc:
        logger.critical(f"[INIT] {exc}")
        return 2

    configure_logging(level=config.monitoring.log_level, log_file=config.monitoring.log_file)
    bot = SignalTradingBot(config)
    try:
        asyncio.run(bot.run())
    except FatalStartupError as exc:
        logger.critical(f"[INIT] Fatal error during initialization: {exc}")
        return 1
    except KeyboardInterrupt:
        logger.info("[SHUTDOWN] Interrupted")
    logger.info(f"[SHUTDOWN] Exited at {datetime.now(timezone.utc).isoformat()}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

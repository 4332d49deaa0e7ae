"""
Base Swap Watcher: main entrypoint.

Single-process asyncio runner. The SwapBot supervisor owns every concurrent
piece (per-pool swap consumers, the token-actions subscriber, the stale-pair
sweep and the transport-fault watcher); this module validates configuration,
installs signal handlers and maps fatal conditions to the process exit code.

Exit codes:
    0  graceful shutdown (SIGINT / SIGTERM)
    1  invalid configuration, no live RPC endpoint, Redis unreachable,
       or a transport fault under the "exit" policy

Usage:
    python main.py
"""

from __future__ import annotations

import asyncio
import signal
import sys

from dotenv import load_dotenv

from bot_logging.logger_manager import create_module_log_directories, setup_module_logger
from config.loader import get_config
from config.validate import ConfigValidationError, validate_all_configs

# ---------------------------------------------------------------------------
# Module logger (logged to logs/ root, no sub-folder)
# ---------------------------------------------------------------------------
_logger = setup_module_logger("main", "main.log", console=True)


# ---------------------------------------------------------------------------
# Startup banner
# ---------------------------------------------------------------------------


def _log_banner(
    endpoints: list[str],
    redis_url: str,
    db_path: str,
    fault_policy: str,
    min_amount: str,
) -> None:
    """Log a concise startup summary."""
    _logger.info("=" * 60)
    _logger.info("Base Swap Watcher starting")
    _logger.info("=" * 60)
    _logger.info("  rpc endpoints   : %d configured", len(endpoints))
    for url in endpoints:
        _logger.info("    - %s...%s", url[:25], url[-6:] if len(url) > 31 else "")
    _logger.info("  redis           : %s", redis_url.split("@")[-1])
    _logger.info("  db_path         : %s", db_path)
    _logger.info("  on_fault        : %s", fault_policy)
    _logger.info("  min_received    : %s", min_amount)
    _logger.info("=" * 60)


# ---------------------------------------------------------------------------
# Main async entry
# ---------------------------------------------------------------------------


async def _run() -> int:
    """Wire the supervisor, wait for shutdown, return the exit code."""
    # ------------------------------------------------------------------
    # 1. Load environment and validate configuration
    # ------------------------------------------------------------------
    load_dotenv()

    try:
        validate_all_configs()
    except ConfigValidationError as exc:
        _logger.critical("Config validation failed:\n%s", exc)
        return 1

    create_module_log_directories()

    cfg = get_config()
    _log_banner(
        cfg.get_rpc_endpoints(),
        cfg.get_redis_url(),
        cfg.get_db_path(),
        cfg.get_fault_policy(),
        str(cfg.get_min_amount_received()),
    )

    # ------------------------------------------------------------------
    # 2. Signal handling for graceful shutdown
    # ------------------------------------------------------------------
    from chain.chain_client import NoLiveEndpointError
    from core.pair_store import PairStoreError
    from core.swap_bot import SwapBot
    from messaging.redis_bus import RedisBusError

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal(sig: signal.Signals) -> None:
        _logger.info("Received %s, initiating graceful shutdown", sig.name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    # ------------------------------------------------------------------
    # 3. Start the supervisor
    # ------------------------------------------------------------------
    bot = SwapBot(shutdown_event=shutdown_event)
    try:
        await bot.start()
    except NoLiveEndpointError as exc:
        _logger.critical("No live RPC endpoint: %s", exc)
        bot.request_shutdown(1)
    except (RedisBusError, PairStoreError) as exc:
        _logger.critical("Startup failed: %s", exc)
        bot.request_shutdown(1)

    # ------------------------------------------------------------------
    # 4. Wait for shutdown, then tear down
    # ------------------------------------------------------------------
    try:
        await shutdown_event.wait()
    finally:
        await bot.stop()

    return bot.exit_code


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    """Synchronous entry point."""
    try:
        exit_code = asyncio.run(_run())
    except KeyboardInterrupt:
        _logger.info("Interrupted by user")
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()

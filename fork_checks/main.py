from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path

import httpx
import structlog

from fork_checks.alert_manager import AlertManager
from fork_checks.chain_client import ChainClient
from fork_checks.config import Config, ConfigError, load_config
from fork_checks.node_pool import HashesAreNotTheSameError, NodePool, NoConnectedPeersError, RestNodePool
from fork_checks.telegram import TelegramConfig, TelegramNotifier


logger = structlog.get_logger(__name__)

# Pause before retrying after a failed cycle so a dead pool does not spin.
ERROR_RETRY_SECONDS = 5.0


class ForkChecker:
    def __init__(
        self,
        config: Config,
        *,
        alert_manager: AlertManager,
        node_pool: NodePool,
        chain_client: ChainClient | None = None,
    ) -> None:
        self.config = config
        self.alert_manager = alert_manager
        self.node_pool = node_pool
        self.chain_client = chain_client
        self.checkpoint = 0

    async def init_checkpoint(self) -> int:
        if self.config.checkpoint:
            self.checkpoint = int(self.config.checkpoint)
        else:
            if self.chain_client is None:
                raise RuntimeError("checkpoint is not configured and no chain client is available")
            self.checkpoint = await self.chain_client.get_blockchain_height()
        logger.info("Initialized checkpoint", checkpoint=self.checkpoint)
        return self.checkpoint

    async def run_cycle(self) -> bool:
        """
        Run one monitoring cycle. Returns True when the checkpoint advanced.
        """
        nodes = self.alert_manager.node_infos
        failed = await self.node_pool.connect_to_nodes(nodes, self.config.discover)
        if failed:
            logger.info("Failed connections", count=len(failed), endpoints=sorted(n.endpoint for n in failed.values()))

        # Offline alerts cover every configured node, whatever the chain does.
        await self.alert_manager.handle_offline_alert(failed)

        not_reached, reached = await self.node_pool.wait_height(self.checkpoint)
        await self.alert_manager.handle_sync_alert(self.checkpoint, not_reached, reached)

        if not reached:
            logger.warning("Chain is stuck; no nodes reached height", checkpoint=self.checkpoint)
            return False

        logger.info("Checking block hash", checkpoint=self.checkpoint)
        try:
            await self.node_pool.compare_hashes(self.checkpoint)
        except HashesAreNotTheSameError as exc:
            logger.warning("Hashes are not the same", checkpoint=self.checkpoint, hashes=exc.hashes)
            await self.alert_manager.handle_hash_alert(self.checkpoint, exc.hashes)

        self.checkpoint += int(self.config.height_check_interval)
        return True

    async def start(self, *, once: bool = False) -> None:
        while True:
            sleep_for = float(self.config.cycle_interval_seconds)
            try:
                await self.run_cycle()
            except NoConnectedPeersError as exc:
                logger.warning("No connected peers", checkpoint=self.checkpoint, error=str(exc))
                sleep_for = max(sleep_for, ERROR_RETRY_SECONDS)
            except Exception as exc:
                logger.exception("Cycle failed", checkpoint=self.checkpoint, error=str(exc))
                sleep_for = max(sleep_for, ERROR_RETRY_SECONDS)

            if once:
                return
            await asyncio.sleep(sleep_for)


def configure_logging(level_name: str) -> None:
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # httpx logs request URLs through stdlib logging; the Telegram token is part of the URL.
    logging.basicConfig(level=logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def build_alert_manager(config: Config, http_client: httpx.AsyncClient) -> AlertManager:
    notifier = TelegramNotifier(
        http_client,
        TelegramConfig(bot_token=config.bot_api_key, chat_id=config.chat_id),
        enabled=config.notify,
    )
    return AlertManager(config.alert_config, config.node_infos(), notifier)


async def run_loop(config_path: Path, once: bool) -> int:
    config = load_config(config_path)

    async with httpx.AsyncClient() as http_client:
        alert_manager = build_alert_manager(config, http_client)
        checker = ForkChecker(
            config,
            alert_manager=alert_manager,
            node_pool=RestNodePool(http_client),
            chain_client=ChainClient(http_client, config.api_urls),
        )
        await checker.init_checkpoint()

        logger.info(
            "Starting fork checker",
            nodes=len(alert_manager.node_infos),
            api_urls=config.api_urls,
            notify=config.notify,
            offline_threshold=config.alert_config.offline_consecutive_threshold,
        )
        await checker.start(once=once)
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Blockchain fork and sync checker")
    parser.add_argument("--config", "--file", dest="config", default="config.json", help="Path to YAML/JSON config")
    parser.add_argument("--once", action="store_true", help="Run one check cycle and exit")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    args = parser.parse_args()

    configure_logging(args.log_level)

    try:
        return asyncio.run(run_loop(Path(args.config), once=bool(args.once)))
    except ConfigError as exc:
        logger.error("Error loading config", error=str(exc))
        return 2
    except RuntimeError as exc:
        logger.error("Failed to set up fork checker", error=str(exc))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

import asyncio
import signal

import structlog
from prometheus_client import start_http_server

from quotabar.cache import CacheStore
from quotabar.cli import parse_args
from quotabar.config import Config
from quotabar.credentials import (
    AuthFileCredentialStore,
    ChainCredentialStore,
    EnvCredentialStore,
)
from quotabar.display import LogDisplay
from quotabar.logging import setup_logging
from quotabar.metrics import MetricsUpdater
from quotabar.provider.base import UsageProvider
from quotabar.provider.opencode import OpenCodeProvider
from quotabar.provider.openrouter import OpenRouterProvider
from quotabar.scheduler import Scheduler
from quotabar.transport import AsyncSubprocessRunner

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9186' or '127.0.0.1:9186'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def build_providers(config: "Config") -> "list[UsageProvider]":
    """
    builds the providers that need no document host. The browser
    billing provider is wired by applications that embed one.
    """
    credentials = ChainCredentialStore(
        EnvCredentialStore(),
        AuthFileCredentialStore(config.auth_file),
    )
    return [
        OpenRouterProvider(credentials=credentials),
        OpenCodeProvider(
            runner=AsyncSubprocessRunner(),
            binary=config.opencode_bin,
            monthly_limit=config.monthly_limit,
        ),
    ]


def main() -> "None":
    config = parse_args()
    setup_logging(config.log_level)

    metrics_updater = MetricsUpdater()
    providers = build_providers(config)
    for provider in providers:
        logger.info("provider_enabled", provider=provider.identifier.value)

    if config.metrics_enabled and not config.once:
        host, port = _parse_listen_address(config.listen_address)
        start_http_server(port, addr=host)
        logger.info("metrics_server_started", host=host, port=port)

    async def _run() -> "None":
        scheduler = Scheduler(
            providers,
            CacheStore(config.cache_dir),
            LogDisplay(),
            metrics=metrics_updater,
            interval_seconds=config.refresh_interval,
        )

        if config.once:
            try:
                await scheduler.refresh_all()
            finally:
                await scheduler.close()
            return

        loop = asyncio.get_running_loop()
        # for SIGINT and SIGTERM, signal the scheduler
        # to stop gracefully
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, scheduler.stop)

        try:
            await scheduler.run()
        finally:
            logger.info("shutting_down")
            await scheduler.close()
            logger.info("shutdown_complete")

    asyncio.run(_run())


if __name__ == "__main__":
    main()

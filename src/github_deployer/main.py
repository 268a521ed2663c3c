"""Main entry point for GitHub Deployer."""

import asyncio
import contextlib

import asyncpg  # type: ignore[import-not-found,import-untyped]

from github_deployer.config import get_settings
from github_deployer.context import EngineContext
from github_deployer.engine import DeploymentEngine
from github_deployer.logging import get_logger, setup_logging
from github_deployer.server import DeployerServer
from github_deployer.storage import PostgresRepositoryStore


async def main() -> None:
    """Start the HTTP surface and the update scheduler, run until cancelled."""
    settings = get_settings()
    setup_logging(settings)
    log = get_logger("github_deployer.main")

    log.info(
        "starting_github_deployer",
        environment=settings.environment,
        plugins_dir=str(settings.plugins_dir),
        themes_dir=str(settings.themes_dir),
        authenticated=bool(settings.token),
    )

    pool = await asyncpg.create_pool(dsn=settings.postgres_dsn)
    store = PostgresRepositoryStore()
    await store.initialize(pool)

    engine = DeploymentEngine(EngineContext.from_settings(settings, store))
    admin_secret = settings.admin_secret.get_secret_value() if settings.admin_secret else ""
    server = DeployerServer(
        engine, host=settings.server_host, port=settings.server_port, secret=admin_secret
    )
    await server.start()
    scheduler = asyncio.create_task(engine.detector.run_forever())

    try:
        await scheduler
    except KeyboardInterrupt:
        log.info("shutdown_requested")
    finally:
        scheduler.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await scheduler
        await server.stop()
        await engine.close()
        await pool.close()
        log.info("github_deployer_stopped")


def run() -> None:
    """Run the application."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    run()

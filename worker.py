import asyncio
import logging
from typing import Any, Callable, Optional

import aiohttp

from core.actions import ActionsDeps
from core.config import Settings, load_settings
from core.events import EventBus
from core.runner import RunnerDeps, passthrough_decrypt, run_forever
from integrations.services import RequestManager
from integrations.torbox import TorBoxClient
from storage.automation import AutomationStore
from storage.database import Database
from storage.snapshots import SnapshotStore


LOG_FORMAT = '%(asctime)s [%(levelname)s]: %(message)s'
EVENT_LOGGER_NAME = 'torbox_automation.events'


def setup_logging(debug_logging: bool) -> logging.Logger:
    logging_level = logging.DEBUG if debug_logging else logging.INFO
    logging.basicConfig(
        format=LOG_FORMAT,
        level=logging_level,
        handlers=[logging.StreamHandler()],
        force=True,
    )
    # Dedicated non-propagating logger for structured event logs to avoid duplicates
    event_log = logging.getLogger(EVENT_LOGGER_NAME)
    event_log.setLevel(logging_level)
    event_log.propagate = False
    for h in list(event_log.handlers):
        event_log.removeHandler(h)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    event_log.addHandler(handler)
    return event_log


def make_client_factory(
    session: aiohttp.ClientSession,
    settings: Settings,
    request_manager: Optional[RequestManager] = None,
) -> Callable[[str], TorBoxClient]:
    def _factory(api_key: str) -> TorBoxClient:
        return TorBoxClient(
            session,
            api_key,
            base_url=settings.api_base,
            api_version=settings.api_version,
            request_timeout=settings.request_timeout,
            user_agent=settings.user_agent,
            request_manager=request_manager,
            min_interval_ms=settings.min_request_interval_ms,
            max_concurrent=settings.max_concurrent_requests,
            debug_logging=settings.debug_logging,
        )

    return _factory


def build_deps(
    settings: Settings,
    db: Database,
    session: aiohttp.ClientSession,
    event_log: logging.Logger,
    decrypt_api_key: Callable[[str], Any] = passthrough_decrypt,
) -> RunnerDeps:
    event_bus = EventBus(
        structured_logs=settings.structured_logs,
        dry_run=settings.dry_run,
        debug_logging=settings.debug_logging,
        logger=event_log,
    )
    return RunnerDeps(
        automation_store=AutomationStore(db),
        snapshot_store=SnapshotStore(db),
        client_factory=make_client_factory(session, settings, RequestManager()),
        event_bus=event_bus,
        actions=ActionsDeps(
            event_bus=event_bus,
            debug_logging=settings.debug_logging,
            dry_run=settings.dry_run,
        ),
        decrypt_api_key=decrypt_api_key,
        batch_size=settings.batch_size,
        metrics_concurrency=settings.metrics_concurrency,
        retention_days=settings.snapshot_retention_days,
        automation_interval_seconds=settings.automation_interval_seconds,
        cleanup_interval_hours=settings.cleanup_interval_hours,
    )


async def main(settings: Optional[Settings] = None) -> None:
    settings = settings or load_settings()
    event_log = setup_logging(settings.debug_logging)
    if settings.dry_run:
        logging.info('DRY_RUN enabled: actions will be logged, not sent')
    async with Database(settings.database_path) as db:
        async with aiohttp.ClientSession() as session:
            logging.info(
                f'Starting TorBox automation worker (interval={settings.automation_interval_seconds}s, '
                f'batch_size={settings.batch_size}, db={settings.database_path})'
            )
            deps = build_deps(settings, db, session, event_log)
            await run_forever(deps, logging.info)


if __name__ == '__main__':
    asyncio.run(main())

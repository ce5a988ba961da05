"""Composition root: builds every collaborator exactly once per process."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import partial

import asyncpg
import httpx

from birthday_sync.config import AppConfig
from birthday_sync.core.store import PostgresDocumentStore, create_pool
from birthday_sync.dispatch import LocalTaskDispatcher
from birthday_sync.google.calendar import CalendarClient, GoogleCalendarClient
from birthday_sync.google.oauth import AccountCredentials, GoogleTokenSource
from birthday_sync.hebcal import HebcalClient
from birthday_sync.repositories import (
    AccountLinkRepository,
    GroupRepository,
    JobRepository,
    OrganizationRepository,
    RecordRepository,
    SubItemRepository,
)
from birthday_sync.sync.builder import DefaultEventBuilder
from birthday_sync.sync.bulk import BulkSyncService
from birthday_sync.sync.cleanup import SyncCleanup
from birthday_sync.sync.engine import SyncEngine
from birthday_sync.sync.retry import RetryPolicy
from birthday_sync.sync.sweep import RetrySweep

logger = logging.getLogger(__name__)


@dataclass
class Application:
    store: PostgresDocumentStore
    engine: SyncEngine
    bulk: BulkSyncService
    sweep: RetrySweep
    cleanup: SyncCleanup
    dispatcher: LocalTaskDispatcher


@asynccontextmanager
async def build_application(config: AppConfig) -> AsyncIterator[Application]:
    """Wire the service from *config* and release its resources on exit.

    Pending dispatched bulk chunks are drained before the HTTP client and
    database pool are closed; if the body raises they are cancelled instead.
    """
    pool: asyncpg.Pool = await create_pool(
        config.database.dsn,
        min_size=config.database.min_pool_size,
        max_size=config.database.max_pool_size,
    )
    http_client = httpx.AsyncClient(timeout=config.google.timeout_seconds)
    dispatcher = LocalTaskDispatcher()
    try:
        store = PostgresDocumentStore(pool)
        records = RecordRepository(store)
        accounts = AccountLinkRepository(store)

        tokens = GoogleTokenSource(
            client_id=config.google.client_id,
            client_secret=config.google.client_secret,
            accounts=accounts,
            http_client=http_client,
        )

        def client_factory(credentials: AccountCredentials) -> CalendarClient:
            return GoogleCalendarClient(
                http_client, partial(tokens.get_access_token, credentials.owner_id)
            )

        retry_policy = RetryPolicy(
            max_retries=config.sync.max_retries,
            base_delay_seconds=config.sync.base_delay_seconds,
            max_jitter_seconds=config.sync.max_jitter_seconds,
        )

        engine = SyncEngine(
            records=records,
            organizations=OrganizationRepository(store),
            groups=GroupRepository(store),
            sub_items=SubItemRepository(store),
            credentials=tokens,
            client_factory=client_factory,
            builder=DefaultEventBuilder(),
            lunar_calendar=HebcalClient(http_client, base_url=config.hebcal.base_url),
            retry_policy=retry_policy,
            strict_mode=config.sync.strict_mode,
            operation_delay_seconds=config.sync.operation_delay_seconds,
            write_back_attempts=config.sync.write_back_attempts,
        )
        bulk = BulkSyncService(
            engine=engine,
            records=records,
            jobs=JobRepository(store),
            accounts=accounts,
            dispatcher=dispatcher,
            concurrency=config.bulk.concurrency,
            chunk_size=config.bulk.chunk_size,
            chunk_delay_seconds=config.bulk.chunk_delay_seconds,
        )
        dispatcher.bind(bulk.handle_task)

        app = Application(
            store=store,
            engine=engine,
            bulk=bulk,
            sweep=RetrySweep(
                engine=engine,
                records=records,
                concurrency=config.bulk.concurrency,
                max_retries=config.sync.sweep_max_retries,
            ),
            cleanup=SyncCleanup(
                engine=engine,
                records=records,
                credentials=tokens,
                client_factory=client_factory,
                retry_policy=retry_policy,
                delay_seconds=config.sync.cleanup_delay_seconds,
            ),
            dispatcher=dispatcher,
        )
        logger.info("Application wired (strict_mode=%s)", config.sync.strict_mode)
        try:
            yield app
        except BaseException:
            await dispatcher.cancel_pending()
            raise
        await dispatcher.drain()
    finally:
        await http_client.aclose()
        await pool.close()

from __future__ import annotations

import argparse
import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx
from opentelemetry import trace

from trove.core.config import Settings, get_settings
from trove.core.crypto import get_cipher
from trove.core.telemetry import (
    configure_logging,
    setup_pipeline_telemetry,
    shutdown_pipeline_telemetry,
)
from trove.jobs.extraction import run_extraction_batch
from trove.jobs.media_download import run_media_batch
from trove.jobs.normalization import run_normalization_batch
from trove.jobs.sync_scheduler import SyncScheduler
from trove.services.object_storage import ObjectStorage, build_object_storage
from trove.services.platform_client import PlatformClient
from trove.services.repository import PostgresRepository, get_repository
from trove.services.token_manager import AccountTokenManager

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

STAGES = ("extraction", "normalization", "media", "scheduler")


@dataclass(slots=True)
class WorkerContext:
    settings: Settings
    repository: PostgresRepository
    client: PlatformClient
    token_manager: AccountTokenManager
    storage: ObjectStorage
    scheduler: SyncScheduler
    last_sync_at: float = 0.0
    last_reap_at: float = 0.0


def build_context(settings: Settings, http_client: httpx.AsyncClient) -> WorkerContext:
    repository = get_repository()
    client = PlatformClient(timeout_seconds=settings.upstream_timeout_seconds, client=http_client)
    token_manager = AccountTokenManager(repository, get_cipher(), client=client, settings=settings)
    return WorkerContext(
        settings=settings,
        repository=repository,
        client=client,
        token_manager=token_manager,
        storage=build_object_storage(settings),
        scheduler=SyncScheduler(repository, token_manager, client, settings),
    )


async def extraction_step(ctx: WorkerContext) -> int:
    return await run_extraction_batch(ctx.repository, batch_size=ctx.settings.extraction_batch_size)


async def normalization_step(ctx: WorkerContext) -> int:
    return await run_normalization_batch(
        ctx.repository,
        ctx.token_manager,
        ctx.client,
        ctx.settings,
        batch_size=ctx.settings.normalization_batch_size,
    )


async def media_step(ctx: WorkerContext) -> int:
    return await run_media_batch(
        ctx.repository,
        ctx.storage,
        ctx.client,
        ctx.settings,
        batch_size=ctx.settings.media_batch_size,
    )


async def scheduler_step(ctx: WorkerContext) -> int:
    now = time.monotonic()
    work = 0
    if now - ctx.last_reap_at >= ctx.settings.reaper_interval_seconds:
        reaped = await ctx.repository.reap_stale_claims(
            now=datetime.now(timezone.utc),
            older_than_seconds=ctx.settings.stale_claim_seconds,
        )
        if reaped:
            logger.info("reaped stale claims: %s", reaped)
        ctx.last_reap_at = now

    if now - ctx.last_sync_at >= ctx.settings.scheduler_interval_seconds:
        enqueued = await ctx.scheduler.run_scheduled_sync()
        if enqueued:
            logger.info("enqueued scheduled fetches: %s", len(enqueued))
        ctx.last_sync_at = now
        work += len(enqueued)

    continued = await ctx.scheduler.run_continuations()
    if continued:
        logger.info("enqueued continuation pages: %s", len(continued))
    return work + len(continued)


STAGE_STEPS: dict[str, Callable[[WorkerContext], Awaitable[int]]] = {
    "extraction": extraction_step,
    "normalization": normalization_step,
    "media": media_step,
    "scheduler": scheduler_step,
}


async def run_stage(stage: str, ctx: WorkerContext) -> None:
    step = STAGE_STEPS[stage]
    settings = ctx.settings
    backoff = settings.poll_interval_seconds

    while True:
        try:
            with tracer.start_as_current_span(f"worker.{stage}.poll_cycle"):
                processed = await step(ctx)
            backoff = settings.poll_interval_seconds
            if not processed:
                await asyncio.sleep(settings.poll_interval_seconds)
        except Exception as exc:  # pragma: no cover - loop robustness
            jitter = random.uniform(0.0, 0.5)
            sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
            logger.exception("%s iteration failed: %s; retry in %.1fs", stage, exc, sleep_for)
            await asyncio.sleep(sleep_for)
            backoff = sleep_for


async def run_worker(stage: str) -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    stages = STAGES if stage == "all" else (stage,)
    telemetry_runtime = setup_pipeline_telemetry(settings, stages=stages)

    try:
        async with httpx.AsyncClient(timeout=settings.upstream_timeout_seconds) as http_client:
            ctx = build_context(settings, http_client)
            try:
                logger.info("starting worker stages: %s", ", ".join(stages))
                await asyncio.gather(*(run_stage(name, ctx) for name in stages))
            finally:
                await ctx.repository.close()
    finally:
        shutdown_pipeline_telemetry(telemetry_runtime)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run trove pipeline workers.")
    parser.add_argument("--stage", choices=(*STAGES, "all"), default="all")
    return parser.parse_args(argv)


if __name__ == "__main__":
    asyncio.run(run_worker(parse_args().stage))

"""
Service wiring.

Everything with state (store gate, cache, resolver, queues, engine) is
constructed here and handed to the app; no module keeps a live connection.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from database import create_store_manager
from services.backfill_queue import BackfillQueue, BackfillWorker
from services.cache_service import CacheService
from services.chart_service import ChartService
from services.errors import ResourceUnavailableError
from services.instrument_store import InstrumentStore
from services.jobs import index_snapshot, value_feed, weekly_graph
from services.market_calendar import MarketCalendar
from services.providers import ProviderAdapter, build_providers
from services.resolver import TieredFundResolver
from services.returns_service import ReturnsService
from services.scheduler import DailySchedule, IntervalSchedule, JobQueue, RefreshEngine, WeeklySchedule

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    store_manager: object
    store: InstrumentStore
    cache: CacheService
    providers: List[ProviderAdapter]
    resolver: TieredFundResolver
    backfill_queue: BackfillQueue
    backfill_worker: BackfillWorker
    calendar: MarketCalendar
    returns_service: ReturnsService
    index_job: index_snapshot.IndexSnapshotJob
    value_job: value_feed.DailyValueFeedJob
    chart_service: ChartService
    chart_job: weekly_graph.WeeklyChartJob
    engine: RefreshEngine
    enable_backfill_worker: bool = True


def build_container(settings, providers: Optional[List[ProviderAdapter]] = None, transport=None) -> ServiceContainer:
    store_manager = create_store_manager(settings.DATABASE_URL)
    store = InstrumentStore(store_manager, op_timeout=settings.STORE_OP_TIMEOUT_SECONDS)
    cache = CacheService(
        redis_url=settings.REDIS_URL if settings.ENABLE_REDIS else None,
        default_ttl=settings.CACHE_TTL_SECONDS,
        op_timeout=settings.CACHE_OP_TIMEOUT_SECONDS,
    )
    if providers is None:
        providers = build_providers(settings)
    backfill_queue = BackfillQueue(
        store,
        max_attempts=settings.BACKFILL_MAX_ATTEMPTS,
        retry_delay_seconds=settings.BACKFILL_RETRY_DELAY_SECONDS,
    )
    resolver = TieredFundResolver(
        cache,
        store,
        providers,
        backfill=backfill_queue,
        provider_timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        cache_ttl=settings.CACHE_TTL_SECONDS,
        coalesce=settings.RESOLVER_COALESCE_MISSES,
    )
    backfill_worker = BackfillWorker(
        backfill_queue,
        resolver,
        store,
        poll_seconds=settings.BACKFILL_POLL_SECONDS,
        provider_timeout=settings.BACKFILL_PROVIDER_TIMEOUT_SECONDS,
    )
    calendar = MarketCalendar(tz=settings.MARKET_TIMEZONE, store=store)
    returns_service = ReturnsService(store)
    index_job = index_snapshot.IndexSnapshotJob(calendar, store, settings.INDEX_VENDOR_URL, transport=transport)
    value_job = value_feed.DailyValueFeedJob(
        store,
        returns_service,
        settings.VALUE_FEED_URL,
        recompute_delay=settings.RETURNS_RECOMPUTE_DELAY_SECONDS,
        transport=transport,
    )
    chart_service = ChartService(store)
    chart_job = weekly_graph.WeeklyChartJob(chart_service, batch_size=settings.WEEKLY_GRAPH_BATCH_SIZE)

    engine = RefreshEngine(enable_schedules=settings.ENABLE_SCHEDULER)
    engine.register(
        JobQueue(
            index_snapshot.JOB_NAME,
            index_job,
            schedule=IntervalSchedule(settings.INDEX_REFRESH_SECONDS),
            max_attempts=settings.JOB_MAX_ATTEMPTS,
            backoff_seconds=settings.JOB_BACKOFF_SECONDS,
            keep_completed=100,
            keep_failed=50,
        )
    )
    engine.register(
        JobQueue(
            value_feed.JOB_NAME,
            value_job,
            schedule=DailySchedule(settings.VALUE_FEED_TIME, tz=settings.MARKET_TIMEZONE),
            max_attempts=settings.JOB_MAX_ATTEMPTS,
            backoff_seconds=settings.JOB_BACKOFF_SECONDS,
            keep_completed=30,
            keep_failed=10,
            min_interval=settings.VALUE_FEED_MIN_INTERVAL_SECONDS,
        )
    )
    engine.register(
        JobQueue(
            weekly_graph.JOB_NAME,
            chart_job,
            schedule=WeeklySchedule(settings.WEEKLY_GRAPH_DAY, settings.WEEKLY_GRAPH_TIME, tz=settings.MARKET_TIMEZONE),
            max_attempts=settings.JOB_MAX_ATTEMPTS,
            backoff_seconds=settings.JOB_BACKOFF_SECONDS,
            keep_completed=4,
            keep_failed=10,
        )
    )

    return ServiceContainer(
        store_manager=store_manager,
        store=store,
        cache=cache,
        providers=providers,
        resolver=resolver,
        backfill_queue=backfill_queue,
        backfill_worker=backfill_worker,
        calendar=calendar,
        returns_service=returns_service,
        index_job=index_job,
        value_job=value_job,
        chart_service=chart_service,
        chart_job=chart_job,
        engine=engine,
        enable_backfill_worker=settings.ENABLE_BACKFILL_WORKER,
    )


async def start_container(c: ServiceContainer) -> None:
    await c.cache.connect()
    try:
        await c.store_manager.acquire()
        await c.calendar.ensure_loaded()
    except ResourceUnavailableError as e:
        # requests retry the store gate and answer 503 until it is reachable;
        # the calendar loads on the next index run or status request
        logger.error(f"❌ Store unavailable at startup: {e}")
    await c.engine.start()
    if c.enable_backfill_worker:
        await c.backfill_worker.start()


async def stop_container(c: ServiceContainer) -> None:
    if c.backfill_worker.is_running:
        await c.backfill_worker.stop()
    await c.engine.stop()
    await c.value_job.drain()
    await c.cache.close()
    await c.store_manager.close()

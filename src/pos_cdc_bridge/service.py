"""Service runtime wiring the database, broker and CDC pipeline together."""

from __future__ import annotations

import logging
import signal
import threading
from typing import List, Optional

from psycopg2 import Error as DatabaseError

from .broker.publisher import BrokerUnavailableError, EventPublisher
from .cdc import (
    AdaptiveScheduler,
    ChangeSource,
    PipelineState,
    PollingInterval,
    ShiftClosureFilter,
    TableProcessor,
    build_watermark_store,
)
from .config import Settings, load_settings
from .db import ConnectionPool, pool_from_settings
from .db.change_log import ChangeTrackingError, ChangeTrackingInstaller
from .db.registry import RegistryError, TrackedTableRegistry
from .db.repository import ChangeLogRepository
from .metrics import PerformanceStats, PipelineMetrics

logger = logging.getLogger(__name__)


class FatalStartupError(Exception):
    """Raised when the database or broker cannot be reached at process start."""


def build_pipeline(
    settings: Settings,
    *,
    registry: TrackedTableRegistry,
    repository: ChangeLogRepository,
    publisher: EventPublisher,
    metrics: Optional[PipelineMetrics] = None,
    performance: Optional[PerformanceStats] = None,
    stop_event: Optional[threading.Event] = None,
) -> AdaptiveScheduler:
    """Create pipeline state, one processor per tracked table and the scheduler."""
    metrics = metrics or PipelineMetrics()
    performance = performance or PerformanceStats()
    watermarks = build_watermark_store(
        settings.checkpoint_backend,
        settings.watermark_path,
        fsync=settings.watermark_fsync,
    )
    policy = settings.closure_policy
    state = PipelineState(
        registry.names(),
        watermarks=watermarks,
        dedup_size=settings.dedup_cache_size,
        dedup_ttl_seconds=settings.dedup_ttl_seconds,
        split_timeout_seconds=settings.split_timeout_seconds,
        closure_ttl_seconds=policy.closure_ttl_seconds,
    )
    source = ChangeSource(repository, state.watermarks, batch_size=settings.batch_size)
    closure_filter = ShiftClosureFilter(
        policy=policy, registry=state.closures, signals=repository
    )
    processors: List[TableProcessor] = [
        TableProcessor(
            spec,
            source=source,
            writer=repository,
            publisher=publisher,
            state=state,
            closure_filter=closure_filter,
            venue_id=settings.venue_id,
            instance_id=settings.instance_id,
            metrics=metrics,
            performance=performance,
        )
        for spec in registry
    ]
    interval = PollingInterval(
        minimum=settings.poll_min_interval_seconds,
        maximum=settings.poll_max_interval_seconds,
        step=settings.poll_backoff_seconds,
    )
    return AdaptiveScheduler(
        processors,
        interval=interval,
        state=state,
        metrics=metrics,
        performance=performance,
        performance_report_seconds=settings.performance_report_minutes * 60.0,
        idle_hook=publisher.keepalive,
        stop_event=stop_event,
    )


class ServiceRuntime:
    """Owns process resources and runs the scheduler until stopped."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.metrics = PipelineMetrics()
        self._stop_event = threading.Event()
        self._pool: Optional[ConnectionPool] = None
        self._publisher: Optional[EventPublisher] = None
        self._scheduler: Optional[AdaptiveScheduler] = None

    @property
    def scheduler(self) -> Optional[AdaptiveScheduler]:
        return self._scheduler

    def start(self) -> AdaptiveScheduler:
        settings = self.settings
        try:
            registry = TrackedTableRegistry(
                settings.db_schema, claim_tables=settings.claim_tables
            )
        except RegistryError as exc:
            raise FatalStartupError(str(exc)) from exc

        try:
            self._pool = pool_from_settings(settings)
            with self._pool.connection() as conn:
                if settings.install_change_tracking:
                    ChangeTrackingInstaller(registry).install(conn)
                registry.validate(conn)
        except (DatabaseError, ChangeTrackingError, RegistryError) as exc:
            self.close()
            raise FatalStartupError(f"database unavailable: {exc}") from exc

        queues = {spec.name: spec.queue for spec in registry}
        self._publisher = EventPublisher(
            settings.rabbitmq_url,
            queues=queues,
            venue_id=settings.venue_id,
            exchange=settings.exchange,
        )
        try:
            self._publisher.initialize()
        except BrokerUnavailableError as exc:
            self.close()
            raise FatalStartupError(str(exc)) from exc

        repository = ChangeLogRepository(
            self._pool, registry, catchup_seconds=settings.catchup_seconds
        )
        scheduler = build_pipeline(
            settings,
            registry=registry,
            repository=repository,
            publisher=self._publisher,
            metrics=self.metrics,
            stop_event=self._stop_event,
        )
        self._scheduler = scheduler
        if settings.metrics_port:
            self.metrics.serve(settings.metrics_port)
        logger.info(
            "pos-cdc-bridge started for venue %s (instance %s)",
            settings.venue_id or "<unset>",
            settings.instance_id,
        )
        return scheduler

    def run(self) -> None:
        scheduler = self.start()
        self._install_signal_handlers()
        try:
            scheduler.run_forever()
        except KeyboardInterrupt:
            logger.info("shutdown requested (KeyboardInterrupt)")
        finally:
            self.close()

    def stop(self) -> None:
        self._stop_event.set()

    def close(self) -> None:
        if self._scheduler is not None:
            self._scheduler.close()
            self._scheduler = None
        if self._publisher is not None:
            self._publisher.close()
            self._publisher = None
        if self._pool is not None:
            self._pool.close()
            self._pool = None

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return

        def _handle(signum, _frame) -> None:
            logger.info("received signal %s; finishing current cycle", signum)
            self.stop()

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)


def main() -> None:
    """Entrypoint used by both python -m and the console script hook."""
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        )
    settings = load_settings()
    if not settings.venue_id:
        logger.warning("VENUE_ID is not set; messages will carry an empty venueId")
    runtime = ServiceRuntime(settings)
    try:
        runtime.run()
    except FatalStartupError as exc:
        logger.error("startup failed: %s", exc)
        raise SystemExit(1) from exc


__all__ = ["FatalStartupError", "ServiceRuntime", "build_pipeline", "main"]

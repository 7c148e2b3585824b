"""Background dispatch scheduler: courier polling and durable task execution.

Two asyncio loops run side by side and are cancelled together on shutdown:

* the poll loop asks the courier for the status of every dispatched
  delivery and feeds the answer to the state machine;
* the task loop runs due ``ScheduledTask`` rows (courier requests and
  status checks), rescheduling transient failures with jittered
  exponential backoff.

Pending retries live in the database, so a restart picks them up again.
Provider calls never happen while a delivery lock is held, and a delivery
is never polled by both loops at once.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Set

from sqlalchemy import and_, exists, select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import DispatchError, DuplicateTaskError, ProviderError, ProviderErrorKind, StateConflict
from app.core.metrics import metrics
from app.db.base import utcnow
from app.models.delivery import POLLABLE_STATUSES, TERMINAL_STATUSES, Delivery, DeliveryStatus
from app.models.scheduled_task import ScheduledTask, TaskKind
from app.services.dispatch_service import DispatchService, build_delivery_request
from app.services.locks import KeyedLock, delivery_locks
from app.services.normalizer import normalize_accepted, normalize_polled
from app.services.providers import PROVIDERS, DeliveryProvider, get_provider
from app.services.restaurant_config import load_provider_config

logger = logging.getLogger(__name__)


def compute_backoff(
    attempt: int,
    base: float,
    cap: float,
    jitter: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay in seconds before retry number ``attempt`` (1-based).

    ``min(base * 2**(attempt - 1), cap)`` scaled by a factor drawn from
    ``[1 - jitter, 1]``.
    """
    delay = min(base * (2 ** max(attempt - 1, 0)), cap)
    return delay * (1 - jitter * rand())


@dataclass
class LoopStats:
    interval_seconds: int
    last_run: Optional[datetime] = None
    run_count: int = 0
    last_error: Optional[str] = None
    last_processed: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "interval_seconds": self.interval_seconds,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "run_count": self.run_count,
            "last_error": self.last_error,
            "last_processed": self.last_processed,
        }


class DispatchScheduler:
    """asyncio driver for the poll loop and the task loop."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        providers: Optional[Mapping[str, DeliveryProvider]] = None,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = utcnow,
        poll_interval: Optional[int] = None,
        task_interval: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        rand: Callable[[], float] = random.random,
    ):
        if session_factory is None:
            from app.db.session import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory
        self._providers = providers if providers is not None else PROVIDERS
        self._locks = locks or delivery_locks
        self._clock = clock
        self._rand = rand
        self._max_concurrency = max_concurrency or settings.max_concurrent_provider_calls
        self._in_flight: Set[int] = set()
        self._running = False
        self._loops: list = []
        self.poll_stats = LoopStats(poll_interval or settings.poll_interval_seconds)
        self.task_stats = LoopStats(task_interval or settings.task_interval_seconds)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, startup_delay: Optional[float] = None):
        """Run both loops until stopped or cancelled."""
        self._running = True
        delay = settings.scheduler_startup_delay_seconds if startup_delay is None else startup_delay
        logger.info(
            f"Dispatch scheduler started (poll every {self.poll_stats.interval_seconds}s, "
            f"tasks every {self.task_stats.interval_seconds}s)"
        )
        if delay:
            await asyncio.sleep(delay)
        self._loops = [
            asyncio.create_task(self._run_loop("poll", self.poll_once, self.poll_stats)),
            asyncio.create_task(self._run_loop("tasks", self.process_due_tasks, self.task_stats)),
        ]
        try:
            await asyncio.gather(*self._loops)
        finally:
            for loop in self._loops:
                loop.cancel()
            self._running = False
            logger.info("Dispatch scheduler stopped")

    def stop(self):
        self._running = False
        for loop in self._loops:
            loop.cancel()

    @property
    def running(self) -> bool:
        return self._running

    async def _run_loop(self, name: str, tick: Callable, stats: LoopStats):
        while self._running:
            try:
                stats.last_processed = await tick()
                stats.last_error = None
            except asyncio.CancelledError:
                raise
            except Exception as e:
                stats.last_error = str(e)
                logger.exception(f"Scheduler {name} tick failed: {e}")
            stats.last_run = self._clock()
            stats.run_count += 1
            await asyncio.sleep(stats.interval_seconds)

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "in_flight": sorted(self._in_flight),
            "loops": {
                "poll": self.poll_stats.as_dict(),
                "tasks": self.task_stats.as_dict(),
            },
        }

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def poll_once(self) -> int:
        """Poll every dispatched delivery without an outstanding status task."""
        db = self._session_factory()
        try:
            has_task = exists().where(
                and_(
                    ScheduledTask.delivery_id == Delivery.id,
                    ScheduledTask.kind.in_([TaskKind.POLL_DELIVERY, TaskKind.STATUS_REFRESH]),
                )
            )
            ids = db.scalars(
                select(Delivery.id).where(
                    Delivery.status.in_(POLLABLE_STATUSES),
                    Delivery.external_delivery_id.is_not(None),
                    Delivery.provider.is_not(None),
                    ~has_task,
                ).order_by(Delivery.last_polled_at.asc().nulls_first(), Delivery.id)
            ).all()
        finally:
            db.close()

        ids = [i for i in ids if i not in self._in_flight]
        if not ids:
            return 0
        await self._run_bounded(self._poll_delivery, ids)
        return len(ids)

    async def _poll_delivery(self, delivery_id: int) -> None:
        db = self._session_factory()
        service = DispatchService(db, providers=self._providers, locks=self._locks, clock=self._clock)
        try:
            delivery = db.get(Delivery, delivery_id)
            if delivery is None or delivery.status in TERMINAL_STATUSES:
                return
            provider = get_provider(delivery.provider, self._providers)
            external_id = delivery.external_delivery_id
            try:
                config = load_provider_config(db, delivery.restaurant_id, delivery.provider)
                db.commit()  # release the read transaction before the network call
                status = await provider.poll_delivery_status(config, external_id)
            except ProviderError as e:
                if not e.retryable:
                    await self._poll_rejected(service, delivery_id, e)
                    return
                logger.warning(f"Poll of delivery {delivery_id} failed ({e}), handing over to task queue")
                await self._after_poll_failure(service, delivery_id, e)
                return

            event = normalize_polled(provider, status)
            try:
                await service.apply_courier_event(event, delivery_id=delivery_id)
            except StateConflict as e:
                logger.warning(f"Poll result for delivery {delivery_id} rejected: {e}")
            await self._mark_polled(service, delivery_id, success=True)
        finally:
            db.close()

    async def _poll_rejected(self, service: DispatchService, delivery_id: int, error: ProviderError) -> None:
        reason = f"poll failed: {error}"
        logger.error(f"Poll of delivery {delivery_id} terminally failed: {reason}")
        metrics.record_task_failure(TaskKind.POLL_DELIVERY.value)
        try:
            await service.fail_delivery(delivery_id, reason)
        except StateConflict as e:
            logger.warning(f"Could not fail delivery {delivery_id}: {e}")

    async def _after_poll_failure(self, service: DispatchService, delivery_id: int, error: ProviderError) -> None:
        async with self._locks.hold(("delivery", delivery_id)):
            delivery = service.reload(delivery_id)
            if delivery.status in TERMINAL_STATUSES:
                return
            delivery.poll_failure_count += 1
            delivery.last_polled_at = self._clock()
            try:
                task = service.machine.schedule_task(
                    delivery,
                    TaskKind.POLL_DELIVERY,
                    delay_seconds=self._backoff(1),
                )
                task.attempts = 1
                task.last_error = str(error)
            except DuplicateTaskError:
                pass
            service.db.commit()

    async def _mark_polled(self, service: DispatchService, delivery_id: int, success: bool) -> None:
        async with self._locks.hold(("delivery", delivery_id)):
            delivery = service.reload(delivery_id)
            delivery.last_polled_at = self._clock()
            if success:
                delivery.poll_failure_count = 0
            service.db.commit()

    # ------------------------------------------------------------------
    # Task loop
    # ------------------------------------------------------------------

    async def process_due_tasks(self) -> int:
        """Run every task whose ``run_at`` has passed."""
        now = self._clock()
        db = self._session_factory()
        try:
            rows = db.execute(
                select(ScheduledTask.id, ScheduledTask.delivery_id)
                .where(ScheduledTask.run_at <= now)
                .order_by(ScheduledTask.run_at, ScheduledTask.id)
            ).all()
        finally:
            db.close()

        seen: Set[int] = set()
        due = []
        for task_id, delivery_id in rows:
            # One task per delivery per tick; the rest wait for the next tick
            if delivery_id in seen or delivery_id in self._in_flight:
                continue
            seen.add(delivery_id)
            due.append((task_id, delivery_id))
        if not due:
            return 0
        await self._run_bounded(lambda item: self._run_task(*item), due, key=lambda item: item[1])
        return len(due)

    async def _run_task(self, task_id: int, delivery_id: int) -> None:
        db = self._session_factory()
        service = DispatchService(db, providers=self._providers, locks=self._locks, clock=self._clock)
        try:
            task = db.get(ScheduledTask, task_id)
            if task is None:
                return
            delivery = db.get(Delivery, task.delivery_id)
            kind = task.kind
            stale = (
                kind == TaskKind.DISPATCH_CALL
                and delivery is not None
                and delivery.status != DeliveryStatus.ASSIGNED
            )
            if delivery is None or delivery.status in TERMINAL_STATUSES or stale:
                logger.info(f"Dropping {kind.value} task for delivery {delivery_id}, nothing left to do")
                db.delete(task)
                db.commit()
                return

            try:
                event = await self._execute(db, kind, delivery)
            except ProviderError as e:
                await self._task_failed(service, task_id, delivery_id, kind, e)
                return
            except DispatchError as e:
                # Missing restaurant or similar: retrying will not help
                db.rollback()
                error = ProviderError(ProviderErrorKind.REJECTED, e.message, delivery.provider)
                await self._task_failed(service, task_id, delivery_id, kind, error)
                return
            except Exception as e:
                db.rollback()
                logger.exception(f"Unexpected error running {kind.value} for delivery {delivery_id}")
                error = ProviderError(ProviderErrorKind.TRANSIENT, f"unexpected error: {e}", delivery.provider)
                await self._task_failed(service, task_id, delivery_id, kind, error)
                return

            try:
                await service.apply_courier_event(event, delivery_id=delivery_id)
            except StateConflict as e:
                logger.warning(f"{kind.value} result for delivery {delivery_id} rejected: {e}")

            task = db.get(ScheduledTask, task_id, populate_existing=True)
            if task is not None:
                db.delete(task)
            delivery = db.get(Delivery, delivery_id, populate_existing=True)
            if kind != TaskKind.DISPATCH_CALL and delivery is not None:
                delivery.last_polled_at = self._clock()
                delivery.poll_failure_count = 0
            db.commit()
            logger.info(f"Task {kind.value} for delivery {delivery_id} succeeded")
        finally:
            db.close()

    async def _execute(self, db: Session, kind: TaskKind, delivery: Delivery):
        """Make the provider call for a task and normalize its answer."""
        if delivery.provider is None:
            raise ProviderError(ProviderErrorKind.REJECTED, f"Delivery {delivery.id} has no courier")
        provider = get_provider(delivery.provider, self._providers)
        config = load_provider_config(db, delivery.restaurant_id, delivery.provider)

        if kind == TaskKind.DISPATCH_CALL:
            request = build_delivery_request(delivery)
            db.commit()
            handle = await provider.request_delivery(config, request)
            return normalize_accepted(handle)

        external_id = delivery.external_delivery_id
        if not external_id:
            raise ProviderError(ProviderErrorKind.REJECTED, f"Delivery {delivery.id} has no courier reference", provider.platform_name)
        db.commit()
        status = await provider.poll_delivery_status(config, external_id)
        return normalize_polled(provider, status)

    async def _task_failed(
        self,
        service: DispatchService,
        task_id: int,
        delivery_id: int,
        kind: TaskKind,
        error: ProviderError,
    ) -> None:
        db = service.db
        async with self._locks.hold(("delivery", delivery_id)):
            task = db.get(ScheduledTask, task_id, populate_existing=True)
            if task is None:
                return
            task.attempts += 1
            task.last_error = str(error)

            if error.retryable and not task.exhausted:
                delay = self._backoff(task.attempts)
                task.run_at = self._clock() + timedelta(seconds=delay)
                db.commit()
                metrics.record_task_retry(kind.value)
                logger.warning(
                    f"Task {kind.value} for delivery {delivery_id} failed "
                    f"(attempt {task.attempts}/{task.max_attempts}): {error}; retrying in {delay:.0f}s"
                )
                return

            attempts = task.attempts
            db.commit()

        metrics.record_task_failure(kind.value)
        if error.retryable:
            reason = f"{kind.value} gave up after {attempts} attempts: {error}"
        else:
            reason = f"{kind.value} failed: {error}"
        logger.error(f"Task {kind.value} for delivery {delivery_id} terminally failed: {reason}")
        try:
            # Also deletes the delivery's outstanding tasks
            await service.fail_delivery(delivery_id, reason)
        except StateConflict as e:
            logger.warning(f"Could not fail delivery {delivery_id}: {e}")
            task = db.get(ScheduledTask, task_id)
            if task is not None:
                db.delete(task)
                db.commit()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _backoff(self, attempt: int) -> float:
        return compute_backoff(
            attempt,
            settings.retry_base_delay_seconds,
            settings.retry_max_delay_seconds,
            settings.retry_jitter_ratio,
            self._rand,
        )

    async def _run_bounded(self, func: Callable, items, key: Callable = lambda item: item) -> None:
        """Run ``func`` over items with bounded concurrency and per-item isolation."""
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def guarded(item):
            delivery_id = key(item)
            if delivery_id in self._in_flight:
                return
            self._in_flight.add(delivery_id)
            try:
                async with semaphore:
                    await func(item)
            except asyncio.CancelledError:
                raise
            except DispatchError as e:
                logger.warning(f"Dispatch work for delivery {delivery_id} failed: {e}")
            except Exception:
                logger.exception(f"Unexpected error processing delivery {delivery_id}")
            finally:
                self._in_flight.discard(delivery_id)

        await asyncio.gather(*(guarded(item) for item in items))


scheduler = DispatchScheduler()

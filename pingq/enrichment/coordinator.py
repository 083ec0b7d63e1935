"""
Enrichment coordinator: one background cycle per ingested record.

Cycle for a record (planned before it is stored, started right after it is
announced; in length mode the record is already PENDING when announced):

    non-DM:  categorize       ─┐
             extract          ─┼─ run concurrently, each merges its own result
    all:     should-summarize ─┘── true ─> PENDING ─> summarize ─> COMPLETE | CANCELLED

Results are merged with ``store.mutate(id, ...)``. If the record was evicted
while a call was in flight the mutation is a no-op and nothing is announced.
Backend failures arrive as ``Err`` and map to fixed fallbacks: length rule
for the need-check, no category, no event, CANCELLED summary.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from pingq.enrichment.backend import Categorization, EnrichmentBackend, SummaryContext
from pingq.enrichment.event_validation import validate_event
from pingq.enrichment.result import Err, Ok
from pingq.notifications.broadcaster import Broadcaster
from pingq.notifications.models import (
    Category,
    DirectMessage,
    EnrichmentStatus,
    EventDetails,
    GuildChannel,
    Importance,
    Notification,
)
from pingq.notifications.store import NotificationStore
from pingq.observability.logging import get_logger, preview
from pingq.observability.telemetry import counter, log_event, time_block
from pingq.settings import PipelineSettings

logger = get_logger(__name__)

_ALLOWED_TRANSITIONS: dict[EnrichmentStatus, frozenset[EnrichmentStatus]] = {
    EnrichmentStatus.NONE: frozenset({EnrichmentStatus.PENDING}),
    EnrichmentStatus.PENDING: frozenset({EnrichmentStatus.COMPLETE, EnrichmentStatus.CANCELLED}),
    EnrichmentStatus.COMPLETE: frozenset(),
    EnrichmentStatus.CANCELLED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """Raised when a record's enrichment status would move backwards or skip PENDING."""


@dataclass(frozen=True)
class SummaryPolicy:
    mode: str = "length"
    min_length: int = 100

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> SummaryPolicy:
        return cls(mode=settings.summary_detection_mode, min_length=settings.min_length_for_summary)


def meets_length(text: str, policy: SummaryPolicy) -> bool:
    return len(text) >= policy.min_length


@dataclass(frozen=True)
class CyclePlan:
    loop: asyncio.AbstractEventLoop
    policy: SummaryPolicy
    # None: decided by the need-check inside the cycle (smart mode)
    summarize: bool | None


# ---------------------------------------------------------------------------
# Record mutations (run under the store lock)
# ---------------------------------------------------------------------------


def transition(record: Notification, target: EnrichmentStatus, summary: str | None = None) -> None:
    if target not in _ALLOWED_TRANSITIONS[record.enrichment_status]:
        raise InvalidTransitionError(
            f"{record.id}: {record.enrichment_status.value} -> {target.value} is not allowed"
        )
    if target is EnrichmentStatus.COMPLETE and not summary:
        raise InvalidTransitionError(f"{record.id}: COMPLETE requires a summary")

    record.enrichment_status = target
    record.summary = summary if target is EnrichmentStatus.COMPLETE else None


def apply_categorization(record: Notification, result: Categorization) -> None:
    if record.is_direct_message:
        return
    record.importance = result.importance
    # A validated event outranks whatever categorize said, whichever finished first.
    record.category = Category.EVENT if record.event_details is not None else result.category


def apply_event(record: Notification, details: EventDetails) -> None:
    if record.is_direct_message:
        return
    record.event_details = details
    record.category = Category.EVENT
    if record.importance is None:
        record.importance = Importance.MEDIUM


def summary_context(record: Notification) -> SummaryContext:
    origin = record.origin
    if isinstance(origin, DirectMessage):
        channel: str | None = origin.display_name
    elif isinstance(origin, GuildChannel):
        channel = origin.channel_name
    else:
        channel = None
    # No message history is kept per channel, so the summarizer sees the message alone.
    return SummaryContext(
        is_dm=record.is_direct_message,
        channel=channel,
        author=record.author.name,
        recent_messages=(),
    )


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class EnrichmentCoordinator:
    """Schedules and runs enrichment cycles without blocking ingestion."""

    def __init__(
        self,
        store: NotificationStore,
        backend: EnrichmentBackend,
        broadcaster: Broadcaster,
        policy: SummaryPolicy | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._store = store
        self._backend = backend
        self._broadcaster = broadcaster
        self._policy = policy or SummaryPolicy()
        self._clock = clock
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()
        self._tasks: set[asyncio.Task[None]] = set()
        self._handoffs: set[concurrent.futures.Future[None]] = set()

    @property
    def policy(self) -> SummaryPolicy:
        return self._policy

    def configure(self, policy: SummaryPolicy) -> None:
        self._policy = policy

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._tasks) + len(self._handoffs)

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Loop that runs cycles for records ingested from threads without one."""
        self._loop = loop

    def _owning_loop(self) -> asyncio.AbstractEventLoop | None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            loop = self._loop
            if loop is None or loop.is_closed() or not loop.is_running():
                return None
            return loop
        if self._loop is None or self._loop.is_closed():
            self._loop = running
        return running

    def prepare(self, record: Notification) -> CyclePlan | None:
        """
        Decide, before ``record`` is stored, whether a cycle will run for it.

        In length mode the summary decision is made here, so the record is
        already PENDING when it is stored and announced. Smart mode decides
        inside the cycle because the need-check is a backend call.

        Returns None (status stays NONE) when enrichment is disabled, the
        backend is misconfigured or no event loop can run the cycle.
        """
        if not self._backend.is_enabled():
            counter("enrichment.skipped_disabled")
            return None

        loop = self._owning_loop()
        if loop is None:
            counter("enrichment.skipped_no_loop")
            logger.warning("No event loop to enrich %s on; it stays unenriched", record.id)
            return None

        policy = self._policy
        summarize: bool | None = None
        if policy.mode != "smart":
            summarize = meets_length(record.body, policy)
            if summarize:
                transition(record, EnrichmentStatus.PENDING)
        return CyclePlan(loop=loop, policy=policy, summarize=summarize)

    def schedule(self, record: Notification, plan: CyclePlan) -> None:
        """
        Start the cycle planned for ``record`` (already stored and announced).

        Returns immediately. Safe to call from any thread: off the owning
        loop the cycle is handed over with ``run_coroutine_threadsafe``.
        """
        cycle = self._run_cycle(record, plan)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is plan.loop:
            task = running.create_task(cycle, name=f"enrich:{record.id}")
            with self._lock:
                self._tasks.add(task)
            task.add_done_callback(self._forget_task)
            return

        try:
            future = asyncio.run_coroutine_threadsafe(cycle, plan.loop)
        except RuntimeError:
            # Loop closed after prepare(); settle the record instead of leaving it PENDING.
            cycle.close()
            counter("enrichment.handoff_failed")
            logger.error("Event loop gone before enriching %s", record.id)
            if plan.summarize:
                self._resolve_summary(record.id, None)
            return
        with self._lock:
            self._handoffs.add(future)
        future.add_done_callback(self._forget_handoff)

    def _forget_task(self, task: asyncio.Task[None]) -> None:
        with self._lock:
            self._tasks.discard(task)

    def _forget_handoff(self, future: concurrent.futures.Future[None]) -> None:
        with self._lock:
            self._handoffs.discard(future)

    async def drain(self) -> None:
        """Wait until every scheduled cycle (including ones scheduled meanwhile) has finished."""
        while True:
            with self._lock:
                pending: list[asyncio.Future[None]] = [
                    *self._tasks,
                    *(asyncio.wrap_future(f) for f in self._handoffs),
                ]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def should_summarize(self, text: str, policy: SummaryPolicy | None = None) -> bool:
        """
        Decide whether ``text`` gets a summary.

        length mode: ``len(text) >= min_length``.
        smart mode: ask the backend; if that fails, use the length rule.
        """
        policy = policy or self._policy
        if not text or not self._backend.is_enabled():
            return False

        by_length = meets_length(text, policy)
        if policy.mode != "smart":
            return by_length

        result = await self._backend.check_summarization_need(text)
        if isinstance(result, Ok):
            return result.value

        counter("enrichment.need_check_fallback")
        logger.info("Need-check failed (%s); falling back to length rule", result.reason)
        return by_length

    async def summarize_text(self, text: str, context: SummaryContext | None = None) -> str | None:
        """Ad hoc summary of arbitrary text; None when not warranted or on failure."""
        if not await self.should_summarize(text):
            return None
        result = await self._backend.summarize(text, context)
        return result.value if isinstance(result, Ok) else None

    # -- cycle -------------------------------------------------------------

    async def _run_cycle(self, record: Notification, plan: CyclePlan) -> None:
        branches = [self._summary_branch(record, plan)]
        if not record.is_direct_message:
            branches.append(self._categorize_branch(record))
            branches.append(self._event_branch(record))

        with time_block("enrichment.cycle.latency"):
            outcomes = await asyncio.gather(*branches, return_exceptions=True)

        for outcome in outcomes:
            if isinstance(outcome, Exception):
                counter("enrichment.branch_error")
                logger.error(
                    "Enrichment branch failed for %s: %r", record.id, outcome, exc_info=outcome
                )
        counter("enrichment.cycle_complete")

    async def _summary_branch(self, record: Notification, plan: CyclePlan) -> None:
        if plan.summarize is None:
            if not await self.should_summarize(record.body, plan.policy):
                return
            pending = self._store.mutate(
                record.id, lambda r: transition(r, EnrichmentStatus.PENDING)
            )
            if pending is None:
                return
            self._broadcaster.fields_updated(pending)
        elif not plan.summarize:
            return

        result = await self._backend.summarize(record.body, summary_context(record))
        summary = result.value if isinstance(result, Ok) else None
        if summary:
            counter("enrichment.summary_complete")
        else:
            counter("enrichment.summary_cancelled")
            if isinstance(result, Err):
                log_event("enrichment.summary_cancelled", id=record.id, reason=result.reason)
        self._resolve_summary(record.id, summary)

    def _resolve_summary(self, notification_id: str, summary: str | None) -> None:
        if summary:
            resolved = self._store.mutate(
                notification_id, lambda r: transition(r, EnrichmentStatus.COMPLETE, summary)
            )
        else:
            resolved = self._store.mutate(
                notification_id, lambda r: transition(r, EnrichmentStatus.CANCELLED)
            )
        if resolved is not None:
            self._broadcaster.summary_resolved(notification_id, summary)

    async def _categorize_branch(self, record: Notification) -> None:
        result = await self._backend.categorize(record.body)
        if isinstance(result, Err):
            counter("enrichment.categorize_failed")
            return

        updated = self._store.mutate(record.id, lambda r: apply_categorization(r, result.value))
        if updated is not None:
            self._broadcaster.fields_updated(updated)

    async def _event_branch(self, record: Notification) -> None:
        result = await self._backend.extract_event_details(record.body, self._clock())
        if isinstance(result, Err):
            counter("enrichment.extract_failed")
            return
        if result.value is None:
            return

        details = validate_event(result.value, now=self._clock())
        if details is None:
            counter("enrichment.event_rejected")
            logger.debug("Rejected extracted event for %s: %s", record.id, preview(record.body))
            return

        updated = self._store.mutate(record.id, lambda r: apply_event(r, details))
        if updated is not None:
            counter("enrichment.event_accepted")
            self._broadcaster.fields_updated(updated)

"""
Polling engine that tracks watched groups and feeds new posts to listeners.

Each watched group moves from uninitialized to active when its baseline cursor
is stored in the registry. Every cycle polls the due groups concurrently; for
each group it fetches new posts since the stored cursor, commits the advanced
cursor and only then hands the posts to the registered listeners, oldest first.
"""
import asyncio
import contextlib
import inspect
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, Union

import structlog

from .errors import CursorExpiredError
from .models import FetchResult, GroupId, Listener, NotFound, Post, WatchStatus
from .registry import GroupSubscriptionRegistry

logger = structlog.get_logger(__name__)

# 2 ** 16 * base is already far beyond any sane backoff ceiling.
_MAX_BACKOFF_EXPONENT = 16


class PostSource(Protocol):
    """Source platform surface used by the poller."""

    async def initialize_watch(self, group_id: GroupId) -> Union[Any, NotFound]: ...

    async def fetch_since(self, group_id: GroupId, cursor: Any) -> FetchResult: ...


@dataclass
class CycleReport:
    groups_polled: int = 0
    groups_skipped: int = 0
    posts_seen: int = 0
    posts_skipped: int = 0
    listener_calls: int = 0
    listener_failures: int = 0
    fetch_failures: int = 0
    cursors_reset: int = 0
    cancelled: bool = False


class UpdatePoller:
    """Owns the polling loop for every watched group."""

    def __init__(
        self,
        source: PostSource,
        registry: GroupSubscriptionRegistry,
        *,
        poll_interval: float = 1.0,
        idle_timeout: float = 30.0,
        backoff_base: float = 2.0,
        backoff_max: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.registry = registry
        self.poll_interval = poll_interval
        self.idle_timeout = idle_timeout
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._clock = clock
        self._listeners: List[Listener] = []
        self._pending: Dict[GroupId, "asyncio.Future[WatchStatus]"] = {}
        self._group_added = asyncio.Event()
        self._failures: Dict[GroupId, int] = {}
        self._retry_at: Dict[GroupId, float] = {}
        self._last_post_id: Dict[GroupId, int] = {}
        self._totals = CycleReport()
        self._cycles = 0
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.logger = logger.bind(component="update_poller")

    @classmethod
    def from_settings(cls, source: PostSource, registry: GroupSubscriptionRegistry, settings) -> "UpdatePoller":
        return cls(
            source,
            registry,
            poll_interval=settings.poll_interval,
            idle_timeout=settings.idle_timeout,
            backoff_base=settings.fetch_backoff_base,
            backoff_max=settings.fetch_backoff_max,
        )

    def add_listener(self, listener: Listener) -> None:
        """Register a listener. Listeners are invoked in registration order."""
        self._listeners.append(listener)

    @property
    def listeners(self) -> Tuple[Listener, ...]:
        return tuple(self._listeners)

    # Watching

    async def watch(self, group_id: GroupId) -> WatchStatus:
        """Start watching a group, baselining its cursor to 'now'.

        A group that is already active keeps its cursor. Concurrent calls for
        the same group share a single initialization.
        """
        if group_id in self.registry:
            return WatchStatus.ALREADY_ACTIVE

        pending = self._pending.get(group_id)
        if pending is None:
            pending = asyncio.ensure_future(self._initialize(group_id))
            self._pending[group_id] = pending
            pending.add_done_callback(lambda _: self._pending.pop(group_id, None))
        return await asyncio.shield(pending)

    async def _initialize(self, group_id: GroupId) -> WatchStatus:
        log = self.logger.bind(group_id=group_id)
        try:
            result = await self.source.initialize_watch(group_id)
        except Exception as e:
            log.error("watch_initialization_failed", error=str(e), exc_info=True)
            return WatchStatus.FAILED

        if isinstance(result, NotFound):
            log.info("watch_group_not_found", reason=result.reason, access_denied=result.access_denied)
            return WatchStatus.ACCESS_DENIED if result.access_denied else WatchStatus.NOT_FOUND

        self.registry.upsert(group_id, result)
        self._group_added.set()
        log.info("group_watch_started")
        return WatchStatus.ACTIVE

    # Main loop

    def start(self, stop_event: asyncio.Event) -> asyncio.Task:
        """Run the polling loop in a background task until stop_event is set."""
        if self._task is not None and not self._task.done():
            return self._task
        self._stop_event = stop_event
        self._task = asyncio.create_task(self.run(stop_event), name="update-poller")
        return self._task

    async def stop(self, timeout: float = 10.0) -> None:
        """Signal the loop to stop and give it `timeout` seconds to drain."""
        if self._task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout)
        except asyncio.TimeoutError:
            self.logger.warning("poller_drain_timeout", timeout=timeout)
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        finally:
            self._task = None

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll every watched group until stop_event is set."""
        self.logger.info("poller_started", listeners=len(self._listeners))
        try:
            while not stop_event.is_set():
                if not len(self.registry):
                    await self._wait_for_groups(stop_event)
                    continue

                await self.run_cycle(stop_event)
                if stop_event.is_set():
                    break
                await _wait_event(stop_event, self.poll_interval)
        finally:
            self.logger.info("poller_stopped", cycles=self._cycles)

    async def _wait_for_groups(self, stop_event: asyncio.Event) -> None:
        self._group_added.clear()
        if len(self.registry):
            return
        self.logger.debug("poller_idle", timeout=self.idle_timeout)
        await _wait_any((self._group_added, stop_event), self.idle_timeout)

    async def run_cycle(self, stop_event: Optional[asyncio.Event] = None) -> CycleReport:
        """Poll each watched group once and dispatch what was found."""
        report = CycleReport()
        due = []
        for group_id, cursor in self.registry.snapshot():
            if stop_event is not None and stop_event.is_set():
                report.cancelled = True
                break
            if not self._is_due(group_id):
                report.groups_skipped += 1
                continue
            due.append((group_id, cursor))

        # Long polls block server side, so one idle group must not delay the others.
        await asyncio.gather(*(
            self._poll_group(group_id, cursor, report, stop_event) for group_id, cursor in due
        ))

        self._cycles += 1
        self._accumulate(report)
        if report.posts_seen or report.fetch_failures or report.listener_failures:
            self.logger.info("poll_cycle_completed", **asdict(report))
        return report

    async def _poll_group(self, group_id: GroupId, cursor: Any, report: CycleReport,
                          stop_event: Optional[asyncio.Event]) -> None:
        log = self.logger.bind(group_id=group_id)
        report.groups_polled += 1

        try:
            result = await _until_stopped(self.source.fetch_since(group_id, cursor), stop_event)
        except CursorExpiredError as e:
            log.warning("cursor_expired", error=str(e))
            await self._reinitialize(group_id, report, stop_event)
            return
        except Exception as e:
            report.fetch_failures += 1
            delay = self._record_failure(group_id)
            log.warning("fetch_failed", error=str(e), retry_in=delay, exc_info=True)
            return

        if result is None:
            report.cancelled = True
            return

        self._record_success(group_id)
        # Commit before dispatch so a post is never handed out twice.
        if result.cursor is not None:
            self.registry.upsert(group_id, result.cursor)

        last_id = self._last_post_id.get(group_id)
        for post in sorted(result.posts, key=lambda p: p.id):
            if last_id is not None and post.id <= last_id:
                report.posts_skipped += 1
                continue
            last_id = post.id
            self._last_post_id[group_id] = post.id
            report.posts_seen += 1
            await self._dispatch(group_id, post, report)

    async def _reinitialize(self, group_id: GroupId, report: CycleReport,
                            stop_event: Optional[asyncio.Event]) -> None:
        log = self.logger.bind(group_id=group_id)
        try:
            result = await _until_stopped(self.source.initialize_watch(group_id), stop_event)
        except Exception as e:
            report.fetch_failures += 1
            delay = self._record_failure(group_id)
            log.warning("cursor_reinitialization_failed", error=str(e), retry_in=delay, exc_info=True)
            return

        if result is None:
            report.cancelled = True
            return
        if isinstance(result, NotFound):
            report.fetch_failures += 1
            delay = self._record_failure(group_id)
            log.warning("group_unavailable", reason=result.reason, retry_in=delay)
            return

        self.registry.upsert(group_id, result)
        self._record_success(group_id)
        report.cursors_reset += 1
        log.info("cursor_reinitialized")

    async def _dispatch(self, group_id: GroupId, post: Post, report: CycleReport) -> None:
        for listener in self._listeners:
            report.listener_calls += 1
            try:
                outcome = listener(group_id, post)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                report.listener_failures += 1
                self.logger.error(
                    "listener_failed",
                    group_id=group_id,
                    post_id=post.id,
                    listener=_describe(listener),
                    error=str(e),
                    exc_info=True,
                )

    # Backoff bookkeeping

    def _is_due(self, group_id: GroupId) -> bool:
        return self._clock() >= self._retry_at.get(group_id, float("-inf"))

    def _record_failure(self, group_id: GroupId) -> float:
        failures = self._failures.get(group_id, 0) + 1
        self._failures[group_id] = failures
        exponent = min(failures - 1, _MAX_BACKOFF_EXPONENT)
        delay = min(self.backoff_base * (2 ** exponent), self.backoff_max)
        self._retry_at[group_id] = self._clock() + delay
        return delay

    def _record_success(self, group_id: GroupId) -> None:
        self._failures.pop(group_id, None)
        self._retry_at.pop(group_id, None)

    def _accumulate(self, report: CycleReport) -> None:
        for name, value in asdict(report).items():
            if isinstance(value, bool):
                continue
            setattr(self._totals, name, getattr(self._totals, name) + value)

    def get_statistics(self) -> Dict[str, Any]:
        """Get polling statistics."""
        totals = asdict(self._totals)
        totals.pop("cancelled", None)
        return {
            "watched_groups": len(self.registry),
            "listeners": len(self._listeners),
            "cycles": self._cycles,
            "groups_in_backoff": sum(1 for g in self._retry_at if not self._is_due(g)),
            "poller_running": self.is_running,
            **totals,
        }

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()


async def _until_stopped(awaitable: Awaitable[Any], stop_event: Optional[asyncio.Event]) -> Any:
    """Await `awaitable` unless stop_event fires first, in which case cancel it and return None."""
    if stop_event is None:
        return await awaitable

    call = asyncio.ensure_future(awaitable)
    stopper = asyncio.ensure_future(stop_event.wait())
    try:
        await asyncio.wait({call, stopper}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        call.cancel()
        raise
    finally:
        stopper.cancel()

    if call.done():
        return call.result()
    call.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await call
    return None


async def _wait_event(event: asyncio.Event, timeout: float) -> bool:
    """Sleep up to `timeout` seconds, waking early if the event is set."""
    if timeout <= 0:
        await asyncio.sleep(0)
        return event.is_set()
    try:
        await asyncio.wait_for(event.wait(), timeout)
    except asyncio.TimeoutError:
        pass
    return event.is_set()


async def _wait_any(events, timeout: float) -> None:
    waiters = [asyncio.ensure_future(e.wait()) for e in events]
    try:
        await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()


def _describe(listener: Callable) -> str:
    return getattr(listener, "__qualname__", None) or type(listener).__name__

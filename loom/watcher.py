"""Filesystem watching for incremental rebuilds.

A watchdog observer thread reports raw events; they are posted onto an
asyncio queue, coalesced over a debounce window and handed to a rebuild
callback as one batch. A batch that arrives while a rebuild is still running
cancels that rebuild and is merged with its events, so no change is lost.
Rebuilds never overlap: a superseded worker thread is awaited before the
next batch starts.

Key classes:
- EventType: add, change or remove.
- WatchEvent: One normalized change.
- ChangeWatcher: Debouncing watch loop.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .config import BuildConfig
from .logging import get_logger
from .utils import is_within

logger = get_logger("watcher")

TEMP_SUFFIXES = (".tmp", ".swp", ".swo", ".swx", ".bak", "~")
TEMP_NAMES = frozenset({".DS_Store", "Thumbs.db", "4913"})
IGNORED_DIR_NAMES = frozenset({".git", "node_modules", "__pycache__"})

ChangeCallback = Callable[[list["WatchEvent"]], "Awaitable[object] | object"]
ErrorCallback = Callable[[BaseException], None]


class EventType(str, Enum):
    ADD = "add"
    CHANGE = "change"
    REMOVE = "remove"


@dataclass(frozen=True)
class WatchEvent:
    path: Path
    type: EventType
    timestamp: float


def coalesce(previous: WatchEvent | None, event: WatchEvent) -> WatchEvent | None:
    """Fold a newer event for the same path into an earlier one.

    Returns None when the pair cancels out (a file created and deleted
    within one window).
    """
    if previous is None:
        return event
    if previous.type == EventType.ADD:
        if event.type == EventType.REMOVE:
            return None
        return WatchEvent(event.path, EventType.ADD, event.timestamp)
    if previous.type == EventType.REMOVE and event.type == EventType.ADD:
        return WatchEvent(event.path, EventType.CHANGE, event.timestamp)
    return event


def merge_events(batches: Iterable[Iterable[WatchEvent]]) -> list[WatchEvent]:
    """Coalesce events from several batches, preserving first-seen order."""
    merged: dict[Path, WatchEvent | None] = {}
    for batch in batches:
        for event in batch:
            merged[event.path] = coalesce(merged.get(event.path), event)
    return [event for event in merged.values() if event is not None]


def is_temporary(path: Path) -> bool:
    """Return True for editor swap files and OS metadata."""
    name = path.name
    return name in TEMP_NAMES or name.endswith(TEMP_SUFFIXES) or name.startswith(".#")


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, watcher: ChangeWatcher):
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event):
        if event.is_directory:
            return
        kind = event.event_type
        if kind == "created":
            self.watcher.notify(Path(event.src_path), EventType.ADD)
        elif kind == "modified":
            self.watcher.notify(Path(event.src_path), EventType.CHANGE)
        elif kind == "deleted":
            self.watcher.notify(Path(event.src_path), EventType.REMOVE)
        elif kind == "moved":
            self.watcher.notify(Path(event.src_path), EventType.REMOVE)
            self.watcher.notify(Path(event.dest_path), EventType.ADD)


class ChangeWatcher:
    """Watches the source tree and drives rebuild callbacks.

    Attributes:
        config: Build configuration; the source root and loom.yaml are watched.
        on_change: Called with each coalesced batch. Coroutine functions are
            awaited on the loop; plain callables run in a worker thread, and
            receive a threading.Event as a second argument when they accept
            one. The event is set when a newer batch supersedes the rebuild.
        on_error: Called with any exception a rebuild raises.
        debounce: Coalescing window in seconds.
    """

    def __init__(
        self,
        config: BuildConfig,
        on_change: ChangeCallback,
        on_error: ErrorCallback | None = None,
        debounce_ms: int | None = None,
        observe: bool = True,
    ):
        self.config = config
        self.on_change = on_change
        self.on_error = on_error
        self.debounce = (config.debounce_ms if debounce_ms is None else debounce_ms) / 1000
        self.observe = observe
        self.ignored_roots = [config.output_root, config.cache_root]
        self.started = threading.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[WatchEvent] | None = None
        self._stop: asyncio.Event | None = None
        self._observer: Observer | None = None
        self._task: asyncio.Task | None = None
        self._inflight: list[WatchEvent] = []
        self._worker: asyncio.Future | None = None
        self._cancel = threading.Event()
        self._wants_token = _accepts_cancel_token(on_change)

    # ------------------------------------------------------------------
    # Event intake (any thread)

    def should_ignore(self, path: Path) -> bool:
        if is_temporary(path):
            return True
        if IGNORED_DIR_NAMES.intersection(path.parts):
            return True
        return any(is_within(path, root) for root in self.ignored_roots)

    def notify(self, path: Path, event_type: EventType) -> None:
        """Queue an event; safe to call from the observer thread."""
        path = Path(path).resolve()
        if self.should_ignore(path) or self._loop is None or self._queue is None:
            return
        event = WatchEvent(path, EventType(event_type), time.time())
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def stop(self) -> None:
        """Ask the loop to finish; safe to call from any thread."""
        if self._loop is not None and self._stop is not None:
            self._loop.call_soon_threadsafe(self._stop.set)

    # ------------------------------------------------------------------
    # Loop

    async def run(self) -> None:
        """Run until stop() is called or the task is cancelled."""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._stop = asyncio.Event()
        if self.observe:
            self._start_observer()
        self.started.set()
        try:
            await self._serve()
        finally:
            await self._cancel_inflight()
            self._stop_observer()
            self.started.clear()

    async def _serve(self) -> None:
        assert self._stop is not None
        stop_wait = asyncio.ensure_future(self._stop.wait())
        try:
            while True:
                batch_wait = asyncio.ensure_future(self._next_batch())
                done, _ = await asyncio.wait(
                    {batch_wait, stop_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                if stop_wait in done:
                    batch_wait.cancel()
                    await asyncio.gather(batch_wait, return_exceptions=True)
                    return
                batch = batch_wait.result()
                if batch:
                    self._dispatch(batch)
        finally:
            stop_wait.cancel()

    async def _next_batch(self) -> list[WatchEvent]:
        """Wait for an event, then collect until the window stays quiet."""
        assert self._queue is not None
        pending: dict[Path, WatchEvent | None] = {}
        first = await self._queue.get()
        pending[first.path] = first
        while True:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=self.debounce)
            except asyncio.TimeoutError:
                break
            pending[event.path] = coalesce(pending.get(event.path), event)
        return [event for event in pending.values() if event is not None]

    def _dispatch(self, batch: list[WatchEvent]) -> None:
        previous = self._task
        if previous is not None and not previous.done():
            logger.info("Change detected during rebuild; restarting")
            self._cancel.set()
            previous.cancel()
            batch = merge_events([self._inflight, batch])
        self._inflight = batch
        self._cancel = threading.Event()
        self._task = asyncio.ensure_future(self._rebuild(batch, previous, self._cancel))

    async def _rebuild(
        self,
        batch: list[WatchEvent],
        previous: asyncio.Task | None,
        cancel: threading.Event,
    ) -> None:
        try:
            # One rebuild at a time: a superseded worker thread runs to its
            # next cancellation check before the next batch starts.
            await self._drain(previous)
            if inspect.iscoroutinefunction(self.on_change):
                await self.on_change(batch)
            else:
                args = (batch, cancel) if self._wants_token else (batch,)
                self._worker = asyncio.ensure_future(asyncio.to_thread(self.on_change, *args))
                result = await asyncio.shield(self._worker)
                if inspect.isawaitable(result):
                    await result
        except asyncio.CancelledError:
            logger.debug("Rebuild of %d change(s) cancelled", len(batch))
        except Exception as exc:
            if cancel.is_set():
                logger.debug("Superseded rebuild failed: %s", exc)
            else:
                self._report(exc)
        else:
            if self._inflight is batch:
                self._inflight = []

    async def _drain(self, previous: asyncio.Task | None) -> None:
        """Wait for an earlier rebuild and its worker thread to finish."""
        waits = [future for future in (previous, self._worker) if future is not None]
        if waits:
            await asyncio.shield(asyncio.gather(*waits, return_exceptions=True))

    def _report(self, exc: BaseException) -> None:
        if self.on_error is None:
            logger.error("Rebuild failed: %s", exc)
            return
        try:
            self.on_error(exc)
        except Exception:
            logger.exception("Error handler raised")

    async def wait_idle(self) -> None:
        """Wait for the in-flight rebuild, if any, and its worker thread to finish."""
        while self._task is not None and not self._task.done():
            await asyncio.gather(self._task, return_exceptions=True)
        if self._worker is not None:
            await asyncio.gather(self._worker, return_exceptions=True)

    async def _cancel_inflight(self) -> None:
        if self._task is not None and not self._task.done():
            self._cancel.set()
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        if self._worker is not None:
            await asyncio.gather(self._worker, return_exceptions=True)

    # ------------------------------------------------------------------
    # Observer

    def _start_observer(self) -> None:  # pragma: no cover - integration path
        handler = _ChangeHandler(self)
        observer = Observer()
        source_root = self.config.source_root
        if source_root.exists():
            observer.schedule(handler, str(source_root), recursive=True)
        project_root = self.config.project_root.resolve()
        if project_root != source_root:
            # loom.yaml lives beside the source tree
            observer.schedule(handler, str(project_root), recursive=False)
        observer.start()
        self._observer = observer

    def _stop_observer(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None


def _accepts_cancel_token(callback: Callable) -> bool:
    """Return True if a plain callable takes a second positional argument."""
    if inspect.iscoroutinefunction(callback):
        return False
    try:
        parameters = inspect.signature(callback).parameters.values()
    except (TypeError, ValueError):
        return False
    positional = [
        p
        for p in parameters
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD, p.VAR_POSITIONAL)
    ]
    return len(positional) >= 2 or any(p.kind == p.VAR_POSITIONAL for p in positional)


__all__ = [
    "ChangeWatcher",
    "EventType",
    "WatchEvent",
    "coalesce",
    "is_temporary",
    "merge_events",
]

"""
lorawatch Refresh Coordinator
=============================
Owns the node id → NodeState mapping and drives the pure components on
three independent schedules:

  poll     - every poll_interval: fetch the trailing window, re-resolve
  push     - on store notifications: queue rows, coalesce, re-resolve
  liveness - every liveness_interval: re-evaluate staleness, no fetch

All state changes happen under one asyncio.Lock. Store fetches run outside
the lock, so a slow store never holds up a liveness tick; the tick always
sees the last fully resolved snapshot.

A failed fetch leaves every NodeState untouched. Only staleness-by-time
takes a node offline.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from .config import TrackerConfig
from .errors import FetchError
from .liveness import evaluate_node
from .models import NodeState, RawRow, Reading
from .parser import parse_batch
from .resolver import dedupe_readings, is_newer, resolve_latest
from .store import RowStore, utc_now

logger = logging.getLogger("lorawatch.coordinator")

Snapshot = dict[str, NodeState]
Listener = Callable[[Snapshot], None]


class RefreshCoordinator:
    """
    Usage:
        coordinator = RefreshCoordinator(TrackerConfig.from_env(), store)
        coordinator.add_listener(lambda snap: render(snap))
        await coordinator.start()
        ...
        await coordinator.stop()
    """

    def __init__(
        self,
        config: TrackerConfig,
        store: RowStore,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config.validate()
        self.store = store
        self._clock = clock
        self._states: dict[str, NodeState] = {
            node_id: NodeState(node_id=node_id) for node_id in config.known_nodes
        }
        self._window: dict[int, Reading] = {}
        self._lock = asyncio.Lock()
        self._pending_rows: list[RawRow] = []
        self._refetch_requested = False
        self._push_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: list[asyncio.Task] = []
        self._subscription = None
        self._listeners: list[Listener] = []

        self.version: int = 0
        self.last_refresh_at: Optional[datetime] = None
        self.last_fetch_error: Optional[FetchError] = None
        self.dropped_rows: int = 0

    # ─── Read side ───────────────────────────────────────────────────────────
    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def window_size(self) -> int:
        return len(self._window)

    def snapshot(self) -> Snapshot:
        """Copy of every NodeState; callers never see live objects."""
        return {node_id: state.copy() for node_id, state in self._states.items()}

    def node_state(self, node_id: str) -> Optional[NodeState]:
        state = self._states.get(node_id)
        return state.copy() if state else None

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a snapshot change callback. Returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _publish(self) -> None:
        self.version += 1
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("[COORD] Snapshot listener failed")

    # ─── State folding (caller holds the lock) ───────────────────────────────
    def _set_state(self, updated: NodeState) -> bool:
        previous = self._states[updated.node_id]
        if updated == previous:
            return False
        if updated.online != previous.online:
            logger.info(
                f"[COORD] {updated.node_id} is now {'ONLINE' if updated.online else 'OFFLINE'} "
                f"(stale checks: {updated.consecutive_stale_checks})"
            )
        self._states[updated.node_id] = updated
        return True

    def _fold(self, readings: list[Reading], now: datetime) -> bool:
        """Merge readings into the window, re-resolve it whole, prune it."""
        for row_id, reading in dedupe_readings(readings).items():
            held = self._window.get(row_id)
            if held is None or is_newer(reading, held):
                self._window[row_id] = reading

        changed = False
        resolved = resolve_latest(self._window.values(), self.config.known_nodes)
        for node_id, candidate in resolved.items():
            state = self._states[node_id]
            if not is_newer(candidate, state.latest):
                continue
            advanced = state.copy()
            advanced.latest = candidate
            changed |= self._set_state(evaluate_node(advanced, now, self.config))

        cutoff = now - self.config.window
        for row_id in [rid for rid, r in self._window.items() if r.captured_at < cutoff]:
            del self._window[row_id]
        return changed

    # ─── Poll ────────────────────────────────────────────────────────────────
    async def refresh(self) -> Snapshot:
        """
        Full-window pull. Raises FetchError when the store fails;
        node state is left exactly as it was.
        """
        now = self._clock()
        start = now - self.config.window
        try:
            rows = await self.store.fetch_rows(
                start, now, newest_first=True, limit=self.config.fetch_limit
            )
        except FetchError as e:
            self.last_fetch_error = e
            raise
        except Exception as e:
            error = FetchError(f"Store fetch failed: {e}", start, now)
            self.last_fetch_error = error
            raise error from e

        readings, errors = parse_batch(rows)
        async with self._lock:
            changed = self._fold(readings, now)
            self.dropped_rows += len(errors)
            self.last_fetch_error = None
            self.last_refresh_at = now
        if changed:
            self._publish()

        logger.info(
            f"[COORD] Refreshed {len(rows)} rows ({len(readings)} valid, {len(errors)} dropped), "
            f"window holds {len(self._window)}"
        )
        return self.snapshot()

    # ─── Push ────────────────────────────────────────────────────────────────
    def notify(self, row: Optional[RawRow] = None) -> None:
        """
        Push entry point. A row is queued for resolution; None asks for a
        full re-fetch. Safe to call from other threads.
        """
        loop = self._loop
        if loop is None:
            self._enqueue(row)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._enqueue(row)
        else:
            loop.call_soon_threadsafe(self._enqueue, row)

    def _enqueue(self, row: Optional[RawRow]) -> None:
        if row is None:
            self._refetch_requested = True
        else:
            self._pending_rows.append(row)
        if self._push_event is not None:
            self._push_event.set()

    async def flush_push(self) -> bool:
        """
        Resolve everything queued by notify() in one pass.
        Returns True if the snapshot changed. Raises FetchError only when a
        re-fetch was requested and failed.
        """
        async with self._lock:
            rows, self._pending_rows = self._pending_rows, []
            refetch, self._refetch_requested = self._refetch_requested, False
            changed = False
            if rows:
                readings, errors = parse_batch(rows)
                self.dropped_rows += len(errors)
                changed = self._fold(readings, self._clock())
                logger.debug(f"[COORD] Applied {len(rows)} pushed rows ({len(errors)} dropped)")
        if changed:
            self._publish()

        if refetch:
            before = self.version
            await self.refresh()
            changed = changed or self.version != before
        return changed

    # ─── Liveness ────────────────────────────────────────────────────────────
    async def check_liveness(self) -> Snapshot:
        """One liveness tick over the last resolved state. Never fetches."""
        now = self._clock()
        async with self._lock:
            changed = False
            for state in list(self._states.values()):
                changed |= self._set_state(evaluate_node(state, now, self.config))
        if changed:
            self._publish()
        return self.snapshot()

    # ─── Schedules ───────────────────────────────────────────────────────────
    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.refresh()
            except FetchError as e:
                logger.warning(f"[COORD] Refresh failed, keeping previous state: {e}")
            except Exception:
                logger.exception("[COORD] Unexpected error during refresh, retrying next poll")
            await asyncio.sleep(self.config.poll_interval)

    async def _push_loop(self) -> None:
        while True:
            await self._push_event.wait()
            self._push_event.clear()
            try:
                await self.flush_push()
            except FetchError as e:
                logger.warning(f"[COORD] Push-triggered refresh failed: {e}")
            except Exception:
                logger.exception("[COORD] Unexpected error while applying pushed rows")

    async def _liveness_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.liveness_interval)
            try:
                await self.check_liveness()
            except Exception:
                logger.exception("[COORD] Unexpected error during liveness check")

    async def start(self) -> None:
        if self._tasks:
            return
        self._loop = asyncio.get_running_loop()
        self._lock = asyncio.Lock()
        self._push_event = asyncio.Event()
        if self._pending_rows or self._refetch_requested:
            self._push_event.set()

        subscribe = getattr(self.store, "subscribe", None)
        if callable(subscribe):
            self._subscription = subscribe(self.notify)

        self._tasks = [
            asyncio.create_task(self._poll_loop(), name="lorawatch-poll"),
            asyncio.create_task(self._push_loop(), name="lorawatch-push"),
            asyncio.create_task(self._liveness_loop(), name="lorawatch-liveness"),
        ]
        logger.info(
            f"[COORD] Started for {len(self._states)} nodes "
            f"(poll {self.config.poll_interval}s, liveness {self.config.liveness_interval}s, "
            f"threshold {self.config.staleness_threshold}, hysteresis {self.config.hysteresis_limit})"
        )

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loop = None
        self._push_event = None
        if tasks:
            logger.info("[COORD] Stopped")

    async def __aenter__(self) -> "RefreshCoordinator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

"""
Reconciler: diffs consecutive live snapshots.

New sessions are inserted before the next poll; ended sessions are handed to
a finalizer each and the loop moves on without waiting for them.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from .config import PollingConfig
from .errors import ExhaustionError, SnapshotUnavailableError
from .finalizer import FinalizerPool
from .logger import get_logger, get_session_logger
from .poller import SnapshotPoller
from .retry import with_retry
from .session import Session, SessionPool, Snapshot
from .store import SessionStore

AuxLookup = Callable[[int, str], Awaitable[int]]


@dataclass
class CycleResult:
    """What one reconcile pass did."""
    inserted: List[str] = field(default_factory=list)
    ended: List[str] = field(default_factory=list)
    unchanged: int = 0


class Reconciler:
    """Main loop: poll, diff against the previous snapshot, insert, spawn finalizers, sleep."""

    def __init__(
        self,
        poller: SnapshotPoller,
        store: SessionStore,
        pool: SessionPool,
        finalizers: FinalizerPool,
        config: PollingConfig,
        stop_event: asyncio.Event,
        aux_lookup: Optional[AuxLookup] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """
        Args:
            poller: Snapshot source.
            store: Session store.
            pool: Arena the snapshot sessions come from.
            finalizers: Task pool receiving ended sessions.
            config: Polling settings.
            stop_event: Process-wide cancellation, checked once per cycle.
            aux_lookup: Optional live cut number lookup for new sessions.
            sleep: Awaitable sleep used between retries, replaceable in tests.
        """
        self.poller = poller
        self.store = store
        self.pool = pool
        self.finalizers = finalizers
        self.config = config
        self.stop_event = stop_event
        self.aux_lookup = aux_lookup
        self._sleep = sleep

        self.previous: Snapshot = {}
        self._logger = get_logger('reconciler')

    async def run(self) -> None:
        """
        Run cycles until cancellation is requested.

        Raises:
            SnapshotUnavailableError: If the live list cannot be fetched and
                polling.exit_on_failure is set.
        """
        self._logger.info(f"Watching the live list every {self.config.interval:.0f}s")

        while not self.stop_event.is_set():
            current = await self.poll()
            if current is not None:
                result = await self.reconcile(current)
                if result.inserted or result.ended:
                    self._logger.info(
                        f"{len(current)} live: {len(result.inserted)} started, "
                        f"{len(result.ended)} ended, "
                        f"{self.finalizers.pending} finalizers running"
                    )

            await self._wait(self.config.interval)

        self._logger.info("Reconciler stopped")

    async def poll(self) -> Optional[Snapshot]:
        """Fetch the next snapshot; None if it was unavailable and the cycle is skipped."""
        try:
            return await with_retry(
                self.poller.poll,
                self.config.retry_delay,
                what="Live list fetch",
                logger=self._logger,
                sleep=self._sleep,
            )
        except ExhaustionError as e:
            if self.config.exit_on_failure:
                self._logger.critical("Too many errors fetching the live list, shutting down")
                raise SnapshotUnavailableError(str(e)) from e

            self._logger.error(f"{e}; keeping the previous snapshot")
            return None

    async def reconcile(self, current: Snapshot) -> CycleResult:
        """
        Apply one snapshot.

        Inserts sessions new in current, hands sessions missing from current
        to finalizers, releases the stale copies of sessions in both, then
        makes current the previous snapshot.
        """
        result = CycleResult()

        if not current:
            self._logger.info("Nobody is live")

        for session_id, session in current.items():
            if session_id not in self.previous:
                await self._insert_new(session)
                result.inserted.append(session_id)

        for session_id, session in self.previous.items():
            if session_id in current:
                self.pool.release(session)
                result.unchanged += 1
            else:
                self.finalizers.spawn(session)
                result.ended.append(session_id)

        self.previous = current
        return result

    async def _insert_new(self, session: Session) -> None:
        logger = get_session_logger(session, 'reconciler')

        if self.aux_lookup is not None and self.config.fetch_aux_tag:
            session.aux_tag = await self._lookup_aux_tag(session, logger)

        await self.store.insert_if_absent(session)
        logger.debug(f"Live started: {session.title}")

    async def _lookup_aux_tag(self, session: Session, logger) -> int:
        try:
            return await with_retry(
                lambda: self.aux_lookup(session.owner_id, session.session_id),
                self.config.retry_delay,
                what="Live cut lookup",
                logger=logger,
                sleep=self._sleep,
            )
        except ExhaustionError as e:
            logger.warning(f"{e}; storing live cut number 0")
            return 0

    async def _wait(self, seconds: float) -> None:
        """Sleep between cycles, waking early on cancellation."""
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

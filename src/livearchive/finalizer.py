"""
Finalizer: per ended session workflow that stores and backfills the playback link.
"""

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional, Set

from .acfun_api import Playback
from .config import FinalizerConfig
from .errors import EmptyResolutionError, ExhaustionError, FatalError, PoolError
from .logger import get_logger, get_session_logger
from .resolver import PlaybackResolver
from .session import Session, SessionPool, SlotState
from .store import SessionStore


class FinalizeOutcome(Enum):
    """How a finalizer run ended."""
    RESOLVE_FAILED = "resolve_failed"     # first resolution exhausted its retries
    EMPTY = "empty"                       # first resolution had no usable link
    FINALIZED = "finalized"               # complete link stored
    BACKFILL_FAILED = "backfill_failed"   # a backfill resolution exhausted its retries
    UNCONFIRMED = "unconfirmed"           # backfill rounds spent without a complete link


class Finalizer:
    """
    Resolves the recording of one ended session.

    Workflow:
    1. Wait the grace delay, upstream needs time to publish the recording
    2. Resolve once; give up on failure or empty links
    3. Insert the session if missing and store the first links
    4. Re-resolve every backfill interval until the link carries the
       finalized marker, then store it
    """

    def __init__(
        self,
        resolver: PlaybackResolver,
        store: SessionStore,
        pool: SessionPool,
        config: FinalizerConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.resolver = resolver
        self.store = store
        self.pool = pool
        self.config = config
        self._sleep = sleep

    def is_finalized(self, url: str) -> bool:
        """Check whether a playback link points at the complete recording."""
        marker = self.config.finalized_marker
        return bool(marker) and marker in url

    async def run(self, session: Session) -> FinalizeOutcome:
        """Run the workflow on a handed off session; it goes back to the pool on every exit path."""
        if self.pool.state_of(session) is not SlotState.FINALIZING:
            raise PoolError(f"Session {session.session_id} was not handed off to a finalizer")

        try:
            return await self._finalize(session)
        finally:
            self.pool.release(session)

    async def _finalize(self, session: Session) -> FinalizeOutcome:
        logger = get_session_logger(session, 'finalizer')
        logger.info(f"Live ended, resolving playback in {self.config.grace_delay:.0f}s")

        await self._sleep(self.config.grace_delay)

        try:
            playback = await self.resolver.resolve_usable(session.session_id, logger)
        except ExhaustionError as e:
            logger.error(f"Giving up on playback: {e}")
            return FinalizeOutcome.RESOLVE_FAILED
        except EmptyResolutionError:
            logger.warning("Playback links are empty, nothing to store")
            return FinalizeOutcome.EMPTY

        # The live may have started before this process did
        await self.store.insert_if_absent(session)
        await self._store_playback(session, playback)

        if self.is_finalized(playback.url):
            logger.info("Complete playback link stored")
            return FinalizeOutcome.FINALIZED

        iterations = self.config.backfill_iterations
        for iteration in range(1, iterations + 1):
            await self._sleep(self.config.backfill_interval)

            try:
                playback = await self.resolver.resolve(session.session_id, logger)
            except ExhaustionError as e:
                logger.error(f"Backfill stopped: {e}")
                return FinalizeOutcome.BACKFILL_FAILED

            if self.is_finalized(playback.url):
                await self._store_playback(session, playback)
                logger.info(f"Complete playback link stored after {iteration} backfill rounds")
                return FinalizeOutcome.FINALIZED

            logger.debug(f"Playback link not complete yet ({iteration}/{iterations})")

        logger.warning(
            "Could not get the complete playback link, "
            f"run 'getplayback {session.session_id}' later to update it"
        )
        return FinalizeOutcome.UNCONFIRMED

    async def _store_playback(self, session: Session, playback: Playback) -> None:
        session.duration_ms = playback.duration
        session.playback_url = playback.url
        session.backup_url = playback.backup_url
        await self.store.update_playback(
            session.session_id, playback.duration, playback.url, playback.backup_url
        )


class FinalizerPool:
    """
    Tracks the finalizer tasks in flight.

    Tasks are detached from the reconciler: it never awaits them. A task that
    ends with a FatalError reports it through on_fatal.
    """

    def __init__(
        self,
        finalizer: Finalizer,
        pool: SessionPool,
        on_fatal: Optional[Callable[[FatalError], None]] = None
    ):
        self.finalizer = finalizer
        self.pool = pool
        self.on_fatal = on_fatal
        self._tasks: Set[asyncio.Task] = set()
        self._logger = get_logger('finalizer')

    @property
    def pending(self) -> int:
        """Number of finalizers still running."""
        return len(self._tasks)

    def spawn(self, session: Session) -> asyncio.Task:
        """Take ownership of an ended session and start its finalizer."""
        self.pool.hand_off(session)
        task = asyncio.create_task(
            self.finalizer.run(session),
            name=f"finalize-{session.session_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return

        exc = task.exception()
        if exc is None:
            return

        if isinstance(exc, FatalError):
            self._logger.critical(f"{task.get_name()} hit a fatal error: {exc}")
            if self.on_fatal:
                self.on_fatal(exc)
        else:
            self._logger.error(f"{task.get_name()} crashed: {exc!r}", exc_info=exc)

    async def wait(self) -> None:
        """Wait until every finalizer has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def abandon(self) -> int:
        """
        Cancel the finalizers still running.

        Returns:
            Number of finalizers cancelled.
        """
        tasks = list(self._tasks)
        if not tasks:
            return 0

        self._logger.warning(f"Abandoning {len(tasks)} unfinished finalizers")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        return len(tasks)

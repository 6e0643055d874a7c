"""
Query and command surface.

QuerySurface holds the read-only lookups and manual playback resolution.
CommandShell reads commands from stdin and dispatches them.
"""

import asyncio
import sys
import threading
from datetime import datetime
from typing import Callable, List, Optional, TextIO, Tuple

from .acfun_api import Playback
from .errors import ExhaustionError, NotFoundError
from .logger import get_logger
from .resolver import PlaybackResolver
from .session import Session
from .store import SessionStore

HELP_MESSAGE = (
    'Enter "listall <uid...>", "list10 <uid...>", "updateall <uid...>", '
    '"update10 <uid...>", "getplayback <liveID...>" or "quit"'
)


def format_start_time(start_time_ms: int) -> str:
    """Local wall clock time of a millisecond timestamp."""
    return datetime.fromtimestamp(start_time_ms // 1000).strftime('%Y-%m-%d %H:%M:%S')


def format_duration(duration_ms: int) -> str:
    """HH:MM:SS of a millisecond duration."""
    hours, rest = divmod(max(0, duration_ms) // 1000, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def format_session(session: Session) -> str:
    return (
        f"Start: {format_start_time(session.start_time)} "
        f"uid: {session.owner_id} name: {session.owner_name} "
        f"title: {session.title} liveID: {session.session_id} "
        f"streamName: {session.stream_name} "
        f"duration: {format_duration(session.duration_ms)} "
        f"playback: {session.playback_url} backup: {session.backup_url}"
    )


class QuerySurface:
    """Lookups and manual resolution used by the command shell."""

    def __init__(self, store: SessionStore, resolver: PlaybackResolver):
        self.store = store
        self.resolver = resolver
        self._logger = get_logger('commands')

    async def list_sessions(self, owner_id: int, limit: Optional[int] = None) -> List[str]:
        """
        Display lines for the sessions of a broadcaster, newest first.

        Raises:
            NotFoundError: If nothing is stored for the broadcaster.
        """
        sessions = await self.store.list_by_owner(owner_id, limit)
        if not sessions:
            raise NotFoundError(f"No records for uid {owner_id}")
        return [format_session(session) for session in sessions]

    async def resolve(self, session_id: str) -> Tuple[Playback, bool]:
        """
        Resolve a session's playback now, without the grace delay.

        Only an already stored session is updated. Without usable links only
        a known duration is kept.

        Returns:
            (playback, persisted)

        Raises:
            ExhaustionError: If every attempt failed.
        """
        playback = await self.resolver.resolve(session_id)
        if not await self.store.exists(session_id):
            return playback, False
        return playback, await self._persist(session_id, playback)

    async def refresh_owner(self, owner_id: int, limit: Optional[int] = None) -> int:
        """
        Re-resolve the stored sessions of a broadcaster.

        Returns:
            Number of sessions updated.

        Raises:
            NotFoundError: If nothing is stored for the broadcaster.
        """
        sessions = await self.store.list_by_owner(owner_id, limit)
        if not sessions:
            raise NotFoundError(f"No records for uid {owner_id}")

        updated = 0
        for session in sessions:
            try:
                playback = await self.resolver.resolve(session.session_id)
            except ExhaustionError as e:
                self._logger.warning(str(e))
                continue

            if await self._persist(session.session_id, playback):
                updated += 1

        return updated

    async def _persist(self, session_id: str, playback: Playback) -> bool:
        """Store a resolution; True if its links were stored."""
        if playback.is_empty:
            if playback.duration > 0:
                await self.store.update_duration(session_id, playback.duration)
            return False

        await self.store.update_playback(
            session_id, playback.duration, playback.url, playback.backup_url
        )
        return True


class CommandShell:
    """
    Line based command interface.

    A daemon thread reads stdin so that a pending read never holds up
    shutdown; lines reach the event loop through a queue.
    """

    OWNER_COMMANDS = {
        'listall': ('list', None),
        'list10': ('list', 10),
        'updateall': ('update', None),
        'update10': ('update', 10),
    }

    def __init__(
        self,
        queries: QuerySurface,
        stop_event: asyncio.Event,
        output: Callable[[str], None] = print,
        stdin: Optional[TextIO] = None
    ):
        self.queries = queries
        self.stop_event = stop_event
        self.output = output
        self.stdin = stdin or sys.stdin
        self._logger = get_logger('commands')

    async def run(self) -> None:
        """Dispatch commands until quit or end of input."""
        loop = asyncio.get_running_loop()
        lines: asyncio.Queue = asyncio.Queue()

        def read_lines() -> None:
            try:
                for line in self.stdin:
                    loop.call_soon_threadsafe(lines.put_nowait, line)
                loop.call_soon_threadsafe(lines.put_nowait, None)
            except RuntimeError:
                # Loop already closed
                return

        threading.Thread(target=read_lines, name="stdin-reader", daemon=True).start()
        self._logger.info(HELP_MESSAGE)

        while True:
            line = await lines.get()
            if line is None:
                self._logger.debug("End of input, command shell closed")
                return
            if not await self.handle_line(line):
                return

    async def handle_line(self, line: str) -> bool:
        """
        Execute one command line.

        Returns:
            False once the shell should stop reading.
        """
        parts = line.split()
        if not parts:
            return True

        command, args = parts[0], parts[1:]

        if command == 'quit' and not args:
            self._logger.info("Exiting, please wait")
            self.stop_event.set()
            return False

        if command in self.OWNER_COMMANDS and args:
            try:
                owner_ids = [int(arg) for arg in args]
            except ValueError:
                self._logger.info(HELP_MESSAGE)
                return True

            action, limit = self.OWNER_COMMANDS[command]
            for owner_id in owner_ids:
                if action == 'list':
                    await self._list(owner_id, limit)
                else:
                    await self._update(owner_id, limit)
            return True

        if command == 'getplayback' and args:
            for session_id in args:
                await self._get_playback(session_id)
            return True

        self._logger.info(HELP_MESSAGE)
        return True

    async def _list(self, owner_id: int, limit: Optional[int]) -> None:
        try:
            lines = await self.queries.list_sessions(owner_id, limit)
        except NotFoundError as e:
            self._logger.info(str(e))
            return

        for line in lines:
            self.output(line)

    async def _update(self, owner_id: int, limit: Optional[int]) -> None:
        self._logger.info(f"Updating playback links of uid {owner_id}, please wait")
        try:
            updated = await self.queries.refresh_owner(owner_id, limit)
        except NotFoundError as e:
            self._logger.info(f"{e}, nothing to update")
            return

        self._logger.info(f"Updated {updated} playback links of uid {owner_id}")

    async def _get_playback(self, session_id: str) -> None:
        self._logger.info(f"Resolving playback of liveID {session_id}, please wait")
        try:
            playback, persisted = await self.queries.resolve(session_id)
        except ExhaustionError as e:
            self._logger.error(str(e))
            return

        if persisted:
            self._logger.info(f"Stored playback of liveID {session_id}")
        self.output(
            f"liveID: {session_id} duration: {format_duration(playback.duration)} "
            f"playback: {playback.url} backup: {playback.backup_url}"
        )

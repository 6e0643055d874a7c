"""
Playback resolution shared by the finalizer and the command shell.
"""

import asyncio
from typing import Awaitable, Callable

from .acfun_api import AcFunAPI, Playback
from .errors import EmptyResolutionError
from .logger import get_logger
from .retry import with_retry


class PlaybackResolver:
    """Resolves playback links through the retry executor and sorts them by CDN vendor."""

    def __init__(
        self,
        api: AcFunAPI,
        retry_delay: float,
        aliyun_marker: str = "alivod",
        tencent_marker: str = "txvod",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.api = api
        self.retry_delay = retry_delay
        self.aliyun_marker = aliyun_marker
        self.tencent_marker = tencent_marker
        self._sleep = sleep
        self._logger = get_logger('resolver')

    async def resolve(self, session_id: str, logger=None) -> Playback:
        """
        Resolve the playback of a session.

        When both vendor links are found, the Aliyun one becomes the primary
        link and the Tencent one the backup.

        Raises:
            ExhaustionError: If every attempt failed.
        """
        log = logger or self._logger
        playback = await with_retry(
            lambda: self.api.get_playback(session_id),
            self.retry_delay,
            what=f"Playback lookup of {session_id}",
            logger=log,
            sleep=self._sleep,
        )

        if playback.url:
            aliyun_url, tencent_url = playback.distinguish(self.aliyun_marker, self.tencent_marker)
            if aliyun_url and tencent_url:
                playback.url = aliyun_url
                playback.backup_url = tencent_url
            else:
                log.warning(f"Could not tell Aliyun and Tencent playback links of {session_id} apart")

        return playback

    async def resolve_usable(self, session_id: str, logger=None) -> Playback:
        """
        Like resolve(), but an empty descriptor is an error.

        Raises:
            ExhaustionError: If every attempt failed.
            EmptyResolutionError: If neither link is set.
        """
        playback = await self.resolve(session_id, logger)
        if playback.is_empty:
            raise EmptyResolutionError(f"Playback links of {session_id} are empty")
        return playback

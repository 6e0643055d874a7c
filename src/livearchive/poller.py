"""
Snapshot poller.
Fetches the complete set of live sessions from the live channel listing.
"""

from typing import Any, Dict

from .acfun_api import AcFunAPI, LivePage
from .config import PollingConfig
from .errors import TransientUpstreamError
from .logger import get_logger
from .session import Session, SessionPool, Snapshot


class SnapshotPoller:
    """
    Produces one Snapshot per call.

    The listing is cursor based, but asking for more than one page is not
    reliable upstream, so the whole list is requested at once: the requested
    size grows geometrically until upstream stops reporting more data.
    """

    def __init__(self, api: AcFunAPI, pool: SessionPool, config: PollingConfig):
        self.api = api
        self.pool = pool
        self.config = config
        self._logger = get_logger('poller')

    async def poll(self) -> Snapshot:
        """
        Fetch the current live sessions.

        Raises:
            TransientUpstreamError: On upstream failure or if the listing
                still reports more data at the size limit.
        """
        page = await self._fetch_complete_page()

        snapshot: Snapshot = {}
        try:
            for entry in page.entries:
                session = self._to_session(entry)
                if not session.session_id:
                    self.pool.release(session)
                    continue

                previous = snapshot.get(session.session_id)
                if previous is not None:
                    self.pool.release(previous)
                snapshot[session.session_id] = session
        except TransientUpstreamError:
            for session in snapshot.values():
                self.pool.release(session)
            raise

        return snapshot

    async def _fetch_complete_page(self) -> LivePage:
        count = self.config.page_size_start
        while True:
            page = await self.api.fetch_live_page(count)
            if not page.has_more:
                return page

            if count >= self.config.page_size_limit:
                raise TransientUpstreamError(
                    f"Live list still reports more data at page size {count}"
                )

            count = min(count * self.config.page_size_factor, self.config.page_size_limit)
            self._logger.debug(f"Live list has more data, retrying with page size {count}")

    def _to_session(self, entry: Dict[str, Any]) -> Session:
        session = self.pool.acquire()
        try:
            if not isinstance(entry, dict):
                raise TypeError(f"entry is {type(entry).__name__}, not an object")
            user = entry.get('user') or {}
            if not isinstance(user, dict):
                raise TypeError(f"user is {type(user).__name__}, not an object")
            session.session_id = str(entry.get('liveId') or "")
            session.owner_id = int(entry.get('authorId') or 0)
            session.owner_name = str(user.get('name') or "")
            session.stream_name = str(entry.get('streamName') or "")
            session.start_time = int(entry.get('createTime') or 0)
            session.title = str(entry.get('title') or "")
        except (TypeError, ValueError) as e:
            self.pool.release(session)
            raise TransientUpstreamError(f"Malformed live list entry: {e}") from e
        return session

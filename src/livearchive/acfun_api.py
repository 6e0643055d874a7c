"""
AcFun live API client.
Handles visitor authentication, the live channel listing and playback lookup.
"""

import asyncio
import json
import re
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from .config import AcFunConfig
from .errors import TransientUpstreamError
from .logger import get_logger


@dataclass
class LivePage:
    """One response of the live channel listing."""
    entries: List[Dict[str, Any]] = field(default_factory=list)
    has_more: bool = False


@dataclass
class Playback:
    """Recording descriptor of an ended live session."""
    duration: int = 0           # milliseconds
    url: str = ""
    backup_url: str = ""

    @property
    def is_empty(self) -> bool:
        """True if neither link is usable."""
        return not self.url and not self.backup_url

    def distinguish(self, aliyun_marker: str, tencent_marker: str) -> Tuple[str, str]:
        """
        Split the two links by CDN vendor.

        Returns:
            (aliyun_url, tencent_url), empty strings for vendors not found.
        """
        aliyun_url = ""
        tencent_url = ""
        for url in (self.url, self.backup_url):
            if not url:
                continue
            if aliyun_marker and aliyun_marker in url and not aliyun_url:
                aliyun_url = url
            elif tencent_marker and tencent_marker in url and not tencent_url:
                tencent_url = url
        return aliyun_url, tencent_url


def parse_live_page(data: Dict[str, Any]) -> LivePage:
    """Validate a live list response and extract its entries."""
    if not isinstance(data, dict) or data.get('result') != 0:
        raise TransientUpstreamError(f"Live list request rejected: {_truncate(data)}")

    entries = data.get('liveList') or []
    if not isinstance(entries, list):
        raise TransientUpstreamError("Live list response has no liveList array")

    return LivePage(entries=entries, has_more=data.get('pcursor') != 'no_more')


def parse_playback(data: Dict[str, Any]) -> Playback:
    """Extract duration and links from a startPlay response."""
    if not isinstance(data, dict) or data.get('result') != 1:
        raise TransientUpstreamError(f"Playback request rejected: {_truncate(data)}")

    body = data.get('data') or {}
    if not isinstance(body, dict):
        raise TransientUpstreamError(f"Playback response has no data object: {_truncate(data)}")

    raw_manifest = body.get('adaptiveManifest') or '{}'
    try:
        manifest = json.loads(raw_manifest) if isinstance(raw_manifest, str) else raw_manifest
    except ValueError as e:
        raise TransientUpstreamError(f"Invalid adaptiveManifest: {e}") from e

    if not isinstance(manifest, dict):
        raise TransientUpstreamError(f"adaptiveManifest is not an object: {_truncate(raw_manifest)}")

    # adaptationSet is an object in current responses and was a list before
    adaptation = manifest.get('adaptationSet') or {}
    if isinstance(adaptation, list):
        adaptation = adaptation[0] if adaptation else {}

    if not isinstance(adaptation, dict):
        raise TransientUpstreamError(f"Unexpected adaptationSet: {_truncate(adaptation)}")

    representations = adaptation.get('representation') or []
    if not isinstance(representations, list):
        raise TransientUpstreamError(f"Unexpected representation: {_truncate(representations)}")

    duration = _as_int(body.get('duration'), 'duration')
    if not representations:
        return Playback(duration=duration)

    rep = representations[0]
    if not isinstance(rep, dict):
        raise TransientUpstreamError(f"Unexpected representation: {_truncate(rep)}")

    backup = rep.get('backupUrl') or []
    if isinstance(backup, list):
        backup = backup[0] if backup else ""

    url = rep.get('url') or ""
    if not isinstance(url, str) or not isinstance(backup or "", str):
        raise TransientUpstreamError(f"Playback links are not strings: {_truncate(rep)}")

    return Playback(duration=duration, url=url, backup_url=backup or "")


def parse_live_cut_num(data: Dict[str, Any]) -> int:
    """Extract the live cut number from a getLiveCutInfo response, 0 if none."""
    if not isinstance(data, dict) or data.get('result') != 1:
        raise TransientUpstreamError(f"Live cut request rejected: {_truncate(data)}")

    cut_url = data.get('liveCutUrl') or ""
    if not isinstance(cut_url, str):
        raise TransientUpstreamError(f"liveCutUrl is not a string: {_truncate(cut_url)}")

    match = re.search(r'(\d+)/?$', cut_url)
    return int(match.group(1)) if match else 0


def _as_int(value: Any, name: str) -> int:
    """Coerce a numeric response field, 0 if missing."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise TransientUpstreamError(f"Field {name} is not a number: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise TransientUpstreamError(f"Field {name} is not a number: {_truncate(value)}") from e


def _truncate(data: Any, limit: int = 300) -> str:
    text = str(data)
    return text if len(text) <= limit else text[:limit] + "..."


class AcFunAPI:
    """
    AcFun live API client.

    Features:
    - Visitor authentication with automatic re-login
    - Live channel listing with a requested page size
    - Playback descriptor lookup
    - Live cut number lookup
    """

    VISITOR_SID = "acfun.api.visitor"
    TOKEN_KEY = "acfun.api.visitor_st"

    def __init__(self, config: AcFunConfig):
        """
        Initialize AcFun API client.

        Args:
            config: Endpoint and timeout settings.
        """
        self.config = config
        self.device_id = f"web_{secrets.token_hex(8).upper()}"

        self._user_id: Optional[int] = None
        self._visitor_token: Optional[str] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._login_lock = asyncio.Lock()
        self._logger = get_logger('acfun_api')

    async def connect(self) -> bool:
        """
        Initialize session and log in as a visitor.

        Returns:
            True if connected successfully.
        """
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.config.request_timeout),
            headers={'Accept-Encoding': 'gzip'},
            cookies={'_did': self.device_id},
        )

        try:
            await self._login()
        except TransientUpstreamError as e:
            self._logger.error(f"Failed to connect: {e}")
            return False

        self._logger.info(f"Connected to AcFun API as visitor {self._user_id}")
        return True

    async def disconnect(self) -> None:
        """Close session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def _login(self) -> None:
        """Get a visitor token."""
        data = await self._request(
            'POST',
            self.config.visitor_login_url,
            data={'sid': self.VISITOR_SID},
        )
        if not isinstance(data, dict) or data.get('result') != 0 or not data.get(self.TOKEN_KEY):
            raise TransientUpstreamError(f"Visitor login rejected: {_truncate(data)}")

        user_id = _as_int(data.get('userId'), 'userId')
        self._visitor_token = str(data[self.TOKEN_KEY])
        self._user_id = user_id
        self._logger.debug("Got new visitor token")

    async def _ensure_token(self) -> None:
        """Ensure we have a visitor token."""
        async with self._login_lock:
            if not self._visitor_token:
                await self._login()

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        """Send a request and decode its JSON body, mapping failures to TransientUpstreamError."""
        if self._session is None:
            raise TransientUpstreamError("AcFun API is not connected")

        try:
            async with self._session.request(method, url, **kwargs) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise TransientUpstreamError(f"HTTP {resp.status} from {url}: {_truncate(text)}")
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientUpstreamError(f"Request to {url} failed: {e!r}") from e
        except ValueError as e:
            raise TransientUpstreamError(f"Invalid JSON from {url}: {e}") from e

    async def fetch_live_page(self, count: int) -> LivePage:
        """
        Fetch the live channel list with the requested page size.

        Args:
            count: Number of entries requested.

        Returns:
            LivePage with the entries and the upstream "more data" flag.
        """
        data = await self._request(
            'POST',
            self.config.live_list_url,
            data={'count': str(count), 'pcursor': '0'},
        )
        return parse_live_page(data)

    async def get_playback(self, session_id: str) -> Playback:
        """
        Get the playback descriptor of an ended live session.

        Args:
            session_id: AcFun liveId.

        Returns:
            Playback, possibly with empty links.
        """
        await self._ensure_token()

        params = {
            'subBiz': 'mainApp',
            'kpn': 'ACFUN_APP',
            'kpf': 'PC_WEB',
            'userId': str(self._user_id),
            'did': self.device_id,
            self.TOKEN_KEY: self._visitor_token,
        }
        data = await self._request(
            'POST',
            self.config.playback_url,
            params=params,
            data={'liveId': session_id},
        )

        if isinstance(data, dict) and data.get('result') != 1:
            # Force a fresh login on the next attempt
            self._visitor_token = None

        return parse_playback(data)

    async def get_live_cut_num(self, owner_id: int, session_id: str) -> int:
        """
        Get the live cut number of a session.

        Args:
            owner_id: Broadcaster uid.
            session_id: AcFun liveId.

        Returns:
            Live cut number, 0 if the session has none.
        """
        data = await self._request(
            'GET',
            self.config.live_cut_url,
            params={'authorId': str(owner_id), 'liveId': session_id},
        )
        return parse_live_cut_num(data)

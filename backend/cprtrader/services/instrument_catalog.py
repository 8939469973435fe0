"""
Instrument Catalog Service
CPR Options Trader

Holds the scrip master snapshot the resolver reads from:
- Downloads the Angel One scrip master (JSON) with aiohttp, retried with backoff
- Replaces the snapshot wholesale, never patches rows
- Keeps serving the previous snapshot when a refresh fails
- Persists the last good download to a disk cache for fast restarts
"""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, List, Optional, Tuple

import aiohttp
from loguru import logger
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cprtrader.core.config import AngelOneSettings, settings
from cprtrader.core.errors import CatalogLoadError
from cprtrader.schemas.trading import InstrumentCatalogRow


class InstrumentCatalog:
    """
    Immutable snapshot of catalog rows plus refresh plumbing.

    An empty catalog is valid: every resolution simply misses until the
    first successful load.
    """

    def __init__(
        self,
        config: Optional[AngelOneSettings] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config or settings.angel
        self._http_session = session
        self._rows: Tuple[InstrumentCatalogRow, ...] = ()
        self._loaded_at: Optional[datetime] = None
        self._source: Optional[str] = None
        self._refresh_lock = asyncio.Lock()

    @property
    def rows(self) -> Tuple[InstrumentCatalogRow, ...]:
        return self._rows

    @property
    def size(self) -> int:
        return len(self._rows)

    @property
    def is_empty(self) -> bool:
        return not self._rows

    @property
    def loaded_at(self) -> Optional[datetime]:
        return self._loaded_at

    @property
    def cache_path(self) -> Path:
        return Path(self.config.scrip_master_cache)

    def replace(self, rows: Iterable[InstrumentCatalogRow], source: str = "memory") -> None:
        """Swap in a new snapshot."""
        self._rows = tuple(rows)
        self._loaded_at = datetime.now()
        self._source = source
        logger.info(f"Instrument catalog loaded from {source}: {len(self._rows)} instruments")

    async def _get_http_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._http_session is None or self._http_session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.catalog_timeout_seconds)
            self._http_session = aiohttp.ClientSession(timeout=timeout)
        return self._http_session

    async def close(self):
        """Close HTTP session."""
        if self._http_session and not self._http_session.closed:
            await self._http_session.close()

    # =========================================================================
    # Loading
    # =========================================================================

    async def load(self, force: bool = False) -> bool:
        """
        Make sure a snapshot is available.

        Args:
            force: Skip memory and disk cache and download a fresh copy

        Returns:
            True if a snapshot is being served after the call
        """
        if not force:
            if self._rows:
                return True
            if await asyncio.to_thread(self._load_disk_cache):
                return True
        return await self.refresh()

    async def refresh(self) -> bool:
        """
        Download the scrip master and replace the snapshot.

        On any failure the current snapshot (possibly empty) keeps serving.
        """
        async with self._refresh_lock:
            try:
                raw = await self._download()
                rows = await asyncio.to_thread(self.parse_angel, raw)
                if not rows:
                    raise CatalogLoadError("Scrip master contained no parsable rows")
            except CatalogLoadError as e:
                logger.error(
                    f"Failed to refresh instrument catalog: {e.message}; "
                    f"serving previous snapshot ({self.size} instruments)"
                )
                return False

            self.replace(rows, source=self.config.scrip_master_url)
            await asyncio.to_thread(self._write_disk_cache, raw)
            return True

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(CatalogLoadError),
        reraise=True,
    )
    async def _download(self) -> List[Any]:
        session = await self._get_http_session()
        url = self.config.scrip_master_url
        logger.info(f"Downloading instrument catalog from {url}")

        try:
            async with session.get(url) as response:
                if response.status != 200:
                    raise CatalogLoadError(f"HTTP {response.status} from scrip master")
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise CatalogLoadError(f"Scrip master download error: {e}") from e

        if not isinstance(data, list):
            raise CatalogLoadError("Unexpected scrip master format")
        return data

    # =========================================================================
    # Parsing
    # =========================================================================

    @staticmethod
    def parse_angel(raw: Iterable[Any]) -> List[InstrumentCatalogRow]:
        """Parse Angel One scrip master entries, skipping malformed ones."""
        rows = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            try:
                rows.append(InstrumentCatalogRow.from_angel(item))
            except (TypeError, ValueError) as e:
                logger.debug(f"Skipping scrip master entry {item.get('token')}: {e}")
        return rows

    # =========================================================================
    # Disk cache
    # =========================================================================

    def _load_disk_cache(self) -> bool:
        path = self.cache_path
        if not path.exists():
            return False
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable catalog cache {path}: {e}")
            return False

        rows = self.parse_angel(raw) if isinstance(raw, list) else []
        if not rows:
            return False
        self.replace(rows, source=str(path))
        return True

    def _write_disk_cache(self, raw: List[Any]) -> None:
        path = self.cache_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(raw), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not write catalog cache {path}: {e}")

    def status(self) -> dict:
        return {
            "size": self.size,
            "loaded_at": self._loaded_at.isoformat() if self._loaded_at else None,
            "source": self._source,
        }

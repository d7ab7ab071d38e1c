"""Source collectors: fetch provider pages and normalize them into VaultRecords."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

from vaults_yield.cache import ResultCache
from vaults_yield.constants import (
    DEFILLAMA_POOLS_URL,
    DEFILLAMA_TIMEOUT,
    PROVIDER_CACHE_TTL_S,
    PROVIDER_MIN_TVL_USD,
    VAULTS_FYI_BASE_URL,
    VAULTS_FYI_DETAILED_VAULTS_PATH,
    VAULTS_FYI_MAX_PAGES,
    VAULTS_FYI_NETWORKS,
    VAULTS_FYI_PER_PAGE,
    VAULTS_FYI_TIMEOUT,
)
from vaults_yield.errors import AllSourcesFailed, SourceUnavailable
from vaults_yield.models import VaultRecord
from vaults_yield.parsing import iter_defillama_records, iter_vaults_fyi_records

logger = logging.getLogger(__name__)

FetchPage = Callable[..., Awaitable[Any]]


def fetch_json(
    url: str, *, params: dict[str, Any] | None = None, headers: dict[str, str] | None = None, timeout_s: float
) -> Any:
    """Blocking GET returning decoded JSON. Raises on HTTP errors."""
    import requests  # pylint: disable=import-outside-toplevel

    response = requests.get(url, params=params, headers=headers, timeout=timeout_s)
    response.raise_for_status()
    return response.json()


async def fetch_provider_page(
    url: str, *, params: dict[str, Any] | None = None, headers: dict[str, str] | None = None, timeout_s: float
) -> Any:
    """Fetch one provider page without blocking the event loop."""
    return await asyncio.to_thread(fetch_json, url, params=params, headers=headers, timeout_s=timeout_s)


class SourceCollector(Protocol):
    name: str

    async def collect(self, asset: str) -> list[VaultRecord]: ...


def _require_data(source: str, payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
        raise SourceUnavailable(source, "unexpected payload shape")
    return payload


class DefiLlamaCollector:
    """Lending pools from the DefiLlama yields API."""

    name = "defillama"

    def __init__(
        self,
        *,
        fetch_page: FetchPage = fetch_provider_page,
        cache: ResultCache | None = None,
        url: str = DEFILLAMA_POOLS_URL,
        timeout_s: float = DEFILLAMA_TIMEOUT,
    ) -> None:
        self._fetch_page = fetch_page
        self._cache = cache or ResultCache()
        self._url = url
        self._timeout_s = timeout_s

    async def _fetch(self) -> dict[str, Any]:
        try:
            payload = await self._fetch_page(self._url, timeout_s=self._timeout_s)
        except Exception as ex:  # pylint: disable=broad-exception-caught
            raise SourceUnavailable(self.name, str(ex) or type(ex).__name__) from ex
        return _require_data(self.name, payload)

    async def collect(self, asset: str) -> list[VaultRecord]:
        # The pools endpoint is unfiltered, so one cached page serves every asset.
        payload = await self._cache.get_or_compute(
            "provider_page", (self.name, self._url), self._fetch, ttl_seconds=PROVIDER_CACHE_TTL_S
        )
        records = list(iter_defillama_records(payload, asset))
        logger.info("📊 DefiLlama: %d %s lending pools", len(records), asset)
        return records


class VaultsFyiCollector:
    """Vaults from the vaults.fyi detailed-vaults API (paginated, API key required)."""

    name = "vaultsfyi"

    def __init__(
        self,
        api_key: str | None,
        *,
        fetch_page: FetchPage = fetch_provider_page,
        cache: ResultCache | None = None,
        base_url: str = VAULTS_FYI_BASE_URL,
        per_page: int = VAULTS_FYI_PER_PAGE,
        max_pages: int = VAULTS_FYI_MAX_PAGES,
        timeout_s: float = VAULTS_FYI_TIMEOUT,
    ) -> None:
        self._api_key = api_key
        self._fetch_page = fetch_page
        self._cache = cache or ResultCache()
        self._url = base_url.rstrip("/") + VAULTS_FYI_DETAILED_VAULTS_PATH
        self._per_page = per_page
        self._max_pages = max_pages
        self._timeout_s = timeout_s

    def _params(self, asset: str, page: int) -> dict[str, Any]:
        return {
            "allowedAssets": [asset.upper()],
            "allowedNetworks": list(VAULTS_FYI_NETWORKS),
            "minTvl": PROVIDER_MIN_TVL_USD,
            "perPage": self._per_page,
            "page": page,
        }

    async def _fetch(self, asset: str, page: int) -> dict[str, Any]:
        try:
            payload = await self._fetch_page(
                self._url,
                params=self._params(asset, page),
                headers={"x-api-key": self._api_key, "Accept": "application/json"},
                timeout_s=self._timeout_s,
            )
        except Exception as ex:  # pylint: disable=broad-exception-caught
            raise SourceUnavailable(self.name, str(ex) or type(ex).__name__) from ex
        return _require_data(self.name, payload)

    async def collect(self, asset: str) -> list[VaultRecord]:
        if not self._api_key:
            raise SourceUnavailable(self.name, "no API key configured (set VAULTS_FYI_API_KEY)")
        records: list[VaultRecord] = []
        for page in range(self._max_pages):
            try:
                payload = await self._cache.get_or_compute(
                    "provider_page",
                    (self.name, asset.upper(), page, self._per_page),
                    lambda page=page: self._fetch(asset, page),
                    ttl_seconds=PROVIDER_CACHE_TTL_S,
                )
            except SourceUnavailable as ex:
                if page == 0:
                    raise
                logger.warning("⚠️  vaults.fyi page %d failed, keeping %d records: %s", page, len(records), ex)
                break
            records.extend(iter_vaults_fyi_records(payload, asset))
            if len(payload["data"]) < self._per_page or ("nextPage" in payload and payload["nextPage"] is None):
                break
        logger.info("📊 vaults.fyi: %d %s vaults", len(records), asset)
        return records


async def collect_all_sources(collectors: Sequence[SourceCollector], asset: str) -> list[list[VaultRecord]]:
    """
    Run collectors concurrently. A failed collector contributes an empty stream;
    AllSourcesFailed is raised only when every collector failed.
    """
    outcomes = await asyncio.gather(*(c.collect(asset) for c in collectors), return_exceptions=True)
    streams: list[list[VaultRecord]] = []
    failed: list[str] = []
    for collector, outcome in zip(collectors, outcomes, strict=True):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            logger.warning("⚠️  %s unavailable: %s", collector.name, outcome)
            failed.append(collector.name)
            streams.append([])
        else:
            streams.append(outcome)
    if collectors and len(failed) == len(collectors):
        raise AllSourcesFailed(failed)
    return streams

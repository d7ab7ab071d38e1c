"""Cross-validation of provider records against on-chain state."""

import dataclasses
import logging
import time
from collections.abc import Callable, Iterable, Sequence

from vaults_yield.blockchain import ChainReader, run_in_batches
from vaults_yield.cache import ResultCache
from vaults_yield.constants import (
    FRESH_MAX_AGE_S,
    NAME_SIMILARITY_THRESHOLD,
    ONCHAIN_CACHE_TTL_S,
    RECENT_MAX_AGE_S,
    TVL_RATIO_THRESHOLD,
    TVL_SUBSTANTIAL_PAIRS,
    VALIDATION_BATCH_DELAY_S,
    VALIDATION_BATCH_SIZE,
    VALIDATION_MAX_CANDIDATES,
    VALIDATION_MIN_TVL_USD,
)
from vaults_yield.errors import OnChainReadFailed
from vaults_yield.models import DataConfidence, Freshness, OnchainVaultSnapshot, ValidationResult, VaultRecord
from vaults_yield.onchain import fetch_onchain_snapshot

logger = logging.getLogger(__name__)


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + (ca != cb)))
        previous = current
    return previous[-1]


def name_similarity(a: str, b: str) -> float:
    """Normalized similarity in [0, 1]: (len(longer) - distance) / len(longer)."""
    a, b = a.lower().strip(), b.lower().strip()
    longer = max(len(a), len(b))
    if longer == 0:
        return 1.0
    return (longer - levenshtein(a, b)) / longer


def _protocol_tokens(protocol: str) -> list[str]:
    # "aave-v3" -> ["aave"]; version tags alone match too much
    return [t for t in protocol.lower().split("-") if len(t) >= 3 and not (t[0] == "v" and t[1:].isdigit())]


def names_match(record: VaultRecord, snapshot: OnchainVaultSnapshot) -> bool:
    onchain_name = snapshot.name.lower()
    api_name = record.name.lower()
    if onchain_name and api_name and name_similarity(onchain_name, api_name) > NAME_SIMILARITY_THRESHOLD:
        return True
    if onchain_name and any(token in onchain_name for token in _protocol_tokens(record.protocol)):
        return True
    symbol = snapshot.symbol.lower().strip()
    return bool(symbol) and symbol in api_name


def onchain_total(snapshot: OnchainVaultSnapshot) -> float:
    """Vault size in whole token units, preferring protocol accounting over raw supply."""
    if snapshot.total_assets is not None:
        return snapshot.total_assets
    return snapshot.total_supply / 10**snapshot.decimals


def tvl_plausible(onchain: float, api_tvl_usd: int) -> bool:
    """
    True if on-chain size and API TVL agree in order of magnitude.

    On-chain totals are token units while API TVL is USD, so two substantial
    values pass even when their ratio is off.
    """
    if onchain > 0 and api_tvl_usd > 0:
        ratio = min(onchain, api_tvl_usd) / max(onchain, api_tvl_usd)
        if ratio > TVL_RATIO_THRESHOLD:
            return True
    return any(onchain > min_onchain and api_tvl_usd > min_api for min_onchain, min_api in TVL_SUBSTANTIAL_PAIRS)


def freshness_of(read_at: float | None, now: float) -> Freshness:
    if read_at is None:
        return Freshness.UNKNOWN
    age = now - read_at
    if age < FRESH_MAX_AGE_S:
        return Freshness.FRESH
    if age < RECENT_MAX_AGE_S:
        return Freshness.RECENT
    return Freshness.STALE


def validate(record: VaultRecord, snapshot: OnchainVaultSnapshot, *, now: float | None = None) -> ValidationResult:
    """Run the five independent checks for one record."""
    now = time.time() if now is None else now
    asset_symbol = (snapshot.asset_symbol or "").strip().lower()
    return ValidationResult(
        has_real_address=record.has_real_address,
        asset_match=bool(asset_symbol) and asset_symbol == record.asset_symbol.strip().lower(),
        name_similarity=names_match(record, snapshot),
        tvl_reasonable=tvl_plausible(onchain_total(snapshot), record.tvl_usd),
        freshness=freshness_of(snapshot.read_at, now),
    )


def select_validation_candidates(
    records: Iterable[VaultRecord],
    *,
    min_tvl: int = VALIDATION_MIN_TVL_USD,
    limit: int = VALIDATION_MAX_CANDIDATES,
) -> list[VaultRecord]:
    """Real-address records above the TVL floor, largest first, capped."""
    candidates = [r for r in records if r.has_real_address and r.tvl_usd > min_tvl]
    candidates.sort(key=lambda r: r.tvl_usd, reverse=True)
    return candidates[:limit]


def mark_api_only(record: VaultRecord) -> VaultRecord:
    return dataclasses.replace(record, validation_score=0, data_confidence=DataConfidence.API_ONLY, validation=None)


def apply_validation(record: VaultRecord, result: ValidationResult) -> VaultRecord:
    return dataclasses.replace(
        record, validation_score=result.score, data_confidence=result.confidence, validation=result
    )


async def validate_records(
    records: Sequence[VaultRecord],
    reader: ChainReader,
    *,
    cache: ResultCache | None = None,
    min_tvl: int = VALIDATION_MIN_TVL_USD,
    max_candidates: int = VALIDATION_MAX_CANDIDATES,
    batch_size: int = VALIDATION_BATCH_SIZE,
    delay_s: float = VALIDATION_BATCH_DELAY_S,
    progress: bool = False,
    clock: Callable[[], float] = time.time,
) -> list[VaultRecord]:
    """
    Enrich records with on-chain validation.

    Candidates are validated in batches; every other record, and every candidate
    whose reads fail, is marked api_only with a zero validation score. Output keeps
    input order.
    """
    cache = cache or ResultCache()
    candidates = select_validation_candidates(records, min_tvl=min_tvl, limit=max_candidates)

    async def validate_one(record: VaultRecord) -> VaultRecord:
        if not reader.supports(record.chain):
            logger.info("ℹ️  No RPC configured for %s; %s stays api_only", record.chain, record.vault_address)
            return mark_api_only(record)
        try:
            snapshot = await cache.get_or_compute(
                "onchain_snapshot",
                (record.identity, record.family.value),
                lambda: fetch_onchain_snapshot(reader, record, clock=clock),
                ttl_seconds=ONCHAIN_CACHE_TTL_S,
                encode=OnchainVaultSnapshot.to_dict,
                decode=OnchainVaultSnapshot.from_dict,
            )
        except (OnChainReadFailed, ValueError) as ex:
            logger.warning("⚠️  On-chain validation failed for %s on %s: %s", record.vault_address, record.chain, ex)
            return mark_api_only(record)
        result = validate(record, snapshot, now=clock())
        logger.debug("✅ %s validated: score=%d (%s)", record.vault_address, result.score, result.confidence.value)
        return apply_validation(record, result)

    validated = await run_in_batches(
        candidates,
        validate_one,
        batch_size=batch_size,
        delay_s=delay_s,
        progress=progress,
        desc="🔍 Validating vaults on-chain",
    )
    by_identity = {
        c.identity: v if v is not None else mark_api_only(c) for c, v in zip(candidates, validated, strict=True)
    }
    return [by_identity.get(r.identity) or mark_api_only(r) for r in records]

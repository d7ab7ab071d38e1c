"""Risk scoring for vault records, independent of yield."""

import logging

from vaults_yield.cache import CacheBackend, MemoryCache, cache_key
from vaults_yield.constants import (
    APY_CEILING_SCORE,
    APY_SCORE_BANDS,
    CHAIN_MATURITY,
    FALLBACK_RISK_SCORE,
    MISSING_CHAIN_SCORE,
    MISSING_PROTOCOL_SCORE,
    NO_APY_SCORE,
    NO_TVL_SCORE,
    PROTOCOL_REPUTATION,
    RISK_CACHE_TTL_S,
    RISK_CATEGORY_THRESHOLDS,
    RISK_WEIGHTS,
    SOURCE_RELIABILITY,
    TVL_FLOOR_SCORE,
    TVL_SCORE_BANDS,
    UNKNOWN_CHAIN_MATURITY,
    UNKNOWN_PROTOCOL_SCORE,
    UNKNOWN_SOURCE_SCORE,
)
from vaults_yield.models import RiskAssessment, RiskCategory, VaultRecord

logger = logging.getLogger(__name__)


def protocol_score(protocol: str | None) -> int:
    if not protocol:
        return MISSING_PROTOCOL_SCORE
    return PROTOCOL_REPUTATION.get(protocol.lower(), UNKNOWN_PROTOCOL_SCORE)


def tvl_score(tvl_usd: int | None) -> int:
    if not tvl_usd or tvl_usd <= 0:
        return NO_TVL_SCORE
    for minimum, score in TVL_SCORE_BANDS:
        if tvl_usd >= minimum:
            return score
    return TVL_FLOOR_SCORE


def apy_score(apy: float | None) -> int:
    """Plausibility of a reported APY; very high yields score low."""
    if apy is None or apy <= 0:
        return NO_APY_SCORE
    # 0.05 * 100 is 5.000000000000001 in binary floating point.
    percent = round(apy * 100, 9)
    for maximum, score in APY_SCORE_BANDS:
        if percent <= maximum:
            return score
    return APY_CEILING_SCORE


def chain_score(chain: str | None) -> int:
    if not chain:
        return MISSING_CHAIN_SCORE
    return round(CHAIN_MATURITY.get(chain.lower(), UNKNOWN_CHAIN_MATURITY) * 100)


def source_score(data_source: str | None) -> int:
    return SOURCE_RELIABILITY.get((data_source or "").lower(), UNKNOWN_SOURCE_SCORE)


def category_for(score: int) -> RiskCategory:
    for minimum, category in RISK_CATEGORY_THRESHOLDS:
        if score >= minimum:
            return RiskCategory(category)
    return RiskCategory.HIGH


def weighted_score(breakdown: dict[str, int]) -> int:
    """Blend subscores with the fixed weights; rounds half up and clamps to [0, 100]."""
    # Integer percent weights keep x.5 results exact.
    weights = {factor: round(w * 100) for factor, w in RISK_WEIGHTS.items()}
    total = sum(breakdown[factor] * w for factor, w in weights.items())
    maximum = sum(100 * w for w in weights.values())
    score = (2 * total * 100 + maximum) // (2 * maximum)
    return max(0, min(100, score))


def assess(record: VaultRecord) -> RiskAssessment:
    breakdown = {
        "protocol": protocol_score(record.protocol),
        "tvl": tvl_score(record.tvl_usd),
        "apy": apy_score(record.apy),
        "chain": chain_score(record.chain),
        "source": source_score(record.data_source),
    }
    score = weighted_score(breakdown)
    return RiskAssessment(score=score, category=category_for(score), breakdown=breakdown)


class RiskScorer:
    """Scores records, memoized by (vault_address, protocol, tvl_usd)."""

    def __init__(self, memo: CacheBackend | None = None, *, ttl_seconds: float = RISK_CACHE_TTL_S) -> None:
        self.memo = memo if memo is not None else MemoryCache()
        self.ttl_seconds = ttl_seconds

    def score(self, record: VaultRecord) -> RiskAssessment:
        key = cache_key("risk", record.vault_address.lower(), record.protocol, record.tvl_usd)
        try:
            cached = self.memo.get(key)
            if cached is not None:
                return RiskAssessment.from_dict(cached)
        except Exception as ex:  # pylint: disable=broad-exception-caught
            logger.debug("ℹ️  Risk memo read failed for %s: %s", record.vault_address, ex)

        try:
            assessment = assess(record)
        except Exception as ex:  # pylint: disable=broad-exception-caught
            logger.warning("⚠️  Risk scoring failed for %s: %s", record.vault_address, ex)
            return RiskAssessment(score=FALLBACK_RISK_SCORE, category=RiskCategory.MEDIUM, fallback=True)

        try:
            self.memo.set(key, assessment.to_dict(), self.ttl_seconds)
        except Exception as ex:  # pylint: disable=broad-exception-caught
            logger.debug("ℹ️  Risk memo write failed for %s: %s", record.vault_address, ex)
        return assessment

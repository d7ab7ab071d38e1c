"""Ranking and selection of vaults, and the end-to-end resolution pipeline."""

import asyncio
import dataclasses
import logging
from collections.abc import Iterable, Mapping, Sequence
from functools import cmp_to_key

from vaults_yield.blockchain import ChainReader
from vaults_yield.cache import ResultCache
from vaults_yield.calculators import YieldCalculator, apply_estimate, calculate_yields
from vaults_yield.collectors import SourceCollector, collect_all_sources
from vaults_yield.constants import (
    CALCULATED_APY_MIN_CONFIDENCE,
    CALCULATION_BATCH_DELAY_S,
    CONFIDENCE_GAP_POINTS,
    DEFAULT_RESULT_LIMIT,
    ENHANCED_CANDIDATES_PER_KIND,
    MAX_RESULT_LIMIT,
    MIN_RESULT_LIMIT,
    ONCHAIN_SOURCE_CONFIDENCE,
    RISK_TOLERANCE_MIN_SCORE,
    STORE_MAX_AGE_S,
    VALIDATION_BATCH_DELAY_S,
    VALIDATION_MIN_TVL_USD,
)
from vaults_yield.errors import InvalidCriteria, NoMatchingVault, OnChainReadFailed
from vaults_yield.models import (
    ComprehensiveEstimate,
    ResolutionCriteria,
    ResolutionResult,
    ResolvedVault,
    VaultComparison,
    VaultRecord,
    YieldEstimate,
)
from vaults_yield.onchain import fetch_onchain_snapshot
from vaults_yield.parsing import canonical_chain, canonical_protocol
from vaults_yield.reconcile import count_by_source, merge
from vaults_yield.risk import RiskScorer
from vaults_yield.storage import RecordStore
from vaults_yield.validation import validate_records

logger = logging.getLogger(__name__)


def record_confidence(record: VaultRecord) -> float:
    """
    Confidence in a record's figures on a 0..100 scale: the strongest of its
    validation score, its calculator confidence and, for records read directly
    on-chain, the on-chain source reliability.
    """
    signals = [float(record.validation_score or 0)]
    if record.confidence_score is not None:
        signals.append(record.confidence_score * 100)
    if record.data_source == "onchain":
        signals.append(float(ONCHAIN_SOURCE_CONFIDENCE))
    return max(signals)


def effective_apy(record: VaultRecord, threshold: float = CALCULATED_APY_MIN_CONFIDENCE) -> float:
    """The calculated APY when its confidence exceeds the threshold, else the reported one."""
    if (
        record.calculated_apy is not None
        and record.confidence_score is not None
        and record.confidence_score > threshold
    ):
        return record.calculated_apy
    return record.apy


def risk_adjusted_apy(apy: float, risk_score: int) -> float:
    return apy * risk_score / 100


def compare_candidates(a: ResolvedVault, b: ResolvedVault) -> int:
    """
    Sort comparator: negative when `a` ranks before `b`.

    A confidence gap above CONFIDENCE_GAP_POINTS decides on its own; otherwise the
    higher risk-adjusted APY wins.
    """
    if abs(a.confidence - b.confidence) > CONFIDENCE_GAP_POINTS:
        return -1 if a.confidence > b.confidence else 1
    if a.risk_adjusted_apy != b.risk_adjusted_apy:
        return -1 if a.risk_adjusted_apy > b.risk_adjusted_apy else 1
    return 0


def _check_tolerance(risk_tolerance: str) -> int:
    try:
        return RISK_TOLERANCE_MIN_SCORE[risk_tolerance]
    except KeyError:
        raise InvalidCriteria(
            "risk_tolerance", risk_tolerance, f"expected one of {', '.join(RISK_TOLERANCE_MIN_SCORE)}"
        ) from None


def rank(
    records: Iterable[VaultRecord],
    risk_tolerance: str,
    limit: int = DEFAULT_RESULT_LIMIT,
    *,
    scorer: RiskScorer | None = None,
    estimates: Mapping[str, YieldEstimate] | None = None,
    apy_threshold: float = CALCULATED_APY_MIN_CONFIDENCE,
    min_risk_score: int | None = None,
    max_risk_score: int | None = None,
) -> list[ResolvedVault]:
    """Score, filter by risk tolerance and sort records; returns at most `limit` results."""
    min_score = _check_tolerance(risk_tolerance)
    if not MIN_RESULT_LIMIT <= limit <= MAX_RESULT_LIMIT:
        raise InvalidCriteria("limit", limit, f"must be within [{MIN_RESULT_LIMIT}, {MAX_RESULT_LIMIT}]")
    scorer = scorer or RiskScorer()
    estimates = estimates or {}

    candidates: list[ResolvedVault] = []
    for record in records:
        estimate = estimates.get(record.identity)
        record = apply_estimate(record, estimate)
        risk = scorer.score(record)
        if risk.score < min_score:
            continue
        if min_risk_score is not None and risk.score < min_risk_score:
            continue
        if max_risk_score is not None and risk.score > max_risk_score:
            continue
        apy = effective_apy(record, apy_threshold)
        candidates.append(
            ResolvedVault(
                record=record,
                risk=risk,
                estimate=estimate,
                effective_apy=apy,
                risk_adjusted_apy=risk_adjusted_apy(apy, risk.score),
                confidence=record_confidence(record),
            )
        )

    candidates.sort(key=cmp_to_key(compare_candidates))
    return [dataclasses.replace(c, rank=i) for i, c in enumerate(candidates[:limit], start=1)]


def select_best(
    records: Iterable[VaultRecord],
    risk_tolerance: str,
    *,
    scorer: RiskScorer | None = None,
    estimates: Mapping[str, YieldEstimate] | None = None,
    apy_threshold: float = CALCULATED_APY_MIN_CONFIDENCE,
) -> ResolvedVault | None:
    """The top-ranked vault, or None when nothing survives the risk filter."""
    ranked = rank(
        records, risk_tolerance, MAX_RESULT_LIMIT, scorer=scorer, estimates=estimates, apy_threshold=apy_threshold
    )
    return ranked[0] if ranked else None


def apply_criteria(records: Iterable[VaultRecord], criteria: ResolutionCriteria) -> list[VaultRecord]:
    """Apply the caller's record-level filters (risk filters are applied when ranking)."""
    chain = canonical_chain(criteria.chain)
    chains = {canonical_chain(c) for c in criteria.chains}
    protocols = {canonical_protocol(p) for p in criteria.protocols}
    excluded = {canonical_protocol(p) for p in criteria.exclude_protocols}
    out = []
    for r in records:
        if chain and r.chain != chain:
            continue
        if chains and r.chain not in chains:
            continue
        if protocols and r.protocol not in protocols:
            continue
        if r.protocol in excluded:
            continue
        if r.tvl_usd < criteria.min_tvl:
            continue
        if criteria.max_tvl is not None and r.tvl_usd > criteria.max_tvl:
            continue
        if criteria.min_apy is not None and r.apy < criteria.min_apy:
            continue
        if criteria.max_apy is not None and r.apy > criteria.max_apy:
            continue
        out.append(r)
    return out


def select_calculation_candidates(
    records: Sequence[VaultRecord], per_kind: int = ENHANCED_CANDIDATES_PER_KIND
) -> list[VaultRecord]:
    """The largest real-address vaults and the largest opaque-id vaults, by TVL."""
    by_tvl = sorted(records, key=lambda r: r.tvl_usd, reverse=True)
    real = [r for r in by_tvl if r.has_real_address][:per_kind]
    opaque = [r for r in by_tvl if not r.has_real_address][:per_kind]
    return real + opaque


class VaultResolver:
    """
    Resolution pipeline: collect, merge, validate, calculate, score, rank.

    Every collaborator is injected; the reader, store and on-chain validation are
    optional and the pipeline degrades to provider data without them.
    """

    def __init__(
        self,
        collectors: Sequence[SourceCollector],
        *,
        reader: ChainReader | None = None,
        cache: ResultCache | None = None,
        scorer: RiskScorer | None = None,
        calculator: YieldCalculator | None = None,
        store: RecordStore | None = None,
        validate_onchain: bool = False,
        validation_min_tvl: int = VALIDATION_MIN_TVL_USD,
        apy_threshold: float = CALCULATED_APY_MIN_CONFIDENCE,
        validation_delay_s: float = VALIDATION_BATCH_DELAY_S,
        calculation_delay_s: float = CALCULATION_BATCH_DELAY_S,
        progress: bool = False,
    ) -> None:
        self.collectors = list(collectors)
        self.reader = reader
        self.cache = cache or ResultCache()
        self.scorer = scorer or RiskScorer()
        self.calculator = calculator or YieldCalculator(reader, cache=self.cache)
        self.store = store
        self.validate_onchain = validate_onchain
        self.validation_min_tvl = validation_min_tvl
        self.apy_threshold = apy_threshold
        self.validation_delay_s = validation_delay_s
        self.calculation_delay_s = calculation_delay_s
        self.progress = progress

    async def collect(self, asset: str, *, chain: str | None = None, refresh: bool = False) -> list[VaultRecord]:
        """Canonical records for an asset: recent stored ones, else a fresh multi-source merge."""
        if self.store is not None and not refresh:
            recent = self.store.query_recent_records(asset, canonical_chain(chain), max_age_seconds=STORE_MAX_AGE_S)
            if recent:
                logger.info("ℹ️  Using %d stored %s records", len(recent), asset)
                return recent
        streams = await collect_all_sources(self.collectors, asset)
        records = merge(streams)
        logger.info("🔀 Merged %d records into %d vaults", sum(len(s) for s in streams), len(records))
        if self.store is not None:
            self.store.persist_records(records)
        return records

    async def enrich(
        self, records: Sequence[VaultRecord], *, calculate: bool = True
    ) -> tuple[list[VaultRecord], dict[str, YieldEstimate]]:
        """On-chain validation (when enabled) and yield calculation for the top candidates."""
        enriched = list(records)
        if self.validate_onchain and self.reader is not None:
            enriched = await validate_records(
                enriched,
                self.reader,
                cache=self.cache,
                min_tvl=self.validation_min_tvl,
                delay_s=self.validation_delay_s,
                progress=self.progress,
            )
        estimates: dict[str, YieldEstimate] = {}
        if calculate:
            estimates = await calculate_yields(
                select_calculation_candidates(enriched),
                self.calculator,
                delay_s=self.calculation_delay_s,
                progress=self.progress,
            )
        return enriched, estimates

    async def resolve(self, criteria: ResolutionCriteria, *, refresh: bool = False) -> ResolutionResult:
        """Best and ranked vaults for the criteria. Raises NoMatchingVault when nothing qualifies."""
        records = await self.collect(criteria.asset, chain=criteria.chain, refresh=refresh)
        records = apply_criteria(records, criteria)
        records, estimates = await self.enrich(records, calculate=criteria.use_calculated_apy)
        ranked = rank(
            records,
            criteria.risk_tolerance,
            criteria.limit,
            scorer=self.scorer,
            estimates=estimates,
            apy_threshold=self.apy_threshold,
            min_risk_score=criteria.min_risk_score,
            max_risk_score=criteria.max_risk_score,
        )
        if not ranked:
            raise NoMatchingVault(criteria.asset, criteria.risk_tolerance, criteria.chain)
        return ResolutionResult(
            criteria=criteria,
            best=ranked[0],
            ranked=ranked,
            total_candidates=len(records),
            sources=count_by_source(records),
        )

    async def _record_from_chain(self, chain: str, address: str, protocol: str | None) -> VaultRecord | None:
        if self.reader is None or not self.reader.supports(chain):
            return None
        probe = VaultRecord(
            vault_address=address,
            chain=chain,
            protocol=canonical_protocol(protocol) or "unknown",
            name="",
            asset_symbol="",
            apy=0.0,
            tvl_usd=0,
            data_source="onchain",
        )
        try:
            snapshot = await fetch_onchain_snapshot(self.reader, probe)
        except (OnChainReadFailed, ValueError) as ex:
            logger.warning("⚠️  Could not read %s on %s: %s", address, chain, ex)
            return None
        return dataclasses.replace(probe, name=snapshot.name, asset_symbol=snapshot.asset_symbol or snapshot.symbol)

    async def find_record(
        self, chain: str, address: str, *, protocol: str | None = None, refresh: bool = False
    ) -> VaultRecord | None:
        """
        A vault's canonical record: the stored one when fresh, else a direct on-chain read.

        A refresh starts from the stored record whatever its age, so provider fields
        survive; the bare on-chain record is only used for vaults nothing has stored.
        """
        chain = canonical_chain(chain) or chain
        if self.store is not None:
            max_age = float("inf") if refresh else STORE_MAX_AGE_S
            stored = self.store.get_record(chain, address, max_age_seconds=max_age)
            if stored is not None:
                return stored
        return await self._record_from_chain(chain, address, protocol)

    async def get_vault(
        self, chain: str, address: str, *, protocol: str | None = None, refresh: bool = False
    ) -> ResolvedVault | None:
        """Get or refresh a single vault's canonical record, scored and with a yield estimate."""
        record = await self.find_record(chain, address, protocol=protocol, refresh=refresh)
        if record is None:
            return None
        if refresh and self.reader is not None and record.data_source != "onchain":
            (record,) = await validate_records(
                [record], self.reader, cache=self.cache, min_tvl=-1, delay_s=0, progress=False
            )
        estimate = await self.calculator.estimate(record)
        if estimate is not None and record.data_source == "onchain" and not estimate.is_estimation:
            # Nothing reported by a provider; the calculated figure is the only APY.
            record = dataclasses.replace(record, apy=estimate.calculated_apy)
        record = apply_estimate(record, estimate)
        if refresh and self.store is not None:
            self.store.persist_records([record])
        ranked = rank(
            [record],
            "high",
            1,
            scorer=self.scorer,
            estimates={record.identity: estimate} if estimate else None,
            apy_threshold=self.apy_threshold,
        )
        return ranked[0] if ranked else None

    async def estimate_vault(
        self, chain: str, address: str, *, protocol: str | None = None, comprehensive: bool = False
    ) -> ComprehensiveEstimate | YieldEstimate | None:
        """Yield estimate(s) for one vault."""
        chain = canonical_chain(chain) or chain
        record = None
        if self.store is not None:
            record = self.store.get_record(chain, address)
        if record is None:
            record = VaultRecord(
                vault_address=address,
                chain=chain,
                protocol=canonical_protocol(protocol) or "unknown",
                name="",
                asset_symbol="",
                apy=0.0,
                tvl_usd=0,
                data_source="onchain",
            )
        if comprehensive:
            return await self.calculator.comprehensive(record)
        return await self.calculator.estimate(record)

    async def lookup_vaults(self, vaults: Sequence[tuple[str, str]]) -> tuple[list[ResolvedVault], list[str]]:
        """Look up (chain, address) pairs concurrently; returns (found, not-found identities)."""
        results = await asyncio.gather(*(self.get_vault(chain, address) for chain, address in vaults))
        found: list[ResolvedVault] = []
        missing: list[str] = []
        for (chain, address), result in zip(vaults, results, strict=True):
            if result is None:
                missing.append(f"{address.lower()}:{(canonical_chain(chain) or chain).lower()}")
            else:
                found.append(result)
        return found, missing

    async def compare_vaults(self, vaults: Sequence[tuple[str, str]]) -> VaultComparison:
        """Rank a chosen set of vaults by APY, risk-adjusted APY and safety."""
        found, missing = await self.lookup_vaults(vaults)
        by_risk_adjusted = sorted(found, key=lambda v: v.risk_adjusted_apy, reverse=True)
        return VaultComparison(
            by_apy=sorted(found, key=lambda v: v.effective_apy, reverse=True),
            by_risk_adjusted_apy=by_risk_adjusted,
            by_safety=sorted(found, key=lambda v: v.risk.score, reverse=True),
            recommendation=by_risk_adjusted[0] if by_risk_adjusted else None,
            not_found=missing,
        )

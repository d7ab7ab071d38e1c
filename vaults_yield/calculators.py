"""Protocol-specific realized yield calculation.

Every vault family has a protocol method (direct rate, utilization rate or share
price history). Methods are independent: one failing yields None for that method
and never aborts its siblings. Vaults known only by a provider-issued id are never
read on-chain; they get a fixed heuristic band per family instead, flagged as an
estimation.
"""

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from vaults_yield.blockchain import ChainReader, run_in_batches
from vaults_yield.cache import ResultCache
from vaults_yield.constants import (
    AAVE_V3_POOLS,
    BLOCKS_PER_DAY,
    CALCULATION_BATCH_DELAY_S,
    CALCULATION_BATCH_SIZE,
    COMPOUND_RESERVE_FACTOR,
    COMPOUND_V2_BLOCKS_PER_YEAR,
    DAYS_PER_YEAR,
    DEFAULT_BLOCKS_PER_DAY,
    ESTIMATE_CACHE_TTL_S,
    GENERIC_DEFAULT_APY,
    GENERIC_DEFAULT_CONFIDENCE,
    GENERIC_HISTORY_CONFIDENCE,
    GENERIC_HISTORY_DAYS,
    HEURISTIC_APY_BANDS,
    HEURISTIC_DEFAULT_BAND,
    HISTORY_WINDOWS_DAYS,
    KINK_BASE_RATE,
    KINK_JUMP_BONUS,
    KINK_JUMP_SLOPE,
    KINK_OPTIMAL_UTILIZATION,
    KINK_SLOPE,
    PROTOCOL_METHOD_PREFERRED_CONFIDENCE,
    RAY,
    SECONDS_PER_YEAR,
    WAD,
)
from vaults_yield.contracts import (
    read_aave_liquidity_rate,
    read_compound_v3_state,
    read_morpho_market,
    read_share_price,
)
from vaults_yield.errors import CalculationUnsupported, OnChainReadFailed
from vaults_yield.formatters import as_int
from vaults_yield.models import (
    CalculationMethod,
    ComprehensiveEstimate,
    ProtocolFamily,
    VaultRecord,
    YieldEstimate,
)

logger = logging.getLogger(__name__)

# Failures that make one method return None.
_METHOD_FAILURES = (OnChainReadFailed, CalculationUnsupported, ValueError, ArithmeticError)


def compound_per_second(rate_per_second: float, periods: int = SECONDS_PER_YEAR) -> float:
    """APY of a per-period rate compounded over a year."""
    return (1 + rate_per_second) ** periods - 1


def kinked_borrow_rate(utilization: float) -> float:
    """Borrow rate of a jump-rate model: linear up to the kink, steep after it."""
    if utilization <= KINK_OPTIMAL_UTILIZATION:
        return KINK_BASE_RATE + utilization * KINK_SLOPE
    excess = (utilization - KINK_OPTIMAL_UTILIZATION) / (1 - KINK_OPTIMAL_UTILIZATION)
    return KINK_BASE_RATE + KINK_JUMP_BONUS + excess * KINK_JUMP_SLOPE


def annualize_share_price(price_then: float, price_now: float, days: int) -> float:
    if price_then <= 0:
        raise ValueError(f"non-positive historical share price {price_then}")
    return (price_now - price_then) / price_then * (DAYS_PER_YEAR / days)


def pick_recommended(estimates: Sequence[YieldEstimate]) -> YieldEstimate | None:
    """The single highest-confidence estimate; the first one wins ties. Never averages."""
    best = None
    for estimate in estimates:
        if best is None or estimate.confidence_score > best.confidence_score:
            best = estimate
    return best


def apply_estimate(record: VaultRecord, estimate: YieldEstimate | None) -> VaultRecord:
    """Layer a measured estimate onto a record. Heuristic estimations are not layered."""
    if estimate is None or estimate.is_estimation:
        return record
    return dataclasses.replace(
        record,
        calculated_apy=estimate.calculated_apy,
        calculation_method=estimate.method,
        confidence_score=estimate.confidence_score,
    )


class YieldCalculator:
    """Computes realized APY estimates from on-chain reads."""

    def __init__(
        self,
        reader: ChainReader | None,
        *,
        cache: ResultCache | None = None,
        heuristic_bands: dict[str, tuple[float, float, float]] | None = None,
        default_band: tuple[float, float, float] = HEURISTIC_DEFAULT_BAND,
        generic_default_apy: float = GENERIC_DEFAULT_APY,
    ) -> None:
        self.reader = reader
        self.cache = cache or ResultCache()
        self.heuristic_bands = dict(HEURISTIC_APY_BANDS if heuristic_bands is None else heuristic_bands)
        self.default_band = default_band
        self.generic_default_apy = generic_default_apy

    def _can_read(self, record: VaultRecord) -> bool:
        return record.has_real_address and self.reader is not None and self.reader.supports(record.chain)

    async def _try(
        self, label: str, record: VaultRecord, method: Callable[..., Awaitable[YieldEstimate]], *args: Any
    ) -> YieldEstimate | None:
        async def compute() -> YieldEstimate | None:
            try:
                return await method(record, *args)
            except _METHOD_FAILURES as ex:
                logger.debug("ℹ️  %s failed for %s on %s: %s", label, record.vault_address, record.chain, ex)
                return None

        return await self.cache.get_or_compute(
            "yield_estimate",
            (record.identity, record.protocol, label),
            compute,
            ttl_seconds=ESTIMATE_CACHE_TTL_S,
            encode=YieldEstimate.to_dict,
            decode=YieldEstimate.from_dict,
        )

    # Heuristic

    def heuristic_estimate(self, record: VaultRecord) -> YieldEstimate:
        """Indicative APY band for a vault that cannot be read on-chain. No RPC."""
        low, high, confidence = self.heuristic_bands.get(record.family.value, self.default_band)
        return YieldEstimate(
            calculated_apy=(low + high) / 2,
            method=CalculationMethod.HEURISTIC,
            confidence_score=confidence,
            details={"family": record.family.value, "low": low, "high": high},
            is_estimation=True,
        )

    # Direct rate

    async def direct_rate_estimate(self, record: VaultRecord) -> YieldEstimate:
        """
        Aave V3: currentLiquidityRate is an annualized ray rate. It is converted
        to a per-second rate and compounded over a year.
        """
        underlying, liquidity_rate = await read_aave_liquidity_rate(self.reader, record.chain, record.vault_address)
        if liquidity_rate < 0:
            raise ValueError(f"negative liquidity rate {liquidity_rate}")
        apr = liquidity_rate / RAY
        return YieldEstimate(
            calculated_apy=compound_per_second(apr / SECONDS_PER_YEAR),
            method=CalculationMethod.DIRECT_RATE,
            confidence_score=0.95,
            details={
                "liquidity_rate_ray": str(liquidity_rate),
                "apr": apr,
                "underlying": underlying,
                "pool": AAVE_V3_POOLS[record.chain],
            },
        )

    # Utilization rate

    async def compound_estimate(self, record: VaultRecord) -> YieldEstimate:
        chain, comet = record.chain, record.vault_address
        try:
            state = await read_compound_v3_state(self.reader, chain, comet)
        except OnChainReadFailed:
            return await self._compound_v2_estimate(record)

        total_supply, total_borrow = state["total_supply"], state["total_borrow"]
        if total_supply <= 0:
            raise ValueError("market has no supply")
        utilization = total_borrow / total_supply
        utilization_wad = total_borrow * WAD // total_supply
        details: dict[str, Any] = {"utilization": utilization, "protocol_version": 3}

        try:
            rate = as_int(await self.reader.call(chain, comet, "getSupplyRate", utilization_wad))
            details.update(rate_source="getSupplyRate", rate_per_second=rate / WAD)
            return YieldEstimate(
                calculated_apy=compound_per_second(rate / WAD),
                method=CalculationMethod.UTILIZATION_RATE,
                confidence_score=0.9,
                details=details,
            )
        except OnChainReadFailed as ex:
            logger.debug("ℹ️  getSupplyRate unavailable on %s: %s", comet, ex)

        try:
            borrow_rate = as_int(await self.reader.call(chain, comet, "getBorrowRate", utilization_wad))
            borrow_apr = borrow_rate / WAD * SECONDS_PER_YEAR
            details["rate_source"] = "getBorrowRate"
        except OnChainReadFailed:
            borrow_apr = kinked_borrow_rate(utilization)
            details["rate_source"] = "kinked_model"
        supply_apr = borrow_apr * utilization * (1 - COMPOUND_RESERVE_FACTOR)
        details.update(borrow_rate=borrow_apr, reserve_factor=COMPOUND_RESERVE_FACTOR)
        return YieldEstimate(
            calculated_apy=supply_apr,
            method=CalculationMethod.UTILIZATION_RATE,
            confidence_score=0.85,
            details=details,
        )

    async def _compound_v2_estimate(self, record: VaultRecord) -> YieldEstimate:
        rate = as_int(await self.reader.call(record.chain, record.vault_address, "supplyRatePerBlock"))
        return YieldEstimate(
            calculated_apy=compound_per_second(rate / WAD, COMPOUND_V2_BLOCKS_PER_YEAR),
            method=CalculationMethod.UTILIZATION_RATE,
            confidence_score=0.9,
            details={"rate_source": "supplyRatePerBlock", "rate_per_block": rate / WAD, "protocol_version": 2},
        )

    async def morpho_estimate(self, record: VaultRecord) -> YieldEstimate:
        if not record.market_id:
            raise CalculationUnsupported(f"{record.vault_address}: Morpho Blue needs a market id")
        market = await read_morpho_market(self.reader, record.chain, record.market_id)
        supplied = market["total_supply_assets"]
        if supplied <= 0:
            raise ValueError("market has no supply")
        utilization = market["total_borrow_assets"] / supplied
        borrow_rate = kinked_borrow_rate(utilization)
        supply_rate = borrow_rate * utilization * (1 - market["fee"])
        return YieldEstimate(
            calculated_apy=supply_rate,
            method=CalculationMethod.UTILIZATION_RATE,
            confidence_score=0.85,
            details={
                "utilization": utilization,
                "borrow_rate": borrow_rate,
                "fee_rate": market["fee"],
                "market_id": record.market_id,
            },
        )

    # Share price history

    async def _share_price(self, record: VaultRecord, block: int) -> float:
        chain, address = record.chain, record.vault_address
        if record.family is ProtocolFamily.YEARN:
            try:
                return await read_share_price(
                    self.reader, chain, address, block_identifier=block, prefer_price_per_share=True
                )
            except OnChainReadFailed:
                pass
        return await read_share_price(self.reader, chain, address, block_identifier=block)

    async def historical_estimate(self, record: VaultRecord, days: int) -> YieldEstimate:
        """Annualized share price growth between now and `days` ago."""
        blocks_per_day = BLOCKS_PER_DAY.get(record.chain, DEFAULT_BLOCKS_PER_DAY)
        current_block = await self.reader.block_number(record.chain)
        past_block = max(0, current_block - blocks_per_day * days)
        price_now, price_then = await asyncio.gather(
            self._share_price(record, current_block),
            self._share_price(record, past_block),
        )
        return YieldEstimate(
            calculated_apy=annualize_share_price(price_then, price_now, days),
            method=CalculationMethod.HISTORICAL_SHARE_PRICE,
            confidence_score=0.8,
            details={
                "days": days,
                "from_block": past_block,
                "to_block": current_block,
                "price_then": price_then,
                "price_now": price_now,
            },
        )

    async def generic_estimate(self, record: VaultRecord) -> YieldEstimate:
        """
        Last-resort ERC-4626 estimate: a one-day share price delta, or a labeled
        placeholder when the vault answers totalAssets but has no usable history.
        """
        try:
            estimate = await self.historical_estimate(record, GENERIC_HISTORY_DAYS)
            return dataclasses.replace(
                estimate, method=CalculationMethod.GENERIC_ERC4626, confidence_score=GENERIC_HISTORY_CONFIDENCE
            )
        except _METHOD_FAILURES as ex:
            logger.debug("ℹ️  1-day history unavailable for %s: %s", record.vault_address, ex)
        await self.reader.call(record.chain, record.vault_address, "totalAssets")
        return YieldEstimate(
            calculated_apy=self.generic_default_apy,
            method=CalculationMethod.GENERIC_ERC4626,
            confidence_score=GENERIC_DEFAULT_CONFIDENCE,
            details={"reason": "no share price history", "placeholder": True},
            is_estimation=True,
        )

    async def protocol_estimate(self, record: VaultRecord) -> YieldEstimate:
        """The family-specific method for a record."""
        family = record.family
        if family is ProtocolFamily.AAVE:
            if record.chain not in AAVE_V3_POOLS:
                raise CalculationUnsupported(f"no Aave V3 pool on {record.chain}")
            return await self.direct_rate_estimate(record)
        if family is ProtocolFamily.COMPOUND:
            return await self.compound_estimate(record)
        if family is ProtocolFamily.MORPHO:
            return await self.morpho_estimate(record)
        if family in (ProtocolFamily.YEARN, ProtocolFamily.ERC4626):
            return await self.historical_estimate(record, HISTORY_WINDOWS_DAYS[0])
        raise CalculationUnsupported(f"no protocol method for {record.protocol!r}")

    # Modes

    async def estimate(self, record: VaultRecord) -> YieldEstimate | None:
        """
        Smart mode: the protocol method when it is confident, else 7-day share price
        history, else the protocol method at any confidence, else the generic fallback.
        """
        if not record.has_real_address:
            return self.heuristic_estimate(record)
        if not self._can_read(record):
            return None

        protocol = None
        if record.family.rate_model in (CalculationMethod.DIRECT_RATE, CalculationMethod.UTILIZATION_RATE):
            protocol = await self._try("protocol", record, self.protocol_estimate)
            if protocol is not None and protocol.confidence_score > PROTOCOL_METHOD_PREFERRED_CONFIDENCE:
                return protocol

        days = HISTORY_WINDOWS_DAYS[0]
        history = await self._try(f"history_{days}d", record, self.historical_estimate, days)
        if history is not None:
            return history
        if protocol is not None:
            return protocol
        return await self._try("generic", record, self.generic_estimate)

    async def comprehensive(self, record: VaultRecord) -> ComprehensiveEstimate:
        """Run every applicable method concurrently and recommend the most confident result."""
        if not record.has_real_address:
            heuristic = self.heuristic_estimate(record)
            return ComprehensiveEstimate(estimates=[heuristic], recommended=heuristic)
        if not self._can_read(record):
            return ComprehensiveEstimate(estimates=[], recommended=None)

        runs = []
        if record.family.rate_model in (CalculationMethod.DIRECT_RATE, CalculationMethod.UTILIZATION_RATE):
            runs.append(self._try("protocol", record, self.protocol_estimate))
        for days in HISTORY_WINDOWS_DAYS:
            runs.append(self._try(f"history_{days}d", record, self.historical_estimate, days))
        estimates = [e for e in await asyncio.gather(*runs) if e is not None]
        if not estimates:
            generic = await self._try("generic", record, self.generic_estimate)
            if generic is not None:
                estimates.append(generic)
        return ComprehensiveEstimate(estimates=estimates, recommended=pick_recommended(estimates))


async def calculate_yields(
    records: Sequence[VaultRecord],
    calculator: YieldCalculator,
    *,
    batch_size: int = CALCULATION_BATCH_SIZE,
    delay_s: float = CALCULATION_BATCH_DELAY_S,
    progress: bool = False,
) -> dict[str, YieldEstimate]:
    """Smart estimates for records, keyed by identity. Records without one are omitted."""
    estimates = await run_in_batches(
        records,
        calculator.estimate,
        batch_size=batch_size,
        delay_s=delay_s,
        progress=progress,
        desc="🧮 Calculating yields",
    )
    return {r.identity: e for r, e in zip(records, estimates, strict=True) if e is not None}

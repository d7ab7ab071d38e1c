"""Provider payload parsing and normalization into VaultRecord values."""

import logging
from collections.abc import Iterator
from typing import Any

from vaults_yield.constants import (
    CHAIN_ALIASES,
    DEFILLAMA_MAX_APY_PERCENT,
    DEFILLAMA_TARGET_CHAINS,
    LP_PROJECTS,
    LP_SYMBOL_HINTS,
    PROTOCOL_ALIASES,
    PROVIDER_MIN_TVL_USD,
)
from vaults_yield.formatters import as_float, as_int
from vaults_yield.models import VaultRecord

logger = logging.getLogger(__name__)


def canonical_chain(value: Any) -> str | None:
    """Map a provider network name, chain id or CAIP-2 id to a canonical chain name."""
    if value is None:
        return None
    key = str(value).strip().lower()
    if not key:
        return None
    return CHAIN_ALIASES.get(key, key)


def canonical_protocol(value: Any) -> str | None:
    """Map a provider protocol name variant to a canonical lowercase slug."""
    if value is None:
        return None
    slug = "-".join(str(value).strip().lower().replace("_", " ").split())
    if not slug:
        return None
    return PROTOCOL_ALIASES.get(slug, slug)


def matches_asset(asset: str, symbol: str | None, underlying_tokens: list[str] | None = None) -> bool:
    """True if a pool symbol or its underlying token list refers to the asset."""
    needle = asset.strip().lower()
    if symbol and needle in symbol.lower():
        return True
    return any(str(t).lower() == needle for t in underlying_tokens or ())


def is_lp_pool(project: str, symbol: str, underlying_tokens: list[str] | None) -> bool:
    """True for DEX liquidity positions, which are not lending vaults."""
    project_l = project.lower()
    if any(p in project_l for p in LP_PROJECTS):
        return True
    symbol_l = symbol.lower()
    if "-" in symbol_l and any(hint in symbol_l for hint in LP_SYMBOL_HINTS):
        return True
    return len(underlying_tokens or ()) > 1


def parse_defillama_pool(entry: dict[str, Any]) -> VaultRecord | None:
    """Convert one DefiLlama /pools entry; returns None for entries that cannot be used."""
    pool_id = entry.get("pool")
    if not isinstance(pool_id, str) or not pool_id:
        return None
    chain = canonical_chain(entry.get("chain"))
    protocol = canonical_protocol(entry.get("project"))
    if not chain or not protocol:
        return None
    apy_pct = as_float(entry.get("apy"))
    if apy_pct is None:
        return None
    symbol = str(entry.get("symbol") or "")
    underlying = entry.get("underlyingTokens") or []
    base = as_float(entry.get("apyBase"))
    reward = as_float(entry.get("apyReward"))
    meta = entry.get("poolMeta")
    name = f"{entry.get('project')} {symbol}" + (f" ({meta})" if meta else "")
    return VaultRecord(
        vault_address=pool_id,
        chain=chain,
        protocol=protocol,
        name=name.strip(),
        asset_symbol=symbol,
        apy=apy_pct / 100,
        tvl_usd=max(0, as_int(entry.get("tvlUsd"))),
        data_source="defillama",
        apy_base=base / 100 if base is not None else None,
        apy_reward=reward / 100 if reward is not None else None,
        asset_address=str(underlying[0]) if len(underlying) == 1 else None,
    )


def iter_defillama_records(payload: dict[str, Any], asset: str) -> Iterator[VaultRecord]:
    """Yield lending-vault records for an asset from a DefiLlama /pools payload."""
    for entry in payload.get("data") or []:
        if not isinstance(entry, dict):
            continue
        chain = canonical_chain(entry.get("chain"))
        if chain not in DEFILLAMA_TARGET_CHAINS:
            continue
        symbol = str(entry.get("symbol") or "")
        underlying = entry.get("underlyingTokens") or []
        if not matches_asset(asset, symbol, underlying):
            continue
        try:
            if as_int(entry.get("tvlUsd")) <= PROVIDER_MIN_TVL_USD:
                continue
            apy_pct = as_float(entry.get("apy"), default=0.0)
            if not 0 < apy_pct < DEFILLAMA_MAX_APY_PERCENT:
                continue
            if is_lp_pool(str(entry.get("project") or ""), symbol, underlying):
                continue
            record = parse_defillama_pool(entry)
        except (TypeError, ValueError, OverflowError) as ex:
            logger.warning("⚠️  Skipping malformed DefiLlama pool %s: %s", entry.get("pool"), ex)
            continue
        if record is not None:
            yield record


def _vaults_fyi_apy(apy: Any) -> tuple[float | None, float | None, float | None]:
    """(total, base, reward) from the longest available window."""
    if not isinstance(apy, dict):
        return as_float(apy), None, None
    for window in ("30day", "7day", "1day"):
        bucket = apy.get(window)
        if isinstance(bucket, dict) and as_float(bucket.get("total")):
            return as_float(bucket.get("total")), as_float(bucket.get("base")), as_float(bucket.get("reward"))
    return None, None, None


def parse_vaults_fyi_vault(entry: dict[str, Any]) -> VaultRecord | None:
    """Convert one vaults.fyi detailed-vault entry; returns None for unusable entries."""
    address = entry.get("address")
    if not isinstance(address, str) or not address:
        return None
    network = entry.get("network")
    if isinstance(network, dict):
        raw_chain = network.get("name") or network.get("networkCaip") or network.get("chainId")
    else:
        raw_chain = network
    chain = canonical_chain(raw_chain)
    protocol_info = entry.get("protocol")
    raw_protocol = protocol_info.get("name") if isinstance(protocol_info, dict) else protocol_info
    protocol = canonical_protocol(raw_protocol) or "unknown"
    if not chain:
        return None
    asset_info = entry.get("asset") if isinstance(entry.get("asset"), dict) else {}
    tvl = entry.get("tvl")
    tvl_usd = as_int(tvl.get("usd")) if isinstance(tvl, dict) else as_int(tvl)
    total, base, reward = _vaults_fyi_apy(entry.get("apy"))
    score = entry.get("score")
    risk_score = as_int(score.get("vaultScore"), default=-1) if isinstance(score, dict) else -1
    return VaultRecord(
        vault_address=address,
        chain=chain,
        protocol=protocol,
        name=str(entry.get("name") or ""),
        asset_symbol=str(asset_info.get("symbol") or "UNKNOWN"),
        apy=total or 0.0,
        tvl_usd=max(0, tvl_usd),
        data_source="vaultsfyi",
        risk_score=risk_score if 0 <= risk_score <= 100 else None,
        apy_base=base,
        apy_reward=reward,
        asset_address=asset_info.get("address"),
    )


def iter_vaults_fyi_records(payload: dict[str, Any], asset: str) -> Iterator[VaultRecord]:
    """Yield records for an asset from one vaults.fyi page."""
    for entry in payload.get("data") or []:
        if not isinstance(entry, dict):
            continue
        try:
            record = parse_vaults_fyi_vault(entry)
        except (TypeError, ValueError, OverflowError) as ex:
            logger.warning("⚠️  Skipping malformed vaults.fyi vault %s: %s", entry.get("address"), ex)
            continue
        if record is None:
            continue
        if not matches_asset(asset, record.asset_symbol, [record.asset_address] if record.asset_address else None):
            continue
        if record.tvl_usd < PROVIDER_MIN_TVL_USD:
            continue
        yield record

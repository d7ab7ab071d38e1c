"""Contract interaction functions.

Thin readers over a ChainReader. They raise OnChainReadFailed (from the reader)
or ValueError for nonsensical state; callers decide how to degrade.
"""

import asyncio
from typing import Any

from vaults_yield.blockchain import ChainReader
from vaults_yield.constants import AAVE_V3_POOLS, MORPHO_BLUE, WAD
from vaults_yield.formatters import as_int


async def read_token_metadata(reader: ChainReader, chain: str, address: str) -> dict[str, Any]:
    """Read ERC-20 name, symbol, decimals and totalSupply concurrently."""
    name, symbol, decimals, total_supply = await asyncio.gather(
        reader.call(chain, address, "name"),
        reader.call(chain, address, "symbol"),
        reader.call(chain, address, "decimals"),
        reader.call(chain, address, "totalSupply"),
    )
    return {
        "name": str(name),
        "symbol": str(symbol),
        "decimals": as_int(decimals),
        "total_supply": as_int(total_supply),
    }


async def read_token_symbol(reader: ChainReader, chain: str, address: str) -> tuple[str, int]:
    """Read (symbol, decimals) of an underlying token."""
    symbol, decimals = await asyncio.gather(
        reader.call(chain, address, "symbol"),
        reader.call(chain, address, "decimals"),
    )
    return str(symbol), as_int(decimals)


async def read_share_price(
    reader: ChainReader,
    chain: str,
    address: str,
    *,
    block_identifier: int | str = "latest",
    decimals: int | None = None,
    prefer_price_per_share: bool = False,
) -> float:
    """
    Read a vault's share price at a block.

    Uses pricePerShare / 10**decimals for Yearn-style vaults, otherwise
    totalAssets / totalSupply. Only ratios between two reads are meaningful when
    share and asset decimals differ.
    """
    if prefer_price_per_share:
        if decimals is None:
            decimals = as_int(await reader.call(chain, address, "decimals"))
        pps = as_int(await reader.call(chain, address, "pricePerShare", block_identifier=block_identifier))
        if pps <= 0:
            raise ValueError(f"non-positive pricePerShare at {block_identifier}")
        return pps / 10**decimals

    total_assets, total_supply = await asyncio.gather(
        reader.call(chain, address, "totalAssets", block_identifier=block_identifier),
        reader.call(chain, address, "totalSupply", block_identifier=block_identifier),
    )
    total_assets, total_supply = as_int(total_assets), as_int(total_supply)
    if total_supply <= 0 or total_assets <= 0:
        raise ValueError(f"empty vault at {block_identifier} (assets={total_assets}, supply={total_supply})")
    return total_assets / total_supply


async def read_aave_liquidity_rate(reader: ChainReader, chain: str, atoken: str) -> tuple[str, int]:
    """Return (underlying asset, currentLiquidityRate in ray) for an Aave V3 aToken."""
    pool = AAVE_V3_POOLS.get(chain)
    if pool is None:
        raise ValueError(f"no Aave V3 pool known on {chain}")
    underlying = str(await reader.call(chain, atoken, "UNDERLYING_ASSET_ADDRESS"))
    reserve = await reader.call(chain, pool, "getReserveData", underlying)
    # ReserveData: (configuration, liquidityIndex, currentLiquidityRate, ...)
    return underlying, as_int(reserve[2])


async def read_compound_v3_state(reader: ChainReader, chain: str, comet: str) -> dict[str, int]:
    """Read total supply and borrow of a Compound III market in base token units."""
    total_supply, total_borrow = await asyncio.gather(
        reader.call(chain, comet, "totalSupply"),
        reader.call(chain, comet, "totalBorrow"),
    )
    return {"total_supply": as_int(total_supply), "total_borrow": as_int(total_borrow)}


async def read_morpho_market(reader: ChainReader, chain: str, market_id: str) -> dict[str, Any]:
    """Read a Morpho Blue market's totals and fee (fee as a fraction)."""
    morpho = MORPHO_BLUE.get(chain)
    if morpho is None:
        raise ValueError(f"no Morpho Blue deployment known on {chain}")
    market = await reader.call(chain, morpho, "market", market_id)
    total_supply_assets, _, total_borrow_assets, _, _, fee = market
    return {
        "total_supply_assets": as_int(total_supply_assets),
        "total_borrow_assets": as_int(total_borrow_assets),
        "fee": as_int(fee) / WAD,
    }

"""On-chain snapshot collection for provider-reported vaults."""

import logging
import time
from collections.abc import Callable

from vaults_yield.blockchain import ChainReader
from vaults_yield.contracts import read_token_metadata, read_token_symbol
from vaults_yield.errors import OnChainReadFailed
from vaults_yield.formatters import as_int
from vaults_yield.models import OnchainVaultSnapshot, ProtocolFamily, VaultRecord

logger = logging.getLogger(__name__)


async def _read_erc4626(reader: ChainReader, chain: str, address: str, decimals: int, total_supply: int) -> dict:
    asset = str(await reader.call(chain, address, "asset"))
    total_assets = as_int(await reader.call(chain, address, "totalAssets"))
    asset_symbol, asset_decimals = await read_token_symbol(reader, chain, asset)
    assets_units = total_assets / 10**asset_decimals
    share_price = None
    if total_supply > 0:
        share_price = assets_units / (total_supply / 10**decimals)
    return {
        "vault_type": "erc4626",
        "asset_address": asset,
        "asset_symbol": asset_symbol,
        "total_assets": assets_units,
        "share_price": share_price,
    }


async def _read_protocol_state(
    reader: ChainReader, record: VaultRecord, decimals: int, total_supply: int
) -> dict:
    """Protocol-specific accounting for a record's family. Raises on any failed read."""
    chain, address = record.chain, record.vault_address
    family = record.family

    if family is ProtocolFamily.AAVE:
        underlying = str(await reader.call(chain, address, "UNDERLYING_ASSET_ADDRESS"))
        asset_symbol, _ = await read_token_symbol(reader, chain, underlying)
        # aTokens track the underlying 1:1
        return {
            "vault_type": "aave",
            "asset_address": underlying,
            "asset_symbol": asset_symbol,
            "total_assets": total_supply / 10**decimals,
            "share_price": 1.0,
        }

    if family in (ProtocolFamily.ERC4626, ProtocolFamily.MORPHO):
        return await _read_erc4626(reader, chain, address, decimals, total_supply)

    if family is ProtocolFamily.YEARN:
        token = str(await reader.call(chain, address, "token"))
        total_assets = as_int(await reader.call(chain, address, "totalAssets"))
        pps = as_int(await reader.call(chain, address, "pricePerShare"))
        asset_symbol, asset_decimals = await read_token_symbol(reader, chain, token)
        return {
            "vault_type": "yearn",
            "asset_address": token,
            "asset_symbol": asset_symbol,
            "total_assets": total_assets / 10**asset_decimals,
            "share_price": pps / 10**decimals,
        }

    if family is ProtocolFamily.COMPOUND:
        try:
            base = str(await reader.call(chain, address, "baseToken"))
            is_v3 = True
        except OnChainReadFailed:
            base = str(await reader.call(chain, address, "underlying"))
            is_v3 = False
        asset_symbol, asset_decimals = await read_token_symbol(reader, chain, base)
        return {
            "vault_type": "compound",
            "asset_address": base,
            "asset_symbol": asset_symbol,
            # Compound V2 cToken supply is not denominated in the underlying
            "total_assets": total_supply / 10**asset_decimals if is_v3 else None,
            "share_price": None,
        }

    raise ValueError(f"no protocol reader for family {family}")


async def fetch_onchain_snapshot(
    reader: ChainReader,
    record: VaultRecord,
    *,
    clock: Callable[[], float] = time.time,
) -> OnchainVaultSnapshot:
    """
    Read authoritative state for a record's vault contract.

    Basic ERC-20 metadata is always read. Known protocol families additionally get
    their accounting read; a failure there fails the whole snapshot. Vaults of
    unknown family are probed as ERC-4626 and fall back to basic token data.
    """
    chain, address = record.chain, record.vault_address
    if not record.has_real_address:
        raise ValueError(f"{address} is not a contract address")

    meta = await read_token_metadata(reader, chain, address)
    block_number = await reader.block_number(chain)
    decimals, total_supply = meta["decimals"], meta["total_supply"]

    if record.family is ProtocolFamily.UNKNOWN:
        try:
            state = await _read_erc4626(reader, chain, address, decimals, total_supply)
        except OnChainReadFailed as ex:
            logger.debug("ℹ️  %s is not an ERC-4626 vault: %s", address, ex)
            state = {"vault_type": "basic_token"}
    else:
        state = await _read_protocol_state(reader, record, decimals, total_supply)

    return OnchainVaultSnapshot(
        vault=address,
        chain=chain,
        name=meta["name"],
        symbol=meta["symbol"],
        decimals=decimals,
        total_supply=total_supply,
        block_number=block_number,
        read_at=clock(),
        **state,
    )

from collections.abc import Callable
from typing import Any

import pytest

from vaults_yield.errors import OnChainReadFailed
from vaults_yield.models import VaultRecord


class FakeChainReader:
    """In-memory ChainReader.

    `responses` maps (lowercase address, function) to a value, an exception, or a
    callable taking (*args, block_identifier=...) that returns either.
    Unknown functions revert.
    """

    def __init__(
        self,
        responses: dict[tuple[str, str], Any] | None = None,
        *,
        chains: tuple[str, ...] = ("ethereum", "base"),
        block: int = 20_000_000,
    ) -> None:
        self.responses = {(a.lower(), f): v for (a, f), v in (responses or {}).items()}
        self.chains = chains
        self.block = block
        self.calls: list[tuple[str, str, str, tuple, Any]] = []

    def supports(self, chain: str) -> bool:
        return chain in self.chains

    async def call(self, chain: str, address: str, function: str, *args: Any, block_identifier: Any = "latest") -> Any:
        self.calls.append((chain, address.lower(), function, args, block_identifier))
        key = (address.lower(), function)
        if key not in self.responses:
            raise OnChainReadFailed(chain, address, function, "execution reverted")
        value = self.responses[key]
        if callable(value):
            value = value(*args, block_identifier=block_identifier)
        if isinstance(value, Exception):
            raise value
        return value

    async def block_number(self, chain: str) -> int:
        self.calls.append((chain, "-", "block_number", (), None))
        return self.block

    async def block_timestamp(self, chain: str, block_identifier: Any = "latest") -> int:
        self.calls.append((chain, "-", "block_timestamp", (), block_identifier))
        return 1_700_000_000


def make_record(**overrides: Any) -> VaultRecord:
    fields: dict[str, Any] = {
        "vault_address": "0x" + "11" * 20,
        "chain": "ethereum",
        "protocol": "aave-v3",
        "name": "Aave Ethereum USDC",
        "asset_symbol": "USDC",
        "apy": 0.05,
        "tvl_usd": 50_000_000,
        "data_source": "defillama",
    }
    fields.update(overrides)
    return VaultRecord(**fields)


@pytest.fixture
def record_factory() -> Callable[..., VaultRecord]:
    return make_record


@pytest.fixture
def fake_reader_factory() -> Callable[..., FakeChainReader]:
    return FakeChainReader

"""RPC read capability and batched on-chain work."""

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from tqdm import tqdm

from vaults_yield.constants import DEFAULT_RPC_TIMEOUT, VIEW_ABI
from vaults_yield.errors import OnChainReadFailed
from vaults_yield.parsing import canonical_chain

if TYPE_CHECKING:
    from web3 import AsyncWeb3  # pragma: no cover

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class ChainReader(Protocol):
    """Reads contract view functions. Every method raises OnChainReadFailed on failure."""

    def supports(self, chain: str) -> bool: ...

    async def call(
        self, chain: str, address: str, function: str, *args: Any, block_identifier: int | str = "latest"
    ) -> Any: ...

    async def block_number(self, chain: str) -> int: ...

    async def block_timestamp(self, chain: str, block_identifier: int | str = "latest") -> int: ...


class Web3ChainReader:
    """ChainReader backed by one web3 AsyncHTTPProvider per configured chain."""

    def __init__(self, rpc_urls: dict[str, str], *, timeout_s: float = DEFAULT_RPC_TIMEOUT) -> None:
        self._rpc_urls = {canonical_chain(chain): url for chain, url in rpc_urls.items() if url}
        self._timeout_s = timeout_s
        self._clients: dict[str, "AsyncWeb3"] = {}
        self._contracts: dict[tuple[str, str], Any] = {}

    def supports(self, chain: str) -> bool:
        return canonical_chain(chain) in self._rpc_urls

    def _client(self, chain: str) -> "AsyncWeb3":
        chain = canonical_chain(chain)
        w3 = self._clients.get(chain)
        if w3 is not None:
            return w3
        url = self._rpc_urls.get(chain)
        if not url:
            raise OnChainReadFailed(chain, "-", "connect", "no RPC URL configured")
        from web3 import AsyncWeb3  # pylint: disable=import-outside-toplevel

        w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(url, request_kwargs={"timeout": self._timeout_s}))
        self._clients[chain] = w3
        return w3

    def _contract(self, chain: str, address: str) -> Any:
        key = (canonical_chain(chain), address.lower())
        contract = self._contracts.get(key)
        if contract is None:
            w3 = self._client(chain)
            contract = w3.eth.contract(address=w3.to_checksum_address(address), abi=VIEW_ABI)
            self._contracts[key] = contract
        return contract

    async def call(
        self, chain: str, address: str, function: str, *args: Any, block_identifier: int | str = "latest"
    ) -> Any:
        try:
            contract = self._contract(chain, address)
            fn = getattr(contract.functions, function)(*args)
            return await asyncio.wait_for(fn.call(block_identifier=block_identifier), timeout=self._timeout_s)
        except OnChainReadFailed:
            raise
        except asyncio.TimeoutError as ex:
            raise OnChainReadFailed(chain, address, function, f"timed out after {self._timeout_s}s") from ex
        except Exception as ex:  # pylint: disable=broad-exception-caught
            raise OnChainReadFailed(chain, address, function, str(ex) or type(ex).__name__) from ex

    async def block_number(self, chain: str) -> int:
        try:
            w3 = self._client(chain)
            return int(await asyncio.wait_for(w3.eth.block_number, timeout=self._timeout_s))
        except OnChainReadFailed:
            raise
        except Exception as ex:  # pylint: disable=broad-exception-caught
            raise OnChainReadFailed(chain, "-", "eth_blockNumber", str(ex) or type(ex).__name__) from ex

    async def block_timestamp(self, chain: str, block_identifier: int | str = "latest") -> int:
        try:
            w3 = self._client(chain)
            block = await asyncio.wait_for(w3.eth.get_block(block_identifier), timeout=self._timeout_s)
            return int(block["timestamp"])
        except OnChainReadFailed:
            raise
        except Exception as ex:  # pylint: disable=broad-exception-caught
            raise OnChainReadFailed(chain, "-", "eth_getBlockByNumber", str(ex) or type(ex).__name__) from ex


def iter_batches(items: Sequence[T], batch_size: int) -> Iterable[Sequence[T]]:
    """Iterate over items in fixed-size batches."""
    if batch_size <= 0:
        raise ValueError("batch_size must be > 0")
    for start in range(0, len(items), batch_size):
        yield items[start : start + batch_size]


async def run_in_batches(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    batch_size: int,
    delay_s: float,
    progress: bool = False,
    desc: str = "🔗 On-chain reads",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> list[R | None]:
    """Run worker over items batch by batch.

    Items within a batch run concurrently and are joined before the next batch
    starts; batches are separated by `delay_s`. A worker exception leaves None in
    that item's slot without affecting its siblings.
    """
    results: list[R | None] = []
    batches = list(iter_batches(items, batch_size))
    with tqdm(total=len(items), desc=desc, unit="vault", file=sys.stderr, disable=not progress) as pbar:
        for i, batch in enumerate(batches):
            if i > 0 and delay_s > 0:
                await sleep(delay_s)
            outcomes = await asyncio.gather(*(worker(item) for item in batch), return_exceptions=True)
            for item, outcome in zip(batch, outcomes, strict=True):
                if isinstance(outcome, BaseException):
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    logger.warning("⚠️  Batched read failed for %s: %s", item, outcome)
                    results.append(None)
                else:
                    results.append(outcome)
            pbar.update(len(batch))
    return results

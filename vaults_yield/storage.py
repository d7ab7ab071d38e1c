"""Record storage collaborator.

The resolver only needs two things from storage: persist a batch of canonical
records, and query recently persisted ones. "Nothing found" is an empty list.
Implementations raise StorageUnavailable when the store cannot be reached.
"""

import time
from collections.abc import Callable, Iterable
from typing import Protocol

from vaults_yield.constants import STORE_MAX_AGE_S
from vaults_yield.models import VaultRecord


class RecordStore(Protocol):
    def persist_records(self, records: Iterable[VaultRecord]) -> int: ...

    def query_recent_records(
        self, asset: str | None = None, chain: str | None = None, *, max_age_seconds: float = STORE_MAX_AGE_S
    ) -> list[VaultRecord]: ...

    def get_record(
        self, chain: str, address: str, *, max_age_seconds: float = STORE_MAX_AGE_S
    ) -> VaultRecord | None: ...


class InMemoryRecordStore:
    """Keeps the latest record per vault identity together with its write time."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._records: dict[str, tuple[float, VaultRecord]] = {}

    def persist_records(self, records: Iterable[VaultRecord]) -> int:
        now = self._clock()
        count = 0
        for record in records:
            self._records[record.identity] = (now, record)
            count += 1
        return count

    def query_recent_records(
        self, asset: str | None = None, chain: str | None = None, *, max_age_seconds: float = STORE_MAX_AGE_S
    ) -> list[VaultRecord]:
        cutoff = self._clock() - max_age_seconds
        out = []
        for stored_at, record in self._records.values():
            if stored_at < cutoff:
                continue
            if asset and record.asset_symbol.lower() != asset.lower():
                continue
            if chain and record.chain.lower() != chain.lower():
                continue
            out.append(record)
        out.sort(key=lambda r: r.tvl_usd, reverse=True)
        return out

    def get_record(
        self, chain: str, address: str, *, max_age_seconds: float = STORE_MAX_AGE_S
    ) -> VaultRecord | None:
        entry = self._records.get(f"{address.lower()}:{chain.lower()}")
        if entry is None:
            return None
        stored_at, record = entry
        if stored_at < self._clock() - max_age_seconds:
            return None
        return record

    def __len__(self) -> int:
        return len(self._records)

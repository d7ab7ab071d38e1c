"""Merging of overlapping provider records into one canonical record per vault."""

from collections.abc import Iterable

from vaults_yield.models import VaultRecord


def precedence(record: VaultRecord) -> tuple[bool, int]:
    """Ordering used when two records describe the same vault.

    A record carrying a risk score beats one without; otherwise the larger TVL wins.
    """
    return (record.risk_score is not None, record.tvl_usd)


def merge(streams: Iterable[Iterable[VaultRecord]]) -> list[VaultRecord]:
    """
    Merge record streams into one record per identity (lowercased address + chain).

    The incoming record replaces the stored one only if it has strictly higher
    precedence, so the winner does not depend on stream order; exact ties keep the
    first-seen record. Output follows first-seen identity order. A failed source
    must arrive here as an empty stream.
    """
    merged: dict[str, VaultRecord] = {}
    for stream in streams:
        for record in stream:
            key = record.identity
            stored = merged.get(key)
            if stored is None or precedence(record) > precedence(stored):
                merged[key] = record
    return list(merged.values())


def count_by_source(records: Iterable[VaultRecord]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for record in records:
        counts[record.data_source] = counts.get(record.data_source, 0) + 1
    return counts

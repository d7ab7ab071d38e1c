"""Exception hierarchy for vault yield resolution.

Component-local failures (a provider fetch, a single RPC read, an unsupported
calculation) are caught at the component boundary and turned into degraded values.
Only ``InvalidCriteria``, ``AllSourcesFailed`` and ``StorageUnavailable`` are meant
to reach callers, plus ``NoMatchingVault`` as a structured not-found outcome.
"""


class VaultsYieldError(Exception):
    """Base class for all package errors; never raised directly."""


class SourceUnavailable(VaultsYieldError):
    """A data provider fetch failed or returned an unusable payload."""

    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"{source} unavailable: {reason}")


class AllSourcesFailed(VaultsYieldError):
    """Every data provider failed in the same collection cycle."""

    def __init__(self, sources: list[str]) -> None:
        self.sources = list(sources)
        super().__init__(f"all sources failed: {', '.join(self.sources) or '<none configured>'}")


class OnChainReadFailed(VaultsYieldError):
    """An RPC read failed, reverted or timed out."""

    def __init__(self, chain: str, address: str, function: str, reason: str) -> None:
        self.chain = chain
        self.address = address
        self.function = function
        self.reason = reason
        super().__init__(f"{function}() on {chain}:{address} failed: {reason}")


class CalculationUnsupported(VaultsYieldError):
    """No applicable yield calculation method exists for a vault."""


class NoMatchingVault(VaultsYieldError):
    """Filtering left no candidate vault."""

    def __init__(self, asset: str, risk_tolerance: str, chain: str | None = None) -> None:
        self.asset = asset
        self.risk_tolerance = risk_tolerance
        self.chain = chain
        where = f" on {chain}" if chain else ""
        super().__init__(f"no {asset} vault{where} matches risk tolerance {risk_tolerance!r}")


class InvalidCriteria(VaultsYieldError):
    """Caller supplied malformed resolution criteria."""

    def __init__(self, field: str, value: object, reason: str) -> None:
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"invalid {field}={value!r}: {reason}")


class StorageUnavailable(VaultsYieldError):
    """The record store cannot be reached."""

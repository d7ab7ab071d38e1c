"""Data models for vault yield resolution."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from vaults_yield.constants import (
    CONFIDENCE_TIERS,
    DEFAULT_RESULT_LIMIT,
    FRESHNESS_BONUS,
    MAX_RESULT_LIMIT,
    MIN_RESULT_LIMIT,
    PROTOCOL_FAMILIES,
    RISK_TOLERANCE_MIN_SCORE,
    VALIDATION_WEIGHTS,
)
from vaults_yield.errors import InvalidCriteria
from vaults_yield.formatters import is_contract_address


class CalculationMethod(str, Enum):
    """How a yield estimate was produced."""

    DIRECT_RATE = "direct_rate"
    UTILIZATION_RATE = "utilization_rate"
    HISTORICAL_SHARE_PRICE = "historical_share_price"
    GENERIC_ERC4626 = "generic_erc4626"
    HEURISTIC = "heuristic_estimate"


class ProtocolFamily(str, Enum):
    """Closed set of protocol families the yield calculator understands."""

    AAVE = "aave"
    COMPOUND = "compound"
    MORPHO = "morpho"
    YEARN = "yearn"
    ERC4626 = "erc4626"
    UNKNOWN = "unknown"

    @classmethod
    def for_protocol(cls, protocol: str | None) -> "ProtocolFamily":
        if not protocol:
            return cls.UNKNOWN
        return cls(PROTOCOL_FAMILIES.get(protocol.strip().lower(), cls.UNKNOWN.value))

    @property
    def rate_model(self) -> CalculationMethod | None:
        """The protocol-specific method for this family, if it has one."""
        if self is ProtocolFamily.AAVE:
            return CalculationMethod.DIRECT_RATE
        if self in (ProtocolFamily.COMPOUND, ProtocolFamily.MORPHO):
            return CalculationMethod.UTILIZATION_RATE
        if self in (ProtocolFamily.YEARN, ProtocolFamily.ERC4626):
            return CalculationMethod.HISTORICAL_SHARE_PRICE
        return None


class RiskCategory(str, Enum):
    LOW = "low"
    MEDIUM_LOW = "medium-low"
    MEDIUM = "medium"
    MEDIUM_HIGH = "medium-high"
    HIGH = "high"


class Freshness(str, Enum):
    FRESH = "fresh"
    RECENT = "recent"
    STALE = "stale"
    UNKNOWN = "unknown"


class DataConfidence(str, Enum):
    """Confidence tier derived from the validation score."""

    HIGH = "high"
    MEDIUM_HIGH = "medium-high"
    MEDIUM = "medium"
    MEDIUM_LOW = "medium-low"
    LOW = "low"
    API_ONLY = "api_only"

    @classmethod
    def for_score(cls, score: int) -> "DataConfidence":
        for minimum, tier in CONFIDENCE_TIERS:
            if score >= minimum:
                return cls(tier)
        return cls.LOW


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of cross-checking one provider record against on-chain state."""

    has_real_address: bool
    asset_match: bool
    name_similarity: bool
    tvl_reasonable: bool
    freshness: Freshness = Freshness.UNKNOWN

    @property
    def score(self) -> int:
        total = sum(weight for check, weight in VALIDATION_WEIGHTS.items() if getattr(self, check))
        total += FRESHNESS_BONUS[self.freshness.value]
        return min(100, total)

    @property
    def confidence(self) -> DataConfidence:
        return DataConfidence.for_score(self.score)

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_real_address": self.has_real_address,
            "asset_match": self.asset_match,
            "name_similarity": self.name_similarity,
            "tvl_reasonable": self.tvl_reasonable,
            "freshness": self.freshness.value,
            "score": self.score,
            "confidence": self.confidence.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ValidationResult":
        return cls(
            has_real_address=bool(data["has_real_address"]),
            asset_match=bool(data["asset_match"]),
            name_similarity=bool(data["name_similarity"]),
            tvl_reasonable=bool(data["tvl_reasonable"]),
            freshness=Freshness(data.get("freshness", Freshness.UNKNOWN.value)),
        )


@dataclass(frozen=True)
class VaultRecord:
    """Canonical description of one vault on one chain.

    Records are immutable values. Enrichment stages (validation, yield calculation)
    produce new records with ``dataclasses.replace``.
    """

    vault_address: str
    chain: str
    protocol: str
    name: str
    asset_symbol: str
    apy: float
    tvl_usd: int
    data_source: str
    risk_score: int | None = None
    validation_score: int | None = None
    calculated_apy: float | None = None
    calculation_method: CalculationMethod | None = None
    confidence_score: float | None = None
    # Resolved once from `protocol` when not given explicitly.
    family: ProtocolFamily | None = None
    data_confidence: DataConfidence | None = None
    validation: ValidationResult | None = None
    apy_base: float | None = None
    apy_reward: float | None = None
    asset_address: str | None = None
    # Morpho Blue market id (bytes32 hex), needed for utilization reads.
    market_id: str | None = None

    def __post_init__(self) -> None:
        if self.tvl_usd < 0:
            raise ValueError(f"tvl_usd must be non-negative, got {self.tvl_usd}")
        if self.family is None:
            object.__setattr__(self, "family", ProtocolFamily.for_protocol(self.protocol))

    @property
    def identity(self) -> str:
        return f"{self.vault_address.lower()}:{self.chain.lower()}"

    @property
    def has_real_address(self) -> bool:
        return is_contract_address(self.vault_address)

    def to_dict(self) -> dict[str, Any]:
        return {
            "vault_address": self.vault_address,
            "chain": self.chain,
            "protocol": self.protocol,
            "name": self.name,
            "asset_symbol": self.asset_symbol,
            "apy": self.apy,
            "tvl_usd": self.tvl_usd,
            "data_source": self.data_source,
            "risk_score": self.risk_score,
            "validation_score": self.validation_score,
            "calculated_apy": self.calculated_apy,
            "calculation_method": self.calculation_method.value if self.calculation_method else None,
            "confidence_score": self.confidence_score,
            "family": self.family.value if self.family else None,
            "data_confidence": self.data_confidence.value if self.data_confidence else None,
            "validation": self.validation.to_dict() if self.validation else None,
            "apy_base": self.apy_base,
            "apy_reward": self.apy_reward,
            "asset_address": self.asset_address,
            "market_id": self.market_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VaultRecord":
        method = data.get("calculation_method")
        family = data.get("family")
        confidence = data.get("data_confidence")
        validation = data.get("validation")
        return cls(
            vault_address=data["vault_address"],
            chain=data["chain"],
            protocol=data["protocol"],
            name=data.get("name", ""),
            asset_symbol=data.get("asset_symbol", ""),
            apy=float(data.get("apy", 0.0)),
            tvl_usd=int(data.get("tvl_usd", 0)),
            data_source=data.get("data_source", ""),
            risk_score=data.get("risk_score"),
            validation_score=data.get("validation_score"),
            calculated_apy=data.get("calculated_apy"),
            calculation_method=CalculationMethod(method) if method else None,
            confidence_score=data.get("confidence_score"),
            family=ProtocolFamily(family) if family else None,
            data_confidence=DataConfidence(confidence) if confidence else None,
            validation=ValidationResult.from_dict(validation) if validation else None,
            apy_base=data.get("apy_base"),
            apy_reward=data.get("apy_reward"),
            asset_address=data.get("asset_address"),
            market_id=data.get("market_id"),
        )


@dataclass(frozen=True)
class YieldEstimate:
    """One realized-yield estimate; a vault may have several competing ones."""

    calculated_apy: float
    method: CalculationMethod
    confidence_score: float
    details: dict[str, Any] = field(default_factory=dict)
    # Heuristic and placeholder values are estimations, not measurements.
    is_estimation: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "calculated_apy": self.calculated_apy,
            "method": self.method.value,
            "confidence_score": self.confidence_score,
            "details": dict(self.details),
            "is_estimation": self.is_estimation,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "YieldEstimate":
        return cls(
            calculated_apy=float(data["calculated_apy"]),
            method=CalculationMethod(data["method"]),
            confidence_score=float(data["confidence_score"]),
            details=dict(data.get("details") or {}),
            is_estimation=bool(data.get("is_estimation", False)),
        )


@dataclass(frozen=True)
class ComprehensiveEstimate:
    """Every successful estimate for a vault plus the single most confident one."""

    estimates: list[YieldEstimate]
    recommended: YieldEstimate | None


@dataclass(frozen=True)
class RiskAssessment:
    score: int
    category: RiskCategory
    breakdown: dict[str, int] = field(default_factory=dict)
    # True when the scorer failed and the last-resort default was returned.
    fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "category": self.category.value,
            "breakdown": dict(self.breakdown),
            "fallback": self.fallback,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RiskAssessment":
        return cls(
            score=int(data["score"]),
            category=RiskCategory(data["category"]),
            breakdown={k: int(v) for k, v in (data.get("breakdown") or {}).items()},
            fallback=bool(data.get("fallback", False)),
        )


@dataclass(frozen=True)
class OnchainVaultSnapshot:
    """Token metadata and protocol accounting read from a vault contract."""

    vault: str
    chain: str
    vault_type: str
    name: str
    symbol: str
    decimals: int
    total_supply: int
    block_number: int
    read_at: float
    asset_address: str | None = None
    asset_symbol: str | None = None
    # Underlying assets held, in whole token units.
    total_assets: float | None = None
    share_price: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "vault": self.vault,
            "chain": self.chain,
            "vault_type": self.vault_type,
            "name": self.name,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "total_supply": str(self.total_supply),
            "block_number": self.block_number,
            "read_at": self.read_at,
            "asset_address": self.asset_address,
            "asset_symbol": self.asset_symbol,
            "total_assets": self.total_assets,
            "share_price": self.share_price,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OnchainVaultSnapshot":
        return cls(
            vault=data["vault"],
            chain=data["chain"],
            vault_type=data["vault_type"],
            name=data.get("name", ""),
            symbol=data.get("symbol", ""),
            decimals=int(data.get("decimals", 18)),
            total_supply=int(data.get("total_supply", 0)),
            block_number=int(data.get("block_number", 0)),
            read_at=float(data["read_at"]),
            asset_address=data.get("asset_address"),
            asset_symbol=data.get("asset_symbol"),
            total_assets=data.get("total_assets"),
            share_price=data.get("share_price"),
        )


@dataclass(frozen=True)
class ResolutionCriteria:
    """What a caller asks the resolver for. Validated before any I/O."""

    asset: str
    risk_tolerance: str = "medium"
    chain: str | None = None
    min_tvl: int = 0
    limit: int = DEFAULT_RESULT_LIMIT
    min_apy: float | None = None
    max_apy: float | None = None
    max_tvl: int | None = None
    min_risk_score: int | None = None
    max_risk_score: int | None = None
    protocols: tuple[str, ...] = ()
    chains: tuple[str, ...] = ()
    exclude_protocols: tuple[str, ...] = ()
    use_calculated_apy: bool = True

    def __post_init__(self) -> None:
        if not self.asset or not self.asset.strip():
            raise InvalidCriteria("asset", self.asset, "must be a non-empty symbol")
        if self.risk_tolerance not in RISK_TOLERANCE_MIN_SCORE:
            raise InvalidCriteria(
                "risk_tolerance", self.risk_tolerance, f"expected one of {', '.join(RISK_TOLERANCE_MIN_SCORE)}"
            )
        if isinstance(self.limit, bool) or not isinstance(self.limit, int):
            raise InvalidCriteria("limit", self.limit, "must be an integer")
        if not MIN_RESULT_LIMIT <= self.limit <= MAX_RESULT_LIMIT:
            raise InvalidCriteria("limit", self.limit, f"must be within [{MIN_RESULT_LIMIT}, {MAX_RESULT_LIMIT}]")
        if self.min_tvl < 0:
            raise InvalidCriteria("min_tvl", self.min_tvl, "must be non-negative")
        if self.max_tvl is not None and self.max_tvl < self.min_tvl:
            raise InvalidCriteria("max_tvl", self.max_tvl, "must be >= min_tvl")
        if self.min_apy is not None and self.max_apy is not None and self.max_apy < self.min_apy:
            raise InvalidCriteria("max_apy", self.max_apy, "must be >= min_apy")
        for name in ("min_risk_score", "max_risk_score"):
            value = getattr(self, name)
            if value is not None and not 0 <= value <= 100:
                raise InvalidCriteria(name, value, "must be within [0, 100]")
        if (
            self.min_risk_score is not None
            and self.max_risk_score is not None
            and self.max_risk_score < self.min_risk_score
        ):
            raise InvalidCriteria("max_risk_score", self.max_risk_score, "must be >= min_risk_score")


@dataclass(frozen=True)
class ResolvedVault:
    """A ranked candidate with everything that went into its position."""

    record: VaultRecord
    risk: RiskAssessment
    estimate: YieldEstimate | None
    effective_apy: float
    risk_adjusted_apy: float
    # 0..100, see resolver.record_confidence
    confidence: float
    rank: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "record": self.record.to_dict(),
            "risk": self.risk.to_dict(),
            "estimate": self.estimate.to_dict() if self.estimate else None,
            "effective_apy": self.effective_apy,
            "risk_adjusted_apy": self.risk_adjusted_apy,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class ResolutionResult:
    criteria: ResolutionCriteria
    best: ResolvedVault | None
    ranked: list[ResolvedVault]
    total_candidates: int
    sources: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset": self.criteria.asset,
            "risk_tolerance": self.criteria.risk_tolerance,
            "chain": self.criteria.chain,
            "best": self.best.to_dict() if self.best else None,
            "ranked": [v.to_dict() for v in self.ranked],
            "total_candidates": self.total_candidates,
            "sources": dict(self.sources),
        }


@dataclass(frozen=True)
class VaultComparison:
    """Side-by-side ranking of a caller-chosen set of vaults."""

    by_apy: list[ResolvedVault]
    by_risk_adjusted_apy: list[ResolvedVault]
    by_safety: list[ResolvedVault]
    recommendation: ResolvedVault | None
    not_found: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "by_apy": [v.record.identity for v in self.by_apy],
            "by_risk_adjusted_apy": [v.record.identity for v in self.by_risk_adjusted_apy],
            "by_safety": [v.record.identity for v in self.by_safety],
            "recommendation": self.recommendation.to_dict() if self.recommendation else None,
            "not_found": list(self.not_found),
        }

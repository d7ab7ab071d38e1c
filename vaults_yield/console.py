"""Console output formatting."""

from vaults_yield.formatters import format_apy, format_usd, short_address
from vaults_yield.models import (
    ComprehensiveEstimate,
    RiskCategory,
    ResolutionResult,
    ResolvedVault,
    VaultComparison,
    YieldEstimate,
)

RISK_EMOJI = {
    RiskCategory.LOW: "🟢",
    RiskCategory.MEDIUM_LOW: "🟢",
    RiskCategory.MEDIUM: "🟡",
    RiskCategory.MEDIUM_HIGH: "🟠",
    RiskCategory.HIGH: "🔴",
}


def print_vault(vault: ResolvedVault, *, header: str | None = None) -> None:
    """Print one resolved vault with its risk and yield details."""
    r = vault.record
    emoji = RISK_EMOJI[vault.risk.category]
    title = header or f"#{vault.rank} {r.name or short_address(r.vault_address)}"
    print(f"\n{emoji} {title}")
    print("   " + "─" * 50)
    print(f"   🏦 {r.protocol} on {r.chain}  •  asset {r.asset_symbol}  •  source {r.data_source}")
    print(f"   📍 {r.vault_address}")
    print(f"   💰 TVL: {format_usd(r.tvl_usd)}")
    apy_line = f"   📈 APY: {format_apy(vault.effective_apy)}"
    if vault.effective_apy != r.apy:
        apy_line += f" (reported {format_apy(r.apy)})"
    print(apy_line)
    print(f"   ⚖️  Risk-adjusted APY: {format_apy(vault.risk_adjusted_apy)}")
    fallback = " [fallback]" if vault.risk.fallback else ""
    print(f"   🛡️  Risk: {vault.risk.score}/100 ({vault.risk.category.value}){fallback}")
    breakdown = ", ".join(f"{k}={v}" for k, v in vault.risk.breakdown.items())
    if breakdown:
        print(f"      {breakdown}")
    confidence = f"   🔍 Confidence: {vault.confidence:.0f}/100"
    if r.data_confidence is not None:
        confidence += f" ({r.data_confidence.value})"
    print(confidence)
    if vault.estimate is not None:
        print(f"   🧮 {format_estimate(vault.estimate)}")


def format_estimate(estimate: YieldEstimate) -> str:
    label = "estimated" if estimate.is_estimation else "calculated"
    text = (
        f"{label} {format_apy(estimate.calculated_apy)} via {estimate.method.value} "
        f"(confidence {estimate.confidence_score:.2f})"
    )
    if "low" in estimate.details and "high" in estimate.details:
        text += f", typical range {format_apy(estimate.details['low'])}-{format_apy(estimate.details['high'])}"
    return text


def print_resolution(result: ResolutionResult, *, best_only: bool = False) -> None:
    c = result.criteria
    where = f" on {c.chain}" if c.chain else ""
    print("=" * 70)
    print(f"🏆 BEST {c.asset.upper()} VAULTS{where.upper()}  •  risk tolerance: {c.risk_tolerance}")
    sources = ", ".join(f"{k}={v}" for k, v in sorted(result.sources.items())) or "none"
    print(f"   {result.total_candidates} candidate vaults ({sources})")
    print("=" * 70)
    vaults = result.ranked[:1] if best_only else result.ranked
    for vault in vaults:
        print_vault(vault)
    print("")


def print_estimates(estimates: ComprehensiveEstimate | YieldEstimate | None, *, vault: str) -> None:
    print(f"\n🧮 Yield estimates for {vault}")
    print("   " + "─" * 50)
    if estimates is None:
        print("   No applicable calculation method.")
        return
    if isinstance(estimates, YieldEstimate):
        print(f"   {format_estimate(estimates)}")
        return
    if not estimates.estimates:
        print("   No method produced an estimate.")
        return
    for e in estimates.estimates:
        marker = "📍" if e is estimates.recommended else "  "
        print(f" {marker} {format_estimate(e)}")


def print_comparison(comparison: VaultComparison) -> None:
    print("=" * 70)
    print("⚖️  VAULT COMPARISON")
    print("=" * 70)
    for title, vaults, value in (
        ("By APY", comparison.by_apy, lambda v: format_apy(v.effective_apy)),
        ("By risk-adjusted APY", comparison.by_risk_adjusted_apy, lambda v: format_apy(v.risk_adjusted_apy)),
        ("By safety", comparison.by_safety, lambda v: f"{v.risk.score}/100"),
    ):
        print(f"\n{title}:")
        for i, v in enumerate(vaults, start=1):
            print(f"   {i}. {v.record.name or short_address(v.record.vault_address)} ({v.record.chain}): {value(v)}")
    if comparison.recommendation is not None:
        print_vault(comparison.recommendation, header="Recommendation")
    for missing in comparison.not_found:
        print(f"\n⚠️  Not found: {missing}")
    print("")

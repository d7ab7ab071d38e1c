"""CLI and main logic."""

import argparse
import asyncio
import json
import logging
import sys

from vaults_yield.blockchain import Web3ChainReader
from vaults_yield.cache import DiskCache, ResultCache
from vaults_yield.collectors import DefiLlamaCollector, VaultsFyiCollector
from vaults_yield.config import ResolverSettings
from vaults_yield.console import print_comparison, print_estimates, print_resolution, print_vault
from vaults_yield.constants import DEFAULT_RESULT_LIMIT, RISK_TOLERANCE_MIN_SCORE
from vaults_yield.errors import AllSourcesFailed, InvalidCriteria, NoMatchingVault, StorageUnavailable
from vaults_yield.models import ComprehensiveEstimate, ResolutionCriteria
from vaults_yield.resolver import VaultResolver
from vaults_yield.storage import InMemoryRecordStore


def parse_args(argv: list[str]) -> argparse.Namespace:
    """Parse command-line arguments."""
    p = argparse.ArgumentParser(
        description="Find the best risk-adjusted lending vault for an asset across yield data providers."
    )
    p.add_argument(
        "--rpc-url",
        default=None,
        help="Ethereum RPC URL (overrides ETH_RPC_URL). Other chains use BASE_RPC_URL, ARBITRUM_RPC_URL, etc.",
    )
    p.add_argument("--json", action="store_true", help="Print results as JSON.")
    p.add_argument(
        "--no-cache",
        action="store_true",
        help="Disable caching for this run (fetch all data fresh from network).",
    )
    p.add_argument(
        "--validate",
        action="store_true",
        default=None,
        help="Cross-check large vaults on-chain (overrides ENABLE_ONCHAIN_VALIDATION).",
    )
    p.add_argument("-v", "--verbose", action="count", default=0, help="Log progress (-v) or debug details (-vv).")

    sub = p.add_subparsers(dest="command", required=True)

    def add_resolution_args(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("asset", help="Asset symbol, e.g. USDC.")
        sp.add_argument("--risk", default="medium", choices=list(RISK_TOLERANCE_MIN_SCORE), help="Risk tolerance.")
        sp.add_argument("--chain", default=None, help="Restrict to one chain.")
        sp.add_argument("--min-tvl", type=int, default=0, help="Minimum TVL in USD.")
        sp.add_argument(
            "--reported-apy",
            action="store_true",
            help="Rank by provider-reported APY only (skip on-chain yield calculation).",
        )

    best = sub.add_parser("best", help="The single best vault for an asset.")
    add_resolution_args(best)

    top = sub.add_parser("top", help="Ranked vaults for an asset.")
    add_resolution_args(top)
    top.add_argument("--limit", type=int, default=DEFAULT_RESULT_LIMIT, help="Number of vaults to show (1-50).")
    top.add_argument("--max-tvl", type=int, default=None, help="Maximum TVL in USD.")
    top.add_argument("--min-apy", type=float, default=None, help="Minimum reported APY in percent.")
    top.add_argument("--max-apy", type=float, default=None, help="Maximum reported APY in percent.")
    top.add_argument("--protocol", action="append", default=[], help="Only these protocols (repeatable).")
    top.add_argument("--exclude-protocol", action="append", default=[], help="Skip these protocols (repeatable).")

    vault = sub.add_parser("vault", help="Get or refresh a single vault.")
    vault.add_argument("chain")
    vault.add_argument("address")
    vault.add_argument("--protocol", default=None, help="Protocol slug, e.g. aave-v3.")
    vault.add_argument("--refresh", action="store_true", help="Re-read the vault on-chain.")

    apy = sub.add_parser("apy", help="Calculate a vault's realized APY on-chain.")
    apy.add_argument("chain")
    apy.add_argument("address")
    apy.add_argument("--protocol", default=None, help="Protocol slug, e.g. compound-v3.")
    apy.add_argument("--comprehensive", action="store_true", help="Run every applicable method.")

    compare = sub.add_parser("compare", help="Compare vaults given as CHAIN:ADDRESS.")
    compare.add_argument("vaults", nargs="+", metavar="CHAIN:ADDRESS")

    return p.parse_args(argv)


def configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)


def build_resolver(settings: ResolverSettings, *, progress: bool = True) -> VaultResolver:
    """Wire collectors, RPC reader, cache and store from settings."""
    cache = ResultCache(DiskCache(), enabled=settings.use_cache)
    reader = Web3ChainReader(settings.rpc_urls, timeout_s=settings.rpc_timeout_s) if settings.rpc_urls else None
    collectors = [
        DefiLlamaCollector(cache=cache),
        VaultsFyiCollector(settings.vaults_fyi_api_key, cache=cache),
    ]
    return VaultResolver(
        collectors,
        reader=reader,
        cache=cache,
        store=InMemoryRecordStore(),
        validate_onchain=settings.enable_onchain_validation,
        validation_min_tvl=settings.onchain_validation_min_tvl,
        progress=progress,
    )


def parse_vault_ref(value: str) -> tuple[str, str]:
    chain, sep, address = value.partition(":")
    if not sep or not chain or not address:
        raise InvalidCriteria("vault", value, "expected CHAIN:ADDRESS")
    return chain, address


def criteria_from_args(args: argparse.Namespace) -> ResolutionCriteria:
    is_top = args.command == "top"
    min_apy = getattr(args, "min_apy", None)
    max_apy = getattr(args, "max_apy", None)
    return ResolutionCriteria(
        asset=args.asset,
        risk_tolerance=args.risk,
        chain=args.chain,
        min_tvl=args.min_tvl,
        limit=args.limit if is_top else 1,
        min_apy=min_apy / 100 if min_apy is not None else None,
        max_apy=max_apy / 100 if max_apy is not None else None,
        max_tvl=getattr(args, "max_tvl", None),
        protocols=tuple(getattr(args, "protocol", ()) or ()),
        exclude_protocols=tuple(getattr(args, "exclude_protocol", ()) or ()),
        use_calculated_apy=not args.reported_apy,
    )


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


async def run(args: argparse.Namespace, resolver: VaultResolver) -> int:
    if args.command in ("best", "top"):
        result = await resolver.resolve(criteria_from_args(args))
        if args.json:
            _print_json(result.to_dict())
        else:
            print_resolution(result, best_only=args.command == "best")
        return 0

    if args.command == "vault":
        vault = await resolver.get_vault(args.chain, args.address, protocol=args.protocol, refresh=args.refresh)
        if vault is None:
            print(f"Vault {args.address} not found on {args.chain}.", file=sys.stderr)
            return 1
        if args.json:
            _print_json(vault.to_dict())
        else:
            print_vault(vault, header=vault.record.name or vault.record.vault_address)
        return 0

    if args.command == "apy":
        estimates = await resolver.estimate_vault(
            args.chain, args.address, protocol=args.protocol, comprehensive=args.comprehensive
        )
        if args.json:
            if isinstance(estimates, ComprehensiveEstimate):
                _print_json(
                    {
                        "estimates": [e.to_dict() for e in estimates.estimates],
                        "recommended": estimates.recommended.to_dict() if estimates.recommended else None,
                    }
                )
            else:
                _print_json(estimates.to_dict() if estimates else None)
        else:
            print_estimates(estimates, vault=f"{args.address} on {args.chain}")
        return 0 if estimates else 1

    if args.command == "compare":
        comparison = await resolver.compare_vaults([parse_vault_ref(v) for v in args.vaults])
        if args.json:
            _print_json(comparison.to_dict())
        else:
            print_comparison(comparison)
        return 0 if comparison.recommendation else 1

    raise ValueError(f"unknown command {args.command!r}")


def main(argv: list[str]) -> int:
    """Main entry point."""
    args = parse_args(argv)
    configure_logging(args.verbose)

    settings = ResolverSettings.from_env().with_overrides(
        rpc_url=args.rpc_url, validate=args.validate, use_cache=not args.no_cache
    )
    if settings.enable_onchain_validation and not settings.rpc_urls:
        print("⚠️  On-chain validation requested but no RPC URL is configured; skipping it.", file=sys.stderr)

    try:
        return asyncio.run(run(args, build_resolver(settings, progress=not args.json)))
    except InvalidCriteria as ex:
        print(f"Error: {ex}", file=sys.stderr)
        return 2
    except NoMatchingVault as ex:
        print(f"No result: {ex}", file=sys.stderr)
        return 1
    except (AllSourcesFailed, StorageUnavailable) as ex:
        print(f"Error: {ex}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))

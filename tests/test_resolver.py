import asyncio
import math

import pytest
from conftest import FakeChainReader, make_record

from vaults_yield.cache import ResultCache
from vaults_yield.collectors import DefiLlamaCollector
from vaults_yield.constants import AAVE_V3_POOLS
from vaults_yield.errors import AllSourcesFailed, InvalidCriteria, NoMatchingVault, SourceUnavailable
from vaults_yield.models import CalculationMethod, ResolutionCriteria, YieldEstimate
from vaults_yield.resolver import (
    VaultResolver,
    apply_criteria,
    effective_apy,
    rank,
    record_confidence,
    select_best,
    select_calculation_candidates,
)
from vaults_yield.storage import InMemoryRecordStore

AAVE = "0x" + "a1" * 20
AERODROME = "0x" + "a2" * 20
COMPOUND = "0x" + "a3" * 20


def _usdc_vaults():
    return [
        make_record(
            vault_address=AAVE,
            protocol="aave-v3",
            chain="ethereum",
            name="Aave V3 USDC",
            apy=0.03,
            tvl_usd=500_000_000,
            data_source="onchain",
        ),
        make_record(
            vault_address=AERODROME,
            protocol="aerodrome-slipstream",
            chain="base",
            name="Aerodrome USDC-WETH",
            apy=13.0,
            tvl_usd=2_000_000,
            data_source="defillama",
        ),
        make_record(
            vault_address=COMPOUND,
            protocol="compound-v3",
            chain="base",
            name="Compound USDC",
            apy=0.04,
            tvl_usd=50_000_000,
            data_source="vaultsfyi",
        ),
    ]


class StaticCollector:
    def __init__(self, name, records=None, error=None):
        self.name = name
        self.records = records or []
        self.error = error
        self.calls = 0

    async def collect(self, asset):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return [r for r in self.records if r.asset_symbol == asset]


def _resolver(*collectors, **kwargs):
    kwargs.setdefault("validation_delay_s", 0)
    kwargs.setdefault("calculation_delay_s", 0)
    return VaultResolver(list(collectors), **kwargs)


def test_record_confidence_takes_strongest_signal():
    assert record_confidence(make_record()) == 0
    assert record_confidence(make_record(validation_score=70)) == 70
    assert record_confidence(make_record(validation_score=70, confidence_score=0.9)) == pytest.approx(90)
    assert record_confidence(make_record(data_source="onchain", validation_score=40)) == 95


@pytest.mark.parametrize(
    ("confidence", "expected"),
    [(None, 0.05), (0.5, 0.05), (0.6, 0.05), (0.61, 0.07), (0.95, 0.07)],
)
def test_effective_apy_uses_calculated_only_above_threshold(confidence, expected):
    record = make_record(apy=0.05, calculated_apy=0.07, confidence_score=confidence)
    assert effective_apy(record) == expected


def test_rank_reference_usdc_example():
    ranked = rank(_usdc_vaults(), "medium")
    assert [v.record.vault_address for v in ranked] == [AAVE, COMPOUND]
    best = ranked[0]
    assert best.rank == 1
    assert best.risk.score == 96
    assert best.risk_adjusted_apy == pytest.approx(0.0288)
    assert ranked[1].risk_adjusted_apy == pytest.approx(0.0372)
    # aerodrome scores 50 and falls below the medium floor of 55
    assert all(v.record.vault_address != AERODROME for v in ranked)


def test_rank_high_tolerance_keeps_everything():
    ranked = rank(_usdc_vaults(), "high")
    assert len(ranked) == 3
    assert [v.rank for v in ranked] == [1, 2, 3]


def test_rank_low_tolerance_filters_below_85():
    ranked = rank(_usdc_vaults(), "low", 50)
    assert all(v.risk.score >= 85 for v in ranked)


def test_confidence_gap_decides_before_yield():
    confident = make_record(vault_address="0x" + "01" * 20, apy=0.03, validation_score=90)
    shaky = make_record(vault_address="0x" + "02" * 20, apy=0.06, validation_score=65)
    assert rank([shaky, confident], "high")[0].record is confident


def test_small_confidence_gap_falls_back_to_risk_adjusted_apy():
    a = make_record(vault_address="0x" + "01" * 20, apy=0.03, validation_score=70)
    b = make_record(vault_address="0x" + "02" * 20, apy=0.06, validation_score=60)
    assert rank([a, b], "high")[0].record is b


def test_rank_applies_estimates_and_limit():
    records = [make_record(vault_address="0x" + f"{i:02x}" * 20, apy=0.01 * i) for i in range(1, 6)]
    target = records[0]
    estimates = {target.identity: YieldEstimate(0.2, CalculationMethod.DIRECT_RATE, 0.95)}
    ranked = rank(records, "high", 2, estimates=estimates)
    assert len(ranked) == 2
    assert ranked[0].record.vault_address == target.vault_address
    assert ranked[0].effective_apy == 0.2
    assert ranked[0].estimate.method is CalculationMethod.DIRECT_RATE


@pytest.mark.parametrize("limit", [0, 51, -1])
def test_rank_rejects_limit_out_of_range(limit):
    with pytest.raises(InvalidCriteria):
        rank(_usdc_vaults(), "medium", limit)


def test_rank_rejects_unknown_tolerance():
    with pytest.raises(InvalidCriteria):
        rank(_usdc_vaults(), "yolo")


def test_select_best():
    assert select_best(_usdc_vaults(), "medium").record.vault_address == AAVE
    assert select_best(_usdc_vaults()[1:2], "medium") is None
    assert select_best([], "high") is None


def test_apply_criteria_filters():
    records = _usdc_vaults()
    on_base = apply_criteria(records, ResolutionCriteria(asset="USDC", chain="Base"))
    assert {r.vault_address for r in on_base} == {AERODROME, COMPOUND}
    only_compound = apply_criteria(records, ResolutionCriteria(asset="USDC", protocols=("compound",)))
    assert [r.vault_address for r in only_compound] == [COMPOUND]
    no_aave = apply_criteria(records, ResolutionCriteria(asset="USDC", exclude_protocols=("aave",)))
    assert AAVE not in {r.vault_address for r in no_aave}
    sized = apply_criteria(records, ResolutionCriteria(asset="USDC", min_tvl=10_000_000, max_tvl=100_000_000))
    assert [r.vault_address for r in sized] == [COMPOUND]
    modest = apply_criteria(records, ResolutionCriteria(asset="USDC", max_apy=0.5))
    assert AERODROME not in {r.vault_address for r in modest}


def test_select_calculation_candidates_takes_top_of_each_kind():
    real = [make_record(vault_address="0x" + f"{i:02x}" * 20, tvl_usd=i * 1_000) for i in range(1, 6)]
    opaque = [make_record(vault_address=f"pool-{i}", tvl_usd=i * 1_000_000) for i in range(1, 5)]
    selected = select_calculation_candidates(real + opaque, per_kind=2)
    assert [r.tvl_usd for r in selected] == [5_000, 4_000, 4_000_000, 3_000_000]


def test_resolve_end_to_end():
    records = _usdc_vaults()
    resolver = _resolver(StaticCollector("vaultsfyi", records[2:]), StaticCollector("defillama", records[:2]))
    result = asyncio.run(resolver.resolve(ResolutionCriteria(asset="USDC", risk_tolerance="medium")))
    assert result.best.record.vault_address == AAVE
    assert result.total_candidates == 3
    assert result.sources == {"onchain": 1, "defillama": 1, "vaultsfyi": 1}
    assert result.to_dict()["best"]["record"]["vault_address"] == AAVE


def test_resolve_survives_one_failing_source():
    failing = StaticCollector("vaultsfyi", error=SourceUnavailable("vaultsfyi", "no API key"))
    resolver = _resolver(failing, StaticCollector("defillama", _usdc_vaults()))
    result = asyncio.run(resolver.resolve(ResolutionCriteria(asset="USDC")))
    assert result.best.record.vault_address == AAVE


def test_resolve_raises_when_every_source_fails():
    resolver = _resolver(
        StaticCollector("vaultsfyi", error=SourceUnavailable("vaultsfyi", "down")),
        StaticCollector("defillama", error=SourceUnavailable("defillama", "down")),
    )
    with pytest.raises(AllSourcesFailed) as excinfo:
        asyncio.run(resolver.resolve(ResolutionCriteria(asset="USDC")))
    assert excinfo.value.sources == ["vaultsfyi", "defillama"]


def test_resolve_raises_no_matching_vault():
    resolver = _resolver(StaticCollector("defillama", _usdc_vaults()[1:2]))
    with pytest.raises(NoMatchingVault):
        asyncio.run(resolver.resolve(ResolutionCriteria(asset="USDC", risk_tolerance="medium")))


def test_resolve_reads_recent_records_from_store():
    collector = StaticCollector("defillama", _usdc_vaults())
    store = InMemoryRecordStore()
    resolver = _resolver(collector, store=store)
    criteria = ResolutionCriteria(asset="USDC")
    asyncio.run(resolver.resolve(criteria))
    asyncio.run(resolver.resolve(criteria))
    assert collector.calls == 1
    assert len(store) == 3
    asyncio.run(resolver.resolve(criteria, refresh=True))
    assert collector.calls == 2


def test_resolve_does_not_reuse_stored_records_of_another_asset():
    weth = make_record(vault_address="0x" + "e1" * 20, asset_symbol="WETH", name="Aave Ethereum WETH")
    eth = make_record(vault_address="0x" + "e2" * 20, asset_symbol="ETH", name="Aave Ethereum ETH")
    collector = StaticCollector("defillama", [weth, eth])
    resolver = _resolver(collector, store=InMemoryRecordStore())

    asyncio.run(resolver.resolve(ResolutionCriteria(asset="WETH")))
    result = asyncio.run(resolver.resolve(ResolutionCriteria(asset="ETH")))

    assert collector.calls == 2
    assert [v.record.asset_symbol for v in result.ranked] == ["ETH"]


def test_concurrent_resolutions_share_one_provider_fetch():
    pool_id = "747c1d2a-c668-4682-b9f9-296708a3dd90"
    calls = []

    async def fetch_page(url, **kwargs):
        calls.append(url)
        await asyncio.sleep(0.01)
        return {
            "status": "success",
            "data": [
                {
                    "pool": pool_id,
                    "chain": "Ethereum",
                    "project": "aave-v3",
                    "symbol": "USDC",
                    "tvlUsd": 250_000_000,
                    "apy": 4.5,
                }
            ],
        }

    resolver = _resolver(DefiLlamaCollector(fetch_page=fetch_page, cache=ResultCache()))
    criteria = ResolutionCriteria(asset="USDC")

    async def resolve_all():
        return await asyncio.gather(*(resolver.resolve(criteria) for _ in range(50)))

    results = asyncio.run(resolve_all())

    assert len(calls) == 1
    assert {r.best.record.vault_address for r in results} == {pool_id}


def test_compare_vaults_from_store():
    safe = make_record(vault_address="0x" + "0a" * 20, protocol="aave-v3", apy=0.05, tvl_usd=50_000_000)
    spicy = make_record(vault_address="0x" + "0b" * 20, protocol="compound-v3", apy=0.08, tvl_usd=1_000_000)
    store = InMemoryRecordStore()
    store.persist_records([safe, spicy])
    resolver = _resolver(store=store)
    missing = "0x" + "0c" * 20

    comparison = asyncio.run(
        resolver.compare_vaults(
            [("ethereum", safe.vault_address), ("ethereum", spicy.vault_address), ("Ethereum", missing)]
        )
    )

    assert [v.record for v in comparison.by_apy] == [spicy, safe]
    assert [v.record for v in comparison.by_safety] == [safe, spicy]
    assert [v.record for v in comparison.by_risk_adjusted_apy] == [spicy, safe]
    assert comparison.recommendation.record == spicy
    assert comparison.not_found == [f"{missing}:ethereum"]


def test_get_vault_reads_unknown_vault_on_chain():
    vault = "0x" + "5e" * 20
    underlying = "0x" + "a0" * 20

    def total_assets(*args, block_identifier):
        return 1_010_000 * 10**6 if block_identifier in ("latest", 20_000_000) else 1_000_000 * 10**6

    reader = FakeChainReader(
        {
            (vault, "name"): "Steakhouse USDC",
            (vault, "symbol"): "steakUSDC",
            (vault, "decimals"): 18,
            (vault, "totalSupply"): 10**24,
            (vault, "asset"): underlying,
            (vault, "totalAssets"): total_assets,
            (underlying, "symbol"): "USDC",
            (underlying, "decimals"): 6,
        }
    )
    resolver = _resolver(reader=reader)

    resolved = asyncio.run(resolver.get_vault("mainnet", vault))

    assert resolved.record.name == "Steakhouse USDC"
    assert resolved.record.asset_symbol == "USDC"
    assert resolved.record.chain == "ethereum"
    assert resolved.estimate.method is CalculationMethod.HISTORICAL_SHARE_PRICE
    assert resolved.effective_apy == pytest.approx(0.01 * 365 / 7)
    assert resolved.confidence == 95


def test_get_vault_refresh_revalidates_the_stored_record():
    vault = "0x" + "aa" * 20
    underlying = "0x" + "a0" * 20
    reader = FakeChainReader(
        {
            (vault, "name"): "Aave Ethereum USDC",
            (vault, "symbol"): "aEthUSDC",
            (vault, "decimals"): 6,
            (vault, "totalSupply"): 90_000_000 * 10**6,
            (vault, "UNDERLYING_ASSET_ADDRESS"): underlying,
            (underlying, "symbol"): "USDC",
            (underlying, "decimals"): 6,
            (AAVE_V3_POOLS["ethereum"], "getReserveData"): ((0,), 10**27, 5 * 10**25, 10**27, 0, 0, 0),
        }
    )
    now = [1_000.0]
    store = InMemoryRecordStore(clock=lambda: now[0])
    stored = make_record(
        vault_address=vault,
        name="Aave Ethereum USDC",
        tvl_usd=90_000_000,
        data_source="vaultsfyi",
        risk_score=80,
    )
    store.persist_records([stored])
    now[0] += 3_600
    resolver = _resolver(reader=reader, store=store)

    resolved = asyncio.run(resolver.get_vault("ethereum", vault, refresh=True))

    record = resolved.record
    assert (record.protocol, record.tvl_usd, record.data_source) == ("aave-v3", 90_000_000, "vaultsfyi")
    assert record.risk_score == 80
    assert record.apy == stored.apy
    assert record.validation_score == 100
    assert record.calculated_apy == pytest.approx(math.exp(0.05) - 1, rel=1e-6)
    assert resolved.estimate.method is CalculationMethod.DIRECT_RATE
    assert store.get_record("ethereum", vault) == record


def test_get_vault_not_found_without_reader_or_store():
    assert asyncio.run(_resolver().get_vault("ethereum", "0x" + "99" * 20)) is None


def test_estimate_vault_comprehensive_for_opaque_id():
    result = asyncio.run(_resolver().estimate_vault("base", "some-pool-id", protocol="morpho", comprehensive=True))
    assert result.recommended.method is CalculationMethod.HEURISTIC
    assert result.recommended.calculated_apy == pytest.approx(0.045)

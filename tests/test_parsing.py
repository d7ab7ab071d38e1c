import pytest

from vaults_yield.parsing import (
    canonical_chain,
    canonical_protocol,
    is_lp_pool,
    iter_defillama_records,
    iter_vaults_fyi_records,
    matches_asset,
    parse_defillama_pool,
    parse_vaults_fyi_vault,
)


def _pool(**overrides):
    entry = {
        "pool": "747c1d2a-c668-4682-b9f9-296708a3dd90",
        "chain": "Ethereum",
        "project": "aave-v3",
        "symbol": "USDC",
        "tvlUsd": 250_000_000,
        "apy": 4.5,
        "apyBase": 4.0,
        "apyReward": 0.5,
        "underlyingTokens": ["0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"],
    }
    entry.update(overrides)
    return entry


def _fyi_vault(**overrides):
    entry = {
        "address": "0x" + "cd" * 20,
        "name": "Steakhouse USDC",
        "network": {"name": "mainnet", "chainId": 1, "networkCaip": "eip155:1"},
        "protocol": {"name": "Morpho"},
        "asset": {"symbol": "USDC", "address": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"},
        "tvl": {"usd": "85000000"},
        "apy": {
            "1day": {"base": 0.051, "reward": 0.0, "total": 0.051},
            "7day": {"base": 0.05, "reward": 0.0, "total": 0.05},
            "30day": {"base": 0.048, "reward": 0.002, "total": 0.05},
        },
        "score": {"vaultScore": 82},
    }
    entry.update(overrides)
    return entry


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("Ethereum", "ethereum"),
        ("mainnet", "ethereum"),
        (1, "ethereum"),
        ("eip155:8453", "base"),
        ("Arbitrum One", "arbitrum"),
        ("matic", "polygon"),
        ("zksync", "zksync"),
        ("", None),
        (None, None),
    ],
)
def test_canonical_chain(value, expected):
    assert canonical_chain(value) == expected


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("Aave", "aave-v3"),
        ("aave_v2", "aave-v2"),
        ("Compound V3", "compound-v3"),
        ("Morpho", "morpho-blue"),
        ("Yearn Finance", "yearn"),
        ("brand-new-thing", "brand-new-thing"),
        (None, None),
    ],
)
def test_canonical_protocol(value, expected):
    assert canonical_protocol(value) == expected


def test_matches_asset_by_symbol_or_underlying():
    assert matches_asset("usdc", "aEthUSDC")
    assert matches_asset("USDC", "xyz", ["usdc"])
    assert not matches_asset("USDC", "DAI", ["0xabc"])


def test_is_lp_pool():
    assert is_lp_pool("uniswap-v3", "USDC-WETH", None)
    assert is_lp_pool("some-dex", "USDC-DAI", None)
    assert is_lp_pool("some-amm", "SLP", ["0x1", "0x2"])
    assert not is_lp_pool("aave-v3", "USDC", ["0x1"])


def test_parse_defillama_pool_converts_percent_to_fraction():
    record = parse_defillama_pool(_pool())
    assert record.vault_address == "747c1d2a-c668-4682-b9f9-296708a3dd90"
    assert not record.has_real_address
    assert record.chain == "ethereum"
    assert record.protocol == "aave-v3"
    assert record.apy == pytest.approx(0.045)
    assert record.apy_base == pytest.approx(0.04)
    assert record.apy_reward == pytest.approx(0.005)
    assert record.tvl_usd == 250_000_000
    assert record.data_source == "defillama"
    assert record.asset_address == "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"


def test_iter_defillama_records_filters_pools():
    payload = {
        "status": "success",
        "data": [
            _pool(),
            _pool(pool="wrong-chain", chain="Solana"),
            _pool(pool="wrong-asset", symbol="DAI", underlyingTokens=["0xdai"]),
            _pool(pool="tiny", tvlUsd=100_000),
            _pool(pool="zero-apy", apy=0),
            _pool(pool="silly-apy", apy=150),
            _pool(pool="lp", project="uniswap-v3", symbol="USDC-WETH"),
            "not-a-dict",
        ],
    }
    records = list(iter_defillama_records(payload, "USDC"))
    assert [r.vault_address for r in records] == ["747c1d2a-c668-4682-b9f9-296708a3dd90"]


def test_iter_defillama_records_skips_malformed_pools():
    payload = {
        "data": [
            _pool(pool="bad-tvl", tvlUsd="n/a"),
            _pool(pool="nan-tvl", tvlUsd=float("nan")),
            _pool(pool="inf-tvl", tvlUsd=float("inf")),
            _pool(),
            _pool(pool="bad-apy", apy="lots"),
        ]
    }
    records = list(iter_defillama_records(payload, "USDC"))
    assert [r.vault_address for r in records] == ["747c1d2a-c668-4682-b9f9-296708a3dd90"]


def test_iter_vaults_fyi_records_skips_malformed_vaults():
    payload = {"data": [_fyi_vault(address="0x" + "ee" * 20, tvl={"usd": "n/a"}), _fyi_vault()]}
    records = list(iter_vaults_fyi_records(payload, "USDC"))
    assert [r.vault_address for r in records] == ["0x" + "cd" * 20]


def test_parse_vaults_fyi_vault():
    record = parse_vaults_fyi_vault(_fyi_vault())
    assert record.chain == "ethereum"
    assert record.protocol == "morpho-blue"
    assert record.apy == pytest.approx(0.05)
    assert record.apy_base == pytest.approx(0.048)
    assert record.tvl_usd == 85_000_000
    assert record.risk_score == 82
    assert record.asset_symbol == "USDC"
    assert record.data_source == "vaultsfyi"
    assert record.has_real_address


def test_parse_vaults_fyi_vault_falls_back_to_shorter_windows():
    record = parse_vaults_fyi_vault(_fyi_vault(apy={"7day": {"total": 0.061}}, network="base"))
    assert record.apy == pytest.approx(0.061)
    assert record.chain == "base"


def test_parse_vaults_fyi_vault_ignores_out_of_range_score_and_missing_address():
    assert parse_vaults_fyi_vault(_fyi_vault(score={"vaultScore": 140})).risk_score is None
    assert parse_vaults_fyi_vault(_fyi_vault(score=None)).risk_score is None
    assert parse_vaults_fyi_vault(_fyi_vault(address=None)) is None


def test_iter_vaults_fyi_records_filters_asset_and_tvl():
    payload = {
        "data": [
            _fyi_vault(),
            _fyi_vault(address="0x" + "01" * 20, asset={"symbol": "WETH", "address": "0xweth"}),
            _fyi_vault(address="0x" + "02" * 20, tvl={"usd": 50_000}),
        ]
    }
    records = list(iter_vaults_fyi_records(payload, "USDC"))
    assert [r.vault_address for r in records] == ["0x" + "cd" * 20]

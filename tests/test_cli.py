import json

import pytest
from conftest import make_record

from vaults_yield import cli
from vaults_yield.config import RPC_URL_ENV_VARS
from vaults_yield.errors import InvalidCriteria, SourceUnavailable
from vaults_yield.resolver import VaultResolver
from vaults_yield.storage import InMemoryRecordStore

AAVE = "0x" + "a1" * 20
COMPOUND = "0x" + "a3" * 20


class StaticCollector:
    def __init__(self, name, records=None, error=None):
        self.name = name
        self.records = records or []
        self.error = error

    async def collect(self, asset):
        if self.error is not None:
            raise self.error
        return list(self.records)


def _records():
    return [
        make_record(vault_address=AAVE, apy=0.03, tvl_usd=500_000_000, data_source="onchain"),
        make_record(vault_address=COMPOUND, protocol="compound-v3", chain="base", apy=0.04, data_source="vaultsfyi"),
    ]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for var in (*RPC_URL_ENV_VARS.values(), "VAULTS_FYI_API_KEY", "ENABLE_ONCHAIN_VALIDATION"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path))


@pytest.fixture
def use_resolver(monkeypatch):
    def install(*collectors, store=None):
        resolver = VaultResolver(list(collectors), store=store, validation_delay_s=0, calculation_delay_s=0)
        monkeypatch.setattr(cli, "build_resolver", lambda settings, progress=True: resolver)
        return resolver

    return install


def test_parse_args_defaults():
    args = cli.parse_args(["best", "USDC"])
    assert args.command == "best"
    assert args.risk == "medium"
    assert args.validate is None
    assert not args.reported_apy
    assert args.verbose == 0


def test_criteria_from_args_for_top():
    args = cli.parse_args(
        ["top", "USDC", "--limit", "5", "--min-apy", "3", "--max-apy", "12", "--protocol", "aave", "--reported-apy"]
    )
    criteria = cli.criteria_from_args(args)
    assert criteria.limit == 5
    assert criteria.min_apy == pytest.approx(0.03)
    assert criteria.max_apy == pytest.approx(0.12)
    assert criteria.protocols == ("aave",)
    assert not criteria.use_calculated_apy


def test_criteria_from_args_for_best_uses_single_result():
    criteria = cli.criteria_from_args(cli.parse_args(["best", "USDC", "--risk", "low", "--chain", "base"]))
    assert criteria.limit == 1
    assert criteria.risk_tolerance == "low"
    assert criteria.chain == "base"
    assert criteria.use_calculated_apy


def test_parse_vault_ref():
    assert cli.parse_vault_ref("base:0xabc") == ("base", "0xabc")
    with pytest.raises(InvalidCriteria):
        cli.parse_vault_ref("0xabc")


def test_main_rejects_out_of_range_limit(capsys):
    assert cli.main(["top", "USDC", "--limit", "0"]) == 2
    assert "invalid limit" in capsys.readouterr().err


def test_main_best_prints_json(use_resolver, capsys):
    use_resolver(StaticCollector("defillama", _records()))
    assert cli.main(["--json", "best", "USDC"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["best"]["record"]["vault_address"] == AAVE
    assert payload["total_candidates"] == 2


def test_main_top_prints_ranking(use_resolver, capsys):
    use_resolver(StaticCollector("defillama", _records()))
    assert cli.main(["top", "USDC", "--limit", "2"]) == 0
    out = capsys.readouterr().out
    assert "#1" in out and "#2" in out
    assert "BEST USDC VAULTS" in out


def test_main_no_matching_vault_exits_1(use_resolver, capsys):
    use_resolver(StaticCollector("defillama", _records()))
    assert cli.main(["best", "USDC", "--chain", "polygon"]) == 1
    assert "No result" in capsys.readouterr().err


def test_main_all_sources_failed_exits_1(use_resolver, capsys):
    use_resolver(StaticCollector("defillama", error=SourceUnavailable("defillama", "down")))
    assert cli.main(["best", "USDC"]) == 1
    assert "all sources failed" in capsys.readouterr().err


def test_main_compare(use_resolver, capsys):
    store = InMemoryRecordStore()
    store.persist_records(_records())
    use_resolver(store=store)
    assert cli.main(["compare", f"ethereum:{AAVE}", f"base:{COMPOUND}", "base:0x" + "99" * 20]) == 0
    out = capsys.readouterr().out
    assert "VAULT COMPARISON" in out
    assert "Not found" in out


def test_main_compare_rejects_malformed_ref(use_resolver):
    use_resolver()
    assert cli.main(["compare", "nonsense"]) == 2


def test_main_vault_not_found(use_resolver, capsys):
    use_resolver()
    assert cli.main(["vault", "ethereum", "0x" + "99" * 20]) == 1
    assert "not found" in capsys.readouterr().err


def test_main_apy_for_opaque_id(use_resolver, capsys):
    use_resolver()
    assert cli.main(["--json", "apy", "base", "pool-123", "--protocol", "aave-v3", "--comprehensive"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["recommended"]["method"] == "heuristic_estimate"

"""Tests for engine configuration loading and validation."""

import json

import pytest

from spark_fees.config import EngineConfig, StakeholderShare, load_engine_config, parse_address_list
from spark_fees.errors import ConfigurationError
from spark_fees.types import ClaimAction

from tests.conftest import STAKEHOLDER_ADDRESSES, TREASURY_WALLETS


@pytest.fixture
def config_files(tmp_path):
    base = tmp_path / "fee_engine.json"
    local = tmp_path / "fee_engine.local.json"

    def _write(base_data=None, local_data=None):
        base.write_text(json.dumps(base_data or {}))
        if local_data is not None:
            local.write_text(json.dumps(local_data))
        return base, local

    return _write


def load(base, local, env=None, overrides=None):
    return load_engine_config(overrides, env=env or {}, base_path=base, local_path=local, load_env_file=False)


class TestLoadEngineConfig:

    def test_defaults_without_files(self, tmp_path):
        config = load(tmp_path / "missing.json", tmp_path / "missing.local.json")

        assert config.network == "mainnet"
        assert sum(share.bps for share in config.stakeholders) == 10_000
        assert config.treasury_share.stakeholder_id == "treasury"
        assert config.rpc_endpoints[0].url == "https://api.mainnet-beta.solana.com"

    def test_local_file_overrides_base(self, config_files):
        base, local = config_files(
            {"claims": {"batch_size": 5, "tx_index_delay": 2.0}},
            {"claims": {"batch_size": 2}},
        )

        config = load(base, local)

        assert config.batch_size == 2
        assert config.tx_index_delay == 2.0

    def test_environment_wins(self, config_files, tmp_path):
        base, local = config_files({"wallets": {"treasury": ["from-file"]}})
        env = {
            "TREASURY_WALLETS": f" {TREASURY_WALLETS[0]}, ,{TREASURY_WALLETS[1]} ",
            "FEE_ENGINE_DB_PATH": str(tmp_path / "env.db"),
            "RPC_URL": "https://rpc.example.com",
            "PRIVATE_KEY": "secret",
        }

        config = load(base, local, env=env)

        assert config.treasury_wallets == TREASURY_WALLETS[:2]
        assert config.db_path == tmp_path / "env.db"
        assert [e.url for e in config.rpc_endpoints] == ["https://rpc.example.com"]
        assert config.claimer_private_key == "secret"
        assert "secret" not in repr(config)

    def test_provider_placeholder_resolves_from_env(self, config_files):
        base, local = config_files({
            "rpc": {"providers": {"primary": {"name": "helius", "url": "https://rpc.helius.xyz/?api-key=${HELIUS_KEY}"}}},
        })

        unset = load(base, local)
        resolved = load(base, local, env={"HELIUS_KEY": "k1"})

        assert unset.rpc_endpoints[0].name == "public_solana"
        assert resolved.rpc_endpoints[0].url.endswith("api-key=k1")

    def test_plausibility_table(self, config_files):
        base, local = config_files({"claims": {"plausibility": {"surplus_withdrawal": {"min": 1, "max": 50}}}})

        config = load(base, local)

        assert config.plausibility_for(ClaimAction.SURPLUS).max_plausible == 50
        assert config.plausibility_for(ClaimAction.CREATOR_FEE).min_plausible == 1_000

    def test_unknown_plausibility_action(self, config_files):
        base, local = config_files({"claims": {"plausibility": {"rebate": {"min": 1}}}})

        with pytest.raises(ConfigurationError):
            load(base, local)

    def test_invalid_json(self, tmp_path):
        base = tmp_path / "fee_engine.json"
        base.write_text("{not json")

        with pytest.raises(ConfigurationError, match="Invalid JSON"):
            load(base, tmp_path / "none.json")

    def test_bad_value_type(self, config_files):
        base, local = config_files({"claims": {"batch_size": "many"}})

        with pytest.raises(ConfigurationError):
            load(base, local)


class TestValidate:

    def _shares(self, treasury_bps=4500):
        shares = [StakeholderShare(f"s{i}", a, 1100) for i, a in enumerate(STAKEHOLDER_ADDRESSES)]
        shares.append(StakeholderShare("treasury", None, treasury_bps))
        return shares

    def test_valid_table(self):
        EngineConfig(stakeholders=self._shares()).validate()

    def test_bps_must_sum_to_denominator(self):
        with pytest.raises(ConfigurationError) as exc_info:
            EngineConfig(stakeholders=self._shares(treasury_bps=4000)).validate()
        assert exc_info.value.details["total_bps"] == 9_500

    def test_treasury_must_be_last(self):
        shares = self._shares()
        shares.insert(0, shares.pop())
        with pytest.raises(ConfigurationError):
            EngineConfig(stakeholders=shares).validate()

    def test_fixed_rows_need_addresses(self):
        shares = self._shares()
        shares[0].address = None
        with pytest.raises(ConfigurationError):
            EngineConfig(stakeholders=shares).validate()

    def test_batch_size_positive(self):
        with pytest.raises(ConfigurationError):
            EngineConfig(batch_size=0).validate()


def test_parse_address_list():
    assert parse_address_list(None) == []
    assert parse_address_list("a, b,,c ") == ["a", "b", "c"]

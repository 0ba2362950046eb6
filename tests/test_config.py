"""Test configuration loading and validation."""

import pytest

from flasharb.config import Config, ConfigError, get_config
from tests.sample_data import base_config_dict, make_config


class TestConfigDefaults:
    """Test configuration defaults."""

    def test_defaults(self):
        config = make_config()

        assert config.fees.loan_fee_bps == 9.0
        assert config.aggregator.poll_interval_ms == 10000
        assert config.detector.max_liquidity_fraction == 0.025
        assert config.detector.fee_basis == "profit"
        assert config.safety.failure_threshold == 3
        assert config.safety.cooldown_s == 300.0
        assert config.safety.gas_spike_factor == 2.5
        assert config.safety.competitive_slippage_multiplier == 1.3
        assert config.watcher.max_backrun_blocks == 2
        assert config.ledger.kind == "paper"

    def test_pair_borrow_token_defaults_to_token_b(self):
        config = make_config()
        assert config.pairs[0].borrowed == "TKB"
        assert config.pairs[0].key == "TKA/TKB"

    def test_get_fee_bps_with_pair_override(self):
        config = make_config(fees={"venue_pair_bps": {"uni": {"TKB/TKA": 5}}})

        assert config.get_fee_bps("uni", "TKA", "TKB") == 5
        assert config.get_fee_bps("uni") == 25
        assert config.get_fee_bps("sushi", "TKA", "TKB") == 30
        assert config.get_fee_override("sushi", "TKA", "TKB") is None

    def test_max_trade_size_per_token(self):
        config = make_config(detector={"max_trade_size": 50, "max_trade_size_by_token": {"TKA": 2}})

        assert config.get_max_trade_size("TKA") == 2
        assert config.get_max_trade_size("TKB") == 50

    def test_feed_and_gas_oracle_defaults(self):
        config = make_config()

        assert config.feed.kind is None
        assert config.gas_oracle.kind == "static"
        assert config.gas_oracle.params == {}
        assert config.watcher.frontrun_gas_premium == 1.3
        assert config.watcher.known_bots == []
        assert config.watcher.max_tracked == 10000
        assert config.watcher.tracked_ttl_s == 120.0


class TestConfigValidation:
    """Test startup validation."""

    def test_no_venues_rejected(self):
        with pytest.raises(ValueError):
            make_config(venues=[])

    def test_no_pairs_rejected(self):
        with pytest.raises(ValueError):
            make_config(pairs=[])

    def test_duplicate_venue_ids_rejected(self):
        with pytest.raises(ValueError, match="duplicate venue ids"):
            make_config(venues=[{"id": "uni", "kind": "paper"}, {"id": "uni", "kind": "paper"}])

    def test_borrow_token_outside_pair_rejected(self):
        with pytest.raises(ValueError):
            make_config(pairs=[{"token_a": "TKA", "token_b": "TKB", "borrow_token": "TKC"}])

    def test_liquidity_fraction_bounds(self):
        with pytest.raises(ValueError):
            make_config(detector={"max_liquidity_fraction": 0})
        with pytest.raises(ValueError):
            make_config(detector={"max_liquidity_fraction": 1.5})

    def test_unknown_fee_basis_rejected(self):
        with pytest.raises(ValueError):
            make_config(detector={"fee_basis": "gross"})

    def test_watcher_tracking_bounds(self):
        with pytest.raises(ValueError):
            make_config(watcher={"max_tracked": 0})
        with pytest.raises(ValueError):
            make_config(watcher={"tracked_ttl_s": 0})


class TestConfigLoading:
    """Test YAML loading."""

    def test_load_from_file_with_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FLASHARB_TEST_ADDRESS", "0xabc")
        path = tmp_path / "config.yaml"
        path.write_text(
            "venues:\n"
            "  - {id: uni, kind: paper, fee_bps: 25}\n"
            "  - {id: sushi, kind: paper}\n"
            "pairs:\n"
            "  - {token_a: TKA, token_b: TKB}\n"
            "watcher:\n"
            "  own_address: \"${FLASHARB_TEST_ADDRESS}\"\n"
        )

        config = get_config(str(path))

        assert isinstance(config, Config)
        assert config.watcher.own_address == "0xabc"
        assert config.get_venue("uni").fee_bps == 25
        assert config.get_venue("sushi").fee_bps == 30.0

    def test_missing_file_raises_config_error(self, tmp_path):
        with pytest.raises(ConfigError):
            Config.load_from_file(str(tmp_path / "missing.yaml"))

    def test_invalid_file_raises_config_error(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("venues: []\npairs: []\n")

        with pytest.raises(ConfigError):
            Config.load_from_file(str(path))

    def test_base_dict_is_valid(self):
        assert Config(**base_config_dict()).venues[0].id == "uni"

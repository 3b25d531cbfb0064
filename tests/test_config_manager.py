"""Tests for configuration loading, substitution and validation."""

import json
from decimal import Decimal

import pytest

from config_manager import ConfigManager, DEFAULT_EVENT_SIGNATURE, is_valid_address
from errors import ConfigurationError


def write_config(tmp_path, data):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data))
    return str(path)


def network_entry(**overrides):
    entry = {
        "network_id": "polygon",
        "display_name": "Polygon",
        "chain_id": 137,
        "contract_address": "0x" + "A1" * 20,
        "token_address": "0xc2132D05D31c914a87C6611C10748AEb04B58e8F",
        "rpc_urls": ["https://polygon-rpc.com"],
        "token_decimals": 6,
        "low_balance_threshold": 500,
    }
    entry.update(overrides)
    return entry


class TestLoading:
    """Tests for reading the config file"""

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            ConfigManager(str(tmp_path / "absent.json"))

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError, match="Invalid JSON"):
            ConfigManager(str(path))

    def test_env_substitution(self, tmp_path, monkeypatch):
        """${VAR} and ${VAR:-default} are resolved from the environment"""
        monkeypatch.setenv("TEST_VAULT", "0x" + "b2" * 20)
        monkeypatch.delenv("TEST_RPC", raising=False)
        path = write_config(tmp_path, {
            "networks": [network_entry(contract_address="${TEST_VAULT}", rpc_urls=["${TEST_RPC:-https://fallback.example}"])]
        })

        network = ConfigManager(path).get_network_definitions()[0]

        assert network.contract_address == "0x" + "b2" * 20
        assert network.rpc_urls == ["https://fallback.example"]

    def test_missing_env_var(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TEST_REQUIRED_VAR", raising=False)
        path = write_config(tmp_path, {"database_path": "${TEST_REQUIRED_VAR}"})

        with pytest.raises(ConfigurationError, match="TEST_REQUIRED_VAR"):
            ConfigManager(path)


class TestNetworkDefinitions:
    def test_definitions(self, tmp_path):
        """Network entries become NetworkConfig values with lowercase contracts"""
        path = write_config(tmp_path, {"networks": [network_entry()]})

        network = ConfigManager(path).get_network_definitions()[0]

        assert network.network_id == "polygon"
        assert network.contract_address == "0x" + "a1" * 20
        assert network.token_decimals == 6
        assert network.low_balance_threshold == Decimal("500")
        assert network.is_active
        assert network.is_configured

    def test_single_rpc_url(self, tmp_path):
        entry = network_entry()
        del entry["rpc_urls"]
        entry["rpc_url"] = "https://one.example"
        path = write_config(tmp_path, {"networks": [entry]})

        assert ConfigManager(path).get_network_definitions()[0].rpc_urls == ["https://one.example"]

    def test_invalid_definition(self, tmp_path):
        entry = network_entry()
        del entry["token_decimals"]
        path = write_config(tmp_path, {"networks": [entry]})

        with pytest.raises(ConfigurationError):
            ConfigManager(path).get_network_definitions()


class TestValidation:
    """Tests for validate_config"""

    def test_valid_config(self, tmp_path):
        path = write_config(tmp_path, {"networks": [network_entry()]})

        result = ConfigManager(path).validate_config()

        assert result["valid"]
        assert result["errors"] == []

    def test_invalid_entries(self, tmp_path):
        path = write_config(tmp_path, {
            "networks": [
                network_entry(contract_address="0x123", token_decimals=99),
                network_entry(rpc_urls=["ws://polygon.example"]),
            ],
            "sync": {"block_batch_size": 0},
        })

        result = ConfigManager(path).validate_config()

        assert not result["valid"]
        errors = "\n".join(result["errors"])
        assert "contract_address" in errors
        assert "token_decimals" in errors
        assert "duplicate network_id" in errors
        assert "rpc_urls must be HTTP/HTTPS URLs" in errors
        assert "sync.block_batch_size" in errors

    def test_missing_contract_is_a_warning(self, tmp_path):
        """An active network without a contract is allowed but flagged"""
        path = write_config(tmp_path, {"networks": [network_entry(contract_address="")]})

        result = ConfigManager(path).validate_config()

        assert result["valid"]
        assert any("no contract_address" in w for w in result["warnings"])

    def test_no_networks(self, tmp_path):
        result = ConfigManager(write_config(tmp_path, {})).validate_config()
        assert not result["valid"]


class TestSettings:
    """Tests for sync tuning and alerting getters"""

    def test_defaults(self, tmp_path):
        config = ConfigManager(write_config(tmp_path, {"networks": []}))

        assert config.get_bootstrap_offset() == 100
        assert config.get_block_batch_size() == 2000
        assert config.get_max_workers() == 4
        assert config.get_cycle_deadline_seconds() is None
        assert config.get_confirmations() == 0
        assert config.get_event_signature() == DEFAULT_EVENT_SIGNATURE

    def test_overrides(self, tmp_path):
        config = ConfigManager(write_config(tmp_path, {
            "sync": {"bootstrap_offset": 5, "block_batch_size": 50, "cycle_deadline_seconds": 50},
        }))

        assert config.get_bootstrap_offset() == 5
        assert config.get_block_batch_size() == 50
        assert config.get_cycle_deadline_seconds() == 50.0

    def test_heartbeat_webhook_falls_back_to_alerts(self, tmp_path):
        config = ConfigManager(write_config(tmp_path, {
            "discord_webhooks": {"alerts": "https://discord.com/api/webhooks/1/a", "heartbeat": ""},
        }))

        assert config.get_discord_webhook("heartbeat") == "https://discord.com/api/webhooks/1/a"

    def test_no_webhooks(self, tmp_path):
        config = ConfigManager(write_config(tmp_path, {"discord_webhooks": {"alerts": ""}}))
        assert config.get_discord_webhook("alerts") is None

    def test_absolute_database_path(self, tmp_path):
        config = ConfigManager(write_config(tmp_path, {"database_path": str(tmp_path / "db.duckdb")}))
        assert config.get_database_path() == str(tmp_path / "db.duckdb")


class TestAddressValidation:
    @pytest.mark.parametrize("address,valid", [
        ("0x" + "ab" * 20, True),
        ("0x" + "AB" * 20, True),
        ("0x" + "ab" * 19, False),
        ("ab" * 21, False),
        (None, False),
    ])
    def test_is_valid_address(self, address, valid):
        assert is_valid_address(address) is valid

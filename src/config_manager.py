#!/usr/bin/env python3
"""
Configuration Manager for the Deposit Sync engine

Loads a single JSON configuration with:
1. Environment variable substitution (${VAR} and ${VAR:-default} patterns)
2. Configuration validation
3. Network definitions used to seed the network registry
4. Sync tuning knobs with defaults
"""

import os
import json
import re
from typing import Dict, Any, List, Optional
from pathlib import Path

from dotenv import load_dotenv

from errors import ConfigurationError
from models import NetworkConfig

PROJECT_ROOT = Path(__file__).parent.parent

# look for .env file in the project root
load_dotenv(PROJECT_ROOT / '.env')

ADDRESS_PATTERN = re.compile(r'^0x[a-fA-F0-9]{40}$')

DEFAULT_EVENT_SIGNATURE = "DepositMade(address,uint256,uint256,uint256)"

SYNC_DEFAULTS = {
    'bootstrap_offset': 100,
    'block_batch_size': 2000,
    'max_workers': 4,
    'rpc_timeout': 15,
    'rpc_preference_reset_minutes': 60,
    'cycle_deadline_seconds': None,
    'lease_seconds': 300,
    'interval_seconds': 60,
    'retry_interval_seconds': 60,
    'max_backoff_seconds': 900,
    'confirmations': 0,
    'event_signature': DEFAULT_EVENT_SIGNATURE,
}


def is_valid_address(address: Optional[str]) -> bool:
    return isinstance(address, str) and bool(ADDRESS_PATTERN.match(address))


class ConfigManager:
    """Configuration for the deposit sync engine and its collaborators"""

    def __init__(self, config_file: Optional[str] = None):
        self.config_file = config_file or os.getenv('DEPOSIT_SYNC_CONFIG') or "config.json"
        self._config_data: Dict[str, Any] = {}
        self._load_config()

    def _resolve_path(self, path: str) -> Path:
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return PROJECT_ROOT / candidate

    def _load_config(self):
        """Load configuration from JSON file"""
        config_path = self._resolve_path(self.config_file)
        self.config_path = config_path

        try:
            with open(config_path, 'r') as f:
                content = f.read()
        except FileNotFoundError:
            raise ConfigurationError(f"Config file {config_path} not found")

        content = self._substitute_env_vars(content)
        try:
            self._config_data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in config file {config_path}: {e}")

    def _substitute_env_vars(self, content: str) -> str:
        """Substitute ${VAR} and ${VAR:-default} patterns with environment variables"""
        def replace_var(match):
            var_name = match.group(1)
            default = match.group(3)
            env_value = os.getenv(var_name)
            if env_value is None:
                if default is None:
                    raise ConfigurationError(f"Environment variable {var_name} is not set")
                return default
            return env_value

        pattern = r'\$\{([A-Z_][A-Z0-9_]*)(:-([^}]*))?\}'
        return re.sub(pattern, replace_var, content)

    def validate_config(self) -> Dict[str, Any]:
        """Validate the configuration and return validation results"""
        errors = []
        warnings = []

        networks = self._config_data.get('networks')
        if not isinstance(networks, list) or not networks:
            errors.append("networks must be a non-empty list")
            networks = []

        seen = set()
        for index, network in enumerate(networks):
            label = network.get('network_id') or f"networks[{index}]"
            if not network.get('network_id'):
                errors.append(f"{label}: missing required field network_id")
            elif network['network_id'] in seen:
                errors.append(f"{label}: duplicate network_id")
            seen.add(network.get('network_id'))

            decimals = network.get('token_decimals')
            if not isinstance(decimals, int) or not 0 <= decimals <= 36:
                errors.append(f"{label}: token_decimals must be an integer between 0 and 36")

            urls = network.get('rpc_urls') or ([network['rpc_url']] if network.get('rpc_url') else [])
            if not urls:
                errors.append(f"{label}: missing rpc_urls")
            elif not all(isinstance(u, str) and u.startswith(('http://', 'https://')) for u in urls):
                errors.append(f"{label}: rpc_urls must be HTTP/HTTPS URLs")

            contract = network.get('contract_address')
            if contract:
                if not is_valid_address(contract):
                    errors.append(f"{label}: contract_address must be a valid Ethereum address (0x...)")
            elif network.get('is_active', True):
                warnings.append(f"{label}: active network has no contract_address and will be skipped")

            token = network.get('token_address')
            if token and not is_valid_address(token):
                errors.append(f"{label}: token_address must be a valid Ethereum address (0x...)")

        sync = self._config_data.get('sync', {})
        for key in ('block_batch_size', 'max_workers', 'lease_seconds'):
            if key in sync and (not isinstance(sync[key], int) or sync[key] < 1):
                errors.append(f"sync.{key} must be a positive integer")
        for key in ('bootstrap_offset', 'confirmations'):
            if key in sync and (not isinstance(sync[key], int) or sync[key] < 0):
                errors.append(f"sync.{key} must be a non-negative integer")

        webhook = self.get_discord_webhook('alerts')
        if webhook and not webhook.startswith('https://discord.com/api/webhooks/'):
            warnings.append("discord_webhooks.alerts should be a Discord webhook URL")

        return {
            "valid": len(errors) == 0,
            "errors": errors,
            "warnings": warnings,
            "config_file": str(self.config_path),
        }

    # network definitions

    def get_network_definitions(self) -> List[NetworkConfig]:
        """Network entries from config, used to seed the registry"""
        try:
            return [NetworkConfig.from_dict(n) for n in self._config_data.get('networks', [])]
        except (KeyError, ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid network definition: {e}")

    # storage

    def get_data_dir(self) -> str:
        return str(self._resolve_path(self._config_data.get('data_dir', 'data')))

    def get_database_path(self) -> str:
        return str(self._resolve_path(self._config_data.get('database_path', 'databases/deposit_sync.duckdb')))

    def get_log_file(self) -> Optional[str]:
        log_file = self._config_data.get('log_file')
        return str(self._resolve_path(log_file)) if log_file else None

    def create_database_manager(self):
        """Create a database manager for the configured database file"""
        from database_manager import DepositSyncDB
        return DepositSyncDB(self.get_database_path())

    # alerting

    def get_discord_webhook(self, webhook_type: str) -> Optional[str]:
        """Get a Discord webhook URL by type (alerts, heartbeat)"""
        webhooks = self._config_data.get('discord_webhooks', {})
        url = webhooks.get(webhook_type)
        if url:
            return url
        if webhook_type == 'heartbeat':
            return webhooks.get('alerts') or None
        return None

    def get_heartbeat_frequency_days(self) -> int:
        return int(self._config_data.get('heartbeat_frequency_days', 7))

    # sync tuning

    def get_sync_settings(self) -> Dict[str, Any]:
        settings = dict(SYNC_DEFAULTS)
        settings.update(self._config_data.get('sync', {}))
        return settings

    def get_sync_setting(self, key: str):
        return self.get_sync_settings()[key]

    def get_bootstrap_offset(self) -> int:
        return int(self.get_sync_setting('bootstrap_offset'))

    def get_block_batch_size(self) -> int:
        return max(1, int(self.get_sync_setting('block_batch_size')))

    def get_max_workers(self) -> int:
        return max(1, int(self.get_sync_setting('max_workers')))

    def get_rpc_timeout(self) -> int:
        return int(self.get_sync_setting('rpc_timeout'))

    def get_rpc_preference_reset_minutes(self) -> int:
        try:
            return int(self.get_sync_setting('rpc_preference_reset_minutes'))
        except (TypeError, ValueError):
            return 60

    def get_cycle_deadline_seconds(self) -> Optional[float]:
        value = self.get_sync_setting('cycle_deadline_seconds')
        return float(value) if value else None

    def get_lease_seconds(self) -> int:
        return int(self.get_sync_setting('lease_seconds'))

    def get_monitoring_interval(self) -> int:
        return int(self.get_sync_setting('interval_seconds'))

    def get_retry_interval(self) -> int:
        return int(self.get_sync_setting('retry_interval_seconds'))

    def get_max_backoff_seconds(self) -> int:
        return int(self.get_sync_setting('max_backoff_seconds'))

    def get_confirmations(self) -> int:
        return max(0, int(self.get_sync_setting('confirmations')))

    def get_event_signature(self) -> str:
        return self.get_sync_setting('event_signature')


# Global configuration manager instance
_config_manager_instance = None


def get_config_manager() -> ConfigManager:
    """
    Get the global configuration manager instance (singleton pattern)
    """
    global _config_manager_instance

    if _config_manager_instance is None:
        _config_manager_instance = ConfigManager()

    return _config_manager_instance


def reset_config_manager_instance(config_file: Optional[str] = None) -> ConfigManager:
    """
    Reset the global configuration manager instance with optional config file override
    """
    global _config_manager_instance
    _config_manager_instance = ConfigManager(config_file)
    return _config_manager_instance

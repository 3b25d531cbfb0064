#!/usr/bin/env python3
"""
Low Balance Monitor

Reads the token balance held by each active network's vault contract,
stores it on the network row and raises a low_balance alert when it drops
below the network's threshold. Meant to run hourly.
"""

import logging
import time
from decimal import Decimal
from typing import Callable, Dict, Any, List, Optional

from web3 import Web3

from alert_dispatcher import AlertDispatcher, SEVERITY_CRITICAL, SEVERITY_WARNING
from chain_reader import scale_amount
from database_manager import DepositSyncDB, RUN_STATUS_SUCCESS, RUN_STATUS_FAILED
from models import NetworkConfig
from network_registry import NetworkRegistry
from rpc_failover import EVMProviderPool

logger = logging.getLogger(__name__)

JOB_NAME = "low-balance-monitor"

ERC20_BALANCE_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    }
]


class LowBalanceMonitor:
    def __init__(self, db: DepositSyncDB, registry: NetworkRegistry, alert_dispatcher: AlertDispatcher,
                 pool_factory: Optional[Callable[[NetworkConfig], EVMProviderPool]] = None,
                 rpc_timeout: int = 15):
        self.db = db
        self.registry = registry
        self.alerts = alert_dispatcher
        self.rpc_timeout = rpc_timeout
        self.pool_factory = pool_factory or self._default_pool

    def _default_pool(self, network: NetworkConfig) -> EVMProviderPool:
        return EVMProviderPool(network.rpc_urls, request_timeout_s=self.rpc_timeout, label=network.network_id)

    def read_balance(self, network: NetworkConfig) -> Decimal:
        """Token balance of the vault contract, scaled by token decimals"""
        pool = self.pool_factory(network)
        raw = pool.with_contract_call(
            network.token_address,
            ERC20_BALANCE_ABI,
            lambda contract: contract.functions.balanceOf(
                Web3.to_checksum_address(network.contract_address)
            ).call(),
        )
        return scale_amount(int(raw), network.token_decimals)

    def check_balances(self) -> Dict[str, Any]:
        """Check every active network once and log the run"""
        started = time.time()
        checked = 0
        low_balance = 0
        errors: List[str] = []

        networks = self.registry.get_active_networks()
        if not networks:
            logger.info("No active networks to monitor")

        for network in networks:
            if not network.contract_address:
                logger.info(f"Skipping {network.display_name}: no contract address configured")
                continue
            if not network.rpc_urls or not network.token_address:
                logger.info(f"Skipping {network.display_name}: no RPC URL or token address configured")
                continue

            try:
                balance = self.read_balance(network)
            except Exception as e:
                logger.error(f"❌ Error checking {network.display_name}: {e}")
                errors.append(f"{network.display_name}: {e}")
                self.alerts.raise_alert(
                    'network_error',
                    network.network_id,
                    SEVERITY_WARNING,
                    f"Balance Check Failed: {network.display_name}",
                    f"Failed to check balance on {network.display_name}: {e}",
                    {'error': str(e)},
                )
                continue

            checked += 1
            self.registry.update_hot_wallet_balance(network.network_id, balance)
            logger.info(f"💵 {network.display_name}: ${balance:.2f}")

            if balance < network.low_balance_threshold:
                low_balance += 1
                self.alerts.raise_alert(
                    'low_balance',
                    network.network_id,
                    SEVERITY_CRITICAL,
                    f"Low Balance: {network.display_name}",
                    f"Hot wallet balance on {network.display_name} is ${balance:.2f}, "
                    f"below threshold of ${network.low_balance_threshold}",
                    {'balance': str(balance), 'threshold': str(network.low_balance_threshold)},
                )

        duration_ms = int((time.time() - started) * 1000)
        self.db.log_run_outcome(
            JOB_NAME,
            RUN_STATUS_FAILED if errors else RUN_STATUS_SUCCESS,
            f"Checked {checked} networks, {low_balance} low balances",
            duration_ms,
            {'errors': errors} if errors else None,
        )

        return {
            'checked': checked,
            'low_balance': low_balance,
            'errors': errors,
            'duration_ms': duration_ms,
        }

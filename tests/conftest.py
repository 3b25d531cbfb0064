"""Pytest configuration and shared fixtures for all tests."""

import os
import sys
from decimal import Decimal
from pathlib import Path

# modules live flat under src/
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

os.environ.setdefault("DISCORD_WEBHOOK_ALERTS", "")

import pytest
from eth_abi import encode

from account_store import AccountStore
from alert_dispatcher import AlertDispatcher
from chain_reader import ChainEventReader, event_topic
from config_manager import DEFAULT_EVENT_SIGNATURE
from database_manager import DepositSyncDB
from deposit_attributor import DepositAttributor
from deposit_ledger import DepositLedger
from models import NetworkConfig
from network_registry import NetworkRegistry
from sync_orchestrator import SyncOrchestrator
from watermark_store import SyncWatermarkStore


POLYGON_VAULT = "0x" + "a1" * 20
BSC_VAULT = "0x" + "b2" * 20
ARBITRUM_VAULT = "0x" + "c3" * 20

ALICE = "0x" + "11" * 20
BOB = "0x" + "22" * 20
STRANGER = "0x" + "99" * 20

DEPOSIT_TOPIC = bytes.fromhex(event_topic(DEFAULT_EVENT_SIGNATURE)[2:])


def make_tx_hash(block_number, log_index=0, salt=0):
    return "0x" + f"{salt:016x}{block_number:024x}{log_index:024x}"


def make_deposit_log(contract, user, amount, block_number, log_index=0, tx_hash=None,
                     to_hot=None, to_cold=None):
    """Raw log as returned by eth_getLogs for a DepositMade event"""
    if to_hot is None:
        to_hot = amount
    if to_cold is None:
        to_cold = 0
    return {
        "address": contract,
        "topics": [DEPOSIT_TOPIC, bytes(12) + bytes.fromhex(user[2:])],
        "data": encode(["uint256", "uint256", "uint256"], [amount, to_hot, to_cold]),
        "blockNumber": block_number,
        "transactionHash": bytes.fromhex((tx_hash or make_tx_hash(block_number, log_index))[2:]),
        "logIndex": log_index,
        "removed": False,
    }


class FakeEth:
    def __init__(self, chain):
        self._chain = chain

    @property
    def block_number(self):
        if self._chain.fail_head:
            raise ConnectionError(f"{self._chain.name} head unavailable")
        return self._chain.head

    def get_logs(self, params):
        self._chain.get_logs_calls.append((params["fromBlock"], params["toBlock"]))
        if self._chain.fail_logs:
            raise TimeoutError(f"{self._chain.name} eth_getLogs timed out")
        return [
            log for log in self._chain.logs
            if params["fromBlock"] <= log["blockNumber"] <= params["toBlock"]
        ]


class FakeWeb3:
    def __init__(self, chain):
        self.eth = FakeEth(chain)


class FakeChain:
    """In-memory chain served through the provider pool interface"""

    def __init__(self, name="chain", head=0):
        self.name = name
        self.head = head
        self.logs = []
        self.fail_head = False
        self.fail_logs = False
        self.get_logs_calls = []

    def with_web3(self, fn, max_attempts=None):
        return fn(FakeWeb3(self))

    def add_log(self, log):
        self.logs.append(log)
        return log


@pytest.fixture
def db(tmp_path):
    return DepositSyncDB(str(tmp_path / "deposit_sync.duckdb"))


@pytest.fixture
def alerts(db):
    return AlertDispatcher(db)


@pytest.fixture
def ledger(db):
    return DepositLedger(db)


@pytest.fixture
def accounts(db):
    return AccountStore(db)


@pytest.fixture
def watermarks(db):
    return SyncWatermarkStore(db)


@pytest.fixture
def registry(db, alerts):
    return NetworkRegistry(db, alerts)


@pytest.fixture
def attributor(db, ledger, accounts, alerts):
    return DepositAttributor(db, ledger, accounts, alerts)


@pytest.fixture
def polygon():
    return NetworkConfig(
        network_id="polygon",
        display_name="Polygon",
        chain_id=137,
        contract_address=POLYGON_VAULT,
        rpc_urls=["https://polygon.example"],
        token_decimals=6,
        low_balance_threshold=Decimal("500"),
        token_address="0xc2132d05d31c914a87c6611c10748aeb04b58e8f",
    )


@pytest.fixture
def bsc():
    return NetworkConfig(
        network_id="bsc",
        display_name="BNB-BSC(BEP20)",
        chain_id=56,
        contract_address=BSC_VAULT,
        rpc_urls=["https://bsc.example"],
        token_decimals=18,
        low_balance_threshold=Decimal("500"),
        token_address="0x55d398326f99059ff775485246999027b3197955",
    )


@pytest.fixture
def arbitrum():
    return NetworkConfig(
        network_id="arbitrum",
        display_name="Arbitrum",
        chain_id=42161,
        contract_address=ARBITRUM_VAULT,
        rpc_urls=["https://arbitrum.example"],
        token_decimals=6,
        low_balance_threshold=Decimal("500"),
        token_address="0xfd086bc7cd5c481dcc9c85ebe478a1c0b69fcbb9",
    )


@pytest.fixture
def alice(accounts):
    accounts.add_user("user-alice", email="alice@example.com", deposit_address=ALICE)
    return "user-alice"


@pytest.fixture
def make_orchestrator(db, registry, watermarks, attributor, alerts):
    """Build an orchestrator reading from FakeChain instances keyed by network id"""
    def factory(chains, block_batch_size=2000, **kwargs):
        def reader_factory(network):
            return ChainEventReader(network, chains[network.network_id], block_batch_size=block_batch_size)

        kwargs.setdefault("retry_interval", 0)
        return SyncOrchestrator(
            db=db,
            registry=registry,
            watermarks=watermarks,
            attributor=attributor,
            alert_dispatcher=alerts,
            reader_factory=reader_factory,
            **kwargs,
        )
    return factory

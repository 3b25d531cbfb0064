"""
Record types passed between the deposit sync components.

Rows read from DuckDB are converted into these dataclasses at the store
boundary so the engine never handles raw tuples.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional


WATERMARK_IDLE = "idle"
WATERMARK_SYNCING = "syncing"
WATERMARK_ERROR = "error"

DEPOSIT_CREDITED = "credited"
DEPOSIT_UNLINKED = "unlinked"

# cycle outcomes reported by NetworkSyncCycle
CYCLE_SYNCED = "synced"
CYCLE_UP_TO_DATE = "up_to_date"
CYCLE_SKIPPED = "skipped"
CYCLE_BUSY = "busy"
CYCLE_BACKOFF = "backoff"
CYCLE_DEADLINE = "deadline"
CYCLE_FAILED = "failed"


@dataclass(frozen=True)
class NetworkConfig:
    network_id: str
    display_name: str
    chain_id: int
    contract_address: str
    rpc_urls: List[str]
    token_decimals: int
    is_active: bool = True
    is_paused: bool = False
    low_balance_threshold: Decimal = Decimal("0")
    token_address: Optional[str] = None
    block_explorer: Optional[str] = None
    hot_wallet_balance: Optional[Decimal] = None

    @property
    def rpc_endpoint(self) -> Optional[str]:
        return self.rpc_urls[0] if self.rpc_urls else None

    @property
    def is_configured(self) -> bool:
        return bool(self.contract_address) and bool(self.rpc_urls)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkConfig":
        """Build from a config.json network entry"""
        rpc_urls = data.get("rpc_urls")
        if not rpc_urls and data.get("rpc_url"):
            rpc_urls = [data["rpc_url"]]
        return cls(
            network_id=data["network_id"],
            display_name=data.get("display_name", data["network_id"]),
            chain_id=int(data.get("chain_id", 0)),
            contract_address=(data.get("contract_address") or "").lower(),
            rpc_urls=list(rpc_urls or []),
            token_decimals=int(data["token_decimals"]),
            is_active=bool(data.get("is_active", True)),
            is_paused=bool(data.get("is_paused", False)),
            low_balance_threshold=Decimal(str(data.get("low_balance_threshold", 0))),
            token_address=(data.get("token_address") or None),
            block_explorer=data.get("block_explorer"),
        )


@dataclass
class SyncWatermark:
    network_id: str
    contract_address: str
    last_checked_block: int
    status: str = WATERMARK_IDLE
    events_processed: int = 0
    last_synced_at: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    next_retry_at: Optional[float] = None


@dataclass(frozen=True)
class DepositEvent:
    """A decoded DepositMade log"""
    user: str
    amount_raw: int
    tx_hash: str
    block_number: int
    log_index: int = 0
    to_hot_wallet: Optional[int] = None
    to_cold_wallet: Optional[int] = None

    @property
    def sort_key(self):
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class MalformedLog:
    """A log that failed strict decoding"""
    reason: str
    raw_log: Dict[str, Any]
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    log_index: Optional[int] = None

    @property
    def sort_key(self):
        return (self.block_number if self.block_number is not None else -1,
                self.log_index if self.log_index is not None else -1)

    def raw_json(self) -> str:
        return json.dumps(self.raw_log, default=str, sort_keys=True)


@dataclass(frozen=True)
class DepositRecord:
    tx_hash: str
    from_address: str
    to_address: str
    amount_decimal: Decimal
    amount_raw: str
    block_number: int
    network_id: str
    contract_address: str
    user_id: Optional[str] = None
    log_index: int = 0
    status: str = DEPOSIT_UNLINKED
    observed_at: Optional[datetime] = None

    @property
    def is_linked(self) -> bool:
        return self.user_id is not None


@dataclass(frozen=True)
class Alert:
    id: int
    kind: str
    network_id: Optional[str]
    severity: str
    title: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    is_read: bool = False
    created_at: Optional[datetime] = None
    read_at: Optional[datetime] = None


@dataclass(frozen=True)
class AttributionResult:
    credited: bool
    user_id: Optional[str] = None
    duplicate: bool = False
    amount: Optional[Decimal] = None

    @property
    def recorded(self) -> bool:
        """True when this call created a new DepositRecord"""
        return not self.duplicate


@dataclass
class BatchOutcome:
    """Result of applying one window of events"""
    recorded: int = 0
    credited: int = 0
    unlinked: int = 0
    duplicates: int = 0
    quarantined: int = 0
    failed_blocks: List[int] = field(default_factory=list)

    @property
    def lowest_failed_block(self) -> Optional[int]:
        return min(self.failed_blocks) if self.failed_blocks else None


@dataclass
class NetworkCycleResult:
    network_id: str
    status: str
    events_processed: int = 0
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == CYCLE_FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "network_id": self.network_id,
            "status": self.status,
            "events_processed": self.events_processed,
            "from_block": self.from_block,
            "to_block": self.to_block,
            "error": self.error,
        }


@dataclass
class RunSummary:
    networks_checked: int
    total_events_processed: int
    errors: List[str]
    duration_ms: int
    results: List[NetworkCycleResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "networks_checked": self.networks_checked,
            "total_events_processed": self.total_events_processed,
            "errors": list(self.errors),
            "duration_ms": self.duration_ms,
            "results": [r.to_dict() for r in self.results],
        }

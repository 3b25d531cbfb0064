"""
Deposit Attributor

Turns a decoded deposit event into ledger effects. Each event goes through
the same steps:

1. dedup by transaction hash (an already recorded hash is a no-op)
2. scale the raw amount by the network's token decimals
3. resolve the sender address to a user
4. unlinked sender: record the deposit with no user and alert an operator
5. linked sender: record the deposit, credit the balance, write the audit
   transaction and queue the user notification in one DuckDB transaction

Credits for the same user are serialized with an in-process lock.
"""

import logging
import threading
from collections import defaultdict
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Union

from account_store import AccountStore
from alert_dispatcher import AlertDispatcher, SEVERITY_WARNING
from chain_reader import scale_amount
from database_manager import DepositSyncDB
from deposit_ledger import DepositLedger
from errors import LedgerError
from models import (
    NetworkConfig, DepositEvent, MalformedLog, DepositRecord, AttributionResult, BatchOutcome,
    DEPOSIT_CREDITED, DEPOSIT_UNLINKED,
)

logger = logging.getLogger(__name__)


class DuplicateDepositError(LedgerError):
    """Raised inside a credit transaction when the tx hash is already recorded"""
    pass


class DepositAttributor:
    def __init__(self, db: DepositSyncDB, ledger: DepositLedger, accounts: AccountStore,
                 alert_dispatcher: AlertDispatcher):
        self.db = db
        self.ledger = ledger
        self.accounts = accounts
        self.alerts = alert_dispatcher
        self._user_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._user_locks_guard = threading.Lock()

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._user_locks_guard:
            return self._user_locks[user_id]

    @staticmethod
    def build_record(event: DepositEvent, network: NetworkConfig, amount: Decimal,
                     user_id: Optional[str]) -> DepositRecord:
        return DepositRecord(
            tx_hash=event.tx_hash.lower(),
            from_address=event.user.lower(),
            to_address=network.contract_address.lower(),
            amount_decimal=amount,
            amount_raw=str(event.amount_raw),
            block_number=event.block_number,
            network_id=network.network_id,
            contract_address=network.contract_address.lower(),
            user_id=user_id,
            log_index=event.log_index,
            status=DEPOSIT_CREDITED if user_id else DEPOSIT_UNLINKED,
        )

    def process(self, event: DepositEvent, network: NetworkConfig) -> AttributionResult:
        """Apply one deposit event exactly once"""
        if self.ledger.exists(event.tx_hash):
            logger.debug(f"[{network.network_id}] deposit {event.tx_hash} already processed")
            return AttributionResult(credited=False, duplicate=True)

        amount = scale_amount(event.amount_raw, network.token_decimals)

        user_id = self.accounts.get_user_by_deposit_address(event.user)
        if user_id is None:
            return self._record_unlinked(event, network, amount)
        return self._credit_linked(event, network, amount, user_id)

    def _record_unlinked(self, event: DepositEvent, network: NetworkConfig,
                         amount: Decimal) -> AttributionResult:
        record = self.build_record(event, network, amount, None)
        if not self.ledger.record(record):
            return AttributionResult(credited=False, duplicate=True)

        logger.warning(f"⚠️ [{network.network_id}] unlinked deposit of {amount} from {event.user} ({event.tx_hash})")
        self.alerts.raise_alert(
            'unlinked_deposit',
            network.network_id,
            SEVERITY_WARNING,
            f"Unlinked Deposit: {network.display_name}",
            f"Deposit of ${amount:.2f} from {event.user[:10]}... has no linked user",
            {
                'tx_hash': event.tx_hash,
                'amount': str(amount),
                'address': event.user.lower(),
                'network': network.network_id,
            },
        )
        return AttributionResult(credited=False, user_id=None, amount=amount)

    def _credit_linked(self, event: DepositEvent, network: NetworkConfig, amount: Decimal,
                       user_id: str) -> AttributionResult:
        record = self.build_record(event, network, amount, user_id)

        with self._user_lock(user_id):
            try:
                with self.db.transaction() as conn:
                    if self.ledger.exists(event.tx_hash, conn=conn) or not self.ledger.insert(conn, record):
                        raise DuplicateDepositError(event.tx_hash)
                    new_balance = self.accounts.apply_deposit_credit(
                        conn, user_id, amount, record.tx_hash, record.from_address
                    )
            except DuplicateDepositError:
                logger.debug(f"[{network.network_id}] deposit {event.tx_hash} recorded concurrently")
                return AttributionResult(credited=False, user_id=user_id, duplicate=True)

        logger.info(
            f"💰 [{network.network_id}] credited {amount} to {user_id} "
            f"(block {event.block_number}, balance {new_balance})"
        )
        return AttributionResult(credited=True, user_id=user_id, amount=amount)

    def process_batch(self, items: Sequence[Union[DepositEvent, MalformedLog]],
                      network: NetworkConfig) -> BatchOutcome:
        """Apply a window of decoded logs in (block, log index) order.

        A failing event does not stop the rest of the window; its block is
        reported so the caller can hold the watermark below it.
        """
        outcome = BatchOutcome()

        for item in sorted(items, key=lambda i: i.sort_key):
            if isinstance(item, MalformedLog):
                self._quarantine(item, network, outcome)
                continue

            try:
                result = self.process(item, network)
            except Exception as e:
                logger.exception(f"[{network.network_id}] failed to apply deposit {item.tx_hash}: {e}")
                outcome.failed_blocks.append(item.block_number)
                continue

            if result.duplicate:
                outcome.duplicates += 1
            else:
                outcome.recorded += 1
                if result.credited:
                    outcome.credited += 1
                else:
                    outcome.unlinked += 1

        return outcome

    def _quarantine(self, item: MalformedLog, network: NetworkConfig, outcome: BatchOutcome):
        try:
            first_seen = self.ledger.quarantine(network.network_id, item)
        except Exception as e:
            logger.exception(f"[{network.network_id}] failed to quarantine malformed log: {e}")
            if item.block_number is not None:
                outcome.failed_blocks.append(item.block_number)
            return

        outcome.quarantined += 1
        if first_seen:
            self.alerts.raise_alert(
                'malformed_event',
                network.network_id,
                SEVERITY_WARNING,
                f"Malformed Deposit Event: {network.display_name}",
                f"Skipped a deposit log that failed decoding: {item.reason}",
                {
                    'tx_hash': item.tx_hash,
                    'block_number': item.block_number,
                    'log_index': item.log_index,
                    'reason': item.reason,
                },
            )

    def link_unlinked_deposit(self, tx_hash: str, user_id: str) -> AttributionResult:
        """Credit a previously unlinked deposit to a user, at most once"""
        record = self.ledger.get_by_tx_hash(tx_hash)
        if record is None:
            raise LedgerError(f"Deposit {tx_hash} not found")
        if record.is_linked:
            return AttributionResult(credited=False, user_id=record.user_id, duplicate=True)
        if self.accounts.get_user(user_id) is None:
            raise LedgerError(f"User {user_id} not found")

        with self._user_lock(user_id):
            try:
                with self.db.transaction() as conn:
                    if not self.ledger.mark_linked(conn, record.tx_hash, user_id):
                        raise DuplicateDepositError(record.tx_hash)
                    self.accounts.apply_deposit_credit(
                        conn, user_id, record.amount_decimal, record.tx_hash, record.from_address
                    )
            except DuplicateDepositError:
                return AttributionResult(credited=False, user_id=None, duplicate=True)

        logger.info(f"🔗 Linked deposit {record.tx_hash} to {user_id}, credited {record.amount_decimal}")
        return AttributionResult(credited=True, user_id=user_id, amount=record.amount_decimal)


def summarize_outcomes(outcomes: List[BatchOutcome]) -> BatchOutcome:
    total = BatchOutcome()
    for outcome in outcomes:
        total.recorded += outcome.recorded
        total.credited += outcome.credited
        total.unlinked += outcome.unlinked
        total.duplicates += outcome.duplicates
        total.quarantined += outcome.quarantined
        total.failed_blocks.extend(outcome.failed_blocks)
    return total

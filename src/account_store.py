"""
Accounts, deposit address linking, balances, audit transactions and the user
notification queue.

Write helpers take an optional connection so the attributor can run a credit,
its audit transaction and its notification inside one DuckDB transaction.
"""

import json
import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Optional, Dict, Any, List

import duckdb

from config_manager import is_valid_address
from database_manager import DepositSyncDB
from errors import AccountError, LedgerError

logger = logging.getLogger(__name__)

TRANSACTION_TYPE_DEPOSIT = "deposit"
TRANSACTION_STATUS_APPROVED = "approved"

NOTIFICATION_EARNINGS = "earnings"
NOTIFICATION_SYSTEM = "system"


class AccountStore:
    def __init__(self, db: DepositSyncDB):
        self.db = db

    @contextmanager
    def _connection(self, conn=None):
        if conn is not None:
            yield conn
        else:
            with self.db.get_connection() as own_conn:
                yield own_conn

    # Users

    def add_user(self, user_id: str, email: Optional[str] = None,
                 deposit_address: Optional[str] = None) -> Dict[str, Any]:
        try:
            with self.db.get_connection() as conn:
                conn.execute(
                    "INSERT INTO users (user_id, email, balance) VALUES (?, ?, 0)",
                    [user_id, email]
                )
        except duckdb.ConstraintException:
            raise AccountError(f"User {user_id} already exists")

        logger.info(f"👤 Added user {user_id}")
        if deposit_address:
            self.set_deposit_address(user_id, deposit_address)
        return self.get_user(user_id)

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self.db.get_connection() as conn:
            row = conn.execute("""
                SELECT user_id, email, deposit_address, deposit_address_linked_at, balance, created_at
                FROM users WHERE user_id = ?
            """, [user_id]).fetchone()
        if not row:
            return None
        return {
            'user_id': row[0],
            'email': row[1],
            'deposit_address': row[2],
            'deposit_address_linked_at': row[3],
            'balance': row[4],
            'created_at': row[5],
        }

    def get_user_by_deposit_address(self, address: str, conn=None) -> Optional[str]:
        """Resolve a deposit address to a user id, case-insensitively"""
        if not address:
            return None
        with self._connection(conn) as c:
            row = c.execute(
                "SELECT user_id FROM users WHERE deposit_address = ? ORDER BY created_at LIMIT 1",
                [address.lower()]
            ).fetchone()
        return row[0] if row else None

    def set_deposit_address(self, user_id: str, address: str) -> str:
        """Link a deposit address to a user, returning the stored lowercase form"""
        if not is_valid_address(address):
            raise AccountError("Invalid Ethereum address format. Must be 42 characters starting with 0x")

        normalized = address.lower()

        with self.db.transaction() as conn:
            owner = self.get_user_by_deposit_address(normalized, conn=conn)
            if owner is not None and owner != user_id:
                raise AccountError("This address is already linked to another account")

            updated = conn.execute("""
                UPDATE users SET deposit_address = ?, deposit_address_linked_at = CURRENT_TIMESTAMP
                WHERE user_id = ?
                RETURNING user_id
            """, [normalized, user_id]).fetchone()
            if updated is None:
                raise AccountError(f"User {user_id} not found")

            self.enqueue_notification(
                user_id,
                NOTIFICATION_SYSTEM,
                "Deposit Address Linked",
                f"Your deposit address {normalized[:10]}... has been successfully linked. "
                f"You can now receive blockchain deposits.",
                {'address': normalized},
                conn=conn,
            )

        logger.info(f"🔗 Linked deposit address {normalized} to user {user_id}")
        return normalized

    # Balances

    def get_balance(self, user_id: str) -> Optional[Decimal]:
        with self.db.get_connection() as conn:
            row = conn.execute("SELECT balance FROM users WHERE user_id = ?", [user_id]).fetchone()
        return row[0] if row else None

    def get_total_balance(self) -> Decimal:
        with self.db.get_connection() as conn:
            row = conn.execute("SELECT COALESCE(SUM(balance), 0) FROM users").fetchone()
        return Decimal(row[0])

    def credit_user_balance(self, user_id: str, amount: Decimal, conn=None) -> Decimal:
        """Add amount to a user's balance and return the new balance"""
        with self._connection(conn) as c:
            row = c.execute("""
                UPDATE users SET balance = balance + ?
                WHERE user_id = ?
                RETURNING balance
            """, [amount, user_id]).fetchone()
        if row is None:
            raise LedgerError(f"Cannot credit unknown user {user_id}")
        return row[0]

    # Audit transactions

    def record_transaction(self, user_id: str, amount: Decimal, reference_id: str,
                           description: str, tx_type: str = TRANSACTION_TYPE_DEPOSIT,
                           status: str = TRANSACTION_STATUS_APPROVED, conn=None) -> int:
        with self._connection(conn) as c:
            row = c.execute("""
                INSERT INTO transactions (user_id, amount, type, reference_id, description, status)
                VALUES (?, ?, ?, ?, ?, ?)
                RETURNING id
            """, [user_id, amount, tx_type, reference_id, description, status]).fetchone()
        return row[0]

    def get_transactions(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        with self.db.get_connection() as conn:
            rows = conn.execute("""
                SELECT id, amount, type, reference_id, description, status, created_at
                FROM transactions WHERE user_id = ?
                ORDER BY id DESC LIMIT ?
            """, [user_id, limit]).fetchall()
        return [{
            'id': r[0],
            'amount': r[1],
            'type': r[2],
            'reference_id': r[3],
            'description': r[4],
            'status': r[5],
            'created_at': r[6],
        } for r in rows]

    # Notifications

    def enqueue_notification(self, user_id: str, kind: str, title: str, message: str,
                             data: Optional[Dict[str, Any]] = None, conn=None) -> int:
        with self._connection(conn) as c:
            row = c.execute("""
                INSERT INTO notifications (user_id, kind, title, message, data)
                VALUES (?, ?, ?, ?, ?)
                RETURNING id
            """, [user_id, kind, title, message, json.dumps(data or {}, default=str)]).fetchone()
        return row[0]

    def get_notifications(self, user_id: str, unread_only: bool = False) -> List[Dict[str, Any]]:
        sql = "SELECT id, kind, title, message, data, is_read, created_at FROM notifications WHERE user_id = ?"
        if unread_only:
            sql += " AND NOT is_read"
        sql += " ORDER BY id DESC"
        with self.db.get_connection() as conn:
            rows = conn.execute(sql, [user_id]).fetchall()
        return [{
            'id': r[0],
            'kind': r[1],
            'title': r[2],
            'message': r[3],
            'data': json.loads(r[4]) if r[4] else {},
            'is_read': r[5],
            'created_at': r[6],
        } for r in rows]

    # Deposit credit

    def apply_deposit_credit(self, conn, user_id: str, amount: Decimal, tx_hash: str,
                             from_address: str) -> Decimal:
        """Balance increment, audit transaction and notification for one deposit.

        Must run on the caller's transaction connection so the three writes
        commit together with the deposit record.
        """
        new_balance = self.credit_user_balance(user_id, amount, conn=conn)
        self.record_transaction(
            user_id,
            amount,
            tx_hash,
            f"Blockchain deposit from {from_address[:10]}...",
            conn=conn,
        )
        self.enqueue_notification(
            user_id,
            NOTIFICATION_EARNINGS,
            "Deposit Received",
            f"You received ${amount:.2f} USDT from blockchain deposit",
            {'tx_hash': tx_hash, 'amount': str(amount), 'from_address': from_address},
            conn=conn,
        )
        return new_balance

"""
Append-only record of observed deposit events.

The transaction hash is the dedup key: a second insert for the same hash is
rejected by the primary key. Logs that fail strict decoding are kept in the
skipped_events quarantine instead.
"""

import logging
from typing import List, Optional, Dict, Any

import duckdb

from database_manager import DepositSyncDB
from errors import LedgerError
from models import DepositRecord, MalformedLog, DEPOSIT_CREDITED, DEPOSIT_UNLINKED

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = """tx_hash, from_address, to_address, amount_decimal, amount_raw, block_number,
    network_id, contract_address, user_id, log_index, status, observed_at"""


class DepositLedger:
    def __init__(self, db: DepositSyncDB):
        self.db = db

    @staticmethod
    def _row_to_record(row) -> DepositRecord:
        return DepositRecord(
            tx_hash=row[0],
            from_address=row[1],
            to_address=row[2],
            amount_decimal=row[3],
            amount_raw=row[4],
            block_number=int(row[5]),
            network_id=row[6],
            contract_address=row[7],
            user_id=row[8],
            log_index=int(row[9] or 0),
            status=row[10],
            observed_at=row[11],
        )

    def exists(self, tx_hash: str, conn=None) -> bool:
        """Check whether a deposit with this tx hash was already recorded"""
        sql = "SELECT 1 FROM deposit_records WHERE tx_hash = ?"
        if conn is not None:
            return conn.execute(sql, [tx_hash.lower()]).fetchone() is not None
        with self.db.get_connection() as own_conn:
            return own_conn.execute(sql, [tx_hash.lower()]).fetchone() is not None

    def insert(self, conn, record: DepositRecord) -> bool:
        """Insert a record on the caller's connection.

        Returns False when the tx hash is already present. Inside an explicit
        transaction the constraint error aborts it, so callers in that
        situation must roll back.
        """
        try:
            conn.execute(f"""
                INSERT INTO deposit_records ({_RECORD_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            """, [
                record.tx_hash.lower(),
                record.from_address.lower(),
                record.to_address.lower(),
                record.amount_decimal,
                record.amount_raw,
                record.block_number,
                record.network_id,
                record.contract_address.lower(),
                record.user_id,
                record.log_index,
                record.status,
            ])
            return True
        except duckdb.ConstraintException:
            logger.debug(f"Deposit {record.tx_hash} already recorded")
            return False

    def record(self, record: DepositRecord) -> bool:
        """Insert a record on its own connection"""
        with self.db.get_connection() as conn:
            return self.insert(conn, record)

    def mark_linked(self, conn, tx_hash: str, user_id: str) -> bool:
        """Attach a user to an unlinked record; False if it was already linked"""
        row = conn.execute("""
            UPDATE deposit_records
            SET user_id = ?, status = ?, linked_at = CURRENT_TIMESTAMP
            WHERE tx_hash = ? AND user_id IS NULL
            RETURNING tx_hash
        """, [user_id, DEPOSIT_CREDITED, tx_hash.lower()]).fetchone()
        return row is not None

    # Queries

    def get_by_tx_hash(self, tx_hash: str) -> Optional[DepositRecord]:
        with self.db.get_connection() as conn:
            row = conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM deposit_records WHERE tx_hash = ?",
                [tx_hash.lower()]
            ).fetchone()
        return self._row_to_record(row) if row else None

    def get_by_block_range(self, from_block: int, to_block: int,
                           network_id: Optional[str] = None) -> List[DepositRecord]:
        if from_block > to_block:
            raise LedgerError(f"Invalid block range {from_block}-{to_block}")

        sql = f"SELECT {_RECORD_COLUMNS} FROM deposit_records WHERE block_number BETWEEN ? AND ?"
        params: List[Any] = [from_block, to_block]
        if network_id:
            sql += " AND network_id = ?"
            params.append(network_id)
        sql += " ORDER BY network_id, block_number, log_index"

        with self.db.get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_record(r) for r in rows]

    def get_unlinked(self, network_id: Optional[str] = None) -> List[DepositRecord]:
        sql = f"SELECT {_RECORD_COLUMNS} FROM deposit_records WHERE user_id IS NULL"
        params: List[Any] = []
        if network_id:
            sql += " AND network_id = ?"
            params.append(network_id)
        sql += " ORDER BY observed_at DESC"

        with self.db.get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_record(r) for r in rows]

    def count(self, network_id: Optional[str] = None, status: Optional[str] = None) -> int:
        sql = "SELECT COUNT(*) FROM deposit_records WHERE 1=1"
        params: List[Any] = []
        if network_id:
            sql += " AND network_id = ?"
            params.append(network_id)
        if status in (DEPOSIT_CREDITED, DEPOSIT_UNLINKED):
            sql += " AND status = ?"
            params.append(status)
        with self.db.get_connection() as conn:
            return conn.execute(sql, params).fetchone()[0]

    # Quarantine

    def quarantine(self, network_id: str, malformed: MalformedLog) -> bool:
        """Store a malformed log; True only the first time this log is seen"""
        tx_hash = (malformed.tx_hash or "").lower()
        log_index = malformed.log_index if malformed.log_index is not None else -1

        with self.db.get_connection() as conn:
            existing = conn.execute("""
                SELECT 1 FROM skipped_events
                WHERE network_id = ? AND tx_hash = ? AND log_index = ?
            """, [network_id, tx_hash, log_index]).fetchone()
            if existing:
                return False

            conn.execute("""
                INSERT INTO skipped_events (network_id, tx_hash, log_index, block_number, reason, raw_log)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [network_id, tx_hash, log_index, malformed.block_number,
                  malformed.reason, malformed.raw_json()])

        logger.warning(f"⚠️ [{network_id}] quarantined log {tx_hash or '?'}#{log_index}: {malformed.reason}")
        return True

    def get_skipped(self, network_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        sql = """SELECT network_id, tx_hash, log_index, block_number, reason, raw_log, created_at
                 FROM skipped_events"""
        params: List[Any] = []
        if network_id:
            sql += " WHERE network_id = ?"
            params.append(network_id)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        with self.db.get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()

        return [{
            'network_id': r[0],
            'tx_hash': r[1],
            'log_index': r[2],
            'block_number': r[3],
            'reason': r[4],
            'raw_log': r[5],
            'created_at': r[6],
        } for r in rows]

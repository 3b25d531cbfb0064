"""
Database manager for deposit sync data using DuckDB.

This module owns the DuckDB file: connection handling with lock retry,
the schema, multi-statement transactions, and the tables that are shared by
every component (execution log, component state). Component modules issue
their own SQL through the connections handed out here.

All access is serialized through one process-wide re-entrant lock so that
worker threads syncing different networks can share the file safely.
"""

import duckdb
import json
import os
import logging
import threading
import time
import random
from typing import Dict, Any, List, Optional
from contextlib import contextmanager

from errors import DatabaseLockError

logger = logging.getLogger(__name__)

AMOUNT_TYPE = "DECIMAL(38,18)"

RUN_STATUS_SUCCESS = "success"
RUN_STATUS_FAILED = "failed"


class DepositSyncDB:
    """DuckDB storage for networks, accounts, watermarks, deposits and alerts"""

    _locks: Dict[str, threading.RLock] = {}
    _locks_guard = threading.Lock()

    def __init__(self, database_path: str):
        """
        Initialize database manager

        Args:
            database_path: Path to the DuckDB database file
        """
        self.database_path = database_path

        db_dir = os.path.dirname(database_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        # one lock per database file, shared by every manager in the process
        with self._locks_guard:
            key = os.path.abspath(database_path)
            if key not in self._locks:
                self._locks[key] = threading.RLock()
            self._lock = self._locks[key]

        self.init_database()

        logger.debug(f"Initialized DepositSyncDB at {database_path}")

    def is_database_lock_error(self, error: Exception) -> bool:
        """Check if error is a DuckDB lock conflict"""
        error_str = str(error).lower()
        return (
            "could not set lock on file" in error_str or
            "conflicting lock is held" in error_str or
            "database is locked" in error_str or
            "io error" in error_str and "lock" in error_str
        )

    def _connect_with_retry(self, max_retries: int, base_delay: float):
        for attempt in range(max_retries):
            try:
                return duckdb.connect(self.database_path)
            except Exception as e:
                if not self.is_database_lock_error(e):
                    raise
                if attempt == max_retries - 1:
                    raise DatabaseLockError(f"Database locked after {max_retries} attempts: {e}")
                # exponential backoff with jitter
                delay = base_delay * (2 ** attempt) * (1 + random.uniform(-0.1, 0.1))
                logger.warning(f"Database locked, retrying in {delay:.1f}s (attempt {attempt + 1}/{max_retries})")
                time.sleep(delay)

    @contextmanager
    def get_connection(self, max_retries: int = 8, base_delay: float = 0.5):
        """Context manager for database connections with retry on lock conflicts"""
        with self._lock:
            conn = self._connect_with_retry(max_retries, base_delay)
            try:
                yield conn
            finally:
                conn.close()

    @contextmanager
    def transaction(self):
        """Run the enclosed statements as one atomic unit"""
        with self.get_connection() as conn:
            conn.execute("BEGIN TRANSACTION")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def init_database(self):
        """Initialize database schema with unique constraints for deduplication"""
        with self.get_connection() as conn:
            for seq in ('transactions_id_seq', 'notifications_id_seq', 'admin_alerts_id_seq', 'cron_logs_id_seq'):
                conn.execute(f"CREATE SEQUENCE IF NOT EXISTS {seq} START 1")

            # network registry (admin owned, read-only to the engine)
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS networks (
                    network_id VARCHAR PRIMARY KEY,
                    display_name VARCHAR,
                    chain_id BIGINT,
                    contract_address VARCHAR,
                    token_address VARCHAR,
                    rpc_urls VARCHAR,
                    token_decimals INTEGER,
                    is_active BOOLEAN DEFAULT FALSE,
                    is_paused BOOLEAN DEFAULT FALSE,
                    low_balance_threshold {AMOUNT_TYPE} DEFAULT 0,
                    block_explorer VARCHAR,
                    hot_wallet_balance {AMOUNT_TYPE},
                    last_balance_check TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # accounts and their linked deposit addresses
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS users (
                    user_id VARCHAR PRIMARY KEY,
                    email VARCHAR,
                    deposit_address VARCHAR,
                    deposit_address_linked_at TIMESTAMP,
                    balance {AMOUNT_TYPE} DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # per (network, contract) progress cursor
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_watermarks (
                    network_id VARCHAR,
                    contract_address VARCHAR,
                    last_checked_block BIGINT NOT NULL,
                    status VARCHAR DEFAULT 'idle',
                    events_processed BIGINT DEFAULT 0,
                    last_synced_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    last_error VARCHAR,
                    consecutive_failures INTEGER DEFAULT 0,
                    next_retry_at DOUBLE,
                    PRIMARY KEY (network_id, contract_address)
                )
            """)

            # cycle leases, at most one live holder per (network, contract)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_leases (
                    network_id VARCHAR,
                    contract_address VARCHAR,
                    lease_owner VARCHAR NOT NULL,
                    lease_expires_at DOUBLE NOT NULL,
                    PRIMARY KEY (network_id, contract_address)
                )
            """)

            # observed deposits, tx hash is the dedup key
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS deposit_records (
                    tx_hash VARCHAR PRIMARY KEY,
                    log_index INTEGER,
                    from_address VARCHAR,
                    to_address VARCHAR,
                    amount_decimal {AMOUNT_TYPE},
                    amount_raw VARCHAR,
                    block_number BIGINT,
                    network_id VARCHAR,
                    contract_address VARCHAR,
                    user_id VARCHAR,
                    status VARCHAR,
                    observed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    linked_at TIMESTAMP
                )
            """)

            # logs rejected by the decode boundary
            conn.execute("""
                CREATE TABLE IF NOT EXISTS skipped_events (
                    network_id VARCHAR,
                    tx_hash VARCHAR,
                    log_index INTEGER,
                    block_number BIGINT,
                    reason VARCHAR,
                    raw_log VARCHAR,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (network_id, tx_hash, log_index)
                )
            """)

            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS transactions (
                    id BIGINT PRIMARY KEY DEFAULT nextval('transactions_id_seq'),
                    user_id VARCHAR NOT NULL,
                    amount {AMOUNT_TYPE} NOT NULL,
                    type VARCHAR NOT NULL,
                    reference_id VARCHAR,
                    description VARCHAR,
                    status VARCHAR,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS notifications (
                    id BIGINT PRIMARY KEY DEFAULT nextval('notifications_id_seq'),
                    user_id VARCHAR NOT NULL,
                    kind VARCHAR,
                    title VARCHAR,
                    message VARCHAR,
                    data VARCHAR,
                    is_read BOOLEAN DEFAULT FALSE,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS admin_alerts (
                    id BIGINT PRIMARY KEY DEFAULT nextval('admin_alerts_id_seq'),
                    kind VARCHAR NOT NULL,
                    network_id VARCHAR,
                    severity VARCHAR NOT NULL,
                    title VARCHAR,
                    message VARCHAR,
                    data VARCHAR,
                    is_read BOOLEAN DEFAULT FALSE,
                    read_at TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS cron_logs (
                    id BIGINT PRIMARY KEY DEFAULT nextval('cron_logs_id_seq'),
                    job_name VARCHAR NOT NULL,
                    status VARCHAR NOT NULL,
                    message VARCHAR,
                    execution_time_ms BIGINT,
                    details VARCHAR,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS component_state (
                    component_name VARCHAR PRIMARY KEY,
                    state_data VARCHAR,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            self._create_indexes(conn)

        logger.debug("Database schema initialized")

    def _create_indexes(self, conn):
        """Create indexes for better query performance"""
        indexes = [
            "CREATE INDEX IF NOT EXISTS idx_deposit_records_block ON deposit_records(block_number)",
            "CREATE INDEX IF NOT EXISTS idx_transactions_reference ON transactions(reference_id)",
            "CREATE INDEX IF NOT EXISTS idx_cron_logs_job ON cron_logs(job_name)",
        ]

        for index_sql in indexes:
            try:
                conn.execute(index_sql)
            except duckdb.Error as e:
                logger.warning(f"Failed to create index: {e}")

    # Execution log

    def log_run_outcome(self, job_name: str, status: str, message: str,
                        duration_ms: Optional[int] = None, details: Optional[Any] = None):
        """Append one execution-log record for a scheduled job"""
        if details is not None and not isinstance(details, str):
            details = json.dumps(details, default=str)
        with self.get_connection() as conn:
            conn.execute("""
                INSERT INTO cron_logs (job_name, status, message, execution_time_ms, details)
                VALUES (?, ?, ?, ?, ?)
            """, [job_name, status, message, duration_ms, details])

    def get_recent_runs(self, job_name: Optional[str] = None, limit: int = 10) -> List[Dict[str, Any]]:
        sql = "SELECT job_name, status, message, execution_time_ms, details, created_at FROM cron_logs"
        params: List[Any] = []
        if job_name:
            sql += " WHERE job_name = ?"
            params.append(job_name)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        with self.get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()

        return [{
            'job_name': row[0],
            'status': row[1],
            'message': row[2],
            'execution_time_ms': row[3],
            'details': row[4],
            'created_at': row[5],
        } for row in rows]

    # State management

    def get_component_state(self, component_name: str) -> Dict[str, Any]:
        """Get component state data"""
        with self.get_connection() as conn:
            result = conn.execute(
                "SELECT state_data FROM component_state WHERE component_name = ?",
                [component_name]
            ).fetchone()

        if result and result[0]:
            return json.loads(result[0])
        return {}

    def save_component_state(self, component_name: str, state: Dict[str, Any]):
        """Save complete component state data"""
        with self.get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO component_state (component_name, state_data, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
            """, [component_name, json.dumps(state, default=str)])

    # Query methods

    def get_statistics(self) -> Dict[str, Any]:
        """Get database statistics"""
        stats: Dict[str, Any] = {}
        tables = ['networks', 'users', 'sync_watermarks', 'sync_leases', 'deposit_records', 'skipped_events',
                  'transactions', 'notifications', 'admin_alerts', 'cron_logs']

        with self.get_connection() as conn:
            for table in tables:
                result = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
                stats[f'{table}_count'] = result[0] if result else 0

            result = conn.execute(
                "SELECT COUNT(*) FROM deposit_records WHERE user_id IS NULL"
            ).fetchone()
            stats['unlinked_deposits_count'] = result[0] if result else 0

            result = conn.execute("SELECT MAX(block_number) FROM deposit_records").fetchone()
            stats['latest_deposit_block'] = result[0] if result else None

            result = conn.execute("SELECT COUNT(*) FROM admin_alerts WHERE NOT is_read").fetchone()
            stats['unread_alerts_count'] = result[0] if result else 0

        return stats

    def backup_database(self, backup_path: str):
        """Create a backup of the database"""
        with self.get_connection() as conn:
            conn.execute(f"EXPORT DATABASE '{backup_path}' (FORMAT PARQUET)")
        logger.info(f"Database backed up to {backup_path}")

    def vacuum_database(self):
        """Optimize database by reclaiming space"""
        with self.get_connection() as conn:
            conn.execute("VACUUM")
        logger.info("Database vacuumed successfully")

"""
Admin-owned table of blockchain networks.

The sync engine only reads it (get_active_networks); seeding, pausing and
balance bookkeeping are operator or monitor actions.
"""

import json
import logging
from decimal import Decimal
from typing import List, Optional, Dict, Any

from database_manager import DepositSyncDB
from models import NetworkConfig

logger = logging.getLogger(__name__)

_NETWORK_COLUMNS = """network_id, display_name, chain_id, contract_address, rpc_urls, token_decimals,
    is_active, is_paused, low_balance_threshold, token_address, block_explorer, hot_wallet_balance"""


class NetworkNotFoundError(KeyError):
    pass


class NetworkRegistry:
    def __init__(self, db: DepositSyncDB, alert_dispatcher=None):
        self.db = db
        self.alert_dispatcher = alert_dispatcher

    @staticmethod
    def _row_to_network(row) -> NetworkConfig:
        return NetworkConfig(
            network_id=row[0],
            display_name=row[1],
            chain_id=int(row[2] or 0),
            contract_address=row[3] or "",
            rpc_urls=json.loads(row[4]) if row[4] else [],
            token_decimals=int(row[5]),
            is_active=bool(row[6]),
            is_paused=bool(row[7]),
            low_balance_threshold=row[8] if row[8] is not None else Decimal("0"),
            token_address=row[9],
            block_explorer=row[10],
            hot_wallet_balance=row[11],
        )

    def seed(self, networks: List[NetworkConfig], overwrite: bool = False) -> Dict[str, int]:
        """Insert network definitions, optionally replacing existing rows"""
        inserted = 0
        updated = 0
        skipped = 0

        with self.db.get_connection() as conn:
            for network in networks:
                exists = conn.execute(
                    "SELECT 1 FROM networks WHERE network_id = ?", [network.network_id]
                ).fetchone()
                values = [
                    network.display_name,
                    network.chain_id,
                    network.contract_address.lower(),
                    network.token_address.lower() if network.token_address else None,
                    json.dumps(network.rpc_urls),
                    network.token_decimals,
                    network.is_active,
                    network.is_paused,
                    network.low_balance_threshold,
                    network.block_explorer,
                ]

                if exists and not overwrite:
                    skipped += 1
                    continue

                if exists:
                    conn.execute("""
                        UPDATE networks SET display_name = ?, chain_id = ?, contract_address = ?,
                            token_address = ?, rpc_urls = ?, token_decimals = ?, is_active = ?,
                            is_paused = ?, low_balance_threshold = ?, block_explorer = ?,
                            updated_at = CURRENT_TIMESTAMP
                        WHERE network_id = ?
                    """, values + [network.network_id])
                    updated += 1
                else:
                    conn.execute("""
                        INSERT INTO networks (display_name, chain_id, contract_address, token_address,
                            rpc_urls, token_decimals, is_active, is_paused, low_balance_threshold,
                            block_explorer, network_id)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, values + [network.network_id])
                    inserted += 1

        logger.info(f"🌐 Seeded networks: {inserted} inserted, {updated} updated, {skipped} unchanged")
        return {'inserted': inserted, 'updated': updated, 'skipped': skipped}

    def get_active_networks(self) -> List[NetworkConfig]:
        """Snapshot of active networks in a stable order"""
        with self.db.get_connection() as conn:
            rows = conn.execute(
                f"SELECT {_NETWORK_COLUMNS} FROM networks WHERE is_active ORDER BY network_id"
            ).fetchall()
        return [self._row_to_network(r) for r in rows]

    def list_networks(self) -> List[NetworkConfig]:
        with self.db.get_connection() as conn:
            rows = conn.execute(f"SELECT {_NETWORK_COLUMNS} FROM networks ORDER BY network_id").fetchall()
        return [self._row_to_network(r) for r in rows]

    def get_network(self, network_id: str) -> Optional[NetworkConfig]:
        with self.db.get_connection() as conn:
            row = conn.execute(
                f"SELECT {_NETWORK_COLUMNS} FROM networks WHERE network_id = ?", [network_id]
            ).fetchone()
        return self._row_to_network(row) if row else None

    def _require(self, network_id: str) -> NetworkConfig:
        network = self.get_network(network_id)
        if network is None:
            raise NetworkNotFoundError(f"Network {network_id} not found")
        return network

    def _set_paused(self, network_id: str, paused: bool):
        with self.db.get_connection() as conn:
            conn.execute("""
                UPDATE networks SET is_paused = ?, updated_at = CURRENT_TIMESTAMP
                WHERE network_id = ?
            """, [paused, network_id])

    def pause_network(self, network_id: str) -> NetworkConfig:
        network = self._require(network_id)
        self._set_paused(network_id, True)
        logger.info(f"⏸️ {network.display_name} deposits paused")

        if self.alert_dispatcher:
            self.alert_dispatcher.raise_alert(
                'deposit_paused', network_id, 'warning',
                f"{network.display_name} Deposits Paused",
                f"Deposits have been paused on {network.display_name}",
            )
        return self.get_network(network_id)

    def resume_network(self, network_id: str) -> NetworkConfig:
        network = self._require(network_id)
        self._set_paused(network_id, False)
        logger.info(f"▶️ {network.display_name} deposits resumed")

        if self.alert_dispatcher:
            self.alert_dispatcher.raise_alert(
                'deposit_paused', network_id, 'info',
                f"{network.display_name} Deposits Resumed",
                f"Deposits have been resumed on {network.display_name}",
            )
        return self.get_network(network_id)

    def set_active(self, network_id: str, active: bool):
        self._require(network_id)
        with self.db.get_connection() as conn:
            conn.execute("""
                UPDATE networks SET is_active = ?, updated_at = CURRENT_TIMESTAMP
                WHERE network_id = ?
            """, [active, network_id])

    def update_hot_wallet_balance(self, network_id: str, balance: Decimal):
        with self.db.get_connection() as conn:
            conn.execute("""
                UPDATE networks SET hot_wallet_balance = ?, last_balance_check = CURRENT_TIMESTAMP,
                    updated_at = CURRENT_TIMESTAMP
                WHERE network_id = ?
            """, [balance, network_id])

#!/usr/bin/env python3
"""
Alert Dispatcher

Operator-facing alerts for the deposit sync engine. Every alert is persisted
in the admin_alerts table and, when a webhook is configured, forwarded to
Discord as an embed coloured by severity.

Raising an alert never fails the caller: storage and webhook errors are
logged and swallowed so a broken sink cannot stop a sync cycle.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

import requests

from database_manager import DepositSyncDB
from models import Alert

logger = logging.getLogger(__name__)

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"
SEVERITIES = (SEVERITY_INFO, SEVERITY_WARNING, SEVERITY_CRITICAL)

ALERT_KINDS = (
    "sync_error",
    "unlinked_deposit",
    "malformed_event",
    "low_balance",
    "deposit_paused",
    "network_error",
)

SEVERITY_COLORS = {
    SEVERITY_INFO: 0x3498db,      # blue
    SEVERITY_WARNING: 0xf39c12,   # orange
    SEVERITY_CRITICAL: 0xe74c3c,  # red
}

SEVERITY_EMOJI = {
    SEVERITY_INFO: "ℹ️",
    SEVERITY_WARNING: "⚠️",
    SEVERITY_CRITICAL: "🚨",
}

_ALERT_COLUMNS = "id, kind, network_id, severity, title, message, data, is_read, created_at, read_at"


class AlertDispatcher:
    def __init__(self, db: DepositSyncDB, discord_webhook_url: Optional[str] = None,
                 discord_enabled: bool = True):
        self.db = db
        self.discord_webhook_url = discord_webhook_url
        self.discord_enabled = discord_enabled and bool(discord_webhook_url)

    @staticmethod
    def _row_to_alert(row) -> Alert:
        return Alert(
            id=row[0],
            kind=row[1],
            network_id=row[2],
            severity=row[3],
            title=row[4],
            message=row[5],
            data=json.loads(row[6]) if row[6] else {},
            is_read=bool(row[7]),
            created_at=row[8],
            read_at=row[9],
        )

    def raise_alert(self, kind: str, network_id: Optional[str], severity: str, title: str,
                    message: str, data: Optional[Dict[str, Any]] = None) -> Optional[int]:
        """Persist an alert and forward it to Discord; returns the alert id or None"""
        if severity not in SEVERITIES:
            logger.warning(f"Unknown alert severity {severity!r}, using warning")
            severity = SEVERITY_WARNING
        if kind not in ALERT_KINDS:
            logger.warning(f"Unknown alert kind {kind!r}")

        log_line = f"{SEVERITY_EMOJI[severity]} [{network_id or 'global'}] {title}: {message}"
        if severity == SEVERITY_CRITICAL:
            logger.error(log_line)
        elif severity == SEVERITY_WARNING:
            logger.warning(log_line)
        else:
            logger.info(log_line)

        alert_id = None
        try:
            with self.db.get_connection() as conn:
                row = conn.execute("""
                    INSERT INTO admin_alerts (kind, network_id, severity, title, message, data)
                    VALUES (?, ?, ?, ?, ?, ?)
                    RETURNING id
                """, [kind, network_id, severity, title, message,
                      json.dumps(data or {}, default=str)]).fetchone()
                alert_id = row[0]
        except Exception as e:
            logger.error(f"Failed to persist {kind} alert '{title}': {e}")

        if self.discord_enabled:
            self.send_discord_alert(kind, network_id, severity, title, message, data)

        return alert_id

    def send_discord_alert(self, kind: str, network_id: Optional[str], severity: str, title: str,
                           message: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """Send an alert embed to Discord"""
        if not self.discord_webhook_url:
            logger.debug("No Discord webhook configured, skipping alert")
            return False

        try:
            fields = [
                {"name": "🏷️ Type", "value": f"`{kind}`", "inline": True},
                {"name": "🌐 Network", "value": f"`{network_id or 'all'}`", "inline": True},
                {"name": "📶 Severity", "value": severity, "inline": True},
            ]
            for key, value in (data or {}).items():
                fields.append({"name": key, "value": f"`{value}`", "inline": len(str(value)) < 24})

            embed = {
                "title": f"{SEVERITY_EMOJI.get(severity, '')} {title}",
                "description": message,
                "color": SEVERITY_COLORS.get(severity, SEVERITY_COLORS[SEVERITY_WARNING]),
                "fields": fields[:25],
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

            payload = {
                "username": "Deposit Monitor",
                "embeds": [embed]
            }

            response = requests.post(self.discord_webhook_url, json=payload, timeout=10)
            response.raise_for_status()

            logger.debug(f"✅ Sent Discord alert '{title}'")
            return True

        except Exception as e:
            logger.error(f"Failed to send Discord alert '{title}': {e}")
            return False

    # Operator operations

    def get_alerts(self, unread_only: bool = False, network_id: Optional[str] = None,
                   severity: Optional[str] = None, kind: Optional[str] = None,
                   limit: int = 50) -> List[Alert]:
        sql = f"SELECT {_ALERT_COLUMNS} FROM admin_alerts WHERE 1=1"
        params: List[Any] = []
        if unread_only:
            sql += " AND NOT is_read"
        if network_id:
            sql += " AND network_id = ?"
            params.append(network_id)
        if severity:
            sql += " AND severity = ?"
            params.append(severity)
        if kind:
            sql += " AND kind = ?"
            params.append(kind)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        with self.db.get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_alert(r) for r in rows]

    def get_alert(self, alert_id: int) -> Optional[Alert]:
        with self.db.get_connection() as conn:
            row = conn.execute(f"SELECT {_ALERT_COLUMNS} FROM admin_alerts WHERE id = ?", [alert_id]).fetchone()
        return self._row_to_alert(row) if row else None

    def mark_read(self, alert_id: int) -> bool:
        with self.db.get_connection() as conn:
            row = conn.execute("""
                UPDATE admin_alerts SET is_read = TRUE, read_at = CURRENT_TIMESTAMP
                WHERE id = ? AND NOT is_read
                RETURNING id
            """, [alert_id]).fetchone()
        return row is not None

    def mark_all_read(self) -> int:
        with self.db.get_connection() as conn:
            rows = conn.execute("""
                UPDATE admin_alerts SET is_read = TRUE, read_at = CURRENT_TIMESTAMP
                WHERE NOT is_read
                RETURNING id
            """).fetchall()
        return len(rows)

    def delete_alert(self, alert_id: int) -> bool:
        with self.db.get_connection() as conn:
            row = conn.execute("DELETE FROM admin_alerts WHERE id = ? RETURNING id", [alert_id]).fetchone()
        return row is not None

    def delete_old_alerts(self, days: int) -> int:
        """Delete alerts created more than ``days`` days ago"""
        with self.db.get_connection() as conn:
            rows = conn.execute("""
                DELETE FROM admin_alerts
                WHERE created_at < CAST(CURRENT_TIMESTAMP AS TIMESTAMP) - to_days(CAST(? AS INTEGER))
                RETURNING id
            """, [days]).fetchall()
        if rows:
            logger.info(f"🧹 Deleted {len(rows)} alerts older than {days} days")
        return len(rows)

    def get_alert_stats(self) -> Dict[str, Any]:
        """Counts over the most recent 1000 alerts"""
        with self.db.get_connection() as conn:
            rows = conn.execute("""
                SELECT kind, severity, is_read FROM admin_alerts
                ORDER BY id DESC LIMIT 1000
            """).fetchall()

        stats: Dict[str, Any] = {
            'total': len(rows),
            'unread': sum(1 for r in rows if not r[2]),
        }
        for severity in SEVERITIES:
            stats[severity] = sum(1 for r in rows if r[1] == severity)
        stats['by_kind'] = {kind: sum(1 for r in rows if r[0] == kind) for kind in ALERT_KINDS}
        return stats

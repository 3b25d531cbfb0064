#!/usr/bin/env python3
"""
Heartbeat Helper

Periodic "still alive" summary for the deposit sync service, posted to
Discord. Pings follow a Tuesday 9am ET schedule basis at a configurable
frequency (7=weekly, 1=daily) and the last ping time is kept in the
component_state table.
"""

import time
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

import pytz
import requests

from database_manager import DepositSyncDB
from models import SyncWatermark

logger = logging.getLogger(__name__)

COMPONENT_NAME = "deposit_sync_heartbeat"


class HeartbeatHelper:
    def __init__(self, db: DepositSyncDB, discord_webhook_url: Optional[str] = None,
                 component_name: str = COMPONENT_NAME):
        """Initialize heartbeat helper

        Args:
            db: Database holding the component_state table
            discord_webhook_url: Discord webhook URL for pings
            component_name: Key of the heartbeat state row
        """
        self.db = db
        self.discord_webhook_url = discord_webhook_url
        self.component_name = component_name

        self.eastern_tz = pytz.timezone('US/Eastern')

    def _now_et(self) -> datetime:
        return datetime.now(self.eastern_tz)

    def _get_tuesday_9am_basis(self, now_et: datetime) -> datetime:
        """Most recent Tuesday 9am ET at or before now"""
        days_since_tuesday = (now_et.weekday() - 1) % 7  # Monday=0, Tuesday=1
        tuesday_date = now_et.date() - timedelta(days=days_since_tuesday)
        basis = self.eastern_tz.localize(datetime.combine(tuesday_date, datetime.min.time().replace(hour=9)))

        # Tuesday before 9am belongs to the previous week
        if basis > now_et:
            basis = self.eastern_tz.localize(
                datetime.combine(tuesday_date - timedelta(days=7), datetime.min.time().replace(hour=9))
            )
        return basis

    def get_current_slot(self, frequency_days: int, now_et: Optional[datetime] = None) -> datetime:
        """Start of the schedule interval containing now"""
        now_et = now_et or self._now_et()
        basis = self._get_tuesday_9am_basis(now_et)
        interval = frequency_days * 24 * 3600
        intervals_passed = int((now_et - basis).total_seconds() // interval)
        return basis + timedelta(days=intervals_passed * frequency_days)

    def get_next_ping_time(self, frequency_days: int, now_et: Optional[datetime] = None) -> datetime:
        return self.get_current_slot(frequency_days, now_et) + timedelta(days=frequency_days)

    def _load_state(self) -> Dict[str, Any]:
        try:
            return self.db.get_component_state(self.component_name)
        except Exception as e:
            logger.warning(f"Failed to load heartbeat state: {e}")
            return {}

    def _save_state(self, state: Dict[str, Any]):
        try:
            self.db.save_component_state(self.component_name, state)
        except Exception as e:
            logger.error(f"Failed to save heartbeat state: {e}")

    def should_send_ping(self, frequency_days: int = 7, now_et: Optional[datetime] = None) -> bool:
        """True when no ping was sent since the current schedule slot began"""
        if not self.discord_webhook_url:
            return False

        now_et = now_et or self._now_et()
        last_ping_timestamp = self._load_state().get('last_ping_timestamp', 0)
        if not last_ping_timestamp:
            # first ping waits for 9am ET
            return now_et.hour >= 9

        slot = self.get_current_slot(frequency_days, now_et)
        return last_ping_timestamp < slot.timestamp()

    def send_ping(self, ping_content: str, frequency_days: int = 7) -> bool:
        """Post the heartbeat to Discord and remember when"""
        if not self.discord_webhook_url:
            logger.warning("No Discord webhook configured for heartbeat")
            return False

        if frequency_days == 7:
            freq_desc = "Weekly"
        elif frequency_days == 1:
            freq_desc = "Daily"
        else:
            freq_desc = f"{frequency_days}-Day"

        try:
            time_str = self._now_et().strftime('%Y-%m-%d %H:%M:%S %Z')
            payload = {
                "content": f"🏓 **{freq_desc} Heartbeat** - Deposit Sync\n**Time:** {time_str}\n\n{ping_content}",
                "username": "Deposit Sync Heartbeat",
            }
            response = requests.post(self.discord_webhook_url, json=payload, timeout=10)
            response.raise_for_status()
        except Exception as e:
            logger.error(f"Failed to send heartbeat: {e}")
            return False

        state = self._load_state()
        state['last_ping_timestamp'] = time.time()
        state['last_ping_frequency'] = frequency_days
        self._save_state(state)

        logger.info(f"Sent {freq_desc.lower()} heartbeat")
        return True

    def maybe_send(self, ping_content: str, frequency_days: int = 7) -> bool:
        if self.should_send_ping(frequency_days):
            return self.send_ping(ping_content, frequency_days)
        return False

    @staticmethod
    def build_summary(watermarks: List[SyncWatermark], stats: Dict[str, Any]) -> str:
        """Per-network progress lines plus totals"""
        lines = []
        for wm in watermarks:
            icon = "🔴" if wm.status == "error" else "🟢"
            line = f"{icon} **{wm.network_id}**: block `{wm.last_checked_block:,}`, {wm.events_processed} deposits"
            if wm.last_error:
                line += f" (last error: {wm.last_error[:80]})"
            lines.append(line)
        if not lines:
            lines.append("No networks synced yet")

        lines.append("")
        lines.append(f"**Deposits:** {stats.get('deposit_records_count', 0)} "
                     f"({stats.get('unlinked_deposits_count', 0)} unlinked)")
        lines.append(f"**Unread alerts:** {stats.get('unread_alerts_count', 0)}")
        return "\n".join(lines)

    def get_ping_status(self, frequency_days: int = 7) -> Dict[str, Any]:
        last_ping_timestamp = self._load_state().get('last_ping_timestamp', 0)

        if last_ping_timestamp:
            last_ping_str = datetime.fromtimestamp(last_ping_timestamp, tz=self.eastern_tz).strftime('%Y-%m-%d %H:%M:%S %Z')
        else:
            last_ping_str = "Never"

        return {
            'last_ping': last_ping_str,
            'next_ping': self.get_next_ping_time(frequency_days).strftime('%Y-%m-%d %H:%M:%S %Z'),
            'should_ping_now': self.should_send_ping(frequency_days),
            'webhook_configured': self.discord_webhook_url is not None,
        }

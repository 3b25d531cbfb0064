"""Tests for operator alerts and their Discord delivery."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from alert_dispatcher import AlertDispatcher, SEVERITY_COLORS, SEVERITY_CRITICAL, SEVERITY_INFO, SEVERITY_WARNING

WEBHOOK = "https://discord.com/api/webhooks/123/abc"


@pytest.fixture
def discord_alerts(db):
    return AlertDispatcher(db, WEBHOOK)


class TestRaiseAlert:
    """Tests for persisting alerts"""

    def test_alert_is_persisted(self, alerts):
        alert_id = alerts.raise_alert(
            "low_balance", "polygon", SEVERITY_CRITICAL, "Low Balance: Polygon", "Balance is low",
            {"balance": "12.5"},
        )

        alert = alerts.get_alert(alert_id)
        assert alert.kind == "low_balance"
        assert alert.severity == SEVERITY_CRITICAL
        assert alert.data == {"balance": "12.5"}
        assert not alert.is_read
        assert alert.created_at is not None

    def test_unknown_severity_falls_back_to_warning(self, alerts):
        alert_id = alerts.raise_alert("sync_error", None, "loud", "Title", "Message")
        assert alerts.get_alert(alert_id).severity == SEVERITY_WARNING

    def test_storage_failure_is_swallowed(self, alerts, db):
        """A broken alert table never fails the caller"""
        with patch.object(db, "get_connection", side_effect=RuntimeError("db gone")):
            assert alerts.raise_alert("sync_error", "bsc", SEVERITY_WARNING, "Title", "Message") is None

    def test_discord_disabled_without_webhook(self, alerts):
        with patch("alert_dispatcher.requests.post") as mock_post:
            alerts.raise_alert("sync_error", "bsc", SEVERITY_WARNING, "Title", "Message")
        mock_post.assert_not_called()


class TestDiscordDelivery:
    """Tests for the Discord webhook embed"""

    def test_embed_payload(self, discord_alerts):
        """Alerts are posted as an embed coloured by severity"""
        with patch("alert_dispatcher.requests.post") as mock_post:
            mock_post.return_value = MagicMock(status_code=204)
            discord_alerts.raise_alert(
                "unlinked_deposit", "polygon", SEVERITY_WARNING, "Unlinked Deposit: Polygon",
                "Deposit of $5.00 has no linked user", {"tx_hash": "0xabc"},
            )

        mock_post.assert_called_once()
        args, kwargs = mock_post.call_args
        assert args[0] == WEBHOOK
        assert kwargs["timeout"] == 10
        payload = kwargs["json"]
        assert payload["username"] == "Deposit Monitor"
        embed = payload["embeds"][0]
        assert "Unlinked Deposit: Polygon" in embed["title"]
        assert embed["color"] == SEVERITY_COLORS[SEVERITY_WARNING]
        assert any(field["name"] == "tx_hash" for field in embed["fields"])

    def test_webhook_failure_still_persists(self, discord_alerts):
        """A failing webhook does not lose the stored alert"""
        with patch("alert_dispatcher.requests.post", side_effect=requests.ConnectionError("offline")):
            alert_id = discord_alerts.raise_alert("sync_error", "bsc", SEVERITY_INFO, "Title", "Message")

        assert alert_id is not None
        assert discord_alerts.get_alert(alert_id) is not None

    def test_discord_can_be_disabled(self, db):
        dispatcher = AlertDispatcher(db, WEBHOOK, discord_enabled=False)
        with patch("alert_dispatcher.requests.post") as mock_post:
            dispatcher.raise_alert("sync_error", "bsc", SEVERITY_WARNING, "Title", "Message")
        mock_post.assert_not_called()


class TestOperatorOperations:
    """Tests for listing, reading and pruning alerts"""

    def test_filters(self, alerts):
        alerts.raise_alert("sync_error", "bsc", SEVERITY_WARNING, "A", "a")
        alerts.raise_alert("low_balance", "polygon", SEVERITY_CRITICAL, "B", "b")
        alerts.raise_alert("low_balance", "bsc", SEVERITY_CRITICAL, "C", "c")

        assert [a.title for a in alerts.get_alerts()] == ["C", "B", "A"]
        assert [a.title for a in alerts.get_alerts(network_id="bsc")] == ["C", "A"]
        assert [a.title for a in alerts.get_alerts(severity=SEVERITY_CRITICAL, network_id="polygon")] == ["B"]
        assert len(alerts.get_alerts(kind="low_balance")) == 2
        assert len(alerts.get_alerts(limit=1)) == 1

    def test_mark_read(self, alerts):
        first = alerts.raise_alert("sync_error", "bsc", SEVERITY_WARNING, "A", "a")
        alerts.raise_alert("sync_error", "bsc", SEVERITY_WARNING, "B", "b")

        assert alerts.mark_read(first)
        assert not alerts.mark_read(first)
        assert alerts.get_alert(first).read_at is not None
        assert [a.title for a in alerts.get_alerts(unread_only=True)] == ["B"]

        assert alerts.mark_all_read() == 1
        assert alerts.get_alerts(unread_only=True) == []

    def test_delete(self, alerts):
        alert_id = alerts.raise_alert("sync_error", "bsc", SEVERITY_WARNING, "A", "a")

        assert alerts.delete_alert(alert_id)
        assert not alerts.delete_alert(alert_id)
        assert alerts.get_alert(alert_id) is None

    def test_delete_old_alerts(self, alerts, db):
        """Only alerts older than the cutoff are pruned"""
        old = alerts.raise_alert("sync_error", "bsc", SEVERITY_WARNING, "Old", "old")
        alerts.raise_alert("sync_error", "bsc", SEVERITY_WARNING, "New", "new")
        with db.get_connection() as conn:
            conn.execute(
                "UPDATE admin_alerts SET created_at = TIMESTAMP '2000-01-01 00:00:00' WHERE id = ?", [old]
            )

        assert alerts.delete_old_alerts(30) == 1
        assert [a.title for a in alerts.get_alerts()] == ["New"]

    def test_stats(self, alerts):
        alerts.raise_alert("sync_error", "bsc", SEVERITY_WARNING, "A", "a")
        read = alerts.raise_alert("low_balance", "polygon", SEVERITY_CRITICAL, "B", "b")
        alerts.mark_read(read)

        stats = alerts.get_alert_stats()

        assert stats["total"] == 2
        assert stats["unread"] == 1
        assert stats["critical"] == 1
        assert stats["warning"] == 1
        assert stats["info"] == 0
        assert stats["by_kind"]["low_balance"] == 1
        assert set(stats["by_kind"]) == {
            "sync_error", "unlinked_deposit", "malformed_event", "low_balance", "deposit_paused", "network_error",
        }

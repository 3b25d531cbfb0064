"""Tests for the per-network sync watermark and cycle lease."""

import time

from conftest import POLYGON_VAULT
from models import WATERMARK_ERROR, WATERMARK_IDLE, WATERMARK_SYNCING
from watermark_store import SyncWatermarkStore


class TestWatermarkInit:
    """Tests for first-sight initialization"""

    def test_init_behind_head(self, watermarks):
        """A new watermark starts bootstrap_offset blocks behind the head"""
        watermark = watermarks.get_or_init("polygon", POLYGON_VAULT, 5000, bootstrap_offset=100)

        assert watermark.last_checked_block == 4900
        assert watermark.status == WATERMARK_IDLE
        assert watermark.events_processed == 0

    def test_init_clamped_at_zero(self, watermarks):
        """A young chain starts from block zero"""
        watermark = watermarks.get_or_init("polygon", POLYGON_VAULT, 40, bootstrap_offset=100)
        assert watermark.last_checked_block == 0

    def test_existing_watermark_is_returned(self, watermarks):
        """A later call does not move an existing watermark"""
        watermarks.get_or_init("polygon", POLYGON_VAULT, 5000, bootstrap_offset=100)
        watermark = watermarks.get_or_init("polygon", POLYGON_VAULT, 9000, bootstrap_offset=100)

        assert watermark.last_checked_block == 4900
        assert len(watermarks.list_all()) == 1

    def test_contract_address_case_insensitive(self, watermarks):
        """Watermarks are keyed by the lowercase contract address"""
        watermarks.get_or_init("polygon", POLYGON_VAULT.upper().replace("0X", "0x"), 500, bootstrap_offset=0)
        assert watermarks.get("polygon", POLYGON_VAULT).last_checked_block == 500

    def test_missing_watermark(self, watermarks):
        assert watermarks.get("polygon", POLYGON_VAULT) is None


class TestWatermarkAdvance:
    """Tests for monotonic advancement"""

    def test_advance_moves_forward(self, watermarks):
        """Advancing sets the block, status and event counter"""
        watermarks.get_or_init("polygon", POLYGON_VAULT, 1000, bootstrap_offset=0)
        watermarks.mark_syncing("polygon", POLYGON_VAULT)
        assert watermarks.get("polygon", POLYGON_VAULT).status == WATERMARK_SYNCING

        watermark = watermarks.advance("polygon", POLYGON_VAULT, 1100, processed_delta=3)

        assert watermark.last_checked_block == 1100
        assert watermark.status == WATERMARK_IDLE
        assert watermark.events_processed == 3
        assert watermark.last_synced_at is not None

    def test_advance_never_moves_backward(self, watermarks):
        """A lower target leaves the block unchanged"""
        watermarks.get_or_init("polygon", POLYGON_VAULT, 1000, bootstrap_offset=0)
        watermarks.advance("polygon", POLYGON_VAULT, 1100)

        watermark = watermarks.advance("polygon", POLYGON_VAULT, 900)

        assert watermark.last_checked_block == 1100

    def test_events_processed_accumulates(self, watermarks):
        watermarks.get_or_init("polygon", POLYGON_VAULT, 1000, bootstrap_offset=0)
        watermarks.advance("polygon", POLYGON_VAULT, 1010, processed_delta=2)
        watermark = watermarks.advance("polygon", POLYGON_VAULT, 1020, processed_delta=5)

        assert watermark.events_processed == 7


class TestWatermarkFailures:
    """Tests for failure bookkeeping and backoff"""

    def test_record_failure(self, watermarks):
        """Failures set the error status, message and retry time"""
        watermarks.get_or_init("polygon", POLYGON_VAULT, 1000, bootstrap_offset=0)

        before = time.time()
        watermark = watermarks.record_failure("polygon", POLYGON_VAULT, "rpc down", backoff_seconds=60)

        assert watermark.status == WATERMARK_ERROR
        assert watermark.last_error == "rpc down"
        assert watermark.consecutive_failures == 1
        assert watermark.next_retry_at >= before + 60
        assert watermark.last_checked_block == 1000
        assert SyncWatermarkStore.in_backoff(watermark)
        assert not SyncWatermarkStore.in_backoff(watermark, now=watermark.next_retry_at + 1)

    def test_failures_accumulate_until_success(self, watermarks):
        """An idle advance clears the failure state"""
        watermarks.get_or_init("polygon", POLYGON_VAULT, 1000, bootstrap_offset=0)
        watermarks.record_failure("polygon", POLYGON_VAULT, "first")
        watermark = watermarks.record_failure("polygon", POLYGON_VAULT, "second", backoff_seconds=30)
        assert watermark.consecutive_failures == 2

        watermark = watermarks.advance("polygon", POLYGON_VAULT, 1001)

        assert watermark.consecutive_failures == 0
        assert watermark.last_error is None
        assert watermark.next_retry_at is None

    def test_no_backoff_without_watermark(self):
        assert not SyncWatermarkStore.in_backoff(None)


class TestCycleLease:
    """Tests for the per-network cycle lease"""

    def test_lease_excludes_other_owner(self, watermarks):
        """Only one owner holds an unexpired lease"""
        assert watermarks.acquire_lease("polygon", POLYGON_VAULT, "worker-a", 300)
        assert not watermarks.acquire_lease("polygon", POLYGON_VAULT, "worker-b", 300)

    def test_owner_can_renew(self, watermarks):
        assert watermarks.acquire_lease("polygon", POLYGON_VAULT, "worker-a", 300)
        assert watermarks.acquire_lease("polygon", POLYGON_VAULT, "worker-a", 300)

    def test_release_frees_lease(self, watermarks):
        """A released lease can be taken by another owner"""
        watermarks.acquire_lease("polygon", POLYGON_VAULT, "worker-a", 300)
        watermarks.release_lease("polygon", POLYGON_VAULT, "worker-a")

        assert watermarks.acquire_lease("polygon", POLYGON_VAULT, "worker-b", 300)

    def test_release_by_other_owner_is_ignored(self, watermarks):
        watermarks.acquire_lease("polygon", POLYGON_VAULT, "worker-a", 300)
        watermarks.release_lease("polygon", POLYGON_VAULT, "worker-b")

        assert not watermarks.acquire_lease("polygon", POLYGON_VAULT, "worker-b", 300)

    def test_expired_lease_can_be_taken(self, watermarks):
        """A crashed owner's lease stops blocking once it expires"""
        watermarks.acquire_lease("polygon", POLYGON_VAULT, "worker-a", -1)
        assert watermarks.acquire_lease("polygon", POLYGON_VAULT, "worker-b", 300)

    def test_lease_does_not_create_watermark(self, watermarks):
        watermarks.acquire_lease("polygon", POLYGON_VAULT, "worker-a", 300)
        assert watermarks.get("polygon", POLYGON_VAULT) is None

#!/usr/bin/env python3
"""
Sync Orchestrator

Top-level deposit sync routine. Each run takes a snapshot of the active
networks, runs one NetworkSyncCycle per eligible network in a bounded thread
pool, and records a single execution-log entry for the whole run.

A network failure is isolated: it becomes a failed NetworkCycleResult, an
error line in the run summary and a sync_error alert, and the other networks
carry on. Only a failure to read the network registry aborts the run.
"""

import logging
import os
import socket
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional

from account_store import AccountStore
from alert_dispatcher import AlertDispatcher, SEVERITY_WARNING
from chain_reader import ChainEventReader, build_reader
from database_manager import DepositSyncDB, RUN_STATUS_SUCCESS, RUN_STATUS_FAILED
from deposit_attributor import DepositAttributor, summarize_outcomes
from deposit_ledger import DepositLedger
from models import (
    NetworkConfig, NetworkCycleResult, RunSummary, WATERMARK_IDLE, WATERMARK_ERROR,
    CYCLE_SYNCED, CYCLE_UP_TO_DATE, CYCLE_SKIPPED, CYCLE_BUSY, CYCLE_BACKOFF, CYCLE_DEADLINE, CYCLE_FAILED,
)
from network_registry import NetworkRegistry
from watermark_store import SyncWatermarkStore

logger = logging.getLogger(__name__)

JOB_NAME = "multi-network-deposit-listener"


def compute_backoff(consecutive_failures: int, retry_interval: float, max_backoff: float) -> float:
    """retry_interval * 2^(n-1), capped at max_backoff"""
    if consecutive_failures < 1 or retry_interval <= 0:
        return 0
    return min(retry_interval * (2 ** (consecutive_failures - 1)), max_backoff)


class NetworkSyncCycle:
    """One sync pass over a single network's vault contract"""

    def __init__(self, network: NetworkConfig, reader: ChainEventReader, watermarks: SyncWatermarkStore,
                 attributor: DepositAttributor, owner: str, bootstrap_offset: int = 100,
                 confirmations: int = 0, lease_seconds: int = 300, retry_interval: float = 60,
                 max_backoff: float = 900, deadline_seconds: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.network = network
        self.reader = reader
        self.watermarks = watermarks
        self.attributor = attributor
        self.owner = owner
        self.bootstrap_offset = bootstrap_offset
        self.confirmations = confirmations
        self.lease_seconds = lease_seconds
        self.retry_interval = retry_interval
        self.max_backoff = max_backoff
        self.deadline_seconds = deadline_seconds
        self.clock = clock
        self.contract = network.contract_address.lower()

    def run(self) -> NetworkCycleResult:
        network_id = self.network.network_id

        if not self.watermarks.acquire_lease(network_id, self.contract, self.owner, self.lease_seconds):
            logger.info(f"⏳ [{network_id}] another sync cycle holds the lease, skipping")
            return NetworkCycleResult(network_id, CYCLE_BUSY)

        try:
            return self._sync()
        finally:
            self.watermarks.release_lease(network_id, self.contract, self.owner)

    def _sync(self) -> NetworkCycleResult:
        network_id = self.network.network_id
        started = self.clock()

        try:
            chain_head = self.reader.get_chain_head() - self.confirmations
            watermark = self.watermarks.get_or_init(
                network_id, self.contract, max(chain_head, 0), self.bootstrap_offset
            )
            last_checked = watermark.last_checked_block

            if chain_head <= last_checked:
                logger.debug(f"[{network_id}] up to date at block {last_checked} (head {chain_head})")
                if watermark.status == WATERMARK_ERROR:
                    self.watermarks.advance(network_id, self.contract, last_checked, WATERMARK_IDLE, 0)
                return NetworkCycleResult(network_id, CYCLE_UP_TO_DATE, 0, last_checked + 1, chain_head)

            self.watermarks.mark_syncing(network_id, self.contract)

            from_block = last_checked + 1
            processed_to = last_checked
            outcomes = []
            status = CYCLE_SYNCED

            for window_from, window_to, items in self.reader.iter_windows(from_block, chain_head):
                outcome = self.attributor.process_batch(items, self.network)
                outcomes.append(outcome)

                if outcome.failed_blocks:
                    # hold the watermark below the first event that did not apply
                    processed_to = max(processed_to, outcome.lowest_failed_block - 1)
                    status = CYCLE_FAILED
                    break

                processed_to = window_to
                if window_to < chain_head and not self.watermarks.acquire_lease(
                        network_id, self.contract, self.owner, self.lease_seconds):
                    logger.warning(f"⏳ [{network_id}] lease taken over at block {window_to}, stopping cycle")
                    status = CYCLE_BUSY
                    break
                if (self.deadline_seconds is not None and window_to < chain_head
                        and self.clock() - started >= self.deadline_seconds):
                    logger.warning(
                        f"⏱️ [{network_id}] cycle deadline reached at block {window_to}, "
                        f"{chain_head - window_to} blocks left for the next run"
                    )
                    status = CYCLE_DEADLINE
                    break

            totals = summarize_outcomes(outcomes)

            if status == CYCLE_FAILED:
                error = (
                    f"failed to apply {len(totals.failed_blocks)} deposit(s), "
                    f"first at block {totals.lowest_failed_block}"
                )
                self.watermarks.advance(network_id, self.contract, processed_to, WATERMARK_ERROR, totals.recorded)
                self._record_failure(error)
                return NetworkCycleResult(network_id, CYCLE_FAILED, totals.recorded, from_block,
                                          processed_to, error=error)

            self.watermarks.advance(network_id, self.contract, processed_to, WATERMARK_IDLE, totals.recorded)

            if totals.recorded or totals.quarantined:
                logger.info(
                    f"✅ [{network_id}] blocks {from_block}-{processed_to}: {totals.credited} credited, "
                    f"{totals.unlinked} unlinked, {totals.duplicates} duplicate, {totals.quarantined} quarantined"
                )
            else:
                logger.debug(f"[{network_id}] blocks {from_block}-{processed_to}: no new deposits")

            return NetworkCycleResult(network_id, status, totals.recorded, from_block, processed_to)

        except Exception as e:
            self._record_failure(str(e))
            raise

    def _record_failure(self, error: str):
        network_id = self.network.network_id
        current = self.watermarks.get(network_id, self.contract)
        failures = (current.consecutive_failures if current else 0) + 1
        backoff = compute_backoff(failures, self.retry_interval, self.max_backoff)
        self.watermarks.record_failure(network_id, self.contract, error, backoff)
        if backoff:
            logger.warning(f"🔁 [{network_id}] failure #{failures}, retrying in {backoff:.0f}s")


class SyncOrchestrator:
    def __init__(self, db: DepositSyncDB, registry: NetworkRegistry, watermarks: SyncWatermarkStore,
                 attributor: DepositAttributor, alert_dispatcher: AlertDispatcher,
                 reader_factory: Callable[[NetworkConfig], ChainEventReader],
                 max_workers: int = 4, bootstrap_offset: int = 100, confirmations: int = 0,
                 lease_seconds: int = 300, retry_interval: float = 60, max_backoff: float = 900,
                 cycle_deadline_seconds: Optional[float] = None):
        self.db = db
        self.registry = registry
        self.watermarks = watermarks
        self.attributor = attributor
        self.alerts = alert_dispatcher
        self.reader_factory = reader_factory
        self.max_workers = max(1, max_workers)
        self.bootstrap_offset = bootstrap_offset
        self.confirmations = confirmations
        self.lease_seconds = lease_seconds
        self.retry_interval = retry_interval
        self.max_backoff = max_backoff
        self.cycle_deadline_seconds = cycle_deadline_seconds
        self.owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

    @classmethod
    def from_config(cls, config=None, discord_enabled: bool = True,
                    max_workers: Optional[int] = None) -> "SyncOrchestrator":
        """Wire the engine from the config manager"""
        if config is None:
            from config_manager import get_config_manager
            config = get_config_manager()

        db = config.create_database_manager()
        alerts = AlertDispatcher(db, config.get_discord_webhook('alerts'), discord_enabled=discord_enabled)
        ledger = DepositLedger(db)
        accounts = AccountStore(db)

        return cls(
            db=db,
            registry=NetworkRegistry(db, alerts),
            watermarks=SyncWatermarkStore(db),
            attributor=DepositAttributor(db, ledger, accounts, alerts),
            alert_dispatcher=alerts,
            reader_factory=lambda network: build_reader(network, config),
            max_workers=max_workers or config.get_max_workers(),
            bootstrap_offset=config.get_bootstrap_offset(),
            confirmations=config.get_confirmations(),
            lease_seconds=config.get_lease_seconds(),
            retry_interval=config.get_retry_interval(),
            max_backoff=config.get_max_backoff_seconds(),
            cycle_deadline_seconds=config.get_cycle_deadline_seconds(),
        )

    def build_cycle(self, network: NetworkConfig) -> NetworkSyncCycle:
        return NetworkSyncCycle(
            network,
            self.reader_factory(network),
            self.watermarks,
            self.attributor,
            owner=self.owner,
            bootstrap_offset=self.bootstrap_offset,
            confirmations=self.confirmations,
            lease_seconds=self.lease_seconds,
            retry_interval=self.retry_interval,
            max_backoff=self.max_backoff,
            deadline_seconds=self.cycle_deadline_seconds,
        )

    def _run_network(self, network: NetworkConfig) -> NetworkCycleResult:
        try:
            return self.build_cycle(network).run()
        except Exception as e:
            logger.error(f"❌ [{network.network_id}] sync failed: {e}")
            logger.debug(f"[{network.network_id}] sync failure details", exc_info=True)
            return NetworkCycleResult(network.network_id, CYCLE_FAILED, error=str(e))

    def _precheck(self, network: NetworkConfig) -> Optional[NetworkCycleResult]:
        """Result for networks that are not synced this run, None otherwise"""
        if network.is_paused:
            logger.info(f"⏸️ [{network.network_id}] deposits paused, skipping")
            return NetworkCycleResult(network.network_id, CYCLE_SKIPPED)
        if not network.contract_address:
            logger.warning(f"⚠️ [{network.network_id}] no contract address configured, skipping")
            return NetworkCycleResult(network.network_id, CYCLE_SKIPPED)
        if not network.rpc_urls:
            logger.warning(f"⚠️ [{network.network_id}] no RPC endpoints configured, skipping")
            return NetworkCycleResult(network.network_id, CYCLE_SKIPPED)

        watermark = self.watermarks.get(network.network_id, network.contract_address)
        if self.watermarks.in_backoff(watermark):
            remaining = watermark.next_retry_at - time.time()
            logger.info(f"🔁 [{network.network_id}] in failure backoff for {remaining:.0f}s more, skipping")
            return NetworkCycleResult(network.network_id, CYCLE_BACKOFF, error=watermark.last_error)
        return None

    def run(self) -> RunSummary:
        """Sync every active network once and record the run outcome"""
        started = time.time()

        try:
            networks = self.registry.get_active_networks()
        except Exception as e:
            duration_ms = int((time.time() - started) * 1000)
            logger.error(f"❌ Failed to load active networks: {e}")
            self.db.log_run_outcome(
                JOB_NAME, RUN_STATUS_FAILED, f"Failed to load active networks: {e}",
                duration_ms, {'errors': [str(e)]},
            )
            raise

        results: List[Optional[NetworkCycleResult]] = [self._precheck(n) for n in networks]
        pending = [i for i, result in enumerate(results) if result is None]

        if pending:
            workers = min(self.max_workers, len(pending))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="deposit-sync") as executor:
                futures = {i: executor.submit(self._run_network, networks[i]) for i in pending}
                for i, future in futures.items():
                    results[i] = future.result()

        errors: List[str] = []
        for network, result in zip(networks, results):
            if not result.failed:
                continue
            errors.append(f"{network.display_name}: {result.error}")
            self.alerts.raise_alert(
                'sync_error',
                network.network_id,
                SEVERITY_WARNING,
                f"Deposit Sync Failed: {network.display_name}",
                f"Failed to sync deposits on {network.display_name}: {result.error}",
                {'error': result.error},
            )

        total_events = sum(r.events_processed for r in results)
        duration_ms = int((time.time() - started) * 1000)

        self.db.log_run_outcome(
            JOB_NAME,
            RUN_STATUS_FAILED if errors else RUN_STATUS_SUCCESS,
            f"Processed {total_events} deposits across {len(networks)} networks",
            duration_ms,
            {'errors': errors} if errors else None,
        )

        summary = RunSummary(
            networks_checked=len(networks),
            total_events_processed=total_events,
            errors=errors,
            duration_ms=duration_ms,
            results=results,
        )

        icon = "✅" if summary.success else "⚠️"
        logger.info(
            f"{icon} Deposit sync: {total_events} deposits across {len(networks)} networks "
            f"in {duration_ms}ms ({len(errors)} errors)"
        )
        return summary


def run_deposit_sync(config=None, discord_enabled: bool = True) -> RunSummary:
    """Run one deposit sync pass with the default configuration"""
    return SyncOrchestrator.from_config(config, discord_enabled=discord_enabled).run()

#!/usr/bin/env python3
"""
Deposit Watcher - multi-network deposit sync service

Runs the deposit sync engine on a fixed interval and exposes the operator
tooling around it:
1. start    - sync every active network once or continuously
2. balances - check vault token balances against their thresholds
3. networks / alerts / deposits / users - operator views and actions
4. config / database - configuration and storage management

Usage:
    depositwatch start [--once] [--interval 60]
    depositwatch status
    depositwatch alerts list --unread
"""

import argparse
import json
import logging
import signal
import sys
import time
from datetime import datetime, timezone
from typing import Optional

from logger_utils import setup_logging
from config_manager import get_config_manager, reset_config_manager_instance
from database_cli import DATABASE_COMMANDS
from errors import DepositSyncError, DatabaseLockError
from account_store import AccountStore
from alert_dispatcher import AlertDispatcher, SEVERITIES
from balance_monitor import LowBalanceMonitor
from deposit_attributor import DepositAttributor
from deposit_ledger import DepositLedger
from network_registry import NetworkRegistry
from ping_helper import HeartbeatHelper
from sync_orchestrator import SyncOrchestrator
from watermark_store import SyncWatermarkStore

logger = logging.getLogger(__name__)

COMPONENT_NAME = "deposit_watcher"


class DepositWatcher:
    def __init__(self, disable_discord: bool = False, max_workers: Optional[int] = None,
                 send_initial_ping: bool = False):
        self.running = False
        self.disable_discord = disable_discord
        self.send_initial_ping = send_initial_ping

        self.config = get_config_manager()
        self.db = self.config.create_database_manager()
        self.orchestrator = SyncOrchestrator.from_config(
            self.config, discord_enabled=not disable_discord, max_workers=max_workers
        )
        self.watermarks = SyncWatermarkStore(self.db)

        heartbeat_url = None if disable_discord else self.config.get_discord_webhook('heartbeat')
        self.heartbeat = HeartbeatHelper(self.db, heartbeat_url)
        self.heartbeat_frequency_days = self.config.get_heartbeat_frequency_days()

        # setup signal handlers for graceful shutdown
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully"""
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.running = False

    def load_watcher_state(self):
        state = self.db.get_component_state(COMPONENT_NAME)
        state.setdefault('total_cycles', 0)
        return state

    def run_single_cycle(self) -> bool:
        """One orchestrator run with lock-conflict retries"""
        max_retries = 3
        for attempt in range(max_retries):
            try:
                summary = self.orchestrator.run()
                return summary.success
            except DatabaseLockError as e:
                if attempt == max_retries - 1:
                    logger.error(f"❌ Database locked, giving up on this cycle: {e}")
                    return False
                delay = 5 * (attempt + 1)
                logger.warning(f"🔒 Database locked, retrying cycle in {delay}s")
                time.sleep(delay)
        return False

    def _maybe_heartbeat(self, force: bool = False):
        try:
            if force or self.heartbeat.should_send_ping(self.heartbeat_frequency_days):
                content = HeartbeatHelper.build_summary(self.watermarks.list_all(), self.db.get_statistics())
                self.heartbeat.send_ping(content, self.heartbeat_frequency_days)
        except Exception as e:
            logger.warning(f"Heartbeat failed: {e}")

    def run_continuous(self, interval_seconds: int = 60):
        """Run deposit sync on a fixed interval until stopped"""
        logger.info(f"🚀 Starting continuous deposit sync (interval: {interval_seconds}s)")
        logger.info(f"📍 Database: {self.config.get_database_path()}")

        self.running = True
        state = self.load_watcher_state()
        self._maybe_heartbeat(force=self.send_initial_ping)

        while self.running:
            try:
                cycle_success = self.run_single_cycle()

                state['last_cycle_timestamp'] = datetime.now(timezone.utc).isoformat()
                state['total_cycles'] += 1
                if cycle_success:
                    state['last_successful_cycle'] = state['last_cycle_timestamp']
                self.db.save_component_state(COMPONENT_NAME, state)

                self._maybe_heartbeat()

                if not self.running:
                    break

                logger.debug(f"💤 Waiting {interval_seconds}s until next cycle...")
                for _ in range(interval_seconds):
                    if not self.running:
                        break
                    time.sleep(1)

            except KeyboardInterrupt:
                logger.info("👋 Deposit sync stopped by user")
                break
            except Exception as e:
                logger.error(f"💥 Error in sync cycle: {e}")
                if self.running:
                    logger.info(f"⏳ Waiting {interval_seconds}s before retry...")
                    time.sleep(interval_seconds)

    def run_once(self) -> bool:
        logger.info("🎯 Running deposit sync once")
        if self.send_initial_ping:
            self._maybe_heartbeat(force=True)

        success = self.run_single_cycle()
        if success:
            logger.info("✅ Deposit sync completed successfully")
        else:
            logger.error("❌ Deposit sync finished with errors")
        return success

    def show_status(self):
        """Show watermark and run status for every network"""
        state = self.load_watcher_state()
        stats = self.db.get_statistics()

        print("📊 Deposit Watcher Status")
        print("=" * 60)
        print(f"📍 Database: {self.config.get_database_path()}")
        print(f"🕐 Last Successful Cycle: {state.get('last_successful_cycle', 'Never')}")
        print(f"🔄 Total Cycles: {state.get('total_cycles', 0)}")
        print()

        print("⛓️ Networks:")
        watermarks = {wm.network_id: wm for wm in self.watermarks.list_all()}
        for network in self.orchestrator.registry.list_networks():
            wm = watermarks.get(network.network_id)
            flags = []
            if not network.is_active:
                flags.append("inactive")
            if network.is_paused:
                flags.append("paused")
            flag_str = f" [{', '.join(flags)}]" if flags else ""
            if wm:
                print(f"  • {network.display_name:24} block {wm.last_checked_block:>12,}  "
                      f"{wm.status:8} {wm.events_processed:>6} deposits{flag_str}")
                if wm.last_error:
                    print(f"      last error: {wm.last_error}")
            else:
                print(f"  • {network.display_name:24} not synced yet{flag_str}")
        print()

        print("📈 Totals:")
        print(f"  • Deposits: {stats.get('deposit_records_count', 0)} "
              f"({stats.get('unlinked_deposits_count', 0)} unlinked)")
        print(f"  • Skipped events: {stats.get('skipped_events_count', 0)}")
        print(f"  • Unread alerts: {stats.get('unread_alerts_count', 0)}")
        print()

        print("🧾 Recent Runs:")
        runs = self.db.get_recent_runs(limit=5)
        if not runs:
            print("  (none)")
        for run in runs:
            icon = "✅" if run['status'] == 'success' else "❌"
            print(f"  {icon} {run['created_at']} {run['job_name']}: {run['message']} ({run['execution_time_ms']}ms)")


def _build_services(disable_discord: bool = False):
    config = get_config_manager()
    db = config.create_database_manager()
    alerts = AlertDispatcher(db, config.get_discord_webhook('alerts'), discord_enabled=not disable_discord)
    ledger = DepositLedger(db)
    accounts = AccountStore(db)
    return {
        'config': config,
        'db': db,
        'alerts': alerts,
        'ledger': ledger,
        'accounts': accounts,
        'registry': NetworkRegistry(db, alerts),
        'attributor': DepositAttributor(db, ledger, accounts, alerts),
    }


def _print_deposit(record):
    user = record.user_id or "UNLINKED"
    print(f"  {record.network_id:10} block {record.block_number:>12,}  {record.amount_decimal:>18}  "
          f"{record.from_address}  {user}  {record.tx_hash}")


def cmd_networks(args):
    services = _build_services(getattr(args, 'no_discord', False))
    registry = services['registry']

    if args.networks_command == 'list':
        watermarks = {wm.network_id: wm for wm in SyncWatermarkStore(services['db']).list_all()}
        for network in registry.list_networks():
            state = "paused" if network.is_paused else ("active" if network.is_active else "inactive")
            wm = watermarks.get(network.network_id)
            block = f"{wm.last_checked_block:,}" if wm else "-"
            print(f"  {network.network_id:10} {network.display_name:24} chain {network.chain_id:<6} "
                  f"{state:8} decimals {network.token_decimals:<3} watermark {block}")
            print(f"      contract {network.contract_address or '(not set)'}  rpc {network.rpc_endpoint}")
    elif args.networks_command == 'seed':
        definitions = services['config'].get_network_definitions()
        result = registry.seed(definitions, overwrite=args.overwrite)
        print(f"✅ Networks seeded: {result['inserted']} inserted, {result['updated']} updated, "
              f"{result['skipped']} unchanged")
    elif args.networks_command == 'pause':
        network = registry.pause_network(args.network)
        print(f"⏸️ {network.display_name} deposits paused")
    elif args.networks_command == 'resume':
        network = registry.resume_network(args.network)
        print(f"▶️ {network.display_name} deposits resumed")
    else:
        print("💡 Use 'depositwatch networks --help' for available commands")
        sys.exit(1)


def cmd_alerts(args):
    alerts = _build_services(getattr(args, 'no_discord', False))['alerts']

    if args.alerts_command == 'list':
        items = alerts.get_alerts(unread_only=args.unread, network_id=args.network,
                                  severity=args.severity, limit=args.limit)
        if not items:
            print("✅ No alerts")
        for alert in items:
            marker = " " if alert.is_read else "*"
            print(f"{marker} #{alert.id:<5} {alert.created_at}  {alert.severity:8} {alert.kind:16} "
                  f"{alert.network_id or '-':10} {alert.title}")
            if args.verbose:
                print(f"      {alert.message}")
                if alert.data:
                    print(f"      {json.dumps(alert.data, default=str)}")
    elif args.alerts_command == 'read':
        if alerts.mark_read(args.alert_id):
            print(f"✅ Alert #{args.alert_id} marked read")
        else:
            print(f"⚠️ Alert #{args.alert_id} not found or already read")
    elif args.alerts_command == 'read-all':
        print(f"✅ Marked {alerts.mark_all_read()} alerts read")
    elif args.alerts_command == 'prune':
        print(f"🧹 Deleted {alerts.delete_old_alerts(args.days)} alerts older than {args.days} days")
    elif args.alerts_command == 'stats':
        stats = alerts.get_alert_stats()
        print(f"📊 {stats['total']} alerts ({stats['unread']} unread)")
        print(f"  critical {stats['critical']}, warning {stats['warning']}, info {stats['info']}")
        for kind, count in stats['by_kind'].items():
            if count:
                print(f"  {kind:18} {count}")
    else:
        print("💡 Use 'depositwatch alerts --help' for available commands")
        sys.exit(1)


def cmd_deposits(args):
    services = _build_services(getattr(args, 'no_discord', False))
    ledger = services['ledger']

    if args.deposits_command == 'tx':
        record = ledger.get_by_tx_hash(args.tx_hash)
        if record is None:
            print(f"❌ No deposit recorded for {args.tx_hash}")
            sys.exit(1)
        _print_deposit(record)
    elif args.deposits_command == 'range':
        records = ledger.get_by_block_range(args.from_block, args.to_block, network_id=args.network)
        for record in records:
            _print_deposit(record)
        print(f"📊 {len(records)} deposits")
    elif args.deposits_command == 'unlinked':
        records = ledger.get_unlinked(network_id=args.network)
        for record in records:
            _print_deposit(record)
        print(f"📊 {len(records)} unlinked deposits")
    elif args.deposits_command == 'link':
        result = services['attributor'].link_unlinked_deposit(args.tx_hash, args.user_id)
        if result.credited:
            print(f"✅ Credited {result.amount} to {result.user_id}")
        else:
            print(f"⚠️ Deposit {args.tx_hash} is already linked")
    elif args.deposits_command == 'skipped':
        for item in ledger.get_skipped(network_id=args.network):
            print(f"  {item['network_id']:10} block {item['block_number']}  {item['tx_hash']}#{item['log_index']}  "
                  f"{item['reason']}")
    else:
        print("💡 Use 'depositwatch deposits --help' for available commands")
        sys.exit(1)


def cmd_users(args):
    accounts = _build_services(getattr(args, 'no_discord', False))['accounts']

    if args.users_command == 'add':
        user = accounts.add_user(args.user_id, email=args.email, deposit_address=args.address)
        print(f"✅ Added user {user['user_id']} (deposit address {user['deposit_address'] or 'not set'})")
    elif args.users_command == 'link-address':
        address = accounts.set_deposit_address(args.user_id, args.address)
        print(f"🔗 Linked {address} to {args.user_id}")
    elif args.users_command == 'show':
        user = accounts.get_user(args.user_id)
        if user is None:
            print(f"❌ User {args.user_id} not found")
            sys.exit(1)
        print(f"👤 {user['user_id']}  balance {user['balance']}  address {user['deposit_address'] or '-'}")
        for tx in accounts.get_transactions(args.user_id, limit=10):
            print(f"  {tx['created_at']}  {tx['type']:8} {tx['amount']:>18}  {tx['description']}")
    else:
        print("💡 Use 'depositwatch users --help' for available commands")
        sys.exit(1)


def cmd_balances(args):
    services = _build_services(getattr(args, 'no_discord', False))
    monitor = LowBalanceMonitor(
        services['db'], services['registry'], services['alerts'],
        rpc_timeout=services['config'].get_rpc_timeout(),
    )

    while True:
        result = monitor.check_balances()
        print(f"💵 Checked {result['checked']} networks, {result['low_balance']} low balances")
        for error in result['errors']:
            print(f"  ❌ {error}")
        if args.once:
            break
        time.sleep(args.interval)


def cmd_config(args):
    config = get_config_manager()

    if args.config_command == 'show':
        print(f"📋 Config file: {config.config_path}")
        print(f"📍 Database: {config.get_database_path()}")
        print(f"🔔 Alerts webhook: {'configured' if config.get_discord_webhook('alerts') else 'not set'}")
        print("⚙️ Sync settings:")
        for key, value in config.get_sync_settings().items():
            print(f"  {key:30} {value}")
        print("⛓️ Networks:")
        for network in config.get_network_definitions():
            print(f"  {network.network_id:10} {network.display_name:24} chain {network.chain_id:<6} "
                  f"contract {network.contract_address or '(not set)'}")
    elif args.config_command == 'validate':
        validation = config.validate_config()
        if validation['valid']:
            print(f"✅ Configuration is valid ({validation['config_file']})")
        else:
            print(f"❌ Configuration has errors ({validation['config_file']}):")
            for error in validation['errors']:
                print(f"  • {error}")
        if validation['warnings']:
            print("⚠️ Warnings:")
            for warning in validation['warnings']:
                print(f"  • {warning}")
        if not validation['valid']:
            sys.exit(1)
    else:
        print("💡 Use 'depositwatch config --help' for available commands")
        sys.exit(1)


def _add_common_args(parser, top_level: bool = False):
    # subcommands must not reset flags given before the subcommand name
    default = {} if top_level else {'default': argparse.SUPPRESS}
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging', **default)
    parser.add_argument('--no-color', action='store_true', help='Disable colored output', **default)
    parser.add_argument('--config', type=str, help='Path to the JSON configuration file', **default)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Multi-network deposit sync service',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_common_args(parser, top_level=True)
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # start command
    start_parser = subparsers.add_parser('start', help='Start deposit sync')
    start_parser.add_argument('--once', action='store_true', help='Run once instead of continuously')
    start_parser.add_argument('--interval', type=int, help='Sync interval in seconds (default: from config)')
    start_parser.add_argument('--no-discord', action='store_true', help='Disable Discord alerts')
    start_parser.add_argument('--max-workers', type=int, help='Networks synced in parallel')
    start_parser.add_argument('--ping-now', action='store_true', help='Send an immediate heartbeat on start')
    _add_common_args(start_parser)

    status_parser = subparsers.add_parser('status', help='Show current status')
    _add_common_args(status_parser)

    # networks command
    networks_parser = subparsers.add_parser('networks', help='Network registry')
    _add_common_args(networks_parser)
    networks_parser.add_argument('--no-discord', action='store_true', help='Disable Discord alerts')
    networks_sub = networks_parser.add_subparsers(dest='networks_command')
    networks_sub.add_parser('list', help='List registered networks')
    seed_parser = networks_sub.add_parser('seed', help='Seed networks from config')
    seed_parser.add_argument('--overwrite', action='store_true', help='Replace existing network rows')
    pause_parser = networks_sub.add_parser('pause', help='Pause deposits on a network')
    pause_parser.add_argument('network', help='Network id')
    resume_parser = networks_sub.add_parser('resume', help='Resume deposits on a network')
    resume_parser.add_argument('network', help='Network id')

    # alerts command
    alerts_parser = subparsers.add_parser('alerts', help='Operator alerts')
    _add_common_args(alerts_parser)
    alerts_sub = alerts_parser.add_subparsers(dest='alerts_command')
    list_parser = alerts_sub.add_parser('list', help='List alerts')
    list_parser.add_argument('--unread', action='store_true', help='Only unread alerts')
    list_parser.add_argument('--network', help='Filter by network id')
    list_parser.add_argument('--severity', choices=SEVERITIES, help='Filter by severity')
    list_parser.add_argument('--limit', type=int, default=50, help='Maximum alerts to show (default: 50)')
    read_parser = alerts_sub.add_parser('read', help='Mark an alert read')
    read_parser.add_argument('alert_id', type=int, help='Alert id')
    alerts_sub.add_parser('read-all', help='Mark all alerts read')
    prune_parser = alerts_sub.add_parser('prune', help='Delete old alerts')
    prune_parser.add_argument('--days', type=int, default=30, help='Age in days (default: 30)')
    alerts_sub.add_parser('stats', help='Alert statistics')

    # deposits command
    deposits_parser = subparsers.add_parser('deposits', help='Recorded deposits')
    _add_common_args(deposits_parser)
    deposits_parser.add_argument('--no-discord', action='store_true', help='Disable Discord alerts')
    deposits_sub = deposits_parser.add_subparsers(dest='deposits_command')
    tx_parser = deposits_sub.add_parser('tx', help='Look up a deposit by transaction hash')
    tx_parser.add_argument('tx_hash', help='Transaction hash')
    range_parser = deposits_sub.add_parser('range', help='Deposits in a block range')
    range_parser.add_argument('from_block', type=int, help='First block (inclusive)')
    range_parser.add_argument('to_block', type=int, help='Last block (inclusive)')
    range_parser.add_argument('--network', help='Filter by network id')
    unlinked_parser = deposits_sub.add_parser('unlinked', help='Deposits with no linked user')
    unlinked_parser.add_argument('--network', help='Filter by network id')
    link_parser = deposits_sub.add_parser('link', help='Credit an unlinked deposit to a user')
    link_parser.add_argument('tx_hash', help='Transaction hash')
    link_parser.add_argument('user_id', help='User id')
    skipped_parser = deposits_sub.add_parser('skipped', help='Quarantined malformed logs')
    skipped_parser.add_argument('--network', help='Filter by network id')

    # users command
    users_parser = subparsers.add_parser('users', help='User accounts')
    _add_common_args(users_parser)
    users_sub = users_parser.add_subparsers(dest='users_command')
    add_parser = users_sub.add_parser('add', help='Add a user')
    add_parser.add_argument('user_id', help='User id')
    add_parser.add_argument('--email', help='Email address')
    add_parser.add_argument('--address', help='Deposit address to link')
    link_address_parser = users_sub.add_parser('link-address', help='Link a deposit address to a user')
    link_address_parser.add_argument('user_id', help='User id')
    link_address_parser.add_argument('address', help='Deposit address (0x...)')
    show_parser = users_sub.add_parser('show', help='Show a user and recent transactions')
    show_parser.add_argument('user_id', help='User id')

    # balances command
    balances_parser = subparsers.add_parser('balances', help='Check vault token balances')
    balances_parser.add_argument('--once', action='store_true', help='Run once instead of continuously')
    balances_parser.add_argument('--interval', type=int, default=3600, help='Check interval in seconds (default: 3600)')
    balances_parser.add_argument('--no-discord', action='store_true', help='Disable Discord alerts')
    _add_common_args(balances_parser)

    # config command
    config_parser = subparsers.add_parser('config', help='Configuration management')
    _add_common_args(config_parser)
    config_sub = config_parser.add_subparsers(dest='config_command')
    config_sub.add_parser('show', help='Show configuration details')
    config_sub.add_parser('validate', help='Validate configuration')

    # database command
    database_parser = subparsers.add_parser('database', help='Database management')
    _add_common_args(database_parser)
    database_subparsers = database_parser.add_subparsers(dest='database_command', help='Database commands')
    for cmd_name, cmd_info in DATABASE_COMMANDS.items():
        db_cmd_parser = database_subparsers.add_parser(cmd_name, help=cmd_info['help'])
        for arg_names, arg_kwargs in cmd_info['args']:
            db_cmd_parser.add_argument(*arg_names, **arg_kwargs)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    setup_logging(verbose=args.verbose, no_color=getattr(args, 'no_color', False))

    try:
        config = reset_config_manager_instance(args.config) if args.config else get_config_manager()
    except DepositSyncError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    if args.config:
        logger.info(f"🔧 Using configuration: {config.config_path}")

    log_file = config.get_log_file()
    if log_file:
        setup_logging(verbose=args.verbose, no_color=getattr(args, 'no_color', False), log_file=log_file)

    try:
        if args.command == 'start':
            if args.no_discord:
                logger.warning("⚠️  Discord alerts are DISABLED via --no-discord flag")

            watcher = DepositWatcher(
                disable_discord=args.no_discord,
                max_workers=args.max_workers,
                send_initial_ping=args.ping_now,
            )
            if args.once:
                sys.exit(0 if watcher.run_once() else 1)
            watcher.run_continuous(args.interval or config.get_monitoring_interval())

        elif args.command == 'status':
            DepositWatcher(disable_discord=True).show_status()

        elif args.command == 'networks':
            cmd_networks(args)

        elif args.command == 'alerts':
            cmd_alerts(args)

        elif args.command == 'deposits':
            cmd_deposits(args)

        elif args.command == 'users':
            cmd_users(args)

        elif args.command == 'balances':
            cmd_balances(args)

        elif args.command == 'config':
            cmd_config(args)

        elif args.command == 'database':
            if getattr(args, 'database_command', None) is None:
                logger.error("❌ No database subcommand specified")
                logger.info("💡 Use 'depositwatch database --help' for available commands")
                sys.exit(1)
            DATABASE_COMMANDS[args.database_command]['func'](args)

    except (DepositSyncError, KeyError, ValueError) as e:
        logger.error(f"❌ {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("👋 Stopped by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

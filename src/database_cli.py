"""
Maintenance subcommands for the deposit sync database.

Each handler receives the parsed argparse namespace, talks to the DuckDB file
named in the active configuration and exits with status 1 on failure.
"""

import functools
import logging
import os
import sys
from datetime import datetime

from config_manager import get_config_manager
from watermark_store import SyncWatermarkStore

logger = logging.getLogger(__name__)

# (label, statistics key) in display order
STAT_ROWS = (
    ('Networks', 'networks_count'),
    ('Users', 'users_count'),
    ('Sync watermarks', 'sync_watermarks_count'),
    ('Active leases', 'sync_leases_count'),
    ('Deposit records', 'deposit_records_count'),
    ('Skipped events', 'skipped_events_count'),
    ('Transactions', 'transactions_count'),
    ('Notifications', 'notifications_count'),
    ('Admin alerts', 'admin_alerts_count'),
    ('Cron logs', 'cron_logs_count'),
)


def _exit_on_error(action):
    """Wrap a handler so any failure is reported as '<action> failed' and exits 1"""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(args):
            try:
                return func(args)
            except Exception as e:
                logger.debug("database command failed", exc_info=True)
                print(f"❌ {action} failed: {e}")
                sys.exit(1)
        return wrapper
    return decorator


def _open_database():
    config = get_config_manager()
    return config, config.create_database_manager()


@_exit_on_error("Database initialization")
def cmd_database_init(args):
    """Create all tables and indexes if they are missing"""
    config, db = _open_database()
    networks = db.get_statistics().get('networks_count', 0)
    print(f"✅ Schema ready at {config.get_database_path()} ({networks} networks registered)")


@_exit_on_error("Statistics")
def cmd_database_stats(args):
    config, db = _open_database()
    stats = db.get_statistics()

    print(f"📊 {config.get_database_path()}\n")
    for label, key in STAT_ROWS:
        print(f"  {label:24} {stats.get(key, 0):>10,}")
    print(f"  {'Total rows':24} {sum(stats.get(key, 0) for _, key in STAT_ROWS):>10,}\n")

    latest = stats.get('latest_deposit_block')
    if latest:
        print(f"⏰ Latest deposit block: {latest:,}")
    for wm in SyncWatermarkStore(db).list_all():
        print(f"  {wm.network_id:12} at {wm.last_checked_block:>12,}  {wm.status}")

    unlinked = stats.get('unlinked_deposits_count', 0)
    print(f"\n⚠️ {unlinked} unlinked deposits need review" if unlinked else "\n✅ No unlinked deposits")


@_exit_on_error("Backup")
def cmd_database_backup(args):
    """Export the database as parquet under <data_dir>/backups"""
    config, db = _open_database()
    name = getattr(args, 'name', None) or datetime.now().strftime("deposit_sync_%Y%m%d_%H%M%S")
    target = os.path.join(config.get_data_dir(), "backups", name)
    os.makedirs(os.path.dirname(target), exist_ok=True)

    db.backup_database(target)
    print(f"💾 Backup written to {target}")


@_exit_on_error("Vacuum")
def cmd_database_vacuum(args):
    _, db = _open_database()
    db.vacuum_database()
    print("🧹 Storage reclaimed")


def _print_rows(columns, rows):
    widths = [max([len(str(c))] + [len(str(row[i])) for row in rows]) for i, c in enumerate(columns)]
    print("  ".join(str(c).ljust(w) for c, w in zip(columns, widths)))
    print("  ".join("-" * w for w in widths))
    for row in rows:
        print("  ".join(str(v).ljust(w) for v, w in zip(row, widths)))


@_exit_on_error("Query")
def cmd_database_query(args):
    """Run an arbitrary SQL statement and print any result set as a table"""
    sql = getattr(args, 'query', None)
    if not sql:
        print("❌ No query provided. Use --query 'SELECT ...'")
        sys.exit(1)

    _, db = _open_database()
    with db.get_connection() as conn:
        cursor = conn.execute(sql)
        if cursor.description is None:
            print("📄 Statement executed")
            return
        columns = [d[0] for d in cursor.description]
        rows = cursor.fetchall()

    if not rows:
        print("📄 No rows")
        return
    _print_rows(columns, rows)
    print(f"\n{len(rows)} rows")


DATABASE_COMMANDS = {
    'init': {
        'func': cmd_database_init,
        'help': 'Create schema if missing',
        'args': [],
    },
    'stats': {
        'func': cmd_database_stats,
        'help': 'Row counts, watermarks and unlinked deposits',
        'args': [],
    },
    'backup': {
        'func': cmd_database_backup,
        'help': 'Export a parquet backup',
        'args': [
            (['--name'], {'help': 'Backup directory name (default: deposit_sync_<timestamp>)'}),
        ],
    },
    'vacuum': {
        'func': cmd_database_vacuum,
        'help': 'Reclaim storage',
        'args': [],
    },
    'query': {
        'func': cmd_database_query,
        'help': 'Run a SQL statement',
        'args': [
            (['--query'], {'required': True, 'help': 'SQL to execute'}),
        ],
    },
}

#!/usr/bin/env python3
"""
Setup script for Deposit Sync
"""

from setuptools import setup

setup(
    name="deposit-sync",
    version="1.0.0",
    description="Multi-network vault deposit sync engine",
    py_modules=[
        "account_store",
        "alert_dispatcher",
        "balance_monitor",
        "chain_reader",
        "config_manager",
        "database_cli",
        "database_manager",
        "deposit_attributor",
        "deposit_ledger",
        "deposit_watcher",
        "errors",
        "logger_utils",
        "models",
        "network_registry",
        "ping_helper",
        "rpc_failover",
        "sync_orchestrator",
        "watermark_store",
    ],
    package_dir={"": "src"},
    install_requires=[
        "web3>=6.0.0,<7.0.0",
        "requests>=2.28.0",
        "eth-abi>=4.0.0,<5.0.0",
        "duckdb>=0.9.0",
        "pytz>=2023.3",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "depositwatch=deposit_watcher:main",
        ],
    },
    python_requires=">=3.8",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)

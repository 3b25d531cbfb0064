#!/usr/bin/env python3
import logging
import threading
import time
from typing import List, Callable, Any, Optional

from web3 import Web3

logger = logging.getLogger(__name__)


class EVMProviderPool:
    """Ordered RPC endpoints with sticky failover.

    Calls go to the last endpoint that answered. When it fails, the remaining
    endpoints are tried in configured order and the first success becomes the
    new favourite. Every preference window the favourite is forgotten so a
    recovered primary URL gets picked again.
    """

    def __init__(self, urls: List[str], request_timeout_s: int = 15, preference_reset_minutes: int = 60,
                 label: Optional[str] = None):
        if not urls:
            raise ValueError("EVMProviderPool requires at least one URL")
        self.urls = list(urls)
        self.label = label or urls[0]
        self.request_timeout_s = request_timeout_s
        self.preference_window_s = max(60, int(preference_reset_minutes) * 60)
        self._favourite: Optional[int] = None
        self._favoured_at = 0.0
        self._lock = threading.Lock()

    @property
    def active_url(self) -> Optional[str]:
        return None if self._favourite is None else self.urls[self._favourite]

    def _candidates(self) -> List[int]:
        """Endpoint indexes in the order they should be tried"""
        with self._lock:
            if self._favourite is not None and time.monotonic() - self._favoured_at >= self.preference_window_s:
                logger.debug(f"[{self.label}] preference window elapsed, rescanning from primary RPC")
                self._favourite = None
            favourite = self._favourite

        order = list(range(len(self.urls)))
        if favourite is not None:
            order.remove(favourite)
            order.insert(0, favourite)
        return order

    def _remember(self, index: int):
        with self._lock:
            if self._favourite != index:
                logger.debug(f"[{self.label}] switching to RPC {self.urls[index]}")
                self._favourite = index
                self._favoured_at = time.monotonic()

    def _forget(self, index: int):
        with self._lock:
            if self._favourite == index:
                self._favourite = None

    def _connect(self, index: int) -> Web3:
        provider = Web3.HTTPProvider(self.urls[index], request_kwargs={'timeout': self.request_timeout_s})
        return Web3(provider)

    def with_web3(self, fn: Callable[[Web3], Any], max_attempts: Optional[int] = None):
        """Run fn against each endpoint in turn until one succeeds.

        Raises ConnectionError carrying the last failure when every endpoint
        (or max_attempts of them) has failed.
        """
        order = self._candidates()
        if max_attempts is not None:
            order = order[:max(1, max_attempts)]

        last_error: Optional[Exception] = None
        for index in order:
            try:
                result = fn(self._connect(index))
            except Exception as e:
                last_error = e
                logger.warning(f"[{self.label}] RPC {self.urls[index]} failed: {e}")
                self._forget(index)
                continue
            self._remember(index)
            return result

        raise ConnectionError(f"All EVM RPC endpoints failed for {self.label}: {last_error}")

    def with_contract_call(self, address: str, abi: Any, fn_builder: Callable[[Any], Any],
                           max_attempts: Optional[int] = None):
        """Bind a contract at address on a working endpoint and run fn_builder on it"""
        checksummed = Web3.to_checksum_address(address)
        return self.with_web3(
            lambda w3: fn_builder(w3.eth.contract(address=checksummed, abi=abi)),
            max_attempts=max_attempts,
        )

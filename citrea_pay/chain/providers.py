"""
RPC endpoint pool with failover.

Keeps a list of JSON-RPC endpoints for one chain, health-checks them with a
plain `eth_chainId` call and hands out a Web3 instance bound to the first
healthy one. The watcher calls `mark_unhealthy` when a request fails so the
next tick moves to another endpoint.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, List, Optional

import requests
from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

logger = logging.getLogger(__name__)

DEFAULT_RPC_TIMEOUT = 10  # seconds

# Short timeout so failover is quick
HEALTH_CHECK_TIMEOUT = 3  # seconds


class RPCProviderError(Exception):
    """Raised when no endpoint of the pool can serve requests."""


class RpcPool:
    """Pool of RPC endpoints for a single chain id."""

    def __init__(
        self,
        rpc_urls: List[str],
        chain_id: int,
        timeout: int = DEFAULT_RPC_TIMEOUT,
        retry_after: int = 60,
    ) -> None:
        """
        Args:
            rpc_urls: Endpoints in order of preference
            chain_id: Chain id every endpoint must report
            timeout: Request timeout in seconds for Web3 calls
            retry_after: Seconds before an unhealthy endpoint is checked again
        """
        if not rpc_urls:
            raise RPCProviderError("No RPC URLs provided to RpcPool.")

        self.rpc_urls = list(rpc_urls)
        self.chain_id = chain_id
        self.timeout = timeout
        self.retry_after = retry_after

        self._status: Dict[str, dict] = {
            url: {"healthy": True, "last_check": 0.0, "failures": 0, "last_error": None}
            for url in self.rpc_urls
        }
        self._current_index = 0
        self._web3: Optional[Web3] = None
        # Shared by the observer, sweeper and request threads
        self._lock = threading.RLock()

    @property
    def current_url(self) -> str:
        return self.rpc_urls[self._current_index]

    def _is_healthy(self, url: str) -> bool:
        status = self._status[url]
        if not status["healthy"] and time.time() - status["last_check"] >= self.retry_after:
            return self.check(url)
        return status["healthy"]

    def _record_failure(self, url: str, error: str) -> None:
        with self._lock:
            status = self._status[url]
            status["healthy"] = False
            status["last_check"] = time.time()
            status["failures"] += 1
            status["last_error"] = error

    def check(self, url: str) -> bool:
        """Check one endpoint with `eth_chainId`; returns True when it serves our chain."""
        try:
            payload = {"jsonrpc": "2.0", "id": 1, "method": "eth_chainId", "params": []}
            response = requests.post(url, json=payload, timeout=HEALTH_CHECK_TIMEOUT)
        except requests.exceptions.Timeout:
            self._record_failure(url, "Timeout")
            logger.warning(f"RPC {url} health check timed out")
            return False
        except requests.exceptions.RequestException as e:
            self._record_failure(url, str(e))
            logger.warning(f"RPC {url} health check failed: {e}")
            return False

        if response.status_code != 200:
            self._record_failure(url, f"HTTP {response.status_code}")
            return False

        result = response.json().get("result")
        if not result or int(result, 16) != self.chain_id:
            self._record_failure(url, f"wrong chain id {result}")
            logger.warning(f"RPC {url} returned chain id {result}, expected {hex(self.chain_id)}")
            return False

        with self._lock:
            self._status[url].update(healthy=True, last_check=time.time(), failures=0, last_error=None)
        return True

    def _find_healthy(self) -> Optional[str]:
        for i in range(len(self.rpc_urls)):
            idx = (self._current_index + i) % len(self.rpc_urls)
            if self._is_healthy(self.rpc_urls[idx]):
                self._current_index = idx
                return self.rpc_urls[idx]

        logger.warning("No endpoints marked healthy, re-checking all...")
        for idx, url in enumerate(self.rpc_urls):
            if self.check(url):
                self._current_index = idx
                return url
        return None

    def get_web3(self) -> Web3:
        """Return a Web3 instance bound to a healthy endpoint.

        Raises:
            RPCProviderError: If no endpoint is healthy
        """
        with self._lock:
            web3 = self._web3
            if web3 is not None and self._is_healthy(self.current_url):
                return web3

            url = self._find_healthy()
            if url is None:
                errors = [(u, self._status[u]["last_error"]) for u in self.rpc_urls]
                raise RPCProviderError(f"No healthy RPC endpoints available. Last errors: {errors}")

            web3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": self.timeout}))
            web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
            self._web3 = web3
            logger.info(f"Connected to RPC: {url} (chain_id={self.chain_id})")
            return web3

    def mark_unhealthy(self, error: Optional[str] = None) -> None:
        """Mark the current endpoint as failed so the next call fails over."""
        with self._lock:
            url = self.current_url
            self._record_failure(url, error or "Manually marked unhealthy")
            self._web3 = None
        logger.warning(f"Marked RPC {url} as unhealthy: {error}")

    def get_status(self) -> dict:
        with self._lock:
            return {
                url: {
                    "healthy": status["healthy"],
                    "failures": status["failures"],
                    "last_error": status["last_error"],
                }
                for url, status in self._status.items()
            }

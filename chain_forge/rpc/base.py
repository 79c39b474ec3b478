"""JSON-RPC plumbing shared by the chain backend clients."""
import itertools
from abc import ABC, abstractmethod
from typing import Any, Optional, Tuple

import gevent.event
import requests
import structlog
from requests.adapters import HTTPAdapter

from chain_forge.constants import READINESS_ATTEMPTS, READINESS_INTERVAL, RPC_TIMEOUT
from chain_forge.exceptions import (
    NodeManagementError,
    RpcConnectionError,
    RpcError,
    RpcResponseError,
    StartCancelled,
)

log = structlog.get_logger(__name__)


class TimeOutHTTPAdapter(HTTPAdapter):
    """HTTP adapter applying a default timeout to every request sent through it."""

    def __init__(self, timeout, *args, **kwargs):
        self.timeout = timeout
        super().__init__(*args, **kwargs)

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        timeout = timeout or self.timeout
        return super().send(request, stream, timeout, verify, cert, proxies)


class JSONRPCSession:
    """Sends JSON-RPC requests to a single endpoint.

    Transport failures are raised as :exc:`RpcConnectionError`, error objects
    in the response as :exc:`RpcError`.
    """

    JSONRPC_VERSION = "2.0"

    def __init__(
        self,
        url: str,
        auth: Optional[Tuple[str, str]] = None,
        timeout: float = RPC_TIMEOUT,
        session: requests.Session = None,
    ):
        self.url = url
        self.session = session or requests.Session()
        self.session.mount("http://", TimeOutHTTPAdapter(timeout=timeout))
        self.session.mount("https://", TimeOutHTTPAdapter(timeout=timeout))
        if auth:
            self.session.auth = auth
        self._ids = itertools.count(1)

    def call(self, method: str, *params, path: str = "") -> Any:
        payload = {
            "jsonrpc": self.JSONRPC_VERSION,
            "id": next(self._ids),
            "method": method,
            "params": list(params),
        }
        try:
            resp = self.session.post(self.url + path, json=payload)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise RpcConnectionError(str(e)) from e
        except requests.RequestException as e:
            raise RpcError(f"{method} request failed: {e}") from e

        # bitcoind reports RPC errors with a non-2xx status and a JSON body.
        try:
            body = resp.json()
        except ValueError as e:
            raise RpcResponseError(
                f"{method} returned a non-JSON response (HTTP {resp.status_code})"
            ) from e

        if not isinstance(body, dict):
            raise RpcResponseError(f"{method} returned an unexpected response: {body!r}")

        error = body.get("error")
        if error:
            message = error.get("message", error) if isinstance(error, dict) else error
            raise RpcError(f"{method} failed: {message}")

        if not resp.ok:
            raise RpcResponseError(f"{method} failed with HTTP {resp.status_code}")

        return body.get("result")


def sleep_unless_cancelled(seconds: float, cancel: Optional[gevent.event.Event] = None) -> None:
    """Sleep cooperatively, raising :exc:`StartCancelled` if `cancel` gets set."""
    if cancel is None:
        gevent.sleep(seconds)
    elif cancel.wait(seconds):
        raise StartCancelled("Operation cancelled")


class ChainRpcClient(ABC):
    """The narrow RPC surface the orchestrator and funding strategies rely on."""

    #: Name of the backend, used in error messages.
    backend_name = "node"
    #: Ticker of the native currency, used in balance descriptions.
    currency = ""

    def __init__(self, url: str, **kwargs):
        self.url = url
        self.rpc = JSONRPCSession(url, **kwargs)

    @abstractmethod
    def is_ready(self) -> bool:
        """Return True if the backend answers a cheap health query."""

    def wait_ready(
        self,
        max_attempts: int = READINESS_ATTEMPTS,
        interval: float = READINESS_INTERVAL,
        cancel: Optional[gevent.event.Event] = None,
    ) -> None:
        """Poll :meth:`is_ready` until it succeeds.

        :raises NodeManagementError: once `max_attempts` polls failed.
        :raises StartCancelled: if `cancel` is set while waiting.
        """
        for attempt in range(1, max_attempts + 1):
            if self.is_ready():
                log.debug("Backend ready", url=self.url, attempts=attempt)
                return
            if attempt < max_attempts:
                sleep_unless_cancelled(interval, cancel)
        raise NodeManagementError(f"{self.backend_name} did not start in time")

    @abstractmethod
    def get_balance(self, address: str) -> float:
        """Return the confirmed balance of `address` in whole coins."""

    @abstractmethod
    def send_to(self, address: str, amount: float, from_address: Optional[str] = None) -> str:
        """Move `amount` to `address` and return the transaction id.

        Funds come from the backend's own source unless `from_address` names
        an account to spend from.
        """

    def set_balance(self, address: str, target: float) -> str:
        """Top up `address` to at least `target` and describe what happened.

        Balances are never reduced.
        """
        current = self.get_balance(address)
        if current >= target:
            return (
                f"Balance already at {current} {self.currency} "
                f"(target: {target} {self.currency})"
            )
        difference = round(target - current, 9)
        txid = self.send_to(address, difference)
        return (
            f"Added {difference} {self.currency} ({current} -> {target} {self.currency}). "
            f"TxID: {txid}"
        )

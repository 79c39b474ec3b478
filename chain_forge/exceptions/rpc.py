from typing import List, NamedTuple

import requests

from chain_forge.exceptions.base import ChainForgeError


class RpcError(ChainForgeError):
    """A backend JSON-RPC call failed or returned an error object."""


class RpcConnectionError(RpcError):
    """We could not reach the backend's RPC endpoint.

    This exception is raised from:

        * :exc:`requests.ConnectionError`
        * :exc:`requests.Timeout`
    """

    def __init__(self, reason="Endpoint unreachable"):
        super(RpcConnectionError, self).__init__(f"Error communicating with the node! {reason}")

    @property
    def request(self):
        if self.__cause__ and isinstance(self.__cause__, requests.RequestException):
            return self.__cause__.request


class RpcResponseError(RpcError):
    """The backend answered, but the response was not a valid JSON-RPC reply."""


class FundingFailure(NamedTuple):
    index: int
    address: str
    cause: Exception

    def __str__(self):
        return f"account {self.index} ({self.address}): {self.cause}"


class FundingError(RpcError):
    """One or more accounts could not be funded.

    Carries every per-account failure of a funding pass in :attr:`failures`,
    in account order.
    """

    def __init__(self, failures: List[FundingFailure]):
        self.failures = list(failures)
        details = "; ".join(str(failure) for failure in self.failures)
        super(FundingError, self).__init__(
            f"Failed to fund {len(self.failures)} account(s): {details}"
        )

class ChainForgeError(Exception):
    """Base class for all errors raised by :mod:`chain_forge`."""


class AccountGenerationError(ChainForgeError):
    """The account generator failed to derive accounts from the given seed material."""


class NodeManagementError(ChainForgeError):
    """Spawning, supervising or stopping a backend daemon failed.

    This covers occupied ports, daemons exiting right after launch and
    daemons which never answered their readiness probe.
    """


class InsufficientFundsError(NodeManagementError):
    """The settlement wallet does not hold enough funds to pay every account."""


class InstanceIOError(ChainForgeError):
    """Reading or writing instance data on disk failed."""


class SerializationError(ChainForgeError):
    """Instance data on disk could not be encoded or decoded."""


class NotRunningError(ChainForgeError):
    """An operation required a running instance, but there is none."""

    def __init__(self, reason=None):
        super(NotRunningError, self).__init__(reason or "Chain not running")


class AlreadyRunningError(ChainForgeError):
    """Start was requested for an instance that is already running."""

    def __init__(self, reason=None):
        super(AlreadyRunningError, self).__init__(reason or "Chain already running")


class OtherError(ChainForgeError):
    """Catch-all, e.g. for registry lock failures."""


class StartCancelled(OtherError):
    """An in-flight start was interrupted by a concurrent stop."""

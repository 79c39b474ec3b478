import pluggy
import structlog

from chain_forge.constants import HOST_NAMESPACE, ChainKind
from chain_forge.exceptions import ConfigurationError
from chain_forge.hooks import impl, specs

log = structlog.get_logger(__name__)

#: Hook Implementer object for implementing available hooks.
HOOK_IMPL = pluggy.HookimplMarker(HOST_NAMESPACE)


def get_plugin_manager(namespace: str = HOST_NAMESPACE) -> pluggy.PluginManager:
    """Fetch pluggy's plugin manager for our library."""
    pm = pluggy.PluginManager(namespace)
    pm.add_hookspecs(specs)
    loaded = pm.load_setuptools_entrypoints(namespace)
    log.debug("Loaded plugins from entry points", count=loaded)
    pm.register(impl)
    return pm


CF_PM = get_plugin_manager(HOST_NAMESPACE)


def get_account_generator(chain: ChainKind, pm: pluggy.PluginManager = None):
    """Return the account generator a plugin provides for `chain`.

    :raises ConfigurationError: if no installed plugin supports the chain.
    """
    pm = pm or CF_PM
    generator = pm.hook.account_generator(chain=ChainKind(chain))
    if generator is None:
        raise ConfigurationError(
            f"No account generator installed for {ChainKind(chain).value}. Install a "
            f"plugin implementing the '{HOST_NAMESPACE}.account_generator' hook."
        )
    return generator

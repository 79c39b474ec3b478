import flask
import pytest

from chain_forge.constants import ChainKind
from chain_forge.exceptions import ConfigurationError
from chain_forge.hooks import HOOK_IMPL, get_account_generator, get_plugin_manager


@pytest.fixture
def plugin_manager():
    return get_plugin_manager()


def test_missing_generator_plugin_raises_configuration_error(plugin_manager):
    with pytest.raises(ConfigurationError, match="No account generator installed for bitcoin"):
        get_account_generator(ChainKind.BITCOIN, pm=plugin_manager)


def test_generator_is_provided_by_plugin(plugin_manager, account_generator):
    class SolanaPlugin:
        @HOOK_IMPL
        def account_generator(self, chain):
            if chain is ChainKind.SOLANA:
                return account_generator

    plugin_manager.register(SolanaPlugin())

    assert get_account_generator("solana", pm=plugin_manager) is account_generator
    with pytest.raises(ConfigurationError):
        get_account_generator("bitcoin", pm=plugin_manager)


def test_builtin_blueprints_are_registered_through_hook(plugin_manager):
    app = flask.Flask(__name__)
    plugin_manager.hook.register_blueprints(app=app)

    assert "nodes_blueprint" in app.blueprints

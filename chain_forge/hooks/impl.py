"""Hook implementations shipped with chain-forge itself."""
import flask
import pluggy

from chain_forge.constants import HOST_NAMESPACE
from chain_forge.services.nodes.blueprints import nodes_blueprint

HOOK_IMPL = pluggy.HookimplMarker(HOST_NAMESPACE)


@HOOK_IMPL
def register_blueprints(app: flask.Flask) -> None:
    app.register_blueprint(nodes_blueprint)

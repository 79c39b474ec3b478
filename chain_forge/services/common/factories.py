from pathlib import Path
from typing import Mapping

import flask
import structlog
import waitress

from chain_forge.constants import DEFAULT_DATA_ROOT
from chain_forge.hooks import CF_PM
from chain_forge.registry import NodeRegistry
from chain_forge.services.common.blueprints import admin_blueprint, metrics_blueprint

log = structlog.get_logger(__name__)


def attach_blueprints(app: flask.Flask, *blueprints: flask.Blueprint) -> flask.Flask:
    """Attach the given `blueprints` to the given `app` and return it."""
    for blueprint in blueprints:
        app.register_blueprint(blueprint)
    return app


def construct_flask_app(
    data_root: Path = DEFAULT_DATA_ROOT, test_config: Mapping = None
) -> flask.Flask:
    """Construct the API app for the instances under `data_root`.

    Besides the blueprints registered through the ``register_blueprints``
    hook, all apps have the following endpoints:

        `/metrics`
        Exposes prometheus compatible metrics.

        `/status`
        Returns 200 OK as long as the underlying flask app is responsive and running.
    """
    app = flask.Flask(__name__)
    app.config["DATA_ROOT"] = Path(data_root)
    app.config["REGISTRY"] = NodeRegistry.for_data_root(data_root)
    if test_config is not None:
        app.config.from_mapping(test_config)

    attach_blueprints(app, metrics_blueprint, admin_blueprint)
    CF_PM.hook.register_blueprints(app=app)
    return app


def serve(host: str, port: int, data_root: Path = DEFAULT_DATA_ROOT) -> None:
    app = construct_flask_app(data_root)
    log.info("Starting API server", host=host, port=port, data_root=str(data_root))
    waitress.serve(app, host=host, port=port)

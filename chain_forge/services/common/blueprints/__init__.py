from chain_forge.services.common.blueprints.admin import admin_blueprint
from chain_forge.services.common.blueprints.metrics import metrics_blueprint

__all__ = ["admin_blueprint", "metrics_blueprint"]

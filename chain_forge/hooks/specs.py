from typing import Optional

import flask
import pluggy

from chain_forge.accounts import AccountGenerator
from chain_forge.constants import HOST_NAMESPACE, ChainKind

HOOK_SPEC = pluggy.HookspecMarker(HOST_NAMESPACE)


@HOOK_SPEC(firstresult=True)
def account_generator(chain: ChainKind) -> Optional[AccountGenerator]:
    """Return an :class:`AccountGenerator` deriving accounts for `chain`, or None."""


@HOOK_SPEC
def register_blueprints(app: flask.Flask) -> None:
    """Register additional blueprints with the chain-forge API application."""

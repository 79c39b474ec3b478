"""REST API for the instances published in the registry.

The following endpoints are supplied by this blueprint:

    * [GET] /api/v1/nodes?chain=<bitcoin|solana>
        List all registered nodes, optionally filtered by chain.

    * [GET] /api/v1/nodes/<node_id>
        Return a single registry entry.

    * [DELETE] /api/v1/nodes/<node_id>
        Mark a node as stopped. The daemon itself is owned by the process
        which started it and keeps running until that process stops it.

    * [GET] /api/v1/nodes/<node_id>/accounts?refresh=<bool>
        Return the accounts of a node, optionally with live balances.

    * [POST] /api/v1/nodes/<node_id>/fund
        Top up the balance of an address. Expects `address` and `amount`.

    * [POST] /api/v1/health
        Probe every registered node and update its status.

    * [POST] /api/v1/registry/cleanup
        Mark unreachable nodes as stopped and drop all stopped nodes.

Every response body has the shape ``{"success": <bool>, "data": ..., "error": ...}``.
"""
import structlog
from flask import Blueprint, current_app, jsonify, request

from chain_forge import constants
from chain_forge.constants import NodeStatus
from chain_forge.exceptions import (
    AlreadyRunningError,
    ChainForgeError,
    ConfigurationError,
    NotRunningError,
    RpcError,
)
from chain_forge.instance import load_accounts, load_snapshot
from chain_forge.registry import NodeRegistry, RegistryEntry
from chain_forge.rpc import ChainRpcClient, create_client
from chain_forge.services.common.metrics import REDMetricsTracker
from chain_forge.services.nodes.schemas import FundRequest

log = structlog.get_logger(__name__)

nodes_blueprint = Blueprint("nodes_blueprint", __name__, url_prefix="/api/v1")
fund_request_schema = FundRequest()

PROBE_TIMEOUT = 2

ERROR_STATUS_CODES = (
    (ConfigurationError, 400),
    (NotRunningError, 409),
    (AlreadyRunningError, 409),
    (RpcError, 502),
)


class NodeNotFound(ChainForgeError):
    """The requested node id is not in the registry."""


def success(data=None, status: int = 200):
    return jsonify({"success": True, "data": data}), status


def failure(message: str, status: int):
    return jsonify({"success": False, "error": message}), status


@nodes_blueprint.errorhandler(ChainForgeError)
def handle_chain_forge_error(error: ChainForgeError):
    if isinstance(error, NodeNotFound):
        return failure(str(error), 404)
    for error_class, status in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            return failure(str(error), status)
    log.error("Unhandled error while processing request", error=str(error))
    return failure(str(error), 500)


def registry() -> NodeRegistry:
    return current_app.config["REGISTRY"]


def get_entry(node_id: str) -> RegistryEntry:
    entry = registry().get(node_id)
    if entry is None:
        raise NodeNotFound(f"Node '{node_id}' not found")
    return entry


def connect(entry: RegistryEntry, **kwargs) -> ChainRpcClient:
    """Build a client for `entry`, preferring the credentials of its snapshot."""
    data_root = current_app.config["DATA_ROOT"]
    try:
        snapshot = load_snapshot(entry.chain, entry.instance_id, data_root)
    except ChainForgeError:
        return create_client(
            entry.chain,
            entry.rpc_url,
            constants.BITCOIN_RPC_USER,
            constants.BITCOIN_RPC_PASSWORD,
            **kwargs,
        )
    return snapshot.connect(entry.chain, **kwargs)


def probe(entry: RegistryEntry) -> bool:
    return connect(entry, timeout=PROBE_TIMEOUT).is_ready()


@nodes_blueprint.route("/nodes", methods=["GET"])
def list_nodes_view():
    with REDMetricsTracker("GET", "/api/v1/nodes"):
        chain = request.args.get("chain")
        if chain:
            try:
                entries = registry().list_by_chain(chain)
            except ValueError:
                return failure(f"Unknown chain '{chain}'", 400)
        else:
            entries = registry().list()
        return success([entry.to_dict() for entry in entries])


@nodes_blueprint.route("/nodes/<node_id>", methods=["GET"])
def get_node_view(node_id):
    with REDMetricsTracker("GET", "/api/v1/nodes/<node_id>"):
        return success(get_entry(node_id).to_dict())


@nodes_blueprint.route("/nodes/<node_id>", methods=["DELETE"])
def stop_node_view(node_id):
    with REDMetricsTracker("DELETE", "/api/v1/nodes/<node_id>"):
        get_entry(node_id)
        registry().update_status(node_id, NodeStatus.STOPPED)
        return success({"node_id": node_id, "status": NodeStatus.STOPPED.value})


@nodes_blueprint.route("/nodes/<node_id>/accounts", methods=["GET"])
def node_accounts_view(node_id):
    with REDMetricsTracker("GET", "/api/v1/nodes/<node_id>/accounts"):
        entry = get_entry(node_id)
        accounts = load_accounts(entry.chain, entry.instance_id, current_app.config["DATA_ROOT"])

        if request.args.get("refresh", "").lower() in ("1", "true", "yes"):
            client = connect(entry)
            for account in accounts:
                account.balance = client.get_balance(account.address)

        return success([account.to_dict() for account in accounts])


@nodes_blueprint.route("/nodes/<node_id>/fund", methods=["POST"])
def fund_node_view(node_id):
    with REDMetricsTracker("POST", "/api/v1/nodes/<node_id>/fund"):
        data = fund_request_schema.validate_and_deserialize(request.get_json(silent=True) or {})
        entry = get_entry(node_id)
        if entry.status is not NodeStatus.RUNNING:
            raise NotRunningError(f"Node '{node_id}' is not running")

        description = connect(entry).set_balance(data["address"], data["amount"])
        log.info("Funded address", node_id=node_id, address=data["address"], result=description)
        return success({"address": data["address"], "result": description})


@nodes_blueprint.route("/health", methods=["POST"])
def health_view():
    with REDMetricsTracker("POST", "/api/v1/health"):
        counts = {status.value: 0 for status in NodeStatus}
        nodes = []
        for entry in registry().list():
            status = entry.status
            if probe(entry):
                status = NodeStatus.RUNNING
            elif status is NodeStatus.RUNNING:
                status = NodeStatus.STOPPED

            if status is not entry.status:
                registry().update_status(entry.node_id, status)
            counts[status.value] += 1
            nodes.append({"node_id": entry.node_id, "status": status.value})

        return success({"total": len(nodes), **counts, "nodes": nodes})


@nodes_blueprint.route("/registry/cleanup", methods=["POST"])
def cleanup_view():
    with REDMetricsTracker("POST", "/api/v1/registry/cleanup"):
        for entry in registry().list():
            if entry.status is not NodeStatus.STOPPED and not probe(entry):
                registry().update_status(entry.node_id, NodeStatus.STOPPED)

        removed = registry().clear_stopped()
        remaining = len(registry().list())
        return success({"removed": len(removed), "remaining": remaining, "removed_nodes": removed})

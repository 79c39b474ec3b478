import hashlib
import json
import re
from typing import Dict, Set

import pytest
import responses

from chain_forge.accounts import Account, AccountGenerator
from chain_forge.constants import ChainKind
from chain_forge.exceptions import RpcError
from chain_forge.registry import NodeRegistry, RegistryEntry
from chain_forge.rpc import ChainRpcClient

TEST_MNEMONIC = "abandon abandon abandon abandon abandon abandon abandon about"


class FakeAccountGenerator(AccountGenerator):
    """Deterministically derives fake accounts from a mnemonic."""

    chain = ChainKind.SOLANA

    def __init__(self):
        self.calls = 0

    def generate(self, count, mnemonic=None):
        self.calls += 1
        mnemonic = mnemonic or TEST_MNEMONIC
        seed = hashlib.sha256(mnemonic.encode()).hexdigest()[:8]
        accounts = [
            Account(
                address=f"addr-{seed}-{index}",
                secret=f"secret-{seed}-{index}",
                mnemonic=mnemonic,
                derivation_path=f"m/44'/0'/0'/0/{index}",
            )
            for index in range(count)
        ]
        return mnemonic, accounts


class StubClient(ChainRpcClient):
    """In-memory backend. Transfers to `failing` addresses raise :exc:`RpcError`."""

    backend_name = "Stub"
    currency = "STB"

    def __init__(self, ready: bool = True, failing: Set[str] = None):
        super(StubClient, self).__init__("http://127.0.0.1:1")
        self.ready = ready
        self.failing = failing or set()
        self.balances: Dict[str, float] = {}

    def is_ready(self):
        return self.ready

    def get_balance(self, address):
        return self.balances.get(address, 0.0)

    def send_to(self, address, amount, from_address=None):
        if address in self.failing:
            raise RpcError(f"transfer to {address} rejected")
        self.balances[address] = self.get_balance(address) + amount
        return f"tx-{address}"


@pytest.fixture
def data_root(tmp_path):
    root = tmp_path.joinpath("chain-forge")
    root.mkdir()
    return root


@pytest.fixture
def registry(data_root):
    return NodeRegistry.for_data_root(data_root)


@pytest.fixture
def account_generator():
    return FakeAccountGenerator()


@pytest.fixture
def stub_client():
    return StubClient()


@pytest.fixture
def make_entry():
    def factory(instance_id="default", chain=ChainKind.BITCOIN, status="running", port=18443):
        chain = ChainKind(chain)
        return RegistryEntry(
            node_id=NodeRegistry.node_id(chain, instance_id),
            name=instance_id,
            chain=chain,
            instance_id=instance_id,
            rpc_url=f"http://127.0.0.1:{port}",
            rpc_port=port,
            accounts_count=2,
            status=status,
            started_at="2024-05-01T12:00:00+00:00",
        )

    return factory


@pytest.fixture
def mocked_responses():
    with responses.RequestsMock() as requests_mock:
        yield requests_mock


@pytest.fixture
def stub_client_class():
    return StubClient


class RPCRouter:
    """Answers JSON-RPC requests by method name, recording every call."""

    def __init__(self, mocked_responses, url):
        self.handlers = {}
        self.calls = []
        mocked_responses.add_callback(
            "POST",
            re.compile(re.escape(url) + r"(/.*)?$"),
            callback=self.callback,
            content_type="application/json",
        )

    def on(self, method, result=None, error=None, status=200):
        self.handlers[method] = (result, error, status)

    def callback(self, request):
        payload = json.loads(request.body)
        self.calls.append((request.path_url, payload))
        result, error, status = self.handlers[payload["method"]]
        if callable(result):
            result = result(*payload["params"])
        body = {"jsonrpc": payload["jsonrpc"], "id": payload["id"], "result": result}
        if error is not None:
            body = {"id": payload["id"], "result": None, "error": error}
            status = 500 if status == 200 else status
        return status, {}, json.dumps(body)

    def methods(self):
        return [payload["method"] for _, payload in self.calls]


@pytest.fixture
def make_router(mocked_responses):
    def factory(url):
        return RPCRouter(mocked_responses, url)

    return factory

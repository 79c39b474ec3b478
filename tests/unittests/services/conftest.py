import pytest

from chain_forge.accounts import Account, AccountsStorage
from chain_forge.constants import ChainKind
from chain_forge.services.common.factories import construct_flask_app
from chain_forge.utils.configuration import InstanceConfig


@pytest.fixture
def api_app(data_root):
    return construct_flask_app(data_root, test_config={"TESTING": True})


@pytest.fixture
def api_client(api_app):
    return api_app.test_client()


@pytest.fixture
def stored_accounts(data_root):
    def factory(instance_id, chain=ChainKind.BITCOIN):
        config = InstanceConfig(chain=chain, instance_id=instance_id, data_root=data_root)
        accounts = [
            Account(address=f"{instance_id}-addr-{index}", secret="secret", balance=1.5)
            for index in range(2)
        ]
        AccountsStorage(config.accounts_file).save(accounts)
        return accounts

    return factory

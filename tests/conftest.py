"""Shared fixtures for deploying on the local eth_tester chain."""

import datetime
from typing import Callable

import pytest
from hexbytes import HexBytes
from web3 import EthereumTesterProvider, Web3

from coupon_deploy.abi import ContractArtifact
from coupon_deploy.chain_client import Web3ChainClient
from coupon_deploy.registry import InMemoryDeploymentRegistry


#: Creation code that returns a one byte ``STOP`` runtime.
#:
#: CODECOPY(0, 12, 1) RETURN(0, 1), followed by the runtime byte.
#: Constructor arguments appended after it are ignored.
MINIMAL_INIT_CODE = HexBytes("0x6001600c60003960016000f300")


def _make_artifact(name: str, *input_types: str) -> ContractArtifact:
    abi = [
        {
            "type": "constructor",
            "stateMutability": "nonpayable",
            "inputs": [{"name": f"arg{i}", "type": t} for i, t in enumerate(input_types)],
        }
    ]
    return ContractArtifact(contract_name=name, abi=abi, bytecode=MINIMAL_INIT_CODE)


@pytest.fixture
def make_artifact() -> Callable[..., ContractArtifact]:
    """Create a deployable contract with a constructor taking the given Solidity types."""
    return _make_artifact


@pytest.fixture
def tester_provider():
    # https://web3py.readthedocs.io/en/stable/examples.html#contract-unit-tests-in-python
    return EthereumTesterProvider()


@pytest.fixture
def web3(tester_provider):
    """Set up a local unit testing blockchain."""
    return Web3(tester_provider)


@pytest.fixture()
def deployer(web3) -> str:
    """Deploy account."""
    return web3.eth.accounts[0]


@pytest.fixture()
def user_1(web3) -> str:
    """Someone else."""
    return web3.eth.accounts[1]


@pytest.fixture()
def client(web3, deployer) -> Web3ChainClient:
    return Web3ChainClient(web3, deployer, poll_delay=datetime.timedelta(0))


@pytest.fixture()
def registry(client) -> InMemoryDeploymentRegistry:
    return InMemoryDeploymentRegistry(client.chain_id)

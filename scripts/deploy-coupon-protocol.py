"""Deploy the Coupon protocol contracts.

- Deploys the ten protocol contracts in their nonce order from one fresh deployer account
- Skips contracts already in ``deployments/<chain id>/``, so an interrupted run can be resumed
- Verifies the source code on Etherscan if ``ETHERSCAN_API_KEY`` is given

To run:

.. code-block:: shell

    export PRIVATE_KEY=...
    export JSON_RPC_ARBITRUM=...
    export ETHERSCAN_API_KEY=...
    ARTIFACTS_PATH=artifacts python scripts/deploy-coupon-protocol.py
"""

import datetime
import logging
import os
from pathlib import Path

from eth_account import Account
from web3 import HTTPProvider, Web3

from coupon_deploy.chain import get_chain_name, read_json_rpc_url
from coupon_deploy.chain_client import Web3ChainClient
from coupon_deploy.constants import ARBITRUM_CHAIN_ID, get_chain_config
from coupon_deploy.etherscan import EtherscanVerifier, check_etherscan_api_key, get_etherscan_address_link, get_etherscan_url
from coupon_deploy.pipeline import build_coupon_pipeline
from coupon_deploy.registry import JSONDeploymentRegistry
from coupon_deploy.sequencer import DeploymentSequencer
from coupon_deploy.utils import setup_console_logging


logger = logging.getLogger(__name__)


def main():
    setup_console_logging()

    PRIVATE_KEY = os.environ["PRIVATE_KEY"]
    CHAIN_ID = int(os.environ.get("CHAIN_ID", ARBITRUM_CHAIN_ID))
    JSON_RPC_URL = read_json_rpc_url(CHAIN_ID)
    ARTIFACTS_PATH = Path(os.environ.get("ARTIFACTS_PATH", "artifacts"))
    DEPLOYMENTS_PATH = Path(os.environ.get("DEPLOYMENTS_PATH", "deployments"))
    ETHERSCAN_API_KEY = os.environ.get("ETHERSCAN_API_KEY")
    CONFIRMATION_TIMEOUT = datetime.timedelta(seconds=int(os.environ.get("CONFIRMATION_TIMEOUT", 300)))

    web3 = Web3(HTTPProvider(JSON_RPC_URL))
    chain_id = web3.eth.chain_id
    assert chain_id == CHAIN_ID, f"JSON-RPC is for chain {chain_id}, expected {CHAIN_ID}"

    deployer = Account.from_key(PRIVATE_KEY)
    config = get_chain_config(chain_id)

    if ETHERSCAN_API_KEY:
        check_etherscan_api_key(web3, ETHERSCAN_API_KEY)
        verifier = EtherscanVerifier(ETHERSCAN_API_KEY, chain_id)
    else:
        logger.warning("ETHERSCAN_API_KEY not set, contracts will not be verified")
        verifier = None

    client = Web3ChainClient(web3, deployer)
    registry = JSONDeploymentRegistry(DEPLOYMENTS_PATH, chain_id)
    steps = build_coupon_pipeline(ARTIFACTS_PATH, config)

    logger.info(
        "Deploying Coupon protocol on %s, deployer %s, nonce %d, balance %s ETH",
        get_chain_name(chain_id),
        deployer.address,
        client.get_transaction_count(deployer.address),
        Web3.from_wei(web3.eth.get_balance(deployer.address), "ether"),
    )

    sequencer = DeploymentSequencer(
        client,
        registry,
        steps,
        config=config,
        verifier=verifier,
        max_timeout=CONFIRMATION_TIMEOUT,
    )
    report = sequencer.run()

    print(f"Coupon protocol deployed:\n{report.pformat()}")

    if get_etherscan_url(chain_id):
        for name, entry in report.entries.items():
            print(f"{name}: {get_etherscan_address_link(chain_id, entry.address)}")


if __name__ == "__main__":
    main()

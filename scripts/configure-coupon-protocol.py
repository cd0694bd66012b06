"""Configure a deployed Coupon protocol.

- Deploy Aave token substitutes for the listed assets and point them to the treasury
- Set oracle feeds
- Register bond assets and loan pairs
- Let controllers and adapters approve their position managers
- With ``EPOCH`` set, deploy wrapped coupon tokens and open Clober markets for the epoch

Every action checks the on-chain state first, so the script can be rerun.
Finally prints the oracle feeds, prices and loan configurations.

To run:

.. code-block:: shell

    export PRIVATE_KEY=...
    export JSON_RPC_ARBITRUM=...
    ASSETS=WETH,USDC,DAI ARTIFACTS_PATH=artifacts python scripts/configure-coupon-protocol.py

Set ``CLAIM=true`` to also claim the interest the substitutes have accrued.
"""

import logging
import os
from dataclasses import replace
from itertools import permutations
from pathlib import Path

from eth_account import Account
from web3 import HTTPProvider, Web3

from coupon_deploy.abi import find_artifact
from coupon_deploy.chain import read_json_rpc_url
from coupon_deploy.chain_client import Web3ChainClient
from coupon_deploy.configure import (
    claim_substitute,
    create_coupon_market,
    deploy_aave_substitute,
    deploy_wrapped_coupon,
    fetch_loan_configuration,
    get_current_epoch,
    get_deployed_contract,
    give_manager_allowances,
    list_oracle_feeds,
    list_oracle_prices,
    register_bond_asset,
    set_loan_configuration,
    set_oracle_feeds,
    set_substitute_treasury,
)
from coupon_deploy.constants import ARBITRUM_CHAIN_ID, get_chain_config, get_loan_configuration
from coupon_deploy.etherscan import EtherscanVerifier
from coupon_deploy.pipeline import load_coupon_artifacts
from coupon_deploy.registry import JSONDeploymentRegistry
from coupon_deploy.utils import setup_console_logging


logger = logging.getLogger(__name__)

#: Controller -> position manager it approves
CONTROLLER_MANAGERS = {
    "DepositController": "BondPositionManager",
    "BorrowController": "LoanPositionManager",
    "OdosRepayAdapter": "LoanPositionManager",
    "LeverageAdapter": "LoanPositionManager",
}


def main():
    setup_console_logging()

    PRIVATE_KEY = os.environ["PRIVATE_KEY"]
    CHAIN_ID = int(os.environ.get("CHAIN_ID", ARBITRUM_CHAIN_ID))
    JSON_RPC_URL = read_json_rpc_url(CHAIN_ID)
    ARTIFACTS_PATH = Path(os.environ.get("ARTIFACTS_PATH", "artifacts"))
    DEPLOYMENTS_PATH = Path(os.environ.get("DEPLOYMENTS_PATH", "deployments"))
    ASSETS = os.environ.get("ASSETS", "WETH,USDC").split(",")
    ETHERSCAN_API_KEY = os.environ.get("ETHERSCAN_API_KEY")
    EPOCH = os.environ.get("EPOCH")
    CLAIM = os.environ.get("CLAIM", "false").lower() == "true"

    web3 = Web3(HTTPProvider(JSON_RPC_URL))
    chain_id = web3.eth.chain_id
    client = Web3ChainClient(web3, Account.from_key(PRIVATE_KEY))
    registry = JSONDeploymentRegistry(DEPLOYMENTS_PATH, chain_id)
    artifacts = load_coupon_artifacts(ARTIFACTS_PATH)
    verifier = EtherscanVerifier(ETHERSCAN_API_KEY, chain_id) if ETHERSCAN_API_KEY else None

    substitute_artifact = find_artifact(ARTIFACTS_PATH, "AaveTokenSubstitute")
    config = get_chain_config(chain_id)
    substitutes = {asset: deploy_aave_substitute(client, substitute_artifact, config, asset, verifier=verifier) for asset in ASSETS}
    config = replace(config, aave_substitutes=substitutes)

    for asset, substitute in substitutes.items():
        substitute_contract = client.get_contract(substitute_artifact, substitute)
        set_substitute_treasury(client, substitute_contract, config.treasury)
        if CLAIM:
            claim_substitute(client, substitute_contract)

    def get_contract(name: str):
        return get_deployed_contract(client, registry, name, artifacts[name])

    oracle = get_contract("CouponOracle")
    set_oracle_feeds(client, oracle, config)

    bond_manager = get_contract("BondPositionManager")
    for asset, substitute in substitutes.items():
        register_bond_asset(client, bond_manager, substitute)

    loan_manager = get_contract("LoanPositionManager")
    for collateral, debt in permutations(ASSETS, 2):
        set_loan_configuration(
            client,
            loan_manager,
            substitutes[collateral],
            substitutes[debt],
            get_loan_configuration(collateral, debt),
        )

    for controller_name, manager_name in CONTROLLER_MANAGERS.items():
        give_manager_allowances(
            client,
            get_contract(controller_name),
            registry.require(manager_name).address,
            substitutes,
        )

    coupon_manager = get_contract("CouponManager")
    logger.info("Current coupon epoch is %d", get_current_epoch(coupon_manager))

    if EPOCH:
        epoch = int(EPOCH)
        wrapped1155_factory = client.get_contract(find_artifact(ARTIFACTS_PATH, "IWrapped1155Factory"), config.wrapped1155_factory)
        clober_factory = client.get_contract(find_artifact(ARTIFACTS_PATH, "CloberMarketFactory"), config.clober_factory)
        controllers = [get_contract("DepositController"), get_contract("BorrowController")]
        for asset, substitute in substitutes.items():
            deploy_wrapped_coupon(client, coupon_manager, wrapped1155_factory, substitute, epoch)
            create_coupon_market(client, config, coupon_manager, wrapped1155_factory, clober_factory, controllers, substitute, epoch)

    for symbol, feed in list_oracle_feeds(oracle, config).items():
        logger.info("Feed %s(%s): %s", symbol, substitutes[symbol], feed)

    for symbol, price in list_oracle_prices(oracle, config).items():
        logger.info("Price %s(%s): %s USD", symbol, substitutes[symbol], price)

    for collateral, debt in permutations(ASSETS, 2):
        configuration = fetch_loan_configuration(loan_manager, substitutes[collateral], substitutes[debt])
        logger.info("Loan %s/%s: %s", collateral, debt, configuration.as_percents() if configuration else "not registered")

    logger.info("Configuration complete, substitutes %s", substitutes)


if __name__ == "__main__":
    main()

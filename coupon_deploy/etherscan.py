"""Etherscan links, API key check and source code verification.

We use Etherscan v2 multichain API, so one API key works on all chains Etherscan supports.

- :py:class:`ContractVerifier` is the interface the deployment sequencer calls after each deployment

- :py:class:`EtherscanVerifier` submits the Solidity standard JSON input of Hardhat builds
"""

import datetime
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Sequence

import requests
from eth_typing import HexAddress
from web3 import Web3

from coupon_deploy.abi import ContractArtifact


logger = logging.getLogger(__name__)


#: Etherscan v2 multichain API endpoint
ETHERSCAN_API_URL = "https://api.etherscan.io/v2/api"

#: Etherscan link per chain id
ETHERSCAN_URLS = {
    1: "https://etherscan.io",  # Ethereum
    42161: "https://arbiscan.io",  # Arbitrum One
    421614: "https://sepolia.arbiscan.io",  # Arbitrum Sepolia
    7777: None,  # Our testnet, no explorer
}


class EtherscanConfigurationError(Exception):
    """Etherscan API key or chain is not usable."""


class VerificationFailed(Exception):
    """Etherscan rejected the source code."""


def get_etherscan_url(chain_id: int) -> str | None:
    assert type(chain_id) is int, f"Chain ID must be an integer, got {type(chain_id)}"
    url = ETHERSCAN_URLS.get(chain_id)
    return url


def get_etherscan_tx_link(chain_id: int, tx_hash: str) -> str | None:
    """Get the Etherscan transaction link for a given chain ID and transaction hash."""
    url = get_etherscan_url(chain_id)
    assert url is not None, f"No Etherscan URL found for chain ID {chain_id}"
    return f"{url}/tx/{tx_hash}"


def get_etherscan_address_link(chain_id: int, address: str) -> str | None:
    """Get the Etherscan address link for a given chain ID and address."""
    url = get_etherscan_url(chain_id)
    assert url is not None, f"No Etherscan URL found for chain ID {chain_id}"
    return f"{url}/address/{address}"


def check_etherscan_api_key(
    web3: Web3,
    api_key: str,
):
    """Check if Etherscan API key should work.

    - Check using Etherscan v2 multichain support

    :raise EtherscanConfigurationError: if the API key is not valid or chain mismatch.
    """

    if not api_key:
        raise EtherscanConfigurationError("Etherscan API key is empty")

    chain_id = web3.eth.chain_id

    logger.info("Checking Etherscan API key for chain ID %s", chain_id)

    # https://docs.etherscan.io/etherscan-v2/api-endpoints/stats-1
    resp = requests.get(
        ETHERSCAN_API_URL,
        params={
            "chainid": chain_id,
            "module": "getapilimit",
            "action": "getapilimit",
            "apikey": api_key,
        },
    )

    if resp.status_code != 200:
        raise EtherscanConfigurationError(f"Failed to validate Etherscan API key for chain ID {chain_id}: {resp.status_code} - {resp.text}")

    status = resp.json().get("status")
    if status != "1":
        raise EtherscanConfigurationError(f"Invalid Etherscan API key for chain ID {chain_id}: {resp.json()}")


class ContractVerifier(ABC):
    """Submit deployed contract source code to a block explorer."""

    @abstractmethod
    def verify(self, address: HexAddress, contract: ContractArtifact, constructor_args: Sequence[Any]) -> bool:
        """Verify a deployed contract.

        :param address:
            Where the contract was deployed

        :param contract:
            The build output the contract was deployed from

        :param constructor_args:
            The Python values the contract was deployed with, before ABI encoding

        :return:
            True if the contract is verified, False if verification was not possible

        :raise VerificationFailed:
            The explorer rejected the submission
        """


class EtherscanVerifier(ContractVerifier):
    """Verify contracts using Etherscan standard JSON input submission.

    Example:

    .. code-block:: python

        verifier = EtherscanVerifier(os.environ["ETHERSCAN_API_KEY"], chain_id=42161)
        sequencer = DeploymentSequencer(client, registry, steps, verifier=verifier)
    """

    def __init__(
        self,
        api_key: str,
        chain_id: int,
        poll_delay: datetime.timedelta = datetime.timedelta(seconds=5),
        max_polls: int = 12,
        session: requests.Session | None = None,
    ):
        """
        :param api_key:
            Etherscan API key

        :param chain_id:
            Chain where the contracts are deployed

        :param poll_delay:
            How long to wait between verification status checks

        :param max_polls:
            How many status checks before giving up

        :param session:
            HTTP session to use
        """
        assert api_key, "Etherscan API key missing"
        assert type(chain_id) is int
        self.api_key = api_key
        self.chain_id = chain_id
        self.poll_delay = poll_delay
        self.max_polls = max_polls
        self.session = session or requests.Session()

    def __repr__(self):
        return f"<EtherscanVerifier chain:{self.chain_id}>"

    def _submit(self, address: HexAddress, contract: ContractArtifact, constructor_args: Sequence[Any]) -> str | None:
        """Submit the source code.

        :return:
            Etherscan verification GUID, or ``None`` if the contract was already verified
        """
        encoded_args = contract.encode_constructor_args(constructor_args)

        resp = self.session.post(
            ETHERSCAN_API_URL,
            params={"chainid": self.chain_id},
            data={
                "apikey": self.api_key,
                "module": "contract",
                "action": "verifysourcecode",
                "contractaddress": address,
                "sourceCode": json.dumps(contract.standard_json_input),
                "codeformat": "solidity-standard-json-input",
                "contractname": contract.fully_qualified_name,
                "compilerversion": "v" + contract.compiler_version,
                # Etherscan typo
                "constructorArguements": encoded_args.hex(),
            },
        )
        resp.raise_for_status()
        data = resp.json()

        if data.get("status") == "1":
            return data["result"]

        result = str(data.get("result", ""))
        if "already verified" in result.lower():
            return None

        raise VerificationFailed(f"Etherscan rejected {contract.contract_name} at {address}: {result}")

    def _check_status(self, guid: str) -> bool:
        """Poll the verification result.

        :return:
            True when verified
        """
        for attempt in range(self.max_polls):
            resp = self.session.get(
                ETHERSCAN_API_URL,
                params={
                    "chainid": self.chain_id,
                    "module": "contract",
                    "action": "checkverifystatus",
                    "guid": guid,
                    "apikey": self.api_key,
                },
            )
            resp.raise_for_status()
            result = str(resp.json().get("result", ""))

            if result.startswith("Pass") or "already verified" in result.lower():
                return True

            if "pending" not in result.lower():
                raise VerificationFailed(f"Verification {guid} failed: {result}")

            logger.debug("Verification %s pending, attempt %d", guid, attempt + 1)
            time.sleep(self.poll_delay.total_seconds())

        raise VerificationFailed(f"Verification {guid} still pending after {self.max_polls} checks")

    def verify(self, address: HexAddress, contract: ContractArtifact, constructor_args: Sequence[Any]) -> bool:
        if not contract.compiler_version or not contract.standard_json_input:
            logger.warning("Cannot verify %s, compiler version or standard JSON input missing from the build output", contract.contract_name)
            return False

        logger.info("Verifying %s at %s on Etherscan", contract.contract_name, address)
        guid = self._submit(address, contract, constructor_args)
        if guid is None:
            logger.info("%s at %s was already verified", contract.contract_name, address)
            return True

        return self._check_status(guid)


def verify_best_effort(
    verifier: ContractVerifier,
    address: HexAddress,
    contract: ContractArtifact,
    constructor_args: Sequence[Any],
) -> bool:
    """Verify a contract, logging instead of raising on failures.

    Used after a contract is already deployed and recorded,
    so no verification error may abort the deployment.

    :return:
        True if the contract is verified
    """
    try:
        verified = verifier.verify(address, contract, constructor_args)
    except (VerificationFailed, requests.RequestException) as e:
        logger.warning("Verification of %s at %s failed, verify manually later: %s", contract.contract_name, address, e)
        return False
    except Exception:
        logger.exception("Verifier crashed on %s at %s, verify manually later", contract.contract_name, address)
        return False

    if verified:
        logger.info("Verified %s at %s", contract.contract_name, address)
    else:
        logger.warning("Could not verify %s at %s", contract.contract_name, address)
    return verified

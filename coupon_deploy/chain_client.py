"""Chain access used by the deployment pipeline.

- :py:class:`ChainClient` is the narrow interface the sequencer needs:
  read nonces, send contract creations, wait for them and read transactions back

- :py:class:`Web3ChainClient` implements it on the top of web3.py

The client never retries a creation transaction by itself. A resubmitted creation
would consume another nonce and break the predicted addresses.
"""

import datetime
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Sequence

from eth_account.datastructures import SignedTransaction
from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3
from web3.contract import Contract
from web3.contract.contract import ContractFunction
from web3.exceptions import TransactionNotFound

from coupon_deploy.abi import ContractArtifact, present_solidity_args


logger = logging.getLogger(__name__)


#: How long we wait for a transaction to be included before giving up
DEFAULT_CONFIRMATION_TIMEOUT = datetime.timedelta(minutes=5)


class ConfirmationTimedOut(Exception):
    """We exceeded the transaction confirmation timeout."""


class ContractDeploymentFailed(Exception):
    """Did not get successful tx receipt from a deployment."""

    def __init__(self, tx_hash, msg):
        super().__init__(msg)
        self.tx_hash = tx_hash


class TransactionFailed(Exception):
    """A non-deployment transaction reverted."""

    def __init__(self, tx_hash, msg):
        super().__init__(msg)
        self.tx_hash = tx_hash


@dataclass(slots=True, frozen=True)
class CreationReceipt:
    """Result of a mined contract creation."""

    #: Where the new contract lives
    address: HexAddress

    #: Creation transaction
    transaction_hash: HexBytes

    #: Block where the creation was included
    block_number: int


def get_tx_broadcast_data(signed_tx: SignedTransaction) -> HexBytes:
    """Get raw transaction bytes.

    eth_account changed rawTransaction to raw_transaction in newer versions.
    """
    raw = getattr(signed_tx, "raw_transaction", None)
    if raw is None:
        raw = signed_tx.rawTransaction
    return raw


class ChainClient(ABC):
    """What the deployment sequencer needs from a chain."""

    @property
    @abstractmethod
    def chain_id(self) -> int:
        """Chain we are deploying on."""

    @property
    @abstractmethod
    def deployer(self) -> HexAddress:
        """Account sending the creation transactions."""

    @abstractmethod
    def get_transaction_count(self, account: HexAddress) -> int:
        """Get the current nonce of an account, as seen in the latest block."""

    @abstractmethod
    def send_contract_creation(self, contract: ContractArtifact, constructor_args: Sequence[Any]) -> HexBytes:
        """Broadcast a contract creation transaction.

        :return:
            Transaction hash
        """

    @abstractmethod
    def wait_for_creation(
        self,
        tx_hash: HexBytes,
        confirmation_block_count: int = 0,
        max_timeout: datetime.timedelta = DEFAULT_CONFIRMATION_TIMEOUT,
    ) -> CreationReceipt:
        """Wait until a contract creation has been included.

        :raise ConfirmationTimedOut:
            The transaction was not included within ``max_timeout``

        :raise ContractDeploymentFailed:
            The creation reverted
        """

    @abstractmethod
    def get_transaction(self, tx_hash: HexBytes | str) -> dict:
        """Read a transaction back, including its ``nonce``."""


class Web3ChainClient(ChainClient):
    """Chain client on the top of a web3.py connection.

    The deployer can be

    - :py:class:`eth_account.signers.local.LocalAccount`: we sign locally and broadcast raw transactions

    - an address string: the node holds the key, e.g. an unlocked test account

    Example:

    .. code-block:: python

        account = Account.from_key(os.environ["PRIVATE_KEY"])
        client = Web3ChainClient(web3, account)
        tx_hash = client.send_contract_creation(artifact, [])
        receipt = client.wait_for_creation(tx_hash)
        print(f"Deployed at {receipt.address}")

    .. note ::

        This class is not thread safe.
    """

    def __init__(
        self,
        web3: Web3,
        deployer: HexAddress | LocalAccount,
        gas: int | None = None,
        poll_delay: datetime.timedelta = datetime.timedelta(seconds=1),
    ):
        """
        :param web3:
            Web3 connection

        :param deployer:
            Deployer account

        :param gas:
            Gas limit for creation transactions.

            If not set, estimate.

        :param poll_delay:
            How often to poll for receipts
        """
        assert isinstance(web3, Web3), f"Got {type(web3)} instead of Web3"
        self.web3 = web3
        self.account = deployer if isinstance(deployer, LocalAccount) else None
        self.deployer_address = Web3.to_checksum_address(deployer.address if isinstance(deployer, LocalAccount) else deployer)
        self.gas = gas
        self.poll_delay = poll_delay
        self._chain_id: int | None = None

    def __repr__(self):
        return f"<Web3ChainClient chain:{self.chain_id} deployer:{self.deployer_address}>"

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self.web3.eth.chain_id
        return self._chain_id

    @property
    def deployer(self) -> HexAddress:
        return self.deployer_address

    def get_transaction_count(self, account: HexAddress) -> int:
        return self.web3.eth.get_transaction_count(Web3.to_checksum_address(account))

    def get_transaction(self, tx_hash: HexBytes | str) -> dict:
        return self.web3.eth.get_transaction(HexBytes(tx_hash))

    def _send(self, bound: Any) -> HexBytes:
        """Sign and broadcast a bound constructor or function call."""
        if self.account is not None:
            # Sign locally
            tx_params = {
                "from": self.deployer_address,
                "nonce": self.get_transaction_count(self.deployer_address),
                "chainId": self.chain_id,
            }
            if self.gas:
                tx_params["gas"] = self.gas
            tx_data = bound.build_transaction(tx_params)
            signed_tx = self.account.sign_transaction(tx_data)
            return HexBytes(self.web3.eth.send_raw_transaction(get_tx_broadcast_data(signed_tx)))
        else:
            # Delegate to the node
            tx_params = {"from": self.deployer_address}
            if self.gas:
                tx_params["gas"] = self.gas
            return HexBytes(bound.transact(tx_params))

    def send_contract_creation(self, contract: ContractArtifact, constructor_args: Sequence[Any]) -> HexBytes:
        Contract = self.web3.eth.contract(abi=contract.abi, bytecode=contract.bytecode)
        tx_hash = self._send(Contract.constructor(*constructor_args))
        logger.info(
            "Broadcasted %s creation %s, args %s",
            contract.contract_name,
            tx_hash.hex(),
            present_solidity_args(constructor_args),
        )
        return tx_hash

    def transact(self, bound_func: ContractFunction) -> HexBytes:
        """Broadcast a contract function call from the deployer.

        Used by the post-deployment configuration.
        """
        tx_hash = self._send(bound_func)
        logger.info("Broadcasted %s() %s", bound_func.fn_name, tx_hash.hex())
        return tx_hash

    def get_contract(self, contract: ContractArtifact | list[dict], address: HexAddress) -> Contract:
        """Get a contract proxy for a deployed contract.

        :param contract:
            Artifact or a bare ABI
        """
        abi = contract.abi if isinstance(contract, ContractArtifact) else contract
        return self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    def wait_for_receipt(
        self,
        tx_hash: HexBytes,
        confirmation_block_count: int = 0,
        max_timeout: datetime.timedelta = DEFAULT_CONFIRMATION_TIMEOUT,
    ) -> dict:
        """Poll until the transaction is included and has enough confirmations.

        Use simple poll loop.

        :param confirmation_block_count:
            How many blocks wait for the transaction receipt to settle.
            Set to zero to return as soon as we see the first transaction receipt.

        :param max_timeout:
            Give up after this

        :raise ConfirmationTimedOut:
            If we do not get the receipt in time

        :return:
            Transaction receipt, status not checked
        """
        assert isinstance(max_timeout, datetime.timedelta)
        assert isinstance(confirmation_block_count, int)

        tx_hash = HexBytes(tx_hash)
        started_at = time.monotonic()
        deadline = started_at + max_timeout.total_seconds()

        # Bump our verbosiveness levels for the last minute of wait
        verbose_after = deadline - 60

        while True:
            if time.monotonic() > verbose_after:
                tx_log_level = logging.WARNING
            else:
                tx_log_level = logging.DEBUG

            try:
                receipt = self.web3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound as e:
                logger.debug("Transaction not found yet: %s", e)
                receipt = None

            if receipt:
                tx_confirmations = self.web3.eth.block_number - receipt["blockNumber"]
                if tx_confirmations >= confirmation_block_count:
                    logger.log(tx_log_level, "Confirmed tx %s with %d confirmations", tx_hash.hex(), tx_confirmations)
                    return receipt
                logger.log(tx_log_level, "Still waiting more confirmations. Tx %s with %d confirmations, %d needed", tx_hash.hex(), tx_confirmations, confirmation_block_count)
            else:
                logger.log(tx_log_level, "Still waiting tx %s to be included", tx_hash.hex())

            if time.monotonic() > deadline:
                raise ConfirmationTimedOut(f"Transaction {tx_hash.hex()} confirmation timed out after {max_timeout} ({max_timeout.total_seconds()}s). Check the transaction status manually before rerunning the deployment.")

            time.sleep(self.poll_delay.total_seconds())

    def wait_for_creation(
        self,
        tx_hash: HexBytes,
        confirmation_block_count: int = 0,
        max_timeout: datetime.timedelta = DEFAULT_CONFIRMATION_TIMEOUT,
    ) -> CreationReceipt:
        receipt = self.wait_for_receipt(tx_hash, confirmation_block_count, max_timeout)
        if receipt["status"] != 1:
            raise ContractDeploymentFailed(tx_hash, f"Contract creation failed, tx hash is {HexBytes(tx_hash).hex()}")

        address = receipt["contractAddress"]
        assert address, f"Receipt has no contract address, not a contract creation: {receipt}"

        return CreationReceipt(
            address=Web3.to_checksum_address(address),
            transaction_hash=HexBytes(tx_hash),
            block_number=receipt["blockNumber"],
        )

    def wait_for_transaction(
        self,
        tx_hash: HexBytes,
        max_timeout: datetime.timedelta = DEFAULT_CONFIRMATION_TIMEOUT,
    ) -> dict:
        """Wait for a function call transaction and check it succeeded.

        :raise TransactionFailed:
            The transaction reverted
        """
        receipt = self.wait_for_receipt(tx_hash, max_timeout=max_timeout)
        if receipt["status"] != 1:
            raise TransactionFailed(tx_hash, f"Transaction reverted: {HexBytes(tx_hash).hex()}")
        return receipt

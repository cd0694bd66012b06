"""Predict contract addresses before the contracts are deployed.

- :py:func:`predict_create_address` gives the address a plain ``CREATE`` from an account at a given nonce
  will produce. This lets us pass addresses of not-yet-deployed contracts as constructor arguments.

- :py:func:`predict_create2_address` does the same for ``CREATE2`` deployments through a factory.

The ``CREATE`` address is the low 20 bytes of ``keccak256(rlp([sender, nonce]))``.
See `How is the address of an Ethereum contract computed <https://ethereum.stackexchange.com/q/760/620>`__.
"""

from eth_typing import ChecksumAddress, HexAddress
from eth_utils import keccak, to_canonical_address, to_checksum_address


#: A transaction with nonce ``2**64 - 1`` cannot be sent,
#: because the account nonce can never be incremented past it.
#:
#: `EIP-2681 <https://eips.ethereum.org/EIPS/eip-2681>`__
MAX_CREATE_NONCE = 2**64 - 2


class NonceExhausted(ValueError):
    """Cannot represent the next contract creation, the account nonce is exhausted."""


def encode_create_payload(account: HexAddress | bytes, nonce: int) -> bytes:
    """Serialise ``[account, nonce]`` the way the chain does when deriving a ``CREATE`` address.

    The payload is a RLP list of the 20 bytes sender address (always prefixed ``0x94``)
    and the nonce as a RLP integer:

    - nonce 0 is the empty string ``0x80``
    - nonces 1 - 127 are a single raw byte
    - larger nonces are ``0x80 + length`` followed by the big-endian bytes

    The outer list prefix is ``0xc0 + payload length``, so it moves with the nonce length too.
    Each nonce length is spelled out as its own case.

    :param account:
        Deployer address

    :param nonce:
        The nonce the creation transaction will use

    :return:
        Bytes to be hashed

    :raise NonceExhausted:
        If the nonce is ``2**64 - 1`` or larger
    """
    assert type(nonce) == int, f"Nonce must be int, got {type(nonce)}"

    if nonce < 0:
        raise ValueError(f"Nonce cannot be negative: {nonce}")

    if nonce > MAX_CREATE_NONCE:
        raise NonceExhausted(f"Cannot represent next creation, nonce exhausted: {nonce}")

    sender = to_canonical_address(account)
    assert len(sender) == 20

    if nonce == 0:
        return b"\xd6\x94" + sender + b"\x80"
    elif nonce <= 0x7F:
        return b"\xd6\x94" + sender + bytes([nonce])
    elif nonce <= 0xFF:
        return b"\xd7\x94" + sender + b"\x81" + nonce.to_bytes(1, "big")
    elif nonce <= 0xFFFF:
        return b"\xd8\x94" + sender + b"\x82" + nonce.to_bytes(2, "big")
    elif nonce <= 0xFFFFFF:
        return b"\xd9\x94" + sender + b"\x83" + nonce.to_bytes(3, "big")
    elif nonce <= 0xFFFFFFFF:
        return b"\xda\x94" + sender + b"\x84" + nonce.to_bytes(4, "big")
    elif nonce <= 0xFFFFFFFFFF:
        return b"\xdb\x94" + sender + b"\x85" + nonce.to_bytes(5, "big")
    elif nonce <= 0xFFFFFFFFFFFF:
        return b"\xdc\x94" + sender + b"\x86" + nonce.to_bytes(6, "big")
    elif nonce <= 0xFFFFFFFFFFFFFF:
        return b"\xdd\x94" + sender + b"\x87" + nonce.to_bytes(7, "big")
    else:
        return b"\xde\x94" + sender + b"\x88" + nonce.to_bytes(8, "big")


def predict_create_address(account: HexAddress | bytes, nonce: int) -> ChecksumAddress:
    """Get the address of a contract deployed by ``account`` with ``nonce``.

    Example:

    .. code-block:: python

        nonce = web3.eth.get_transaction_count(deployer)

        # The pool needs to know the manager, which is deployed right after it
        manager_address = predict_create_address(deployer, nonce + 1)
        pool = deploy_contract(web3, "Pool.json", deployer, manager_address)
        manager = deploy_contract(web3, "Manager.json", deployer, pool.address)
        assert manager.address == manager_address

    :param account:
        Deployer address

    :param nonce:
        Nonce of the future creation transaction

    :return:
        Checksummed contract address

    :raise NonceExhausted:
        If the nonce is ``2**64 - 1`` or larger
    """
    payload = encode_create_payload(account, nonce)
    return to_checksum_address(keccak(payload)[12:])


def predict_create2_address(deployer: HexAddress | bytes, salt: bytes, init_code: bytes) -> ChecksumAddress:
    """Get the address of a ``CREATE2`` deployment.

    `EIP-1014 <https://eips.ethereum.org/EIPS/eip-1014>`__.

    :param deployer:
        The factory contract doing the ``CREATE2``

    :param salt:
        32 bytes salt

    :param init_code:
        Contract creation bytecode with the ABI encoded constructor arguments appended

    :return:
        Checksummed contract address
    """
    assert isinstance(salt, bytes) and len(salt) == 32, f"Salt must be 32 bytes, got {salt!r}"
    assert isinstance(init_code, bytes), f"Init code must be bytes, got {type(init_code)}"
    payload = b"\xff" + to_canonical_address(deployer) + salt + keccak(init_code)
    return to_checksum_address(keccak(payload)[12:])

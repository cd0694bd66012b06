"""Post-deployment configuration of the Coupon protocol.

Each action reads the on-chain state first and only sends a transaction
if the change has not been made yet, so the actions can be rerun safely.
The exception is :py:func:`claim_substitute`, which always claims.

All transactions are sent from the deployer of the given :py:class:`~coupon_deploy.chain_client.Web3ChainClient`.
"""

import logging

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3
from web3.contract import Contract

from coupon_deploy.abi import ERC20_ABI, SINGLETON_FACTORY_ABI, ZERO_ADDRESS_STR, ZERO_BYTES32, ContractArtifact
from coupon_deploy.chain_client import ContractDeploymentFailed, TransactionFailed, Web3ChainClient
from coupon_deploy.constants import ChainConfig, LoanConfiguration
from coupon_deploy.create_address import predict_create2_address
from coupon_deploy.etherscan import ContractVerifier, verify_best_effort
from coupon_deploy.registry import DeploymentRegistry
from coupon_deploy.utils import convert_to_coupon_id, format_decimal_units


logger = logging.getLogger(__name__)


#: Chainlink USD feeds, and so the oracle, have 8 decimals
ORACLE_PRICE_DECIMALS = 8

#: Clober volatile market parameters of coupon markets
CLOBER_MAKER_FEE = 0
CLOBER_TAKER_FEE = 400
CLOBER_PRICE_A = 10**10
CLOBER_PRICE_R = 1001 * 10**15


class PastEpoch(ValueError):
    """Coupon tokens can only be created for the current or future epochs."""


def get_deployed_contract(
    client: Web3ChainClient,
    registry: DeploymentRegistry,
    name: str,
    contract: ContractArtifact,
) -> Contract:
    """Get a proxy for a contract recorded in the deployment registry.

    :raise DeploymentNotFound:
        The contract has not been deployed on this chain
    """
    entry = registry.require(name)
    return client.get_contract(contract, entry.address)


def set_oracle_feeds(
    client: Web3ChainClient,
    oracle: Contract,
    config: ChainConfig,
) -> HexBytes | None:
    """Point the oracle to Chainlink feeds of all token substitutes.

    Native ETH is priced as the zero address using the WETH feed.

    :return:
        Transaction hash, or ``None`` if all feeds were already set
    """
    tokens = []
    feeds = []
    for symbol, substitute in config.aave_substitutes.items():
        tokens.append(Web3.to_checksum_address(substitute))
        feeds.append(config.get_feed(symbol))

    tokens.append(ZERO_ADDRESS_STR)
    feeds.append(config.get_feed("WETH"))

    missing = [(t, f) for t, f in zip(tokens, feeds) if oracle.functions.getFeed(t).call() != f]
    if not missing:
        logger.info("All %d oracle feeds already set", len(tokens))
        return None

    tx_hash = client.transact(oracle.functions.setFeeds([t for t, f in missing], [f for t, f in missing]))
    client.wait_for_transaction(tx_hash)
    logger.info("Set %d oracle feeds at tx %s", len(missing), tx_hash.hex())
    return tx_hash


def register_bond_asset(
    client: Web3ChainClient,
    bond_manager: Contract,
    token: HexAddress,
) -> HexBytes | None:
    """Allow deposits of a token to ``BondPositionManager``.

    :return:
        Transaction hash, or ``None`` if the asset was already registered
    """
    token = Web3.to_checksum_address(token)
    if bond_manager.functions.isAssetRegistered(token).call():
        logger.info("Asset %s already registered", token)
        return None

    tx_hash = client.transact(bond_manager.functions.registerAsset(token))
    client.wait_for_transaction(tx_hash)
    logger.info("Registered asset %s at tx %s", token, tx_hash.hex())
    return tx_hash


def set_loan_configuration(
    client: Web3ChainClient,
    loan_manager: Contract,
    collateral: HexAddress,
    debt: HexAddress,
    configuration: LoanConfiguration,
) -> HexBytes | None:
    """Enable a collateral/debt pair in ``LoanPositionManager``.

    :return:
        Transaction hash, or ``None`` if the pair was already registered
    """
    collateral = Web3.to_checksum_address(collateral)
    debt = Web3.to_checksum_address(debt)

    if loan_manager.functions.isPairRegistered(collateral, debt).call():
        logger.info("Pair %s/%s already registered", collateral, debt)
        return None

    tx_hash = client.transact(loan_manager.functions.setLoanConfiguration(collateral, debt, *configuration.get_args()))
    client.wait_for_transaction(tx_hash)
    logger.info("Registered pair %s/%s with %s at tx %s", collateral, debt, configuration.as_percents(), tx_hash.hex())
    return tx_hash


def give_manager_allowances(
    client: Web3ChainClient,
    controller: Contract,
    manager: HexAddress,
    tokens: dict[str, HexAddress],
) -> list[HexBytes]:
    """Let a controller or an adapter approve its position manager for each token.

    :param controller:
        ``DepositController``, ``BorrowController`` or one of the adapters

    :param manager:
        The position manager the controller works with

    :param tokens:
        Token symbol -> address

    :return:
        Hashes of the sent transactions
    """
    manager = Web3.to_checksum_address(manager)
    tx_hashes = []
    for symbol, address in tokens.items():
        token = client.get_contract(ERC20_ABI, address)
        if token.functions.allowance(controller.address, manager).call() > 0:
            logger.info("Allowance already set for %s", symbol)
            continue

        tx_hash = client.transact(controller.functions.giveManagerAllowance(token.address))
        client.wait_for_transaction(tx_hash)
        logger.info("Set allowance for %s at tx %s", symbol, tx_hash.hex())
        tx_hashes.append(tx_hash)
    return tx_hashes


def deploy_aave_substitute(
    client: Web3ChainClient,
    contract: ContractArtifact,
    config: ChainConfig,
    asset: str,
    verifier: ContractVerifier | None = None,
) -> HexAddress:
    """Deploy an ``AaveTokenSubstitute`` through the singleton factory.

    The substitute address depends only on the init code,
    so it is the same on every chain with the same constructor arguments.

    :param contract:
        ``AaveTokenSubstitute`` artifact

    :param asset:
        Underlying token symbol, e.g. ``USDC``

    :param verifier:
        Verify the substitute source code after the deployment.
        Also done for a substitute deployed earlier. Failures are only logged.

    :return:
        Substitute address, deployed now or earlier
    """
    owner = config.owner or client.deployer
    args = [
        config.weth,
        config.get_token(asset),
        config.aave_v3_pool,
        config.treasury,
        Web3.to_checksum_address(owner),
    ]
    init_code = contract.get_init_code(args)
    address = predict_create2_address(config.singleton_factory, ZERO_BYTES32, init_code)

    if client.web3.eth.get_code(address) != b"":
        logger.info("%s substitute already deployed at %s", asset, address)
    else:
        factory = client.get_contract(SINGLETON_FACTORY_ABI, config.singleton_factory)
        tx_hash = client.transact(factory.functions.deploy(init_code, ZERO_BYTES32))
        client.wait_for_transaction(tx_hash)

        if client.web3.eth.get_code(address) == b"":
            raise ContractDeploymentFailed(tx_hash, f"Singleton factory did not deploy {asset} substitute to {address}, tx {tx_hash.hex()}")

        logger.info("Deployed %s substitute at %s, tx %s", asset, address, tx_hash.hex())

    if verifier is not None:
        verify_best_effort(verifier, address, contract, args)

    return address


def set_substitute_treasury(
    client: Web3ChainClient,
    substitute: Contract,
    treasury: HexAddress,
) -> HexBytes | None:
    """Send the interest a token substitute earns to the treasury.

    :param substitute:
        ``ISubstitute`` proxy

    :return:
        Transaction hash, or ``None`` if the treasury was already set
    """
    treasury = Web3.to_checksum_address(treasury)
    if substitute.functions.treasury().call() == treasury:
        logger.info("Substitute %s already pays to %s", substitute.address, treasury)
        return None

    tx_hash = client.transact(substitute.functions.setTreasury(treasury))
    client.wait_for_transaction(tx_hash)
    logger.info("Set substitute %s treasury to %s at tx %s", substitute.address, treasury, tx_hash.hex())
    return tx_hash


def claim_substitute(client: Web3ChainClient, substitute: Contract) -> HexBytes:
    """Move the interest a token substitute has accrued to its treasury."""
    tx_hash = client.transact(substitute.functions.claim())
    client.wait_for_transaction(tx_hash)
    logger.info("Claimed substitute %s at tx %s", substitute.address, tx_hash.hex())
    return tx_hash


def get_current_epoch(coupon_manager: Contract) -> int:
    """The epoch coupons are currently issued for."""
    return coupon_manager.functions.currentEpoch().call()


def _check_epoch(coupon_manager: Contract, epoch: int):
    current = get_current_epoch(coupon_manager)
    if epoch < current:
        raise PastEpoch(f"Cannot create coupon tokens for past epoch {epoch}, the current epoch is {current}")


def encode_short_string(text: str) -> bytes:
    """Encode a string the way Solidity stores strings of up to 31 bytes.

    The text is left aligned in a 32 byte word and the last byte holds ``length * 2``.
    """
    data = text.encode("utf-8")
    assert len(data) <= 31, f"Does not fit a short string: {text}"
    return data.ljust(31, b"\x00") + bytes([len(data) * 2])


def build_wrapped1155_metadata(client: Web3ChainClient, token: HexAddress, epoch: int) -> bytes:
    """Name, symbol and decimals of the ERC-20 wrapping the coupons of a token.

    E.g. coupons of USDC for epoch 12 are wrapped as ``USDC Bond Coupon (12)``, symbol ``USDC-CP12``.

    :return:
        Packed ``bytes32 name``, ``bytes32 symbol``, ``uint8 decimals``
    """
    erc20 = client.get_contract(ERC20_ABI, token)
    symbol = erc20.functions.symbol().call()
    decimals = erc20.functions.decimals().call()
    return encode_short_string(f"{symbol} Bond Coupon ({epoch})") + encode_short_string(f"{symbol}-CP{epoch}") + bytes([decimals])


def _get_wrap_args(client: Web3ChainClient, coupon_manager: Contract, token: HexAddress, epoch: int) -> tuple:
    """``multiToken``, ``tokenId`` and ``data`` arguments of the Wrapped1155 factory."""
    return coupon_manager.address, convert_to_coupon_id(token, epoch), build_wrapped1155_metadata(client, token, epoch)


def get_wrapped_coupon_address(
    client: Web3ChainClient,
    coupon_manager: Contract,
    wrapped1155_factory: Contract,
    token: HexAddress,
    epoch: int,
) -> HexAddress:
    """Where the ERC-20 wrapping the coupons of a token and an epoch is, or will be, deployed."""
    wrap_args = _get_wrap_args(client, coupon_manager, Web3.to_checksum_address(token), epoch)
    return Web3.to_checksum_address(wrapped1155_factory.functions.getWrapped1155(*wrap_args).call())


def deploy_wrapped_coupon(
    client: Web3ChainClient,
    coupon_manager: Contract,
    wrapped1155_factory: Contract,
    token: HexAddress,
    epoch: int,
) -> HexAddress:
    """Deploy the ERC-20 wrapper of coupons, so they can be traded on Clober.

    :param token:
        Token substitute the coupons are for

    :param epoch:
        Coupon epoch, the current one or later

    :return:
        Wrapped coupon token address, deployed now or earlier

    :raise PastEpoch:
        The epoch is over
    """
    _check_epoch(coupon_manager, epoch)

    token = Web3.to_checksum_address(token)
    wrap_args = _get_wrap_args(client, coupon_manager, token, epoch)
    address = Web3.to_checksum_address(wrapped1155_factory.functions.getWrapped1155(*wrap_args).call())
    if client.web3.eth.get_code(address) != b"":
        logger.info("Wrapped coupon of %s for epoch %d already deployed at %s", token, epoch, address)
        return address

    tx_hash = client.transact(wrapped1155_factory.functions.requireWrapped1155(*wrap_args))
    client.wait_for_transaction(tx_hash)
    logger.info("Deployed wrapped coupon of %s for epoch %d at %s, tx %s", token, epoch, address, tx_hash.hex())
    return address


def create_coupon_market(
    client: Web3ChainClient,
    config: ChainConfig,
    coupon_manager: Contract,
    wrapped1155_factory: Contract,
    clober_factory: Contract,
    controllers: list[Contract],
    token: HexAddress,
    epoch: int,
) -> HexAddress:
    """Open a Clober market trading wrapped coupons against their token and register it with the controllers.

    - The market is created only if none of the controllers knows a market for the coupon yet

    - Controllers missing the market get it set

    :param clober_factory:
        ``CloberMarketFactory`` proxy

    :param controllers:
        ``DepositController`` and ``BorrowController``

    :return:
        Market address

    :raise PastEpoch:
        The epoch is over
    """
    _check_epoch(coupon_manager, epoch)

    token = Web3.to_checksum_address(token)
    coupon_key = (token, epoch)

    markets = {c.address: c.functions.getCouponMarket(coupon_key).call() for c in controllers}
    known = {m for m in markets.values() if m != ZERO_ADDRESS_STR}
    assert len(known) <= 1, f"Controllers disagree on the market of {token} epoch {epoch}: {markets}"

    if known:
        market = Web3.to_checksum_address(known.pop())
        logger.info("Market for %s epoch %d already exists at %s", token, epoch, market)
    else:
        wrapped = get_wrapped_coupon_address(client, coupon_manager, wrapped1155_factory, token, epoch)
        decimals = client.get_contract(ERC20_ABI, token).functions.decimals().call()
        quote_unit = 1 if decimals < 9 else 10**9
        tx_hash = client.transact(
            clober_factory.functions.createVolatileMarket(
                config.treasury,
                token,
                wrapped,
                quote_unit,
                CLOBER_MAKER_FEE,
                CLOBER_TAKER_FEE,
                CLOBER_PRICE_A,
                CLOBER_PRICE_R,
            )
        )
        receipt = client.wait_for_transaction(tx_hash)
        events = clober_factory.events.CreateVolatileMarket().process_receipt(receipt)
        if not events:
            raise TransactionFailed(tx_hash, f"No CreateVolatileMarket event in tx {tx_hash.hex()}")
        market = Web3.to_checksum_address(events[0]["args"]["market"])
        logger.info("Created market for %s epoch %d at %s, tx %s", token, epoch, market, tx_hash.hex())

    for controller in controllers:
        if markets[controller.address] != ZERO_ADDRESS_STR:
            continue
        tx_hash = client.transact(controller.functions.setCouponMarket(coupon_key, market))
        client.wait_for_transaction(tx_hash)
        logger.info("Set market of %s epoch %d on %s, tx %s", token, epoch, controller.address, tx_hash.hex())

    return market


def list_oracle_feeds(oracle: Contract, config: ChainConfig) -> dict[str, HexAddress]:
    """Which price feed the oracle uses for each token substitute.

    :return:
        Token symbol -> feed, zero address if not set
    """
    return {symbol: oracle.functions.getFeed(Web3.to_checksum_address(substitute)).call() for symbol, substitute in config.aave_substitutes.items()}


def list_oracle_prices(oracle: Contract, config: ChainConfig) -> dict[str, str]:
    """Current oracle prices of the token substitutes.

    :return:
        Token symbol -> USD price as a decimal string
    """
    return {
        symbol: format_decimal_units(oracle.functions.getAssetPrice(Web3.to_checksum_address(substitute)).call(), ORACLE_PRICE_DECIMALS)
        for symbol, substitute in config.aave_substitutes.items()
    }


def fetch_loan_configuration(
    loan_manager: Contract,
    collateral: HexAddress,
    debt: HexAddress,
) -> LoanConfiguration | None:
    """Read the risk parameters of a collateral/debt pair.

    :return:
        The configuration, or ``None`` if the pair is not registered
    """
    collateral = Web3.to_checksum_address(collateral)
    debt = Web3.to_checksum_address(debt)

    if not loan_manager.functions.isPairRegistered(collateral, debt).call():
        return None

    values = loan_manager.functions.getLoanConfiguration(collateral, debt).call()
    abi = next(f for f in loan_manager.abi if f.get("name") == "getLoanConfiguration")
    fields = dict(zip([c["name"] for c in abi["outputs"][0]["components"]], values))
    return LoanConfiguration(
        liquidation_threshold=fields["liquidationThreshold"],
        liquidation_fee=fields["liquidationFee"],
        liquidation_protocol_fee=fields["liquidationProtocolFee"],
        liquidation_target_ltv=fields["liquidationTargetLtv"],
        hook=fields["hook"],
    )

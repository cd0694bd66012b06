"""Static per-chain configuration of the Coupon protocol deployment.

Token, price feed, factory and router addresses and risk parameters
that go into constructor arguments and the post-deployment configuration.
"""

from dataclasses import dataclass, field
from decimal import Decimal

from eth_typing import HexAddress
from web3 import Web3


#: Arbitrum One
ARBITRUM_CHAIN_ID = 42161

#: Our private test network
TESTNET_ID = 7777

#: EIP-2470 singleton factory, same address on every chain
SINGLETON_FACTORY = "0xce0042B868300000d44A59004Da54A005ffdcf9f"

#: Where the protocol fees go.
#:
#: TODO: Replace the burn address with the protocol multisig before the mainnet launch
TREASURY = {
    ARBITRUM_CHAIN_ID: "0x000000000000000000000000000000000000dEaD",
    TESTNET_ID: "0x000000000000000000000000000000000000dEaD",
}

#: Loan position configuration values are fixed point with 6 decimals
RATE_PRECISION = 10**6


class UnsupportedChain(ValueError):
    """We do not have a deployment configuration for this chain."""


@dataclass(slots=True, frozen=True)
class LoanConfiguration:
    """Risk parameters of a collateral/debt pair in ``LoanPositionManager``.

    Rates are fixed point numbers, see :py:data:`RATE_PRECISION`.
    """

    liquidation_threshold: int
    liquidation_fee: int
    liquidation_protocol_fee: int
    liquidation_target_ltv: int
    hook: HexAddress = "0x0000000000000000000000000000000000000000"

    def __post_init__(self):
        for name in ("liquidation_threshold", "liquidation_fee", "liquidation_protocol_fee", "liquidation_target_ltv"):
            value = getattr(self, name)
            assert type(value) == int, f"{name} must be int, got {type(value)}"
            assert 0 <= value <= RATE_PRECISION, f"{name} out of range: {value}"
        assert self.liquidation_target_ltv < self.liquidation_threshold, f"Target LTV {self.liquidation_target_ltv} must be below liquidation threshold {self.liquidation_threshold}"

    def get_args(self) -> list:
        """Arguments for ``setLoanConfiguration()`` after the token pair."""
        return [
            self.liquidation_threshold,
            self.liquidation_fee,
            self.liquidation_protocol_fee,
            self.liquidation_target_ltv,
            self.hook,
        ]

    def as_percents(self) -> dict[str, Decimal]:
        """Human readable rates."""
        return {
            "liquidation_threshold": Decimal(self.liquidation_threshold) / RATE_PRECISION * 100,
            "liquidation_fee": Decimal(self.liquidation_fee) / RATE_PRECISION * 100,
            "liquidation_protocol_fee": Decimal(self.liquidation_protocol_fee) / RATE_PRECISION * 100,
            "liquidation_target_ltv": Decimal(self.liquidation_target_ltv) / RATE_PRECISION * 100,
        }


#: Volatile collateral against stablecoin debt
VOLATILE_LOAN_CONFIGURATION = LoanConfiguration(
    liquidation_threshold=800_000,
    liquidation_fee=20_000,
    liquidation_protocol_fee=5_000,
    liquidation_target_ltv=700_000,
)

#: Stablecoin against stablecoin
STABLE_LOAN_CONFIGURATION = LoanConfiguration(
    liquidation_threshold=900_000,
    liquidation_fee=10_000,
    liquidation_protocol_fee=2_500,
    liquidation_target_ltv=850_000,
)

STABLECOINS = {"USDC", "DAI", "USDT"}


def get_loan_configuration(collateral: str, debt: str) -> LoanConfiguration:
    """Pick risk parameters for a collateral/debt pair by token symbols."""
    assert collateral != debt, f"Collateral and debt cannot be the same asset: {collateral}"
    if collateral in STABLECOINS and debt in STABLECOINS:
        return STABLE_LOAN_CONFIGURATION
    return VOLATILE_LOAN_CONFIGURATION


_ADDRESS_FIELDS = (
    "clober_factory",
    "wrapped1155_factory",
    "aave_v3_pool",
    "treasury",
    "repay_router",
    "leverage_router",
    "liquidator_router",
    "owner",
    "singleton_factory",
)


@dataclass(slots=True, frozen=True)
class ChainConfig:
    """Everything chain specific the deployment needs."""

    chain_id: int

    #: Token symbol -> address
    tokens: dict[str, HexAddress]

    #: Token symbol -> Chainlink price feed
    chainlink_feeds: dict[str, HexAddress]

    clober_factory: HexAddress
    wrapped1155_factory: HexAddress
    aave_v3_pool: HexAddress
    treasury: HexAddress

    #: Swap routers used by the adapters and the liquidator
    repay_router: HexAddress
    leverage_router: HexAddress
    liquidator_router: HexAddress

    coupon_base_uri: str
    bond_base_uri: str
    loan_base_uri: str

    #: Smallest loan ``LoanPositionManager`` accepts, in wei
    min_debt_value_in_eth: int

    #: Owner of the token substitutes
    owner: HexAddress | None = None

    singleton_factory: HexAddress = SINGLETON_FACTORY

    #: Token symbol -> Aave token substitute address, filled in after ``deploy_aave_substitute``
    aave_substitutes: dict[str, HexAddress] = field(default_factory=dict)

    def __post_init__(self):
        assert type(self.chain_id) == int
        assert type(self.min_debt_value_in_eth) == int
        assert "WETH" in self.tokens, f"WETH missing from chain {self.chain_id} tokens"
        # Frozen dataclass
        for name in _ADDRESS_FIELDS:
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, Web3.to_checksum_address(value))

    @property
    def weth(self) -> HexAddress:
        return Web3.to_checksum_address(self.tokens["WETH"])

    def get_token(self, symbol: str) -> HexAddress:
        """Get a token address by its symbol.

        :raise KeyError:
            Unknown symbol
        """
        try:
            return Web3.to_checksum_address(self.tokens[symbol])
        except KeyError as e:
            raise KeyError(f"Token {symbol} not configured on chain {self.chain_id}, we have {list(self.tokens.keys())}") from e

    def get_feed(self, symbol: str) -> HexAddress:
        try:
            return Web3.to_checksum_address(self.chainlink_feeds[symbol])
        except KeyError as e:
            raise KeyError(f"Price feed for {symbol} not configured on chain {self.chain_id}") from e


#: Odos router v2
_ODOS_ROUTER_ARBITRUM = "0xa669e7A0d4b3e4Fa48af2dE86BD4CD7126Be4e13"

CHAIN_CONFIGS: dict[int, ChainConfig] = {
    ARBITRUM_CHAIN_ID: ChainConfig(
        chain_id=ARBITRUM_CHAIN_ID,
        tokens={
            "WETH": "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1",
            "USDC": "0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
            "DAI": "0xDA10009cBd5D07dd0CeCc66161FC93D7c9000da1",
            "USDT": "0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9",
            "WBTC": "0x2f2a2543B76A4166549F7aaB2e75Bef0aefC5B0f",
        },
        chainlink_feeds={
            "WETH": "0x639Fe6ab55C921f74e7fac1ee960C0B6293ba612",
            "USDC": "0x50834F3163758fcC1Df9973b6e91f0F0F0434aD3",
            "DAI": "0xc5C8E77B397E531B8EC06BFb0048328B30E9eCfB",
            "USDT": "0x3f3f5dF88dC9F13eac63DF89EC16ef6e7E25DdE7",
            "WBTC": "0x6ce185860a4963106506C203335A2910413708e9",
        },
        clober_factory="0x24aC0938C010Fb520F1068e96d78E0458855111D",
        wrapped1155_factory="0xfcBE16BfD991E4949244E59d9b524e6964b8BB75",
        aave_v3_pool="0x794a61358D6845594F94dc1DB02A252b5b4814aD",
        treasury=TREASURY[ARBITRUM_CHAIN_ID],
        repay_router=_ODOS_ROUTER_ARBITRUM,
        leverage_router=_ODOS_ROUTER_ARBITRUM,
        liquidator_router=_ODOS_ROUTER_ARBITRUM,
        coupon_base_uri="COUPON_BASE_URI",
        bond_base_uri="BOND_BASE_URI",
        loan_base_uri="LOAN_BASE_URI",
        min_debt_value_in_eth=10**15,
    ),
}


def get_chain_config(chain_id: int) -> ChainConfig:
    """Get the deployment configuration for a chain.

    :raise UnsupportedChain:
        No configuration for this chain
    """
    assert type(chain_id) == int, f"Chain id must be int, got {type(chain_id)}"
    config = CHAIN_CONFIGS.get(chain_id)
    if config is None:
        raise UnsupportedChain(f"Unsupported network: chain {chain_id}. Supported chains are {list(CHAIN_CONFIGS.keys())}")
    return config

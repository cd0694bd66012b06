"""Coupon protocol deployment steps.

The protocol is deployed in ten steps from one deployer account.
``AssetPool`` and ``CouponManager`` must know the position managers at construction,
while the position managers take the pool and the coupon manager as constructor arguments.
The managers are therefore predicted from their nonces, and the sequencer checks
they land at the predicted addresses.

.. code-block:: text

    0 CouponOracle
    1 AssetPool            -> predicts 3 and 4
    2 CouponManager        -> predicts 3 and 4
    3 BondPositionManager
    4 LoanPositionManager
    5 DepositController
    6 BorrowController
    7 OdosRepayAdapter
    8 LeverageAdapter
    9 CouponLiquidator

"""

from pathlib import Path

from coupon_deploy.abi import ContractArtifact, find_artifact
from coupon_deploy.constants import ChainConfig
from coupon_deploy.sequencer import DeploymentContext, DeploymentStep


#: Contracts in the deployment order
COUPON_CONTRACTS = (
    "CouponOracle",
    "AssetPool",
    "CouponManager",
    "BondPositionManager",
    "LoanPositionManager",
    "DepositController",
    "BorrowController",
    "OdosRepayAdapter",
    "LeverageAdapter",
    "CouponLiquidator",
)

_POSITION_MANAGERS = ("BondPositionManager", "LoanPositionManager")


def load_coupon_artifacts(build_root: Path) -> dict[str, ContractArtifact]:
    """Load all protocol contracts from a Hardhat or Forge build output folder."""
    return {name: find_artifact(build_root, name) for name in COUPON_CONTRACTS}


def _predicted_managers(ctx: DeploymentContext) -> list[str]:
    return [ctx.predict_address(name) for name in _POSITION_MANAGERS]


def _controller_args(ctx: DeploymentContext, position_manager: str) -> list:
    """Shared constructor arguments of controllers and adapters."""
    config = ctx.config
    return [
        config.wrapped1155_factory,
        config.clober_factory,
        ctx.get_address("CouponManager"),
        config.weth,
        ctx.get_address(position_manager),
    ]


def build_coupon_pipeline(
    artifacts: dict[str, ContractArtifact] | Path,
    config: ChainConfig,
) -> list[DeploymentStep]:
    """Declare the protocol deployment steps.

    Run with :py:class:`~coupon_deploy.sequencer.DeploymentSequencer`,
    passing the same ``config``.

    :param artifacts:
        Contract name -> artifact, or a build output folder to load them from

    :param config:
        Chain specific addresses and parameters

    :return:
        Deployment steps in their deployment order
    """
    assert isinstance(config, ChainConfig), f"Got {type(config)}"

    if isinstance(artifacts, Path):
        artifacts = load_coupon_artifacts(artifacts)

    missing = [name for name in COUPON_CONTRACTS if name not in artifacts]
    assert not missing, f"Artifacts missing for {missing}"

    return [
        DeploymentStep(
            "CouponOracle",
            artifacts["CouponOracle"],
            build_args=lambda ctx: [],
        ),
        DeploymentStep(
            "AssetPool",
            artifacts["AssetPool"],
            prerequisites=("CouponOracle",),
            forward_references=_POSITION_MANAGERS,
            build_args=lambda ctx: [_predicted_managers(ctx)],
        ),
        DeploymentStep(
            "CouponManager",
            artifacts["CouponManager"],
            prerequisites=("AssetPool",),
            forward_references=_POSITION_MANAGERS,
            build_args=lambda ctx: [_predicted_managers(ctx), ctx.config.coupon_base_uri],
        ),
        DeploymentStep(
            "BondPositionManager",
            artifacts["BondPositionManager"],
            prerequisites=("CouponManager", "AssetPool"),
            build_args=lambda ctx: [
                ctx.get_address("CouponManager"),
                ctx.get_address("AssetPool"),
                ctx.config.bond_base_uri,
            ],
        ),
        DeploymentStep(
            "LoanPositionManager",
            artifacts["LoanPositionManager"],
            prerequisites=("BondPositionManager", "CouponManager", "AssetPool", "CouponOracle"),
            build_args=lambda ctx: [
                ctx.get_address("CouponManager"),
                ctx.get_address("AssetPool"),
                ctx.get_address("CouponOracle"),
                ctx.config.treasury,
                ctx.config.min_debt_value_in_eth,
                ctx.config.loan_base_uri,
            ],
        ),
        DeploymentStep(
            "DepositController",
            artifacts["DepositController"],
            prerequisites=("LoanPositionManager", "CouponManager", "BondPositionManager"),
            build_args=lambda ctx: _controller_args(ctx, "BondPositionManager"),
        ),
        DeploymentStep(
            "BorrowController",
            artifacts["BorrowController"],
            prerequisites=("DepositController", "CouponManager", "LoanPositionManager"),
            build_args=lambda ctx: _controller_args(ctx, "LoanPositionManager"),
        ),
        DeploymentStep(
            "OdosRepayAdapter",
            artifacts["OdosRepayAdapter"],
            prerequisites=("BorrowController", "CouponManager", "LoanPositionManager"),
            build_args=lambda ctx: _controller_args(ctx, "LoanPositionManager") + [ctx.config.repay_router],
        ),
        DeploymentStep(
            "LeverageAdapter",
            artifacts["LeverageAdapter"],
            prerequisites=("OdosRepayAdapter", "CouponManager", "LoanPositionManager"),
            build_args=lambda ctx: _controller_args(ctx, "LoanPositionManager") + [ctx.config.leverage_router],
        ),
        DeploymentStep(
            "CouponLiquidator",
            artifacts["CouponLiquidator"],
            prerequisites=("LeverageAdapter", "LoanPositionManager"),
            build_args=lambda ctx: [
                ctx.get_address("LoanPositionManager"),
                ctx.config.liquidator_router,
                ctx.config.weth,
            ],
        ),
    ]

"""Nonce-sequenced deployments with forward referenced addresses."""

import datetime
from dataclasses import replace
from unittest.mock import MagicMock

import eth_abi
import pytest
from eth_utils import keccak
from hexbytes import HexBytes
from web3 import Web3

from coupon_deploy.abi import ContractArtifact
from coupon_deploy.chain_client import (
    DEFAULT_CONFIRMATION_TIMEOUT,
    ChainClient,
    ConfirmationTimedOut,
    ContractDeploymentFailed,
    CreationReceipt,
    Web3ChainClient,
)
from coupon_deploy.create_address import predict_create_address
from coupon_deploy.etherscan import ContractVerifier, EtherscanVerifier, VerificationFailed
from coupon_deploy.registry import DeploymentInProgress, DeploymentNotFound, InMemoryDeploymentRegistry
from coupon_deploy.sequencer import (
    DeploymentContext,
    DeploymentPlan,
    DeploymentSequencer,
    DeploymentStep,
    NonceMismatch,
    PipelineConfigurationError,
    PredictedAddressMismatch,
    StepState,
)


FAKE_DEPLOYER = Web3.to_checksum_address("0x6ac7ea33f8831ea9dcc53393aaa88b25a785dbf0")


def _fake_artifact(name: str) -> ContractArtifact:
    return ContractArtifact(contract_name=name, abi=[], bytecode=HexBytes("0x00"))


class FakeChainClient(ChainClient):
    """Chain that includes every creation immediately."""

    def __init__(self, deployer: str = FAKE_DEPLOYER, chain_id: int = 1, nonce: int = 0):
        self._deployer = deployer
        self._chain_id = chain_id
        self.nonce = nonce
        self.transactions = {}

        #: Contract name -> address it lands at instead of the CREATE address
        self.address_overrides = {}

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def deployer(self) -> str:
        return self._deployer

    def get_transaction_count(self, account) -> int:
        return self.nonce

    def send_contract_creation(self, contract, constructor_args) -> HexBytes:
        tx_hash = HexBytes(keccak(text=f"{contract.contract_name}-{self.nonce}"))
        address = self.address_overrides.get(contract.contract_name, predict_create_address(self._deployer, self.nonce))
        self.transactions[tx_hash] = {"nonce": self.nonce, "address": address, "args": list(constructor_args)}
        self.nonce += 1
        return tx_hash

    def wait_for_creation(self, tx_hash, confirmation_block_count=0, max_timeout=DEFAULT_CONFIRMATION_TIMEOUT) -> CreationReceipt:
        tx = self.transactions[HexBytes(tx_hash)]
        return CreationReceipt(address=tx["address"], transaction_hash=HexBytes(tx_hash), block_number=1)

    def get_transaction(self, tx_hash) -> dict:
        return self.transactions[HexBytes(tx_hash)]


class FlakyChainClient(Web3ChainClient):
    """Lose the connection once, before broadcasting the given contract."""

    def __init__(self, *args, fail_on: str, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_on = fail_on

    def send_contract_creation(self, contract, constructor_args) -> HexBytes:
        if contract.contract_name == self.fail_on:
            self.fail_on = None
            raise ConnectionError("JSON-RPC went away")
        return super().send_contract_creation(contract, constructor_args)


class StuckChainClient(FakeChainClient):
    """Creation of the given contract never gets a successful receipt."""

    def __init__(self, *args, error: Exception, stuck: str, **kwargs):
        super().__init__(*args, **kwargs)
        self.error = error
        self.stuck = stuck
        self.stuck_tx_hash = None

    def send_contract_creation(self, contract, constructor_args) -> HexBytes:
        tx_hash = super().send_contract_creation(contract, constructor_args)
        if contract.contract_name == self.stuck:
            self.stuck_tx_hash = tx_hash
        return tx_hash

    def wait_for_creation(self, tx_hash, confirmation_block_count=0, max_timeout=DEFAULT_CONFIRMATION_TIMEOUT) -> CreationReceipt:
        if HexBytes(tx_hash) == self.stuck_tx_hash:
            raise self.error
        return super().wait_for_creation(tx_hash, confirmation_block_count, max_timeout)


@pytest.fixture()
def five_steps(make_artifact) -> list[DeploymentStep]:
    """S3 embeds the address of S5, which is deployed two steps later."""
    return [
        DeploymentStep("S1", make_artifact("S1"), build_args=lambda ctx: []),
        DeploymentStep("S2", make_artifact("S2", "address"), prerequisites=("S1",), build_args=lambda ctx: [ctx.get_address("S1")]),
        DeploymentStep(
            "S3",
            make_artifact("S3", "address"),
            prerequisites=("S2",),
            forward_references=("S5",),
            build_args=lambda ctx: [ctx.predict_address("S5")],
        ),
        DeploymentStep("S4", make_artifact("S4", "address"), prerequisites=("S3",), build_args=lambda ctx: [ctx.get_address("S3")]),
        DeploymentStep("S5", make_artifact("S5", "address"), prerequisites=("S4", "S3"), build_args=lambda ctx: [ctx.get_address("S3")]),
    ]


def _send_noise(web3: Web3, sender: str, receiver: str, count: int = 1):
    """Burn deployer nonces with plain transfers."""
    for i in range(count):
        web3.eth.send_transaction({"from": sender, "to": receiver, "value": 1})


def test_forward_referenced_managers_at_nonce_10(web3, deployer, user_1, client, registry, make_artifact):
    """Oracle at 10, Pool at 11 embedding 12 and 13, managers land at 12 and 13."""
    _send_noise(web3, deployer, user_1, 10)
    assert web3.eth.get_transaction_count(deployer) == 10

    steps = [
        DeploymentStep("Oracle", make_artifact("Oracle"), build_args=lambda ctx: []),
        DeploymentStep(
            "Pool",
            make_artifact("Pool", "address[]"),
            prerequisites=("Oracle",),
            forward_references=("ManagerX", "ManagerY"),
            build_args=lambda ctx: [[ctx.predict_address("ManagerX"), ctx.predict_address("ManagerY")]],
        ),
        DeploymentStep("ManagerX", make_artifact("ManagerX", "address"), prerequisites=("Pool",), build_args=lambda ctx: [ctx.get_address("Pool")]),
        DeploymentStep("ManagerY", make_artifact("ManagerY", "address"), prerequisites=("Pool",), build_args=lambda ctx: [ctx.get_address("Pool")]),
    ]

    sequencer = DeploymentSequencer(client, registry, steps)
    report = sequencer.run()

    assert report.anchor_nonce == 10
    assert report.get_steps_in_state(StepState.deployed) == ["Oracle", "Pool", "ManagerX", "ManagerY"]

    predicted_x = predict_create_address(deployer, 12)
    predicted_y = predict_create_address(deployer, 13)
    assert registry.require("Oracle").address == predict_create_address(deployer, 10)
    assert registry.require("Pool").address == predict_create_address(deployer, 11)
    assert registry.require("ManagerX").address == predicted_x
    assert registry.require("ManagerY").address == predicted_y

    # Pool was really constructed with the predicted addresses
    pool_entry = registry.require("Pool")
    assert pool_entry.constructor_args == [[predicted_x, predicted_y]]
    tx = web3.eth.get_transaction(pool_entry.transaction_hash)
    encoded_args = HexBytes(tx["input"])[len(steps[1].contract.bytecode):]
    (managers,) = eth_abi.decode(["address[]"], encoded_args)
    assert [Web3.to_checksum_address(a) for a in managers] == [predicted_x, predicted_y]

    # Contracts exist on chain
    for name in ("Oracle", "Pool", "ManagerX", "ManagerY"):
        assert web3.eth.get_code(registry.require(name).address) == b"\x00"

    assert pool_entry.transaction_hash.startswith("0x")
    assert pool_entry.chain_id == web3.eth.chain_id


def test_full_run(web3, deployer, client, registry, five_steps):
    """All steps deployed in order, S5 at the address S3 got."""
    sequencer = DeploymentSequencer(client, registry, five_steps)
    report = sequencer.run()

    assert all(s == StepState.deployed for s in report.states.values())
    assert registry.names() == ["S1", "S2", "S3", "S4", "S5"]
    assert registry.require("S3").constructor_args == [registry.require("S5").address]
    assert registry.require("S5").address == predict_create_address(deployer, report.anchor_nonce + 4)
    assert "S5" in report.pformat()


def test_rerun_skips_everything(web3, deployer, client, registry, five_steps):
    """Second run sends nothing."""
    DeploymentSequencer(client, registry, five_steps).run()
    nonce = web3.eth.get_transaction_count(deployer)

    report = DeploymentSequencer(client, registry, five_steps).run()

    assert all(s == StepState.skipped for s in report.states.values())
    assert web3.eth.get_transaction_count(deployer) == nonce


def test_rerun_skips_without_nonce_checks(web3, deployer, user_1, client, registry, five_steps):
    """Completed deployments do not care about later account activity."""
    DeploymentSequencer(client, registry, five_steps).run()
    _send_noise(web3, deployer, user_1, 3)

    report = DeploymentSequencer(client, registry, five_steps).run()
    assert report.get_steps_in_state(StepState.skipped) == ["S1", "S2", "S3", "S4", "S5"]


def test_resume_after_failure(web3, deployer, registry, five_steps):
    """A run failing at S4 leaves S4 and S5 pending; the rerun deploys them at the predicted nonces."""
    client = FlakyChainClient(web3, deployer, poll_delay=datetime.timedelta(0), fail_on="S4")
    sequencer = DeploymentSequencer(client, registry, five_steps)

    with pytest.raises(ConnectionError):
        sequencer.run()

    report = sequencer.report
    assert report.states == {
        "S1": StepState.deployed,
        "S2": StepState.deployed,
        "S3": StepState.deployed,
        "S4": StepState.failed,
        "S5": StepState.pending,
    }
    assert "S4" not in registry

    report = DeploymentSequencer(client, registry, five_steps).run()
    assert report.get_steps_in_state(StepState.skipped) == ["S1", "S2", "S3"]
    assert report.get_steps_in_state(StepState.deployed) == ["S4", "S5"]

    # Anchor recovered from the S1 creation transaction
    anchor_nonce = web3.eth.get_transaction(registry.require("S1").transaction_hash)["nonce"]
    assert report.anchor_nonce == anchor_nonce
    assert registry.require("S5").address == predict_create_address(deployer, anchor_nonce + 4)
    assert registry.require("S3").constructor_args == [registry.require("S5").address]


def test_resume_after_outside_transaction(web3, deployer, user_1, registry, five_steps):
    """Someone used the deployer between the runs, nothing is deployed at a shifted nonce."""
    client = FlakyChainClient(web3, deployer, poll_delay=datetime.timedelta(0), fail_on="S4")

    with pytest.raises(ConnectionError):
        DeploymentSequencer(client, registry, five_steps).run()

    _send_noise(web3, deployer, user_1)

    sequencer = DeploymentSequencer(client, registry, five_steps)
    with pytest.raises(NonceMismatch) as exc_info:
        sequencer.run()

    anchor_nonce = web3.eth.get_transaction(registry.require("S1").transaction_hash)["nonce"]

    # S4 sits between S3 and its forward referenced S5, so it is checked as well
    assert exc_info.value.step == "S4"
    assert exc_info.value.expected == anchor_nonce + 3
    assert exc_info.value.observed == anchor_nonce + 4

    assert sequencer.report.states["S4"] == StepState.failed
    assert sequencer.report.states["S5"] == StepState.pending
    assert "S4" not in registry
    assert "S5" not in registry

    # Nothing was broadcast
    assert web3.eth.get_transaction_count(deployer) == anchor_nonce + 4


def test_outside_transaction_during_run(web3, deployer, user_1, client, registry, make_artifact):
    """A transaction sneaking in between the pool and its manager shifts the step in between, which is not registered."""
    steps = [
        DeploymentStep("Pool", make_artifact("Pool", "address"), forward_references=("Manager",), build_args=lambda ctx: [ctx.predict_address("Manager")]),
        DeploymentStep(
            "Noisy",
            make_artifact("Noisy"),
            prerequisites=("Pool",),
            build_args=lambda ctx: _send_noise(web3, deployer, user_1) or [],
        ),
        DeploymentStep("Manager", make_artifact("Manager", "address"), prerequisites=("Noisy", "Pool"), build_args=lambda ctx: [ctx.get_address("Pool")]),
    ]

    sequencer = DeploymentSequencer(client, registry, steps)
    with pytest.raises(NonceMismatch) as exc_info:
        sequencer.run()

    assert exc_info.value.step == "Noisy"
    assert exc_info.value.expected == sequencer.report.anchor_nonce + 1
    assert exc_info.value.observed == sequencer.report.anchor_nonce + 2
    assert sequencer.report.states == {"Pool": StepState.deployed, "Noisy": StepState.failed, "Manager": StepState.pending}
    assert registry.names() == ["Pool"]


def test_steps_after_last_pinned_step_not_nonce_checked(web3, deployer, user_1, client, registry, make_artifact):
    """Outside transactions after the forward referenced contracts exist do not matter."""
    steps = [
        DeploymentStep("Pool", make_artifact("Pool", "address"), forward_references=("Manager",), build_args=lambda ctx: [ctx.predict_address("Manager")]),
        DeploymentStep("Manager", make_artifact("Manager"), prerequisites=("Pool",), build_args=lambda ctx: []),
        DeploymentStep(
            "Adapter",
            make_artifact("Adapter", "address"),
            prerequisites=("Manager",),
            build_args=lambda ctx: _send_noise(web3, deployer, user_1) or [ctx.get_address("Manager")],
        ),
    ]

    report = DeploymentSequencer(client, registry, steps).run()

    assert report.get_steps_in_state(StepState.deployed) == ["Pool", "Manager", "Adapter"]
    assert registry.require("Adapter").address == predict_create_address(deployer, report.anchor_nonce + 3)


def test_anchor_nonce_taken_when_anchor_executes(web3, deployer, user_1, client, registry, make_artifact):
    """Predictions are made against the nonce at the time the anchor executes."""
    _send_noise(web3, deployer, user_1, 2)

    steps = [
        DeploymentStep("Pool", make_artifact("Pool", "address"), forward_references=("Manager",), build_args=lambda ctx: [ctx.predict_address("Manager")]),
        DeploymentStep("Manager", make_artifact("Manager"), prerequisites=("Pool",), build_args=lambda ctx: []),
    ]
    report = DeploymentSequencer(client, registry, steps).run()
    assert report.anchor_nonce == 2
    assert registry.require("Manager").address == predict_create_address(deployer, 3)
    assert registry.require("Pool").constructor_args == [predict_create_address(deployer, 3)]


def test_predicted_address_mismatch():
    """A forward referenced contract landing elsewhere is not registered."""
    client = FakeChainClient()
    registry = InMemoryDeploymentRegistry(client.chain_id)

    steps = [
        DeploymentStep("Pool", _fake_artifact("Pool"), forward_references=("Manager",), build_args=lambda ctx: [ctx.predict_address("Manager")]),
        DeploymentStep("Manager", _fake_artifact("Manager"), prerequisites=("Pool",), build_args=lambda ctx: []),
    ]
    client.address_overrides["Manager"] = "0x000000000000000000000000000000000000dEaD"

    sequencer = DeploymentSequencer(client, registry, steps)
    with pytest.raises(PredictedAddressMismatch):
        sequencer.run()

    assert "Manager" not in registry
    assert sequencer.report.states["Manager"] == StepState.failed


def test_fake_chain_nonce_drift():
    """Nonce drift between runs detected against the anchor transaction."""
    client = FakeChainClient(nonce=7)
    registry = InMemoryDeploymentRegistry(client.chain_id)
    steps = [
        DeploymentStep("A", _fake_artifact("A"), build_args=lambda ctx: []),
        DeploymentStep("B", _fake_artifact("B"), prerequisites=("A",), forward_references=("C",), build_args=lambda ctx: [ctx.predict_address("C")]),
        DeploymentStep("C", _fake_artifact("C"), prerequisites=("B",), build_args=lambda ctx: []),
    ]

    sequencer = DeploymentSequencer(client, registry, steps[:1])
    sequencer.run()
    assert client.nonce == 8

    client.nonce = 9
    sequencer = DeploymentSequencer(client, registry, steps)
    with pytest.raises(NonceMismatch) as exc_info:
        sequencer.run()

    assert exc_info.value.step == "B"
    assert exc_info.value.expected == 8
    assert exc_info.value.observed == 9
    assert sequencer.report.states == {"A": StepState.skipped, "B": StepState.failed, "C": StepState.pending}


def test_verification_failure_is_not_fatal(client, registry, five_steps):
    verifier = MagicMock(spec=ContractVerifier)
    verifier.verify.side_effect = VerificationFailed("Etherscan says no")

    report = DeploymentSequencer(client, registry, five_steps, verifier=verifier).run()

    assert len(report.get_steps_in_state(StepState.deployed)) == 5
    assert verifier.verify.call_count == 5


def test_verification_with_bytes_constructor_args(client, registry, make_artifact):
    """Contracts taking raw bytes are verified with the values they were deployed with."""
    salted = make_artifact("Salted", "bytes32", "address")
    salted = replace(salted, source_name="contracts/Salted.sol", compiler_version="0.8.19+commit.7dd6d404", standard_json_input={"language": "Solidity", "sources": {}})
    steps = [
        DeploymentStep("Salted", salted, build_args=lambda ctx: [b"\x01" * 32, ctx.deployer]),
        DeploymentStep("B", make_artifact("B", "address"), prerequisites=("Salted",), build_args=lambda ctx: [ctx.get_address("Salted")]),
    ]

    accepted = MagicMock()
    accepted.json.return_value = {"status": "1", "result": "Pass - Verified"}
    session = MagicMock()
    session.post.return_value = accepted
    session.get.return_value = accepted
    verifier = EtherscanVerifier("KEY", client.chain_id, poll_delay=datetime.timedelta(0), session=session)

    report = DeploymentSequencer(client, registry, steps, verifier=verifier).run()

    assert report.get_steps_in_state(StepState.deployed) == ["Salted", "B"]
    assert registry.require("Salted").constructor_args[0] == "0x" + "01" * 32

    data = session.post.call_args_list[0].kwargs["data"]
    assert data["contractname"] == "contracts/Salted.sol:Salted"
    assert data["constructorArguements"].startswith("01" * 32)


def test_verifier_crash_is_not_fatal(client, registry, five_steps):
    verifier = MagicMock(spec=ContractVerifier)
    verifier.verify.side_effect = TypeError("Cannot encode")

    report = DeploymentSequencer(client, registry, five_steps, verifier=verifier).run()

    assert len(report.get_steps_in_state(StepState.deployed)) == 5
    assert verifier.verify.call_count == 5


def test_verify_flag(client, registry, make_artifact):
    verifier = MagicMock(spec=ContractVerifier)
    verifier.verify.return_value = True
    steps = [
        DeploymentStep("A", make_artifact("A"), build_args=lambda ctx: []),
        DeploymentStep("B", make_artifact("B"), prerequisites=("A",), build_args=lambda ctx: [], verify=False),
    ]

    DeploymentSequencer(client, registry, steps, verifier=verifier).run()

    assert verifier.verify.call_count == 1
    address, contract, args = verifier.verify.call_args.args
    assert address == registry.require("A").address
    assert contract.contract_name == "A"
    assert args == []


def test_undeclared_prerequisite_read(client, registry, make_artifact):
    steps = [
        DeploymentStep("A", make_artifact("A"), build_args=lambda ctx: []),
        DeploymentStep("B", make_artifact("B", "address"), build_args=lambda ctx: [ctx.get_address("A")]),
    ]
    sequencer = DeploymentSequencer(client, registry, steps)
    with pytest.raises(PipelineConfigurationError):
        sequencer.run()
    assert sequencer.report.states["B"] == StepState.failed
    assert "B" not in registry


def test_undeclared_forward_reference(client, registry, make_artifact):
    steps = [
        DeploymentStep("A", make_artifact("A", "address"), build_args=lambda ctx: [ctx.predict_address("B")]),
        DeploymentStep("B", make_artifact("B"), prerequisites=("A",), build_args=lambda ctx: []),
    ]
    with pytest.raises(PipelineConfigurationError):
        DeploymentSequencer(client, registry, steps).run()


def test_missing_prerequisite_deployment():
    """A prerequisite that vanished from the registry is reported by name."""
    client = FakeChainClient()
    registry = InMemoryDeploymentRegistry(client.chain_id)
    context_steps = [
        DeploymentStep("A", _fake_artifact("A"), build_args=lambda ctx: []),
        DeploymentStep("B", _fake_artifact("B"), prerequisites=("A",), build_args=lambda ctx: [ctx.get_address("A")]),
    ]
    plan = DeploymentPlan(context_steps)

    ctx = DeploymentContext(
        step=context_steps[1],
        plan=plan,
        registry=registry,
        chain_id=1,
        deployer=FAKE_DEPLOYER,
        config=None,
    )
    with pytest.raises(DeploymentNotFound):
        ctx.get_address("A")
    assert ctx.get_nonce_offset("B") == 1


def test_concurrent_run_refused(client, registry, five_steps):
    sequencer = DeploymentSequencer(client, registry, five_steps)
    with registry.run_lock():
        with pytest.raises(DeploymentInProgress):
            sequencer.run()


def test_chain_mismatch(client, make_artifact):
    registry = InMemoryDeploymentRegistry(client.chain_id + 1)
    with pytest.raises(AssertionError):
        DeploymentSequencer(client, registry, [DeploymentStep("A", make_artifact("A"), build_args=lambda ctx: [])])


@pytest.mark.parametrize(
    "error",
    [
        ConfirmationTimedOut("Transaction 0x01 not confirmed in 0:05:00"),
        ContractDeploymentFailed("0x01", "Deployment failed for B"),
    ],
)
def test_unconfirmed_creation_aborts_run(error):
    """A creation that times out or reverts fails its step, later steps are not attempted."""
    client = StuckChainClient(error=error, stuck="B")
    registry = InMemoryDeploymentRegistry(client.chain_id)
    steps = [
        DeploymentStep("A", _fake_artifact("A"), build_args=lambda ctx: []),
        DeploymentStep("B", _fake_artifact("B"), prerequisites=("A",), forward_references=("C",), build_args=lambda ctx: [ctx.predict_address("C")]),
        DeploymentStep("C", _fake_artifact("C"), prerequisites=("B",), build_args=lambda ctx: []),
    ]

    sequencer = DeploymentSequencer(client, registry, steps)
    with pytest.raises(type(error)) as exc_info:
        sequencer.run()

    assert exc_info.value is error
    assert sequencer.report.states == {"A": StepState.deployed, "B": StepState.failed, "C": StepState.pending}
    assert registry.names() == ["A"]

    # Nothing was sent after the stuck creation
    assert client.nonce == 2


def test_plan_order_is_topological_with_declaration_tie_break():
    steps = [
        DeploymentStep("C", _fake_artifact("C"), prerequisites=("A",), build_args=lambda ctx: []),
        DeploymentStep("A", _fake_artifact("A"), build_args=lambda ctx: []),
        DeploymentStep("B", _fake_artifact("B"), build_args=lambda ctx: []),
        DeploymentStep("D", _fake_artifact("D"), prerequisites=("C", "B"), build_args=lambda ctx: []),
    ]
    plan = DeploymentPlan(steps)
    assert [s.name for s in plan.ordered] == ["A", "C", "B", "D"]
    assert plan.anchor.name == "A"
    assert plan.get_nonce_offset("D") == 3


def test_plan_nonce_pinned_steps(five_steps):
    plan = DeploymentPlan(five_steps)
    assert [s.name for s in plan.ordered if plan.is_nonce_pinned(s.name)] == ["S3", "S5"]


@pytest.mark.parametrize(
    "steps",
    [
        # Duplicate
        [("A", (), ()), ("A", (), ())],
        # Unknown prerequisite
        [("A", ("Z",), ())],
        # Cycle
        [("A", ("B",), ()), ("B", ("A",), ())],
        # Self dependency
        [("A", ("A",), ())],
        # Forward reference to an earlier step
        [("A", (), ()), ("B", ("A",), ("A",))],
        # Forward reference to itself
        [("A", (), ("A",))],
        # Forward reference to unknown step
        [("A", (), ("Z",))],
        # Empty
        [],
    ],
)
def test_plan_configuration_errors(steps):
    with pytest.raises(PipelineConfigurationError):
        DeploymentPlan(
            [
                DeploymentStep(name, _fake_artifact(name), prerequisites=prerequisites, forward_references=forward_references, build_args=lambda ctx: [])
                for name, prerequisites, forward_references in steps
            ]
        )


def test_plan_nonce_checked_steps(five_steps):
    """Everything up to the last pinned step is checked."""
    plan = DeploymentPlan(five_steps)
    assert plan.last_pinned_offset == 4
    assert all(plan.is_nonce_checked(s.name) for s in plan.ordered)

    plan = DeploymentPlan([DeploymentStep("A", _fake_artifact("A"), build_args=lambda ctx: [])])
    assert plan.last_pinned_offset is None
    assert not plan.is_nonce_checked("A")

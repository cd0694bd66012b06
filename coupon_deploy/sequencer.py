"""Nonce-sequenced deployment pipeline.

Some contracts need to be constructed with the addresses of contracts that do not exist yet.
E.g. the asset pool must know the position managers, but the position managers
must know the asset pool too.

We solve this by deploying everything from a single account in a fixed order.
The address of each ``CREATE`` is a function of the deployer and its nonce,
so once we know the nonce of the first deployment (the *anchor*), we know the address
of every later step: it is deployed at ``anchor nonce + position in the plan``.

- :py:class:`DeploymentStep` declares one contract, its prerequisites and the later steps
  whose predicted addresses it embeds (forward references)

- :py:class:`DeploymentPlan` orders the steps and gives each its nonce offset

- :py:class:`DeploymentSequencer` runs the plan, skipping what is already in the registry
  and refusing to deploy if the on-chain nonce has drifted from what the predictions assumed

Example:

.. code-block:: python

    steps = [
        DeploymentStep("Oracle", oracle_artifact, build_args=lambda ctx: []),
        DeploymentStep(
            "Pool",
            pool_artifact,
            prerequisites=("Oracle",),
            forward_references=("Manager",),
            build_args=lambda ctx: [ctx.predict_address("Manager")],
        ),
        DeploymentStep(
            "Manager",
            manager_artifact,
            prerequisites=("Pool",),
            build_args=lambda ctx: [ctx.get_address("Pool")],
        ),
    ]

    sequencer = DeploymentSequencer(client, registry, steps)
    report = sequencer.run()
    print(report.pformat())
"""

import datetime
import enum
import logging
from dataclasses import dataclass, field
from io import StringIO
from typing import Any, Callable, Sequence

from eth_typing import HexAddress
from web3 import Web3

from coupon_deploy.abi import ContractArtifact, present_solidity_args
from coupon_deploy.chain_client import DEFAULT_CONFIRMATION_TIMEOUT, ChainClient
from coupon_deploy.constants import ChainConfig
from coupon_deploy.create_address import predict_create_address
from coupon_deploy.etherscan import ContractVerifier, verify_best_effort
from coupon_deploy.registry import DeploymentEntry, DeploymentRegistry


logger = logging.getLogger(__name__)


class PipelineConfigurationError(ValueError):
    """Deployment steps do not form a valid pipeline."""


class NonceMismatch(Exception):
    """Chain has a different nonce than our address predictions assumed.

    Something else has sent transactions from the deployer account,
    or an earlier run was interrupted in the middle of a step.
    The predicted addresses are no longer valid and must not be deployed.
    """

    def __init__(self, msg: str, step: str, expected: int, observed: int):
        super().__init__(msg)
        self.step = step
        self.expected = expected
        self.observed = observed


class PredictedAddressMismatch(Exception):
    """A contract ended up at a different address than the one other contracts were given."""


class StepState(enum.Enum):
    """Lifecycle of a deployment step within one run."""

    pending = "pending"
    skipped = "skipped"
    running = "running"
    deployed = "deployed"
    failed = "failed"


@dataclass(slots=True)
class DeploymentStep:
    """One contract deployment in the pipeline."""

    #: Unique logical name, also the registry key
    name: str

    #: What to deploy
    contract: ContractArtifact

    #: Produce constructor arguments.
    #:
    #: Called right before the creation transaction is sent.
    build_args: Callable[["DeploymentContext"], Sequence[Any]]

    #: Steps that must have been deployed before this one
    prerequisites: tuple[str, ...] = ()

    #: Later steps whose predicted addresses :py:attr:`build_args` may embed
    forward_references: tuple[str, ...] = ()

    #: Submit the source code to the block explorer after the deployment
    verify: bool = True

    def __post_init__(self):
        assert type(self.name) == str and self.name, f"Bad step name: {self.name}"
        assert isinstance(self.contract, ContractArtifact), f"Step {self.name}: expected ContractArtifact, got {type(self.contract)}"
        assert callable(self.build_args), f"Step {self.name}: build_args not callable"
        self.prerequisites = tuple(self.prerequisites)
        self.forward_references = tuple(self.forward_references)


class DeploymentPlan:
    """Validated, totally ordered deployment steps.

    - Steps are ordered topologically by their prerequisites, ties broken by declaration order

    - Each step is one contract creation, so a step's position in the order is also its
      nonce offset from the first step, the anchor
    """

    def __init__(self, steps: Sequence[DeploymentStep]):
        if not steps:
            raise PipelineConfigurationError("Deployment plan has no steps")

        self.steps_by_name: dict[str, DeploymentStep] = {}
        for step in steps:
            if step.name in self.steps_by_name:
                raise PipelineConfigurationError(f"Duplicate deployment step: {step.name}")
            self.steps_by_name[step.name] = step

        self.ordered: list[DeploymentStep] = self._sort(list(steps))
        self.offsets: dict[str, int] = {step.name: idx for idx, step in enumerate(self.ordered)}

        #: Steps somebody has embedded a predicted address for
        self.forward_referenced: set[str] = set()

        for step in self.ordered:
            for target in step.forward_references:
                if target not in self.steps_by_name:
                    raise PipelineConfigurationError(f"Step {step.name} forward references unknown step {target}")
                if self.offsets[target] <= self.offsets[step.name]:
                    raise PipelineConfigurationError(f"Step {step.name} forward references {target}, but {target} is not deployed after it. Use a prerequisite instead.")
                self.forward_referenced.add(target)

    def __repr__(self):
        return f"<DeploymentPlan {' -> '.join(s.name for s in self.ordered)}>"

    def __len__(self):
        return len(self.ordered)

    def _sort(self, steps: list[DeploymentStep]) -> list[DeploymentStep]:
        """Kahn's algorithm, always picking the earliest declared ready step."""
        for step in steps:
            for prerequisite in step.prerequisites:
                if prerequisite not in self.steps_by_name:
                    raise PipelineConfigurationError(f"Step {step.name} depends on unknown step {prerequisite}")
                if prerequisite == step.name:
                    raise PipelineConfigurationError(f"Step {step.name} depends on itself")

        done: set[str] = set()
        ordered = []
        remaining = list(steps)
        while remaining:
            for step in remaining:
                if all(p in done for p in step.prerequisites):
                    break
            else:
                raise PipelineConfigurationError(f"Dependency cycle between steps: {[s.name for s in remaining]}")

            remaining.remove(step)
            done.add(step.name)
            ordered.append(step)

        return ordered

    @property
    def anchor(self) -> DeploymentStep:
        """The first step. Its deployment nonce is the base for all offsets."""
        return self.ordered[0]

    def get_nonce_offset(self, name: str) -> int:
        """How many creations after the anchor this step is deployed."""
        try:
            return self.offsets[name]
        except KeyError as e:
            raise PipelineConfigurationError(f"No step named {name}") from e

    def is_nonce_pinned(self, name: str) -> bool:
        """Must this step be deployed exactly at its predicted nonce.

        True if the step embeds predicted addresses, or other steps have embedded its predicted address.
        """
        step = self.steps_by_name[name]
        return bool(step.forward_references) or name in self.forward_referenced

    @property
    def last_pinned_offset(self) -> int | None:
        """Offset of the last nonce-pinned step, or ``None`` if nothing is pinned."""
        pinned = [self.offsets[s.name] for s in self.ordered if self.is_nonce_pinned(s.name)]
        return max(pinned) if pinned else None

    def is_nonce_checked(self, name: str) -> bool:
        """Must the deployer nonce be verified around this step.

        Every creation up to the last pinned step shifts the nonce of that step,
        so all of them are checked, not only the pinned ones.
        """
        last = self.last_pinned_offset
        if last is None:
            return False
        return self.get_nonce_offset(name) <= last


@dataclass(slots=True)
class DeploymentContext:
    """What a step's :py:attr:`DeploymentStep.build_args` can see."""

    step: DeploymentStep
    plan: DeploymentPlan
    registry: DeploymentRegistry
    chain_id: int
    deployer: HexAddress

    #: Static chain configuration, if the pipeline uses one
    config: ChainConfig | None

    #: Nonce of the anchor deployment, if resolved for this step
    anchor_nonce: int | None = None

    def get_address(self, name: str) -> HexAddress:
        """Address of an already deployed prerequisite.

        :raise PipelineConfigurationError:
            ``name`` is not a declared prerequisite of this step

        :raise DeploymentNotFound:
            The prerequisite is missing from the registry
        """
        if name not in self.step.prerequisites:
            raise PipelineConfigurationError(f"Step {self.step.name} reads {name}, but it is not declared as a prerequisite")
        return self.registry.require(name).address

    def get_nonce_offset(self, name: str) -> int:
        return self.plan.get_nonce_offset(name)

    def predict_address(self, name: str) -> HexAddress:
        """Address a later step will be deployed at.

        :raise PipelineConfigurationError:
            ``name`` is not a declared forward reference of this step
        """
        if name not in self.step.forward_references:
            raise PipelineConfigurationError(f"Step {self.step.name} predicts {name}, but it is not declared as a forward reference")
        assert self.anchor_nonce is not None, f"Anchor nonce not resolved for {self.step.name}"
        return predict_create_address(self.deployer, self.anchor_nonce + self.plan.get_nonce_offset(name))


@dataclass(slots=True)
class DeploymentRunReport:
    """What happened in a deployment run."""

    chain_id: int
    deployer: HexAddress
    states: dict[str, StepState] = field(default_factory=dict)
    entries: dict[str, DeploymentEntry] = field(default_factory=dict)
    anchor_nonce: int | None = None

    def get_steps_in_state(self, state: StepState) -> list[str]:
        return [name for name, s in self.states.items() if s == state]

    def pformat(self) -> str:
        """Return pretty print of the run."""
        io = StringIO()
        print("{:<24} {:<10} {:<44}".format("Step", "State", "Address"), file=io)
        for name, state in self.states.items():
            entry = self.entries.get(name)
            print("{:<24} {:<10} {:<44}".format(name, state.value, entry.address if entry else "-"), file=io)
        return io.getvalue()


class DeploymentSequencer:
    """Run a deployment plan against one chain and one deployer account.

    - Steps already in the registry are skipped

    - Steps up to the last nonce-pinned step check the deployer nonce before and after the creation

    - The first failure aborts the run; rerunning resumes from the failed step

    All chain access goes through the given :py:class:`~coupon_deploy.chain_client.ChainClient`
    and all state through the given registry.

    .. note ::

        Only one run may send transactions from the deployer at a time.
        The run holds the registry run lock.
    """

    def __init__(
        self,
        client: ChainClient,
        registry: DeploymentRegistry,
        steps: Sequence[DeploymentStep],
        config: ChainConfig | None = None,
        verifier: ContractVerifier | None = None,
        confirmation_block_count: int = 0,
        max_timeout: datetime.timedelta = DEFAULT_CONFIRMATION_TIMEOUT,
    ):
        """
        :param client:
            Chain access

        :param registry:
            Where deployed contracts are recorded

        :param steps:
            Deployment steps in declaration order

        :param config:
            Static chain configuration passed to the steps

        :param verifier:
            Source code verification service. Failed verifications are only logged.

        :param confirmation_block_count:
            How many blocks to wait on each creation

        :param max_timeout:
            Abort the run if a creation is not confirmed in this time
        """
        assert client.chain_id == registry.chain_id, f"Client chain {client.chain_id} does not match registry chain {registry.chain_id}"
        if config is not None:
            assert config.chain_id == client.chain_id, f"Config for chain {config.chain_id} used on chain {client.chain_id}"

        self.client = client
        self.registry = registry
        self.plan = DeploymentPlan(steps)
        self.config = config
        self.verifier = verifier
        self.confirmation_block_count = confirmation_block_count
        self.max_timeout = max_timeout
        self.deployer = Web3.to_checksum_address(client.deployer)

        #: Report of the latest run
        self.report: DeploymentRunReport | None = None

        self._anchor_nonce: int | None = None

    def __repr__(self):
        return f"<DeploymentSequencer chain:{self.client.chain_id} deployer:{self.deployer} steps:{len(self.plan)}>"

    def _resolve_anchor_nonce(self, current: DeploymentStep) -> int:
        """Find the nonce the first deployment was made with.

        - If the anchor is in the registry, read its creation transaction back

        - Otherwise the anchor is the step being executed now, and it gets the current account nonce
        """
        if self._anchor_nonce is not None:
            return self._anchor_nonce

        anchor = self.plan.anchor
        entry = self.registry.get(anchor.name)
        if entry is not None:
            tx = self.client.get_transaction(entry.transaction_hash)
            self._anchor_nonce = tx["nonce"]
            logger.info("Anchor %s was deployed with nonce %d in tx %s", anchor.name, self._anchor_nonce, entry.transaction_hash)
        else:
            assert current.name == anchor.name, f"Anchor {anchor.name} not deployed, but executing {current.name}"
            self._anchor_nonce = self.client.get_transaction_count(self.deployer)
            logger.info("Anchor %s will be deployed with nonce %d", anchor.name, self._anchor_nonce)

        if self.report is not None:
            self.report.anchor_nonce = self._anchor_nonce

        return self._anchor_nonce

    def _check_nonce(self, step: DeploymentStep, expected: int):
        observed = self.client.get_transaction_count(self.deployer)
        if observed != expected:
            offset = self.plan.get_nonce_offset(step.name)
            raise NonceMismatch(
                f"Nonce not matched before deploying {step.name}: expected {expected} (anchor {self._anchor_nonce} + offset {offset}), deployer {self.deployer} is at {observed}. "
                f"Some other transaction has been sent from the deployer and the predicted addresses are stale.",
                step=step.name,
                expected=expected,
                observed=observed,
            )

    def _execute(self, step: DeploymentStep) -> tuple[DeploymentEntry, list]:
        """Deploy one step and record it.

        :return:
            The registry entry and the constructor arguments the contract was deployed with
        """
        checked = self.plan.is_nonce_checked(step.name)

        anchor_nonce = None
        expected_nonce = None
        if checked or step.name == self.plan.anchor.name:
            anchor_nonce = self._resolve_anchor_nonce(step)
            expected_nonce = anchor_nonce + self.plan.get_nonce_offset(step.name)

        if checked:
            self._check_nonce(step, expected_nonce)

        context = DeploymentContext(
            step=step,
            plan=self.plan,
            registry=self.registry,
            chain_id=self.client.chain_id,
            deployer=self.deployer,
            config=self.config,
            anchor_nonce=anchor_nonce,
        )
        args = list(step.build_args(context))

        logger.info("Deploying %s, args %s", step.name, present_solidity_args(args))
        tx_hash = self.client.send_contract_creation(step.contract, args)
        receipt = self.client.wait_for_creation(tx_hash, self.confirmation_block_count, self.max_timeout)

        if checked:
            tx = self.client.get_transaction(tx_hash)
            if tx["nonce"] != expected_nonce:
                raise NonceMismatch(
                    f"{step.name} was deployed with nonce {tx['nonce']}, expected {expected_nonce}",
                    step=step.name,
                    expected=expected_nonce,
                    observed=tx["nonce"],
                )

            if step.name in self.plan.forward_referenced:
                predicted = predict_create_address(self.deployer, expected_nonce)
                if receipt.address != predicted:
                    raise PredictedAddressMismatch(f"{step.name} deployed at {receipt.address}, but other contracts were given {predicted}")

        entry = DeploymentEntry(
            name=step.name,
            address=receipt.address,
            transaction_hash=Web3.to_hex(receipt.transaction_hash),
            chain_id=self.client.chain_id,
            block_number=receipt.block_number,
            constructor_args=args,
        )
        self.registry.put(step.name, entry)
        return entry, args

    def _verify(self, step: DeploymentStep, entry: DeploymentEntry, args: list):
        """Best effort source code verification.

        The contract is already deployed and recorded, so no verification error aborts the run.
        """
        verify_best_effort(self.verifier, entry.address, step.contract, args)

    def run(self) -> DeploymentRunReport:
        """Deploy every step not in the registry yet.

        :return:
            Report of the run

        :raise NonceMismatch:
            The deployer nonce does not match what the predicted addresses assumed

        :raise ConfirmationTimedOut:
            A creation was not confirmed in time.
            Check the transaction manually before rerunning.
        """
        self.report = report = DeploymentRunReport(
            chain_id=self.client.chain_id,
            deployer=self.deployer,
            states={step.name: StepState.pending for step in self.plan.ordered},
        )
        self._anchor_nonce = None

        logger.info("Starting deployment run %s", self.plan)

        with self.registry.run_lock():
            for step in self.plan.ordered:
                existing = self.registry.get(step.name)
                if existing is not None:
                    logger.info("%s already deployed at %s, skipping", step.name, existing.address)
                    report.states[step.name] = StepState.skipped
                    report.entries[step.name] = existing
                    continue

                report.states[step.name] = StepState.running
                try:
                    entry, args = self._execute(step)
                except Exception as e:
                    report.states[step.name] = StepState.failed
                    logger.error("Deployment of %s failed, aborting the run: %s", step.name, e)
                    raise

                report.states[step.name] = StepState.deployed
                report.entries[step.name] = entry
                logger.info("Deployed %s at %s, tx %s", step.name, entry.address, entry.transaction_hash)

                if step.verify and self.verifier is not None:
                    self._verify(step, entry, args)

        logger.info("Deployment run complete:\n%s", report.pformat())
        return report

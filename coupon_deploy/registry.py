"""Deployment registry.

Record what we have deployed on each chain, so that

- later deployment steps can resolve the addresses of earlier steps

- a rerun after a partial failure skips what has already been deployed

The registry is append-only. An entry, once written, is never overwritten.

Two implementations

- :py:class:`InMemoryDeploymentRegistry` for tests and simulations

- :py:class:`JSONDeploymentRegistry` storing one ``deployments/<chain id>/<Name>.json`` file
  per contract, like hardhat-deploy does
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterator

from eth_typing import HexAddress
from filelock import FileLock, Timeout
from web3 import Web3


logger = logging.getLogger(__name__)


class DeploymentNotFound(ValueError):
    """A contract we depend on is not in the registry."""


class DeploymentAlreadyRegistered(ValueError):
    """Tried to overwrite a registry entry."""


class DeploymentInProgress(Exception):
    """Another process is running a deployment against the same registry."""


def _jsonify(value: Any) -> Any:
    """Make constructor arguments JSON serialisable."""
    if isinstance(value, (list, tuple)):
        return [_jsonify(v) for v in value]
    if isinstance(value, bytes):
        return "0x" + value.hex()
    return value


@dataclass(slots=True, frozen=True)
class DeploymentEntry:
    """One deployed contract."""

    #: Logical name of the deployment step, e.g. ``CouponOracle``
    name: str

    #: Checksummed contract address
    address: HexAddress

    #: 0x prefixed hash of the creation transaction
    transaction_hash: str

    #: Chain where the contract lives
    chain_id: int

    #: Block where the creation transaction was included
    block_number: int | None = None

    #: Constructor arguments as JSON friendly values
    constructor_args: list | None = None

    def __post_init__(self):
        assert type(self.chain_id) == int, f"Chain id must be int, got {type(self.chain_id)}"
        assert self.transaction_hash.startswith("0x"), f"Transaction hash must be 0x prefixed: {self.transaction_hash}"
        # Frozen dataclass
        object.__setattr__(self, "address", Web3.to_checksum_address(self.address))
        if self.constructor_args is not None:
            object.__setattr__(self, "constructor_args", _jsonify(self.constructor_args))

    def to_dict(self) -> dict:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict) -> "DeploymentEntry":
        return DeploymentEntry(
            name=data["name"],
            address=data["address"],
            transaction_hash=data["transaction_hash"],
            chain_id=data["chain_id"],
            block_number=data.get("block_number"),
            constructor_args=data.get("constructor_args"),
        )


class DeploymentRegistry(ABC):
    """Abstract registry of contracts deployed on one chain."""

    def __init__(self, chain_id: int):
        assert type(chain_id) == int, f"Chain id must be int, got {type(chain_id)}"
        self.chain_id = chain_id

    @abstractmethod
    def get(self, name: str) -> DeploymentEntry | None:
        """Get a deployment by its logical name.

        :return:
            ``None`` if not deployed yet
        """

    @abstractmethod
    def _write(self, entry: DeploymentEntry):
        """Persist a new entry."""

    @abstractmethod
    def names(self) -> list[str]:
        """Names of all deployed contracts."""

    @abstractmethod
    def run_lock(self) -> Iterator[None]:
        """Context manager holding exclusive access to the registry for the duration of a deployment run.

        :raise DeploymentInProgress:
            Someone else is running a deployment
        """

    def put(self, name: str, entry: DeploymentEntry):
        """Record a new deployment.

        :raise DeploymentAlreadyRegistered:
            The name has already been deployed on this chain
        """
        assert entry.name == name, f"Entry name {entry.name} does not match {name}"
        assert entry.chain_id == self.chain_id, f"Entry for chain {entry.chain_id} written to registry of chain {self.chain_id}"

        existing = self.get(name)
        if existing is not None:
            raise DeploymentAlreadyRegistered(f"{name} already deployed at {existing.address} on chain {self.chain_id}")

        self._write(entry)
        logger.info("Registered %s at %s, tx %s", name, entry.address, entry.transaction_hash)

    def require(self, name: str) -> DeploymentEntry:
        """Get a deployment that must exist.

        :raise DeploymentNotFound:
            If the contract has not been deployed
        """
        entry = self.get(name)
        if entry is None:
            raise DeploymentNotFound(f"No deployment for {name} on chain {self.chain_id}")
        return entry

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None


class InMemoryDeploymentRegistry(DeploymentRegistry):
    """Keep deployments in the process memory."""

    def __init__(self, chain_id: int):
        super().__init__(chain_id)
        self.entries: dict[str, DeploymentEntry] = {}
        self.lock = threading.Lock()

    def __repr__(self):
        return f"<InMemoryDeploymentRegistry chain:{self.chain_id} entries:{len(self.entries)}>"

    def get(self, name: str) -> DeploymentEntry | None:
        return self.entries.get(name)

    def _write(self, entry: DeploymentEntry):
        self.entries[entry.name] = entry

    def names(self) -> list[str]:
        return list(self.entries.keys())

    @contextmanager
    def run_lock(self) -> Iterator[None]:
        if not self.lock.acquire(blocking=False):
            raise DeploymentInProgress(f"Deployment already running for {self}")
        try:
            yield
        finally:
            self.lock.release()


class JSONDeploymentRegistry(DeploymentRegistry):
    """Store deployments as JSON files.

    Layout::

        deployments/
            42161/
                .lock
                CouponOracle.json
                AssetPool.json

    The files can be committed to the repository, so everyone sees what has been deployed.
    """

    def __init__(self, root: Path, chain_id: int, lock_timeout: float = 0):
        """
        :param root:
            Root folder, ``deployments`` in the repo

        :param chain_id:
            Chain this registry is for. Each chain gets its own subfolder.

        :param lock_timeout:
            How long to wait for another deployment run to finish, in seconds.
        """
        super().__init__(chain_id)
        assert isinstance(root, Path), f"Expected Path, got {type(root)}"
        self.path = root / str(chain_id)
        self.lock_timeout = lock_timeout

    def __repr__(self):
        return f"<JSONDeploymentRegistry {self.path}>"

    def _get_entry_path(self, name: str) -> Path:
        assert "/" not in name and "\\" not in name, f"Bad deployment name: {name}"
        return self.path / f"{name}.json"

    def get(self, name: str) -> DeploymentEntry | None:
        """Read an entry back.

        :raise ValueError:
            The file belongs to another chain or deployment, e.g. it was copied to the wrong folder
        """
        entry_path = self._get_entry_path(name)
        if not entry_path.exists():
            return None

        with open(entry_path, "rt", encoding="utf-8") as f:
            entry = DeploymentEntry.from_dict(json.load(f))

        if entry.chain_id != self.chain_id or entry.name != name:
            raise ValueError(f"{entry_path} holds {entry.name} on chain {entry.chain_id}, expected {name} on chain {self.chain_id}")

        return entry

    def _write(self, entry: DeploymentEntry):
        self.path.mkdir(parents=True, exist_ok=True)
        entry_path = self._get_entry_path(entry.name)
        # Write-then-rename so a crash never leaves half written entries behind
        temp_path = entry_path.with_suffix(".json.tmp")
        with open(temp_path, "wt", encoding="utf-8") as f:
            json.dump(entry.to_dict(), f, indent=2)
        temp_path.replace(entry_path)

    def names(self) -> list[str]:
        if not self.path.exists():
            return []
        return sorted(p.stem for p in self.path.glob("*.json"))

    @contextmanager
    def run_lock(self) -> Iterator[None]:
        self.path.mkdir(parents=True, exist_ok=True)
        lock = FileLock(self.path / ".lock", timeout=self.lock_timeout)
        try:
            lock.acquire()
        except Timeout as e:
            raise DeploymentInProgress(f"Could not acquire deployment lock {lock.lock_file}, is another deployment running?") from e

        try:
            yield
        finally:
            lock.release()

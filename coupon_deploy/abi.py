"""Contract artifact loading and ABI helpers.

Read compiled contracts from Hardhat (``artifacts/``) or Foundry (``out/``) build output
and turn them to :py:class:`ContractArtifact` objects the deployment pipeline consumes.

We also provide some helper functions to deal with constructor ABI encoding.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

import eth_abi
from eth_utils.abi import collapse_if_tuple
from hexbytes import HexBytes


logger = logging.getLogger(__name__)


#: Ethereum 0x0000000000000000000000000000000000000000 address as a string.
ZERO_ADDRESS_STR = "0x0000000000000000000000000000000000000000"

#: bytes32(0)
ZERO_BYTES32 = b"\x00" * 32

#: The subset of ERC-20 we need for allowance checks and coupon token metadata
ERC20_ABI = [
    {
        "type": "function",
        "name": "allowance",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "decimals",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "type": "function",
        "name": "symbol",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "string"}],
    },
]

#: EIP-2470 singleton factory
SINGLETON_FACTORY_ABI = [
    {
        "type": "function",
        "name": "deploy",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "_initCode", "type": "bytes"}, {"name": "_salt", "type": "bytes32"}],
        "outputs": [{"name": "createdContract", "type": "address"}],
    },
]


class ArtifactNotFound(ValueError):
    """Compiled contract was not found in the build output."""


@dataclass(slots=True, frozen=True)
class ContractArtifact:
    """Compiled contract ready to be deployed.

    - ABI and creation bytecode are always present

    - Compiler version and the standard JSON input are available for Hardhat builds
      and needed for the source code verification
    """

    #: E.g. ``CouponOracle``
    contract_name: str

    #: Contract ABI
    abi: list[dict] = field(repr=False)

    #: Creation bytecode, without constructor arguments
    bytecode: HexBytes = field(repr=False)

    #: E.g. ``contracts/CouponOracle.sol``
    source_name: str | None = None

    #: E.g. ``0.8.19+commit.7dd6d404``
    compiler_version: str | None = None

    #: Solidity standard JSON input used in the compilation
    standard_json_input: dict | None = field(default=None, repr=False)

    @property
    def fully_qualified_name(self) -> str:
        """Contract name as the explorers want it, ``contracts/CouponOracle.sol:CouponOracle``."""
        if self.source_name:
            return f"{self.source_name}:{self.contract_name}"
        return self.contract_name

    def get_constructor_abi(self) -> dict | None:
        for item in self.abi:
            if item.get("type") == "constructor":
                return item
        return None

    def encode_constructor_args(self, args: Sequence[Any]) -> bytes:
        """ABI encode constructor arguments.

        :return:
            Encoded arguments, empty if the contract has no constructor
        """
        constructor = self.get_constructor_abi()
        if constructor is None:
            assert len(args) == 0, f"{self.contract_name} has no constructor, but got args {args}"
            return b""

        types = [collapse_if_tuple(i) for i in constructor["inputs"]]
        assert len(types) == len(args), f"{self.contract_name} constructor takes {len(types)} arguments, got {len(args)}: {args}"
        return eth_abi.encode(types, list(args))

    def get_init_code(self, args: Sequence[Any]) -> bytes:
        """Creation bytecode with the constructor arguments appended."""
        return bytes(self.bytecode) + self.encode_constructor_args(args)


def _read_build_info(artifact_path: Path) -> dict | None:
    """Hardhat keeps compiler version and input in a build info file referred from ``.dbg.json``."""
    dbg_path = artifact_path.with_name(artifact_path.stem + ".dbg.json")
    if not dbg_path.exists():
        return None

    with open(dbg_path, "rt", encoding="utf-8") as f:
        dbg = json.load(f)

    build_info_path = (dbg_path.parent / dbg["buildInfo"]).resolve()
    if not build_info_path.exists():
        logger.warning("Build info %s missing for %s", build_info_path, artifact_path)
        return None

    with open(build_info_path, "rt", encoding="utf-8") as f:
        return json.load(f)


def load_artifact(path: Path) -> ContractArtifact:
    """Load a Hardhat or Foundry artifact JSON file.

    :param path:
        E.g. ``artifacts/contracts/CouponOracle.sol/CouponOracle.json``

    :return:
        Deployable contract
    """
    assert isinstance(path, Path), f"Expected Path, got {type(path)}"

    with open(path, "rt", encoding="utf-8") as f:
        data = json.load(f)

    bytecode = data["bytecode"]
    if type(bytecode) == dict:
        # Forge
        # Contains keys object, sourceMap, linkReferences
        bytecode = bytecode["object"]

    assert bytecode and bytecode != "0x", f"Artifact has no creation bytecode, is it an interface: {path}"

    source_name = data.get("sourceName")
    compiler_version = None
    standard_json_input = None

    if data.get("_format", "").startswith("hh-sol-artifact"):
        build_info = _read_build_info(path)
        if build_info:
            compiler_version = build_info.get("solcLongVersion")
            standard_json_input = build_info.get("input")
    else:
        metadata = data.get("metadata")
        if type(metadata) == dict:
            compiler_version = metadata.get("compiler", {}).get("version")
            targets = metadata.get("settings", {}).get("compilationTarget", {})
            if targets:
                source_name = next(iter(targets.keys()))

    return ContractArtifact(
        contract_name=data.get("contractName", path.stem),
        abi=data["abi"],
        bytecode=HexBytes(bytecode),
        source_name=source_name,
        compiler_version=compiler_version,
        standard_json_input=standard_json_input,
    )


def find_artifact(build_root: Path, contract_name: str) -> ContractArtifact:
    """Find a compiled contract by its name.

    Both Hardhat and Forge store artifacts as ``<Source>.sol/<Contract>.json``.

    :param build_root:
        Hardhat ``artifacts`` or Forge ``out`` folder

    :raise ArtifactNotFound:
        No match or the name is ambiguous
    """
    assert isinstance(build_root, Path), f"Expected Path, got {type(build_root)}"

    candidates = [p for p in build_root.rglob(f"{contract_name}.json") if "build-info" not in p.parts]

    if not candidates:
        raise ArtifactNotFound(f"No artifact for {contract_name} in {build_root}")

    if len(candidates) > 1:
        # Prefer the file that has the same name as the contract
        same_file = [p for p in candidates if p.parent.name == f"{contract_name}.sol"]
        if len(same_file) != 1:
            raise ArtifactNotFound(f"Ambiguous artifact for {contract_name}: {candidates}")
        candidates = same_file

    logger.debug("Loading %s from %s", contract_name, candidates[0])
    return load_artifact(candidates[0])


def _hexify(s: Any):
    if type(s) in (list, tuple):
        return str([_hexify(x) for x in s])
    if isinstance(s, str):
        return s
    elif isinstance(s, bytes):
        return "0x" + s.hex()
    return str(s)


def present_solidity_args(a: list | tuple | Any) -> str:
    """Try make Solidity call args human readable.

    Make sure we display bytes as hex.
    """
    return _hexify(a)

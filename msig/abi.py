"""ABI helpers: the fixed MultiSigWallet interface and call encoding."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from eth_abi import encode as abi_encode
from eth_utils import function_signature_to_4byte_selector, is_address, to_checksum_address

from .errors import AbiError, MissingArgumentError


def _fn(name: str, inputs: Sequence[Tuple[str, str]], outputs: Sequence[Tuple[str, str]] = (), *, view: bool = False) -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": arg, "type": typ} for arg, typ in inputs],
        "outputs": [{"name": arg, "type": typ} for arg, typ in outputs],
        "stateMutability": "view" if view else "nonpayable",
    }


def _event(name: str, inputs: Sequence[Tuple[str, str, bool]]) -> Dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": arg, "type": typ, "indexed": indexed} for arg, typ, indexed in inputs],
    }


MULTISIG_ABI: List[Dict[str, Any]] = [
    _fn("transactionCount", [], [("", "uint256")], view=True),
    _fn("required", [], [("", "uint256")], view=True),
    _fn("getOwners", [], [("", "address[]")], view=True),
    _fn("isOwner", [("", "address")], [("", "bool")], view=True),
    _fn(
        "transactions",
        [("", "uint256")],
        [("destination", "address"), ("value", "uint256"), ("data", "bytes"), ("executed", "bool")],
        view=True,
    ),
    _fn("getConfirmations", [("transactionId", "uint256")], [("_confirmations", "address[]")], view=True),
    _fn("isConfirmed", [("transactionId", "uint256")], [("", "bool")], view=True),
    _fn(
        "submitTransaction",
        [("destination", "address"), ("value", "uint256"), ("data", "bytes")],
        [("transactionId", "uint256")],
    ),
    _fn("confirmTransaction", [("transactionId", "uint256")]),
    _fn("revokeConfirmation", [("transactionId", "uint256")]),
    _fn("executeTransaction", [("transactionId", "uint256")]),
    _fn("addOwner", [("owner", "address")]),
    _fn("removeOwner", [("owner", "address")]),
    _fn("replaceOwner", [("owner", "address"), ("newOwner", "address")]),
    _fn("changeRequirement", [("_required", "uint256")]),
    _event("Submission", [("transactionId", "uint256", True)]),
    _event("Confirmation", [("sender", "address", True), ("transactionId", "uint256", True)]),
    _event("Revocation", [("sender", "address", True), ("transactionId", "uint256", True)]),
    _event("Execution", [("transactionId", "uint256", True)]),
    _event("ExecutionFailure", [("transactionId", "uint256", True)]),
    _event("OwnerAddition", [("owner", "address", True)]),
    _event("OwnerRemoval", [("owner", "address", True)]),
]


@dataclass(frozen=True)
class Parameter:
    """A single declared input of an ABI function."""

    name: str
    type: str
    components: Tuple["Parameter", ...] = ()

    @classmethod
    def from_entry(cls, entry: Mapping[str, Any]) -> "Parameter":
        components = tuple(cls.from_entry(item) for item in entry.get("components", []) or [])
        return cls(name=str(entry.get("name", "")), type=str(entry.get("type", "")), components=components)

    @property
    def canonical_type(self) -> str:
        if not self.type.startswith("tuple"):
            return self.type
        inner = ",".join(component.canonical_type for component in self.components)
        return f"({inner}){self.type[len('tuple'):]}"


@dataclass(frozen=True)
class FunctionSignature:
    """Typed view of an ABI function entry with ordered parameters."""

    name: str
    inputs: Tuple[Parameter, ...]

    @property
    def canonical(self) -> str:
        return f"{self.name}({','.join(param.canonical_type for param in self.inputs)})"

    @property
    def selector(self) -> bytes:
        return function_signature_to_4byte_selector(self.canonical)

    @property
    def parameter_names(self) -> List[str]:
        return [param.name for param in self.inputs]


def _normalise_abi(entries: Any) -> List[Dict[str, Any]]:
    if isinstance(entries, list):
        normalised = [dict(entry) for entry in entries if isinstance(entry, dict)]
        if not normalised:
            raise AbiError("ABI definition is empty or invalid")
        return normalised
    raise AbiError("ABI definition must be a list of JSON objects")


def parse_abi(source: Any) -> List[Dict[str, Any]]:
    """Accept a JSON string, a list of entries or a compiler artifact."""

    if isinstance(source, (bytes, bytearray)):
        source = source.decode("utf-8")
    if isinstance(source, str):
        try:
            source = json.loads(source)
        except json.JSONDecodeError as exc:
            raise AbiError(f"ABI is not valid JSON: {exc.msg}") from exc
    if isinstance(source, dict) and "abi" in source:
        source = source["abi"]
    return _normalise_abi(source)


def load_abi_file(path: str | Path) -> List[Dict[str, Any]]:
    """Load an ABI definition directly from an arbitrary file path."""

    file_path = Path(path).expanduser()
    if not file_path.exists():
        raise FileNotFoundError(f"ABI file not found: {file_path}")
    return parse_abi(file_path.read_text(encoding="utf-8"))


def function_signature(abi: Any, method: str) -> FunctionSignature:
    for entry in parse_abi(abi):
        if entry.get("type") == "function" and entry.get("name") == method:
            inputs = tuple(Parameter.from_entry(item) for item in entry.get("inputs", []) or [])
            return FunctionSignature(name=method, inputs=inputs)
    raise AbiError(f"Method '{method}' not found in ABI")


def order_arguments(signature: FunctionSignature, args: Mapping[str, Any]) -> List[Any]:
    """Return ``args`` in declared parameter order.

    Every declared name must be present; unknown keys are ignored.
    """

    ordered: List[Any] = []
    for param in signature.inputs:
        if param.name not in args:
            raise MissingArgumentError(signature.name, param.name)
        ordered.append(_prepare_value(param.type, args[param.name]))
    return ordered


def _prepare_value(abi_type: str, value: Any) -> Any:
    if abi_type == "address" and isinstance(value, str) and is_address(value):
        return to_checksum_address(value)
    if abi_type.startswith("address[") and isinstance(value, (list, tuple)):
        return [_prepare_value("address", item) for item in value]
    if abi_type.startswith("bytes") and not abi_type.endswith("]") and isinstance(value, str) and value.startswith("0x"):
        return bytes.fromhex(value[2:])
    if abi_type.startswith(("uint", "int")) and not abi_type.endswith("]") and isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise AbiError(f"'{value}' is not a valid {abi_type}") from exc
    return value


def encode_arguments(signature: FunctionSignature, values: Sequence[Any]) -> bytes:
    types = [param.canonical_type for param in signature.inputs]
    try:
        return signature.selector + abi_encode(types, list(values))
    except Exception as exc:
        raise AbiError(f"Unable to encode arguments for {signature.canonical}: {exc}") from exc


def encode_call(abi: Any, method: str, args: Mapping[str, Any]) -> bytes:
    """Resolve ``method`` in ``abi`` and ABI-encode it with named ``args``."""

    signature = function_signature(abi, method)
    return encode_arguments(signature, order_arguments(signature, args))


__all__ = [
    "MULTISIG_ABI",
    "FunctionSignature",
    "Parameter",
    "encode_arguments",
    "encode_call",
    "function_signature",
    "load_abi_file",
    "order_arguments",
    "parse_abi",
]

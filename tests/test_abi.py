"""Tests for :mod:`msig.abi`."""

from __future__ import annotations

import json

import pytest
from eth_abi import decode as abi_decode

from msig.abi import (
    MULTISIG_ABI,
    encode_call,
    function_signature,
    load_abi_file,
    order_arguments,
    parse_abi,
)
from msig.errors import AbiError, MissingArgumentError, WriteError
from tests.fakes import BOB

SWAP_ABI = [
    {
        "type": "function",
        "name": "swap",
        "inputs": [
            {
                "name": "route",
                "type": "tuple",
                "components": [{"name": "pool", "type": "address"}, {"name": "fee", "type": "uint24"}],
            },
            {"name": "amounts", "type": "uint256[]"},
            {"name": "memo", "type": "bytes"},
        ],
    }
]


def test_parse_abi_accepts_common_shapes(tmp_path) -> None:
    assert parse_abi(SWAP_ABI) == SWAP_ABI
    assert parse_abi(json.dumps(SWAP_ABI)) == SWAP_ABI
    assert parse_abi({"abi": SWAP_ABI}) == SWAP_ABI

    path = tmp_path / "artifact.json"
    path.write_text(json.dumps({"contractName": "Router", "abi": SWAP_ABI}), encoding="utf-8")
    assert load_abi_file(path) == SWAP_ABI


def test_load_abi_file_missing(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_abi_file(tmp_path / "absent.json")


def test_signature_uses_canonical_tuple_types() -> None:
    signature = function_signature(SWAP_ABI, "swap")

    assert signature.canonical == "swap((address,uint24),uint256[],bytes)"
    assert signature.parameter_names == ["route", "amounts", "memo"]
    assert len(signature.selector) == 4


def test_unknown_method_raises_abi_error() -> None:
    with pytest.raises(AbiError, match="not found"):
        function_signature(MULTISIG_ABI, "transfer")


def test_missing_argument_names_method_and_parameter() -> None:
    signature = function_signature(MULTISIG_ABI, "replaceOwner")

    with pytest.raises(MissingArgumentError) as excinfo:
        order_arguments(signature, {"owner": BOB})

    assert excinfo.value.method == "replaceOwner"
    assert excinfo.value.parameter == "newOwner"
    assert isinstance(excinfo.value, WriteError)


def test_arguments_follow_declared_order_and_ignore_extras() -> None:
    signature = function_signature(MULTISIG_ABI, "submitTransaction")

    ordered = order_arguments(signature, {"data": "0xdead", "value": "0x10", "destination": BOB.lower(), "extra": 1})

    assert ordered == [BOB, 16, b"\xde\xad"]


def test_encode_call_round_trips_through_decoder() -> None:
    data = encode_call(SWAP_ABI, "swap", {"route": (BOB, 3000), "amounts": [1, 2], "memo": "0x01"})

    route, amounts, memo = abi_decode(["(address,uint24)", "uint256[]", "bytes"], data[4:])
    assert route[0].lower() == BOB.lower()
    assert route[1] == 3000
    assert list(amounts) == [1, 2]
    assert memo == b"\x01"


def test_bad_values_raise_abi_error() -> None:
    with pytest.raises(AbiError):
        encode_call(MULTISIG_ABI, "changeRequirement", {"_required": "many"})
    with pytest.raises(AbiError):
        encode_call(MULTISIG_ABI, "addOwner", {"owner": 12})

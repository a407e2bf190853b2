"""EIP-712 claim attestations — typed-data builder, signer and verifier."""

from __future__ import annotations

import copy
from typing import Any, Protocol

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import keccak
from web3 import Web3

from .errors import ConfigurationError

EIP712_DOMAIN_FIELDS = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

CLAIM_PAYLOAD_FIELDS = [
    {"name": "policyId", "type": "uint256"},
    {"name": "riskId", "type": "bytes32"},
    {"name": "windowStart", "type": "uint64"},
    {"name": "windowEnd", "type": "uint64"},
    {"name": "severity", "type": "uint256"},
    {"name": "referenceValue", "type": "uint256"},
    {"name": "currentValue", "type": "uint256"},
    {"name": "payout", "type": "uint256"},
    {"name": "nonce", "type": "uint256"},
    {"name": "deadline", "type": "uint256"},
]

PRIMARY_TYPE = "ClaimPayload"


def risk_id_to_bytes32(risk_id: str) -> str:
    return "0x" + keccak(text=risk_id).hex()


def build_domain(name: str, version: str, chain_id: int, verifying_contract: str) -> dict[str, Any]:
    if not verifying_contract or not Web3.is_address(verifying_contract):
        raise ConfigurationError("payout verifier address not configured")
    return {
        "name": name,
        "version": version,
        "chainId": chain_id,
        "verifyingContract": Web3.to_checksum_address(verifying_contract),
    }


def build_claim_typed_data(domain: dict[str, Any], message: dict[str, Any]) -> dict[str, Any]:
    """JSON-friendly typed data; bytes32 values are 0x-prefixed hex strings."""
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_FIELDS,
            PRIMARY_TYPE: CLAIM_PAYLOAD_FIELDS,
        },
        "primaryType": PRIMARY_TYPE,
        "domain": dict(domain),
        "message": dict(message),
    }


def _signable(typed_data: dict[str, Any]):
    full_message = copy.deepcopy(typed_data)
    message = full_message["message"]
    for field in full_message["types"][full_message["primaryType"]]:
        value = message.get(field["name"])
        if field["type"] == "bytes32" and isinstance(value, str):
            message[field["name"]] = bytes.fromhex(value.removeprefix("0x"))
    return encode_typed_data(full_message=full_message)


class TypedDataSigner(Protocol):
    address: str

    def sign_typed_data(self, typed_data: dict[str, Any]) -> str:
        ...


class LocalKeySigner:
    """Signs with a locally held key; the key never leaves this object."""

    def __init__(self, private_key: str) -> None:
        if not private_key:
            raise ConfigurationError("signer private key not configured")
        self._account = Account.from_key(private_key)
        self.address = self._account.address

    def sign_typed_data(self, typed_data: dict[str, Any]) -> str:
        signed = self._account.sign_message(_signable(typed_data))
        return "0x" + bytes(signed.signature).hex()


def recover_claim_signer(typed_data: dict[str, Any], signature: str) -> str:
    """Recompute the digest the way a verifier would and recover the signer."""
    return Account.recover_message(_signable(typed_data), signature=signature)

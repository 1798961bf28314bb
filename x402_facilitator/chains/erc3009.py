"""
ERC-3009 ``TransferWithAuthorization`` helpers.

- EIP-712 typed-data construction for the authorization message
- Signer recovery and signing via eth_account
- Calldata encoding for ``transferWithAuthorization(..., v, r, s)``
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any, Dict, Tuple

from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import encode_typed_data
from hexbytes import HexBytes
from web3 import Web3

TRANSFER_WITH_AUTHORIZATION_SIGNATURE = (
    "transferWithAuthorization(address,address,uint256,uint256,uint256,bytes32,uint8,bytes32,bytes32)"
)
TRANSFER_WITH_AUTHORIZATION_SELECTOR = Web3.keccak(text=TRANSFER_WITH_AUTHORIZATION_SIGNATURE)[:4]

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

TRANSFER_WITH_AUTHORIZATION_TYPE = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "validAfter", "type": "uint256"},
    {"name": "validBefore", "type": "uint256"},
    {"name": "nonce", "type": "bytes32"},
]


@dataclass(frozen=True)
class Authorization:
    """An ERC-3009 transfer authorization."""

    from_address: str
    to: str
    value: int
    valid_after: int
    valid_before: int
    nonce: str  # 0x-prefixed bytes32 hex

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Authorization":
        """Parse the ``authorization`` object of an exact-scheme EVM payload.

        Raises:
            ValueError: If a field is missing or malformed
        """
        try:
            nonce = HexBytes(data["nonce"])
            if len(nonce) != 32:
                raise ValueError("nonce must be 32 bytes")
            return cls(
                from_address=Web3.to_checksum_address(data["from"]),
                to=Web3.to_checksum_address(data["to"]),
                value=int(data["value"]),
                valid_after=int(data["validAfter"]),
                valid_before=int(data["validBefore"]),
                nonce=Web3.to_hex(nonce),
            )
        except KeyError as e:
            raise ValueError(f"authorization is missing field {e.args[0]!r}") from e
        except TypeError as e:
            raise ValueError(f"malformed authorization: {e}") from e

    @classmethod
    def new(cls, from_address: str, to: str, value: int, valid_for_seconds: int, now: int) -> "Authorization":
        return cls(
            from_address=Web3.to_checksum_address(from_address),
            to=Web3.to_checksum_address(to),
            value=int(value),
            valid_after=0,
            valid_before=now + valid_for_seconds,
            nonce="0x" + secrets.token_hex(32),
        )

    def to_payload(self) -> Dict[str, str]:
        return {
            "from": self.from_address,
            "to": self.to,
            "value": str(self.value),
            "validAfter": str(self.valid_after),
            "validBefore": str(self.valid_before),
            "nonce": self.nonce,
        }


def build_typed_data(
    authorization: Authorization,
    chain_id: int,
    verifying_contract: str,
    name: str,
    version: str,
) -> Dict[str, Any]:
    """Full EIP-712 message for an authorization."""
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_TYPE,
            "TransferWithAuthorization": TRANSFER_WITH_AUTHORIZATION_TYPE,
        },
        "primaryType": "TransferWithAuthorization",
        "domain": {
            "name": name,
            "version": version,
            "chainId": int(chain_id),
            "verifyingContract": Web3.to_checksum_address(verifying_contract),
        },
        "message": {
            "from": authorization.from_address,
            "to": authorization.to,
            "value": authorization.value,
            "validAfter": authorization.valid_after,
            "validBefore": authorization.valid_before,
            "nonce": bytes(HexBytes(authorization.nonce)),
        },
    }


def recover_signer(typed_data: Dict[str, Any], signature: str) -> str:
    """Recover the address that signed ``typed_data``.

    Raises:
        ValueError: If the signature cannot be parsed or recovered
    """
    signable = encode_typed_data(full_message=typed_data)
    return Account.recover_message(signable, signature=HexBytes(signature))


def sign_authorization(typed_data: Dict[str, Any], private_key: str) -> str:
    """Sign an authorization message, returning the 65-byte signature as hex."""
    signable = encode_typed_data(full_message=typed_data)
    signed = Account.sign_message(signable, private_key=private_key)
    return Web3.to_hex(signed.signature)


def split_signature(signature: str) -> Tuple[int, bytes, bytes]:
    """Split a 65-byte ``r || s || v`` signature into (v, r, s).

    Raises:
        ValueError: If the signature is not 65 bytes
    """
    raw = bytes(HexBytes(signature))
    if len(raw) != 65:
        raise ValueError(f"expected a 65-byte signature, got {len(raw)} bytes")
    v = raw[64]
    if v < 27:
        v += 27
    return v, raw[:32], raw[32:64]


def encode_transfer_with_authorization(authorization: Authorization, signature: str) -> str:
    """ABI-encode calldata for ``transferWithAuthorization``."""
    v, r, s = split_signature(signature)
    args = abi_encode(
        ["address", "address", "uint256", "uint256", "uint256", "bytes32", "uint8", "bytes32", "bytes32"],
        [
            authorization.from_address,
            authorization.to,
            authorization.value,
            authorization.valid_after,
            authorization.valid_before,
            bytes(HexBytes(authorization.nonce)),
            v,
            r,
            s,
        ],
    )
    return Web3.to_hex(TRANSFER_WITH_AUTHORIZATION_SELECTOR + args)

"""
Stacks transaction wire codec (SIP-005).

This module provides:
- Decoding of signed transactions: auth/spending conditions, post
  conditions (skipped), token-transfer and contract-call payloads,
  Clarity values
- c32check address encoding/decoding
- Encoding and single-sig signing of STX / SIP-010 transfers (refund payouts)
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from Crypto.Hash import RIPEMD160, SHA512
from eth_keys import keys
from eth_keys.exceptions import ValidationError as KeyValidationError

# --- Constants ---------------------------------------------------------------

TX_VERSION_MAINNET = 0x00
TX_VERSION_TESTNET = 0x80
CHAIN_ID_MAINNET = 0x00000001
CHAIN_ID_TESTNET = 0x80000000

AUTH_STANDARD = 0x04
AUTH_SPONSORED = 0x05

HASH_MODE_P2PKH = 0x00
HASH_MODE_P2SH = 0x01
HASH_MODE_P2WPKH = 0x02
HASH_MODE_P2WSH = 0x03
HASH_MODE_P2SH_NON_SEQUENTIAL = 0x05
HASH_MODE_P2WSH_NON_SEQUENTIAL = 0x07
SINGLE_SIG_HASH_MODES = (HASH_MODE_P2PKH, HASH_MODE_P2WPKH)
MULTI_SIG_HASH_MODES = (
    HASH_MODE_P2SH,
    HASH_MODE_P2WSH,
    HASH_MODE_P2SH_NON_SEQUENTIAL,
    HASH_MODE_P2WSH_NON_SEQUENTIAL,
)

ADDRESS_VERSION_MAINNET_SINGLE = 22  # 'P'
ADDRESS_VERSION_MAINNET_MULTI = 20  # 'M'
ADDRESS_VERSION_TESTNET_SINGLE = 26  # 'T'
ADDRESS_VERSION_TESTNET_MULTI = 21  # 'N'

ANCHOR_MODE_ANY = 0x03
POST_CONDITION_MODE_ALLOW = 0x01
POST_CONDITION_MODE_DENY = 0x02

PAYLOAD_TOKEN_TRANSFER = 0x00
PAYLOAD_CONTRACT_CALL = 0x02

PC_STX = 0x00
PC_FUNGIBLE = 0x01
PC_NON_FUNGIBLE = 0x02
PC_PRINCIPAL_ORIGIN = 0x01
PC_PRINCIPAL_STANDARD = 0x02
PC_PRINCIPAL_CONTRACT = 0x03

# Clarity value type ids
CV_INT = 0x00
CV_UINT = 0x01
CV_BUFFER = 0x02
CV_TRUE = 0x03
CV_FALSE = 0x04
CV_PRINCIPAL_STANDARD = 0x05
CV_PRINCIPAL_CONTRACT = 0x06
CV_RESPONSE_OK = 0x07
CV_RESPONSE_ERR = 0x08
CV_NONE = 0x09
CV_SOME = 0x0A
CV_LIST = 0x0B
CV_TUPLE = 0x0C
CV_STRING_ASCII = 0x0D
CV_STRING_UTF8 = 0x0E

MEMO_LENGTH = 34
SIGNATURE_LENGTH = 65
C32_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


class StacksCodecError(ValueError):
    """Raised when bytes are not a well-formed Stacks transaction."""


# --- Hashing / c32check ----------------------------------------------------

def sha512_256(data: bytes) -> bytes:
    return SHA512.new(data, truncate="256").digest()


def hash160(data: bytes) -> bytes:
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


def c32_encode(data: bytes) -> str:
    value = int.from_bytes(data, "big")
    digits = []
    while value:
        value, rem = divmod(value, 32)
        digits.append(C32_ALPHABET[rem])
    leading_zeros = len(data) - len(data.lstrip(b"\x00"))
    return "0" * leading_zeros + "".join(reversed(digits))


def c32_decode(text: str) -> bytes:
    text = text.upper().replace("O", "0").replace("L", "1").replace("I", "1")
    leading_zeros = len(text) - len(text.lstrip("0"))
    value = 0
    for char in text[leading_zeros:]:
        index = C32_ALPHABET.find(char)
        if index < 0:
            raise StacksCodecError(f"invalid c32 character {char!r}")
        value = value * 32 + index
    body = value.to_bytes((value.bit_length() + 7) // 8, "big") if value else b""
    return b"\x00" * leading_zeros + body


def c32_address(version: int, hash_bytes: bytes) -> str:
    """c32check-encode a (version, hash160) pair as an ``S...`` address."""
    checksum = hashlib.sha256(hashlib.sha256(bytes([version]) + hash_bytes).digest()).digest()[:4]
    return "S" + C32_ALPHABET[version] + c32_encode(hash_bytes + checksum)


def c32_address_decode(address: str) -> Tuple[int, bytes]:
    """Decode an ``S...`` address into (version, hash160).

    Raises:
        StacksCodecError: If the address or its checksum is invalid
    """
    if len(address) < 5 or address[0] != "S":
        raise StacksCodecError(f"not a Stacks address: {address!r}")
    version = C32_ALPHABET.find(address[1].upper())
    if version < 0:
        raise StacksCodecError(f"invalid address version in {address!r}")
    data = c32_decode(address[2:])
    if len(data) < 24:
        data = b"\x00" * (24 - len(data)) + data
    hash_bytes, checksum = data[:-4], data[-4:]
    expected = hashlib.sha256(hashlib.sha256(bytes([version]) + hash_bytes).digest()).digest()[:4]
    if checksum != expected or len(hash_bytes) != 20:
        raise StacksCodecError(f"bad checksum for address {address!r}")
    return version, hash_bytes


# --- Data model --------------------------------------------------------------

@dataclass
class ClarityValue:
    type_id: int
    value: Any = None

    @property
    def is_principal(self) -> bool:
        return self.type_id in (CV_PRINCIPAL_STANDARD, CV_PRINCIPAL_CONTRACT)


@dataclass
class SpendingCondition:
    hash_mode: int
    signer: bytes  # hash160
    nonce: int
    fee: int
    key_encoding: int = 0
    signature: bytes = b"\x00" * SIGNATURE_LENGTH
    auth_fields: List[Tuple[int, bytes]] = field(default_factory=list)
    signatures_required: int = 0

    @property
    def is_single_sig(self) -> bool:
        return self.hash_mode in SINGLE_SIG_HASH_MODES


@dataclass
class TokenTransferPayload:
    recipient: str  # principal, "SP..." or "SP....contract"
    amount: int
    memo: bytes = b""


@dataclass
class ContractCallPayload:
    contract_address: str
    contract_name: str
    function_name: str
    args: List[ClarityValue]

    @property
    def contract_id(self) -> str:
        return f"{self.contract_address}.{self.contract_name}"


@dataclass
class StacksTransaction:
    version: int
    chain_id: int
    auth_type: int
    origin: SpendingCondition
    payload: Any
    sponsor: Optional[SpendingCondition] = None
    anchor_mode: int = ANCHOR_MODE_ANY
    post_condition_mode: int = POST_CONDITION_MODE_DENY
    post_conditions: bytes = b"\x00\x00\x00\x00"  # raw, including the u32 count
    raw: bytes = b""

    @property
    def is_mainnet(self) -> bool:
        return self.version == TX_VERSION_MAINNET

    @property
    def sender(self) -> str:
        return spending_condition_address(self.origin, self.is_mainnet)

    @property
    def txid(self) -> str:
        return sha512_256(self.raw or serialize_transaction(self)).hex()


def spending_condition_address(condition: SpendingCondition, mainnet: bool) -> str:
    if condition.is_single_sig:
        version = ADDRESS_VERSION_MAINNET_SINGLE if mainnet else ADDRESS_VERSION_TESTNET_SINGLE
    else:
        version = ADDRESS_VERSION_MAINNET_MULTI if mainnet else ADDRESS_VERSION_TESTNET_MULTI
    return c32_address(version, condition.signer)


# --- Decoding -----------------------------------------------------------------

class _Reader:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def read(self, n: int) -> bytes:
        if n < 0 or self.pos + n > len(self.data):
            raise StacksCodecError(f"unexpected end of data at offset {self.pos} (wanted {n} bytes)")
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def u8(self) -> int:
        return self.read(1)[0]

    def u16(self) -> int:
        return struct.unpack(">H", self.read(2))[0]

    def u32(self) -> int:
        return struct.unpack(">I", self.read(4))[0]

    def u64(self) -> int:
        return struct.unpack(">Q", self.read(8))[0]

    def name(self) -> str:
        return self.read(self.u8()).decode("ascii")

    def at_end(self) -> bool:
        return self.pos == len(self.data)


def _read_address(r: _Reader) -> str:
    version = r.u8()
    return c32_address(version, r.read(20))


def _read_spending_condition(r: _Reader) -> SpendingCondition:
    hash_mode = r.u8()
    signer = r.read(20)
    nonce = r.u64()
    fee = r.u64()
    if hash_mode in SINGLE_SIG_HASH_MODES:
        key_encoding = r.u8()
        signature = r.read(SIGNATURE_LENGTH)
        return SpendingCondition(hash_mode, signer, nonce, fee, key_encoding, signature)
    if hash_mode in MULTI_SIG_HASH_MODES:
        fields = []
        for _ in range(r.u32()):
            field_type = r.u8()
            if field_type in (0x00, 0x01):
                fields.append((field_type, r.read(33)))
            elif field_type in (0x02, 0x03):
                fields.append((field_type, r.read(SIGNATURE_LENGTH)))
            else:
                raise StacksCodecError(f"unknown auth field type {field_type:#x}")
        required = r.u16()
        return SpendingCondition(hash_mode, signer, nonce, fee, auth_fields=fields, signatures_required=required)
    raise StacksCodecError(f"unknown hash mode {hash_mode:#x}")


def read_clarity_value(r: _Reader) -> ClarityValue:
    type_id = r.u8()
    if type_id == CV_INT:
        return ClarityValue(type_id, int.from_bytes(r.read(16), "big", signed=True))
    if type_id == CV_UINT:
        return ClarityValue(type_id, int.from_bytes(r.read(16), "big"))
    if type_id == CV_BUFFER:
        return ClarityValue(type_id, r.read(r.u32()))
    if type_id in (CV_TRUE, CV_FALSE):
        return ClarityValue(type_id, type_id == CV_TRUE)
    if type_id == CV_PRINCIPAL_STANDARD:
        return ClarityValue(type_id, _read_address(r))
    if type_id == CV_PRINCIPAL_CONTRACT:
        address = _read_address(r)
        return ClarityValue(type_id, f"{address}.{r.name()}")
    if type_id in (CV_RESPONSE_OK, CV_RESPONSE_ERR, CV_SOME):
        return ClarityValue(type_id, read_clarity_value(r))
    if type_id == CV_NONE:
        return ClarityValue(type_id)
    if type_id == CV_LIST:
        return ClarityValue(type_id, [read_clarity_value(r) for _ in range(r.u32())])
    if type_id == CV_TUPLE:
        items = {}
        for _ in range(r.u32()):
            key = r.name()
            items[key] = read_clarity_value(r)
        return ClarityValue(type_id, items)
    if type_id == CV_STRING_ASCII:
        return ClarityValue(type_id, r.read(r.u32()).decode("ascii"))
    if type_id == CV_STRING_UTF8:
        return ClarityValue(type_id, r.read(r.u32()).decode("utf-8"))
    raise StacksCodecError(f"unknown Clarity type {type_id:#x}")


def _skip_post_condition(r: _Reader) -> None:
    kind = r.u8()
    principal = r.u8()
    if principal == PC_PRINCIPAL_STANDARD:
        r.read(21)
    elif principal == PC_PRINCIPAL_CONTRACT:
        r.read(21)
        r.name()
    elif principal != PC_PRINCIPAL_ORIGIN:
        raise StacksCodecError(f"unknown post-condition principal {principal:#x}")

    if kind in (PC_FUNGIBLE, PC_NON_FUNGIBLE):
        r.read(21)  # asset contract address
        r.name()  # contract name
        r.name()  # asset name
    if kind == PC_NON_FUNGIBLE:
        read_clarity_value(r)
        r.u8()  # condition code
    elif kind in (PC_STX, PC_FUNGIBLE):
        r.u8()  # condition code
        r.u64()  # amount
    else:
        raise StacksCodecError(f"unknown post-condition type {kind:#x}")


def _read_payload(r: _Reader) -> Any:
    kind = r.u8()
    if kind == PAYLOAD_TOKEN_TRANSFER:
        recipient = read_clarity_value(r)
        if not recipient.is_principal:
            raise StacksCodecError("token transfer recipient is not a principal")
        amount = r.u64()
        memo = r.read(MEMO_LENGTH)
        return TokenTransferPayload(recipient.value, amount, memo)
    if kind == PAYLOAD_CONTRACT_CALL:
        address = _read_address(r)
        contract_name = r.name()
        function_name = r.name()
        args = [read_clarity_value(r) for _ in range(r.u32())]
        return ContractCallPayload(address, contract_name, function_name, args)
    raise StacksCodecError(f"unsupported payload type {kind:#x}")


def decode_transaction(data: bytes) -> StacksTransaction:
    """Decode a serialized Stacks transaction.

    Raises:
        StacksCodecError: If the bytes are malformed or use an unsupported payload
    """
    r = _Reader(data)
    try:
        version = r.u8()
        chain_id = r.u32()
        auth_type = r.u8()
        if auth_type not in (AUTH_STANDARD, AUTH_SPONSORED):
            raise StacksCodecError(f"unknown auth type {auth_type:#x}")
        origin = _read_spending_condition(r)
        sponsor = _read_spending_condition(r) if auth_type == AUTH_SPONSORED else None
        anchor_mode = r.u8()
        post_condition_mode = r.u8()
        pc_start = r.pos
        for _ in range(r.u32()):
            _skip_post_condition(r)
        post_conditions = data[pc_start:r.pos]
        payload = _read_payload(r)
    except UnicodeDecodeError as e:
        raise StacksCodecError(f"invalid name encoding: {e}") from e

    if not r.at_end():
        raise StacksCodecError(f"{len(data) - r.pos} trailing bytes after payload")

    return StacksTransaction(
        version=version,
        chain_id=chain_id,
        auth_type=auth_type,
        origin=origin,
        sponsor=sponsor,
        anchor_mode=anchor_mode,
        post_condition_mode=post_condition_mode,
        post_conditions=post_conditions,
        payload=payload,
        raw=data,
    )


def decode_transaction_hex(tx_hex: str) -> StacksTransaction:
    tx_hex = tx_hex.strip()
    if tx_hex.startswith("0x"):
        tx_hex = tx_hex[2:]
    try:
        data = bytes.fromhex(tx_hex)
    except ValueError as e:
        raise StacksCodecError(f"transaction is not hex: {e}") from e
    return decode_transaction(data)


# --- SIP-010 helpers ------------------------------------------------------------

@dataclass
class Sip010Transfer:
    amount: int
    sender: str
    recipient: str


def parse_sip010_transfer(call: ContractCallPayload) -> Sip010Transfer:
    """Positional ``transfer(amount uint, sender principal, recipient principal, memo)``.

    Raises:
        StacksCodecError: If the call is not a SIP-010 transfer
    """
    if call.function_name != "transfer":
        raise StacksCodecError(f"unexpected function {call.function_name!r}")
    if len(call.args) < 3:
        raise StacksCodecError("SIP-010 transfer needs at least 3 arguments")
    amount, sender, recipient = call.args[:3]
    if amount.type_id != CV_UINT or not sender.is_principal or not recipient.is_principal:
        raise StacksCodecError("SIP-010 transfer arguments have unexpected types")
    return Sip010Transfer(amount=amount.value, sender=sender.value, recipient=recipient.value)


# --- Encoding --------------------------------------------------------------------

def _encode_address(address: str) -> bytes:
    version, hash_bytes = c32_address_decode(address)
    return bytes([version]) + hash_bytes


def _encode_name(name: str) -> bytes:
    raw = name.encode("ascii")
    return bytes([len(raw)]) + raw


def encode_principal(principal: str) -> bytes:
    if "." in principal:
        address, contract = principal.split(".", 1)
        return bytes([CV_PRINCIPAL_CONTRACT]) + _encode_address(address) + _encode_name(contract)
    return bytes([CV_PRINCIPAL_STANDARD]) + _encode_address(principal)


def encode_uint(value: int) -> bytes:
    return bytes([CV_UINT]) + int(value).to_bytes(16, "big")


def _serialize_spending_condition(condition: SpendingCondition) -> bytes:
    out = bytes([condition.hash_mode]) + condition.signer + struct.pack(">QQ", condition.nonce, condition.fee)
    if condition.is_single_sig:
        return out + bytes([condition.key_encoding]) + condition.signature
    out += struct.pack(">I", len(condition.auth_fields))
    for field_type, body in condition.auth_fields:
        out += bytes([field_type]) + body
    return out + struct.pack(">H", condition.signatures_required)


def _serialize_payload(payload: Any) -> bytes:
    if isinstance(payload, TokenTransferPayload):
        memo = payload.memo[:MEMO_LENGTH].ljust(MEMO_LENGTH, b"\x00")
        return bytes([PAYLOAD_TOKEN_TRANSFER]) + encode_principal(payload.recipient) + struct.pack(">Q", payload.amount) + memo
    if isinstance(payload, ContractCallPayload):
        out = bytes([PAYLOAD_CONTRACT_CALL]) + _encode_address(payload.contract_address)
        out += _encode_name(payload.contract_name) + _encode_name(payload.function_name)
        out += struct.pack(">I", len(payload.args))
        for arg in payload.args:
            if not isinstance(arg.value, (bytes, bytearray)):
                raise StacksCodecError("contract-call args must be pre-serialized for encoding")
            out += bytes(arg.value)
        return out
    raise StacksCodecError(f"cannot serialize payload {type(payload).__name__}")


def serialize_transaction(tx: StacksTransaction) -> bytes:
    out = bytes([tx.version]) + struct.pack(">I", tx.chain_id) + bytes([tx.auth_type])
    out += _serialize_spending_condition(tx.origin)
    if tx.sponsor is not None:
        out += _serialize_spending_condition(tx.sponsor)
    out += bytes([tx.anchor_mode, tx.post_condition_mode]) + tx.post_conditions
    return out + _serialize_payload(tx.payload)


# --- Signing (single-sig, standard auth) -----------------------------------------

def _private_key(secret_hex: str) -> keys.PrivateKey:
    secret_hex = secret_hex.strip().removeprefix("0x")
    if len(secret_hex) == 66 and secret_hex.endswith("01"):
        secret_hex = secret_hex[:64]
    try:
        return keys.PrivateKey(bytes.fromhex(secret_hex))
    except (KeyValidationError, ValueError) as e:
        raise StacksCodecError(f"invalid Stacks private key: {e}") from e


def address_from_private_key(secret_hex: str, mainnet: bool) -> str:
    public_key = _private_key(secret_hex).public_key.to_compressed_bytes()
    version = ADDRESS_VERSION_MAINNET_SINGLE if mainnet else ADDRESS_VERSION_TESTNET_SINGLE
    return c32_address(version, hash160(public_key))


def build_unsigned_transfer(
    secret_hex: str,
    mainnet: bool,
    nonce: int,
    fee: int,
    recipient: str,
    amount: int,
    asset: str = "STX",
    memo: str = "",
) -> StacksTransaction:
    """Build an unsigned STX transfer or SIP-010 ``transfer`` call.

    ``asset`` is ``STX`` or a ``<address>.<contract>[::token]`` identifier.
    """
    public_key = _private_key(secret_hex).public_key.to_compressed_bytes()
    origin = SpendingCondition(HASH_MODE_P2PKH, hash160(public_key), nonce, fee, key_encoding=0x00)

    if asset.upper() == "STX":
        payload: Any = TokenTransferPayload(recipient, amount, memo.encode("utf-8"))
        pc_mode = POST_CONDITION_MODE_DENY
    else:
        contract_id = asset.split("::", 1)[0]
        contract_address, contract_name = contract_id.split(".", 1)
        sender = address_from_private_key(secret_hex, mainnet)
        memo_arg = bytes([CV_NONE])
        payload = ContractCallPayload(
            contract_address,
            contract_name,
            "transfer",
            [
                ClarityValue(CV_UINT, encode_uint(amount)),
                ClarityValue(CV_PRINCIPAL_STANDARD, encode_principal(sender)),
                ClarityValue(CV_PRINCIPAL_STANDARD, encode_principal(recipient)),
                ClarityValue(CV_NONE, memo_arg),
            ],
        )
        pc_mode = POST_CONDITION_MODE_ALLOW

    return StacksTransaction(
        version=TX_VERSION_MAINNET if mainnet else TX_VERSION_TESTNET,
        chain_id=CHAIN_ID_MAINNET if mainnet else CHAIN_ID_TESTNET,
        auth_type=AUTH_STANDARD,
        origin=origin,
        payload=payload,
        anchor_mode=ANCHOR_MODE_ANY,
        post_condition_mode=pc_mode,
    )


def sign_transaction(tx: StacksTransaction, secret_hex: str) -> bytes:
    """Sign a single-sig standard transaction and return its serialized bytes.

    initial sighash = txid with cleared auth; presign = sha512/256(initial ||
    auth type || fee || nonce); signature is recoverable ``v || r || s``.
    """
    origin = tx.origin
    cleared = SpendingCondition(origin.hash_mode, origin.signer, 0, 0, 0x00, b"\x00" * SIGNATURE_LENGTH)
    unsigned = StacksTransaction(
        tx.version, tx.chain_id, tx.auth_type, cleared, tx.payload,
        anchor_mode=tx.anchor_mode, post_condition_mode=tx.post_condition_mode,
        post_conditions=tx.post_conditions,
    )
    initial = sha512_256(serialize_transaction(unsigned))
    presign = sha512_256(initial + bytes([tx.auth_type]) + struct.pack(">QQ", origin.fee, origin.nonce))

    signature = _private_key(secret_hex).sign_msg_hash(presign)
    origin.signature = bytes([signature.v]) + signature.r.to_bytes(32, "big") + signature.s.to_bytes(32, "big")
    origin.key_encoding = 0x00

    tx.raw = serialize_transaction(tx)
    return tx.raw

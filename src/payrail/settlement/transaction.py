"""Legacy Solana transfer transaction encoding.

Only the shape this service builds is supported: one System program
transfer plus one Memo program instruction, paid for by the source.

Wire format (legacy, unversioned):
- compact-u16 number of signatures, then 64 bytes per signature
- message:
    header: num_required_signatures, num_readonly_signed, num_readonly_unsigned
    compact-u16 number of account keys, then 32 bytes per key
    32-byte recent blockhash
    compact-u16 number of instructions, each:
        u8 program id index
        compact-u16 number of account indices, then u8 per index
        compact-u16 data length, then data
"""

import base64
import binascii
import logging
import struct
from dataclasses import dataclass
from typing import Optional

import base58
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from payrail.errors import ValidationError

logger = logging.getLogger(__name__)

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
MEMO_PROGRAM_ID = "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr"

SIGNATURE_LENGTH = 64
PUBKEY_LENGTH = 32
SYSTEM_TRANSFER_INSTRUCTION = 2
EMPTY_SIGNATURE = bytes(SIGNATURE_LENGTH)


@dataclass
class TransferInstruction:
    """Decoded content of a transfer transaction."""

    fee_payer: str
    source: str
    destination: str
    lamports: int
    recent_blockhash: str
    memo: Optional[str] = None
    signatures: tuple[bytes, ...] = ()

    @property
    def is_signed(self) -> bool:
        return bool(self.signatures) and all(sig != EMPTY_SIGNATURE for sig in self.signatures)

    @property
    def signature(self) -> Optional[str]:
        """Transaction id: base58 of the fee payer signature."""
        if not self.signatures or self.signatures[0] == EMPTY_SIGNATURE:
            return None
        return base58.b58encode(self.signatures[0]).decode()


def is_valid_address(address: Optional[str]) -> bool:
    """Check a base58 public key: 32-44 characters decoding to 32 bytes."""
    if not address or not isinstance(address, str):
        return False
    if not 32 <= len(address) <= 44:
        return False
    try:
        return len(base58.b58decode(address)) == PUBKEY_LENGTH
    except ValueError:
        return False


def _pubkey(address: str) -> bytes:
    if not is_valid_address(address):
        raise ValidationError(f"Invalid address: {address}")
    return base58.b58decode(address)


def encode_compact_u16(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_compact_u16(data: bytes, offset: int) -> tuple[int, int]:
    """Return (value, new_offset)."""
    value = 0
    shift = 0
    for i in range(3):
        if offset + i >= len(data):
            raise ValidationError("Truncated transaction")
        byte = data[offset + i]
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, offset + i + 1
        shift += 7
    raise ValidationError("Malformed compact-u16 length")


def compile_transfer_message(
    source: str,
    destination: str,
    lamports: int,
    recent_blockhash: str,
    memo: Optional[str] = None,
) -> bytes:
    """Compile the message bytes for a memo-stamped transfer."""
    if lamports <= 0:
        raise ValidationError("Transfer amount must be positive")
    if source == destination:
        raise ValidationError("Source and destination must differ")

    # writable signer, writable non-signer, then readonly programs
    keys = [_pubkey(source), _pubkey(destination), base58.b58decode(SYSTEM_PROGRAM_ID)]
    if memo:
        keys.append(base58.b58decode(MEMO_PROGRAM_ID))

    blockhash = base58.b58decode(recent_blockhash)
    if len(blockhash) != 32:
        raise ValidationError("Invalid recent blockhash")

    msg = bytearray()
    msg += bytes([1, 0, len(keys) - 2])
    msg += encode_compact_u16(len(keys))
    for key in keys:
        msg += key
    msg += blockhash

    instructions = []
    transfer_data = struct.pack("<IQ", SYSTEM_TRANSFER_INSTRUCTION, lamports)
    instructions.append((2, [0, 1], transfer_data))
    if memo:
        instructions.append((3, [], memo.encode("utf-8")))

    msg += encode_compact_u16(len(instructions))
    for program_index, accounts, data in instructions:
        msg.append(program_index)
        msg += encode_compact_u16(len(accounts))
        msg += bytes(accounts)
        msg += encode_compact_u16(len(data))
        msg += data
    return bytes(msg)


def build_unsigned_transfer(
    source: str,
    destination: str,
    lamports: int,
    recent_blockhash: str,
    memo: Optional[str] = None,
) -> bytes:
    """Build a serialized transaction with an empty fee payer signature slot."""
    message = compile_transfer_message(source, destination, lamports, recent_blockhash, memo)
    return encode_compact_u16(1) + EMPTY_SIGNATURE + message


def _split(tx_bytes: bytes) -> tuple[list[bytes], int]:
    """Return (signatures, message_offset)."""
    count, offset = decode_compact_u16(tx_bytes, 0)
    if count < 1:
        raise ValidationError("Transaction has no signature slots")
    end = offset + count * SIGNATURE_LENGTH
    if end > len(tx_bytes):
        raise ValidationError("Truncated transaction")
    signatures = [
        bytes(tx_bytes[offset + i * SIGNATURE_LENGTH : offset + (i + 1) * SIGNATURE_LENGTH])
        for i in range(count)
    ]
    return signatures, end


def _parse_message(message: bytes) -> tuple[int, list[bytes], bytes, list[tuple[int, list[int], bytes]]]:
    if len(message) < 3:
        raise ValidationError("Truncated transaction")
    num_signers = message[0]
    offset = 3
    num_keys, offset = decode_compact_u16(message, offset)
    keys = []
    for _ in range(num_keys):
        if offset + PUBKEY_LENGTH > len(message):
            raise ValidationError("Truncated transaction")
        keys.append(bytes(message[offset : offset + PUBKEY_LENGTH]))
        offset += PUBKEY_LENGTH
    blockhash = bytes(message[offset : offset + 32])
    offset += 32

    num_instructions, offset = decode_compact_u16(message, offset)
    instructions = []
    for _ in range(num_instructions):
        if offset >= len(message):
            raise ValidationError("Truncated transaction")
        program_index = message[offset]
        offset += 1
        num_accounts, offset = decode_compact_u16(message, offset)
        accounts = list(message[offset : offset + num_accounts])
        offset += num_accounts
        data_len, offset = decode_compact_u16(message, offset)
        data = bytes(message[offset : offset + data_len])
        if len(data) != data_len:
            raise ValidationError("Truncated transaction")
        offset += data_len
        instructions.append((program_index, accounts, data))
    return num_signers, keys, blockhash, instructions


def decode_transfer(tx_bytes: bytes) -> TransferInstruction:
    """Decode a transfer transaction built by this module (or an equivalent client)."""
    signatures, message_offset = _split(tx_bytes)
    _, keys, blockhash, instructions = _parse_message(tx_bytes[message_offset:])
    if not keys:
        raise ValidationError("Transaction has no accounts")

    system_program = base58.b58decode(SYSTEM_PROGRAM_ID)
    memo_program = base58.b58decode(MEMO_PROGRAM_ID)
    transfer = None
    memo = None
    for program_index, accounts, data in instructions:
        if program_index >= len(keys):
            raise ValidationError("Instruction references unknown program")
        program = keys[program_index]
        if program == system_program and len(data) == 12:
            kind, lamports = struct.unpack("<IQ", data)
            if kind == SYSTEM_TRANSFER_INSTRUCTION and len(accounts) >= 2:
                if max(accounts[:2]) >= len(keys):
                    raise ValidationError("Instruction references unknown account")
                if transfer is not None:
                    raise ValidationError("Transaction contains more than one transfer")
                transfer = (keys[accounts[0]], keys[accounts[1]], lamports)
        elif program == memo_program:
            memo = data.decode("utf-8", errors="replace")

    if transfer is None:
        raise ValidationError("Transaction does not contain a transfer instruction")

    source, destination, lamports = transfer
    return TransferInstruction(
        fee_payer=base58.b58encode(keys[0]).decode(),
        source=base58.b58encode(source).decode(),
        destination=base58.b58encode(destination).decode(),
        lamports=lamports,
        recent_blockhash=base58.b58encode(blockhash).decode(),
        memo=memo,
        signatures=tuple(signatures),
    )


def sign_transaction(tx_bytes: bytes, signing_key: SigningKey) -> bytes:
    """Fill the fee payer signature slot with an ed25519 signature."""
    signatures, message_offset = _split(tx_bytes)
    message = bytes(tx_bytes[message_offset:])
    _, keys, _, _ = _parse_message(message)
    if keys[0] != bytes(signing_key.verify_key):
        raise ValidationError("Signing key does not match the fee payer")

    signature = signing_key.sign(message).signature
    signed = bytearray(tx_bytes)
    start = message_offset - len(signatures) * SIGNATURE_LENGTH
    signed[start : start + SIGNATURE_LENGTH] = signature
    return bytes(signed)


def verify_signatures(tx_bytes: bytes) -> bool:
    """Check every required signature against its account key."""
    signatures, message_offset = _split(tx_bytes)
    message = bytes(tx_bytes[message_offset:])
    num_signers, keys, _, _ = _parse_message(message)
    if num_signers != len(signatures) or num_signers > len(keys):
        return False
    for signature, key in zip(signatures, keys):
        try:
            VerifyKey(key).verify(message, signature)
        except BadSignatureError:
            logger.debug(f"Bad signature for {base58.b58encode(key).decode()}")
            return False
    return True


def encode_transaction(tx_bytes: bytes) -> str:
    return base64.b64encode(tx_bytes).decode()


def decode_transaction(encoded: str) -> bytes:
    """Decode a base64 transaction string."""
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Signed transaction is not valid base64", details=str(e))

#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
TRON 签名密钥：私钥只以 32 字节 bytearray 存在，close/dispose 时清零
- SecureBuffer      : 固定长度敏感缓冲区（清零后句柄失效）
- TronSigningKey    : 公钥 / 地址 / 可恢复 ECDSA 签名
- TronHDWallet      : 从 seed + path 构造，TIP-191 消息签名、交易 txID 签名
"""

from __future__ import annotations
from typing import Optional, Union, Dict, Any
from abc import ABC, abstractmethod
from dataclasses import dataclass
import base58

from tronhd import (
    BIP32, Crypto, DerivationPath, DerivationScratch, BytesLike,
    DisposedKeyError, InvalidBufferSizeError, KEY_SIZE, require_buffer,
)
from tronlog import get_logger

logger = get_logger(__name__)

TRON_ADDRESS_PREFIX = 0x41
TRON_ADDRESS_LENGTH = 34
TRON_MESSAGE_PREFIX = "\x19TRON Signed Message:\n"
RECOVERY_OFFSET = 27

MessageLike = Union[str, bytes, bytearray]


# ========= Secure buffer =========
class SecureBuffer:
    """
    Owns one fixed-size bytearray. wipe() overwrites it with zeros in place and
    invalidates the handle; the bytearray object itself stays (all zero).
    """

    def __init__(self, size: int, data: Optional[bytearray] = None):
        self._data = require_buffer(bytearray(size) if data is None else data, size, "buffer")
        self._wiped = False

    @classmethod
    def copy_of(cls, data: BytesLike) -> "SecureBuffer":
        buf = cls(len(data))
        buf._data[:] = data
        return buf

    def __len__(self) -> int:
        return len(self._data)

    def __enter__(self) -> "SecureBuffer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()

    @property
    def wiped(self) -> bool:
        return self._wiped

    @property
    def data(self) -> bytearray:
        if self._wiped:
            raise DisposedKeyError("Buffer has been wiped")
        return self._data

    def wipe(self) -> None:
        if not self._wiped:
            self._data[:] = bytes(len(self._data))
            self._wiped = True


# ========= Signature =========
@dataclass(frozen=True)
class Signature:
    r: bytes
    s: bytes
    recovery_id: int

    @property
    def v(self) -> int:
        return RECOVERY_OFFSET + self.recovery_id

    def to_bytes(self) -> bytes:
        return self.r + self.s + bytes([self.v])

    def hex(self) -> str:
        """0x || r(32) || s(32) || 1b/1c"""
        return "0x" + self.to_bytes().hex()

    def __str__(self) -> str:
        return self.hex()

    @classmethod
    def parse(cls, sig: Union["Signature", str, BytesLike]) -> "Signature":
        if isinstance(sig, Signature):
            return sig
        if isinstance(sig, str):
            h = sig[2:] if sig.lower().startswith("0x") else sig
            try:
                sig = bytes.fromhex(h)
            except ValueError as e:
                raise ValueError(f"Invalid signature hex: {e}") from e
        elif not isinstance(sig, (bytes, bytearray, memoryview)):
            raise ValueError(f"Signature must be bytes or hex, got {type(sig).__name__}")
        sig = bytes(sig)
        if len(sig) != 65:
            raise ValueError(f"Signature must be 65 bytes, got {len(sig)}")
        v = sig[64]
        if v in (RECOVERY_OFFSET, RECOVERY_OFFSET + 1):
            v -= RECOVERY_OFFSET
        if v not in (0, 1):
            raise ValueError(f"Invalid recovery byte: {sig[64]}")
        return cls(sig[:32], sig[32:64], v)

    def recover_public_key(self, digest: BytesLike, compressed: bool = False) -> bytes:
        if len(digest) != 32:
            raise InvalidBufferSizeError("digest must be 32 bytes")
        return Crypto.recover_pubkey(digest, self.r, self.s, self.recovery_id, compressed=compressed)


# ========= Address =========
def address_from_public_key(pub: bytes) -> str:
    """
    返回 "T..." (Base58Check，前缀 0x41)
    压缩公钥先转未压缩（65B），丢掉开头 0x04 后 keccak，取后 20 字节
    """
    if len(pub) == 33:
        pub = Crypto.pubkey_uncompress(pub)
    if len(pub) != 65 or pub[0] != 0x04:
        raise ValueError("public key must be 33-byte compressed or 65-byte uncompressed")
    raw20 = Crypto.keccak256(pub[1:])[-20:]
    return base58.b58encode_check(bytes([TRON_ADDRESS_PREFIX]) + raw20).decode()


def is_valid_address(address: str) -> bool:
    if not isinstance(address, str) or len(address) != TRON_ADDRESS_LENGTH:
        return False
    try:
        raw = base58.b58decode_check(address)
    except ValueError:
        return False
    return len(raw) == 21 and raw[0] == TRON_ADDRESS_PREFIX


# ========= TIP-191 =========
def hash_message(message: MessageLike) -> bytes:
    """keccak256("\\x19TRON Signed Message:\\n" + len(message) + message)"""
    data = message.encode("utf-8") if isinstance(message, str) else bytes(message)
    prefix = (TRON_MESSAGE_PREFIX + str(len(data))).encode("utf-8")
    return Crypto.keccak256(prefix + data)


def verify_message(message: MessageLike, signature: Union[Signature, str, BytesLike], address: str) -> bool:
    """Malformed signatures verify as False rather than raising."""
    try:
        sig = Signature.parse(signature)
        recovered = sig.recover_public_key(hash_message(message), compressed=False)
    except ValueError:
        return False
    return address_from_public_key(recovered) == address


# ========= Signing key =========
class SigningKey(ABC):
    @abstractmethod
    def get_public_key(self, compressed: bool = True) -> bytes: ...

    @abstractmethod
    def compute_address(self) -> str: ...

    @abstractmethod
    def sign(self, digest: BytesLike) -> Signature: ...

    @abstractmethod
    def dispose(self) -> None: ...

    @property
    @abstractmethod
    def disposed(self) -> bool: ...


class TronSigningKey(SigningKey):
    """
    Takes exclusive ownership of a 32-byte bytearray private key. The key is never
    accepted or returned as int/str; dispose() zeroes the bytearray and every later
    call raises DisposedKeyError.
    """

    def __init__(self, private_key: bytearray):
        self._key = SecureBuffer(KEY_SIZE, private_key)
        self._address: Optional[str] = None

    def __enter__(self) -> "TronSigningKey":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    def _secret(self) -> bytearray:
        if self._key.wiped:
            raise DisposedKeyError("Signing key has been disposed")
        return self._key.data

    @property
    def disposed(self) -> bool:
        return self._key.wiped

    @property
    def private_key_buffer(self) -> bytearray:
        return self._secret()

    def get_public_key(self, compressed: bool = True) -> bytes:
        return Crypto.pubkey(self._secret(), compressed=compressed)

    def compute_address(self) -> str:
        sk = self._secret()
        if self._address is None:
            self._address = address_from_public_key(Crypto.pubkey(sk, compressed=False))
        return self._address

    def sign(self, digest: BytesLike) -> Signature:
        sk = self._secret()
        if not isinstance(digest, (bytes, bytearray, memoryview)) or len(digest) != 32:
            raise InvalidBufferSizeError("digest must be 32 bytes")
        r, s, rec = Crypto.sign_recoverable(digest, sk)
        return Signature(r, s, rec)

    def dispose(self) -> None:
        if not self._key.wiped:
            self._key.wipe()
            self._address = None
            logger.debug("Signing key disposed")


# ========= HD wallet =========
class TronHDWallet:
    def __init__(self, signing_key: SigningKey):
        self._signing_key = signing_key
        self._address = signing_key.compute_address()

    @classmethod
    def from_seed(cls, seed: BytesLike, path: Union[str, DerivationPath],
                  private_key: Optional[bytearray] = None,
                  scratch: Optional[DerivationScratch] = None) -> "TronHDWallet":
        """seed + path -> wallet；private_key 缓冲区由返回的签名密钥接管"""
        key = bytearray(KEY_SIZE) if private_key is None else private_key
        BIP32.derive(seed, path, key, scratch)
        return cls(TronSigningKey(key))

    @property
    def signing_key(self) -> SigningKey:
        return self._signing_key

    def get_public_key(self, compressed: bool = True, as_hex: bool = False) -> Union[bytes, str]:
        pub = self._signing_key.get_public_key(compressed)
        return "0x" + pub.hex() if as_hex else pub

    def get_address(self) -> str:
        if self._signing_key.disposed:
            raise DisposedKeyError("Signing key has been disposed")
        return self._address

    def sign(self, message: MessageLike) -> Signature:
        return self._signing_key.sign(hash_message(message))

    def verify(self, message: MessageLike, signature: Union[Signature, str, BytesLike]) -> bool:
        return verify_message(message, signature, self.get_address())

    def sign_transaction(self, transaction: Dict[str, Any]) -> Dict[str, Any]:
        """
        Signs transaction["txID"] (hex sha256 of raw_data) and stores it in transaction["signature"].
        Building contract-call transactions is the ledger client's job.
        """
        txid = transaction.get("txID")
        if not txid:
            raise ValueError("transaction has no txID to sign")
        sig = self._signing_key.sign(bytes.fromhex(txid))
        transaction["signature"] = [sig.to_bytes().hex()]
        return transaction

    def dispose(self) -> None:
        self._signing_key.dispose()

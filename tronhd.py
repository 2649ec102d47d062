#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
BIP32 (secp256k1, HMAC-SHA512) -> TRON 私钥派生核心
- 私钥始终是 32 字节 bytearray，模 n 运算逐字节完成（可随时清零，不转成 int）
- 派生使用调用方持有的 scratch 缓冲区，按路径分量顺序执行
"""

from __future__ import annotations
from typing import Tuple, Optional, Union
import struct, hashlib, hmac, re
from dataclasses import dataclass

# --- secp256k1 via coincurve (libsecp256k1) ---
from coincurve import PublicKey as CC_PublicKey, PrivateKey as CC_PrivateKey
from Cryptodome.Hash import keccak

from tronlog import get_logger

logger = get_logger(__name__)

HARDENED = 0x80000000
MAX_INDEX = 0x7FFFFFFF
MASTER_SECRET = b"Bitcoin seed"
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)
CURVE_ORDER = SECP256K1_N.to_bytes(32, "big")

KEY_SIZE = 32
CHAIN_CODE_SIZE = 32
HMAC_OUTPUT_SIZE = 64
DERIVATION_DATA_SIZE = 37

BytesLike = Union[bytes, bytearray, memoryview]


# ========= Errors =========
class TronHDError(Exception): pass
class InvalidSeedError(TronHDError, ValueError): pass
class InvalidBufferSizeError(TronHDError, ValueError): pass
class InvalidPathError(TronHDError, ValueError): pass
class DisposedKeyError(TronHDError, RuntimeError): pass
class InvalidChildError(TronHDError): pass


def require_buffer(buf, size: int, name: str) -> bytearray:
    """Fixed-size mutable buffer check, run before any crypto touches it."""
    if not isinstance(buf, bytearray) or len(buf) != size:
        got = f"{len(buf)} bytes" if isinstance(buf, (bytes, bytearray, memoryview)) else type(buf).__name__
        raise InvalidBufferSizeError(f"{name} must be a {size}-byte bytearray, got {got}")
    return buf


# ========= Crypto =========
class Crypto:
    @staticmethod
    def hmac_sha512(key: BytesLike, data: BytesLike) -> bytes:
        return hmac.new(key, data, hashlib.sha512).digest()

    @staticmethod
    def ser32(i: int) -> bytes:
        return struct.pack(">L", i & 0xFFFFFFFF)

    @staticmethod
    def keccak256(b: BytesLike) -> bytes:
        k = keccak.new(digest_bits=256)
        k.update(bytes(b))
        return k.digest()

    # ---- secp256k1 (coincurve) ----
    @staticmethod
    def pubkey(sk: BytesLike, compressed: bool = True) -> bytes:
        """compressed=True -> 33B, False -> 65B (0x04 || X || Y)"""
        if len(sk) != KEY_SIZE:
            raise InvalidBufferSizeError("Private key must be 32 bytes")
        return CC_PrivateKey(bytes(sk)).public_key.format(compressed=compressed)

    @staticmethod
    def pubkey_uncompress(pubc: bytes) -> bytes:
        return CC_PublicKey(bytes(pubc)).format(compressed=False)

    @staticmethod
    def sign_recoverable(digest: BytesLike, sk: BytesLike) -> Tuple[bytes, bytes, int]:
        """RFC 6979 确定性签名 -> (r, s, recovery_id)"""
        sig = CC_PrivateKey(bytes(sk)).sign_recoverable(bytes(digest), hasher=None)
        return sig[:32], sig[32:64], sig[64]

    @staticmethod
    def recover_pubkey(digest: BytesLike, r: bytes, s: bytes, recovery_id: int, compressed: bool = False) -> bytes:
        sig = bytes(r) + bytes(s) + bytes([recovery_id])
        pub = CC_PublicKey.from_signature_and_message(sig, bytes(digest), hasher=None)
        return pub.format(compressed=compressed)


# ========= 256-bit kernel (big-endian, mod n) =========
def u256_compare(a: BytesLike, b: BytesLike = CURVE_ORDER) -> int:
    """Most-significant byte first; -1 / 0 / 1."""
    for x, y in zip(a[:32], b[:32]):
        if x > y:
            return 1
        if x < y:
            return -1
    return 0


def u256_add(target: bytearray, addend: BytesLike) -> bool:
    """target += addend in place; True if the carry left the top byte."""
    carry = 0
    for i in range(31, -1, -1):
        total = target[i] + addend[i] + carry
        target[i] = total & 0xFF
        carry = total >> 8
    return carry > 0


def u256_sub_order(target: bytearray) -> None:
    """target -= n in place (mod 2^256)."""
    borrow = 0
    for i in range(31, -1, -1):
        diff = target[i] - CURVE_ORDER[i] - borrow
        if diff < 0:
            target[i] = diff + 256
            borrow = 1
        else:
            target[i] = diff
            borrow = 0


def u256_is_zero(buf: BytesLike) -> bool:
    return not any(buf)


# ========= Derivation path =========
_PATH_RE = re.compile(r"[mM](/[0-9]+'?)+")


@dataclass(frozen=True)
class PathComponent:
    index: int
    hardened: bool = False

    @property
    def value(self) -> int:
        return self.index + (HARDENED if self.hardened else 0)

    def __str__(self) -> str:
        return f"{self.index}'" if self.hardened else str(self.index)


@dataclass(frozen=True)
class DerivationPath:
    components: Tuple[PathComponent, ...]

    @classmethod
    def parse(cls, path: str) -> "DerivationPath":
        """m/44'/195'/0'/0/0 -> DerivationPath；非法路径在任何派生之前拒绝"""
        if not isinstance(path, str) or not _PATH_RE.fullmatch(path):
            raise InvalidPathError(f"Invalid derivation path: {path!r}")
        comps = []
        for comp in path.split("/")[1:]:
            hard = comp.endswith("'")
            raw = int(comp[:-1] if hard else comp)
            if raw > MAX_INDEX:
                raise InvalidPathError(f"Child index out of range: {raw}")
            comps.append(PathComponent(raw, hard))
        return cls(tuple(comps))

    def __iter__(self):
        return iter(self.components)

    def __len__(self) -> int:
        return len(self.components)

    def __str__(self) -> str:
        return "/".join(["m"] + [str(c) for c in self.components])


# ========= Scratch buffers =========
class DerivationScratch:
    """
    One derivation call's working memory: HMAC output (64B), derivation input (37B),
    chain code (32B), parent-key backup (32B). Never share between concurrent derivations.
    """
    __slots__ = ("hmac_output", "derivation_data", "chain_code", "backup")

    def __init__(self, hmac_output: Optional[bytearray] = None, derivation_data: Optional[bytearray] = None,
                 chain_code: Optional[bytearray] = None, backup: Optional[bytearray] = None):
        self.hmac_output = require_buffer(
            bytearray(HMAC_OUTPUT_SIZE) if hmac_output is None else hmac_output, HMAC_OUTPUT_SIZE, "hmac_output")
        self.derivation_data = require_buffer(
            bytearray(DERIVATION_DATA_SIZE) if derivation_data is None else derivation_data,
            DERIVATION_DATA_SIZE, "derivation_data")
        self.chain_code = require_buffer(
            bytearray(CHAIN_CODE_SIZE) if chain_code is None else chain_code, CHAIN_CODE_SIZE, "chain_code")
        self.backup = require_buffer(bytearray(KEY_SIZE) if backup is None else backup, KEY_SIZE, "backup")

    def wipe(self) -> None:
        for buf in (self.hmac_output, self.derivation_data, self.chain_code, self.backup):
            buf[:] = bytes(len(buf))

    def __enter__(self) -> "DerivationScratch":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()


# ========= BIP-32 =========
class BIP32:
    @staticmethod
    def master_key(seed: BytesLike, private_key: bytearray, scratch: DerivationScratch) -> None:
        """I = HMAC-SHA512("Bitcoin seed", seed); IL -> key, IR -> chain code"""
        scratch.hmac_output[:] = Crypto.hmac_sha512(MASTER_SECRET, seed)
        out = memoryview(scratch.hmac_output)
        private_key[:] = out[:32]
        scratch.chain_code[:] = out[32:]

    @staticmethod
    def ckd_priv(private_key: bytearray, scratch: DerivationScratch, index: int) -> bool:
        """
        One child step, in place on private_key / scratch.chain_code.
        Returns False when the candidate is invalid (IL >= n or child == 0); key and chain code
        are then left exactly as they were and the caller moves on to the next component.
        """
        data = scratch.derivation_data
        if index >= HARDENED:
            data[0] = 0x00
            data[1:33] = private_key
        else:
            data[0:33] = Crypto.pubkey(private_key, compressed=True)
        struct.pack_into(">L", data, 33, index)

        scratch.hmac_output[:] = Crypto.hmac_sha512(scratch.chain_code, data)
        il = memoryview(scratch.hmac_output)[:32]

        if u256_compare(il) >= 0:
            logger.warning("Skipping child %d: IL >= curve order", index)
            return False

        scratch.backup[:] = private_key
        overflow = u256_add(private_key, il)
        if overflow or u256_compare(private_key) >= 0:
            u256_sub_order(private_key)

        if u256_is_zero(private_key):
            private_key[:] = scratch.backup
            logger.warning("Skipping child %d: derived zero key", index)
            return False

        scratch.chain_code[:] = memoryview(scratch.hmac_output)[32:]
        return True

    @staticmethod
    def ckd_pub(parent_pubc: bytes, parent_chain: bytes, index: int) -> Tuple[bytes, bytes]:
        """Public-only child derivation (non-hardened only) -> (child_pubc 33B, child_chain 32B)"""
        if index & HARDENED:
            raise InvalidChildError("Cannot do hardened derivation with CKDpub")
        if len(parent_pubc) != 33 or parent_pubc[0] not in (0x02, 0x03):
            raise ValueError("parent_pubc must be 33-byte compressed secp256k1 key")
        if len(parent_chain) != CHAIN_CODE_SIZE:
            raise InvalidBufferSizeError("parent_chain must be 32 bytes")

        I = Crypto.hmac_sha512(parent_chain, bytes(parent_pubc) + Crypto.ser32(index))
        Il, Ir = I[:32], I[32:]
        if u256_compare(Il) >= 0 or u256_is_zero(Il):
            raise InvalidChildError("Il out of range in CKDpub")
        child = CC_PublicKey.combine_keys([CC_PublicKey(bytes(parent_pubc)), CC_PrivateKey(Il).public_key])
        return child.format(compressed=True), Ir

    @staticmethod
    def derive(seed: BytesLike, path: Union[str, DerivationPath], private_key: bytearray,
               scratch: Optional[DerivationScratch] = None) -> None:
        """
        seed + path -> private_key (written in place).
        All inputs are validated before the first HMAC; a scratch created here is wiped on exit,
        a caller-supplied one is left to its owner (its chain_code holds the final chain code).
        """
        if not isinstance(seed, (bytes, bytearray, memoryview)):
            raise InvalidSeedError(f"seed must be bytes-like, got {type(seed).__name__}")
        if len(seed) == 0:
            raise InvalidSeedError("seed must not be empty")
        dpath = path if isinstance(path, DerivationPath) else DerivationPath.parse(path)
        require_buffer(private_key, KEY_SIZE, "private_key")

        if scratch is None:
            with DerivationScratch() as own:
                BIP32._run(seed, dpath, private_key, own)
        else:
            if not isinstance(scratch, DerivationScratch):
                raise TypeError("scratch must be a DerivationScratch")
            BIP32._run(seed, dpath, private_key, scratch)
        logger.debug("Derived key for %s", dpath)

    @staticmethod
    def _run(seed: BytesLike, path: DerivationPath, private_key: bytearray, scratch: DerivationScratch) -> None:
        BIP32.master_key(seed, private_key, scratch)
        for comp in path:
            BIP32.ckd_priv(private_key, scratch, comp.value)

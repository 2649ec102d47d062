#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
BIP39 → BIP32 → TRON 账户（m/44'/195'/...）
- WalletManagerTron : 持有 seed（close 时清零），按索引/路径生成账户
- WalletAccountTron : 单个账户；地址、消息签名/验证、交易 txID 签名
网络相关（余额、广播、手续费）由外部 ledger client 负责，这里只提供地址和签名。

配置（环境变量，可选）：
  - TRON_RPC_URL       : 交给 ledger client 的节点地址
  - TRON_PATH_PREFIX   : 默认 m/44'/195'
  - TRON_HD_LOG_LEVEL  : DEBUG/INFO/WARNING/...（TronWalletConfig.configure_logging() 在启动时调用一次）
"""

from __future__ import annotations
from typing import Dict, Any, Optional, List, Union
import os
from dataclasses import dataclass

from mnemonic import Mnemonic

from tronhd import DerivationPath, DerivationScratch, DisposedKeyError, InvalidSeedError, KEY_SIZE
from tronsigner import MessageLike, SecureBuffer, Signature, TronHDWallet
from tronlog import configure_logging, get_logger

logger = get_logger(__name__)

DEFAULT_RPC_URL = "https://api.trongrid.io"
BIP_44_TRON_DERIVATION_PATH_PREFIX = "m/44'/195'"

SeedLike = Union[str, bytes, bytearray]


# ------------------------------ Config ------------------------------
@dataclass(frozen=True)
class TronWalletConfig:
    rpc_url: str = DEFAULT_RPC_URL
    path_prefix: str = BIP_44_TRON_DERIVATION_PATH_PREFIX
    log_level: Optional[str] = None

    @classmethod
    def from_env(cls) -> "TronWalletConfig":
        return cls(
            rpc_url=os.getenv("TRON_RPC_URL", "") or DEFAULT_RPC_URL,
            path_prefix=os.getenv("TRON_PATH_PREFIX", "") or BIP_44_TRON_DERIVATION_PATH_PREFIX,
            log_level=os.getenv("TRON_HD_LOG_LEVEL", "") or None,
        )

    def configure_logging(self) -> None:
        """进程级别设置日志等级（账户 / manager 不会各自改动 logger）"""
        configure_logging(self.log_level)


# ------------------------------ Seed phrase ------------------------------
_MNEMO = Mnemonic("english")


def get_random_seed_phrase(strength: int = 128) -> str:
    if strength not in (128, 160, 192, 224, 256):
        raise ValueError("strength must be one of 128,160,192,224,256")
    return _MNEMO.generate(strength=strength)


def is_valid_seed_phrase(phrase: str) -> bool:
    if not isinstance(phrase, str) or not phrase.strip():
        return False
    try:
        return _MNEMO.check(" ".join(phrase.split()))
    except (ValueError, LookupError):
        return False


def mnemonic_to_seed(phrase: str, passphrase: str = "") -> bytes:
    if not is_valid_seed_phrase(phrase):
        raise InvalidSeedError("Invalid BIP-39 mnemonic (length/words/checksum).")
    return Mnemonic.to_seed(" ".join(phrase.split()), passphrase)


def _seed_buffer(seed: SeedLike) -> SecureBuffer:
    """str -> BIP-39 seed copy；bytearray 直接接管（close 时清零调用方的缓冲区）"""
    if isinstance(seed, str):
        return SecureBuffer.copy_of(mnemonic_to_seed(seed))
    if isinstance(seed, bytearray):
        if not seed:
            raise InvalidSeedError("seed must not be empty")
        return SecureBuffer(len(seed), seed)
    if isinstance(seed, (bytes, memoryview)):
        if not len(seed):
            raise InvalidSeedError("seed must not be empty")
        return SecureBuffer.copy_of(seed)
    raise InvalidSeedError(f"seed must be bytes-like or a seed phrase, got {type(seed).__name__}")


# ------------------------------ Account ------------------------------
class WalletAccountTron:
    def __init__(self, seed: SeedLike, path: str, config: Optional[TronWalletConfig] = None):
        self._config = config or TronWalletConfig()
        full_path = f"{self._config.path_prefix}/{path}"
        dpath = DerivationPath.parse(full_path)
        self._path = str(dpath)

        # 账户只拷贝 seed，调用方的缓冲区归 manager / 调用方自己清零
        if isinstance(seed, str):
            seed_buf = SecureBuffer.copy_of(mnemonic_to_seed(seed))
        elif isinstance(seed, (bytes, bytearray, memoryview)) and len(seed):
            seed_buf = SecureBuffer.copy_of(seed)
        else:
            raise InvalidSeedError("seed must be a non-empty bytes-like object or a seed phrase")

        # scratch 只在本次派生内存在，派生结束即清零
        with seed_buf, DerivationScratch() as scratch:
            self._wallet: Optional[TronHDWallet] = TronHDWallet.from_seed(
                seed_buf.data, dpath, bytearray(KEY_SIZE), scratch
            )
        logger.info("Account %s ready: %s", self._path, self._wallet.get_address())

    def __enter__(self) -> "WalletAccountTron":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _hd(self) -> TronHDWallet:
        if self._wallet is None:
            raise DisposedKeyError("Account has been closed")
        return self._wallet

    @property
    def path(self) -> str:
        return self._path

    @property
    def index(self) -> int:
        return int(self._path.split("/")[-1].rstrip("'"))

    @property
    def closed(self) -> bool:
        return self._wallet is None

    @property
    def config(self) -> TronWalletConfig:
        return self._config

    @property
    def rpc_url(self) -> str:
        """交给外部 ledger client 的节点地址"""
        return self._config.rpc_url

    @property
    def key_pair(self) -> Dict[str, Any]:
        wal = self._hd()
        return {
            "private_key": wal.signing_key.private_key_buffer,
            "public_key": wal.get_public_key(compressed=True),
        }

    def get_address(self) -> str:
        return self._hd().get_address()

    def sign(self, message: MessageLike) -> str:
        return self._hd().sign(message).hex()

    def verify(self, message: MessageLike, signature: Union[Signature, str, bytes]) -> bool:
        return self._hd().verify(message, signature)

    def sign_transaction(self, transaction: Dict[str, Any]) -> Dict[str, Any]:
        return self._hd().sign_transaction(transaction)

    def close(self) -> None:
        if self._wallet is not None:
            self._wallet.dispose()
            self._wallet = None
            logger.info("Account %s closed", self._path)


# ------------------------------ Manager ------------------------------
class WalletManagerTron:
    def __init__(self, seed: SeedLike, config: Optional[TronWalletConfig] = None):
        self._config = config or TronWalletConfig()
        self._seed = _seed_buffer(seed)
        self._accounts: List[WalletAccountTron] = []

    get_random_seed_phrase = staticmethod(get_random_seed_phrase)
    is_valid_seed_phrase = staticmethod(is_valid_seed_phrase)

    def __enter__(self) -> "WalletManagerTron":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def seed_buffer(self) -> bytearray:
        return self._seed.data

    @property
    def config(self) -> TronWalletConfig:
        return self._config

    @property
    def rpc_url(self) -> str:
        """交给外部 ledger client 的节点地址"""
        return self._config.rpc_url

    def get_account(self, index: int = 0) -> WalletAccountTron:
        return self.get_account_by_path(f"0'/0/{index}")

    def get_account_by_path(self, path: str) -> WalletAccountTron:
        account = WalletAccountTron(self._seed.data, path, self._config)
        self._accounts.append(account)
        return account

    def close(self) -> None:
        for account in self._accounts:
            account.close()
        self._accounts.clear()
        self._seed.wipe()

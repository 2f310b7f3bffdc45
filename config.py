# config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from eth_account import Account
from eth_account.signers.local import LocalAccount

from errors import SetupError

CACHE_PATH = ".cache"
DEFAULT_CACHE_NAME = "temp"

MAINNET_RPC_URL = "https://ethereum-rpc.publicnode.com"
TESTNET_RPC_URL = "https://ethereum-sepolia-rpc.publicnode.com"
DEVNET_RPC_URL = "http://127.0.0.1:8545"  # ローカル Hardhat
DEFAULT_RPC_URL = DEVNET_RPC_URL

_ENV_BY_URL = {
    MAINNET_RPC_URL: "mainnet",
    TESTNET_RPC_URL: "testnet",
    DEVNET_RPC_URL: "devnet",
}


def env_tag_for(rpc_url: str) -> str:
    return _ENV_BY_URL.get(rpc_url.rstrip("/"), "devnet")


@dataclass(frozen=True)
class AppConfig:
    """
    実行時設定。.env → 環境変数 → CLI引数 の順で上書きされる。

    主な環境変数:
      - ETH_RPC_URL
      - LEDGER_PROGRAM_ADDRESS
      - PAYMENT_WALLET
      - STORAGE_UPLOAD_URL
    """

    rpc_url: str = DEFAULT_RPC_URL
    program_address: str = ""
    payment_wallet: str = ""
    storage_upload_url: str = ""
    storage_gateway: str = "https://arweave.net"
    storage_fee_wei: int = 10
    cache_dir: str = CACHE_PATH
    cache_name: str = DEFAULT_CACHE_NAME
    env_tag: str = "devnet"
    gas_multiplier: float = 3.0
    gas_limit_min: int = 800000
    gas_buffer: int = 200000
    tx_max_attempts: int = 3
    tx_retry_delay: float = 0.5
    tx_receipt_timeout: float = 120.0
    storage_timeout: float = 120.0

    @property
    def cache_path(self) -> Path:
        return Path(self.cache_dir) / self.cache_name

    @classmethod
    def from_env(
        cls,
        rpc_url: Optional[str] = None,
        cache_name: Optional[str] = None,
        env_tag: Optional[str] = None,
    ) -> "AppConfig":
        load_dotenv()

        url = rpc_url or os.getenv("ETH_RPC_URL", "") or DEFAULT_RPC_URL
        return cls(
            rpc_url=url,
            program_address=os.getenv("LEDGER_PROGRAM_ADDRESS", "").strip(),
            payment_wallet=os.getenv("PAYMENT_WALLET", "").strip(),
            storage_upload_url=os.getenv("STORAGE_UPLOAD_URL", "").strip(),
            storage_gateway=os.getenv("STORAGE_GATEWAY", "https://arweave.net").rstrip("/"),
            storage_fee_wei=int(os.getenv("STORAGE_FEE_WEI", "10")),
            cache_dir=os.getenv("CACHE_DIR", CACHE_PATH),
            cache_name=cache_name or DEFAULT_CACHE_NAME,
            env_tag=env_tag or env_tag_for(url),
            gas_multiplier=float(os.getenv("ETH_GAS_MULTIPLIER", "3.0")),
            gas_limit_min=int(os.getenv("ETH_GAS_LIMIT_MIN", "800000")),
            gas_buffer=int(os.getenv("ETH_GAS_BUFFER", "200000")),
            tx_max_attempts=int(os.getenv("TX_MAX_ATTEMPTS", "3")),
            tx_retry_delay=float(os.getenv("TX_RETRY_DELAY", "0.5")),
            tx_receipt_timeout=float(os.getenv("TX_RECEIPT_TIMEOUT", "120")),
            storage_timeout=float(os.getenv("STORAGE_TIMEOUT", "120")),
        )

    def require(self, *names: str) -> None:
        """必須項目が空なら SetupError（環境変数名で報告する）。"""
        env_names = {
            "program_address": "LEDGER_PROGRAM_ADDRESS",
            "payment_wallet": "PAYMENT_WALLET",
            "storage_upload_url": "STORAGE_UPLOAD_URL",
        }
        missing = [env_names.get(n, n) for n in names if not getattr(self, n)]
        if missing:
            raise SetupError(f"Missing env vars: {', '.join(missing)}")


def load_keypair(path: Optional[str]) -> LocalAccount:
    """
    ウォレット鍵を読み込む。

    - path 指定あり: 16進の秘密鍵テキスト、またはバイト列のJSON配列（先頭32バイトを使う）
    - path なし: ETH_PRIVATE_KEY
    """
    if not path:
        load_dotenv()
        key = os.getenv("ETH_PRIVATE_KEY", "").strip()
        if not key:
            raise SetupError("ETH_PRIVATE_KEY is not set and no keypair file was given")
        return Account.from_key(key)

    key_path = Path(path)
    if not key_path.is_file():
        raise SetupError(f"Keypair file not found: {path}")

    text = key_path.read_text(encoding="utf-8").strip()
    try:
        if text.startswith("["):
            raw = bytes(json.loads(text))
            return Account.from_key(raw[:32])
        return Account.from_key(text)
    except Exception as ex:
        raise SetupError(f"Invalid keypair file {path}: {ex}") from ex

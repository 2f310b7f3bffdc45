# models.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional

_NUMERIC = re.compile(r"^\d+$")


def index_sort_key(index: str) -> tuple:
    """数値のステムは数値順、それ以外はその後ろに文字列順で並べる。"""
    if _NUMERIC.match(index):
        return (0, int(index), "")
    return (1, 0, index)


@dataclass
class CacheRecord:
    display_name: str = ""
    remote_address: Optional[str] = None
    registered_on_ledger: bool = False

    def mark_registered(self) -> None:
        if not self.remote_address:
            raise ValueError("cannot mark an item registered without a remote address")
        self.registered_on_ledger = True

    def to_dict(self) -> dict[str, Any]:
        # キャッシュファイル上のキー名は link / name / onChain
        out: dict[str, Any] = {"name": self.display_name, "onChain": self.registered_on_ledger}
        if self.remote_address:
            out["link"] = self.remote_address
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CacheRecord":
        link = raw.get("link") or None
        # アドレスの無い「登録済み」は信用しない
        on_chain = bool(raw.get("onChain")) and bool(link)
        return cls(
            display_name=str(raw.get("name") or ""),
            remote_address=link,
            registered_on_ledger=on_chain,
        )


@dataclass
class ProgramState:
    registration_id: Optional[str] = None
    ledger_account_address: Optional[str] = None

    @property
    def is_registered(self) -> bool:
        return bool(self.registration_id and self.ledger_account_address)

    def set_registration(self, registration_id: str, ledger_account_address: str) -> None:
        if self.is_registered:
            raise ValueError("program registration is already recorded")
        if not registration_id or not ledger_account_address:
            raise ValueError("registration id and account address must be set together")
        self.registration_id = registration_id
        self.ledger_account_address = ledger_account_address

    def to_dict(self) -> dict[str, Any]:
        if not self.is_registered:
            return {}
        return {"uuid": self.registration_id, "config": self.ledger_account_address}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ProgramState":
        uuid = raw.get("uuid") or None
        config = raw.get("config") or None
        if not (uuid and config):
            return cls()
        return cls(registration_id=uuid, ledger_account_address=config)


@dataclass
class CacheDocument:
    program: ProgramState = field(default_factory=ProgramState)
    items: dict[str, CacheRecord] = field(default_factory=dict)

    def ordered_indices(self) -> list[str]:
        """レジストリ上のスロット順（= Registrar / Verifier が共有する並び）。"""
        return sorted(self.items, key=index_sort_key)

    def to_dict(self) -> dict[str, Any]:
        return {
            "program": self.program.to_dict(),
            "items": {k: v.to_dict() for k, v in self.items.items()},
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CacheDocument":
        items = raw.get("items") or {}
        return cls(
            program=ProgramState.from_dict(raw.get("program") or {}),
            items={str(k): CacheRecord.from_dict(v or {}) for k, v in items.items()},
        )


@dataclass(frozen=True)
class ItemFile:
    index: str
    image_path: str


@dataclass(frozen=True)
class Creator:
    address: str
    share: int
    verified: bool = False


@dataclass(frozen=True)
class RegistrationConfig:
    symbol: str
    seller_fee_basis_points: int
    max_number_of_lines: int
    creators: tuple[Creator, ...] = ()
    is_mutable: bool = True
    max_supply: int = 0
    retain_authority: bool = True


@dataclass(frozen=True)
class Registration:
    registration_id: str
    account_address: str
    tx_hash: str


@dataclass(frozen=True)
class LedgerRecord:
    uri: str
    name: str

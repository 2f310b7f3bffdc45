# verifier.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

from cache_store import CacheStore
from errors import SetupError
from layout import decode_record, record_count
from models import CacheDocument, CacheRecord, LedgerRecord

logger = logging.getLogger(__name__)


class AccountReader(Protocol):
    async def fetch_account_data(self, account: str) -> bytes: ...


@dataclass(frozen=True)
class VerificationMismatch:
    index: str
    slot: int
    ledger_name: Optional[str]
    ledger_uri: Optional[str]
    cached_name: str
    cached_uri: Optional[str]


@dataclass
class VerifyReport:
    record_count: int = 0
    checked: int = 0
    mismatches: list[VerificationMismatch] = field(default_factory=list)


def record_matches(on_ledger: Optional[LedgerRecord], cached: CacheRecord) -> bool:
    # パディングを落とした上で完全一致（部分一致にはしない）
    if on_ledger is None or not cached.remote_address:
        return False
    return on_ledger.name == cached.display_name and on_ledger.uri == cached.remote_address


def reconcile(doc: CacheDocument, data: bytes) -> VerifyReport:
    """
    アカウントのバイト列とキャッシュを突き合わせ、一致しないアイテムの onChain を落とす。
    レジストリ側には何も書かない。
    """
    report = VerifyReport(record_count=record_count(data))
    for slot, index in enumerate(doc.ordered_indices()):
        cached = doc.items[index]
        on_ledger = decode_record(data, slot)
        report.checked += 1

        if record_matches(on_ledger, cached):
            logger.debug("Name %s with %s checked out", cached.display_name, cached.remote_address)
            continue

        logger.info(
            "Name %r or uri %r didn't match cache values of %r and %r; marking to rerun for %s",
            on_ledger.name if on_ledger else None,
            on_ledger.uri if on_ledger else None,
            cached.display_name,
            cached.remote_address,
            index,
        )
        cached.registered_on_ledger = False
        report.mismatches.append(
            VerificationMismatch(
                index=index,
                slot=slot,
                ledger_name=on_ledger.name if on_ledger else None,
                ledger_uri=on_ledger.uri if on_ledger else None,
                cached_name=cached.display_name,
                cached_uri=cached.remote_address,
            )
        )
    return report


async def verify(cache: CacheStore, reader: AccountReader) -> VerifyReport:
    doc = cache.document
    account = doc.program.ledger_account_address
    if not doc.program.is_registered or not account:
        raise SetupError("cache has no registered ledger account to verify against")

    data = await reader.fetch_account_data(account)
    async with cache.transaction() as locked:
        report = reconcile(locked, data)
    logger.info("Number of records on ledger: %d", report.record_count)
    return report

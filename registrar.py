# registrar.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol, Sequence

from cache_store import CacheStore
from errors import SubmissionError
from models import LedgerRecord

logger = logging.getLogger(__name__)

MACRO_GROUP_SIZE = 1000
MICRO_BATCH_SIZE = 10


class BatchLedger(Protocol):
    async def add_batch_records(
        self, account: str, start_index: int, records: Sequence[LedgerRecord]
    ) -> str: ...


def chunks(items: Sequence, size: int) -> list[list]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def plan_batches(
    positions: Sequence[int],
    macro_size: int = MACRO_GROUP_SIZE,
    micro_size: int = MICRO_BATCH_SIZE,
) -> list[list[list[int]]]:
    """スロット番号を macro グループ（並行）→ micro バッチ（1トランザクション）に分ける。"""
    return [chunks(group, micro_size) for group in chunks(sorted(positions), macro_size)]


@dataclass
class BatchReport:
    written: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    incomplete: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)


class BatchRegistrar:
    """
    キャッシュ上のアップロード済みアイテムを10件ずつレジストリに書き込む。

    macro グループ同士は並行、グループ内の micro バッチは順番に送る。
    キャッシュの更新は CacheStore.transaction() で直列化する。
    """

    def __init__(
        self,
        cache: CacheStore,
        ledger: BatchLedger,
        macro_size: int = MACRO_GROUP_SIZE,
        micro_size: int = MICRO_BATCH_SIZE,
    ):
        self._cache = cache
        self._ledger = ledger
        self._macro_size = macro_size
        self._micro_size = micro_size

    async def run(self) -> BatchReport:
        report = BatchReport()
        doc = self._cache.document

        if not doc.program.is_registered:
            logger.error("No registration in cache; run upload again to register before writing records")
            return report

        account = doc.program.ledger_account_address
        keys = doc.ordered_indices()
        plan = plan_batches(range(len(keys)), self._macro_size, self._micro_size)

        try:
            await asyncio.gather(
                *(self._write_group(account, keys, group, report) for group in plan)
            )
        finally:
            self._cache.save()
        return report

    async def _write_group(
        self, account: str, keys: list[str], group: list[list[int]], report: BatchReport
    ) -> None:
        for batch in group:
            await self._write_batch(account, keys, batch, report)

    async def _write_batch(
        self, account: str, keys: list[str], batch: list[int], report: BatchReport
    ) -> None:
        doc = self._cache.document
        start = batch[0]
        records = [doc.items[keys[i]] for i in batch]

        if all(r.registered_on_ledger for r in records):
            report.skipped.append(start)
            return

        missing = [keys[i] for i, r in zip(batch, records) if not r.remote_address]
        if missing:
            logger.warning(
                "Skipping indices %s-%s: not uploaded yet (%s)",
                keys[start], keys[batch[-1]], ", ".join(missing),
            )
            report.incomplete.append(start)
            return

        logger.info("Writing indices %s-%s", keys[start], keys[batch[-1]])
        lines = [LedgerRecord(uri=r.remote_address or "", name=r.display_name) for r in records]
        try:
            tx_hash = await self._ledger.add_batch_records(account, start, lines)
        except SubmissionError as ex:
            logger.error("Error writing indices %s-%s: %s", keys[start], keys[batch[-1]], ex)
            report.failed[start] = str(ex)
            return

        async with self._cache.transaction() as locked:
            for i in batch:
                locked.items[keys[i]].mark_registered()
        logger.debug("indices %s-%s confirmed in %s", keys[start], keys[batch[-1]], tx_hash)
        report.written.append(start)

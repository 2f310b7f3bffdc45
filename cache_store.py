# cache_store.py
from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import AsyncIterator, Optional

from errors import CacheError
from models import CacheDocument

logger = logging.getLogger(__name__)


class CacheStore:
    """
    アップロード状況・登録状況を1つのJSONファイルに保存するキャッシュ。

    - load(): ファイルが無ければ空ドキュメント
    - save(): 毎回ファイル全体を書き直す（一時ファイル + os.replace）
    - transaction(): 並行タスクからの更新を直列化し、抜けるときに必ず保存する
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._doc: Optional[CacheDocument] = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def document(self) -> CacheDocument:
        if self._doc is None:
            self._doc = self.load()
        return self._doc

    def load(self) -> CacheDocument:
        if not self._path.exists():
            logger.debug("cache %s not found, starting empty", self._path)
            self._doc = CacheDocument()
            return self._doc

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError as ex:
            raise CacheError(f"cache file {self._path} is not valid JSON: {ex}") from ex
        if not isinstance(raw, dict):
            raise CacheError(f"cache file {self._path} must contain a JSON object")

        self._doc = CacheDocument.from_dict(raw)
        return self._doc

    def save(self, doc: Optional[CacheDocument] = None) -> None:
        doc = doc if doc is not None else self.document
        self._doc = doc
        self._path.parent.mkdir(parents=True, exist_ok=True)

        # 書き込み途中で落ちても壊れたファイルを残さない
        with NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self._path.parent,
            prefix=f".{self._path.name}.",
            suffix=".tmp",
            delete=False,
        ) as f:
            json.dump(doc.to_dict(), f, ensure_ascii=False, indent=2)
            tmp_name = f.name
        os.replace(tmp_name, self._path)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[CacheDocument]:
        async with self._lock:
            try:
                yield self.document
            finally:
                self.save()

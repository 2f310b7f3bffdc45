# orchestrator.py
from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol, Sequence

from cache_store import CacheStore
from errors import ItemUploadError, RegistrationError, StorageUploadError, SubmissionError
from models import CacheRecord, Creator, ItemFile, Registration, RegistrationConfig
from storage_client import IMAGE_FILENAME

logger = logging.getLogger(__name__)

IMAGE_EXTENSION = ".png"


class RegistrationLedger(Protocol):
    async def create_registration(self, data: RegistrationConfig) -> Registration: ...

    async def pay_storage_fee(self, amount_wei: int) -> str: ...


class ContentStorage(Protocol):
    async def upload(self, image: bytes, metadata: bytes, receipt_id: str, env_tag: str) -> str: ...


def build_item_set(
    files: Iterable[str],
    cached_indices: Iterable[str],
    directory: str,
    extension: str = IMAGE_EXTENSION,
) -> list[ItemFile]:
    """
    ファイル一覧 + キャッシュにだけあるインデックスから、処理するアイテムの並びを作る。

    - 同じステム（拡張子を除いたファイル名）は最初の1つだけ
    - キャッシュにあって一覧に無いものは <directory>/<index><extension> として後ろに足す
    """
    seen: set[str] = set()
    ordered: list[str] = []

    for f in files:
        name = os.path.basename(f)
        key = name[: -len(extension)] if name.endswith(extension) else name
        if key in seen:
            continue
        seen.add(key)
        ordered.append(f)

    for index in cached_indices:
        if index in seen:
            continue
        seen.add(index)
        ordered.append(os.path.join(directory, index + extension))

    return [
        ItemFile(index=os.path.basename(p)[: -len(extension)], image_path=p)
        for p in ordered
        if p.endswith(extension)
    ]


def _is_local_name(value: Any) -> bool:
    return isinstance(value, str) and bool(value) and "://" not in value


def rewrite_manifest(manifest: dict, image_name: str) -> dict:
    """メタデータ内の画像ファイル名をアップロード時の固定名に書き換える。"""
    out = copy.deepcopy(manifest)
    old_names = {image_name}

    image = out.get("image")
    if _is_local_name(image) and image != IMAGE_FILENAME:
        old_names.add(image)
        out["image"] = IMAGE_FILENAME

    props = out.get("properties")
    files = props.get("files") if isinstance(props, dict) else None
    if isinstance(files, list):
        for f in files:
            if isinstance(f, dict) and f.get("uri") in old_names:
                f["uri"] = IMAGE_FILENAME
    return out


def registration_config_from(manifest: dict, max_number_of_lines: int) -> RegistrationConfig:
    creators = manifest["properties"]["creators"]
    return RegistrationConfig(
        symbol=str(manifest["symbol"]),
        seller_fee_basis_points=int(manifest["seller_fee_basis_points"]),
        max_number_of_lines=max_number_of_lines,
        creators=tuple(Creator(address=c["address"], share=int(c["share"])) for c in creators),
    )


def _manifest_path(image_path: str) -> Path:
    return Path(image_path).with_suffix(".json")


@dataclass
class UploadReport:
    uploaded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    registered: bool = False
    registration_error: Optional[str] = None


class UploadOrchestrator:
    """
    1. 最初のアイテムでレジストリアカウントを登録（まだなら）
    2. 手数料を支払う
    3. 画像 + メタデータをストレージにアップロードしてキャッシュに記録

    を全アイテムに対して順番に行う。1アイテムの失敗で全体は止めない。
    """

    def __init__(
        self,
        cache: CacheStore,
        ledger: RegistrationLedger,
        storage: ContentStorage,
        env_tag: str,
        storage_fee_wei: int = 10,
    ):
        self._cache = cache
        self._ledger = ledger
        self._storage = storage
        self._env_tag = env_tag
        self._storage_fee_wei = storage_fee_wei

    async def run(self, items: Sequence[ItemFile]) -> UploadReport:
        report = UploadReport()
        doc = self._cache.document

        for i, item in enumerate(items):
            logger.info("Processing file: %s", item.index)

            if i == 0 and not doc.program.is_registered:
                await self._register(item, len(items), report)

            record = doc.items.get(item.index)
            if record is not None and record.remote_address:
                report.skipped.append(item.index)
                continue

            try:
                link = await self._upload_one(item)
            except ItemUploadError as ex:
                logger.error("Error uploading file %s: %s", item.index, ex)
                report.failed[item.index] = str(ex)
                continue
            except Exception as ex:
                logger.exception("Unexpected error uploading file %s", item.index)
                report.failed[item.index] = f"{type(ex).__name__}: {ex}"
                continue

            logger.info("File uploaded: %s", link)
            report.uploaded.append(item.index)

        return report

    async def _register(self, item: ItemFile, max_number_of_lines: int, report: UploadReport) -> None:
        try:
            manifest = json.loads(_manifest_path(item.image_path).read_text(encoding="utf-8"))
            data = registration_config_from(manifest, max_number_of_lines)
            reg = await self._ledger.create_registration(data)
        except Exception as ex:
            # 登録の失敗でアップロード全体は止めない（次回の実行で再試行）
            err = RegistrationError(f"Error deploying registration to the ledger: {ex}")
            logger.error("%s", err)
            report.registration_error = str(err)
            return

        async with self._cache.transaction() as doc:
            doc.program.set_registration(reg.registration_id, reg.account_address)
        report.registered = True

    def _read_item(self, item: ItemFile) -> tuple[bytes, bytes, str]:
        image_path = Path(item.image_path)
        image = image_path.read_bytes()
        manifest = json.loads(_manifest_path(item.image_path).read_text(encoding="utf-8"))
        if not isinstance(manifest, dict):
            raise ValueError("metadata must be a JSON object")

        rewritten = rewrite_manifest(manifest, image_path.name)
        body = json.dumps(rewritten, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        return image, body, str(manifest.get("name") or "")

    async def _upload_one(self, item: ItemFile) -> str:
        try:
            image, metadata, name = self._read_item(item)
        except (OSError, ValueError) as ex:
            raise ItemUploadError(item.index, f"cannot read item files: {ex}") from ex

        try:
            receipt = await self._ledger.pay_storage_fee(self._storage_fee_wei)
        except SubmissionError as ex:
            raise ItemUploadError(item.index, f"storage fee payment failed: {ex}") from ex
        logger.info("transaction for storage payment: %s", receipt)

        try:
            link = await self._storage.upload(image, metadata, receipt, self._env_tag)
        except StorageUploadError as ex:
            raise ItemUploadError(item.index, str(ex)) from ex

        async with self._cache.transaction() as doc:
            doc.items[item.index] = CacheRecord(display_name=name, remote_address=link)
        return link

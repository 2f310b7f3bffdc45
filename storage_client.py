# storage_client.py
from __future__ import annotations

import logging
from typing import Optional

import httpx

from errors import StorageUploadError

logger = logging.getLogger(__name__)

IMAGE_FILENAME = "image.png"
METADATA_FILENAME = "metadata.json"


class StorageUploader:
    def __init__(
        self,
        upload_url: str,
        gateway: str = "https://arweave.net",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
    ):
        """
        :param upload_url: ストレージのアップロードAPI（multipart POST）
        :param gateway: コンテンツアドレスのホスト（https://<host>/<transactionId>）
        :param client: テスト用に差し替え可能な httpx.AsyncClient
        """
        self._upload_url = upload_url
        self._gateway = gateway.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def __aenter__(self) -> "StorageUploader":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def upload(
        self,
        image: bytes,
        metadata: bytes,
        receipt_id: str,
        env_tag: str,
    ) -> str:
        """
        画像とメタデータを1リクエストでアップロードし、メタデータ側のコンテンツアドレスを返す。
        """
        data = {"transactionReceiptId": receipt_id, "environmentTag": env_tag}
        files = [
            ("file[]", (IMAGE_FILENAME, image, "image/png")),
            ("file[]", (METADATA_FILENAME, metadata, "application/json")),
        ]

        try:
            resp = await self._client.post(self._upload_url, data=data, files=files)
        except httpx.HTTPError as ex:
            raise StorageUploadError(f"upload request failed: {ex}") from ex

        if resp.status_code >= 400:
            raise StorageUploadError(f"upload rejected: HTTP {resp.status_code} {resp.text[:200]}")

        try:
            body = resp.json()
        except ValueError as ex:
            raise StorageUploadError(f"upload response is not JSON: {ex}") from ex

        return self.content_address(body)

    def content_address(self, body: dict) -> str:
        messages = body.get("messages") if isinstance(body, dict) else None
        if not isinstance(messages, list):
            raise StorageUploadError("upload response has no messages")

        # 画像ではなくメタデータの方のIDを使う
        for m in messages:
            if isinstance(m, dict) and m.get("filename") == METADATA_FILENAME and m.get("transactionId"):
                link = f"{self._gateway}/{m['transactionId']}"
                logger.debug("metadata stored at %s", link)
                return link

        raise StorageUploadError(f"upload response has no transactionId for {METADATA_FILENAME}")

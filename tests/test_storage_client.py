import httpx
import pytest

from errors import StorageUploadError
from storage_client import StorageUploader

UPLOAD_URL = "https://storage.test/upload"


def _uploader(handler) -> StorageUploader:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return StorageUploader(UPLOAD_URL, gateway="https://arweave.net/", client=client)


@pytest.mark.anyio
async def test_upload_returns_metadata_address_and_sends_multipart_form():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["content_type"] = request.headers["content-type"]
        seen["body"] = request.read()
        return httpx.Response(
            200,
            json={
                "messages": [
                    {"filename": "image.png", "transactionId": "img-tx"},
                    {"filename": "metadata.json", "transactionId": "meta-tx"},
                ]
            },
        )

    async with _uploader(handler) as uploader:
        link = await uploader.upload(b"\x89PNG", b'{"name": "Item #0"}', "0xfee1", "devnet")

    assert link == "https://arweave.net/meta-tx"
    assert seen["url"] == UPLOAD_URL
    assert seen["content_type"].startswith("multipart/form-data")
    body = seen["body"]
    assert b'name="transactionReceiptId"' in body
    assert b"0xfee1" in body
    assert b'name="environmentTag"' in body
    assert b"devnet" in body
    assert body.count(b'name="file[]"') == 2
    assert b'filename="image.png"' in body
    assert b'filename="metadata.json"' in body


@pytest.mark.anyio
async def test_http_error_status_raises():
    def handler(request):
        return httpx.Response(500, text="boom")

    uploader = _uploader(handler)
    with pytest.raises(StorageUploadError, match="HTTP 500"):
        await uploader.upload(b"i", b"{}", "0xfee1", "devnet")


@pytest.mark.anyio
async def test_response_without_metadata_entry_raises():
    def handler(request):
        return httpx.Response(200, json={"messages": [{"filename": "image.png", "transactionId": "img-tx"}]})

    uploader = _uploader(handler)
    with pytest.raises(StorageUploadError, match="metadata.json"):
        await uploader.upload(b"i", b"{}", "0xfee1", "devnet")


@pytest.mark.anyio
async def test_non_json_response_raises():
    def handler(request):
        return httpx.Response(200, text="<html>")

    uploader = _uploader(handler)
    with pytest.raises(StorageUploadError, match="not JSON"):
        await uploader.upload(b"i", b"{}", "0xfee1", "devnet")


@pytest.mark.anyio
async def test_transport_error_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    uploader = _uploader(handler)
    with pytest.raises(StorageUploadError, match="request failed"):
        await uploader.upload(b"i", b"{}", "0xfee1", "devnet")

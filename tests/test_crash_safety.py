import json
import os

import pytest

from cache_store import CacheStore
from conftest import FakeLedger, FakeStorage, write_items
from main import list_directory
from orchestrator import UploadOrchestrator, build_item_set
from registrar import BatchRegistrar

ITEM_COUNT = 12


class Crash(BaseException):
    """プロセスが落ちたことの代わり。except Exception では捕まらない。"""


class CrashingStore(CacheStore):
    """crash_at 回目以降の save() でファイルに書かずに落ちる。"""

    def __init__(self, path, crash_at: int):
        super().__init__(path)
        self.crash_at = crash_at
        self.saves = 0

    def save(self, doc=None):
        self.saves += 1
        if self.saves >= self.crash_at:
            raise Crash(f"crash on save #{self.saves}")
        super().save(doc)


class CountingStore(CacheStore):
    def __init__(self, path):
        super().__init__(path)
        self.saves = 0

    def save(self, doc=None):
        self.saves += 1
        super().save(doc)


async def _pipeline(store, ledger, storage, directory):
    doc = store.load()
    items = build_item_set(list_directory(str(directory)), doc.items.keys(), str(directory))
    await UploadOrchestrator(store, ledger, storage, "devnet").run(items)
    await BatchRegistrar(store, ledger).run()


async def _reference(tmp_path):
    assets = tmp_path / "reference-assets"
    write_items(assets, ITEM_COUNT)
    store = CountingStore(tmp_path / "reference" / "temp")
    await _pipeline(store, FakeLedger(), FakeStorage(), assets)
    return json.loads(store.path.read_text(encoding="utf-8")), store.saves


@pytest.mark.anyio
async def test_restart_after_crash_at_any_save_reaches_same_cache(tmp_path):
    expected, total_saves = await _reference(tmp_path)
    assert all(item["onChain"] for item in expected["items"].values())
    assert len(expected["items"]) == ITEM_COUNT

    for k in range(1, total_saves + 1):
        run_dir = tmp_path / f"crash-{k}"
        assets = run_dir / "assets"
        write_items(assets, ITEM_COUNT)
        path = run_dir / ".cache" / "temp"
        ledger, storage = FakeLedger(), FakeStorage()

        with pytest.raises(Crash):
            await _pipeline(CrashingStore(path, crash_at=k), ledger, storage, assets)

        # 落ちた時点のファイルも読めて、onChain はリンクがあるものだけ
        partial = CacheStore(path).load()
        for record in partial.items.values():
            assert not record.registered_on_ledger or record.remote_address

        await _pipeline(CacheStore(path), ledger, storage, assets)

        assert json.loads(path.read_text(encoding="utf-8")) == expected, f"crash at save #{k}"


def test_interrupted_write_leaves_previous_file(tmp_path, monkeypatch):
    store = CacheStore(tmp_path / "temp")
    doc = store.load()
    doc.program.set_registration("abab12", "0x" + "ab" * 20)
    store.save()
    before = store.path.read_text(encoding="utf-8")

    def crash(src, dst):
        raise Crash("killed before rename")

    monkeypatch.setattr(os, "replace", crash)
    doc.program.registration_id = "zzzzzz"
    with pytest.raises(Crash):
        store.save()

    assert store.path.read_text(encoding="utf-8") == before

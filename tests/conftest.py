import asyncio
import json
from pathlib import Path
from typing import Sequence

import pytest
from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound

from errors import StorageUploadError, SubmissionError
from layout import build_account_data
from models import LedgerRecord, Registration, RegistrationConfig

REGISTRY_ACCOUNT = "0x" + "ab" * 20
CREATOR = "0x" + "11" * 20


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeLedger:
    """レジストリプログラムの代わり。呼び出しを記録し、指定されたものだけ失敗させる。"""

    def __init__(self, registration_failures: int = 0):
        self.registration_failures = registration_failures
        self.registrations: list[RegistrationConfig] = []
        self.payments: list[int] = []
        self.failing_payments: set[int] = set()
        self.batches: list[tuple[str, int, list[LedgerRecord]]] = []
        self.failing_batch_starts: set[int] = set()
        self.records: dict[int, LedgerRecord] = {}
        self.max_lines = 0

    async def create_registration(self, data: RegistrationConfig) -> Registration:
        self.registrations.append(data)
        if self.registration_failures > 0:
            self.registration_failures -= 1
            raise SubmissionError("transaction failed after 1 attempt(s): insufficient funds")
        self.max_lines = data.max_number_of_lines
        return Registration(registration_id="abab12", account_address=REGISTRY_ACCOUNT, tx_hash="0x01")

    async def pay_storage_fee(self, amount_wei: int) -> str:
        self.payments.append(amount_wei)
        n = len(self.payments)
        if n in self.failing_payments:
            raise SubmissionError("transaction failed after 1 attempt(s): insufficient funds")
        return f"0xfee{n}"

    async def add_batch_records(self, account: str, start_index: int, records: Sequence[LedgerRecord]) -> str:
        if start_index in self.failing_batch_starts:
            raise SubmissionError("transaction failed after 3 attempt(s): nonce too low")
        self.batches.append((account, start_index, list(records)))
        for offset, record in enumerate(records):
            self.records[start_index + offset] = record
        return f"0xbatch{start_index}"

    async def fetch_account_data(self, account: str) -> bytes:
        lines = max([self.max_lines, *(slot + 1 for slot in self.records)])
        return build_account_data(lines, self.records)


def link_for(name: str) -> str:
    return "https://arweave.net/" + name.replace(" ", "").replace("#", "")


class FakeStorage:
    def __init__(self):
        self.uploads: list[tuple[bytes, dict, str, str]] = []
        self.failing_names: set[str] = set()

    async def upload(self, image: bytes, metadata: bytes, receipt_id: str, env_tag: str) -> str:
        manifest = json.loads(metadata)
        self.uploads.append((image, manifest, receipt_id, env_tag))
        if manifest["name"] in self.failing_names:
            raise StorageUploadError("upload rejected: HTTP 500 boom")
        return link_for(manifest["name"])


def manifest_for(i: int) -> dict:
    return {
        "name": f"Item #{i}",
        "symbol": "ITEM",
        "seller_fee_basis_points": 500,
        "image": f"{i}.png",
        "properties": {
            "files": [{"uri": f"{i}.png", "type": "image/png"}],
            "creators": [{"address": CREATOR, "share": 100}],
        },
    }


def write_items(directory: Path, count: int) -> list[str]:
    directory.mkdir(parents=True, exist_ok=True)
    files = []
    for i in range(count):
        image = directory / f"{i}.png"
        image.write_bytes(b"\x89PNG" + bytes([i % 256]))
        (directory / f"{i}.json").write_text(json.dumps(manifest_for(i)), encoding="utf-8")
        files.append(str(image))
    return files


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def storage():
    return FakeStorage()


class FakeContract:
    """エンコードは本物のコントラクトオブジェクト、読み取り（.call()）は reads の値を返す。"""

    def __init__(self, address, abi, reads):
        self._real = Web3().eth.contract(address=address, abi=abi)
        self._reads = reads
        self.read_calls: list[tuple[str, tuple]] = []
        self.functions = self

    def encode_abi(self, *args, **kwargs):
        return self._real.encode_abi(*args, **kwargs)

    def __getattr__(self, name):
        if name not in self._reads:
            raise AttributeError(name)

        def bind(*args):
            contract = self

            class _Call:
                async def call(self):
                    contract.read_calls.append((name, args))
                    return contract._reads[name]

            return _Call()

        return bind


class FakeEth:
    """AsyncWeb3().eth の代わり。send_raw_transaction の結果を順番に差し替えられる。"""

    def __init__(
        self,
        send_errors=(),
        receipt_status=1,
        receipt_timeouts=0,
        finalized_heights=(100,),
        reads=None,
    ):
        self.send_errors = list(send_errors)
        self.receipt_status = receipt_status
        self.receipt_timeouts = receipt_timeouts
        self.finalized_heights = list(finalized_heights)
        self.finalized_polls = 0
        self.reads = reads or {}
        self.sent: list[bytes] = []
        self.landed: dict[str, dict] = {}
        self.nonce_lookups = 0

    def contract(self, address, abi):
        return FakeContract(address, abi, self.reads)

    @property
    def chain_id(self):
        async def _chain_id():
            return 31337

        return _chain_id()

    async def get_transaction_count(self, address, block_identifier="latest"):
        self.nonce_lookups += 1
        return 7

    async def get_block(self, block_identifier):
        if block_identifier == "finalized":
            self.finalized_polls += 1
            # 最後の値に達したらそのまま
            if len(self.finalized_heights) > 1:
                return {"number": self.finalized_heights.pop(0)}
            return {"number": self.finalized_heights[0]}
        return {"baseFeePerGas": 10**9, "number": 100}

    async def estimate_gas(self, tx):
        return 21000

    async def send_raw_transaction(self, raw):
        self.sent.append(bytes(raw))
        if self.send_errors:
            err = self.send_errors.pop(0)
            if err is not None:
                raise err
        return Web3.keccak(bytes(raw))

    async def wait_for_transaction_receipt(self, tx_hash, timeout=120, poll_latency=0.1):
        txh = Web3.to_hex(tx_hash)
        receipt = {"status": self.receipt_status, "blockNumber": 99, "transactionHash": tx_hash}
        if self.receipt_timeouts > 0:
            self.receipt_timeouts -= 1
            # タイムアウトしたが、実際には後から取り込まれる
            self.landed[txh] = receipt
            raise TimeExhausted(f"{txh} not in chain after {timeout}s")
        return receipt

    async def get_transaction_receipt(self, tx_hash):
        if tx_hash in self.landed:
            return self.landed[tx_hash]
        raise TransactionNotFound(f"{tx_hash} not found")


class NonceTrackingSigner:
    """本物の鍵で署名し、生トランザクションごとの nonce と tx を覚えておく。"""

    def __init__(self):
        self._account = Account.create()
        self.address = self._account.address
        self.signed: dict[bytes, dict] = {}

    def sign_transaction(self, tx):
        recorded = dict(tx)
        signed = self._account.sign_transaction(tx)
        self.signed[bytes(signed.raw_transaction)] = recorded
        return signed


class PendingPoolEth(FakeEth):
    """
    ノードの pending プールの代わり。pending nonce = 受け付けた件数で、
    同じ nonce の2件目は "already known" で弾く。各呼び出しで他のタスクに譲る。
    """

    def __init__(self, signer: NonceTrackingSigner, **kwargs):
        super().__init__(**kwargs)
        self.signer = signer
        self.accepted: list[int] = []

    async def get_transaction_count(self, address, block_identifier="latest"):
        await asyncio.sleep(0)
        self.nonce_lookups += 1
        return len(self.accepted)

    async def send_raw_transaction(self, raw):
        await asyncio.sleep(0)
        self.sent.append(bytes(raw))
        nonce = self.signer.signed[bytes(raw)]["nonce"]
        if nonce in self.accepted:
            raise ValueError({"code": -32000, "message": "already known"})
        self.accepted.append(nonce)
        return Web3.keccak(bytes(raw))

    async def wait_for_transaction_receipt(self, tx_hash, timeout=120, poll_latency=0.1):
        await asyncio.sleep(0)
        return await super().wait_for_transaction_receipt(tx_hash, timeout, poll_latency)


class FakeWeb3:
    def __init__(self, eth):
        self.eth = eth

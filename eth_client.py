# eth_client.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, Web3

from config import AppConfig
from errors import SetupError
from layout import account_size
from models import LedgerRecord, Registration, RegistrationConfig
from tx_submitter import Confirmation, GasPolicy, TxInstruction, submit_transaction

logger = logging.getLogger(__name__)

_CREATOR_COMPONENTS = [
    {"internalType": "address", "name": "address", "type": "address"},
    {"internalType": "bool", "name": "verified", "type": "bool"},
    {"internalType": "uint8", "name": "share", "type": "uint8"},
]

_PROGRAM_ABI = [
    {
        "inputs": [{"internalType": "uint256", "name": "space", "type": "uint256"}],
        "name": "minimumBalance",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "address", "name": "account", "type": "address"},
            {"internalType": "uint256", "name": "space", "type": "uint256"},
        ],
        "name": "createAccount",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "address", "name": "account", "type": "address"},
            {
                "components": [
                    {"internalType": "string", "name": "uuid", "type": "string"},
                    {"internalType": "string", "name": "symbol", "type": "string"},
                    {"internalType": "uint16", "name": "sellerFeeBasisPoints", "type": "uint16"},
                    {"internalType": "bool", "name": "isMutable", "type": "bool"},
                    {"internalType": "uint64", "name": "maxSupply", "type": "uint64"},
                    {"internalType": "bool", "name": "retainAuthority", "type": "bool"},
                    {
                        "components": _CREATOR_COMPONENTS,
                        "internalType": "struct Creator[]",
                        "name": "creators",
                        "type": "tuple[]",
                    },
                    {"internalType": "uint32", "name": "maxNumberOfLines", "type": "uint32"},
                ],
                "internalType": "struct ConfigData",
                "name": "data",
                "type": "tuple",
            },
        ],
        "name": "initializeRegistration",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "address", "name": "account", "type": "address"},
            {"internalType": "uint32", "name": "index", "type": "uint32"},
            {
                "components": [
                    {"internalType": "string", "name": "uri", "type": "string"},
                    {"internalType": "string", "name": "name", "type": "string"},
                ],
                "internalType": "struct ConfigLine[]",
                "name": "records",
                "type": "tuple[]",
            },
        ],
        "name": "addBatchRecords",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "account", "type": "address"}],
        "name": "accountData",
        "outputs": [{"internalType": "bytes", "name": "", "type": "bytes"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "bytes32", "name": "id", "type": "bytes32"},
            {"internalType": "address", "name": "config", "type": "address"},
            {"internalType": "string", "name": "uuid", "type": "string"},
            {"internalType": "uint256", "name": "price", "type": "uint256"},
            {"internalType": "uint64", "name": "itemsAvailable", "type": "uint64"},
            {"internalType": "int64", "name": "goLiveDate", "type": "int64"},
        ],
        "name": "initializeDistributor",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "bytes32", "name": "id", "type": "bytes32"},
            {"internalType": "uint256", "name": "price", "type": "uint256"},
            {"internalType": "int64", "name": "goLiveDate", "type": "int64"},
        ],
        "name": "updateDistributor",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "bytes32", "name": "id", "type": "bytes32"}],
        "name": "getDistributor",
        "outputs": [
            {"internalType": "address", "name": "wallet", "type": "address"},
            {"internalType": "uint256", "name": "price", "type": "uint256"},
            {"internalType": "uint64", "name": "itemsAvailable", "type": "uint64"},
            {"internalType": "uint64", "name": "itemsRedeemed", "type": "uint64"},
            {"internalType": "int64", "name": "goLiveDate", "type": "int64"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "bytes32", "name": "id", "type": "bytes32"}],
        "name": "mintOne",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function",
    },
]


def distributor_id(config_address: str, registration_id: str) -> bytes:
    """レジストリアカウントと uuid から配布コントラクト上の ID を決める（純粋関数）。"""
    return Web3.solidity_keccak(
        ["string", "address", "string"],
        ["distributor", Web3.to_checksum_address(config_address), registration_id],
    )


@dataclass(frozen=True)
class DistributorState:
    wallet: str
    price: int
    items_available: int
    items_redeemed: int
    go_live_date: int


class LedgerClient:
    """
    レジストリプログラム（コントラクト）への型付きの呼び出し。

    書き込み系はすべて submit_transaction（リトライ付き）経由で送る。
    """

    def __init__(self, w3: AsyncWeb3, signer: Optional[LocalAccount], config: AppConfig):
        if not config.program_address:
            raise SetupError("LEDGER_PROGRAM_ADDRESS is not set")
        self._w3 = w3
        self._signer = signer
        self._config = config
        self._program_address = Web3.to_checksum_address(config.program_address)
        self._contract = w3.eth.contract(address=self._program_address, abi=_PROGRAM_ABI)
        # 同じ署名者の送信（並行する macro グループを含む）で nonce を取り合わない
        self._send_lock = asyncio.Lock()

    @classmethod
    async def connect(cls, config: AppConfig, signer: Optional[LocalAccount]) -> "LedgerClient":
        w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(config.rpc_url))
        if not await w3.is_connected():
            raise SetupError(f"Failed to connect RPC: {config.rpc_url}")
        return cls(w3, signer, config)

    def _encode(self, fn_name: str, args: list) -> str:
        return self._contract.encode_abi(fn_name, args=args)

    def _call(self, fn_name: str, args: list, value: int = 0) -> TxInstruction:
        return TxInstruction(to=self._program_address, data=self._encode(fn_name, args), value=value)

    async def _submit(
        self,
        instructions: Sequence[TxInstruction],
        confirmation: Confirmation = Confirmation.CONFIRMED,
    ) -> str:
        if self._signer is None:
            raise SetupError("a wallet key is required to send transactions")
        cfg = self._config
        return await submit_transaction(
            self._w3,
            self._signer,
            instructions,
            confirmation,
            max_attempts=cfg.tx_max_attempts,
            retry_delay=cfg.tx_retry_delay,
            receipt_timeout=cfg.tx_receipt_timeout,
            gas_policy=GasPolicy(cfg.gas_multiplier, cfg.gas_limit_min, cfg.gas_buffer),
            send_lock=self._send_lock,
        )

    async def create_registration(self, data: RegistrationConfig) -> Registration:
        """
        新しいレジストリアカウントを作り、初期化する（1トランザクション）。

        アカウントのアドレスは毎回新しく生成し、uuid はその先頭6文字。
        """
        space = account_size(data.max_number_of_lines)
        deposit = await self._contract.functions.minimumBalance(space).call()

        account = Account.create().address
        uuid = account[2:8]

        config_data = (
            uuid,
            data.symbol,
            data.seller_fee_basis_points,
            data.is_mutable,
            data.max_supply,
            data.retain_authority,
            [(Web3.to_checksum_address(c.address), c.verified, c.share) for c in data.creators],
            data.max_number_of_lines,
        )
        tx_hash = await self._submit(
            [
                self._call("createAccount", [account, space], value=deposit),
                self._call("initializeRegistration", [account, config_data]),
            ]
        )
        logger.info("registered account %s (uuid=%s, space=%d) tx=%s", account, uuid, space, tx_hash)
        return Registration(registration_id=uuid, account_address=account, tx_hash=tx_hash)

    async def pay_storage_fee(self, amount_wei: int) -> str:
        """支払い先ウォレットへの固定額の送金。レシートIDとしてハッシュを返す。"""
        if not self._config.payment_wallet:
            raise SetupError("PAYMENT_WALLET is not set")
        return await self._submit(
            [TxInstruction(to=self._config.payment_wallet, value=amount_wei)]
        )

    async def add_batch_records(
        self, account: str, start_index: int, records: Sequence[LedgerRecord]
    ) -> str:
        lines = [(r.uri, r.name) for r in records]
        return await self._submit(
            [self._call("addBatchRecords", [Web3.to_checksum_address(account), start_index, lines])]
        )

    async def fetch_account_data(self, account: str) -> bytes:
        data = await self._contract.functions.accountData(Web3.to_checksum_address(account)).call()
        return bytes(data)

    async def initialize_distributor(
        self, account: str, registration_id: str, price_wei: int, items_available: int
    ) -> tuple[bytes, str]:
        dist_id = distributor_id(account, registration_id)
        tx_hash = await self._submit(
            [
                self._call(
                    "initializeDistributor",
                    [dist_id, Web3.to_checksum_address(account), registration_id, price_wei, items_available, 0],
                )
            ]
        )
        return dist_id, tx_hash

    async def update_start_date(
        self, dist_id: bytes, go_live_date: int, price_wei: Optional[int] = None
    ) -> str:
        # price 0 は「変更しない」
        return await self._submit(
            [self._call("updateDistributor", [dist_id, price_wei or 0, go_live_date])]
        )

    async def get_distributor(self, dist_id: bytes) -> DistributorState:
        raw: Any = await self._contract.functions.getDistributor(dist_id).call()
        wallet, price, available, redeemed, go_live = raw
        return DistributorState(wallet, int(price), int(available), int(redeemed), int(go_live))

    async def mint_one(self, dist_id: bytes) -> str:
        state = await self.get_distributor(dist_id)
        return await self._submit([self._call("mintOne", [dist_id], value=state.price)])

# tx_submitter.py
from __future__ import annotations

import asyncio
import logging
from contextlib import nullcontext
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from eth_abi import encode as abi_encode
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, Web3
from web3.exceptions import TimeExhausted, TransactionNotFound

from errors import SubmissionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MULTICALL_SELECTOR = Web3.keccak(text="multicall(bytes[])")[:4]

# 送り直せば通る可能性があるもの（nonce / 手数料 / ガスの参照が古い）
_STALE_MARKERS = (
    "nonce too low",
    "replacement transaction underpriced",
    "transaction underpriced",
    "max fee per gas less than block base fee",
    "fee cap less than block base fee",
)
_GAS_MARKERS = ("out of gas", "intrinsic gas too low")


class Confirmation(str, Enum):
    PROCESSED = "processed"  # 送信できた時点で返す
    CONFIRMED = "confirmed"  # レシートを待つ
    FINALIZED = "finalized"  # レシートのブロックが finalized になるまで待つ


@dataclass(frozen=True)
class TxInstruction:
    to: str
    data: str = "0x"
    value: int = 0


@dataclass(frozen=True)
class GasPolicy:
    multiplier: float = 3.0
    limit_min: int = 800000
    buffer: int = 200000


class _Reverted(Exception):
    pass


def looks_like_stale_reference(exc: Exception) -> bool:
    msg = str(exc).lower()
    return any(m in msg for m in _STALE_MARKERS)


def looks_like_gas_error(exc: Exception) -> bool:
    msg = str(exc).lower()
    return any(m in msg for m in _GAS_MARKERS)


def looks_like_nonce_too_low(exc: Exception) -> bool:
    return "nonce too low" in str(exc).lower()


def is_retryable(exc: Exception) -> bool:
    if isinstance(exc, _Reverted):
        return False
    return isinstance(exc, TimeExhausted) or looks_like_stale_reference(exc) or looks_like_gas_error(exc)


async def with_retry(
    operation: Callable[[int], Awaitable[T]],
    max_attempts: int,
    is_retryable: Callable[[Exception], bool],
    delay: float = 0.5,
) -> T:
    """
    operation(attempt) を最大 max_attempts 回まで実行する。

    is_retryable が False を返した例外、または最後の試行の例外はそのまま投げる。
    待ち時間は delay * attempt（線形に増やす）。
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation(attempt)
        except Exception as ex:
            if attempt >= max_attempts or not is_retryable(ex):
                raise
            logger.warning("attempt %d/%d failed: %s; retrying", attempt, max_attempts, ex)
            if delay > 0:
                await asyncio.sleep(delay * attempt)


def bundle_instructions(instructions: Sequence[TxInstruction]) -> TxInstruction:
    """複数の命令は同じプログラムの multicall(bytes[]) にまとめて1トランザクションにする。"""
    if not instructions:
        raise ValueError("at least one instruction is required")
    if len(instructions) == 1:
        return instructions[0]

    targets = {Web3.to_checksum_address(ix.to) for ix in instructions}
    if len(targets) != 1:
        raise ValueError("bundled instructions must target the same program")

    calls = [Web3.to_bytes(hexstr=ix.data) for ix in instructions]
    data = _MULTICALL_SELECTOR + abi_encode(["bytes[]"], [calls])
    return TxInstruction(
        to=targets.pop(),
        data=Web3.to_hex(data),
        value=sum(ix.value for ix in instructions),
    )


def _to_hex(tx_hash: Any) -> str:
    if isinstance(tx_hash, (bytes, bytearray)):
        return "0x" + bytes(tx_hash).hex()
    txh = str(tx_hash)
    return txh if txh.startswith("0x") else "0x" + txh


async def _fee_fields(w3: AsyncWeb3, bump: float) -> dict[str, int]:
    # EIP-1559 が使えるなら baseFee*2 + priority、無理なら legacy gasPrice
    latest = await w3.eth.get_block("latest")
    base_fee = latest.get("baseFeePerGas")
    if base_fee is not None:
        priority = int(Web3.to_wei("1.5", "gwei") * bump)
        return {
            "maxPriorityFeePerGas": priority,
            "maxFeePerGas": int(base_fee * 2 * bump) + priority,
        }
    return {"gasPrice": int(await w3.eth.gas_price * bump)}


async def _estimate_gas(w3: AsyncWeb3, tx: dict[str, Any], policy: GasPolicy) -> int:
    try:
        estimated = await w3.eth.estimate_gas(tx)
    except Exception as ex:
        logger.debug("gas estimation failed (%s); using %d", ex, policy.limit_min)
        return policy.limit_min
    return max(int(estimated * policy.multiplier), estimated + policy.buffer, policy.limit_min)


async def _existing_receipt(w3: AsyncWeb3, tx_hash: str) -> Optional[Any]:
    try:
        return await w3.eth.get_transaction_receipt(tx_hash)
    except TransactionNotFound:
        return None


async def _await_confirmation(
    w3: AsyncWeb3,
    tx_hash: str,
    receipt: Any,
    confirmation: Confirmation,
    timeout: float,
    poll_interval: float,
) -> str:
    if receipt["status"] != 1:
        raise _Reverted(f"transaction {tx_hash} reverted")

    if confirmation is Confirmation.FINALIZED:
        block_number = receipt["blockNumber"]
        waited = 0.0
        while True:
            finalized = await w3.eth.get_block("finalized")
            if finalized["number"] >= block_number:
                break
            if waited >= timeout:
                raise TimeExhausted(f"transaction {tx_hash} not finalized after {timeout}s")
            await asyncio.sleep(poll_interval)
            waited += poll_interval
    return tx_hash


async def submit_transaction(
    w3: AsyncWeb3,
    signer: LocalAccount,
    instructions: Sequence[TxInstruction],
    confirmation: Confirmation = Confirmation.CONFIRMED,
    *,
    max_attempts: int = 3,
    retry_delay: float = 0.5,
    receipt_timeout: float = 120.0,
    poll_interval: float = 2.0,
    gas_policy: GasPolicy = GasPolicy(),
    send_lock: Optional[asyncio.Lock] = None,
) -> str:
    """
    署名して送信し、confirmation のレベルまで待ってトランザクションハッシュ（0x付きhex）を返す。

    送信のたびに nonce と手数料を取り直す。レシート待ちがタイムアウトした場合は
    同じ nonce・高めの手数料で送り直す（前の送信が取り込まれていればそれを返す）。
    リトライ不可のエラー、または上限到達で SubmissionError。

    同じ署名者から並行して送る場合は send_lock を共有する（nonce の二重取得を防ぐ）。
    """
    call = bundle_instructions(instructions)
    state: dict[str, Any] = {"nonce": None, "gas": None, "sent": [], "attempts": 0}

    async def attempt(n: int) -> str:
        state["attempts"] = n

        for prev in state["sent"]:
            receipt = await _existing_receipt(w3, prev)
            if receipt is not None:
                logger.info("earlier submission %s landed", prev)
                return await _await_confirmation(
                    w3, prev, receipt, confirmation, receipt_timeout, poll_interval
                )

        # nonce の取得から送信までは同じ署名者の他の送信と重ならないようにする
        async with send_lock if send_lock is not None else nullcontext():
            if state["nonce"] is None:
                state["nonce"] = await w3.eth.get_transaction_count(signer.address, "pending")

            tx: dict[str, Any] = {
                "from": signer.address,
                "to": Web3.to_checksum_address(call.to),
                "value": call.value,
                "data": call.data,
                "nonce": state["nonce"],
                "chainId": await w3.eth.chain_id,
            }
            if state["gas"] is None:
                state["gas"] = await _estimate_gas(w3, dict(tx), gas_policy)
            tx["gas"] = state["gas"]
            # 置き換え送信は手数料を上げないと弾かれる
            tx.update(await _fee_fields(w3, 1.125 ** (n - 1)))

            signed = signer.sign_transaction(tx)
            try:
                sent = await w3.eth.send_raw_transaction(signed.raw_transaction)
            except Exception as ex:
                if looks_like_nonce_too_low(ex):
                    state["nonce"] = None
                if looks_like_gas_error(ex):
                    state["gas"] = int(state["gas"] * 1.5)
                raise

        tx_hash = _to_hex(sent)
        state["sent"].append(tx_hash)
        logger.debug("sent %s (nonce=%d, attempt=%d)", tx_hash, tx["nonce"], n)

        if confirmation is Confirmation.PROCESSED:
            return tx_hash

        receipt = await w3.eth.wait_for_transaction_receipt(sent, timeout=receipt_timeout)
        return await _await_confirmation(
            w3, tx_hash, receipt, confirmation, receipt_timeout, poll_interval
        )

    try:
        return await with_retry(attempt, max_attempts, is_retryable, delay=retry_delay)
    except Exception as ex:
        raise SubmissionError(
            f"transaction failed after {state['attempts']} attempt(s): {ex}",
            attempts=state["attempts"],
        ) from ex

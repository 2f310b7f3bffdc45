# layout.py
from __future__ import annotations

import struct
from math import ceil

from models import LedgerRecord

# レジストリアカウントのバイトレイアウト（整数はリトルエンディアン）
CONFIG_ARRAY_START = (
    32  # authority
    + 4 + 6  # u32 len + uuid
    + 4 + 10  # u32 len + symbol
    + 2  # seller fee basis points
    + 1 + 4 + 5 * 34  # option + u32 len + creators vec
    + 8  # max supply
    + 1  # is mutable
    + 1  # retain authority
    + 4  # max number of lines
)

NAME_MAX = 32
URI_MAX = 200
CONFIG_LINE_SIZE = 4 + NAME_MAX + 4 + URI_MAX

_NAME_SLICE = slice(4, 4 + NAME_MAX)
_URI_SLICE = slice(4 + NAME_MAX + 4, CONFIG_LINE_SIZE)


def account_size(max_number_of_lines: int) -> int:
    """ヘッダ + レコード配列 + 存在ビットマップ（1アイテム1ビット）。"""
    return (
        CONFIG_ARRAY_START
        + 4
        + max_number_of_lines * CONFIG_LINE_SIZE
        + 4
        + ceil(max_number_of_lines / 8)
    )


def record_offset(slot: int) -> int:
    return CONFIG_ARRAY_START + 4 + slot * CONFIG_LINE_SIZE


def record_count(data: bytes) -> int:
    """ヘッダ直後の u32 はレジストリに書かれたレコード数。"""
    if len(data) < CONFIG_ARRAY_START + 4:
        return 0
    return struct.unpack_from("<I", data, CONFIG_ARRAY_START)[0]


def _decode_padded(buf: bytes) -> str:
    # 固定長バッファ: 末尾の NUL パディングを落としてから UTF-8 として読む
    data = buf.rstrip(b"\x00")
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("utf-8", errors="replace")


def decode_record(data: bytes, slot: int) -> LedgerRecord | None:
    """slot 番目のレコードを取り出す。バッファ外なら None。"""
    start = record_offset(slot)
    line = data[start:start + CONFIG_LINE_SIZE]
    if len(line) < CONFIG_LINE_SIZE:
        return None
    return LedgerRecord(uri=_decode_padded(line[_URI_SLICE]), name=_decode_padded(line[_NAME_SLICE]))


def encode_record(record: LedgerRecord) -> bytes:
    name = record.name.encode("utf-8")
    uri = record.uri.encode("utf-8")
    if len(name) > NAME_MAX:
        raise ValueError(f"name must be <= {NAME_MAX} bytes. got {len(name)}")
    if len(uri) > URI_MAX:
        raise ValueError(f"uri must be <= {URI_MAX} bytes. got {len(uri)}")
    return (
        struct.pack("<I", len(name)) + name.ljust(NAME_MAX, b"\x00")
        + struct.pack("<I", len(uri)) + uri.ljust(URI_MAX, b"\x00")
    )


def build_account_data(max_number_of_lines: int, records: dict[int, LedgerRecord]) -> bytes:
    """指定スロットにレコードを書き込んだアカウントデータを組み立てる（オフライン表示・テスト用）。"""
    buf = bytearray(account_size(max_number_of_lines))
    filled = 0
    for slot, record in records.items():
        if not 0 <= slot < max_number_of_lines:
            raise IndexError(f"slot {slot} out of range (max {max_number_of_lines})")
        start = record_offset(slot)
        buf[start:start + CONFIG_LINE_SIZE] = encode_record(record)
        filled = max(filled, slot + 1)
    struct.pack_into("<I", buf, CONFIG_ARRAY_START, filled)
    return bytes(buf)

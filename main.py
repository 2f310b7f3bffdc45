# main.py
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Optional

from web3 import Web3

from cache_store import CacheStore
from config import DEFAULT_CACHE_NAME, DEFAULT_RPC_URL, AppConfig, load_keypair
from errors import CacheError, SetupError
from eth_client import LedgerClient, distributor_id
from models import CacheDocument, index_sort_key
from orchestrator import UploadOrchestrator, build_item_set
from registrar import BatchRegistrar
from storage_client import StorageUploader
from verifier import verify

logger = logging.getLogger("main")


def list_directory(directory: str) -> list[str]:
    """ディレクトリ内のファイルを数値ステム順に並べて返す。"""
    path = Path(directory)
    if not path.is_dir():
        raise SetupError(f"Directory not found: {directory}")

    def sort_key(name: str) -> tuple:
        stem, _ = os.path.splitext(name)
        return index_sort_key(stem) + (name,)

    return [os.path.join(directory, name) for name in sorted(os.listdir(path), key=sort_key)]


def parse_start_date(value: Optional[str]) -> int:
    """'04 Dec 1995 00:12:00 GMT' のような RFC 2822 か ISO 8601。未指定なら現在時刻。"""
    if not value:
        return int(time.time())
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        try:
            dt = datetime.fromisoformat(value)
        except ValueError as ex:
            raise SetupError(f"Unrecognized date: {value}") from ex
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _config_from(args: argparse.Namespace) -> AppConfig:
    return AppConfig.from_env(
        rpc_url=args.url,
        cache_name=args.cache_name,
        env_tag=getattr(args, "env", None),
    )


def _registered_cache(config: AppConfig) -> tuple[CacheStore, CacheDocument]:
    cache = CacheStore(config.cache_path)
    doc = cache.load()
    if not doc.program.is_registered:
        raise SetupError(f"No registration found in cache {config.cache_path}; run upload first")
    return cache, doc


async def cmd_upload(args: argparse.Namespace) -> int:
    files = list_directory(args.directory)
    signer = load_keypair(args.keypair)
    config = _config_from(args)
    config.require("program_address", "payment_wallet", "storage_upload_url")

    cache = CacheStore(config.cache_path)
    doc = cache.load()
    items = build_item_set(files, doc.items.keys(), args.directory)
    logger.info("%d item(s) to process, env=%s", len(items), config.env_tag)

    ledger = await LedgerClient.connect(config, signer)
    async with StorageUploader(
        config.storage_upload_url, config.storage_gateway, timeout=config.storage_timeout
    ) as storage:
        orchestrator = UploadOrchestrator(cache, ledger, storage, config.env_tag, config.storage_fee_wei)
        upload_report = await orchestrator.run(items)

    batch_report = await BatchRegistrar(cache, ledger).run()

    logger.info(
        "Done: uploaded=%d skipped=%d failed=%d batches written=%d failed=%d incomplete=%d",
        len(upload_report.uploaded),
        len(upload_report.skipped),
        len(upload_report.failed),
        len(batch_report.written),
        len(batch_report.failed),
        len(batch_report.incomplete),
    )
    return 0


async def cmd_create_distributor(args: argparse.Namespace) -> int:
    signer = load_keypair(args.keypair)
    config = _config_from(args)
    _, doc = _registered_cache(config)
    try:
        price_wei = Web3.to_wei(Decimal(args.price), "ether")
    except (InvalidOperation, ValueError) as ex:
        raise SetupError(f"Invalid price: {args.price}") from ex

    ledger = await LedgerClient.connect(config, signer)
    dist_id, tx_hash = await ledger.initialize_distributor(
        doc.program.ledger_account_address,
        doc.program.registration_id,
        price_wei,
        len(doc.items),
    )
    logger.info("Done: DISTRIBUTOR: %s tx=%s", Web3.to_hex(dist_id), tx_hash)
    return 0


async def cmd_set_start_date(args: argparse.Namespace) -> int:
    signer = load_keypair(args.keypair)
    config = _config_from(args)
    _, doc = _registered_cache(config)
    seconds = parse_start_date(args.date)

    ledger = await LedgerClient.connect(config, signer)
    dist_id = distributor_id(doc.program.ledger_account_address, doc.program.registration_id)
    tx_hash = await ledger.update_start_date(dist_id, seconds)
    logger.info("Done %d %s", seconds, tx_hash)
    return 0


async def cmd_mint_one(args: argparse.Namespace) -> int:
    signer = load_keypair(args.keypair)
    config = _config_from(args)
    _, doc = _registered_cache(config)

    ledger = await LedgerClient.connect(config, signer)
    dist_id = distributor_id(doc.program.ledger_account_address, doc.program.registration_id)
    tx_hash = await ledger.mint_one(dist_id)
    logger.info("Done %s", tx_hash)
    return 0


async def cmd_verify(args: argparse.Namespace) -> int:
    config = _config_from(args)
    cache, _ = _registered_cache(config)

    ledger = await LedgerClient.connect(config, None)
    report = await verify(cache, ledger)
    logger.info("Checked %d item(s), %d marked to rerun", report.checked, len(report.mismatches))
    return 0


def _shared_options(p: argparse.ArgumentParser, keypair: bool = True) -> None:
    p.add_argument("-u", "--url", default=None, help=f"ledger RPC url (default: ETH_RPC_URL or {DEFAULT_RPC_URL})")
    if keypair:
        p.add_argument("-k", "--keypair", default=None, help="wallet key file (default: ETH_PRIVATE_KEY)")
    p.add_argument("-c", "--cache-name", default=DEFAULT_CACHE_NAME, help="cache file name")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="asset-registrar")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("upload", help="upload images + metadata and write them to the registry")
    p.add_argument("directory", help="directory containing images named from 0-n (with .json metadata)")
    p.add_argument("--env", default=None, help="environment tag sent to storage (default: derived from url)")
    _shared_options(p)
    p.set_defaults(func=cmd_upload)

    p = sub.add_parser("create_distributor", help="create a distributor for the registered account")
    p.add_argument("-p", "--price", default="1", help="price in ether")
    _shared_options(p)
    p.set_defaults(func=cmd_create_distributor)

    p = sub.add_parser("set_start_date", help="update the distributor go-live date")
    p.add_argument("-d", "--date", default=None, help='timestamp - eg "04 Dec 1995 00:12:00 GMT"')
    _shared_options(p)
    p.set_defaults(func=cmd_set_start_date)

    p = sub.add_parser("mint_one", help="mint one item from the distributor")
    _shared_options(p)
    p.set_defaults(func=cmd_mint_one)

    p = sub.add_parser("verify", help="check cached items against the registry account")
    _shared_options(p, keypair=False)
    p.set_defaults(func=cmd_verify)

    return ap


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(args.func(args))
    except (SetupError, CacheError) as ex:
        logger.error("%s", ex)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .config import ClientConfig, TrustMode, TrustPolicy
from .constants import (
    DEFAULT_ALPN,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CONNECT_TIMEOUT_S,
    DEFAULT_DOWNLOAD_DIR,
    DEFAULT_HOST,
    DEFAULT_OPERATION_TIMEOUT_S,
    DEFAULT_PORT,
    DEFAULT_SERVER_ROOT,
    DEFAULT_UPLOAD_DIR,
)
from .dispatcher import Dispatcher, Operation, Outcome, describe, ensure_directories, local_files
from .errors import ConfigError, LocalIOFailed, TransferError
from .operations import DownloadResult, Listing, UploadResult
from .server import serve

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BOOTSTRAP = 2


def config_from_args(args: argparse.Namespace) -> ClientConfig:
    trust = TrustPolicy(
        mode=TrustMode(args.trust),
        fingerprint=args.fingerprint,
        cafile=Path(args.cafile) if args.cafile else None,
        known_hosts=Path(args.known_hosts) if args.known_hosts else None,
    )
    return ClientConfig(
        host=args.host,
        port=args.port,
        alpn=args.alpn,
        upload_dir=Path(args.upload_dir),
        download_dir=Path(args.download_dir),
        trust=trust,
        connect_timeout=args.connect_timeout,
        operation_timeout=args.op_timeout,
        chunk_size=args.chunk_size,
    )


def outcome_payload(outcome: Outcome) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"op": outcome.op.value, "ok": outcome.ok}
    if outcome.error is not None:
        payload["error"] = type(outcome.error).__name__
        payload["message"] = str(outcome.error)

    value = outcome.value
    if isinstance(value, Listing):
        payload["files"] = [{"name": e.name, "size": e.size} for e in value]
    elif isinstance(value, UploadResult):
        payload.update(name=value.name, bytes=value.content_bytes, bytes_written=value.bytes_written)
    elif isinstance(value, DownloadResult):
        payload.update(
            name=value.name,
            path=str(value.path),
            expected=value.expected,
            received=value.received,
            missing=value.missing,
            surplus=value.surplus,
        )
    return payload


async def run_requests(config: ClientConfig, requests: List[Tuple[Operation, Optional[str]]]) -> List[Outcome]:
    async with Dispatcher(config) as dispatcher:
        outcomes = [await dispatcher.dispatch(op, name) for op, name in requests]
        await dispatcher.dispatch(Operation.EXIT)
    return outcomes


def _client_command(args: argparse.Namespace, requests: List[Tuple[Operation, Optional[str]]]) -> int:
    config = config_from_args(args)
    try:
        ensure_directories(config)
    except LocalIOFailed as exc:
        logging.error("startup failed: %s", exc)
        return EXIT_BOOTSTRAP

    try:
        outcomes = asyncio.run(run_requests(config, requests))
    except TransferError as exc:
        logging.error("%s", exc)
        return EXIT_FAILED

    if args.json:
        print(json.dumps([outcome_payload(o) for o in outcomes], indent=2))
    else:
        for o in outcomes:
            print(describe(o))
    return EXIT_OK if all(o.ok for o in outcomes) else EXIT_FAILED


def cmd_list(args: argparse.Namespace) -> int:
    return _client_command(args, [(Operation.LIST, None)])


def cmd_upload(args: argparse.Namespace) -> int:
    return _client_command(args, [(Operation.UPLOAD, n) for n in args.names])


def cmd_download(args: argparse.Namespace) -> int:
    return _client_command(args, [(Operation.DOWNLOAD, n) for n in args.names])


def cmd_local(args: argparse.Namespace) -> int:
    config = config_from_args(args)
    try:
        ensure_directories(config)
        entries = local_files(config)
    except LocalIOFailed as exc:
        logging.error("startup failed: %s", exc)
        return EXIT_BOOTSTRAP

    if args.json:
        print(json.dumps([{"name": e.name, "size": e.size} for e in entries], indent=2))
    elif not entries:
        print(f"no files in {config.upload_dir}")
    else:
        for i, e in enumerate(entries, 1):
            print(f"{i}. {e.name} ({e.size} bytes)")
    return EXIT_OK


def cmd_serve(args: argparse.Namespace) -> int:
    try:
        asyncio.run(
            serve(
                args.listen_host,
                args.port,
                certfile=args.cert,
                keyfile=args.key,
                root=args.root,
                alpn=args.alpn,
                chunk_size=args.chunk_size,
            )
        )
    except KeyboardInterrupt:
        pass
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="qftp", description="File transfer over QUIC streams (UP/DOWN/LIST).")
    sub = p.add_subparsers(dest="cmd", required=True)

    def add_common(x: argparse.ArgumentParser) -> None:
        x.add_argument("--port", type=int, default=DEFAULT_PORT)
        x.add_argument("--alpn", default=DEFAULT_ALPN)
        x.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE)
        x.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
        x.add_argument("--json", action="store_true")

    def add_client(x: argparse.ArgumentParser) -> None:
        add_common(x)
        x.add_argument("--host", default=DEFAULT_HOST)
        x.add_argument("--upload-dir", default=DEFAULT_UPLOAD_DIR)
        x.add_argument("--download-dir", default=DEFAULT_DOWNLOAD_DIR)
        x.add_argument("--trust", choices=[m.value for m in TrustMode], default=TrustMode.TOFU.value)
        x.add_argument("--fingerprint", help="SHA-256 of the server certificate, for --trust pin")
        x.add_argument("--cafile", help="CA bundle, for --trust verify")
        x.add_argument("--known-hosts", help="JSON file remembering fingerprints, for --trust tofu")
        x.add_argument("--connect-timeout", type=float, default=DEFAULT_CONNECT_TIMEOUT_S)
        x.add_argument("--op-timeout", type=float, default=DEFAULT_OPERATION_TIMEOUT_S)

    ls = sub.add_parser("list", help="list files on the server")
    add_client(ls)
    ls.set_defaults(func=cmd_list)

    up = sub.add_parser("upload", help="upload files from the upload directory")
    add_client(up)
    up.add_argument("names", nargs="+")
    up.set_defaults(func=cmd_upload)

    down = sub.add_parser("download", help="download files into the download directory")
    add_client(down)
    down.add_argument("names", nargs="+")
    down.set_defaults(func=cmd_download)

    local = sub.add_parser("local", help="show files eligible for upload")
    add_client(local)
    local.set_defaults(func=cmd_local)

    srv = sub.add_parser("serve", help="run the reference file server")
    add_common(srv)
    srv.add_argument("--listen-host", default="0.0.0.0")
    srv.add_argument("--cert", required=True)
    srv.add_argument("--key", required=True)
    srv.add_argument("--root", default=DEFAULT_SERVER_ROOT)
    srv.set_defaults(func=cmd_serve)

    args = p.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s [%(levelname)s] %(message)s")
    try:
        return int(args.func(args))
    except ConfigError as exc:
        p.error(str(exc))
    return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())

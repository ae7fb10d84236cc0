"""Command line tools for store files.

    sstcrypt inspect FILE     show trailer fields (no keys needed)
    sstcrypt verify FILE      unwrap the data key and decrypt every block
    sstcrypt dump FILE        print records as key<TAB>value

Key provider settings come from the ``SSTCRYPT_*`` environment (see
core/config.py) and can be overridden with flags.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from sstcrypt.core.config import EncryptionConfig
from sstcrypt.core.exceptions import SstCryptError, UnsupportedAlgorithm
from sstcrypt.core.layout import describe_store_file
from sstcrypt.core.storefile import StoreFileReader
from sstcrypt.security.ciphers import get_cipher

from .logging_config import configure_logging

logger = logging.getLogger(__name__)


def _algorithm_name(code: int) -> str:
    if code == 0:
        return "none"
    try:
        return get_cipher(code).name
    except UnsupportedAlgorithm:
        return f"unknown({code})"


def _config_from_args(args: argparse.Namespace) -> EncryptionConfig:
    config = EncryptionConfig.from_env()
    changes = {}
    if args.keystore:
        changes["key_provider"] = "keystore"
        changes["key_provider_params"] = {"path": args.keystore}
    if args.provider:
        changes["key_provider"] = args.provider
    if args.provider_param:
        params = dict(changes.get("key_provider_params", config.key_provider_params))
        for item in args.provider_param:
            name, sep, value = item.partition("=")
            if not sep:
                raise SstCryptError(f"--provider-param expects NAME=VALUE, got {item!r}")
            params[name] = value
        changes["key_provider_params"] = params
    if args.alternate_alias:
        changes["alternate_master_key_alias"] = args.alternate_alias
    return config.replace(**changes) if changes else config


def cmd_inspect(args: argparse.Namespace) -> int:
    path = Path(args.file)
    layout = describe_store_file(path)
    trailer = layout.record
    print(f"file:          {path}")
    print(f"size:          {layout.size} bytes")
    print(f"sections:      header {layout.header}, data {layout.data}, index {layout.index}, "
          f"trailer {layout.trailer}, footer {layout.footer}")
    print(f"sha256:        {layout.sha256}")
    print(f"encrypted:     {'yes' if trailer.encrypted else 'no'}")
    print(f"algorithm:     {_algorithm_name(trailer.algorithm_code)}")
    if trailer.encrypted:
        print(f"master key:    {trailer.master_key_alias}")
        print(f"wrapped key:   {len(trailer.wrapped_key)} bytes")
        print(f"iv seed:       {len(trailer.iv_seed)} bytes")
    print(f"blocks:        {trailer.block_count}")
    print(f"entries:       {trailer.entry_count}")
    return 0


def _open_reader(args: argparse.Namespace) -> StoreFileReader:
    config = _config_from_args(args)
    provider = config.build_key_provider() if config.key_provider else None
    return StoreFileReader(args.file, provider, config)


def cmd_verify(args: argparse.Namespace) -> int:
    with _open_reader(args) as reader:
        count = sum(1 for _ in reader.scan())
        if count != reader.entry_count:
            raise SstCryptError(
                f"entry count mismatch: trailer says {reader.entry_count}, read {count}"
            )
        print(f"OK {args.file}: {count} entries in {reader.block_count} blocks")
    return 0


def cmd_dump(args: argparse.Namespace) -> int:
    with _open_reader(args) as reader:
        for record in reader.scan():
            value = "<deleted>" if record.deleted else repr(record.value)
            print(f"{record.key!r}\t{value}")
    return 0


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sstcrypt", description="Inspect and verify encrypted store files."
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    inspect_p = sub.add_parser("inspect", help="Show trailer fields of a store file")
    inspect_p.add_argument("file")
    inspect_p.set_defaults(func=cmd_inspect)

    for name, func, help_text in (
        ("verify", cmd_verify, "Decrypt every block of a store file"),
        ("dump", cmd_dump, "Print the records of a store file"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("file")
        p.add_argument("--provider", help="Key provider name or module:Class")
        p.add_argument(
            "--provider-param",
            action="append",
            default=[],
            help="Key provider parameter NAME=VALUE (repeatable)",
        )
        p.add_argument("--keystore", help="Path to a JSON keystore (implies --provider keystore)")
        p.add_argument("--alternate-alias", help="Alternate master key alias to try")
        p.set_defaults(func=func)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.WARNING)
    try:
        return args.func(args)
    except SstCryptError as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"error: {type(e).__name__}: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

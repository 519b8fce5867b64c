#!/usr/bin/env python3
"""partialzip: list a remote zip or pull single files out of it."""
import argparse
import logging
import os
import sys
from typing import List, Optional, Tuple

from tqdm import tqdm

from . import __version__
from .errors import PartialZipError
from .options import DEFAULT_CONNECT_TIMEOUT_SECS, DEFAULT_MAX_REDIRECTS, PartialZipOptions
from .partzip import PartialZip
from .utils import format_size

LOG_ENV = "PARTIALZIP_LOG"


def _credentials(value: Optional[str]) -> Optional[Tuple[str, str]]:
    if value is None:
        return None
    user, _, password = value.partition(":")
    return user, password


def _setup_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    env = os.environ.get(LOG_ENV)
    if env:
        level = logging.getLevelName(env.upper())
        if not isinstance(level, int):
            level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="partialzip",
        description="Download single files from online zip archives or list the content",
    )
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("-r", "--check-range", action="store_true",
                    help="fail unless the server honours range requests")
    ap.add_argument("--max-redirects", type=int, default=DEFAULT_MAX_REDIRECTS)
    ap.add_argument("--connect-timeout", type=float, default=DEFAULT_CONNECT_TIMEOUT_SECS,
                    help="seconds, 0 disables the limit")
    ap.add_argument("--user", metavar="USER:PASSWORD", help="basic auth credentials")
    ap.add_argument("--proxy", metavar="URL")
    ap.add_argument("--proxy-user", metavar="USER:PASSWORD")
    ap.add_argument("-v", "--verbose", action="count", default=0)

    sub = ap.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    ls = sub.add_parser("list", help="lists the files inside the zip")
    ls.add_argument("-d", "--detailed", action="store_true",
                    help="sizes and compression support, one request per file")
    ls.add_argument("url")

    dl = sub.add_parser("download", help="download a file from the online zip")
    dl.add_argument("url")
    dl.add_argument("filename")
    dl.add_argument("outputfile")
    dl.add_argument("--progress", action="store_true", help="show a progress bar")

    pipe = sub.add_parser("pipe", help="write a file from the online zip to stdout")
    pipe.add_argument("url")
    pipe.add_argument("filename")
    return ap


def options_from_args(args: argparse.Namespace) -> PartialZipOptions:
    return PartialZipOptions(
        check_range=args.check_range,
        max_redirects=args.max_redirects,
        connect_timeout=args.connect_timeout or None,
        basic_auth=_credentials(args.user),
        proxy=args.proxy,
        proxy_auth=_credentials(args.proxy_user),
    )


def cmd_list(pz: PartialZip, args: argparse.Namespace) -> int:
    if args.detailed:
        for f in pz.list_detailed():
            supported = "true" if f.supported else "false"
            print(f"{f.name} - {format_size(f.compressed_size)} - Supported: {supported}")
    else:
        for name in pz.list_names():
            print(name)
    return 0


def cmd_download(pz: PartialZip, args: argparse.Namespace) -> int:
    if args.progress:
        total = pz.index.find(args.filename).compressed_size
        with tqdm(total=total, unit="B", unit_scale=True, desc=args.filename) as bar:
            pz.download_to_file(args.filename, args.outputfile, progress=bar.update)
    else:
        pz.download_to_file(args.filename, args.outputfile)
    print(f"{args.filename} extracted to {args.outputfile}")
    return 0


def cmd_pipe(pz: PartialZip, args: argparse.Namespace) -> int:
    out = sys.stdout.buffer
    pz.download_to_write(args.filename, out)
    out.flush()
    return 0


COMMANDS = {"list": cmd_list, "download": cmd_download, "pipe": cmd_pipe}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _setup_logging(args.verbose)

    if args.command == "download" and os.path.exists(args.outputfile):
        print(f"The output file {args.outputfile} already exists", file=sys.stderr)
        return 1

    try:
        options = options_from_args(args)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    try:
        with PartialZip(args.url, options) as pz:
            return COMMANDS[args.command](pz, args)
    except (PartialZipError, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

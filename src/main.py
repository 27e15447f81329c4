"""Command line entry point for tile store maintenance."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from domain.models import StoreSettings
from profiles import load_settings
from shared.constants import LOG_FORMAT
from shared.diagnostics import log_memory_usage, log_store_diagnostics, log_thread_status
from tilestore import HandleRegistry, TileStore, TileStoreError, copy_store

logger = logging.getLogger(__name__)


def setup_logging(level: str = 'INFO', log_file: str | Path | None = None) -> None:
    """Configure application logging.

    Records go to stderr, so that tile bodies written to stdout stay clean.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        handlers.append(logging.FileHandler(str(log_file), encoding='utf-8'))
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, handlers=handlers)


def _parse_bbox(text: str) -> tuple[float, float, float, float]:
    parts = text.split(',')
    if len(parts) != 4:
        msg = f'Expected W,S,E,N, got {text!r}'
        raise argparse.ArgumentTypeError(msg)
    try:
        west, south, east, north = (float(p) for p in parts)
    except ValueError as e:
        msg = f'Bounds must be numbers: {text!r}'
        raise argparse.ArgumentTypeError(msg) from e
    return west, south, east, north


def _parse_header(text: str) -> tuple[str, str]:
    name, sep, value = text.partition('=')
    if not sep or not name.strip():
        msg = f'Expected NAME=VALUE, got {text!r}'
        raise argparse.ArgumentTypeError(msg)
    return name.strip(), value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='tilestore',
        description='Content-addressed map tile store',
    )
    parser.add_argument('--profile', help='TOML settings profile')
    parser.add_argument(
        '--log-level',
        default='INFO',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: INFO)',
    )
    parser.add_argument('--log-file', help='Also write log records to this file')

    commands = parser.add_subparsers(dest='command', required=True)

    info = commands.add_parser('info', help='Print the info record of a store')
    info.add_argument('path')

    get = commands.add_parser('get', help='Read one tile')
    get.add_argument('path')
    get.add_argument('z', type=int)
    get.add_argument('x', type=int)
    get.add_argument('y', type=int)
    get.add_argument('-o', '--output', help='Write the body here instead of stdout')

    put = commands.add_parser('put', help='Store one tile from a file')
    put.add_argument('path')
    put.add_argument('z', type=int)
    put.add_argument('x', type=int)
    put.add_argument('y', type=int)
    put.add_argument('file')
    put.add_argument(
        '--header',
        action='append',
        default=[],
        type=_parse_header,
        metavar='NAME=VALUE',
        help='Tile header (repeatable)',
    )

    drop = commands.add_parser('drop', help='Remove one tile')
    drop.add_argument('path')
    drop.add_argument('z', type=int)
    drop.add_argument('x', type=int)
    drop.add_argument('y', type=int)

    copy = commands.add_parser('copy', help='Copy a pyramid into another store')
    copy.add_argument('source')
    copy.add_argument('target')
    copy.add_argument('--minzoom', type=int)
    copy.add_argument('--maxzoom', type=int)
    copy.add_argument('--bbox', type=_parse_bbox, metavar='W,S,E,N')
    copy.add_argument(
        '--skip-errors',
        action='store_true',
        help='Skip unreadable tiles instead of aborting',
    )

    compact = commands.add_parser('compact', help='Compact a store')
    compact.add_argument('path')
    return parser


async def run(args: argparse.Namespace, settings: StoreSettings) -> int:
    """Execute one parsed command; returns the exit code."""
    async with HandleRegistry(max_handles=settings.max_handles) as registry:
        if args.command == 'compact':
            ok = await registry.compact(args.path)
            log_store_diagnostics(args.path)
            return 0 if ok else 1

        path = args.source if args.command == 'copy' else args.path
        store = TileStore(path, registry, settings=settings)
        try:
            if args.command == 'info':
                info = await store.get_info()
                print(info.model_dump_json(indent=2, exclude_unset=True))
                log_store_diagnostics(args.path, logging.DEBUG)
            elif args.command == 'get':
                body, headers = await store.get_tile(args.z, args.x, args.y)
                if args.output:
                    Path(args.output).write_bytes(body)
                    print(json.dumps(headers, indent=2, sort_keys=True))
                else:
                    sys.stdout.buffer.write(body)
                    sys.stdout.buffer.flush()
            elif args.command == 'put':
                body = Path(args.file).read_bytes()
                await store.put_tile(args.z, args.x, args.y, body, dict(args.header))
                logger.info('Stored tile %d/%d/%d (%d bytes)', args.z, args.x, args.y, len(body))
            elif args.command == 'drop':
                await store.drop_tile(args.z, args.x, args.y)
                logger.info('Dropped tile %d/%d/%d', args.z, args.x, args.y)
            elif args.command == 'copy':
                target = TileStore(args.target, registry, settings=settings)
                try:
                    log_memory_usage('before copy')
                    stats = await copy_store(
                        store,
                        target,
                        args.minzoom,
                        args.maxzoom,
                        args.bbox,
                        skip_errors=args.skip_errors,
                    )
                finally:
                    await target.close()
                log_memory_usage('after copy')
                log_thread_status('after copy')
                print(json.dumps({'written': stats.written, 'skipped': stats.skipped}))
        finally:
            await store.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main application entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    try:
        settings = load_settings(args.profile)
    except (FileNotFoundError, ValueError) as e:
        logger.error('Invalid settings profile: %s', e)
        return 2

    try:
        return asyncio.run(run(args, settings))
    except TileStoreError as e:
        logger.error('%s: %s', type(e).__name__, e)
        return 1
    except (ValueError, OSError) as e:
        logger.error('%s', e)
        return 2


if __name__ == '__main__':
    sys.exit(main())

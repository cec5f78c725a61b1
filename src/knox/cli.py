"""CLI entry point for knox."""

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx

from knox.client import Client
from knox.config import KnoxConfig, apply_env_overrides, load_config
from knox.errors import KnoxError
from knox.logging_config import configure_logging

logger = logging.getLogger("knox")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        prog="knox",
        description="knox - client for S3-compatible object storage",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("knox.yaml"),
        help="Path to YAML configuration file (default: knox.yaml)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config, default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        default=None,
        choices=["text", "json"],
        help="Log format: 'text' (human-readable) or 'json' (structured)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    put_parser = subparsers.add_parser("put", help="Upload a file")
    put_parser.add_argument("src", type=Path, help="Local file to upload")
    put_parser.add_argument("key", help="Object key")
    put_parser.add_argument(
        "--multipart", action="store_true", default=False,
        help="Upload in concurrent parts (small files still go up in one PUT)",
    )
    put_parser.add_argument(
        "--timeout", type=float, default=None,
        help="Deadline in seconds for the multipart part uploads",
    )

    get_parser = subparsers.add_parser("get", help="Download an object")
    get_parser.add_argument("key", help="Object key")
    get_parser.add_argument(
        "dest", nargs="?", default="-",
        help="Output file path (default: stdout)",
    )

    head_parser = subparsers.add_parser("head", help="Show object headers")
    head_parser.add_argument("key", help="Object key")

    delete_parser = subparsers.add_parser("delete", help="Delete an object")
    delete_parser.add_argument("key", help="Object key")

    url_parser = subparsers.add_parser("url", help="Print the URL of an object")
    url_parser.add_argument("key", help="Object key")
    url_parser.add_argument("--https", action="store_true", default=False, help="Use https://")

    sign_parser = subparsers.add_parser("sign", help="Print a pre-signed URL")
    sign_parser.add_argument("key", help="Object key")
    sign_parser.add_argument(
        "--expires", type=int, default=3600,
        help="Seconds until the URL expires (default: 3600)",
    )

    return parser.parse_args(argv)


async def _run(args: argparse.Namespace, client: Client) -> int:
    if args.command == "put":
        if args.multipart:
            body = await client.put_multipart_file(args.src, args.key, timeout=args.timeout)
            if body:
                print(body)
        else:
            response = await client.put_file(args.src, args.key)
            print(response.headers.get("ETag", ""))

    elif args.command == "get":
        response = await client.get_file(args.key)
        if args.dest == "-":
            sys.stdout.buffer.write(response.content)
            sys.stdout.flush()
        else:
            Path(args.dest).write_bytes(response.content)
            logger.info("Wrote %d bytes to %s", len(response.content), args.dest)

    elif args.command == "head":
        response = await client.head_file(args.key)
        for name, value in response.headers.items():
            print(f"{name}: {value}")

    elif args.command == "delete":
        await client.delete_file(args.key)

    elif args.command == "url":
        print(client.https(args.key) if args.https else client.url(args.key))

    elif args.command == "sign":
        expiration = datetime.now(timezone.utc) + timedelta(seconds=args.expires)
        print(client.signed_url(args.key, expiration))

    return 0


async def _main_async(
    args: argparse.Namespace,
    config: KnoxConfig,
    transport: httpx.AsyncBaseTransport | None,
) -> int:
    async with Client.from_config(config, transport=transport) as client:
        return await _run(args, client)


def main(argv: list[str] | None = None, transport: httpx.AsyncBaseTransport | None = None) -> int:
    """Main entry point for the knox CLI.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].
        transport: Optional httpx transport for the client.

    Returns:
        Process exit code.
    """
    args = parse_args(argv)

    # Basic stderr logger for config-loading errors
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)

    try:
        config = apply_env_overrides(load_config(args.config))
    except FileNotFoundError:
        logger.error("Config file not found: %s", args.config)
        return 1
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        return 1

    if args.log_level is not None:
        config.logging.level = args.log_level
    if args.log_format is not None:
        config.logging.format = args.log_format
    configure_logging(level=config.logging.level, fmt=config.logging.format)

    if config.observability.metrics:
        import knox.metrics as _metrics

        _metrics.init_metrics()

    try:
        return asyncio.run(_main_async(args, config, transport))
    except KnoxError as exc:
        logger.error("%s", exc.message)
        return 1
    except OSError as exc:
        logger.error("%s", exc)
        return 1


def entry_point() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    entry_point()

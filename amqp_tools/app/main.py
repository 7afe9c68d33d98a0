import argparse
import asyncio
import signal
import sys
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from amqp_tools import __version__
from amqp_tools.app.composition import create_session
from amqp_tools.app.config.settings import Settings
from amqp_tools.app.constants import ExitCode, RetrievalMode
from amqp_tools.app.core import SERVICE_NAME
from amqp_tools.app.core.logging import configure_logging
from amqp_tools.app.domain.models import DirectoryTarget, RetrievalRequest, StdoutTarget


def _log(event: str, **kwargs) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{value!r} is not an integer") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"{value} is not a positive integer")
    return number


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{value!r} is not a number") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"{value} must be greater than zero")
    return number


def _queue_name(value: str) -> str:
    if not value.strip():
        raise argparse.ArgumentTypeError("queue name must not be empty")
    return value


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-c",
        "--config",
        "--connection",
        dest="profile",
        required=True,
        metavar="PROFILE",
        help="connection profile defined in the config file",
    )
    common.add_argument("queue", type=_queue_name, metavar="QUEUE", help="name of the queue")

    parser = argparse.ArgumentParser(
        prog="amqp-tools",
        description="Read or peek at messages on an AMQP 0-9-1 queue.",
        epilog=(
            "exit codes: 0 ok, 2 usage, 3 configuration, 4 connection, "
            "5 broker/queue, 6 output, 130 interrupted"
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="log to stderr (-vv for debug)")
    commands = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    read = commands.add_parser(
        "read",
        parents=[common],
        help="consume messages, write each to its own file, then acknowledge it",
    )
    read.add_argument(
        "-l",
        "--limit",
        type=_positive_int,
        default=1,
        help="maximum number of messages to read (default: %(default)s)",
    )
    read.add_argument(
        "-o",
        "--output",
        type=Path,
        required=True,
        metavar="DIR",
        help="directory receiving one file per message (created if missing)",
    )
    read.add_argument(
        "--idle-timeout",
        type=_positive_float,
        default=None,
        metavar="SECONDS",
        help="stop after this long without a delivery (default: wait until interrupted)",
    )
    read.add_argument(
        "--prefetch",
        type=_positive_int,
        default=None,
        help="maximum unacknowledged deliveries in flight (default: min(limit, 10))",
    )

    commands.add_parser(
        "peek",
        parents=[common],
        help="print the message at the head of the queue without removing it",
    )
    return parser


def build_request(args: argparse.Namespace) -> RetrievalRequest:
    if args.command == "read":
        return RetrievalRequest(
            queue_name=args.queue,
            mode=RetrievalMode.READ,
            target=DirectoryTarget(args.output),
            limit=args.limit,
        )
    return RetrievalRequest(queue_name=args.queue, mode=RetrievalMode.PEEK, target=StdoutTarget(), limit=1)


async def run(args: argparse.Namespace, settings: Settings) -> ExitCode:
    session = create_session(
        settings,
        prefetch_window=getattr(args, "prefetch", None),
        idle_timeout_seconds=getattr(args, "idle_timeout", None),
    )
    request = build_request(args)

    stop = asyncio.Event()

    def request_shutdown() -> None:
        if not stop.is_set():
            _log("shutdown_signal")
            stop.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown)
        except NotImplementedError:
            pass

    return await session.execute(request, args.profile, stop)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "read" and args.output.exists() and not args.output.is_dir():
        parser.error(f"argument -o/--output: {args.output} exists and is not a directory")

    try:
        settings = Settings()
    except ValidationError as e:
        print(f"configuration error: invalid environment settings: {e}", file=sys.stderr)
        return ExitCode.CONFIG_ERROR

    level = settings.log_level
    if args.verbose == 1:
        level = "INFO"
    elif args.verbose > 1:
        level = "DEBUG"
    configure_logging(level)

    try:
        return int(asyncio.run(run(args, settings)))
    except KeyboardInterrupt:
        _log("interrupted")
        return ExitCode.INTERRUPTED
    except Exception as e:
        logger.exception("amqp-tools failed: {}", e)
        raise


if __name__ == "__main__":
    sys.exit(main())

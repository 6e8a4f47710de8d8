"""Command-line interface parsing and validation."""

import argparse
import os

STAGES = ("dev", "staging", "prod")


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="PostgreSQL connection string",
    )

    parser.add_argument(
        "--stage",
        default=os.environ.get("STAGE", "dev"),
        choices=STAGES,
        help="Deployment stage (anything but prod uses the exchange sandbox)",
    )

    parser.add_argument(
        "--event-sink",
        default=os.environ.get("EVENT_SINK", "postgres"),
        choices=["postgres", "log"],
        help="Where execution events are published",
    )

    parser.add_argument(
        "--max-retries",
        type=int,
        default=int(os.environ.get("MAX_RETRIES", "3")),
        help="Delivery attempts before a plan is failed for good",
    )

    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )

    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep running instead of doing a single pass",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Savings plan scheduler: scans due plans and executes purchases",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    scan = commands.add_parser(
        "scan",
        help="Dispatch due ACTIVE plans",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_arguments(scan)

    scan.add_argument(
        "--batch-size",
        type=int,
        default=int(os.environ.get("MAX_BATCH_SIZE", "25")),
        help="Maximum plans picked up per scan",
    )

    scan.add_argument(
        "--scan-interval",
        type=int,
        default=int(os.environ.get("SCAN_INTERVAL_MINUTES", "5")),
        help="Minutes between scans when looping",
    )

    scan.add_argument(
        "--max-workers",
        type=int,
        default=int(os.environ.get("SCAN_MAX_WORKERS", "10")),
        help="Plans dispatched concurrently within one scan",
    )

    execute = commands.add_parser(
        "execute",
        help="Execute dispatched plans from the queue",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_arguments(execute)

    execute.add_argument(
        "--batch-size",
        type=int,
        default=int(os.environ.get("EXECUTOR_BATCH_SIZE", "5")),
        help="Messages received per batch",
    )

    execute.add_argument(
        "--poll-interval",
        type=int,
        default=int(os.environ.get("POLL_INTERVAL", "10")),
        help="Seconds to wait when the queue is empty while looping",
    )

    execute.add_argument(
        "--visibility-timeout",
        type=int,
        default=int(os.environ.get("VISIBILITY_TIMEOUT", "300")),
        help="Seconds a received message stays hidden before redelivery",
    )

    execute.add_argument(
        "--max-receive-count",
        type=int,
        default=os.environ.get("MAX_RECEIVE_COUNT"),
        help="Deliveries before dead-lettering (default: max retries + 1)",
    )

    execute.add_argument(
        "--secret-id",
        default=os.environ.get("EXCHANGE_API_SECRET_ID", "exchange-api-credentials"),
        help="Secret holding the exchange API credentials",
    )

    execute.add_argument(
        "--secrets-dir",
        default=os.environ.get("SECRETS_DIR"),
        help="Read secrets from files in this directory instead of the environment",
    )

    return parser.parse_args(argv)


def validate_args(args: argparse.Namespace) -> None:
    """Validate command line arguments. Raises ValueError on invalid input."""
    if not args.database_url:
        raise ValueError("--database-url (or DATABASE_URL) is required")

    if args.max_retries < 0:
        raise ValueError(f"--max-retries must not be negative, got {args.max_retries}")

    if args.batch_size <= 0:
        raise ValueError(f"--batch-size must be positive, got {args.batch_size}")

    if args.command == "scan":
        if not 1 <= args.scan_interval <= 15:
            raise ValueError(
                f"--scan-interval must be between 1 and 15 minutes, got {args.scan_interval}"
            )
        if args.max_workers <= 0:
            raise ValueError(f"--max-workers must be positive, got {args.max_workers}")

    if args.command == "execute":
        max_receive_count = args.max_receive_count
        if isinstance(max_receive_count, str):
            max_receive_count = int(max_receive_count) if max_receive_count else None

        if max_receive_count is None:
            max_receive_count = args.max_retries + 1
        args.max_receive_count = max_receive_count

        if max_receive_count <= 0:
            raise ValueError(
                f"--max-receive-count must be positive, got {max_receive_count}"
            )

        if args.visibility_timeout <= 0:
            raise ValueError(
                f"--visibility-timeout must be positive, got {args.visibility_timeout}"
            )

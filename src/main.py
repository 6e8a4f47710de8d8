"""Savings plan scheduler - Entry point."""

import argparse
import logging
import sys
import time

from psycopg import Connection
from psycopg.rows import TupleRow
from psycopg_pool import ConnectionPool

from src.cli import parse_args, validate_args
from src.domain.errors import ScanFailedError
from src.exchange_client import (
    EnvironmentSecretStore,
    ExchangeClient,
    FileSecretStore,
    SecretStore,
)
from src.executor import PlanExecutor
from src.infrastructure.events import (
    EventPublisher,
    LoggingEventPublisher,
    PostgresEventPublisher,
)
from src.infrastructure.queue import DispatchQueue, PostgresDispatchQueue
from src.infrastructure.repositories import (
    PostgresPlanRepository,
    PostgresTransactionRepository,
)
from src.scanner import PlanScanner
from src.utils import create_logger

# psycopg_pool's default min_size
DEFAULT_POOL_SIZE = 4


def build_event_publisher(
    args: argparse.Namespace,
    pool: ConnectionPool[Connection[TupleRow]],
    logger: logging.Logger,
) -> EventPublisher:
    if args.event_sink == "log":
        return LoggingEventPublisher(logger, args.stage)
    return PostgresEventPublisher(pool, args.stage)


def run_scanner(
    args: argparse.Namespace,
    pool: ConnectionPool[Connection[TupleRow]],
    logger: logging.Logger,
) -> int:
    scanner = PlanScanner(
        plans=PostgresPlanRepository(pool),
        queue=PostgresDispatchQueue(pool, logger=logger),
        events=build_event_publisher(args, pool, logger),
        logger=logger,
        batch_size=args.batch_size,
        max_workers=args.max_workers,
    )

    while True:
        try:
            scanner.run()
        except ScanFailedError as e:
            logger.error(f"Scan failed: {e}")
            if not args.loop:
                return 1
        except Exception as e:
            if not args.loop:
                raise
            logger.exception(f"Scan error, retrying next interval: {e}")

        if not args.loop:
            return 0

        time.sleep(args.scan_interval * 60)


def drain_once(
    executor: PlanExecutor,
    queue: DispatchQueue,
    batch_size: int,
) -> int:
    """Receive one batch, process it, ack or fail each message. Returns batch size."""
    messages = queue.receive(batch_size)
    if not messages:
        return 0

    failed = set(executor.process_batch(messages))

    for message in messages:
        if message.message_id in failed:
            queue.fail(message.message_id)
        else:
            queue.ack(message.message_id)

    return len(messages)


def run_executor(
    args: argparse.Namespace,
    pool: ConnectionPool[Connection[TupleRow]],
    logger: logging.Logger,
) -> int:
    store: SecretStore = (
        FileSecretStore(args.secrets_dir) if args.secrets_dir else EnvironmentSecretStore()
    )
    # Resolved once per process; prod aborts here if the secret is unavailable
    exchange = ExchangeClient.from_secrets(store, args.secret_id, args.stage, logger)

    queue = PostgresDispatchQueue(
        pool,
        max_receive_count=args.max_receive_count,
        visibility_timeout=args.visibility_timeout,
        logger=logger,
    )
    executor = PlanExecutor(
        plans=PostgresPlanRepository(pool),
        transactions=PostgresTransactionRepository(pool),
        exchange=exchange,
        events=build_event_publisher(args, pool, logger),
        logger=logger,
        max_retries=args.max_retries,
    )

    while True:
        try:
            received = drain_once(executor, queue, args.batch_size)
        except Exception as e:
            if not args.loop:
                raise
            logger.exception(f"Queue poll failed, retrying: {e}")
            received = 0

        if not args.loop:
            return 0

        if received == 0:
            time.sleep(args.poll_interval)


def pool_size(args: argparse.Namespace) -> int:
    """One connection per scan worker, never below the pool default."""
    if args.command == "scan":
        return max(args.max_workers, DEFAULT_POOL_SIZE)
    return DEFAULT_POOL_SIZE


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    logger = create_logger("savings-plan", args.log_level)

    try:
        validate_args(args)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    logger.info(f"Command: {args.command} | Stage: {args.stage} | Loop: {args.loop}")
    logger.debug(f"Batch size: {args.batch_size} | Max retries: {args.max_retries}")

    pool: ConnectionPool[Connection[TupleRow]] = ConnectionPool(
        args.database_url, max_size=pool_size(args)
    )

    try:
        if args.command == "scan":
            return run_scanner(args, pool, logger)
        return run_executor(args, pool, logger)

    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return 0
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1
    finally:
        pool.close()


if __name__ == "__main__":
    sys.exit(main())

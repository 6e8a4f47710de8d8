import pytest

from src.cli import parse_args, validate_args


def test_scan_defaults(monkeypatch):
    for name in ("MAX_BATCH_SIZE", "SCAN_INTERVAL_MINUTES", "STAGE", "MAX_RETRIES"):
        monkeypatch.delenv(name, raising=False)

    args = parse_args(["scan", "--database-url", "postgresql://localhost/savings"])
    validate_args(args)

    assert args.batch_size == 25
    assert args.scan_interval == 5
    assert args.stage == "dev"
    assert args.max_retries == 3


def test_execute_reads_environment(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/savings")
    monkeypatch.setenv("MAX_RETRIES", "5")
    monkeypatch.setenv("EXECUTOR_BATCH_SIZE", "10")
    monkeypatch.delenv("MAX_RECEIVE_COUNT", raising=False)

    args = parse_args(["execute"])
    validate_args(args)

    assert args.max_retries == 5
    assert args.batch_size == 10
    # Dead-lettering happens only after the max-retries delivery
    assert args.max_receive_count == 6


def test_explicit_max_receive_count_from_environment(monkeypatch):
    monkeypatch.setenv("MAX_RECEIVE_COUNT", "8")
    args = parse_args(["execute", "--database-url", "postgresql://db"])
    validate_args(args)
    assert args.max_receive_count == 8


def test_database_url_is_required(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    args = parse_args(["scan"])
    with pytest.raises(ValueError, match="database-url"):
        validate_args(args)


@pytest.mark.parametrize("interval", ["0", "16"])
def test_scan_interval_range(interval):
    args = parse_args(["scan", "--database-url", "postgresql://db", "--scan-interval", interval])
    with pytest.raises(ValueError, match="scan-interval"):
        validate_args(args)


def test_batch_size_must_be_positive():
    args = parse_args(["execute", "--database-url", "postgresql://db", "--batch-size", "0"])
    with pytest.raises(ValueError, match="batch-size"):
        validate_args(args)


def test_unknown_stage_is_rejected():
    with pytest.raises(SystemExit):
        parse_args(["scan", "--stage", "qa"])

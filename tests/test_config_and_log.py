"""Tests for RetentionConfig, LogLevel, DiagnosticLog, FileStats and the format helpers."""

import dataclasses
import os
import time
from pathlib import Path

import pytest

from logsweep import DiagnosticLog, FileStats, LogLevel, RetentionConfig, format_age, format_size


@pytest.mark.parametrize(
    "max_backups, max_age_days, expected",
    [(0, 0, False), (-1, -1, False), (1, 0, True), (0, 1, True), (3, 7, True)],
)
def test_config_has_limits(max_backups: int, max_age_days: int, expected: bool) -> None:
    config = RetentionConfig("/var/log/app.log", max_backups=max_backups, max_age_days=max_age_days)
    assert config.has_limits is expected


@pytest.mark.parametrize(
    "overrides, message",
    [
        (dict(base_file_path=""), "must not be empty"),
        (dict(max_backups="3"), "must be an integer"),
        (dict(max_age_days=True), "must be an integer"),
        (dict(max_age_days=1.5), "must be an integer"),
        (dict(age_type="ntime"), "Invalid age type"),
    ],
)
def test_config_validation(overrides: dict, message: str) -> None:
    values: dict = dict(base_file_path="/var/log/app.log")
    values.update(overrides)
    with pytest.raises(ValueError, match=message):
        RetentionConfig(**values)


def test_config_is_immutable() -> None:
    config = RetentionConfig("/var/log/app.log", max_backups=2)
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.max_backups = 3  # type: ignore[misc]
    assert config.base_path == Path("/var/log/app.log")


@pytest.mark.parametrize("value, expected", [("e", LogLevel.ERROR), ("warn", LogLevel.WARN), ("2", LogLevel.INFO), ("DEBUG", LogLevel.DEBUG)])
def test_log_level_from_name_or_number(value: str, expected: LogLevel) -> None:
    assert LogLevel.from_name_or_number(value) is expected


def test_log_level_invalid() -> None:
    with pytest.raises(ValueError, match="Invalid log level: x"):
        LogLevel.from_name_or_number("x")


def test_diagnostic_log_respects_verbosity(capsys: pytest.CaptureFixture[str]) -> None:
    log = DiagnosticLog(LogLevel.WARN)
    log.verbose(LogLevel.WARN, "shown")
    log.verbose(LogLevel.INFO, "hidden")

    err = capsys.readouterr().err
    assert "[WARN] shown" in err
    assert "hidden" not in err


def test_diagnostic_log_decisions(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Without debug only the latest decision is kept, with debug the whole history including file details."""
    file = tmp_path / "app.log.1"
    file.write_text("data")

    log = DiagnosticLog(LogLevel.INFO)
    log.add_decision(LogLevel.INFO, file, "Pruning: max age exceeded")
    log.add_decision(LogLevel.INFO, file, "Keeping")
    assert log.decisions_for(file) == ["Keeping"]

    stats = FileStats("mtime")
    debug_log = DiagnosticLog(LogLevel.DEBUG, stats)
    debug_log.add_decision(LogLevel.INFO, file, "First", debug="rule: age")
    debug_log.add_decision(LogLevel.INFO, file, "Second")
    assert debug_log.decisions_for(file) == ["Second", "First"]

    debug_log.print_decisions([file])
    err = capsys.readouterr().err
    assert "app.log.1: Second (mtime: " in err
    assert "└── First (rule: age, mtime: " in err
    assert "size: 4" in err


def test_file_stats_age_types(tmp_path: Path) -> None:
    file = tmp_path / "app.log.1"
    file.write_text("abc")
    ts = time.time() - 3600
    os.utime(file, (ts - 60, ts))

    assert FileStats("mtime").get_file_seconds(file) == pytest.approx(ts)
    assert FileStats("atime").get_file_seconds(file) == pytest.approx(ts - 60)
    assert FileStats("mtime").get_file_bytes(file) == 3
    stats = file.stat()
    assert FileStats("birthtime").get_file_seconds(file) == getattr(stats, "st_birthtime", stats.st_ctime)


@pytest.mark.parametrize("seconds, expected", [(30, "30s"), (7200, "2h"), (3 * 86400, "3d"), (14 * 86400, "2w"), (0, "0s")])
def test_format_age(seconds: float, expected: str) -> None:
    assert format_age(seconds) == expected


@pytest.mark.parametrize("size, expected", [(0, "0"), (512, "512"), (2048, "2K"), (1536, "1.5K"), (3 * 1024**2, "3M")])
def test_format_size(size: int, expected: str) -> None:
    assert format_size(size) == expected

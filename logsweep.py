#
# logsweep
#
# Age and count based retention for rolled log files, hooked into the standard library's rotating file handler.
#
# Copyright (c) 2025-2026 The logsweep authors
#
# Licensed under the MIT License. See LICENSE file in the project root for license information.
#

import logging
import os
import sys
import time
import traceback
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from datetime import time as datetime_time
from enum import Enum, IntEnum
from fnmatch import fnmatch
from logging.handlers import TimedRotatingFileHandler
from os import stat_result
from pathlib import Path
from typing import Callable, Optional, Protocol, TextIO, Union


SECONDS_PER_DAY: int = 24 * 60 * 60

# Coarsest common timestamp resolution (FAT)
TIMESTAMP_TOLERANCE_SECONDS: float = 2.0

AGE_TYPES: tuple[str, ...] = ("birthtime", "ctime", "mtime", "atime")

CLEANUP_MOMENTS: tuple[str, ...] = ("append", "rollover")


class SweepAbortedError(Exception):
    pass


class FileCouldNotBeDeletedError(Exception):
    pass


class IntegrityCheckFailedError(Exception):
    pass


class LogLevel(IntEnum):
    ERROR = 0
    WARN = 1
    INFO = 2
    DEBUG = 3

    @classmethod
    def from_name_or_number(cls, prefix: str) -> "LogLevel":
        try:
            return next(m for m in cls if m.name.startswith(prefix.upper()))
        except StopIteration:
            try:
                return cls(int(prefix))
            except ValueError:
                raise ValueError("Invalid log level: " + prefix)


class FailureCode(IntEnum):
    GENERIC_FAILURE = 1
    INTEGRITY_FAILURE = 2
    UNEXPECTED = 9


def format_size(bytes: int) -> str:
    units = ["", "K", "M", "G", "T", "E", "P"]
    idx, value = 0, float(bytes)
    while value >= 1024 and idx < len(units) - 1:
        value /= 1024
        idx += 1
    return f"{value:.2f}".rstrip("0").rstrip(".") + units[idx]


def format_age(seconds: float) -> str:
    units = [("y", 365 * SECONDS_PER_DAY), ("w", 7 * SECONDS_PER_DAY), ("d", SECONDS_PER_DAY), ("h", 60 * 60), ("s", 1)]
    value, suffix = float(seconds), "s"
    for s, v in units:
        if seconds >= v:
            value = seconds / v
            suffix = s
            break
    return f"{value:.2f}".rstrip("0").rstrip(".") + suffix


@dataclass(frozen=True)
class RetentionConfig:
    """Retention settings for one before-append cycle.

    ``max_backups`` and ``max_age_days`` disable their limit when ``<= 0``; with both disabled no sweep happens.
    """

    base_file_path: str
    max_backups: int = 0
    max_age_days: int = 0
    preserve_extension: bool = False
    age_type: str = "birthtime"
    normalize_creation_time: bool = True
    fail_fast: bool = False
    dry_run: bool = False
    verbose: LogLevel = LogLevel.ERROR

    def __post_init__(self) -> None:
        if not self.base_file_path:
            raise ValueError("base_file_path must not be empty")
        for name in ("max_backups", "max_age_days"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"Invalid value '{value}' for {name}: must be an integer")
        if self.age_type not in AGE_TYPES:
            raise ValueError(f"Invalid age type '{self.age_type}' (use {', '.join(AGE_TYPES)})")

    @property
    def base_path(self) -> Path:
        return Path(self.base_file_path)

    @property
    def has_limits(self) -> bool:
        return self.max_backups > 0 or self.max_age_days > 0


class FileStats:
    """Stat results for the duration of a single sweep."""

    age_type: str
    _file_stats: dict[Path, stat_result]

    def __init__(self, age_type: str) -> None:
        self.age_type = age_type
        self._file_stats = {}

    def _stat(self, file: Path) -> stat_result:
        if file not in self._file_stats:
            self._file_stats[file] = file.stat()
        return self._file_stats[file]

    def get_file_seconds(self, file: Path) -> float:
        stats = self._stat(file)
        if self.age_type == "birthtime":  # st_birthtime is missing on most Linux builds
            return getattr(stats, "st_birthtime", stats.st_ctime)
        return getattr(stats, f"st_{self.age_type}")

    def get_file_bytes(self, file: Path) -> int:
        return self._stat(file).st_size


class DiagnosticLog:
    _verbose: LogLevel
    _file_stats: Optional[FileStats]
    _decisions: dict[Path, list[tuple[str, Optional[str]]]]

    def __init__(self, verbose: LogLevel, file_stats: Optional[FileStats] = None) -> None:
        self._verbose = verbose
        self._file_stats = file_stats
        self._decisions = defaultdict(list)

    def attach_file_stats(self, file_stats: FileStats) -> None:
        self._file_stats = file_stats

    def _get_file_attributes(self, file: Path) -> str:
        if self._file_stats is None:
            return ""
        return f"{self._file_stats.age_type}: {datetime.fromtimestamp(self._file_stats.get_file_seconds(file))}, size: {format_size(self._file_stats.get_file_bytes(file))}"

    def has_log_level(self, level: LogLevel) -> bool:
        return level <= int(self._verbose)

    def _raw_verbose(self, level: LogLevel, message: str, file: Optional[TextIO] = None, prefix: str = "") -> None:
        print(f"[{prefix or LogLevel(level).name}] {message}", file=file or sys.stderr)

    def verbose(self, level: LogLevel, message: str, file: Optional[TextIO] = None, prefix: str = "") -> None:
        if self.has_log_level(level):
            self._raw_verbose(level, message, file, prefix)

    def add_decision(self, level: LogLevel, file: Path, message: str, debug: Optional[str] = None) -> None:
        if not self.has_log_level(level):
            return
        if self.has_log_level(LogLevel.DEBUG):  # Decision history and file details only with debug log level
            details = ", ".join(part for part in (debug, self._get_file_attributes(file)) if part)
            self._decisions[file].insert(0, (message, details or None))
        elif self._decisions[file]:
            self._decisions[file][0] = (message, None)
        else:
            self._decisions[file].insert(0, (message, None))

    def decisions_for(self, file: Path) -> list[str]:
        return [message for message, _ in self._decisions.get(file, [])]

    def _format_decision(self, decision: tuple[str, Optional[str]]) -> str:
        message, debug = decision
        return message + (f" ({debug})" if debug is not None else "")

    def print_decisions(self, files: Iterable[Path]) -> None:
        files = [file for file in files if self._decisions.get(file)]
        if not files:
            return
        longest_file_name_length = max(len(file.name) for file in files)
        for file in files:
            decisions = self._decisions[file]
            self._raw_verbose(LogLevel.INFO, f"{file.name:<{longest_file_name_length}}: {self._format_decision(decisions[0])}")
            if not self.has_log_level(LogLevel.DEBUG):
                continue
            for idx, decision in enumerate(decisions[1:]):
                self._raw_verbose(LogLevel.DEBUG, f"{' ' * ((longest_file_name_length + 2) + idx * 4)}└── {self._format_decision(decision)}")


def report_failure(exception: BaseException, code: FailureCode, stacktrace: bool = False, prefix: str = "") -> None:
    if stacktrace:
        traceback.print_exception(type(exception), exception, exception.__traceback__)
    print(f"[{prefix or LogLevel.ERROR.name}] ({code.name}) {exception}", file=sys.stderr)


ErrorReporter = Callable[[BaseException, FailureCode], None]


def wildcard_pattern_for(base_file_path: Union[str, Path], preserve_extension: bool) -> str:
    # A glob, not a regex: it also matches unrelated look-alikes such as "app.2024-01-01 - Copy.log"
    base = Path(base_file_path)
    if preserve_extension:
        return f"{base.stem}.*{base.suffix}"
    return f"{base.name}.*"


class FileMatcher(Protocol):
    pattern: str

    def list_candidates(self, directory: Path) -> list[Path]: ...


class GlobMatcher:
    pattern: str

    def __init__(self, base_file_path: Union[str, Path], preserve_extension: bool) -> None:
        self.pattern = wildcard_pattern_for(base_file_path, preserve_extension)

    def matches(self, file: Path) -> bool:
        return fnmatch(file.name, self.pattern)

    def list_candidates(self, directory: Path) -> list[Path]:
        if not directory.exists():
            raise FileNotFoundError(f"Path not found: {directory}")
        if not directory.is_dir():
            raise NotADirectoryError(f"Path is not a directory: {directory}")
        # Sorted by name so equal timestamps keep a stable order
        return sorted((file for file in directory.iterdir() if file.is_file() and self.matches(file)), key=lambda file: file.name)


@dataclass(frozen=True)
class CandidateFile:
    path: Path
    creation_time: float


@dataclass
class RetentionPlan:
    keep: list[CandidateFile]
    prune: list[CandidateFile]


class DeletionStatus(Enum):
    DELETED = "deleted"
    FAILED = "failed"
    DRY_RUN = "dry-run"


@dataclass
class DeletionResult:
    candidate: CandidateFile
    status: DeletionStatus
    error: Optional[OSError] = None


@dataclass
class SweepResult:
    candidates: list[CandidateFile] = field(default_factory=list)
    plan: RetentionPlan = field(default_factory=lambda: RetentionPlan([], []))
    results: list[DeletionResult] = field(default_factory=list)

    @property
    def deleted(self) -> list[Path]:
        return [result.candidate.path for result in self.results if result.status is DeletionStatus.DELETED]

    @property
    def failed(self) -> list[Path]:
        return [result.candidate.path for result in self.results if result.status is DeletionStatus.FAILED]


class RetentionSweeper:
    """Deletes rolled log files that exceed the age limit or the backup count.

    Every call re-reads the directory; nothing is carried over between sweeps. The age rule runs first,
    the count rule then prunes oldest-first until exactly ``max_backups`` files remain, counting files the
    age rule already pruned.
    """

    _config: RetentionConfig
    _log: DiagnosticLog
    _matcher: FileMatcher
    _clock: Callable[[], float]

    def __init__(self, config: RetentionConfig, log: DiagnosticLog, matcher: Optional[FileMatcher] = None, clock: Callable[[], float] = time.time) -> None:
        self._config = config
        self._log = log
        self._matcher = matcher if matcher is not None else GlobMatcher(config.base_file_path, config.preserve_extension)
        self._clock = clock

    @property
    def directory(self) -> Path:
        return self._config.base_path.parent

    def collect_candidates(self) -> list[CandidateFile]:
        file_stats = FileStats(self._config.age_type)
        self._log.attach_file_stats(file_stats)
        self._log.verbose(LogLevel.DEBUG, f"Delete files search pattern: '{self._matcher.pattern}' in '{self.directory}'")
        try:
            files = self._matcher.list_candidates(self.directory)
        except OSError as e:
            raise SweepAbortedError(f"Exception while removing old files '{self._matcher.pattern}' (max backups: {self._config.max_backups}, max age: {self._config.max_age_days} days): {e}") from e

        candidates: list[CandidateFile] = []
        for file in files:
            try:
                candidates.append(CandidateFile(file, file_stats.get_file_seconds(file)))
            except FileNotFoundError:  # Removed between listing and stat
                self._log.verbose(LogLevel.DEBUG, f"Skipping vanished file: {file.name}")
            except OSError as e:
                raise SweepAbortedError(f"Exception while reading file '{file.name}': {e}") from e

        # oldest first; sorted() is stable, so ties keep the name order
        return sorted(candidates, key=lambda candidate: candidate.creation_time)

    def plan(self, candidates: list[CandidateFile]) -> RetentionPlan:
        now = self._clock()
        prune: dict[Path, CandidateFile] = {}

        # max-age
        if self._config.max_age_days > 0:
            threshold = now - self._config.max_age_days * SECONDS_PER_DAY
            for candidate in candidates:
                if candidate.creation_time < threshold:
                    self._log.add_decision(LogLevel.INFO, candidate.path, f"Pruning: max age exceeded: {format_age(now - candidate.creation_time)} > {self._config.max_age_days}d")
                    prune[candidate.path] = candidate

        # max-backups
        if self._config.max_backups > 0:
            excess = (len(candidates) - len(prune)) - self._config.max_backups
            if excess > 0:
                for candidate in candidates:
                    if len(candidates) - len(prune) <= self._config.max_backups:
                        break
                    if candidate.path not in prune:
                        self._log.add_decision(LogLevel.INFO, candidate.path, f"Pruning: max backups exceeded: {len(candidates) - len(prune):02d} > {self._config.max_backups:02d}")
                        prune[candidate.path] = candidate

        keep = [candidate for candidate in candidates if candidate.path not in prune]
        for candidate in keep:
            self._log.add_decision(LogLevel.INFO, candidate.path, "Keeping")

        # Simple integrity check
        if not len(candidates) == len(keep) + len(prune):
            raise IntegrityCheckFailedError(f"File count mismatch: some files are neither kept nor pruned (all: {len(candidates)}, keep: {len(keep)}, prune: {len(prune)})!!")

        return RetentionPlan(keep, list(prune.values()))

    def delete(self, prune: Iterable[CandidateFile]) -> list[DeletionResult]:
        results: list[DeletionResult] = []
        directory = self.directory.resolve()
        for candidate in prune:
            if not candidate.path.parent.resolve() == directory:
                raise IntegrityCheckFailedError(f"File '{candidate.path}' is not a child of log directory '{self.directory}'")
            created = datetime.fromtimestamp(candidate.creation_time)
            if self._config.dry_run:
                self._log.verbose(LogLevel.INFO, f"DRY-RUN DELETE: {candidate.path.name} ({self._config.age_type}: {created})")
                results.append(DeletionResult(candidate, DeletionStatus.DRY_RUN))
                continue
            self._log.verbose(LogLevel.INFO, f"DELETING: {candidate.path.name} ({self._config.age_type}: {created})")
            try:
                candidate.path.unlink()
            except OSError as e:
                if self._config.fail_fast:
                    raise FileCouldNotBeDeletedError(f"Error while deleting file '{candidate.path.name}': {e}") from e
                self._log.verbose(LogLevel.WARN, f"Error while deleting file '{candidate.path.name}': {e}")
                results.append(DeletionResult(candidate, DeletionStatus.FAILED, e))
                continue
            results.append(DeletionResult(candidate, DeletionStatus.DELETED))
        return results

    def sweep(self) -> SweepResult:
        if not self._config.has_limits:
            self._log.verbose(LogLevel.DEBUG, "No retention limits configured, skipping sweep")
            return SweepResult()

        candidates = self.collect_candidates()
        plan = self.plan(candidates)

        self._log.print_decisions(candidate.path for candidate in candidates)
        self._log.verbose(LogLevel.INFO, f"Total files found: {len(candidates):03d}")
        self._log.verbose(LogLevel.INFO, f"Total files keep:  {len(plan.keep):03d}")
        self._log.verbose(LogLevel.INFO, f"Total files prune: {len(plan.prune):03d}")

        if not plan.prune:
            return SweepResult(candidates, plan)
        return SweepResult(candidates, plan, self.delete(plan.prune))


class FileHandle(Protocol):
    def close(self) -> None: ...

    def reopen_for_append(self) -> None: ...

    def current_size(self) -> int: ...


def touch_creation_time(path: Path, timestamp: float) -> None:
    # POSIX refreshes st_ctime on any metadata change; st_birthtime can only be moved backwards
    os.utime(path, (timestamp, timestamp))


class TimestampNormalizer:
    """Resets the timestamps of a freshly rolled, still empty log file.

    Some filesystems (NTFS tunnelling) hand a new file the creation time of a file recently removed or renamed
    under the same name, which would make the new file look old to the age rule.
    """

    _handle: FileHandle
    _log: DiagnosticLog
    _clock: Callable[[], float]
    _age_type: str

    def __init__(self, handle: FileHandle, log: DiagnosticLog, clock: Callable[[], float] = time.time, age_type: str = "birthtime") -> None:
        self._handle = handle
        self._log = log
        self._clock = clock
        self._age_type = age_type

    def normalize(self, path: Path) -> bool:
        try:
            size = self._handle.current_size()
        except OSError as e:
            self._log.verbose(LogLevel.DEBUG, f"Cannot read size of '{path}', skipping creation time reset: {e}")
            return False
        if size != 0:
            return False

        # The handle must be closed, otherwise the metadata update may be deferred
        self._handle.close()
        try:
            now = self._clock()
            touch_creation_time(path, now)
        except (OSError, NotImplementedError) as e:
            self._log.verbose(LogLevel.WARN, f"Could not reset creation time of '{path.name}': {e}")
            return False
        finally:
            self._handle.reopen_for_append()

        # utime cannot move st_birthtime forward, so check what the age rule will actually see
        try:
            stamped = FileStats(self._age_type).get_file_seconds(path)
        except OSError as e:
            self._log.verbose(LogLevel.WARN, f"Could not verify creation time of '{path.name}': {e}")
            return False
        if stamped < now - TIMESTAMP_TOLERANCE_SECONDS:
            self._log.verbose(LogLevel.WARN, f"Creation time of '{path.name}' is still {datetime.fromtimestamp(stamped)} ({self._age_type} not settable on this platform)")
            return False
        self._log.verbose(LogLevel.DEBUG, f"Setting creation time to now: {datetime.fromtimestamp(now)}")
        return True


class BeforeAppendHook:
    """Runs the timestamp normalizer and then the retention sweep; failures go to ``report`` and are never raised."""

    _handle: FileHandle
    _report: ErrorReporter
    _matcher: Optional[FileMatcher]
    _clock: Callable[[], float]

    def __init__(self, handle: FileHandle, report: ErrorReporter = report_failure, matcher: Optional[FileMatcher] = None, clock: Callable[[], float] = time.time) -> None:
        self._handle = handle
        self._report = report
        self._matcher = matcher
        self._clock = clock

    def run(self, config: RetentionConfig) -> Optional[SweepResult]:
        log = DiagnosticLog(config.verbose)
        log.verbose(LogLevel.DEBUG, f"Adjusting file before append: {config.base_file_path}")
        try:
            if config.normalize_creation_time:
                TimestampNormalizer(self._handle, log, self._clock, config.age_type).normalize(config.base_path)
            if not config.has_limits:
                return None
            log.verbose(LogLevel.DEBUG, f"Removing older files (max backups: {config.max_backups}, max age: {config.max_age_days} days)")
            result = RetentionSweeper(config, log, self._matcher, self._clock).sweep()
            if result.failed:  # best effort deletion still has to reach the error channel
                self._report(FileCouldNotBeDeletedError(f"Error while deleting file(s): {', '.join(file.name for file in result.failed)}"), FailureCode.GENERIC_FAILURE)
            return result
        except (SweepAbortedError, FileCouldNotBeDeletedError) as e:
            self._report(e, FailureCode.GENERIC_FAILURE)
        except IntegrityCheckFailedError as e:
            self._report(e, FailureCode.INTEGRITY_FAILURE)
        except Exception as e:
            self._report(e, FailureCode.UNEXPECTED)
        return None


class HandlerFileHandle:
    """FileHandle view of a logging file handler's stream."""

    def __init__(self, handler: logging.FileHandler) -> None:
        self._handler = handler

    def close(self) -> None:
        stream = self._handler.stream
        if stream:
            self._handler.stream = None
            stream.flush()
            stream.close()

    def reopen_for_append(self) -> None:
        if self._handler.stream is None:
            self._handler.stream = self._handler._open()

    def current_size(self) -> int:
        if self._handler.stream:
            self._handler.stream.flush()
        return os.stat(self._handler.baseFilename).st_size


class TimedRotatingFileHandlerWithCleanup(TimedRotatingFileHandler):
    """TimedRotatingFileHandler that prunes rolled files by age and by count.

    The built-in ``backupCount`` deletion is disabled; rolled files matching ``<name>.*`` (or ``<stem>.*<ext>`` with
    ``preserve_extension``) in the log directory are pruned instead. With ``cleanup_on="append"`` the check runs
    before every record, with ``cleanup_on="rollover"`` only after a roll.
    """

    def __init__(
        self,
        filename: Union[str, Path],
        when: str = "midnight",
        interval: int = 1,
        encoding: Optional[str] = None,
        delay: bool = False,
        utc: bool = False,
        atTime: Optional[datetime_time] = None,
        errors: Optional[str] = None,
        *,
        max_number_of_backups: int = 0,
        max_number_of_days: int = 0,
        preserve_extension: bool = False,
        age_type: str = "birthtime",
        cleanup_on: str = "append",
        normalize_creation_time: bool = True,
        fail_fast: bool = False,
        dry_run: bool = False,
        verbose: Union[LogLevel, int, str] = LogLevel.ERROR,
        stacktrace: bool = False,
    ) -> None:
        if cleanup_on not in CLEANUP_MOMENTS:
            raise ValueError(f"Invalid cleanup moment '{cleanup_on}' (use {', '.join(CLEANUP_MOMENTS)})")
        super().__init__(filename, when=when, interval=interval, backupCount=0, encoding=encoding, delay=delay, utc=utc, atTime=atTime, errors=errors)
        self._max_number_of_backups = max_number_of_backups
        self._max_number_of_days = max_number_of_days
        self.preserve_extension = preserve_extension
        self.age_type = age_type
        self.cleanup_on = cleanup_on
        self.normalize_creation_time = normalize_creation_time
        self.fail_fast = fail_fast
        self.dry_run = dry_run
        self.verbose_level = verbose if isinstance(verbose, LogLevel) else LogLevel.from_name_or_number(str(verbose))
        self.stacktrace = stacktrace
        if preserve_extension:
            self.namer = self._extension_preserving_name
        self._hook = BeforeAppendHook(HandlerFileHandle(self), report=self.report_failure)
        try:
            self.retention_config()  # fail early on invalid settings
        except ValueError:
            self.close()
            raise

    @property
    def max_number_of_backups(self) -> int:
        return self._max_number_of_backups

    @max_number_of_backups.setter
    def max_number_of_backups(self, value: int) -> None:
        self._max_number_of_backups = value

    @property
    def max_number_of_days(self) -> int:
        return self._max_number_of_days

    @max_number_of_days.setter
    def max_number_of_days(self, value: int) -> None:
        self._max_number_of_days = value

    def retention_config(self) -> RetentionConfig:
        return RetentionConfig(
            base_file_path=self.baseFilename,
            max_backups=self._max_number_of_backups,
            max_age_days=self._max_number_of_days,
            preserve_extension=self.preserve_extension,
            age_type=self.age_type,
            normalize_creation_time=self.normalize_creation_time,
            fail_fast=self.fail_fast,
            dry_run=self.dry_run,
            verbose=self.verbose_level,
        )

    def _extension_preserving_name(self, default_name: str) -> str:
        # "app.log.2024-01-01" -> "app.2024-01-01.log"
        base = Path(self.baseFilename)
        rolled_suffix = default_name[len(self.baseFilename) + 1 :]
        return str(base.with_name(f"{base.stem}.{rolled_suffix}{base.suffix}"))

    def report_failure(self, exception: BaseException, code: FailureCode) -> None:
        if logging.raiseExceptions:  # same switch Handler.handleError honours
            report_failure(exception, code, stacktrace=self.stacktrace)

    def run_cleanup(self) -> Optional[SweepResult]:
        if self.stream is None:  # delay=True: create the file so it can be normalized
            self.stream = self._open()
        return self._hook.run(self.retention_config())

    def doRollover(self) -> None:
        super().doRollover()
        if self.cleanup_on == "rollover":
            self.run_cleanup()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            if self.shouldRollover(record):
                self.doRollover()
            if self.cleanup_on == "append":
                self.run_cleanup()
            logging.FileHandler.emit(self, record)
        except Exception:
            self.handleError(record)

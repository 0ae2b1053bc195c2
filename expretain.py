#
# expretain
#
# A small CLI tool that thins out the files of a directory by exponential age buckets (1, 2, 4, 8, ... days).
#
# Copyright (c) 2025-2026 Thomas Kuhlmann
#
# Licensed under the MIT License. See LICENSE file in the project root for license information.
#

import argparse
import os
import sys
import traceback
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from os import stat_result
from pathlib import Path
from types import SimpleNamespace
from typing import NoReturn, Optional, TextIO, no_type_check


VERSION: str = "0.2.0"

SECONDS_PER_DAY: int = 24 * 60 * 60

SORT_TYPES: tuple[str, ...] = ("mtime", "ctime", "atime")
DEFAULT_SORT_TYPE: str = "ctime"

TIME_FORMAT: str = "%Y-%m-%d %H:%M:%S"


class ConfigurationError(ValueError):
    pass


class IntegrityCheckFailedError(Exception):
    pass


class NoFilesFoundError(FileNotFoundError):
    pass


class FileCouldNotBeDeletedError(Exception):
    file: Path
    cause: OSError

    def __init__(self, file: Path, cause: OSError) -> None:
        super().__init__(f"Error during deletion {file}: {cause}")
        self.file = file
        self.cause = cause


class ConfigNamespace(SimpleNamespace):
    pass


class FileStats:
    age_type: str
    _file_stats_cache: dict[Path, stat_result]

    def __init__(self, age_type: str) -> None:
        self.age_type = age_type
        self._file_stats_cache: dict[Path, stat_result] = {}

    def _get_stats(self, file: Path) -> stat_result:
        if file not in self._file_stats_cache:
            self._file_stats_cache[file] = file.lstat()
        return self._file_stats_cache[file]

    def get_file_seconds(self, file: Path) -> float:
        """Timestamp of the configured kind, the epoch (0.0) if the platform does not provide it."""
        stats = self._get_stats(file)
        if self.age_type == "ctime":  # creation time where known, status change time otherwise
            return float(getattr(stats, "st_birthtime", None) or getattr(stats, "st_ctime", 0.0))
        return float(getattr(stats, f"st_{self.age_type}", 0.0))


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


class Logger:
    _args: ConfigNamespace

    def __init__(self, args: ConfigNamespace) -> None:
        self._args = args

    def has_log_level(self, level: LogLevel) -> bool:
        return level <= int(self._args.verbose)

    def _raw_verbose(self, level: LogLevel, message: str, file: Optional[TextIO] = None, prefix: str = "") -> None:
        print(f"[{prefix or LogLevel(level).name}] {message}", file=file if file is not None else sys.stderr)

    def verbose(self, level: LogLevel, message: str, file: Optional[TextIO] = None, prefix: str = "") -> None:
        if self.has_log_level(level):
            self._raw_verbose(level, message, file, prefix)

    def report(self, message: str) -> None:
        # Plain report lines on stdout, silenced by --quiet
        if self.has_log_level(LogLevel.INFO):
            print(message)


@dataclass(frozen=True)
class FileRecord:
    path: Path
    timestamp: float

    @property
    def formatted_time(self) -> str:
        return datetime.fromtimestamp(self.timestamp).strftime(TIME_FORMAT)


# bucket id (upper day limit) => files of that bucket, ascending by bucket id
BucketMap = dict[int, list[FileRecord]]


def age_in_days(now: float, timestamp: float) -> Optional[int]:
    if timestamp > now:
        return None  # No age for files from the future
    return int((now - timestamp) // SECONDS_PER_DAY)


def bucket_for_age(days: int) -> int:
    """Smallest power of two >= days (1 for days == 0), giving the bucket limits 1, 2, 4, 8, 16, ... days."""
    if days < 0:
        raise ValueError(f"Invalid age: {days} days")
    return 1 if days == 0 else 1 << (days - 1).bit_length()


def check_directory(path: Path) -> None:
    if not path.exists():
        raise FileNotFoundError(f"Path not found: {path}")
    if not path.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {path}")


def group_files_by_bucket(path: Path, file_stats: FileStats, logger: Logger, now: Optional[float] = None) -> BucketMap:
    check_directory(path)
    now = datetime.now().timestamp() if now is None else now

    buckets: dict[int, list[FileRecord]] = defaultdict(list)
    for file in sorted(path.iterdir()):
        if file.is_symlink() or not file.is_file():
            continue  # regular files only
        timestamp = file_stats.get_file_seconds(file)
        days = age_in_days(now, timestamp)
        if days is None:
            logger.verbose(LogLevel.DEBUG, f"Skipping {file}: {file_stats.age_type} is in the future ({datetime.fromtimestamp(timestamp)})")
            continue
        bucket = bucket_for_age(days)
        logger.verbose(LogLevel.DEBUG, f"Bucket {bucket}: {file} (age: {days} days)")
        buckets[bucket].append(FileRecord(file, timestamp))

    if not buckets:
        raise NoFilesFoundError(f"No files found in '{path}'. Remember that only files are processed, not directories.")
    return dict(sorted(buckets.items()))


def _raise_walk_error(error: OSError) -> NoReturn:
    raise error


def walk_directories(root: Path) -> list[Path]:
    return sorted(Path(dir_path) for dir_path, _, _ in os.walk(root, onerror=_raise_walk_error))


def group_files_by_bucket_recursive(root: Path, file_stats: FileStats, logger: Logger, now: Optional[float] = None) -> dict[Path, BucketMap]:
    check_directory(root)
    now = datetime.now().timestamp() if now is None else now

    # Every directory is grouped on its own, siblings are never merged
    all_groups: dict[Path, BucketMap] = {}
    for directory in walk_directories(root):
        try:
            all_groups[directory] = group_files_by_bucket(directory, file_stats, logger, now)
        except NoFilesFoundError:
            logger.verbose(LogLevel.INFO, f"Directory {directory} is empty. Skipping.")

    if not all_groups:
        raise NoFilesFoundError(f"No files found in '{root}' or its subdirectories. Remember that only files are processed, not directories.")
    return all_groups


@dataclass
class BucketSelection:
    bucket: int
    keep: list[FileRecord]
    delete: list[FileRecord]

    @property
    def header(self) -> str:
        return f"Younger than {self.bucket} days but older than {self.bucket // 2} days:"


@dataclass
class DirectorySelection:
    directory: Path
    buckets: list[BucketSelection]


@dataclass
class RetentionsResult:
    sort_type: str
    keep_count: int
    directories: list[DirectorySelection]

    @property
    def keep(self) -> list[Path]:
        return [record.path for directory in self.directories for selection in directory.buckets for record in selection.keep]

    @property
    def prune(self) -> list[Path]:
        return [record.path for directory in self.directories for selection in directory.buckets for record in selection.delete]

    def render(self) -> list[str]:
        lines: list[str] = []
        for directory in self.directories:
            lines.append(f"\nOpening {directory.directory}, sorting by {self.sort_type} and keeping {self.keep_count} files")
            for selection in directory.buckets:
                lines.append(f"\n{selection.header}")
                if not selection.delete:
                    lines.append("No files to delete in this group.")
                lines.extend(f"{record.path} | {record.formatted_time}" for record in selection.keep)
                lines.extend(f"{record.path} | {record.formatted_time} <-- to be deleted" for record in selection.delete)
        return lines


class RetentionLogic:
    _groups: dict[Path, BucketMap]
    _keep_count: int
    _sort_type: str
    _logger: Logger

    def __init__(self, groups: dict[Path, BucketMap], keep_count: int, sort_type: str, logger: Logger) -> None:
        if keep_count < 0:
            raise ConfigurationError(f"Invalid keep count {keep_count}: must be an integer >= 0")
        self._groups = groups
        self._keep_count = keep_count
        self._sort_type = sort_type
        self._logger = logger

    def _process_bucket(self, directory: Path, bucket: int, records: Iterable[FileRecord]) -> BucketSelection:
        # Oldest first; identical timestamps are ordered by path
        ordered = sorted(records, key=lambda record: (record.timestamp, str(record.path)))
        split_idx = min(self._keep_count, len(ordered))
        selection = BucketSelection(bucket, ordered[:split_idx], ordered[split_idx:])
        self._logger.verbose(LogLevel.DEBUG, f"Bucket {bucket} of {directory}: {len(selection.keep)} to keep, {len(selection.delete)} to delete")
        return selection

    def process_retention_logic(self) -> RetentionsResult:
        directories = [
            DirectorySelection(directory, [self._process_bucket(directory, bucket, records) for bucket, records in sorted(buckets.items())])
            for directory, buckets in sorted(self._groups.items())
        ]
        result = RetentionsResult(self._sort_type, self._keep_count, directories)

        # Simple integrity check
        found = sum(len(records) for buckets in self._groups.values() for records in buckets.values())
        if found != len(result.keep) + len(result.prune):
            raise IntegrityCheckFailedError(f"File count mismatch: some files are neither kept nor deleted (all: {found}, keep: {len(result.keep)}, delete: {len(result.prune)})!!")

        return result


def run_deletion(files: Iterable[Path], logger: Logger) -> list[FileCouldNotBeDeletedError]:
    failures: list[FileCouldNotBeDeletedError] = []
    logger.report("\nDeleting files...")
    for file in files:
        try:
            file.unlink()
        except OSError as e:  # Report deletion error and continue with the next file
            failure = FileCouldNotBeDeletedError(file, e)
            logger.verbose(LogLevel.ERROR, str(failure))
            failures.append(failure)
        else:
            logger.report(f"File deleted: {file}")
    return failures


def ask_confirmation(delete_all: bool, read_answer: Optional[Callable[[], str]] = None) -> bool:
    # Shown even in quiet mode, there is no confirmation without a question
    if delete_all:
        print("WARNING! No files will be kept, you want ALL files to be deleted.")
    print("\nDo you want to proceed with deletion? There is no undo. (yes/no)")
    try:
        answer = read_answer() if read_answer is not None else input()
    except EOFError:
        answer = ""
    return answer.strip().lower() == "yes"


def incompatible_modes(args: ConfigNamespace) -> list[str]:
    errors: list[str] = []
    if args.quiet and args.print_only:
        errors.append("--quiet and --print-only cannot be used together")
    if args.force and args.print_only:
        errors.append("--print-only and --force cannot be used together")
    return errors


class RunOutcome(Enum):
    DELETED = "deleted"
    DRY_RUN = "dry-run"
    CANCELLED = "cancelled"
    NOTHING_TO_DELETE = "nothing-to-delete"


@dataclass
class RunResult:
    outcome: RunOutcome
    retentions: RetentionsResult
    failures: list[FileCouldNotBeDeletedError] = field(default_factory=list)


def run(args: ConfigNamespace, logger: Logger, file_stats: FileStats, read_answer: Optional[Callable[[], str]] = None, now: Optional[float] = None) -> RunResult:
    errors = incompatible_modes(args)
    if errors:
        raise ConfigurationError("; ".join(errors))

    path = Path(args.path)
    if args.recursive:
        groups = group_files_by_bucket_recursive(path, file_stats, logger, now)
    else:
        groups = {path: group_files_by_bucket(path, file_stats, logger, now)}

    retentions_result = RetentionLogic(groups, args.keep, args.sort, logger).process_retention_logic()
    for line in retentions_result.render():
        logger.report(line)

    logger.verbose(LogLevel.INFO, f"Total files keep:   {len(retentions_result.keep):03d}")
    logger.verbose(LogLevel.INFO, f"Total files delete: {len(retentions_result.prune):03d}")

    if args.print_only:
        logger.report("\nPrint-only enabled, no files were deleted.")
        return RunResult(RunOutcome.DRY_RUN, retentions_result)

    if not retentions_result.prune:
        logger.report("No files to delete.")
        return RunResult(RunOutcome.NOTHING_TO_DELETE, retentions_result)

    if not args.force and not ask_confirmation(not retentions_result.keep, read_answer):
        logger.report("Operation cancelled.")
        return RunResult(RunOutcome.CANCELLED, retentions_result)

    failures = run_deletion(retentions_result.prune, logger)
    return RunResult(RunOutcome.DELETED, retentions_result, failures)


class ModernHelpFormatter(argparse.HelpFormatter):
    @no_type_check
    def __init__(self, *a, **kw) -> None:  # noqa: ANN002, ANN003
        super().__init__(*a, max_help_position=30, width=160, **kw)

    @no_type_check
    def start_section(self, heading) -> None:  # noqa: ANN001
        super().start_section(heading.capitalize())


class ModernStrictArgumentParser(argparse.ArgumentParser):
    @no_type_check
    def __init__(self, *a, **kw) -> None:  # noqa: ANN002, ANN003
        super().__init__(*a, **kw)
        self._errors: list[str] = []

    def add_error(self, msg: str) -> None:
        if msg not in self._errors:
            self._errors.append(msg)

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        print("\nError(s):", file=sys.stderr)
        for line in message.split("\n"):
            print(f"  • {line}", file=sys.stderr)
        print("\nHint: Try '--help' for more information.", file=sys.stderr)
        sys.exit(2)

    # Argument type helpers
    def non_negative_int_argument(self, value: str) -> int:
        try:
            int_value = int(value)
            if int_value < 0:
                raise ValueError
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid value '{value}': must be an integer >= 0")
        return int_value

    def verbose_argument(self, value: str) -> LogLevel:
        try:
            return LogLevel.from_name_or_number(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid verbose value '{value}' (use ERROR, WARN, INFO, DEBUG or 0, 1, 2, 3)")

    # Internal helper methods
    def _suggest(self, argument: str) -> list[str]:
        opts = [o for a in self._actions for o in a.option_strings if o.startswith("--")]
        cand = [o for o in opts if abs(len(o) - len(argument)) <= 2 and sum(a != b for a, b in zip(o, argument)) <= 2]
        return cand[:1]

    @no_type_check
    def _collect_raw_args(self, args):  # noqa: ANN202, ANN001
        if args is not None:
            return list(args)
        return sys.argv[1:]  # default argparse behavior

    @no_type_check
    def _detect_duplicate_flags(self, raw_args) -> None:  # noqa: ANN001
        alias = {opt: action.option_strings[0] for action in self._actions for opt in action.option_strings}
        seen = set()

        for tok in raw_args:
            if not tok.startswith("-"):
                continue

            # -k3, -k=3, --keep=3
            opt = tok.split("=", 1)[0]
            if len(opt) > 2 and opt.startswith("-") and not opt.startswith("--"):
                opt = opt[:2]

            key = alias.get(opt, opt)

            if key in seen:
                self.add_error(f"Duplicate flag: {key}")
            seen.add(key)

    @no_type_check
    def _validate_arguments(self, ns) -> None:  # noqa: ANN001
        # quiet means errors only
        if ns.verbose is None:
            ns.verbose = LogLevel.ERROR if ns.quiet else LogLevel.INFO
        elif ns.quiet and ns.verbose > LogLevel.ERROR:
            self.add_error("--quiet and --verbose (> ERROR) cannot be used together")

        # incompatible modes
        for error in incompatible_modes(ns):
            self.add_error(error)

        # unknown sort types degrade to the default
        ns.warnings = []
        sort_type = ns.sort.strip().lower()
        if sort_type not in SORT_TYPES:
            ns.warnings.append(f"Invalid sort type '{ns.sort}', defaulting to {DEFAULT_SORT_TYPE}")
            sort_type = DEFAULT_SORT_TYPE
        ns.sort = sort_type

    # Main hook
    @no_type_check
    def parse_known_args(self, args=None, namespace=None) -> tuple[argparse.Namespace, list[str]]:  # noqa: ANN001
        self._errors = []
        raw_args = self._collect_raw_args(args)
        self._detect_duplicate_flags(raw_args)

        ns, unknown = super().parse_known_args(raw_args, namespace or argparse.Namespace())

        if unknown:
            sug = self._suggest(unknown[0])
            if sug:
                self.add_error(f"Unknown option: {unknown[0]} (did you mean {sug[0]}?)")
            else:
                self.add_error(f"Unknown option: {unknown[0]}")

        self._validate_arguments(ns)

        if self._errors:
            msg = "\n".join(f"{e}" for e in self._errors)
            self.error(msg)

        return ns, unknown


def create_parser() -> ModernStrictArgumentParser:
    parser: ModernStrictArgumentParser = ModernStrictArgumentParser(
        prog="expretain",
        description=f"expretain {VERSION}\n\nDelete files exponentially based on their age: per bucket of 1, 2, 4, 8, ... days keep the given number of files",
        usage="expretain --path path --keep N [options]\n\nExample:\n  expretain --path /data/snapshots --keep 2 --sort mtime --recursive",
        epilog="Use with caution!! This tool deletes files unless --print-only is set.",
        formatter_class=ModernHelpFormatter,
        add_help=False,
    )

    g_main = parser.add_argument_group("Main arguments")
    g_behavior = parser.add_argument_group("Behavior arguments")
    g_common = parser.add_argument_group("Common arguments")

    g_main.add_argument("--path", "-p", type=str, required=True, help="Directory to operate on")
    g_main.add_argument("--keep", "-k", type=parser.non_negative_int_argument, required=True, metavar="N", help="Number of files to keep per time bucket (0 deletes everything)")
    g_main.add_argument("--sort", "-s", type=str, default=DEFAULT_SORT_TYPE, metavar="time",
                        help="Time attribute: mtime (modification), ctime (creation / status change), atime (access) (default: ctime)")

    # fmt: off
    g_behavior.add_argument("--force", "-f", action="store_true", help="FOR EXPERTS ONLY! Delete without asking for confirmation (incompatible with --print-only)")
    g_behavior.add_argument("--print-only", "-o", action="store_true", help="Dry run: show the buckets, but do not delete any files (incompatible with --force and --quiet)")
    g_behavior.add_argument("--recursive", "-r", action="store_true", help="Also process subdirectories, each directory is bucketed on its own")
    g_behavior.add_argument("--quiet", "-q", action="store_true", help="No output except for errors (incompatible with --print-only)")
    g_behavior.add_argument("--verbose", "-V", type=parser.verbose_argument, default=None, nargs="?", const=LogLevel.INFO, metavar="lev",
        help="Verbosity level: 0 = error, 1 = warn, 2 = info, 3 = debug (default: 'info'; 'error' with --quiet; use numbers or names)")
    # fmt: on

    g_common.add_argument("--version", "-R", action="version", version=f"%(prog)s {VERSION}")
    g_common.add_argument("--help", "-h", action="help", help="Show this help message and exit")
    g_common.add_argument("--stacktrace", action="store_true", help=argparse.SUPPRESS)

    return parser


def parse_arguments(argv: Optional[list[str]] = None) -> ConfigNamespace:
    parser = create_parser()
    args = parser.parse_args(argv)
    return ConfigNamespace(**vars(args))


def handle_exception(exception: Exception, exit_code: int, stacktrace: bool, prefix: str = "") -> None:
    if stacktrace:
        traceback.print_exc()
    print(f"[{prefix or LogLevel.ERROR.name}] {exception}", file=sys.stderr)
    sys.exit(exit_code)


def main() -> None:
    args: Optional[ConfigNamespace] = None

    try:
        args = parse_arguments()

        logger = Logger(args)
        for warning in args.warnings:
            logger.verbose(LogLevel.WARN, warning)
        logger.verbose(LogLevel.DEBUG, f"Parsed arguments: {args}")

        run(args, logger, FileStats(args.sort))

    except NoFilesFoundError as e:
        handle_exception(e, 3, args.stacktrace if args is not None else True)
    except OSError as e:
        handle_exception(e, 1, args.stacktrace if args is not None else True)
    except ValueError as e:
        handle_exception(e, 2, args.stacktrace if args is not None else True)
    except IntegrityCheckFailedError as e:
        handle_exception(e, 7, args.stacktrace if args is not None else True)
    except Exception as e:
        handle_exception(e, 9, args.stacktrace if args is not None else True, prefix="UNEXPECTED ERROR")


if __name__ == "__main__":
    main()

#
# filetimegen
#
# A small CLI tool to generate timestamped file names and to decide which of them can be pruned by backup-like retention rules.
#
# Copyright 2022 Peter Luick
#
# Licensed under the Apache License, Version 2.0. See http://www.apache.org/licenses/LICENSE-2.0 for license information.
#

import argparse
import os
import re
import sys
import time
import traceback
from collections import defaultdict
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from types import SimpleNamespace
from typing import BinaryIO, NoReturn, Optional, TextIO, no_type_check


VERSION: str = "dev-1.0.0"

PLACEHOLDER: str = "{now}"

TIMESTAMP_LENGTH: int = 19  # length of "2020-01-12T13:45:00"

TIMESTAMP_REGEX = re.compile(r"([0-9]{4})-([0-9]{2})-([0-9]{2})T([0-9]{2}):([0-9]{2}):([0-9]{2})")


class ConfigError(Exception):
    pass


class TemplateMismatchError(Exception):
    pass


class TimestampFormatError(ValueError):
    pass


class IntegrityCheckFailedError(Exception):
    pass


class ConfigNamespace(SimpleNamespace):
    pass


class LogLevel(IntEnum):
    ERROR = 0
    WARN = 1
    INFO = 2
    DEBUG = 3

    @classmethod
    def from_name_or_number(cls, prefix: str) -> "LogLevel":
        prefix = prefix.strip()
        try:
            return next(m for m in cls if prefix and m.name.startswith(prefix.upper()))
        except StopIteration:
            try:
                return cls(int(prefix))
            except ValueError:
                raise ValueError("Invalid log level: " + prefix)


class Logger:
    _level: LogLevel
    _decisions: dict[str, list[tuple[str, Optional[str]]]]

    def __init__(self, level: LogLevel = LogLevel.WARN) -> None:
        self._level = level
        self._decisions = defaultdict(list)

    def has_log_level(self, level: LogLevel) -> bool:
        return level <= int(self._level)

    def _raw_verbose(self, level: LogLevel, message: str, file: Optional[TextIO] = None, prefix: str = "") -> None:
        print(f"[{prefix or LogLevel(level).name}] {message}", file=file or sys.stderr)

    def verbose(self, level: LogLevel, message: str, file: Optional[TextIO] = None, prefix: str = "") -> None:
        if self.has_log_level(level):
            self._raw_verbose(level, message, file, prefix)

    def add_decision(self, level: LogLevel, entry: str, message: str, debug: Optional[str] = None) -> None:
        if self.has_log_level(level):
            if self.has_log_level(LogLevel.DEBUG):  # Decision history and debug message only with debug log level
                self._decisions[entry].append((message, debug))
            elif not self._decisions[entry]:  # Without debug log level only the first (deciding) message
                self._decisions[entry].append((message, None))

    def _format_decision(self, decision: tuple[str, Optional[str]]) -> str:
        message, debug = decision
        return message + (f" ({debug})" if debug is not None else "")

    def print_decisions(self) -> None:
        if not self._decisions:
            return
        longest_entry_length = max(len(e) for e in self._decisions)
        for entry, decisions in self._decisions.items():
            if not decisions:
                continue
            self._raw_verbose(LogLevel.INFO, f"{entry:<{longest_entry_length}}: {self._format_decision(decisions[0])}")
            if not self.has_log_level(LogLevel.DEBUG):
                continue
            for idx, decision in enumerate(decisions[1:]):
                self._raw_verbose(LogLevel.DEBUG, f"{' ' * ((longest_entry_length + 2) + idx * 4)}└── {self._format_decision(decision)}")


class Granularity(Enum):
    MINUTELY = "minutely"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


# Fields that must be equal for two timestamps to share a bucket; weekly is no refinement of the others
GRANULARITY_FIELDS: dict[Granularity, tuple[str, ...]] = {
    Granularity.MINUTELY: ("year", "month", "day", "hour", "minute"),
    Granularity.HOURLY: ("year", "month", "day", "hour"),
    Granularity.DAILY: ("year", "month", "day"),
    Granularity.WEEKLY: ("year", "week"),
    Granularity.MONTHLY: ("year", "month"),
}


@dataclass(frozen=True)
class Timestamp:
    year: int
    month: int
    day: int
    hour: int
    minute: int
    second: int
    day_of_year: int
    week: int
    instant: float = field(compare=False)

    @classmethod
    def now(cls, clock: Callable[[], float] = time.time) -> "Timestamp":
        instant = clock()
        local = time.localtime(instant)
        return cls(local.tm_year, local.tm_mon, local.tm_mday, local.tm_hour, local.tm_min, local.tm_sec, local.tm_yday - 1, (local.tm_yday - 1) // 7, instant)

    @classmethod
    def parse(cls, text: str) -> "Timestamp":
        """Parse ``YYYY-MM-DDTHH:MM:SS`` as local time.

        Daylight saving time is assumed to be off (``tm_isdst = 0``), so instants near a DST
        transition can be off by the local DST offset. The timestamp format carries no DST flag.
        """
        re_match = TIMESTAMP_REGEX.fullmatch(text)
        if not re_match:
            raise TimestampFormatError(f"{PLACEHOLDER} is not the correct time format: '{display_name(text)}'")
        year, month, day, hour, minute, second = (int(group) for group in re_match.groups())
        if not (1 <= month <= 12 and 1 <= day <= 31 and 0 <= hour <= 23 and 0 <= minute <= 59 and 0 <= second <= 60):
            raise TimestampFormatError(f"failed to convert to valid time: '{text}'")
        try:
            instant = time.mktime((year, month, day, hour, minute, second, 0, 0, 0))
            day_of_year = time.localtime(instant).tm_yday - 1  # from the normalized time, like mktime's struct
        except (OverflowError, ValueError, OSError) as e:
            raise TimestampFormatError(f"failed to convert to valid time: '{text}' ({e})") from e
        return cls(year, month, day, hour, minute, second, day_of_year, day_of_year // 7, instant)

    def format(self) -> str:
        return f"{self.year:04d}-{self.month:02d}-{self.day:02d}T{self.hour:02d}:{self.minute:02d}:{self.second:02d}"

    def __str__(self) -> str:
        return self.format()

    def same_bucket(self, other: "Timestamp", granularity: Granularity) -> bool:
        return all(getattr(self, name) == getattr(other, name) for name in GRANULARITY_FIELDS[granularity])


def sort_timestamps(times: Iterable[Timestamp]) -> list[Timestamp]:
    return sorted(times, key=lambda t: t.instant, reverse=True)


def locate_placeholders(template: str) -> tuple[int, ...]:
    offsets: list[int] = []
    pos = template.find(PLACEHOLDER)
    while pos != -1:
        offsets.append(pos)
        pos = template.find(PLACEHOLDER, pos + len(PLACEHOLDER))
    return tuple(offsets)


def template_mismatch(template: str, candidate: str, offsets: tuple[int, ...]) -> bool:
    """Return True if ``candidate`` is not structurally an instance of ``template``.

    Placeholders are only checked for their width, their content is validated by ``Timestamp.parse``.
    """
    now_i = template_i = candidate_i = 0
    while template_i < len(template) and candidate_i < len(candidate):
        if now_i < len(offsets) and offsets[now_i] == template_i:
            now_i += 1
            template_i += len(PLACEHOLDER)
            candidate_i += TIMESTAMP_LENGTH
        elif template[template_i] != candidate[candidate_i]:
            return True
        else:
            template_i += 1
            candidate_i += 1
    return now_i != len(offsets) or template_i != len(template) or candidate_i != len(candidate)


def display_name(name: str) -> str:
    # undecodable bytes (surrogate escapes) are shown as U+FFFD
    return name.encode("utf-8", "surrogateescape").decode("utf-8", "replace")


def extract_timestamp(template: str, candidate: str, offsets: tuple[int, ...]) -> Timestamp:
    if template_mismatch(template, candidate, offsets):
        raise TemplateMismatchError(f"spec does not match input: {display_name(candidate)}")
    if not offsets:
        raise TemplateMismatchError(f"spec has no {PLACEHOLDER}, no timestamp in input: {display_name(candidate)}")
    # Only the first {now} is the official timestamp
    return Timestamp.parse(candidate[offsets[0] : offsets[0] + TIMESTAMP_LENGTH])


def render(template: str, timestamp: Timestamp) -> str:
    return template.replace(PLACEHOLDER, timestamp.format())


def generate(template: str, timestamp: Optional[Timestamp] = None) -> str:
    if PLACEHOLDER not in template:
        raise ConfigError(f"<spec> must contain {PLACEHOLDER} somewhere")
    return render(template, timestamp if timestamp is not None else Timestamp.now())


@dataclass(frozen=True)
class RetentionPolicy:
    minutely: Optional[int] = None
    hourly: Optional[int] = None
    daily: Optional[int] = None
    weekly: Optional[int] = None
    monthly: Optional[int] = None

    def __post_init__(self) -> None:
        for granularity in Granularity:
            count = getattr(self, granularity.value)
            if count is not None and (isinstance(count, bool) or not isinstance(count, int) or count < 1):
                raise ConfigError(f"All --keep arguments must be >= 1 (got {granularity.value}={count!r})")

    def rules(self) -> Iterator[tuple[int, Granularity]]:
        for granularity in Granularity:
            count = getattr(self, granularity.value)
            if count is not None:
                yield count, granularity


def select_for_granularity(times: list[Timestamp], keep_count: Optional[int], granularity: Granularity) -> list[int]:
    if keep_count is None or not times:
        return []
    selected: list[int] = [0]  # always the most recent
    last_selected = times[0]
    for idx in range(1, len(times)):
        if len(selected) >= keep_count:
            break
        if last_selected.same_bucket(times[idx], granularity):
            continue
        last_selected = times[idx]
        selected.append(idx)
    return selected


@dataclass
class RetentionResult:
    keep: set[int]
    prune: list[int]
    decisions_log: Logger


class RetentionLogic:
    _times: list[Timestamp]
    _policy: RetentionPolicy
    _logger: Logger
    _keep: set[int]

    def __init__(self, times: list[Timestamp], policy: RetentionPolicy, logger: Logger) -> None:
        self._times = times
        self._policy = policy
        self._logger = logger
        self._keep = set()

    def _process_granularity(self, keep_count: int, granularity: Granularity) -> None:
        selected = select_for_granularity(self._times, keep_count, granularity)
        for number, idx in enumerate(selected, start=1):
            debug = f"fields: {', '.join(GRANULARITY_FIELDS[granularity])}"
            if idx in self._keep:
                self._logger.add_decision(LogLevel.DEBUG, str(self._times[idx]), f"Also kept for mode '{granularity.value}' {number:02d}/{keep_count:02d}", debug=debug)
            else:
                self._logger.add_decision(LogLevel.INFO, str(self._times[idx]), f"Keeping for mode '{granularity.value}' {number:02d}/{keep_count:02d}", debug=debug)
        self._keep.update(selected)

    def process_retention_logic(self) -> RetentionResult:
        if not self._times:
            return RetentionResult(set(), [], self._logger)

        self._logger.add_decision(LogLevel.INFO, str(self._times[0]), "Keeping: most recent")
        self._keep.add(0)

        for keep_count, granularity in self._policy.rules():
            self._process_granularity(keep_count, granularity)

        prune = [idx for idx in range(len(self._times)) if idx not in self._keep]
        for idx in prune:
            self._logger.add_decision(LogLevel.INFO, str(self._times[idx]), "Pruning: not matched by any retention rule")

        # Simple integrity checks
        if not len(self._times) == len(self._keep) + len(prune):
            raise IntegrityCheckFailedError(f"Count mismatch: some timestamps are neither kept nor pruned (all: {len(self._times)}, keep: {len(self._keep)}, prune: {len(prune)})!!")
        if self._keep.intersection(prune):
            raise IntegrityCheckFailedError("Timestamps are both kept and pruned!!")

        return RetentionResult(self._keep, prune, self._logger)


def parse_candidates(template: str, candidates: Iterable[str], logger: Logger) -> list[Timestamp]:
    offsets = locate_placeholders(template)
    times: list[Timestamp] = []
    for candidate in candidates:
        try:
            times.append(extract_timestamp(template, candidate, offsets))
        except TemplateMismatchError as e:
            logger.verbose(LogLevel.WARN, str(e))
        except TimestampFormatError as e:
            logger.verbose(LogLevel.WARN, f"in input '{display_name(candidate)}': {e}")
    return times


def prune(template: str, candidates: Iterable[str], policy: RetentionPolicy, logger: Logger) -> list[str]:
    times = sort_timestamps(parse_candidates(template, candidates, logger))
    logger.verbose(LogLevel.DEBUG, "Timestamps found: " + ", ".join(str(t) for t in times))
    result = RetentionLogic(times, policy, logger).process_retention_logic()
    logger.print_decisions()
    logger.verbose(LogLevel.INFO, f"Total timestamps found: {len(times):03d}")
    logger.verbose(LogLevel.INFO, f"Total timestamps keep:  {len(result.keep):03d}")
    logger.verbose(LogLevel.INFO, f"Total timestamps prune: {len(result.prune):03d}")
    return [render(template, times[idx]) for idx in result.prune]


def read_candidates(stream: BinaryIO, separator: str) -> list[str]:
    data = stream.read()
    if not data:
        return []
    records = data.split(os.fsencode(separator))
    if records[-1] == b"":  # trailing separator terminates the last record
        records.pop()
    return [os.fsdecode(record) for record in records]


class ModernHelpFormatter(argparse.RawDescriptionHelpFormatter):
    @no_type_check
    def __init__(self, *a, **kw) -> None:  # noqa: ANN002, ANN003
        super().__init__(*a, max_help_position=30, width=120, **kw)

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
    def positive_int_argument(self, value: str) -> int:
        try:
            int_value = int(value)
            if int_value <= 0:
                raise ValueError
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid value '{value}': must be an integer > 0")
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
            if not tok.startswith("-") or tok.lstrip("-").isdigit():
                continue

            # Extract option (handles -d3, -d=3, --keep-daily=3)
            opt = tok.split("=", 1)[0]

            # Handle -d3 → -d
            if len(opt) > 2 and opt.startswith("-") and not opt.startswith("--"):
                opt = opt[:2]

            key = alias.get(opt, opt)

            if key in seen:
                self.add_error(f"Duplicate flag: {key}")
            seen.add(key)

    @no_type_check
    def _validate_arguments(self, ns) -> None:  # noqa: ANN001
        if ns.spec is not None and PLACEHOLDER not in ns.spec:
            self.add_error(f"<spec> must contain {PLACEHOLDER} somewhere")

        ns.separator = "\n" if ns.newline else "\0"

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
        prog="filetimegen",
        description=(
            f"filetimegen {VERSION}\n\n"
            f"Outputs a file name according to <spec>, replacing every {PLACEHOLDER} with the current time.\n"
            "With --prune, a list of file names is read from stdin and the names that should be discarded are output."
        ),
        usage="filetimegen spec [options]\n\nExample:\n  ls | filetimegen 'backup-{now}.tar' --prune --newline -d 7 -w 4 -m 6",
        epilog="Nothing is ever deleted: pipe the output of --prune into a delete command (e.g. xargs -0 rm --).",
        formatter_class=ModernHelpFormatter,
        add_help=False,
    )

    g_main = parser.add_argument_group("Main arguments")
    g_ret = parser.add_argument_group("Retention arguments")
    g_behavior = parser.add_argument_group("Behavior arguments")
    g_common = parser.add_argument_group("Common arguments")

    g_main.add_argument("spec", help=f"Name of the output, every {PLACEHOLDER} is replaced by the time (YYYY-MM-DDTHH:MM:SS)")

    g_ret.add_argument("--keep-minutely", "-M", type=parser.positive_int_argument, metavar="N", help="Keep the newest file of each of the last N minutes")
    g_ret.add_argument("--keep-hourly", "-H", type=parser.positive_int_argument, metavar="N", help="Keep the newest file of each of the last N hours")
    g_ret.add_argument("--keep-daily", "-d", type=parser.positive_int_argument, metavar="N", help="Keep the newest file of each of the last N days")
    g_ret.add_argument("--keep-weekly", "-w", type=parser.positive_int_argument, metavar="N", help="Keep the newest file of each of the last N weeks (week = day of year / 7)")
    g_ret.add_argument("--keep-monthly", "-m", type=parser.positive_int_argument, metavar="N", help="Keep the newest file of each of the last N months")

    g_behavior.add_argument("--prune", action="store_true", help="Read file names from stdin (NUL separated) and output the ones to delete")
    g_behavior.add_argument("--newline", action="store_true", help="Use newlines instead of NUL separators for input and output")
    # fmt: off
    g_behavior.add_argument("--verbose", "-V", "-v", type=parser.verbose_argument, default=LogLevel.WARN, nargs="?", const=LogLevel.INFO, metavar="lev",
        help="Verbosity level on stderr: 0 = error, 1 = warn, 2 = info, 3 = debug (default: 'warn'; 'info', if specified without value)")
    # fmt: on

    g_common.add_argument("--version", "-R", action="version", version=f"%(prog)s {VERSION}")
    g_common.add_argument("--help", "-h", action="help", help="Show this help message and exit")
    g_common.add_argument("--stacktrace", action="store_true", help=argparse.SUPPRESS)

    return parser


def parse_arguments(argv: Optional[list[str]] = None) -> ConfigNamespace:
    parser = create_parser()
    args = parser.parse_args(argv)
    return ConfigNamespace(**vars(args))


def policy_from_args(args: ConfigNamespace) -> RetentionPolicy:
    return RetentionPolicy(**{g.value: getattr(args, f"keep_{g.value}") for g in Granularity})


def handle_exception(exception: Exception, exit_code: int, stacktrace: bool, prefix: str = "") -> None:
    if stacktrace:
        traceback.print_exc()
    print(f"[{prefix or LogLevel.ERROR.name}] {exception}", file=sys.stderr)
    sys.exit(exit_code)


def main() -> None:
    args: Optional[ConfigNamespace] = None

    try:
        args = parse_arguments()
        logger = Logger(args.verbose)

        logger.verbose(LogLevel.DEBUG, f"Parsed arguments: {args}")

        if args.prune:
            policy = policy_from_args(args)
            candidates = read_candidates(sys.stdin.buffer, args.separator)
            logger.verbose(LogLevel.INFO, f"Read {len(candidates)} candidates from stdin")
            for name in prune(args.spec, candidates, policy, logger):
                sys.stdout.buffer.write(os.fsencode(name + args.separator))
        else:
            name = generate(args.spec)
            sys.stdout.buffer.write(os.fsencode(name + ("\n" if args.newline else "")))
        sys.stdout.flush()

    except OSError as e:
        handle_exception(e, 1, args.stacktrace if args is not None else True)
    except (ConfigError, ValueError) as e:
        handle_exception(e, 2, args.stacktrace if args is not None else True)
    except IntegrityCheckFailedError as e:
        handle_exception(e, 7, args.stacktrace if args is not None else True)
    except Exception as e:
        handle_exception(e, 9, args.stacktrace if args is not None else True, prefix="UNEXPECTED ERROR")


if __name__ == "__main__":
    main()

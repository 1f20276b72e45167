"""Tests for the prune pipeline (parse_candidates, prune) and the stdin framing."""

import io

import pytest

from filetimegen import Logger, LogLevel, RetentionPolicy, Timestamp, parse_candidates, prune, read_candidates

TEMPLATE = "backup-{now}.tar"


def test_daily_scenario() -> None:
    candidates = ["backup-2024-01-01T00:00:00.tar", "backup-2024-01-01T12:00:00.tar", "backup-2024-01-02T00:00:00.tar"]
    result = prune(TEMPLATE, candidates, RetentionPolicy(daily=1), Logger(LogLevel.ERROR))
    assert result == ["backup-2024-01-01T12:00:00.tar", "backup-2024-01-01T00:00:00.tar"]


def test_daily_scenario_keep_two() -> None:
    candidates = ["backup-2024-01-01T00:00:00.tar", "backup-2024-01-01T12:00:00.tar", "backup-2024-01-02T00:00:00.tar"]
    result = prune(TEMPLATE, candidates, RetentionPolicy(daily=2), Logger(LogLevel.ERROR))
    assert result == ["backup-2024-01-01T00:00:00.tar"]


def test_empty_candidates(capsys: pytest.CaptureFixture[str]) -> None:
    assert prune(TEMPLATE, [], RetentionPolicy(daily=3), Logger(LogLevel.WARN)) == []
    assert capsys.readouterr().err == ""


def test_malformed_candidates_are_skipped(capsys: pytest.CaptureFixture[str]) -> None:
    candidates = [
        "backup-2024-01-03T00:00:00.tar",
        "notes.txt",
        "backup-2024-01-02T00:00:00.tar",
        "backup-2024-13-02T00:00:00.tar",
        "backup-2024-01-01T00:00:00.tar",
        "backup-yesterday-at-noon.tar",
    ]
    result = prune(TEMPLATE, candidates, RetentionPolicy(daily=2), Logger(LogLevel.WARN))
    assert result == ["backup-2024-01-01T00:00:00.tar"]
    err = capsys.readouterr().err
    assert "[WARN] spec does not match input: notes.txt" in err
    assert "[WARN] in input 'backup-2024-13-02T00:00:00.tar'" in err
    assert "spec does not match input: backup-yesterday-at-noon.tar" in err
    assert err.count("[WARN]") == 3


def test_warnings_hidden_below_warn_level(capsys: pytest.CaptureFixture[str]) -> None:
    assert parse_candidates(TEMPLATE, ["notes.txt"], Logger(LogLevel.ERROR)) == []
    assert capsys.readouterr().err == ""


def test_output_is_canonical_rendering() -> None:
    """Every placeholder is rendered from the first timestamp of a candidate."""
    template = "{now}/{now}.log"
    candidates = ["2024-01-02T00:00:00/2024-01-02T00:00:00.log", "2024-01-01T00:00:00/1999-09-09T09:09:09.log"]
    assert prune(template, candidates, RetentionPolicy(), Logger(LogLevel.ERROR)) == ["2024-01-01T00:00:00/2024-01-01T00:00:00.log"]


def test_input_order_does_not_matter() -> None:
    candidates = [f"backup-2024-02-{day:02d}T{hour:02d}:00:00.tar" for day in range(1, 11) for hour in (3, 15)]
    policy = RetentionPolicy(hourly=3, daily=4, weekly=2)
    expected = prune(TEMPLATE, candidates, policy, Logger(LogLevel.ERROR))
    assert prune(TEMPLATE, list(reversed(candidates)), policy, Logger(LogLevel.ERROR)) == expected
    assert prune(TEMPLATE, sorted(candidates, key=lambda c: c[-10:]), policy, Logger(LogLevel.ERROR)) == expected


def test_tiered_policy() -> None:
    candidates = [f"backup-2024-{month:02d}-{day:02d}T00:00:00.tar" for month in range(1, 7) for day in (1, 15)]
    result = prune(TEMPLATE, candidates, RetentionPolicy(daily=3, monthly=4), Logger(LogLevel.ERROR))
    # daily keeps 06-15, 06-01, 05-15; monthly keeps 06-15, 05-15, 04-15, 03-15
    kept = set(candidates) - set(result)
    assert kept == {
        "backup-2024-06-15T00:00:00.tar",
        "backup-2024-06-01T00:00:00.tar",
        "backup-2024-05-15T00:00:00.tar",
        "backup-2024-04-15T00:00:00.tar",
        "backup-2024-03-15T00:00:00.tar",
    }
    assert result[0] == "backup-2024-05-01T00:00:00.tar"
    assert result[-1] == "backup-2024-01-01T00:00:00.tar"


def test_parse_candidates_returns_input_order() -> None:
    times = parse_candidates(TEMPLATE, ["backup-2024-01-01T00:00:00.tar", "backup-2025-01-01T00:00:00.tar"], Logger(LogLevel.ERROR))
    assert times == [Timestamp.parse("2024-01-01T00:00:00"), Timestamp.parse("2025-01-01T00:00:00")]


def test_prune_logs_totals(capsys: pytest.CaptureFixture[str]) -> None:
    prune(TEMPLATE, ["backup-2024-01-01T00:00:00.tar", "backup-2024-01-02T00:00:00.tar"], RetentionPolicy(), Logger(LogLevel.INFO))
    err = capsys.readouterr().err
    assert "Total timestamps found: 002" in err
    assert "Total timestamps keep:  001" in err
    assert "Total timestamps prune: 001" in err


@pytest.mark.parametrize(
    "data, separator, expected",
    [
        ("", "\0", []),
        ("a\0b\0", "\0", ["a", "b"]),
        ("a\0b", "\0", ["a", "b"]),
        ("a\0\0b\0", "\0", ["a", "", "b"]),
        ("a\nb\n", "\n", ["a", "b"]),
        ("a b\nc", "\n", ["a b", "c"]),
        ("a\nb\n", "\0", ["a\nb\n"]),
        ("\n", "\n", [""]),
    ],
)
def test_read_candidates(data: str, separator: str, expected: list[str]) -> None:
    assert read_candidates(io.BytesIO(data.encode()), separator) == expected


def test_read_candidates_keeps_undecodable_bytes() -> None:
    records = read_candidates(io.BytesIO(b"caf\xe9.tar\0ok.tar\0"), "\0")
    assert records == ["caf\udce9.tar", "ok.tar"]
    assert records[0].encode("utf-8", "surrogateescape") == b"caf\xe9.tar"

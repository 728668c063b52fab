import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Tuple

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from backup_catalog import BackupCatalog, Catalog
from retention import (
    STRATEGIES,
    AgeBand,
    InvalidDecision,
    InvalidPolicy,
    KeepAll,
    KeepLast,
    KeepOnePerMonthRetainExpired,
    OlderThan,
    OlderThanButKeepOnePerMonth,
    PolicyParams,
    RetentionDecision,
    format_duration,
    get_strategy,
)


UTC = timezone.utc


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


def make_catalog(entries: List[Tuple[str, datetime]]) -> Catalog:
    return BackupCatalog().build((key, {"last_modified": when}) for key, when in entries)


def days(value: float) -> timedelta:
    return timedelta(days=value)


def params(keep_all: float, one_per_month: float, keep_last: int = 0) -> PolicyParams:
    return PolicyParams(days(keep_all), days(one_per_month), keep_last)


def random_catalog(seed: int, count: int, now: datetime) -> Catalog:
    rng = random.Random(seed)
    entries = []
    for index in range(count):
        age = timedelta(seconds=rng.randint(-2 * 86400, 500 * 86400))
        entries.append((f"backup-{index:04d}", now - age))
    return make_catalog(entries)


def apply(catalog: Catalog, decision: RetentionDecision) -> Catalog:
    return Catalog(tuple(record for record in catalog if record.key not in decision.delete))


def test_keep_one_per_month_reference_history() -> None:
    now = utc(2014, 6, 15)
    catalog = make_catalog(
        [
            ("A", utc(2015, 6, 15)),  # in the future
            ("B", utc(2014, 6, 15)),
            ("C", utc(2014, 6, 14, 16)),
            ("D", utc(2014, 6, 14, 8)),
            ("E", utc(2014, 6, 14)),  # exactly keep_all_within old
            ("F", utc(2014, 6, 13, 23, 59, 59)),
            ("G", utc(2014, 6, 3)),
            ("H", utc(2014, 6, 1)),
            ("I", utc(2014, 5, 31)),
            ("J", utc(2014, 5, 17)),
            ("K", utc(2014, 4, 3)),
            ("L", utc(2014, 4, 2)),
            ("M", utc(2014, 3, 31)),
            ("N", utc(2014, 3, 1)),  # older than one_per_month_within
        ]
    )

    decision = OlderThanButKeepOnePerMonth().decide(catalog, now, params(1, 90))

    assert decision.keep == set("ABCDHJLM")
    assert decision.delete == set("EFGIKN")
    assert "covered by H" in decision.reasons["G"]
    assert decision.reasons["N"] == "Older than 90 days."


def test_empty_catalog_gives_empty_decision() -> None:
    for name in STRATEGIES:
        decision = get_strategy(name).decide(Catalog(), utc(2024, 1, 1), params(1, 30, keep_last=3))
        assert decision == RetentionDecision()


def test_invalid_policy_is_rejected_before_evaluation() -> None:
    with pytest.raises(InvalidPolicy):
        OlderThanButKeepOnePerMonth().decide(Catalog(), utc(2024, 1, 1), params(10, 5))
    with pytest.raises(InvalidPolicy):
        OlderThan().decide(Catalog(), utc(2024, 1, 1), params(-1, 5))


def test_equal_thresholds_are_valid() -> None:
    PolicyParams(days(1), days(1)).validate()


def test_boundary_belongs_to_thinning_band() -> None:
    now = utc(2024, 5, 20)
    policy = params(5, 60)
    catalog = make_catalog(
        [
            ("may-10", utc(2024, 5, 10)),
            ("may-15-boundary", utc(2024, 5, 15)),
            ("may-15-recent", utc(2024, 5, 15, 0, 0, 1)),
            ("mar-21-boundary", utc(2024, 3, 21)),
            ("mar-21-thinning", utc(2024, 3, 21, 0, 0, 1)),
        ]
    )
    bands = {record.key: policy.band(record, now) for record in catalog}

    assert bands["may-15-boundary"] is AgeBand.THINNING
    assert bands["may-15-recent"] is AgeBand.RECENT
    assert bands["mar-21-boundary"] is AgeBand.EXPIRED
    assert bands["mar-21-thinning"] is AgeBand.THINNING

    decision = OlderThanButKeepOnePerMonth().decide(catalog, now, policy)

    assert decision.keep == {"may-10", "may-15-recent", "mar-21-thinning"}
    assert decision.delete == {"may-15-boundary", "mar-21-boundary"}


def test_months_follow_backup_calendar_not_now() -> None:
    now = utc(2024, 6, 17, 9, 30)
    catalog = make_catalog(
        [
            ("april-end", utc(2024, 4, 30, 23)),
            ("may-start", utc(2024, 5, 1, 1)),
            ("may-later", utc(2024, 5, 2, 1)),
        ]
    )

    decision = OlderThanButKeepOnePerMonth().decide(catalog, now, params(7, 365))

    assert decision.keep == {"april-end", "may-start"}
    assert decision.delete == {"may-later"}


def test_representative_ties_break_on_key() -> None:
    same_time = utc(2024, 1, 5)
    catalog = make_catalog([("b", same_time), ("a", same_time), ("c", utc(2024, 1, 6))])

    decision = OlderThanButKeepOnePerMonth().decide(catalog, utc(2024, 6, 1), params(1, 365))

    assert decision.keep == {"a"}
    assert decision.delete == {"b", "c"}


def test_ten_daily_backups_with_equal_thresholds() -> None:
    now = utc(2024, 3, 3, 12)
    catalog = make_catalog([(f"day-{i}", now - days(i)) for i in range(10)])
    recent = {f"day-{i}" for i in range(5)}
    older = {f"day-{i}" for i in range(5, 10)}

    decision = OlderThanButKeepOnePerMonth().decide(catalog, now, params(5, 5))
    assert decision.keep == recent
    assert decision.delete == older

    retained = KeepOnePerMonthRetainExpired().decide(catalog, now, params(5, 5))
    assert retained.keep == recent | older
    assert retained.delete == set()


def test_ten_daily_backups_across_month_boundary() -> None:
    now = utc(2024, 3, 7, 12)
    catalog = make_catalog([(f"day-{i}", now - days(i)) for i in range(10)])

    decision = OlderThanButKeepOnePerMonth().decide(catalog, now, params(5, 30))

    # day-6 is 1 March and day-9 is 27 February, the first of their months.
    assert decision.keep == {f"day-{i}" for i in (0, 1, 2, 3, 4, 6, 9)}
    assert decision.delete == {f"day-{i}" for i in (5, 7, 8)}


def test_three_years_of_daily_backups() -> None:
    now = utc(2024, 1, 1, 12)
    first = utc(2021, 1, 1)
    entries = []
    day = first
    while day <= utc(2024, 1, 1):
        entries.append((day.strftime("%Y-%m-%d"), day))
        day += days(1)
    catalog = make_catalog(entries)

    decision = OlderThanButKeepOnePerMonth().decide(catalog, now, params(14, 1460))

    recent = {key for key, when in entries if when >= utc(2023, 12, 19)}
    month_starts = {key for key, when in entries if when.day == 1 and when < utc(2024, 1, 1)}
    assert len(recent) == 14
    assert len(month_starts) == 36
    assert decision.keep == recent | month_starts
    assert len(decision.keep) == 50
    assert len(decision.delete) == len(entries) - 50


@pytest.mark.parametrize("name", sorted(STRATEGIES))
@pytest.mark.parametrize("seed", range(5))
def test_decision_partitions_catalog(name: str, seed: int) -> None:
    now = utc(2024, 7, 1)
    catalog = random_catalog(seed, 200, now)
    policy = params(3 + seed, 120 + 30 * seed, keep_last=10)

    decision = get_strategy(name).decide(catalog, now, policy)

    assert not decision.keep & decision.delete
    assert decision.keep | decision.delete == catalog.keys()


@pytest.mark.parametrize("name", sorted(STRATEGIES))
def test_second_evaluation_after_applying_deletes_nothing(name: str) -> None:
    now = utc(2024, 7, 1)
    catalog = random_catalog(42, 300, now)
    policy = params(7, 365, keep_last=20)
    strategy = get_strategy(name)

    first = strategy.decide(catalog, now, policy)
    second = strategy.decide(apply(catalog, first), now, policy)

    assert second.delete == set()
    assert second.keep == first.keep


def test_growing_keep_all_within_never_deletes_more() -> None:
    now = utc(2024, 7, 1)
    catalog = random_catalog(7, 400, now)
    strategy = OlderThanButKeepOnePerMonth()

    previous = None
    for keep_all in (0, 1, 2, 5, 10, 30, 45, 90, 200, 400):
        decision = strategy.decide(catalog, now, params(keep_all, 400))
        if previous is not None:
            assert previous.keep <= decision.keep
        previous = decision


def test_representative_is_stable_across_evaluations() -> None:
    now = utc(2024, 7, 1)
    entries = [(record.key, record.timestamp) for record in random_catalog(3, 250, now)]
    shuffled = list(entries)
    random.Random(99).shuffle(shuffled)

    first = OlderThanButKeepOnePerMonth().decide(make_catalog(entries), now, params(10, 300))
    second = OlderThanButKeepOnePerMonth().decide(make_catalog(shuffled), now, params(10, 300))

    assert first == second


def test_older_than_deletes_everything_not_recent() -> None:
    now = utc(2014, 11, 14, 8, 9, 10)
    catalog = make_catalog(
        [
            ("future", utc(2014, 11, 15, 8, 9, 10)),
            ("now", utc(2014, 11, 14, 8, 9, 10)),
            ("boundary", utc(2014, 11, 14, 8, 8, 10)),
            ("past", utc(2014, 11, 14, 8, 8, 9)),
            ("ancient", utc(2013, 11, 14, 8, 9, 10)),
        ]
    )
    policy = PolicyParams(timedelta(minutes=1), timedelta(minutes=1))

    decision = OlderThan().decide(catalog, now, policy)

    assert decision.keep == {"future", "now"}
    assert decision.delete == {"boundary", "past", "ancient"}
    assert decision.reasons["ancient"] == "Older than 1 minute."
    with pytest.raises(TypeError):
        decision.reasons["ancient"] = "kept after all"  # type: ignore[index]


def test_check_partition_rejects_overlap_and_gaps() -> None:
    catalog = make_catalog([("a", utc(2024, 1, 1)), ("b", utc(2024, 1, 2))])

    with pytest.raises(InvalidDecision, match="both kept and deleted"):
        RetentionDecision(keep=frozenset({"a", "b"}), delete=frozenset({"b"})).check_partition(
            catalog
        )
    with pytest.raises(InvalidDecision, match="cover exactly"):
        RetentionDecision(keep=frozenset({"a"})).check_partition(catalog)


def test_keep_last_keeps_newest() -> None:
    catalog = make_catalog([(f"b{i}", utc(2024, 1, 1 + i)) for i in range(6)])

    decision = KeepLast().decide(catalog, utc(2024, 2, 1), params(0, 0, keep_last=2))

    assert decision.keep == {"b4", "b5"}
    assert decision.delete == {"b0", "b1", "b2", "b3"}

    everything = KeepLast().decide(catalog, utc(2024, 2, 1), params(0, 0, keep_last=10))
    assert everything.keep == catalog.keys()


def test_keep_last_requires_positive_count() -> None:
    with pytest.raises(InvalidPolicy):
        KeepLast().decide(Catalog(), utc(2024, 1, 1), params(0, 0))


def test_keep_all_keeps_everything() -> None:
    now = utc(2024, 7, 1)
    catalog = random_catalog(1, 50, now)

    decision = KeepAll().decide(catalog, now, params(0, 0))

    assert decision.keep == catalog.keys()
    assert decision.delete == set()


def test_naive_now_is_treated_as_utc() -> None:
    catalog = make_catalog([("old", utc(2024, 1, 1)), ("new", utc(2024, 1, 30))])

    decision = OlderThan().decide(catalog, datetime(2024, 1, 31), params(7, 7))

    assert decision.keep == {"new"}


def test_unknown_strategy_name() -> None:
    with pytest.raises(InvalidPolicy):
        get_strategy("keep_some")


def test_format_duration() -> None:
    assert format_duration(days(14)) == "2 weeks"
    assert format_duration(days(1)) == "1 day"
    assert format_duration(timedelta(hours=36)) == "36 hours"
    assert format_duration(timedelta(seconds=90)) == "90 seconds"

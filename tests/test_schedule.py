from datetime import datetime, timedelta, timezone

import pytest

from scoutarr.schedule import ConfigurationError, InvalidSchedule, next_run_time, resolve

NOW = datetime(2024, 5, 1, 3, 15, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("expression", "period_ms"),
    [
        ("*/1 * * * *", 60_000),
        ("*/10 * * * *", 600_000),
        ("*/30 * * * *", 1_800_000),
        ("0 * * * *", 3_600_000),
        ("0 */6 * * *", 21_600_000),
        ("0 */12 * * *", 43_200_000),
    ],
)
def test_presets_resolve_to_exact_intervals(expression: str, period_ms: int) -> None:
    handle = resolve(expression)
    assert handle.is_interval
    assert handle.interval_ms == period_ms
    assert next_run_time(handle, NOW) == NOW + timedelta(milliseconds=period_ms)


def test_preset_matching_ignores_extra_whitespace() -> None:
    assert resolve("  */10   * * *  * ").interval_ms == 600_000


def test_other_expressions_are_cron() -> None:
    handle = resolve("30 4 * * 1")
    assert not handle.is_interval
    assert handle.describe() == "cron 30 4 * * 1 (UTC)"


def test_cron_next_run_is_strictly_after_now() -> None:
    handle = resolve("15 3 * * *")
    assert next_run_time(handle, NOW) == datetime(2024, 5, 2, 3, 15, tzinfo=timezone.utc)


def test_cron_next_run_treats_naive_times_as_utc() -> None:
    handle = resolve("0 5 * * *")
    nxt = next_run_time(handle, datetime(2024, 5, 1, 3, 15))
    assert nxt == datetime(2024, 5, 1, 5, 0, tzinfo=timezone.utc)
    assert nxt.tzinfo is not None


@pytest.mark.parametrize("expression", ["", "   ", "not a cron", "* * *", "61 * * * *", "* * * * * * *", "0 25 * * *"])
def test_invalid_expressions_raise_configuration_error(expression: str) -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        resolve(expression)
    assert isinstance(excinfo.value, InvalidSchedule)
    assert "Invalid schedule" in str(excinfo.value)

import logging
import sys
import threading
import time
from datetime import datetime, timedelta, timezone

from fakes import BlockingAdapter, FakeAdapter, FakeNotifier, make_config, make_items, make_target

from scoutarr.config import ArrConfig
from scoutarr.logging_utils import redact_secrets
from scoutarr.schedule import ScheduleHandle
from scoutarr.scheduler import RunGuard, Scheduler, _run_once, instance_key, main, schedule_key
from scoutarr.state import StateStore

LOGGER = logging.getLogger("test")
T0 = datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)


def _scheduler(config, adapters, store=None, notifier=None, clock=None) -> Scheduler:  # noqa: ANN001
    return Scheduler(
        config=config,
        store=store,
        logger=LOGGER,
        adapters=adapters,
        notifier=notifier or FakeNotifier(),
        clock=clock,
    )


def _wait_for(predicate, timeout: float = 3.0) -> bool:  # noqa: ANN001
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_run_guard_is_per_key() -> None:
    guard = RunGuard()
    assert guard.try_acquire("global") is True
    assert guard.try_acquire("global") is False
    assert guard.try_acquire("radarr-radarr-1") is True
    assert guard.running_keys() == ["global", "radarr-radarr-1"]
    guard.release("global")
    assert guard.is_running("global") is False
    assert guard.try_acquire("global") is True


def test_schedule_key_format() -> None:
    assert schedule_key("sonarr", "4k") == "sonarr-4k"


def test_overlapping_fires_execute_once() -> None:
    adapter = BlockingAdapter(make_items(5))
    sched = _scheduler(make_config([make_target()]), {"radarr": adapter})
    sched.start()
    try:
        first: list = []
        worker = threading.Thread(target=lambda: first.append(sched.fire("global")))
        worker.start()
        assert adapter.started.wait(timeout=2.0)

        assert sched.fire("global") is None
        assert sched.status()["running"] == ["global"]

        adapter.release.set()
        worker.join(timeout=5.0)
    finally:
        sched.stop()

    assert first[0] is not None
    assert adapter.fetch_count == 1
    assert len(sched.history()) == 1


def test_fanout_isolates_target_failures() -> None:
    config = make_config([make_target(), make_target("sonarr", "sonarr-1")])
    adapters = {
        "radarr": FakeAdapter(make_items(5), fail_on="fetch_candidates"),
        "sonarr": FakeAdapter(make_items(5), searches_one_at_a_time=True),
    }
    record = _scheduler(config, adapters).run_now()

    assert record.success is True
    assert record.results["radarr"].success is False
    assert record.results["radarr"].error == "fetch_candidates exploded"
    assert record.results["sonarr"].success is True
    assert record.results["sonarr"].searched == 3


def test_fanout_skips_targets_with_their_own_schedule() -> None:
    scheduled = make_target(target_id="radarr-1", schedule="0 * * * *", schedule_enabled=True)
    plain = make_target(target_id="radarr-2")
    adapter = FakeAdapter(make_items(5))
    record = _scheduler(make_config([scheduled, plain]), {"radarr": adapter}).run_now()

    # Two enabled radarr targets, so results are keyed by target id.
    assert list(record.results) == ["radarr-2"]
    assert adapter.fetch_count == 1


def test_fanout_skips_disabled_and_unconfigured_targets() -> None:
    from scoutarr.config import ArrConfig

    targets = [
        make_target(target_id="radarr-1", enabled=False),
        make_target(target_id="radarr-2", arr=ArrConfig(url="", api_key="abc")),
        make_target(target_id="radarr-3"),
    ]
    adapter = FakeAdapter(make_items(5))
    record = _scheduler(make_config(targets), {"radarr": adapter}).run_now()
    assert list(record.results) == ["radarr-3"]


def test_fanout_order_and_single_target_keys() -> None:
    targets = [make_target("readarr", "readarr-1"), make_target("sonarr", "sonarr-1"), make_target()]
    adapters = {
        "radarr": FakeAdapter(make_items(1)),
        "sonarr": FakeAdapter(make_items(1)),
        "readarr": FakeAdapter(make_items(1)),
    }
    record = _scheduler(make_config(targets), adapters).run_now()
    assert list(record.results) == ["radarr", "sonarr", "readarr"]
    assert record.key is None


def test_invalid_schedule_leaves_key_unarmed() -> None:
    bad = make_target(target_id="radarr-1", schedule="not a cron", schedule_enabled=True)
    good = make_target("sonarr", "sonarr-1", schedule="*/10 * * * *", schedule_enabled=True)
    sched = _scheduler(make_config([bad, good]), {"radarr": FakeAdapter([]), "sonarr": FakeAdapter([])})
    sched.start()
    try:
        tasks = sched.status()["tasks"]
    finally:
        sched.stop()
    assert "global" in tasks
    assert "sonarr-sonarr-1" in tasks
    assert "radarr-radarr-1" not in tasks


def test_disabled_global_scheduler_is_not_armed() -> None:
    sched = _scheduler(make_config([make_target()], enabled=False), {"radarr": FakeAdapter([])})
    sched.start()
    try:
        assert sched.status()["tasks"] == {}
        assert sched.fire("global") is None
    finally:
        sched.stop()


def test_reload_rebuilds_and_stale_tasks_never_fire() -> None:
    scheduled = make_target(schedule="0 * * * *", schedule_enabled=True)
    adapter = FakeAdapter(make_items(5))
    sched = _scheduler(make_config([scheduled]), {"radarr": adapter})
    sched.start()
    try:
        old_task = sched._tasks["radarr-radarr-1"]
        sched.reload(make_config([make_target()]))

        assert old_task.stop_event.is_set()
        assert "radarr-radarr-1" not in sched.status()["tasks"]
        assert sched._fire_task(old_task) is None
        assert adapter.fetch_count == 0
    finally:
        sched.stop()
    assert sched.status()["tasks"] == {}


def test_next_run_is_published_mid_run_and_rearmed_after_completion() -> None:
    now = [T0]
    adapter = BlockingAdapter(make_items(3))
    sched = _scheduler(make_config([make_target()]), {"radarr": adapter}, clock=lambda: now[0])
    sched.start()
    try:
        assert sched.next_run("global") == T0 + timedelta(hours=6)

        now[0] = T0 + timedelta(hours=6)
        worker = threading.Thread(target=sched.fire, args=("global",))
        worker.start()
        assert adapter.started.wait(timeout=2.0)
        assert sched.next_run("global") == T0 + timedelta(hours=12)

        now[0] = T0 + timedelta(hours=6, minutes=5)
        adapter.release.set()
        worker.join(timeout=5.0)
        assert sched.next_run("global") == T0 + timedelta(hours=12, minutes=5)
    finally:
        sched.stop()


def test_instance_fire_records_key_and_skips_notifications() -> None:
    scheduled = make_target(schedule="*/30 * * * *", schedule_enabled=True)
    notifier = FakeNotifier()
    sched = _scheduler(make_config([scheduled]), {"radarr": FakeAdapter(make_items(5))}, notifier=notifier)
    sched.start()
    try:
        record = sched.fire("radarr-radarr-1")
    finally:
        sched.stop()
    assert record.key == "radarr-radarr-1"
    assert record.results["radarr"].searched == 3
    assert notifier.calls == []


def test_manual_runs_record_stats_and_notify(tmp_path) -> None:
    store = StateStore(str(tmp_path / "scoutarr.db"))
    notifier = FakeNotifier()
    config = make_config([make_target(count=3), make_target("sonarr", "sonarr-1")])
    adapters = {"radarr": FakeAdapter(make_items(5)), "sonarr": FakeAdapter([])}
    sched = _scheduler(config, adapters, store=store, notifier=notifier)

    sched.run_now()
    sched.run_now("radarr", "radarr-1")

    stats = store.get_stats()
    # The empty sonarr result is not recorded.
    assert stats["searches_by_application"] == {"radarr": 5}
    assert stats["searches_by_instance"] == {"radarr-1": 5}
    assert len(notifier.calls) == 2
    assert [r.key for r in sched.history()] == ["radarr-radarr-1", None]


def test_manual_run_shares_guard_with_scheduled_key() -> None:
    scheduled = make_target(schedule="0 * * * *", schedule_enabled=True)
    adapter = BlockingAdapter(make_items(5))
    sched = _scheduler(make_config([scheduled]), {"radarr": adapter})
    sched.start()
    try:
        worker = threading.Thread(target=sched.fire, args=("radarr-radarr-1",))
        worker.start()
        assert adapter.started.wait(timeout=2.0)
        assert sched.run_now("radarr", "radarr-1") is None
        assert sched.start_run_now("radarr", "radarr-1") is False
        adapter.release.set()
        worker.join(timeout=5.0)
    finally:
        sched.stop()
    assert len(sched.history()) == 1


def test_start_run_now_runs_in_background() -> None:
    adapter = BlockingAdapter(make_items(5))
    sched = _scheduler(make_config([make_target()]), {"radarr": adapter})

    assert sched.start_run_now() is True
    assert adapter.started.wait(timeout=2.0)
    assert sched.start_run_now() is False
    adapter.release.set()

    assert _wait_for(lambda: len(sched.history()) == 1)
    assert _wait_for(lambda: sched.status()["running"] == [])


def test_notifier_errors_do_not_break_the_run() -> None:
    class ExplodingNotifier:
        def send(self, results, success, error=None):  # noqa: ANN001, ANN201
            raise RuntimeError("webhook down")

    config = make_config([make_target()])
    sched = _scheduler(config, {"radarr": FakeAdapter(make_items(2))}, notifier=ExplodingNotifier())
    record = sched.run_now()
    assert record.success is True
    assert sched.guard.running_keys() == []


def test_unknown_manual_target_raises() -> None:
    sched = _scheduler(make_config([make_target()]), {"radarr": FakeAdapter([])})
    try:
        sched.run_now("radarr", "nope")
    except ValueError as exc:
        assert "radarr:nope" in str(exc)
    else:
        raise AssertionError("expected ValueError")


def test_history_clear_and_status() -> None:
    sched = _scheduler(make_config([make_target()]), {"radarr": FakeAdapter(make_items(2))})
    sched.run_now()
    assert sched.status()["last_run"] is not None
    sched.clear_history()
    assert sched.history() == []
    assert sched.status()["last_run"] is None


def test_unattended_comes_from_scheduler_config_unless_overridden() -> None:
    tagged = make_items(3, tags=("up",))
    adapter = FakeAdapter(tagged)
    sched = _scheduler(make_config([make_target(count="all")], unattended=True), {"radarr": adapter})
    assert sched.run_now().results["radarr"].searched == 3

    adapter = FakeAdapter(tagged)
    sched = _scheduler(
        make_config([make_target(count="all", unattended=False)], unattended=True), {"radarr": adapter}
    )
    assert sched.run_now().results["radarr"].searched == 0


def test_fanout_keeps_results_for_ids_shared_across_services(tmp_path) -> None:
    store = StateStore(str(tmp_path / "scoutarr.db"))
    targets = [
        make_target(target_id="main"),
        make_target(target_id="4k"),
        make_target("sonarr", "main"),
        make_target("sonarr", "4k"),
    ]
    adapters = {
        "radarr": FakeAdapter(make_items(10), fail_on="fetch_candidates"),
        "sonarr": FakeAdapter(make_items(10), searches_one_at_a_time=True),
    }
    record = _scheduler(make_config(targets), adapters, store=store).run_now()

    assert list(record.results) == ["radarr-main", "radarr-4k", "sonarr-main", "sonarr-4k"]
    assert [r.success for r in record.results.values()] == [False, False, True, True]
    assert store.get_stats()["searches_by_instance"] == {"sonarr-4k": 3, "sonarr-main": 3}


def test_instance_key_keeps_already_prefixed_ids() -> None:
    assert instance_key("radarr", "radarr-1") == "radarr-1"
    assert instance_key("sonarr", "4k") == "sonarr-4k"


def _fast_schedules(monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setattr("scoutarr.scheduler.resolve", lambda s: ScheduleHandle(expression=s, interval_ms=50))


def test_timer_fires_repeatedly_until_stopped(monkeypatch) -> None:  # noqa: ANN001
    _fast_schedules(monkeypatch)
    sched = _scheduler(make_config([make_target()]), {"radarr": FakeAdapter(make_items(500))})
    sched.start()
    try:
        assert _wait_for(lambda: len(sched.history()) >= 3)
    finally:
        sched.stop()

    time.sleep(0.1)
    assert _wait_for(lambda: sched.status()["running"] == [])
    fired = len(sched.history())
    time.sleep(0.3)
    assert len(sched.history()) == fired


def test_arming_a_key_again_stops_the_earlier_timer(monkeypatch) -> None:  # noqa: ANN001
    _fast_schedules(monkeypatch)
    sched = _scheduler(make_config([make_target()]), {"radarr": FakeAdapter(make_items(500))})
    sched.start()
    first = sched._tasks["global"]
    sched.start()
    try:
        assert first.stop_event.is_set()
        first.thread.join(timeout=2.0)
        assert not first.thread.is_alive()
        assert sched._tasks["global"] is not first
        assert sched._tasks["global"].thread.is_alive()
    finally:
        sched.stop()


def test_unregistered_timer_thread_exits(monkeypatch) -> None:  # noqa: ANN001
    _fast_schedules(monkeypatch)
    sched = _scheduler(make_config([make_target()]), {"radarr": FakeAdapter(make_items(500))})
    sched.start()
    try:
        with sched._lock:
            orphan = sched._tasks.pop("global")
        orphan.thread.join(timeout=2.0)
        assert not orphan.thread.is_alive()
        assert not orphan.stop_event.is_set()
    finally:
        sched.stop()


def test_concurrent_reloads_leave_one_timer_per_key(monkeypatch) -> None:  # noqa: ANN001
    _fast_schedules(monkeypatch)
    config = make_config([make_target()])
    sched = _scheduler(config, {"radarr": FakeAdapter(make_items(500))})
    sched.start()

    armed: list = []
    arm = sched._arm

    def _recording_arm(*args):  # noqa: ANN002, ANN202
        task = arm(*args)
        armed.append(task)
        return task

    monkeypatch.setattr(sched, "_arm", _recording_arm)
    workers = [threading.Thread(target=sched.reload, args=(config,)) for _ in range(4)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=5.0)

    try:
        live = sched._tasks["global"]
        assert len(armed) == 4
        for task in armed:
            if task is not live:
                task.thread.join(timeout=2.0)
                assert not task.thread.is_alive()
        assert live.thread.is_alive()
    finally:
        sched.stop()


def test_reload_masks_secrets_of_the_new_config() -> None:
    sched = _scheduler(make_config([make_target()]), {"radarr": FakeAdapter([])})
    fresh = make_target(arr=ArrConfig(url="http://example", api_key="fresh-key-from-reload"))
    sched.reload(make_config([fresh]))
    sched.stop()
    assert redact_secrets("using fresh-key-from-reload") == "using ***"


def test_run_once_exit_codes() -> None:
    ok = _scheduler(make_config([make_target()]), {"radarr": FakeAdapter(make_items(2))})
    assert _run_once(ok, LOGGER) == 0

    failing = _scheduler(make_config([make_target()]), {"radarr": FakeAdapter([], fail_on="fetch_candidates")})
    assert _run_once(failing, LOGGER) == 2

    busy = _scheduler(make_config([make_target()]), {"radarr": FakeAdapter([])})
    assert busy.guard.try_acquire("global")
    assert _run_once(busy, LOGGER) == 1


def test_main_exits_1_without_enabled_targets(tmp_path, monkeypatch) -> None:  # noqa: ANN001
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(f'app:\n  db_path: "{(tmp_path / "scoutarr.db").as_posix()}"\n', encoding="utf-8")
    monkeypatch.setattr(sys, "argv", ["scoutarr", "--config", str(cfg_path), "--once"])
    assert main() == 1


def test_preview_samples_without_searching_or_tagging() -> None:
    tagged = make_items(4, tags=("up",))
    adapter = FakeAdapter(make_items(5) + make_items(2, tags=("up",), start=6))
    recycled = FakeAdapter(tagged)
    config = make_config(
        [make_target(count=3), make_target("sonarr", "sonarr-1", count="all")], unattended=True
    )
    sched = _scheduler(config, {"radarr": adapter, "sonarr": recycled})

    previews = sched.preview()
    assert previews["radarr"].count == 3
    assert previews["radarr"].total == 5
    assert previews["sonarr"].count == 4
    assert {item["id"] for item in previews["sonarr"].items} == {1, 2, 3, 4}
    for fake in (adapter, recycled):
        assert fake.search_calls == []
        assert fake.added == []
        assert fake.removed == []
    assert sched.history() == []


def test_clear_tag_untags_items_and_respects_the_run_guard() -> None:
    adapter = FakeAdapter(make_items(3) + make_items(2, tags=("up",), start=4))
    sched = _scheduler(make_config([make_target()]), {"radarr": adapter})

    assert sched.clear_tag("radarr", "radarr-1") == 2
    assert adapter.removed == [[4, 5]]
    assert all("up" not in m.tags for m in adapter.items)

    assert sched.guard.try_acquire("radarr-radarr-1")
    assert sched.clear_tag("radarr", "radarr-1") is None
    sched.guard.release("radarr-radarr-1")

    try:
        sched.clear_tag("radarr", "nope")
    except ValueError as exc:
        assert "radarr:nope" in str(exc)
    else:
        raise AssertionError("expected ValueError")

import argparse
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import yaml

from .adapters import StarrAdapter, build_adapters
from .config import SERVICE_TYPES, RuntimeConfig, TargetConfig, load_config
from .history import HistoryLedger, RunRecord
from .logging_utils import config_secrets, register_secrets, setup_logging
from .notifications import Notifier
from .orchestrator import SearchPreview, SearchResult, clear_marker_tag, preview_search, run_search
from .schedule import InvalidSchedule, ScheduleHandle, next_run_time, resolve
from .state import StateStore

GLOBAL_KEY = "global"


def schedule_key(service_type: str, target_id: str) -> str:
    return f"{service_type}-{target_id}"


def instance_key(service_type: str, target_id: str) -> str:
    """Target id qualified by its service type, unless it already is ("radarr-1")."""
    if target_id.startswith(f"{service_type}-"):
        return target_id
    return schedule_key(service_type, target_id)


class RunGuard:
    """Per-key in-flight flags."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._running: set[str] = set()

    def try_acquire(self, key: str) -> bool:
        with self._lock:
            if key in self._running:
                return False
            self._running.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._running.discard(key)

    def is_running(self, key: str) -> bool:
        with self._lock:
            return key in self._running

    def running_keys(self) -> list[str]:
        with self._lock:
            return sorted(self._running)


@dataclass
class ScheduledTask:
    key: str
    schedule: str
    handle: ScheduleHandle
    target: TargetConfig | None = None
    next_run: datetime | None = None
    stop_event: threading.Event = field(default_factory=threading.Event)
    thread: threading.Thread | None = None


class Scheduler:
    def __init__(
        self,
        config: RuntimeConfig,
        store: StateStore | None,
        logger: logging.Logger,
        adapters: dict[str, StarrAdapter] | None = None,
        notifier: Notifier | None = None,
        ledger: HistoryLedger | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.logger = logger
        self._own_adapters = adapters is None
        self._own_notifier = notifier is None
        self.adapters = adapters if adapters is not None else build_adapters(config.app, store, logger)
        self.notifier = notifier if notifier is not None else self._build_notifier(config)
        self.ledger = ledger if ledger is not None else HistoryLedger(config.app.history_size)
        self.guard = RunGuard()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._tasks: dict[str, ScheduledTask] = {}
        self._lock = threading.Lock()
        self._reload_lock = threading.Lock()

    def _build_notifier(self, config: RuntimeConfig) -> Notifier:
        return Notifier(config.notifications, config.app.request_timeout_seconds, self.logger)

    # Timers

    def start(self) -> None:
        with self._lock:
            config = self.config
            if config.scheduler.enabled and config.scheduler.schedule:
                self._arm(GLOBAL_KEY, config.scheduler.schedule, None)
            for target in config.all_targets():
                if target.enabled and target.has_own_schedule:
                    self._arm(schedule_key(target.service_type, target.target_id), target.schedule, target)
        self.logger.info("Scheduler started with %d armed task(s)", len(self._tasks))

    def stop(self) -> None:
        with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()
        for task in tasks:
            task.stop_event.set()
        if tasks:
            self.logger.info("Scheduler stopped (%d task(s) disarmed)", len(tasks))

    def reload(self, config: RuntimeConfig) -> None:
        # One reload at a time.
        with self._reload_lock:
            register_secrets(config_secrets(config))
            self.stop()
            self.config = config
            if self._own_adapters:
                self.adapters = build_adapters(config.app, self.store, self.logger)
            if self._own_notifier:
                self.notifier = self._build_notifier(config)
            self.start()

    def _arm(self, key: str, schedule: str, target: TargetConfig | None) -> ScheduledTask | None:
        try:
            handle = resolve(schedule)
        except InvalidSchedule as exc:
            self.logger.error("Not scheduling %s: %s", key, exc)
            return None
        previous = self._tasks.get(key)
        if previous is not None:
            previous.stop_event.set()
        task = ScheduledTask(key=key, schedule=schedule, handle=handle, target=target)
        task.next_run = next_run_time(handle, self._clock())
        task.thread = threading.Thread(target=self._timer_loop, args=(task,), name=f"scoutarr-{key}", daemon=True)
        self._tasks[key] = task
        task.thread.start()
        self.logger.info("Scheduled %s (%s), next run %s", key, handle.describe(), task.next_run.isoformat())
        return task

    def _is_live(self, task: ScheduledTask) -> bool:
        with self._lock:
            return self._tasks.get(task.key) is task

    def _timer_loop(self, task: ScheduledTask) -> None:
        while not task.stop_event.is_set():
            next_run = task.next_run or self._clock()
            delay = max(0.0, (next_run - self._clock()).total_seconds())
            if task.stop_event.wait(timeout=delay):
                return
            # A manual fire() may have pushed next_run forward while we slept.
            if task.next_run is not None and self._clock() < task.next_run:
                continue
            if not self._is_live(task):
                return
            self._fire_task(task)

    def _fire_task(self, task: ScheduledTask) -> RunRecord | None:
        if not self._is_live(task):
            return None
        # Published before the run so status queries made mid-run see the upcoming fire.
        task.next_run = next_run_time(task.handle, self._clock())
        try:
            return self._execute(task.key, task.target, notify=task.target is None)
        finally:
            if self._is_live(task):
                task.next_run = next_run_time(task.handle, self._clock())

    def fire(self, key: str) -> RunRecord | None:
        with self._lock:
            task = self._tasks.get(key)
        if task is None:
            self.logger.warning("No scheduled task for %s", key)
            return None
        return self._fire_task(task)

    # Runs

    def _eligible_targets(self) -> list[TargetConfig]:
        out: list[TargetConfig] = []
        for target in self.config.all_targets():
            if not target.enabled or target.has_own_schedule:
                continue
            adapter = self.adapters.get(target.service_type)
            if adapter is None or not adapter.is_configured(target):
                self.logger.debug("Skipping %s: missing url or API key", target.name)
                continue
            out.append(target)
        return out

    def _result_key(self, target: TargetConfig) -> str:
        siblings = [t for t in self.config.targets_for(target.service_type) if t.enabled]
        if len(siblings) > 1:
            return instance_key(target.service_type, target.target_id)
        return target.service_type

    def _search_target(self, target: TargetConfig) -> SearchResult:
        adapter = self.adapters.get(target.service_type)
        if adapter is None:
            return SearchResult(
                success=False,
                error=f"No adapter for service type {target.service_type!r}",
                service_type=target.service_type,
                target_id=target.target_id,
                instance_name=target.name,
            )
        return run_search(target, adapter, self.config.effective_unattended(target), self.logger)

    def _run_global(self) -> RunRecord:
        results: dict[str, SearchResult] = {}
        try:
            for target in self._eligible_targets():
                results[self._result_key(target)] = self._search_target(target)
        except Exception as exc:
            self.logger.exception("Global run failed: %s", exc)
            return RunRecord(timestamp=self._clock(), success=False, results=results, error=str(exc))
        return RunRecord(timestamp=self._clock(), success=True, results=results)

    def _run_target(self, key: str, target: TargetConfig) -> RunRecord:
        result = self._search_target(target)
        return RunRecord(
            timestamp=self._clock(),
            success=result.success,
            results={self._result_key(target): result},
            error=result.error,
            key=key,
        )

    def _execute(
        self,
        key: str,
        target: TargetConfig | None,
        notify: bool,
        acquired: bool = False,
    ) -> RunRecord | None:
        if not acquired and not self.guard.try_acquire(key):
            self.logger.info("Skipping %s: previous run still in progress", key)
            return None
        try:
            self.logger.info("Run started: %s", key)
            record = self._run_global() if target is None else self._run_target(key, target)
            self._record_stats(record)
            self.ledger.append(record)
            self.logger.info(
                "Run finished: %s (success=%s, searched=%d)", key, record.success, record.total_searched
            )
            if notify:
                self._notify(record)
            return record
        finally:
            self.guard.release(key)

    def _record_stats(self, record: RunRecord) -> None:
        if self.store is None:
            return
        for result in record.results.values():
            if result.success and result.searched > 0:
                instance = instance_key(result.service_type, result.target_id) if result.target_id else None
                self.store.record_search(result.service_type, result.searched, result.items, instance=instance)

    def _notify(self, record: RunRecord) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.send(record.results, record.success, record.error)
        except Exception as exc:
            self.logger.error("Notification dispatch failed: %s", exc)

    def _resolve_manual(self, service_type: str | None, target_id: str | None) -> tuple[str, TargetConfig | None]:
        if service_type is None:
            return GLOBAL_KEY, None
        target = self.config.find_target(service_type, str(target_id or ""))
        if target is None:
            raise ValueError(f"Unknown target {service_type}:{target_id}")
        return schedule_key(target.service_type, target.target_id), target

    def run_now(self, service_type: str | None = None, target_id: str | None = None) -> RunRecord | None:
        """Run immediately. Returns None when that key is already running."""
        key, target = self._resolve_manual(service_type, target_id)
        return self._execute(key, target, notify=True)

    def start_run_now(self, service_type: str | None = None, target_id: str | None = None) -> bool:
        key, target = self._resolve_manual(service_type, target_id)
        if not self.guard.try_acquire(key):
            self.logger.info("Skipping manual run of %s: already running", key)
            return False

        def runner() -> None:
            try:
                self._execute(key, target, notify=True, acquired=True)
            except Exception as exc:
                self.logger.exception("Manual run of %s failed: %s", key, exc)

        threading.Thread(target=runner, name=f"scoutarr-manual-{key}", daemon=True).start()
        return True

    def preview(self) -> dict[str, SearchPreview]:
        """What a global run would search right now, without searching or tagging."""
        previews: dict[str, SearchPreview] = {}
        for target in self._eligible_targets():
            adapter = self.adapters[target.service_type]
            previews[self._result_key(target)] = preview_search(
                target, adapter, self.config.effective_unattended(target), self.logger
            )
        return previews

    def _target_and_adapter(self, service_type: str, target_id: str) -> tuple[TargetConfig, StarrAdapter]:
        target = self.config.find_target(service_type, target_id)
        adapter = self.adapters.get(service_type)
        if target is None or adapter is None:
            raise ValueError(f"Unknown target {service_type}:{target_id}")
        return target, adapter

    def clear_tag(self, service_type: str, target_id: str) -> int | None:
        """Remove the marker tag from every item of one target.

        Returns the number of items untagged, or None when that target is mid-run.
        """
        target, adapter = self._target_and_adapter(service_type, target_id)
        key = schedule_key(target.service_type, target.target_id)
        if not self.guard.try_acquire(key):
            self.logger.info("Skipping tag clear of %s: run in progress", key)
            return None
        try:
            return clear_marker_tag(target, adapter, self.logger)
        finally:
            self.guard.release(key)

    def test_connection(self, service_type: str, target_id: str) -> dict[str, str]:
        target, adapter = self._target_and_adapter(service_type, target_id)
        return adapter.test_connection(target)

    # Query surface

    def status(self) -> dict[str, Any]:
        running = set(self.guard.running_keys())
        with self._lock:
            tasks = list(self._tasks.values())
        history = self.ledger.list()
        return {
            "scheduler_enabled": bool(self.config.scheduler.enabled),
            "running": sorted(running),
            "tasks": {
                task.key: {
                    "schedule": task.schedule,
                    "description": task.handle.describe(),
                    "next_run": task.next_run.isoformat() if task.next_run else None,
                    "running": task.key in running,
                    "target": task.target.name if task.target else None,
                }
                for task in tasks
            },
            "last_run": history[0].as_dict()["timestamp"] if history else None,
        }

    def next_run(self, key: str) -> datetime | None:
        with self._lock:
            task = self._tasks.get(key)
        return task.next_run if task else None

    def history(self) -> list[RunRecord]:
        return self.ledger.list()

    def clear_history(self) -> None:
        self.ledger.clear()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scoutarr")
    parser.add_argument(
        "--config",
        required=True,
        help="Path to YAML config file.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one global search across all targets and exit.",
    )
    return parser.parse_args()


def _has_targets(config: RuntimeConfig) -> bool:
    return any(t.enabled for service_type in SERVICE_TYPES for t in config.targets_for(service_type))


def _run_once(scheduler: Scheduler, logger: logging.Logger) -> int:
    record = scheduler.run_now()
    if record is None:
        return 1
    for key, result in record.results.items():
        if result.success:
            logger.info("%s: searched %d item(s)", key, result.searched)
        else:
            logger.error("%s: %s", key, result.error)
    if not record.success or any(not r.success for r in record.results.values()):
        return 2
    return 0


def _config_mtime(path: Path) -> float | None:
    try:
        return path.stat().st_mtime
    except OSError:
        return None


def main() -> int:
    args = parse_args()
    config_path = Path(args.config).resolve()
    config = load_config(str(config_path))
    setup_logging(config.app.log_level, secrets=config_secrets(config))
    logger = logging.getLogger("scoutarr")
    store = StateStore(config.app.db_path)

    if not _has_targets(config):
        logger.error("No targets configured. Add instances under radarr/sonarr/lidarr/readarr.")
        return 1

    scheduler = Scheduler(config=config, store=store, logger=logger)
    if args.once:
        return _run_once(scheduler, logger)

    scheduler.start()
    last_mtime = _config_mtime(config_path)
    try:
        while True:
            time.sleep(1.0)
            mtime = _config_mtime(config_path)
            if mtime is None or mtime == last_mtime:
                continue
            last_mtime = mtime
            try:
                new_config = load_config(str(config_path))
            except (OSError, ValueError, yaml.YAMLError) as exc:
                logger.error("Config reload failed, keeping current schedule: %s", exc)
                continue
            logger.info("Config changed on disk, rebuilding schedules.")
            scheduler.reload(new_config)
    except KeyboardInterrupt:
        logger.info("Stopped by user.")
        scheduler.stop()
        return 0

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

SERVICE_TYPES = ("radarr", "sonarr", "lidarr", "readarr")

# Config key and accepted values of the per-service status filter.
STATUS_FIELDS: dict[str, tuple[str, tuple[str, ...]]] = {
    "radarr": ("movie_status", ("announced", "in cinemas", "released", "any")),
    "sonarr": ("series_status", ("continuing", "upcoming", "ended", "")),
    "lidarr": ("artist_status", ("continuing", "ended", "")),
    "readarr": ("author_status", ("continuing", "ended", "")),
}

DEFAULT_COUNTS = {"radarr": 10, "sonarr": 5, "lidarr": 5, "readarr": 5}
DEFAULT_TAG_NAME = "upgradinatorr"
DEFAULT_SCHEDULE = "0 */6 * * *"


@dataclass(frozen=True)
class AppConfig:
    db_path: str
    log_level: str
    request_timeout_seconds: int
    verify_ssl: bool
    history_size: int


@dataclass(frozen=True)
class SchedulerConfig:
    enabled: bool
    schedule: str
    # Recycle already-tagged items once nothing untagged is left.
    unattended: bool


@dataclass(frozen=True)
class NotificationConfig:
    discord_webhook: str = ""
    notifiarr_passthrough_webhook: str = ""
    notifiarr_passthrough_discord_channel_id: str = ""
    pushover_user_key: str = ""
    pushover_api_token: str = ""


@dataclass(frozen=True)
class ArrConfig:
    url: str
    api_key: str


@dataclass(frozen=True)
class TargetConfig:
    service_type: str
    target_id: str
    name: str
    enabled: bool
    # Positive int, or "all" to search every item that passes the filters.
    count: int | str
    tag_name: str
    ignore_tag: str
    # None disables the monitored filter.
    monitored: bool | None
    # Service-specific status value; "" (or "any" for Radarr) disables it.
    status_filter: str
    quality_profile_name: str
    # None means "use scheduler.unattended".
    unattended: bool | None
    schedule: str
    schedule_enabled: bool
    arr: ArrConfig

    @property
    def has_own_schedule(self) -> bool:
        return bool(self.schedule_enabled and self.schedule)


@dataclass(frozen=True)
class RuntimeConfig:
    app: AppConfig
    scheduler: SchedulerConfig
    notifications: NotificationConfig
    targets: dict[str, list[TargetConfig]] = field(default_factory=dict)

    def targets_for(self, service_type: str) -> list[TargetConfig]:
        return list(self.targets.get(service_type, []))

    def all_targets(self) -> list[TargetConfig]:
        out: list[TargetConfig] = []
        for service_type in SERVICE_TYPES:
            out.extend(self.targets.get(service_type, []))
        return out

    def find_target(self, service_type: str, target_id: str) -> TargetConfig | None:
        for target in self.targets.get(service_type, []):
            if target.target_id == str(target_id):
                return target
        return None

    def effective_unattended(self, target: TargetConfig) -> bool:
        if target.unattended is not None:
            return bool(target.unattended)
        return bool(self.scheduler.unattended)


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):

        def repl(match: re.Match[str]) -> str:
            return os.getenv(match.group(1), "")

        return ENV_PATTERN.sub(repl, value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def _require_str(data: dict[str, Any], key: str, default: str = "") -> str:
    value = data.get(key, default)
    if value is None:
        return default
    return str(value).strip()


def _as_optional_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    v = str(value).strip().lower()
    if v in ("true", "1", "yes", "on"):
        return True
    if v in ("false", "0", "no", "off"):
        return False
    return None


def parse_count(value: Any, default: int) -> int | str:
    """Return a positive int or the literal "all"."""
    if isinstance(value, str):
        v = value.strip().lower()
        if v in ("all", "max"):
            return "all"
        try:
            value = int(v)
        except ValueError:
            return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    n = int(value)
    return n if n > 0 else default


def _load_dotenv_if_present(config_path: Path) -> None:
    # .env beside the config file wins over one in the working directory.
    candidates = [
        config_path.parent / ".env",
        Path.cwd() / ".env",
    ]
    for dotenv_path in candidates:
        if not dotenv_path.exists():
            continue
        try:
            for raw in dotenv_path.read_text(encoding="utf-8").splitlines():
                line = raw.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip().strip('"').strip("'")
                if key and key not in os.environ:
                    os.environ[key] = value
            return
        except OSError:
            return


def _default_raw_config(config_path: Path) -> dict[str, Any]:
    db_path = "/config/scoutarr.db" if config_path.as_posix().startswith("/config/") else "./state/scoutarr.db"
    raw: dict[str, Any] = {
        "app": {
            "db_path": db_path,
            "log_level": "INFO",
            "request_timeout_seconds": 30,
            "verify_ssl": True,
            "history_size": 100,
        },
        "scheduler": {"enabled": False, "schedule": DEFAULT_SCHEDULE, "unattended": False},
        "notifications": {
            "discord_webhook": "",
            "notifiarr_passthrough_webhook": "",
            "notifiarr_passthrough_discord_channel_id": "",
            "pushover_user_key": "",
            "pushover_api_token": "",
        },
    }
    for service_type in SERVICE_TYPES:
        status_key, allowed = STATUS_FIELDS[service_type]
        raw[service_type] = {
            "instances": [
                {
                    "id": f"{service_type}-1",
                    "name": f"{service_type.title()} Main",
                    "enabled": False,
                    "count": DEFAULT_COUNTS[service_type],
                    "tag_name": DEFAULT_TAG_NAME,
                    "ignore_tag": "",
                    "monitored": True,
                    status_key: "released" if service_type == "radarr" else "",
                    "quality_profile_name": "",
                    "schedule": "",
                    "schedule_enabled": False,
                    service_type: {"url": "", "api_key": ""},
                }
            ]
        }
    return raw


def _ensure_config_exists(config_path: Path) -> None:
    if config_path.exists():
        return
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
    except PermissionError as exc:
        raise PermissionError(
            f"Cannot create config directory {str(config_path.parent)!r}. "
            "If you're running in Docker, ensure the /config volume is writable by the container user."
        ) from exc

    template_path = Path(__file__).resolve().parents[1] / "config.example.yaml"
    text = ""
    if template_path.exists():
        try:
            text = template_path.read_text(encoding="utf-8")
        except OSError:
            text = ""
    if not text:
        text = yaml.safe_dump(_default_raw_config(config_path), sort_keys=False)

    try:
        config_path.write_text(text, encoding="utf-8")
    except PermissionError as exc:
        raise PermissionError(
            f"Cannot write config file {str(config_path)!r}. "
            "If you're running in Docker, ensure the /config volume is writable by the container user."
        ) from exc


def _parse_targets(raw: dict[str, Any], service_type: str) -> list[TargetConfig]:
    section = raw.get(service_type) if isinstance(raw.get(service_type), dict) else {}
    rows = section.get("instances") if isinstance(section.get("instances"), list) else []
    status_key, allowed = STATUS_FIELDS[service_type]

    out: list[TargetConfig] = []
    seen_ids: set[str] = set()
    for index, row in enumerate(rows, start=1):
        if not isinstance(row, dict):
            continue
        target_id = _require_str(row, "id", f"{service_type}-{index}") or f"{service_type}-{index}"
        if target_id in seen_ids:
            suffix = 2
            while f"{target_id}-{suffix}" in seen_ids:
                suffix += 1
            target_id = f"{target_id}-{suffix}"
        seen_ids.add(target_id)

        # Connection block nested under the service name, flat keys as fallback.
        arr_raw = row.get(service_type) if isinstance(row.get(service_type), dict) else {}
        arr = ArrConfig(
            url=_require_str(arr_raw, "url") or _require_str(row, "url"),
            api_key=_require_str(arr_raw, "api_key") or _require_str(row, "api_key"),
        )

        status_value = _require_str(row, status_key, _require_str(row, "status")).lower()
        if status_value not in allowed:
            status_value = ""

        out.append(
            TargetConfig(
                service_type=service_type,
                target_id=target_id,
                name=_require_str(row, "name", "") or target_id,
                enabled=bool(_as_optional_bool(row.get("enabled")) is not False),
                count=parse_count(row.get("count"), DEFAULT_COUNTS[service_type]),
                tag_name=_require_str(row, "tag_name", DEFAULT_TAG_NAME) or DEFAULT_TAG_NAME,
                ignore_tag=_require_str(row, "ignore_tag"),
                monitored=_as_optional_bool(row.get("monitored", True)),
                status_filter=status_value,
                quality_profile_name=_require_str(row, "quality_profile_name"),
                unattended=_as_optional_bool(row.get("unattended")),
                schedule=_require_str(row, "schedule"),
                schedule_enabled=bool(_as_optional_bool(row.get("schedule_enabled"))),
                arr=arr,
            )
        )
    return out


def load_config(path: str) -> RuntimeConfig:
    config_path = Path(path).resolve()
    _ensure_config_exists(config_path)
    _load_dotenv_if_present(config_path)
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raw = {}

    raw = _expand_env(raw)

    app_raw = raw.get("app") if isinstance(raw.get("app"), dict) else {}
    app = AppConfig(
        db_path=_require_str(app_raw, "db_path", "./state/scoutarr.db"),
        log_level=_require_str(app_raw, "log_level", "INFO").upper(),
        request_timeout_seconds=max(5, int(app_raw.get("request_timeout_seconds", 30))),
        verify_ssl=bool(app_raw.get("verify_ssl", True)),
        history_size=max(1, int(app_raw.get("history_size", 100))),
    )

    sched_raw = raw.get("scheduler") if isinstance(raw.get("scheduler"), dict) else {}
    scheduler = SchedulerConfig(
        enabled=bool(_as_optional_bool(sched_raw.get("enabled"))),
        schedule=_require_str(sched_raw, "schedule", DEFAULT_SCHEDULE),
        unattended=bool(_as_optional_bool(sched_raw.get("unattended"))),
    )

    notif_raw = raw.get("notifications") if isinstance(raw.get("notifications"), dict) else {}
    notifications = NotificationConfig(
        discord_webhook=_require_str(notif_raw, "discord_webhook"),
        notifiarr_passthrough_webhook=_require_str(notif_raw, "notifiarr_passthrough_webhook"),
        notifiarr_passthrough_discord_channel_id=_require_str(notif_raw, "notifiarr_passthrough_discord_channel_id"),
        pushover_user_key=_require_str(notif_raw, "pushover_user_key"),
        pushover_api_token=_require_str(notif_raw, "pushover_api_token"),
    )

    targets = {service_type: _parse_targets(raw, service_type) for service_type in SERVICE_TYPES}
    return RuntimeConfig(app=app, scheduler=scheduler, notifications=notifications, targets=targets)

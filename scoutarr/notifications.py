import logging
from datetime import datetime, timezone
from typing import Any, Callable

import requests

from .config import NotificationConfig
from .orchestrator import SearchResult

PUSHOVER_URL = "https://api.pushover.net/1/messages.json"


def format_result_name(result_key: str) -> str:
    """"radarr" -> "Radarr", "sonarr-4k" -> "Sonarr (4k)"."""
    app, _, instance = str(result_key).partition("-")
    name = app[:1].upper() + app[1:]
    return f"{name} ({instance})" if instance else name


def _result_lines(results: dict[str, SearchResult], max_titles: int | None) -> list[str]:
    lines: list[str] = []
    for key, result in results.items():
        if not result.success or result.searched <= 0:
            continue
        line = f"{format_result_name(key)}: {result.searched} item(s)"
        if max_titles is not None:
            titles = [str(item.get("title") or "") for item in result.items]
            shown = ", ".join(titles[:max_titles])
            more = f" (+{len(titles) - max_titles} more)" if len(titles) > max_titles else ""
            line = f"{line} - {shown}{more}"
        lines.append(line)
    return lines


def build_message(
    results: dict[str, SearchResult],
    error: str | None,
    max_titles: int | None,
) -> str:
    if error:
        return f"Search failed: {error}"
    if sum(r.searched for r in results.values()) == 0:
        return "No items were searched"
    return "\n".join(_result_lines(results, max_titles)) or "No items were searched"


# Titles listed per result line, per channel. None lists none.
MAX_TITLES: dict[str, int | None] = {"discord": 5, "notifiarr": None, "pushover": 3}
CHANNELS = tuple(MAX_TITLES)


class Notifier:
    def __init__(self, config: NotificationConfig, timeout_seconds: int, logger: logging.Logger) -> None:
        self.config = config
        self.timeout_seconds = timeout_seconds
        self.logger = logger

    @property
    def configured_channels(self) -> list[str]:
        out = []
        if self.config.discord_webhook:
            out.append("discord")
        if self.config.notifiarr_passthrough_webhook:
            out.append("notifiarr")
        if self.config.pushover_user_key and self.config.pushover_api_token:
            out.append("pushover")
        return out

    def _sender(self, channel: str) -> Callable[[str, str, bool], None]:
        return {
            "discord": self._send_discord,
            "notifiarr": self._send_notifiarr,
            "pushover": self._send_pushover,
        }[channel]

    def send(self, results: dict[str, SearchResult], success: bool, error: str | None = None) -> int:
        """Dispatch to every configured channel. Returns how many succeeded."""
        title = "Scoutarr Search Completed" if success else "Scoutarr Search Failed"
        sent = 0
        for channel in self.configured_channels:
            message = build_message(results, error, max_titles=MAX_TITLES[channel])
            try:
                self._sender(channel)(title, message, success)
                sent += 1
            except requests.exceptions.RequestException as exc:
                self.logger.error("Failed to send %s notification: %s", channel, exc)
        if self.configured_channels:
            self.logger.info("Notifications sent: %d/%d", sent, len(self.configured_channels))
        return sent

    def send_test(self, channel: str) -> None:
        """Send a test message to one channel. Request errors propagate."""
        if channel not in CHANNELS:
            raise ValueError(f"Unknown notification channel {channel!r} (expected one of {', '.join(CHANNELS)})")
        if channel not in self.configured_channels:
            raise ValueError(f"Notification channel {channel!r} is not configured")
        self._sender(channel)("Scoutarr Test Notification", "This is a test notification from Scoutarr.", True)
        self.logger.info("Test notification sent via %s", channel)

    def _post(self, url: str, **kwargs: Any) -> None:
        resp = requests.post(url, timeout=self.timeout_seconds, **kwargs)
        resp.raise_for_status()

    def _send_discord(self, title: str, message: str, success: bool) -> None:
        embed = {
            "title": title,
            "description": message,
            "color": 0x00FF00 if success else 0xFF0000,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self._post(self.config.discord_webhook, json={"embeds": [embed]})

    def _send_notifiarr(self, title: str, message: str, success: bool) -> None:
        payload: dict[str, Any] = {"event": "scoutarr", "title": title, "message": message}
        if self.config.notifiarr_passthrough_discord_channel_id:
            payload["channel"] = self.config.notifiarr_passthrough_discord_channel_id
        self._post(self.config.notifiarr_passthrough_webhook, json=payload)

    def _send_pushover(self, title: str, message: str, success: bool) -> None:
        self._post(
            PUSHOVER_URL,
            data={
                "token": self.config.pushover_api_token,
                "user": self.config.pushover_user_key,
                "title": title,
                "message": message,
                "priority": "0" if success else "1",
            },
        )

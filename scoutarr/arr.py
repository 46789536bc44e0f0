import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

import requests

from .config import ArrConfig


def _as_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in ("true", "1", "yes", "on"):
            return True
        if v in ("false", "0", "no", "off"):
            return False
    return None


@dataclass(frozen=True)
class ServiceProfile:
    """API shape of one *arr application."""

    service_type: str
    app_name: str
    api_version: str
    media_endpoint: str
    editor_ids_key: str
    title_fields: tuple[str, ...]
    search_command: str
    # Key of the search command payload: a list for batch services, a scalar otherwise.
    search_id_key: str
    searches_one_at_a_time: bool
    media_type_name: str

    @property
    def editor_endpoint(self) -> str:
        return f"{self.media_endpoint}/editor"

    def path(self, suffix: str) -> str:
        return f"/api/{self.api_version}/{suffix.lstrip('/')}"


SERVICE_PROFILES: dict[str, ServiceProfile] = {
    "radarr": ServiceProfile(
        service_type="radarr",
        app_name="Radarr",
        api_version="v3",
        media_endpoint="movie",
        editor_ids_key="movieIds",
        title_fields=("title",),
        search_command="MoviesSearch",
        search_id_key="movieIds",
        searches_one_at_a_time=False,
        media_type_name="movies",
    ),
    "sonarr": ServiceProfile(
        service_type="sonarr",
        app_name="Sonarr",
        api_version="v3",
        media_endpoint="series",
        editor_ids_key="seriesIds",
        title_fields=("title",),
        search_command="SeriesSearch",
        search_id_key="seriesId",
        searches_one_at_a_time=True,
        media_type_name="series",
    ),
    "lidarr": ServiceProfile(
        service_type="lidarr",
        app_name="Lidarr",
        api_version="v1",
        media_endpoint="artist",
        editor_ids_key="artistIds",
        title_fields=("artistName", "title"),
        search_command="ArtistSearch",
        search_id_key="artistId",
        searches_one_at_a_time=True,
        media_type_name="artists",
    ),
    "readarr": ServiceProfile(
        service_type="readarr",
        app_name="Readarr",
        api_version="v1",
        media_endpoint="author",
        editor_ids_key="authorIds",
        title_fields=("authorName", "title"),
        search_command="AuthorSearch",
        search_id_key="authorId",
        searches_one_at_a_time=True,
        media_type_name="authors",
    ),
}


@dataclass(frozen=True)
class MediaItem:
    media_id: int
    title: str
    monitored: bool
    # Tag labels, not numeric ids.
    tags: frozenset[str] = field(default_factory=frozenset)
    quality_profile_name: str = ""
    status: str = ""
    last_searched: str | None = None

    def as_ref(self) -> dict[str, Any]:
        return {"id": self.media_id, "title": self.title}


class ArrRequestError(RuntimeError):
    def __init__(
        self,
        app: str,
        base_url: str,
        method: str,
        path: str,
        message: str,
        hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.app = app
        self.base_url = base_url
        self.method = method
        self.path = path
        self.message = message
        self.hint = hint or ""

    def __str__(self) -> str:
        loc = ""
        try:
            u = urlparse(self.base_url)
            if u.hostname:
                loc = u.hostname
                if u.port:
                    loc = f"{loc}:{u.port}"
        except ValueError:
            loc = ""
        where = loc or self.base_url
        extra = f" Hint: {self.hint}" if self.hint else ""
        return f"{self.app} request failed ({where} {self.method} {self.path}): {self.message}.{extra}"


class ArrClient:
    def __init__(
        self,
        name: str,
        config: ArrConfig,
        timeout_seconds: int,
        verify_ssl: bool,
        logger: logging.Logger,
    ) -> None:
        self.name = name
        self.config = config
        self.timeout_seconds = timeout_seconds
        self.verify_ssl = verify_ssl
        self.logger = logger

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any] | list[Any]:
        base = self.config.url.rstrip("/")
        if not base:
            raise ArrRequestError(
                app=self.name,
                base_url=base,
                method=method,
                path=path,
                message="No URL configured",
                hint="Set the instance URL in the config file.",
            )
        url = f"{base}{path}"
        headers = {"X-Api-Key": self.config.api_key}
        try:
            resp = requests.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json_data,
                timeout=self.timeout_seconds,
                verify=self.verify_ssl,
            )
        except requests.exceptions.ConnectionError as exc:
            raise ArrRequestError(
                app=self.name,
                base_url=base,
                method=method,
                path=path,
                message="Cannot connect (connection refused/unreachable)",
                hint="Check the instance URL/port and that the service is running.",
            ) from exc
        except requests.exceptions.Timeout as exc:
            raise ArrRequestError(
                app=self.name,
                base_url=base,
                method=method,
                path=path,
                message=f"Request timed out after {self.timeout_seconds}s",
                hint="Increase request_timeout_seconds or check network latency.",
            ) from exc
        except requests.exceptions.RequestException as exc:
            raise ArrRequestError(
                app=self.name,
                base_url=base,
                method=method,
                path=path,
                message=exc.__class__.__name__,
            ) from exc

        try:
            resp.raise_for_status()
        except requests.exceptions.HTTPError as exc:
            snippet = (resp.text or "").strip().replace("\n", " ")
            if len(snippet) > 200:
                snippet = snippet[:200] + "..."
            msg = f"HTTP {resp.status_code}"
            if snippet:
                msg = f"{msg} ({snippet})"
            raise ArrRequestError(
                app=self.name,
                base_url=base,
                method=method,
                path=path,
                message=msg,
                hint="Check API key permissions and that the endpoint exists for your version.",
            ) from exc

        if not resp.text:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise ArrRequestError(
                app=self.name,
                base_url=base,
                method=method,
                path=path,
                message="Invalid JSON response",
            ) from exc

    def _get_list(self, path: str) -> list[dict[str, Any]]:
        payload = self._request("GET", path)
        if not isinstance(payload, list):
            return []
        return [row for row in payload if isinstance(row, dict)]

    def fetch_media(self, profile: ServiceProfile) -> list[dict[str, Any]]:
        return self._get_list(profile.path(profile.media_endpoint))

    def fetch_tags(self, profile: ServiceProfile) -> dict[int, str]:
        """Return {tag_id: label}."""
        out: dict[int, str] = {}
        for row in self._get_list(profile.path("tag")):
            tag_id = int(row.get("id") or 0)
            if tag_id:
                out[tag_id] = str(row.get("label") or "")
        return out

    def fetch_quality_profiles(self, profile: ServiceProfile) -> dict[int, str]:
        """Return {profile_id: name}."""
        out: dict[int, str] = {}
        for row in self._get_list(profile.path("qualityprofile")):
            profile_id = int(row.get("id") or 0)
            if profile_id:
                out[profile_id] = str(row.get("name") or "")
        return out

    def test_connection(self, profile: ServiceProfile) -> dict[str, str]:
        status = self._request("GET", profile.path("system/status"))
        if not isinstance(status, dict):
            status = {}
        return {
            "app_name": str(status.get("appName") or profile.app_name),
            "version": str(status.get("version") or ""),
        }

    def get_or_create_tag(self, profile: ServiceProfile, label: str) -> int | None:
        for tag_id, existing in self.fetch_tags(profile).items():
            if existing == label:
                return tag_id
        created = self._request("POST", profile.path("tag"), json_data={"label": label})
        if isinstance(created, dict) and int(created.get("id") or 0) > 0:
            self.logger.info("Created tag %r in %s", label, self.name)
            return int(created["id"])
        return None

    def trigger_search(self, profile: ServiceProfile, media_ids: list[int]) -> None:
        if profile.searches_one_at_a_time:
            if len(media_ids) != 1:
                raise ValueError(f"{profile.app_name} searches accept exactly one id, got {len(media_ids)}")
            payload: dict[str, Any] = {"name": profile.search_command, profile.search_id_key: int(media_ids[0])}
        else:
            payload = {"name": profile.search_command, profile.search_id_key: [int(m) for m in media_ids]}
        self._request("POST", profile.path("command"), json_data=payload)

    def edit_tags(self, profile: ServiceProfile, media_ids: list[int], tag_id: int, apply: str) -> None:
        if apply not in ("add", "remove"):
            raise ValueError(f"Unknown tag operation: {apply}")
        self._request(
            "PUT",
            profile.path(profile.editor_endpoint),
            json_data={
                profile.editor_ids_key: [int(m) for m in media_ids],
                "tags": [int(tag_id)],
                "applyTags": apply,
            },
        )


def media_item_from_row(
    profile: ServiceProfile,
    row: dict[str, Any],
    tag_labels: dict[int, str],
    profile_names: dict[int, str],
) -> MediaItem | None:
    media_id = int(row.get("id") or 0)
    if not media_id:
        return None
    title = ""
    for key in profile.title_fields:
        if row.get(key):
            title = str(row.get(key)).strip()
            break
    tags: set[str] = set()
    for raw_tag in row.get("tags") or []:
        try:
            tag_id = int(raw_tag)
        except (TypeError, ValueError):
            continue
        tags.add(tag_labels.get(tag_id, f"unknown-tag-{tag_id}"))
    last_searched = row.get("lastSearchTime")
    return MediaItem(
        media_id=media_id,
        title=title or "Unknown",
        monitored=bool(_as_bool(row.get("monitored"))),
        tags=frozenset(tags),
        quality_profile_name=profile_names.get(int(row.get("qualityProfileId") or 0), ""),
        status=str(row.get("status") or ""),
        last_searched=str(last_searched) if last_searched else None,
    )

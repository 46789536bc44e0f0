import logging

from .arr import SERVICE_PROFILES, ArrClient, MediaItem, ServiceProfile, media_item_from_row
from .config import AppConfig, ArrConfig, TargetConfig
from .state import StateStore

# Config value -> status string reported by the service.
RADARR_STATUS_VALUES = {
    "announced": "announced",
    "in cinemas": "inCinemas",
    "released": "released",
}


class StarrAdapter:
    """Fetch, filter, search and tag media on one *arr service type."""

    def __init__(
        self,
        profile: ServiceProfile,
        app_config: AppConfig,
        store: StateStore | None,
        logger: logging.Logger,
    ) -> None:
        self.profile = profile
        self.app_config = app_config
        self.store = store
        self.logger = logger

    @property
    def service_type(self) -> str:
        return self.profile.service_type

    @property
    def searches_one_at_a_time(self) -> bool:
        return self.profile.searches_one_at_a_time

    def api_key_for(self, target: TargetConfig) -> str:
        # A key saved through the Web UI wins over the config file.
        if self.store is not None:
            stored = self.store.get_arr_api_key(target.service_type, target.target_id)
            if stored:
                return stored
        return target.arr.api_key

    def is_configured(self, target: TargetConfig) -> bool:
        return bool(target.arr.url and self.api_key_for(target))

    def client_for(self, target: TargetConfig) -> ArrClient:
        return ArrClient(
            name=f"{self.profile.app_name} ({target.name})",
            config=ArrConfig(url=target.arr.url, api_key=self.api_key_for(target)),
            timeout_seconds=self.app_config.request_timeout_seconds,
            verify_ssl=self.app_config.verify_ssl,
            logger=self.logger,
        )

    def test_connection(self, target: TargetConfig) -> dict[str, str]:
        info = self.client_for(target).test_connection(self.profile)
        self.logger.info("%s: connected to %s %s", target.name, info["app_name"], info["version"])
        return info

    def fetch_candidates(self, target: TargetConfig) -> list[MediaItem]:
        client = self.client_for(target)
        tag_labels = client.fetch_tags(self.profile)
        profile_names = client.fetch_quality_profiles(self.profile)
        items: list[MediaItem] = []
        for row in client.fetch_media(self.profile):
            item = media_item_from_row(self.profile, row, tag_labels, profile_names)
            if item is not None:
                items.append(item)
        self.logger.debug("%s: fetched %d %s", target.name, len(items), self.profile.media_type_name)
        return items

    def _status_matches(self, target: TargetConfig, item: MediaItem) -> bool:
        wanted = target.status_filter
        if not wanted or wanted == "any":
            return True
        if self.service_type == "radarr":
            wanted = RADARR_STATUS_VALUES.get(wanted, wanted)
        return item.status.lower() == wanted.lower()

    def filter(self, target: TargetConfig, candidates: list[MediaItem], attended: bool = True) -> list[MediaItem]:
        """
        Apply the selection filters.

        With attended=False only the monitored and marker-tag clauses apply; the
        unattended recovery pass uses that reduced set.
        """
        filtered = list(candidates)

        if target.monitored is not None:
            filtered = [m for m in filtered if m.monitored == target.monitored]

        filtered = [m for m in filtered if target.tag_name not in m.tags]

        if attended and target.quality_profile_name:
            known = set(self.client_for(target).fetch_quality_profiles(self.profile).values())
            if target.quality_profile_name in known:
                filtered = [m for m in filtered if m.quality_profile_name == target.quality_profile_name]
            else:
                self.logger.warning(
                    "%s: quality profile %r not found, skipping profile filter (available: %s)",
                    target.name,
                    target.quality_profile_name,
                    ", ".join(sorted(known)) or "none",
                )

        if attended:
            filtered = [m for m in filtered if self._status_matches(target, m)]
            if target.ignore_tag:
                filtered = [m for m in filtered if target.ignore_tag not in m.tags]

        self.logger.debug(
            "%s: %d of %d %s passed filters",
            target.name,
            len(filtered),
            len(candidates),
            self.profile.media_type_name,
        )
        return filtered

    def resolve_tag_id(self, target: TargetConfig, tag_name: str, create: bool = True) -> int | None:
        client = self.client_for(target)
        if create:
            return client.get_or_create_tag(self.profile, tag_name)
        for tag_id, label in client.fetch_tags(self.profile).items():
            if label == tag_name:
                return tag_id
        return None

    def trigger_search(self, target: TargetConfig, media_ids: list[int]) -> None:
        self.client_for(target).trigger_search(self.profile, media_ids)

    def add_tag(self, target: TargetConfig, media_ids: list[int], tag_id: int) -> None:
        self.client_for(target).edit_tags(self.profile, media_ids, tag_id, "add")

    def remove_tag(self, target: TargetConfig, media_ids: list[int], tag_id: int) -> None:
        self.client_for(target).edit_tags(self.profile, media_ids, tag_id, "remove")


def build_adapters(
    app_config: AppConfig,
    store: StateStore | None,
    logger: logging.Logger,
) -> dict[str, StarrAdapter]:
    return {
        service_type: StarrAdapter(profile, app_config, store, logger)
        for service_type, profile in SERVICE_PROFILES.items()
    }

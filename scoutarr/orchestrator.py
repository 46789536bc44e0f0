import logging
import random
from dataclasses import dataclass, field, replace
from typing import Any, Protocol, Sequence

from .arr import MediaItem
from .config import TargetConfig


class SearchAdapter(Protocol):
    searches_one_at_a_time: bool

    def fetch_candidates(self, target: TargetConfig) -> list[MediaItem]: ...

    def filter(self, target: TargetConfig, candidates: list[MediaItem], attended: bool = True) -> list[MediaItem]: ...

    def resolve_tag_id(self, target: TargetConfig, tag_name: str, create: bool = True) -> int | None: ...

    def trigger_search(self, target: TargetConfig, media_ids: list[int]) -> None: ...

    def add_tag(self, target: TargetConfig, media_ids: list[int], tag_id: int) -> None: ...

    def remove_tag(self, target: TargetConfig, media_ids: list[int], tag_id: int) -> None: ...


@dataclass
class SearchResult:
    success: bool
    searched: int = 0
    items: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    service_type: str = ""
    target_id: str = ""
    instance_name: str = ""

    def __post_init__(self) -> None:
        if not self.success:
            self.searched = 0
            self.items = []

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "success": self.success,
            "searched": self.searched,
            "items": list(self.items),
            "service_type": self.service_type,
            "target_id": self.target_id,
            "instance_name": self.instance_name,
        }
        if self.error:
            out["error"] = self.error
        return out


def select_items(items: Sequence[MediaItem], count: int | str) -> list[MediaItem]:
    if count == "all":
        return list(items)
    n = min(int(count), len(items))
    if n <= 0:
        return []
    return random.sample(list(items), n)


def _monitored_matches(target: TargetConfig, item: MediaItem) -> bool:
    return target.monitored is None or item.monitored == target.monitored


def _recycle_tagged(
    target: TargetConfig,
    adapter: SearchAdapter,
    candidates: list[MediaItem],
    logger: logging.Logger,
) -> list[MediaItem]:
    tag_id = adapter.resolve_tag_id(target, target.tag_name, create=False)
    if tag_id is None:
        logger.info("%s: tag %r does not exist yet, nothing to recycle", target.name, target.tag_name)
        return []
    tagged = [m.media_id for m in candidates if target.tag_name in m.tags and _monitored_matches(target, m)]
    if not tagged:
        return []
    logger.info("%s: unattended mode, removing tag %r from %d items", target.name, target.tag_name, len(tagged))
    adapter.remove_tag(target, tagged, tag_id)
    return adapter.filter(target, adapter.fetch_candidates(target), attended=False)


def run_search(
    target: TargetConfig,
    adapter: SearchAdapter,
    unattended: bool,
    logger: logging.Logger,
) -> SearchResult:
    """Run one fetch/filter/sample/search/tag pass against a single target.

    Adapter failures never escape: they come back as an unsuccessful result.
    """
    meta = {
        "service_type": target.service_type,
        "target_id": target.target_id,
        "instance_name": target.name,
    }
    try:
        candidates = adapter.fetch_candidates(target)
        filtered = adapter.filter(target, candidates)

        if not filtered and unattended:
            filtered = _recycle_tagged(target, adapter, candidates, logger)

        if not filtered:
            logger.info("%s: no items left to search", target.name)
            return SearchResult(success=True, **meta)

        selected = select_items(filtered, target.count)
        ids = [m.media_id for m in selected]

        if adapter.searches_one_at_a_time:
            for media_id in ids:
                adapter.trigger_search(target, [media_id])
        else:
            adapter.trigger_search(target, ids)

        tag_id = adapter.resolve_tag_id(target, target.tag_name)
        if tag_id is not None:
            adapter.add_tag(target, ids, tag_id)

        logger.info("%s: searched %d of %d items", target.name, len(selected), len(filtered))
        return SearchResult(success=True, searched=len(selected), items=[m.as_ref() for m in selected], **meta)
    except Exception as exc:
        logger.error("%s: search failed: %s", target.name, exc)
        return SearchResult(success=False, error=str(exc), **meta)


@dataclass
class SearchPreview:
    success: bool
    count: int = 0
    total: int = 0
    items: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    service_type: str = ""
    target_id: str = ""
    instance_name: str = ""

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "success": self.success,
            "count": self.count,
            "total": self.total,
            "items": list(self.items),
            "service_type": self.service_type,
            "target_id": self.target_id,
            "instance_name": self.instance_name,
        }
        if self.error:
            out["error"] = self.error
        return out


def preview_search(
    target: TargetConfig,
    adapter: SearchAdapter,
    unattended: bool,
    logger: logging.Logger,
) -> SearchPreview:
    """Dry run of run_search: nothing is searched, tagged or untagged."""
    meta = {
        "service_type": target.service_type,
        "target_id": target.target_id,
        "instance_name": target.name,
    }
    try:
        candidates = adapter.fetch_candidates(target)
        filtered = adapter.filter(target, candidates)

        if not filtered and unattended:
            # Re-filter as if the marker tag had already been removed.
            tag_id = adapter.resolve_tag_id(target, target.tag_name, create=False)
            if tag_id is not None:
                untagged = [
                    replace(m, tags=m.tags - {target.tag_name}) if _monitored_matches(target, m) else m
                    for m in candidates
                ]
                filtered = adapter.filter(target, untagged, attended=False)

        selected = select_items(filtered, target.count)
        logger.debug("%s: preview would search %d of %d items", target.name, len(selected), len(filtered))
        return SearchPreview(
            success=True, count=len(selected), total=len(filtered), items=[m.as_ref() for m in selected], **meta
        )
    except Exception as exc:
        logger.error("%s: preview failed: %s", target.name, exc)
        return SearchPreview(success=False, error=str(exc), **meta)


def clear_marker_tag(target: TargetConfig, adapter: SearchAdapter, logger: logging.Logger) -> int:
    tag_id = adapter.resolve_tag_id(target, target.tag_name, create=False)
    if tag_id is None:
        logger.info("%s: tag %r does not exist, nothing to clear", target.name, target.tag_name)
        return 0
    tagged = [m.media_id for m in adapter.fetch_candidates(target) if target.tag_name in m.tags]
    if tagged:
        adapter.remove_tag(target, tagged, tag_id)
    logger.info("%s: removed tag %r from %d items", target.name, target.tag_name, len(tagged))
    return len(tagged)

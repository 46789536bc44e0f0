import logging

import pytest

from scoutarr.arr import SERVICE_PROFILES, ArrClient, media_item_from_row
from scoutarr.config import ArrConfig


def _client(name: str = "sonarr") -> ArrClient:
    return ArrClient(
        name=name,
        config=ArrConfig(url="http://example", api_key="abc"),
        timeout_seconds=5,
        verify_ssl=True,
        logger=logging.getLogger("test"),
    )


def _recording(monkeypatch, client: ArrClient, responses: dict | None = None) -> list:  # noqa: ANN001
    calls: list = []

    def _fake_request(method, path, params=None, json_data=None):  # noqa: ANN001
        calls.append((method, path, json_data))
        return (responses or {}).get((method, path), {})

    monkeypatch.setattr(client, "_request", _fake_request)
    return calls


def test_media_item_from_row_resolves_tag_and_profile_names() -> None:
    row = {
        "id": 12,
        "artistName": "Boards of Canada",
        "monitored": "true",
        "tags": [1, 9],
        "qualityProfileId": 3,
        "status": "continuing",
        "lastSearchTime": "2024-03-01T00:00:00Z",
    }
    item = media_item_from_row(SERVICE_PROFILES["lidarr"], row, {1: "up"}, {3: "Lossless"})
    assert item.media_id == 12
    assert item.title == "Boards of Canada"
    assert item.monitored is True
    assert item.tags == frozenset({"up", "unknown-tag-9"})
    assert item.quality_profile_name == "Lossless"
    assert item.last_searched == "2024-03-01T00:00:00Z"


def test_media_item_from_row_skips_rows_without_id() -> None:
    assert media_item_from_row(SERVICE_PROFILES["radarr"], {"title": "x"}, {}, {}) is None


def test_batch_search_payload(monkeypatch) -> None:
    client = _client("radarr")
    calls = _recording(monkeypatch, client)
    client.trigger_search(SERVICE_PROFILES["radarr"], [1, 2])
    assert calls == [("POST", "/api/v3/command", {"name": "MoviesSearch", "movieIds": [1, 2]})]


@pytest.mark.parametrize(
    ("service_type", "path", "payload"),
    [
        ("sonarr", "/api/v3/command", {"name": "SeriesSearch", "seriesId": 4}),
        ("lidarr", "/api/v1/command", {"name": "ArtistSearch", "artistId": 4}),
        ("readarr", "/api/v1/command", {"name": "AuthorSearch", "authorId": 4}),
    ],
)
def test_single_id_search_payloads(monkeypatch, service_type: str, path: str, payload: dict) -> None:
    client = _client(service_type)
    calls = _recording(monkeypatch, client)
    client.trigger_search(SERVICE_PROFILES[service_type], [4])
    assert calls == [("POST", path, payload)]


def test_single_id_search_rejects_batches(monkeypatch) -> None:
    client = _client()
    calls = _recording(monkeypatch, client)
    with pytest.raises(ValueError):
        client.trigger_search(SERVICE_PROFILES["sonarr"], [1, 2])
    assert calls == []


def test_edit_tags_uses_editor_endpoint(monkeypatch) -> None:
    client = _client()
    calls = _recording(monkeypatch, client)
    client.edit_tags(SERVICE_PROFILES["sonarr"], [3, 4], 7, "remove")
    assert calls == [
        ("PUT", "/api/v3/series/editor", {"seriesIds": [3, 4], "tags": [7], "applyTags": "remove"}),
    ]


def test_get_or_create_tag_reuses_existing(monkeypatch) -> None:
    client = _client()
    calls = _recording(monkeypatch, client, {("GET", "/api/v3/tag"): [{"id": 5, "label": "up"}]})
    assert client.get_or_create_tag(SERVICE_PROFILES["sonarr"], "up") == 5
    assert [c[0] for c in calls] == ["GET"]


def test_get_or_create_tag_creates_missing(monkeypatch) -> None:
    client = _client()
    calls = _recording(
        monkeypatch,
        client,
        {
            ("GET", "/api/v3/tag"): [{"id": 5, "label": "other"}],
            ("POST", "/api/v3/tag"): {"id": 6, "label": "up"},
        },
    )
    assert client.get_or_create_tag(SERVICE_PROFILES["sonarr"], "up") == 6
    assert calls[-1] == ("POST", "/api/v3/tag", {"label": "up"})


def test_test_connection_reads_system_status(monkeypatch) -> None:
    client = _client("lidarr")
    status = {("GET", "/api/v1/system/status"): {"appName": "Lidarr", "version": "2.3.3"}}
    calls = _recording(monkeypatch, client, status)
    assert client.test_connection(SERVICE_PROFILES["lidarr"]) == {"app_name": "Lidarr", "version": "2.3.3"}
    assert calls == [("GET", "/api/v1/system/status", None)]

    _recording(monkeypatch, client)
    assert client.test_connection(SERVICE_PROFILES["radarr"]) == {"app_name": "Radarr", "version": ""}

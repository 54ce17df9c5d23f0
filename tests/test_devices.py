import asyncio
import logging
from datetime import datetime, timezone

import aiohttp

from domoja_bridge.devices import DeviceCache, replace_dates
from domoja_bridge.session import SessionManager

DEVICES = [
    {
        "id": "aquarium.lampes",
        "path": "aquarium.lampes",
        "state": "ON",
        "lastUpdateDate": "2023-11-29T00:26:16.347Z",
        "name": "Lampes",
        "type": "device",
        "source": "zibase",
        "widget": "on-off",
        "tags": "aquarium",
    },
    {"id": "portail.state", "path": "portail.state", "state": "CLOSED"},
]


def make_cache(monkeypatch, payload, status=200):
    cache = DeviceCache(SessionManager("http://domoja.local:4001", "admin", "secret"))

    async def fake_fetch():
        if isinstance(payload, Exception):
            raise payload
        return status, payload

    monkeypatch.setattr(cache, '_fetch_devices', fake_fetch)
    return cache


def test_replace_dates_is_recursive():
    data = replace_dates({
        "a": "2023-11-29T00:26:16.347Z",
        "b": ["2023-11-29T00:26:16Z", "text"],
        "c": {"d": 1},
    })
    assert data["a"] == datetime(2023, 11, 29, 0, 26, 16, 347000, tzinfo=timezone.utc)
    assert data["b"][0] == datetime(2023, 11, 29, 0, 26, 16, tzinfo=timezone.utc)
    assert data["b"][1] == "text"
    assert data["c"] == {"d": 1}


def test_replace_dates_needs_a_whole_timestamp():
    assert replace_dates("updated 2023-11-29T00:26:16Z") == "updated 2023-11-29T00:26:16Z"
    assert replace_dates("2023-11-29") == "2023-11-29"


def test_load_replaces_inventory(monkeypatch, caplog):
    cache = make_cache(monkeypatch, DEVICES)
    with caplog.at_level(logging.INFO, logger='domoja-bridge'):
        assert asyncio.run(cache.load()) is True

    assert len(cache) == 2
    assert "portail.state" in cache
    lampes = cache.get("aquarium.lampes")
    assert lampes.state == "ON"
    assert lampes.last_update_date.year == 2023
    assert "Loaded 2 device(s)" in caplog.text

    monkeypatch.setattr(cache, '_fetch_devices', make_cache(monkeypatch, DEVICES[1:])._fetch_devices)
    assert asyncio.run(cache.load()) is True
    assert "aquarium.lampes" not in cache


def test_empty_response_is_a_failure(monkeypatch, caplog):
    cache = make_cache(monkeypatch, None, status=401)
    with caplog.at_level(logging.ERROR, logger='domoja-bridge'):
        assert asyncio.run(cache.load()) is False
    assert "HTTP 401" in caplog.text
    assert len(cache) == 0


def test_network_error_is_a_failure(monkeypatch):
    cache = make_cache(monkeypatch, aiohttp.ClientConnectionError("refused"))
    assert asyncio.run(cache.load()) is False


def test_records_without_path_are_ignored(monkeypatch):
    cache = make_cache(monkeypatch, [{"id": "x"}, DEVICES[1]])
    assert asyncio.run(cache.load()) is True
    assert [d.path for d in cache] == ["portail.state"]


def test_change_updates_state_of_known_device(monkeypatch):
    cache = make_cache(monkeypatch, DEVICES)
    asyncio.run(cache.load())

    device = cache.apply_change("aquarium.lampes", "OFF", "2023-12-01T10:00:00.000Z")
    assert device is cache.get("aquarium.lampes")
    assert device.state == "OFF"
    assert device.last_update_date == datetime(2023, 12, 1, 10, 0, tzinfo=timezone.utc)
    assert device.name == "Lampes"


def test_change_for_unknown_device_creates_nothing(monkeypatch):
    cache = make_cache(monkeypatch, DEVICES)
    asyncio.run(cache.load())

    assert cache.apply_change("garage.light", "ON") is None
    assert "garage.light" not in cache
    assert len(cache) == 2


def test_device_to_dict(monkeypatch):
    cache = make_cache(monkeypatch, DEVICES)
    asyncio.run(cache.load())
    data = cache.get("aquarium.lampes").to_dict()
    assert data["lastUpdateDate"].startswith("2023-11-29T00:26:16.347")
    assert data["widget"] == "on-off"

import copy
import json
import logging

import pytest

from domoja_bridge.config import (
    ConfigurationError,
    DuplicateDisplayNameError,
    check_config,
    load_config,
    normalize_accessories,
    parse_config,
)
from domoja_bridge.models import ORIGIN_BY_DEVICE, ORIGIN_DETAILED, Device

from conftest import AQUARIUM_CONFIG

PORTAIL = {
    "displayName": "Portail",
    "services": [{
        "service": "Garage Door Opener",
        "characteristics": [
            {"characteristic": "Current Door State", "get": {"device": "portail.state", "mapping": ["OPEN", 0, "CLOSED", 1]}},
            {"characteristic": "Target Door State", "device": "portail.command", "set": {"mapping": [0, "OPEN", 1, "CLOSE"]}},
        ],
    }],
}


def config_with(*accessories):
    data = copy.deepcopy(AQUARIUM_CONFIG)
    data['accessories'] = list(accessories)
    return data


def test_parse_both_accessory_shapes():
    data = config_with(AQUARIUM_CONFIG['accessories'][0], PORTAIL)
    config = parse_config(data)
    specs = normalize_accessories(config)

    assert [s.display_name for s in specs] == ["Lampes aquarium", "Portail"]
    assert specs[0].origin == ORIGIN_BY_DEVICE
    assert specs[1].origin == ORIGIN_DETAILED


def test_defaults_for_tuning_options():
    config = parse_config(copy.deepcopy(AQUARIUM_CONFIG))
    assert config.login.timeout == 0
    assert config.login.delay_between_login_attempts == 10
    assert config.login.max_logged_login_retries == 2
    assert config.retry_delay == 10
    assert config.bridge.port == 51826


def test_homebridge_platforms_list_is_accepted():
    data = {"bridge": {"name": "Homebridge"}, "platforms": [{"platform": "Other"}, copy.deepcopy(AQUARIUM_CONFIG)]}
    config = parse_config(data)
    assert config.url == "http://domoja.local:4001/"


def test_missing_platform_in_platforms_list():
    with pytest.raises(ConfigurationError):
        parse_config({"platforms": [{"platform": "Other"}]})


def test_validation_errors_are_logged_and_raised(caplog):
    data = copy.deepcopy(AQUARIUM_CONFIG)
    del data['auth']
    with caplog.at_level(logging.WARNING):
        with pytest.raises(ConfigurationError):
            parse_config(data, "test.json")
    assert "auth" in caplog.text


def test_device_given_twice_is_rejected():
    portail = copy.deepcopy(PORTAIL)
    portail['services'][0]['characteristics'][1]['set'] = {"device": "portail.other"}
    with pytest.raises(ConfigurationError):
        parse_config(config_with(portail))


def test_characteristic_without_device_is_rejected():
    portail = copy.deepcopy(PORTAIL)
    portail['services'][0]['characteristics'][0]['get'] = {"mapping": ["OPEN", 0]}
    with pytest.raises(ConfigurationError):
        parse_config(config_with(portail))


def test_normalization_strips_spaces_and_binds_device_both_ways():
    spec = normalize_accessories(parse_config(config_with(PORTAIL)))[0]
    service = spec.services[0]
    assert service.kind == "GarageDoorOpener"

    current, target = service.characteristics
    assert current.kind == "CurrentDoorState"
    assert current.get.device == "portail.state"
    assert current.get.mapping == ["OPEN", 0, "CLOSED", 1]
    assert current.set is None

    assert target.kind == "TargetDoorState"
    assert target.get.device == "portail.command"
    assert target.get.mapping is None
    assert target.set.device == "portail.command"
    assert target.set.mapping == [0, "OPEN", 1, "CLOSE"]


def test_by_service_entries_expand_per_device():
    entry = copy.deepcopy(AQUARIUM_CONFIG['accessories'][0])
    entry['devicesAndDisplayNames'] = {
        "aquarium.lampes": "Lampes aquarium",
        "salon.lampe": {"displayName": "Lampe salon"},
    }
    specs = normalize_accessories(parse_config(config_with(entry)))

    assert [s.display_name for s in specs] == ["Lampes aquarium", "Lampe salon"]
    characteristic = specs[1].services[0].characteristics[0]
    assert characteristic.get.device == "salon.lampe"
    assert characteristic.set.mapping == [True, "ON", False, "OFF"]


def test_unknown_devices_are_skipped_when_devices_are_known(caplog):
    entry = copy.deepcopy(AQUARIUM_CONFIG['accessories'][0])
    entry['devicesAndDisplayNames'] = {"aquarium.lampes": "Lampes aquarium", "nowhere": "Nowhere"}
    devices = {"aquarium.lampes": Device(path="aquarium.lampes", state="ON")}

    with caplog.at_level(logging.WARNING):
        specs = normalize_accessories(parse_config(config_with(entry)), devices)

    assert [s.display_name for s in specs] == ["Lampes aquarium"]
    assert "nowhere" in caplog.text


def test_duplicate_display_names_are_refused(caplog):
    portail = copy.deepcopy(PORTAIL)
    portail['displayName'] = "Lampes aquarium"
    config = parse_config(config_with(AQUARIUM_CONFIG['accessories'][0], portail))

    with caplog.at_level(logging.ERROR):
        with pytest.raises(DuplicateDisplayNameError) as info:
            check_config(config)
    assert info.value.display_name == "Lampes aquarium"
    assert "duplicate accessory" in caplog.text


def test_disabled_duplicates_are_allowed():
    portail = copy.deepcopy(PORTAIL)
    portail['displayName'] = "Lampes aquarium"
    portail['disabled'] = True
    config = parse_config(config_with(AQUARIUM_CONFIG['accessories'][0], portail))
    assert check_config(config) is config


def test_odd_mapping_only_warns(caplog):
    entry = copy.deepcopy(AQUARIUM_CONFIG['accessories'][0])
    entry['get'] = {"mapping": ["ON", True, "OFF"]}
    with caplog.at_level(logging.WARNING):
        check_config(parse_config(config_with(entry)))
    assert "Lampes aquarium.Switch.On" in caplog.text


def test_load_config_from_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(AQUARIUM_CONFIG), encoding="utf-8")
    config = load_config(path)
    assert config.auth.username == "admin"


def test_load_config_unreadable(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(path)
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "missing.json")

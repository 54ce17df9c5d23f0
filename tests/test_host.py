import logging

import pytest
from pyhap.accessory import Bridge
from pyhap.loader import get_loader

from domoja_bridge.cache import AccessoryStore
from domoja_bridge.database import aid_for_token
from domoja_bridge.host import HapAccessoryRegistry, locate, token_for
from domoja_bridge.models import (
    ORIGIN_DETAILED,
    AccessorySpec,
    CharacteristicSpec,
    Device,
    DeviceBinding,
    ServiceSpec,
)
from domoja_bridge.reconcile import AccessoryReconciler

from conftest import switch_spec


class FakeDriver:
    """Just enough of an AccessoryDriver to build and publish accessories."""

    def __init__(self):
        self.loader = get_loader()
        self.published = []
        self.config_changes = 0

    def publish(self, data, sender_client_addr=None, immediate=False):
        self.published.append(data)

    def config_changed(self):
        self.config_changes += 1


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def db_file(tmp_path):
    return str(tmp_path / "accessories.db")


def make_registry(driver, db_file):
    return HapAccessoryRegistry(driver, Bridge(driver, "Domoja Bridge"), AccessoryStore(db_file))


def dimmer_spec():
    return AccessorySpec(
        display_name="Lampe salon",
        origin=ORIGIN_DETAILED,
        services=[ServiceSpec('Lightbulb', [
            CharacteristicSpec('On', get=DeviceBinding("salon.lampe", ["ON", True, "OFF", False]),
                               set=DeviceBinding("salon.lampe", [True, "ON", False, "OFF"])),
            CharacteristicSpec('Brightness', get=DeviceBinding("salon.variateur")),
        ])],
    )


def test_token_is_stable_per_display_name():
    assert token_for("Lampe salon") == token_for("Lampe salon")
    assert token_for("Lampe salon") != token_for("Lampes aquarium")


def test_locate():
    spec = dimmer_spec()
    service = spec.services[0]
    assert locate(spec, service, service.characteristics[1]) == (0, 1)
    assert locate(spec, service, CharacteristicSpec('On')) is None


def test_builds_required_and_optional_characteristics(driver, db_file):
    registry = make_registry(driver, db_file)
    accessory = registry.create_accessory(dimmer_spec())

    hap_accessory = accessory.handle.accessory
    assert hap_accessory.display_name == "Lampe salon"
    assert hap_accessory.aid == aid_for_token(accessory.token)
    lightbulb = hap_accessory.get_service('Lightbulb')
    assert lightbulb.get_characteristic('Brightness') is accessory.handle.characteristics[(0, 1)]
    assert lightbulb.get_characteristic('On') is accessory.handle.characteristics[(0, 0)]


def test_unknown_service_and_characteristic_are_left_out(driver, db_file, caplog):
    spec = AccessorySpec(
        display_name="Grenier",
        origin=ORIGIN_DETAILED,
        services=[
            ServiceSpec('Toaster', [CharacteristicSpec('On', get=DeviceBinding("grenier.grille_pain"))]),
            ServiceSpec('Switch', [
                CharacteristicSpec('Crispiness', get=DeviceBinding("grenier.grille_pain")),
                CharacteristicSpec('On', get=DeviceBinding("grenier.lampe")),
            ]),
        ],
    )
    registry = make_registry(driver, db_file)
    with caplog.at_level(logging.ERROR):
        accessory = registry.create_accessory(spec)

    assert "Service Toaster not found for Grenier" in caplog.text
    assert "Characteristic Crispiness not found for Grenier.Switch.Crispiness" in caplog.text
    assert set(accessory.handle.characteristics) == {(1, 1)}


def test_duplicate_service_kind_is_left_out(driver, db_file, caplog):
    spec = AccessorySpec(
        display_name="Double",
        origin=ORIGIN_DETAILED,
        services=[
            ServiceSpec('Switch', [CharacteristicSpec('On', get=DeviceBinding("a.b"))]),
            ServiceSpec('Switch', [CharacteristicSpec('On', get=DeviceBinding("c.d"))]),
        ],
    )
    registry = make_registry(driver, db_file)
    with caplog.at_level(logging.ERROR):
        accessory = registry.create_accessory(spec)

    assert "Service Switch already exists in accessory Double" in caplog.text
    assert set(accessory.handle.characteristics) == {(0, 0)}


def test_set_and_identify_requests_reach_handlers(driver, db_file):
    registry = make_registry(driver, db_file)
    accessory = registry.create_accessory(dimmer_spec())
    sets = []
    identified = []
    registry.attach_handlers(accessory, lambda *args: sets.append(args), identified.append)

    accessory.handle.characteristics[(0, 0)].setter_callback(False)
    info = accessory.handle.accessory.get_service('AccessoryInformation')
    info.get_characteristic('Identify').setter_callback(True)

    service = accessory.spec.services[0]
    assert sets == [(accessory, service, service.characteristics[0], False)]
    assert identified == [accessory]
    # Brightness has no set binding
    assert accessory.handle.characteristics[(0, 1)].setter_callback is None


def test_update_value(driver, db_file, caplog):
    registry = make_registry(driver, db_file)
    accessory = registry.create_accessory(dimmer_spec())
    service = accessory.spec.services[0]

    assert registry.update_value(accessory, service, service.characteristics[1], 42)
    assert accessory.handle.characteristics[(0, 1)].value == 42

    with caplog.at_level(logging.ERROR):
        assert not registry.update_value(accessory, service, service.characteristics[1], "bright")
    assert "Cannot set Lampe salon.Lightbulb.Brightness" in caplog.text


def test_register_persists_and_restores_with_same_aid(driver, db_file):
    registry = make_registry(driver, db_file)
    accessory = registry.create_accessory(dimmer_spec())
    registry.register(accessory)
    aid = accessory.handle.accessory.aid
    assert registry.bridge.accessories[aid] is accessory.handle.accessory

    restarted = make_registry(FakeDriver(), db_file)
    restored = restarted.restore_accessories()

    assert [a.display_name for a in restored] == ["Lampe salon"]
    assert restored[0].token == accessory.token
    assert restored[0].spec == accessory.spec
    assert restored[0].handle.accessory.aid == aid
    assert aid in restarted.bridge.accessories


def test_unregister_withdraws_and_forgets(driver, db_file):
    registry = make_registry(driver, db_file)
    accessory = registry.create_accessory(dimmer_spec())
    registry.register(accessory)
    registry.unregister(accessory)

    assert registry.bridge.accessories == {}
    assert registry.store.get(accessory.token) is None
    assert make_registry(FakeDriver(), db_file).restore_accessories() == []


def test_recreated_accessory_keeps_its_aid(driver, db_file):
    registry = make_registry(driver, db_file)
    first = registry.create_accessory(dimmer_spec())
    registry.register(first)
    registry.unregister(first)

    second = registry.create_accessory(dimmer_spec())
    registry.register(second)
    assert second.handle.accessory.aid == first.handle.accessory.aid


def test_aid_collision_is_bumped(driver, db_file):
    registry = make_registry(driver, db_file)
    wanted = aid_for_token(token_for("Lampe salon"))
    registry.store.save("someone-else", wanted, switch_spec("Autre", "autre.lampe"))

    accessory = registry.create_accessory(dimmer_spec())
    assert accessory.handle.accessory.aid == wanted + 1


def test_config_change_is_announced_once_started(driver, db_file):
    registry = make_registry(driver, db_file)
    registry.register(registry.create_accessory(dimmer_spec()))
    registry.commit()
    assert driver.config_changes == 0

    registry.mark_started()
    assert driver.config_changes == 1

    registry.commit()
    assert driver.config_changes == 1

    registry.register(registry.create_accessory(switch_spec("Lampes aquarium", "aquarium.lampes")))
    registry.commit()
    assert driver.config_changes == 2


def test_stale_unregister_keeps_the_newer_row(driver, db_file):
    registry = make_registry(driver, db_file)
    old = registry.create_accessory(dimmer_spec())
    registry.register(old)
    new = registry.create_accessory(dimmer_spec())
    registry.register(new)
    assert new.handle.accessory.aid != old.handle.accessory.aid

    registry.unregister(old)

    assert registry.store.get(new.token).aid == new.handle.accessory.aid
    assert registry.bridge.accessories == {new.handle.accessory.aid: new.handle.accessory}


def test_reassigned_display_name_survives_restart(driver, db_file):
    devices = {
        "dev.one": Device(path="dev.one", state="ON"),
        "dev.two": Device(path="dev.two", state="OFF"),
    }
    registry = make_registry(driver, db_file)
    reconciler = AccessoryReconciler(registry, devices)
    first = reconciler.reconcile([switch_spec("A", "dev.one")], [])

    # "A" moves to another device, its old device is now called "B"
    second = reconciler.reconcile([switch_spec("A", "dev.two"), switch_spec("B", "dev.one")], first.accessories)
    assert second.created == ["A"]
    assert second.updated == ["B"]

    restarted = make_registry(FakeDriver(), db_file)
    restored = restarted.restore_accessories()

    assert sorted(a.display_name for a in restored) == ["A", "B"]
    aids = {a.display_name: a.handle.accessory.aid for a in restored}
    published = {a.display_name: a.handle.accessory.aid for a in second.accessories}
    assert aids == published

    third = AccessoryReconciler(restarted, devices).reconcile(
        [switch_spec("A", "dev.two"), switch_spec("B", "dev.one")], restored)
    assert sorted(third.kept) == ["A", "B"]

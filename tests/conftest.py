import pytest

from domoja_bridge.host import HostAccessoryRegistry, locate
from domoja_bridge.models import (
    ORIGIN_BY_DEVICE,
    Accessory,
    AccessorySpec,
    CharacteristicSpec,
    DeviceBinding,
    ServiceSpec,
)


class StubRegistry(HostAccessoryRegistry):
    """In-memory host: records registrations and characteristic values by label."""

    def __init__(self):
        self.registered = []
        self.events = []
        self.values = {}
        self.restored = []
        self.commits = 0
        self.fail_register = set()
        self._next = 0

    def create_accessory(self, spec):
        self._next += 1
        return Accessory(spec=spec, token=f"token-{self._next}", handle={'on_set': None, 'on_identify': None})

    def attach_handlers(self, accessory, on_set, on_identify):
        accessory.handle['on_set'] = on_set
        accessory.handle['on_identify'] = on_identify

    def register(self, accessory):
        if accessory.display_name in self.fail_register:
            raise ValueError("Duplicate AID found when attempting to add accessory")
        self.registered.append(accessory)
        self.events.append(('register', accessory.display_name))

    def unregister(self, accessory):
        self.registered.remove(accessory)
        self.events.append(('unregister', accessory.display_name))

    def update_value(self, accessory, service, characteristic, value):
        assert locate(accessory.spec, service, characteristic) is not None
        self.values[accessory.spec.label(service, characteristic)] = value
        return True

    def restore_accessories(self):
        self.registered.extend(self.restored)
        return list(self.restored)

    def commit(self):
        self.commits += 1


def switch_spec(display_name, device, get_mapping=("ON", True, "OFF", False),
                set_mapping=(True, "ON", False, "OFF"), disabled=False):
    """A switch expanded from a by-service entry, bound to one device."""
    return AccessorySpec(
        display_name=display_name,
        disabled=disabled,
        origin=ORIGIN_BY_DEVICE,
        services=[ServiceSpec('Switch', [CharacteristicSpec(
            'On',
            get=DeviceBinding(device, list(get_mapping) if get_mapping is not None else None),
            set=DeviceBinding(device, list(set_mapping) if set_mapping is not None else None),
        )])],
    )


AQUARIUM_CONFIG = {
    "platform": "DomojaPlatform",
    "name": "Domoja",
    "url": "http://domoja.local:4001/",
    "auth": {"username": "admin", "password": "secret"},
    "accessories": [
        {
            "service": "Switch",
            "characteristic": "On",
            "get": {"mapping": ["ON", True, "OFF", False]},
            "set": {"mapping": [True, "ON", False, "OFF"]},
            "devicesAndDisplayNames": {"aquarium.lampes": "Lampes aquarium"},
        },
    ],
}


@pytest.fixture
def registry():
    return StubRegistry()

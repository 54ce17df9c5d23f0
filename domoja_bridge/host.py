#
# Copyright 2025 The DomojaBridge contributors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#

"""Host side of the bridge: where accessories are physically published.

The reconciler only deals with :class:`~domoja_bridge.models.AccessorySpec`
values and the opaque tokens handed out here. :class:`HapAccessoryRegistry`
publishes them as bridged HomeKit accessories with HAP-python.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from pyhap.accessory import Accessory as HapAccessory
from pyhap.accessory import Bridge
from pyhap.accessory_driver import AccessoryDriver
from pyhap.characteristic import Characteristic

from .__version__ import __version__
from .cache import AccessoryStore
from .database import aid_for_token
from .models import Accessory, AccessorySpec, CharacteristicSpec, ServiceSpec

logger = logging.getLogger(__name__)

TOKEN_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, 'https://github.com/domoja/domoja-bridge')

SetHandler = Callable[[Accessory, ServiceSpec, CharacteristicSpec, Any], None]
IdentifyHandler = Callable[[Accessory], None]


def token_for(display_name: str) -> str:
    """Stable identity token for an accessory display name."""
    return str(uuid.uuid5(TOKEN_NAMESPACE, display_name))


def locate(spec: AccessorySpec, service: ServiceSpec,
           characteristic: CharacteristicSpec) -> Optional[Tuple[int, int]]:
    """Position of a characteristic in its spec, as (service index, characteristic index)."""
    for s_index, s in enumerate(spec.services):
        if s is not service:
            continue
        for c_index, c in enumerate(s.characteristics):
            if c is characteristic:
                return s_index, c_index
    return None


class HostAccessoryRegistry(ABC):
    """Physical registration of accessories with the host framework."""

    @abstractmethod
    def create_accessory(self, spec: AccessorySpec) -> Accessory:
        """Materialize an accessory from a spec without registering it.

        Services or characteristics the host does not know are logged and
        left out; the rest of the accessory is still built.
        """

    @abstractmethod
    def attach_handlers(self, accessory: Accessory, on_set: SetHandler, on_identify: IdentifyHandler):
        """Route host "set" and "identify" requests of an accessory to the handlers."""

    @abstractmethod
    def register(self, accessory: Accessory):
        """Publish an accessory and add it to the host persistence."""

    @abstractmethod
    def unregister(self, accessory: Accessory):
        """Withdraw an accessory and drop it from the host persistence."""

    @abstractmethod
    def update_value(self, accessory: Accessory, service: ServiceSpec,
                     characteristic: CharacteristicSpec, value: Any) -> bool:
        """Set a characteristic value as seen by the host.

        Returns:
            True if the value was applied
        """

    @abstractmethod
    def restore_accessories(self) -> List[Accessory]:
        """Accessories restored from the host persistence, already registered."""

    def commit(self):
        """Announce registration changes made since the last commit."""


@dataclass
class HapHandle:
    """What a :class:`~domoja_bridge.models.Accessory` points to on the HAP side."""

    accessory: HapAccessory
    characteristics: Dict[Tuple[int, int], Characteristic] = field(default_factory=dict)


class HapAccessoryRegistry(HostAccessoryRegistry):
    """Publishes accessories on a HAP-python bridge.

    HAP-python does not remember accessories between runs, so the specs
    are kept in an :class:`~domoja_bridge.cache.AccessoryStore` together
    with their accessory id, and restored from there at startup.
    """

    def __init__(self, driver: AccessoryDriver, bridge: Bridge, store: AccessoryStore):
        self.driver = driver
        self.bridge = bridge
        self.store = store
        self.loader = driver.loader
        self.started = False
        self._dirty = False

    def _allocate_aid(self, token: str) -> int:
        stored = self.store.get(token)
        if stored is not None and stored.aid not in self.bridge.accessories:
            return stored.aid

        taken = set(self.bridge.accessories) | {aid for aid, owner in self.store.used_aids().items() if owner != token}
        aid = aid_for_token(token)
        while aid in taken:
            aid += 1
        return aid

    def _build(self, spec: AccessorySpec, token: str, aid: int) -> Accessory:
        hap_accessory = HapAccessory(self.driver, spec.display_name, aid=aid)
        hap_accessory.set_info_service(
            firmware_revision=__version__,
            manufacturer="Domoja",
            model="Domoja Bridge",
            serial_number=token,
        )
        handle = HapHandle(hap_accessory)
        added = set()

        for s_index, service_spec in enumerate(spec.services):
            if service_spec.kind in added:
                logger.error(f"Service {service_spec.kind} already exists in accessory {spec.display_name}")
                continue
            try:
                service = self.loader.get_service(service_spec.kind)
            except KeyError:
                logger.error(f"Service {service_spec.kind} not found for {spec.display_name}. Valid services: {', '.join(sorted(self.loader.serv_types))}")
                continue
            added.add(service_spec.kind)

            for c_index, char_spec in enumerate(service_spec.characteristics):
                char = self._characteristic(spec, service_spec, service, char_spec)
                if char is not None:
                    handle.characteristics[(s_index, c_index)] = char

            # Optional characteristics must be in place before the service gets its iids
            hap_accessory.add_service(service)

        return Accessory(spec=spec, token=token, handle=handle)

    def _characteristic(self, spec: AccessorySpec, service_spec: ServiceSpec, service,
                        char_spec: CharacteristicSpec) -> Optional[Characteristic]:
        try:
            return service.get_characteristic(char_spec.kind)
        except ValueError:
            pass

        service_type = self.loader.serv_types.get(service_spec.kind, {})
        optional = service_type.get('OptionalCharacteristics', [])
        if char_spec.kind in optional:
            char = self.loader.get_char(char_spec.kind)
            service.add_characteristic(char)
            return char

        valid = list(service_type.get('RequiredCharacteristics', [])) + list(optional)
        logger.error(f"Characteristic {char_spec.kind} not found for {spec.label(service_spec, char_spec)}. Valid characteristics: {', '.join(valid)}")
        return None

    def create_accessory(self, spec: AccessorySpec) -> Accessory:
        logger.info(f"Adding new accessory with name {spec.display_name}")
        token = token_for(spec.display_name)
        return self._build(spec, token, self._allocate_aid(token))

    def attach_handlers(self, accessory: Accessory, on_set: SetHandler, on_identify: IdentifyHandler):
        handle: HapHandle = accessory.handle

        info = handle.accessory.get_service('AccessoryInformation')
        info.get_characteristic('Identify').setter_callback = lambda _value: on_identify(accessory)

        for s_index, service_spec in enumerate(accessory.spec.services):
            for c_index, char_spec in enumerate(service_spec.characteristics):
                char = handle.characteristics.get((s_index, c_index))
                if char is None or char_spec.set is None:
                    continue
                char.setter_callback = (
                    lambda value, s=service_spec, c=char_spec: on_set(accessory, s, c, value)
                )

    def register(self, accessory: Accessory):
        handle: HapHandle = accessory.handle
        self.bridge.add_accessory(handle.accessory)
        self.store.save(accessory.token, handle.accessory.aid, accessory.spec)
        self._dirty = True
        logger.debug(f"Registered accessory {accessory.display_name} (aid={handle.accessory.aid})")

    def unregister(self, accessory: Accessory):
        handle: HapHandle = accessory.handle
        self.bridge.accessories.pop(handle.accessory.aid, None)
        stored = self.store.get(accessory.token)
        # The row may already belong to a newer accessory with the same name
        if stored is not None and stored.aid == handle.accessory.aid:
            self.store.delete(accessory.token)
        self._dirty = True
        logger.debug(f"Unregistered accessory {accessory.display_name} (aid={handle.accessory.aid})")

    def update_value(self, accessory: Accessory, service: ServiceSpec,
                     characteristic: CharacteristicSpec, value: Any) -> bool:
        handle: HapHandle = accessory.handle
        position = locate(accessory.spec, service, characteristic)
        char = handle.characteristics.get(position) if position is not None else None
        if char is None:
            logger.debug(f"No characteristic published for {accessory.spec.label(service, characteristic)}")
            return False

        try:
            char.set_value(value)
        except ValueError as e:
            logger.error(f"Cannot set {accessory.spec.label(service, characteristic)} to {value!r}: {e}")
            return False
        return True

    def restore_accessories(self) -> List[Accessory]:
        restored = []
        for stored in self.store.all():
            accessory = self._build(stored.spec, stored.token, stored.aid)
            self.bridge.add_accessory(accessory.handle.accessory)
            restored.append(accessory)
        if restored:
            logger.info(f"Restored {len(restored)} accessories from the accessory store")
        return restored

    def mark_started(self):
        self.started = True
        self.commit()

    def commit(self):
        # The driver can only re-advertise once it is running
        if self._dirty and self.started:
            self.driver.config_changed()
            self._dirty = False

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

"""Derive the published accessory set from the configuration.

Reconciliation Strategy:
========================

Each desired spec is matched with a previously published accessory by
identity (see the policies below); when several share an identity, an
equal spec is preferred, then the same display name. Then:

- equal specs keep the existing accessory untouched,
- different specs recreate it (unregister, then create if enabled),
- unmatched specs are created unless disabled,
- previous accessories nobody matched are unregistered.

All unregistrations run before the first creation. Finally every published characteristic with a get binding is set from the
current device state.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Hashable, List, Mapping, Optional, Sequence, Tuple

from .config import DuplicateDisplayNameError, find_duplicate_display_name
from .equality import deep_equal
from .host import HostAccessoryRegistry
from .models import ORIGIN_BY_DEVICE, Accessory, AccessorySpec, Device
from .sync import push_device_state

logger = logging.getLogger(__name__)

IdentityPolicy = Callable[[AccessorySpec], Hashable]


def by_display_name(spec: AccessorySpec) -> Hashable:
    return ('name', spec.display_name)


def by_bound_device(spec: AccessorySpec) -> Hashable:
    """Identity from the device bound to the first get characteristic."""
    for _service, characteristic in spec.characteristics():
        if characteristic.get is not None:
            return ('device', characteristic.get.device)
    return by_display_name(spec)


def default_identity(spec: AccessorySpec) -> Hashable:
    """Device path for accessories expanded per device, display name otherwise.

    Renaming the display name of an expanded device then updates the same
    accessory instead of replacing it with an unrelated one.
    """
    if spec.origin == ORIGIN_BY_DEVICE:
        return by_bound_device(spec)
    return by_display_name(spec)


@dataclass
class ReconcileResult:
    accessories: List[Accessory] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    disabled_skipped: List[str] = field(default_factory=list)

    def summary(self) -> str:
        return (f"{len(self.created)} new, {len(self.kept)} unchanged, {len(self.updated)} updated, "
                f"{len(self.disabled_skipped)} disabled, {len(self.removed)} removed")


class AccessoryReconciler:
    """Turns desired specs plus the previous accessories into the next accessory set."""

    def __init__(self, registry: HostAccessoryRegistry, devices: Mapping[str, Device],
                 identity: IdentityPolicy = default_identity,
                 configure: Optional[Callable[[Accessory], None]] = None):
        """
        Args:
            registry: Host side registration
            devices: Known devices by path, for the initial characteristic values
            identity: How a desired spec finds its previous accessory
            configure: Called on each new accessory before it is registered
        """
        self.registry = registry
        self.devices = devices
        self.identity = identity
        self.configure = configure

    def reconcile(self, desired: Sequence[AccessorySpec], previous: Sequence[Accessory]) -> ReconcileResult:
        """Reconcile and publish.

        Every unregistration happens before the first creation, so a new
        accessory never collides with one that is about to go away.

        Raises:
            DuplicateDisplayNameError: if two enabled specs share a display
                name; nothing is changed in that case
        """
        duplicate = find_duplicate_display_name(desired)
        if duplicate is not None:
            logger.error(f"Error: duplicate accessory \"{duplicate}\" found in configuration, accessories not loaded!")
            raise DuplicateDisplayNameError(duplicate)

        result = ReconcileResult()
        remaining = list(previous)
        matches = self._match_all(desired, remaining)

        # Unregister pass
        for spec, found in matches:
            if found is None:
                continue
            if spec.disabled:
                logger.info(f"Removing disabled accessory {found.display_name}")
                self._unregister(found)
                result.removed.append(found.display_name)
            elif not self._same_spec(found.spec, spec):
                logger.info(f"Updating accessory {found.display_name}")
                self._unregister(found)

        for stale in remaining:
            logger.info(f"Removing accessory {stale.display_name} no longer in configuration")
            self._unregister(stale)
            result.removed.append(stale.display_name)

        # Create pass, in configuration order
        for spec, found in matches:
            if spec.disabled:
                result.disabled_skipped.append(spec.display_name)
            elif found is None:
                if self._create(spec, result):
                    result.created.append(spec.display_name)
            elif not self._same_spec(found.spec, spec):
                if self._create(spec, result):
                    result.updated.append(spec.display_name)
            else:
                result.accessories.append(found)
                result.kept.append(spec.display_name)

        self.registry.commit()
        logger.info(result.summary())

        for accessory in result.accessories:
            self.initial_sync(accessory)

        return result

    @staticmethod
    def _same_spec(left: AccessorySpec, right: AccessorySpec) -> bool:
        return deep_equal(left.to_dict(), right.to_dict())

    def _match_all(self, desired: Sequence[AccessorySpec],
                   remaining: List[Accessory]) -> List[Tuple[AccessorySpec, Optional[Accessory]]]:
        """Pair each desired spec with a previous accessory, taking it out of ``remaining``.

        Several previous accessories can share an identity (one device bound
        by two entries). Matching runs in rounds over all specs so the pairing
        does not depend on the order accessories were restored in: equal
        specs first, then the same display name, then any candidate.
        """
        rules = (
            lambda accessory, spec: self._same_spec(accessory.spec, spec),
            lambda accessory, spec: accessory.display_name == spec.display_name,
            lambda accessory, spec: True,
        )
        keys = [self.identity(spec) for spec in desired]
        found: Dict[int, Accessory] = {}
        for rule in rules:
            for index, spec in enumerate(desired):
                if index in found:
                    continue
                match = next((a for a in remaining if self.identity(a.spec) == keys[index] and rule(a, spec)), None)
                if match is not None:
                    found[index] = match
                    remaining.remove(match)
        return [(spec, found.get(index)) for index, spec in enumerate(desired)]

    def _create(self, spec: AccessorySpec, result: ReconcileResult) -> bool:
        accessory = self.registry.create_accessory(spec)
        if self.configure is not None:
            self.configure(accessory)
        try:
            self.registry.register(accessory)
        except ValueError as e:
            logger.error(f"Cannot register accessory {spec.display_name}: {e}")
            return False
        result.accessories.append(accessory)
        return True

    def _unregister(self, accessory: Accessory):
        self.registry.unregister(accessory)

    def initial_sync(self, accessory: Accessory):
        """Set every get characteristic of an accessory from the cached device state."""
        if accessory.spec.disabled:
            return
        for service, characteristic in accessory.spec.characteristics():
            if characteristic.get is None:
                continue
            device = self.devices.get(characteristic.get.device)
            if device is None:
                logger.warning(f"{accessory.spec.label(service, characteristic)}: could not find device with path \"{characteristic.get.device}\".")
                continue
            push_device_state(self.registry, accessory, service, characteristic, device.state)

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

"""Configuration file models, validation and normalization.

Two accessory shapes are accepted:

By service/characteristic, expanded into one accessory per device::

    {
        "service": "Switch",
        "characteristic": "On",
        "get": {"mapping": ["ON", true, "OFF", false]},
        "set": {"mapping": [true, "ON", false, "OFF"]},
        "devicesAndDisplayNames": {"aquarium.lampes": "Lampes aquarium"}
    }

Detailed, one accessory with explicit services::

    {
        "displayName": "Portail",
        "services": [{
            "service": "Garage Door Opener",
            "characteristics": [
                {"characteristic": "Current Door State", "get": {"device": "portail.state"}},
                {"characteristic": "Target Door State", "device": "portail.command"}
            ]
        }]
    }

Both end up as :class:`~domoja_bridge.models.AccessorySpec` values.
"""

import json
import logging
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    model_validator,
)

from .models import (
    ORIGIN_BY_DEVICE,
    ORIGIN_DETAILED,
    AccessorySpec,
    CharacteristicSpec,
    Device,
    DeviceBinding,
    ServiceSpec,
)
from .transform import has_pair_length

logger = logging.getLogger(__name__)

PLATFORM_NAME = "DomojaPlatform"

MappingValue = Optional[Union[StrictBool, StrictInt, StrictFloat, StrictStr]]


class ConfigurationError(Exception):
    """The configuration cannot be used to build accessories."""


class DuplicateDisplayNameError(ConfigurationError):
    """Two enabled accessories share a display name."""

    def __init__(self, display_name: str):
        super().__init__(f"duplicate accessory \"{display_name}\" found in configuration")
        self.display_name = display_name


class _ConfigModel(BaseModel):
    model_config = ConfigDict(extra='forbid', populate_by_name=True)


class StateMapping(_ConfigModel):
    mapping: List[MappingValue]


class BoundStateMapping(_ConfigModel):
    device: str
    mapping: Optional[List[MappingValue]] = None


class DisplayNameEntry(_ConfigModel):
    display_name: str = Field(alias='displayName')


class AccessoriesByServiceCharacteristic(_ConfigModel):
    disabled: bool = False
    description: Optional[str] = None
    service: str
    characteristic: str
    get: Optional[StateMapping] = None
    set: Optional[StateMapping] = None
    devices_and_display_names: Dict[str, Union[str, DisplayNameEntry]] = Field(alias='devicesAndDisplayNames')


class DetailedCharacteristic(_ConfigModel):
    characteristic: str
    device: Optional[str] = None
    get: Optional[Union[BoundStateMapping, StateMapping]] = None
    set: Optional[Union[BoundStateMapping, StateMapping]] = None

    @model_validator(mode='after')
    def check_device_binding(self) -> 'DetailedCharacteristic':
        bindings = [b for b in (self.get, self.set) if b is not None]
        if self.device is None:
            if not bindings:
                raise ValueError(f"characteristic \"{self.characteristic}\" needs a device, a get or a set")
            if any(not isinstance(b, BoundStateMapping) for b in bindings):
                raise ValueError(f"characteristic \"{self.characteristic}\": get/set need a device when no device is given")
        elif any(isinstance(b, BoundStateMapping) for b in bindings):
            raise ValueError(f"characteristic \"{self.characteristic}\": device is given twice")
        return self


class DetailedService(_ConfigModel):
    service: str
    characteristics: List[DetailedCharacteristic]


class DetailedAccessory(_ConfigModel):
    disabled: bool = False
    description: Optional[str] = None
    display_name: str = Field(alias='displayName')
    services: List[DetailedService]


class AuthOptions(_ConfigModel):
    username: str
    password: str


class LoginOptions(_ConfigModel):
    timeout: float = 0  # 0 means forever
    delay_between_login_attempts: float = Field(10, alias='delayBetweenLoginAttempts')
    max_logged_login_retries: int = Field(2, alias='maxLoggedLoginRetries')


class BridgeOptions(_ConfigModel):
    name: str = "Domoja Bridge"
    port: int = 51826
    pincode: str = "031-45-154"


class DomojaConfig(_ConfigModel):
    platform: Optional[str] = None
    name: Optional[str] = None
    url: str
    auth: AuthOptions
    accessories: List[Union[AccessoriesByServiceCharacteristic, DetailedAccessory]] = Field(default_factory=list)
    login: LoginOptions = Field(default_factory=LoginOptions)
    retry_delay: float = Field(10, alias='retryDelay')
    bridge: BridgeOptions = Field(default_factory=BridgeOptions)


def parse_config(data: Dict[str, Any], source: str = "configuration") -> DomojaConfig:
    """Validate a platform configuration dict.

    A full homebridge-style file with a ``platforms`` list is accepted too;
    the entry for this platform is picked from it.

    Raises:
        ConfigurationError: if the configuration is invalid
    """
    if 'platforms' in data:
        platforms = [p for p in data['platforms'] if p.get('platform') == PLATFORM_NAME]
        if not platforms:
            raise ConfigurationError(f"No \"{PLATFORM_NAME}\" platform found in {source}")
        data = platforms[0]

    logger.debug("Validating configuration...")
    try:
        config = DomojaConfig.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Invalid config file \"{source}\":")
        for error in e.errors():
            location = '.'.join(str(part) for part in error['loc'])
            logger.warning(f"  {location}: {error['msg']}")
        raise ConfigurationError(f"Invalid config file \"{source}\" ({e.error_count()} error(s))") from e

    logger.debug("Configuration is valid!")
    return config


def load_config(path: Union[str, Path]) -> DomojaConfig:
    """Read and validate a JSON configuration file."""
    path = Path(path).expanduser()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot read config file \"{path}\": {e}") from e
    return parse_config(data, str(path))


def _mapping(state_mapping: Optional[Union[StateMapping, BoundStateMapping]]) -> Optional[List[Any]]:
    if state_mapping is None or state_mapping.mapping is None:
        return None
    return list(state_mapping.mapping)


def _kind(name: str) -> str:
    return name.replace(' ', '')


def _normalize_by_service(entry: AccessoriesByServiceCharacteristic,
                          devices: Optional[Mapping[str, Device]]) -> List[AccessorySpec]:
    specs = []
    for device_path, display in entry.devices_and_display_names.items():
        if devices is not None and device_path not in devices:
            logger.warning(f"While loading accessories: could not find device with path \"{device_path}\".")
            continue
        display_name = display if isinstance(display, str) else display.display_name
        specs.append(AccessorySpec(
            display_name=display_name,
            disabled=entry.disabled,
            origin=ORIGIN_BY_DEVICE,
            services=[ServiceSpec(
                kind=_kind(entry.service),
                characteristics=[CharacteristicSpec(
                    kind=_kind(entry.characteristic),
                    get=DeviceBinding(device_path, _mapping(entry.get)),
                    set=DeviceBinding(device_path, _mapping(entry.set)),
                )],
            )],
        ))
    return specs


def _normalize_characteristic(c: DetailedCharacteristic) -> CharacteristicSpec:
    if c.device is not None:
        return CharacteristicSpec(
            kind=_kind(c.characteristic),
            get=DeviceBinding(c.device, _mapping(c.get)),
            set=DeviceBinding(c.device, _mapping(c.set)),
        )
    return CharacteristicSpec(
        kind=_kind(c.characteristic),
        get=DeviceBinding(c.get.device, _mapping(c.get)) if c.get is not None else None,
        set=DeviceBinding(c.set.device, _mapping(c.set)) if c.set is not None else None,
    )


def _normalize_detailed(entry: DetailedAccessory) -> AccessorySpec:
    return AccessorySpec(
        display_name=entry.display_name,
        disabled=entry.disabled,
        origin=ORIGIN_DETAILED,
        services=[
            ServiceSpec(
                kind=_kind(s.service),
                characteristics=[_normalize_characteristic(c) for c in s.characteristics],
            )
            for s in entry.services
        ],
    )


def normalize_accessories(config: DomojaConfig,
                          devices: Optional[Mapping[str, Device]] = None) -> List[AccessorySpec]:
    """Turn both configuration shapes into AccessorySpecs, in config order.

    Args:
        config: Validated configuration
        devices: Known devices by path; expanded entries for unknown devices
            are skipped. None disables the check.
    """
    specs: List[AccessorySpec] = []
    for entry in config.accessories:
        if isinstance(entry, AccessoriesByServiceCharacteristic):
            specs.extend(_normalize_by_service(entry, devices))
        else:
            specs.append(_normalize_detailed(entry))
    return specs


def find_duplicate_display_name(specs: Iterable[AccessorySpec]) -> Optional[str]:
    """Return the first display name used by more than one enabled spec."""
    seen = Counter()
    for spec in specs:
        if spec.disabled:
            continue
        seen[spec.display_name] += 1
        if seen[spec.display_name] > 1:
            return spec.display_name
    return None


def check_config(config: DomojaConfig) -> DomojaConfig:
    """Check what the models cannot: display name uniqueness and mapping parity.

    Raises:
        DuplicateDisplayNameError: if two enabled accessories share a name
    """
    specs = normalize_accessories(config)

    duplicate = find_duplicate_display_name(specs)
    if duplicate is not None:
        logger.error(f"Error: duplicate accessory \"{duplicate}\" found in configuration!")
        raise DuplicateDisplayNameError(duplicate)

    for spec in specs:
        for service, characteristic in spec.characteristics():
            for binding in (characteristic.get, characteristic.set):
                if binding is not None and binding.mapping is not None and not has_pair_length(binding.mapping):
                    logger.warning(f"Mapping {binding.mapping} of {spec.label(service, characteristic)} should have a pair length!")

    return config

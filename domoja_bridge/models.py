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

"""Value objects shared by the bridge: devices and normalized accessory specs."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

# Where an AccessorySpec came from; drives the default identity policy
ORIGIN_DETAILED = "detailed"
ORIGIN_BY_DEVICE = "by_device"


@dataclass
class Device:
    """A device as reported by the Domoja server."""

    path: str
    state: Any = None
    last_update_date: Optional[datetime] = None
    id: Optional[str] = None
    name: Optional[str] = None
    type: Optional[str] = None
    source: Optional[str] = None
    widget: Optional[str] = None
    tags: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Device':
        return cls(
            path=data['path'],
            state=data.get('state'),
            last_update_date=data.get('lastUpdateDate'),
            id=data.get('id'),
            name=data.get('name'),
            type=data.get('type'),
            source=data.get('source'),
            widget=data.get('widget'),
            tags=data.get('tags'),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        state = self.state.isoformat() if isinstance(self.state, datetime) else self.state
        return {
            'id': self.id,
            'path': self.path,
            'state': state,
            'lastUpdateDate': self.last_update_date.isoformat() if self.last_update_date else None,
            'name': self.name,
            'type': self.type,
            'source': self.source,
            'widget': self.widget,
            'tags': self.tags,
        }


@dataclass
class DeviceBinding:
    """A get or set transform bound to a device path."""

    device: str
    mapping: Optional[List[Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'device': self.device}
        if self.mapping is not None:
            data['mapping'] = list(self.mapping)
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['DeviceBinding']:
        if not data:
            return None
        mapping = data.get('mapping')
        return cls(device=data['device'], mapping=list(mapping) if mapping is not None else None)


@dataclass
class CharacteristicSpec:
    kind: str
    get: Optional[DeviceBinding] = None
    set: Optional[DeviceBinding] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'characteristic': self.kind}
        if self.get is not None:
            data['get'] = self.get.to_dict()
        if self.set is not None:
            data['set'] = self.set.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CharacteristicSpec':
        return cls(
            kind=data['characteristic'],
            get=DeviceBinding.from_dict(data.get('get')),
            set=DeviceBinding.from_dict(data.get('set')),
        )


@dataclass
class ServiceSpec:
    kind: str
    characteristics: List[CharacteristicSpec] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'service': self.kind,
            'characteristics': [c.to_dict() for c in self.characteristics],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServiceSpec':
        return cls(
            kind=data['service'],
            characteristics=[CharacteristicSpec.from_dict(c) for c in data.get('characteristics', [])],
        )


@dataclass
class AccessorySpec:
    """Desired state of one accessory, normalized from either config shape."""

    display_name: str
    disabled: bool = False
    services: List[ServiceSpec] = field(default_factory=list)
    origin: str = ORIGIN_DETAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'displayName': self.display_name,
            'disabled': self.disabled,
            'origin': self.origin,
            'services': [s.to_dict() for s in self.services],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AccessorySpec':
        return cls(
            display_name=data['displayName'],
            disabled=bool(data.get('disabled', False)),
            services=[ServiceSpec.from_dict(s) for s in data.get('services', [])],
            origin=data.get('origin', ORIGIN_DETAILED),
        )

    def characteristics(self) -> Iterator[Tuple[ServiceSpec, CharacteristicSpec]]:
        """Iterate over (service, characteristic) pairs in declaration order."""
        for service in self.services:
            for characteristic in service.characteristics:
                yield service, characteristic

    def label(self, service: ServiceSpec, characteristic: CharacteristicSpec) -> str:
        return f"{self.display_name}.{service.kind}.{characteristic.kind}"


@dataclass
class Accessory:
    """A materialized accessory.

    ``token`` is the opaque identity handed out by the host registry and
    ``handle`` is whatever object the host uses to represent it.
    """

    spec: AccessorySpec
    token: str
    handle: Any = None

    @property
    def display_name(self) -> str:
        return self.spec.display_name

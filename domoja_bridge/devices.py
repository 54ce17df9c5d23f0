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

"""Device inventory loaded from the Domoja server."""

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, Tuple

import aiohttp
from dateutil.parser import isoparse

from .models import Device
from .session import SessionManager

logger = logging.getLogger('domoja-bridge')

ISO_TIMESTAMP = re.compile(r'\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{3})?Z')


def replace_dates(value: Any) -> Any:
    """Return a copy of a JSON payload with ISO timestamps turned into datetimes.

    Dicts and lists are walked recursively; other values are kept as is.
    """
    if isinstance(value, str):
        if ISO_TIMESTAMP.fullmatch(value):
            return isoparse(value)
        return value
    if isinstance(value, dict):
        return {key: replace_dates(item) for key, item in value.items()}
    if isinstance(value, list):
        return [replace_dates(item) for item in value]
    return value


class DeviceCache:
    """Path -> Device map.

    A load replaces every record; change events only touch the state and
    last update date of devices that are already known.
    """

    def __init__(self, session: SessionManager):
        self.session = session
        self.devices: Dict[str, Device] = {}
        self.last_load: Optional[float] = None

    def get(self, path: str) -> Optional[Device]:
        return self.devices.get(path)

    def __contains__(self, path: str) -> bool:
        return path in self.devices

    def __len__(self) -> int:
        return len(self.devices)

    def __iter__(self) -> Iterator[Device]:
        return iter(self.devices.values())

    async def load(self) -> bool:
        """Load the full device inventory with the current session cookie.

        Returns:
            True if devices were loaded, False otherwise (already logged)
        """
        try:
            status, payload = await self._fetch_devices()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"Cannot connect to domoja server to get devices: {e!r}")
            return False

        if not payload:
            logger.error(f"Cannot connect to domoja server to get devices: HTTP {status}")
            return False

        if not isinstance(payload, list):
            logger.error(f"Unexpected device list from domoja server: {type(payload).__name__}")
            return False

        devices: Dict[str, Device] = {}
        for record in replace_dates(payload):
            if not isinstance(record, dict) or not record.get('path'):
                logger.warning(f"Ignoring device record without path: {record!r}")
                continue
            device = Device.from_dict(record)
            devices[device.path] = device

        self.devices = devices
        self.last_load = asyncio.get_running_loop().time()
        logger.info(f"Loaded {len(devices)} device(s) from domoja server")
        return True

    def apply_change(self, path: str, new_value: Any, date: Any = None) -> Optional[Device]:
        """Update the state of a known device from a change event.

        Returns:
            The updated device, or None if the path is unknown
        """
        device = self.devices.get(path)
        if device is None:
            return None

        device.state = replace_dates(new_value)
        last_update = replace_dates(date) if date is not None else None
        device.last_update_date = last_update if isinstance(last_update, datetime) else datetime.now(timezone.utc)
        return device

    async def _fetch_devices(self) -> Tuple[int, Any]:
        timeout = aiohttp.ClientTimeout(total=self.session.request_timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(self.session.endpoint('devices'), headers=self.session.headers()) as resp:
                return resp.status, await resp.json(content_type=None)

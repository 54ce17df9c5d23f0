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

"""Push device states from the Domoja server into HomeKit characteristics."""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, Optional

import socketio
from socketio.exceptions import ConnectionError as SocketIOConnectionError

from .devices import DeviceCache
from .host import HostAccessoryRegistry
from .models import Accessory, CharacteristicSpec, ServiceSpec
from .session import SessionManager, is_authorization_error
from .transform import to_str, transform

logger = logging.getLogger('domoja-bridge')


def push_device_state(registry: HostAccessoryRegistry, accessory: Accessory, service: ServiceSpec,
                      characteristic: CharacteristicSpec, state: Any) -> bool:
    """Transform a device state through the get mapping and set the characteristic.

    A transform result of None leaves the characteristic untouched.

    Returns:
        True if the characteristic was updated
    """
    mapping = characteristic.get.mapping if characteristic.get is not None else None
    value = transform(mapping, state)
    if value is None:
        logger.debug(f"{accessory.spec.label(service, characteristic)} not updated, {to_str(state)} maps to null")
        return False

    if not registry.update_value(accessory, service, characteristic, value):
        return False
    logger.info(f"{accessory.spec.label(service, characteristic)} is now {to_str(value)}")
    return True


class LiveSyncDispatcher:
    """Socket.IO channel to the Domoja server, fanning change events out to accessories.

    The channel opens once both the device inventory is loaded and the host
    is ready, whichever comes last. Reconnection is handled here rather than
    by the client library so every attempt carries the current session cookie.
    """

    def __init__(self, session: SessionManager, devices: DeviceCache, registry: HostAccessoryRegistry,
                 accessories: Callable[[], Iterable[Accessory]], reconnect_delay: float = 10):
        self.session = session
        self.devices = devices
        self.registry = registry
        self.accessories = accessories
        self.reconnect_delay = reconnect_delay

        self.devices_loaded = False
        self.host_ready = False
        self.started = False
        self.sio: Optional[socketio.AsyncClient] = None

        self._closing = False
        self._reopening = False
        self._connect_task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self.sio is not None and self.sio.connected

    @property
    def state(self) -> str:
        if self.connected:
            return "connected"
        if self.started and not self._closing:
            return "connecting"
        if self.started:
            return "closed"
        return "waiting"

    def signal_devices_loaded(self):
        self.devices_loaded = True
        self._try_start()

    def signal_host_ready(self):
        self.host_ready = True
        self._try_start()

    def _try_start(self):
        if not (self.devices_loaded and self.host_ready) or self.started:
            return
        self.started = True
        logger.info(f"Establishing socket connection to domoja server {self.session.base_url}")
        self.sio = self._create_client()
        self._schedule_connect()

    def _create_client(self) -> socketio.AsyncClient:
        sio = socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)
        sio.on('connect', self._on_connect)
        sio.on('disconnect', self._on_disconnect)
        sio.on('change', self._on_change)
        sio.on('message', self._on_message)
        sio.on('connect_error', self._on_connect_error)
        sio.on('error', self._on_error)
        return sio

    def _schedule_connect(self, delay: float = 0):
        if self._closing or (self._connect_task is not None and not self._connect_task.done()):
            return
        self._connect_task = asyncio.ensure_future(self._connect_loop(delay))

    async def _connect_loop(self, delay: float):
        if delay:
            await asyncio.sleep(delay)

        while not self._closing and not self.connected:
            try:
                await self.sio.connect(self.session.base_url, headers={
                    'Referer': self.session.base_url,
                    'Cookie': self.session.cookie,
                })
                return
            except SocketIOConnectionError as e:
                if is_authorization_error(e):
                    logger.warning(f"connect_error 401 with connection to domoja server, let's login again! ({e})")
                    if await self.session.login():
                        continue
                else:
                    logger.error(f"connect_error with connection to domoja server: {e}")
            await asyncio.sleep(self.reconnect_delay)

    async def close(self):
        self._closing = True
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        if self.connected:
            await self.sio.disconnect()

    async def _on_connect(self):
        self._reopening = False
        logger.info("Connected to domoja server")

    async def _on_disconnect(self, *args):
        if self._closing or self._reopening:
            return
        logger.warning("Disconnected from domoja server, reconnecting")
        self._schedule_connect(self.reconnect_delay)

    async def _on_message(self, message):
        logger.debug(f"Message from domoja server: {message}")

    async def _on_connect_error(self, error=None):
        if is_authorization_error(error):
            logger.warning(f"connect_error 401 with connection to domoja server, let's login again! ({error})")
            await self.session.login()
        else:
            logger.error(f"connect_error with connection to domoja server: {error}")

    async def _on_error(self, error=None):
        logger.error(f"error with socket to domoja server: {error}")
        if is_authorization_error(error):
            await self.session.login()
        self._reopening = True
        if self.connected:
            await self.sio.disconnect()
        self._schedule_connect()

    async def _on_change(self, event):
        self.handle_change(event)

    def handle_change(self, event: Dict[str, Any]) -> int:
        """Apply a change event to the device cache and dependent characteristics.

        Returns:
            Number of characteristics the event was pushed to
        """
        if not isinstance(event, dict) or not event.get('id'):
            return 0

        device = self.devices.apply_change(event['id'], event.get('newValue'), event.get('date'))
        if device is None:
            logger.error(f"Could not find device \"{event['id']}\"!")
            return 0

        updated = 0
        for accessory in self.accessories():
            if accessory.spec.disabled:
                continue
            for service, characteristic in accessory.spec.characteristics():
                if characteristic.get is None or characteristic.get.device != device.path:
                    continue
                if not updated:
                    logger.debug(f"Device state changed: {event}")
                updated += 1
                push_device_state(self.registry, accessory, service, characteristic, event.get('newValue'))

        if not updated:
            logger.debug(f"No accessory using device \"{device.path}\"")
        return updated

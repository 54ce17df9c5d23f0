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

"""Send device commands to the Domoja server."""

import asyncio
import logging
from typing import Any, Optional, Tuple
from urllib.parse import quote

import aiohttp

from .models import Device, DeviceBinding
from .session import INLINE_RELOGIN, SessionManager
from .transform import to_str, transform

logger = logging.getLogger('domoja-bridge')

SUCCESS_MARKER = 'OK'


class CommandError(Exception):
    """A device command was not accepted by the Domoja server."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class CommandDispatcher:
    """Sends ``command=<value>`` to a device, re-logging in once on HTTP 401."""

    def __init__(self, session: SessionManager):
        self.session = session

    async def dispatch(self, device: Device, binding: Optional[DeviceBinding], value: Any) -> bool:
        """Transform a characteristic value through the set mapping and send it.

        Returns:
            True if a command was sent, False if the mapping yielded None

        Raises:
            CommandError: if the server did not accept the command
        """
        mapping = binding.mapping if binding is not None else None
        command = transform(mapping, value)
        if command is None:
            logger.debug(f"Not setting device {device.path}: {to_str(value)} maps to null")
            return False
        await self.set_device_value(device, command)
        return True

    async def set_device_value(self, device: Device, value: Any):
        """Send a raw command value to a device.

        Raises:
            CommandError: on any failure; a 401 on the first attempt is
                retried once after an inline re-login
        """
        attempt = 0
        while True:
            logger.debug(f"Setting device {device.path} state to {to_str(value)}...")
            try:
                status, reason, text = await self._post_command(device.path, to_str(value))
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.error(f"Cannot connect to domoja server to setDeviceValue ({device.path}: {to_str(value)}): {e!r}")
                raise CommandError(f"Cannot send command to {device.path}: {e!r}") from e

            if text == SUCCESS_MARKER:
                logger.debug(f"Device {device.path} state set to {to_str(value)}")
                return

            if status == 401 and attempt == 0:
                logger.debug(f"Cannot connect to domoja server to setDeviceValue ({device.path}: {to_str(value)}), retrying with login first...")
                if await self.session.login(INLINE_RELOGIN):
                    attempt += 1
                    continue

            after_retry = " after retry" if attempt else ""
            logger.error(f"Cannot connect to domoja server to setDeviceValue ({device.path}: {to_str(value)}){after_retry}, got response.text=\"{text}\": {status} {reason}")
            raise CommandError(f"{status} {reason}", status)

    async def _post_command(self, path: str, command: str) -> Tuple[int, str, str]:
        timeout = aiohttp.ClientTimeout(total=self.session.request_timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(
                self.session.endpoint(f"devices/{quote(path, safe='/')}"),
                headers=self.session.headers(),
                data={'command': command},
            ) as resp:
                return resp.status, resp.reason or '', await resp.text()

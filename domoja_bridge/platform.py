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

"""Domoja platform: ties the session, devices, accessories and live sync together."""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set

from .commands import CommandDispatcher, CommandError
from .config import (
    ConfigurationError,
    DomojaConfig,
    check_config,
    load_config,
    normalize_accessories,
)
from .devices import DeviceCache
from .host import HostAccessoryRegistry
from .models import Accessory, CharacteristicSpec, DeviceBinding, ServiceSpec
from .reconcile import AccessoryReconciler, IdentityPolicy, ReconcileResult, default_identity
from .session import LoginPolicy, SessionManager
from .sync import LiveSyncDispatcher
from .transform import mapping_to_string, to_str

logger = logging.getLogger(__name__)

SetCallback = Callable[[Optional[Exception]], None]


def _binding_to_string(binding: DeviceBinding) -> str:
    if binding.mapping is None:
        return binding.device
    return f"{binding.device}: {mapping_to_string(binding.mapping)}"


class DomojaPlatform:
    """Host-facing entry points and the startup sequence.

    Startup: login, then load devices (the whole sequence is retried after
    ``retryDelay`` until devices load), then reconcile the accessories and
    open the live channel once the host is ready too.
    """

    def __init__(self, config: DomojaConfig, registry: HostAccessoryRegistry,
                 config_path: Optional[str] = None, identity: IdentityPolicy = default_identity):
        self.config = config
        self.config_path = config_path
        self.registry = registry

        self.session = SessionManager(
            config.url,
            config.auth.username,
            config.auth.password,
            LoginPolicy(
                timeout=config.login.timeout,
                delay=config.login.delay_between_login_attempts,
                max_logged_retries=config.login.max_logged_login_retries,
            ),
        )
        self.devices = DeviceCache(self.session)
        self.commands = CommandDispatcher(self.session)
        self.accessories: List[Accessory] = []
        self.reconciler = AccessoryReconciler(registry, self.devices, identity, configure=self.configure_accessory)
        self.live_sync = LiveSyncDispatcher(self.session, self.devices, registry,
                                            lambda: self.accessories, reconnect_delay=config.retry_delay)

        self.devices_loaded = False
        self.last_result: Optional[ReconcileResult] = None
        self.start_time = time.time()

        self._pending: Set[asyncio.Future] = set()

    def restore_accessories(self):
        """Pick up the accessories the host restored from its own persistence."""
        for accessory in self.registry.restore_accessories():
            self.configure_accessory(accessory)
            self.accessories.append(accessory)

    async def start(self):
        """Run the startup sequence until devices are loaded and accessories reconciled."""
        while True:
            if not await self.session.login():
                logger.warning(f"Could not log in to Domoja. Retrying in {self.config.retry_delay}s...")
                await asyncio.sleep(self.config.retry_delay)
                continue
            if await self.devices.load():
                break
            logger.warning(f"Could not retrieve devices from Domoja. Retrying in {self.config.retry_delay}s...")
            await asyncio.sleep(self.config.retry_delay)

        self.load_accessories()
        self.display_summary()
        self.devices_loaded = True
        self.live_sync.signal_devices_loaded()
        logger.info("Domoja platform finished initializing!")

    def host_ready(self):
        """Called once the host finished launching."""
        logger.info("Domoja platform 'didFinishLaunching'")
        self.live_sync.signal_host_ready()

    async def stop(self):
        await self.live_sync.close()
        for future in list(self._pending):
            future.cancel()

    def load_accessories(self) -> Optional[ReconcileResult]:
        """Reconcile the configured accessories with the published ones.

        Returns:
            The reconciliation result, or None if the configuration was refused
        """
        specs = normalize_accessories(self.config, self.devices)
        try:
            result = self.reconciler.reconcile(specs, self.accessories)
        except ConfigurationError as e:
            logger.error(f"Wrong configuration, please fix and reload: {e}")
            return None
        self.accessories = result.accessories
        self.last_result = result
        return result

    def apply_config(self, config: DomojaConfig) -> Optional[ReconcileResult]:
        """Switch to a new configuration and reconcile if devices are available.

        Raises:
            ConfigurationError: if the configuration is invalid
        """
        check_config(config)
        if config.url != self.config.url or config.auth != self.config.auth:
            logger.warning("Domoja server url or credentials changed, restart to use them")
        self.config = config
        if not self.devices_loaded:
            return None
        result = self.load_accessories()
        self.display_summary()
        return result

    def reload(self) -> Optional[ReconcileResult]:
        """Re-read the configuration file and apply it.

        Raises:
            ConfigurationError: if there is no file or it is invalid
        """
        if not self.config_path:
            raise ConfigurationError("No configuration file to reload")
        logger.info(f"Reloading configuration from {self.config_path}")
        return self.apply_config(load_config(self.config_path))

    def configure_accessory(self, accessory: Accessory):
        """Attach identify and set handlers, for new and restored accessories alike."""
        logger.info(f"Configuring accessory {accessory.display_name}")
        self.registry.attach_handlers(accessory, self.handle_set, self.identify)

    def identify(self, accessory: Accessory):
        logger.info(f"{accessory.display_name} identified!")

    def handle_set(self, accessory: Accessory, service: ServiceSpec,
                   characteristic: CharacteristicSpec, value: Any):
        """Synchronous host callback; the command runs in the background."""
        future = asyncio.ensure_future(self.request_set(accessory, service, characteristic, value))
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)

    async def request_set(self, accessory: Accessory, service: ServiceSpec, characteristic: CharacteristicSpec,
                          value: Any, callback: Optional[SetCallback] = None) -> Optional[Exception]:
        """Set the device bound to a characteristic.

        The completion callback receives None on success, or the error.

        Returns:
            The error passed to the callback
        """
        label = accessory.spec.label(service, characteristic)
        binding = characteristic.set
        error: Optional[Exception] = None

        device = self.devices.get(binding.device) if binding is not None else None
        if binding is None:
            error = CommandError(f"{label} cannot be set, it has no set device")
            logger.error(str(error))
        elif device is None:
            error = CommandError(f"While setting {accessory.display_name} to {to_str(value)}: no device found with path \"{binding.device}\"!")
            logger.error(str(error))
        else:
            try:
                if await self.commands.dispatch(device, binding, value):
                    logger.info(f"{label} was set to {to_str(value)}")
            except CommandError as e:
                logger.warning(f"{label} could not be set to {to_str(value)}: {e}")
                error = e

        if callback is not None:
            callback(error)
        return error

    def remove_accessories(self) -> int:
        """Unregister every published accessory."""
        logger.info("Removing all accessories")
        count = len(self.accessories)
        for accessory in self.accessories:
            self.registry.unregister(accessory)
        self.registry.commit()
        self.accessories = []
        return count

    def summary_rows(self) -> List[Dict[str, Any]]:
        rows = []
        for accessory in self.accessories:
            for service, characteristic in accessory.spec.characteristics():
                rows.append({
                    'accessory': accessory.display_name,
                    'service': service.kind,
                    'characteristic': characteristic.kind,
                    'label': accessory.spec.label(service, characteristic),
                    'get': _binding_to_string(characteristic.get) if characteristic.get else None,
                    'set': _binding_to_string(characteristic.set) if characteristic.set else None,
                })
        return rows

    def display_summary(self):
        """Log the published accessories with their device bindings."""
        previous = None
        for row in self.summary_rows():
            if row['accessory'] != previous:
                logger.debug(f"Accessory \"{row['accessory']}\":")
                previous = row['accessory']
            logger.debug(f"\tService.Characteristic \"{row['service']}.{row['characteristic']}\":")
            if row['get']:
                logger.debug(f"\t\tget: {row['get']}")
            if row['set']:
                logger.debug(f"\t\tset: {row['set']}")

    def status(self) -> Dict[str, Any]:
        result = self.last_result
        return {
            'session': self.session.state.value,
            'devices_loaded': self.devices_loaded,
            'devices': len(self.devices),
            'accessories': len(self.accessories),
            'live_sync': self.live_sync.state,
            'last_reconcile': result.summary() if result else None,
            'uptime': round(time.time() - self.start_time),
        }

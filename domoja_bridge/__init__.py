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
"""Domoja Bridge - HomeKit bridge for Domoja devices."""

from .__version__ import __version__

__author__ = "Domoja Bridge Contributors"
__description__ = "HomeKit bridge for Domoja devices"

from .cache import AccessoryStore
from .commands import CommandDispatcher, CommandError
from .config import ConfigurationError, DomojaConfig, DuplicateDisplayNameError, load_config
from .devices import DeviceCache
from .equality import deep_equal
from .host import HapAccessoryRegistry, HostAccessoryRegistry
from .models import Accessory, AccessorySpec, Device
from .platform import DomojaPlatform
from .reconcile import AccessoryReconciler, ReconcileResult
from .session import SessionManager
from .sync import LiveSyncDispatcher
from .transform import transform

__all__ = [
    "__version__",
    "AccessoryStore",
    "CommandDispatcher",
    "CommandError",
    "ConfigurationError",
    "DomojaConfig",
    "DuplicateDisplayNameError",
    "load_config",
    "DeviceCache",
    "deep_equal",
    "HapAccessoryRegistry",
    "HostAccessoryRegistry",
    "Accessory",
    "AccessorySpec",
    "Device",
    "DomojaPlatform",
    "AccessoryReconciler",
    "ReconcileResult",
    "SessionManager",
    "LiveSyncDispatcher",
    "transform",
]

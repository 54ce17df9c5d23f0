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

"""FastAPI route handlers for Domoja Bridge."""

import logging
import os
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .__version__ import __version__
from .config import ConfigurationError

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

# Multiple keys can be specified, space-separated
API_KEYS_RAW = os.environ.get('DOMOJA_BRIDGE_API_KEYS', '').strip()
API_KEYS = set(API_KEYS_RAW.split())


def get_api_key(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> Optional[str]:
    """
    Validate API key from Authorization header.

    Authentication is disabled when DOMOJA_BRIDGE_API_KEYS is empty.

    Raises:
        HTTPException 401 if authentication fails
    """
    if not API_KEYS:
        return None

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if credentials.credentials not in API_KEYS:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return credentials.credentials


def create_app():
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Domoja Bridge",
        description="HomeKit bridge for Domoja devices",
        version=__version__
    )

    if API_KEYS:
        logger.info(f"API authentication enabled ({len(API_KEYS)} key(s) configured)")
    else:
        logger.info("API authentication disabled (no DOMOJA_BRIDGE_API_KEYS configured)")

    return app


def register_routes(app: FastAPI, get_platform):
    """Register all API routes.

    Args:
        app: FastAPI application instance
        get_platform: Callable that returns the current DomojaPlatform instance
    """

    def platform_or_503():
        platform = get_platform()
        if platform is None:
            raise HTTPException(status_code=503, detail="Platform not initialized")
        return platform

    @app.get("/", tags=["Info"])
    async def api_info(api_key: Optional[str] = Depends(get_api_key)):
        return {
            "service": "Domoja Bridge",
            "description": "HomeKit bridge for Domoja devices",
            "version": __version__,
            "documentation": "/docs",
            "endpoints": {
                "status": "/status",
                "devices": "/devices",
                "accessories": "/accessories",
                "reload": "/reload",
                "remove_accessories": "/accessories/remove",
            },
        }

    @app.get("/status", tags=["Status"])
    async def get_status(api_key: Optional[str] = Depends(get_api_key)):
        """Session, device and live channel state."""
        return platform_or_503().status()

    @app.get("/devices", tags=["Devices"])
    async def get_devices(api_key: Optional[str] = Depends(get_api_key)):
        platform = platform_or_503()
        devices = [device.to_dict() for device in platform.devices]
        return {"devices": devices, "count": len(devices)}

    @app.get("/devices/{path}", tags=["Devices"])
    async def get_device(path: str, api_key: Optional[str] = Depends(get_api_key)):
        device = platform_or_503().devices.get(path)
        if device is None:
            raise HTTPException(status_code=404, detail=f"Device {path} not found")
        return device.to_dict()

    @app.get("/accessories", tags=["HomeKit"])
    async def get_accessories(api_key: Optional[str] = Depends(get_api_key)):
        """Published accessories, one row per characteristic."""
        platform = platform_or_503()
        return {
            "accessories": [accessory.spec.to_dict() for accessory in platform.accessories],
            "characteristics": platform.summary_rows(),
            "count": len(platform.accessories),
        }

    @app.post("/reload", tags=["HomeKit"])
    async def reload_config(api_key: Optional[str] = Depends(get_api_key)):
        """Re-read the configuration file and reconcile the accessories."""
        platform = platform_or_503()
        try:
            result = platform.reload()
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e))

        if result is None:
            return {"success": True, "reconciled": False}
        return {
            "success": True,
            "reconciled": True,
            "summary": result.summary(),
            "created": result.created,
            "updated": result.updated,
            "removed": result.removed,
            "kept": result.kept,
            "disabled": result.disabled_skipped,
        }

    @app.post("/accessories/remove", tags=["HomeKit"])
    async def remove_accessories(api_key: Optional[str] = Depends(get_api_key)):
        """Unregister every accessory until the next reload."""
        removed = platform_or_503().remove_accessories()
        return {"success": True, "removed": removed}

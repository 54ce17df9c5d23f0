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

"""Command-line interface for Domoja Bridge."""

import asyncio
import argparse
import logging
import logging.handlers
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import uvicorn
from pyhap.accessory import Bridge
from pyhap.accessory_driver import AccessoryDriver

from .cache import AccessoryStore
from .config import ConfigurationError, check_config, load_config
from .host import HapAccessoryRegistry
from .platform import DomojaPlatform
from .routes import create_app, register_routes

# Logger will be configured in main() based on daemon/console mode
logger = logging.getLogger(__name__)

platform: Optional[DomojaPlatform] = None
server: Optional[uvicorn.Server] = None


def uvicorn_log_config(args) -> dict:
    """uvicorn logging matching the format chosen in main()."""
    if args.syslog:
        # Syslog mode: no handlers of its own, everything goes through the root logger
        return {
            "version": 1,
            "disable_existing_loggers": False,
            "loggers": {
                "uvicorn": {"handlers": [], "level": "INFO", "propagate": True},
                "uvicorn.error": {"handlers": [], "level": "INFO", "propagate": True},
                "uvicorn.access": {"handlers": [], "level": "WARNING", "propagate": True},
            },
        }

    if args.daemon:
        formatter = {"format": "%(levelname)-8s %(message)s"}
    else:
        formatter = {"format": "%(asctime)s %(levelname)s %(message)s", "datefmt": "%Y-%m-%d %H:%M:%S"}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": formatter},
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "uvicorn": {"handlers": ["default"], "level": "INFO", "propagate": False},
            "uvicorn.error": {"handlers": ["default"], "level": "INFO", "propagate": False},
            "uvicorn.access": {"handlers": ["default"], "level": "INFO" if args.verbose else "WARNING", "propagate": False},
        },
    }


async def run_server(args, config):
    """Run the HomeKit bridge and the REST API until stopped."""
    global platform, server

    loop = asyncio.get_running_loop()

    def handle_signal():
        logger.info("Received stop signal, shutting down...")
        if server:
            server.should_exit = True

    if sys.platform != "win32":
        loop.add_signal_handler(signal.SIGINT, handle_signal)
        loop.add_signal_handler(signal.SIGTERM, handle_signal)

    db_path = str(Path(os.path.expanduser(args.state)))
    hap_state = str(Path(os.path.expanduser(args.hap_state)))

    driver = AccessoryDriver(
        port=config.bridge.port,
        persist_file=hap_state,
        pincode=config.bridge.pincode.encode('utf-8'),
        loop=loop,
    )
    bridge = Bridge(driver, config.bridge.name)
    driver.add_accessory(bridge)

    registry = HapAccessoryRegistry(driver, bridge, AccessoryStore(db_path))
    platform = DomojaPlatform(config, registry, config_path=args.config)
    platform.restore_accessories()

    start_task = asyncio.create_task(platform.start())

    app = create_app()
    register_routes(app, lambda: platform)

    server = uvicorn.Server(uvicorn.Config(
        app,
        host="0.0.0.0",
        port=args.port,
        log_config=uvicorn_log_config(args),
        access_log=True,
    ))

    try:
        await driver.async_start()
        registry.mark_started()
        platform.host_ready()

        logger.info("*** Domoja Bridge ready! ***")
        logger.info(f"HomeKit bridge \"{config.bridge.name}\" on port {config.bridge.port}, setup code {config.bridge.pincode}")
        logger.info(f"API Server: http://0.0.0.0:{args.port}")
        logger.info(f"Documentation: http://0.0.0.0:{args.port}/docs")

        await server.serve()
    finally:
        logger.info("Performing cleanup...")
        start_task.cancel()
        await platform.stop()
        await driver.async_stop()

        if args.pid_file:
            pid_path = Path(args.pid_file)
            try:
                pid_path.unlink(missing_ok=True)
                logger.info(f"PID file removed: {pid_path}")
            except OSError as e:
                logger.warning(f"Failed to remove PID file: {e}")


def setup_logging(args):
    if args.syslog:
        syslog_address = args.syslog
        if ':' in syslog_address and not syslog_address.startswith('/'):
            host, port = syslog_address.rsplit(':', 1)
            syslog_address = (host, int(port))

        try:
            syslog_handler = logging.handlers.SysLogHandler(
                address=syslog_address,
                facility=logging.handlers.SysLogHandler.LOG_DAEMON
            )
        except OSError as e:
            logging.basicConfig(
                level=logging.INFO,
                format='%(asctime)s %(levelname)s %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S',
                stream=sys.stdout,
                force=True
            )
            logger.error(f"Failed to connect to syslog ({args.syslog}): {e}")
            logger.info("Falling back to console logging")
        else:
            syslog_handler.setFormatter(logging.Formatter(
                'domoja-bridge[%(process)d]: %(levelname)s %(message)s'
            ))
            root_logger = logging.getLogger()
            root_logger.setLevel(logging.INFO)
            root_logger.handlers = [syslog_handler]
            logger.info("Logging to syslog: %s", args.syslog)
    elif args.daemon:
        # No timestamp, syslog adds it
        logging.basicConfig(
            level=logging.INFO,
            format='%(levelname)s %(message)s',
            stream=sys.stdout,
            force=True
        )
    else:
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s %(levelname)s %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
            stream=sys.stdout,
            force=True
        )

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.info("Verbose logging enabled")

    # Chatty even at INFO
    logging.getLogger("socketio").setLevel(logging.WARNING)
    logging.getLogger("engineio").setLevel(logging.WARNING)


def main():
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Domoja Bridge - HomeKit bridge for Domoja devices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start the bridge (console mode)
  python -m domoja_bridge --config ~/domoja-bridge.json
  domoja-bridge --config ~/domoja-bridge.json

  # Run as system daemon
  domoja-bridge --config /etc/domoja-bridge.json --daemon --pid-file /var/run/domoja-bridge.pid

  # Send logs to local syslog
  domoja-bridge --config /etc/domoja-bridge.json --syslog /dev/log

  # Debug mode with verbose logging
  domoja-bridge --config ~/domoja-bridge.json --verbose

API Endpoints:
  GET  /                    - API information
  GET  /status              - Session, devices and live channel status
  GET  /devices             - Devices loaded from the Domoja server
  GET  /accessories         - Published HomeKit accessories
  POST /reload              - Re-read the configuration and reconcile
  POST /accessories/remove  - Remove all published accessories
        """
    )
    parser.add_argument("--config", required=True,
                       help="Path to the JSON configuration file")
    parser.add_argument("--state", default="~/.domoja-bridge.db",
                       help="Path to state database (default: ~/.domoja-bridge.db)")
    parser.add_argument("--hap-state", default="~/.domoja-bridge.hap.state",
                       help="Path to the HomeKit pairing state file (default: ~/.domoja-bridge.hap.state)")
    parser.add_argument("--port", type=int, default=18081,
                       help="Port for REST API server (default: 18081)")
    parser.add_argument("--verbose", action="store_true",
                       help="Enable verbose logging (DEBUG level)")
    parser.add_argument("--daemon", action="store_true",
                       help="Run in daemon mode (logging without timestamps, auto-enables --pid-file)")
    parser.add_argument("--syslog",
                       help="Send logs to syslog instead of stdout (e.g., /dev/log, localhost:514, or remote.server:514)")
    parser.add_argument("--pid-file",
                       help="Write process ID to specified file (useful for daemon mode)")

    args = parser.parse_args()

    if args.daemon and not args.pid_file:
        args.pid_file = "/var/run/domoja-bridge.pid" if sys.platform != "win32" else "domoja-bridge.pid"

    setup_logging(args)

    try:
        config = check_config(load_config(args.config))
    except ConfigurationError as e:
        logger.error(f"Wrong configuration, please fix and restart! {e}")
        sys.exit(1)

    if args.pid_file:
        pid_path = Path(args.pid_file)
        try:
            pid_path.write_text(str(os.getpid()))
            logger.info(f"PID file written: {pid_path}")
        except OSError as e:
            logger.error(f"Failed to write PID file: {e}")
            sys.exit(1)

    try:
        asyncio.run(run_server(args, config))
    except KeyboardInterrupt:
        logger.info("*** Shutdown complete ***")
    except Exception as e:
        logger.error(f"ERROR: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

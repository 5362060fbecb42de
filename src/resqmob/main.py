"""
ResQMob Main Application Entry Point

Loads configuration, sets up logging, builds the SOS engine for the
configured backend and serves the HTTP API until a shutdown signal.
"""

import argparse
import asyncio
import signal
import sys
from typing import Any, Dict, Optional

from resqmob.core.config import ConfigurationManager
from resqmob.core.logging import initialize_logging, get_logger
from resqmob.services.sos.factory import SOSEngine, build_engine
from resqmob.services.web.api import SOSApiService


class ResQMobApplication:
    """Main ResQMob application class"""

    def __init__(self, config_dir: str = "config"):
        self.config_dir = config_dir
        self.config_manager: Optional[ConfigurationManager] = None
        self.engine: Optional[SOSEngine] = None
        self.api: Optional[SOSApiService] = None
        self.logger = None

        # Application state
        self.running = False
        self.shutdown_event = asyncio.Event()
        self._api_task: Optional[asyncio.Task] = None

    async def initialize(self):
        """Initialize all application components"""
        print("Initializing ResQMob...")

        self.config_manager = ConfigurationManager(self.config_dir)
        self.config_manager.load_config()

        initialize_logging(self.config_manager.config)
        self.logger = get_logger('main')

        self.logger.info("ResQMob starting up...")
        self.logger.info(f"Version: {self.config_manager.get('app.version', '1.0.0')}")
        self.logger.info(f"Database backend: {self.config_manager.get_database_backend()}")

        self.engine = build_engine(self.config_manager)

        if self.config_manager.is_api_enabled():
            self.api = SOSApiService(
                self.engine,
                host=self.config_manager.get('api.host', '0.0.0.0'),
                port=self.config_manager.get('api.port', 8080),
                debug=self.config_manager.get('app.debug', False)
            )

    async def start(self):
        """Start the application"""
        await self.initialize()

        self.running = True

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._signal_handler, sig)

        try:
            await self.engine.start()
            if self.api is not None:
                self._api_task = asyncio.create_task(self.api.serve())

            self.logger.info("ResQMob is now running")
            await self._main_loop()

        except Exception as e:
            self.logger.error(f"Application error: {e}", exc_info=True)
            raise
        finally:
            await self.shutdown()

    async def _main_loop(self):
        """Wait for a shutdown signal, reporting statistics periodically"""
        stats_task = asyncio.create_task(self._stats_reporter_loop())
        try:
            await self.shutdown_event.wait()
            self.logger.info("Shutdown signal received")
        finally:
            stats_task.cancel()
            await asyncio.gather(stats_task, return_exceptions=True)

    async def _stats_reporter_loop(self):
        """Report engine statistics periodically"""
        while self.running:
            try:
                await asyncio.sleep(300)
                status = await self.get_status()
                sos = status.get('sos', {})
                self.logger.info(
                    f"System Stats - "
                    f"Active alerts: {sos.get('active_alerts', 0)}, "
                    f"Created: {sos.get('stats', {}).get('alerts_created', 0)}, "
                    f"Escalation timers: {sos.get('escalation', {}).get('registered', 0)}"
                )
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in stats reporter: {e}")

    def _signal_handler(self, signum):
        """Handle shutdown signals"""
        self.logger.info(f"Received signal {signum}")
        self.shutdown_event.set()

    async def shutdown(self):
        """Shutdown the application gracefully"""
        if not self.running:
            return

        self.logger.info("Shutting down ResQMob...")
        self.running = False

        if self.api is not None:
            self.api.shutdown()
        if self._api_task is not None:
            await asyncio.gather(self._api_task, return_exceptions=True)

        if self.engine is not None:
            await self.engine.stop()

        self.logger.info("ResQMob shutdown complete")

    async def get_status(self) -> Dict[str, Any]:
        """Get application status"""
        status: Dict[str, Any] = {'running': self.running}
        if self.engine is not None:
            status['sos'] = await self.engine.controller.get_service_status()
        return status


async def main(config_dir: str = "config"):
    """Main entry point"""
    app = ResQMobApplication(config_dir)

    try:
        await app.start()
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
    except Exception as e:
        print(f"Application failed to start: {e}")
        sys.exit(1)


def cli():
    """Console script entry point"""
    parser = argparse.ArgumentParser(description="ResQMob SOS engine")
    parser.add_argument("--config-dir", default="config", help="Directory holding default.yaml and config.yaml")
    args = parser.parse_args()

    try:
        asyncio.run(main(args.config_dir))
    except KeyboardInterrupt:
        print("\nApplication interrupted")
        sys.exit(0)


if __name__ == "__main__":
    cli()

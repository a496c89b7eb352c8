"""Main entry point - wires the process host, bridge and control API together."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

import uvicorn
import yaml

from .bridge import SessionBridge
from .models import ActivityState, ErrorReport
from .process_host import PtyProcessHost
from .recording_store import RecordingStore
from .server import create_app

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


class BridgeApp:
    """Main application orchestrator."""

    def __init__(self, config: dict):
        self.config = config

        self.host = config.get("server", {}).get("host", "127.0.0.1")
        self.port = config.get("server", {}).get("port", 8430)

        self.process_host = PtyProcessHost(config=config)
        self.store = RecordingStore.from_config(config)
        self.bridge = SessionBridge(self.process_host, store=self.store, config=config)

        self.bridge.set_error_callback(self._handle_error)
        self.bridge.set_status_callback(self._handle_status_change)

        self.app = create_app(bridge=self.bridge, config=config)

    async def _handle_error(self, report: ErrorReport):
        # Reports are already logged by the bridge; surfaced to clients via GET /errors
        pass

    def _handle_status_change(self, session_id: str, state: ActivityState):
        session = self.bridge.get_session(session_id)
        name = session.name if session else session_id
        logger.info(f"{name} is {state.value}")

    async def start(self):
        """Start the control API and serve until shutdown."""
        logger.info("Starting session bridge...")
        logger.info(f"Recordings in {self.store.recordings_dir}")

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        server = uvicorn.Server(config)

        logger.info(f"Starting server on http://{self.host}:{self.port}")
        await server.serve()

    async def stop(self):
        """Save active recordings and terminate sessions."""
        logger.info("Stopping session bridge...")
        await self.bridge.shutdown()
        await self.process_host.shutdown()
        logger.info("Shutdown complete")


async def main(config_path: Optional[str] = None):
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = load_config(config_path or os.environ.get("SBRIDGE_CONFIG", DEFAULT_CONFIG_PATH))

    app = BridgeApp(config)
    try:
        await app.start()
    finally:
        await app.stop()


def run(config_path: Optional[str] = None):
    """Entry point for console script."""
    try:
        asyncio.run(main(config_path))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()

# BotLogin - Main Entry Point
# Runs a bot account session on the real-time gateway

"""
BotLogin - Gateway Session Runner

Connects the layers into a running process:
Config Store -> Gateway Client (discovery, identify/resume, heartbeat,
reconnect) -> Dispatch Router -> event handlers, with operator notices and
a small control API for settings and connect/disconnect.

Lifecycle:
- on load: connect if a bot token is stored
- while running: drain control API requests, publish status
- on unload: close with 1000 "Plugin unloading", restore patched accessors
"""

import asyncio
import os
import signal
import threading
from copy import deepcopy
from pathlib import Path
from typing import Any, Callable

import uvicorn
import yaml
from dotenv import load_dotenv

from botlogin.alerts.notifier import Notifier
from botlogin.connection.gateway_client import GatewayClient
from botlogin.connection.gateway_discovery import GatewayDiscovery
from botlogin.dashboard import api as dashboard_api
from botlogin.host.token_guard import TokenAccessorGuard
from botlogin.processors.dispatch_router import DispatchRouter
from botlogin.storage.config_store import DEFAULT_INTENTS, ConfigStore
from botlogin.utils.logger import configure_logging, setup_logger

# Global flag for shutdown
shutdown_event = asyncio.Event()

DEFAULT_CONFIG = {
    'gateway': {
        'api_base': "https://discord.com/api/v10",
        'api_version': 10,
        'encoding': "json",
        'max_reconnect_attempts': 5,
        'base_delay_ms': 1000,
        'max_delay_ms': 30000,
        'discovery_timeout': 15,
        'large_threshold': 250,
        'properties': {'os': "android", 'browser': "BotLogin", 'device': "BotLogin"}
    },
    'settings': {
        'path': "config/settings.yaml",
        'default_intents': DEFAULT_INTENTS
    },
    'dashboard': {
        'enabled': True,
        'host': "127.0.0.1",
        'port': 8080,
        'api_token': ""
    },
    'logging': {
        'level': "INFO",
        'file': "logs/botlogin.log"
    },
    'status_interval': 1.0
}

class BotLoginApp:
    """
    Main application class - wires settings, gateway client and control API
    """

    def __init__(self, config: dict):
        """Initialize all components from config"""
        self.config = config
        self.logger = setup_logger("BotLogin", "INFO")

        gateway_config = config.get('gateway', {})
        settings_config = config.get('settings', {})

        # Persisted settings (token, intents)
        self.config_store = ConfigStore(
            path=settings_config.get('path'),
            initial={'intents': settings_config.get('default_intents', DEFAULT_INTENTS)}
        )
        env_token = config.get('discord', {}).get('bot_token', '')
        if env_token and not self.config_store.bot_token:
            self.config_store.set('bot_token', env_token)

        self.notifier = Notifier()
        self.router = DispatchRouter()
        self.client = GatewayClient(
            self.config_store,
            notifier=self.notifier,
            discovery=GatewayDiscovery(
                base_url=gateway_config.get('api_base', GatewayDiscovery.BASE_URL),
                timeout=gateway_config.get('discovery_timeout', 15)
            ),
            router=self.router,
            api_version=gateway_config.get('api_version', 10),
            encoding=gateway_config.get('encoding', "json"),
            max_reconnect_attempts=gateway_config.get('max_reconnect_attempts', 5),
            base_delay_ms=gateway_config.get('base_delay_ms', 1000),
            max_delay_ms=gateway_config.get('max_delay_ms', 30000),
            identify_properties=gateway_config.get('properties'),
            large_threshold=gateway_config.get('large_threshold', 250)
        )

        # Event handlers
        self.router.on("MESSAGE_CREATE", self.on_message_create)
        self.router.on_any(self.on_other_event)

        # Host token accessor patches
        self.token_guard = TokenAccessorGuard(self.client.is_bot_socket_open)

        self.dashboard_thread = None

    def patch_host_accessor(self, target: Any, attribute: str = "getToken") -> Callable[[], None]:
        """Guard a host token accessor while the bot socket is open"""
        return self.token_guard.patch(target, attribute)

    async def on_message_create(self, data: dict):
        """Log incoming messages"""
        author = (data.get('author') or {}).get('username', 'unknown')
        self.logger.info(f"MSG #{data.get('channel_id')} <{author}>: {data.get('content', '')}")

    async def on_other_event(self, event_name: str, data: Any):
        self.logger.debug(f"Event {event_name}")

    async def on_load(self):
        """Connect with the stored token, if any"""
        if self.config_store.bot_token:
            await self.client.connect()
        else:
            self.logger.info("No bot token stored - waiting for settings")

    async def on_unload(self):
        """Close the session and restore patched accessors"""
        await self.client.shutdown()
        self.token_guard.unpatch_all()

    async def process_commands(self):
        """Apply connect/disconnect requests queued by the control API"""
        for command in dashboard_api.get_pending_commands():
            action = command.get('action')
            if action == 'connect':
                await self.client.connect()
            elif action == 'disconnect':
                await self.client.disconnect()
            else:
                self.logger.warning(f"Unknown control request: {command}")

    def publish_status(self):
        dashboard_api.update_status(self.client.get_status(), self.notifier.recent())

    def start_dashboard(self):
        """Start control API server in background thread"""
        dashboard_config = self.config.get('dashboard', {})
        if not dashboard_config.get('enabled', True):
            return

        dashboard_api.configure(self.config_store, dashboard_config.get('api_token', ''))
        self.dashboard_thread = threading.Thread(
            target=uvicorn.run,
            kwargs={
                'app': dashboard_api.app,
                'host': dashboard_config.get('host', "127.0.0.1"),
                'port': dashboard_config.get('port', 8080),
                'log_level': "warning"
            },
            daemon=True,
            name="ControlAPI"
        )
        self.dashboard_thread.start()
        self.logger.info(
            f"Control API on http://{dashboard_config.get('host', '127.0.0.1')}:"
            f"{dashboard_config.get('port', 8080)}"
        )

    async def run(self):
        """Run until shutdown_event is set"""
        self.start_dashboard()
        interval = self.config.get('status_interval', 1.0)

        try:
            await self.on_load()
            while not shutdown_event.is_set():
                await self.process_commands()
                self.publish_status()
                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.logger.info("Shutting down...")
            await self.on_unload()
            self.publish_status()
            self.logger.info("✅ Shutdown complete")

def _merge(defaults: dict, overrides: dict) -> dict:
    merged = deepcopy(defaults)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged

def validate_config(config: dict) -> tuple:
    """
    Validate configuration structure

    Returns:
        (is_valid, errors)
    """
    errors = []
    gateway = config.get('gateway', {})

    for key in ('api_version', 'max_reconnect_attempts', 'base_delay_ms', 'max_delay_ms', 'large_threshold'):
        value = gateway.get(key)
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            errors.append(f"Config error: gateway.{key} must be a positive integer")

    base, cap = gateway.get('base_delay_ms'), gateway.get('max_delay_ms')
    if isinstance(base, int) and isinstance(cap, int) and base > cap:
        errors.append("Config error: gateway.base_delay_ms must not exceed gateway.max_delay_ms")

    port = config.get('dashboard', {}).get('port')
    if not isinstance(port, int) or not 0 < port < 65536:
        errors.append("Config error: dashboard.port must be a valid TCP port")

    return (len(errors) == 0, errors)

def load_config(project_root: Path = None) -> dict:
    """
    Load configuration from config/config.yaml and config/secrets.env

    Missing keys fall back to DEFAULT_CONFIG. Relative file paths are
    resolved against the project root.
    """
    project_root = project_root or Path(__file__).parent
    load_dotenv(project_root / "config" / "secrets.env")

    config_path = project_root / "config" / "config.yaml"
    file_config = {}
    if config_path.exists():
        with open(config_path) as f:
            file_config = yaml.safe_load(f) or {}

    config = _merge(DEFAULT_CONFIG, file_config)

    for section, key in (('settings', 'path'), ('logging', 'file')):
        value = config[section].get(key)
        if value and not Path(value).is_absolute():
            config[section][key] = str(project_root / value)

    # Add secrets from environment
    config['discord'] = {
        'bot_token': os.getenv('DISCORD_BOT_TOKEN', '')
    }
    if os.getenv('BOTLOGIN_API_TOKEN'):
        config['dashboard']['api_token'] = os.getenv('BOTLOGIN_API_TOKEN')

    return config

def handle_shutdown(signum=None, frame=None):
    """Handle shutdown signals"""
    print("\n🛑 Received shutdown signal")
    shutdown_event.set()

async def main():
    """Main entry point"""
    logger = setup_logger("Main", "INFO")

    try:
        logger.info("Loading configuration...")
        config = load_config()

        is_valid, errors = validate_config(config)
        if not is_valid:
            logger.error("❌ Configuration validation failed:")
            for error in errors:
                logger.error(f"  - {error}")
            return

        configure_logging(config['logging'].get('level', "INFO"), config['logging'].get('file'))

        app = BotLoginApp(config)
        await app.run()

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        raise

if __name__ == "__main__":
    # Setup signal handlers
    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n👋 Goodbye!")

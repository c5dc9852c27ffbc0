#!/usr/bin/env python3
"""
Incident Engine - Main Application Entry Point
Primary executable for starting the incident correlation and escalation engine.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
import yaml

from .config.config_manager import ConfigManager
from .core.errors import EngineError
from .core.events import IncidentEvent
from .engine import IncidentEngine

# Configure logging
logging.basicConfig(
    format="%(message)s",
    stream=sys.stdout,
    level=logging.INFO,
)

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


class IncidentEngineApp:
    """
    Main application class for the incident engine.
    Loads configuration, wires the engine and manages its lifecycle.
    """

    def __init__(self, config_path: str, log_level: Optional[str] = None):
        """
        Initialize the application.

        Args:
            config_path: Path to configuration file
            log_level: Logging level override (DEBUG, INFO, WARNING, ERROR)
        """
        self.config_path = Path(config_path)
        self.log_level = log_level

        self.config_manager: Optional[ConfigManager] = None
        self.engine: Optional[IncidentEngine] = None

        self.running = False
        self._shutdown = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

        if log_level:
            self._configure_logging(log_level)

        logger.info("Incident engine initializing", config_path=str(self.config_path))

    def _configure_logging(self, level_name: str) -> None:
        """Configure application logging based on settings."""
        log_level = getattr(logging, level_name.upper(), logging.INFO)
        logging.getLogger().setLevel(log_level)

        if log_level == logging.DEBUG:
            structlog.configure(
                processors=[
                    structlog.stdlib.filter_by_level,
                    structlog.stdlib.add_logger_name,
                    structlog.stdlib.add_log_level,
                    structlog.stdlib.PositionalArgumentsFormatter(),
                    structlog.processors.TimeStamper(fmt="iso"),
                    structlog.processors.StackInfoRenderer(),
                    structlog.processors.format_exc_info,
                    structlog.processors.UnicodeDecoder(),
                    structlog.dev.ConsoleRenderer()  # More readable for debug
                ],
                context_class=dict,
                logger_factory=structlog.stdlib.LoggerFactory(),
                wrapper_class=structlog.stdlib.BoundLogger,
                cache_logger_on_first_use=True,
            )

    async def initialize(self) -> bool:
        """
        Load configuration and build the engine.

        Returns:
            True if initialization successful, False otherwise
        """
        self.config_manager = ConfigManager(self.config_path)
        if not await self.config_manager.load_config():
            logger.error("Failed to load configuration")
            return False

        config = self.config_manager.get_config()
        if not self.log_level:
            self._configure_logging(config['engine']['log_level'])

        try:
            self.engine = IncidentEngine.from_config(config)
        except (EngineError, ValueError, KeyError) as e:
            logger.error("Failed to build incident engine", error=str(e))
            return False

        logger.info("Incident engine initialization completed",
                    policies=len(config.get('policies', {})),
                    users=len(config.get('users', {})),
                    routing_rules=len(config.get('routing_rules', [])))
        return True

    async def start(self, simulation: Optional[List[Dict[str, Any]]] = None) -> None:
        """
        Run the engine until shutdown is requested.

        Args:
            simulation: Optional alert payloads to feed, each with an
                ``after_seconds`` offset from start
        """
        self.running = True
        await self.engine.start()

        self._tasks.append(asyncio.create_task(self._log_events()))
        if simulation:
            self._tasks.append(asyncio.create_task(self._simulate(simulation)))

        logger.info("Incident engine running")
        await self._shutdown.wait()

    def request_shutdown(self) -> None:
        self._shutdown.set()

    async def stop(self) -> None:
        """Stop the engine gracefully."""
        if not self.running:
            return
        self.running = False

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.engine:
            await self.engine.stop()
        logger.info("Incident engine stopped successfully")

    async def _log_events(self) -> None:
        subscription = self.engine.subscribe()
        try:
            async for event in subscription:
                if isinstance(event, IncidentEvent):
                    logger.info("Incident event",
                                event_type=event.type.value,
                                incident_id=event.incident_id,
                                status=event.incident['status'],
                                level=event.incident['escalation_level'],
                                actor=event.actor)
                else:
                    logger.info("Notification event",
                                event_type=event.type.value,
                                incident_id=event.incident_id,
                                target=event.attempt['target'],
                                channel=event.attempt['channel'],
                                attempt=event.attempt['attempt_count'])
        finally:
            subscription.close()

    async def _simulate(self, alerts: List[Dict[str, Any]]) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()

        for payload in sorted(alerts, key=lambda a: float(a.get('after_seconds', 0))):
            payload = dict(payload)
            wait = float(payload.pop('after_seconds', 0)) - (loop.time() - started)
            if wait > 0:
                await asyncio.sleep(wait)
            try:
                result = await self.engine.ingest_alert(payload)
                logger.info("Simulated alert ingested",
                            dedup_key=payload.get('dedupKey', payload.get('dedup_key')),
                            incident_id=result.incident_id,
                            created=result.created, suppressed=result.suppressed)
            except EngineError as e:
                logger.error("Simulated alert rejected", error=str(e))

        logger.info("Simulation complete", alerts=len(alerts))

    def get_status(self) -> Dict[str, Any]:
        status = {'running': self.running}
        if self.engine:
            status['engine'] = self.engine.get_status()
        return status


def load_simulation(path: str) -> List[Dict[str, Any]]:
    """Load a simulation file: a YAML list of alert payloads (or ``{alerts: [...]}``)."""
    with open(path, 'r') as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, dict):
        data = data.get('alerts', [])
    return list(data)


async def main():
    """
    Main entry point for the incident engine.
    """
    parser = argparse.ArgumentParser(
        description="Incident Correlation and Escalation Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --config config/production.yaml
  %(prog)s --config config/dev.yaml --log-level DEBUG
  %(prog)s --config config/config.yaml --validate-only
  %(prog)s --config config/dev.yaml --simulate alerts.yaml
        """
    )

    parser.add_argument(
        '--config', '-c',
        required=True,
        help='Path to configuration file'
    )

    parser.add_argument(
        '--log-level', '-l',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=None,
        help='Override the configured logging level'
    )

    parser.add_argument(
        '--validate-only',
        action='store_true',
        help='Validate configuration and exit'
    )

    parser.add_argument(
        '--simulate',
        metavar='FILE',
        help='Feed alerts from a YAML file, each with an after_seconds offset'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'Incident Engine v{__import__("incident_engine").__version__}'
    )

    args = parser.parse_args()

    app = IncidentEngineApp(config_path=args.config, log_level=args.log_level)

    if args.validate_only:
        logger.info("Validating configuration only")
        if await app.initialize():
            logger.info("Configuration validation successful")
            return 0
        logger.error("Configuration validation failed")
        return 1

    simulation = None
    if args.simulate:
        try:
            simulation = load_simulation(args.simulate)
        except (OSError, yaml.YAMLError) as e:
            logger.error("Failed to load simulation file", path=args.simulate, error=str(e))
            return 1

    def signal_handler():
        logger.info("Received shutdown signal")
        app.request_shutdown()

    loop = asyncio.get_running_loop()
    for sig in [signal.SIGTERM, signal.SIGINT]:
        loop.add_signal_handler(sig, signal_handler)

    try:
        if not await app.initialize():
            logger.error("Failed to initialize incident engine")
            return 1
        await app.start(simulation)
    finally:
        await app.stop()

    return 0


def cli_main():
    """CLI entry point that handles async main function."""
    return asyncio.run(main())


if __name__ == '__main__':
    sys.exit(cli_main())

import argparse
import json
import logging
import signal
import sys
from typing import Any, Dict, Optional
from pathlib import Path
import pynng

from .settings import ForwarderSettings
from .core import Forwarder, ForwarderException
from .features.broker import BrokerConnectionError


logger = logging.getLogger(__name__)

# argparse dest -> settings field, for the flags that mirror the sensor's historical CLI
FLAG_FIELDS = {
    "host": "mqtt_host",
    "port": "mqtt_port",
    "username": "mqtt_username",
    "password": "mqtt_password",
    "sensor_id": "sensor_id",
    "topic": "mqtt_topic",
    "alert_file": "snort_alert_file_path",
    "verbose": "verbose",
    "stats_interval": "stats_interval",
}


def setup_logging(level=logging.INFO):
    """Set up logging with errors to stderr and others to stdout."""
    # create separate handlers for stdout and stderr
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(level)
    # set filter to allow only non-error messages
    stdout_handler.addFilter(lambda record: record.levelno < logging.ERROR)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)

    # common formatter
    formatter = logging.Formatter('[%(asctime)s] %(levelname)s %(name)s: %(message)s')
    stdout_handler.setFormatter(formatter)
    stderr_handler.setFormatter(formatter)

    # configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(stdout_handler)
    root_logger.addHandler(stderr_handler)


def flag_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides = {}
    for dest, field in FLAG_FIELDS.items():
        value = getattr(args, dest, None)
        if value is not None:
            overrides[field] = value
    return overrides


def load_settings(settings_path: Optional[Path], use_env: bool, overrides: Dict[str, Any]) -> ForwarderSettings:
    """Flags and environment variables are exclusive sources, picked by --use-env."""
    if settings_path is not None and not settings_path.exists():
        logger.error(f"Settings file not found: {settings_path}")
        sys.exit(1)
    if use_env:
        return ForwarderSettings.from_yaml(settings_path, use_env=True)
    return ForwarderSettings.from_yaml(settings_path, use_env=False, overrides=overrides)


def start_service(settings_path: Optional[Path], use_env: bool, overrides: Dict[str, Any]) -> None:
    """Run the forwarder in the foreground until stopped."""
    try:
        settings = load_settings(settings_path, use_env, overrides)
    except SystemExit as e:
        logger.error(f"Error loading settings: {e}")
        sys.exit(1)

    forwarder = Forwarder(settings=settings)

    def _handle_signal(signum, _frame):
        logger.info(f"Received signal {signum}, shutting down...")
        forwarder.stop()

    previous_handler = signal.signal(signal.SIGTERM, _handle_signal)

    try:
        with forwarder:
            forwarder.run()
    except KeyboardInterrupt:
        logger.info("Shutting down forwarder...")
        forwarder.stop()
    except (BrokerConnectionError, ForwarderException) as e:
        logger.critical(f"{e}")
        logger.critical("Cannot continue, exiting")
        sys.exit(1)
    finally:
        signal.signal(signal.SIGTERM, previous_handler)


def _send_command(settings_path: Path, command: bytes) -> str:
    try:
        settings = ForwarderSettings.from_yaml(settings_path)
    except SystemExit as e:
        logger.error(f"Error loading settings from yaml file: {e}")
        sys.exit(1)

    if not settings.manager_addr:
        logger.error("No manager_addr configured, cannot reach the forwarder")
        sys.exit(1)

    try:
        with pynng.Req0(dial=settings.manager_addr, recv_timeout=5000) as req:
            req.send(command)
            return req.recv().decode()
    except pynng.exceptions.NNGException as e:
        logger.error(f"Communication error sending '{command.decode()}': {e}")
        sys.exit(1)


def stop_service(settings_path: Path) -> None:
    """Stop a running forwarder."""
    response = _send_command(settings_path, b"stop")
    logger.info(f"Forwarder response: {response}")


def get_status(settings_path: Path) -> None:
    """Get the current status of the forwarder."""
    response = _send_command(settings_path, b"status")
    try:
        # Try to parse as JSON for pretty printing
        data = json.loads(response)
        logger.info(f"Forwarder Status:\n {json.dumps(data, indent=2)}")
    except json.JSONDecodeError:
        # Fallback to raw response if not json
        logger.info(f"Forwarder status: {response}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mata Elang Snort v3 alert forwarder")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Start command
    start_parser = subparsers.add_parser("start", help="Start forwarding alerts")
    start_parser.add_argument("--settings", required=False, type=Path, help="Forwarder settings YAML file")
    start_parser.add_argument("-b", "--use-env", action="store_true",
                              help="Read configuration from environment variables instead of flags")
    start_parser.add_argument("-H", dest="host", help="MQTT Broker Host")
    start_parser.add_argument("-P", dest="port", type=int, help="MQTT Broker Port")
    start_parser.add_argument("-u", dest="username", help="MQTT Broker Username")
    start_parser.add_argument("-p", dest="password", help="MQTT Broker Password")
    start_parser.add_argument("-s", dest="sensor_id", help="Sensor ID (supports <machine-id>)")
    start_parser.add_argument("-t", dest="topic",
                              help="MQTT Broker Topic (supports <machine-id> and <sensor-id>)")
    start_parser.add_argument("-f", dest="alert_file", help="Snort v3 JSON Log Alert File Path")
    start_parser.add_argument("-v", dest="verbose", action="store_true", default=None,
                              help="Verbose payload to stdout")
    start_parser.add_argument("-d", dest="stats_interval", type=int,
                              help="Log statistics interval in seconds")

    # Stop command
    stop_parser = subparsers.add_parser("stop", help="Stop a running forwarder")
    stop_parser.add_argument("--settings", required=True, type=Path, help="Forwarder settings YAML file")

    # Status command
    status_parser = subparsers.add_parser("status", help="Get forwarder status")
    status_parser.add_argument("--settings", required=True, type=Path, help="Forwarder settings YAML file")

    return parser


def main(argv: Optional[list] = None):
    setup_logging()
    args = build_parser().parse_args(argv)

    try:
        if args.command == "start":
            start_service(args.settings, args.use_env, flag_overrides(args))
        elif args.command == "stop":
            stop_service(args.settings)
        elif args.command == "status":
            get_status(args.settings)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

"""
Command-line entry point: configuration, logging and process lifecycle.

Exit status: 0 after a signal-initiated shutdown, 2 for invalid
configuration, 1 when the container engine cannot be reached at startup.
"""

import argparse
import logging
import os
import re
import signal
import sys
import time
from dataclasses import dataclass, field
from typing import List, Optional

from . import __version__
from .containers import LabelSelector
from .engine import DEFAULT_DOCKER_HOST, DockerClient
from .errors import EngineError
from .notify import notifiers_from_env
from .registry_auth import load_credentials
from .scheduler import Scheduler
from .updater import Updater

logger = logging.getLogger(__name__)

DEFAULT_LABEL = 'devem.tech/up-to-date.enabled=true'
DEFAULT_ROLLING_LABEL = 'devem.tech/up-to-date.rolling=true'

_LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}

_DURATION_RE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$')
_DURATION_UNITS = {None: 1.0, 'ms': 0.001, 's': 1.0, 'm': 60.0, 'h': 3600.0}


@dataclass(frozen=True)
class Config:
    """Runtime settings, built once and passed to every component."""
    interval: float = 30.0
    cleanup: bool = False
    label_enable: bool = False
    label: LabelSelector = field(default_factory=lambda: LabelSelector.parse(DEFAULT_LABEL))
    rolling_label: Optional[LabelSelector] = field(
        default_factory=lambda: LabelSelector.parse(DEFAULT_ROLLING_LABEL))
    docker_config: Optional[str] = None
    docker_host: str = DEFAULT_DOCKER_HOST
    log_level: int = logging.INFO
    health_timeout: float = 30.0
    stop_timeout: int = 10


def parse_duration(value: str) -> float:
    """Parse '30', '30s', '500ms', '5m' or '1h' into positive seconds."""
    match = _DURATION_RE.match(str(value))
    if not match:
        raise argparse.ArgumentTypeError(f"invalid duration {value!r}")
    seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds <= 0:
        raise argparse.ArgumentTypeError("duration must be positive")
    return seconds


def parse_log_level(value: str) -> int:
    try:
        return _LOG_LEVELS[value.strip().lower()]
    except KeyError:
        raise argparse.ArgumentTypeError(f"unknown log level {value!r}") from None


def parse_selector(value: str) -> LabelSelector:
    try:
        return LabelSelector.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def _env_bool(name: str, environ=None) -> bool:
    raw = (environ if environ is not None else os.environ).get(name)
    if raw is None:
        return False
    return raw.strip().lower() in {'1', 'true', 'yes', 'y', 'on'}


def build_parser(environ=None) -> argparse.ArgumentParser:
    env = os.environ if environ is None else environ
    parser = argparse.ArgumentParser(
        prog='up-to-date',
        description='Keep running Docker containers on the latest pull of their image'
    )
    parser.add_argument(
        '--interval',
        type=parse_duration,
        default=env.get('CHECK_INTERVAL', '30s'),
        help='Check interval, e.g. 30s, 5m, 1h (env: CHECK_INTERVAL, default: 30s)'
    )
    parser.add_argument(
        '--cleanup',
        action='store_true',
        default=_env_bool('CLEANUP', env),
        help='Remove the old image after an update when no container uses it (env: CLEANUP)'
    )
    parser.add_argument(
        '--label-enable',
        action='store_true',
        default=_env_bool('LABEL_ENABLE', env),
        help='Only update containers matching --label (env: LABEL_ENABLE)'
    )
    parser.add_argument(
        '--label',
        type=parse_selector,
        default=env.get('LABEL', DEFAULT_LABEL),
        help=f'Label selector for --label-enable, key or key=value (env: LABEL, default: {DEFAULT_LABEL})'
    )
    parser.add_argument(
        '--rolling-label',
        type=parse_selector,
        default=env.get('ROLLING_LABEL', DEFAULT_ROLLING_LABEL),
        help=f'Label selector enabling rolling updates (env: ROLLING_LABEL, default: {DEFAULT_ROLLING_LABEL})'
    )
    parser.add_argument(
        '--docker-config',
        default=env.get('DOCKER_CONFIG_FILE') or None,
        help='Path to docker config.json for registry auth (env: DOCKER_CONFIG_FILE, optional)'
    )
    parser.add_argument(
        '--docker-host',
        default=env.get('DOCKER_HOST', DEFAULT_DOCKER_HOST),
        help=f'Docker Engine address (env: DOCKER_HOST, default: {DEFAULT_DOCKER_HOST})'
    )
    parser.add_argument(
        '--health-timeout',
        type=parse_duration,
        default=env.get('HEALTH_TIMEOUT', '30s'),
        help='How long a rolling update waits for the new container to be healthy (env: HEALTH_TIMEOUT, default: 30s)'
    )
    parser.add_argument(
        '--stop-timeout',
        type=int,
        default=env.get('STOP_TIMEOUT', '10'),
        help='Seconds to wait for a container to stop before it is killed (env: STOP_TIMEOUT, default: 10)'
    )
    parser.add_argument(
        '--log-level',
        type=parse_log_level,
        default=env.get('LOG_LEVEL', 'info'),
        help='Logging level: debug, info, warn, error (env: LOG_LEVEL, default: info)'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def parse_config(argv: Optional[List[str]] = None, environ=None) -> Config:
    """Parse arguments into a Config; invalid input exits with status 2."""
    parser = build_parser(environ)
    args = parser.parse_args(argv)
    if args.stop_timeout < 0:
        parser.error("--stop-timeout must not be negative")
    return Config(
        interval=args.interval,
        cleanup=args.cleanup,
        label_enable=args.label_enable,
        label=args.label,
        rolling_label=args.rolling_label,
        docker_config=args.docker_config,
        docker_host=args.docker_host,
        log_level=args.log_level,
        health_timeout=args.health_timeout,
        stop_timeout=args.stop_timeout,
    )


def setup_logging(level: int) -> logging.Logger:
    """Configure the package logger once: stdout, UTC timestamps."""
    root = logging.getLogger('uptodate')
    root.setLevel(level)

    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        formatter.converter = time.gmtime
        handler.setFormatter(formatter)
        root.addHandler(handler)

    return root


def _log_startup(config: Config) -> None:
    logger.info(f"up-to-date {__version__}")
    logger.info(f"--log-level={logging.getLevelName(config.log_level).lower()}")
    logger.info(f"--interval={config.interval:g}s")
    logger.info(f"--cleanup={str(config.cleanup).lower()}")
    logger.info(f"--label-enable={str(config.label_enable).lower()}")
    if config.label_enable:
        logger.info(f"--label={config.label}")
    logger.info(f"--rolling-label={config.rolling_label}")


def build_scheduler(config: Config, engine) -> Scheduler:
    credentials = load_credentials(config.docker_config)
    updater = Updater(
        engine,
        credentials=credentials,
        cleanup=config.cleanup,
        rolling_label=config.rolling_label,
        stop_timeout=config.stop_timeout,
        health_timeout=config.health_timeout,
    )
    return Scheduler(
        engine,
        updater,
        interval=config.interval,
        label=config.label if config.label_enable else None,
        notifier=notifiers_from_env(),
    )


def main(argv: Optional[List[str]] = None) -> int:
    config = parse_config(argv)
    setup_logging(config.log_level)
    _log_startup(config)

    engine = DockerClient(config.docker_host)
    try:
        engine.ping()
    except EngineError as e:
        logger.error(f"docker client: cannot reach {config.docker_host}: {e}")
        return 1

    scheduler = build_scheduler(config, engine)

    def _handle_signal(signum, frame):
        logger.info(f"received {signal.Signals(signum).name}, finishing current cycle")
        scheduler.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    scheduler.run()
    return 0


if __name__ == '__main__':
    sys.exit(main())

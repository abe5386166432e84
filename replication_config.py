"""
Configuration, logging and connection profiles for the replication topology tools.

The JSON configuration file holds four sections:
- replication: distributor defaults (distribution database, password, folders)
- logging: level and rotating log file settings
- monitoring: latency and backlog thresholds for health checks
- servers: connection profiles for the managed SQL Server instances
"""

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, List, Optional

from replication_errors import ConnectionNotFound, ValidationFailure
from replication_models import AUTHENTICATION_MODES, WINDOWS_AUTH, ServerConnection

DEFAULT_CONFIG_FILE = 'replication_topology.json'
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s'

logger = logging.getLogger(__name__)


def resolve_config_path(path: Optional[str] = None) -> str:
    """Explicit path first, then the CONFIG_FILE environment variable"""
    return path or os.environ.get('CONFIG_FILE', DEFAULT_CONFIG_FILE)


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration and fill in defaults"""
    config_file = resolve_config_path(path)
    try:
        with open(config_file, 'r') as f:
            config = json.load(f)
    except FileNotFoundError:
        logger.error(f"Configuration file not found: {config_file}")
        raise
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in configuration file {config_file}: {e}")
        raise
    return apply_defaults(config)


def apply_defaults(config: Dict[str, Any]) -> Dict[str, Any]:
    replication_config = config.get('replication', {})
    replication_config.setdefault('distribution_database', 'distribution')
    replication_config.setdefault('distributor_password', None)
    replication_config.setdefault('working_directory', None)
    replication_config.setdefault('snapshot_folder', None)
    replication_config.setdefault('connection_timeout', 30)
    replication_config.setdefault('driver', 'ODBC Driver 17 for SQL Server')
    config['replication'] = replication_config

    log_config = config.get('logging', {})
    log_config.setdefault('level', 'INFO')
    log_config.setdefault('log_file', './logs/replication_topology.log')
    log_config.setdefault('max_log_size_mb', 10)
    log_config.setdefault('backup_count', 5)
    config['logging'] = log_config

    monitoring_config = config.get('monitoring', {})
    monitoring_config.setdefault('max_latency_warning_seconds', 300)
    monitoring_config.setdefault('max_latency_critical_seconds', 900)
    monitoring_config.setdefault('max_pending_commands_warning', 10000)
    monitoring_config.setdefault('max_pending_commands_critical', 50000)
    monitoring_config.setdefault('recent_tracer_tokens', 5)
    config['monitoring'] = monitoring_config

    config.setdefault('servers', [])
    return config


def setup_logging(config: Dict[str, Any]) -> logging.Logger:
    """Rotating file log plus console output"""
    log_cfg = config.get('logging', {})
    level = getattr(logging, str(log_cfg.get('level', 'INFO')).upper(), logging.INFO)
    log_file = log_cfg.get('log_file', './logs/replication_topology.log')

    log_dir = os.path.dirname(log_file)
    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)
        except (PermissionError, OSError):
            log_file = os.path.basename(log_file) or 'replication_topology.log'

    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=log_cfg.get('max_log_size_mb', 10) * 1024 * 1024,
        backupCount=log_cfg.get('backup_count', 5)
    )
    console_handler = logging.StreamHandler()

    formatter = logging.Formatter(LOG_FORMAT)
    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=[file_handler, console_handler])
    return logging.getLogger('replication_topology')


def parse_server_config(entry: Dict[str, Any]) -> ServerConnection:
    """Parse one entry of the servers section"""
    name = entry.get('name') or entry.get('host')
    if not name or not entry.get('host'):
        raise ValidationFailure(f"Server entry needs a host: {entry}")
    authentication = entry.get('authentication', WINDOWS_AUTH)
    if authentication not in AUTHENTICATION_MODES:
        raise ValidationFailure(f"Server '{name}' has unknown authentication '{authentication}'")
    port = entry.get('port')
    return ServerConnection(
        name=name,
        host=entry['host'],
        port=int(port) if port else None,
        authentication=authentication,
        username=entry.get('username'),
        password=entry.get('password'),
        database=entry.get('database')
    )


class ConnectionRegistry:
    """Read-only lookup of the connection profiles declared in configuration"""

    def __init__(self, connections: List[ServerConnection]):
        self._connections = {conn.name: conn for conn in connections}

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'ConnectionRegistry':
        return cls([parse_server_config(entry) for entry in config.get('servers', [])])

    def names(self) -> List[str]:
        return sorted(self._connections)

    def get(self, name: str) -> ServerConnection:
        try:
            return self._connections[name]
        except KeyError:
            raise ConnectionNotFound(name) from None

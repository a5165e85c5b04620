import json
import sys
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, Optional, Tuple
import os

logger = logging.getLogger(__name__)


def get_app_data_dir():
    """Returns the directory for config.json and logs"""
    if getattr(sys, 'frozen', False):
        if os.name == 'nt':  # Windows
            appdata_dir = Path(os.getenv('LOCALAPPDATA', Path.home() / 'AppData' / 'Local'))
            app_data_dir = appdata_dir / 'ZhwikiProxy'
        else:  # Linux/Mac
            app_data_dir = Path.home() / '.config' / 'zhwiki-proxy'
    else:
        # Dev mode
        app_data_dir = Path(__file__).parent.parent / 'app_data'

    app_data_dir.mkdir(parents=True, exist_ok=True)
    return app_data_dir


class ConfigManager:
    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path) if config_path else self._get_config_path()
        self.config = self._load_config()

    def _get_config_path(self) -> Path:
        """Returns the path of the config file"""
        return get_app_data_dir() / 'config.json'

    def _get_default_config(self) -> dict:
        """Returns the default configuration"""
        return {
            'server': {
                'host': '0.0.0.0',
                'port': 8080,
                'read_timeout': 30.0,   # per request head
                'write_timeout': 60.0,  # per socket drain
                'max_header_size': 64 * 1024,
                'max_body_size': None,  # None = unlimited
            },

            'client': {
                'timeout': 15.0,
                'max_redirects': 10,
                'tls_handshake_timeout': 10.0,
                'idle_conn_timeout': 30.0,
                'max_idle_conns': 100,
                'compression': True,
                'verify_ssl': True,
                'chunk_size': 32 * 1024,
            },

            'tunnel': {
                'dial_timeout': 10.0,
                'handshake_write_timeout': 10.0,
                'buffer_size': 32 * 1024,
            },

            'negotiation': {
                'accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8',
                'accept_language': 'zh-CN,zh;q=0.9',
                'cookie': 'zhwikiVariant=zh-cn',
            },

            'logging': {
                'level': 'INFO',
                'file': True,
                'max_bytes': 5 * 1024 * 1024,  # 5MB
                'backup_count': 5,
            }
        }

    def _load_config(self) -> Dict[str, Any]:
        """Loads the config file, merged over the defaults"""
        default_config = self._get_default_config()

        try:
            if self.config_path.exists():
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded_config = json.load(f)
                    if not isinstance(loaded_config, dict):
                        raise ValueError("top-level JSON value must be an object")
                    return self._deep_merge(default_config, loaded_config)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load config {self.config_path}: {e}")

        return default_config

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Recursive dict merge"""
        result = base.copy()

        for key, value in update.items():
            if (key in result and
                    isinstance(result[key], dict) and
                    isinstance(value, dict)):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def save(self) -> bool:
        """Writes the configuration to disk"""
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=2, ensure_ascii=False)
            logger.info(f"Configuration saved to {self.config_path}")
            return True
        except OSError as e:
            logger.error(f"Failed to save config: {e}")
            return False

    def get(self, key: str, default: Any = None) -> Any:
        """Gets a value by dotted key"""
        value = self.config

        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any, save: bool = False) -> bool:
        """Sets a value by dotted key"""
        keys = key.split('.')
        config_ref = self.config

        for k in keys[:-1]:
            if k not in config_ref or not isinstance(config_ref[k], dict):
                config_ref[k] = {}
            config_ref = config_ref[k]

        config_ref[keys[-1]] = value

        if save:
            return self.save()
        return True

    def get_server_config(self) -> Dict[str, Any]:
        return self.get('server', {})

    def get_client_config(self) -> Dict[str, Any]:
        return self.get('client', {})

    def get_tunnel_config(self) -> Dict[str, Any]:
        return self.get('tunnel', {})

    def get_logging_config(self) -> Dict[str, Any]:
        return self.get('logging', {})

    def reset_to_defaults(self) -> bool:
        """Resets to defaults and saves"""
        self.config = self._get_default_config()
        return self.save()


def _optional_float(value) -> Optional[float]:
    return None if value is None else float(value)


@dataclass(frozen=True)
class ServerSettings:
    """Listening socket and per-connection limits of the server shell."""

    host: str = '0.0.0.0'
    port: int = 8080
    read_timeout: Optional[float] = 30.0
    write_timeout: Optional[float] = 60.0
    max_header_size: int = 64 * 1024
    max_body_size: Optional[int] = None

    @classmethod
    def from_config(cls, config: ConfigManager) -> "ServerSettings":
        section = config.get_server_config()
        max_body_size = section.get('max_body_size', cls.max_body_size)
        return cls(
            host=str(section.get('host', cls.host)),
            port=int(section.get('port', cls.port)),
            read_timeout=_optional_float(section.get('read_timeout', cls.read_timeout)),
            write_timeout=_optional_float(section.get('write_timeout', cls.write_timeout)),
            max_header_size=int(section.get('max_header_size', cls.max_header_size)),
            max_body_size=None if max_body_size is None else int(max_body_size),
        )


@dataclass(frozen=True)
class ClientSettings:
    """Tunables of the outbound HTTP client.

    ``timeout`` bounds a whole exchange (redirect chain and body included),
    ``None`` disables it. ``max_redirects`` is the number of redirects that
    are followed before the last response is handed back as-is.
    """

    timeout: Optional[float] = 15.0
    max_redirects: int = 10
    tls_handshake_timeout: Optional[float] = 10.0
    idle_conn_timeout: float = 30.0
    max_idle_conns: int = 100
    compression: bool = True
    verify_ssl: bool = True
    chunk_size: int = 32 * 1024

    @classmethod
    def from_config(cls, config: ConfigManager) -> "ClientSettings":
        section = config.get_client_config()
        return cls(
            timeout=_optional_float(section.get('timeout', cls.timeout)),
            max_redirects=int(section.get('max_redirects', cls.max_redirects)),
            tls_handshake_timeout=_optional_float(
                section.get('tls_handshake_timeout', cls.tls_handshake_timeout)),
            idle_conn_timeout=float(section.get('idle_conn_timeout', cls.idle_conn_timeout)),
            max_idle_conns=int(section.get('max_idle_conns', cls.max_idle_conns)),
            compression=bool(section.get('compression', cls.compression)),
            verify_ssl=bool(section.get('verify_ssl', cls.verify_ssl)),
            chunk_size=int(section.get('chunk_size', cls.chunk_size)),
        )


@dataclass(frozen=True)
class TunnelSettings:
    dial_timeout: Optional[float] = 10.0
    handshake_write_timeout: Optional[float] = 10.0
    buffer_size: int = 32 * 1024

    @classmethod
    def from_config(cls, config: ConfigManager) -> "TunnelSettings":
        section = config.get_tunnel_config()
        return cls(
            dial_timeout=_optional_float(section.get('dial_timeout', cls.dial_timeout)),
            handshake_write_timeout=_optional_float(
                section.get('handshake_write_timeout', cls.handshake_write_timeout)),
            buffer_size=int(section.get('buffer_size', cls.buffer_size)),
        )


def build_override_headers(config: ConfigManager) -> Tuple[Tuple[str, str], ...]:
    """Returns the fixed outbound header overrides as an immutable tuple"""
    from core.proxy.headers import DEFAULT_OVERRIDE_HEADERS

    defaults = dict(DEFAULT_OVERRIDE_HEADERS)
    section = config.get('negotiation', {})
    return (
        ('Accept', section.get('accept', defaults['Accept'])),
        ('Accept-Language', section.get('accept_language', defaults['Accept-Language'])),
        ('Connection', 'keep-alive'),
        ('Cookie', section.get('cookie', defaults['Cookie'])),
    )


# Process-wide instance
_config_instance = None


def get_config(config_path: Optional[Path] = None) -> ConfigManager:
    """Returns the process-wide ConfigManager"""
    global _config_instance
    if _config_instance is None:
        _config_instance = ConfigManager(config_path)
    return _config_instance

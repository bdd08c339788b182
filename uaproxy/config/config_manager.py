#!/usr/bin/env python3
"""Configuration loading: JSON file under the config dir plus environment overrides."""
import json
import logging
import os
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# Chrome-like client hints expected by the upstream's edge protection
DEFAULT_BROWSER_HEADERS = {
    'sec-ch-ua': '"Chromium";v="120", "Google Chrome";v="120", "Not-A.Brand";v="99"',
    'sec-ch-ua-mobile': '?0',
    'sec-ch-ua-platform': '"Windows"',
    'accept-language': 'en-US,en;q=0.9,vi;q=0.8',
}


@dataclass
class ProxySettings:
    host: str = '0.0.0.0'
    port: int = 3000
    api_key: Optional[str] = None
    upstream_url: str = 'https://app.unlimitedai.chat'
    proxy_url: Optional[str] = None
    user_agent: str = DEFAULT_USER_AGENT
    browser_headers: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_BROWSER_HEADERS))
    locale_cookie: str = 'NEXT_LOCALE=vi'
    default_model: str = 'chat-model-reasoning'
    session_ttl_seconds: float = 300.0
    rotation_limit: Optional[int] = None
    log_file: Optional[Path] = None

    def request_headers(self) -> Dict[str, str]:
        """Headers sent with every upstream request."""
        headers = {'user-agent': self.user_agent}
        headers.update(self.browser_headers)
        return headers


def _parse_positive(value: Any, cast, name: str):
    """Return a positive number, or None when the value is unusable."""
    if value is None or value == '':
        return None
    try:
        parsed = cast(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid %s value: %r", name, value)
        return None
    if parsed <= 0:
        logger.warning("Ignoring non-positive %s value: %r", name, value)
        return None
    return parsed


def build_settings(data: Mapping[str, Any], env: Mapping[str, str]) -> ProxySettings:
    """Merge file data and environment variables; the environment wins."""
    settings = ProxySettings()
    merged: Dict[str, Any] = dict(data)

    env_map = {
        'HOST': 'host',
        'PORT': 'port',
        'API_KEY': 'api_key',
        'UPSTREAM_URL': 'upstream_url',
        'PROXY_URL': 'proxy_url',
        'TOKEN_ROTATION_LIMIT': 'rotation_limit',
        'SESSION_TTL_SECONDS': 'session_ttl_seconds',
    }
    for env_name, key in env_map.items():
        value = env.get(env_name)
        if value:
            merged[key] = value

    updates: Dict[str, Any] = {}
    for key in ('host', 'api_key', 'upstream_url', 'proxy_url', 'user_agent',
                'locale_cookie', 'default_model'):
        value = merged.get(key)
        if isinstance(value, str) and value.strip():
            updates[key] = value.strip()

    port = _parse_positive(merged.get('port'), int, 'port')
    if port is not None:
        updates['port'] = port

    ttl = _parse_positive(merged.get('session_ttl_seconds'), float, 'session_ttl_seconds')
    if ttl is not None:
        updates['session_ttl_seconds'] = ttl

    rotation_limit = _parse_positive(merged.get('rotation_limit'), int, 'rotation_limit')
    if rotation_limit is not None:
        updates['rotation_limit'] = rotation_limit

    browser_headers = merged.get('browser_headers')
    if isinstance(browser_headers, dict):
        headers = dict(settings.browser_headers)
        headers.update({str(k): str(v) for k, v in browser_headers.items()})
        updates['browser_headers'] = headers

    if updates.get('upstream_url'):
        updates['upstream_url'] = updates['upstream_url'].rstrip('/')

    return replace(settings, **updates)


class ConfigManager:
    """Configuration manager that caches the file until its signature changes."""

    def __init__(self, config_dir: Optional[Path] = None, env: Optional[Mapping[str, str]] = None):
        self.env = os.environ if env is None else env
        if config_dir is None:
            home_override = self.env.get('UAP_HOME')
            config_dir = Path(home_override) if home_override else Path.home() / '.uap'
        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / 'config.json'
        self.run_dir = self.config_dir / 'run'
        self.pid_file = self.run_dir / 'unlimited_proxy.pid'
        self.log_file = self.run_dir / 'unlimited_proxy.log'

        self._data_cache: Dict[str, Any] = {}
        self._file_signature: Optional[Tuple[int, int]] = None
        self._lock = threading.RLock()

    def _ensure_config_dir(self):
        """Ensure the configuration directory exists."""
        self.config_dir.mkdir(parents=True, exist_ok=True)

    def ensure_config_file(self) -> Path:
        """Create an empty config file if none exists yet."""
        self._ensure_config_dir()
        if not self.config_file.exists():
            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump({}, f, ensure_ascii=False, indent=2)
        return self.config_file

    def ensure_run_dir(self) -> Path:
        self.run_dir.mkdir(parents=True, exist_ok=True)
        return self.run_dir

    def _get_file_signature(self) -> Tuple[int, int]:
        """Return (mtime_ns, size) for change detection."""
        try:
            stat_result = self.config_file.stat()
            return stat_result.st_mtime_ns, stat_result.st_size
        except OSError:
            return (0, 0)

    def _load_file(self) -> Dict[str, Any]:
        if not self.config_file.exists():
            return {}
        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to load configuration file %s: %s", self.config_file, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Configuration file %s must contain a JSON object", self.config_file)
            return {}
        return data

    def _get_cached_data(self) -> Dict[str, Any]:
        with self._lock:
            signature = self._get_file_signature()
            if signature != self._file_signature:
                self._data_cache = self._load_file()
                self._file_signature = signature
            return dict(self._data_cache)

    @property
    def settings(self) -> ProxySettings:
        """Current settings (file contents overlaid with the environment)."""
        settings = build_settings(self._get_cached_data(), self.env)
        settings.log_file = self.log_file
        return settings

    def force_reload(self):
        """Drop the cached file contents."""
        with self._lock:
            self._file_signature = None


config_manager = ConfigManager()

"""
Manager configuration for jetswitch

Holds the filesystem layout (work root, download dir, live boot and module
trees) and build settings. Loaded once at start-up from an optional JSON
file plus environment overrides; nothing is created on disk while loading.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import psutil

from jetswitch.updater.errors import ConfigError
from jetswitch.updater.version import ReleaseIdentifier

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = 'JETSWITCH_CONFIG'
DEFAULT_CONFIG_FILE = Path.home() / '.jetswitch' / 'config.json'

BSP_ARCHIVE_TEMPLATE = 'Jetson_Linux_R{release}_aarch64.tbz2'
SOURCES_ARCHIVE = 'public_sources.tbz2'

_PATH_KEYS = (
    'work_root',
    'download_dir',
    'boot_dir',
    'modules_root',
    'tegra_release_file',
    'device_model_file',
)

_ENV_OVERRIDES = {
    'JETSWITCH_WORK_ROOT': 'work_root',
    'JETSWITCH_DOWNLOAD_DIR': 'download_dir',
}


def _default_settings() -> Dict[str, Any]:
    return {
        'work_root': '/usr/local/src/L4T',
        'download_dir': str(Path.home() / 'Downloads'),
        'boot_dir': '/boot',
        'modules_root': '/lib/modules',
        'tegra_release_file': '/etc/nv_tegra_release',
        'device_model_file': '/sys/firmware/devicetree/base/model',
        'make_jobs': psutil.cpu_count(logical=True) or 1,
        'download_page_base': 'https://developer.nvidia.com/embedded/jetson-linux-r',
    }


class ManagerConfig:
    """
    Filesystem layout and build settings for a jetswitch run.

    Settings are resolved in order: built-in defaults, the JSON config file,
    ``JETSWITCH_*`` environment variables, then explicit keyword overrides.
    The config file is taken from the ``config_file`` argument, then
    ``$JETSWITCH_CONFIG``, then ``~/.jetswitch/config.json`` if it exists.
    """

    def __init__(self, config_file: Optional[Path] = None,
                 environ: Optional[Mapping[str, str]] = None, **overrides):
        """
        Load configuration.

        Args:
            config_file: Optional explicit JSON config file (must exist)
            environ: Environment mapping, defaults to ``os.environ``
            **overrides: Setting values that win over every other source

        Raises:
            ConfigError: If the file is unreadable, not a JSON object, or a
                setting has the wrong type
        """
        env = os.environ if environ is None else environ
        self.config_file = self._locate_config_file(config_file, env)

        settings = _default_settings()
        if self.config_file is not None:
            settings.update(self._read_config_file(self.config_file))

        for var, key in _ENV_OVERRIDES.items():
            if env.get(var):
                settings[key] = env[var]

        settings.update({k: v for k, v in overrides.items() if v is not None})
        self._apply(settings)

    @staticmethod
    def _locate_config_file(config_file: Optional[Path],
                            env: Mapping[str, str]) -> Optional[Path]:
        if config_file is not None:
            path = Path(config_file).expanduser()
            if not path.is_file():
                raise ConfigError(f"Config file not found: {path}")
            return path

        if env.get(CONFIG_ENV_VAR):
            path = Path(env[CONFIG_ENV_VAR]).expanduser()
            if not path.is_file():
                raise ConfigError(f"Config file not found: {path} (from ${CONFIG_ENV_VAR})")
            return path

        if DEFAULT_CONFIG_FILE.is_file():
            return DEFAULT_CONFIG_FILE
        return None

    @staticmethod
    def _read_config_file(path: Path) -> Dict[str, Any]:
        try:
            with open(path, 'r') as f:
                config = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Could not read config file {path}: {e}")

        if not isinstance(config, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")

        known = set(_default_settings())
        for key in config:
            if key not in known:
                logger.warning("Ignoring unknown config key '%s' in %s", key, path)
        return {k: v for k, v in config.items() if k in known}

    def _apply(self, settings: Dict[str, Any]):
        for key in _PATH_KEYS:
            value = settings[key]
            if not isinstance(value, (str, os.PathLike)) or not str(value):
                raise ConfigError(f"Config setting '{key}' must be a path string")
            setattr(self, key, Path(value).expanduser())

        make_jobs = settings['make_jobs']
        if isinstance(make_jobs, str) and make_jobs.isdigit():
            make_jobs = int(make_jobs)
        if isinstance(make_jobs, bool) or not isinstance(make_jobs, int) or make_jobs < 1:
            raise ConfigError("Config setting 'make_jobs' must be a positive integer")
        self.make_jobs: int = make_jobs

        page_base = settings['download_page_base']
        if not isinstance(page_base, str):
            raise ConfigError("Config setting 'download_page_base' must be a string")
        self.download_page_base: str = page_base

    @property
    def backup_root(self) -> Path:
        """Backup records live directly in the work root."""
        return self.work_root

    def workspace_path(self, release: ReleaseIdentifier) -> Path:
        """Extraction and build workspace for a release."""
        return self.work_root / str(release)

    def bsp_archive(self, release: ReleaseIdentifier) -> Path:
        return self.download_dir / BSP_ARCHIVE_TEMPLATE.format(release=release)

    def sources_archive(self) -> Path:
        return self.download_dir / SOURCES_ARCHIVE

    def download_page(self, release: ReleaseIdentifier) -> str:
        """NVIDIA release page, e.g. .../jetson-linux-r3644 for 36.4.4."""
        return f"{self.download_page_base}{release.url_slug}"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {key: str(getattr(self, key)) for key in _PATH_KEYS}
        data['make_jobs'] = self.make_jobs
        data['download_page_base'] = self.download_page_base
        return data

    def __repr__(self) -> str:
        return f"ManagerConfig(work_root={self.work_root}, download_dir={self.download_dir})"

import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

_ENV_REF = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::([^}]*))?\}')
DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'
CONFIG_PATH_ENV = 'SIGNAL_SERVICE_CONFIG'


def _lookup(match: 're.Match[str]') -> str:
    env_key, default = match.groups()
    return os.getenv(env_key, default if default is not None else '')


def expand_env(value: str) -> Any:
    """Substitute ``${VAR}`` / ``${VAR:default}`` references in a YAML scalar.

    A value that is exactly one reference is re-read as YAML, so
    ``${PORT:3000}`` yields the integer 3000 and ``${PAPER:false}`` a bool.
    Unset variables without a default become the empty string.
    """
    whole = _ENV_REF.fullmatch(value)
    if whole:
        resolved = _lookup(whole)
        if resolved == '':
            return ''
        try:
            return yaml.safe_load(resolved)
        except yaml.YAMLError:
            return resolved
    return _ENV_REF.sub(_lookup, value)


class SectionProxy(Mapping):
    """Read-only view of a config section with attribute access."""

    def __init__(self, data: Dict[str, Any]):
        self._data = data or {}

    def _wrap(self, value: Any) -> Any:
        return SectionProxy(value) if isinstance(value, dict) else value

    def __getitem__(self, key: str) -> Any:
        return self._wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        value = self._data.get(name)
        if value is None:
            raise AttributeError(f"Config key '{name}' not found")
        return self._wrap(value)

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return self._wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config:
    """Service configuration loaded from YAML once at import.

    The file is ``config/config.yaml`` unless ``SIGNAL_SERVICE_CONFIG`` names
    another one. Sections are reachable as attributes (``config.trading``) or
    items; ``get`` returns the raw dict.
    """

    def __init__(self, config_path: Optional[str] = None):
        path = config_path or os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH
        self.config_path = Path(path)
        self._data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        if not isinstance(raw, dict):
            raise RuntimeError(f"{self.config_path} must contain a mapping at the top level")
        return self._resolve_env_vars(raw)

    def _resolve_env_vars(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {key: self._resolve_env_vars(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self._resolve_env_vars(item) for item in node]
        if isinstance(node, str):
            return expand_env(node)
        return node

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def __getitem__(self, key: str) -> Any:
        value = self._data[key]
        return SectionProxy(value) if isinstance(value, dict) else value

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            value = self._data[name]
        except KeyError as exc:
            raise AttributeError(f"Config key '{name}' not found") from exc
        return SectionProxy(value) if isinstance(value, dict) else value

    def reload(self) -> None:
        self._data = self._load_config()


config = Config()

# Order board: configuration
# Override via config/orderboard.yaml, ORDERBOARD_CONFIG, or environment variables.

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import ConfigError
from .schema import DEFAULT_COLUMNS, START_COLUMN_ID

CONFIG_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "orderboard.yaml"

MANIFEST_STRATEGIES = ("incremental", "relist")


def _default_columns() -> List[Dict[str, str]]:
    return [{"id": cid, "title": title} for cid, title in DEFAULT_COLUMNS]


@dataclass
class Settings:
    """Runtime configuration for the order board server."""

    # Storage root holding metadata.json and tasks/<id>/
    storage_dir: str = "./storage"

    # HTTP
    host: str = "127.0.0.1"
    port: int = 3000
    max_upload_mb: int = 200

    # Workflow
    start_column: str = START_COLUMN_ID
    columns: List[Dict[str, str]] = field(default_factory=_default_columns)

    # "incremental": edit the manifest in place; "relist": rebuild from disk
    manifest_strategy: str = "incremental"

    # AI search relay (empty = search disabled)
    search_relay_url: str = ""
    search_timeout: float = 10.0
    search_max_results: int = 3

    log_level: str = "INFO"

    @property
    def storage_path(self) -> Path:
        return Path(self.storage_dir).expanduser()

    @property
    def column_skeleton(self) -> List[Tuple[str, str]]:
        return [(str(c["id"]), str(c.get("title", c["id"]))) for c in self.columns]

    def validate(self) -> None:
        """Raise ConfigError if settings cannot run a board."""
        if self.manifest_strategy not in MANIFEST_STRATEGIES:
            raise ConfigError(
                f"manifest_strategy must be one of {MANIFEST_STRATEGIES}, "
                f"got {self.manifest_strategy!r}"
            )
        if not self.columns:
            raise ConfigError("At least one column must be configured")
        for col in self.columns:
            if not isinstance(col, dict) or not col.get("id"):
                raise ConfigError(f"Column entries need an id: {col!r}")
        ids = [cid for cid, _ in self.column_skeleton]
        if len(set(ids)) != len(ids):
            raise ConfigError(f"Duplicate column ids: {ids}")
        if self.start_column not in ids:
            raise ConfigError(
                f"start_column {self.start_column!r} is not a configured column. "
                f"Available: {ids}"
            )
        if self.search_timeout <= 0:
            raise ConfigError("search_timeout must be positive")

    def apply_env(self, environ: Optional[Dict[str, str]] = None) -> None:
        """Environment variables win over the config file."""
        env = os.environ if environ is None else environ
        if env.get("ORDERBOARD_STORAGE"):
            self.storage_dir = env["ORDERBOARD_STORAGE"]
        if env.get("GENAI_PROXY_URL"):
            self.search_relay_url = env["GENAI_PROXY_URL"]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @classmethod
    def load(cls, path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> "Settings":
        """Load settings from YAML, falling back to defaults, then apply env overrides."""
        env = os.environ if environ is None else environ
        cfg_path = Path(path or env.get("ORDERBOARD_CONFIG") or CONFIG_PATH)
        if cfg_path.exists():
            try:
                with open(cfg_path, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
                cfg = cls.from_dict(data if isinstance(data, dict) else {})
            except (OSError, yaml.YAMLError, TypeError):
                cfg = cls()
        else:
            cfg = cls()
        cfg.apply_env(env)
        cfg.validate()
        return cfg

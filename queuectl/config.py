"""Configuration store and runtime settings."""
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".queuectl"
HOME_ENV_VAR = "QUEUECTL_HOME"


class ConfigError(ValueError):
    """Raised when stored configuration values cannot be used."""


def normalize_key(key: str) -> str:
    return key.strip().replace("-", "_")


def coerce_value(value: Any) -> Union[int, float, str, Any]:
    """Coerce a string to int, then float, falling back to the string itself."""
    if not isinstance(value, str):
        return value
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value


class ConfigStore:
    """JSON key/value file holding operator overrides."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def list_all(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable config file %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring config file %s: not a JSON object", self.path)
            return {}
        return data

    def get(self, key: str) -> Optional[Any]:
        return self.list_all().get(normalize_key(key))

    def set(self, key: str, value: Any) -> Any:
        """Store a value and return it after coercion."""
        config = self.list_all()
        typed_value = coerce_value(value)
        config[normalize_key(key)] = typed_value

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2)
        os.replace(tmp, self.path)
        return typed_value


class QueueConfig(BaseModel):
    """Everything the store, executor and worker pool need to know."""

    data_dir: Path = DEFAULT_HOME
    base_delay: float = Field(default=2.0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    worker_count: int = Field(default=2, ge=1)
    job_timeout: float = Field(default=10.0, gt=0)
    poll_interval: float = Field(default=0.1, gt=0)
    refill: bool = False

    @property
    def store_path(self) -> Path:
        return self.data_dir / "jobs.json"

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def pid_path(self) -> Path:
        return self.data_dir / "worker.pid"

    @property
    def worker_lock_path(self) -> Path:
        return self.data_dir / "worker.lock"

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.json"

    @classmethod
    def resolve_home(cls, data_dir: Optional[Union[str, Path]] = None) -> Path:
        if data_dir:
            return Path(data_dir).expanduser()
        env_home = os.environ.get(HOME_ENV_VAR)
        if env_home:
            return Path(env_home).expanduser()
        return DEFAULT_HOME

    @classmethod
    def load(cls, data_dir: Optional[Union[str, Path]] = None, **overrides: Any) -> "QueueConfig":
        """Build settings from defaults, the config store, then explicit overrides.

        Overrides whose value is None are skipped so CLI options left unset
        fall through to the stored value.
        """
        home = cls.resolve_home(data_dir)
        values: Dict[str, Any] = {}
        for key, value in ConfigStore(home / "config.json").list_all().items():
            if key in cls.model_fields and key != "data_dir":
                values[key] = value
        values.update({k: v for k, v in overrides.items() if v is not None})
        values["data_dir"] = home
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(str(e)) from e

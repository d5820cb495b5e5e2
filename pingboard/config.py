from pathlib import Path

import yaml
from pydantic import ValidationError
from pydantic_settings import BaseSettings

from .schemas import MonitorConfig

class ConfigError(Exception):
    pass

class Settings(BaseSettings):
    APP_TITLE: str = "pingboard"
    APP_VERSION: str = "1.0.0"

    # data logs, index.html and config.yaml live here
    DATA_DIR: Path = Path.cwd()
    CONFIG_FILE: str = "config.yaml"
    LOG_LEVEL: str = "INFO"

    class Config:
        case_sensitive = False

    @property
    def config_path(self) -> Path:
        return self.DATA_DIR / self.CONFIG_FILE

def load_monitor_config(path: Path) -> MonitorConfig:
    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"parse {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    try:
        return MonitorConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"{path}: {e}") from e

settings = Settings()

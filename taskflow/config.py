from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel

from .constants import DEFAULT_CONCURRENCY, DEFAULT_HISTORY_LIMIT


class StorageConfig(BaseModel):
    """Where execution history is kept. ``None`` means in memory."""

    database_url: Optional[str] = None


class EngineConfig(BaseModel):
    """Scheduler defaults applied to every run."""

    concurrency: int = DEFAULT_CONCURRENCY
    default_timeout: Optional[int] = None
    history_limit: int = DEFAULT_HISTORY_LIMIT


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class TaskflowConfig(BaseModel):
    """Top-level configuration model."""

    storage: StorageConfig = StorageConfig()
    engine: EngineConfig = EngineConfig()
    logging: LoggingConfig = LoggingConfig()

    @property
    def database_url(self) -> Optional[str]:
        return self.storage.database_url


def load_config(path: Optional[str] = None) -> TaskflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to TASKFLOW_CONFIG env
            variable or 'taskflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("TASKFLOW_CONFIG", "taskflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = TaskflowConfig(**data)
    else:
        config = TaskflowConfig()

    env_db_url = os.getenv("TASKFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.storage.database_url = env_db_url
    env_level = os.getenv("TASKFLOW_LOG_LEVEL")
    if env_level:
        config.logging.level = env_level.upper()
    return config

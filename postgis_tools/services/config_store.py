# postgis_tools/services/config_store.py
import logging
import os
import threading
from pathlib import Path
from typing import Iterable, List, Optional

import orjson
from pydantic import ValidationError

from postgis_tools.core.config import settings
from postgis_tools.models.app_config import AppConfig, ConnectionSettings, FieldConfig

logger = logging.getLogger(__name__)


class ConfigStore:
    """Reads and writes the local JSON configuration file.

    A missing or empty file reads as the default configuration. Saving writes a
    temporary file next to the target and swaps it in with ``os.replace``.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else settings.CONFIG_PATH
        self._lock = threading.Lock()

    def load(self) -> AppConfig:
        with self._lock:
            if not self.path.exists():
                return AppConfig()

            raw = self.path.read_bytes()
            if not raw.strip():
                return AppConfig()

            try:
                return AppConfig.model_validate(orjson.loads(raw))
            except (orjson.JSONDecodeError, ValidationError) as e:
                logger.error(f"Ignoring unreadable config file {self.path}: {str(e)}")
                return AppConfig()

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            data = orjson.dumps(config.model_dump(by_alias=True), option=orjson.OPT_INDENT_2)

            tmp_path = self.path.with_name(self.path.name + ".tmp")
            tmp_path.write_bytes(data)
            os.replace(tmp_path, self.path)
            logger.debug(f"Saved configuration to {self.path}")

    def load_connection(self) -> ConnectionSettings:
        return self.load().connection

    def save_connection(self, connection: ConnectionSettings) -> None:
        config = self.load()
        config.connection = connection
        self.save(config)

    def load_field_configs(self) -> List[FieldConfig]:
        return list(self.load().field_configs or [])

    def save_field_configs(self, configs: Iterable[FieldConfig]) -> None:
        """Replace the whole stored list"""
        config = self.load()
        config.field_configs = list(configs)
        self.save(config)

import os
from pathlib import Path
from typing import Any

import structlog
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
)

logger = structlog.stdlib.get_logger(__name__)


class DockerSecretsSettingsSource(PydanticBaseSettingsSource):
    """
    Custom settings source that reads Docker secrets from files.

    For any setting, if an environment variable <PREFIX><SETTING_NAME>_FILE
    exists, the secret value is read from that file path.

    Example:
        If DEVCLUSTER_STATE_ROOT_FILE=/run/secrets/devcluster_state_root
        Then STATE_ROOT will be read from that file
    """

    def __init__(self, settings_cls: type[BaseSettings], env_prefix: str = ""):
        super().__init__(settings_cls)
        self.env_prefix = env_prefix

    def get_field_value(
        self, field_name: str, field_info: Any
    ) -> tuple[Any, str, bool]:
        file_env_name = f"{self.env_prefix}{field_name}_FILE"
        file_path = os.getenv(file_env_name)

        if file_path and Path(file_path).exists():
            try:
                secret_value = Path(file_path).read_text().strip()
                return secret_value, field_name, False
            except OSError as e:
                # Unreadable secret files fall through to the next source
                logger.warning(
                    "Could not read secret file",
                    path=file_path,
                    setting=field_name,
                    error=str(e),
                )

        return None, field_name, False

    def prepare_field_value(
        self, field_name: str, field: Any, value: Any, value_is_complex: bool
    ) -> Any:
        return value

    def __call__(self) -> dict[str, Any]:
        d: dict[str, Any] = {}

        for field_name in self.settings_cls.model_fields:
            field_value, field_key, value_is_complex = self.get_field_value(
                field_name, self.settings_cls.model_fields[field_name]
            )
            if field_value is not None:
                d[field_key] = field_value

        return d

from pathlib import Path

from pydantic import computed_field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from devcluster.utils.settings_utils import DockerSecretsSettingsSource


class StateConfig(BaseSettings):
    STATE_ROOT: Path = Path.home() / ".devcluster"

    @computed_field
    @property
    def CLUSTERS_DIR(self) -> Path:
        return self.STATE_ROOT / "clusters"


class RegistryConfigDefaults(BaseSettings):
    REGISTRY_IMAGE: str = "registry:3"
    REGISTRY_HOST_IP: str = "127.0.0.1"
    REGISTRY_CONTAINER_PORT: int = 5000
    REGISTRY_DATA_PATH: str = "/var/lib/registry"
    REGISTRY_RESTART_POLICY: str = "unless-stopped"

    REGISTRY_READY_TIMEOUT: float = 30.0
    REGISTRY_READY_POLL_INTERVAL: float = 0.5
    REGISTRY_HTTP_TIMEOUT: float = 2.0
    REGISTRY_CONNECTION_REFUSED_THRESHOLD: int = 5
    """Consecutive refused connections before the container state is checked"""

    @model_validator(mode="after")
    def validate_health_check_timings(self):
        if self.REGISTRY_READY_POLL_INTERVAL <= 0:
            raise ValueError("REGISTRY_READY_POLL_INTERVAL must be positive")
        if self.REGISTRY_CONNECTION_REFUSED_THRESHOLD < 1:
            raise ValueError("REGISTRY_CONNECTION_REFUSED_THRESHOLD must be >= 1")
        return self


class ParallelConfig(BaseSettings):
    MAX_CONCURRENCY: int = 0  # <= 0 picks a default from the CPU count


class NodeConfig(BaseSettings):
    NODE_CLUSTER_LABEL: str = "io.x-k8s.kind.cluster"
    CONTAINERD_CERTS_DIR: str = "/etc/containerd/certs.d"


class ChartConfig(BaseSettings):
    HELM_BINARY: str = "helm"
    CHART_TIMEOUT_SECONDS: int = 300
    CHART_REPO_RETRY_ATTEMPTS: int = 3
    CHART_REPO_RETRY_BASE_WAIT: float = 2.0
    CHART_REPO_RETRY_MAX_WAIT: float = 10.0


class Settings(
    StateConfig,
    RegistryConfigDefaults,
    ParallelConfig,
    NodeConfig,
    ChartConfig,
    BaseSettings,
):
    model_config = SettingsConfigDict(
        env_prefix="DEVCLUSTER_",
        env_file=(".env",),
        extra="allow",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """
        Define the priority order for settings sources.

        Priority (highest to lowest):
        1. Explicit keyword arguments
        2. Docker secrets from files (reads DEVCLUSTER_*_FILE env vars)
        3. Environment variables
        4. .env files
        5. Default values
        """
        return (
            init_settings,
            DockerSecretsSettingsSource(settings_cls, env_prefix="DEVCLUSTER_"),
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )


settings = Settings()

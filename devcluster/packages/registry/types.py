from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, model_validator

# Label keys for registry container metadata
LABEL_MANAGED_BY = "io.devcluster.managed-by"
LABEL_CLUSTER = "io.devcluster.cluster"
LABEL_REGISTRY_HOST = "io.devcluster.registry.host"
LABEL_REGISTRY_NAME = "io.devcluster.registry"
MANAGED_BY_VALUE = "devcluster"


class RegistryConfig(BaseModel):
    """Intended configuration of one registry container.

    An empty ``upstream_url`` means a standalone local registry, anything
    else turns the container into a pull-through cache for that upstream.
    """

    name: str
    port: int = 0
    upstream_url: str = ""
    cluster_name: str
    network_name: str = ""
    volume_name: str = ""
    host: str = ""
    username: str = ""  # may contain ${ENV_VAR} placeholders
    password: str = ""

    @model_validator(mode="after")
    def default_host(self):
        if not self.host:
            self.host = self.name
        return self

    @property
    def is_mirror(self) -> bool:
        return bool(self.upstream_url)

    @property
    def has_partial_credentials(self) -> bool:
        return bool(self.username) != bool(self.password)

    def labels(self) -> dict[str, str]:
        return {
            LABEL_MANAGED_BY: MANAGED_BY_VALUE,
            LABEL_CLUSTER: self.cluster_name,
            LABEL_REGISTRY_HOST: self.host,
            LABEL_REGISTRY_NAME: self.name,
        }


class RegistryState(str, Enum):
    ABSENT = "Absent"
    CREATED = "Created"
    NETWORK_ATTACHED = "NetworkAttached"
    WAITING_READY = "WaitingReady"
    READY = "Ready"
    FAILED = "Failed"


@dataclass
class RegistryInfo:
    """Runtime view of a registry container created from a RegistryConfig."""

    config: RegistryConfig
    container_id: str
    container_name: str
    host_port: Optional[int] = None
    state: RegistryState = RegistryState.CREATED
    reused: bool = False

    @classmethod
    def from_config(
        cls,
        config: RegistryConfig,
        container_id: str,
        host_port: Optional[int] = None,
        reused: bool = False,
    ) -> "RegistryInfo":
        return cls(
            config=config,
            container_id=container_id,
            container_name=config.name,
            host_port=host_port,
            reused=reused,
        )

    @property
    def host(self) -> str:
        return self.config.host

    @property
    def upstream(self) -> str:
        return self.config.upstream_url


@dataclass
class MirrorSpec:
    """Parsed ``[user:pass@]host[=upstream]`` entry."""

    host: str
    remote: str
    username: str = ""
    password: str = ""

    @property
    def has_credentials(self) -> bool:
        return bool(self.username or self.password)

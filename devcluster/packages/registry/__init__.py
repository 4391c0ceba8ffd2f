"""Registry containers for local clusters: local registry and pull-through mirrors."""

from .containerd import render_hosts_toml
from .errors import (
    HealthCheckCancelledError,
    NodeConfigurationError,
    PartialCredentialsError,
    RegistryAlreadyExistsError,
    RegistryError,
    RegistryNotFoundError,
    RegistryNotReadyError,
    RegistryPortNotFoundError,
    RegistryUnexpectedStatusError,
)
from .manager import RegistryManager
from .mirror_specs import (
    build_registry_configs,
    build_registry_name,
    generate_upstream_url,
    local_registry_config,
    merge_mirror_specs,
    parse_mirror_specs,
    sanitize_host_identifier,
)
from .orchestrator import MirrorOrchestrator
from .types import MirrorSpec, RegistryConfig, RegistryInfo, RegistryState

__all__ = [
    "HealthCheckCancelledError",
    "MirrorOrchestrator",
    "MirrorSpec",
    "NodeConfigurationError",
    "PartialCredentialsError",
    "RegistryAlreadyExistsError",
    "RegistryConfig",
    "RegistryError",
    "RegistryInfo",
    "RegistryManager",
    "RegistryNotFoundError",
    "RegistryNotReadyError",
    "RegistryPortNotFoundError",
    "RegistryState",
    "RegistryUnexpectedStatusError",
    "build_registry_configs",
    "build_registry_name",
    "generate_upstream_url",
    "local_registry_config",
    "merge_mirror_specs",
    "parse_mirror_specs",
    "render_hosts_toml",
    "sanitize_host_identifier",
]

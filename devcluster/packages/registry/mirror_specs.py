"""Parsing of mirror flags and derivation of registry container configs."""

from collections.abc import Iterable

from .types import MirrorSpec, RegistryConfig

DOCKER_HUB_HOST = "docker.io"
DOCKER_HUB_UPSTREAM = "https://registry-1.docker.io"
LOCAL_REGISTRY_NAME = "local-registry"


def generate_upstream_url(host: str) -> str:
    """Best-effort upstream URL for a registry host."""
    if host == DOCKER_HUB_HOST:
        return DOCKER_HUB_UPSTREAM
    if host.startswith(("http://", "https://")):
        return host
    return f"https://{host}"


def sanitize_host_identifier(host: str) -> str:
    """Docker-safe identifier for a registry host.

    Dots are kept so names like ``docker.io`` stay resolvable on the network.
    """
    return host.strip().replace("/", "-").replace(":", "-")


def normalize_volume_name(registry_name: str) -> str:
    """Strip distribution prefixes so volumes are shared across distributions."""
    trimmed = registry_name.strip()
    for prefix in ("kind-", "k3d-"):
        if trimmed.startswith(prefix) and len(trimmed) > len(prefix):
            return trimmed[len(prefix) :]
    return trimmed


def build_registry_name(prefix: str, host: str) -> str:
    sanitized = sanitize_host_identifier(host)
    trimmed_prefix = prefix.strip().rstrip("-")
    if not trimmed_prefix:
        return sanitized
    return f"{trimmed_prefix}-{sanitized}"


def _split_mirror_spec(raw: str) -> MirrorSpec | None:
    working = raw.strip()
    username = password = ""

    at_idx = working.find("@")
    if at_idx > 0:
        credentials, working = working[:at_idx], working[at_idx + 1 :]
        username, sep, password = credentials.partition(":")
        if not sep:
            password = ""

    host, sep, remote = working.partition("=")
    host = host.strip()
    if not host:
        return None

    if not sep:
        remote = generate_upstream_url(host)
    else:
        remote = remote.strip()
        if not remote:
            return None

    return MirrorSpec(
        host=host,
        remote=remote,
        username=username.strip(),
        password=password.strip(),
    )


def parse_mirror_specs(raw_specs: Iterable[str]) -> list[MirrorSpec]:
    """Parse ``[user:pass@]host[=upstream]`` entries.

    Entries without a host, or with a trailing ``=`` and no upstream, are
    dropped. A missing upstream is derived from the host.
    """
    parsed = []
    for raw in raw_specs:
        spec = _split_mirror_spec(raw)
        if spec is not None:
            parsed.append(spec)
    return parsed


def merge_mirror_specs(
    existing: Iterable[MirrorSpec], overrides: Iterable[MirrorSpec]
) -> list[MirrorSpec]:
    """Merge two spec lists; ``overrides`` win per host. Sorted by host."""
    by_host = {spec.host: spec for spec in existing}
    for spec in overrides:
        by_host[spec.host] = spec
    return [by_host[host] for host in sorted(by_host)]


def build_registry_configs(
    specs: Iterable[MirrorSpec],
    cluster_name: str,
    network_name: str = "",
) -> list[RegistryConfig]:
    """Registry configs for pull-through mirrors of ``specs``.

    Container names are prefixed with the cluster name to avoid DNS
    collisions between clusters sharing a network. Mirrors get no host port;
    nodes reach them over the cluster network.
    """
    configs = []
    seen_hosts: set[str] = set()
    for spec in specs:
        host = spec.host.strip()
        if not host or host in seen_hosts:
            continue
        seen_hosts.add(host)

        configs.append(
            RegistryConfig(
                name=build_registry_name(cluster_name, host),
                port=0,
                upstream_url=spec.remote or generate_upstream_url(host),
                cluster_name=cluster_name,
                network_name=network_name,
                volume_name=sanitize_host_identifier(host),
                host=host,
                username=spec.username,
                password=spec.password,
            )
        )
    return configs


def local_registry_config(
    cluster_name: str,
    port: int,
    network_name: str = "",
) -> RegistryConfig:
    """Config for the standalone registry images are pushed to from the host."""
    return RegistryConfig(
        name=build_registry_name(cluster_name, LOCAL_REGISTRY_NAME),
        port=port,
        cluster_name=cluster_name,
        network_name=network_name,
        volume_name=LOCAL_REGISTRY_NAME,
        host=f"localhost:{port}",
    )

"""Registry container lifecycle on the local container engine.

Registries are plain ``registry`` containers identified by labels, so a
second run of setup finds the containers of the first one and reuses them.
Standalone registries bind their API port on the loopback address; pull-through
mirrors are only reachable from the cluster network.
"""

import json
from collections.abc import Iterable, Sequence
from typing import Optional

import aiodocker
import httpx
import structlog

from devcluster.packages.parallel import (
    CancellationScope,
    ExecutionCancelledError,
    ParallelExecutor,
    Results,
)
from devcluster.settings import Settings
from devcluster.settings import settings as default_settings
from devcluster.utils.envvar import expand_env_vars

from .errors import (
    HealthCheckCancelledError,
    PartialCredentialsError,
    RegistryAlreadyExistsError,
    RegistryError,
    RegistryNotFoundError,
    RegistryNotReadyError,
    RegistryPortNotFoundError,
)
from .health import build_health_check_url, poll_until_ready
from .mirror_specs import normalize_volume_name
from .types import (
    LABEL_CLUSTER,
    LABEL_MANAGED_BY,
    LABEL_REGISTRY_HOST,
    LABEL_REGISTRY_NAME,
    MANAGED_BY_VALUE,
    RegistryConfig,
    RegistryInfo,
    RegistryState,
)

logger = structlog.stdlib.get_logger(__name__)


def _label_filters(**labels: str) -> str:
    selectors = [f"{LABEL_MANAGED_BY}={MANAGED_BY_VALUE}"]
    selectors.extend(f"{key}={value}" for key, value in labels.items())
    return json.dumps({"label": selectors})


def _proxy_credentials(config: RegistryConfig) -> tuple[str, str]:
    return expand_env_vars(config.username), expand_env_vars(config.password)


def _container_name(container) -> str:
    labels = container["Labels"] or {}
    if labels.get(LABEL_REGISTRY_NAME):
        return labels[LABEL_REGISTRY_NAME]
    names = container["Names"] or [container.id]
    return names[0].lstrip("/")


class RegistryManager:
    """Creates, attaches, health-checks and removes registry containers."""

    def __init__(
        self,
        docker: aiodocker.Docker,
        settings: Settings = default_settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        executor: Optional[ParallelExecutor] = None,
    ):
        self.docker = docker
        self.settings = settings
        self._transport = transport
        self.executor = executor or ParallelExecutor(settings.MAX_CONCURRENCY)

    @property
    def _port_key(self) -> str:
        return f"{self.settings.REGISTRY_CONTAINER_PORT}/tcp"

    async def ensure_network_exists(self, name: str, cidr: Optional[str] = None) -> None:
        """Create a bridge network unless one with this name already exists."""
        try:
            await self.docker.networks.get(name)
            logger.debug("Network already exists", network=name)
            return
        except aiodocker.exceptions.DockerError as e:
            if e.status != 404:
                raise RegistryError(f"failed to inspect network {name}: {e}") from e

        config: dict = {"Name": name, "Driver": "bridge", "CheckDuplicate": True}
        if cidr:
            config["IPAM"] = {"Config": [{"Subnet": cidr}]}

        try:
            await self.docker.networks.create(config)
        except aiodocker.exceptions.DockerError as e:
            raise RegistryError(f"failed to create network {name}: {e}") from e
        logger.info("Network created", network=name, cidr=cidr)

    async def setup_registries(
        self,
        configs: Sequence[RegistryConfig],
        scope: Optional[CancellationScope] = None,
    ) -> list[RegistryInfo]:
        """Ensure one running container per config.

        Existing containers are reused as is. When any config fails, the
        containers created by this call are removed before the error
        propagates.

        Raises:
            PartialCredentialsError: If a config has only a username or a password
            RegistryError: If a single registry could not be set up
            ParallelExecutionError: If one of several registries could not be set up
            ExecutionCancelledError: If ``scope`` is cancelled first
        """
        for config in configs:
            username, password = _proxy_credentials(config)
            if config.has_partial_credentials or bool(username) != bool(password):
                raise PartialCredentialsError(
                    f"registry {config.name}: username and password must be set together"
                )

        if not configs:
            return []

        results: Results[RegistryInfo] = Results()

        def make_task(config: RegistryConfig):
            async def task(task_scope: CancellationScope) -> None:
                results.add(await self._setup_registry(config, task_scope))

            return task

        try:
            await self.executor.execute(scope, *(make_task(c) for c in configs))
        except Exception:
            await self._rollback(results.values())
            raise

        by_name = {info.container_name: info for info in results.values()}
        return [by_name[c.name] for c in configs if c.name in by_name]

    async def _setup_registry(
        self, config: RegistryConfig, scope: CancellationScope
    ) -> RegistryInfo:
        if scope.cancelled:
            raise ExecutionCancelledError(f"registry setup cancelled: {config.name}")

        existing = await self._find_registry_container(config)
        if existing is not None:
            if existing["State"] != "running":
                try:
                    await existing.start()
                except aiodocker.exceptions.DockerError as e:
                    raise RegistryError(
                        f"failed to start registry {config.name}: {e}"
                    ) from e
            logger.info(
                "Registry already exists, reusing",
                registry=config.name,
                host=config.host,
                cluster=config.cluster_name,
            )
            return RegistryInfo.from_config(
                config,
                container_id=existing.id,
                host_port=self._published_port(existing["Ports"]),
                reused=True,
            )

        if scope.cancelled:
            raise ExecutionCancelledError(f"registry setup cancelled: {config.name}")

        try:
            await self._ensure_image()
            volume_name = config.volume_name or normalize_volume_name(config.name)
            await self._ensure_volume(volume_name)

            logger.info(
                "Creating registry container",
                registry=config.name,
                host=config.host,
                upstream=config.upstream_url or None,
                port=config.port or None,
            )
            container = await self.docker.containers.create(
                config=self._build_container_config(config, volume_name),
                name=config.name,
            )
        except aiodocker.exceptions.DockerError as e:
            if e.status == 409:
                raise RegistryAlreadyExistsError(
                    f"failed to create registry {config.name}: {e}"
                ) from e
            raise RegistryError(f"failed to create registry {config.name}: {e}") from e

        info = RegistryInfo.from_config(
            config,
            container_id=container.id,
            host_port=config.port if config.port > 0 else None,
        )
        try:
            await container.start()
        except aiodocker.exceptions.DockerError as e:
            await self._remove_container(info)
            raise RegistryError(f"failed to start registry {config.name}: {e}") from e

        logger.info("Registry container started", registry=config.name)
        return info

    async def _find_registry_container(self, config: RegistryConfig):
        try:
            containers = await self.docker.containers.list(
                all=True,
                filters=_label_filters(
                    **{
                        LABEL_CLUSTER: config.cluster_name,
                        LABEL_REGISTRY_HOST: config.host,
                    }
                ),
            )
        except aiodocker.exceptions.DockerError as e:
            raise RegistryError(f"failed to look up registry {config.name}: {e}") from e
        return containers[0] if containers else None

    async def _ensure_image(self) -> None:
        image = self.settings.REGISTRY_IMAGE
        try:
            await self.docker.images.inspect(image)
            return
        except aiodocker.exceptions.DockerError as e:
            if e.status != 404:
                raise

        logger.info("Pulling registry image", image=image)
        await self.docker.images.pull(image)

    async def _ensure_volume(self, name: str) -> None:
        try:
            await self.docker.volumes.get(name)
            return
        except aiodocker.exceptions.DockerError as e:
            if e.status != 404:
                raise

        await self.docker.volumes.create(
            {"Name": name, "Labels": {LABEL_MANAGED_BY: MANAGED_BY_VALUE}}
        )
        logger.debug("Registry volume created", volume=name)

    def _build_container_config(self, config: RegistryConfig, volume_name: str) -> dict:
        host_config: dict = {
            "RestartPolicy": {"Name": self.settings.REGISTRY_RESTART_POLICY},
            "Mounts": [
                {
                    "Type": "volume",
                    "Source": volume_name,
                    "Target": self.settings.REGISTRY_DATA_PATH,
                }
            ],
        }
        if config.port > 0:
            # Never bind on all interfaces
            host_config["PortBindings"] = {
                self._port_key: [
                    {
                        "HostIp": self.settings.REGISTRY_HOST_IP,
                        "HostPort": str(config.port),
                    }
                ]
            }

        env = []
        if config.is_mirror:
            env.append(f"REGISTRY_PROXY_REMOTEURL={config.upstream_url}")
            username, password = _proxy_credentials(config)
            if username and password:
                env.append(f"REGISTRY_PROXY_USERNAME={username}")
                env.append(f"REGISTRY_PROXY_PASSWORD={password}")

        return {
            "Image": self.settings.REGISTRY_IMAGE,
            "Env": env,
            "Labels": config.labels(),
            "ExposedPorts": {self._port_key: {}},
            "HostConfig": host_config,
        }

    def _published_port(self, ports: Optional[list]) -> Optional[int]:
        for port in ports or []:
            if port.get("PrivatePort") == self.settings.REGISTRY_CONTAINER_PORT and port.get(
                "PublicPort"
            ):
                return int(port["PublicPort"])
        return None

    async def _rollback(self, created: Iterable[RegistryInfo]) -> None:
        for info in created:
            if info.reused:
                continue
            logger.warning("Rolling back registry container", registry=info.container_name)
            await self._remove_container(info)

    async def _remove_container(self, info: RegistryInfo) -> None:
        try:
            container = await self.docker.containers.get(info.container_name)
            await container.delete(force=True)
        except aiodocker.exceptions.DockerError as e:
            if e.status != 404:
                logger.warning(
                    "Failed to remove registry container",
                    registry=info.container_name,
                    error=str(e),
                )

    async def connect_registries_to_network(
        self, registries: Iterable[RegistryInfo], network_name: str
    ) -> None:
        """Attach registries to the cluster network. Already attached ones are skipped."""
        if not network_name:
            return

        for info in registries:
            try:
                container = await self.docker.containers.get(info.container_name)
                data = await container.show()
                networks = data.get("NetworkSettings", {}).get("Networks") or {}
                if network_name in networks:
                    logger.debug(
                        "Registry already attached to network",
                        registry=info.container_name,
                        network=network_name,
                    )
                else:
                    network = await self.docker.networks.get(network_name)
                    await network.connect(
                        {
                            "Container": info.container_id or info.container_name,
                            "EndpointConfig": {"Aliases": [info.container_name]},
                        }
                    )
                    logger.info(
                        "Registry attached to network",
                        registry=info.container_name,
                        network=network_name,
                    )
            except aiodocker.exceptions.DockerError as e:
                info.state = RegistryState.FAILED
                raise RegistryError(
                    f"failed to connect registry {info.container_name} "
                    f"to network {network_name}: {e}"
                ) from e
            info.state = RegistryState.NETWORK_ATTACHED

    async def wait_for_registries_ready(
        self,
        registries: Iterable[RegistryInfo],
        scope: Optional[CancellationScope] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Wait until every registry answers on ``/v2/``.

        Registries without a host port are only required to be running.

        Raises:
            RegistryNotReadyError: On timeout, or if a container exited
            HealthCheckCancelledError: If ``scope`` is cancelled while waiting
        """
        if scope is None:
            scope = CancellationScope()
        if timeout is None:
            timeout = self.settings.REGISTRY_READY_TIMEOUT

        async with httpx.AsyncClient(transport=self._transport) as client:
            for info in registries:
                if scope.cancelled:
                    raise HealthCheckCancelledError(
                        f"registry health check cancelled: {info.container_name}"
                    )

                info.state = RegistryState.WAITING_READY
                try:
                    await self._wait_for_registry(info, client, scope, timeout)
                except RegistryError:
                    info.state = RegistryState.FAILED
                    raise
                info.state = RegistryState.READY

    async def _wait_for_registry(
        self,
        info: RegistryInfo,
        client: httpx.AsyncClient,
        scope: CancellationScope,
        timeout: float,
    ) -> None:
        name = info.container_name
        if not info.host_port:
            if not await self.is_registry_running(name):
                raise RegistryNotReadyError(f"registry {name} is not running")
            logger.debug("Registry has no host port, running is ready", registry=name)
            return

        async def is_running() -> bool:
            return await self.is_registry_running(name)

        await poll_until_ready(
            name,
            build_health_check_url(self.settings.REGISTRY_HOST_IP, info.host_port),
            client=client,
            is_running=is_running,
            timeout=timeout,
            poll_interval=self.settings.REGISTRY_READY_POLL_INTERVAL,
            request_timeout=self.settings.REGISTRY_HTTP_TIMEOUT,
            refused_threshold=self.settings.REGISTRY_CONNECTION_REFUSED_THRESHOLD,
            scope=scope,
        )

    async def is_registry_running(self, container_name: str) -> bool:
        try:
            container = await self.docker.containers.get(container_name)
        except aiodocker.exceptions.DockerError as e:
            if e.status == 404:
                return False
            raise
        data = await container.show()
        return bool(data.get("State", {}).get("Running"))

    async def get_registry_port(self, container_name: str) -> int:
        """Host port the registry API is published on.

        Raises:
            RegistryNotFoundError: If the container does not exist
            RegistryPortNotFoundError: If the API port is not published
        """
        try:
            container = await self.docker.containers.get(container_name)
        except aiodocker.exceptions.DockerError as e:
            if e.status == 404:
                raise RegistryNotFoundError(f"registry not found: {container_name}") from e
            raise

        data = await container.show()
        ports = data.get("NetworkSettings", {}).get("Ports") or {}
        for binding in ports.get(self._port_key) or []:
            if binding.get("HostPort"):
                return int(binding["HostPort"])
        raise RegistryPortNotFoundError(f"registry port not found: {container_name}")

    async def list_registries(self, cluster_name: Optional[str] = None) -> list[str]:
        """Names of managed registry containers, optionally for one cluster."""
        labels = {LABEL_CLUSTER: cluster_name} if cluster_name else {}
        containers = await self.docker.containers.list(
            all=True, filters=_label_filters(**labels)
        )
        return sorted(_container_name(c) for c in containers)

    async def delete_registries(
        self,
        cluster_name: str,
        network_name: Optional[str] = None,
        delete_volumes: bool = False,
    ) -> list[str]:
        """Remove every registry of ``cluster_name``.

        Best effort: each failure is logged and the remaining registries are
        still removed.

        Returns:
            Names of the removed registries
        """
        containers = await self.docker.containers.list(
            all=True, filters=_label_filters(**{LABEL_CLUSTER: cluster_name})
        )

        removed = []
        for container in containers:
            name = _container_name(container)
            try:
                data = await container.show()
            except aiodocker.exceptions.DockerError as e:
                if e.status == 404:
                    continue
                logger.warning("Failed to inspect registry", registry=name, error=str(e))
                continue

            if network_name:
                await self._disconnect(name, data, network_name)

            try:
                if data.get("State", {}).get("Running"):
                    await container.stop()
                await container.delete(force=True)
            except aiodocker.exceptions.DockerError as e:
                if e.status != 404:
                    logger.warning("Failed to remove registry", registry=name, error=str(e))
                    continue
            removed.append(name)
            logger.info("Registry removed", registry=name, cluster=cluster_name)

            if delete_volumes:
                await self._delete_volumes(name, data)

        return removed

    async def _disconnect(self, name: str, data: dict, network_name: str) -> bool:
        networks = data.get("NetworkSettings", {}).get("Networks") or {}
        if network_name not in networks:
            return False
        try:
            network = await self.docker.networks.get(network_name)
            await network.disconnect({"Container": data.get("Id", name), "Force": True})
        except aiodocker.exceptions.DockerError as e:
            if e.status != 404:
                logger.warning(
                    "Failed to disconnect registry from network",
                    registry=name,
                    network=network_name,
                    error=str(e),
                )
            return False
        return True

    async def _delete_volumes(self, name: str, data: dict) -> None:
        for mount in data.get("Mounts") or []:
            if mount.get("Type") != "volume" or not mount.get("Name"):
                continue
            if mount.get("Destination") != self.settings.REGISTRY_DATA_PATH:
                continue
            try:
                volume = await self.docker.volumes.get(mount["Name"])
                await volume.delete()
                logger.info("Registry volume removed", registry=name, volume=mount["Name"])
            except aiodocker.exceptions.DockerError as e:
                if e.status != 404:
                    # 409 when another cluster still mounts the shared cache
                    logger.warning(
                        "Failed to remove registry volume",
                        registry=name,
                        volume=mount["Name"],
                        error=str(e),
                    )

    async def disconnect_all_from_network(self, network_name: str) -> int:
        """Detach every managed registry from ``network_name``.

        Returns:
            Number of registries that were disconnected
        """
        containers = await self.docker.containers.list(all=True, filters=_label_filters())
        disconnected = 0
        for container in containers:
            name = _container_name(container)
            try:
                data = await container.show()
            except aiodocker.exceptions.DockerError as e:
                if e.status == 404:
                    continue
                raise
            if await self._disconnect(name, data, network_name):
                disconnected += 1
        if disconnected:
            logger.info(
                "Registries disconnected from network",
                network=network_name,
                count=disconnected,
            )
        return disconnected

"""Mirror registry bootstrap for a cluster.

Registries are created, attached to the cluster network and health-checked
before any node is told about them, so containerd never points at a
registry that cannot answer yet.
"""

import json
from collections.abc import Sequence
from typing import Optional, TextIO

import aiodocker
import structlog

from devcluster.packages.parallel import CancellationScope, ParallelExecutor, SyncWriter
from devcluster.settings import Settings
from devcluster.settings import settings as default_settings

from .containerd import write_hosts_toml
from .errors import NodeConfigurationError
from .manager import RegistryManager
from .types import RegistryConfig, RegistryInfo

logger = structlog.stdlib.get_logger(__name__)


class MirrorOrchestrator:
    def __init__(
        self,
        docker: aiodocker.Docker,
        settings: Settings = default_settings,
        manager: Optional[RegistryManager] = None,
        executor: Optional[ParallelExecutor] = None,
        writer: Optional[TextIO] = None,
    ):
        self.docker = docker
        self.settings = settings
        self.executor = executor or ParallelExecutor(settings.MAX_CONCURRENCY)
        self.manager = manager or RegistryManager(
            docker, settings=settings, executor=self.executor
        )
        self._writer = SyncWriter(writer) if writer is not None else None

    def _progress(self, message: str) -> None:
        if self._writer is not None:
            self._writer.write(f"{message}\n")

    async def setup_mirrors(
        self,
        configs: Sequence[RegistryConfig],
        network_name: str,
        network_cidr: Optional[str] = None,
        nodes: Optional[Sequence[str]] = None,
        scope: Optional[CancellationScope] = None,
    ) -> list[RegistryInfo]:
        """Create the registries in ``configs`` and point the cluster nodes at them.

        Order is fixed: network, registries, network attachment, readiness,
        node configuration.
        """
        if not configs:
            return []
        if scope is None:
            scope = CancellationScope()

        cluster_name = configs[0].cluster_name

        await self.manager.ensure_network_exists(network_name, network_cidr)

        self._progress(f"creating {len(configs)} registries for '{cluster_name}'")
        registries = await self.manager.setup_registries(configs, scope=scope)

        for info in registries:
            self._progress(f"connecting '{info.container_name}' to '{network_name}'")
        await self.manager.connect_registries_to_network(registries, network_name)

        self._progress("waiting for registries to become ready")
        await self.manager.wait_for_registries_ready(registries, scope=scope)

        await self.configure_nodes(cluster_name, registries, nodes=nodes, scope=scope)

        logger.info(
            "Mirror registries ready",
            cluster=cluster_name,
            network=network_name,
            registries=[info.container_name for info in registries],
        )
        return registries

    async def list_nodes(self, cluster_name: str) -> list[str]:
        """Names of the running node containers of ``cluster_name``."""
        containers = await self.docker.containers.list(
            filters=json.dumps(
                {"label": [f"{self.settings.NODE_CLUSTER_LABEL}={cluster_name}"]}
            )
        )
        names = []
        for container in containers:
            if container["State"] != "running":
                continue
            container_names = container["Names"] or [container.id]
            names.append(container_names[0].lstrip("/"))
        return sorted(names)

    async def configure_nodes(
        self,
        cluster_name: str,
        registries: Sequence[RegistryInfo],
        nodes: Optional[Sequence[str]] = None,
        scope: Optional[CancellationScope] = None,
    ) -> None:
        """Write a hosts.toml per registry into every node, nodes in parallel.

        Raises:
            NodeConfigurationError: If writing into a node failed
            ParallelExecutionError: Wrapping the first failure with several nodes
        """
        if not registries:
            return
        if nodes is None:
            nodes = await self.list_nodes(cluster_name)
        if not nodes:
            logger.info("No nodes to configure", cluster=cluster_name)
            return

        certs_dir = self.settings.CONTAINERD_CERTS_DIR
        container_port = self.settings.REGISTRY_CONTAINER_PORT

        def make_task(node_name: str):
            async def task(task_scope: CancellationScope) -> None:
                try:
                    node = await self.docker.containers.get(node_name)
                except aiodocker.exceptions.DockerError as e:
                    raise NodeConfigurationError(
                        f"failed to find node {node_name}: {e}"
                    ) from e

                for info in registries:
                    if task_scope.cancelled:
                        return
                    self._progress(f"configuring '{info.host}' on '{node_name}'")
                    try:
                        await write_hosts_toml(
                            node, node_name, info, certs_dir, container_port
                        )
                    except aiodocker.exceptions.DockerError as e:
                        raise NodeConfigurationError(
                            f"failed to configure {info.host} on node {node_name}: {e}"
                        ) from e

            return task

        await self.executor.execute(scope, *(make_task(node) for node in nodes))
        logger.info(
            "Nodes configured for registries",
            cluster=cluster_name,
            nodes=len(nodes),
            registries=len(registries),
        )

    async def teardown_mirrors(
        self,
        cluster_name: str,
        network_name: Optional[str] = None,
        delete_volumes: bool = False,
    ) -> list[str]:
        """Remove the registries of ``cluster_name``. Returns the removed names."""
        removed = await self.manager.delete_registries(
            cluster_name, network_name=network_name, delete_volumes=delete_volumes
        )
        for name in removed:
            self._progress(f"removed '{name}'")
        return removed

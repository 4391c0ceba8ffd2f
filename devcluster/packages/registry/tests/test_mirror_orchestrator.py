import io
from unittest.mock import AsyncMock, MagicMock

import pytest

from devcluster.packages.parallel import (
    CancellationScope,
    ExecutionCancelledError,
    ParallelExecutionError,
)
from devcluster.packages.registry import (
    MirrorOrchestrator,
    NodeConfigurationError,
    RegistryConfig,
    RegistryInfo,
    RegistryManager,
    RegistryState,
    build_registry_configs,
    parse_mirror_specs,
)
from devcluster.packages.registry.tests.registry_test_utils import FakeDocker
from devcluster.settings import Settings

KIND_LABEL = "io.x-k8s.kind.cluster"


@pytest.fixture
def fast_settings() -> Settings:
    return Settings(REGISTRY_READY_POLL_INTERVAL=0.01, MAX_CONCURRENCY=4)


@pytest.fixture
def docker() -> FakeDocker:
    docker = FakeDocker()
    docker.containers.add("dev-control-plane", labels={KIND_LABEL: "dev"})
    docker.containers.add("dev-worker", labels={KIND_LABEL: "dev"})
    docker.containers.add("other-control-plane", labels={KIND_LABEL: "other"})
    return docker


def _configs() -> list[RegistryConfig]:
    return build_registry_configs(
        parse_mirror_specs(["docker.io", "ghcr.io=https://ghcr.io"]), "dev"
    )


def _hosts_toml_writes(container) -> dict[str, str]:
    writes = {}
    for cmd in container.execs:
        assert cmd[:2] == ["sh", "-c"]
        header, _, rest = cmd[2].partition("\n")
        directory = header.split()[2]
        writes[directory] = rest.rsplit("\n", 1)[0]
    return writes


class TestSetupMirrors:
    async def test_configures_every_cluster_node(
        self, docker: FakeDocker, fast_settings: Settings
    ):
        writer = io.StringIO()
        orchestrator = MirrorOrchestrator(docker, settings=fast_settings, writer=writer)

        registries = await orchestrator.setup_mirrors(_configs(), "kind")

        assert [info.container_name for info in registries] == [
            "dev-docker.io",
            "dev-ghcr.io",
        ]
        assert all(info.state == RegistryState.READY for info in registries)

        for node_name in ("dev-control-plane", "dev-worker"):
            node = await docker.containers.get(node_name)
            writes = _hosts_toml_writes(node)
            assert writes["/etc/containerd/certs.d/docker.io"] == (
                'server = "https://registry-1.docker.io"\n'
                "\n"
                '[host."http://dev-docker.io:5000"]\n'
                '  capabilities = ["pull", "resolve"]\n'
            )
            assert "/etc/containerd/certs.d/ghcr.io" in writes

        assert (await docker.containers.get("other-control-plane")).execs == []

        output = writer.getvalue()
        assert "connecting 'dev-docker.io' to 'kind'" in output
        assert "configuring 'ghcr.io' on 'dev-worker'" in output

    async def test_nodes_configured_only_after_registries_are_ready(
        self, docker: FakeDocker, fast_settings: Settings
    ):
        events: list[str] = []
        info = RegistryInfo.from_config(_configs()[0], container_id="abc")

        manager = MagicMock(spec=RegistryManager)
        manager.ensure_network_exists = AsyncMock(
            side_effect=lambda *a, **kw: events.append("network")
        )

        async def setup(*args, **kwargs):
            events.append("setup")
            return [info]

        manager.setup_registries = AsyncMock(side_effect=setup)
        manager.connect_registries_to_network = AsyncMock(
            side_effect=lambda *a, **kw: events.append("connect")
        )
        manager.wait_for_registries_ready = AsyncMock(
            side_effect=lambda *a, **kw: events.append("ready")
        )

        orchestrator = MirrorOrchestrator(docker, settings=fast_settings, manager=manager)
        real_configure = orchestrator.configure_nodes

        async def configure(*args, **kwargs):
            events.append("nodes")
            await real_configure(*args, **kwargs)

        orchestrator.configure_nodes = configure

        await orchestrator.setup_mirrors(_configs(), "kind", network_cidr="172.30.0.0/16")

        assert events == ["network", "setup", "connect", "ready", "nodes"]
        manager.ensure_network_exists.assert_awaited_once_with("kind", "172.30.0.0/16")

    async def test_readiness_failure_skips_node_configuration(
        self, docker: FakeDocker, fast_settings: Settings
    ):
        manager = MagicMock(spec=RegistryManager)
        manager.ensure_network_exists = AsyncMock()
        manager.setup_registries = AsyncMock(return_value=[])
        manager.connect_registries_to_network = AsyncMock()
        manager.wait_for_registries_ready = AsyncMock(side_effect=RuntimeError("boom"))

        orchestrator = MirrorOrchestrator(docker, settings=fast_settings, manager=manager)

        with pytest.raises(RuntimeError):
            await orchestrator.setup_mirrors(_configs(), "kind")

        assert (await docker.containers.get("dev-worker")).execs == []

    async def test_cancelled_before_setup_configures_nothing(
        self, docker: FakeDocker, fast_settings: Settings
    ):
        orchestrator = MirrorOrchestrator(docker, settings=fast_settings)
        scope = CancellationScope()
        scope.cancel()

        with pytest.raises(ExecutionCancelledError):
            await orchestrator.setup_mirrors(_configs()[:1], "kind", scope=scope)

        assert "create" not in docker.call_names()
        for node_name in ("dev-control-plane", "dev-worker"):
            assert (await docker.containers.get(node_name)).execs == []

    async def test_no_configs(self, docker: FakeDocker, fast_settings: Settings):
        orchestrator = MirrorOrchestrator(docker, settings=fast_settings)
        assert await orchestrator.setup_mirrors([], "kind") == []
        assert docker.calls == []

    async def test_rerun_writes_identical_files(
        self, docker: FakeDocker, fast_settings: Settings
    ):
        orchestrator = MirrorOrchestrator(docker, settings=fast_settings)

        await orchestrator.setup_mirrors(_configs(), "kind")
        node = await docker.containers.get("dev-worker")
        first = _hosts_toml_writes(node)
        node.execs.clear()

        await orchestrator.setup_mirrors(_configs(), "kind")

        assert _hosts_toml_writes(node) == first
        assert len(docker.containers.items) == 5


class TestConfigureNodes:
    async def test_explicit_node_list(self, docker: FakeDocker, fast_settings: Settings):
        orchestrator = MirrorOrchestrator(docker, settings=fast_settings)
        info = RegistryInfo.from_config(_configs()[0], container_id="abc")

        await orchestrator.configure_nodes("dev", [info], nodes=["dev-worker"])

        assert len((await docker.containers.get("dev-worker")).execs) == 1
        assert (await docker.containers.get("dev-control-plane")).execs == []

    async def test_stopped_nodes_are_skipped(
        self, docker: FakeDocker, fast_settings: Settings
    ):
        (await docker.containers.get("dev-worker")).running = False
        orchestrator = MirrorOrchestrator(docker, settings=fast_settings)

        assert await orchestrator.list_nodes("dev") == ["dev-control-plane"]

    async def test_single_node_failure(self, docker: FakeDocker, fast_settings: Settings):
        node = await docker.containers.get("dev-worker")
        node.exec_exit_code = 1
        node.exec_stderr = b"read-only file system"
        orchestrator = MirrorOrchestrator(docker, settings=fast_settings)
        info = RegistryInfo.from_config(_configs()[0], container_id="abc")

        with pytest.raises(NodeConfigurationError, match="read-only file system"):
            await orchestrator.configure_nodes("dev", [info], nodes=["dev-worker"])

    async def test_failure_on_one_of_many_nodes(
        self, docker: FakeDocker, fast_settings: Settings
    ):
        (await docker.containers.get("dev-worker")).exec_exit_code = 2
        orchestrator = MirrorOrchestrator(docker, settings=fast_settings)
        info = RegistryInfo.from_config(_configs()[0], container_id="abc")

        with pytest.raises(ParallelExecutionError) as exc_info:
            await orchestrator.configure_nodes("dev", [info])

        assert isinstance(exc_info.value.cause, NodeConfigurationError)

    async def test_missing_node(self, docker: FakeDocker, fast_settings: Settings):
        orchestrator = MirrorOrchestrator(docker, settings=fast_settings)
        info = RegistryInfo.from_config(_configs()[0], container_id="abc")

        with pytest.raises(NodeConfigurationError, match="failed to find node"):
            await orchestrator.configure_nodes("dev", [info], nodes=["gone"])


class TestTeardown:
    async def test_teardown_mirrors(self, docker: FakeDocker, fast_settings: Settings):
        writer = io.StringIO()
        orchestrator = MirrorOrchestrator(docker, settings=fast_settings, writer=writer)
        await orchestrator.setup_mirrors(_configs(), "kind")

        removed = await orchestrator.teardown_mirrors("dev", network_name="kind")

        assert sorted(removed) == ["dev-docker.io", "dev-ghcr.io"]
        assert "removed 'dev-docker.io'" in writer.getvalue()
        assert await orchestrator.manager.list_registries("dev") == []

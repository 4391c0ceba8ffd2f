import stat

import pytest

from devcluster.packages.state import (
    ClusterSpec,
    ClusterStateError,
    ClusterStateNotFoundError,
    ClusterStateStore,
    InvalidClusterNameError,
)
from devcluster.packages.state.types import (
    CNI,
    Distribution,
    GitOpsEngine,
    LocalRegistry,
    Toggle,
)
from devcluster.settings import Settings


@pytest.fixture
def store(tmp_path) -> ClusterStateStore:
    return ClusterStateStore(root=tmp_path)


def _spec() -> ClusterSpec:
    return ClusterSpec(
        distribution=Distribution.K3S,
        cni=CNI.CILIUM,
        cert_manager=Toggle.ENABLED,
        gitops_engine=GitOpsEngine.FLUX,
        local_registry=LocalRegistry(enabled=True, host_port=5001),
        mirrors=["docker.io=https://registry-1.docker.io", "ghcr.io=https://ghcr.io"],
    )


class TestClusterStateStore:
    def test_save_then_load_round_trips(self, store: ClusterStateStore, tmp_path):
        spec = _spec()

        path = store.save_cluster_spec("dev", spec)

        assert path == tmp_path / "clusters" / "dev" / "spec.json"
        assert store.load_cluster_spec("dev") == spec

    def test_permissions(self, store: ClusterStateStore):
        path = store.save_cluster_spec("dev", _spec())

        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert stat.S_IMODE(path.parent.stat().st_mode) == 0o700

    def test_save_overwrites(self, store: ClusterStateStore):
        store.save_cluster_spec("dev", _spec())
        store.save_cluster_spec("dev", ClusterSpec())

        assert store.load_cluster_spec("dev") == ClusterSpec()

    def test_load_missing(self, store: ClusterStateStore):
        with pytest.raises(ClusterStateNotFoundError):
            store.load_cluster_spec("never-saved")

    def test_load_corrupt_file(self, store: ClusterStateStore):
        path = store.save_cluster_spec("dev", _spec())
        path.write_text("{not json")

        with pytest.raises(ClusterStateError, match="failed to parse"):
            store.load_cluster_spec("dev")

    def test_delete(self, store: ClusterStateStore):
        path = store.save_cluster_spec("dev", _spec())

        store.delete_cluster_state("dev")

        assert not path.parent.exists()
        with pytest.raises(ClusterStateNotFoundError):
            store.load_cluster_spec("dev")

    def test_delete_missing_is_noop(self, store: ClusterStateStore):
        store.delete_cluster_state("never-saved")

    @pytest.mark.parametrize(
        "name", ["a/b", "a\\b", ".", "..", "../etc", "x..y", "a\0b", ""]
    )
    def test_invalid_names_rejected(self, store: ClusterStateStore, tmp_path, name: str):
        with pytest.raises(InvalidClusterNameError):
            store.save_cluster_spec(name, _spec())
        with pytest.raises(InvalidClusterNameError):
            store.load_cluster_spec(name)
        with pytest.raises(InvalidClusterNameError):
            store.delete_cluster_state(name)
        assert not (tmp_path / "clusters").exists()

    def test_dot_name_leaves_other_clusters_alone(self, store: ClusterStateStore):
        path = store.save_cluster_spec("dev", _spec())

        with pytest.raises(InvalidClusterNameError):
            store.delete_cluster_state(".")

        assert path.exists()

    def test_root_from_settings(self, tmp_path):
        store = ClusterStateStore(settings=Settings(STATE_ROOT=tmp_path / "state"))

        path = store.save_cluster_spec("dev", ClusterSpec())

        assert path == tmp_path / "state" / "clusters" / "dev" / "spec.json"

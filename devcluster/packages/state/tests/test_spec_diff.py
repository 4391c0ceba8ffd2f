from devcluster.packages.state import ClusterSpec, diff_cluster_specs
from devcluster.packages.state.types import CNI, Distribution, LocalRegistry, Provider


def test_identical_specs_have_no_changes():
    diff = diff_cluster_specs(ClusterSpec(), ClusterSpec())

    assert not diff.has_changes
    assert diff.in_place == []
    assert diff.recreate_required == []


def test_distribution_and_provider_require_recreate():
    old = ClusterSpec()
    new = ClusterSpec(distribution=Distribution.TALOS, provider=Provider.HETZNER)

    diff = diff_cluster_specs(old, new)

    assert [change.field for change in diff.recreate_required] == [
        "distribution",
        "provider",
    ]
    assert diff.in_place == []
    assert diff.recreate_required[0].old_value == "Vanilla"
    assert diff.recreate_required[0].new_value == "Talos"


def test_other_changes_are_in_place():
    old = ClusterSpec()
    new = ClusterSpec(
        cni=CNI.CALICO,
        local_registry=LocalRegistry(enabled=True),
        mirrors=["docker.io=https://registry-1.docker.io"],
    )

    diff = diff_cluster_specs(old, new)

    assert diff.recreate_required == []
    assert [change.field for change in diff.in_place] == [
        "cni",
        "local_registry.enabled",
        "mirrors",
    ]

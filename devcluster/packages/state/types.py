from enum import Enum

from pydantic import BaseModel, Field


class Distribution(str, Enum):
    VANILLA = "Vanilla"
    K3S = "K3s"
    TALOS = "Talos"
    VCLUSTER = "VCluster"


class Provider(str, Enum):
    DOCKER = "Docker"
    HETZNER = "Hetzner"


class CNI(str, Enum):
    DEFAULT = "Default"
    CILIUM = "Cilium"
    CALICO = "Calico"


class CSI(str, Enum):
    DEFAULT = "Default"
    ENABLED = "Enabled"
    DISABLED = "Disabled"


class Toggle(str, Enum):
    DEFAULT = "Default"
    ENABLED = "Enabled"
    DISABLED = "Disabled"


class PolicyEngine(str, Enum):
    NONE = "None"
    KYVERNO = "Kyverno"
    GATEKEEPER = "Gatekeeper"


class GitOpsEngine(str, Enum):
    NONE = "None"
    FLUX = "Flux"
    ARGOCD = "ArgoCD"


class Connection(BaseModel):
    kubeconfig: str = "~/.kube/config"
    context: str = ""
    timeout_seconds: int = 300


class LocalRegistry(BaseModel):
    enabled: bool = False
    host_port: int = 5050


class ClusterSpec(BaseModel):
    """Configuration a cluster was created with."""

    distribution: Distribution = Distribution.VANILLA
    provider: Provider = Provider.DOCKER
    cni: CNI = CNI.DEFAULT
    csi: CSI = CSI.DEFAULT
    metrics_server: Toggle = Toggle.DEFAULT
    load_balancer: Toggle = Toggle.DEFAULT
    cert_manager: Toggle = Toggle.DISABLED
    policy_engine: PolicyEngine = PolicyEngine.NONE
    gitops_engine: GitOpsEngine = GitOpsEngine.NONE
    local_registry: LocalRegistry = Field(default_factory=LocalRegistry)
    mirrors: list[str] = Field(default_factory=list)
    """Mirror specifications in ``host=upstream`` form"""
    connection: Connection = Field(default_factory=Connection)

"""containerd registry host configuration for cluster nodes.

Each registry host gets ``<certs-dir>/<host>/hosts.toml`` inside every node,
pointing containerd at the registry container on the cluster network.
"""

import secrets
import shlex

import structlog

from .errors import NodeConfigurationError
from .types import RegistryInfo

logger = structlog.stdlib.get_logger(__name__)

HOSTS_TOML_NAME = "hosts.toml"


def render_hosts_toml(info: RegistryInfo, container_port: int = 5000) -> str:
    """Render the hosts.toml for one registry. Pure, so reruns write identical files."""
    server = info.upstream or f"http://{info.host}"
    endpoint = f"http://{info.container_name}:{container_port}"
    return (
        f'server = "{server}"\n'
        "\n"
        f'[host."{endpoint}"]\n'
        '  capabilities = ["pull", "resolve"]\n'
    )


def build_write_command(certs_dir: str, host: str, content: str) -> list[str]:
    """Shell command that writes ``content`` to ``<certs_dir>/<host>/hosts.toml``.

    The heredoc delimiter is random so file content can never terminate it early.
    """
    directory = shlex.quote(f"{certs_dir.rstrip('/')}/{host}")
    delimiter = f"EOF_{secrets.token_hex(8)}"
    script = (
        f"mkdir -p {directory} && cat > {directory}/{HOSTS_TOML_NAME} << '{delimiter}'\n"
        f"{content}\n"
        f"{delimiter}"
    )
    return ["sh", "-c", script]


async def exec_in_container(container, cmd: list[str]) -> tuple[int, str]:
    """Run ``cmd`` in a running container.

    Returns:
        Exit code and captured stderr
    """
    exec_ = await container.exec(cmd=cmd, stdout=True, stderr=True)
    stderr = []
    async with exec_.start(detach=False) as stream:
        while True:
            message = await stream.read_out()
            if message is None:
                break
            if message.stream == 2:
                stderr.append(message.data.decode(errors="replace"))
    inspect = await exec_.inspect()
    return inspect.get("ExitCode") or 0, "".join(stderr)


async def write_hosts_toml(
    node,
    node_name: str,
    info: RegistryInfo,
    certs_dir: str,
    container_port: int = 5000,
) -> None:
    """Write the hosts.toml for ``info`` into ``node``.

    Raises:
        NodeConfigurationError: If the command exits non-zero
    """
    content = render_hosts_toml(info, container_port)
    cmd = build_write_command(certs_dir, info.host, content)
    exit_code, stderr = await exec_in_container(node, cmd)
    if exit_code != 0:
        raise NodeConfigurationError(
            f"failed to write {HOSTS_TOML_NAME} for {info.host} on node {node_name}: "
            f"exit code {exit_code}: {stderr.strip()}"
        )
    logger.debug("Registry host configured on node", node=node_name, host=info.host)

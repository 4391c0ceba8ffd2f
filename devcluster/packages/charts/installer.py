"""Helm chart installation for cluster components.

Every component (CNI, CSI, policy engine, GitOps engine, ...) is installed
the same way, so one installer parameterized by a :class:`ChartSpec` covers
them all. Helm runs as a subprocess.
"""

import asyncio
import json
import re
import tempfile
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from devcluster.packages.netretry import retry_async
from devcluster.packages.parallel import CancellationScope
from devcluster.settings import Settings
from devcluster.settings import settings as default_settings

logger = structlog.stdlib.get_logger(__name__)

_IMAGE_PATTERN = re.compile(
    r"""^\s*-?\s*image:\s*["']?([^"'\s#]+)["']?\s*(?:#.*)?$""", re.MULTILINE
)


class ChartInstallError(Exception):
    pass


class ChartSpec(BaseModel):
    release_name: str
    chart_name: str
    namespace: str
    repo_name: str = ""
    repo_url: str = ""
    version: str = ""
    values: dict[str, Any] = Field(default_factory=dict)
    create_namespace: bool = True
    timeout: Optional[int] = None  # seconds, falls back to CHART_TIMEOUT_SECONDS

    @property
    def chart_ref(self) -> str:
        if self.repo_name and "/" not in self.chart_name:
            return f"{self.repo_name}/{self.chart_name}"
        return self.chart_name


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


CommandRunner = Callable[[Sequence[str]], Awaitable[CommandResult]]


async def run_command(args: Sequence[str]) -> CommandResult:
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await process.communicate()
    return CommandResult(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


class ChartInstaller:
    def __init__(
        self,
        spec: ChartSpec,
        kubeconfig: str = "",
        context: str = "",
        settings: Settings = default_settings,
        runner: Optional[CommandRunner] = None,
    ):
        self.spec = spec
        self.kubeconfig = kubeconfig
        self.context = context
        self.settings = settings
        self._runner = runner or run_command

    @property
    def timeout_seconds(self) -> int:
        return self.spec.timeout or self.settings.CHART_TIMEOUT_SECONDS

    def _cluster_args(self) -> list[str]:
        args = []
        if self.kubeconfig:
            args += ["--kubeconfig", self.kubeconfig]
        if self.context:
            args += ["--kube-context", self.context]
        return args

    async def _helm(self, *args: str) -> CommandResult:
        cmd = [self.settings.HELM_BINARY, *args]
        result = await self._runner(cmd)
        if result.returncode != 0:
            raise ChartInstallError(
                f"helm {args[0]} failed for {self.spec.release_name}: {result.stderr.strip()}"
            )
        return result

    async def _add_repository(self, scope: Optional[CancellationScope]) -> None:
        if not self.spec.repo_name or not self.spec.repo_url:
            return

        async def add() -> None:
            await self._helm(
                "repo", "add", self.spec.repo_name, self.spec.repo_url, "--force-update"
            )

        async def update() -> None:
            await self._helm("repo", "update", self.spec.repo_name)

        for operation, description in (
            (add, f"add chart repository {self.spec.repo_name}"),
            (update, f"update chart repository {self.spec.repo_name}"),
        ):
            await retry_async(
                operation,
                attempts=self.settings.CHART_REPO_RETRY_ATTEMPTS,
                base=self.settings.CHART_REPO_RETRY_BASE_WAIT,
                maximum=self.settings.CHART_REPO_RETRY_MAX_WAIT,
                scope=scope,
                description=description,
            )

    def _release_args(self, values_file: Optional[Path]) -> list[str]:
        args = [self.spec.release_name, self.spec.chart_ref, "--namespace", self.spec.namespace]
        if self.spec.version:
            args += ["--version", self.spec.version]
        if values_file is not None:
            args += ["--values", str(values_file)]
        return args

    def _write_values(self, directory: str) -> Optional[Path]:
        if not self.spec.values:
            return None
        # JSON is valid YAML
        path = Path(directory) / "values.json"
        path.write_text(json.dumps(self.spec.values))
        return path

    async def install(self, scope: Optional[CancellationScope] = None) -> None:
        """Install or upgrade the release, waiting for its resources.

        Raises:
            ChartInstallError: If helm failed
        """
        await self._add_repository(scope)

        with tempfile.TemporaryDirectory(prefix="devcluster-chart-") as tmp:
            args = ["upgrade", "--install", *self._release_args(self._write_values(tmp))]
            if self.spec.create_namespace:
                args.append("--create-namespace")
            args += ["--wait", "--atomic", "--timeout", f"{self.timeout_seconds}s"]
            args += self._cluster_args()

            logger.info(
                "Installing chart",
                release=self.spec.release_name,
                chart=self.spec.chart_ref,
                namespace=self.spec.namespace,
                version=self.spec.version or None,
            )
            await self._helm(*args)

        logger.info("Chart installed", release=self.spec.release_name)

    async def uninstall(self) -> bool:
        """Remove the release.

        Returns:
            False if the release did not exist
        """
        args = ["uninstall", self.spec.release_name, "--namespace", self.spec.namespace]
        result = await self._runner(
            [self.settings.HELM_BINARY, *args, *self._cluster_args()]
        )
        if result.returncode != 0:
            if "not found" in result.stderr.lower():
                logger.debug("Release not installed", release=self.spec.release_name)
                return False
            raise ChartInstallError(
                f"helm uninstall failed for {self.spec.release_name}: {result.stderr.strip()}"
            )
        logger.info("Chart uninstalled", release=self.spec.release_name)
        return True

    async def images(self, scope: Optional[CancellationScope] = None) -> list[str]:
        """Container images referenced by the rendered chart, sorted and unique."""
        await self._add_repository(scope)

        with tempfile.TemporaryDirectory(prefix="devcluster-chart-") as tmp:
            result = await self._helm(
                "template", *self._release_args(self._write_values(tmp))
            )

        return sorted(set(_IMAGE_PATTERN.findall(result.stdout)))

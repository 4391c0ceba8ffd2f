"""Persistence of the configuration a cluster was created with.

Snapshots live at ``<state-root>/clusters/<name>/spec.json`` so update flows
can diff against what was actually provisioned instead of static defaults.
"""

import os
import shutil
from pathlib import Path
from typing import Optional

import structlog
from pydantic import ValidationError

from devcluster.settings import Settings
from devcluster.settings import settings as default_settings

from .types import ClusterSpec

logger = structlog.stdlib.get_logger(__name__)

SPEC_FILE_NAME = "spec.json"
DIR_PERMISSIONS = 0o700
FILE_PERMISSIONS = 0o600


class ClusterStateError(Exception):
    pass


class ClusterStateNotFoundError(ClusterStateError):
    pass


class InvalidClusterNameError(ClusterStateError, ValueError):
    pass


def validate_cluster_name(cluster_name: str) -> None:
    if (
        cluster_name in ("", ".")
        or "/" in cluster_name
        or "\\" in cluster_name
        or "\0" in cluster_name
        or ".." in cluster_name
    ):
        raise InvalidClusterNameError(
            f"invalid cluster name {cluster_name!r}: "
            "must not be empty or '.' or contain path separators or '..'"
        )


class ClusterStateStore:
    def __init__(
        self,
        root: Optional[Path] = None,
        settings: Settings = default_settings,
    ):
        self.clusters_dir = (
            Path(root) / "clusters" if root is not None else settings.CLUSTERS_DIR
        )

    def _cluster_dir(self, cluster_name: str) -> Path:
        validate_cluster_name(cluster_name)
        return self.clusters_dir / cluster_name

    def spec_path(self, cluster_name: str) -> Path:
        return self._cluster_dir(cluster_name) / SPEC_FILE_NAME

    def save_cluster_spec(self, cluster_name: str, spec: ClusterSpec) -> Path:
        """Persist ``spec``, replacing any earlier snapshot for the cluster.

        Returns:
            Path of the written spec file
        """
        cluster_dir = self._cluster_dir(cluster_name)
        try:
            cluster_dir.mkdir(mode=DIR_PERMISSIONS, parents=True, exist_ok=True)
            # mkdir honours the umask, enforce owner-only explicitly
            os.chmod(cluster_dir, DIR_PERMISSIONS)
        except OSError as e:
            raise ClusterStateError(
                f"failed to create state directory {cluster_dir}: {e}"
            ) from e

        data = spec.model_dump_json(indent=2)
        spec_path = cluster_dir / SPEC_FILE_NAME

        try:
            fd = os.open(
                spec_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_PERMISSIONS
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
            os.chmod(spec_path, FILE_PERMISSIONS)
        except OSError as e:
            raise ClusterStateError(f"failed to write cluster state: {e}") from e

        logger.info("Saved cluster state", cluster=cluster_name, path=str(spec_path))
        return spec_path

    def load_cluster_spec(self, cluster_name: str) -> ClusterSpec:
        """Load the snapshot saved at creation time.

        Raises:
            ClusterStateNotFoundError: If nothing was saved for this cluster
        """
        spec_path = self.spec_path(cluster_name)

        try:
            data = spec_path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise ClusterStateNotFoundError(
                f"cluster state not found: {cluster_name}"
            ) from e
        except OSError as e:
            raise ClusterStateError(f"failed to read cluster state: {e}") from e

        try:
            return ClusterSpec.model_validate_json(data)
        except ValidationError as e:
            raise ClusterStateError(
                f"failed to parse cluster state for {cluster_name}: {e}"
            ) from e

    def delete_cluster_state(self, cluster_name: str) -> None:
        cluster_dir = self._cluster_dir(cluster_name)
        if not cluster_dir.exists():
            logger.debug("No cluster state to delete", cluster=cluster_name)
            return

        try:
            shutil.rmtree(cluster_dir)
        except FileNotFoundError:
            return
        except OSError as e:
            raise ClusterStateError(
                f"failed to remove cluster state directory: {e}"
            ) from e

        logger.info("Deleted cluster state", cluster=cluster_name)

from .installer import (
    ChartInstaller,
    ChartInstallError,
    ChartSpec,
    CommandResult,
    run_command,
)

__all__ = [
    "ChartInstallError",
    "ChartInstaller",
    "ChartSpec",
    "CommandResult",
    "run_command",
]

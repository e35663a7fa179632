"""ssh / scp against the active instance.

The system ``ssh`` and ``scp`` clients do the actual work; this module only
builds their command lines from a :class:`ConnectionInfo` and runs them with
the terminal attached.
"""

from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from remote.base.exceptions import TransportError
from remote.base.models import InstanceConfig

DEFAULT_SSH_USER = "ec2-user"

# ssh reserves 255 for its own failures; anything else is the remote command's status.
_SSH_ERROR = 255


def validate_port(port: int) -> int:
    """Raise :class:`TransportError` unless *port* is in 1-65535."""
    if not isinstance(port, int) or isinstance(port, bool) or not 1 <= port <= 65535:
        raise TransportError(f"Port must be between 1-65535, got {port}")
    return port


def resolve_key_path(key_path: str | None) -> Path | None:
    """Expand `~` in *key_path* and make sure the file exists."""
    if not key_path:
        return None
    path = Path(key_path).expanduser()
    if not path.exists():
        raise TransportError(f"Could not find key file: {key_path}")
    return path


@dataclass(frozen=True)
class ConnectionInfo:
    user: str
    address: str
    key_path: Path | None = None

    @classmethod
    def for_instance(cls, config: InstanceConfig, address: str) -> ConnectionInfo:
        return cls(
            user=config.ssh_user or DEFAULT_SSH_USER,
            address=address,
            key_path=resolve_key_path(config.key_path),
        )

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.address}"

    def identity_args(self) -> list[str]:
        return ["-i", str(self.key_path)] if self.key_path else []


def ssh_command(info: ConnectionInfo, ports: Sequence[int] = ()) -> list[str]:
    """``ssh`` argv with one ``-L p:localhost:p`` forward per port."""
    argv = ["ssh", *info.identity_args()]
    for port in ports:
        validate_port(port)
        argv += ["-L", f"{port}:localhost:{port}"]
    argv.append(info.destination)
    return argv


def scp_command(
    info: ConnectionInfo,
    local_path: str,
    remote_path: str,
    *,
    upload: bool,
    recursive: bool = False,
) -> list[str]:
    """``scp`` argv copying between *local_path* and *remote_path* on the instance."""
    remote = f"{info.destination}:{remote_path}"
    argv = ["scp"]
    if recursive:
        argv.append("-r")
    argv += info.identity_args()
    argv += [local_path, remote] if upload else [remote, local_path]
    return argv


def _run(argv: list[str]) -> int:
    try:
        return subprocess.run(argv, check=False).returncode
    except FileNotFoundError as exc:
        raise TransportError(f"'{argv[0]}' is not installed or not on PATH") from exc


def open_shell(info: ConnectionInfo, ports: Sequence[int] = ()) -> int:
    """Run an interactive ssh session; returns the remote shell's exit status.

    Raises:
        TransportError: If ssh itself failed to connect.
    """
    code = _run(ssh_command(info, ports))
    if code == _SSH_ERROR:
        raise TransportError(f"ssh to {info.destination} failed")
    return code


def copy(
    info: ConnectionInfo,
    local_path: str,
    remote_path: str,
    *,
    upload: bool,
    recursive: bool = False,
) -> None:
    """Upload or download with scp.

    Raises:
        TransportError: If scp exits non-zero.
    """
    argv = scp_command(info, local_path, remote_path, upload=upload, recursive=recursive)
    code = _run(argv)
    if code != 0:
        direction = "upload to" if upload else "download from"
        raise TransportError(f"scp {direction} {info.destination} failed with exit code {code}")

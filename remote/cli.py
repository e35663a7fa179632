"""remote CLI: manage cloud development instances from the command line.

Usage examples::

    remote new --cloud aws --profile default --instance-id i-0abc --alias dev --active
    remote start
    remote ssh -p 8888 -p 6006
    remote resize t3.large
    remote ls aws default
"""

from __future__ import annotations

import argparse
import sys
from collections.abc import Callable
from typing import TextIO

from pydantic import ValidationError

from remote import __version__
from remote.base.config import RemoteSettings
from remote.base.exceptions import RemoteError
from remote.base.logger import remote_logger
from remote.base.models import InstanceConfig, InstanceStatus, ProviderKind
from remote.controller import LifecycleController, ProviderResolver, StatusReport
from remote.factory import provider_factory
from remote.registry import Registry
from remote import transport

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def _build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the ``remote`` CLI.

    Returns:
        Configured :class:`~argparse.ArgumentParser`.
    """
    parser = argparse.ArgumentParser(
        prog="remote",
        description="Simple CLI for managing remote instances",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--verbose", "-v",
        action="count",
        default=0,
        help="Log lifecycle operations to stderr (-vv for debug)",
    )

    target = argparse.ArgumentParser(add_help=False)
    target.add_argument(
        "--alias", "-a",
        dest="target",
        default=None,
        help="Operate on this alias instead of the active instance",
    )

    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    new = sub.add_parser("new", help="Configure a new instance")
    new.add_argument("--cloud", help="Cloud provider (aws, gcp)")
    new.add_argument("--profile", help="Cloud credential profile [default]")
    new.add_argument("--instance-id", help="Provider instance ID; omit to provision later")
    new.add_argument("--instance-type", help="Instance / machine type")
    new.add_argument("--key-path", help="SSH private key path")
    new.add_argument("--user", help="SSH user name")
    new.add_argument("--alias", help="Alias for the new instance")
    new.add_argument("--active", "-a", action="store_true", help="Set as the active instance")
    new.add_argument("--no-input", action="store_true", help="Never prompt for missing values")

    rm = sub.add_parser("rm", help="Remove an instance by alias (the cloud instance is kept)")
    rm.add_argument("alias", help="Alias of instance to remove")

    inst = sub.add_parser("instance", help="Set the active instance")
    inst.add_argument("alias", help='The alias of the instance as set in "new"')

    sub.add_parser("start", parents=[target], help="Start active instance")
    sub.add_parser("stop", parents=[target], help="Stop active instance")

    status = sub.add_parser("status", parents=[target], help="Get status of active instance")
    status.add_argument("--all", action="store_true", help="Show status of all configured instances")

    ssh = sub.add_parser("ssh", parents=[target], help="SSH into the active instance")
    ssh.add_argument(
        "--port", "-p",
        dest="ports",
        type=int,
        action="append",
        default=[],
        help="Local port to forward to the same port on the instance (repeatable)",
    )

    upload = sub.add_parser("upload", aliases=["up"], parents=[target], help="Copy a file to the active instance")
    upload.add_argument("local_file", help="The path of the local file")
    upload.add_argument("remote_file", help="The remote path to copy to")
    upload.add_argument("--recursive", "-r", action="store_true", help="Copy directories recursively")

    download = sub.add_parser(
        "download", aliases=["down"], parents=[target], help="Copy a file from the active instance"
    )
    download.add_argument("remote_file", help="The path of the remote file")
    download.add_argument("local_file", help="The local path to copy to")
    download.add_argument("--recursive", "-r", action="store_true", help="Copy directories recursively")

    resize = sub.add_parser("resize", parents=[target], help="Change the type of the active instance")
    resize.add_argument("instance_type", help="The desired instance type")

    ls = sub.add_parser("ls", help="List configured instances or available instances for a cloud profile")
    ls.add_argument("cloud", nargs="?", help="The cloud provider to use")
    ls.add_argument("profile", nargs="?", default="default", help="The profile name to use")

    provision = sub.add_parser("provision", parents=[target], help="Create the cloud instance for a new alias")
    provision.add_argument("--image", required=True, help="Image to boot (AMI ID / GCE image)")
    provision.add_argument("--key-name", help="EC2 key pair name")
    provision.add_argument("--subnet-id", help="EC2 subnet ID")
    provision.add_argument(
        "--security-group-id",
        dest="security_group_ids",
        action="append",
        help="EC2 security group ID (repeatable)",
    )

    terminate = sub.add_parser("terminate", parents=[target], help="Destroy the active instance in the cloud")
    terminate.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")

    return parser


def _prompt(label: str, default: str | None = None) -> str:
    suffix = f" [{default}]" if default else ""
    try:
        value = input(f"{label}{suffix}: ").strip()
    except EOFError:
        value = ""
    return value or (default or "")


def _report(report: StatusReport, out: TextIO) -> None:
    config = report.config
    print("---", file=out)
    print(f"Alias: {config.alias}", file=out)
    print(f"Cloud: {config.provider_kind.value} ({config.profile})", file=out)
    print(f"Instance ID: {config.provider_instance_id or '-'}", file=out)
    print(f"Type: {config.instance_type or '-'}", file=out)
    state = config.lifecycle_state.value
    if report.observed and report.observed.raw_state:
        state = f"{state} ({report.observed.raw_state})"
    print(f"State: {state}", file=out)
    if report.observed and report.observed.public_address:
        print(f"Address: {report.observed.public_address}", file=out)


class _Commands:
    """Command handlers; each returns the process exit code."""

    def __init__(self, controller: LifecycleController, out: TextIO, err: TextIO) -> None:
        self.controller = controller
        self.registry = controller.registry
        self.out = out
        self.err = err

    def new(self, ns: argparse.Namespace) -> int:
        ask = (lambda label, default=None: default or "") if ns.no_input else _prompt
        cloud = ns.cloud or ask("Cloud provider")
        kind = ProviderKind.parse(cloud)
        profile = ns.profile or ask("Cloud profile", "default")
        instance_id = ns.instance_id if ns.instance_id is not None else ask("Instance ID (blank to provision later)")
        instance_type = ns.instance_type if ns.instance_type is not None else ask("Instance type (blank to detect)")
        key_path = ns.key_path if ns.key_path is not None else ask("SSH key path")
        user = ns.user if ns.user is not None else ask("SSH user name", transport.DEFAULT_SSH_USER)
        alias = ns.alias or ask("Alias")
        print("---", file=self.out)

        config = InstanceConfig(
            alias=alias,
            provider_kind=kind,
            profile=profile,
            provider_instance_id=instance_id or None,
            instance_type=instance_type or None,
            ssh_user=user or None,
            key_path=key_path or None,
        )
        transport.resolve_key_path(config.key_path)
        report = self.controller.register(config, activate=ns.active)
        _report(report, self.out)
        if ns.active:
            print(f"Active instance: {report.config.alias}", file=self.out)
        return EXIT_OK

    def rm(self, ns: argparse.Namespace) -> int:
        removed = self.registry.remove(ns.alias)
        print(f"Removed instance: {removed.alias}", file=self.out)
        if removed.is_provisioned and removed.cached_status is not InstanceStatus.TERMINATED:
            print(
                f"Note: {removed.provider_instance_id} still exists on {removed.provider_kind.value}; "
                "it was only removed from the local registry",
                file=self.err,
            )
        return EXIT_OK

    def instance(self, ns: argparse.Namespace) -> int:
        self.registry.set_active(ns.alias)
        print(f"Active instance: {ns.alias}", file=self.out)
        return EXIT_OK

    def start(self, ns: argparse.Namespace) -> int:
        print(self.controller.start(ns.target), file=self.out)
        return EXIT_OK

    def stop(self, ns: argparse.Namespace) -> int:
        print(self.controller.stop(ns.target), file=self.out)
        return EXIT_OK

    def status(self, ns: argparse.Namespace) -> int:
        if not ns.all:
            _report(self.controller.status(ns.target), self.out)
            return EXIT_OK
        code = EXIT_OK
        for alias, result in self.controller.status_all():
            if isinstance(result, RemoteError):
                print(f"---\nAlias: {alias}\nError [{result.kind}]: {result}", file=self.out)
                code = EXIT_ERROR
            else:
                _report(result, self.out)
        return code

    def resize(self, ns: argparse.Namespace) -> int:
        result = self.controller.resize(ns.instance_type, ns.target)
        print(
            f"Set {result.config.alias} ({result.config.provider_instance_id}) to {result.config.instance_type}",
            file=self.out,
        )
        return EXIT_OK

    def ls(self, ns: argparse.Namespace) -> int:
        if ns.cloud is None:
            active = self.registry.active_alias
            if active:
                print(f"Active instance: {active}", file=self.out)
            info = "\n---\n".join(config.describe() for config in self.registry.list())
            print(f"Configured instances:\n---\n{info}", file=self.out)
            return EXIT_OK
        blocks = []
        for descriptor, alias in self.controller.discover(ns.cloud, ns.profile):
            managed = f"\nManaged as: {alias}" if alias else ""
            blocks.append(descriptor.describe() + managed)
        print(f"Instances on {ns.cloud} ({ns.profile}):\n---\n" + "\n---\n".join(blocks), file=self.out)
        return EXIT_OK

    def ssh(self, ns: argparse.Namespace) -> int:
        for port in ns.ports:
            transport.validate_port(port)
        return transport.open_shell(self.controller.connection_info(ns.target), ns.ports)

    def upload(self, ns: argparse.Namespace) -> int:
        info = self.controller.connection_info(ns.target)
        transport.copy(info, ns.local_file, ns.remote_file, upload=True, recursive=ns.recursive)
        return EXIT_OK

    def download(self, ns: argparse.Namespace) -> int:
        info = self.controller.connection_info(ns.target)
        transport.copy(info, ns.local_file, ns.remote_file, upload=False, recursive=ns.recursive)
        return EXIT_OK

    def provision(self, ns: argparse.Namespace) -> int:
        options = {
            "key_name": ns.key_name,
            "subnet_id": ns.subnet_id,
            "security_group_ids": ns.security_group_ids,
        }
        result = self.controller.provision(
            ns.image, ns.target, **{k: v for k, v in options.items() if v}
        )
        print(result, file=self.out)
        return EXIT_OK

    def terminate(self, ns: argparse.Namespace) -> int:
        config = self.registry.resolve(ns.target)
        if not ns.yes:
            answer = _prompt(
                f"Terminate {config.alias} ({config.provider_instance_id})? This cannot be undone [y/N]"
            )
            if answer.lower() not in ("y", "yes"):
                print("Aborted", file=self.out)
                return EXIT_ERROR
        print(self.controller.terminate(config.alias), file=self.out)
        return EXIT_OK


_ALIASES = {"up": "upload", "down": "download"}


def run(
    argv: list[str] | None = None,
    *,
    settings: RemoteSettings | None = None,
    resolve_provider: ProviderResolver = provider_factory,
    out: TextIO | None = None,
    err: TextIO | None = None,
) -> int:
    """Parse *argv*, run the command and return the exit code.

    Errors are printed as ``Error [<Kind>]: <message>`` on *err*.
    """
    out = out or sys.stdout
    err = err or sys.stderr
    ns = _build_parser().parse_args(argv)

    try:
        settings = settings or RemoteSettings()
    except ValidationError as e:
        print(f"Error [Config]: {e}", file=err)
        return EXIT_ERROR
    remote_logger.set_level(
        {0: settings.log_level, 1: "INFO"}.get(ns.verbose, "DEBUG")
    )
    remote_logger.begin_invocation()

    registry = Registry.from_settings(settings)
    controller = LifecycleController.from_settings(registry, settings, resolve_provider)
    command = _ALIASES.get(ns.command, ns.command)
    handler: Callable[[argparse.Namespace], int] = getattr(_Commands(controller, out, err), command)

    try:
        return handler(ns)
    except RemoteError as e:
        print(f"Error [{e.kind}]: {e}", file=err)
        return EXIT_ERROR
    except ValidationError as e:
        print(f"Error [Config]: {e}", file=err)
        return EXIT_ERROR
    except KeyboardInterrupt:
        print("Interrupted", file=err)
        return EXIT_INTERRUPTED


def main(argv: list[str] | None = None) -> None:
    """CLI entry point.

    Args:
        argv: Optional argument list (defaults to ``sys.argv``).
    """
    sys.exit(run(argv))


if __name__ == "__main__":
    main()

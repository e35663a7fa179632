"""Lifecycle controller.

Drives one registered instance through provision, start, stop, resize and
terminate. The provider is the authority on instance state; the registry
keeps the last observation. Every state-changing operation follows the
same protocol, and the registry lock is never held across a provider
request:

1. read the record (registry lock held only for the read);
2. ``describe`` the instance with no lock held;
3. re-take the lock and give up the round if a claim was taken or
   released since step 1. Otherwise check the transition guard and, when
   a provider request is needed, persist a claim (the transitional status
   plus ``pending_operation``) and release the lock;
4. make the provider request with no lock held, then re-take the lock to
   release the claim, recording the result or rolling the claim back to
   the observed status if the request failed;
5. poll ``describe`` with no lock held until the target state shows up,
   persisting each observation.

An invocation that finds a live claim for the same start or stop joins it
by polling instead of issuing a second request, so two concurrent
``start`` calls both succeed with one provider request between them.
Claims older than ``claim_ttl`` seconds are treated as abandoned.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from remote.base.async_support import gather_in_threads
from remote.base.config import RemoteSettings
from remote.base.exceptions import (
    AliasNotFoundError,
    ConcurrentModificationError,
    ConfirmationTimeoutError,
    DuplicateAliasError,
    InvalidTransitionError,
    ProviderNotFoundError,
    RemoteError,
    ResizeRequiresStopError,
    TransportError,
)
from remote.base.logger import remote_logger
from remote.base.models import (
    InstanceConfig,
    InstanceStatus,
    ObservedStatus,
    ProviderInstanceDescriptor,
    ProviderKind,
)
from remote.base.provider import ProviderBlueprint
from remote.factory import provider_factory
from remote.registry import Registry
from remote.transport import ConnectionInfo

ProviderResolver = Callable[[ProviderKind], ProviderBlueprint]
ProviderCall = Callable[[ProviderBlueprint, InstanceConfig], "dict[str, Any] | None"]


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a lifecycle operation."""

    config: InstanceConfig
    previous: InstanceStatus
    current: InstanceStatus
    # False when the instance was already at (or heading to) the target.
    changed: bool

    def __str__(self) -> str:
        instance_id = self.config.provider_instance_id or "-"
        return f"{self.config.alias} ({instance_id}): {self.previous.value} -> {self.current.value}"


@dataclass(frozen=True)
class StatusReport:
    config: InstanceConfig
    observed: ObservedStatus | None = None


@dataclass
class _Plan:
    status: InstanceStatus | None = None
    call: ProviderCall | None = None
    confirm: InstanceStatus | None = None
    updates: dict[str, Any] = field(default_factory=dict)
    error: RemoteError | None = None


# Operations a second invocation joins by polling for the target state.
_JOINABLE = {"start": InstanceStatus.RUNNING, "stop": InstanceStatus.STOPPED}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LifecycleController:
    """State machine for registered instances.

    Attributes:
        registry: Where records live; the controller never keeps its own copy.
        resolve_provider: Maps a :class:`ProviderKind` to a provider.
    """

    def __init__(
        self,
        registry: Registry,
        resolve_provider: ProviderResolver = provider_factory,
        *,
        poll_attempts: int = 40,
        poll_interval: float = 3.0,
        poll_max_interval: float = 15.0,
        claim_rounds: int = 3,
        claim_ttl: float = 900.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.registry = registry
        self.resolve_provider = resolve_provider
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval
        self.poll_max_interval = poll_max_interval
        self.claim_rounds = claim_rounds
        self.claim_ttl = claim_ttl
        self.sleep = sleep

    @classmethod
    def from_settings(
        cls,
        registry: Registry,
        settings: RemoteSettings,
        resolve_provider: ProviderResolver = provider_factory,
    ) -> LifecycleController:
        return cls(
            registry,
            resolve_provider,
            poll_attempts=settings.poll_attempts,
            poll_interval=settings.poll_interval,
            poll_max_interval=settings.poll_max_interval,
            claim_ttl=settings.claim_ttl,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def provider_for(self, config: InstanceConfig) -> ProviderBlueprint:
        return self.resolve_provider(config.provider_kind)

    def register(self, config: InstanceConfig, *, activate: bool = False) -> StatusReport:
        """Add *config* to the registry.

        When it names a provider instance, that instance is described first
        so a typo'd ID never reaches the registry, and the record starts
        out with a real status and type.
        """
        if config.alias in self.registry.snapshot():
            raise DuplicateAliasError(f"Instance with alias '{config.alias}' already exists")
        observed = None
        if config.is_provisioned:
            observed = self._observe(self.provider_for(config), config)
            config = config.model_copy(update=self._refresh_fields(observed))
        return StatusReport(self.registry.create(config, activate=activate), observed)

    def status(self, alias: str | None = None) -> StatusReport:
        """Refresh the cached status of *alias* (default: active) from the provider."""
        snap = self.registry.resolve(alias)
        if not snap.is_provisioned:
            return StatusReport(snap)
        observed = self._observe(self.provider_for(snap), snap)
        return StatusReport(self._record(snap, observed), observed)

    def status_all(self) -> list[tuple[str, StatusReport | RemoteError]]:
        """Refresh every record; describe calls run concurrently.

        Per-record failures are returned in place of the report.
        """
        records = list(self.registry.list())
        calls = [
            (config, (lambda c=config: self._observe(self.provider_for(c), c)))
            for config in records
            if config.is_provisioned
        ]
        observed = {config.alias: result for config, result in gather_in_threads(calls)}

        reports: list[tuple[str, StatusReport | RemoteError]] = []
        for config in records:
            result = observed.get(config.alias)
            if result is None:
                reports.append((config.alias, StatusReport(config)))
            elif isinstance(result, RemoteError):
                reports.append((config.alias, result))
            elif isinstance(result, BaseException):
                raise result
            else:
                try:
                    reports.append((config.alias, StatusReport(self._record(config, result), result)))
                except RemoteError as exc:
                    reports.append((config.alias, exc))
        return reports

    def discover(
        self, kind: ProviderKind | str, profile: str
    ) -> Iterator[tuple[ProviderInstanceDescriptor, str | None]]:
        """Yield instances visible to *profile*, paired with the alias managing them."""
        kind = ProviderKind.parse(kind)
        managed = {
            config.provider_instance_id: config.alias
            for config in self.registry.list()
            if config.provider_kind is kind and config.is_provisioned
        }
        for descriptor in self.resolve_provider(kind).list_available(profile):
            yield descriptor, managed.get(descriptor.instance_id)

    def connection_info(self, alias: str | None = None) -> ConnectionInfo:
        """Where to ssh / scp for a running instance."""
        report = self.status(alias)
        config = report.config
        if config.lifecycle_state is not InstanceStatus.RUNNING:
            raise InvalidTransitionError(
                f"'{config.alias}' is {config.lifecycle_state.value}; start it first"
            )
        address = report.observed.public_address if report.observed else None
        if not address:
            raise TransportError(f"Instance '{config.alias}' has no public address")
        return ConnectionInfo.for_instance(config, address)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def start(self, alias: str | None = None) -> TransitionResult:
        """Start a stopped instance and wait until it is running.

        Already running is a no-op success; already starting joins the
        in-flight start.

        Raises:
            InvalidTransitionError: If the instance is stopping, terminated
                or not provisioned.
            ConfirmationTimeoutError: If it never reports running.
        """

        def decide(current: InstanceConfig, observed: ObservedStatus) -> _Plan:
            state = observed.status
            if state is InstanceStatus.RUNNING:
                return _Plan(status=state)
            if state is InstanceStatus.STARTING:
                return _Plan(status=state, confirm=InstanceStatus.RUNNING)
            if state is InstanceStatus.STOPPED:
                return _Plan(
                    status=InstanceStatus.STARTING,
                    call=lambda provider, config: provider.start(config),
                    confirm=InstanceStatus.RUNNING,
                )
            return _Plan(
                status=state,
                error=InvalidTransitionError(f"Cannot start '{current.alias}' while it is {state.value}"),
            )

        return self._transition("start", alias, decide)

    def stop(self, alias: str | None = None) -> TransitionResult:
        """Stop a running instance and wait until it is stopped.

        Already stopped is a no-op success; already stopping joins the
        in-flight stop.
        """

        def decide(current: InstanceConfig, observed: ObservedStatus) -> _Plan:
            state = observed.status
            if state is InstanceStatus.STOPPED:
                return _Plan(status=state)
            if state is InstanceStatus.STOPPING:
                return _Plan(status=state, confirm=InstanceStatus.STOPPED)
            if state is InstanceStatus.RUNNING:
                return _Plan(
                    status=InstanceStatus.STOPPING,
                    call=lambda provider, config: provider.stop(config),
                    confirm=InstanceStatus.STOPPED,
                )
            return _Plan(
                status=state,
                error=InvalidTransitionError(f"Cannot stop '{current.alias}' while it is {state.value}"),
            )

        return self._transition("stop", alias, decide)

    def resize(self, new_type: str, alias: str | None = None) -> TransitionResult:
        """Change the instance type of a stopped instance.

        The instance is never stopped or started on the caller's behalf.

        Raises:
            ResizeRequiresStopError: If the instance is running or starting.
            InvalidTransitionError: For any other state but stopped.
        """
        new_type = new_type.strip()
        if not new_type:
            raise InvalidTransitionError("Instance type must be a non-empty string")

        def decide(current: InstanceConfig, observed: ObservedStatus) -> _Plan:
            state = observed.status
            if state in (InstanceStatus.RUNNING, InstanceStatus.STARTING):
                return _Plan(
                    status=state,
                    error=ResizeRequiresStopError(
                        f"'{current.alias}' is {state.value}; run 'remote stop' before resizing"
                    ),
                )
            if state is not InstanceStatus.STOPPED:
                return _Plan(
                    status=state,
                    error=InvalidTransitionError(
                        f"Cannot resize '{current.alias}' while it is {state.value}"
                    ),
                )
            if (observed.instance_type or current.instance_type) == new_type:
                return _Plan(status=state, updates={"instance_type": new_type})

            def call(provider: ProviderBlueprint, config: InstanceConfig) -> None:
                provider.resize(config, new_type)

            return _Plan(status=state, call=call, updates={"instance_type": new_type})

        return self._transition("resize", alias, decide)

    def terminate(self, alias: str | None = None) -> TransitionResult:
        """Destroy the cloud instance; the record stays, marked terminated."""

        def decide(current: InstanceConfig, observed: ObservedStatus) -> _Plan:
            if observed.status is InstanceStatus.UNPROVISIONED:
                return _Plan(
                    error=InvalidTransitionError(f"'{current.alias}' has nothing to terminate yet"),
                )
            if observed.status is InstanceStatus.TERMINATED:
                return _Plan(
                    status=observed.status,
                    error=InvalidTransitionError(f"'{current.alias}' is already terminated"),
                )
            return _Plan(
                status=InstanceStatus.TERMINATED,
                call=lambda provider, config: provider.terminate(config),
            )

        return self._transition("terminate", alias, decide)

    def provision(self, image_id: str, alias: str | None = None, **options: Any) -> TransitionResult:
        """Create the cloud instance for an unprovisioned (or terminated) record.

        Args:
            image_id: OS image to boot.
            alias: Record to provision (default: active).
            **options: Passed through to :meth:`ProviderBlueprint.create`.
        """

        def decide(current: InstanceConfig, observed: ObservedStatus) -> _Plan:
            state = observed.status
            if state not in (InstanceStatus.UNPROVISIONED, InstanceStatus.TERMINATED):
                return _Plan(
                    status=None if state is InstanceStatus.UNPROVISIONED else state,
                    error=InvalidTransitionError(
                        f"'{current.alias}' is already provisioned as {current.provider_instance_id}"
                    ),
                )
            if not current.instance_type:
                return _Plan(
                    error=InvalidTransitionError(
                        f"'{current.alias}' has no instance type; set one before provisioning"
                    ),
                )

            def call(provider: ProviderBlueprint, config: InstanceConfig) -> dict[str, Any]:
                fresh = config.model_copy(update={"provider_instance_id": None})
                return {"provider_instance_id": provider.create(fresh, image_id, **options)}

            return _Plan(status=InstanceStatus.STARTING, call=call, confirm=InstanceStatus.RUNNING)

        return self._transition("provision", alias, decide)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _observe(self, provider: ProviderBlueprint, config: InstanceConfig) -> ObservedStatus:
        if not config.is_provisioned:
            return ObservedStatus(status=InstanceStatus.UNPROVISIONED)
        try:
            return provider.describe(config)
        except ProviderNotFoundError:
            # Terminated instances eventually vanish from the provider.
            if config.cached_status is InstanceStatus.TERMINATED:
                return ObservedStatus(status=InstanceStatus.TERMINATED, raw_state="deleted")
            raise

    def _record(self, snap: InstanceConfig, observed: ObservedStatus) -> InstanceConfig:
        """Persist a status observation for the record *snap* was read from.

        Observations are newest-wins; only a record that was removed or
        re-pointed at another cloud instance counts as a conflict.
        """

        def mutate(current: InstanceConfig) -> InstanceConfig:
            if current.provider_instance_id != snap.provider_instance_id:
                raise ConcurrentModificationError(
                    f"'{snap.alias}' now points at {current.provider_instance_id}, "
                    f"not {snap.provider_instance_id}"
                )
            return current.model_copy(update=self._refresh_fields(observed))

        try:
            return self.registry.update(snap.alias, mutate)
        except AliasNotFoundError as exc:
            raise ConcurrentModificationError(
                f"'{snap.alias}' was removed while this command was running"
            ) from exc

    @staticmethod
    def _refresh_fields(observed: ObservedStatus) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        if observed.status is not InstanceStatus.UNPROVISIONED:
            fields["cached_status"] = observed.status
            fields["last_refreshed"] = _now()
        if observed.instance_type:
            fields["instance_type"] = observed.instance_type
        return fields

    def _transition(
        self,
        operation: str,
        alias: str | None,
        decide: Callable[[InstanceConfig, ObservedStatus], _Plan],
    ) -> TransitionResult:
        alias = alias if alias is not None else self.registry.get_active().alias
        for round_ in range(1, self.claim_rounds + 1):
            snap = self.registry.get(alias)
            provider = self.provider_for(snap)
            observed = self._observe(provider, snap)

            with self.registry.transaction() as view:
                if alias not in view:
                    raise ConcurrentModificationError(
                        f"'{alias}' was removed while this command was running"
                    )
                current = view.get(alias)
                if (
                    current.transition_seq != snap.transition_seq
                    or current.provider_instance_id != snap.provider_instance_id
                ):
                    remote_logger.info(
                        f"'{alias}' changed underneath {operation} (round {round_}), re-reading",
                        provider=snap.provider_kind.value,
                        alias=alias,
                        operation=operation,
                    )
                    continue
                plan = self._plan(operation, current, observed, decide)
                fields = self._refresh_fields(observed)
                if plan.status is not None and plan.status is not InstanceStatus.UNPROVISIONED:
                    fields["cached_status"] = plan.status
                if plan.call is None:
                    fields.update(plan.updates)
                else:
                    fields.update(
                        pending_operation=operation,
                        pending_since=_now(),
                        transition_seq=current.transition_seq + 1,
                    )
                stored = view.put(current.model_copy(update=fields)) if fields else current

            if plan.error is not None:
                raise plan.error
            if plan.call is not None:
                remote_logger.log_transition(
                    stored, operation, observed.status, plan.status or observed.status
                )
                stored = self._run_claimed(
                    operation, provider, stored, current, observed, plan.call, plan.updates
                )
            if plan.confirm is not None:
                stored = self._confirm(stored, plan.confirm, operation)
            return TransitionResult(
                config=stored,
                previous=observed.status,
                current=stored.lifecycle_state,
                changed=plan.call is not None,
            )

        raise ConcurrentModificationError(
            f"'{alias}' kept changing during {operation}; gave up after {self.claim_rounds} attempts"
        )

    def _plan(
        self,
        operation: str,
        current: InstanceConfig,
        observed: ObservedStatus,
        decide: Callable[[InstanceConfig, ObservedStatus], _Plan],
    ) -> _Plan:
        pending = self._live_claim(current)
        if pending is None:
            return decide(current, observed)
        if pending == operation and operation in _JOINABLE:
            remote_logger.info(
                f"Joining the {operation} already in flight",
                provider=current.provider_kind.value,
                alias=current.alias,
                operation=operation,
                instance_id=current.provider_instance_id,
            )
            return _Plan(confirm=_JOINABLE[operation])
        return _Plan(
            error=InvalidTransitionError(
                f"'{current.alias}' has a {pending} in progress; try again once it finishes"
            ),
        )

    def _live_claim(self, config: InstanceConfig) -> str | None:
        """The operation holding a claim on *config*, unless the claim is stale."""
        if config.pending_operation is None or config.pending_since is None:
            return None
        age = (_now() - config.pending_since).total_seconds()
        if age > self.claim_ttl:
            remote_logger.warning(
                f"Ignoring a {config.pending_operation} claim on '{config.alias}' left {age:.0f}s ago",
                provider=config.provider_kind.value,
                alias=config.alias,
                operation=config.pending_operation,
            )
            return None
        return config.pending_operation

    def _run_claimed(
        self,
        operation: str,
        provider: ProviderBlueprint,
        claimed: InstanceConfig,
        before: InstanceConfig,
        observed: ObservedStatus,
        call: ProviderCall,
        updates: dict[str, Any],
    ) -> InstanceConfig:
        """Make the provider request for a claim, then release the claim.

        On failure the claim is rolled back to what ``describe`` reported
        before the request, and the provider error propagates.
        """
        try:
            result = call(provider, claimed) or {}
        except Exception:
            rollback = {"cached_status": before.cached_status, **self._refresh_fields(observed)}
            try:
                self._release(claimed, operation, rollback)
            except RemoteError as exc:
                remote_logger.warning(
                    f"Could not roll back the {operation} claim on '{claimed.alias}': {exc}",
                    provider=claimed.provider_kind.value,
                    alias=claimed.alias,
                    operation=operation,
                )
            raise
        remote_logger.info(
            f"{operation} requested",
            provider=claimed.provider_kind.value,
            alias=claimed.alias,
            operation=operation,
            instance_id=result.get("provider_instance_id", claimed.provider_instance_id),
        )
        return self._release(claimed, operation, {**updates, **result})

    def _release(self, claimed: InstanceConfig, operation: str, fields: dict[str, Any]) -> InstanceConfig:
        def mutate(current: InstanceConfig) -> InstanceConfig:
            if current.pending_operation != operation or current.pending_since != claimed.pending_since:
                raise ConcurrentModificationError(
                    f"'{claimed.alias}' lost its {operation} claim to another command"
                )
            return current.model_copy(
                update={
                    **fields,
                    "pending_operation": None,
                    "pending_since": None,
                    "transition_seq": current.transition_seq + 1,
                }
            )

        try:
            return self.registry.update(claimed.alias, mutate)
        except AliasNotFoundError as exc:
            raise ConcurrentModificationError(
                f"'{claimed.alias}' was removed while this command was running"
            ) from exc

    def _confirm(self, config: InstanceConfig, target: InstanceStatus, operation: str) -> InstanceConfig:
        """Poll until the provider reports *target*, recording each observation."""
        provider = self.provider_for(config)
        last: InstanceStatus | None = None
        for attempt in range(1, self.poll_attempts + 1):
            self.sleep(min(self.poll_interval * attempt, self.poll_max_interval))
            observed = self._observe(provider, config)
            config = self._record(config, observed)
            last = observed.status
            if last is target:
                remote_logger.info(
                    f"{operation} confirmed after {attempt} poll(s)",
                    provider=config.provider_kind.value,
                    alias=config.alias,
                    operation=operation,
                    instance_id=config.provider_instance_id,
                )
                return config
            if last is InstanceStatus.TERMINATED:
                raise InvalidTransitionError(
                    f"'{config.alias}' was terminated while waiting for it to be {target.value}"
                )
        raise ConfirmationTimeoutError(
            f"'{config.alias}' did not reach {target.value} after {self.poll_attempts} checks "
            f"(last seen: {last.value if last else 'unknown'})",
            last_status=last,
        )

"""
orchestrator.py — reserve, configure, deploy and operate gateway instances.

Two ways to get a configured instance:

  Fast path   configure(record, settings)
              The VM was reserved earlier and is already booting. Merge the
              final settings in, restart, poll. Remote failures here are
              collected, not raised: the instance still runs on its
              reserve-time defaults.
  Slow path   deploy(settings)
              No reservation. Create the VM with the final config baked into
              its boot script, wait for an address and for boot, apply the
              config, poll. Any failure is fatal and raised as a classified
              DeployFailed.

Every read-modify-write of one instance's config runs under that instance's
lock, so concurrent runs against the same VM cannot lose each other's keys.
"""

import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum

import requests

from .background import BackgroundTasks
from .bootscript import build_default_config, build_soul
from .config_merge import deep_merge, merge_document
from .config_store import SOUL_PATH, RemoteConfigStore
from .deadline import Deadline, ensure
from .dns import CloudflareDns, DnsBinder
from .errors import (
    Cancelled,
    DeployFailed,
    ProviderError,
    ProvisioningError,
    RateLimited,
    classify,
)
from .hetzner import HetznerClient, server_address
from .naming import slugify
from .profiles import (
    DeploySettings,
    build_changes,
    channel_changes,
    require_credentials,
)
from .rate_limit import RateLimiter
from .readiness import ReadinessProbe, health_urls
from .remote_exec import resolve_host, shell_factory
from .reservation import MANAGED_BY, Instance, InstanceState, ReservationService, generate_access_token
from .settings import Settings
from .store import KeyValueStore, MemoryStore
from .supervisor import ProcessSupervisor, wait_for_boot

log = logging.getLogger(__name__)


class DeployPhase(str, Enum):
    IDLE = "idle"
    RESERVING = "reserving"
    APPLYING_CONFIG = "applying_config"
    RESTARTING = "restarting"
    POLLING_READY = "polling_ready"
    READY = "ready"
    FAILED = "failed"


@dataclass
class DeployOutcome:
    instance: Instance
    phase: DeployPhase = DeployPhase.IDLE
    ready: bool = False
    applied: dict = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    timed_out: bool = False
    dashboard_url: str = ""

    def to_dict(self) -> dict:
        return {
            "instance": self.instance.to_record(),
            "phase": self.phase.value,
            "ready": self.ready,
            "applied": dict(self.applied),
            "configured": bool(self.applied) and all(self.applied.values()),
            "errors": list(self.errors),
            "timedOut": self.timed_out,
            "dashboardUrl": self.dashboard_url,
        }


class InstanceLocks:
    """One lock per instance id, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = defaultdict(threading.Lock)

    def lock_for(self, instance_id) -> threading.Lock:
        with self._guard:
            return self._locks[str(instance_id)]

    @contextmanager
    def hold(self, instance_id):
        lock = self.lock_for(instance_id)
        with lock:
            yield


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        hetzner: HetznerClient,
        dns: CloudflareDns,
        probe: ReadinessProbe,
        open_shell=None,
        background: BackgroundTasks | None = None,
        rate_limiter: RateLimiter | None = None,
        store: KeyValueStore | None = None,
        locks: InstanceLocks | None = None,
        resolve=resolve_host,
        sleep=time.sleep,
        on_phase=None,
    ):
        self.settings = settings
        self.hetzner = hetzner
        self.dns = dns
        self.probe = probe
        self.background = background or BackgroundTasks()
        self.reservations = ReservationService(hetzner, DnsBinder(dns, self.background), settings)
        self.rate_limiter = rate_limiter
        self.store = store if store is not None else MemoryStore()
        self.locks = locks or InstanceLocks()
        self._open_shell = open_shell
        self._resolve = resolve
        self._sleep = sleep
        self._on_phase = on_phase

    @classmethod
    def from_settings(cls, settings: Settings, session: requests.Session | None = None) -> "Orchestrator":
        session = session or requests.Session()
        return cls(
            settings,
            hetzner=HetznerClient(settings.hetzner_api_token, settings.hetzner_api, session=session),
            dns=CloudflareDns(
                settings.cloudflare_api_token, settings.cloudflare_zone_id, settings.domain_suffix,
                base_url=settings.cloudflare_api, session=session,
            ),
            probe=ReadinessProbe(
                attempts=settings.poll_attempts,
                interval=settings.poll_interval,
                timeout=settings.probe_timeout,
                port=settings.gateway_port,
                policy=settings.on_poll_timeout,
                session=session,
            ),
            rate_limiter=RateLimiter(settings.rate_limit, settings.rate_window),
        )

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    def open_shell(self, host: str):
        if self._open_shell is None:
            # The key is only needed once something actually goes over SSH.
            s = self.settings
            self._open_shell = shell_factory(
                s.ssh_private_key(), s.ssh_user, s.ssh_connect_timeout, s.ssh_command_timeout,
            )
        return self._open_shell(host)

    def _host_for(self, instance: Instance) -> str:
        return instance.public_address or self._resolve(instance.domain)

    def _supervisor(self, shell) -> ProcessSupervisor:
        return ProcessSupervisor(
            shell, settle_delay=self.settings.restart_settle, port=self.settings.gateway_port, sleep=self._sleep,
        )

    def _check_rate(self, origin: str | None):
        if origin and self.rate_limiter is not None and not self.rate_limiter.allow(origin):
            raise RateLimited(
                f"Too many requests from {origin}: at most {self.rate_limiter.limit} "
                f"per {self.rate_limiter.window:g}s"
            )

    @contextmanager
    def _converted(self, operation: str):
        """Surface anything unexpected from an operation as a ProvisioningError."""
        try:
            yield
        except ProvisioningError:
            raise
        except Exception as exc:
            log.exception(f"  {operation} failed: {exc}")
            raise ProvisioningError(f"{operation} failed: {exc}") from exc

    def _enter(self, outcome: DeployOutcome, phase: DeployPhase):
        outcome.phase = phase
        log.debug(f"  phase → {phase.value}")
        if self._on_phase is not None:
            self._on_phase(phase)

    def _remember(self, instance: Instance):
        self.store.set(f"instance:{instance.id}", instance.to_record())

    def _cached_token(self, instance_id) -> str | None:
        record = self.store.get(f"instance:{instance_id}")
        return record.get("accessToken") if record else None

    @staticmethod
    def _as_settings(settings, default_name: str = "") -> DeploySettings:
        if isinstance(settings, DeploySettings):
            return settings
        return DeploySettings.from_dict(settings, default_name)

    @staticmethod
    def _as_instance(record) -> Instance:
        if isinstance(record, Instance):
            return record
        return Instance.from_record(record)

    # -------------------------------------------------------------------------
    # Config apply
    # -------------------------------------------------------------------------

    def _apply_config(
        self,
        instance: Instance,
        changes: dict,
        soul: str | None,
        env: tuple[str, str] | None,
        deadline: Deadline,
        strict: bool,
        outcome: DeployOutcome,
    ) -> tuple[dict, list[str]]:
        """Merge changes into the remote config, write persona and key, restart.

        With strict=False every failing step is recorded and the next one still
        runs; with strict=True the first failure propagates.
        """
        self._enter(outcome, DeployPhase.APPLYING_CONFIG)
        applied = {"config": False, "soul": False, "apiKey": env is None, "restarted": False, "running": False}
        errors: list[str] = []

        def step(name: str, fn):
            deadline.check(name)
            try:
                result = fn()
            except Cancelled:
                raise
            except ProvisioningError as exc:
                if strict:
                    raise
                log.warning(f"  {name} failed (continuing on defaults): {exc}")
                errors.append(f"{name}: {exc}")
                return
            applied[name] = True if result is None else bool(result)

        with self.locks.hold(instance.id):
            deadline.check("config apply")
            try:
                host = self._host_for(instance)
                with self.open_shell(host) as shell:
                    store = RemoteConfigStore(shell)
                    supervisor = self._supervisor(shell)
                    step("config", lambda: store.write(merge_document(store.read(), changes)))
                    if soul is not None:
                        step("soul", lambda: store.write_file(SOUL_PATH, soul))
                    if env is not None:
                        step("apiKey", lambda: supervisor.set_env(*env))
                    log.info(f"  Restarting gateway on {host}...")
                    self._enter(outcome, DeployPhase.RESTARTING)
                    step("restarted", lambda: supervisor.restart(deadline))
                    step("running", supervisor.is_running)
            except Cancelled:
                raise
            except ProvisioningError as exc:
                if strict:
                    raise
                log.warning(f"  Could not reach {instance.domain}: {exc}")
                errors.append(f"remote: {exc}")
        if applied["restarted"] and not applied["running"] and not errors:
            errors.append("running: gateway not reported active after restart")
        return applied, errors

    def _poll(self, instance: Instance, outcome: DeployOutcome, deadline: Deadline):
        self._enter(outcome, DeployPhase.POLLING_READY)
        result = self.probe.wait_until_ready(
            instance.domain, instance.public_address, instance.access_token, deadline,
        )
        outcome.ready = result.ready
        outcome.timed_out = result.timed_out
        if result.timed_out and instance.public_address:
            outcome.dashboard_url = instance.direct_url(self.settings.gateway_port)
        else:
            outcome.dashboard_url = instance.dashboard_url

    def _fail(self, instance: Instance | None, exc: BaseException) -> DeployFailed:
        kind = classify(exc)
        if not isinstance(exc, ProvisioningError):
            log.exception(f"  Unexpected error: {exc}")
        else:
            log.error(f"  Deploy failed ({kind.value}): {exc}")
        if instance is not None:
            instance.state = InstanceState.FAILED
            instance.failure = kind
        if self._on_phase is not None:
            self._on_phase(DeployPhase.FAILED)
        return DeployFailed(str(exc) or exc.__class__.__name__, kind, cause=exc, instance=instance)

    def _soul_for(self, ds: DeploySettings, domain: str) -> str:
        return build_soul(
            ds.agent_name, domain, ds.known_vibe, ds.gift_mode,
            ds.recipient_name, ds.recipient_context, ds.setup_person_name,
        )

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def reserve(self, display_name: str, origin: str | None = None,
                region: str | None = None, server_type: str | None = None) -> Instance:
        """Create a VM with free-tier defaults ahead of the final settings."""
        self._check_rate(origin)
        log.info(f"\n[1/1] Reserving instance for '{display_name}'...")
        with self._converted("reserve"):
            instance = self.reservations.reserve(display_name, region=region, server_type=server_type)
        self._remember(instance)
        log.info(f"  Reserved {instance.domain} (id={instance.id}, token={instance.access_token[:8]}...)")
        return instance

    def configure(self, record, settings, deadline: Deadline | None = None) -> DeployOutcome:
        """Fast path: apply final settings to an already reserved instance."""
        deadline = ensure(deadline)
        instance = None
        try:
            instance = self._as_instance(record)
            ds = self._as_settings(settings, default_name=instance.subdomain)
            s = self.settings
            changes = build_changes(ds, instance.access_token, s.gateway_port, s.slack_app_token)
            soul = self._soul_for(ds, instance.domain)
            env = (ds.env_key, ds.api_key) if ds.api_key and ds.env_key else None
            outcome = DeployOutcome(instance=instance)

            log.info(f"\n[1/3] Applying settings to {instance.domain}...")
            instance.state = InstanceState.CONFIGURING
            outcome.applied, outcome.errors = self._apply_config(
                instance, changes, soul, env, deadline, strict=False, outcome=outcome,
            )
            instance.errors = list(outcome.errors)

            log.info(f"\n[2/3] Waiting for {instance.domain} to answer...")
            self._poll(instance, outcome, deadline)

            log.info(f"\n[3/3] Done: {outcome.dashboard_url}")
            if outcome.errors:
                log.warning(f"  {len(outcome.errors)} step(s) failed; the instance keeps its defaults for those")
            instance.state = InstanceState.READY
            self._enter(outcome, DeployPhase.READY)
            self._remember(instance)
            return outcome
        except DeployFailed:
            raise
        except Exception as exc:
            raise self._fail(instance, exc) from exc

    def deploy(self, settings, reservation=None, origin: str | None = None,
               deadline: Deadline | None = None) -> DeployOutcome:
        """Fast path when a reservation is given, otherwise the slow path."""
        if reservation is not None:
            return self.configure(reservation, settings, deadline)

        deadline = ensure(deadline)
        instance = None
        try:
            self._check_rate(origin)
            ds = self._as_settings(settings)
            require_credentials(ds)
            s = self.settings

            token = generate_access_token()
            domain = s.domain_for(slugify(ds.agent_name))
            changes = build_changes(ds, token, s.gateway_port, s.slack_app_token)
            config = deep_merge(build_default_config(token, s.default_api_key, port=s.gateway_port), changes)
            soul = self._soul_for(ds, domain)
            env = (ds.env_key, ds.api_key) if ds.api_key and ds.env_key else None

            log.info(f"\n[1/5] Creating server for '{ds.agent_name}'...")
            if self._on_phase is not None:
                self._on_phase(DeployPhase.RESERVING)
            instance = self.reservations.reserve(
                ds.agent_name, region=ds.region, server_type=ds.server_type,
                config=config, soul=soul, access_token=token, mode="deploy",
            )
            outcome = DeployOutcome(instance=instance, phase=DeployPhase.RESERVING)
            self._remember(instance)

            log.info(f"\n[2/5] Waiting for server {instance.id} to come online...")
            self.reservations.wait_for_address(instance, s.address_attempts, s.address_interval, deadline)
            self._remember(instance)
            wait_for_boot(self.open_shell, instance.public_address, s.boot_attempts, s.boot_interval, deadline)

            log.info(f"\n[3/5] Applying settings to {instance.domain}...")
            instance.state = InstanceState.CONFIGURING
            outcome.applied, outcome.errors = self._apply_config(
                instance, changes, soul, env, deadline, strict=True, outcome=outcome,
            )
            if not outcome.applied["running"]:
                raise ProvisioningError("Gateway is not running after restart")

            log.info(f"\n[4/5] Waiting for {instance.domain} to answer...")
            self._poll(instance, outcome, deadline)

            log.info(f"\n[5/5] Done: {outcome.dashboard_url}")
            instance.state = InstanceState.READY
            self._enter(outcome, DeployPhase.READY)
            return outcome
        except DeployFailed:
            raise
        except Exception as exc:
            raise self._fail(instance, exc) from exc

    def status(self, instance_id, domain: str | None = None) -> dict:
        with self._converted("status"):
            server = self.hetzner.get_server(instance_id)
            if not server:
                raise ProviderError(f"Server {instance_id} not found", status_code=404)
            labels = server.get("labels") or {}
            subdomain = labels.get("subdomain") or self.settings.subdomain_from_hostname(server.get("name", ""))
            domain = domain or self.settings.domain_for(subdomain)
            address = server_address(server)
            token = self._cached_token(instance_id)
            ready = self.probe.probe_once(health_urls(domain, address, self.settings.gateway_port), token) is not None
        return {
            "id": server.get("id", instance_id),
            "name": server.get("name"),
            "providerStatus": server.get("status"),
            "publicAddress": address or "pending",
            "domain": domain,
            "ready": ready,
        }

    def list_instances(self) -> list[dict]:
        """Every server this tool created, found by its managed-by label."""
        with self._converted("list"):
            servers = self.hetzner.list_servers(f"managed-by={MANAGED_BY}")
        instances = []
        for server in servers:
            labels = server.get("labels") or {}
            subdomain = labels.get("subdomain") or self.settings.subdomain_from_hostname(server.get("name", ""))
            instances.append({
                "id": server.get("id"),
                "name": server.get("name"),
                "providerStatus": server.get("status"),
                "publicAddress": server_address(server) or "pending",
                "domain": self.settings.domain_for(subdomain),
            })
        return instances

    def restart(self, instance_id) -> dict:
        with self._converted("restart"):
            server = self.hetzner.get_server(instance_id)
            address = server_address(server)
            if not address:
                raise ProviderError(f"Server {instance_id} has no public address yet")
            log.info(f"  Restarting gateway on {server.get('name')} ({address})...")
            with self.locks.hold(instance_id), self.open_shell(address) as shell:
                supervisor = self._supervisor(shell)
                supervisor.restart()
                running = supervisor.is_running()
        return {"id": instance_id, "restarted": True, "running": running}

    def configure_channel(self, record, channel: str, config: dict) -> dict:
        """Enable one messaging channel beside whatever is already configured."""
        with self._converted("channel"):
            instance = self._as_instance(record)
            changes = channel_changes(channel, config, self.settings.slack_app_token)
            with self.locks.hold(instance.id):
                host = self._host_for(instance)
                with self.open_shell(host) as shell:
                    store = RemoteConfigStore(shell)
                    store.write(merge_document(store.read(), changes))
                    supervisor = self._supervisor(shell)
                    supervisor.restart()
                    running = supervisor.is_running()
        log.info(f"  {channel} enabled on {instance.domain}")
        return {"channel": channel, "success": True, "running": running}

    def destroy(self, instance_id) -> dict:
        """Delete the server, then its DNS records (best effort, errors reported)."""
        with self._converted("destroy"):
            server = self.hetzner.get_server(instance_id)
            if not server:
                raise ProviderError(f"Server {instance_id} not found", status_code=404)
            hostname = server.get("name", "")
            subdomain = (server.get("labels") or {}).get("subdomain") or self.settings.subdomain_from_hostname(hostname)
            self.hetzner.delete_server(instance_id)
        self.store.evict(f"instance:{instance_id}")

        removed, dns_errors = [], []
        if self.dns.configured:
            for name in dict.fromkeys((subdomain, hostname)):
                try:
                    if self.dns.delete_records(name):
                        removed.append(self.dns.fqdn(name))
                except ProviderError as exc:
                    log.warning(f"  DNS cleanup for {name} failed: {exc}")
                    dns_errors.append(f"{name}: {exc}")
        return {
            "deleted": {"id": server.get("id", instance_id), "server": hostname},
            "dnsCleanup": removed,
            "dnsErrors": dns_errors,
        }

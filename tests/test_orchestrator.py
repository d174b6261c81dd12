"""Tests for deep_signal.provisioning.orchestrator."""

from __future__ import annotations

import json
import threading

import pytest

from deep_signal.provisioning.config_store import CONFIG_PATH, SOUL_PATH
from deep_signal.provisioning.deadline import Deadline
from deep_signal.provisioning.errors import (
    Cancelled,
    DeployFailed,
    FailureKind,
    InvalidRequest,
    ProviderError,
    ProvisioningError,
    RateLimited,
    ReadinessTimeout,
    Recovery,
)
from deep_signal.provisioning.orchestrator import DeployPhase, InstanceLocks
from deep_signal.provisioning.rate_limit import RateLimiter
from deep_signal.provisioning.reservation import InstanceState
from deep_signal.provisioning.supervisor import DROPIN_DIR

from fakes import FakeRemoteHost, FakeResponse, FakeSession

ADDRESS = "203.0.113.10"
DOMAIN = "acme-corp.ds.jgiebz.com"

EXISTING = {
    "channels": {"telegram": {"enabled": True, "botToken": "tg-123"}},
    "custom": {"keep": 1},
}


def slow_health_session() -> FakeSession:
    """DNS works but the gateway never answers."""
    return FakeSession({
        ("GET", "/dns_records"): FakeResponse(200, {"success": True, "result": []}),
        ("POST", "/dns_records"): FakeResponse(200, {"success": True, "result": {"id": "rec1"}}),
        ("GET", "/health"): FakeResponse(503, text=""),
    })


@pytest.fixture
def orch(make_orchestrator):
    return make_orchestrator()


@pytest.fixture
def reserved(orch, shells):
    """A reserved Acme Corp instance whose host already runs Telegram."""
    instance = orch.reserve("Acme Corp")
    shells.hosts[ADDRESS] = FakeRemoteHost(files={CONFIG_PATH: json.dumps(EXISTING)})
    return instance


# =============================================================================
# Reserve
# =============================================================================

class TestReserve:
    """Tests for Orchestrator.reserve."""

    def test_reserve_remembers_and_binds_dns(self, orch, healthy_session) -> None:
        instance = orch.reserve("Acme Corp")
        assert instance.domain == DOMAIN
        assert orch.store.get(f"instance:{instance.id}")["accessToken"] == instance.access_token
        orch.background.shutdown(wait=True)
        _, _, kwargs = healthy_session.calls_to("POST", "/dns_records")[0]
        assert kwargs["json"]["name"] == DOMAIN
        assert kwargs["json"]["content"] == ADDRESS

    def test_rate_limited_per_origin(self, make_orchestrator) -> None:
        orch = make_orchestrator(rate_limiter=RateLimiter(1, 3600))
        orch.reserve("One", origin="198.51.100.1")
        with pytest.raises(RateLimited):
            orch.reserve("Two", origin="198.51.100.1")
        orch.reserve("Three", origin="198.51.100.2")


# =============================================================================
# Fast path
# =============================================================================

class TestConfigure:
    """Tests for the fast path: configure a reserved instance."""

    def test_slack_is_merged_beside_telegram(self, orch, reserved, shells) -> None:
        outcome = orch.configure(reserved.to_record(), {
            "agentName": "Acme Corp",
            "provider": "anthropic",
            "apiKey": "sk-ant",
            "channels": {"slack": {"botToken": "xoxb-1", "appToken": "xapp-1"}},
        })
        host = shells.host(ADDRESS)
        config = host.config()
        assert set(config["channels"]) == {"telegram", "slack"}
        assert config["channels"]["telegram"]["botToken"] == "tg-123"
        assert config["custom"] == {"keep": 1}
        assert config["gateway"]["auth"]["token"] == reserved.access_token
        assert config["env"] == {"ANTHROPIC_API_KEY": "sk-ant"}
        assert "Acme Corp" in host.files[SOUL_PATH]
        assert f"{DROPIN_DIR}/env-anthropic_api_key.conf" in host.files
        assert host.restarts == 1

        assert outcome.ready is True
        assert outcome.phase is DeployPhase.READY
        assert outcome.errors == []
        assert outcome.applied == {"config": True, "soul": True, "apiKey": True, "restarted": True, "running": True}
        assert outcome.dashboard_url == f"https://{DOMAIN}"
        assert outcome.instance.state is InstanceState.READY

    def test_channel_only_payload_uses_reserved_name(self, orch, reserved, shells) -> None:
        outcome = orch.configure(reserved.to_record(), {"channels": {"slack": {"enabled": True, "botToken": "xoxb-test"}}})
        host = shells.host(ADDRESS)
        channels = host.config()["channels"]
        assert set(channels) == {"telegram", "slack"}
        assert channels["slack"]["botToken"] == "xoxb-test"
        assert channels["telegram"]["botToken"] == "tg-123"
        assert host.files[SOUL_PATH].startswith("# acme-corp - Your AI Assistant")
        assert outcome.ready is True
        assert outcome.errors == []

    def test_outcome_dict_reports_configured(self, orch, reserved, shells) -> None:
        outcome = orch.configure(reserved.to_record(), {"agentName": "Acme Corp"})
        assert outcome.to_dict()["configured"] is True
        shells.host(ADDRESS).fail.add("write")
        outcome = orch.configure(reserved.to_record(), {"agentName": "Acme Corp"})
        assert outcome.to_dict()["configured"] is False
        assert outcome.to_dict()["ready"] is True

    def test_rerun_is_idempotent(self, orch, reserved, shells) -> None:
        settings = {"agentName": "Acme Corp", "skills": ["github"]}
        orch.configure(reserved.to_record(), settings)
        first = shells.host(ADDRESS).config()
        orch.configure(reserved.to_record(), settings)
        assert shells.host(ADDRESS).config() == first

    def test_write_failure_is_not_fatal(self, orch, reserved, shells) -> None:
        shells.host(ADDRESS).fail.add("write")
        outcome = orch.configure(reserved.to_record(), {"agentName": "Acme Corp"})
        assert outcome.ready is True
        assert outcome.applied["config"] is False
        assert outcome.applied["restarted"] is True
        assert [e.split(":", 1)[0] for e in outcome.errors] == ["config", "soul"]
        assert outcome.instance.errors == outcome.errors

    def test_unreachable_host_is_not_fatal(self, orch, reserved, shells) -> None:
        shells.host(ADDRESS).unreachable = True
        outcome = orch.configure(reserved.to_record(), {"agentName": "Acme Corp"})
        assert outcome.ready is True
        assert outcome.errors == ["remote: connection refused"]
        assert not any(outcome.applied[k] for k in ("config", "soul", "restarted", "running"))

    def test_gateway_down_after_restart_is_reported(self, orch, reserved, shells) -> None:
        shells.host(ADDRESS).running = False
        outcome = orch.configure(reserved.to_record(), {"agentName": "Acme Corp"})
        assert outcome.applied["running"] is False
        assert outcome.errors == ["running: gateway not reported active after restart"]

    def test_uses_domain_when_address_pending(self, orch, reserved, shells) -> None:
        record = dict(reserved.to_record(), publicAddress="pending")
        shells.hosts["198.51.100.20"] = shells.host(ADDRESS)
        orch.configure(record, {"agentName": "Acme Corp"})
        assert shells.opened == ["198.51.100.20"]

    def test_poll_timeout_falls_back_to_direct_url(self, make_orchestrator, shells) -> None:
        orch = make_orchestrator(session=slow_health_session())
        instance = orch.reserve("Acme Corp")
        outcome = orch.configure(instance.to_record(), {"agentName": "Acme Corp"})
        assert outcome.ready is True
        assert outcome.timed_out is True
        assert outcome.dashboard_url == f"http://{ADDRESS}:3000"

    def test_poll_timeout_with_fail_policy(self, make_orchestrator) -> None:
        orch = make_orchestrator(session=slow_health_session(), policy="fail")
        instance = orch.reserve("Acme Corp")
        with pytest.raises(DeployFailed) as excinfo:
            orch.configure(instance.to_record(), {"agentName": "Acme Corp"})
        assert isinstance(excinfo.value.cause, ReadinessTimeout)
        assert excinfo.value.instance.state is InstanceState.FAILED

    def test_invalid_channel_is_rejected_before_remote_work(self, orch, reserved, shells) -> None:
        with pytest.raises(DeployFailed, match="Invalid channel"):
            orch.configure(reserved.to_record(), {"agentName": "Acme", "channels": {"irc": {"botToken": "x"}}})
        assert shells.opened == []

    def test_cancelled(self, orch, reserved) -> None:
        deadline = Deadline()
        deadline.cancel()
        with pytest.raises(DeployFailed) as excinfo:
            orch.configure(reserved.to_record(), {"agentName": "Acme Corp"}, deadline=deadline)
        assert isinstance(excinfo.value.cause, Cancelled)

    def test_phases(self, make_orchestrator, shells) -> None:
        phases: list[DeployPhase] = []
        orch = make_orchestrator(on_phase=phases.append)
        instance = orch.reserve("Acme Corp")
        orch.configure(instance.to_record(), {"agentName": "Acme Corp"})
        assert phases == [
            DeployPhase.APPLYING_CONFIG,
            DeployPhase.RESTARTING,
            DeployPhase.POLLING_READY,
            DeployPhase.READY,
        ]


# =============================================================================
# Slow path
# =============================================================================

class TestDeploy:
    """Tests for the slow path: deploy without a reservation."""

    def test_creates_and_configures(self, make_orchestrator, hetzner, shells) -> None:
        phases: list[DeployPhase] = []
        orch = make_orchestrator(on_phase=phases.append)
        outcome = orch.deploy({"agentName": "Acme Corp", "skills": ["deep-research"]})

        assert outcome.ready is True
        assert outcome.instance.state is InstanceState.READY
        assert hetzner.created[0]["labels"]["mode"] == "deploy"
        user_data = hetzner.created[0]["user_data"]
        assert outcome.instance.access_token in user_data

        config = shells.host(ADDRESS).config()
        assert config["gateway"]["auth"]["token"] == outcome.instance.access_token
        assert "research" in config["skills"]["entries"]
        assert phases == [
            DeployPhase.RESERVING,
            DeployPhase.APPLYING_CONFIG,
            DeployPhase.RESTARTING,
            DeployPhase.POLLING_READY,
            DeployPhase.READY,
        ]

    def test_with_reservation_takes_fast_path(self, orch, reserved, hetzner) -> None:
        outcome = orch.deploy({"agentName": "Acme Corp"}, reservation=reserved.to_record())
        assert outcome.ready is True
        assert len(hetzner.created) == 1

    def test_fast_path_without_agent_name(self, orch, reserved, hetzner) -> None:
        outcome = orch.deploy({"provider": "free"}, reservation=reserved.to_record())
        assert outcome.ready is True
        assert outcome.instance.state is InstanceState.READY
        assert len(hetzner.created) == 1

    def test_slow_path_requires_agent_name(self, orch, hetzner) -> None:
        with pytest.raises(DeployFailed) as excinfo:
            orch.deploy({"provider": "free"})
        assert isinstance(excinfo.value.cause, InvalidRequest)
        assert hetzner.created == []

    def test_write_failure_is_fatal(self, orch, hetzner, shells) -> None:
        shells.host(ADDRESS).fail.add("write")
        with pytest.raises(DeployFailed) as excinfo:
            orch.deploy({"agentName": "Acme Corp"})
        failure = excinfo.value
        assert failure.kind is FailureKind.GENERIC
        assert failure.recovery is Recovery.RETRY
        assert failure.instance.state is InstanceState.FAILED
        assert failure.to_dict()["instance"]["domain"] == DOMAIN

    def test_gateway_not_running_is_fatal(self, orch, shells) -> None:
        shells.host(ADDRESS).running = False
        with pytest.raises(DeployFailed, match="not running"):
            orch.deploy({"agentName": "Acme Corp"})

    def test_capacity(self, orch, hetzner) -> None:
        hetzner.create_error = ProviderError("server limit reached (resource_limit_exceeded)", status_code=403)
        with pytest.raises(DeployFailed) as excinfo:
            orch.deploy({"agentName": "Acme Corp"})
        assert excinfo.value.kind is FailureKind.CAPACITY
        assert excinfo.value.recovery is Recovery.RETRY
        assert excinfo.value.instance is None

    def test_paid_provider_without_key(self, orch, hetzner) -> None:
        with pytest.raises(DeployFailed) as excinfo:
            orch.deploy({"agentName": "Acme Corp", "provider": "openai"})
        assert excinfo.value.kind is FailureKind.AUTH_REQUIRED
        assert excinfo.value.recovery is Recovery.USE_FREE_TIER
        assert hetzner.created == []

    def test_no_ssh_key(self, orch, hetzner) -> None:
        hetzner.ssh_keys = []
        with pytest.raises(DeployFailed) as excinfo:
            orch.deploy({"agentName": "Acme Corp"})
        assert excinfo.value.recovery is Recovery.CONTACT_SUPPORT

    def test_rate_limited(self, make_orchestrator, hetzner) -> None:
        orch = make_orchestrator(rate_limiter=RateLimiter(1, 3600))
        orch.deploy({"agentName": "One"}, origin="198.51.100.1")
        with pytest.raises(DeployFailed) as excinfo:
            orch.deploy({"agentName": "Two"}, origin="198.51.100.1")
        assert isinstance(excinfo.value.cause, RateLimited)
        assert len(hetzner.created) == 1

    def test_failed_phase_is_reported(self, make_orchestrator, hetzner) -> None:
        phases: list[DeployPhase] = []
        orch = make_orchestrator(on_phase=phases.append)
        hetzner.ssh_keys = []
        with pytest.raises(DeployFailed):
            orch.deploy({"agentName": "Acme Corp"})
        assert phases == [DeployPhase.RESERVING, DeployPhase.FAILED]


# =============================================================================
# Operations on existing instances
# =============================================================================

class TestOperations:
    """Tests for status, restart, configure_channel and destroy."""

    def test_status(self, orch, reserved, healthy_session) -> None:
        status = orch.status(reserved.id)
        assert status == {
            "id": reserved.id,
            "name": "deepsignal-acme-corp",
            "providerStatus": "initializing",
            "publicAddress": ADDRESS,
            "domain": DOMAIN,
            "ready": True,
        }
        _, _, kwargs = healthy_session.calls_to("GET", "/health")[-1]
        assert kwargs["headers"] == {"Authorization": f"Bearer {reserved.access_token}"}

    def test_status_unknown_server(self, orch) -> None:
        with pytest.raises(ProviderError):
            orch.status(999)

    def test_unexpected_error_is_wrapped(self, orch, reserved, hetzner, monkeypatch) -> None:
        def broken(server_id):
            raise KeyError("public_net")

        monkeypatch.setattr(hetzner, "get_server", broken)
        with pytest.raises(ProvisioningError, match="status failed") as excinfo:
            orch.status(reserved.id)
        assert isinstance(excinfo.value.__cause__, KeyError)

    def test_reserve_wraps_unexpected_error(self, orch, hetzner, monkeypatch) -> None:
        monkeypatch.setattr(hetzner, "list_ssh_keys", lambda: [{"name": "deepsignal"}])
        with pytest.raises(ProvisioningError, match="reserve failed") as excinfo:
            orch.reserve("Acme Corp")
        assert isinstance(excinfo.value.__cause__, KeyError)

    def test_list_instances(self, orch, hetzner) -> None:
        first = orch.reserve("Acme Corp")
        orch.reserve("Globex")
        hetzner.servers[5] = {"id": 5, "name": "unrelated", "status": "running", "labels": {}, "public_net": {}}
        instances = orch.list_instances()
        assert [i["id"] for i in instances] == [first.id, first.id + 1]
        assert instances[0] == {
            "id": first.id,
            "name": "deepsignal-acme-corp",
            "providerStatus": "initializing",
            "publicAddress": ADDRESS,
            "domain": DOMAIN,
        }
        assert instances[1]["domain"] == "globex.ds.jgiebz.com"

    def test_restart(self, orch, reserved, shells) -> None:
        assert orch.restart(reserved.id) == {"id": reserved.id, "restarted": True, "running": True}
        assert shells.host(ADDRESS).restarts == 1

    def test_configure_channel(self, orch, reserved, shells) -> None:
        result = orch.configure_channel(reserved.to_record(), "slack", {"botToken": "xoxb-1"})
        assert result == {"channel": "slack", "success": True, "running": True}
        assert set(shells.host(ADDRESS).config()["channels"]) == {"telegram", "slack"}

    def test_configure_channel_rejects_manual_channels(self, orch, reserved, shells) -> None:
        with pytest.raises(InvalidRequest, match="not yet automated"):
            orch.configure_channel(reserved.to_record(), "whatsapp", {"botToken": "x"})
        assert shells.opened == []

    def test_concurrent_channels_keep_each_other(self, orch, reserved, shells) -> None:
        record = reserved.to_record()
        threads = [
            threading.Thread(target=orch.configure_channel, args=(record, channel, {"botToken": channel}))
            for channel in ("slack", "discord")
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert set(shells.host(ADDRESS).config()["channels"]) == {"telegram", "slack", "discord"}

    def test_destroy_cleans_dns(self, make_orchestrator, hetzner) -> None:
        session = FakeSession({
            ("GET", "/dns_records"): FakeResponse(200, {"success": True, "result": [{"id": "r1"}]}),
            ("PUT", "/dns_records/r1"): FakeResponse(200, {"success": True, "result": {"id": "r1"}}),
            ("DELETE", "/dns_records/r1"): FakeResponse(200, {"success": True}),
            ("GET", "/health"): FakeResponse(200, {}),
        })
        orch = make_orchestrator(session=session)
        instance = orch.reserve("Acme Corp")
        result = orch.destroy(instance.id)
        assert result["deleted"] == {"id": instance.id, "server": "deepsignal-acme-corp"}
        assert result["dnsCleanup"] == [DOMAIN, "deepsignal-acme-corp.ds.jgiebz.com"]
        assert result["dnsErrors"] == []
        assert hetzner.deleted == [instance.id]
        assert orch.store.get(f"instance:{instance.id}") is None

    def test_destroy_reports_dns_errors(self, make_orchestrator, hetzner) -> None:
        session = FakeSession({
            ("GET", "/dns_records"): FakeResponse(500, {"success": False, "errors": [{"message": "boom"}]}),
        })
        orch = make_orchestrator(session=session)
        instance = orch.reserve("Acme Corp")
        result = orch.destroy(instance.id)
        assert hetzner.deleted == [instance.id]
        assert result["dnsCleanup"] == []
        assert len(result["dnsErrors"]) == 2


class TestInstanceLocks:
    def test_same_lock_for_same_id(self) -> None:
        locks = InstanceLocks()
        assert locks.lock_for(1001) is locks.lock_for("1001")
        assert locks.lock_for(1001) is not locks.lock_for(1002)

    def test_hold(self) -> None:
        locks = InstanceLocks()
        with locks.hold("a"):
            assert locks.lock_for("a").locked()
        assert not locks.lock_for("a").locked()

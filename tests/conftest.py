"""Shared fixtures for the provisioning tests."""

from __future__ import annotations

import pytest

from deep_signal.provisioning.background import BackgroundTasks
from deep_signal.provisioning.dns import CloudflareDns
from deep_signal.provisioning.orchestrator import Orchestrator
from deep_signal.provisioning.readiness import ReadinessProbe
from deep_signal.provisioning.settings import Settings

from fakes import FakeHetzner, FakeRemoteHost, FakeResponse, FakeSession, FakeShellFactory


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings() -> Settings:
    return Settings(
        hetzner_api_token="htoken",
        cloudflare_api_token="cftoken",
        cloudflare_zone_id="zone123",
        restart_settle=0,
        poll_attempts=3,
        poll_interval=0,
        address_attempts=3,
        address_interval=0,
        boot_attempts=3,
        boot_interval=0,
    )


@pytest.fixture
def remote() -> FakeRemoteHost:
    return FakeRemoteHost()


@pytest.fixture
def shells() -> FakeShellFactory:
    return FakeShellFactory()


@pytest.fixture
def hetzner() -> FakeHetzner:
    return FakeHetzner()


@pytest.fixture
def healthy_session() -> FakeSession:
    """Cloudflare has no records yet; every health endpoint answers 200."""
    return FakeSession({
        ("GET", "/dns_records"): FakeResponse(200, {"success": True, "result": []}),
        ("POST", "/dns_records"): FakeResponse(200, {"success": True, "result": {"id": "rec1"}}),
        ("GET", "/health"): FakeResponse(200, {"status": "ok"}),
    })


@pytest.fixture
def background():
    tasks = BackgroundTasks(max_workers=2)
    yield tasks
    tasks.shutdown(wait=True)


@pytest.fixture
def make_orchestrator(settings, hetzner, shells, healthy_session, background):
    def make(session: FakeSession | None = None, policy: str = "assume_ready", **kwargs) -> Orchestrator:
        session = session or healthy_session
        return Orchestrator(
            settings,
            hetzner=hetzner,
            dns=CloudflareDns(
                settings.cloudflare_api_token, settings.cloudflare_zone_id, settings.domain_suffix,
                session=session,
            ),
            probe=ReadinessProbe(attempts=settings.poll_attempts, interval=0, policy=policy, session=session),
            open_shell=shells,
            background=background,
            resolve=lambda domain: "198.51.100.20",
            sleep=lambda seconds: None,
            **kwargs,
        )
    return make

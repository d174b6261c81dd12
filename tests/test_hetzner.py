"""Tests for deep_signal.provisioning.hetzner."""

from __future__ import annotations

import pytest
import requests

from deep_signal.provisioning.errors import (
    FailureKind,
    PreconditionError,
    ProviderError,
    ProviderUnreachable,
    classify,
)
from deep_signal.provisioning.hetzner import HetznerClient, server_address

from fakes import FakeResponse, FakeSession

SERVER = {
    "id": 42,
    "name": "deepsignal-acme-corp",
    "status": "initializing",
    "public_net": {"ipv4": {"ip": "203.0.113.10"}},
}


def client(routes: dict) -> tuple[HetznerClient, FakeSession]:
    session = FakeSession(routes)
    return HetznerClient("htoken", session=session), session


class TestHetznerClient:
    """Tests for HetznerClient."""

    def test_create_server_request_shape(self) -> None:
        hc, session = client({("POST", "/servers"): FakeResponse(201, {"server": SERVER})})
        server = hc.create_server(
            name="deepsignal-acme-corp",
            server_type="cpx21",
            location="ash",
            image="ubuntu-24.04",
            user_data="#!/bin/bash",
            ssh_keys=[7],
            labels={"managed-by": "deep-signal"},
        )
        assert server["id"] == 42
        method, url, kwargs = session.calls[0]
        assert (method, url) == ("POST", "https://api.hetzner.cloud/v1/servers")
        assert kwargs["headers"]["Authorization"] == "Bearer htoken"
        assert kwargs["timeout"] == 30
        assert kwargs["json"] == {
            "name": "deepsignal-acme-corp",
            "server_type": "cpx21",
            "location": "ash",
            "image": "ubuntu-24.04",
            "ssh_keys": [7],
            "user_data": "#!/bin/bash",
            "start_after_create": True,
            "labels": {"managed-by": "deep-signal"},
        }

    def test_list_ssh_keys(self) -> None:
        hc, _ = client({("GET", "/ssh_keys"): FakeResponse(200, {"ssh_keys": [{"id": 1, "name": "k"}]})})
        assert hc.list_ssh_keys() == [{"id": 1, "name": "k"}]

    def test_get_and_delete_server(self) -> None:
        hc, session = client({
            ("GET", "/servers/42"): FakeResponse(200, {"server": SERVER}),
            ("DELETE", "/servers/42"): FakeResponse(204, text=""),
        })
        assert hc.get_server(42)["name"] == "deepsignal-acme-corp"
        hc.delete_server(42)
        assert session.calls_to("DELETE", "/servers/42")

    def test_http_error_keeps_provider_message(self) -> None:
        body = {"error": {"code": "resource_limit_exceeded", "message": "server limit reached"}}
        hc, _ = client({("POST", "/servers"): FakeResponse(403, body)})
        with pytest.raises(ProviderError) as excinfo:
            hc.create_server("n", "cpx21", "ash", "ubuntu-24.04", "", [1], {})
        assert excinfo.value.status_code == 403
        assert "server limit reached" in str(excinfo.value)
        assert classify(excinfo.value) is FailureKind.CAPACITY

    def test_non_json_error_body(self) -> None:
        hc, _ = client({("GET", "/ssh_keys"): FakeResponse(502, text="Bad Gateway")})
        with pytest.raises(ProviderError, match="Bad Gateway"):
            hc.list_ssh_keys()

    def test_non_json_success_body(self) -> None:
        hc, _ = client({("GET", "/ssh_keys"): FakeResponse(200, text="<html>gateway</html>")})
        with pytest.raises(ProviderError, match="non-JSON body") as excinfo:
            hc.list_ssh_keys()
        assert excinfo.value.status_code == 200
        assert isinstance(excinfo.value.__cause__, ValueError)

    def test_list_servers_by_label(self) -> None:
        hc, session = client({("GET", "/servers"): FakeResponse(200, {"servers": [SERVER]})})
        assert hc.list_servers("managed-by=deep-signal") == [SERVER]
        _, _, kwargs = session.calls_to("GET", "/servers")[0]
        assert kwargs["params"] == {"label_selector": "managed-by=deep-signal"}

    def test_connection_error_is_unreachable(self) -> None:
        hc, _ = client({("GET", "/ssh_keys"): requests.ConnectionError("no route")})
        with pytest.raises(ProviderUnreachable):
            hc.list_ssh_keys()

    def test_missing_token(self) -> None:
        hc = HetznerClient("", session=FakeSession())
        with pytest.raises(PreconditionError, match="HETZNER_API_TOKEN"):
            hc.list_ssh_keys()


class TestServerAddress:
    def test_address_present(self) -> None:
        assert server_address(SERVER) == "203.0.113.10"

    @pytest.mark.parametrize("server", [{}, {"public_net": {"ipv4": None}}, {"public_net": {"ipv4": {"ip": ""}}}])
    def test_pending(self, server: dict) -> None:
        assert server_address(server) is None

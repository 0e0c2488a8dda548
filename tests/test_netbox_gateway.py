"""Unit tests for NetboxRegistryGateway."""

import socket
from http.client import RemoteDisconnected
from typing import List
from unittest.mock import MagicMock, patch

import pytest
import requests
from urllib3.exceptions import MaxRetryError, NewConnectionError, ProtocolError

from service_netbox_syncer.cli import (
    AddressResolutionFailed,
    NetboxRegistryGateway,
    ObservedService,
    PrefixRecord,
    RegistryCreateFailed,
    RegistryError,
)

PREFIXES_URL = "http://netbox.local/api/ipam/prefixes/"


def make_gateway(resolved: List[str] | None = None, **kwargs) -> NetboxRegistryGateway:
    def resolver(hostname: str) -> List[str]:
        if resolved is None:
            raise AddressResolutionFailed(hostname, socket.gaierror("Name or service not known"))
        return list(resolved)

    return NetboxRegistryGateway(
        url="http://netbox.local/",
        token="s3cr3t",
        cluster="prod",
        custom_fields={"owner": "platform"},
        resolver=resolver,
        **kwargs,
    )


def ok_response(body: object = None) -> MagicMock:
    response = MagicMock()
    response.raise_for_status = MagicMock()
    response.json.return_value = body
    return response


def http_error_response(status: int) -> MagicMock:
    response = MagicMock()
    response.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status} Error")
    return response


WEB = ObservedService(name="web", namespace="apps", external_address="198.51.100.7")
API = ObservedService(name="api", namespace="apps", external_address="svc.example.com")


class TestNetboxConnection:
    """Tests for NetBox connection functionality."""

    def test_test_connection_success(self) -> None:
        """Test successful status call returns True."""
        gateway = make_gateway()

        with patch.object(gateway._session, "get") as mock_get:
            mock_get.return_value = ok_response({"netbox-version": "4.1"})

            assert gateway.test_connection() is True
            mock_get.assert_called_once_with("http://netbox.local/api/status/", timeout=10.0)

    def test_test_connection_failure(self) -> None:
        """Test connection failure returns False."""
        gateway = make_gateway()

        with patch.object(gateway._session, "get") as mock_get:
            mock_get.side_effect = requests.exceptions.ConnectionError("Connection refused")

            assert gateway.test_connection() is False

    def test_session_sends_token_header(self) -> None:
        """Test the API token is sent with every request."""
        gateway = make_gateway()

        assert gateway._session.headers["Authorization"] == "Token s3cr3t"

    def test_session_honours_verify_tls(self) -> None:
        """Test TLS verification follows the constructor flag."""
        assert make_gateway(verify_tls=False)._session.verify is False


class TestNetboxAddPrefix:
    """Tests for single prefix creation."""

    def test_add_prefix_posts_payload_and_returns_id(self) -> None:
        """Test add_prefix sends the NetBox prefix payload."""
        gateway = make_gateway()

        with patch.object(gateway._session, "post") as mock_post:
            mock_post.return_value = ok_response({"id": 42, "prefix": "198.51.100.7/32"})

            record_id = gateway.add_prefix("198.51.100.7/32", WEB)

            assert record_id == 42
            mock_post.assert_called_once_with(
                PREFIXES_URL,
                timeout=10.0,
                json={
                    "prefix": "198.51.100.7/32",
                    "description": "198.51.100.7-web-apps-prod",
                    "status": "active",
                    "is_pool": False,
                    "mark_utilized": True,
                    "custom_fields": {"owner": "platform"},
                },
            )

    def test_add_prefix_describes_resolved_hostname(self) -> None:
        """Test DNS-expanded prefixes mention both the IP and the hostname."""
        gateway = make_gateway()

        with patch.object(gateway._session, "post") as mock_post:
            mock_post.return_value = ok_response({"id": 43})

            gateway.add_prefix("203.0.113.5/32", API)

            payload = mock_post.call_args.kwargs["json"]
            assert payload["description"] == "203.0.113.5-svc.example.com-api-apps-prod"

    def test_add_prefix_raises_on_http_error(self) -> None:
        """Test HTTP errors raise RegistryError without retrying."""
        gateway = make_gateway()

        with patch.object(gateway._session, "post") as mock_post:
            mock_post.return_value = http_error_response(400)

            with pytest.raises(RegistryError):
                gateway.add_prefix("198.51.100.7/32", WEB)
            assert mock_post.call_count == 1

    def test_add_prefix_raises_when_id_missing(self) -> None:
        """Test a response without an integer id is rejected."""
        gateway = make_gateway()

        with patch.object(gateway._session, "post") as mock_post:
            mock_post.return_value = ok_response({"detail": "ok"})

            with pytest.raises(RegistryError):
                gateway.add_prefix("198.51.100.7/32", WEB)

    def test_add_prefix_raises_on_invalid_json(self) -> None:
        """Test a non-JSON response is rejected."""
        gateway = make_gateway()

        with patch.object(gateway._session, "post") as mock_post:
            response = ok_response()
            response.json.side_effect = ValueError("Expecting value")
            mock_post.return_value = response

            with pytest.raises(RegistryError):
                gateway.add_prefix("198.51.100.7/32", WEB)


class TestNetboxDeletePrefix:
    """Tests for prefix deletion."""

    def test_delete_prefix_success(self) -> None:
        """Test delete_prefix issues DELETE on the prefix URL."""
        gateway = make_gateway()

        with patch.object(gateway._session, "delete") as mock_delete:
            mock_delete.return_value = ok_response()

            gateway.delete_prefix(42)

            mock_delete.assert_called_once_with(f"{PREFIXES_URL}42/", timeout=10.0)

    def test_delete_prefix_raises_on_http_error(self) -> None:
        """Test a 404 on delete is reported as a registry error."""
        gateway = make_gateway()

        with patch.object(gateway._session, "delete") as mock_delete:
            mock_delete.return_value = http_error_response(404)

            with pytest.raises(RegistryError):
                gateway.delete_prefix(42)


class TestNetboxRetryBehavior:
    """Tests for retry behavior on transient connection failures."""

    def test_request_retries_on_connection_error(self) -> None:
        """Test a dropped connection is retried and then succeeds."""
        gateway = make_gateway(max_retries=3)
        calls = 0

        def flaky_delete(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls < 2:
                raise requests.exceptions.ConnectionError("Connection refused")
            return ok_response()

        with patch.object(gateway._session, "delete", side_effect=flaky_delete):
            with patch("service_netbox_syncer.cli.time.sleep") as mock_sleep:
                gateway.delete_prefix(42)

        assert calls == 2
        mock_sleep.assert_called_once_with(1)

    def test_request_gives_up_after_max_retries(self) -> None:
        """Test persistent connection errors raise after the last attempt."""
        gateway = make_gateway(max_retries=3)

        with patch.object(gateway._session, "delete") as mock_delete:
            mock_delete.side_effect = requests.exceptions.ConnectionError("Connection refused")
            with patch("service_netbox_syncer.cli.time.sleep"):
                with pytest.raises(RegistryError):
                    gateway.delete_prefix(42)

            assert mock_delete.call_count == 3

    def test_request_does_not_retry_timeouts(self) -> None:
        """Test read timeouts are not retried, the create may have landed."""
        gateway = make_gateway(max_retries=3)

        with patch.object(gateway._session, "post") as mock_post:
            mock_post.side_effect = requests.exceptions.ReadTimeout("timed out")

            with pytest.raises(RegistryError):
                gateway.add_prefix("198.51.100.7/32", WEB)
            assert mock_post.call_count == 1

    def test_post_is_not_retried_after_connection_abort(self) -> None:
        """Test an aborted POST is not repeated, the prefix may already exist."""
        gateway = make_gateway(max_retries=3)
        aborted = requests.exceptions.ConnectionError(
            ProtocolError("Connection aborted.", RemoteDisconnected("closed without response"))
        )

        with patch.object(gateway._session, "post") as mock_post:
            mock_post.side_effect = aborted
            with patch("service_netbox_syncer.cli.time.sleep") as mock_sleep:
                with pytest.raises(RegistryError):
                    gateway.add_prefix("198.51.100.7/32", WEB)

            assert mock_post.call_count == 1
            mock_sleep.assert_not_called()

    def test_post_is_retried_when_connection_was_refused(self) -> None:
        """Test a POST that never reached NetBox is retried."""
        gateway = make_gateway(max_retries=3)
        refused = requests.exceptions.ConnectionError(
            MaxRetryError(None, "/api/ipam/prefixes/", NewConnectionError(None, "Connection refused"))
        )

        with patch.object(gateway._session, "post") as mock_post:
            mock_post.side_effect = [refused, ok_response({"id": 42})]
            with patch("service_netbox_syncer.cli.time.sleep"):
                assert gateway.add_prefix("198.51.100.7/32", WEB) == 42

            assert mock_post.call_count == 2

    def test_post_is_retried_on_connect_timeout(self) -> None:
        """Test a POST that timed out while connecting is retried."""
        gateway = make_gateway(max_retries=3)

        with patch.object(gateway._session, "post") as mock_post:
            mock_post.side_effect = [
                requests.exceptions.ConnectTimeout("connect timed out"),
                ok_response({"id": 42}),
            ]
            with patch("service_netbox_syncer.cli.time.sleep"):
                assert gateway.add_prefix("198.51.100.7/32", WEB) == 42

            assert mock_post.call_count == 2


class TestNetboxCreatePrefix:
    """Tests for per-service expansion into prefixes."""

    def test_create_prefix_for_ip_literal(self) -> None:
        """Test an IP service creates exactly one /32 prefix."""
        gateway = make_gateway()

        with patch.object(gateway, "add_prefix", return_value=42) as mock_add:
            records = gateway.create_prefix(WEB)

        mock_add.assert_called_once_with("198.51.100.7/32", WEB)
        assert records == [
            PrefixRecord(
                record_id=42,
                prefix="198.51.100.7/32",
                external_address="198.51.100.7",
                service_name="web",
                namespace="apps",
            )
        ]

    def test_create_prefix_for_hostname(self) -> None:
        """Test a hostname creates one prefix per resolved IPv4 address."""
        gateway = make_gateway(resolved=["203.0.113.5", "203.0.113.6"])

        with patch.object(gateway, "add_prefix", side_effect=[10, 11]):
            records = gateway.create_prefix(API)

        assert [(r.record_id, r.prefix) for r in records] == [
            (10, "203.0.113.5/32"),
            (11, "203.0.113.6/32"),
        ]
        assert {r.external_address for r in records} == {"svc.example.com"}

    def test_create_prefix_propagates_resolution_failure(self) -> None:
        """Test a failed lookup raises before any registry call."""
        gateway = make_gateway(resolved=None)

        with patch.object(gateway, "add_prefix") as mock_add:
            with pytest.raises(AddressResolutionFailed):
                gateway.create_prefix(API)
            mock_add.assert_not_called()

    def test_create_prefix_reports_partial_progress(self) -> None:
        """Test a mid-expansion failure carries the records already created."""
        gateway = make_gateway(resolved=["203.0.113.5", "203.0.113.6", "203.0.113.7"])

        with patch.object(
            gateway, "add_prefix", side_effect=[10, RegistryError("500 Server Error")]
        ) as mock_add:
            with pytest.raises(RegistryCreateFailed) as excinfo:
                gateway.create_prefix(API)

        assert mock_add.call_count == 2
        assert excinfo.value.address == "svc.example.com"
        assert [r.prefix for r in excinfo.value.created] == ["203.0.113.5/32"]

    def test_create_prefix_skips_unclassifiable_address(self) -> None:
        """Test an address that is neither IP nor hostname creates nothing."""
        gateway = make_gateway()
        service = ObservedService(name="web", namespace="apps", external_address="")

        with patch.object(gateway, "add_prefix") as mock_add:
            assert gateway.create_prefix(service) == []
            mock_add.assert_not_called()

    def test_provider_name(self) -> None:
        """Test gateway name returns expected value."""
        assert make_gateway().name == "NetBox"

"""Tests for the probes and helpers wired up in supportdesk/main.py."""

from unittest.mock import MagicMock

from fastapi import Request

from supportdesk.__version__ import __build_date__, __commit_sha__, __version__
from supportdesk.ratelimit import get_client_ip


class TestHealthEndpoint:
    def test_health_returns_ok_status(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}
        assert "application/json" in resp.headers.get("content-type", "")


class TestVersionEndpoint:
    def test_version_matches_package_version(self, client):
        data = client.get("/api/version").json()
        assert data["version"] == __version__
        assert data["build_date"] == __build_date__
        assert data["commit_sha"] == __commit_sha__


class TestMetricsEndpoint:
    def test_metrics_are_exposed(self, client):
        client.get("/api/health")
        resp = client.get("/api/metrics")
        assert resp.status_code == 200
        assert "http_requests_total" in resp.text


class TestChatRateLimit:
    def test_chat_is_rate_limited_per_client(self, client):
        headers = {"X-Forwarded-For": "10.9.8.7"}
        statuses = [
            client.post(
                "/api/chat",
                json={"message": "", "sessionId": "s"},
                headers=headers,
            ).status_code
            for _ in range(21)
        ]
        assert statuses[:20] == [400] * 20
        assert statuses[20] == 429


class TestGetClientIpFunction:
    def test_get_client_ip_from_forwarded_header(self):
        mock_request = MagicMock(spec=Request)
        mock_request.headers.get.return_value = "192.168.1.1, 10.0.0.1"
        mock_request.client.host = "127.0.0.1"

        assert get_client_ip(mock_request) == "192.168.1.1"

    def test_get_client_ip_from_client_host(self):
        mock_request = MagicMock(spec=Request)
        mock_request.headers.get.return_value = None
        mock_request.client.host = "127.0.0.1"

        assert get_client_ip(mock_request) == "127.0.0.1"

    def test_get_client_ip_strips_whitespace(self):
        mock_request = MagicMock(spec=Request)
        mock_request.headers.get.return_value = "  192.168.1.1  , 10.0.0.1"
        mock_request.client.host = "127.0.0.1"

        assert get_client_ip(mock_request) == "192.168.1.1"

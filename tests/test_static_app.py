"""
Tests for the static server - files, SPA fallback, health, /api passthrough and map search.
"""
from datetime import datetime

import httpx
import pytest
from fastapi.testclient import TestClient
from pytest_httpx import HTTPXMock

from portal_proxy.main import create_static_app
from portal_proxy.services.headers import CORS_HEADERS
from tests.conftest import INDEX_HTML, make_config, proxy_state


class TestHealthEndpoint:
    """Tests for the /health endpoint."""

    def test_health_returns_200(self, static_client):
        response = static_client.get("/health")
        assert response.status_code == 200

    def test_health_body(self, static_client):
        """Health body carries status, an ISO 8601 timestamp and the version."""
        data = static_client.get("/health").json()

        assert data["status"] == "ok"
        assert data["version"] == "1.0.0"
        assert datetime.fromisoformat(data["timestamp"]).tzinfo is not None

    def test_health_independent_of_backend(self, static_client, httpx_mock: HTTPXMock):
        """No upstream is contacted, so a dead backend does not matter."""
        response = static_client.get("/health")

        assert response.status_code == 200
        assert httpx_mock.get_requests() == []

    def test_configured_version(self, static_root):
        app = create_static_app(make_config(static_root=static_root, static_version="2.3.1"))

        assert TestClient(app).get("/health").json()["version"] == "2.3.1"


class TestStaticFiles:
    """Static files with the single-page-app fallback."""

    def test_root_serves_index(self, static_client):
        response = static_client.get("/")

        assert response.status_code == 200
        assert response.text == INDEX_HTML

    def test_existing_file_served(self, static_client):
        response = static_client.get("/app.js")

        assert response.status_code == 200
        assert response.text == "console.log('portal');"

    def test_nested_file_served(self, static_client):
        assert static_client.get("/css/main.css").text == "body { margin: 0; }"

    @pytest.mark.parametrize("path", ["/er-wait", "/hospital/12/directions", "/records/"])
    def test_unknown_path_falls_back_to_index(self, static_client, path):
        response = static_client.get(path)

        assert response.status_code == 200
        assert response.text == INDEX_HTML

    def test_traversal_gets_index(self, static_client):
        response = static_client.get("/..%2F..%2Fetc%2Fpasswd")

        assert response.text == INDEX_HTML

    def test_missing_root_is_a_startup_error(self, tmp_path):
        with pytest.raises(RuntimeError):
            create_static_app(make_config(static_root=str(tmp_path / "missing")))


class TestCors:
    """Permissive CORS on every response."""

    def test_cors_headers_on_files(self, static_client):
        response = static_client.get("/app.js")

        for name, value in CORS_HEADERS.items():
            assert response.headers[name] == value

    def test_cors_headers_on_health(self, static_client):
        assert static_client.get("/health").headers["Access-Control-Allow-Origin"] == "*"

    def test_options_short_circuits(self, static_client, httpx_mock: HTTPXMock):
        response = static_client.options("/api/hospitals/")

        assert response.status_code == 200
        assert response.content == b""
        assert response.headers["Access-Control-Allow-Methods"] == CORS_HEADERS["Access-Control-Allow-Methods"]
        assert httpx_mock.get_requests() == []


class TestApiPassthrough:
    """/api/* is forwarded to the backend base URL."""

    def test_get_forwarded_with_query(self, static_client, httpx_mock: HTTPXMock):
        httpx_mock.add_response(
            url="http://localhost:3015/api/hospitals/?city=Boston",
            json={"status": "success", "data": [{"id": 1}]}
        )

        response = static_client.get("/api/hospitals/?city=Boston")

        assert response.status_code == 200
        assert response.json() == {"status": "success", "data": [{"id": 1}]}

    @pytest.mark.parametrize("method", ["POST", "PUT", "DELETE"])
    def test_method_and_body_forwarded(self, static_client, httpx_mock: HTTPXMock, method):
        httpx_mock.add_response(url="http://localhost:3015/api/patients/3/", json={"status": "success"})
        body = b'{"first_name": "Ada"}'

        static_client.request(
            method,
            "/api/patients/3/",
            content=body,
            headers={"Content-Type": "application/json"}
        )

        request = httpx_mock.get_request()
        assert request.method == method
        assert request.content == body
        assert request.headers["Host"] == "localhost:3015"

    def test_raw_response_relayed(self, static_client, httpx_mock: HTTPXMock):
        """Non-JSON backend responses come back untouched."""
        httpx_mock.add_response(
            url="http://localhost:3015/api/export/",
            status_code=202,
            content=b"id,name\n1,General\n",
            headers={"Content-Type": "text/csv"}
        )

        response = static_client.get("/api/export/")

        assert response.status_code == 202
        assert response.content == b"id,name\n1,General\n"
        assert response.headers["Content-Type"] == "text/csv"

    def test_backend_down_returns_json_error(self, static_app, static_client, httpx_mock: HTTPXMock):
        httpx_mock.add_exception(httpx.ConnectError("Connection refused"))

        response = static_client.get("/api/wait-times/")

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to connect to backend"}
        events = list(proxy_state(static_app).stats._errors)
        assert events[0].upstream == "http://localhost:3015/api"

    def test_bare_prefix_forwarded(self, static_client, httpx_mock: HTTPXMock):
        httpx_mock.add_response(url="http://localhost:3015/api/?format=json", json={"hospitals": "/api/hospitals/"})

        response = static_client.get("/api?format=json")

        assert response.status_code == 200
        assert response.json() == {"hospitals": "/api/hospitals/"}

    def test_bare_prefix_post_forwarded(self, static_client, httpx_mock: HTTPXMock):
        httpx_mock.add_response(url="http://localhost:3015/api/", method="POST", status_code=201)

        response = static_client.post("/api", content=b"{}")

        assert response.status_code == 201
        assert httpx_mock.get_request().content == b"{}"

    def test_patch_not_forwarded(self, static_client, httpx_mock: HTTPXMock):
        response = static_client.patch("/api/patients/3/", content=b"{}")

        assert response.status_code == 405
        assert httpx_mock.get_requests() == []


class TestMapSearch:
    """The map provider's POI search, with the API key added server side."""

    def test_search_forwarded_with_key(self, static_client, httpx_mock: HTTPXMock):
        httpx_mock.add_response(json={"results": [{"poi": {"name": "General Hospital"}}]})

        response = static_client.get(
            "/tomtom/search/2/poiSearch/hospital",
            params={"lat": 42.36, "lon": -71.06}
        )

        assert response.status_code == 200
        assert response.json() == {"results": [{"poi": {"name": "General Hospital"}}]}
        request = httpx_mock.get_request()
        assert request.url.host == "api.tomtom.com"
        assert request.url.path == "/search/2/poiSearch/hospital.json"
        assert request.url.params["key"] == "map-key-for-tests"
        assert request.url.params["radius"] == "5000"
        assert request.url.params["limit"] == "10"

    def test_custom_radius_and_limit(self, static_client, httpx_mock: HTTPXMock):
        httpx_mock.add_response(json={"results": []})

        static_client.get(
            "/tomtom/search/2/poiSearch/urgent care",
            params={"lat": 1, "lon": 2, "radius": 1000, "limit": 3}
        )

        request = httpx_mock.get_request()
        assert request.url.params["radius"] == "1000"
        assert request.url.params["limit"] == "3"

    def test_requires_position(self, static_client, httpx_mock: HTTPXMock):
        response = static_client.get("/tomtom/search/2/poiSearch/hospital")

        assert response.status_code == 422
        assert httpx_mock.get_requests() == []

    def test_failure_does_not_leak_key(self, static_client, httpx_mock: HTTPXMock):
        httpx_mock.add_exception(httpx.ConnectError("Connection refused"))

        response = static_client.get(
            "/tomtom/search/2/poiSearch/hospital",
            params={"lat": 1, "lon": 2}
        )

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to fetch from map search"}
        assert "map-key-for-tests" not in response.text

    def test_no_key_configured(self, static_root, httpx_mock: HTTPXMock):
        app = create_static_app(make_config(static_root=static_root), http_client=httpx.AsyncClient())

        response = TestClient(app).get(
            "/tomtom/search/2/poiSearch/hospital",
            params={"lat": 1, "lon": 2}
        )

        assert response.status_code == 503
        assert httpx_mock.get_requests() == []


class TestStatsEndpoint:
    """The static server always exposes /stats."""

    def test_stats_empty_initially(self, static_client):
        assert static_client.get("/stats").json() == {"upstreams": {}, "errors": []}

    def test_stats_after_backend_call(self, static_client, httpx_mock: HTTPXMock):
        httpx_mock.add_response(url="http://localhost:3015/api/hospitals/", content=b"[]")

        static_client.get("/api/hospitals/")
        data = static_client.get("/stats").json()

        upstream = data["upstreams"]["http://localhost:3015/api"]
        assert upstream["request_count"] == 1
        assert upstream["error_count"] == 0
        assert upstream["relayed_bytes"] == 2

"""
Request id propagation.
"""

from structlog.testing import capture_logs


class TestRequestId:
    def test_client_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

    def test_id_is_generated(self, client):
        response = client.get("/health")
        assert len(response.headers["X-Request-ID"]) == 36

    def test_finished_request_is_logged(self, client, admin, auth_headers):
        with capture_logs() as logs:
            client.get("/api/devices", headers={**auth_headers(admin), "X-Request-ID": "req-7"})

        finished = [e for e in logs if e["event"] == "request_finished"]
        assert finished[0]["status_code"] == 200
        assert "duration_ms" in finished[0]

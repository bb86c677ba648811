"""
Role capability table and its route guards.
"""

import pytest

from sicet.services.permissions import can_access


class TestCanAccess:
    @pytest.mark.parametrize("resource", ["devices", "kpis", "todolists", "tasks", "reports", "exports", "alerts", "users"])
    @pytest.mark.parametrize("action", ["read", "write", "delete"])
    def test_admin_can_do_everything(self, resource, action):
        assert can_access("admin", resource, action)

    def test_referrer(self):
        assert can_access("referrer", "todolists", "delete")
        assert can_access("referrer", "exports", "read")
        assert not can_access("referrer", "alerts", "write")
        assert not can_access("referrer", "users", "read")

    def test_operator(self):
        assert can_access("operator", "tasks", "write")
        assert can_access("operator", "devices", "read")
        assert not can_access("operator", "devices", "write")
        assert not can_access("operator", "todolists", "delete")
        assert not can_access("operator", "exports", "read")

    def test_unknown_role(self):
        assert not can_access("guest", "devices", "read")


class TestRouteGuards:
    """Guards answer 401 without a token and 403 for a missing capability."""

    def test_operator_reads_devices(self, client, make_profile, auth_headers):
        response = client.get("/api/devices", headers=auth_headers(make_profile("operator")))
        assert response.status_code == 200

    def test_operator_cannot_create_devices(self, client, make_profile, auth_headers):
        response = client.post(
            "/api/devices",
            json={"name": "Cella", "location": "Magazzino"},
            headers=auth_headers(make_profile("operator")),
        )
        assert response.status_code == 403
        assert response.json() == {"error": "Accesso negato"}

    def test_referrer_cannot_manage_alerts(self, client, make_profile, auth_headers):
        response = client.post(
            "/api/alerts",
            json={"kpi_id": "KTEST001", "device_id": "DTEST001", "email": "qa@example.com",
                  "conditions": [{"field_id": "KTEST001-valore", "type": "numeric", "max": 8}]},
            headers=auth_headers(make_profile("referrer")),
        )
        assert response.status_code == 403

    def test_anonymous(self, client):
        assert client.get("/api/todolists").status_code == 401

    def test_pending_profile_token_is_rejected(self, client, make_profile, auth_headers):
        waiting = make_profile("operator", status="registered")
        assert client.get("/api/devices", headers=auth_headers(waiting)).status_code == 401

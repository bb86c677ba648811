"""
User activity log.
"""

from sicet.models.models import UserActivity
from sicet.services.audit import log_user_activity


class TestActivityLog:
    def test_entries_carry_an_integrity_hash(self, db, admin):
        entry = log_user_activity(db, admin.id, "update_device", "device", "DTEST001", {"fields": ["name"]}, integrity_secret="s3cret")
        db.commit()

        stored = db.get(UserActivity, entry.id)
        assert stored.details == {"fields": ["name"]}
        assert len(stored.integrity_hash) == 64

    def test_no_secret_no_hash(self, db, admin):
        entry = log_user_activity(db, admin.id, "update_device", "device", "DTEST001")
        db.commit()
        assert entry.integrity_hash is None

    def test_endpoint_filters(self, client, admin, auth_headers):
        headers = auth_headers(admin)
        client.post("/api/devices", json={"id": "DTEST001", "name": "Cella", "location": "Magazzino"}, headers=headers)
        client.post("/api/kpis", json={"id": "KTEST001", "name": "Temperatura", "value": [{"name": "Valore"}]}, headers=headers)

        response = client.get("/api/user-activities", params={"entity_type": "kpi"}, headers=headers)

        assert response.status_code == 200
        assert [(a["action_type"], a["entity_id"]) for a in response.json()] == [("create_kpi", "KTEST001")]
        assert response.json()[0]["user_id"] == str(admin.id)

    def test_admin_only(self, client, make_profile, auth_headers):
        response = client.get("/api/user-activities", headers=auth_headers(make_profile("referrer")))
        assert response.status_code == 403

"""
Audit trail: append-only entries, swallowed write failures, admin listing.
"""

import logging

from sqlalchemy import func, select

from dasheet_manager.audit import AuditTrail
from dasheet_manager.models import AuditLog, User


def test_record_and_entries_newest_first(session, users):
    trail = AuditTrail(session)
    trail.record(users["alice"], "CREATE", "da_sheet", "sheet-1", {"name": "First"})
    trail.record(users["alice"], "UPDATE", "da_sheet", "sheet-1")
    trail.record(users["bob"], "CREATE", "da_sheet", "sheet-2")

    page = trail.entries("da_sheet", "sheet-1")
    assert page.total == 2
    assert {e.action for e in page.items} == {"CREATE", "UPDATE"}
    assert page.items[0].created_at >= page.items[1].created_at

    created = next(e for e in page.items if e.action == "CREATE")
    assert created.to_dict()["details"] == {"name": "First"}
    assert trail.entries(action="CREATE").total == 2


def test_failed_write_is_logged_and_swallowed(session, users, caplog):
    trail = AuditTrail(session)
    with caplog.at_level(logging.ERROR, logger="dasheet_manager.audit"):
        # Unknown actor violates the users foreign key.
        trail.record("no-such-user", "DELETE", "da_sheet", "sheet-1")

    assert "Audit write failed" in caplog.text
    assert session.scalar(select(func.count()).select_from(AuditLog)) == 0
    # The session is still usable afterwards.
    assert session.get(User, users["alice"]) is not None
    trail.record(users["alice"], "DELETE", "da_sheet", "sheet-1")
    assert session.scalar(select(func.count()).select_from(AuditLog)) == 1


def test_business_operation_survives_audit_failure(app, session, users, monkeypatch):
    from dasheet_manager.auth import SessionManager

    def broken_entry(**kwargs):
        raise RuntimeError("audit store down")

    monkeypatch.setattr("dasheet_manager.audit.AuditLog", broken_entry)
    user = SessionManager(session, app.config).register("AUD01", "aud@example.com", "Passw0rd!", actor_id=users["admin"])

    assert session.get(User, user.id) is not None
    assert session.scalar(select(func.count()).select_from(AuditLog)) == 0


class TestAuditRoute:
    def test_admin_only(self, client, auth_headers):
        assert client.get("/audit", headers=auth_headers("alice")).status_code == 403

    def test_mutations_are_recorded(self, client, auth_headers, users, template_payload):
        admin = auth_headers("admin")
        template = client.post("/templates", json=template_payload(is_published=True), headers=admin).get_json()

        alice = auth_headers("alice")
        sheet = client.post(
            "/sheets", json={"name": "Audited", "type": "SaaS", "template_id": template["id"]}, headers=alice
        ).get_json()
        client.put(f"/sheets/{sheet['id']}", json={"status": "Submitted"}, headers=alice)
        client.post(f"/sheets/{sheet['id']}/share", json={"email": "bob@example.com"}, headers=alice)
        client.post(f"/sheets/{sheet['id']}/duplicate", headers=alice)

        entries = client.get(f"/audit?entity_type=da_sheet&entity_id={sheet['id']}&per_page=50", headers=admin)
        actions = sorted(e["action"] for e in entries.get_json()["items"])
        assert actions == ["CREATE", "SHARE", "SUBMIT", "UPDATE"]

        logins = client.get("/audit?action=LOGIN", headers=admin).get_json()
        assert logins["pagination"]["total"] == 2
        assert {e["user_id"] for e in logins["items"]} == {users["admin"], users["alice"]}

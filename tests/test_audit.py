"""
Tests for the append-only audit trail.
"""
from worktime.services.audit import create_audit_log, entry_entity_id, get_audit_logs, verify_integrity


class TestAuditLog:

    def test_entry_entity_id(self):
        assert entry_entity_id("L1", 5, 2) == "L1:5:2"

    def test_row_is_hashed_and_verifiable(self, db):
        log = create_audit_log(
            db, "time_entry", entry_entity_id("L1", 5, 1), "STATUS", actor_id=10, actor_role="lead",
            changes_json={"Status": {"before": "Suggestion", "after": "Confirmed"}},
            context={"row_id": 5},
        )

        assert log.actor_id == "10"
        assert log.source == "api"
        assert len(log.integrity_hash) == 64
        assert verify_integrity(log)

    def test_tampering_is_detected(self, db):
        log = create_audit_log(db, "time_entry", "L1:5:1", "TIME", actor_id=10, changes_json={"delta": 30})
        log.changes_json = {"delta": 3000}
        assert not verify_integrity(log)
        assert not verify_integrity(log, integrity_secret="other")

    def test_empty_secret_disables_hashing(self, db):
        log = create_audit_log(db, "omt_status", "8", "SEND", integrity_secret="")
        assert log.integrity_hash is None
        assert not verify_integrity(log)

    def test_filters(self, db):
        create_audit_log(db, "time_entry", "L1:5:1", "STATUS", actor_id=10)
        create_audit_log(db, "time_entry", "L1:5:2", "TIME", actor_id=42)
        create_audit_log(db, "omt_status", "8", "CONFIRM", actor_id=10)

        assert len(get_audit_logs(db)) == 3
        assert [l.action for l in get_audit_logs(db, entity_type="time_entry", actor_id=42)] == ["TIME"]
        assert [l.action for l in get_audit_logs(db, entity_id="8")] == ["CONFIRM"]
        assert len(get_audit_logs(db, limit=2)) == 2

import json

from toolexec_common.telemetry import CAPABILITY_TELEMETRY_FILE
from toolexec_mcp.audit import AuditEntry, CallAuditor
from toolexec_mcp.constants import AUDIT_CAPACITY


def _entry(i: int, error=None) -> AuditEntry:
    return AuditEntry(timestamp=float(i), service="alpha", capability="ping", arguments={"i": i}, duration_ms=1, error=error)


def test_auditor_keeps_last_1000_in_insertion_order():
    auditor = CallAuditor(telemetry=False)
    assert auditor.capacity == AUDIT_CAPACITY == 1000

    for i in range(1001):
        auditor.record(_entry(i))

    assert len(auditor) == 1000
    entries = auditor.recent(1000)
    assert entries[0].arguments == {"i": 1}
    assert entries[-1].arguments == {"i": 1000}
    assert [e.arguments["i"] for e in entries] == list(range(1, 1001))


def test_recent_returns_newest_last_and_handles_bad_limits():
    auditor = CallAuditor(telemetry=False)
    for i in range(5):
        auditor.record(_entry(i))

    assert [e.arguments["i"] for e in auditor.recent(2)] == [3, 4]
    assert auditor.recent(0) == []
    assert auditor.recent(-3) == []
    assert len(auditor.recent(50)) == 5


def test_record_stores_anything_verbatim():
    auditor = CallAuditor(telemetry=False)
    auditor.record({"not": "an entry"})
    auditor.record(None)
    assert auditor.recent(10) == [{"not": "an entry"}, None]


def test_entry_to_dict_omits_missing_error():
    assert "error" not in _entry(1).to_dict()
    assert _entry(1, error="boom").to_dict()["error"] == "boom"


def test_record_writes_capability_telemetry(telemetry_dir):
    auditor = CallAuditor()
    auditor.record(_entry(7, error="remote said no"))

    lines = (telemetry_dir / CAPABILITY_TELEMETRY_FILE).read_text(encoding="utf-8").splitlines()
    rec = json.loads(lines[-1])
    assert rec["kind"] == "capability"
    assert rec["name"] == "alpha.ping"
    assert rec["ok"] is False
    assert rec["args"]["error"] == "remote said no"

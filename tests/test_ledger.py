"""
Unit tests for the host session ledger.

Tests:
- Session ordinals are dense (count of existing files + 1)
- Handshake statistics are recomputed from every session file
- Today's uptime only counts sessions that started since local midnight
- Corrupt records and records without a session are fatal
"""

import json
import time

import pytest

from voicerelay.core.errors import ConsistencyViolation, ProtocolViolation
from voicerelay.ledger.session_ledger import SessionLedger, midnight_today, session_path
from voicerelay.testing.fixtures import make_record, write_session_log


@pytest.fixture
def credential(tmp_path):
    path = tmp_path / "secrets.txt"
    path.write_text("sk-test-credential\n", encoding="utf-8")
    return path


@pytest.fixture
def logs_dir(tmp_path):
    return tmp_path / "logs"


def make_ledger(logs_dir, credential, now=None):
    clock = (lambda: now) if now is not None else time.time
    return SessionLedger(logs_dir, credential, fsync_records=False, clock=clock)


class TestSessionNumbering:

    def test_first_session_is_one(self, logs_dir, credential):
        ledger = make_ledger(logs_dir, credential)
        stats = ledger.start_session()

        assert stats.session_number == 1
        assert session_path(logs_dir, 1).exists()
        assert stats.total_uptime_ms == 0
        assert stats.today_uptime_ms == 0
        assert stats.total_logs == 0

    def test_ordinals_are_dense(self, logs_dir, credential):
        ledger = make_ledger(logs_dir, credential)
        numbers = [ledger.start_session().session_number for _ in range(3)]

        assert numbers == [1, 2, 3]
        assert ledger.session_count() == 3

    def test_new_ledger_continues_numbering(self, logs_dir, credential):
        make_ledger(logs_dir, credential).start_session()
        stats = make_ledger(logs_dir, credential).start_session()
        assert stats.session_number == 2

    def test_gap_in_files_is_a_consistency_violation(self, logs_dir, credential):
        logs_dir.mkdir()
        (logs_dir / "2.json").touch()

        with pytest.raises(ConsistencyViolation):
            make_ledger(logs_dir, credential).start_session()

    def test_credential_is_stripped(self, logs_dir, credential):
        assert make_ledger(logs_dir, credential).read_credential() == "sk-test-credential"


class TestStatistics:

    def test_aggregates_existing_sessions(self, logs_dir, credential):
        now = float(int(time.time()))
        logs_dir.mkdir()
        write_session_log(logs_dir / "1.json", [
            make_record("Successful handshake", now - 100),
            make_record("Model responded", now - 90),
        ])
        write_session_log(logs_dir / "2.json", [
            make_record("Successful handshake", now - 50),
            make_record("Microphone enabled", now - 45),
            make_record("Model responded", now - 40),
        ])

        stats = make_ledger(logs_dir, credential, now=now).start_session()

        assert stats.session_number == 3
        assert stats.total_logs == 5
        assert stats.total_uptime_ms == 20000

    def test_single_record_session_has_zero_uptime(self, logs_dir, credential):
        now = float(int(time.time()))
        logs_dir.mkdir()
        write_session_log(logs_dir / "1.json", [make_record("Successful handshake", now - 10)])

        stats = make_ledger(logs_dir, credential, now=now).start_session()
        assert stats.total_uptime_ms == 0
        assert stats.total_logs == 1

    def test_today_excludes_sessions_before_midnight(self, logs_dir, credential):
        midnight = midnight_today(time.time())
        now = midnight + 3600
        logs_dir.mkdir()
        write_session_log(logs_dir / "1.json", [
            make_record("a", midnight - 7200),
            make_record("b", midnight - 3600),
        ])
        write_session_log(logs_dir / "2.json", [
            make_record("a", now - 2),
            make_record("b", now),
        ])

        stats = make_ledger(logs_dir, credential, now=now).start_session()

        assert stats.total_uptime_ms == 3600000 + 2000
        assert stats.today_uptime_ms == 2000

    def test_corrupt_record_is_fatal(self, logs_dir, credential):
        logs_dir.mkdir()
        (logs_dir / "1.json").write_text("{broken\n", encoding="utf-8")

        with pytest.raises(ConsistencyViolation, match="Corrupt"):
            make_ledger(logs_dir, credential).start_session()


class TestAppend:

    def test_append_writes_one_line_per_record(self, logs_dir, credential):
        ledger = make_ledger(logs_dir, credential)
        ledger.start_session()

        first = make_record("Successful handshake", 1.0)
        second = make_record("Model responded", 2.0)
        ledger.append(first.to_message())
        ledger.append(second.to_message())

        lines = ledger.session_file.read_text(encoding="utf-8").splitlines()
        assert [json.loads(line)["id"] for line in lines] == [first.id, second.id]

    def test_append_goes_to_latest_session(self, logs_dir, credential):
        ledger = make_ledger(logs_dir, credential)
        ledger.start_session()
        ledger.start_session()
        ledger.append(make_record("x", 1.0).to_message())

        assert session_path(logs_dir, 1).read_text(encoding="utf-8") == ""
        assert session_path(logs_dir, 2).read_text(encoding="utf-8") != ""

    def test_append_without_session_rejected(self, logs_dir, credential):
        ledger = make_ledger(logs_dir, credential)
        with pytest.raises(ProtocolViolation):
            ledger.append(make_record("x", 1.0).to_message())

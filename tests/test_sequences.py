"""
Test suite for the sequence issuer

Identifiers must be unique and contiguous per bucket under concurrency,
and preview must never consume a value.
"""

import threading
from datetime import date

import pytest

from loan_servicing.exceptions import ExhaustedSequence, LockTimeout, ValidationError
from loan_servicing.locking import sequence_lock_key
from loan_servicing.sequences import SequenceIssuer
from loan_servicing.storage import InMemoryStorage, SQLiteStorage

from conftest import FixedClock


class TestSequenceIssuer:
    """Test identifier issuance"""

    def setup_method(self):
        self.storage = InMemoryStorage(lock_timeout=2.0)
        self.clock = FixedClock(date(2026, 3, 14))
        self.issuer = SequenceIssuer(self.storage, branch_code="01", clock=self.clock)

    def test_first_issue_starts_at_one(self):
        """Bucket row is created lazily with counter 0"""
        assert self.issuer.last_issued("LN") == 0
        assert self.issuer.issue("LN") == "LN260001"
        assert self.issuer.last_issued("LN") == 1

    def test_fixed_width_format(self):
        """Every identifier is exactly eight characters"""
        ids = [self.issuer.issue("PM") for _ in range(12)]
        assert ids[-1] == "PM260012"
        assert all(len(i) == 8 for i in ids)

    def test_prefixes_have_separate_buckets(self):
        assert self.issuer.issue("LN") == "LN260001"
        assert self.issuer.issue("PM") == "PM260001"
        assert self.issuer.issue("LN") == "LN260002"

    def test_new_year_starts_new_bucket(self):
        self.issuer.issue("LN")
        self.issuer.issue("LN")
        self.clock.today = date(2027, 1, 1)
        assert self.issuer.issue("LN") == "LN270001"
        assert self.issuer.last_issued("LN", "26") == 2

    def test_branches_do_not_share_counters(self):
        other = SequenceIssuer(self.storage, branch_code="02", clock=self.clock)
        self.issuer.issue("LN")
        assert other.issue("LN") == "LN260001"

    def test_preview_does_not_consume(self):
        """Preview reports the next value without incrementing"""
        assert self.issuer.preview("LN") == "LN260001"
        assert self.issuer.preview("LN") == "LN260001"
        assert self.issuer.issue("LN") == "LN260001"
        assert self.issuer.preview("LN") == "LN260002"

    @pytest.mark.parametrize("prefix", ["", "L", "ln", "LNX", "L1", None])
    def test_invalid_prefix(self, prefix):
        with pytest.raises(ValidationError):
            self.issuer.issue(prefix)

    def test_overflow_is_rejected(self):
        """Counter past 9999 raises and leaves the bucket unchanged"""
        bucket = self.issuer.bucket_key("LN", "26")
        self.storage.save("sequences", bucket, {
            'id': bucket, 'prefix': "LN", 'branch_code': "01", 'period': "26", 'last_value': 9998
        })
        assert self.issuer.issue("LN") == "LN269999"

        with pytest.raises(ExhaustedSequence) as exc_info:
            self.issuer.issue("LN")
        assert exc_info.value.limit == 9999
        assert self.issuer.last_issued("LN") == 9999

        with pytest.raises(ExhaustedSequence):
            self.issuer.preview("LN")

    def test_concurrent_issue_is_unique_and_contiguous(self):
        """Parallel callers on one bucket get 1..N with no gaps or duplicates"""
        issued = []
        guard = threading.Lock()

        def worker():
            for _ in range(25):
                value = self.issuer.issue("LN")
                with guard:
                    issued.append(value)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(issued) == 200
        assert len(set(issued)) == 200
        assert sorted(int(i[4:]) for i in issued) == list(range(1, 201))

    def test_lock_timeout_is_retryable(self):
        """A bucket held by another thread surfaces as LockTimeout"""
        issuer = SequenceIssuer(self.storage, branch_code="01", clock=self.clock, lock_timeout=0.05)
        key = sequence_lock_key(issuer.bucket_key("LN", "26"))
        held = threading.Event()
        release = threading.Event()

        def holder():
            with self.storage.lock(key):
                held.set()
                release.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(2)
        try:
            with pytest.raises(LockTimeout) as exc_info:
                issuer.issue("LN")
            assert exc_info.value.retryable
        finally:
            release.set()
            thread.join()

    def test_held_bucket_does_not_block_other_buckets(self):
        """Only the same bucket waits; transactions still share the store"""
        issuer = SequenceIssuer(self.storage, branch_code="01", clock=self.clock, lock_timeout=0.05)
        held = threading.Event()
        release = threading.Event()

        def holder():
            with issuer.hold("LN"):
                held.set()
                release.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(2)
        try:
            assert issuer.issue("PM") == "PM260001"
            with pytest.raises(LockTimeout):
                issuer.issue("LN")
        finally:
            release.set()
            thread.join()
        assert issuer.issue("LN") == "LN260001"

        assert issuer.issue("LN") == "LN260001"


class TestSequenceIssuerSQLite:
    """Issuance against a file-backed SQLite database"""

    def test_counters_persist_across_connections(self, tmp_path):
        db_path = tmp_path / "sequences.db"
        clock = FixedClock(date(2026, 5, 1))

        first = SQLiteStorage(db_path)
        issuer = SequenceIssuer(first, clock=clock)
        assert issuer.issue("LN") == "LN260001"
        assert issuer.issue("LN") == "LN260002"
        first.close()

        second = SQLiteStorage(db_path)
        try:
            issuer = SequenceIssuer(second, clock=clock)
            assert issuer.preview("LN") == "LN260003"
            assert issuer.issue("LN") == "LN260003"
        finally:
            second.close()

    def test_concurrent_issue_sqlite(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "concurrent.db")
        issuer = SequenceIssuer(storage, clock=FixedClock(date(2026, 5, 1)))
        issued = []
        guard = threading.Lock()

        def worker():
            for _ in range(20):
                value = issuer.issue("PM")
                with guard:
                    issued.append(value)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        storage.close()

        assert len(set(issued)) == 100
        assert max(issued) == "PM260100"

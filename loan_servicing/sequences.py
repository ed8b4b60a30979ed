"""
Sequence Issuer

Issues gapless business identifiers such as loan and payment numbers.
An identifier is the two-letter prefix, the two-digit year and a four-digit
counter, e.g. ``LN250042``. Counters live in the ``sequences`` table, one row
per (prefix, branch, year) bucket, and are only ever incremented.
"""

import logging
import re
from contextlib import contextmanager
from datetime import date
from typing import Callable, Optional

from .exceptions import ExhaustedSequence, ValidationError
from .locking import sequence_lock_key
from .logging_config import log_action
from .storage import StorageInterface


logger = logging.getLogger(__name__)

PREFIX_PATTERN = re.compile(r"^[A-Z]{2}$")
COUNTER_WIDTH = 4
MAX_COUNTER = 10 ** COUNTER_WIDTH - 1


class SequenceIssuer:
    """Issues and previews identifiers per (prefix, branch, period) bucket"""

    def __init__(
        self,
        storage: StorageInterface,
        branch_code: str = "00",
        clock: Callable[[], date] = date.today,
        lock_timeout: Optional[float] = None
    ):
        self.storage = storage
        self.branch_code = branch_code
        self.clock = clock
        self.lock_timeout = lock_timeout
        self.table = "sequences"

    def issue(self, prefix: str) -> str:
        """
        Issue the next identifier for ``prefix`` in the current period.

        The read-increment-write runs under an exclusive lock on the bucket,
        so concurrent callers receive distinct, contiguous counters. Inside an
        enclosing transaction the increment joins it; see ``hold``.

        Raises:
            ValidationError: malformed prefix
            ExhaustedSequence: the bucket already issued its last counter
            LockTimeout: the bucket lock could not be acquired in time
        """
        self._validate_prefix(prefix)
        period = self._period()
        bucket = self.bucket_key(prefix, period)

        with self.storage.lock(sequence_lock_key(bucket), self.lock_timeout):
            with self.storage.atomic():
                row = self.storage.load(self.table, bucket)
                if row is None:
                    row = {
                        'id': bucket,
                        'prefix': prefix,
                        'branch_code': self.branch_code,
                        'period': period,
                        'last_value': 0
                    }
                next_value = row['last_value'] + 1
                if next_value > MAX_COUNTER:
                    raise ExhaustedSequence(bucket, MAX_COUNTER)
                row['last_value'] = next_value
                self.storage.save(self.table, bucket, row)

        identifier = self.format_id(prefix, period, next_value)
        log_action(logger, "debug", f"Issued {identifier}",
                   action="issue_id", resource=bucket)
        return identifier

    @contextmanager
    def hold(self, prefix: str):
        """
        Hold the current bucket of ``prefix`` across a caller transaction.

        Take this before ``storage.atomic()`` and call ``issue`` inside the
        transaction: a rollback then restores the counter with the record
        it was meant for, so no number is lost.

        Raises:
            LockTimeout: the bucket lock could not be acquired in time
        """
        self._validate_prefix(prefix)
        bucket = self.bucket_key(prefix, self._period())
        with self.storage.lock(sequence_lock_key(bucket), self.lock_timeout):
            yield bucket

    def preview(self, prefix: str) -> str:
        """
        Identifier the next ``issue`` would return, without reserving it.

        Takes no lock; a concurrent issuer may claim the value first.
        """
        self._validate_prefix(prefix)
        period = self._period()
        next_value = self.last_issued(prefix, period) + 1
        if next_value > MAX_COUNTER:
            raise ExhaustedSequence(self.bucket_key(prefix, period), MAX_COUNTER)
        return self.format_id(prefix, period, next_value)

    def last_issued(self, prefix: str, period: Optional[str] = None) -> int:
        period = period or self._period()
        row = self.storage.load(self.table, self.bucket_key(prefix, period))
        return row['last_value'] if row else 0

    def bucket_key(self, prefix: str, period: str) -> str:
        return f"{prefix}:{self.branch_code}:{period}"

    @staticmethod
    def format_id(prefix: str, period: str, counter: int) -> str:
        return f"{prefix}{period}{counter:0{COUNTER_WIDTH}d}"

    def _period(self) -> str:
        return f"{self.clock().year % 100:02d}"

    @staticmethod
    def _validate_prefix(prefix: str) -> None:
        if not isinstance(prefix, str) or not PREFIX_PATTERN.match(prefix):
            raise ValidationError(f"Sequence prefix must be two uppercase letters, got {prefix!r}")

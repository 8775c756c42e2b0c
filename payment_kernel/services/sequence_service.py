"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Hands out strictly increasing integers per named sequence: ledger and
    journal ordering, and the year-scoped document numbers
    (``CN-2024-000001``, ``RF-2024-000001``, ``ORD-2024-000001``).  Services
    receive a sequence source by injection; they never rely on a database
    sequence object or ``max()+1``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Monotonicity: the locked counter row (``SELECT ... FOR UPDATE``) is the
      only source of the next value.
    - Transactional: an increment becomes visible when the caller commits;
      a rollback returns the value.

Failure modes:
    - IntegrityError on a concurrent first use of a sequence name, handled
      with a savepoint rollback and a locked re-read.
"""

import threading
from abc import ABC, abstractmethod
from collections import defaultdict

from sqlalchemy import BigInteger, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from payment_kernel.db.base import Base
from payment_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """One row per named sequence holding its current value."""

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class SequenceSource(ABC):
    """Injectable counter interface shared by the store-backed and in-memory sources."""

    LEDGER_ENTRY = "ledger_entry"
    FINANCIAL_TRANSACTION = "financial_transaction"

    @abstractmethod
    def next_value(self, sequence_name: str) -> int:
        ...

    def next_document_number(self, prefix: str, year: int, width: int = 6) -> str:
        """Year-scoped document number, e.g. ``CN-2024-000001``."""
        value = self.next_value(f"{prefix.lower()}:{year}")
        return f"{prefix}-{year}-{value:0{width}d}"


class SequenceService(SequenceSource):
    """
    Store-backed sequence source.

    Contract:
        Returns the next strictly-monotonic value for a name.  The counter row
        stays locked until the caller's transaction ends.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(self, session: Session):
        self._session = session

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        counter = self._locked_counter(sequence_name)

        if counter is None:
            # First use; another transaction may be creating the row too.
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                counter = self._locked_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """Current value without incrementing; None if never used."""
        return self._session.execute(
            select(SequenceCounter.current_value).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()


class InMemorySequence(SequenceSource):
    """
    Process-local atomic counters.

    For tests and tooling that must not touch the counter table.  Values are
    not durable and not shared between processes.
    """

    def __init__(self, start: dict[str, int] | None = None):
        self._values: dict[str, int] = defaultdict(int, start or {})
        self._lock = threading.Lock()

    def next_value(self, sequence_name: str) -> int:
        with self._lock:
            self._values[sequence_name] += 1
            return self._values[sequence_name]

"""
Lending ledger: the borrow/return lifecycle of borrowing records.

A record starts as Borrowed and ends as Returned or Returned (Late). Overdue
is never written; it is derived from the due date when records are read.
Borrow and return move three documents together (the record, the book's
availableCopies and the member's borrowedBooks) inside one transaction.
All instants are UTC.
"""

import math
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, List, NamedTuple, Optional

from config import Settings
from database import to_object_id
from errors import Conflict, InvalidState, NotFound, ValidationError
from logger import get_logger
from schemas import BorrowingRecord, BorrowingStatus, MemberStatus

logger = get_logger(__name__)

ONE_DAY = timedelta(days=1)
CENTS = Decimal("0.01")


class ReturnReceipt(NamedTuple):
    late_fee: Decimal
    return_date: datetime
    status: str


def utc_clock() -> datetime:
    return datetime.now(timezone.utc)


def days_late(due_date: datetime, return_date: datetime) -> int:
    """Started days past the due date; 0 when returned on time."""
    if return_date <= due_date:
        return 0
    return math.ceil((return_date - due_date) / ONE_DAY)


def late_fee(due_date: datetime, return_date: datetime, fee_per_day: Decimal) -> Decimal:
    return (Decimal(days_late(due_date, return_date)) * fee_per_day).quantize(CENTS, rounding=ROUND_HALF_UP)


def effective_status(record: BorrowingRecord, now: datetime) -> str:
    if record.status == BorrowingStatus.BORROWED and record.due_date < now:
        return BorrowingStatus.OVERDUE.value
    return BorrowingStatus(record.status).value


def format_fee(fee: Optional[Decimal], currency_symbol: str = "$") -> str:
    if fee is None or fee <= 0:
        return "No late fee"
    return f"{currency_symbol}{fee.quantize(CENTS)}"


class LendingLedger:
    def __init__(self, catalog, members, records, coordinator, settings: Settings,
                 clock: Callable[[], datetime] = utc_clock):
        self.catalog = catalog
        self.members = members
        self.records = records
        self.coordinator = coordinator
        self.settings = settings
        self.clock = clock

    def _loan_days(self, loan_days) -> int:
        if loan_days is None:
            return self.settings.default_loan_days
        if isinstance(loan_days, bool) or not isinstance(loan_days, int) or loan_days < 1:
            raise ValidationError("loanDays must be a positive whole number of days", reason="invalid_loan_days")
        if loan_days > self.settings.max_loan_days:
            raise ValidationError(f"loanDays cannot exceed {self.settings.max_loan_days}", reason="invalid_loan_days")
        return loan_days

    def get(self, record_id: str) -> BorrowingRecord:
        record = self.records.get(record_id)
        if record is None:
            raise NotFound("Borrowing record not found", reason="record_not_found")
        return record

    def list(self) -> List[BorrowingRecord]:
        return self.records.list()

    def borrow(self, book_id: str, member_id: str, loan_days: Optional[int] = None,
               notes: Optional[str] = None) -> BorrowingRecord:
        days = self._loan_days(loan_days)
        to_object_id(book_id, "book ID")
        to_object_id(member_id, "member ID")

        with self.coordinator.transaction() as session:
            book = self.catalog.get(book_id, session=session)
            if book is None:
                raise NotFound("Book not found", reason="book_not_found")
            if book.available_copies <= 0:
                raise Conflict("No copies available for borrowing", reason="no_copies_available", status_code=400)

            member = self.members.get(member_id, session=session)
            if member is None:
                raise NotFound("Member not found", reason="member_not_found")
            if member.status != MemberStatus.ACTIVE:
                raise InvalidState("Member account is not active", reason="member_not_active")
            if member.borrowed_books >= member.max_books_allowed:
                raise Conflict(
                    f"Member has reached maximum allowed books ({member.max_books_allowed})",
                    reason="borrow_limit_reached",
                    status_code=400,
                )

            if self.records.find_open(book_id, member_id, session=session) is not None:
                raise Conflict(
                    "Member already has this book borrowed and not returned",
                    reason="already_borrowed",
                    status_code=400,
                )

            now = self.clock()
            record = BorrowingRecord(
                book_id=book_id,
                member_id=member_id,
                borrow_date=now,
                due_date=now + timedelta(days=days),
                return_date=None,
                status=BorrowingStatus.BORROWED,
                renewal_count=0,
                notes=notes or "",
                created_at=now,
            )
            record.id = self.records.insert(record, session=session)

            # conditional counters; a concurrent borrow that got there first makes these match nothing
            if not self.catalog.take_copy(book_id, session=session):
                raise Conflict("No copies available for borrowing", reason="no_copies_available", status_code=400)
            if not self.members.check_out(member_id, session=session):
                raise Conflict(
                    f"Member has reached maximum allowed books ({member.max_books_allowed})",
                    reason="borrow_limit_reached",
                    status_code=400,
                )

        logger.info(f"borrowed book={book_id} member={member_id} record={record.id} due={record.due_date.isoformat()}")
        return record

    def return_book(self, record_id: str) -> ReturnReceipt:
        to_object_id(record_id, "borrowing ID")

        with self.coordinator.transaction() as session:
            record = self.records.get(record_id, session=session)
            if record is None:
                raise NotFound("Borrowing record not found", reason="record_not_found")
            if record.is_terminal:
                raise InvalidState("Book has already been returned", reason="already_returned")

            return_date = self.clock()
            fee = late_fee(record.due_date, return_date, self.settings.late_fee_per_day)
            if return_date > record.due_date:
                status = BorrowingStatus.RETURNED_LATE.value
            else:
                status = BorrowingStatus.RETURNED.value

            if not self.records.mark_returned(record_id, return_date, status, fee, session=session):
                raise InvalidState("Book has already been returned", reason="already_returned")
            if not self.catalog.put_back_copy(record.book_id, session=session):
                raise Conflict("Book copy count is inconsistent", reason="copy_count_inconsistent", status_code=500)
            if not self.members.check_in(record.member_id, session=session):
                raise Conflict("Member borrow count is inconsistent", reason="borrow_count_inconsistent",
                               status_code=500)

        logger.info(f"returned record={record_id} status={status} late_fee={fee}")
        return ReturnReceipt(late_fee=fee, return_date=return_date, status=status)

    def delete(self, record_id: str) -> str:
        record = self.get(record_id)
        if not record.is_terminal:
            raise Conflict(
                "Cannot delete an active borrowing record. Please return the book first.",
                reason="cannot_delete_active_record",
                status_code=400,
            )
        if not self.records.delete(record_id):
            raise NotFound("Borrowing record not found", reason="record_not_found")
        logger.info(f"deleted record={record_id}")
        return record_id

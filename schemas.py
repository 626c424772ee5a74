"""
Database Schemas for the Library Lending API

Each Pydantic model represents a document in a MongoDB collection. Python
attributes are snake_case; the stored documents and the JSON API use the
camelCase aliases.

Collections:
- authors
- books
- members
- borrowing
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes coming back from the driver are UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MemberStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    SUSPENDED = "Suspended"


class MembershipType(str, Enum):
    STANDARD = "Standard"
    PREMIUM = "Premium"
    STUDENT = "Student"
    SENIOR = "Senior"


class BorrowingStatus(str, Enum):
    BORROWED = "Borrowed"
    OVERDUE = "Overdue"
    RETURNED = "Returned"
    RETURNED_LATE = "Returned (Late)"


OPEN_STATUSES = (BorrowingStatus.BORROWED, BorrowingStatus.OVERDUE)
TERMINAL_STATUSES = (BorrowingStatus.RETURNED, BorrowingStatus.RETURNED_LATE)

DEFAULT_MAX_BOOKS = {
    MembershipType.PREMIUM: 5,
    MembershipType.STUDENT: 4,
}


class Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True)

    id: Optional[str] = Field(None, description="Document id as string")

    def to_document(self) -> dict:
        """Persisted shape: camelCase keys, no id (the store owns _id)."""
        return self.model_dump(by_alias=True, exclude={"id"})


class Book(Document):
    """
    Books collection schema
    Collection name: "books"
    """
    title: str = Field(..., description="Book title")
    author: str = Field(..., description="Primary author")
    isbn: str = Field(..., description="ISBN identifier")
    published_year: Optional[int] = Field(None, description="Year of publication")
    publisher: Optional[str] = Field(None, description="Publisher")
    pages: Optional[int] = Field(None, ge=0, description="Page count")
    genre: List[str] = Field(default_factory=list, description="Genres")
    total_copies: int = Field(1, ge=0, description="Total copies owned")
    available_copies: int = Field(1, ge=0, description="Copies currently on the shelf")
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_copies(self):
        if self.available_copies > self.total_copies:
            raise ValueError("availableCopies cannot exceed totalCopies")
        return self


class Address(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    street: str
    city: str
    state: str
    zip_code: str


class Member(Document):
    """
    Members collection schema
    Collection name: "members"
    """
    first_name: str = Field(..., description="Given name")
    last_name: str = Field(..., description="Family name")
    email: str = Field(..., description="Email address, stored lower-case")
    phone: str = Field(..., description="Phone number")
    address: Optional[Address] = None
    membership_type: MembershipType = Field(MembershipType.STANDARD)
    status: MemberStatus = Field(MemberStatus.ACTIVE)
    borrowed_books: int = Field(0, ge=0, description="Number of currently open borrowing records")
    max_books_allowed: int = Field(3, ge=1, description="Upper bound for borrowed_books")
    membership_date: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class BorrowingRecord(Document):
    """
    Borrowing collection schema
    Collection name: "borrowing"
    """
    book_id: str = Field(..., description="Book id as string")
    member_id: str = Field(..., description="Member id as string")
    borrow_date: datetime = Field(default_factory=utcnow)
    due_date: datetime = Field(..., description="Due date/time (UTC)")
    return_date: Optional[datetime] = Field(None, description="Return date/time (UTC)")
    status: BorrowingStatus = Field(BorrowingStatus.BORROWED)
    renewal_count: int = Field(0, ge=0)
    late_fee: Optional[Decimal] = Field(None, ge=0, description="Set once the record is returned")
    notes: str = Field("", description="Free text")
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("borrow_date", "due_date", "return_date", "created_at")
    @classmethod
    def normalize_dates(cls, v):
        return as_utc(v)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Author(Document):
    """
    Authors collection schema
    Collection name: "authors"
    Dates are kept as YYYY-MM-DD strings.
    """
    first_name: str = Field(..., description="Given name")
    last_name: str = Field(..., description="Family name")
    birth_date: date = Field(..., description="Date of birth")
    death_date: Optional[date] = Field(None, description="Date of death")
    nationality: str = Field(..., description="Nationality")
    biography: str = Field("", description="Short biography")
    notable_works: List[str] = Field(default_factory=list, description="Titles the author is known for")
    created_at: datetime = Field(default_factory=utcnow)

    @field_serializer("birth_date", "death_date")
    def date_as_string(self, value: Optional[date]) -> Optional[str]:
        return value.isoformat() if value else None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

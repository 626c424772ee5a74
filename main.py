from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth import require_caller
from config import Settings, get_settings
from database import connect, get_database, serialize
from errors import Conflict, LibraryError, NotFound, ValidationError
from ledger import LendingLedger, effective_status, format_fee
from logger import get_logger, set_level
from schemas import (
    DEFAULT_MAX_BOOKS,
    Address,
    Author as AuthorSchema,
    Book as BookSchema,
    Member as MemberSchema,
    MemberStatus,
    MembershipType,
)
from stores import AuthorStore, BorrowingStore, CatalogStore, MembershipStore, MongoTransactionCoordinator

logger = get_logger(__name__)


@dataclass
class Services:
    catalog: Any
    members: Any
    records: Any
    ledger: LendingLedger
    settings: Settings
    authors: Any = None
    db: Any = None
    client: Any = None


def build_services(settings: Settings) -> Services:
    client = connect(settings)
    db = get_database(client, settings)
    catalog = CatalogStore(db)
    members = MembershipStore(db)
    records = BorrowingStore(db)
    authors = AuthorStore(db)
    for store in (catalog, members, records, authors):
        store.ensure_indexes()
    ledger = LendingLedger(catalog, members, records, MongoTransactionCoordinator(client), settings)
    return Services(catalog=catalog, members=members, records=records, ledger=ledger,
                    settings=settings, authors=authors, db=db, client=client)


def get_services(request: Request) -> Services:
    return request.app.state.services


# Request Models
class RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateBook(RequestModel):
    title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    isbn: str = Field(..., min_length=1)
    published_year: Optional[int] = None
    publisher: Optional[str] = None
    pages: Optional[int] = Field(None, ge=0)
    genre: List[str] = []
    total_copies: int = Field(..., ge=0)
    available_copies: Optional[int] = Field(None, ge=0)


class UpdateBook(RequestModel):
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    published_year: Optional[int] = None
    publisher: Optional[str] = None
    pages: Optional[int] = Field(None, ge=0)
    genre: Optional[List[str]] = None
    total_copies: Optional[int] = Field(None, ge=0)
    available_copies: Optional[int] = Field(None, ge=0)


EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"


class CreateMember(RequestModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: str = Field(..., pattern=EMAIL_PATTERN)
    phone: str = Field(..., min_length=1)
    membership_type: MembershipType
    address: Optional[Address] = None
    status: Optional[MemberStatus] = None
    max_books_allowed: Optional[int] = Field(None, ge=1)
    membership_date: Optional[datetime] = None


class UpdateMember(RequestModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = Field(None, pattern=EMAIL_PATTERN)
    phone: Optional[str] = None
    membership_type: Optional[MembershipType] = None
    address: Optional[Address] = None
    status: Optional[MemberStatus] = None
    max_books_allowed: Optional[int] = Field(None, ge=1)


class CreateAuthor(RequestModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    nationality: str = Field(..., min_length=1)
    birth_date: date
    death_date: Optional[date] = None
    biography: Optional[str] = None
    notable_works: Optional[List[str]] = None


class UpdateAuthor(RequestModel):
    first_name: Optional[str] = Field(None, min_length=1)
    last_name: Optional[str] = Field(None, min_length=1)
    nationality: Optional[str] = Field(None, min_length=1)
    birth_date: Optional[date] = None
    death_date: Optional[date] = None
    biography: Optional[str] = None
    notable_works: Optional[List[str]] = None


class BorrowRequest(RequestModel):
    book_id: str
    member_id: str
    loan_days: Optional[int] = Field(None, ge=1)
    notes: Optional[str] = None


def changed_fields(payload: RequestModel) -> Dict[str, Any]:
    """Set, non-null fields keyed by their stored (camelCase) names."""
    data = payload.model_dump(by_alias=True, exclude_unset=True, exclude_none=True, mode="json")
    return {k: v.strip() if isinstance(v, str) else v for k, v in data.items()}


def enrich(record, services: Services, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Record as returned to callers, with the book and member attached."""
    now = now or datetime.now(timezone.utc)
    out = serialize(record)
    out["status"] = effective_status(record, now)
    out["bookDetails"] = serialize(services.catalog.get(record.book_id))
    out["memberDetails"] = serialize(services.members.get(record.member_id))
    return out


# Error handlers
def library_error_handler(request: Request, exc: LibraryError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def describe_error(error: Dict[str, Any]) -> str:
    field = error["loc"][-1]
    kind = error.get("type", "")
    if kind.startswith("date_"):
        return f"Invalid {field} format. Use YYYY-MM-DD"
    if kind == "list_type":
        return f"{field} must be an array"
    return f"{field}: {error['msg']}"


def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    missing = [str(e["loc"][-1]) for e in errors if e.get("type") == "missing" and e.get("loc")]
    if missing:
        message = f"Missing required fields: {', '.join(missing)}"
    else:
        message = "; ".join(describe_error(e) for e in errors if e.get("loc"))
    return JSONResponse(status_code=400, content={"message": message, "reason": "validation_error"})


def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} failed")
    return JSONResponse(status_code=500, content={"message": str(exc) or "Internal server error",
                                                  "reason": "internal_error"})


# Borrowing Endpoints
borrowing = APIRouter(prefix="/borrowing", tags=["Borrowing"])


@borrowing.get("")
def list_borrowings(services: Services = Depends(get_services)):
    now = datetime.now(timezone.utc)
    return [enrich(r, services, now) for r in services.ledger.list()]


@borrowing.get("/{record_id}")
def get_borrowing(record_id: str, services: Services = Depends(get_services)):
    return enrich(services.ledger.get(record_id), services)


@borrowing.post("/borrow", status_code=201, dependencies=[Depends(require_caller)])
def borrow_book(payload: BorrowRequest, services: Services = Depends(get_services)):
    record = services.ledger.borrow(payload.book_id, payload.member_id, payload.loan_days, payload.notes)
    return {"id": record.id, "message": "Book borrowed successfully", "borrowing": serialize(record)}


@borrowing.put("/return/{record_id}", dependencies=[Depends(require_caller)])
def return_book(record_id: str, services: Services = Depends(get_services)):
    receipt = services.ledger.return_book(record_id)
    return {
        "message": "Book returned successfully",
        "lateFee": format_fee(receipt.late_fee, services.settings.currency_symbol),
        "returnDate": receipt.return_date.isoformat(),
    }


@borrowing.delete("/{record_id}", dependencies=[Depends(require_caller)])
def delete_borrowing(record_id: str, services: Services = Depends(get_services)):
    deleted = services.ledger.delete(record_id)
    return {"message": "Borrowing record deleted successfully", "id": deleted}


# Books Endpoints
books = APIRouter(prefix="/books", tags=["Books"])


def load_book(book_id: str, services: Services) -> BookSchema:
    book = services.catalog.get(book_id)
    if book is None:
        raise NotFound("Book not found", reason="book_not_found")
    return book


@books.get("")
def list_books(services: Services = Depends(get_services)):
    return [serialize(b) for b in services.catalog.list()]


@books.get("/{book_id}")
def get_book(book_id: str, services: Services = Depends(get_services)):
    return serialize(load_book(book_id, services))


@books.post("", status_code=201, dependencies=[Depends(require_caller)])
def create_book(payload: CreateBook, services: Services = Depends(get_services)):
    data = changed_fields(payload)
    data.setdefault("availableCopies", data["totalCopies"])
    if data["availableCopies"] > data["totalCopies"]:
        raise ValidationError("availableCopies cannot exceed totalCopies", reason="invalid_copies")
    book = BookSchema(**data)
    book.id = services.catalog.create(book)
    return {"id": book.id, "message": "Book created successfully", "book": serialize(book)}


@books.put("/{book_id}", dependencies=[Depends(require_caller)])
def update_book(book_id: str, payload: UpdateBook, services: Services = Depends(get_services)):
    existing = load_book(book_id, services)
    update = changed_fields(payload)
    if not update:
        raise ValidationError("No fields to update provided", reason="empty_update")
    if "totalCopies" in update or "availableCopies" in update:
        # copies out on loan are neither on the shelf nor removable
        on_loan = services.records.count_open(book_id=book_id)
        total = update.get("totalCopies", existing.total_copies)
        if total < on_loan:
            raise Conflict(f"totalCopies cannot be lower than the {on_loan} copies on loan",
                           reason="copies_on_loan")
        if update.get("availableCopies", total - on_loan) != total - on_loan:
            raise ValidationError(f"availableCopies must equal totalCopies minus the {on_loan} copies on loan",
                                  reason="invalid_copies")
        update["availableCopies"] = total - on_loan
    book = services.catalog.update(book_id, update)
    if book is None:
        raise NotFound("Book not found", reason="book_not_found")
    return {"message": "Book updated successfully", "book": serialize(book)}


@books.delete("/{book_id}", dependencies=[Depends(require_caller)])
def delete_book(book_id: str, services: Services = Depends(get_services)):
    load_book(book_id, services)
    if services.records.count_open(book_id=book_id) > 0:
        raise Conflict("Cannot delete a book with active borrowing records", reason="book_has_open_records")
    if not services.catalog.delete(book_id):
        raise NotFound("Book not found", reason="book_not_found")
    return {"message": "Book deleted successfully", "id": book_id}


# Members Endpoints
members = APIRouter(prefix="/members", tags=["Members"])


def load_member(member_id: str, services: Services) -> MemberSchema:
    member = services.members.get(member_id)
    if member is None:
        raise NotFound("Member not found", reason="member_not_found")
    return member


@members.get("")
def list_members(services: Services = Depends(get_services)):
    return [serialize(m) for m in services.members.list()]


@members.get("/{member_id}")
def get_member(member_id: str, services: Services = Depends(get_services)):
    return serialize(load_member(member_id, services))


@members.post("", status_code=201, dependencies=[Depends(require_caller)])
def create_member(payload: CreateMember, services: Services = Depends(get_services)):
    if services.members.find_by_email(payload.email) is not None:
        raise Conflict("Member with this email already exists", reason="duplicate_email")
    data = changed_fields(payload)
    data.setdefault("maxBooksAllowed", DEFAULT_MAX_BOOKS.get(payload.membership_type, 3))
    data["borrowedBooks"] = 0
    member = MemberSchema(**data)
    member.id = services.members.create(member)
    return {"id": member.id, "message": "Member created successfully", "member": serialize(member)}


@members.put("/{member_id}", dependencies=[Depends(require_caller)])
def update_member(member_id: str, payload: UpdateMember, services: Services = Depends(get_services)):
    existing = load_member(member_id, services)
    update = changed_fields(payload)
    if not update:
        raise ValidationError("No fields to update provided", reason="empty_update")
    if "email" in update:
        update["email"] = update["email"].lower()
        if update["email"] != existing.email:
            other = services.members.find_by_email(update["email"])
            if other is not None and other.id != member_id:
                raise Conflict("Email is already in use by another member", reason="duplicate_email")
    if update.get("maxBooksAllowed", existing.max_books_allowed) < existing.borrowed_books:
        raise ValidationError("maxBooksAllowed cannot be lower than the books currently borrowed",
                              reason="invalid_max_books")
    member = services.members.update(member_id, update)
    if member is None:
        raise NotFound("Member not found", reason="member_not_found")
    return {"message": "Member updated successfully", "member": serialize(member)}


@members.delete("/{member_id}", dependencies=[Depends(require_caller)])
def delete_member(member_id: str, services: Services = Depends(get_services)):
    member = load_member(member_id, services)
    if member.borrowed_books > 0 or services.records.count_open(member_id=member_id) > 0:
        raise Conflict("Cannot delete a member with borrowed books", reason="member_has_open_records")
    if not services.members.delete(member_id):
        raise NotFound("Member not found", reason="member_not_found")
    return {"message": "Member deleted successfully", "id": member_id}


# Authors Endpoints
authors = APIRouter(prefix="/authors", tags=["Authors"])


def load_author(author_id: str, services: Services) -> AuthorSchema:
    author = services.authors.get(author_id)
    if author is None:
        raise NotFound("Author not found", reason="author_not_found")
    return author


def check_lifespan(birth: Optional[date], death: Optional[date]):
    if birth and death and death < birth:
        raise ValidationError("deathDate cannot be before birthDate", reason="invalid_dates")


@authors.get("")
def list_authors(services: Services = Depends(get_services)):
    return [serialize(a) for a in services.authors.list()]


@authors.get("/{author_id}")
def get_author(author_id: str, services: Services = Depends(get_services)):
    return serialize(load_author(author_id, services))


@authors.post("", status_code=201, dependencies=[Depends(require_caller)])
def create_author(payload: CreateAuthor, services: Services = Depends(get_services)):
    check_lifespan(payload.birth_date, payload.death_date)
    author = AuthorSchema(**changed_fields(payload))
    author.id = services.authors.create(author)
    return {"id": author.id, "message": "Author created successfully", "author": serialize(author)}


@authors.put("/{author_id}", dependencies=[Depends(require_caller)])
def update_author(author_id: str, payload: UpdateAuthor, services: Services = Depends(get_services)):
    existing = load_author(author_id, services)
    update = changed_fields(payload)
    # an explicit null clears the date of death
    if "death_date" in payload.model_fields_set and payload.death_date is None:
        update["deathDate"] = None
    if not update:
        raise ValidationError("No fields to update provided", reason="empty_update")
    check_lifespan(payload.birth_date or existing.birth_date,
                   payload.death_date if "deathDate" in update else existing.death_date)
    author = services.authors.update(author_id, update)
    if author is None:
        raise NotFound("Author not found", reason="author_not_found")
    return {"message": "Author updated successfully", "author": serialize(author)}


@authors.delete("/{author_id}", dependencies=[Depends(require_caller)])
def delete_author(author_id: str, services: Services = Depends(get_services)):
    author = load_author(author_id, services)
    if services.catalog.count_by_author(author.full_name) > 0:
        raise Conflict("Cannot delete author with existing books. Please delete or reassign books first.",
                       reason="author_has_books")
    if not services.authors.delete(author_id):
        raise NotFound("Author not found", reason="author_not_found")
    return {"message": "Author deleted successfully", "id": author_id}


def create_app(services: Optional[Services] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or (services.settings if services else get_settings())
    set_level(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings)
            logger.info(f"connected to database {settings.database_name}")
        yield
        client = app.state.services.client
        if client is not None:
            client.close()

    app = FastAPI(title="Library Lending API", lifespan=lifespan)
    app.state.services = services
    app.dependency_overrides[get_settings] = lambda: settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(LibraryError, library_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.get("/")
    def read_root():
        return {"message": "Library Lending API is running"}

    @app.get("/test")
    def test_database():
        response = {
            "backend": "✅ Running",
            "database": "❌ Not Available",
            "database_name": settings.database_name,
            "connection_status": "Not Connected",
            "collections": [],
        }
        db = app.state.services.db if app.state.services else None
        if db is None:
            response["database"] = "⚠️  Available but not initialized"
            return response
        response["connection_status"] = "Connected"
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        return response

    app.include_router(borrowing)
    app.include_router(books)
    app.include_router(members)
    app.include_router(authors)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=get_settings().port)

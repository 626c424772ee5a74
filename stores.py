"""
Collection-backed stores and the transaction coordinator.

Every method that touches the database takes an optional ``session`` so the
ledger can run its reads and writes inside one MongoDB transaction.
"""

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.client_session import ClientSession
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from database import AUTHORS, BOOKS, BORROWING, MEMBERS, create_document, from_bson, to_bson, to_object_id
from errors import Conflict, LibraryError, TransactionFailure
from logger import get_logger
from schemas import OPEN_STATUSES, Author, Book, BorrowingRecord, Member

logger = get_logger(__name__)

OPEN_VALUES = [s.value for s in OPEN_STATUSES]


class CatalogStore:
    """Book documents."""

    def __init__(self, db: Database):
        self.collection = db[BOOKS]

    def ensure_indexes(self):
        self.collection.create_index("isbn", unique=True)

    def get(self, book_id: str, session: Optional[ClientSession] = None) -> Optional[Book]:
        doc = self.collection.find_one({"_id": to_object_id(book_id, "book ID")}, session=session)
        return Book(**from_bson(doc)) if doc else None

    def list(self) -> List[Book]:
        return [Book(**from_bson(d)) for d in self.collection.find({}).sort("title", 1)]

    def create(self, book: Book) -> str:
        try:
            return create_document(self.collection.database, BOOKS, book)
        except DuplicateKeyError:
            raise Conflict("A book with this ISBN already exists", reason="duplicate_isbn")

    def update(self, book_id: str, fields: Dict[str, Any]) -> Optional[Book]:
        doc = self.collection.find_one_and_update(
            {"_id": to_object_id(book_id, "book ID")},
            {"$set": to_bson(fields)},
            return_document=ReturnDocument.AFTER,
        )
        return Book(**from_bson(doc)) if doc else None

    def delete(self, book_id: str) -> bool:
        result = self.collection.delete_one({"_id": to_object_id(book_id, "book ID")})
        return result.deleted_count > 0

    def count_by_author(self, name: str) -> int:
        return self.collection.count_documents({"author": name})

    def take_copy(self, book_id: str, session: Optional[ClientSession] = None) -> bool:
        """Decrement availableCopies if one is on the shelf."""
        result = self.collection.update_one(
            {"_id": to_object_id(book_id, "book ID"), "availableCopies": {"$gt": 0}},
            {"$inc": {"availableCopies": -1}},
            session=session,
        )
        return result.modified_count == 1

    def put_back_copy(self, book_id: str, session: Optional[ClientSession] = None) -> bool:
        """Increment availableCopies, never past totalCopies."""
        result = self.collection.update_one(
            {
                "_id": to_object_id(book_id, "book ID"),
                "$expr": {"$lt": ["$availableCopies", "$totalCopies"]},
            },
            {"$inc": {"availableCopies": 1}},
            session=session,
        )
        return result.modified_count == 1


class AuthorStore:
    """Author documents."""

    def __init__(self, db: Database):
        self.collection = db[AUTHORS]

    def ensure_indexes(self):
        self.collection.create_index([("lastName", 1), ("firstName", 1)])

    def get(self, author_id: str) -> Optional[Author]:
        doc = self.collection.find_one({"_id": to_object_id(author_id, "author ID")})
        return Author(**from_bson(doc)) if doc else None

    def list(self) -> List[Author]:
        return [Author(**from_bson(d)) for d in self.collection.find({}).sort([("lastName", 1), ("firstName", 1)])]

    def create(self, author: Author) -> str:
        return create_document(self.collection.database, AUTHORS, author)

    def update(self, author_id: str, fields: Dict[str, Any]) -> Optional[Author]:
        doc = self.collection.find_one_and_update(
            {"_id": to_object_id(author_id, "author ID")},
            {"$set": to_bson(fields)},
            return_document=ReturnDocument.AFTER,
        )
        return Author(**from_bson(doc)) if doc else None

    def delete(self, author_id: str) -> bool:
        result = self.collection.delete_one({"_id": to_object_id(author_id, "author ID")})
        return result.deleted_count > 0


class MembershipStore:
    """Member documents."""

    def __init__(self, db: Database):
        self.collection = db[MEMBERS]

    def ensure_indexes(self):
        self.collection.create_index("email", unique=True)

    def get(self, member_id: str, session: Optional[ClientSession] = None) -> Optional[Member]:
        doc = self.collection.find_one({"_id": to_object_id(member_id, "member ID")}, session=session)
        return Member(**from_bson(doc)) if doc else None

    def find_by_email(self, email: str) -> Optional[Member]:
        doc = self.collection.find_one({"email": email.strip().lower()})
        return Member(**from_bson(doc)) if doc else None

    def list(self) -> List[Member]:
        return [Member(**from_bson(d)) for d in self.collection.find({}).sort("lastName", 1)]

    def create(self, member: Member) -> str:
        try:
            return create_document(self.collection.database, MEMBERS, member)
        except DuplicateKeyError:
            raise Conflict("Member with this email already exists", reason="duplicate_email")

    def update(self, member_id: str, fields: Dict[str, Any]) -> Optional[Member]:
        try:
            doc = self.collection.find_one_and_update(
                {"_id": to_object_id(member_id, "member ID")},
                {"$set": to_bson(fields)},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise Conflict("Email is already in use by another member", reason="duplicate_email")
        return Member(**from_bson(doc)) if doc else None

    def delete(self, member_id: str) -> bool:
        result = self.collection.delete_one({"_id": to_object_id(member_id, "member ID")})
        return result.deleted_count > 0

    def check_out(self, member_id: str, session: Optional[ClientSession] = None) -> bool:
        """Increment borrowedBooks while it stays within maxBooksAllowed."""
        result = self.collection.update_one(
            {
                "_id": to_object_id(member_id, "member ID"),
                "$expr": {"$lt": ["$borrowedBooks", "$maxBooksAllowed"]},
            },
            {"$inc": {"borrowedBooks": 1}},
            session=session,
        )
        return result.modified_count == 1

    def check_in(self, member_id: str, session: Optional[ClientSession] = None) -> bool:
        result = self.collection.update_one(
            {"_id": to_object_id(member_id, "member ID"), "borrowedBooks": {"$gt": 0}},
            {"$inc": {"borrowedBooks": -1}},
            session=session,
        )
        return result.modified_count == 1


class BorrowingStore:
    """Borrowing records. bookId and memberId are stored as ObjectIds."""

    def __init__(self, db: Database):
        self.collection = db[BORROWING]

    def ensure_indexes(self):
        self.collection.create_index([("bookId", 1), ("memberId", 1), ("status", 1)])

    @staticmethod
    def _load(doc) -> Optional[BorrowingRecord]:
        return BorrowingRecord(**from_bson(doc)) if doc else None

    def get(self, record_id: str, session: Optional[ClientSession] = None) -> Optional[BorrowingRecord]:
        doc = self.collection.find_one({"_id": to_object_id(record_id, "borrowing ID")}, session=session)
        return self._load(doc)

    def list(self) -> List[BorrowingRecord]:
        return [self._load(d) for d in self.collection.find({}).sort("borrowDate", -1)]

    def find_open(self, book_id: str, member_id: str, session: Optional[ClientSession] = None) -> Optional[BorrowingRecord]:
        doc = self.collection.find_one(
            {
                "bookId": to_object_id(book_id, "book ID"),
                "memberId": to_object_id(member_id, "member ID"),
                "status": {"$in": OPEN_VALUES},
            },
            session=session,
        )
        return self._load(doc)

    def count_open(self, book_id: Optional[str] = None, member_id: Optional[str] = None) -> int:
        query: Dict[str, Any] = {"status": {"$in": OPEN_VALUES}}
        if book_id:
            query["bookId"] = to_object_id(book_id, "book ID")
        if member_id:
            query["memberId"] = to_object_id(member_id, "member ID")
        return self.collection.count_documents(query)

    def insert(self, record: BorrowingRecord, session: Optional[ClientSession] = None) -> str:
        data = record.to_document()
        data["bookId"] = to_object_id(record.book_id)
        data["memberId"] = to_object_id(record.member_id)
        result = self.collection.insert_one(to_bson(data), session=session)
        return str(result.inserted_id)

    def mark_returned(
        self,
        record_id: str,
        return_date: datetime,
        status: str,
        late_fee: Decimal,
        session: Optional[ClientSession] = None,
    ) -> bool:
        """Close an open record. Matches nothing if it was closed meanwhile."""
        result = self.collection.update_one(
            {"_id": to_object_id(record_id, "borrowing ID"), "status": {"$in": OPEN_VALUES}},
            {"$set": to_bson({"returnDate": return_date, "status": status, "lateFee": late_fee})},
            session=session,
        )
        return result.modified_count == 1

    def delete(self, record_id: str, session: Optional[ClientSession] = None) -> bool:
        result = self.collection.delete_one({"_id": to_object_id(record_id, "borrowing ID")}, session=session)
        return result.deleted_count > 0


class MongoTransactionCoordinator:
    """
    All-or-nothing execution of a write batch over one client session.

    ``transaction()`` commits when the block finishes and aborts on any
    exception. Driver errors surface as TransactionFailure, errors from the
    taxonomy propagate unchanged.
    """

    def __init__(self, client):
        self.client = client

    def begin(self) -> ClientSession:
        session = self.client.start_session()
        try:
            session.start_transaction(
                read_concern=ReadConcern("snapshot"),
                write_concern=WriteConcern("majority"),
            )
        except PyMongoError:
            session.end_session()
            raise
        return session

    def commit(self, session: ClientSession):
        try:
            session.commit_transaction()
        finally:
            session.end_session()

    def abort(self, session: ClientSession):
        try:
            if session.in_transaction:
                session.abort_transaction()
        except PyMongoError as exc:
            logger.warning(f"abort_transaction failed: {exc}")
        finally:
            session.end_session()

    @contextmanager
    def transaction(self):
        try:
            session = self.begin()
        except PyMongoError as exc:
            raise TransactionFailure(f"Could not start transaction: {exc}") from exc

        try:
            yield session
        except LibraryError as exc:
            logger.debug(f"transaction aborted: {exc.reason}")
            self.abort(session)
            raise
        except PyMongoError as exc:
            logger.warning(f"transaction aborted after driver error: {exc}")
            self.abort(session)
            raise TransactionFailure(f"Transaction aborted: {exc}") from exc
        except BaseException:
            self.abort(session)
            raise

        try:
            self.commit(session)
        except PyMongoError as exc:
            logger.warning(f"commit failed: {exc}")
            raise TransactionFailure(f"Transaction could not be committed: {exc}") from exc

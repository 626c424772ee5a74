from datetime import timedelta

import pytest
from pymongo.errors import OperationFailure

from tests.fakes import new_id


@pytest.fixture
def library(make_book, make_member):
    return make_book(total=1), make_member(max_books=3)


def borrow(client, auth, book_id, member_id, **extra):
    return client.post("/borrowing/borrow", json={"bookId": book_id, "memberId": member_id, **extra}, headers=auth)


class TestBorrowing:
    def test_root(self, client):
        assert client.get("/").status_code == 200

    def test_borrow(self, client, auth, library, catalog, members):
        book_id, member_id = library
        r = borrow(client, auth, book_id, member_id, loanDays=7, notes="front desk")
        assert r.status_code == 201
        body = r.json()
        assert body["message"] == "Book borrowed successfully"
        assert body["borrowing"]["id"] == body["id"]
        assert body["borrowing"]["bookId"] == book_id
        assert body["borrowing"]["memberId"] == member_id
        assert body["borrowing"]["status"] == "Borrowed"
        assert body["borrowing"]["renewalCount"] == 0
        assert body["borrowing"]["returnDate"] is None
        assert body["borrowing"]["notes"] == "front desk"
        assert catalog.get(book_id).available_copies == 0
        assert members.get(member_id).borrowed_books == 1

    def test_borrow_requires_auth(self, client, library, records):
        book_id, member_id = library
        r = client.post("/borrowing/borrow", json={"bookId": book_id, "memberId": member_id})
        assert r.status_code == 401
        r = borrow(client, {"X-API-Key": "wrong"}, book_id, member_id)
        assert r.status_code == 401
        assert records.docs == {}

    def test_api_key_header(self, client, library):
        book_id, member_id = library
        assert borrow(client, {"X-API-Key": "test-token"}, book_id, member_id).status_code == 201

    def test_missing_fields(self, client, auth):
        r = client.post("/borrowing/borrow", json={}, headers=auth)
        assert r.status_code == 400
        assert r.json()["message"] == "Missing required fields: bookId, memberId"

    def test_invalid_loan_days(self, client, auth, library):
        book_id, member_id = library
        assert borrow(client, auth, book_id, member_id, loanDays=0).status_code == 400

    def test_loan_days_beyond_maximum(self, client, auth, library, catalog, records):
        book_id, member_id = library
        r = borrow(client, auth, book_id, member_id, loanDays=3000000)
        assert r.status_code == 400
        assert r.json()["reason"] == "invalid_loan_days"
        assert records.docs == {}
        assert catalog.get(book_id).available_copies == 1

    def test_invalid_id(self, client, auth, library):
        _, member_id = library
        r = borrow(client, auth, "123", member_id)
        assert r.status_code == 400
        assert r.json()["reason"] == "invalid_id"

    def test_book_not_found(self, client, auth, library):
        _, member_id = library
        r = borrow(client, auth, new_id(), member_id)
        assert r.status_code == 404
        assert r.json()["message"] == "Book not found"

    def test_already_borrowed(self, client, auth, library, catalog):
        book_id, member_id = library
        borrow(client, auth, book_id, member_id)
        catalog.docs[book_id].total_copies = 2
        catalog.docs[book_id].available_copies = 1
        r = borrow(client, auth, book_id, member_id)
        assert r.status_code == 400
        assert r.json()["reason"] == "already_borrowed"

    def test_no_copies(self, client, auth, make_book, make_member):
        r = borrow(client, auth, make_book(total=1, available=0), make_member())
        assert r.status_code == 400
        assert r.json()["reason"] == "no_copies_available"

    def test_inactive_member(self, client, auth, make_book, make_member):
        r = borrow(client, auth, make_book(), make_member(status="Suspended"))
        assert r.status_code == 400
        assert r.json()["message"] == "Member account is not active"

    def test_get_and_list_are_enriched(self, client, auth, library):
        book_id, member_id = library
        record_id = borrow(client, auth, book_id, member_id).json()["id"]

        r = client.get(f"/borrowing/{record_id}")
        assert r.status_code == 200
        body = r.json()
        assert body["bookDetails"]["id"] == book_id
        assert body["bookDetails"]["title"] == "Dune"
        assert body["memberDetails"]["email"].endswith("@example.com")

        listed = client.get("/borrowing").json()
        assert [b["id"] for b in listed] == [record_id]

    def test_overdue_is_derived_on_read(self, client, auth, library, records):
        book_id, member_id = library
        record_id = borrow(client, auth, book_id, member_id, loanDays=1).json()["id"]
        records.docs[record_id].due_date -= timedelta(days=30)

        assert client.get(f"/borrowing/{record_id}").json()["status"] == "Overdue"
        assert records.docs[record_id].status == "Borrowed"

    def test_get_bad_id_and_missing(self, client):
        assert client.get("/borrowing/nope").status_code == 400
        assert client.get(f"/borrowing/{new_id()}").status_code == 404

    def test_return_on_time(self, client, auth, library, catalog, members):
        book_id, member_id = library
        record_id = borrow(client, auth, book_id, member_id).json()["id"]

        r = client.put(f"/borrowing/return/{record_id}", headers=auth)

        assert r.status_code == 200
        assert r.json()["lateFee"] == "No late fee"
        assert r.json()["returnDate"]
        assert catalog.get(book_id).available_copies == 1
        assert members.get(member_id).borrowed_books == 0

    def test_return_late(self, client, auth, library, clock):
        book_id, member_id = library
        record_id = borrow(client, auth, book_id, member_id, loanDays=10).json()["id"]
        clock.advance(days=13)

        r = client.put(f"/borrowing/return/{record_id}", headers=auth)

        assert r.json()["lateFee"] == "$3.00"
        assert client.get(f"/borrowing/{record_id}").json()["status"] == "Returned (Late)"

    def test_return_twice(self, client, auth, library):
        book_id, member_id = library
        record_id = borrow(client, auth, book_id, member_id).json()["id"]
        client.put(f"/borrowing/return/{record_id}", headers=auth)
        r = client.put(f"/borrowing/return/{record_id}", headers=auth)
        assert r.status_code == 400
        assert r.json()["message"] == "Book has already been returned"

    def test_delete(self, client, auth, library, records):
        book_id, member_id = library
        record_id = borrow(client, auth, book_id, member_id).json()["id"]

        r = client.delete(f"/borrowing/{record_id}", headers=auth)
        assert r.status_code == 400
        assert r.json()["reason"] == "cannot_delete_active_record"

        client.put(f"/borrowing/return/{record_id}", headers=auth)
        r = client.delete(f"/borrowing/{record_id}", headers=auth)
        assert r.status_code == 200
        assert r.json()["id"] == record_id
        assert records.docs == {}

    def test_transaction_failure_is_500(self, client, auth, library, members, records):
        book_id, member_id = library
        members.fail_on_check_out = OperationFailure("node is recovering")
        r = borrow(client, auth, book_id, member_id)
        assert r.status_code == 500
        assert r.json()["reason"] == "transaction_failure"
        assert records.docs == {}


class TestBooks:
    payload = {"title": "Emma", "author": "Jane Austen", "isbn": "978-0141439587", "totalCopies": 3}

    def test_create_defaults_available(self, client, auth, catalog):
        r = client.post("/books", json=self.payload, headers=auth)
        assert r.status_code == 201
        book = catalog.get(r.json()["id"])
        assert book.available_copies == 3

    def test_create_rejects_more_available_than_total(self, client, auth):
        r = client.post("/books", json={**self.payload, "availableCopies": 4}, headers=auth)
        assert r.status_code == 400

    def test_create_missing_fields(self, client, auth):
        r = client.post("/books", json={"title": "Emma"}, headers=auth)
        assert r.status_code == 400
        assert r.json()["message"].startswith("Missing required fields: author")

    def test_duplicate_isbn(self, client, auth):
        client.post("/books", json=self.payload, headers=auth)
        assert client.post("/books", json=self.payload, headers=auth).status_code == 409

    def test_get_list_update(self, client, auth, make_book):
        book_id = make_book(total=2)
        assert client.get(f"/books/{book_id}").json()["totalCopies"] == 2
        assert len(client.get("/books").json()) == 1

        r = client.put(f"/books/{book_id}", json={"totalCopies": 5, "publisher": " Ace "}, headers=auth)
        assert r.status_code == 200
        assert r.json()["book"]["totalCopies"] == 5
        assert r.json()["book"]["publisher"] == "Ace"

        r = client.put(f"/books/{book_id}", json={"availableCopies": 9}, headers=auth)
        assert r.status_code == 400

        assert client.put(f"/books/{book_id}", json={}, headers=auth).status_code == 400

    def test_copies_cannot_drop_below_those_on_loan(self, client, auth, make_book, make_member, ledger, catalog):
        book_id = make_book(total=3)
        first = ledger.borrow(book_id, make_member())
        second = ledger.borrow(book_id, make_member())

        r = client.put(f"/books/{book_id}", json={"totalCopies": 1}, headers=auth)
        assert r.status_code == 409
        assert r.json()["reason"] == "copies_on_loan"
        assert catalog.get(book_id).total_copies == 3

        r = client.put(f"/books/{book_id}", json={"totalCopies": 2, "availableCopies": 1}, headers=auth)
        assert r.status_code == 400
        assert r.json()["reason"] == "invalid_copies"

        r = client.put(f"/books/{book_id}", json={"totalCopies": 2}, headers=auth)
        assert r.status_code == 200
        assert r.json()["book"]["availableCopies"] == 0

        assert client.put(f"/borrowing/return/{first.id}", headers=auth).status_code == 200
        assert client.put(f"/borrowing/return/{second.id}", headers=auth).status_code == 200
        book = catalog.get(book_id)
        assert (book.total_copies, book.available_copies) == (2, 2)

    def test_delete_with_open_record(self, client, auth, library, ledger):
        book_id, member_id = library
        ledger.borrow(book_id, member_id)
        assert client.delete(f"/books/{book_id}", headers=auth).status_code == 409

    def test_delete(self, client, auth, make_book):
        book_id = make_book()
        assert client.delete(f"/books/{book_id}", headers=auth).status_code == 200
        assert client.get(f"/books/{book_id}").status_code == 404


class TestMembers:
    payload = {
        "firstName": "Grace",
        "lastName": "Hopper",
        "email": "Grace@Example.com",
        "phone": "555-0199",
        "membershipType": "Premium",
    }

    def test_create(self, client, auth, members):
        r = client.post("/members", json=self.payload, headers=auth)
        assert r.status_code == 201
        member = members.get(r.json()["id"])
        assert member.email == "grace@example.com"
        assert member.max_books_allowed == 5
        assert member.borrowed_books == 0
        assert member.status == "Active"

    def test_create_validation(self, client, auth):
        r = client.post("/members", json={**self.payload, "email": "nope"}, headers=auth)
        assert r.status_code == 400
        r = client.post("/members", json={**self.payload, "membershipType": "Gold"}, headers=auth)
        assert r.status_code == 400
        r = client.post("/members", json={**self.payload, "status": "Banned"}, headers=auth)
        assert r.status_code == 400

    def test_duplicate_email(self, client, auth):
        client.post("/members", json=self.payload, headers=auth)
        r = client.post("/members", json={**self.payload, "email": "grace@example.com"}, headers=auth)
        assert r.status_code == 409

    def test_update(self, client, auth, make_member, members):
        member_id = make_member(borrowed=2, max_books=3)
        r = client.put(f"/members/{member_id}", json={"status": "Suspended"}, headers=auth)
        assert r.status_code == 200
        assert members.get(member_id).status == "Suspended"

        r = client.put(f"/members/{member_id}", json={"maxBooksAllowed": 1}, headers=auth)
        assert r.status_code == 400

    def test_update_rejects_unknown_status(self, client, auth, make_member, members):
        member_id = make_member()
        r = client.put(f"/members/{member_id}", json={"status": "Banned"}, headers=auth)
        assert r.status_code == 400
        assert r.json()["reason"] == "validation_error"
        assert members.get(member_id).status == "Active"

    def test_update_email_taken(self, client, auth, make_member):
        make_member(email="taken@example.com")
        member_id = make_member()
        r = client.put(f"/members/{member_id}", json={"email": "TAKEN@example.com"}, headers=auth)
        assert r.status_code == 409

    def test_delete(self, client, auth, make_member):
        busy = make_member(borrowed=1)
        idle = make_member()
        assert client.delete(f"/members/{busy}", headers=auth).status_code == 409
        assert client.delete(f"/members/{idle}", headers=auth).status_code == 200
        assert client.get(f"/members/{idle}").status_code == 404

    def test_delete_with_open_record(self, client, auth, make_book, make_member, members, ledger):
        member_id = make_member()
        ledger.borrow(make_book(), member_id)
        # counter drift must not let a member with an open loan be removed
        members.docs[member_id].borrowed_books = 0

        r = client.delete(f"/members/{member_id}", headers=auth)

        assert r.status_code == 409
        assert r.json()["reason"] == "member_has_open_records"
        assert members.get(member_id) is not None


class TestAuthors:
    payload = {
        "firstName": "Ursula",
        "lastName": "Le Guin",
        "nationality": "American",
        "birthDate": "1929-10-21",
        "notableWorks": ["The Dispossessed", "A Wizard of Earthsea"],
    }

    def test_create_and_get(self, client, auth, authors):
        r = client.post("/authors", json={**self.payload, "firstName": " Ursula "}, headers=auth)
        assert r.status_code == 201
        body = r.json()
        assert body["message"] == "Author created successfully"
        assert body["author"]["firstName"] == "Ursula"
        assert body["author"]["birthDate"] == "1929-10-21"
        assert body["author"]["deathDate"] is None
        assert body["author"]["biography"] == ""

        stored = client.get(f"/authors/{body['id']}").json()
        assert stored["notableWorks"] == ["The Dispossessed", "A Wizard of Earthsea"]
        assert len(client.get("/authors").json()) == 1
        assert authors.get(body["id"]).full_name == "Ursula Le Guin"

    def test_create_requires_auth(self, client):
        assert client.post("/authors", json=self.payload).status_code == 401

    def test_create_missing_fields(self, client, auth):
        r = client.post("/authors", json={"firstName": "Ursula"}, headers=auth)
        assert r.status_code == 400
        assert r.json()["message"] == "Missing required fields: lastName, nationality, birthDate"

    @pytest.mark.parametrize("field", ["birthDate", "deathDate"])
    def test_create_bad_date(self, client, auth, field):
        r = client.post("/authors", json={**self.payload, field: "21/10/1929"}, headers=auth)
        assert r.status_code == 400
        assert r.json()["message"] == f"Invalid {field} format. Use YYYY-MM-DD"

    def test_notable_works_must_be_a_list(self, client, auth):
        r = client.post("/authors", json={**self.payload, "notableWorks": "Earthsea"}, headers=auth)
        assert r.status_code == 400
        assert r.json()["message"] == "notableWorks must be an array"

    def test_death_before_birth(self, client, auth):
        r = client.post("/authors", json={**self.payload, "deathDate": "1900-01-01"}, headers=auth)
        assert r.status_code == 400
        assert r.json()["reason"] == "invalid_dates"

    def test_update(self, client, auth, authors):
        author_id = client.post("/authors", json={**self.payload, "deathDate": "2018-01-22"}, headers=auth).json()["id"]

        r = client.put(f"/authors/{author_id}", json={"biography": "Novelist"}, headers=auth)
        assert r.status_code == 200
        assert r.json()["author"]["biography"] == "Novelist"
        assert r.json()["author"]["deathDate"] == "2018-01-22"

        r = client.put(f"/authors/{author_id}", json={"deathDate": None}, headers=auth)
        assert r.status_code == 200
        assert r.json()["author"]["deathDate"] is None
        assert authors.get(author_id).death_date is None

        r = client.put(f"/authors/{author_id}", json={"birthDate": "not a date"}, headers=auth)
        assert r.json()["message"] == "Invalid birthDate format. Use YYYY-MM-DD"

    def test_update_nothing(self, client, auth):
        author_id = client.post("/authors", json=self.payload, headers=auth).json()["id"]
        r = client.put(f"/authors/{author_id}", json={}, headers=auth)
        assert r.status_code == 400
        assert r.json()["message"] == "No fields to update provided"

    def test_missing_and_bad_id(self, client, auth):
        assert client.get(f"/authors/{new_id()}").status_code == 404
        assert client.get("/authors/nope").status_code == 400
        assert client.put(f"/authors/{new_id()}", json={"biography": "x"}, headers=auth).status_code == 404

    def test_delete_blocked_by_books(self, client, auth, catalog):
        author_id = client.post("/authors", json=self.payload, headers=auth).json()["id"]
        client.post("/books", json={"title": "The Dispossessed", "author": "Ursula Le Guin",
                                    "isbn": "978-0060512750", "totalCopies": 1}, headers=auth)

        r = client.delete(f"/authors/{author_id}", headers=auth)
        assert r.status_code == 409
        assert r.json()["reason"] == "author_has_books"

        book_id = catalog.list()[0].id
        client.delete(f"/books/{book_id}", headers=auth)
        r = client.delete(f"/authors/{author_id}", headers=auth)
        assert r.status_code == 200
        assert client.get(f"/authors/{author_id}").status_code == 404

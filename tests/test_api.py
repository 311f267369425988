import pytest
from fastapi.testclient import TestClient

import api as api_module
from config import settings

HEADERS = {"X-API-Key": settings.api_key}


@pytest.fixture
def client(lib, monkeypatch):
    # Point the module-level library at the per-test database
    monkeypatch.setattr(api_module, "library", lib)
    return TestClient(api_module.app)


def create_book(client, **overrides):
    payload = {"title": "Dune", "author": "Frank Herbert", "total_copies": 2}
    payload.update(overrides)
    response = client.post("/books", headers=HEADERS, json=payload)
    assert response.status_code == 201
    return response.json()["book"]


def create_student(client, roll="S1", **overrides):
    payload = {"name": "Ada", "email": f"{roll.lower()}@uni.edu", "student_id": roll}
    payload.update(overrides)
    response = client.post("/students", headers=HEADERS, json=payload)
    assert response.status_code == 201
    return response.json()


def issue(client, student_id, book_id, due_date="2024-01-10", issue_date="2024-01-01"):
    payload = {"student_id": student_id, "book_id": book_id, "issue_date": issue_date, "due_date": due_date}
    return client.post("/loans/issue", headers=HEADERS, json=payload)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_get_books(client):
    response = client.get("/books")
    assert response.status_code == 200
    assert response.json() == []


def test_add_book_with_valid_api_key(client):
    book = create_book(client, isbn="9780321765727")
    assert book["isbn"] == "9780321765727"
    assert book["available_copies"] == 2


def test_add_book_with_invalid_api_key(client):
    response = client.post("/books", headers={"X-API-Key": "invalid-key"}, json={"title": "T", "author": "A"})
    assert response.status_code == 403


def test_add_book_without_api_key(client):
    response = client.post("/books", json={"title": "T", "author": "A"})
    assert response.status_code in (401, 403)


def test_book_crud(client):
    book = create_book(client)
    assert client.get(f"/books/{book['id']}").json()["title"] == "Dune"

    response = client.put(f"/books/{book['id']}", headers=HEADERS, json={"location": "Shelf A"})
    assert response.status_code == 200
    assert response.json()["book"]["location"] == "Shelf A"

    assert client.delete(f"/books/{book['id']}", headers=HEADERS).status_code == 200
    assert client.get("/books").json() == []


def test_missing_book_is_404(client):
    response = client.get("/books/999")
    assert response.status_code == 404
    assert response.json() == {"detail": "Book not found", "code": "not_found"}


def test_invalid_isbn_is_400(client):
    response = client.post("/books", headers=HEADERS, json={"title": "T", "author": "A", "isbn": "123"})
    assert response.status_code == 400
    assert response.json()["code"] == "invalid"


def test_issue_and_late_return(client):
    book = create_book(client)
    student = create_student(client)

    response = issue(client, student["id"], book["id"])
    assert response.status_code == 201
    loan = response.json()["loan"]
    assert loan["status"] == "issued"

    response = client.put(f"/loans/{loan['id']}/return", headers=HEADERS, json={"return_date": "2024-01-15"})
    assert response.status_code == 200
    body = response.json()
    assert body["loan"]["status"] == "returned"
    assert body["fine_amount"] == "25.00"
    assert body["fine"]["days_overdue"] == 5

    response = client.put(f"/loans/{loan['id']}/return", headers=HEADERS, json={"return_date": "2024-01-16"})
    assert response.status_code == 409
    assert response.json()["code"] == "already_returned"


def test_issue_errors_map_to_status_codes(client):
    last_copy = create_book(client, total_copies=1)
    shelf = create_book(client, title="Emma", author="Jane Austen", total_copies=3)
    student = create_student(client)
    other = create_student(client, roll="S2")

    assert issue(client, 999, shelf["id"]).status_code == 404
    assert issue(client, student["id"], shelf["id"]).status_code == 201

    duplicate = issue(client, student["id"], shelf["id"])
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "duplicate_loan"

    assert issue(client, student["id"], last_copy["id"]).status_code == 201
    unavailable = issue(client, other["id"], last_copy["id"])
    assert unavailable.status_code == 409
    assert unavailable.json()["detail"] == "Book not available"


def test_limit_exceeded(client):
    first = create_book(client)
    second = create_book(client, title="Emma", author="Jane Austen")
    student = create_student(client, max_books_allowed=1)
    assert issue(client, student["id"], first["id"]).status_code == 201

    response = issue(client, student["id"], second["id"])
    assert response.status_code == 409
    assert response.json()["code"] == "limit_exceeded"


def test_generate_pay_and_waive_fines(client):
    student = create_student(client)
    first = create_book(client)
    second = create_book(client, title="Emma", author="Jane Austen")
    issue(client, student["id"], first["id"], due_date="2020-01-01", issue_date="2019-12-15")
    issue(client, student["id"], second["id"], due_date="2020-01-01", issue_date="2019-12-15")

    response = client.post("/fines/generate", headers=HEADERS)
    assert response.status_code == 200
    report = response.json()
    assert report["created"] == 2
    assert report["marked_overdue"] == 2
    assert report["errors"] == []

    response = client.get(f"/fines/student/{student['id']}")
    fines = response.json()["fines"]
    assert len(fines) == 2
    assert response.json()["summary"]["pending"]["count"] == 2

    paid = client.post(f"/fines/{fines[0]['id']}/pay", headers=HEADERS, json={"paid_date": "2024-02-01"})
    assert paid.status_code == 200
    assert paid.json()["fine"]["status"] == "paid"

    again = client.post(f"/fines/{fines[0]['id']}/pay", headers=HEADERS)
    assert again.status_code == 409
    assert again.json()["code"] == "already_paid"

    cannot_waive = client.post(f"/fines/{fines[0]['id']}/waive", headers=HEADERS, json={"notes": "x"})
    assert cannot_waive.json()["code"] == "cannot_waive_paid"

    waived = client.post(f"/fines/{fines[1]['id']}/waive", headers=HEADERS, json={"notes": "first offence"})
    assert waived.status_code == 200
    assert waived.json()["fine"]["status"] == "waived"

    listing = client.get("/fines", params={"status": "paid"}).json()
    assert listing["pagination"]["total"] == 1


def test_missing_fine_is_404(client):
    response = client.post("/fines/999/pay", headers=HEADERS)
    assert response.status_code == 404
    assert response.json()["detail"] == "Fine not found"


def test_fine_policy_endpoints(client):
    assert client.get("/fine-policy").json()["rate_per_day"] == "5.00"

    response = client.post(
        "/fine-policy", headers=HEADERS, json={"rate_per_day": "2.50", "grace_period_days": 1, "max_fine_amount": "20"}
    )
    assert response.status_code == 201
    current = client.get("/fine-policy").json()
    assert current["rate_per_day"] == "2.50"
    assert current["max_fine_amount"] == "20.00"


def test_overdue_and_lost_loans(client):
    book = create_book(client)
    student = create_student(client)
    loan = issue(client, student["id"], book["id"], due_date="2020-01-01", issue_date="2019-12-15").json()["loan"]

    overdue = client.get("/loans/overdue", headers=HEADERS).json()
    assert [l["id"] for l in overdue] == [loan["id"]]

    response = client.post(f"/loans/{loan['id']}/lost", headers=HEADERS, json={"notes": "lost on trip"})
    assert response.status_code == 200
    assert response.json()["loan"]["status"] == "lost"
    assert client.get(f"/books/{book['id']}").json()["total_copies"] == 1

    history = client.get(f"/students/{student['id']}/history").json()
    assert [l["status"] for l in history] == ["lost"]


def test_suggestions(client):
    student = create_student(client)
    response = client.post(
        "/suggestions",
        json={"student_id": student["id"], "title": "Emma", "author": "Jane Austen", "reason": "Course"},
    )
    assert response.status_code == 201
    suggestion = response.json()["suggestion"]

    response = client.put(f"/suggestions/{suggestion['id']}/review", headers=HEADERS, json={"status": "approved"})
    assert response.status_code == 200
    assert response.json()["suggestion"]["status"] == "approved"

    assert client.delete(f"/suggestions/{suggestion['id']}", headers=HEADERS).status_code == 200
    assert client.get("/suggestions").json() == []


def test_stats(client):
    create_book(client)
    stats = client.get("/stats").json()
    assert stats["total_books"] == 1
    assert stats["total_copies"] == 2

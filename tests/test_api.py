import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from main import app, get_db
from services import CategoryService


@pytest.fixture
def client():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, expire_on_commit=False)
    with TestingSession() as session:
        CategoryService(session).seed_defaults()

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _expense(client: TestClient, **overrides) -> dict:
    payload = {
        "description": "Dinner",
        "amount_cents": 5400,
        "date": "2024-03-02",
        "type": "expense",
        "category_id": "cat_food",
    }
    payload.update(overrides)
    response = client.post("/api/transactions", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_transaction_resolves_subcategory(client):
    created = _expense(client, tags=["date night"])

    assert created["categoryId"] == "cat_food"
    assert created["tags"] == ["date night"]
    food = client.get("/api/categories").json()
    food = next(c for c in food if c["id"] == "cat_food")
    other = next(s for s in food["subcategories"] if s["name"] == "Other")
    assert created["subcategoryId"] == other["id"]


def test_delete_category_reassigns_transactions(client):
    created = _expense(client, subcategory_id="sub_groceries")

    response = client.delete("/api/categories/cat_food")
    assert response.status_code == 200
    assert response.json()["transactions_moved"] == 1

    moved = client.get(f"/api/transactions/{created['id']}").json()
    assert moved["categoryId"] == "sys_other_expense"


def test_error_mapping(client):
    assert client.get("/api/transactions/missing").status_code == 404
    response = client.post(
        "/api/transactions",
        json={
            "amount_cents": 100,
            "date": "2024-03-02",
            "type": "income",
            "category_id": "cat_food",
        },
    )
    assert response.status_code == 400
    assert client.post("/api/transactions", json={"amount_cents": -1}).status_code == 422
    assert client.delete("/api/categories/cat_food?target_category_id=cat_food").status_code == 400


def test_bulk_and_split_endpoints(client):
    first = _expense(client)
    second = _expense(client, description="Lunch", amount_cents=1200)

    response = client.post(
        "/api/transactions/bulk/category",
        json={"ids": [first["id"], second["id"]], "category_id": "cat_entertainment"},
    )
    assert response.status_code == 200
    assert {t["categoryId"] for t in response.json()} == {"cat_entertainment"}

    response = client.post(
        "/api/transactions/bulk/tags",
        json={"ids": [first["id"]], "tags": ["trip"], "mode": "replace"},
    )
    assert response.json()[0]["tags"] == ["trip"]

    response = client.post(
        f"/api/transactions/{second['id']}/split",
        json={
            "parts": [
                {
                    "description": "Lunch A",
                    "amount_cents": 600,
                    "date": "2024-03-02",
                    "type": "expense",
                    "category_id": "cat_food",
                },
                {
                    "description": "Lunch B",
                    "amount_cents": 600,
                    "date": "2024-03-02",
                    "type": "expense",
                    "category_id": "cat_food",
                },
            ]
        },
    )
    assert response.status_code == 201
    assert client.get(f"/api/transactions/{second['id']}").status_code == 404
    assert len(client.get("/api/transactions").json()) == 3


def test_recurring_process_and_skip(client):
    response = client.post(
        "/api/recurring",
        json={
            "description": "Rent",
            "amount_cents": 150000,
            "type": "expense",
            "frequency": "monthly",
            "next_due_date": "2024-01-31",
            "category_id": "cat_housing",
            "subcategory_id": "sub_rent",
        },
    )
    assert response.status_code == 201
    rule = response.json()

    response = client.post(
        f"/api/recurring/{rule['id']}/process", json={"amount_cents": 149000}
    )
    body = response.json()
    assert body["transaction"]["amountCents"] == 149000
    assert body["rule"]["nextDueDate"] == "2024-02-29"

    skipped = client.post(f"/api/recurring/{rule['id']}/skip").json()
    assert skipped["nextDueDate"] == "2024-03-29"

    due = client.get("/api/recurring/due").json()
    assert [r["id"] for r in due] == [rule["id"]]


def test_backup_round_trip(client):
    _expense(client)
    exported = client.get("/api/backup")
    assert exported.status_code == 200
    document = exported.json()
    assert document["version"] == 2

    client.post("/api/reset")
    assert client.get("/api/transactions").json() == []

    response = client.post("/api/backup", json=document)
    assert response.status_code == 200
    assert response.json()["transactions"] == 1
    assert len(client.get("/api/transactions").json()) == 1

    assert client.post("/api/backup", json={"version": 7}).status_code == 400


def test_summary_and_tags(client):
    _expense(client, tags=["Food"])

    assert client.get("/api/tags").json() == ["Food"]
    summary = client.get("/api/summary").json()
    assert summary["totalExpenseCents"] == 5400
    assert summary["balanceCents"] == -5400

import io
from datetime import date, timedelta
from pathlib import Path

import pytest

from budget_tracker import create_app


@pytest.fixture()
def app(tmp_path: Path):
    db_path = tmp_path / "test.sqlite"
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test",
        "DATABASE": str(db_path),
        "DATABASE_URL": "",
        "BANK_MATCH_DELAY_SECONDS": 0,
    })

    with app.app_context():
        app.init_db()

    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


def register(client, email="user1@example.com", password="password"):
    return client.post("/register", data={"email": email, "password": password}, follow_redirects=True)


def login(client, email="user1@example.com", password="password"):
    return client.post("/login", data={"email": email, "password": password}, follow_redirects=True)


def add_transaction(client, **overrides):
    data = {
        "date": "2024-01-01",
        "amount": "400",
        "type": "expense",
        "category": "Rent",
        "description": "Jan rent",
    }
    data.update(overrides)
    return client.post("/transactions/new", data=data, follow_redirects=True)


def transaction_ids(client, description=None):
    with client.application.app_context():
        db = client.application.get_db()
        if description is None:
            rows = db.execute("SELECT id FROM transactions ORDER BY date").fetchall()
        else:
            rows = db.execute("SELECT id FROM transactions WHERE description = ?", (description,)).fetchall()
    return [row["id"] for row in rows]


def fetch_transaction(client, transaction_id):
    with client.application.app_context():
        return client.application.get_db().execute(
            "SELECT * FROM transactions WHERE id = ?", (transaction_id,)
        ).fetchone()


def test_register_login_logout(client):
    response = register(client)
    assert b"Account created! Please sign in." in response.data

    with client.application.app_context():
        db = client.application.get_db()
        user = db.execute("SELECT password_hash FROM users WHERE email = ?", ("user1@example.com",)).fetchone()
    assert user is not None
    assert user["password_hash"] != "password"
    assert user["password_hash"].startswith("scrypt:")

    response = login(client)
    assert b"Dashboard" in response.data
    assert b"Welcome, user1@example.com" in response.data

    response = client.get("/logout", follow_redirects=True)
    assert b"Sign In" in response.data
    assert client.get("/dashboard").status_code == 302


def test_login_rejects_incorrect_password(client):
    register(client)

    response = login(client, password="wrong-password")

    assert b"Invalid login credentials" in response.data


def test_login_is_case_insensitive_on_email(client):
    register(client, email="Mixed@Example.com")

    response = login(client, email="mixed@example.COM")

    assert b"Dashboard" in response.data


def test_register_rejects_duplicates_and_short_passwords(client):
    register(client)

    assert b"User already registered" in register(client).data
    assert b"Password should be at least 6 characters." in register(client, email="other@example.com", password="abc").data


def test_register_can_sign_in_immediately(tmp_path):
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test",
        "DATABASE": str(tmp_path / "auto.sqlite"),
        "DATABASE_URL": "",
        "SIGNUP_AUTO_SIGN_IN": True,
    })
    client = app.test_client()

    response = register(client)

    assert b"Account created!" in response.data
    assert b"Dashboard" in response.data


def test_views_require_login(client):
    for path in ("/dashboard", "/transactions", "/reports", "/reports/overview", "/export/csv", "/bank-matching"):
        response = client.get(path)
        assert response.status_code == 302
        assert response.headers["Location"].endswith("/login")


def test_create_transaction_and_dashboard_totals(client):
    register(client)
    login(client)

    response = add_transaction(client, type="income", amount="1000", category="Salary", description="January salary")
    assert b"Your transaction has been successfully recorded." in response.data
    add_transaction(client)
    add_transaction(client, date="2024-01-02", amount="100", category="Groceries", description="Weekly shop")

    response = client.get("/dashboard")
    assert "₹1,000.00".encode() in response.data
    assert "₹500.00".encode() in response.data
    assert b"50.0% savings rate" in response.data
    assert b"0 reconciled" in response.data
    assert b"3 unreconciled" in response.data


def test_create_transaction_validates_fields(client):
    register(client)
    login(client)

    response = add_transaction(client, amount="-5")
    assert response.status_code == 400
    assert b"Amount must not be negative." in response.data

    response = add_transaction(client, type="transfer")
    assert b"Type must be income or expense." in response.data

    response = add_transaction(client, description="   ")
    assert b"Description is required." in response.data

    assert transaction_ids(client) == []


def test_transaction_list_filters(client):
    register(client)
    login(client)
    add_transaction(client, type="income", amount="1000", category="Salary", description="January salary")
    add_transaction(client)
    add_transaction(client, date="2024-01-02", amount="100", category="Groceries", description="Weekly shop")

    response = client.get("/transactions?type=expense")
    assert b"Jan rent" in response.data
    assert b"Weekly shop" in response.data
    assert b"January salary" not in response.data

    response = client.get("/transactions?q=RENT")
    assert b"Jan rent" in response.data
    assert b"Weekly shop" not in response.data

    response = client.get("/transactions?category=Groceries&type=expense")
    assert b"Weekly shop" in response.data
    assert b"Jan rent" not in response.data


def test_update_amount_reconcile_and_delete(client):
    register(client)
    login(client)
    add_transaction(client)
    transaction_id = transaction_ids(client)[0]

    response = client.post(f"/transactions/{transaction_id}/amount", data={"amount": "450"}, follow_redirects=True)
    assert b"Transaction has been updated successfully." in response.data
    assert fetch_transaction(client, transaction_id)["amount"] == 450

    client.post(f"/transactions/{transaction_id}/reconcile", follow_redirects=True)
    assert fetch_transaction(client, transaction_id)["is_reconciled"] == 1
    client.post(f"/transactions/{transaction_id}/reconcile", follow_redirects=True)
    assert fetch_transaction(client, transaction_id)["is_reconciled"] == 0

    response = client.post(f"/transactions/{transaction_id}/delete", follow_redirects=True)
    assert b"The transaction has been removed." in response.data
    assert transaction_ids(client) == []


def test_invalid_amount_update_leaves_transaction_unchanged(client):
    register(client)
    login(client)
    add_transaction(client)
    transaction_id = transaction_ids(client)[0]

    response = client.post(f"/transactions/{transaction_id}/amount", data={"amount": "abc"}, follow_redirects=True)

    assert b"Amount must be a valid number." in response.data
    assert fetch_transaction(client, transaction_id)["amount"] == 400

    response = client.post(f"/transactions/{transaction_id}/amount", data={"amount": "inf"}, follow_redirects=True)

    assert b"Amount must be a valid number." in response.data
    assert fetch_transaction(client, transaction_id)["amount"] == 400
    assert client.get("/reports/data").get_json()["categories"][0]["percentage"] == 100.0


def test_edit_transaction_form(client):
    register(client)
    login(client)
    add_transaction(client)
    transaction_id = transaction_ids(client)[0]

    response = client.get(f"/transactions/{transaction_id}/edit")
    assert b"Edit Transaction" in response.data
    assert b"Jan rent" in response.data

    response = client.post(
        f"/transactions/{transaction_id}/edit",
        data={
            "date": "2024-02-01",
            "amount": "410",
            "type": "expense",
            "category": "Rent",
            "description": "Feb rent",
            "is_reconciled": "1",
        },
        follow_redirects=True,
    )
    assert b"Transaction has been updated successfully." in response.data

    row = fetch_transaction(client, transaction_id)
    assert row["date"] == "2024-02-01"
    assert row["description"] == "Feb rent"
    assert row["is_reconciled"] == 1


def test_edit_from_filtered_list_saves_chosen_type_and_category(client):
    register(client)
    login(client)
    add_transaction(client)
    transaction_id = transaction_ids(client)[0]

    response = client.get(f"/transactions/{transaction_id}/edit?category=Rent&type=expense")
    page = response.get_data(as_text=True)
    assert 'name="filter_category" value="Rent"' in page
    assert 'name="filter_type" value="expense"' in page
    assert 'type="hidden" name="category"' not in page

    response = client.post(
        f"/transactions/{transaction_id}/edit",
        data={
            "filter_type": "expense",
            "filter_category": "Rent",
            "date": "2024-01-01",
            "amount": "400",
            "type": "income",
            "category": "Salary",
            "description": "Refund booked as income",
        },
    )
    assert response.status_code == 302
    assert "category=Rent" in response.headers["Location"]
    assert "type=expense" in response.headers["Location"]

    row = fetch_transaction(client, transaction_id)
    assert (row["type"], row["category"]) == ("income", "Salary")


def test_users_cannot_touch_each_others_transactions(client):
    register(client)
    login(client)
    add_transaction(client)
    transaction_id = transaction_ids(client)[0]
    client.get("/logout")

    register(client, email="intruder@example.com")
    login(client, email="intruder@example.com")

    response = client.get("/transactions")
    assert b"Jan rent" not in response.data

    response = client.post(f"/transactions/{transaction_id}/delete", follow_redirects=True)
    assert b"Transaction not found." in response.data

    response = client.post(f"/transactions/{transaction_id}/amount", data={"amount": "1"}, follow_redirects=True)
    assert b"Transaction not found." in response.data

    assert fetch_transaction(client, transaction_id)["amount"] == 400


def test_export_csv(client):
    register(client)
    login(client)
    add_transaction(client)
    transaction_id = transaction_ids(client)[0]
    client.post(f"/transactions/{transaction_id}/reconcile")

    response = client.get("/export/csv")

    assert response.status_code == 200
    assert response.mimetype == "text/csv"
    assert "financial-report-all-" in response.headers["Content-Disposition"]
    assert response.get_data(as_text=True) == (
        "Date,Type,Category,Description,Amount,Reconciled\n"
        "2024-01-01,expense,Rent,Jan rent,400,Yes"
    )


def test_export_csv_quotes_descriptions_with_commas(client):
    register(client)
    login(client)
    add_transaction(client, description="Rent, January")

    body = client.get("/export/csv").get_data(as_text=True)

    assert body.splitlines()[1] == '2024-01-01,expense,Rent,"Rent, January",400,No'


def test_export_csv_for_window_only_includes_recent_rows(client):
    register(client)
    login(client)
    today = date.today()
    add_transaction(client, date=today.isoformat(), description="Recent")
    add_transaction(client, date=(today - timedelta(days=40)).isoformat(), description="Old")

    response = client.get("/export/csv?window=7days")

    body = response.get_data(as_text=True)
    assert "Recent" in body
    assert "Old" not in body
    assert "financial-report-7days-" in response.headers["Content-Disposition"]


def test_reports_page_and_data(client):
    register(client)
    login(client)
    add_transaction(client, type="income", amount="1000", category="Salary", description="January salary")
    add_transaction(client)
    add_transaction(client, date="2024-02-02", amount="100", category="Food", description="Groceries")

    response = client.get("/reports?period=monthly")
    assert b"Category Analysis" in response.data
    assert b"2024-01" in response.data
    assert b"80.0%" in response.data

    payload = client.get("/reports/data?period=monthly").get_json()
    assert payload["period"] == "monthly"
    assert payload["series"] == [
        {"period": "2024-01", "income": 1000.0, "expenses": 400.0, "net": 600.0},
        {"period": "2024-02", "income": 0.0, "expenses": 100.0, "net": -100.0},
    ]
    assert payload["categories"][0] == {"category": "Rent", "amount": 400.0, "percentage": 80.0}
    assert payload["summary"]["total_expenses"] == 500.0


def test_reports_data_rejects_unknown_period(client):
    register(client)
    login(client)

    assert client.get("/reports/data?period=hourly").status_code == 400
    assert client.get("/reports/data?window=2days").status_code == 400


def test_reports_fall_back_to_default_period(client):
    register(client)
    login(client)
    add_transaction(client)

    response = client.get("/reports?period=fortnightly")

    assert response.status_code == 200
    assert b'<option value="monthly" selected>' in response.data


def test_overview_window(client):
    register(client)
    login(client)
    today = date.today()
    add_transaction(client, date=today.isoformat(), amount="70", description="Today spend")
    add_transaction(client, date=(today - timedelta(days=30)).isoformat(), amount="5", description="Older")

    response = client.get("/reports/overview?window=7days")
    assert b"Last 7 Days" in response.data
    assert "₹70.00".encode() in response.data

    payload = client.get("/reports/data?window=7days").get_json()
    assert len(payload["series"]) == 7
    assert payload["series"][-1]["expenses"] == 70.0
    assert payload["summary"]["total_expenses"] == 70.0


def test_bank_matching_flow(client):
    register(client)
    login(client)
    add_transaction(client, date="2024-01-14", amount="250", category="Other Expenses", description="ATM cash")
    transaction_id = transaction_ids(client)[0]

    response = client.post(
        "/bank-matching",
        data={"statement": (io.BytesIO(b"date,amount\n2024-01-14,250\n"), "statement.csv")},
        content_type="multipart/form-data",
        follow_redirects=True,
    )
    assert b"Found 2 transactions. 1 matched, 1 unmatched." in response.data
    assert b"Selected File: statement.csv" in response.data
    assert b"ATM Withdrawal" in response.data

    response = client.post(
        "/bank-matching/match",
        data={"result_id": "2", "transaction_id": transaction_id},
        follow_redirects=True,
    )
    assert b"Transaction has been successfully matched with bank record." in response.data
    assert fetch_transaction(client, transaction_id)["is_reconciled"] == 1
    with client.session_transaction() as sess:
        assert [result["status"] for result in sess["bank_match_results"]] == ["matched", "matched"]

    add_transaction(client, date="2024-01-15", amount="250", category="Other Expenses", description="Second ATM")
    second_id = transaction_ids(client, description="Second ATM")[0]
    response = client.post(
        "/bank-matching/match",
        data={"result_id": "2", "transaction_id": second_id},
        follow_redirects=True,
    )
    assert b"This bank record is already matched." in response.data
    assert fetch_transaction(client, second_id)["is_reconciled"] == 0


def test_bank_matching_rejects_unsupported_files(client):
    register(client)
    login(client)

    response = client.post(
        "/bank-matching",
        data={"statement": (io.BytesIO(b"hello"), "notes.txt")},
        content_type="multipart/form-data",
        follow_redirects=True,
    )

    assert b"Unsupported file type .txt" in response.data


def test_bank_matching_requires_uploaded_results(client):
    register(client)
    login(client)
    add_transaction(client)

    response = client.post(
        "/bank-matching/match",
        data={"result_id": "2", "transaction_id": transaction_ids(client)[0]},
        follow_redirects=True,
    )

    assert b"Bank record not found." in response.data


def test_db_health_endpoint(client):
    payload = client.get("/health/db").get_json()

    assert payload["ok"] is True
    assert payload["missing_tables"] == []

import random
from datetime import date, timedelta

from budget_tracker import create_app
from budget_tracker.auth import SessionProvider
from budget_tracker.models import EXPENSE_CATEGORIES, INCOME_CATEGORIES
from budget_tracker.store import TransactionStore


def main():
    app = create_app()
    with app.app_context():
        app.init_db()
        db = app.get_db()

        user = SessionProvider(db, {}).sign_up("demo@example.com", "demo123").user
        store = TransactionStore(db)

        start = date.today() - timedelta(days=365)
        for month in range(12):
            store.create(user["id"], {
                "date": (start + timedelta(days=month * 30)).isoformat(),
                "amount": 4200,
                "type": "income",
                "category": "Salary",
                "description": "Monthly salary",
            })

        for i in range(120):
            category = random.choice(EXPENSE_CATEGORIES)
            store.create(user["id"], {
                "date": (start + timedelta(days=i * 3)).isoformat(),
                "amount": round(random.uniform(5, 400), 2),
                "type": "expense",
                "category": category,
                "description": f"Sample {category.lower()} {i + 1}",
            })

        for i in range(6):
            store.create(user["id"], {
                "date": (start + timedelta(days=i * 60)).isoformat(),
                "amount": round(random.uniform(50, 800), 2),
                "type": "income",
                "category": random.choice(INCOME_CATEGORIES[1:]),
                "description": f"Side income {i + 1}",
            })

    print("Sample data generated. Login with demo@example.com / demo123")


if __name__ == "__main__":
    main()

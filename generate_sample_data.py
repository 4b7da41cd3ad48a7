import random
import uuid
from datetime import date, timedelta

from household_budget import DEFAULT_CATEGORIES, create_app, utc_timestamp
from household_budget.auth import hash_pin

SAMPLE_PIN = "1234"
SAMPLE_DESCRIPTIONS = [
    "SAFEWAY #1234",
    "SHELL OIL 5521",
    "STARBUCKS STORE 88",
    "NETFLIX.COM",
    "UBER TRIP",
    "CHIPOTLE 2231",
    "AMAZON MKTPLACE",
    "PG&E ELECTRIC",
]


def main():
    app = create_app()
    with app.app_context():
        app.init_db()
        db = app.get_db()

        if db.execute("SELECT id FROM households LIMIT 1").fetchone() is not None:
            print("A household already exists; sample data not generated.")
            return

        now = utc_timestamp()
        household_id = str(uuid.uuid4())
        db.execute(
            "INSERT INTO households (id, name, pin_hash, timezone, auto_rollover_budget, created_at) VALUES (?, ?, ?, 'UTC', 0, ?)",
            (household_id, "Demo Household", hash_pin(SAMPLE_PIN), now),
        )

        category_ids = []
        for name, color in DEFAULT_CATEGORIES:
            category_id = str(uuid.uuid4())
            category_ids.append(category_id)
            db.execute(
                "INSERT INTO categories (id, household_id, name, color, created_at) VALUES (?, ?, ?, ?, ?)",
                (category_id, household_id, name, color, now),
            )

        month = date.today().strftime("%Y-%m")
        for category_id in category_ids:
            db.execute(
                "INSERT INTO monthly_budgets (id, household_id, category_id, month, budgeted_cents, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (str(uuid.uuid4()), household_id, category_id, month, random.choice([20000, 35000, 50000]), now),
            )

        start = date.today() - timedelta(days=90)
        for i in range(40):
            transaction_date = (start + timedelta(days=i * 2)).isoformat()
            db.execute(
                """
                INSERT INTO transactions
                    (id, household_id, category_id, amount_cents, description, date, type, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 'expense', ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    household_id,
                    random.choice(category_ids),
                    random.randint(500, 20000),
                    random.choice(SAMPLE_DESCRIPTIONS),
                    transaction_date,
                    now,
                    now,
                ),
            )

        db.commit()
    print(f"Sample data generated. Unlock with PIN {SAMPLE_PIN}")


if __name__ == "__main__":
    main()

import random
from datetime import date, timedelta

from finance_tracker import create_app


CURRENCIES = ["USD", "EUR", "GBP", "JPY", "CAD"]
CATEGORIES = ["Food", "Transport", "Housing", "Utilities", "Entertainment", "Other"]
VENDORS = ["Metro", "Shell", "Amazon", "Netflix", "Hydro", "Cafe Central"]


def main():
    app = create_app()
    with app.app_context():
        app.init_db()
        db = app.get_db()

        start = date.today() - timedelta(days=90)
        for i in range(40):
            tx_date = (start + timedelta(days=i * 2)).isoformat()
            currency = random.choice(CURRENCIES)
            amount = round(random.uniform(5, 200), 2) if currency != "JPY" else float(random.randint(500, 20000))
            # Legacy shape: no original_* or conversion_rate values.
            db.execute(
                "INSERT INTO transactions (user_id, date, amount, currency, vendor, description, category, type) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    1,
                    tx_date,
                    amount,
                    currency,
                    random.choice(VENDORS),
                    f"Sample transaction {i + 1}",
                    random.choice(CATEGORIES),
                    "income" if i % 10 == 0 else "expense",
                ),
            )

        db.commit()
    print("Sample legacy transactions generated. Run `flask --app finance_tracker migrate-currency` to migrate them.")


if __name__ == "__main__":
    main()

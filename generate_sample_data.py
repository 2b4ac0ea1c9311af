import random
from datetime import date, timedelta

from cents_per_point import create_app

SOURCES = [
    ("Chase Ultimate Rewards", 0.02),
    ("Amex Membership Rewards", 0.018),
    ("World of Hyatt", 0.022),
    ("United MileagePlus", 0.013),
    ("Marriott Bonvoy", 0.008),
]


def main():
    app = create_app()
    with app.app_context():
        db = app.get_db()

        db.execute(
            "INSERT INTO trips (name, description, start_date, end_date) VALUES (?, ?, ?, ?)",
            ("Tokyo", "Spring trip", "2024-04-01", "2024-04-12"),
        )
        trip_id = db.execute("SELECT last_insert_rowid() AS id").fetchone()["id"]

        start = date.today() - timedelta(days=180)
        for i in range(30):
            source, rate = random.choice(SOURCES)
            points = random.randrange(5000, 90000, 500)
            taxes = round(random.uniform(0, 120), 2)
            value = round(points * rate * random.uniform(0.7, 1.4) + taxes, 2)
            db.execute(
                """
                INSERT INTO redemptions (date, source, points, value, taxes, notes, is_travel_credit, trip_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    (start + timedelta(days=i * 6)).isoformat(),
                    source,
                    points,
                    value,
                    taxes,
                    f"Sample redemption {i + 1}",
                    False,
                    trip_id if i % 5 == 0 else None,
                ),
            )

        db.execute(
            "INSERT INTO redemptions (date, source, points, value, taxes, notes, is_travel_credit) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (date.today().isoformat(), "Amex Platinum", 0, 200.0, 0, "Airline fee credit", True),
        )
        db.commit()
    print("Sample data generated.")


if __name__ == "__main__":
    main()

from pathlib import Path
import io
import json
import sqlite3

import pytest

from cents_per_point import DatabaseInitError, compute_cpp, create_app, validate_redemption_payload


@pytest.fixture()
def app(tmp_path: Path):
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test",
        "DATABASE": str(tmp_path / "test.sqlite"),
        "DATABASE_URL": "",
        "DATA_DIR": str(tmp_path / "data"),
        "LEGACY_SQLITE_PATHS": [str(tmp_path / "none.sqlite")],
    })
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


def create_redemption(client, **overrides):
    payload = {"date": "2024-03-01", "source": "Chase", "points": 50000, "value": 900, "taxes": 50}
    payload.update(overrides)
    return client.post("/api/redemptions", json=payload)


def create_trip(client, name="Tokyo", **overrides):
    payload = {"name": name, "start_date": "2024-04-01", "end_date": "2024-04-10"}
    payload.update(overrides)
    return client.post("/api/trips", json=payload)


def upload_csv(client, endpoint, content, filename="redemptions.csv", mappings=None):
    data = {"csvFile": (io.BytesIO(content.encode("utf-8")), filename)}
    if mappings is not None:
        data["columnMappings"] = json.dumps(mappings)
    return client.post(f"/api/import-export/{endpoint}", data=data, content_type="multipart/form-data")


def redemption_count(app):
    with app.app_context():
        return app.get_db().execute("SELECT COUNT(*) AS count FROM redemptions").fetchone()["count"]


FULL_MAPPINGS = {"date": 0, "source": 1, "points": 2, "value": 3, "taxes": 4, "notes": 5, "is_travel_credit": 6}


def test_health_reports_store_and_migration_status(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "OK"
    assert body["migration"]["status"] == "no_sqlite_found"

    db_health = client.get("/health/db").get_json()
    assert db_health["ok"] is True
    assert db_health["schema_version"] == 3


def test_startup_records_flag_file(app, tmp_path):
    flag = json.loads((tmp_path / "data" / ".migrated").read_text())
    assert flag["status"] == "no_sqlite_found"


def test_startup_migrates_legacy_database(tmp_path):
    legacy = tmp_path / "database.sqlite"
    conn = sqlite3.connect(legacy)
    conn.execute(
        "CREATE TABLE redemptions (id INTEGER PRIMARY KEY, date TEXT, source TEXT, points INTEGER, value REAL, "
        "taxes REAL, notes TEXT, is_travel_credit INTEGER)"
    )
    conn.execute("INSERT INTO redemptions VALUES (1, '2023-05-01', 'Hyatt', 20000, 500, 0, 'Maui', 0)")
    conn.commit()
    conn.close()

    app = create_app({
        "TESTING": True,
        "DATABASE": str(tmp_path / "store.sqlite"),
        "DATABASE_URL": "",
        "DATA_DIR": str(tmp_path),
    })

    assert redemption_count(app) == 1
    status = app.test_client().get("/health").get_json()["migration"]
    assert status["status"] == "completed"
    assert status["migratedCount"] == 1


def test_legacy_migration_can_be_disabled(tmp_path):
    app = create_app({
        "TESTING": True,
        "DATABASE": str(tmp_path / "store.sqlite"),
        "DATABASE_URL": "",
        "DATA_DIR": str(tmp_path / "data"),
        "ENABLE_SQLITE_MIGRATION": False,
    })
    assert app.test_client().get("/health").get_json()["migration"]["status"] == "pending"


@pytest.mark.parametrize("content", ['{"status": "migrated"}', "1700000000000", '["completed"]'])
def test_startup_survives_unrecognized_flag_record(tmp_path, content):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / ".migrated").write_text(content)

    app = create_app({
        "TESTING": True,
        "DATABASE": str(tmp_path / "store.sqlite"),
        "DATABASE_URL": "",
        "DATA_DIR": str(data_dir),
    })

    response = app.test_client().get("/health")
    assert response.status_code == 200
    assert response.get_json()["migration"]["status"] in ("failed", "completed")


def test_unusable_store_raises_database_init_error(tmp_path):
    blocked = tmp_path / "is-a-directory"
    blocked.mkdir()
    with pytest.raises(DatabaseInitError):
        create_app({"TESTING": True, "DATABASE": str(blocked), "DATABASE_URL": "", "DATA_DIR": str(tmp_path)})


def test_redemption_crud(client):
    response = create_redemption(client, notes="  Paris  ")
    assert response.status_code == 201
    redemption_id = response.get_json()["id"]

    item = client.get(f"/api/redemptions/{redemption_id}").get_json()
    assert item["source"] == "Chase"
    assert item["points"] == 50000
    assert item["notes"] == "Paris"
    assert item["cpp"] == 1.7
    assert item["is_travel_credit"] is False

    response = client.put(
        f"/api/redemptions/{redemption_id}",
        json={"date": "2024-03-02", "source": "Amex", "points": 40000, "value": 800},
    )
    assert response.status_code == 200
    listed = client.get("/api/redemptions").get_json()
    assert [(r["source"], r["date"], r["taxes"]) for r in listed] == [("Amex", "2024-03-02", 0.0)]

    assert client.delete(f"/api/redemptions/{redemption_id}").status_code == 200
    assert client.get(f"/api/redemptions/{redemption_id}").status_code == 404
    assert client.delete(f"/api/redemptions/{redemption_id}").status_code == 404


def test_redemption_validation_errors(client):
    response = client.post("/api/redemptions", json={"source": "", "points": -5, "value": "abc"})
    assert response.status_code == 400
    errors = response.get_json()["errors"]
    assert "date is required" in errors
    assert "source is required" in errors
    assert "points must be a whole number >= 0" in errors
    assert "value must be a number >= 0" in errors

    response = create_redemption(client, points=0)
    assert response.status_code == 400

    response = create_redemption(client, trip_id=999)
    assert response.get_json()["errors"] == ["Trip not found"]

    assert client.put("/api/redemptions/12345", json={
        "date": "2024-01-01", "source": "Chase", "points": 10,
    }).status_code == 404


def test_travel_credit_needs_no_points(client):
    response = create_redemption(client, points=None, value=200, taxes=0, is_travel_credit=True)
    assert response.status_code == 201

    item = client.get(f"/api/redemptions/{response.get_json()['id']}").get_json()
    assert item["points"] == 0
    assert item["is_travel_credit"] is True
    assert item["cpp"] is None


def test_trip_crud_and_stats(client):
    response = create_trip(client, description="Cherry blossoms")
    assert response.status_code == 201
    trip = response.get_json()
    assert trip["name"] == "Tokyo"
    assert trip["start_date"] == "2024-04-01"

    create_redemption(client, trip_id=trip["id"], points=60000, value=1300, taxes=100)
    create_redemption(client, trip_id=trip["id"], points=None, value=300, taxes=0, is_travel_credit=True)
    create_redemption(client, source="Citi")

    stats = client.get(f"/api/trips/{trip['id']}/stats").get_json()
    assert stats["total_redemptions"] == 2
    assert stats["total_points"] == 60000
    assert stats["total_value"] == 1600.0
    assert stats["average_cpp"] == 2.0

    listed = client.get("/api/trips").get_json()
    assert listed[0]["total_redemptions"] == 2

    response = client.put(f"/api/trips/{trip['id']}", json={"name": "Kyoto"})
    assert response.get_json()["name"] == "Kyoto"
    assert response.get_json()["start_date"] is None

    assert create_trip(client, start_date="2024-05-02", end_date="2024-05-01").status_code == 400
    assert client.get("/api/trips/999").status_code == 404


def test_trip_delete_policies(client, app):
    trip_id = create_trip(client).get_json()["id"]
    create_redemption(client, trip_id=trip_id)

    response = client.delete(f"/api/trips/{trip_id}")
    assert response.status_code == 400
    assert response.get_json()["associatedRedemptions"] == 1
    assert client.delete(f"/api/trips/{trip_id}?redemptions=archive").status_code == 400

    assert client.delete(f"/api/trips/{trip_id}?redemptions=detach").status_code == 200
    assert client.get(f"/api/trips/{trip_id}").status_code == 404
    assert [r["trip_id"] for r in client.get("/api/redemptions").get_json()] == [None]

    trip_id = create_trip(client, name="Lisbon").get_json()["id"]
    create_redemption(client, trip_id=trip_id, source="Amex")
    assert client.delete(f"/api/trips/{trip_id}?redemptions=delete").status_code == 200
    assert redemption_count(app) == 1


def test_trip_redemption_bulk_actions(client, app):
    trip_id = create_trip(client).get_json()["id"]
    create_redemption(client, trip_id=trip_id)
    create_redemption(client, trip_id=trip_id, source="Amex")

    response = client.patch(f"/api/trips/{trip_id}/redemptions/remove-association")
    assert response.get_json()["detached"] == 2

    create_redemption(client, trip_id=trip_id, source="Citi")
    response = client.delete(f"/api/trips/{trip_id}/redemptions")
    assert response.get_json()["deleted"] == 1
    assert redemption_count(app) == 2


def test_template_download(client):
    response = client.get("/api/import-export/template")
    assert response.status_code == 200
    assert response.mimetype == "text/csv"
    lines = response.get_data(as_text=True).splitlines()
    assert lines[0] == "date,source,points,value,taxes,notes,is_travel_credit"
    assert len(lines) == 2


def test_analyze_suggests_mappings(client):
    content = "Date,Program,Points Used,Cash Value,Fees,Memo\n2024-01-01,Chase,1000,20,0,x\n"
    response = upload_csv(client, "analyze", content)

    assert response.status_code == 200
    body = response.get_json()
    assert body["success"] is True
    assert body["totalRows"] == 1
    assert body["suggestedMappings"]["points"] == 2
    assert body["suggestedMappings"]["source"] == 1


def test_analyze_rejects_bad_uploads(client):
    response = client.post("/api/import-export/analyze", data={}, content_type="multipart/form-data")
    assert response.get_json() == {"error": "No CSV file provided"}

    response = upload_csv(client, "analyze", "\n\n")
    assert response.status_code == 400
    assert response.get_json()["error"] == "CSV file is empty"

    response = upload_csv(client, "analyze", "a,b\n1,2\n", filename="notes.txt")
    assert response.status_code == 400
    assert response.get_json()["error"] == "Only CSV files are allowed"

    response = client.post(
        "/api/import-export/analyze",
        data={"csvFile": (io.BytesIO(b"source,points\n\x81\x8d,1\n"), "bad.csv")},
        content_type="multipart/form-data",
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "Could not decode CSV file"


def test_import_with_warnings(client, app):
    content = (
        "date,source,points,value,taxes,notes,is_travel_credit\n"
        "2024-01-15,Chase,\"50,000\",$750.00,5,Tokyo,false\n"
        "not a date,Amex,1000,-3,,,maybe\n"
        "Jan 3 2024,Amex Platinum,,200,0,Airline credit,yes\n"
    )
    response = upload_csv(client, "import", content, mappings=FULL_MAPPINGS)

    assert response.status_code == 200
    body = response.get_json()
    assert body["imported"] == 3
    assert body["skipped"] == 0
    assert body["total"] == 3
    assert body["message"] == "Successfully imported 3 redemptions."
    assert len(body["warnings"]) == 3
    assert all(w.startswith("Row 3:") for w in body["warnings"])

    rows = {r["source"]: r for r in client.get("/api/redemptions").get_json()}
    assert rows["Chase"]["points"] == 50000
    assert rows["Chase"]["value"] == 750.0
    assert rows["Amex Platinum"]["date"] == "2024-01-03"
    assert rows["Amex Platinum"]["is_travel_credit"] is True
    assert redemption_count(app) == 3


def test_import_with_fatal_error_inserts_nothing(client, app):
    content = "date,source,points\n2024-01-01,Chase,1000\n2024-01-02,Amex,abc\n"
    response = upload_csv(client, "import", content, mappings={"date": 0, "source": 1, "points": 2})

    assert response.status_code == 400
    body = response.get_json()
    assert body["error"] == "Validation failed"
    assert len(body["errors"]) == 1
    assert "Row 3" in body["errors"][0]
    assert "Points" in body["errors"][0]
    assert redemption_count(app) == 0


def test_import_requires_source_and_points_mappings(client):
    response = upload_csv(client, "import", "date\n2024-01-01\n", mappings={"date": 0})

    assert response.status_code == 400
    assert response.get_json()["missingFields"] == ["source", "points"]

    response = upload_csv(client, "import", "date\n2024-01-01\n")
    assert response.get_json()["error"] == "Column mappings are required"


def test_export_then_import_round_trip(client, app):
    create_redemption(client, source='Hyatt "Globalist"', notes="Park, Hyatt", value=612.5, taxes=0, points=25000)
    create_redemption(client, source="Amex", points=None, value=200, taxes=0, is_travel_credit=True)

    export = client.get("/api/import-export/export")
    assert export.status_code == 200
    text = export.get_data(as_text=True)
    before = sorted(
        (r["date"], r["source"], r["points"], r["value"], r["taxes"], r["notes"], r["is_travel_credit"])
        for r in client.get("/api/redemptions").get_json()
    )

    with app.app_context():
        db = app.get_db()
        db.execute("DELETE FROM redemptions")
        db.commit()

    response = upload_csv(client, "import", text, mappings=FULL_MAPPINGS)
    assert response.status_code == 200
    assert "warnings" not in response.get_json()

    after = sorted(
        (r["date"], r["source"], r["points"], r["value"], r["taxes"], r["notes"], r["is_travel_credit"])
        for r in client.get("/api/redemptions").get_json()
    )
    assert after == before


def test_cpp_calculator(client):
    body = client.get("/api/cpp?points=50000&value=1100&taxes=100&program=chase").get_json()
    assert body["cpp"] == 2.0
    assert body["referenceCpp"] == 2.0
    assert body["opinion"] == "Great use of points!"

    body = client.get("/api/cpp?points=10000&value=100&program=marriott").get_json()
    assert body["opinion"] == "Great use of points!"

    body = client.get("/api/cpp?points=10000&value=55&program=marriott").get_json()
    assert body["opinion"] == "Consider booking with cash."

    response = client.get("/api/cpp?points=0&value=10&taxes=abc&program=nope")
    assert response.status_code == 400
    assert len(response.get_json()["errors"]) == 3


def test_compute_cpp_and_payload_helpers():
    assert compute_cpp(10000, 150, 50) == 1.0
    assert compute_cpp(0, 150) is None
    assert compute_cpp(1000, 10, is_travel_credit=True) is None

    record, errors = validate_redemption_payload({"date": "03/05/2024", "source": " Chase ", "points": "1,000"})
    assert errors == []
    assert record.date == "2024-03-05"
    assert record.source == "Chase"
    assert record.points == 1000

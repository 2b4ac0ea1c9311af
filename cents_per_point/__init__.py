import math
import os

from flask import Flask, Response, g, jsonify, request
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

from .csv_import import (
    MAX_UPLOAD_BYTES,
    RedemptionRecord,
    analyze_csv,
    date_text,
    decode_csv_bytes,
    export_csv_lines,
    insert_redemptions,
    is_csv_upload,
    missing_required_mappings,
    parse_amount,
    parse_calendar_date,
    parse_column_mappings,
    parse_travel_credit,
    template_csv,
    validate_csv_rows,
)
from .db import DB_ERRORS, Database, database_url_from_env, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .legacy_migration import (
    FLAG_FILENAME,
    FileFlagStore,
    default_legacy_paths,
    get_migration_status,
    migrate_from_sqlite,
)


class DatabaseInitError(RuntimeError):
    """Raised when the store schema cannot be brought to the expected shape."""


# Commonly accepted value of one point, in dollars.
POINT_PROGRAMS = {
    "chase": {"label": "Chase", "ref": 0.02},
    "amex": {"label": "Amex", "ref": 0.02},
    "capitalone": {"label": "Capital One", "ref": 0.018},
    "bilt": {"label": "Bilt", "ref": 0.015},
    "citi": {"label": "Citi", "ref": 0.018},
    "hyatt": {"label": "World of Hyatt", "ref": 0.023},
    "marriott": {"label": "Marriott Bonvoy", "ref": 0.007},
    "hilton": {"label": "Hilton Honors", "ref": 0.006},
    "ihg": {"label": "IHG One Rewards", "ref": 0.009},
    "delta": {"label": "Delta SkyMiles", "ref": 0.011},
    "southwest": {"label": "Southwest Rapid Rewards", "ref": 0.015},
    "united": {"label": "United MileagePlus", "ref": 0.012},
    "alaska": {"label": "Alaska Airlines", "ref": 0.014},
    "hawaiian": {"label": "Hawaiian Airlines", "ref": 0.009},
}

REDEMPTION_FIELDS = "id, date, source, points, value, taxes, notes, is_travel_credit, trip_id, created_at, updated_at"
TRIP_DELETE_POLICIES = {"delete", "detach"}


def compute_cpp(points, value, taxes=0, is_travel_credit=False):
    """Cents per point, or ``None`` when it does not apply."""
    if is_travel_credit or not points or points <= 0:
        return None
    return round((float(value or 0) - float(taxes or 0)) / float(points) * 100, 2)


def booking_opinion(cpp, reference):
    cpp_dollars = cpp / 100
    if cpp_dollars >= reference:
        return "Great use of points!"
    if cpp_dollars >= reference * 0.9:
        return "Potentially worth it."
    return "Consider booking with cash."


def row_to_dict(row):
    return {key: row[key] for key in row.keys()}


def _timestamp_text(value):
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def serialize_redemption(row):
    data = row_to_dict(row)
    data["date"] = date_text(data.get("date")) or None
    data["points"] = int(data.get("points") or 0)
    data["value"] = float(data.get("value") or 0)
    data["taxes"] = float(data.get("taxes") or 0)
    data["notes"] = data.get("notes") or ""
    data["is_travel_credit"] = bool(data.get("is_travel_credit"))
    data["created_at"] = _timestamp_text(data.get("created_at"))
    data["updated_at"] = _timestamp_text(data.get("updated_at"))
    data["cpp"] = compute_cpp(data["points"], data["value"], data["taxes"], data["is_travel_credit"])
    return data


def serialize_trip(row):
    data = row_to_dict(row)
    data["start_date"] = date_text(data.get("start_date")) or None
    data["end_date"] = date_text(data.get("end_date")) or None
    data["created_at"] = _timestamp_text(data.get("created_at"))
    data["updated_at"] = _timestamp_text(data.get("updated_at"))
    return data


def coerce_number(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        return parse_amount(value)
    return None


def validate_redemption_payload(payload):
    """Return ``(RedemptionRecord, [])`` or ``(None, errors)`` for a JSON body."""
    if not isinstance(payload, dict):
        return None, ["Request body must be a JSON object"]

    errors = []

    raw_date = payload.get("date")
    parsed_date = None
    if raw_date is None or (isinstance(raw_date, str) and not raw_date.strip()):
        errors.append("date is required")
    else:
        parsed_date = parse_calendar_date(raw_date) if isinstance(raw_date, str) else None
        if parsed_date is None:
            errors.append("date must be a valid date (YYYY-MM-DD)")

    source = payload.get("source")
    if not isinstance(source, str) or not source.strip():
        errors.append("source is required")

    raw_credit = payload.get("is_travel_credit", False)
    if raw_credit is None:
        is_travel_credit = False
    elif isinstance(raw_credit, bool):
        is_travel_credit = raw_credit
    else:
        is_travel_credit = parse_travel_credit(str(raw_credit))
        if is_travel_credit is None:
            errors.append("is_travel_credit must be true or false")
            is_travel_credit = False

    raw_points = payload.get("points")
    points = 0
    if raw_points is None or raw_points == "":
        if not is_travel_credit:
            errors.append("points are required unless this is a travel credit")
    else:
        number = coerce_number(raw_points)
        if number is None or number < 0 or number != int(number):
            errors.append("points must be a whole number >= 0")
        else:
            points = int(number)
            if points == 0 and not is_travel_credit:
                errors.append("points must be greater than 0 unless this is a travel credit")

    amounts = {}
    for field_name in ("value", "taxes"):
        raw_amount = payload.get(field_name)
        if raw_amount is None or raw_amount == "":
            amounts[field_name] = 0.0
            continue
        number = coerce_number(raw_amount)
        if number is None or number < 0:
            errors.append(f"{field_name} must be a number >= 0")
            number = 0.0
        amounts[field_name] = number

    notes = payload.get("notes")
    if notes is not None and not isinstance(notes, str):
        errors.append("notes must be text")

    trip_id = payload.get("trip_id")
    if trip_id == "":
        trip_id = None
    if trip_id is not None and (isinstance(trip_id, bool) or not isinstance(trip_id, int) or trip_id <= 0):
        errors.append("trip_id must be a trip id")

    if errors:
        return None, errors

    return RedemptionRecord(
        date=parsed_date.isoformat(),
        source=source.strip(),
        points=points,
        value=amounts["value"],
        taxes=amounts["taxes"],
        notes=(notes or "").strip(),
        is_travel_credit=is_travel_credit,
        trip_id=trip_id,
    ), []


def validate_trip_payload(payload):
    if not isinstance(payload, dict):
        return None, ["Request body must be a JSON object"]

    errors = []
    name = payload.get("name")
    if not isinstance(name, str) or not name.strip():
        errors.append("Trip name is required")

    trip = {
        "name": (name or "").strip() if isinstance(name, str) else "",
        "description": payload.get("description") or "",
        "image": payload.get("image") or "",
    }
    for field_name in ("start_date", "end_date"):
        raw = payload.get(field_name)
        if raw is None or raw == "":
            trip[field_name] = None
            continue
        parsed = parse_calendar_date(raw) if isinstance(raw, str) else None
        if parsed is None:
            errors.append(f"{field_name} must be a valid date (YYYY-MM-DD)")
            continue
        trip[field_name] = parsed.isoformat()

    if trip.get("start_date") and trip.get("end_date") and trip["start_date"] > trip["end_date"]:
        errors.append("end_date must not be before start_date")

    if errors:
        return None, errors
    return trip, []


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY="dev",
        DATABASE=os.path.join(app.instance_path, "cents_per_point.sqlite"),
        DATABASE_URL=database_url_from_env(),
        DATA_DIR=os.environ.get("DATA_DIR") or os.path.join(app.instance_path, "data"),
        LEGACY_SQLITE_PATHS=None,
        ENABLE_SQLITE_MIGRATION=os.environ.get("ENABLE_SQLITE_MIGRATION", "true").strip().lower() == "true",
        MIGRATION_FLAG_STORE=None,
        MAX_CONTENT_LENGTH=MAX_UPLOAD_BYTES,
        LOG_LEVEL=os.environ.get("LOG_LEVEL", "INFO"),
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.logger.setLevel(app.config["LOG_LEVEL"])

    app.database = Database(parse_database_config(app.config["DATABASE"], app.config["DATABASE_URL"]))
    app.flag_store = app.config["MIGRATION_FLAG_STORE"] or FileFlagStore(
        os.path.join(app.config["DATA_DIR"], FLAG_FILENAME)
    )

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            g.db = app.database.connect()
        return g.db

    def init_db():
        try:
            apply_migrations(app.database.config)
        except DB_ERRORS + (OSError, RuntimeError) as exc:
            message = f"Failed to migrate schema for {app.database.location}: {exc}"
            app.logger.error(message)
            raise DatabaseInitError(message) from exc

    def run_legacy_migration():
        candidate_paths = app.config["LEGACY_SQLITE_PATHS"] or default_legacy_paths(app.config["DATA_DIR"])
        try:
            return migrate_from_sqlite(app.database, app.flag_store, candidate_paths)
        except OSError:
            app.logger.exception("Legacy migration could not read its flag record")
            return None

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    def handle_db_error(exc):
        app.logger.exception("Database error while handling %s %s", request.method, request.path)
        return jsonify({"error": str(exc)}), 500

    for error_class in DB_ERRORS:
        app.register_error_handler(error_class, handle_db_error)

    @app.errorhandler(RequestEntityTooLarge)
    def upload_too_large(_exc):
        return jsonify({"error": "File too large", "message": "CSV uploads are limited to 5 MB"}), 413

    @app.errorhandler(HTTPException)
    def http_error(exc):
        return jsonify({"error": exc.description or exc.name}), exc.code

    @app.get("/health")
    def health():
        try:
            get_db().execute("SELECT 1").fetchone()
        except DB_ERRORS:
            app.logger.warning("Health check could not reach the database")
            return jsonify({"status": "ERROR", "error": "Database connection failed"}), 503
        return jsonify({
            "status": "OK",
            "database": "connected",
            "migration": get_migration_status(app.flag_store),
        })

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(app.database.config))
        except DB_ERRORS as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    def trip_exists(db, trip_id):
        return db.execute("SELECT 1 FROM trips WHERE id = ?", (trip_id,)).fetchone() is not None

    def fetch_redemption(db, redemption_id):
        return db.execute(
            f"SELECT {REDEMPTION_FIELDS} FROM redemptions WHERE id = ?", (redemption_id,)
        ).fetchone()

    def validation_failed(errors):
        return jsonify({"error": "Validation failed", "errors": errors}), 400

    @app.get("/api/redemptions")
    def list_redemptions():
        rows = get_db().execute(
            f"SELECT {REDEMPTION_FIELDS} FROM redemptions ORDER BY date DESC, id DESC"
        ).fetchall()
        return jsonify([serialize_redemption(row) for row in rows])

    @app.post("/api/redemptions")
    def create_redemption():
        record, errors = validate_redemption_payload(request.get_json(silent=True))
        if errors:
            return validation_failed(errors)

        db = get_db()
        if record.trip_id is not None and not trip_exists(db, record.trip_id):
            return validation_failed(["Trip not found"])

        db.execute(
            """
            INSERT INTO redemptions (date, source, points, value, taxes, notes, is_travel_credit, trip_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            record.as_params() + (record.trip_id,),
        )
        redemption_id = db.execute("SELECT last_insert_rowid() AS id").fetchone()["id"]
        db.commit()
        app.logger.info("Created redemption id=%s source=%s", redemption_id, record.source)
        return jsonify({"id": redemption_id}), 201

    @app.get("/api/redemptions/<int:redemption_id>")
    def get_redemption(redemption_id):
        row = fetch_redemption(get_db(), redemption_id)
        if row is None:
            return jsonify({"error": "Not found"}), 404
        return jsonify(serialize_redemption(row))

    @app.put("/api/redemptions/<int:redemption_id>")
    def update_redemption(redemption_id):
        record, errors = validate_redemption_payload(request.get_json(silent=True))
        if errors:
            return validation_failed(errors)

        db = get_db()
        if record.trip_id is not None and not trip_exists(db, record.trip_id):
            return validation_failed(["Trip not found"])

        result = db.execute(
            """
            UPDATE redemptions
            SET date = ?, source = ?, points = ?, value = ?, taxes = ?, notes = ?, is_travel_credit = ?,
                trip_id = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            record.as_params() + (record.trip_id, redemption_id),
        )
        if result.rowcount == 0:
            db.rollback()
            return jsonify({"error": "Not found"}), 404
        db.commit()
        app.logger.info("Updated redemption id=%s", redemption_id)
        return jsonify({"success": True})

    @app.delete("/api/redemptions/<int:redemption_id>")
    def delete_redemption(redemption_id):
        db = get_db()
        result = db.execute("DELETE FROM redemptions WHERE id = ?", (redemption_id,))
        if result.rowcount == 0:
            db.rollback()
            return jsonify({"error": "Not found"}), 404
        db.commit()
        app.logger.info("Deleted redemption id=%s", redemption_id)
        return jsonify({"success": True})

    def fetch_trip(db, trip_id):
        return db.execute("SELECT * FROM trips WHERE id = ?", (trip_id,)).fetchone()

    def count_trip_redemptions(db, trip_id):
        row = db.execute("SELECT COUNT(*) AS count FROM redemptions WHERE trip_id = ?", (trip_id,)).fetchone()
        return int(row["count"])

    @app.get("/api/trips")
    def list_trips():
        db = get_db()
        trips = db.execute("SELECT * FROM trips ORDER BY name").fetchall()
        stats_rows = db.execute(
            """
            SELECT trip_id, COUNT(*) AS total_redemptions, SUM(points) AS total_points, SUM(value) AS total_value
            FROM redemptions
            WHERE trip_id IS NOT NULL
            GROUP BY trip_id
            """
        ).fetchall()
        stats_by_trip = {
            row["trip_id"]: {
                "total_redemptions": int(row["total_redemptions"]),
                "total_points": int(row["total_points"] or 0),
                "total_value": float(row["total_value"] or 0),
            }
            for row in stats_rows
        }
        empty_stats = {"total_redemptions": 0, "total_points": 0, "total_value": 0.0}
        return jsonify([
            {**serialize_trip(trip), **stats_by_trip.get(trip["id"], empty_stats)} for trip in trips
        ])

    @app.post("/api/trips")
    def create_trip():
        trip, errors = validate_trip_payload(request.get_json(silent=True))
        if errors:
            return validation_failed(errors)

        db = get_db()
        db.execute(
            "INSERT INTO trips (name, description, image, start_date, end_date) VALUES (?, ?, ?, ?, ?)",
            (trip["name"], trip["description"], trip["image"], trip["start_date"], trip["end_date"]),
        )
        trip_id = db.execute("SELECT last_insert_rowid() AS id").fetchone()["id"]
        row = fetch_trip(db, trip_id)
        db.commit()
        app.logger.info("Created trip id=%s name=%s", trip_id, trip["name"])
        return jsonify(serialize_trip(row)), 201

    @app.get("/api/trips/<int:trip_id>")
    def get_trip(trip_id):
        row = fetch_trip(get_db(), trip_id)
        if row is None:
            return jsonify({"error": "Trip not found"}), 404
        return jsonify(serialize_trip(row))

    @app.put("/api/trips/<int:trip_id>")
    def update_trip(trip_id):
        trip, errors = validate_trip_payload(request.get_json(silent=True))
        if errors:
            return validation_failed(errors)

        db = get_db()
        result = db.execute(
            """
            UPDATE trips
            SET name = ?, description = ?, image = ?, start_date = ?, end_date = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (trip["name"], trip["description"], trip["image"], trip["start_date"], trip["end_date"], trip_id),
        )
        if result.rowcount == 0:
            db.rollback()
            return jsonify({"error": "Trip not found"}), 404
        row = fetch_trip(db, trip_id)
        db.commit()
        return jsonify(serialize_trip(row))

    @app.delete("/api/trips/<int:trip_id>")
    def delete_trip(trip_id):
        policy = (request.args.get("redemptions") or "").strip().lower()
        if policy and policy not in TRIP_DELETE_POLICIES:
            return jsonify({"error": "redemptions must be 'delete' or 'detach'"}), 400

        db = get_db()
        if fetch_trip(db, trip_id) is None:
            return jsonify({"error": "Trip not found"}), 404

        associated = count_trip_redemptions(db, trip_id)
        if associated and not policy:
            return jsonify({
                "error": (
                    "Cannot delete trip that has associated redemptions. "
                    "Pass redemptions=delete or redemptions=detach."
                ),
                "associatedRedemptions": associated,
            }), 400

        try:
            if associated and policy == "delete":
                db.execute("DELETE FROM redemptions WHERE trip_id = ?", (trip_id,))
            elif associated and policy == "detach":
                db.execute("UPDATE redemptions SET trip_id = NULL WHERE trip_id = ?", (trip_id,))
            db.execute("DELETE FROM trips WHERE id = ?", (trip_id,))
            db.commit()
        except DB_ERRORS:
            db.rollback()
            raise
        app.logger.info("Deleted trip id=%s (redemptions=%s, affected=%s)", trip_id, policy or "none", associated)
        return jsonify({"success": True})

    @app.get("/api/trips/<int:trip_id>/stats")
    def trip_stats(trip_id):
        db = get_db()
        if fetch_trip(db, trip_id) is None:
            return jsonify({"error": "Trip not found"}), 404

        row = db.execute(
            """
            SELECT
                COUNT(*) AS total_redemptions,
                COALESCE(SUM(value), 0) AS total_value,
                COALESCE(SUM(points), 0) AS total_points,
                COALESCE(SUM(CASE WHEN is_travel_credit THEN 0 ELSE value - COALESCE(taxes, 0) END), 0) AS net_value,
                COALESCE(SUM(CASE WHEN is_travel_credit THEN 0 ELSE points END), 0) AS cpp_points
            FROM redemptions
            WHERE trip_id = ?
            """,
            (trip_id,),
        ).fetchone()
        return jsonify({
            "total_redemptions": int(row["total_redemptions"]),
            "total_value": float(row["total_value"]),
            "total_points": int(row["total_points"]),
            "average_cpp": compute_cpp(int(row["cpp_points"]), row["net_value"]) or 0,
        })

    @app.delete("/api/trips/<int:trip_id>/redemptions")
    def delete_trip_redemptions(trip_id):
        db = get_db()
        result = db.execute("DELETE FROM redemptions WHERE trip_id = ?", (trip_id,))
        db.commit()
        app.logger.info("Deleted %s redemptions of trip id=%s", result.rowcount, trip_id)
        return jsonify({"success": True, "deleted": result.rowcount})

    @app.patch("/api/trips/<int:trip_id>/redemptions/remove-association")
    def detach_trip_redemptions(trip_id):
        db = get_db()
        result = db.execute("UPDATE redemptions SET trip_id = NULL WHERE trip_id = ?", (trip_id,))
        db.commit()
        return jsonify({"success": True, "detached": result.rowcount})

    def csv_upload():
        upload = request.files.get("csvFile")
        if upload is None or not upload.filename:
            return None, (jsonify({"error": "No CSV file provided"}), 400)
        if not is_csv_upload(upload.filename, upload.mimetype):
            return None, (jsonify({"error": "Only CSV files are allowed"}), 400)
        return upload, None

    def read_upload_text(upload):
        text = decode_csv_bytes(upload.read())
        if text is None:
            return None, (jsonify({"error": "Could not decode CSV file"}), 400)
        return text, None

    @app.get("/api/import-export/template")
    def download_template():
        return Response(
            template_csv(),
            mimetype="text/csv",
            headers={"Content-Disposition": 'attachment; filename="redemptions-template.csv"'},
        )

    @app.get("/api/import-export/export")
    def export_redemptions():
        rows = get_db().execute(
            "SELECT date, source, points, value, taxes, notes, is_travel_credit FROM redemptions ORDER BY date DESC, id DESC"
        ).fetchall()
        return Response(
            export_csv_lines(rows),
            mimetype="text/csv",
            headers={"Content-Disposition": 'attachment; filename="redemptions-export.csv"'},
        )

    @app.post("/api/import-export/analyze")
    def analyze_import():
        upload, error_response = csv_upload()
        if error_response:
            return error_response
        text, error_response = read_upload_text(upload)
        if error_response:
            return error_response

        analysis, error = analyze_csv(text)
        if error:
            return jsonify({"error": error}), 400
        return jsonify({"success": True, **analysis})

    @app.post("/api/import-export/import")
    def import_redemptions():
        upload, error_response = csv_upload()
        if error_response:
            return error_response

        mappings, error = parse_column_mappings(request.form.get("columnMappings"))
        if error:
            return jsonify({"error": error}), 400
        missing = missing_required_mappings(mappings)
        if missing:
            return jsonify({
                "error": "Missing required field mappings",
                "missingFields": missing,
                "message": f"Map a CSV column to: {', '.join(missing)}",
            }), 400

        text, error_response = read_upload_text(upload)
        if error_response:
            return error_response

        report = validate_csv_rows(text, mappings)
        if not report.ok:
            app.logger.info("CSV import rejected with %s validation error(s)", len(report.errors))
            return jsonify({
                "error": "Validation failed",
                "errors": report.errors,
                "warnings": report.warnings,
                "message": f"Found {len(report.errors)} validation error(s). Please fix these issues and try again.",
            }), 400

        result = insert_redemptions(get_db(), report.records)
        message = f"Successfully imported {result['imported']} redemptions"
        if result["skipped"]:
            message += f", skipped {result['skipped']} due to errors"
        app.logger.info("CSV import finished: %s", message)

        payload = {"success": True, **result, "message": message + "."}
        if report.warnings:
            payload["warnings"] = report.warnings
        return jsonify(payload)

    @app.get("/api/cpp")
    def calculate_cpp():
        points = coerce_number(request.args.get("points", ""))
        value = coerce_number(request.args.get("value", ""))
        raw_taxes = request.args.get("taxes", "").strip()
        taxes = coerce_number(raw_taxes) if raw_taxes else 0.0
        program_key = (request.args.get("program") or "").strip().lower()

        errors = []
        if points is None or points <= 0:
            errors.append("points must be greater than 0")
        if value is None or value <= 0:
            errors.append("value must be greater than 0")
        if taxes is None or taxes < 0:
            errors.append("taxes must be a number >= 0")
        if program_key and program_key not in POINT_PROGRAMS:
            errors.append(f"Unknown program '{program_key}'")
        if errors:
            return validation_failed(errors)

        cpp = compute_cpp(points, value, taxes)
        result = {"points": points, "value": value, "taxes": taxes, "cpp": cpp}
        if program_key:
            program = POINT_PROGRAMS[program_key]
            result.update({
                "program": program_key,
                "programLabel": program["label"],
                "referenceCpp": round(program["ref"] * 100, 2),
                "opinion": booking_opinion(cpp, program["ref"]),
            })
        return jsonify(result)

    init_db()
    if app.config["ENABLE_SQLITE_MIGRATION"]:
        run_legacy_migration()
    else:
        app.logger.info("SQLite migration check disabled")
    status = get_migration_status(app.flag_store)
    app.logger.info("Store: %s, legacy migration status: %s", app.database.location, status["status"])
    if status.get("migratedCount"):
        app.logger.info("Migrated %s redemptions from legacy SQLite", status["migratedCount"])

    app.get_db = get_db
    app.init_db = init_db
    app.run_legacy_migration = run_legacy_migration
    return app

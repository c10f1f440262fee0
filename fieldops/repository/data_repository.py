"""Repository layer responsible for all database access."""

from __future__ import annotations

import json
import sqlite3
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from fieldops.domain.models import (
    ACTIVE_STATUSES,
    AllocationLog,
    Availability,
    Booking,
    BookingStatus,
    Competency,
    Coordinates,
    CoverageArea,
    EngineerProfile,
    EngineerStatus,
    PricingRuleRecord,
    Qualification,
    ScheduledJob,
    Service,
    Site,
    StatusLogEntry,
)
from fieldops.utils.config import Settings, get_settings
from fieldops.utils.logger import get_logger


logger = get_logger(__name__)

# Columns a status transition may write besides ``status``.
_TRANSITION_COLUMNS = frozenset(
    {
        "engineer_id",
        "accepted_at",
        "en_route_at",
        "arrived_at",
        "started_at",
        "completed_at",
        "declined_at",
        "declined_reason",
        "cancelled_at",
        "confirmed_at",
    }
)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(str(value))


def _parse_date(value: Optional[str]) -> Optional[date]:
    if value is None:
        return None
    return date.fromisoformat(str(value)[:10])


def _row_to_booking(row: sqlite3.Row) -> Booking:
    return Booking(
        booking_id=int(row["id"]),
        service_id=int(row["service_id"]),
        site_id=int(row["site_id"]),
        customer_id=int(row["customer_id"]),
        scheduled_date=date.fromisoformat(str(row["scheduled_date"])),
        time_slot=str(row["time_slot"]),
        estimated_qty=int(row["estimated_qty"]),
        status=BookingStatus(str(row["status"])),
        engineer_id=None if row["engineer_id"] is None else int(row["engineer_id"]),
        quoted_price=None if row["quoted_price"] is None else float(row["quoted_price"]),
        original_price=None if row["original_price"] is None else float(row["original_price"]),
        is_flexible=bool(row["is_flexible"]),
        customer_signature_url=row["customer_signature_url"],
        confirmed_at=_parse_datetime(row["confirmed_at"]),
        accepted_at=_parse_datetime(row["accepted_at"]),
        en_route_at=_parse_datetime(row["en_route_at"]),
        arrived_at=_parse_datetime(row["arrived_at"]),
        started_at=_parse_datetime(row["started_at"]),
        completed_at=_parse_datetime(row["completed_at"]),
        declined_at=_parse_datetime(row["declined_at"]),
        cancelled_at=_parse_datetime(row["cancelled_at"]),
    )


class DataRepository:
    """Encapsulates SQLite access so business logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path, timeout=10.0)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS Services (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL,
                        base_price REAL NOT NULL CHECK (base_price >= 0),
                        min_charge REAL NOT NULL DEFAULT 0 CHECK (min_charge >= 0),
                        requires_certification INTEGER NOT NULL DEFAULT 0,
                        qualification_keywords TEXT NOT NULL DEFAULT ''
                    );

                    CREATE TABLE IF NOT EXISTS Customers (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS Sites (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        customer_id INTEGER NOT NULL,
                        postcode TEXT NOT NULL,
                        latitude REAL,
                        longitude REAL,
                        FOREIGN KEY (customer_id) REFERENCES Customers(id)
                    );

                    CREATE TABLE IF NOT EXISTS Engineers (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'PENDING_APPROVAL',
                        experience_years INTEGER NOT NULL DEFAULT 0
                    );

                    CREATE TABLE IF NOT EXISTS Competencies (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        engineer_id INTEGER NOT NULL,
                        service_id INTEGER NOT NULL,
                        certified INTEGER NOT NULL DEFAULT 0,
                        experience_years INTEGER NOT NULL DEFAULT 0,
                        UNIQUE (engineer_id, service_id),
                        FOREIGN KEY (engineer_id) REFERENCES Engineers(id),
                        FOREIGN KEY (service_id) REFERENCES Services(id)
                    );

                    CREATE TABLE IF NOT EXISTS Qualifications (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        engineer_id INTEGER NOT NULL,
                        name TEXT NOT NULL,
                        expiry_date TEXT,
                        verified INTEGER NOT NULL DEFAULT 0,
                        FOREIGN KEY (engineer_id) REFERENCES Engineers(id)
                    );

                    CREATE TABLE IF NOT EXISTS CoverageAreas (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        engineer_id INTEGER NOT NULL,
                        postcode_prefix TEXT NOT NULL,
                        center_latitude REAL,
                        center_longitude REAL,
                        radius_km REAL NOT NULL DEFAULT 10 CHECK (radius_km >= 0),
                        FOREIGN KEY (engineer_id) REFERENCES Engineers(id)
                    );

                    CREATE TABLE IF NOT EXISTS EngineerAvailability (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        engineer_id INTEGER NOT NULL,
                        date TEXT NOT NULL,
                        slot TEXT NOT NULL,
                        is_available INTEGER NOT NULL DEFAULT 1,
                        UNIQUE (engineer_id, date, slot),
                        FOREIGN KEY (engineer_id) REFERENCES Engineers(id)
                    );

                    CREATE TABLE IF NOT EXISTS Bookings (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        service_id INTEGER NOT NULL,
                        site_id INTEGER NOT NULL,
                        customer_id INTEGER NOT NULL,
                        scheduled_date TEXT NOT NULL,
                        time_slot TEXT NOT NULL,
                        estimated_qty INTEGER NOT NULL DEFAULT 1 CHECK (estimated_qty > 0),
                        status TEXT NOT NULL DEFAULT 'PENDING',
                        engineer_id INTEGER,
                        quoted_price REAL,
                        original_price REAL,
                        is_flexible INTEGER NOT NULL DEFAULT 0,
                        customer_signature_url TEXT,
                        confirmed_at TEXT,
                        accepted_at TEXT,
                        en_route_at TEXT,
                        arrived_at TEXT,
                        started_at TEXT,
                        completed_at TEXT,
                        declined_at TEXT,
                        declined_reason TEXT,
                        cancelled_at TEXT,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (service_id) REFERENCES Services(id),
                        FOREIGN KEY (site_id) REFERENCES Sites(id),
                        FOREIGN KEY (customer_id) REFERENCES Customers(id),
                        FOREIGN KEY (engineer_id) REFERENCES Engineers(id)
                    );

                    CREATE TABLE IF NOT EXISTS AllocationLogs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        booking_id INTEGER NOT NULL,
                        action TEXT NOT NULL,
                        selected_engineer_id INTEGER,
                        previous_engineer_id INTEGER,
                        actor_id TEXT,
                        reason TEXT NOT NULL,
                        explanation_json TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (booking_id) REFERENCES Bookings(id)
                    );

                    CREATE TABLE IF NOT EXISTS BookingStatusLogs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        booking_id INTEGER NOT NULL,
                        action TEXT NOT NULL,
                        from_status TEXT NOT NULL,
                        to_status TEXT NOT NULL,
                        actor_id TEXT NOT NULL,
                        reason TEXT,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (booking_id) REFERENCES Bookings(id)
                    );

                    CREATE TABLE IF NOT EXISTS PricingRules (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL,
                        rule_type TEXT NOT NULL,
                        enabled INTEGER NOT NULL DEFAULT 1,
                        priority INTEGER NOT NULL DEFAULT 100,
                        config_json TEXT NOT NULL DEFAULT '{}'
                    );

                    CREATE TABLE IF NOT EXISTS PostcodeCache (
                        postcode TEXT PRIMARY KEY,
                        latitude REAL NOT NULL,
                        longitude REAL NOT NULL,
                        fetched_at TEXT NOT NULL
                    );

                    CREATE INDEX IF NOT EXISTS idx_bookings_engineer_date_status
                    ON Bookings(engineer_id, scheduled_date, status);

                    CREATE INDEX IF NOT EXISTS idx_bookings_customer_status
                    ON Bookings(customer_id, status);

                    CREATE INDEX IF NOT EXISTS idx_allocation_logs_booking
                    ON AllocationLogs(booking_id, id);

                    CREATE INDEX IF NOT EXISTS idx_status_logs_booking
                    ON BookingStatusLogs(booking_id, id);
                    """
                )
                conn.commit()
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Reference data writes (admin collaborator, seeding and tests)
    # ------------------------------------------------------------------

    def _insert(self, sql: str, params: Sequence[Any]) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(sql, params)
            conn.commit()
            return int(cursor.lastrowid)

    def create_service(
        self,
        name: str,
        base_price: float,
        min_charge: float = 0.0,
        requires_certification: bool = False,
        qualification_keywords: Iterable[str] = (),
    ) -> int:
        return self._insert(
            """
            INSERT INTO Services (name, base_price, min_charge, requires_certification, qualification_keywords)
            VALUES (?, ?, ?, ?, ?);
            """,
            (name, base_price, min_charge, int(requires_certification), ",".join(qualification_keywords)),
        )

    def create_customer(self, name: str) -> int:
        return self._insert("INSERT INTO Customers (name) VALUES (?);", (name,))

    def create_site(
        self,
        customer_id: int,
        postcode: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> int:
        return self._insert(
            "INSERT INTO Sites (customer_id, postcode, latitude, longitude) VALUES (?, ?, ?, ?);",
            (customer_id, postcode.strip().upper(), latitude, longitude),
        )

    def create_engineer(
        self,
        name: str,
        status: EngineerStatus = EngineerStatus.APPROVED,
        experience_years: int = 0,
    ) -> int:
        return self._insert(
            "INSERT INTO Engineers (name, status, experience_years) VALUES (?, ?, ?);",
            (name, status.value, experience_years),
        )

    def add_competency(
        self,
        engineer_id: int,
        service_id: int,
        certified: bool = True,
        experience_years: int = 0,
    ) -> int:
        return self._insert(
            """
            INSERT INTO Competencies (engineer_id, service_id, certified, experience_years)
            VALUES (?, ?, ?, ?);
            """,
            (engineer_id, service_id, int(certified), experience_years),
        )

    def add_qualification(
        self,
        engineer_id: int,
        name: str,
        expiry_date: Optional[date],
        verified: bool = True,
    ) -> int:
        return self._insert(
            "INSERT INTO Qualifications (engineer_id, name, expiry_date, verified) VALUES (?, ?, ?, ?);",
            (engineer_id, name, expiry_date.isoformat() if expiry_date else None, int(verified)),
        )

    def add_coverage_area(
        self,
        engineer_id: int,
        postcode_prefix: str,
        center: Optional[Coordinates] = None,
        radius_km: float = 10.0,
    ) -> int:
        return self._insert(
            """
            INSERT INTO CoverageAreas (engineer_id, postcode_prefix, center_latitude, center_longitude, radius_km)
            VALUES (?, ?, ?, ?, ?);
            """,
            (
                engineer_id,
                postcode_prefix.strip().upper(),
                center.latitude if center else None,
                center.longitude if center else None,
                radius_km,
            ),
        )

    def set_availability(
        self,
        engineer_id: int,
        available_date: date,
        slot: str,
        is_available: bool,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO EngineerAvailability (engineer_id, date, slot, is_available)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (engineer_id, date, slot) DO UPDATE SET is_available = excluded.is_available;
                """,
                (engineer_id, available_date.isoformat(), slot, int(is_available)),
            )
            conn.commit()

    def create_booking(
        self,
        service_id: int,
        site_id: int,
        customer_id: int,
        scheduled_date: date,
        time_slot: str,
        estimated_qty: int = 1,
        status: BookingStatus = BookingStatus.PENDING,
        engineer_id: Optional[int] = None,
        is_flexible: bool = False,
        quoted_price: Optional[float] = None,
        customer_signature_url: Optional[str] = None,
    ) -> int:
        return self._insert(
            """
            INSERT INTO Bookings (
                service_id, site_id, customer_id, scheduled_date, time_slot, estimated_qty,
                status, engineer_id, is_flexible, quoted_price, original_price, customer_signature_url
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                service_id,
                site_id,
                customer_id,
                scheduled_date.isoformat(),
                time_slot,
                estimated_qty,
                status.value,
                engineer_id,
                int(is_flexible),
                quoted_price,
                quoted_price,
                customer_signature_url,
            ),
        )

    def set_customer_signature(self, booking_id: int, signature_url: Optional[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE Bookings SET customer_signature_url = ? WHERE id = ?;",
                (signature_url, booking_id),
            )
            conn.commit()

    def create_pricing_rule(
        self,
        name: str,
        rule_type: str,
        config: dict[str, Any],
        priority: int = 100,
        enabled: bool = True,
    ) -> int:
        return self._insert(
            "INSERT INTO PricingRules (name, rule_type, enabled, priority, config_json) VALUES (?, ?, ?, ?, ?);",
            (name, rule_type, int(enabled), priority, json.dumps(config)),
        )

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    def get_booking(self, booking_id: int) -> Optional[Booking]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM Bookings WHERE id = ?;", (booking_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return _row_to_booking(row)

    def get_service(self, service_id: int) -> Optional[Service]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM Services WHERE id = ?;", (service_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            keywords = tuple(
                keyword.strip().lower()
                for keyword in str(row["qualification_keywords"]).split(",")
                if keyword.strip()
            )
            return Service(
                service_id=int(row["id"]),
                name=str(row["name"]),
                base_price=float(row["base_price"]),
                min_charge=float(row["min_charge"]),
                requires_certification=bool(row["requires_certification"]),
                qualification_keywords=keywords,
            )

    def get_site(self, site_id: int) -> Optional[Site]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM Sites WHERE id = ?;", (site_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return Site(
                site_id=int(row["id"]),
                customer_id=int(row["customer_id"]),
                postcode=str(row["postcode"]),
                latitude=None if row["latitude"] is None else float(row["latitude"]),
                longitude=None if row["longitude"] is None else float(row["longitude"]),
            )

    def list_engineer_profiles(
        self,
        engineer_ids: Optional[Sequence[int]] = None,
    ) -> list[EngineerProfile]:
        """Load engineers with competencies, qualifications, coverage and availability."""
        with self._connect() as conn:
            cursor = conn.cursor()
            if engineer_ids is None:
                cursor.execute("SELECT * FROM Engineers ORDER BY id ASC;")
            else:
                if not engineer_ids:
                    return []
                placeholders = ", ".join("?" for _ in engineer_ids)
                cursor.execute(
                    f"SELECT * FROM Engineers WHERE id IN ({placeholders}) ORDER BY id ASC;",
                    tuple(engineer_ids),
                )
            engineer_rows = cursor.fetchall()
            if not engineer_rows:
                return []

            ids = [int(row["id"]) for row in engineer_rows]
            placeholders = ", ".join("?" for _ in ids)

            competencies: dict[int, list[Competency]] = {engineer_id: [] for engineer_id in ids}
            cursor.execute(
                f"SELECT * FROM Competencies WHERE engineer_id IN ({placeholders}) ORDER BY id ASC;",
                ids,
            )
            for row in cursor.fetchall():
                competencies[int(row["engineer_id"])].append(
                    Competency(
                        service_id=int(row["service_id"]),
                        certified=bool(row["certified"]),
                        experience_years=int(row["experience_years"]),
                    )
                )

            qualifications: dict[int, list[Qualification]] = {engineer_id: [] for engineer_id in ids}
            cursor.execute(
                f"SELECT * FROM Qualifications WHERE engineer_id IN ({placeholders}) ORDER BY id ASC;",
                ids,
            )
            for row in cursor.fetchall():
                qualifications[int(row["engineer_id"])].append(
                    Qualification(
                        name=str(row["name"]),
                        expiry_date=_parse_date(row["expiry_date"]),
                        verified=bool(row["verified"]),
                    )
                )

            coverage: dict[int, list[CoverageArea]] = {engineer_id: [] for engineer_id in ids}
            cursor.execute(
                f"SELECT * FROM CoverageAreas WHERE engineer_id IN ({placeholders}) ORDER BY id ASC;",
                ids,
            )
            for row in cursor.fetchall():
                center = None
                if row["center_latitude"] is not None and row["center_longitude"] is not None:
                    center = Coordinates(
                        latitude=float(row["center_latitude"]),
                        longitude=float(row["center_longitude"]),
                    )
                coverage[int(row["engineer_id"])].append(
                    CoverageArea(
                        postcode_prefix=str(row["postcode_prefix"]),
                        center=center,
                        radius_km=float(row["radius_km"]),
                    )
                )

            availability: dict[int, list[Availability]] = {engineer_id: [] for engineer_id in ids}
            cursor.execute(
                f"SELECT * FROM EngineerAvailability WHERE engineer_id IN ({placeholders}) ORDER BY date ASC;",
                ids,
            )
            for row in cursor.fetchall():
                availability[int(row["engineer_id"])].append(
                    Availability(
                        available_date=date.fromisoformat(str(row["date"])),
                        slot=str(row["slot"]),
                        is_available=bool(row["is_available"]),
                    )
                )

        return [
            EngineerProfile(
                engineer_id=int(row["id"]),
                name=str(row["name"]),
                status=EngineerStatus(str(row["status"])),
                experience_years=int(row["experience_years"]),
                competencies=tuple(competencies[int(row["id"])]),
                qualifications=tuple(qualifications[int(row["id"])]),
                coverage_areas=tuple(coverage[int(row["id"])]),
                availability=tuple(availability[int(row["id"])]),
            )
            for row in engineer_rows
        ]

    def get_engineer_profile(self, engineer_id: int) -> Optional[EngineerProfile]:
        profiles = self.list_engineer_profiles([engineer_id])
        return profiles[0] if profiles else None

    def list_engineer_jobs(
        self,
        engineer_id: int,
        start_date: date,
        end_date: date,
        exclude_booking_id: Optional[int] = None,
    ) -> list[ScheduledJob]:
        """Return active assignments in the inclusive date window."""
        statuses = [status.value for status in ACTIVE_STATUSES]
        placeholders = ", ".join("?" for _ in statuses)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT
                    b.id,
                    b.engineer_id,
                    b.scheduled_date,
                    b.time_slot,
                    b.service_id,
                    b.estimated_qty,
                    s.postcode,
                    s.latitude,
                    s.longitude
                FROM Bookings AS b
                INNER JOIN Sites AS s ON s.id = b.site_id
                WHERE b.engineer_id = ?
                  AND b.scheduled_date >= ?
                  AND b.scheduled_date <= ?
                  AND b.status IN ({placeholders})
                  AND b.id != ?
                ORDER BY b.scheduled_date ASC, b.id ASC;
                """,
                (
                    engineer_id,
                    start_date.isoformat(),
                    end_date.isoformat(),
                    *statuses,
                    -1 if exclude_booking_id is None else exclude_booking_id,
                ),
            )
            jobs: list[ScheduledJob] = []
            for row in cursor.fetchall():
                coordinates = None
                if row["latitude"] is not None and row["longitude"] is not None:
                    coordinates = Coordinates(latitude=float(row["latitude"]), longitude=float(row["longitude"]))
                jobs.append(
                    ScheduledJob(
                        booking_id=int(row["id"]),
                        engineer_id=int(row["engineer_id"]),
                        scheduled_date=date.fromisoformat(str(row["scheduled_date"])),
                        time_slot=str(row["time_slot"]),
                        postcode=str(row["postcode"]),
                        coordinates=coordinates,
                        service_id=int(row["service_id"]),
                        estimated_qty=int(row["estimated_qty"]),
                    )
                )
            return jobs

    def count_completed_bookings(self, customer_id: int) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT COUNT(*) AS count FROM Bookings WHERE customer_id = ? AND status = ?;",
                (customer_id, BookingStatus.COMPLETED.value),
            )
            return int(cursor.fetchone()["count"])

    def list_pricing_rules(self, enabled_only: bool = True) -> list[PricingRuleRecord]:
        """Rules ordered by ascending priority, then id.

        A payload that is not valid JSON is surfaced as a non-dict config so the
        pricing engine rejects that rule alone.
        """
        with self._connect() as conn:
            cursor = conn.cursor()
            query = "SELECT * FROM PricingRules"
            if enabled_only:
                query += " WHERE enabled = 1"
            cursor.execute(query + " ORDER BY priority ASC, id ASC;")
            rules: list[PricingRuleRecord] = []
            for row in cursor.fetchall():
                try:
                    config = json.loads(row["config_json"])
                except json.JSONDecodeError:
                    logger.warning("Pricing rule payload is not JSON | rule_id=%s", row["id"])
                    config = {"__invalid_json__": str(row["config_json"])}
                if not isinstance(config, dict):
                    config = {"__invalid_json__": config}
                rules.append(
                    PricingRuleRecord(
                        rule_id=int(row["id"]),
                        name=str(row["name"]),
                        rule_type=str(row["rule_type"]),
                        enabled=bool(row["enabled"]),
                        priority=int(row["priority"]),
                        config=config,
                    )
                )
            return rules

    # ------------------------------------------------------------------
    # Conditional booking writes
    # ------------------------------------------------------------------

    def _insert_allocation_log(
        self,
        cursor: sqlite3.Cursor,
        booking_id: int,
        action: str,
        selected_engineer_id: Optional[int],
        previous_engineer_id: Optional[int],
        actor_id: Optional[str],
        reason: str,
        explanation: dict[str, Any],
        created_at: str,
    ) -> None:
        cursor.execute(
            """
            INSERT INTO AllocationLogs (
                booking_id, action, selected_engineer_id, previous_engineer_id,
                actor_id, reason, explanation_json, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                booking_id,
                action,
                selected_engineer_id,
                previous_engineer_id,
                actor_id,
                reason,
                json.dumps(explanation),
                created_at,
            ),
        )

    def assign_booking(
        self,
        booking_id: int,
        engineer_id: int,
        quoted_price: float,
        original_price: float,
        reason: str,
        explanation: dict[str, Any],
    ) -> bool:
        """Assign only if the booking is still PENDING and unassigned.

        The booking update and its allocation log commit together; returns
        False (and writes nothing) when another writer got there first.
        """
        now = utc_now_iso()
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE Bookings
                SET engineer_id = ?,
                    status = ?,
                    quoted_price = ?,
                    original_price = ?,
                    confirmed_at = ?
                WHERE id = ?
                  AND engineer_id IS NULL
                  AND status = ?;
                """,
                (
                    engineer_id,
                    BookingStatus.CONFIRMED.value,
                    quoted_price,
                    original_price,
                    now,
                    booking_id,
                    BookingStatus.PENDING.value,
                ),
            )
            if cursor.rowcount != 1:
                conn.rollback()
                return False
            self._insert_allocation_log(
                cursor,
                booking_id=booking_id,
                action="ALLOCATED",
                selected_engineer_id=engineer_id,
                previous_engineer_id=None,
                actor_id=None,
                reason=reason,
                explanation=explanation,
                created_at=now,
            )
            conn.commit()
            return True

    def reassign_booking(
        self,
        booking_id: int,
        expected_engineer_id: Optional[int],
        expected_status: BookingStatus,
        new_engineer_id: int,
        quoted_price: float,
        original_price: float,
        actor_id: str,
        reason: str,
        explanation: dict[str, Any],
    ) -> bool:
        """Admin override; conditioned on the engineer and status last read.

        An existing quote is kept; the supplied price only fills a missing one.
        """
        now = utc_now_iso()
        target_status = (
            BookingStatus.CONFIRMED if expected_status == BookingStatus.PENDING else expected_status
        )
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE Bookings
                SET engineer_id = ?,
                    status = ?,
                    quoted_price = COALESCE(quoted_price, ?),
                    original_price = COALESCE(original_price, ?),
                    confirmed_at = COALESCE(confirmed_at, ?)
                WHERE id = ?
                  AND engineer_id IS ?
                  AND status = ?;
                """,
                (
                    new_engineer_id,
                    target_status.value,
                    quoted_price,
                    original_price,
                    now,
                    booking_id,
                    expected_engineer_id,
                    expected_status.value,
                ),
            )
            if cursor.rowcount != 1:
                conn.rollback()
                return False
            self._insert_allocation_log(
                cursor,
                booking_id=booking_id,
                action="REALLOCATED",
                selected_engineer_id=new_engineer_id,
                previous_engineer_id=expected_engineer_id,
                actor_id=actor_id,
                reason=reason,
                explanation=explanation,
                created_at=now,
            )
            conn.commit()
            return True

    def apply_status_change(
        self,
        booking_id: int,
        action: str,
        expected_status: BookingStatus,
        new_status: BookingStatus,
        actor_id: str,
        reason: Optional[str],
        updates: dict[str, Any],
        expected_engineer_id: Optional[int] = None,
    ) -> bool:
        """Write a transition only if the booking is still in ``expected_status``.

        With ``expected_engineer_id`` the booking must also be unassigned or
        already held by that engineer.
        """
        unknown = set(updates) - _TRANSITION_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported booking columns: {sorted(unknown)}")

        assignments = ["status = ?"] + [f"{column} = ?" for column in updates]
        params: list[Any] = [new_status.value, *updates.values(), booking_id, expected_status.value]
        where = "id = ? AND status = ?"
        if expected_engineer_id is not None:
            where += " AND (engineer_id IS NULL OR engineer_id = ?)"
            params.append(expected_engineer_id)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"UPDATE Bookings SET {', '.join(assignments)} WHERE {where};",
                params,
            )
            if cursor.rowcount != 1:
                conn.rollback()
                return False
            cursor.execute(
                """
                INSERT INTO BookingStatusLogs (booking_id, action, from_status, to_status, actor_id, reason, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    booking_id,
                    action,
                    expected_status.value,
                    new_status.value,
                    actor_id,
                    reason,
                    utc_now_iso(),
                ),
            )
            conn.commit()
            return True

    # ------------------------------------------------------------------
    # Audit trails
    # ------------------------------------------------------------------

    def list_allocation_logs(self, booking_id: int) -> list[AllocationLog]:
        """Newest first."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM AllocationLogs WHERE booking_id = ? ORDER BY id DESC;",
                (booking_id,),
            )
            return [
                AllocationLog(
                    log_id=int(row["id"]),
                    booking_id=int(row["booking_id"]),
                    action=str(row["action"]),
                    selected_engineer_id=(
                        None if row["selected_engineer_id"] is None else int(row["selected_engineer_id"])
                    ),
                    previous_engineer_id=(
                        None if row["previous_engineer_id"] is None else int(row["previous_engineer_id"])
                    ),
                    actor_id=row["actor_id"],
                    reason=str(row["reason"]),
                    explanation=json.loads(row["explanation_json"]),
                    created_at=str(row["created_at"]),
                )
                for row in cursor.fetchall()
            ]

    def count_allocation_logs(self, booking_id: Optional[int] = None) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            if booking_id is None:
                cursor.execute("SELECT COUNT(*) AS count FROM AllocationLogs;")
            else:
                cursor.execute(
                    "SELECT COUNT(*) AS count FROM AllocationLogs WHERE booking_id = ?;",
                    (booking_id,),
                )
            return int(cursor.fetchone()["count"])

    def list_status_logs(self, booking_id: int) -> list[StatusLogEntry]:
        """Oldest first, i.e. in the order transitions happened."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM BookingStatusLogs WHERE booking_id = ? ORDER BY id ASC;",
                (booking_id,),
            )
            return [
                StatusLogEntry(
                    log_id=int(row["id"]),
                    booking_id=int(row["booking_id"]),
                    action=str(row["action"]),
                    from_status=BookingStatus(str(row["from_status"])),
                    to_status=BookingStatus(str(row["to_status"])),
                    actor_id=str(row["actor_id"]),
                    reason=row["reason"],
                    created_at=str(row["created_at"]),
                )
                for row in cursor.fetchall()
            ]

    # ------------------------------------------------------------------
    # Postcode cache
    # ------------------------------------------------------------------

    def get_cached_postcode(self, postcode: str) -> Optional[Coordinates]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT latitude, longitude FROM PostcodeCache WHERE postcode = ?;",
                (postcode,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return Coordinates(latitude=float(row["latitude"]), longitude=float(row["longitude"]))

    def save_cached_postcode(self, postcode: str, coordinates: Coordinates) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO PostcodeCache (postcode, latitude, longitude, fetched_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (postcode) DO UPDATE SET
                    latitude = excluded.latitude,
                    longitude = excluded.longitude,
                    fetched_at = excluded.fetched_at;
                """,
                (postcode, coordinates.latitude, coordinates.longitude, utc_now_iso()),
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Demo data
    # ------------------------------------------------------------------

    def seed_demo_data(self, today: Optional[date] = None) -> int:
        """Seed a small London dataset when Engineers is empty.

        Returns the number of bookings created (0 when data already exists).
        """
        today = today or datetime.now(timezone.utc).date()
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*) AS count FROM Engineers;")
                if int(cursor.fetchone()["count"]) > 0:
                    logger.info("Demo data already present; skipping seed")
                    return 0
        except sqlite3.Error as exc:
            raise RuntimeError(f"Demo data seeding failed: {exc}") from exc

        try:
            pat = self.create_service(
                "PAT Testing", base_price=2.5, min_charge=60.0,
                requires_certification=True, qualification_keywords=("pat", "portable"),
            )
            eicr = self.create_service(
                "EICR", base_price=150.0, min_charge=150.0,
                requires_certification=True, qualification_keywords=("18th", "electrical"),
            )
            fire = self.create_service("Fire Alarm Testing", base_price=95.0, min_charge=95.0)

            acme = self.create_customer("Acme Offices Ltd")
            harbour = self.create_customer("Harbour Retail Group")
            westminster = self.create_site(acme, "SW1A 1AA", 51.501009, -0.141588)
            soho = self.create_site(acme, "W1D 3QU", 51.513600, -0.133900)
            shoreditch = self.create_site(harbour, "EC2A 3AY", 51.525500, -0.079200)
            canary = self.create_site(harbour, "E14 5AB", 51.505400, -0.023500)

            expiry = today + timedelta(days=365)
            engineers = [
                ("Sam Patel", EngineerStatus.APPROVED, 8, "SW1", Coordinates(51.4975, -0.1357), 8.0),
                ("Alex Morgan", EngineerStatus.APPROVED, 3, "EC", Coordinates(51.5200, -0.0950), 12.0),
                ("Jordan Reyes", EngineerStatus.APPROVED, 12, "E", Coordinates(51.5150, -0.0300), 15.0),
                ("Casey Lin", EngineerStatus.PENDING_APPROVAL, 1, "W1", Coordinates(51.5150, -0.1420), 6.0),
            ]
            engineer_ids: list[int] = []
            for name, status, years, prefix, center, radius in engineers:
                engineer_id = self.create_engineer(name, status, years)
                engineer_ids.append(engineer_id)
                self.add_coverage_area(engineer_id, prefix, center, radius)
                self.add_competency(engineer_id, pat, certified=True, experience_years=years)
                self.add_competency(engineer_id, fire, certified=years >= 3, experience_years=years)
                self.add_qualification(engineer_id, "City & Guilds 2377 PAT", expiry, verified=True)
                if years >= 8:
                    self.add_competency(engineer_id, eicr, certified=True, experience_years=years)
                    self.add_qualification(engineer_id, "18th Edition Wiring Regulations", expiry, verified=True)

            self.create_pricing_rule("Cluster discount", "cluster", {"radiusKm": 5, "minJobs": 1, "discountPercent": 10}, priority=10)
            self.create_pricing_rule("Short notice premium", "urgency", {"daysThreshold": 2, "premiumPercent": 15}, priority=20)
            self.create_pricing_rule("Off-peak days", "offpeak", {"days": [0, 4], "discountPercent": 5}, priority=30)
            self.create_pricing_rule("Flexible date", "flex", {"daysFlexible": 3, "discountPercent": 7}, priority=40)
            self.create_pricing_rule("Loyal customer", "loyalty", {"minBookings": 5, "discountPercent": 5}, priority=50)

            tomorrow = today + timedelta(days=1)
            next_week = today + timedelta(days=7)
            bookings = [
                (pat, westminster, acme, tomorrow, "AM", 40, False),
                (pat, soho, acme, tomorrow, "PM", 25, True),
                (eicr, shoreditch, harbour, next_week, "AM", 1, False),
                (fire, canary, harbour, next_week, "PM", 1, True),
            ]
            for service_id, site_id, customer_id, when, slot, qty, flexible in bookings:
                self.create_booking(service_id, site_id, customer_id, when, slot, qty, is_flexible=flexible)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Demo data seeding failed: {exc}") from exc

        logger.info(
            "Demo seed completed | engineers=%s | bookings=%s",
            len(engineer_ids),
            len(bookings),
        )
        return len(bookings)

"""RecordStore — read access to care records via libsql.

Every query is independently capped and, where it has a time dimension,
recency-filtered. Queries that accept ``patient_id`` are scoped to that
subject when it is given and cover all subjects otherwise.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from luna.db import get_connection
from luna.records.models import (
    Appointment,
    Caregiver,
    Medication,
    Patient,
    Provider,
    Vital,
)

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

MEDICATION_LIMIT = 50
APPOINTMENT_LIMIT = 20
VITAL_LIMIT = 50
PATIENT_LIMIT = 20
CAREGIVER_LIMIT = 20
PROVIDER_LIMIT = 25
CANDIDATE_LIMIT = 10

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS patients (
        id                      TEXT PRIMARY KEY,
        name                    TEXT NOT NULL,
        date_of_birth           TEXT,
        relationship            TEXT,
        gender                  TEXT,
        phone                   TEXT,
        emergency_contact_name  TEXT,
        emergency_contact_phone TEXT,
        primary_doctor          TEXT,
        insurance_provider      TEXT,
        insurance_id            TEXT,
        notes                   TEXT,
        active                  INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS healthcare_providers (
        id            TEXT PRIMARY KEY,
        name          TEXT NOT NULL,
        specialty     TEXT,
        practice_name TEXT,
        phone         TEXT,
        preferred     INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS medications (
        id                 TEXT PRIMARY KEY,
        patient_id         TEXT NOT NULL,
        name               TEXT NOT NULL,
        generic_name       TEXT,
        dosage             TEXT NOT NULL,
        frequency          TEXT NOT NULL,
        route              TEXT,
        prescribing_doctor TEXT,
        pharmacy           TEXT,
        rx_number          TEXT,
        side_effects       TEXT,
        notes              TEXT,
        active             INTEGER NOT NULL DEFAULT 1,
        created_at         TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS appointments (
        id                 TEXT PRIMARY KEY,
        patient_id         TEXT NOT NULL,
        provider_id        TEXT,
        appointment_date   TEXT NOT NULL,
        appointment_time   TEXT,
        appointment_type   TEXT,
        location           TEXT,
        status             TEXT NOT NULL DEFAULT 'scheduled',
        preparation_notes  TEXT,
        notes              TEXT,
        outcome_summary    TEXT,
        follow_up_required INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vitals (
        id            TEXT PRIMARY KEY,
        patient_id    TEXT NOT NULL,
        weight_lbs    REAL,
        glucose_am    REAL,
        glucose_pm    REAL,
        recorded_date TEXT NOT NULL,
        notes         TEXT,
        active        INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS caregivers (
        id           TEXT PRIMARY KEY,
        name         TEXT NOT NULL,
        relationship TEXT,
        notes        TEXT,
        active       INTEGER NOT NULL DEFAULT 1
    )
    """,
]


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class RecordStore:
    """Care records for prompt context.

    Pass an explicit *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    The ``add_*`` methods exist for seeding; record management lives elsewhere.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self):  # noqa: ANN202
        db = await get_connection(local_path_override=self._db_path)
        if not self._initialised:
            await db.executescript(_SCHEMA)
            self._initialised = True
        return db

    async def _query(self, sql: str, params: tuple = ()) -> list[dict]:
        db = await self._connect()
        try:
            return await db.fetch_dicts(sql, params)
        finally:
            await db.close()

    async def _insert(self, table: str, values: dict) -> str:
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        db = await self._connect()
        try:
            await db.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",  # noqa: S608
                tuple(values.values()),
            )
            await db.commit()
            return values["id"]
        finally:
            await db.close()

    # -- Seeding ---------------------------------------------------------------

    async def add_patient(self, name: str, **fields: object) -> str:
        return await self._insert("patients", {"id": _new_id("pat"), "name": name, **fields})

    async def add_provider(self, name: str, **fields: object) -> str:
        return await self._insert(
            "healthcare_providers", {"id": _new_id("prov"), "name": name, **fields}
        )

    async def add_medication(
        self, patient_id: str, name: str, dosage: str, frequency: str, **fields: object
    ) -> str:
        return await self._insert(
            "medications",
            {
                "id": _new_id("med"),
                "patient_id": patient_id,
                "name": name,
                "dosage": dosage,
                "frequency": frequency,
                **fields,
            },
        )

    async def add_appointment(self, patient_id: str, appointment_date: str, **fields: object) -> str:
        return await self._insert(
            "appointments",
            {
                "id": _new_id("appt"),
                "patient_id": patient_id,
                "appointment_date": appointment_date,
                **fields,
            },
        )

    async def add_vital(self, patient_id: str, recorded_date: str, **fields: object) -> str:
        return await self._insert(
            "vitals",
            {
                "id": _new_id("vital"),
                "patient_id": patient_id,
                "recorded_date": recorded_date,
                **fields,
            },
        )

    async def add_caregiver(self, name: str, **fields: object) -> str:
        return await self._insert("caregivers", {"id": _new_id("cg"), "name": name, **fields})

    # -- Reads -----------------------------------------------------------------

    async def list_patients(self) -> list[Patient]:
        """All active patients, by name."""
        rows = await self._query(
            "SELECT * FROM patients WHERE active = 1 ORDER BY name ASC LIMIT ?",
            (PATIENT_LIMIT,),
        )
        return [Patient.from_row(row) for row in rows]

    async def get_patient(self, patient_id: str) -> Patient | None:
        """The active patient with *patient_id*, if any."""
        rows = await self._query(
            "SELECT * FROM patients WHERE id = ? AND active = 1", (patient_id,)
        )
        return Patient.from_row(rows[0]) if rows else None

    async def find_patient_candidates(self, term: str) -> list[Patient]:
        """Active patients whose name or relationship contains *term*."""
        pattern = f"%{term.strip().lower()}%"
        rows = await self._query(
            """
            SELECT * FROM patients
            WHERE active = 1
              AND (LOWER(name) LIKE ? OR LOWER(COALESCE(relationship, '')) LIKE ?)
            ORDER BY name ASC
            LIMIT ?
            """,
            (pattern, pattern, CANDIDATE_LIMIT),
        )
        return [Patient.from_row(row) for row in rows]

    async def active_medications(self, patient_id: str | None = None) -> list[Medication]:
        sql = """
            SELECT m.*, p.name AS patient_name
            FROM medications m
            LEFT JOIN patients p ON m.patient_id = p.id
            WHERE m.active = 1
        """
        params: list[object] = []
        if patient_id:
            sql += " AND m.patient_id = ?"
            params.append(patient_id)
        sql += " ORDER BY m.created_at DESC, m.name ASC LIMIT ?"
        params.append(MEDICATION_LIMIT)
        return [Medication.from_row(row) for row in await self._query(sql, tuple(params))]

    async def upcoming_appointments(
        self, since: str, patient_id: str | None = None
    ) -> list[Appointment]:
        """Appointments dated on or after *since* (ISO date), soonest first."""
        sql = """
            SELECT a.*, p.name AS patient_name,
                   hp.name AS provider_name, hp.specialty AS provider_specialty
            FROM appointments a
            LEFT JOIN patients p ON a.patient_id = p.id
            LEFT JOIN healthcare_providers hp ON a.provider_id = hp.id
            WHERE a.appointment_date >= ?
              AND a.status != 'cancelled'
        """
        params: list[object] = [since]
        if patient_id:
            sql += " AND a.patient_id = ?"
            params.append(patient_id)
        sql += " ORDER BY a.appointment_date ASC LIMIT ?"
        params.append(APPOINTMENT_LIMIT)
        return [Appointment.from_row(row) for row in await self._query(sql, tuple(params))]

    async def recent_vitals(self, since: str, patient_id: str | None = None) -> list[Vital]:
        """Measurements recorded on or after *since* (ISO date), newest first."""
        sql = """
            SELECT v.*, p.name AS patient_name
            FROM vitals v
            LEFT JOIN patients p ON v.patient_id = p.id
            WHERE v.active = 1 AND v.recorded_date >= ?
        """
        params: list[object] = [since]
        if patient_id:
            sql += " AND v.patient_id = ?"
            params.append(patient_id)
        sql += " ORDER BY v.recorded_date DESC LIMIT ?"
        params.append(VITAL_LIMIT)
        return [Vital.from_row(row) for row in await self._query(sql, tuple(params))]

    async def active_caregivers(self) -> list[Caregiver]:
        rows = await self._query(
            "SELECT * FROM caregivers WHERE active = 1 ORDER BY name ASC LIMIT ?",
            (CAREGIVER_LIMIT,),
        )
        return [Caregiver.from_row(row) for row in rows]

    async def list_providers(self) -> list[Provider]:
        rows = await self._query(
            "SELECT * FROM healthcare_providers ORDER BY preferred DESC, name ASC LIMIT ?",
            (PROVIDER_LIMIT,),
        )
        return [
            Provider(
                id=row["id"],
                name=row["name"],
                specialty=row["specialty"] or None,
                practice_name=row["practice_name"] or None,
                phone=row["phone"] or None,
                preferred=bool(row["preferred"]),
            )
            for row in rows
        ]

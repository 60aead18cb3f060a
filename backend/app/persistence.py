from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Iterator, Optional

from pydantic import BaseModel
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backend.app.models import (
    CallRecord,
    CampaignAuditEventRecord,
    CampaignCandidateRecord,
    CampaignRecord,
    CandidateRecord,
    DncEntryRecord,
    SessionRecord,
    SettingRecord,
    VacancyRecord,
    WebhookEventRecord,
)


class StorePersistenceError(Exception):
    pass


class _CounterGuardTripped(Exception):
    pass


@dataclass(frozen=True)
class EntityTable:
    table: Table
    model: type[BaseModel]
    key: str
    json_fields: frozenset[str]


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


def _record_to_row(entity: EntityTable, record: BaseModel) -> dict:
    data = record.model_dump()
    json_data = (
        record.model_dump(mode="json", include=set(entity.json_fields))
        if entity.json_fields
        else {}
    )
    row: dict = {}
    for name, value in data.items():
        if name in entity.json_fields:
            row[f"{name}_json"] = json.dumps(json_data.get(name))
        elif isinstance(value, Enum):
            row[name] = value.value
        else:
            row[name] = value
    return row


def _row_to_record(entity: EntityTable, row) -> BaseModel:
    data = dict(row._mapping)
    for name in entity.json_fields:
        raw = data.pop(f"{name}_json", None)
        data[name] = json.loads(raw) if raw is not None else None
    return entity.model.model_validate(data)


class SqlPersistence:
    """Write-through storage for the in-memory store.

    Every entity gets its own SQLAlchemy Core table. Works with SQLite (default) and any
    other SQLAlchemy URL such as PostgreSQL.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.vacancies = Table(
            "vacancies",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("title", String(160), nullable=False),
            Column("department", String(120), nullable=False),
            Column("location", String(160), nullable=False),
            Column("description", Text, nullable=True),
            Column("requirements", Text, nullable=True),
            Column("salary", String(120), nullable=True),
            Column("status", String(20), nullable=False),
            Column("created_by", String(120), nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.candidates = Table(
            "candidates",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("name", String(120), nullable=False),
            Column("email", String(254), nullable=False),
            Column("phone", String(20), nullable=False, index=True),
            Column("cv_url", String(500), nullable=True),
            Column("linkedin_url", String(500), nullable=True),
            Column("tags_json", Text, nullable=True),
            Column("custom_fields_json", Text, nullable=True),
            Column("status", String(20), nullable=False),
            Column("vacancy_id", String(64), nullable=True, index=True),
            Column("consent_status", String(20), nullable=False),
            Column("consent_timestamp", DateTime, nullable=True),
            Column("consent_source", String(120), nullable=True),
            Column("is_dnc", Boolean, nullable=False),
            Column("dnc_timestamp", DateTime, nullable=True),
            Column("notes", Text, nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.campaigns = Table(
            "campaigns",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("name", String(160), nullable=False),
            Column("description", Text, nullable=True),
            Column("status", String(20), nullable=False),
            Column("vacancy_id", String(64), nullable=True),
            Column("script_template", Text, nullable=False),
            Column("call_window_start", String(5), nullable=False),
            Column("call_window_end", String(5), nullable=False),
            Column("call_window_days_json", Text, nullable=True),
            Column("max_concurrent_calls", Integer, nullable=False),
            Column("retry_limit", Integer, nullable=False),
            Column("retry_delay_minutes", Integer, nullable=False),
            Column("total_candidates", Integer, nullable=False),
            Column("completed_calls", Integer, nullable=False),
            Column("successful_calls", Integer, nullable=False),
            Column("failed_calls", Integer, nullable=False),
            Column("created_by", String(120), nullable=True),
            Column("scheduled_at", DateTime, nullable=True),
            Column("started_at", DateTime, nullable=True),
            Column("completed_at", DateTime, nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.campaign_candidates = Table(
            "campaign_candidates",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("campaign_id", String(64), nullable=False, index=True),
            Column("candidate_id", String(64), nullable=False),
            Column("status", String(20), nullable=False),
            Column("attempts", Integer, nullable=False),
            Column("last_attempt_at", DateTime, nullable=True),
            Column("next_attempt_at", DateTime, nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
            UniqueConstraint("campaign_id", "candidate_id", name="uq_campaign_candidate"),
        )
        self.calls = Table(
            "calls",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("campaign_id", String(64), nullable=True, index=True),
            Column("candidate_id", String(64), nullable=True, index=True),
            Column("provider_call_id", String(200), nullable=True, index=True),
            Column("twilio_call_sid", String(200), nullable=True),
            Column("outcome", String(20), nullable=True),
            Column("duration", Integer, nullable=True),
            Column("audio_url", Text, nullable=True),
            Column("transcript", Text, nullable=True),
            Column("summary", Text, nullable=True),
            Column("sentiment", String(40), nullable=True),
            Column("confidence", Integer, nullable=True),
            Column("extracted_data_json", Text, nullable=True),
            Column("recommended_action", Text, nullable=True),
            Column("scheduled_interview_at", DateTime, nullable=True),
            Column("crm_synced", Boolean, nullable=False),
            Column("crm_synced_at", DateTime, nullable=True),
            Column("error_message", Text, nullable=True),
            Column("counted_in_campaign", Boolean, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.dnc_entries = Table(
            "dnc_entries",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("phone", String(20), nullable=False, unique=True),
            Column("reason", String(200), nullable=True),
            Column("source", String(80), nullable=True),
            Column("added_by", String(120), nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
        )
        self.settings = Table(
            "settings",
            self.metadata,
            Column("key", String(120), primary_key=True),
            Column("value_json", Text, nullable=True),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.webhook_events = Table(
            "webhook_events",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("event_id", String(255), nullable=False, unique=True),
            Column("source", String(40), nullable=False),
            Column("event_type", String(120), nullable=False),
            Column("payload_json", Text, nullable=True),
            Column("processed", Boolean, nullable=False),
            Column("processed_at", DateTime, nullable=True),
            Column("error_message", Text, nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
        )
        self.campaign_audit_events = Table(
            "campaign_audit_events",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("campaign_id", String(64), nullable=False, index=True),
            Column("from_status", String(20), nullable=True),
            Column("to_status", String(20), nullable=False),
            Column("reason", String(200), nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
        )
        self.sessions = Table(
            "sessions",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("user_id", String(120), nullable=False),
            Column("email", String(254), nullable=False),
            Column("roles_json", Text, nullable=True),
            Column("expires_at_utc", DateTime, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
        )
        self.entities: dict[str, EntityTable] = {
            "vacancies": EntityTable(self.vacancies, VacancyRecord, "id", frozenset()),
            "candidates": EntityTable(
                self.candidates, CandidateRecord, "id", frozenset({"tags", "custom_fields"})
            ),
            "campaigns": EntityTable(
                self.campaigns, CampaignRecord, "id", frozenset({"call_window_days"})
            ),
            "campaign_candidates": EntityTable(
                self.campaign_candidates, CampaignCandidateRecord, "id", frozenset()
            ),
            "calls": EntityTable(self.calls, CallRecord, "id", frozenset({"extracted_data"})),
            "dnc_entries": EntityTable(self.dnc_entries, DncEntryRecord, "id", frozenset()),
            "settings": EntityTable(self.settings, SettingRecord, "key", frozenset({"value"})),
            "webhook_events": EntityTable(
                self.webhook_events, WebhookEventRecord, "id", frozenset({"payload"})
            ),
            "campaign_audit_events": EntityTable(
                self.campaign_audit_events, CampaignAuditEventRecord, "id", frozenset()
            ),
            "sessions": EntityTable(self.sessions, SessionRecord, "id", frozenset({"roles"})),
        }
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self._translate_errors():
            self.metadata.create_all(self.engine)

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            raise StorePersistenceError(
                f"database operation failed: {exc.__class__.__name__}"
            ) from exc

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def _upsert(self, conn: Connection, kind: str, record: BaseModel) -> None:
        entity = self.entities[kind]
        row = _record_to_row(entity, record)
        key_column = entity.table.c[entity.key]
        key_value = row[entity.key]
        existing = conn.execute(select(key_column).where(key_column == key_value)).first()
        if existing:
            conn.execute(entity.table.update().where(key_column == key_value).values(**row))
        else:
            conn.execute(entity.table.insert().values(**row))

    def upsert(self, kind: str, record: BaseModel) -> None:
        self.upsert_many([(kind, record)])

    def upsert_many(self, items: list[tuple[str, BaseModel]]) -> None:
        if not items:
            return
        with self._lock, self._translate_errors():
            with self.engine.begin() as conn:
                for kind, record in items:
                    self._upsert(conn, kind, record)

    def delete(self, kind: str, key: str) -> None:
        entity = self.entities[kind]
        key_column = entity.table.c[entity.key]
        with self._lock, self._translate_errors():
            with self.engine.begin() as conn:
                conn.execute(entity.table.delete().where(key_column == key))

    def get(self, kind: str, key: str) -> Optional[BaseModel]:
        entity = self.entities[kind]
        key_column = entity.table.c[entity.key]
        with self._lock, self._translate_errors():
            with self.engine.connect() as conn:
                row = conn.execute(select(entity.table).where(key_column == key)).first()
        return _row_to_record(entity, row) if row else None

    def load_all(self, kind: str) -> list[BaseModel]:
        entity = self.entities[kind]
        with self._lock, self._translate_errors():
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(entity.table).order_by(entity.table.c[entity.key])
                ).all()
        return [_row_to_record(entity, row) for row in rows]

    def insert_webhook_event(self, record: WebhookEventRecord) -> bool:
        """Insert a ledger row. Returns False when the event id is already present."""
        entity = self.entities["webhook_events"]
        with self._lock:
            try:
                with self.engine.begin() as conn:
                    conn.execute(entity.table.insert().values(**_record_to_row(entity, record)))
            except IntegrityError:
                return False
            except SQLAlchemyError as exc:
                raise StorePersistenceError("database operation failed: webhook insert") from exc
        return True

    def finalize_contact(
        self,
        *,
        campaign_id: str,
        successful: bool,
        now: datetime,
        records: list[tuple[str, BaseModel]],
    ) -> Optional[tuple[int, int, int]]:
        """Count one finished contact against a campaign inside a single transaction.

        The counters move through SQL increments guarded by
        ``completed_calls < total_candidates``. When the guard rejects the update the
        whole transaction is rolled back and None is returned.
        """
        campaigns = self.campaigns
        with self._lock:
            try:
                with self.engine.begin() as conn:
                    result = conn.execute(
                        campaigns.update()
                        .where(campaigns.c.id == campaign_id)
                        .where(campaigns.c.completed_calls < campaigns.c.total_candidates)
                        .values(
                            completed_calls=campaigns.c.completed_calls + 1,
                            successful_calls=campaigns.c.successful_calls + (1 if successful else 0),
                            failed_calls=campaigns.c.failed_calls + (0 if successful else 1),
                            updated_at_utc=now,
                        )
                    )
                    if result.rowcount != 1:
                        raise _CounterGuardTripped()
                    for kind, record in records:
                        self._upsert(conn, kind, record)
                    row = conn.execute(
                        select(
                            campaigns.c.completed_calls,
                            campaigns.c.successful_calls,
                            campaigns.c.failed_calls,
                        ).where(campaigns.c.id == campaign_id)
                    ).one()
            except _CounterGuardTripped:
                return None
            except SQLAlchemyError as exc:
                raise StorePersistenceError("database operation failed: counter update") from exc
        return row.completed_calls, row.successful_calls, row.failed_calls

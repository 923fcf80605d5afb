"""Repository for call scoring templates and agency calls.

Provides CRUD for the call_scoring_templates and agency_calls tables.
Analysis columns are stored as JSON text and decoded on read.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from typing import Any, Literal

import structlog

from agencybrain.db.database import generate_id, get_db, now_iso

logger = structlog.get_logger(__name__)

CallType = Literal["sales", "service"]

CALL_TYPES = ("sales", "service")

# Columns holding JSON documents
JSON_COLUMNS = (
    "skill_scores",
    "section_scores",
    "client_profile",
    "discovery_wins",
    "critical_gaps",
    "closing_attempts",
    "coaching_recommendations",
    "notable_quotes",
    "missed_signals",
)

ANALYSIS_COLUMNS = JSON_COLUMNS + (
    "overall_score",
    "potential_rank",
    "summary",
    "status",
    "analyzed_at",
)

DEFAULT_SKILL_CATEGORIES = "Rapport, Discovery, Coverage, Closing, Cross-Sell"


@dataclass
class CallScoringTemplate:
    """Scoring template record from database."""

    id: str
    agency_id: str | None
    name: str
    system_prompt: str
    skill_categories: str
    call_type: str
    is_active: bool
    is_global: bool
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agency_id": self.agency_id,
            "name": self.name,
            "system_prompt": self.system_prompt,
            "skill_categories": self.skill_categories,
            "call_type": self.call_type,
            "is_active": self.is_active,
            "is_global": self.is_global,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class AgencyCall:
    """Call record from database, JSON columns decoded."""

    id: str
    agency_id: str
    team_member_id: str | None
    template_id: str | None
    call_type: str
    original_filename: str | None
    transcript: str | None
    call_duration_seconds: int | None
    status: str
    overall_score: int | None
    potential_rank: str | None
    skill_scores: Any
    section_scores: Any
    client_profile: Any
    discovery_wins: Any
    critical_gaps: Any
    closing_attempts: Any
    coaching_recommendations: Any
    notable_quotes: Any
    summary: str | None
    missed_signals: Any
    analyzed_at: str | None
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agency_id": self.agency_id,
            "team_member_id": self.team_member_id,
            "template_id": self.template_id,
            "call_type": self.call_type,
            "original_filename": self.original_filename,
            "call_duration_seconds": self.call_duration_seconds,
            "status": self.status,
            "overall_score": self.overall_score,
            "potential_rank": self.potential_rank,
            "skill_scores": self.skill_scores,
            "section_scores": self.section_scores,
            "client_profile": self.client_profile,
            "discovery_wins": self.discovery_wins,
            "critical_gaps": self.critical_gaps,
            "closing_attempts": self.closing_attempts,
            "coaching_recommendations": self.coaching_recommendations,
            "notable_quotes": self.notable_quotes,
            "summary": self.summary,
            "missed_signals": self.missed_signals,
            "analyzed_at": self.analyzed_at,
            "created_at": self.created_at,
        }


def _decode(value: str | None) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _row_to_template(row: sqlite3.Row) -> CallScoringTemplate:
    return CallScoringTemplate(
        id=row["id"],
        agency_id=row["agency_id"],
        name=row["name"],
        system_prompt=row["system_prompt"],
        skill_categories=row["skill_categories"],
        call_type=row["call_type"],
        is_active=bool(row["is_active"]),
        is_global=bool(row["is_global"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_call(row: sqlite3.Row) -> AgencyCall:
    data = {key: row[key] for key in row.keys()}
    for column in JSON_COLUMNS:
        data[column] = _decode(data[column])
    return AgencyCall(**data)


# =============================================================================
# TEMPLATES
# =============================================================================


def create_template(
    name: str,
    system_prompt: str = "",
    skill_categories: Any = None,
    call_type: CallType = "sales",
    agency_id: str | None = None,
    is_global: bool = False,
) -> CallScoringTemplate:
    """Insert a scoring template.

    skill_categories is stored as given when it is a string (JSON text or a
    comma-separated list) and JSON-encoded otherwise.
    """
    if call_type not in CALL_TYPES:
        raise ValueError(f"Unknown call type: {call_type}")

    if skill_categories is None:
        raw_categories = DEFAULT_SKILL_CATEGORIES
    elif isinstance(skill_categories, str):
        raw_categories = skill_categories
    else:
        raw_categories = json.dumps(skill_categories, ensure_ascii=False)

    template_id = generate_id()
    timestamp = now_iso()

    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO call_scoring_templates (
                id, agency_id, name, system_prompt, skill_categories,
                call_type, is_active, is_global, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
            """,
            (
                template_id,
                agency_id,
                name,
                system_prompt or "",
                raw_categories,
                call_type,
                1 if is_global else 0,
                timestamp,
                timestamp,
            ),
        )

    logger.info("call_template_created", template_id=template_id, call_type=call_type)
    return _require_template(template_id)


def get_template(template_id: str) -> CallScoringTemplate | None:
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM call_scoring_templates WHERE id = ?", (template_id,)
        ).fetchone()
    return _row_to_template(row) if row else None


def _require_template(template_id: str) -> CallScoringTemplate:
    template = get_template(template_id)
    if template is None:
        raise LookupError(f"Template not found: {template_id}")
    return template


def resolve_template(agency_id: str, call_type: CallType = "sales") -> CallScoringTemplate | None:
    """Pick the template for a call: the agency's own active one, else a global one."""
    with get_db() as conn:
        row = conn.execute(
            """
            SELECT * FROM call_scoring_templates
            WHERE agency_id = ? AND call_type = ? AND is_active = 1
            ORDER BY updated_at DESC LIMIT 1
            """,
            (agency_id, call_type),
        ).fetchone()
        if row is None:
            row = conn.execute(
                """
                SELECT * FROM call_scoring_templates
                WHERE is_global = 1 AND call_type = ? AND is_active = 1
                ORDER BY updated_at DESC LIMIT 1
                """,
                (call_type,),
            ).fetchone()
    return _row_to_template(row) if row else None


# =============================================================================
# CALLS
# =============================================================================


def create_call(
    agency_id: str,
    transcript: str | None,
    call_type: CallType = "sales",
    template_id: str | None = None,
    team_member_id: str | None = None,
    original_filename: str | None = None,
    call_duration_seconds: int | None = None,
) -> AgencyCall:
    """Insert a transcribed call awaiting analysis."""
    if call_type not in CALL_TYPES:
        raise ValueError(f"Unknown call type: {call_type}")

    call_id = generate_id()
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO agency_calls (
                id, agency_id, team_member_id, template_id, call_type,
                original_filename, transcript, call_duration_seconds,
                status, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'transcribed', ?)
            """,
            (
                call_id,
                agency_id,
                team_member_id,
                template_id,
                call_type,
                original_filename,
                transcript,
                call_duration_seconds,
                now_iso(),
            ),
        )

    logger.info("call_created", call_id=call_id, agency_id=agency_id, call_type=call_type)
    return _require_call(call_id)


def get_call(call_id: str) -> AgencyCall | None:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM agency_calls WHERE id = ?", (call_id,)).fetchone()
    return _row_to_call(row) if row else None


def _require_call(call_id: str) -> AgencyCall:
    call = get_call(call_id)
    if call is None:
        raise LookupError(f"Call not found: {call_id}")
    return call


def save_call_analysis(call_id: str, update: dict[str, Any]) -> AgencyCall:
    """Write analysis columns for a call.

    Only keys in ANALYSIS_COLUMNS are written; JSON columns are encoded.
    """
    columns = [c for c in ANALYSIS_COLUMNS if c in update]
    values = [
        json.dumps(update[c], ensure_ascii=False) if c in JSON_COLUMNS and update[c] is not None else update[c]
        for c in columns
    ]

    with get_db() as conn:
        assignments = ", ".join(f"{c} = ?" for c in columns)
        cursor = conn.execute(
            f"UPDATE agency_calls SET {assignments} WHERE id = ?",
            (*values, call_id),
        )
        if cursor.rowcount == 0:
            raise LookupError(f"Call not found: {call_id}")

    return _require_call(call_id)

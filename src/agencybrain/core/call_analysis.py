"""Call analysis: score a call transcript with an LLM.

Flow:
    call + template -> ScoringConfig -> prompt -> LLM -> JSON -> normalizers
    -> agency_calls columns

Sales calls are scored 0-100 per section (Rapport, Coverage, Closing by
default) against an 8-item execution checklist. Service calls are scored
0-10 per section with a labelled checklist, service outcome and follow-up
validation.

The model is asked for a fixed JSON shape but nothing enforces it, so every
normalizer accepts arrays where objects were requested and the reverse,
tolerates missing fields and is idempotent on its own output.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any

import structlog

from agencybrain.core.call_repository import (
    AgencyCall,
    get_call,
    get_template,
    resolve_template,
    save_call_analysis,
)
from agencybrain.db.database import now_iso
from agencybrain.llm.client import LLMClient, LLMConfig, LLMError, LLMJSONError
from agencybrain.utils.text_utils import key_to_label, loads_finite, strip_code_fences, to_snake_key

logger = structlog.get_logger(__name__)

# =============================================================================
# CONSTANTS
# =============================================================================

SALES_MAX_SCORE = 100
SERVICE_MAX_SCORE = 10

POTENTIAL_RANKS = ("VERY LOW", "LOW", "MEDIUM", "HIGH", "VERY HIGH")

SERVICE_OUTCOME_STATUSES = ("resolved", "partial", "unresolved", "follow_up_required")
FOLLOW_UP_STATUSES = ("specific", "partial", "missing")
QUOTE_SPEAKERS = ("agent", "customer")

_AGENT_ALIASES = {"agent", "csr", "rep", "salesperson", "producer", "advisor", "staff"}
_CUSTOMER_ALIASES = {"customer", "client", "caller", "prospect", "insured"}

CRM_NOTE_KEYS = (
    "personal_rapport",
    "motivation_to_switch",
    "coverage_gaps_discussed",
    "premium_insights",
    "decision_process",
    "quote_summary",
    "follow_up_details",
)

# Extra skill scores requested on every sales call
SALES_EXTRA_SKILLS = ("objection_handling", "discovery")


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class ScoredSection:
    """A section the model scores."""

    key: str
    name: str
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "name": self.name, "description": self.description}


@dataclass
class ChecklistItem:
    """A yes/no execution item."""

    key: str
    label: str
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "label": self.label, "description": self.description}


@dataclass
class ScoringConfig:
    """Sections and checklist used to build the prompt and reshape the answer."""

    call_type: str
    scored_sections: list[ScoredSection]
    checklist_items: list[ChecklistItem]

    @property
    def section_keys(self) -> list[str]:
        return [s.key for s in self.scored_sections]

    @property
    def checklist_keys(self) -> list[str]:
        return [c.key for c in self.checklist_items]

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_type": self.call_type,
            "scored_sections": [s.to_dict() for s in self.scored_sections],
            "checklist_items": [c.to_dict() for c in self.checklist_items],
        }


@dataclass
class CallAnalysisResult:
    """Result of analyzing a call."""

    success: bool
    call_id: str
    call: AgencyCall | None
    analysis: dict[str, Any]
    message: str
    warnings: list[str] = field(default_factory=list)


class CallAnalysisError(Exception):
    """Base error for call analysis."""

    pass


class CallNotFoundError(CallAnalysisError):
    """Call does not exist."""

    pass


class MissingTranscriptError(CallAnalysisError):
    """Call has no transcript to analyze."""

    pass


class AnalysisConfigError(CallAnalysisError):
    """Analysis is not configured (e.g. no API key)."""

    pass


class AnalysisProviderError(CallAnalysisError):
    """The LLM call failed."""

    pass


class AnalysisParseError(CallAnalysisError, ValueError):
    """The LLM answer was not valid JSON."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


# =============================================================================
# DEFAULTS
# =============================================================================

DEFAULT_SALES_SECTIONS = [
    ScoredSection(
        key="rapport",
        name="Rapport",
        description=(
            "HWF Framework (Home, Work, Family). Build trust through genuine "
            "connection BEFORE discussing insurance. Asking about roof year or "
            "home details is NOT rapport; look for EXPANSION conversations."
        ),
    ),
    ScoredSection(
        key="coverage",
        name="Coverage",
        description=(
            "Differentiate through education, not order-taking. Educate on "
            "coverage and liability even when budget is the main concern, hold "
            "the frame and position as an advisor rather than a price quoter."
        ),
    ),
    ScoredSection(
        key="closing",
        name="Closing",
        description=(
            "Minimum two assumptive close attempts and a final yes/no ask for "
            "the sale. A follow-up needs an exact date/time and a clear desired "
            "outcome. Bonus: referrals or additional quotes."
        ),
    ),
]

DEFAULT_SALES_CHECKLIST = [
    ChecklistItem("hwf_framework", "HWF Framework", "Asked about home, work and family"),
    ChecklistItem("ask_about_work", "Ask About Work", "Asked what the prospect does for work"),
    ChecklistItem("explain_coverage", "Explain Coverage", "Explained coverage and liability"),
    ChecklistItem("deductible_value", "Deductible Value", "Explained the value of the deductible choice"),
    ChecklistItem("advisor_frame", "Advisor Frame", "Positioned as an advisor, not a price quoter"),
    ChecklistItem("assumptive_close", "Assumptive Close", "Used assumptive close language"),
    ChecklistItem("ask_for_sale", "Ask For Sale", "Asked directly for the sale"),
    ChecklistItem("set_follow_up", "Set Follow Up", "Set a follow-up with exact date and time"),
]

DEFAULT_SERVICE_SECTIONS = [
    ScoredSection("opening", "Opening", "Greeted warmly, identified self and agency, verified the caller"),
    ScoredSection("discovery", "Discovery", "Understood the reason for the call and asked clarifying questions"),
    ScoredSection("resolution", "Resolution", "Resolved the request accurately or set a clear path to resolution"),
    ScoredSection("policy_review", "Policy Review", "Looked for coverage gaps and cross-sell opportunities"),
    ScoredSection("closing", "Closing", "Summarized next steps and confirmed the customer was satisfied"),
]

DEFAULT_SERVICE_CHECKLIST = [
    ChecklistItem("greeted_by_name", "Greeted the customer by name"),
    ChecklistItem("verified_identity", "Verified the caller's identity"),
    ChecklistItem("confirmed_reason", "Confirmed the reason for the call"),
    ChecklistItem("offered_review", "Offered a policy review"),
    ChecklistItem("summarized_next_steps", "Summarized next steps"),
    ChecklistItem("set_follow_up", "Set a specific follow-up"),
]

SALES_SYSTEM_PROMPT = """You are an advanced sales-performance evaluator analyzing a transcribed insurance sales call. Your mission is to:
- Extract CRM-worthy data points that directly reflect the talk path.
- Surface precision-targeted coaching insights tied to the agency's script.
- Maintain an evidence-backed, judgment-free tone.

All analysis must be:
- Specific: no vagueness or conjecture.
- Grounded: each conclusion must cite transcript-based observations.
- Challenged: actively attempt to disprove assumptions via cross-validation.
- No PII: never include last names, DOBs, specific addresses, bank/card info, SSNs.

OPERATIONAL DEFINITIONS:
- Explicit Close Attempt = a direct request for commitment today
- Assumptive Ownership Phrase = language implying the decision is made
- Objection Loop = Acknowledge, Address/Reframe, Check, Ask again

Voice profile: blunt, clean, directive, zero hype. Short, active, present
tense sentences in second person. Use imperatives for fixes.

You must respond with ONLY valid JSON - no markdown, no explanation."""

SERVICE_SYSTEM_PROMPT = """You are a customer-service quality evaluator analyzing a transcribed insurance agency service call.

Score each section against the criteria provided, cite transcript evidence,
and write coaching as short, direct, second-person sentences.
Never include last names, DOBs, specific addresses, bank/card info or SSNs.

You must respond with ONLY valid JSON - no markdown, no explanation."""


# =============================================================================
# SCORING CONFIG
# =============================================================================


def _default_sections(call_type: str) -> list[ScoredSection]:
    source = DEFAULT_SERVICE_SECTIONS if call_type == "service" else DEFAULT_SALES_SECTIONS
    return [ScoredSection(s.key, s.name, s.description) for s in source]


def _default_checklist(call_type: str) -> list[ChecklistItem]:
    source = DEFAULT_SERVICE_CHECKLIST if call_type == "service" else DEFAULT_SALES_CHECKLIST
    return [ChecklistItem(c.key, c.label, c.description) for c in source]


def _parse_sections(raw: Any) -> list[ScoredSection]:
    sections: list[ScoredSection] = []
    items = raw if isinstance(raw, list) else [raw]
    for item in items:
        if isinstance(item, str):
            name = item.strip()
            if name:
                sections.append(ScoredSection(key=to_snake_key(name), name=name))
        elif isinstance(item, dict):
            name = str(
                item.get("name")
                or item.get("section_name")
                or item.get("label")
                or item.get("title")
                or item.get("key")
                or ""
            ).strip()
            if not name:
                continue
            key = to_snake_key(str(item.get("key") or name))
            description = str(
                item.get("description") or item.get("criteria") or item.get("prompt") or ""
            ).strip()
            sections.append(ScoredSection(key=key, name=name, description=description))
    return [s for s in sections if s.key]


def _parse_checklist(raw: Any) -> list[ChecklistItem]:
    items_out: list[ChecklistItem] = []
    items = raw if isinstance(raw, list) else [raw]
    for item in items:
        if isinstance(item, str):
            label = item.strip()
            if label:
                items_out.append(ChecklistItem(key=to_snake_key(label), label=label))
        elif isinstance(item, dict):
            label = str(
                item.get("label") or item.get("name") or item.get("text") or item.get("key") or ""
            ).strip()
            if not label:
                continue
            key = to_snake_key(str(item.get("key") or label))
            description = str(item.get("description") or item.get("criteria") or "").strip()
            items_out.append(ChecklistItem(key=key, label=label, description=description))
    return [c for c in items_out if c.key]


def parse_scoring_config(raw: Any, call_type: str = "sales") -> ScoringConfig:
    """Read a template's skill_categories into a ScoringConfig.

    Accepted shapes:
    - JSON text of any shape below
    - comma-separated names: "Rapport, Discovery, Closing"
    - list of names or of {name, description} objects
    - object with scored_sections/scoredSections and
      checklist_items/checklistItems

    Missing sections or checklist fall back to the defaults for call_type.
    """
    value = raw
    if isinstance(value, str):
        text = value.strip()
        if not text:
            value = None
        else:
            try:
                value = json.loads(text)
            except json.JSONDecodeError:
                value = [part for part in text.split(",") if part.strip()]

    sections: list[ScoredSection] = []
    checklist: list[ChecklistItem] = []

    if isinstance(value, dict):
        raw_sections = value.get("scored_sections", value.get("scoredSections"))
        raw_checklist = value.get("checklist_items", value.get("checklistItems"))
        if raw_sections is not None:
            sections = _parse_sections(raw_sections)
        if raw_checklist is not None:
            checklist = _parse_checklist(raw_checklist)
    elif isinstance(value, list):
        sections = _parse_sections(value)

    return ScoringConfig(
        call_type=call_type,
        scored_sections=sections or _default_sections(call_type),
        checklist_items=checklist or _default_checklist(call_type),
    )


# =============================================================================
# PROMPTS
# =============================================================================


def build_sales_prompt(
    config: ScoringConfig,
    transcript: str,
    system_prompt: str | None = None,
) -> tuple[str, str]:
    """Build (system, user) messages for a sales call."""
    framework = "\n\n".join(
        f"**{i}. {section.name.upper()}**\n{section.description or 'Score how well the salesperson executed this section.'}"
        for i, section in enumerate(config.scored_sections, start=1)
    )

    section_fields = ",\n".join(
        f'  "{s.key}_score": <0-100>,\n'
        f'  "{s.key}_failures": ["<specific failures with quotes if available>"],\n'
        f'  "{s.key}_coaching": "<one directive sentence for improvement>"'
        for s in config.scored_sections
    )
    extra_skills = ",\n".join(
        f'  "{key}_score": <0-100>' for key in SALES_EXTRA_SKILLS if key not in config.section_keys
    )
    checklist_fields = ",\n".join(f'    "{c.key}": <true/false>' for c in config.checklist_items)
    crm_fields = ",\n".join(f'    "{key}": "<{key_to_label(key).lower()}>"' for key in CRM_NOTE_KEYS)

    body = ",\n".join(part for part in (section_fields, extra_skills) if part)

    user = f"""Analyze this insurance sales call transcript and provide a structured evaluation.

## SCORING FRAMEWORK

{framework}

## EXECUTION CHECKLIST
{chr(10).join(f"- {c.key}: {c.description or c.label}" for c in config.checklist_items)}

## REQUIRED JSON RESPONSE FORMAT

{{
  "salesperson_name": "<first name only, from transcript>",
  "potential_rank": "<{' | '.join(POTENTIAL_RANKS)}>",
  "potential_rank_rationale": "<2-3 sentences citing specific observations>",
  "critical_assessment": "<1-2 sentence summary of the main issue or success>",
{body},
  "execution_checklist": {{
{checklist_fields}
  }},
  "crm_notes": {{
{crm_fields}
  }},
  "extracted_data": {{
    "client_first_name": "<first name only>",
    "current_carrier": "<carrier name>",
    "your_quote": "<premium quoted>",
    "competitor_quote": "<their current premium if mentioned>",
    "assets": ["<vehicles, home, etc>"],
    "timeline": "<decision timeline if mentioned>"
  }},
  "call_outcome": "<sold | not_sold | follow_up_scheduled | undecided>",
  "summary": "<2-3 sentences: why call occurred, outcome, next step>"
}}

## TRANSCRIPT
{transcript}"""

    return (system_prompt or SALES_SYSTEM_PROMPT), user


def build_service_prompt(
    config: ScoringConfig,
    transcript: str,
    system_prompt: str | None = None,
) -> tuple[str, str]:
    """Build (system, user) messages for a service call."""
    criteria = "\n".join(
        f"- {s.name}: {s.description or 'Score how well the CSR handled this part of the call.'}"
        for s in config.scored_sections
    )
    checklist = "\n".join(f"- {c.label}" for c in config.checklist_items)

    user = f"""Analyze this insurance service call transcript and provide a structured evaluation.

## SECTIONS (score each 0-10)
{criteria}

## CHECKLIST (mark each item checked or not, with evidence)
{checklist}

## REQUIRED JSON RESPONSE FORMAT

{{
  "csr_name": "<first name only>",
  "client_first_name": "<first name only>",
  "overall_score": <0-10>,
  "section_scores": [
    {{"section_name": "<section>", "score": <0-10>, "max_score": 10, "feedback": "<what happened>", "tip": "<one directive fix>"}}
  ],
  "summary": "<2-3 sentences: why the customer called and how it ended>",
  "crm_notes": "<notes for the customer record>",
  "suggestions": ["<coaching recommendation>"],
  "checklist": [
    {{"label": "<checklist item>", "checked": <true/false>, "evidence": "<quote or observation>"}}
  ],
  "service_outcome": {{"status": "<{' | '.join(SERVICE_OUTCOME_STATUSES)}>", "rationale": "<why>"}},
  "follow_up_validation": {{"status": "<{' | '.join(FOLLOW_UP_STATUSES)}>", "has_follow_up": <true/false>, "missing_fields": ["<date | time | owner | purpose>"]}},
  "notable_quotes": [
    {{"text": "<quote>", "speaker": "<agent | customer>", "timestamp_seconds": <number or null>, "context": "<why it matters>"}}
  ]
}}

## TRANSCRIPT
{transcript}"""

    return (system_prompt or SERVICE_SYSTEM_PROMPT), user


# =============================================================================
# PARSING
# =============================================================================


def parse_analysis_json(text: str | None) -> dict[str, Any]:
    """Parse the model answer after stripping a markdown code fence.

    NaN and infinite numbers load as None.

    Raises:
        AnalysisParseError: Empty answer, invalid JSON or not an object
    """
    if not text or not text.strip():
        raise AnalysisParseError("No analysis returned from AI", raw=text or "")

    try:
        parsed = loads_finite(strip_code_fences(text))
    except ValueError as e:
        raise AnalysisParseError("Failed to parse AI analysis", raw=text) from e

    if not isinstance(parsed, dict):
        raise AnalysisParseError("AI analysis is not a JSON object", raw=text)
    return parsed


# =============================================================================
# NORMALIZERS
# =============================================================================


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _finite(value: Any) -> float | None:
    try:
        number = float(value)
    except (OverflowError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _to_number(value: Any) -> float | None:
    """Coerce to a finite float; NaN, infinities and overflowing values give None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _finite(value)
    if isinstance(value, dict):
        return _to_number(value.get("score", value.get("value")))
    if isinstance(value, str):
        match = re.search(r"-?\d+(?:\.\d+)?", value)
        if match:
            return _finite(match.group(0))
    return None


def clamp_score(value: Any, max_score: int = SALES_MAX_SCORE, default: int = 0) -> int:
    """Coerce a score to an int in [0, max_score].

    Accepts numbers, numeric strings ("85", "85%", "8/10"), and objects with
    a score field. Anything else gives default.
    """
    number = _to_number(value)
    if number is None:
        return default
    return max(0, min(max_score, _round_half_up(number)))


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "y", "1", "checked", "done", "pass", "passed")
    if isinstance(value, dict):
        for key in ("checked", "value", "passed", "completed", "done"):
            if key in value:
                return _as_bool(value[key])
    return False


def _item_name(item: dict[str, Any]) -> str:
    for key in ("section_name", "name", "skill", "section", "label", "key", "title"):
        if item.get(key):
            return str(item[key]).strip()
    return ""


def _display_name(name: str) -> str:
    """Snake-case keys become labels; labels stay as written."""
    return key_to_label(name) if name == to_snake_key(name) else name


def _pairs(raw: Any) -> list[tuple[str, Any]]:
    """Flatten object-or-array input into (name, value) pairs."""
    if isinstance(raw, dict):
        return [(str(k), v) for k, v in raw.items()]
    if isinstance(raw, list):
        pairs = []
        for item in raw:
            if isinstance(item, dict):
                name = _item_name(item)
                if name:
                    pairs.append((name, item))
            elif isinstance(item, (list, tuple)) and len(item) == 2:
                pairs.append((str(item[0]), item[1]))
        return pairs
    return []


def _take(found: dict[str, dict[str, Any]], key: str, label: str) -> dict[str, Any] | None:
    """Pop an entry matched by configured key or by its snake-cased label."""
    if key in found:
        return found.pop(key)
    return found.pop(to_snake_key(label), None)


def normalize_string_list(raw: Any) -> list[str]:
    """Coerce to a list of non-empty strings."""
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw.strip()] if raw.strip() else []
    if isinstance(raw, dict):
        return [
            f"{_display_name(str(k))}: {v}".strip()
            for k, v in raw.items()
            if v not in (None, "", [], {})
        ]
    if isinstance(raw, list):
        result = []
        for item in raw:
            if isinstance(item, dict):
                text = item.get("text") or item.get("description") or item.get("recommendation")
                if text is None:
                    result.extend(normalize_string_list(item))
                    continue
                item = text
            if item is None:
                continue
            text = str(item).strip()
            if text:
                result.append(text)
        return result
    text = str(raw).strip()
    return [text] if text else []


def normalize_skill_scores(
    raw: Any,
    keys: list[str] | None = None,
    max_score: int = SALES_MAX_SCORE,
) -> dict[str, int]:
    """Canonical {skill_key: score}.

    Accepts {"Rapport": 80}, {"rapport": {"score": 80}} or
    [{"skill": "Rapport", "score": 80}]. With keys, those come first in
    order and missing ones score 0.
    """
    scores: dict[str, int] = {}
    for name, value in _pairs(raw):
        key = to_snake_key(name)
        if key:
            scores[key] = clamp_score(value, max_score)

    if keys is None:
        return scores

    ordered = {key: scores.get(key, 0) for key in keys}
    for key, value in scores.items():
        ordered.setdefault(key, value)
    return ordered


def normalize_section_scores(
    raw: Any,
    keys: list[str] | None = None,
    max_score: int = SALES_MAX_SCORE,
) -> dict[str, dict[str, Any]]:
    """Canonical sales sections {key: {score, failures, coaching}}."""
    sections: dict[str, dict[str, Any]] = {}
    for name, value in _pairs(raw):
        key = to_snake_key(name)
        if not key:
            continue
        if isinstance(value, dict):
            coaching = value.get("coaching", value.get("tip", value.get("feedback", "")))
            if isinstance(coaching, list):
                coaching = " ".join(normalize_string_list(coaching))
            sections[key] = {
                "score": clamp_score(value, max_score),
                "failures": normalize_string_list(value.get("failures", value.get("issues"))),
                "coaching": str(coaching or "").strip(),
            }
        else:
            sections[key] = {"score": clamp_score(value, max_score), "failures": [], "coaching": ""}

    if keys is None:
        return sections

    ordered = {
        key: sections.get(key, {"score": 0, "failures": [], "coaching": ""}) for key in keys
    }
    for key, value in sections.items():
        ordered.setdefault(key, value)
    return ordered


def normalize_service_section_scores(
    raw: Any,
    sections: list[ScoredSection] | None = None,
    max_score: int = SERVICE_MAX_SCORE,
) -> list[dict[str, Any]]:
    """Canonical service sections [{section_name, score, max_score, feedback, tip}].

    Accepts a list of section objects or an object keyed by section name
    whose values are scores or section objects. With sections, output
    follows their order and names, missing ones score 0.
    """
    found: dict[str, dict[str, Any]] = {}
    for name, value in _pairs(raw):
        key = to_snake_key(name)
        if not key:
            continue
        item = value if isinstance(value, dict) else {"score": value}
        section_max = clamp_score(item.get("max_score"), 1000, default=max_score) or max_score
        found[key] = {
            "section_name": _display_name(name),
            "score": clamp_score(item, section_max),
            "max_score": section_max,
            "feedback": str(item.get("feedback") or "").strip(),
            "tip": str(item.get("tip") or "").strip(),
        }

    if sections is None:
        return list(found.values())

    result = []
    for section in sections:
        entry = _take(found, section.key, section.name) or {
            "section_name": section.name,
            "score": 0,
            "max_score": max_score,
            "feedback": "",
            "tip": "",
        }
        entry["section_name"] = section.name
        result.append(entry)
    result.extend(found.values())
    return result


def normalize_execution_checklist(
    raw: Any,
    keys: list[str] | None = None,
) -> dict[str, bool]:
    """Canonical sales checklist {key: bool}.

    A bare list of strings marks those items as done.
    """
    checks: dict[str, bool] = {}
    if isinstance(raw, list) and all(isinstance(i, str) for i in raw):
        for name in raw:
            key = to_snake_key(name)
            if key:
                checks[key] = True
    else:
        for name, value in _pairs(raw):
            key = to_snake_key(name)
            if key:
                checks[key] = _as_bool(value)

    if keys is None:
        return checks

    ordered = {key: checks.get(key, False) for key in keys}
    for key, value in checks.items():
        ordered.setdefault(key, value)
    return ordered


def normalize_service_checklist(
    raw: Any,
    items: list[ChecklistItem] | None = None,
) -> list[dict[str, Any]]:
    """Canonical service checklist [{label, checked, evidence}]."""
    found: dict[str, dict[str, Any]] = {}
    if isinstance(raw, list) and all(isinstance(i, str) for i in raw):
        for label in raw:
            if label.strip():
                found[to_snake_key(label)] = {"label": label.strip(), "checked": True, "evidence": ""}
    else:
        for name, value in _pairs(raw):
            key = to_snake_key(name)
            if not key:
                continue
            evidence = value.get("evidence", "") if isinstance(value, dict) else ""
            found[key] = {
                "label": _display_name(name),
                "checked": _as_bool(value),
                "evidence": str(evidence or "").strip(),
            }

    if items is None:
        return list(found.values())

    result = []
    for item in items:
        entry = _take(found, item.key, item.label) or {"label": "", "checked": False, "evidence": ""}
        entry["label"] = item.label
        result.append(entry)
    result.extend(found.values())
    return result


def normalize_crm_notes(raw: Any, call_type: str = "sales") -> dict[str, str] | str:
    """Canonical CRM notes.

    Sales: object with the CRM_NOTE_KEYS (plus any extra keys) as strings.
    Service: a single string.
    """
    if call_type == "service":
        if raw is None:
            return ""
        if isinstance(raw, str):
            return raw.strip()
        return "\n".join(normalize_string_list(raw))

    notes: dict[str, str] = {key: "" for key in CRM_NOTE_KEYS}
    if raw is None:
        return notes

    if isinstance(raw, str):
        if raw.strip():
            notes["summary"] = raw.strip()
        return notes

    if isinstance(raw, list):
        for item in raw:
            if isinstance(item, str) and ":" in item:
                label, _, text = item.partition(":")
                notes[to_snake_key(label)] = text.strip()
            elif isinstance(item, dict):
                name = _item_name(item)
                if name:
                    value = item.get("value", item.get("notes", item.get("text", "")))
                    notes[to_snake_key(name)] = _note_text(value)
        return notes

    if isinstance(raw, dict):
        for name, value in raw.items():
            key = to_snake_key(str(name))
            if key:
                notes[key] = _note_text(value)
    return notes


def _note_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return "; ".join(normalize_string_list(value))
    if isinstance(value, dict):
        return "; ".join(normalize_string_list(value))
    return str(value).strip()


def _timestamp_seconds(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = _to_number(value)
        return max(0, int(number)) if number is not None else None
    if isinstance(value, str):
        text = value.strip()
        if re.fullmatch(r"\d{1,6}(:\d{1,2}){1,2}", text):
            seconds = 0
            for part in text.split(":"):
                seconds = seconds * 60 + int(part)
            return seconds
        number = _to_number(text)
        return max(0, int(number)) if number is not None else None
    return None


def _speaker(value: Any) -> str:
    text = str(value or "").strip().lower()
    if text in _CUSTOMER_ALIASES:
        return "customer"
    return "agent"


def normalize_notable_quotes(raw: Any) -> list[dict[str, Any]]:
    """Canonical quotes [{text, speaker, timestamp_seconds, context}]."""
    if raw is None:
        return []
    items = raw if isinstance(raw, list) else [raw]
    quotes = []
    for item in items:
        if isinstance(item, str):
            if item.strip():
                quotes.append(
                    {"text": item.strip(), "speaker": "agent", "timestamp_seconds": None, "context": ""}
                )
            continue
        if not isinstance(item, dict):
            continue
        text = str(item.get("text") or item.get("quote") or "").strip()
        if not text:
            continue
        quotes.append(
            {
                "text": text,
                "speaker": _speaker(item.get("speaker")),
                "timestamp_seconds": _timestamp_seconds(
                    item.get("timestamp_seconds", item.get("timestamp"))
                ),
                "context": str(item.get("context") or "").strip(),
            }
        )
    return quotes


def normalize_service_outcome(raw: Any) -> dict[str, Any]:
    """Canonical {status, rationale}; unknown status becomes unresolved."""
    if isinstance(raw, str):
        raw = {"status": raw}
    if not isinstance(raw, dict):
        raw = {}
    status = to_snake_key(str(raw.get("status") or ""))
    if status not in SERVICE_OUTCOME_STATUSES:
        status = "unresolved"
    return {"status": status, "rationale": str(raw.get("rationale") or "").strip()}


def normalize_follow_up_validation(raw: Any) -> dict[str, Any]:
    """Canonical {status, has_follow_up, missing_fields}."""
    if not isinstance(raw, dict):
        raw = {}
    status = to_snake_key(str(raw.get("status") or ""))
    missing = normalize_string_list(raw.get("missing_fields"))
    has_follow_up = _as_bool(raw["has_follow_up"]) if "has_follow_up" in raw else status in ("specific", "partial")
    if status not in FOLLOW_UP_STATUSES:
        status = "missing" if not has_follow_up else ("partial" if missing else "specific")
    return {"status": status, "has_follow_up": has_follow_up, "missing_fields": missing}


def compute_overall_score(section_scores: Any, keys: list[str] | None = None) -> int:
    """Mean of section scores, rounded half up.

    Accepts the canonical sales dict or the service list. For the service
    list each section is scaled to 0-10 first.
    """
    if isinstance(section_scores, list):
        values = []
        for section in section_scores:
            if not isinstance(section, dict):
                continue
            section_max = (
                clamp_score(section.get("max_score"), 1000, default=SERVICE_MAX_SCORE)
                or SERVICE_MAX_SCORE
            )
            values.append(clamp_score(section, section_max) / section_max * SERVICE_MAX_SCORE)
        return _round_half_up(sum(values) / len(values)) if values else 0

    scores = normalize_skill_scores(section_scores)
    if keys is not None:
        scores = {k: scores.get(k, 0) for k in keys}
    if not scores:
        return 0
    return _round_half_up(sum(scores.values()) / len(scores))


def _normalize_rank(value: Any) -> str | None:
    if not value:
        return None
    rank = re.sub(r"[\s_]+", " ", str(value)).strip().upper()
    return rank if rank in POTENTIAL_RANKS else None


def _as_profile(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, list):
        return {to_snake_key(name): value for name, value in _pairs(raw)}
    return {}


# =============================================================================
# MAPPING TO CALL COLUMNS
# =============================================================================


def _sales_sections_from_analysis(analysis: dict[str, Any], config: ScoringConfig) -> Any:
    if analysis.get("section_scores") is not None:
        return analysis["section_scores"]
    return {
        section.key: {
            "score": analysis.get(f"{section.key}_score"),
            "failures": analysis.get(f"{section.key}_failures"),
            "coaching": analysis.get(f"{section.key}_coaching"),
        }
        for section in config.scored_sections
    }


def build_call_update(
    call_type: str,
    analysis: dict[str, Any],
    config: ScoringConfig,
    analyzed_at: str | None = None,
) -> dict[str, Any]:
    """Map a parsed analysis onto agency_calls columns.

    Args:
        call_type: "sales" or "service"
        analysis: Parsed model answer
        config: Scoring config used for the prompt
        analyzed_at: Timestamp to record (defaults to now)

    Returns:
        Column -> value dict (JSON columns as Python objects)
    """
    update: dict[str, Any] = {
        "summary": str(analysis.get("summary") or "").strip() or None,
        "status": "analyzed",
        "analyzed_at": analyzed_at or now_iso(),
    }

    if call_type == "service":
        sections = normalize_service_section_scores(
            analysis.get("section_scores"), config.scored_sections
        )
        profile = _as_profile(analysis.get("client_profile") or analysis.get("extracted_data"))
        for key in ("csr_name", "client_first_name"):
            if analysis.get(key):
                profile[key] = str(analysis[key]).strip()

        if analysis.get("overall_score") is not None:
            overall = clamp_score(analysis["overall_score"], SERVICE_MAX_SCORE)
        else:
            overall = compute_overall_score(sections)

        update.update(
            {
                "overall_score": overall,
                "potential_rank": None,
                "skill_scores": {to_snake_key(s["section_name"]): s["score"] for s in sections},
                "section_scores": sections,
                "client_profile": profile,
                "discovery_wins": normalize_service_checklist(
                    analysis.get("checklist"), config.checklist_items
                ),
                "critical_gaps": {
                    "service_outcome": normalize_service_outcome(analysis.get("service_outcome")),
                    "follow_up_validation": normalize_follow_up_validation(
                        analysis.get("follow_up_validation")
                    ),
                },
                "closing_attempts": normalize_crm_notes(analysis.get("crm_notes"), "service"),
                "coaching_recommendations": normalize_string_list(analysis.get("suggestions")),
                "notable_quotes": normalize_notable_quotes(analysis.get("notable_quotes")),
                "missed_signals": [],
            }
        )
        return update

    sections = normalize_section_scores(
        _sales_sections_from_analysis(analysis, config), config.section_keys
    )

    skill_input: dict[str, Any] = {key: value["score"] for key, value in sections.items()}
    for key in SALES_EXTRA_SKILLS:
        if f"{key}_score" in analysis:
            skill_input[key] = analysis[f"{key}_score"]
    if analysis.get("skill_scores") is not None:
        skill_input.update(normalize_skill_scores(analysis["skill_scores"]))
    skill_keys = config.section_keys + [k for k in SALES_EXTRA_SKILLS if k not in config.section_keys]

    update.update(
        {
            "overall_score": compute_overall_score(
                {k: v["score"] for k, v in sections.items()}, config.section_keys
            ),
            "potential_rank": _normalize_rank(analysis.get("potential_rank")),
            "skill_scores": normalize_skill_scores(skill_input, skill_keys),
            "section_scores": sections,
            "client_profile": _as_profile(analysis.get("extracted_data")),
            "discovery_wins": normalize_execution_checklist(
                analysis.get("execution_checklist"), config.checklist_keys
            ),
            "critical_gaps": normalize_string_list(analysis.get("critical_assessment")),
            "closing_attempts": normalize_crm_notes(analysis.get("crm_notes"), "sales"),
            "missed_signals": normalize_string_list(analysis.get("potential_rank_rationale")),
        }
    )
    return update


# =============================================================================
# ENTRY POINT
# =============================================================================


def _make_client() -> LLMClient:
    config = LLMConfig.from_app_config()
    if config.provider == "openai" and not config.api_key:
        raise AnalysisConfigError("OpenAI API key not configured")
    return LLMClient(config)


def analyze_call(call_id: str, client: LLMClient | None = None) -> CallAnalysisResult:
    """Analyze a call transcript and store the results on the call.

    Nothing is written unless the whole analysis succeeds.

    Args:
        call_id: Call to analyze
        client: LLM client (built from app config if not provided)

    Returns:
        CallAnalysisResult with the updated call and the raw parsed analysis

    Raises:
        CallNotFoundError: Unknown call
        MissingTranscriptError: Call has no transcript
        AnalysisConfigError: No API key configured
        AnalysisProviderError: LLM request failed
        AnalysisParseError: Answer was not valid JSON after one repair round
            (first answer attached as raw)
    """
    if not call_id:
        raise CallAnalysisError("Missing call_id")

    call = get_call(call_id)
    if call is None:
        raise CallNotFoundError(f"Call not found: {call_id}")

    if not call.transcript or not call.transcript.strip():
        raise MissingTranscriptError("Call has no transcript")

    template = get_template(call.template_id) if call.template_id else None
    if template is None:
        template = resolve_template(call.agency_id, call.call_type)

    config = parse_scoring_config(
        template.skill_categories if template else None, call.call_type
    )
    system_override = template.system_prompt if template and template.system_prompt.strip() else None

    if call.call_type == "service":
        system_prompt, user_prompt = build_service_prompt(config, call.transcript, system_override)
    else:
        system_prompt, user_prompt = build_sales_prompt(config, call.transcript, system_override)

    if client is None:
        client = _make_client()

    logger.info(
        "call_analysis_started",
        call_id=call_id,
        call_type=call.call_type,
        template_id=template.id if template else None,
        model=client.config.model,
    )

    try:
        analysis = client.simple_json(
            system_prompt,
            user_prompt,
            temperature=client.config.temperature,
            max_tokens=client.config.max_tokens,
            parse=parse_analysis_json,
        )
    except LLMJSONError as e:
        logger.error("call_analysis_parse_failed", call_id=call_id, raw=e.raw[:500])
        raise AnalysisParseError(str(e), raw=e.raw) from e
    except LLMError as e:
        logger.error("call_analysis_llm_failed", call_id=call_id, error=str(e))
        raise AnalysisProviderError(f"AI analysis failed: {e}") from e

    update = build_call_update(call.call_type, analysis, config)
    updated_call = save_call_analysis(call_id, update)

    logger.info(
        "call_analyzed",
        call_id=call_id,
        overall_score=update["overall_score"],
        potential_rank=update.get("potential_rank"),
    )

    return CallAnalysisResult(
        success=True,
        call_id=call_id,
        call=updated_call,
        analysis=analysis,
        message="Analysis complete",
    )

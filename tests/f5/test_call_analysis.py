"""Tests for call analysis."""

import json
from unittest.mock import MagicMock

import pytest

from agencybrain.core.call_analysis import (
    DEFAULT_SALES_CHECKLIST,
    DEFAULT_SERVICE_CHECKLIST,
    DEFAULT_SERVICE_SECTIONS,
    AnalysisConfigError,
    AnalysisParseError,
    AnalysisProviderError,
    CallAnalysisError,
    CallNotFoundError,
    MissingTranscriptError,
    analyze_call,
    build_call_update,
    build_sales_prompt,
    build_service_prompt,
    clamp_score,
    compute_overall_score,
    normalize_crm_notes,
    normalize_execution_checklist,
    normalize_follow_up_validation,
    normalize_notable_quotes,
    normalize_section_scores,
    normalize_service_checklist,
    normalize_service_outcome,
    normalize_service_section_scores,
    normalize_skill_scores,
    normalize_string_list,
    parse_analysis_json,
    parse_scoring_config,
)
from agencybrain.core.call_repository import (
    create_call,
    create_template,
    get_call,
    save_call_analysis,
)
from agencybrain.llm.client import LLMClient, LLMConfig, LLMError, LLMResponse

TRANSCRIPT = "Agent: Hi, this is Amy from the agency.\nCustomer: I want a quote for my car."

SALES_ANSWER = {
    "salesperson_name": "Amy",
    "potential_rank": "very_high",
    "potential_rank_rationale": "Strong rapport and a clear close.",
    "critical_assessment": "Never asked for the sale twice.",
    "rapport_score": 80,
    "rapport_failures": "Skipped the family question",
    "coverage_score": "70%",
    "closing_score": {"score": 91},
    "closing_coaching": "Ask for the sale twice.",
    "objection_handling_score": 60,
    "execution_checklist": ["hwf_framework", "ask_for_sale"],
    "crm_notes": {"personal_rapport": "Has two kids"},
    "extracted_data": {"client_first_name": "Sam"},
    "summary": "Auto quote call.",
}


def _reply(answer) -> LLMResponse:
    content = answer if isinstance(answer, str) else json.dumps(answer)
    return LLMResponse(content=content, model="gpt-4o", provider="openai")


def _client(*answers) -> LLMClient:
    """Real client whose chat() returns the given answers in order."""
    client = LLMClient(LLMConfig(api_key="sk-test"))
    client.chat = MagicMock(side_effect=[_reply(a) for a in answers])
    return client


class TestClampScore:

    @pytest.mark.parametrize(
        "value,max_score,expected",
        [
            (85, 100, 85),
            ("85%", 100, 85),
            ("8/10", 10, 8),
            (150, 100, 100),
            (-5, 100, 0),
            (84.5, 100, 85),
            ({"score": 7}, 10, 7),
            ("n/a", 100, 0),
            (True, 100, 0),
            (None, 100, 0),
        ],
    )
    def test_clamp(self, value, max_score, expected):
        assert clamp_score(value, max_score) == expected

    def test_default(self):
        assert clamp_score(None, 1000, default=10) == 10


class TestScoringConfig:
    """Template skill_categories in their accepted shapes."""

    def test_defaults(self):
        config = parse_scoring_config(None)
        assert config.section_keys == ["rapport", "coverage", "closing"]
        assert config.checklist_keys == [c.key for c in DEFAULT_SALES_CHECKLIST]

    def test_service_defaults(self):
        config = parse_scoring_config("", "service")
        assert config.section_keys == [s.key for s in DEFAULT_SERVICE_SECTIONS]
        assert len(config.checklist_items) == len(DEFAULT_SERVICE_CHECKLIST)

    def test_comma_separated(self):
        config = parse_scoring_config("Rapport, Discovery, Cross-Sell")
        assert config.section_keys == ["rapport", "discovery", "cross_sell"]
        assert config.scored_sections[2].name == "Cross-Sell"

    def test_json_list(self):
        config = parse_scoring_config(
            '["Opening", {"name": "Wrap Up", "description": "End well"}]', "service"
        )
        assert config.section_keys == ["opening", "wrap_up"]
        assert config.scored_sections[1].description == "End well"

    def test_camel_case_object(self):
        config = parse_scoring_config(
            {"scoredSections": [{"section_name": "Greeting"}], "checklistItems": ["Verified ID"]}
        )
        assert config.section_keys == ["greeting"]
        assert config.checklist_keys == ["verified_id"]

    def test_snake_case_object_keeps_default_checklist(self):
        config = parse_scoring_config('{"scored_sections": ["Rapport"]}')
        assert config.section_keys == ["rapport"]
        assert len(config.checklist_items) == len(DEFAULT_SALES_CHECKLIST)


class TestPrompts:

    def test_sales_prompt(self):
        config = parse_scoring_config("Rapport, Discovery")
        system, user = build_sales_prompt(config, TRANSCRIPT)

        assert "sales-performance evaluator" in system
        assert "**1. RAPPORT**" in user
        assert '"rapport_score": <0-100>' in user
        assert '"objection_handling_score": <0-100>' in user
        assert user.count('"discovery_score"') == 1
        assert user.endswith(TRANSCRIPT)

    def test_service_prompt_with_override(self):
        config = parse_scoring_config(None, "service")
        system, user = build_service_prompt(config, TRANSCRIPT, "Custom system")

        assert system == "Custom system"
        assert "- Opening:" in user
        assert "- Greeted the customer by name" in user


class TestParseAnalysisJson:

    def test_fenced(self):
        assert parse_analysis_json('```json\n{"a": 1}\n```') == {"a": 1}

    @pytest.mark.parametrize(
        "text,message",
        [
            ("", "No analysis returned"),
            (None, "No analysis returned"),
            ("not json", "Failed to parse"),
            ("[1, 2]", "not a JSON object"),
        ],
    )
    def test_errors(self, text, message):
        with pytest.raises(AnalysisParseError, match=message) as exc_info:
            parse_analysis_json(text)
        assert exc_info.value.raw == (text or "")


class TestNormalizers:
    """Arrays and objects normalize alike and output is a fixed point."""

    def test_skill_scores_array_or_object(self):
        as_object = {"Rapport": 80, "Objection Handling": "75"}
        as_array = [{"skill": "Rapport", "score": 80}, {"skill": "Objection Handling", "score": 75}]

        expected = {"rapport": 80, "objection_handling": 75}
        assert normalize_skill_scores(as_object) == expected
        assert normalize_skill_scores(as_array) == expected
        assert normalize_skill_scores(expected) == expected

    def test_skill_scores_with_keys(self):
        result = normalize_skill_scores({"Objection Handling": 75, "rapport": 80}, ["rapport", "closing"])
        assert list(result) == ["rapport", "closing", "objection_handling"]
        assert result["closing"] == 0

    def test_section_scores(self):
        raw = [
            {"section": "Rapport", "score": "80", "failures": ["No HWF"], "tip": "Ask about family"},
            {"name": "Closing", "score": 40, "coaching": ["Ask twice.", "Set a date."]},
        ]

        result = normalize_section_scores(raw, ["rapport", "coverage", "closing"])

        assert result["rapport"] == {"score": 80, "failures": ["No HWF"], "coaching": "Ask about family"}
        assert result["coverage"] == {"score": 0, "failures": [], "coaching": ""}
        assert result["closing"]["coaching"] == "Ask twice. Set a date."
        assert normalize_section_scores(result) == result

    def test_service_sections_array_or_object(self):
        as_array = [{"section_name": "Opening", "score": 8, "feedback": "Warm"}]
        as_object = {"Opening": {"score": 8, "feedback": "Warm"}}

        first = normalize_service_section_scores(as_array)
        assert first == normalize_service_section_scores(as_object)
        assert first == [
            {"section_name": "Opening", "score": 8, "max_score": 10, "feedback": "Warm", "tip": ""}
        ]
        assert normalize_service_section_scores(first) == first

    def test_service_sections_follow_config(self):
        raw = {"policy_review": 6, "Opening": 9, "Empathy": 7}

        result = normalize_service_section_scores(raw, DEFAULT_SERVICE_SECTIONS)

        names = [s["section_name"] for s in result]
        assert names == [s.name for s in DEFAULT_SERVICE_SECTIONS] + ["Empathy"]
        assert result[0]["score"] == 9
        assert result[1]["score"] == 0
        assert result[3]["score"] == 6
        assert normalize_service_section_scores(result, DEFAULT_SERVICE_SECTIONS) == result

    def test_execution_checklist(self):
        keys = [c.key for c in DEFAULT_SALES_CHECKLIST]

        from_list = normalize_execution_checklist(["hwf_framework", "Ask For Sale"], keys)
        from_object = normalize_execution_checklist(
            {"hwf_framework": "yes", "ask_for_sale": {"checked": True}, "set_follow_up": 0}, keys
        )

        assert from_list == from_object
        assert list(from_list) == keys
        assert [k for k, v in from_list.items() if v] == ["hwf_framework", "ask_for_sale"]
        assert normalize_execution_checklist(from_list, keys) == from_list

    def test_service_checklist(self):
        result = normalize_service_checklist(["Greeted the customer by name"], DEFAULT_SERVICE_CHECKLIST)

        assert len(result) == len(DEFAULT_SERVICE_CHECKLIST)
        assert result[0] == {"label": "Greeted the customer by name", "checked": True, "evidence": ""}
        assert not any(item["checked"] for item in result[1:])
        assert normalize_service_checklist(result, DEFAULT_SERVICE_CHECKLIST) == result

    def test_service_checklist_object(self):
        raw = {"verified_identity": {"checked": "yes", "evidence": "Asked for DOB"}}
        result = normalize_service_checklist(raw, DEFAULT_SERVICE_CHECKLIST)
        assert result[1] == {
            "label": "Verified the caller's identity",
            "checked": True,
            "evidence": "Asked for DOB",
        }

    def test_string_list(self):
        assert normalize_string_list(None) == []
        assert normalize_string_list("  one  ") == ["one"]
        assert normalize_string_list(["a", {"text": "b"}, None, " "]) == ["a", "b"]
        assert normalize_string_list({"next_step": "Call back", "empty": ""}) == ["Next Step: Call back"]

    def test_crm_notes_sales(self):
        notes = normalize_crm_notes(["Personal Rapport: Likes golf", {"name": "Quote Summary", "value": "$120/mo"}])

        assert notes["personal_rapport"] == "Likes golf"
        assert notes["quote_summary"] == "$120/mo"
        assert notes["decision_process"] == ""
        assert normalize_crm_notes(notes) == notes

    def test_crm_notes_service(self):
        assert normalize_crm_notes(["Updated address", "Sent ID cards"], "service") == (
            "Updated address\nSent ID cards"
        )
        assert normalize_crm_notes(None, "service") == ""

    def test_notable_quotes(self):
        raw = [
            {"quote": "I'll think about it", "speaker": "Caller", "timestamp": "1:05"},
            {"text": "Let's do it", "speaker": "narrator", "timestamp_seconds": 90.7},
            "Plain quote",
            {"speaker": "agent"},
        ]

        quotes = normalize_notable_quotes(raw)

        assert quotes == [
            {"text": "I'll think about it", "speaker": "customer", "timestamp_seconds": 65, "context": ""},
            {"text": "Let's do it", "speaker": "agent", "timestamp_seconds": 90, "context": ""},
            {"text": "Plain quote", "speaker": "agent", "timestamp_seconds": None, "context": ""},
        ]
        assert normalize_notable_quotes(quotes) == quotes

    @pytest.mark.parametrize(
        "raw,status",
        [
            ("resolved", "resolved"),
            ("Follow-up required", "follow_up_required"),
            ({"status": "partial", "rationale": "Half done"}, "partial"),
            ("weird", "unresolved"),
            (None, "unresolved"),
        ],
    )
    def test_service_outcome(self, raw, status):
        result = normalize_service_outcome(raw)
        assert result["status"] == status
        assert normalize_service_outcome(result) == result

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ({"status": "specific"}, ("specific", True, [])),
            ({}, ("missing", False, [])),
            ({"has_follow_up": True, "missing_fields": ["time"]}, ("partial", True, ["time"])),
            ({"has_follow_up": "yes"}, ("specific", True, [])),
        ],
    )
    def test_follow_up_validation(self, raw, expected):
        result = normalize_follow_up_validation(raw)
        assert (result["status"], result["has_follow_up"], result["missing_fields"]) == expected
        assert normalize_follow_up_validation(result) == result

    def test_overall_score(self):
        assert compute_overall_score({"rapport": 80, "coverage": 71}) == 76
        assert compute_overall_score({"rapport": 80}, ["rapport", "closing"]) == 40
        assert compute_overall_score([{"score": 8, "max_score": 10}, {"score": 50, "max_score": 100}]) == 7
        assert compute_overall_score({}) == 0
        assert compute_overall_score([]) == 0


ODD_NUMBERS = [float("inf"), float("-inf"), float("nan"), 10**400, "9" * 400]


class TestNonFiniteNumbers:
    """Overflowing and non-finite numbers fall back instead of raising."""

    @pytest.mark.parametrize("value", ODD_NUMBERS)
    def test_clamp_score(self, value):
        assert clamp_score(value, 100) == 0
        assert clamp_score(value, 10, default=5) == 5

    @pytest.mark.parametrize("value", ODD_NUMBERS)
    def test_quote_timestamp(self, value):
        quotes = normalize_notable_quotes([{"text": "hi", "timestamp": value}])
        assert quotes[0]["timestamp_seconds"] is None

    @pytest.mark.parametrize("value", ODD_NUMBERS)
    def test_build_call_update_sales(self, value):
        analysis = {
            "rapport_score": value,
            "coverage_score": 50,
            "closing_score": {"score": value},
            "notable_quotes": [{"text": "hi", "timestamp_seconds": value}],
        }

        update = build_call_update("sales", analysis, parse_scoring_config(None))

        assert update["section_scores"]["rapport"]["score"] == 0
        assert update["overall_score"] == 17

    @pytest.mark.parametrize("value", ODD_NUMBERS)
    def test_build_call_update_service(self, value):
        analysis = {
            "overall_score": value,
            "section_scores": [{"section_name": "Opening", "score": value, "max_score": value}],
            "notable_quotes": [{"text": "hi", "timestamp": value}],
        }

        update = build_call_update("service", analysis, parse_scoring_config(None, "service"))

        assert update["overall_score"] == 0
        assert update["section_scores"][0]["max_score"] == 10
        assert update["notable_quotes"][0]["timestamp_seconds"] is None

    def test_parsed_infinity(self):
        parsed = parse_analysis_json('{"overall_score": Infinity, "x": NaN}')
        assert parsed == {"overall_score": None, "x": None}
        assert clamp_score(parsed["overall_score"], 100) == 0


class TestAnalyzeCall:
    """End-to-end analysis with a mocked LLM client."""

    def test_sales_call(self, db, agency_id):
        call = create_call(agency_id, TRANSCRIPT)
        client = _client(SALES_ANSWER)

        result = analyze_call(call.id, client=client)

        assert result.success is True
        assert result.message == "Analysis complete"
        assert result.analysis == SALES_ANSWER

        stored = get_call(call.id)
        assert stored.status == "analyzed"
        assert stored.analyzed_at is not None
        assert stored.overall_score == 80
        assert stored.potential_rank == "VERY HIGH"
        assert stored.summary == "Auto quote call."
        assert stored.skill_scores == {
            "rapport": 80,
            "coverage": 70,
            "closing": 91,
            "objection_handling": 60,
            "discovery": 0,
        }
        assert stored.section_scores["rapport"]["failures"] == ["Skipped the family question"]
        assert stored.section_scores["closing"]["coaching"] == "Ask for the sale twice."
        assert stored.discovery_wins["hwf_framework"] is True
        assert stored.discovery_wins["explain_coverage"] is False
        assert stored.closing_attempts["personal_rapport"] == "Has two kids"
        assert stored.client_profile == {"client_first_name": "Sam"}
        assert stored.critical_gaps == ["Never asked for the sale twice."]
        assert stored.missed_signals == ["Strong rapport and a clear close."]

        assert client.chat.call_count == 1
        kwargs = client.chat.call_args.kwargs
        assert kwargs["temperature"] == 0.3
        assert kwargs["max_tokens"] == 4096
        assert kwargs["json_mode"] is True

    def test_agency_template_used(self, db, agency_id):
        create_template(
            "Agency sales",
            system_prompt="Custom system",
            skill_categories="Rapport, Discovery",
            agency_id=agency_id,
        )
        call = create_call(agency_id, TRANSCRIPT)
        client = _client({"rapport_score": 90, "discovery_score": 70})

        analyze_call(call.id, client=client)

        system, user = client.chat.call_args.args[0]
        assert system.content == "Custom system"
        assert "**2. DISCOVERY**" in user.content
        stored = get_call(call.id)
        assert list(stored.section_scores) == ["rapport", "discovery"]
        assert stored.overall_score == 80

    def test_global_template_fallback(self, db, agency_id):
        create_template("Global", skill_categories="Opening, Resolution", call_type="service", is_global=True)
        create_template("Other agency", skill_categories="Greeting", call_type="service", agency_id="other")
        call = create_call(agency_id, TRANSCRIPT, call_type="service")
        client = _client({"section_scores": {"Opening": 8, "Resolution": 6}})

        analyze_call(call.id, client=client)

        stored = get_call(call.id)
        assert [s["section_name"] for s in stored.section_scores] == ["Opening", "Resolution"]
        assert stored.overall_score == 7

    def test_service_call(self, db, agency_id):
        call = create_call(agency_id, TRANSCRIPT, call_type="service")
        answer = {
            "csr_name": "Amy",
            "overall_score": "8",
            "section_scores": [{"section_name": "Opening", "score": 9, "tip": "Use their name"}],
            "checklist": [{"label": "Verified the caller's identity", "checked": True}],
            "service_outcome": {"status": "resolved", "rationale": "Card sent"},
            "follow_up_validation": {"status": "missing"},
            "crm_notes": ["Updated address"],
            "suggestions": "Offer a policy review",
            "notable_quotes": [{"text": "Thanks so much", "speaker": "customer"}],
            "summary": "ID card request.",
        }

        analyze_call(call.id, client=_client(answer))

        stored = get_call(call.id)
        assert stored.overall_score == 8
        assert stored.potential_rank is None
        assert len(stored.section_scores) == len(DEFAULT_SERVICE_SECTIONS)
        assert stored.section_scores[0]["tip"] == "Use their name"
        assert stored.skill_scores["opening"] == 9
        assert stored.skill_scores["closing"] == 0
        assert stored.discovery_wins[1]["checked"] is True
        assert stored.critical_gaps["service_outcome"] == {"status": "resolved", "rationale": "Card sent"}
        assert stored.critical_gaps["follow_up_validation"]["has_follow_up"] is False
        assert stored.closing_attempts == "Updated address"
        assert stored.coaching_recommendations == ["Offer a policy review"]
        assert stored.notable_quotes[0]["speaker"] == "customer"
        assert stored.client_profile == {"csr_name": "Amy"}
        assert stored.missed_signals == []

    def test_service_overall_from_sections(self, db, agency_id):
        call = create_call(agency_id, TRANSCRIPT, call_type="service")
        analyze_call(call.id, client=_client({"section_scores": {"Opening": 9}}))
        assert get_call(call.id).overall_score == 2


class TestAnalyzeCallErrors:

    def test_missing_call_id(self, db):
        with pytest.raises(CallAnalysisError):
            analyze_call("")

    def test_unknown_call(self, db):
        with pytest.raises(CallNotFoundError):
            analyze_call("missing", client=_client({}))

    def test_missing_transcript(self, db, agency_id):
        call = create_call(agency_id, "   ")
        with pytest.raises(MissingTranscriptError):
            analyze_call(call.id, client=_client({}))

    def test_missing_api_key(self, db, agency_id, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        call = create_call(agency_id, TRANSCRIPT)
        with pytest.raises(AnalysisConfigError):
            analyze_call(call.id)

    def test_llm_failure_writes_nothing(self, db, agency_id):
        call = create_call(agency_id, TRANSCRIPT)
        client = _client({})
        client.chat.side_effect = LLMError("rate limited")

        with pytest.raises(AnalysisProviderError, match="rate limited"):
            analyze_call(call.id, client=client)
        assert get_call(call.id).status == "transcribed"

    def test_invalid_json_writes_nothing(self, db, agency_id):
        call = create_call(agency_id, TRANSCRIPT)

        client = _client("Sorry, I can't do that", "Still no JSON")

        with pytest.raises(AnalysisParseError, match="Failed to parse AI analysis") as exc_info:
            analyze_call(call.id, client=client)

        assert exc_info.value.raw == "Sorry, I can't do that"
        assert client.chat.call_count == 2
        stored = get_call(call.id)
        assert stored.status == "transcribed"
        assert stored.overall_score is None

    def test_repair_round_recovers(self, db, agency_id):
        call = create_call(agency_id, TRANSCRIPT)
        client = _client("Here you go: rapport 80", {"rapport_score": 80, "coverage_score": 80, "closing_score": 80})

        analyze_call(call.id, client=client)

        assert client.chat.call_count == 2
        repair_messages = client.chat.call_args.args[0]
        assert repair_messages[-2].content == "Here you go: rapport 80"
        assert "not valid JSON" in repair_messages[-1].content
        assert get_call(call.id).overall_score == 80

    def test_non_finite_scores_are_stored_as_zero(self, db, agency_id):
        call = create_call(agency_id, TRANSCRIPT)
        answer = (
            '{"rapport_score": Infinity, "coverage_score": NaN, "closing_score": 1e999,'
            ' "extracted_data": {"premium": -Infinity}, "summary": "Odd numbers."}'
        )

        result = analyze_call(call.id, client=_client(answer))

        stored = get_call(call.id)
        assert stored.overall_score == 0
        assert stored.skill_scores["rapport"] == 0
        assert stored.client_profile == {"premium": None}
        assert result.analysis["rapport_score"] is None


class TestCallRepository:

    def test_create_returns_stored_records(self, db, agency_id):
        template = create_template("Sales", skill_categories="Rapport", agency_id=agency_id)
        call = create_call(agency_id, TRANSCRIPT, template_id=template.id)

        assert template.name == "Sales"
        assert call.template_id == template.id
        assert call.status == "transcribed"

    def test_save_analysis_round_trips_json_columns(self, db, agency_id):
        call = create_call(agency_id, TRANSCRIPT)

        saved = save_call_analysis(
            call.id, {"status": "analyzed", "skill_scores": {"rapport": 80}, "ignored": 1}
        )

        assert saved.status == "analyzed"
        assert saved.skill_scores == {"rapport": 80}

    def test_save_analysis_unknown_call(self, db):
        with pytest.raises(LookupError, match="Call not found"):
            save_call_analysis("missing", {"status": "analyzed"})

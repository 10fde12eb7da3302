import pytest

from errors import MalformedOutputError, ValidationFailed
from models import CaseAnalysis, Priority, TreatmentIndication
from structured_output import (
    extract_json_object,
    extract_payload,
    normalize_enums,
    parse_case_analysis,
    parse_protocol,
)

from fakes import text_result, tool_result


def test_extract_json_prefers_fenced_block():
    text = 'Here you go:\n```json\n{"detected": true, "findings": []}\n```\nand {"other": 1}'
    assert extract_json_object(text) == {"detected": True, "findings": []}


def test_extract_json_scans_balanced_braces_in_prose():
    text = 'Result {not json} then {"confidence": 80, "notes": "brace } inside string"} trailing'
    assert extract_json_object(text) == {"confidence": 80, "notes": "brace } inside string"}


def test_extract_json_returns_none_for_plain_text():
    assert extract_json_object("no structured content here") is None
    assert extract_json_object("") is None


def test_extract_payload_without_call_or_json_is_malformed():
    with pytest.raises(MalformedOutputError):
        extract_payload(text_result("gemini", "m", "sorry, I cannot help"))


def test_parse_case_analysis_folds_portuguese_enums_and_defaults():
    result = tool_result(
        "gemini",
        "m",
        {
            "detected": True,
            "confidence": 150,
            "treatment_indication": "resina composta",
            "smile_line": "Média",
            "vita_shade": " a2 ",
            "findings": [
                {
                    "tooth": "11",
                    "region": "anteriores",
                    "defect_class": "Classe IV",
                    "priority": "alta",
                    "substrate": "esmalte",
                    "bounds": {"x": -5, "y": 20, "width": 140, "height": 10},
                },
                {"tooth": None, "priority": None, "treatment_indication": "gengivoplastia"},
            ],
            "model_notes": "kept as extra",
        },
    )
    analysis = parse_case_analysis(result)

    assert analysis.confidence == 100.0
    assert analysis.smile_line == "medium"
    assert analysis.vita_shade == "A2"
    first, second = analysis.findings
    assert first.defect_class == "Class IV"
    assert first.region == "anterior"
    assert first.substrate == "enamel"
    assert first.priority == Priority.HIGH
    assert first.treatment_indication == TreatmentIndication.RESIN
    assert (first.bounds.x, first.bounds.width) == (0.0, 100.0)
    assert second.tooth == "unknown"
    assert second.priority == Priority.MEDIUM
    assert second.treatment_indication == TreatmentIndication.GINGIVOPLASTY
    assert analysis.model_extra["model_notes"] == "kept as extra"


def test_unknown_vita_shade_becomes_null():
    analysis = CaseAnalysis.model_validate({"vita_shade": "Z9", "findings": []})
    assert analysis.vita_shade is None


def test_normalize_enums_reports_unmapped_values_without_dropping_them():
    analysis = CaseAnalysis.model_validate(
        {"findings": [{"tooth": "36", "substrate": "glass ionomer", "depth": "profunda"}]}
    )
    normalized, report = normalize_enums(analysis)

    assert normalized.findings[0].substrate == "glass ionomer"
    assert normalized.findings[0].depth == "deep"
    assert ("findings.0.substrate", "glass ionomer") in report.unmapped
    assert ("findings.0.depth", "profunda", "deep") in report.mapped


def test_schema_violation_raises_validation_failed_with_field_diagnostics():
    result = tool_result("anthropic", "m", {"findings": "tooth 11 looks chipped"})
    with pytest.raises(ValidationFailed) as exc_info:
        parse_case_analysis(result)
    paths = [issue.path for issue in exc_info.value.diagnostics]
    assert paths and paths[0].startswith("findings")
    assert isinstance(exc_info.value, MalformedOutputError)


def test_parse_protocol_unwraps_nested_protocol_key():
    result = text_result(
        "anthropic",
        "m",
        '{"protocol": {"layers": [{"order": 1, "name": "Dentina", '
        '"resin_brand": "3M ESPE - Filtek Z350 XT", "shade": "DA2"}], "checklist": "Etch 30s"}}',
    )
    protocol = parse_protocol(result)
    assert protocol.layers[0].product_line == "Filtek Z350 XT"
    assert protocol.checklist == ["Etch 30s"]


def test_parse_protocol_without_layers_is_rejected():
    with pytest.raises(ValidationFailed) as exc_info:
        parse_protocol(tool_result("anthropic", "m", {"layers": [], "checklist": []}))
    assert exc_info.value.diagnostics[0].path == "layers"

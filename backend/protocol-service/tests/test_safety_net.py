from models import CaseAnalysis
from safety_net import (
    SafetyNetConfig,
    SafetyNetEngine,
    condition_restorative_class,
    dedupe_findings,
    enforce_cross_field_consistency,
    filter_minority_arch,
    gate_gingival_procedures,
    gate_low_reliability_findings,
)

CONFIG = SafetyNetConfig()


def _analysis(findings, **kwargs):
    payload = {"detected": True, "confidence": kwargs.pop("confidence", 90), "findings": findings}
    payload.update(kwargs)
    return CaseAnalysis.model_validate(payload)


def _diastema(tooth):
    return {"tooth": tooth, "defect_class": "Diastema Closure", "notes": "diastema between units"}


def test_dedupe_keeps_first_finding_per_tooth():
    analysis = _analysis(
        [
            {"tooth": "11", "priority": "high", "notes": "first"},
            {"tooth": "11", "priority": "low", "notes": "duplicate"},
            {"tooth": "21"},
        ]
    )
    result = dedupe_findings(analysis, CONFIG)
    assert result.teeth() == ["11", "21"]
    assert result.findings[0].notes == "first"
    assert len(analysis.findings) == 3


def test_engine_output_never_has_duplicate_teeth():
    analysis = _analysis([{"tooth": "12"}, {"tooth": "12"}, {"tooth": "12"}, {"tooth": "22"}])
    result = SafetyNetEngine(CONFIG).apply(analysis)
    assert len(result.teeth()) == len(set(result.teeth()))


def test_primary_reanchors_to_highest_priority_remaining_finding():
    analysis = _analysis(
        [{"tooth": "12", "priority": "low"}, {"tooth": "21", "priority": "high"}],
        primary="46",
    )
    result = SafetyNetEngine(CONFIG).apply(analysis)
    assert result.teeth() == ["21", "12"]
    assert result.primary == "21"


def test_primary_is_null_when_no_findings_remain():
    analysis = _analysis([_diastema("12")], confidence=50, primary="12")
    result = SafetyNetEngine(CONFIG).apply(analysis)
    assert result.findings == []
    assert result.primary is None


def test_single_low_confidence_spacing_finding_is_removed():
    analysis = _analysis([_diastema("12")], confidence=50)
    result = gate_low_reliability_findings(analysis, CONFIG)
    assert result.findings == []
    assert any("Diastema" in w for w in result.warnings)


def test_paired_spacing_findings_survive_above_threshold():
    analysis = _analysis([_diastema("11"), _diastema("21")], confidence=75)
    result = gate_low_reliability_findings(analysis, CONFIG)
    assert result.teeth() == ["11", "21"]
    assert result.warnings == []


def test_adjacent_pair_survives_below_threshold():
    analysis = _analysis([_diastema("12"), _diastema("13")], confidence=40)
    result = gate_low_reliability_findings(analysis, CONFIG)
    assert result.teeth() == ["12", "13"]


def test_three_spacing_findings_survive_at_low_confidence():
    analysis = _analysis([_diastema("13"), _diastema("12"), _diastema("22")], confidence=20)
    result = SafetyNetEngine(CONFIG).apply(analysis)
    assert sorted(result.teeth()) == ["12", "13", "22"]


def test_unilateral_central_spacing_removed_even_at_high_confidence():
    analysis = _analysis([_diastema("11"), {"tooth": "12", "defect_class": "Class III"}], confidence=95)
    result = gate_low_reliability_findings(analysis, CONFIG)
    assert result.teeth() == ["12"]
    assert "11" in result.warnings[0]


def test_non_gated_findings_are_untouched_by_reliability_gate():
    analysis = _analysis([{"tooth": "36", "defect_class": "Class I"}], confidence=10)
    assert gate_low_reliability_findings(analysis, CONFIG).teeth() == ["36"]


def test_minority_arch_filter_is_idempotent():
    analysis = _analysis([{"tooth": "11"}, {"tooth": "12"}, {"tooth": "21"}, {"tooth": "31"}])
    once = filter_minority_arch(analysis, CONFIG)
    twice = filter_minority_arch(once, CONFIG)

    assert once.teeth() == ["11", "12", "21"]
    assert twice.teeth() == once.teeth()
    assert twice.warnings == once.warnings
    assert "Lower-arch" in once.warnings[0]


def test_minority_arch_filter_leaves_balanced_arches():
    analysis = _analysis([{"tooth": "11"}, {"tooth": "41"}])
    assert filter_minority_arch(analysis, CONFIG).teeth() == ["11", "41"]


def test_upper_minority_is_removed_symmetrically():
    analysis = _analysis([{"tooth": "31"}, {"tooth": "32"}, {"tooth": "21"}])
    result = filter_minority_arch(analysis, CONFIG)
    assert result.teeth() == ["31", "32"]


def test_gummy_smile_observation_escalates_smile_line():
    analysis = _analysis([], smile_line="low", observations=["Patient presents a gummy smile"])
    result = enforce_cross_field_consistency(analysis, CONFIG)
    assert result.smile_line == "high"
    assert any(o.startswith("[auto]") for o in result.observations)


def test_pulp_mention_escalates_finding_depth():
    analysis = _analysis([{"tooth": "46", "depth": "shallow", "notes": "lesion close to the pulp"}])
    result = enforce_cross_field_consistency(analysis, CONFIG)
    assert result.findings[0].depth == "deep"


def test_consistency_never_downgrades():
    analysis = _analysis([], smile_line="high", observations=["visible gingiva on smiling"])
    assert enforce_cross_field_consistency(analysis, CONFIG).smile_line == "high"


def test_gingivoplasty_removed_on_low_smile_line():
    analysis = _analysis(
        [{"tooth": "11", "treatment_indication": "gengivoplastia"}, {"tooth": "21"}],
        smile_line="low",
    )
    result = gate_gingival_procedures(analysis, CONFIG)
    assert result.teeth() == ["21"]
    assert "Gingivoplasty" in result.warnings[0]


def test_gingivoplasty_kept_on_medium_smile_line_with_visible_gingiva():
    analysis = _analysis(
        [{"tooth": "11", "treatment_indication": "gingivoplasty"}],
        smile_line="medium",
        observations=["Gingiva visible with asymmetric zeniths"],
    )
    assert gate_gingival_procedures(analysis, CONFIG).teeth() == ["11"]


def test_escalated_smile_line_protects_gingivoplasty():
    analysis = _analysis(
        [{"tooth": "11", "treatment_indication": "gingivoplasty"}],
        smile_line="low",
        observations=["sorriso gengival evidente"],
    )
    result = SafetyNetEngine(CONFIG).apply(analysis)
    assert result.smile_line == "high"
    assert result.teeth() == ["11"]


def test_restorative_class_cleared_on_aesthetic_findings_only():
    analysis = _analysis(
        [
            {"tooth": "11", "defect_class": "Class IV", "treatment_indication": "porcelain"},
            {"tooth": "21", "defect_class": "Class IV", "notes": "fractured edge"},
            {"tooth": "12", "defect_class": "Class III", "notes": "faceta para harmonizar"},
        ]
    )
    result = condition_restorative_class(analysis, CONFIG)
    assert [f.defect_class for f in result.findings] == [None, "Class IV", None]


def test_multi_unit_summary_warning_is_prepended():
    analysis = _analysis([{"tooth": "11"}, {"tooth": "21"}], warnings=["Provider warning"])
    result = SafetyNetEngine(CONFIG).apply(analysis)
    assert result.warnings[0] == "2 units require attention. Select which one to treat first."
    assert result.warnings[1] == "Provider warning"


def test_single_unit_below_recapture_confidence_gets_advisory():
    analysis = _analysis([{"tooth": "11"}], confidence=70)
    result = SafetyNetEngine(CONFIG).apply(analysis)
    assert result.warnings[-1].startswith("Only 1 unit detected")


def test_thresholds_come_from_config():
    analysis = _analysis([_diastema("12")], confidence=50)
    lenient = SafetyNetConfig(gated_confidence_threshold=40)
    assert gate_low_reliability_findings(analysis, lenient).teeth() == ["12"]

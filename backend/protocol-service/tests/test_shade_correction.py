from catalog import CatalogIndex, InMemoryCatalogRepository
from models import CatalogEntry, Protocol, ProtocolContext, ProtocolLayer
from shade_correction import (
    CatalogCorrectionEngine,
    CorrectionReport,
    LayerKind,
    classify_layer,
    merge_alerts,
    minimum_layer_warning,
    rewrite_tokens,
)

Z350 = "3M ESPE - Filtek Z350 XT"
POSTERIOR = ProtocolContext(tooth="36", defect_class="Class I")
ANTERIOR = ProtocolContext(tooth="11", defect_class="Class IV")


def _protocol(layers, checklist=(), alerts=(), warnings=()):
    return Protocol(
        layers=[ProtocolLayer(order=i, **layer) for i, layer in enumerate(layers, start=1)],
        checklist=list(checklist),
        alerts=list(alerts),
        warnings=list(warnings),
    )


def test_classify_layer_orders_keywords():
    assert classify_layer("Efeitos Incisais") == LayerKind.EFFECTS
    assert classify_layer("Esmalte Vestibular Final") == LayerKind.FINAL
    assert classify_layer("Cristas Proximais") == LayerKind.PROXIMAL_RIDGE
    assert classify_layer("Translucidez Incisal") == LayerKind.INCISAL
    assert classify_layer("Dentina") == LayerKind.BODY
    assert classify_layer("Mystery") == LayerKind.UNKNOWN


def test_enamel_only_shade_on_body_layer_is_replaced_and_text_rewritten(seed_index):
    protocol = _protocol(
        [{"name": "Dentina", "resin_brand": Z350, "shade": "BL1"}],
        checklist=["Apply BL1 in 1mm dentin increments", "Avoid mixing BL1 with A2"],
    )
    corrected, report = CatalogCorrectionEngine().correct(protocol, seed_index, POSTERIOR)

    assert corrected.layers[0].shade == "WB"
    assert report.substitutions == {"BL1": "WB"}
    assert corrected.checklist == ["Apply WB in 1mm dentin increments", "Avoid mixing WB with A2"]
    assert not any("BL1" in line for line in corrected.checklist)
    assert any("enamel" in alert and "body" in alert for alert in corrected.alerts)
    assert protocol.layers[0].shade == "BL1"


def test_empty_catalog_falls_back_to_safe_default():
    index = CatalogIndex.load(InMemoryCatalogRepository([]), [Z350])
    protocol = _protocol(
        [
            {"name": "Dentina", "resin_brand": Z350, "shade": "BL1"},
            {"name": "Esmalte", "resin_brand": Z350, "shade": "WE"},
        ]
    )
    corrected, _ = CatalogCorrectionEngine().correct(protocol, index, POSTERIOR)

    assert corrected.layers[0].shade == "WB"
    assert any("safe default" in alert for alert in corrected.alerts)


def test_known_alias_is_fixed_before_lookup(seed_index):
    protocol = _protocol(
        [
            {"name": "Dentina", "resin_brand": Z350, "shade": "DA2"},
            {"name": "Translucidez Incisal", "resin_brand": Z350, "shade": "WT"},
        ],
        checklist=["Use WT on the incisal third"],
    )
    corrected, report = CatalogCorrectionEngine().correct(protocol, seed_index, POSTERIOR)

    assert corrected.layers[1].shade == "CT"
    assert report.substitutions == {"WT": "CT"}
    assert corrected.checklist == ["Use CT on the incisal third"]


def test_valid_protocol_passes_through_unchanged(seed_index):
    protocol = _protocol(
        [
            {"name": "Dentina", "resin_brand": Z350, "shade": "DA2"},
            {"name": "Esmalte", "resin_brand": Z350, "shade": "A2E"},
        ],
        checklist=["DA2 then A2E"],
        alerts=["Isolate with rubber dam"],
    )
    corrected, report = CatalogCorrectionEngine().correct(protocol, seed_index, POSTERIOR)

    assert report.substitutions == {}
    assert report.alerts == []
    assert corrected.model_dump() == protocol.model_dump()


def test_overly_translucent_final_layer_is_replaced(seed_index):
    protocol = _protocol(
        [
            {"name": "Dentina", "resin_brand": Z350, "shade": "DA1"},
            {"name": "Esmalte Final", "resin_brand": Z350, "shade": "CT"},
        ]
    )
    corrected, _ = CatalogCorrectionEngine().correct(protocol, seed_index, POSTERIOR)
    assert corrected.layers[1].shade == "WE"


def test_token_still_used_by_another_layer_is_not_rewritten(seed_index):
    protocol = _protocol(
        [
            {"name": "Dentina", "resin_brand": Z350, "shade": "DA1"},
            {"name": "Translucidez Incisal", "resin_brand": Z350, "shade": "CT"},
            {"name": "Esmalte Final", "resin_brand": Z350, "shade": "CT"},
        ],
        checklist=["CT for the incisal halo"],
    )
    corrected, _ = CatalogCorrectionEngine().correct(protocol, seed_index, POSTERIOR)
    assert corrected.layers[1].shade == "CT"
    assert corrected.checklist == ["CT for the incisal halo"]


def test_proximal_ridge_moves_to_high_value_enamel_line(seed_index):
    protocol = _protocol(
        [
            {"name": "Cristas Proximais", "resin_brand": Z350, "shade": "A1E"},
            {"name": "Dentina", "resin_brand": Z350, "shade": "DA1"},
        ]
    )
    corrected, _ = CatalogCorrectionEngine().correct(protocol, seed_index, POSTERIOR)
    ridge = corrected.layers[0]
    assert (ridge.resin_brand, ridge.shade) == ("Kerr - Harmonize", "XLE")
    assert any(alert.startswith("Proximal ridge") for alert in corrected.alerts)


def test_anterior_aesthetic_protocol_gets_optional_incisal_effects_layer(seed_index):
    protocol = _protocol(
        [
            {"name": "Dentina", "resin_brand": Z350, "shade": "DA1"},
            {"name": "Translucidez Incisal", "resin_brand": Z350, "shade": "CT"},
            {"name": "Esmalte Vestibular Final", "resin_brand": Z350, "shade": "WE"},
        ]
    )
    corrected, report = CatalogCorrectionEngine().correct(protocol, seed_index, ANTERIOR)

    assert report.injected_effects_layer
    assert [layer.name for layer in corrected.layers] == [
        "Dentina",
        "Translucidez Incisal",
        "Incisal Effects",
        "Esmalte Vestibular Final",
    ]
    assert [layer.order for layer in corrected.layers] == [1, 2, 3, 4]
    assert corrected.layers[2].optional is True


def test_no_effects_injection_when_present_or_posterior(seed_index):
    layers = [
        {"name": "Dentina", "resin_brand": Z350, "shade": "DA1"},
        {"name": "Efeitos Incisais", "resin_brand": "Ivoclar - IPS Empress Direct Color", "shade": "White"},
        {"name": "Esmalte Final", "resin_brand": Z350, "shade": "WE"},
    ]
    engine = CatalogCorrectionEngine()
    with_effects, _ = engine.correct(_protocol(layers), seed_index, ANTERIOR)
    assert len(with_effects.layers) == 3

    plain = [layers[0], {"name": "Translucidez", "resin_brand": Z350, "shade": "CT"}, layers[2]]
    posterior, report = engine.correct(_protocol(plain), seed_index, POSTERIOR)
    assert len(posterior.layers) == 3
    assert not report.injected_effects_layer


def test_whitening_request_without_bleach_shades_adds_one_alert(seed_index):
    protocol = _protocol(
        [
            {"name": "Dentina", "resin_brand": Z350, "shade": "DA1"},
            {"name": "Esmalte", "resin_brand": Z350, "shade": "WE"},
        ]
    )
    context = ProtocolContext(tooth="36", defect_class="Class I", aesthetic_goals="Hollywood white smile")
    corrected, _ = CatalogCorrectionEngine().correct(protocol, seed_index, context)
    bleach_alerts = [a for a in corrected.alerts if "BL (bleach)" in a]
    assert len(bleach_alerts) == 1


def test_merge_alerts_suppresses_topics_the_provider_already_covered():
    existing = ["Consider bleach shades for this patient"]
    merged = merge_alerts(existing, ["The Filtek line has no BL (bleach) shades.", "Check occlusion"])
    assert merged == ["Consider bleach shades for this patient", "Check occlusion"]


def test_rewrite_tokens_matches_whole_tokens_only():
    texts = ["A1 over DA1, then A1E and A1.5; finish A1."]
    assert rewrite_tokens(texts, {"A1": "B1"}) == ["B1 over DA1, then A1E and A1.5; finish B1."]


def test_minimum_layer_warning_depends_on_anterior_aesthetic_context():
    one_layer = [ProtocolLayer(order=1, name="Dentina", resin_brand=Z350, shade="A2")]
    anterior = ProtocolContext(tooth="11", defect_class="Classe IV")

    assert "only 1 layer" in minimum_layer_warning(one_layer, anterior)
    assert "at least 2" in minimum_layer_warning(one_layer, POSTERIOR)
    assert minimum_layer_warning(one_layer * 2, POSTERIOR) is None
    assert minimum_layer_warning(None, anterior) is None


def test_minimum_layer_violation_is_a_warning_not_a_failure(seed_index):
    protocol = _protocol([{"name": "Dentina", "resin_brand": Z350, "shade": "A2"}])
    corrected, _ = CatalogCorrectionEngine(default_minimum_layers=2).correct(protocol, seed_index, POSTERIOR)
    assert len(corrected.layers) == 1
    assert any("at least 2" in w for w in corrected.warnings)


def test_chained_tokens_across_layers_follow_their_own_layer():
    rows = [
        CatalogEntry(product_line=Z350, shade="A3", layer_type="body"),
        CatalogEntry(product_line=Z350, shade="CT", layer_type="translucent"),
        CatalogEntry(product_line=Z350, shade="WE", layer_type="enamel"),
    ]
    index = CatalogIndex.load(InMemoryCatalogRepository(rows), [Z350])
    protocol = _protocol(
        [
            {"name": "Dentina", "resin_brand": Z350, "shade": "A2"},
            {"name": "Incisal", "resin_brand": Z350, "shade": "A3"},
        ],
        checklist=["Apply A2 on the dentin", "Apply A3 at the incisal"],
    )
    corrected, report = CatalogCorrectionEngine().correct(protocol, index, POSTERIOR)

    assert [layer.shade for layer in corrected.layers] == ["A3", "CT"]
    assert [(c.position, c.original, c.final) for c in report.changes] == [(0, "A2", "A3"), (1, "A3", "CT")]
    assert corrected.checklist == ["Apply A3 on the dentin", "Apply CT at the incisal"]


def test_same_layer_substituted_twice_collapses_to_one_change():
    report = CorrectionReport()
    report.record(0, "BL1", "A1")
    report.record(0, "A1", "WB")
    report.record(1, "A1", "A2")

    assert report.substitutions == {"BL1": "WB", "A1": "A2"}
    assert report.rewrite_map(["BL1", "A1"]) == {"BL1": "WB", "A1": "A2"}


def test_token_split_across_different_finals_is_left_in_text():
    report = CorrectionReport()
    report.record(0, "A2", "A3")
    report.record(1, "A2", "WE")

    assert report.rewrite_map(["A2", "A2"]) == {}


def test_universal_shade_on_enamel_layer_is_upgraded(seed_index):
    protocol = _protocol(
        [
            {"name": "Dentina", "resin_brand": Z350, "shade": "DA2"},
            {"name": "Esmalte", "resin_brand": Z350, "shade": "A2"},
        ],
        checklist=["Cover with A2 enamel"],
    )
    corrected, report = CatalogCorrectionEngine().correct(protocol, seed_index, POSTERIOR)

    assert corrected.layers[1].shade == "WE"
    assert report.substitutions == {"A2": "WE"}
    assert corrected.checklist == ["Cover with WE enamel"]
    assert any(alert.startswith("Enamel layer optimized: A2 -> WE") for alert in corrected.alerts)


def test_dedicated_enamel_shade_is_not_upgraded(seed_index):
    protocol = _protocol(
        [
            {"name": "Dentina", "resin_brand": Z350, "shade": "DA1"},
            {"name": "Esmalte", "resin_brand": Z350, "shade": "A1E"},
        ]
    )
    corrected, report = CatalogCorrectionEngine().correct(protocol, seed_index, POSTERIOR)
    assert corrected.layers[1].shade == "A1E"
    assert report.changes == []


def test_z350_bleach_shade_prefers_a1e_on_enamel_and_a1_elsewhere(seed_index):
    protocol = _protocol(
        [
            {"name": "Dentina", "resin_brand": Z350, "shade": "DA1"},
            {"name": "Camada Unica", "resin_brand": Z350, "shade": "BL2"},
            {"name": "Esmalte", "resin_brand": Z350, "shade": "BL1"},
        ]
    )
    corrected, _ = CatalogCorrectionEngine().correct(protocol, seed_index, POSTERIOR)

    assert [layer.shade for layer in corrected.layers] == ["DA1", "A1", "A1E"]


def test_rewrite_tokens_ignores_case():
    assert rewrite_tokens(["apply a2, then A2"], {"A2": "WE"}) == ["apply WE, then WE"]


def test_ridge_alert_survives_provider_whitening_alert():
    ridge = "Proximal ridge: Filtek Z350 XT (A1E) is not ideal. Recommended: XLE (Harmonize) or BL-L (Empress Direct)."
    merged = merge_alerts(["Use BL1 on the buccal surface for whitening"], [ridge])
    assert merged[-1] == ridge

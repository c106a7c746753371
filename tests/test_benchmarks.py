from diligence import benchmarks


def test_resolve_domain_uses_aliases() -> None:
    assert benchmarks.resolve_domain("hydrogen") == "hydrogen"
    assert benchmarks.resolve_domain("MSW") == "waste-to-fuel"
    assert benchmarks.resolve_domain("zzz") == "general"


def test_lookup_maps_metric_ids_to_fields() -> None:
    hydrogen = benchmarks.get_benchmarks_for_domain("hydrogen")
    assert benchmarks.lookup("hydrogen", "capex") is hydrogen.capex
    assert benchmarks.lookup("hydrogen", "lcoh") is hydrogen.primary_cost
    assert benchmarks.lookup("hydrogen", "specificConsumption") is hydrogen.secondary["specificConsumption"]
    assert benchmarks.lookup("hydrogen", "widgets") is None


def test_trl_benchmark_matches_technology_type() -> None:
    assert benchmarks.get_trl_benchmark("hydrogen", "PEM electrolyzer").typical == 8
    assert benchmarks.get_trl_benchmark("hydrogen", "unknown stack").description.startswith("Default")


def test_validate_against_benchmark_tolerance() -> None:
    capex = benchmarks.get_benchmarks_for_domain("hydrogen").capex
    assert benchmarks.validate_against_benchmark(1500, capex).valid is True
    outside = benchmarks.validate_against_benchmark(5000, capex)
    assert outside.valid is False
    assert outside.corrected_value == capex.median
    assert outside.deviation > 0


def test_prompt_block_lists_every_primary_range() -> None:
    text = benchmarks.format_benchmarks_for_prompt("hydrogen")
    assert text.startswith("INDUSTRY BENCHMARKS")
    for label in ("CAPEX:", "OPEX:", "PRIMARY COST METRIC:", "EFFICIENCY:", "LIFETIME:", "ADDITIONAL BENCHMARKS:"):
        assert label in text

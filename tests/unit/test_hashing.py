from __future__ import annotations

from packages.shared.models import RiskFactor
from packages.shared.models.enums import RiskLevel
from packages.shared.utils.hashing import canonical_json, compute_inputs_hash, stable_id


def test_canonical_json_ignores_key_order():
    assert canonical_json({"b": 1, "a": [1, 2]}) == canonical_json({"a": [1, 2], "b": 1})
    assert canonical_json({"a": 1}) == '{"a":1}'


def test_inputs_hash_is_order_sensitive_across_parts():
    assert compute_inputs_hash("risk", "v1") != compute_inputs_hash("v1", "risk")
    assert compute_inputs_hash("risk", {"x": 1, "y": 2}) == compute_inputs_hash("risk", {"y": 2, "x": 1})


def test_inputs_hash_accepts_pydantic_models():
    factor = RiskFactor(key="stress", label="Stress", score=75, weight=0.5, risk_level=RiskLevel.CRITICAL)
    assert compute_inputs_hash(factor) == compute_inputs_hash(factor.model_dump(mode="json"))
    assert len(compute_inputs_hash(factor)) == 64


def test_stable_id_is_deterministic_and_prefixed():
    a = stable_id("vf", "rule@v1", "overview")
    assert a == stable_id("vf", "rule@v1", "overview")
    assert a.startswith("vf_")
    assert a != stable_id("vf", "rule@v1", "recommendations")

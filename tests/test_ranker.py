# tests/test_ranker.py
import pytest

from toolbox_recs.ranker import (
    BIAS_CLAMP, LINEAR_FEATURES, TrainingExample, adaptive_learning_rate, apply_feedback,
    composite_score, default_weights, evaluate, explain, load_evaluation_set, volatility,
)
from toolbox_recs.config import EVALUATION_SET_PATH


def ex(item="x-ai", category="ai-tools", target=0.8, weight=50.0, freshness=0.0, popularity=0.0):
    return TrainingExample(item, category, freshness, popularity, target, weight)


def test_composite_score_adds_biases():
    w = default_weights()
    w["category_bias"]["ai-tools"] = 0.1
    w["item_bias"]["x-ai"] = 0.05
    f = {"similarity": 1.0, "freshness": 0.0, "popularity": 0.0, "preference": 0.0}
    assert composite_score(f, w) == pytest.approx(0.45)
    assert composite_score(f, w, "ai-tools", "x-ai") == pytest.approx(0.6)


def test_positive_feedback_raises_biases_and_keeps_input_untouched():
    w = default_weights()
    new = apply_feedback(w, [ex()], lr=0.5)
    assert new["category_bias"]["ai-tools"] == pytest.approx(0.15)
    assert new["item_bias"]["x-ai"] == pytest.approx(0.15)
    assert w["category_bias"] == {}


def test_biases_are_clamped():
    w = default_weights()
    for _ in range(10):
        w = apply_feedback(w, [ex(target=1.0)], lr=0.5)
    assert w["item_bias"]["x-ai"] == BIAS_CLAMP
    w = apply_feedback(w, [ex(target=0.0)] * 1, lr=10.0)
    assert w["item_bias"]["x-ai"] == -BIAS_CLAMP


def test_linear_weights_stay_a_convex_combination():
    examples = [
        ex("a", "design", 0.9, 30, freshness=0.9, popularity=0.1),
        ex("b", "design", 0.2, 30, freshness=0.1, popularity=0.9),
    ]
    new = apply_feedback(default_weights(), examples, lr=0.5)
    assert sum(new[f] for f in LINEAR_FEATURES) == pytest.approx(1.0)
    assert all(new[f] >= 0 for f in LINEAR_FEATURES)
    # fresh items were liked, popular ones were not
    assert new["freshness"] / new["popularity"] > 0.15 / 0.20


def test_adaptive_learning_rate():
    assert adaptive_learning_rate(50, 0.0, base=0.5, reference=50) == pytest.approx(0.5)
    assert adaptive_learning_rate(25, 0.0, base=0.5, reference=50) == pytest.approx(0.25)
    assert adaptive_learning_rate(500, 1.0, base=0.5, reference=50) == pytest.approx(0.25)


def test_volatility():
    assert volatility([ex(target=0.5)]) == 0.0
    assert volatility([ex(target=0.0), ex(target=1.0)]) == pytest.approx(0.5)


def test_packaged_evaluation_set_passes_with_default_weights():
    examples = load_evaluation_set(EVALUATION_SET_PATH)
    metrics = evaluate(default_weights(), examples)
    assert metrics["examples"] == len(examples)
    assert metrics["accuracy"] >= 0.8


def test_explain_names_the_strongest_signals():
    f = {"similarity": 0.9, "freshness": 0.0, "popularity": 0.1, "preference": 1.0}
    reason = explain(f, default_weights(), "design")
    assert reason.startswith("similar to what you use")
    assert "design" in reason

# toolbox_recs/ranker.py
"""
The learned scoring function and its online update.

score = w_sim*similarity + w_fresh*freshness + w_pop*popularity + w_pref*preference
        + category_bias[category] + item_bias[item]

Linear weights are non-negative and sum to 1; biases live in [-0.5, 0.5].
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence
import copy
import json
import math
import statistics

from .config import BASE_LEARNING_RATE, DECISION_THRESHOLD, LR_REFERENCE_BATCH, NEUTRAL_STRENGTH

LINEAR_FEATURES = ("similarity", "freshness", "popularity", "preference")
LEARNED_FEATURES = ("freshness", "popularity")  # the only ones aggregate signal can speak to
BIAS_CLAMP = 0.5

DEFAULT_WEIGHTS: Dict = {
    "similarity": 0.45,
    "freshness": 0.15,
    "popularity": 0.20,
    "preference": 0.20,
    "category_bias": {},
    "item_bias": {},
}


@dataclass(frozen=True)
class TrainingExample:
    item_id: str
    category: str
    freshness: float
    popularity: float
    target: float  # privatized average strength
    weight: float  # privatized count


def default_weights() -> Dict:
    return copy.deepcopy(DEFAULT_WEIGHTS)


def composite_score(features: Dict[str, float], weights: Dict, category: Optional[str] = None, item_id: Optional[str] = None) -> float:
    base = sum(weights.get(f, 0.0) * features.get(f, 0.0) for f in LINEAR_FEATURES)
    bias = 0.0
    if category is not None:
        bias += weights.get("category_bias", {}).get(category, 0.0)
    if item_id is not None:
        bias += weights.get("item_bias", {}).get(item_id, 0.0)
    return base + bias


def explain(features: Dict[str, float], weights: Dict, category: Optional[str] = None) -> str:
    parts = sorted(
        ((weights.get(f, 0.0) * features.get(f, 0.0), f) for f in LINEAR_FEATURES),
        key=lambda x: (-x[0], x[1]),
    )
    labels = {
        "similarity": "similar to what you use",
        "freshness": "recently added",
        "popularity": "popular",
        "preference": f"matches your interest in {category}" if category else "matches your interests",
    }
    top = [labels[f] for contrib, f in parts[:2] if contrib > 0]
    if category and weights.get("category_bias", {}).get(category, 0.0) > 0.05:
        top.append(f"trending in {category}")
    return "; ".join(top) or "general pick"


def adaptive_learning_rate(batch_size: float, volatility: float, base: float = BASE_LEARNING_RATE, reference: int = LR_REFERENCE_BATCH) -> float:
    """Small batches and noisy batches both move the model less."""
    scale = min(1.0, max(0.0, batch_size) / float(reference)) if reference > 0 else 1.0
    return base * scale / (1.0 + max(0.0, volatility))


def volatility(examples: Sequence[TrainingExample]) -> float:
    if len(examples) < 2:
        return 0.0
    return statistics.pstdev([e.target for e in examples])


def _clamp(v: float, lo: float = -BIAS_CLAMP, hi: float = BIAS_CLAMP) -> float:
    return max(lo, min(hi, v))


def apply_feedback(weights: Dict, examples: Sequence[TrainingExample], lr: float, neutral: float = NEUTRAL_STRENGTH) -> Dict:
    """
    One incremental update. Returns new weights; the input is not modified.
    """
    new = copy.deepcopy(weights)
    new.setdefault("category_bias", {})
    new.setdefault("item_bias", {})
    if not examples:
        return new

    total = sum(e.weight for e in examples) or 1.0

    # item biases: one residual per target
    for e in examples:
        b = new["item_bias"].get(e.item_id, 0.0)
        new["item_bias"][e.item_id] = _clamp(b + lr * (e.target - neutral))

    # category biases: count-weighted mean residual per category
    per_cat: Dict[str, List[TrainingExample]] = {}
    for e in examples:
        per_cat.setdefault(e.category, []).append(e)
    for cat, exs in per_cat.items():
        w = sum(e.weight for e in exs) or 1.0
        resid = sum(e.weight * (e.target - neutral) for e in exs) / w
        new["category_bias"][cat] = _clamp(new["category_bias"].get(cat, 0.0) + lr * resid)

    # feature weights follow the strength/feature covariance
    mean_target = sum(e.weight * e.target for e in examples) / total
    for f in LEARNED_FEATURES:
        mean_x = sum(e.weight * getattr(e, f) for e in examples) / total
        cov = sum(e.weight * (getattr(e, f) - mean_x) * (e.target - mean_target) for e in examples) / total
        new[f] = max(0.0, new.get(f, 0.0) + lr * cov)

    # keep the linear part a convex combination
    s = sum(new.get(f, 0.0) for f in LINEAR_FEATURES)
    if s > 0:
        for f in LINEAR_FEATURES:
            new[f] = new.get(f, 0.0) / s
    return new


# ---- Validation ----

def load_evaluation_set(path: str) -> List[Dict]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    examples = data["examples"] if isinstance(data, dict) else data
    for ex in examples:
        if "features" not in ex or "label" not in ex:
            raise ValueError("evaluation examples need 'features' and 'label'")
    return examples


def evaluate(weights: Dict, examples: Iterable[Dict], threshold: float = DECISION_THRESHOLD) -> Dict[str, float]:
    tp = fp = tn = fn = 0
    for ex in examples:
        score = composite_score(ex["features"], weights, ex.get("category"), ex.get("item_id"))
        predicted = score >= threshold
        actual = bool(ex["label"])
        if predicted and actual:
            tp += 1
        elif predicted:
            fp += 1
        elif actual:
            fn += 1
        else:
            tn += 1
    n = tp + fp + tn + fn
    return {
        "accuracy": (tp + tn) / n if n else 0.0,
        "precision": tp / (tp + fp) if tp + fp else 0.0,
        "recall": tp / (tp + fn) if tp + fn else 0.0,
        "examples": float(n),
    }


def weight_delta(before: Dict, after: Dict) -> float:
    """L2 distance between the linear parts, for run logs."""
    return math.sqrt(sum((after.get(f, 0.0) - before.get(f, 0.0)) ** 2 for f in LINEAR_FEATURES))

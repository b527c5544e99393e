"""
Sentinel Gate Experiments

Lightweight A/B assignment and per-variant scoring overrides.

Keys:
    EXPERIMENT_MODE            off | ab
    EXPERIMENT_SALT            hash salt
    EXPERIMENT_SPLIT_A/B       percentage of traffic per variant
    BOT_THRESHOLD_{V}          per-variant base threshold
    BOT_THRESHOLD_STRICT_{V}   per-variant strict threshold
    WEIGHT_TABLE_{V}           per-variant weight overrides (JSON object)
"""

from dataclasses import dataclass
from typing import Dict, Optional

from core.config import ConfigProvider


DEFAULT_BOT_THRESHOLD = 0.45
DEFAULT_BOT_THRESHOLD_STRICT = 0.65

VARIANT_CONTROL = "control"


@dataclass
class ExperimentConfig:
    """Resolved thresholds and weight overrides for one request."""
    variant: str
    bot_threshold: float
    bot_threshold_strict: float
    weight_override: Optional[Dict[str, float]] = None


def fnv1a_32(text: str) -> int:
    """32-bit FNV-1a hash of a string."""
    h = 0x811C9DC5
    for ch in text:
        h ^= ord(ch)
        h = (h * 0x01000193) & 0xFFFFFFFF
    return h


def assign_variant(seed: str, config: ConfigProvider) -> str:
    """Deterministically bucket a seed into control, A or B."""
    mode = config.get_str("EXPERIMENT_MODE", "off")
    if mode != "ab":
        return VARIANT_CONTROL

    salt = config.get_str("EXPERIMENT_SALT", "salt")
    split_a = config.get_float("EXPERIMENT_SPLIT_A", 50.0)
    split_b = config.get_float("EXPERIMENT_SPLIT_B", 0.0)

    bucket = fnv1a_32(f"{seed}:{salt}") % 100
    if bucket < split_a:
        return "A"
    if bucket < split_a + split_b:
        return "B"
    return VARIANT_CONTROL


def get_experiment_config(seed: str, config: ConfigProvider) -> ExperimentConfig:
    """Resolve the variant for a seed and its threshold/weight overrides."""
    variant = assign_variant(seed, config)
    tag = variant.upper()

    threshold = config.get_float(f"BOT_THRESHOLD_{tag}")
    if threshold is None:
        threshold = config.get_float("BOT_THRESHOLD", DEFAULT_BOT_THRESHOLD)

    strict = config.get_float(f"BOT_THRESHOLD_STRICT_{tag}")
    if strict is None:
        strict = config.get_float("BOT_THRESHOLD_STRICT", DEFAULT_BOT_THRESHOLD_STRICT)

    override = config.get_json(f"WEIGHT_TABLE_{tag}")
    if not isinstance(override, dict):
        override = None

    return ExperimentConfig(
        variant=variant,
        bot_threshold=threshold,
        bot_threshold_strict=strict,
        weight_override=override,
    )

"""
Experiment Assignment Unit Tests
"""

from core.experiments import (
    DEFAULT_BOT_THRESHOLD,
    DEFAULT_BOT_THRESHOLD_STRICT,
    VARIANT_CONTROL,
    assign_variant,
    fnv1a_32,
    get_experiment_config,
)
from tests.conftest import make_config


class TestFnv1a:

    def test_reference_vectors(self):
        assert fnv1a_32("") == 0x811C9DC5
        assert fnv1a_32("a") == 0xE40C292C
        assert fnv1a_32("foobar") == 0xBF9CF968


class TestAssignment:

    def test_disabled_mode_is_control(self):
        assert assign_variant("seed", make_config()) == VARIANT_CONTROL

    def test_full_split_to_a(self):
        config = make_config(EXPERIMENT_MODE="ab", EXPERIMENT_SPLIT_A="100")
        assert assign_variant("seed-1", config) == "A"
        assert assign_variant("seed-2", config) == "A"

    def test_full_split_to_b(self):
        config = make_config(
            EXPERIMENT_MODE="ab", EXPERIMENT_SPLIT_A="0", EXPERIMENT_SPLIT_B="100"
        )
        assert assign_variant("seed-1", config) == "B"

    def test_assignment_is_deterministic(self):
        config = make_config(EXPERIMENT_MODE="ab", EXPERIMENT_SALT="s1")
        first = [assign_variant(f"fp-{i}", config) for i in range(50)]
        second = [assign_variant(f"fp-{i}", config) for i in range(50)]
        assert first == second
        assert set(first) <= {"A", VARIANT_CONTROL}


class TestExperimentConfig:

    def test_defaults(self):
        exp = get_experiment_config("seed", make_config())
        assert exp.variant == VARIANT_CONTROL
        assert exp.bot_threshold == DEFAULT_BOT_THRESHOLD
        assert exp.bot_threshold_strict == DEFAULT_BOT_THRESHOLD_STRICT
        assert exp.weight_override is None

    def test_global_thresholds(self):
        exp = get_experiment_config(
            "seed", make_config(BOT_THRESHOLD="0.3", BOT_THRESHOLD_STRICT="0.8")
        )
        assert exp.bot_threshold == 0.3
        assert exp.bot_threshold_strict == 0.8

    def test_variant_overrides(self):
        config = make_config(
            EXPERIMENT_MODE="ab",
            EXPERIMENT_SPLIT_A="100",
            BOT_THRESHOLD="0.3",
            BOT_THRESHOLD_A="0.35",
            WEIGHT_TABLE_A='{"hp:hit": 0.7}',
        )
        exp = get_experiment_config("seed", config)
        assert exp.variant == "A"
        assert exp.bot_threshold == 0.35
        assert exp.bot_threshold_strict == DEFAULT_BOT_THRESHOLD_STRICT
        assert exp.weight_override == {"hp:hit": 0.7}

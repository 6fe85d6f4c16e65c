"""
Unit tests for model construction.

Tests cover:
- Prior, model and observation-table validation
- Dimension checks against the id arrays
- Response threshold exclusion
- Graph contents and independent model contexts
- Recorded draws and derived quantities
"""

import pytest
import numpy as np
from numpy.testing import assert_allclose

from curves.dose_response import ResponseType, curve_mean
from inference.errors import ConfigurationError
from inference.graph import Structure
from inference.model_builder import (
    ModelBuilder,
    ModelConfig,
    ObservationTable,
    PriorSpec,
)
from inference.rjmcmc import Active, Inactive


def make_table(n_species: int = 2, n_trials: int = 1, n_levels: int = 1, response_type="absorbance"):
    doses = np.array([0.1, 1.0, 10.0])
    rows = [
        (x, s, t, l)
        for s in range(1, n_species + 1)
        for l in range(1, n_levels + 1)
        for t in range(1, n_trials + 1)
        for x in doses
    ]
    dose, species, trial, level = (np.array(col) for col in zip(*rows))
    response = curve_mean(dose, 0.0, 1.0, 0.0, 0, 1.0, 2.0)
    return ObservationTable(dose, response, species, trial, level, response_type)


class TestPriorSpec:
    def test_defaults(self) -> None:
        spec = PriorSpec()
        assert spec.inclusion_prob == 0.5
        assert spec.proposal_loc == spec.f_loc
        assert spec.proposal_scale == spec.f_scale

    def test_invalid_scale(self) -> None:
        with pytest.raises(ConfigurationError, match="b_scale"):
            PriorSpec(b_scale=0.0)

    def test_invalid_inclusion_prob(self) -> None:
        with pytest.raises(ConfigurationError, match="inclusion_prob"):
            PriorSpec(inclusion_prob=1.0)


class TestModelConfig:
    def test_n_groups(self) -> None:
        assert ModelConfig(n_species=3, n_trials=2, n_levels=4).n_groups == 12

    def test_group_labels_and_pairs(self) -> None:
        config = ModelConfig(n_species=2, n_trials=1, n_levels=2)
        assert config.groups == [(1, 1), (1, 2), (2, 1), (2, 2)]
        assert config.pairs[:3] == [(0, 1), (0, 2), (0, 3)]
        assert len(config.pairs) == 6

    def test_invalid_dimensions(self) -> None:
        with pytest.raises(ConfigurationError, match="positive"):
            ModelConfig(n_species=0, n_trials=1)

    def test_invalid_alpha(self) -> None:
        with pytest.raises(ConfigurationError, match="alpha"):
            ModelConfig(n_species=1, n_trials=1, alpha=-1.0)


class TestObservationTable:
    def test_default_level(self) -> None:
        table = ObservationTable([1.0, 2.0], [0.5, 0.4], [1, 1], [1, 1])
        assert np.all(table.level == 1)
        assert table.response_type is ResponseType.ABSORBANCE
        assert len(table) == 2

    def test_length_mismatch(self) -> None:
        with pytest.raises(ConfigurationError, match="length"):
            ObservationTable([1.0, 2.0], [0.5], [1, 1], [1, 1])

    def test_non_positive_dose(self) -> None:
        with pytest.raises(ConfigurationError, match="positive"):
            ObservationTable([0.0, 2.0], [0.5, 0.4], [1, 1], [1, 1])

    def test_zero_based_ids(self) -> None:
        with pytest.raises(ConfigurationError, match="1-based"):
            ObservationTable([1.0], [0.5], [0], [1])

    def test_mixed_response_types(self) -> None:
        with pytest.raises(ConfigurationError, match="one response type"):
            ObservationTable([1.0, 2.0], [0.5, 0.4], [1, 1], [1, 1],
                             response_type=["absorbance", "inhibition"])

    def test_unknown_response_type(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown"):
            ObservationTable([1.0], [0.5], [1], [1], response_type="growth")

    def test_empty(self) -> None:
        with pytest.raises(ConfigurationError, match="empty"):
            ObservationTable([], [], [], [])


class TestModelBuilder:
    """Tests for graph assembly."""

    def test_dimension_mismatch(self) -> None:
        table = make_table(n_species=2)
        with pytest.raises(ConfigurationError, match="n_species"):
            ModelBuilder(table, ModelConfig(n_species=3, n_trials=1, trial_effects=False))

    def test_trial_mismatch(self) -> None:
        table = make_table(n_species=1, n_trials=2)
        with pytest.raises(ConfigurationError, match="n_trials"):
            ModelBuilder(table, ModelConfig(n_species=1, n_trials=3))

    def test_level_mismatch(self) -> None:
        table = make_table(n_species=1, n_levels=2)
        with pytest.raises(ConfigurationError, match="n_levels"):
            ModelBuilder(table, ModelConfig(n_species=1, n_trials=1, n_levels=1))

    def test_nodes_without_trial_effects(self) -> None:
        table = make_table(n_species=2)
        model = ModelBuilder(table, ModelConfig(n_species=2, n_trials=1, trial_effects=False)).build()
        graph = model.graph

        for g in range(2):
            for prefix in ("c", "d", "hormesis", "e", "b", "mu", "y"):
                assert f"{prefix}[{g}]" in graph
        assert "tau" in graph
        assert "trial_effects" not in graph
        assert graph["c[0]"].structure is Structure.CONJUGATE_NORMAL
        assert graph["hormesis[0]"].structure is Structure.INDICATOR_PAIR
        assert graph["e[1]"].structure is Structure.BOUNDED_CONTINUOUS
        assert graph["tau"].structure is Structure.CONJUGATE_GAMMA
        assert np.isfinite(graph.log_prob())

    def test_nodes_with_trial_effects(self) -> None:
        table = make_table(n_species=1, n_trials=3)
        model = ModelBuilder(table, ModelConfig(n_species=1, n_trials=3)).build()
        assert model.graph["trial_effects"].value.shape == (3, 4)
        assert "effect_z[2]" in model.graph
        assert np.isfinite(model.graph.log_prob())

    def test_group_index_two_factor(self) -> None:
        table = make_table(n_species=2, n_levels=2)
        builder = ModelBuilder(table, ModelConfig(n_species=2, n_trials=1, n_levels=2,
                                                  trial_effects=False))
        model = builder.build()
        assert model.groups == [(1, 1), (1, 2), (2, 1), (2, 2)]
        # species 2, level 1 → group 2
        mask = (table.species == 2) & (table.level == 1)
        assert np.all(builder.group_index[mask] == 2)
        assert model.graph["y[2]"].value.size == 3

    def test_mean_matches_curve(self) -> None:
        table = make_table(n_species=1)
        model = ModelBuilder(
            table,
            ModelConfig(n_species=1, n_trials=1, trial_effects=False),
            inits={"c": 0.1, "d": 0.9, "e": 2.0, "b": 1.5, "w": 1, "f": 0.3},
        ).build()
        expected = curve_mean(table.dose, 0.1, 0.9, 0.3, 1, 2.0, 1.5)
        assert_allclose(model.graph["mu[0]"].value, expected)
        assert model.graph["hormesis[0]"].value == Active(0.3)

    def test_inhibition_convention(self) -> None:
        table = make_table(n_species=1, response_type="inhibition")
        model = ModelBuilder(
            table,
            ModelConfig(n_species=1, n_trials=1, trial_effects=False),
            inits={"w": 1, "f": 0.3},
        ).build()
        assert model.response_type is ResponseType.INHIBITION
        mu = model.graph["mu[0]"].value
        spec = model.prior_spec
        expected = curve_mean(table.dose, spec.c_loc, spec.d_loc, 0.3, 1,
                              np.median(table.dose), spec.b_loc, response_type="inhibition")
        assert_allclose(mu, expected)

    def test_trial_effects_offset_mean(self) -> None:
        table = make_table(n_species=1, n_trials=2)
        z = np.zeros((2, 4))
        z[1] = [1.0, 0.0, 0.0, 0.0]
        model = ModelBuilder(
            table,
            ModelConfig(n_species=1, n_trials=2),
            inits={"effect_scale": [0.2, 0.1, 0.1, 0.1], "effect_z": z},
        ).build()
        mu = model.graph["mu[0]"].value
        trial = table.trial
        # identity correlation: trial 2 gets d + 0.2, trial 1 no offset
        base = curve_mean(table.dose, 0.0, 1.0, 0.0, 0, 1.0, 1.0)
        shifted = curve_mean(table.dose, 0.0, 1.2, 0.0, 0, 1.0, 1.0)
        assert_allclose(mu[trial == 1], base[trial == 1])
        assert_allclose(mu[trial == 2], shifted[trial == 2])

    def test_trial_effects_scale_e_and_b(self) -> None:
        table = make_table(n_species=1, n_trials=2)
        z = np.zeros((2, 4))
        z[1] = [0.0, 0.0, 1.0, 1.0]
        model = ModelBuilder(
            table,
            ModelConfig(n_species=1, n_trials=2),
            inits={"effect_scale": [0.1, 0.1, np.log(2.0), np.log(3.0)], "effect_z": z},
        ).build()
        mu = model.graph["mu[0]"].value
        trial = table.trial
        # trial 2: e doubled, b tripled
        expected = curve_mean(table.dose, 0.0, 1.0, 0.0, 0, 2.0, 3.0)
        assert_allclose(mu[trial == 2], expected[trial == 2])

    def test_response_threshold_excludes(self) -> None:
        table = make_table(n_species=1)
        builder = ModelBuilder(
            table,
            ModelConfig(n_species=1, n_trials=1, trial_effects=False, response_threshold=0.1),
        )
        assert len(builder.table) == 2
        assert builder.build().graph["y[0]"].value.size == 2

    def test_threshold_excluding_everything(self) -> None:
        with pytest.raises(ConfigurationError, match="every observation"):
            ModelBuilder(
                make_table(n_species=1),
                ModelConfig(n_species=1, n_trials=1, response_threshold=10.0),
            )

    def test_unknown_init(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown"):
            ModelBuilder(make_table(n_species=1), ModelConfig(n_species=1, n_trials=1),
                         inits={"slope": 1.0})

    def test_init_wrong_shape(self) -> None:
        with pytest.raises(ConfigurationError, match="shape"):
            ModelBuilder(make_table(n_species=2), ModelConfig(n_species=2, n_trials=1),
                         inits={"e": [1.0, 2.0, 3.0]})

    def test_effect_init_without_effects(self) -> None:
        with pytest.raises(ConfigurationError, match="disabled"):
            ModelBuilder(make_table(n_species=1),
                         ModelConfig(n_species=1, n_trials=1, trial_effects=False),
                         inits={"effect_z": np.zeros((1, 4))})

    def test_builds_are_independent(self) -> None:
        builder = ModelBuilder(make_table(n_species=1),
                               ModelConfig(n_species=1, n_trials=1, trial_effects=False))
        first = builder.build()
        second = builder.build()
        assert first.graph is not second.graph

        first.graph["c[0]"].value = 5.0
        assert second.graph["c[0]"].value == 0.0
        assert first.graph.log_prob() != second.graph.log_prob()

    def test_default_hormesis_inactive(self) -> None:
        model = ModelBuilder(make_table(n_species=1),
                             ModelConfig(n_species=1, n_trials=1)).build()
        assert model.graph["hormesis[0]"].value == Inactive()


class TestHormesisModelRecord:
    """Tests for recorded draws."""

    def test_record_keys_and_shapes(self) -> None:
        model = ModelBuilder(make_table(n_species=2, n_trials=2),
                             ModelConfig(n_species=2, n_trials=2)).build()
        draw = model.record()

        for key in ("c", "d", "f", "w", "e", "b"):
            assert draw[key].shape == (2,)
        assert draw["sigma"] == pytest.approx(1.0 / np.sqrt(draw["tau"]))
        assert draw["effect_scale"].shape == (4,)
        assert draw["correlation"].shape == (4, 4)
        assert draw["trial_effects"].shape == (2, 4)
        assert draw["e_diff"].shape == (1,)
        assert_allclose(draw["f"], 0.0)
        assert_allclose(draw["w"], 0.0)

    def test_pairwise_differences(self) -> None:
        model = ModelBuilder(
            make_table(n_species=3),
            ModelConfig(n_species=3, n_trials=1, trial_effects=False),
            inits={"e": [1.0, 2.0, 4.0], "d": [0.5, 1.0, 1.5]},
        ).build()
        draw = model.record()
        assert model.pairs == [(0, 1), (0, 2), (1, 2)]
        assert_allclose(draw["e_diff"], [-1.0, -3.0, -2.0])
        assert_allclose(draw["d_diff"], [-0.5, -1.0, -0.5])

    def test_single_group_has_no_differences(self) -> None:
        model = ModelBuilder(make_table(n_species=1),
                             ModelConfig(n_species=1, n_trials=1, trial_effects=False)).build()
        assert "e_diff" not in model.record()

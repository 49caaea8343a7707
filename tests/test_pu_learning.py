"""
Tests for urban_flood.pu_learning
=================================
"""

import numpy as np
import pandas as pd
import pytest

from urban_flood.exceptions import ConfigurationError, InsufficientTrainingDataError, SchemaError
from urban_flood.pu_learning import PULabelRefiner

FEATURES = ["hand", "twi"]


def _pu_table(n_pos: int = 1000, n_neg: int = 800, n_hidden: int = 200, seed: int = 0) -> pd.DataFrame:
    """
    Positives from N(2, 1); unlabeled points are true negatives from
    N(-2, 1) followed by hidden positives from N(2, 1).
    """
    rng = np.random.default_rng(seed)
    positives = rng.normal(2.0, 1.0, (n_pos, len(FEATURES)))
    negatives = rng.normal(-2.0, 1.0, (n_neg, len(FEATURES)))
    hidden = rng.normal(2.0, 1.0, (n_hidden, len(FEATURES)))

    df = pd.DataFrame(np.vstack([positives, negatives, hidden]), columns=FEATURES)
    df["classes"] = [1] * n_pos + [0] * (n_neg + n_hidden)
    return df


# ---------------------------------------------------------------------------
# Spy technique
# ---------------------------------------------------------------------------

class TestRefine:
    def test_recovers_true_negatives(self) -> None:
        df = _pu_table()
        result = PULabelRefiner(FEATURES).refine(df)

        true_negatives = pd.RangeIndex(1000, 1800)
        recovered = true_negatives.isin(result.negative_index).mean()
        hidden_accepted = pd.RangeIndex(1800, 2000).isin(result.negative_index).mean()

        assert recovered > 0.9
        assert hidden_accepted < 0.3

    def test_positives_are_never_relabeled(self) -> None:
        df = _pu_table()
        table = PULabelRefiner(FEATURES).refine(df).table

        positives = table.loc[table.index < 1000]
        assert len(positives) == 1000
        assert (positives["new_class"] == 1).all()
        assert set(table["new_class"]) == {0, 1}

    def test_output_holds_no_synthetic_rows(self) -> None:
        df = _pu_table()
        result = PULabelRefiner(FEATURES).refine(df)

        assert result.n_spies == 150
        assert result.n_synthetic == (1000 + 150) - (1000 - 150)
        assert len(result.table) == 1000 + result.n_confident_negative
        assert result.table.index.isin(df.index).all()

    def test_negatives_and_excluded_partition_unlabeled(self) -> None:
        df = _pu_table()
        result = PULabelRefiner(FEATURES).refine(df)
        assert result.n_confident_negative + result.n_excluded == 1000
        assert result.negative_index.intersection(result.excluded_index).empty

    def test_deterministic_for_fixed_seed(self) -> None:
        df = _pu_table()
        a = PULabelRefiner(FEATURES, random_state=3).refine(df)
        b = PULabelRefiner(FEATURES, random_state=3).refine(df)

        assert a.threshold == b.threshold
        assert a.negative_index.equals(b.negative_index)

    def test_without_oversampling(self) -> None:
        result = PULabelRefiner(FEATURES, oversample=False).refine(_pu_table())
        assert result.n_synthetic == 0
        assert result.n_confident_negative > 0

    def test_summary(self) -> None:
        summary = PULabelRefiner(FEATURES).refine(_pu_table()).summary()
        assert summary["policy"] == "mean_std"
        assert summary["positives"] == 1000
        assert 0.0 <= summary["threshold"] <= 1.0


# ---------------------------------------------------------------------------
# Threshold policies
# ---------------------------------------------------------------------------

class TestThreshold:
    scores = np.array([0.2, 0.5, 0.8, 0.9])

    def test_mean_std(self) -> None:
        refiner = PULabelRefiner(FEATURES, threshold_policy="mean_std", threshold_k=1.0)
        assert refiner.threshold(self.scores) == pytest.approx(self.scores.mean() - self.scores.std())

    def test_percentile(self) -> None:
        refiner = PULabelRefiner(FEATURES, threshold_policy="percentile", threshold_percentile=50)
        assert refiner.threshold(self.scores) == pytest.approx(0.65)

    def test_minimum(self) -> None:
        refiner = PULabelRefiner(FEATURES, threshold_policy="minimum")
        assert refiner.threshold(self.scores) == pytest.approx(0.2)

    def test_minimum_policy_keeps_fewer_or_equal_negatives(self) -> None:
        df = _pu_table()
        strict = PULabelRefiner(FEATURES, threshold_policy="minimum").refine(df)
        default = PULabelRefiner(FEATURES).refine(df)
        assert strict.threshold <= default.threshold
        assert strict.n_confident_negative <= default.n_confident_negative

    def test_unknown_policy_raises(self) -> None:
        with pytest.raises(ConfigurationError):
            PULabelRefiner(FEATURES, threshold_policy="median")

    @pytest.mark.parametrize("fraction", [0.0, 1.0, 1.5])
    def test_spy_fraction_bounds(self, fraction) -> None:
        with pytest.raises(ConfigurationError):
            PULabelRefiner(FEATURES, spy_fraction=fraction)


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

class TestValidation:
    def test_single_positive_raises(self) -> None:
        df = _pu_table(n_pos=1, n_neg=50, n_hidden=0)
        with pytest.raises(InsufficientTrainingDataError):
            PULabelRefiner(FEATURES).refine(df)

    def test_no_unlabeled_raises(self) -> None:
        df = _pu_table(n_pos=20, n_neg=0, n_hidden=0)
        with pytest.raises(InsufficientTrainingDataError):
            PULabelRefiner(FEATURES).refine(df)

    def test_missing_feature_raises(self) -> None:
        df = _pu_table().drop(columns="twi")
        with pytest.raises(SchemaError):
            PULabelRefiner(FEATURES).refine(df)

    def test_nan_feature_raises(self) -> None:
        df = _pu_table()
        df.loc[5, "hand"] = np.nan
        with pytest.raises(SchemaError):
            PULabelRefiner(FEATURES).refine(df)

    def test_few_positives_shrink_smote_neighbours(self) -> None:
        df = _pu_table(n_pos=4, n_neg=60, n_hidden=0)
        result = PULabelRefiner(FEATURES, smote_k_neighbors=5).refine(df)
        assert result.n_spies == 1
        assert result.n_synthetic == 61 - 3

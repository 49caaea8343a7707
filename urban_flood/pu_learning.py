"""
Positive-Unlabeled Label Refinement (Spy Technique)
====================================================

Turns a sample table with known positives (risk polygons) and unlabeled
points (buffer ring) into a binary training table:

1. A fraction of the positives is set aside as spies and mixed into the
   unlabeled set.
2. The remaining positives are optionally oversampled with SMOTE; only
   synthetic positives are ever created.
3. A Gaussian Naive Bayes classifier is trained on positives vs
   unlabeled-plus-spies.
4. A threshold is derived from the spy scores; unlabeled points scoring
   below it become confident negatives, the rest are dropped.

Positives are never relabeled.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd
from imblearn.over_sampling import SMOTE
from sklearn.naive_bayes import GaussianNB

from .exceptions import ConfigurationError, InsufficientTrainingDataError, SchemaError
from .utils import get_logger, timer

logger = get_logger(__name__)

THRESHOLD_POLICIES = ("mean_std", "percentile", "minimum")


@dataclass
class RefinementResult:
    """
    Output of a PU refinement run.

    Attributes
    ----------
    table : pd.DataFrame
        Positives and confident negatives with the refined label column
    threshold : float
        Decision threshold on P(label=1 | x)
    policy : str
        Threshold policy used
    spy_scores : np.ndarray
        Scores of the spies
    negative_index : pd.Index
        Index labels of unlabeled rows accepted as negatives
    excluded_index : pd.Index
        Index labels of unlabeled rows left out of the table
    """

    table: pd.DataFrame
    threshold: float
    policy: str
    spy_scores: np.ndarray
    negative_index: pd.Index
    excluded_index: pd.Index
    n_positive: int = 0
    n_spies: int = 0
    n_synthetic: int = 0
    flags: Dict = field(default_factory=dict)

    @property
    def n_confident_negative(self) -> int:
        return len(self.negative_index)

    @property
    def n_excluded(self) -> int:
        return len(self.excluded_index)

    def summary(self) -> Dict:
        return {
            "policy": self.policy,
            "threshold": float(self.threshold),
            "positives": self.n_positive,
            "spies": self.n_spies,
            "synthetic_positives": self.n_synthetic,
            "confident_negatives": self.n_confident_negative,
            "excluded_unlabeled": self.n_excluded,
            "spy_score_mean": float(np.mean(self.spy_scores)),
            "spy_score_std": float(np.std(self.spy_scores)),
            "flags": dict(self.flags),
        }


class PULabelRefiner:
    """
    Spy-technique refiner for positive-unlabeled samples.

    Parameters
    ----------
    feature_names : sequence of str
        Covariate columns used by the classifier
    label_column : str
        Input label column (1 = positive, 0 = unlabeled)
    output_column : str
        Refined label column written to the output table
    spy_fraction : float
        Fraction of positives used as spies, in (0, 1)
    threshold_policy : str
        'mean_std' (mean - k * std), 'percentile' (q-th percentile) or
        'minimum' (lowest spy score)
    threshold_k : float
        k for the 'mean_std' policy
    threshold_percentile : float
        q for the 'percentile' policy
    oversample : bool
        Oversample the positive training pool with SMOTE
    smote_k_neighbors : int
        Neighbours used by SMOTE
    min_positive_samples : int
        Minimum positives required
    random_state : int
        Seed for spy selection and SMOTE

    Example
    -------
    >>> refiner = PULabelRefiner(FEATURE_BANDS, spy_fraction=0.15)
    >>> result = refiner.refine(samples)
    >>> result.table["new_class"].value_counts()
    """

    def __init__(
        self,
        feature_names: Sequence[str],
        label_column: str = "classes",
        output_column: str = "new_class",
        spy_fraction: float = 0.15,
        threshold_policy: str = "mean_std",
        threshold_k: float = 1.0,
        threshold_percentile: float = 5.0,
        oversample: bool = True,
        smote_k_neighbors: int = 5,
        min_positive_samples: int = 2,
        random_state: int = 42
    ):
        if not 0 < spy_fraction < 1:
            raise ConfigurationError(f"spy_fraction must be in (0, 1), got {spy_fraction}")
        if threshold_policy not in THRESHOLD_POLICIES:
            raise ConfigurationError(
                f"Unknown threshold_policy '{threshold_policy}' (choose from {THRESHOLD_POLICIES})"
            )
        if not 0 <= threshold_percentile <= 100:
            raise ConfigurationError(
                f"threshold_percentile must be in [0, 100], got {threshold_percentile}"
            )

        self.feature_names = list(feature_names)
        self.label_column = label_column
        self.output_column = output_column
        self.spy_fraction = spy_fraction
        self.threshold_policy = threshold_policy
        self.threshold_k = threshold_k
        self.threshold_percentile = threshold_percentile
        self.oversample = oversample
        self.smote_k_neighbors = smote_k_neighbors
        self.min_positive_samples = max(2, int(min_positive_samples))
        self.random_state = random_state

        self.classifier: Optional[GaussianNB] = None

    # =========================================================================
    # THRESHOLD
    # =========================================================================

    def threshold(self, spy_scores: np.ndarray) -> float:
        """Decision threshold derived from the spy score distribution."""
        spy_scores = np.asarray(spy_scores, dtype=float)
        if self.threshold_policy == "mean_std":
            return float(spy_scores.mean() - self.threshold_k * spy_scores.std())
        if self.threshold_policy == "percentile":
            return float(np.percentile(spy_scores, self.threshold_percentile))
        return float(spy_scores.min())

    # =========================================================================
    # REFINEMENT
    # =========================================================================

    def _validate(self, df: pd.DataFrame):
        missing = [c for c in self.feature_names + [self.label_column] if c not in df.columns]
        if missing:
            raise SchemaError(f"PU refinement input is missing columns: {missing}")
        if df[self.feature_names].isna().any().any():
            raise SchemaError("PU refinement input has missing feature values")

        positives = df[df[self.label_column] == 1]
        unlabeled = df[df[self.label_column] == 0]
        if len(positives) < self.min_positive_samples:
            raise InsufficientTrainingDataError(
                f"PU refinement: {len(positives)} positive samples, "
                f"min_positive_samples={self.min_positive_samples}"
            )
        if unlabeled.empty:
            raise InsufficientTrainingDataError("PU refinement: no unlabeled samples")
        return positives, unlabeled

    def _oversample(self, X_pos: np.ndarray, X_unl: np.ndarray, flags: Dict):
        """SMOTE the positive pool up to the size of the unlabeled pool."""
        X = np.vstack([X_pos, X_unl])
        y = np.concatenate([np.ones(len(X_pos), dtype=int), np.zeros(len(X_unl), dtype=int)])

        if not self.oversample or len(X_pos) >= len(X_unl):
            return X, y, 0
        if len(X_pos) < 2:
            flags["oversample_skipped"] = "fewer than 2 positives"
            logger.warning("SMOTE skipped: fewer than 2 positives in the training pool")
            return X, y, 0

        k_neighbors = min(self.smote_k_neighbors, len(X_pos) - 1)
        smote = SMOTE(
            sampling_strategy={1: len(X_unl)},
            k_neighbors=k_neighbors,
            random_state=self.random_state
        )
        X_res, y_res = smote.fit_resample(X, y)
        n_synthetic = int((y_res == 1).sum() - len(X_pos))
        logger.info(f"  SMOTE: {n_synthetic} synthetic positives (k={k_neighbors})")
        return X_res, y_res, n_synthetic

    @timer
    def refine(self, df: pd.DataFrame) -> RefinementResult:
        """
        Run the spy technique on a sample table.

        Parameters
        ----------
        df : pd.DataFrame
            Samples with feature columns and ``label_column``

        Returns
        -------
        RefinementResult
        """
        positives, unlabeled = self._validate(df)
        rng = np.random.default_rng(self.random_state)
        flags: Dict = {}

        n_spies = int(round(self.spy_fraction * len(positives)))
        n_spies = min(max(n_spies, 1), len(positives) - 1)
        spy_pos = np.sort(rng.choice(len(positives), size=n_spies, replace=False))
        is_spy = np.zeros(len(positives), dtype=bool)
        is_spy[spy_pos] = True

        X_pos = positives[self.feature_names].to_numpy(dtype=float)
        X_unl = unlabeled[self.feature_names].to_numpy(dtype=float)
        X_spy = X_pos[is_spy]
        X_unl_spy = np.vstack([X_unl, X_spy])

        logger.info(f"  Positives: {len(positives)} ({n_spies} spies), unlabeled: {len(unlabeled)}")

        X_train, y_train, n_synthetic = self._oversample(X_pos[~is_spy], X_unl_spy, flags)

        self.classifier = GaussianNB()
        self.classifier.fit(X_train, y_train)

        scores = self.classifier.predict_proba(X_unl_spy)[:, 1]
        unl_scores = scores[:len(X_unl)]
        spy_scores = scores[len(X_unl):]

        threshold = self.threshold(spy_scores)
        negative = unl_scores < threshold
        logger.info(f"  Spy scores: mean={spy_scores.mean():.4f}, std={spy_scores.std():.4f}; "
                    f"threshold ({self.threshold_policy}) = {threshold:.4f}")

        negatives = unlabeled[negative].copy()
        negatives[self.output_column] = 0
        confident_positives = positives.copy()
        confident_positives[self.output_column] = 1

        table = pd.concat([confident_positives, negatives])
        logger.info(f"  Confident negatives: {int(negative.sum())}, "
                    f"excluded unlabeled: {int((~negative).sum())}")

        return RefinementResult(
            table=table,
            threshold=threshold,
            policy=self.threshold_policy,
            spy_scores=spy_scores,
            negative_index=unlabeled.index[negative],
            excluded_index=unlabeled.index[~negative],
            n_positive=len(positives),
            n_spies=n_spies,
            n_synthetic=n_synthetic,
            flags=flags,
        )

"""
Random Forest Model for Urban Flood Susceptibility Mapping
===========================================================

Supervised classifier trained on PU-refined labels:
- Seeded 80/20 train/test split
- Resubstitution confusion matrix and held-out error matrix
- Optional stratified k-fold cross-validation
- Feature importances and normalized feature weights
- Full-stack prediction with majority-filter smoothing
- Model persistence with joblib
"""

import json
import math
from pathlib import Path
from typing import Dict, Optional, Sequence, Union

import numpy as np
import pandas as pd
import joblib
from sklearn.ensemble import RandomForestClassifier
from sklearn.model_selection import train_test_split, cross_val_score, StratifiedKFold
from sklearn.metrics import (
    accuracy_score, precision_score, recall_score, f1_score,
    roc_auc_score, confusion_matrix, cohen_kappa_score
)
from sklearn.preprocessing import StandardScaler

from .classifiers import ClassifiedRaster, binary_layer
from .exceptions import ConfigurationError, InsufficientTrainingDataError, SchemaError
from .filters import focal_mode
from .raster import FeatureStack
from .susceptibility import FeatureWeights
from .utils import ensure_dir, get_logger, timer

logger = get_logger(__name__)

LABELS = [0, 1]


class FloodSusceptibilityModel:
    """
    Random Forest model for flood / no-flood classification.

    Attributes
    ----------
    model : RandomForestClassifier
        Random Forest model
    scaler : StandardScaler
        Feature scaler fitted on the training split
    feature_names : list
        Names of input features
    metrics : dict
        Test-set evaluation metrics

    Example
    -------
    >>> model = FloodSusceptibilityModel(FEATURE_BANDS)
    >>> model.prepare_training_data(refined.table)
    >>> model.train()
    >>> model.evaluate()
    >>> flood = model.predict_raster(stack)
    """

    def __init__(
        self,
        feature_names: Sequence[str],
        label_column: str = "new_class",
        n_estimators: int = 100,
        random_state: int = 42,
        test_size: float = 0.2,
        min_samples_per_class: int = 2,
        cv_folds: int = 0,
        smoothing_radius: int = 1,
        **kwargs
    ):
        """
        Initialize the FloodSusceptibilityModel.

        Parameters
        ----------
        feature_names : sequence of str
            Covariate columns / stack bands
        label_column : str
            Binary label column of the training table
        n_estimators : int
            Number of trees in the forest
        random_state : int
            Seed of the split and the forest
        test_size : float
            Held-out fraction
        min_samples_per_class : int
            Training fails below this count for any class
        cv_folds : int
            Stratified k-fold CV on the training split (0 disables)
        smoothing_radius : int
            Majority-filter radius applied to the predicted raster
        **kwargs
            Additional parameters for RandomForestClassifier
        """
        if not 0 < test_size < 1:
            raise ConfigurationError(f"test_size must be in (0, 1), got {test_size}")
        if n_estimators < 1:
            raise ConfigurationError(f"n_estimators must be >= 1, got {n_estimators}")

        self.feature_names = list(feature_names)
        self.label_column = label_column
        self.n_estimators = n_estimators
        self.random_state = random_state
        self.test_size = test_size
        self.min_samples_per_class = max(2, int(min_samples_per_class))
        self.cv_folds = cv_folds
        self.smoothing_radius = smoothing_radius

        self.model_params = {
            'n_estimators': n_estimators,
            'random_state': random_state,
            'n_jobs': kwargs.get('n_jobs', -1),
        }
        for key in ('max_depth', 'max_features', 'min_samples_leaf', 'class_weight'):
            if key in kwargs:
                self.model_params[key] = kwargs[key]

        self.model = RandomForestClassifier(**self.model_params)
        self.scaler = StandardScaler()

        # Data storage
        self.X_train = None
        self.X_test = None
        self.y_train = None
        self.y_test = None

        # Results
        self.train_confusion: Optional[np.ndarray] = None
        self.metrics: Dict = {}
        self.feature_importance: Optional[pd.DataFrame] = None
        self.cv_results: Optional[Dict] = None

        logger.info("FloodSusceptibilityModel initialized")
        logger.info(f"  Trees: {n_estimators}, Features: {self.feature_names}")

    # =========================================================================
    # DATA PREPARATION
    # =========================================================================

    @timer
    def prepare_training_data(self, table: pd.DataFrame) -> None:
        """
        Split the refined table into seeded train and test sets.

        Parameters
        ----------
        table : pd.DataFrame
            Feature columns plus ``label_column`` in {0, 1}
        """
        missing = [c for c in self.feature_names + [self.label_column] if c not in table.columns]
        if missing:
            raise ConfigurationError(f"Training table is missing columns: {missing}")

        data = table[self.feature_names + [self.label_column]].dropna()
        unexpected = set(pd.unique(data[self.label_column])) - set(LABELS)
        if unexpected:
            raise SchemaError(
                f"Random forest: column '{self.label_column}' must hold {LABELS}, "
                f"found {sorted(unexpected)}"
            )
        X = data[self.feature_names].to_numpy(dtype=float)
        y = data[self.label_column].to_numpy(dtype=int)

        counts = {label: int((y == label).sum()) for label in LABELS}
        logger.info(f"  Flood: {counts[1]}, Non-flood: {counts[0]}")
        for label, count in counts.items():
            if count < self.min_samples_per_class:
                raise InsufficientTrainingDataError(
                    f"Random forest: class {label} has {count} samples, "
                    f"min_samples_per_class={self.min_samples_per_class}"
                )

        n_test = math.ceil(self.test_size * len(y))
        stratify = y if n_test >= len(LABELS) and len(y) - n_test >= len(LABELS) else None

        self.X_train, self.X_test, self.y_train, self.y_test = train_test_split(
            X, y,
            test_size=self.test_size,
            random_state=self.random_state,
            stratify=stratify
        )

        missing_classes = [label for label in LABELS if not (self.y_train == label).any()]
        if missing_classes:
            raise InsufficientTrainingDataError(
                f"Random forest: training split of {len(self.y_train)} rows has no "
                f"samples of class {missing_classes} (test_size={self.test_size})"
            )

        logger.info(f"  Training samples: {len(self.y_train)}")
        logger.info(f"  Test samples: {len(self.y_test)}")

        self.X_train = self.scaler.fit_transform(self.X_train)
        self.X_test = self.scaler.transform(self.X_test)

    # =========================================================================
    # MODEL TRAINING
    # =========================================================================

    @timer
    def train(self) -> Dict:
        """
        Fit the forest on the training split.

        Returns
        -------
        dict
            Resubstitution accuracy and confusion matrix, plus CV results
            when enabled
        """
        if self.X_train is None:
            raise ConfigurationError("No training data. Call prepare_training_data first.")

        logger.info("=" * 60)
        logger.info("TRAINING RANDOM FOREST MODEL")
        logger.info("=" * 60)

        if self.cv_folds and self.cv_folds >= 2:
            self.cross_validate(self.cv_folds)

        self.model.fit(self.X_train, self.y_train)

        y_fit = self.model.predict(self.X_train)
        self.train_confusion = confusion_matrix(self.y_train, y_fit, labels=LABELS)
        train_accuracy = accuracy_score(self.y_train, y_fit)
        logger.info(f"  Resubstitution accuracy: {train_accuracy:.3f}")

        self.feature_importance = pd.DataFrame({
            'feature': self.feature_names,
            'importance': self.model.feature_importances_
        }).sort_values('importance', ascending=False).reset_index(drop=True)

        logger.info("Feature Importance:")
        for _, row in self.feature_importance.iterrows():
            logger.info(f"  {row['feature']}: {row['importance']*100:.1f}%")

        return {
            'train_accuracy': float(train_accuracy),
            'train_confusion_matrix': self.train_confusion.tolist(),
            'cv_results': self.cv_results,
        }

    def cross_validate(self, cv_folds: int) -> Dict:
        """Stratified k-fold CV of a fresh forest on the training split."""
        smallest = int(np.bincount(self.y_train, minlength=2).min())
        folds = min(cv_folds, smallest)
        if folds < 2:
            logger.warning(f"Cross-validation skipped: smallest class has {smallest} samples")
            return {}

        logger.info(f"Performing {folds}-fold cross-validation...")
        cv = StratifiedKFold(n_splits=folds, shuffle=True, random_state=self.random_state)
        estimator = RandomForestClassifier(**self.model_params)

        self.cv_results = {}
        for metric in ('accuracy', 'f1', 'roc_auc'):
            scores = cross_val_score(estimator, self.X_train, self.y_train, cv=cv, scoring=metric)
            self.cv_results[metric] = {
                'mean': float(scores.mean()), 'std': float(scores.std()), 'scores': scores.tolist()
            }
            logger.info(f"  {metric.upper()}: {scores.mean():.3f} ± {scores.std():.3f}")
        return self.cv_results

    # =========================================================================
    # MODEL EVALUATION
    # =========================================================================

    @timer
    def evaluate(self) -> Dict:
        """
        Evaluate the forest on the held-out split.

        Returns
        -------
        dict
            accuracy, kappa, precision, recall, f1, auc (when both classes
            are present) and the error matrix
        """
        if self.X_test is None:
            raise ConfigurationError("No test data available.")

        y_pred = self.model.predict(self.X_test)

        self.metrics = {
            'accuracy': float(accuracy_score(self.y_test, y_pred)),
            'kappa': float(cohen_kappa_score(self.y_test, y_pred, labels=LABELS)),
            'precision': float(precision_score(self.y_test, y_pred, zero_division=0)),
            'recall': float(recall_score(self.y_test, y_pred, zero_division=0)),
            'f1': float(f1_score(self.y_test, y_pred, zero_division=0)),
            'n_test': int(len(self.y_test)),
        }
        if len(np.unique(self.y_test)) == 2:
            y_prob = self.model.predict_proba(self.X_test)[:, 1]
            self.metrics['auc'] = float(roc_auc_score(self.y_test, y_prob))

        cm = confusion_matrix(self.y_test, y_pred, labels=LABELS)
        self.metrics['confusion_matrix'] = cm.tolist()
        if self.train_confusion is not None:
            self.metrics['train_confusion_matrix'] = self.train_confusion.tolist()

        logger.info("Test Set Metrics:")
        logger.info(f"  Accuracy:  {self.metrics['accuracy']:.3f}")
        logger.info(f"  Kappa:     {self.metrics['kappa']:.3f}")
        logger.info(f"  F1-Score:  {self.metrics['f1']:.3f}")
        logger.info(f"  TN: {cm[0,0]}, FP: {cm[0,1]}, FN: {cm[1,0]}, TP: {cm[1,1]}")

        return self.metrics

    def feature_weights(self) -> FeatureWeights:
        """Importances normalized to sum to one."""
        if self.feature_importance is None:
            raise ConfigurationError("Model is not trained; no feature importances")
        importances = dict(zip(self.feature_importance['feature'], self.feature_importance['importance']))
        return FeatureWeights.from_importances(importances)

    # =========================================================================
    # PREDICTION
    # =========================================================================

    @timer
    def predict_raster(self, stack: FeatureStack, smooth: bool = True) -> ClassifiedRaster:
        """
        Classify every valid pixel of the stack.

        Parameters
        ----------
        stack : FeatureStack
            Stack holding ``feature_names``
        smooth : bool
            Apply the majority filter

        Returns
        -------
        ClassifiedRaster
            Method ``"rf"``
        """
        valid = stack.valid_mask(self.feature_names)
        features = stack.array(self.feature_names)[:, valid].T
        logger.info(f"  Valid pixels: {int(valid.sum()):,} / {valid.size:,}")

        predicted = np.zeros(stack.grid.shape, dtype=np.uint8)
        if features.size:
            predicted[valid] = self.model.predict(self.scaler.transform(features))

        classes = np.ma.array(predicted, mask=~valid)
        raw = binary_layer("rf_raw", classes.filled(0), ~valid, stack.grid)
        if smooth and self.smoothing_radius > 0:
            classes = focal_mode(classes, self.smoothing_radius)

        layer = binary_layer("rf", classes.filled(0), ~valid, stack.grid,
                             smoothing_radius=self.smoothing_radius if smooth else 0)
        result = ClassifiedRaster("rf", layer, {
            'n_estimators': self.n_estimators,
            'random_state': self.random_state,
            'smoothing_radius': self.smoothing_radius if smooth else 0,
        }, auxiliary={"unsmoothed": raw})
        logger.info(f"  rf: {result.flood_pixels} flood px")
        return result

    # =========================================================================
    # SAVE / LOAD MODEL
    # =========================================================================

    def save_model(self, output_dir: Union[str, Path]) -> Dict[str, Path]:
        """
        Save trained model and associated files.

        Returns
        -------
        dict
            Paths to saved files
        """
        output_dir = ensure_dir(output_dir)
        paths = {}

        model_path = output_dir / "random_forest_model.joblib"
        joblib.dump(self.model, model_path)
        paths['model'] = model_path
        logger.info(f"  Model saved: {model_path}")

        scaler_path = output_dir / "scaler.joblib"
        joblib.dump(self.scaler, scaler_path)
        paths['scaler'] = scaler_path

        settings_path = output_dir / "model_settings.json"
        with open(settings_path, 'w') as f:
            json.dump({
                'feature_names': self.feature_names,
                'label_column': self.label_column,
                'n_estimators': self.n_estimators,
                'random_state': self.random_state,
                'test_size': self.test_size,
                'smoothing_radius': self.smoothing_radius,
            }, f, indent=2)
        paths['settings'] = settings_path

        if self.metrics:
            metrics_path = output_dir / "metrics.json"
            with open(metrics_path, 'w') as f:
                json.dump(self.metrics, f, indent=2)
            paths['metrics'] = metrics_path

        if self.feature_importance is not None:
            importance_path = output_dir / "feature_importance.csv"
            self.feature_importance.to_csv(importance_path, index=False)
            paths['importance'] = importance_path

        return paths

    @classmethod
    def load_model(cls, model_dir: Union[str, Path]) -> 'FloodSusceptibilityModel':
        """Load a model saved by ``save_model``."""
        model_dir = Path(model_dir)

        with open(model_dir / "model_settings.json") as f:
            settings = json.load(f)

        instance = cls(
            settings['feature_names'],
            label_column=settings['label_column'],
            n_estimators=settings['n_estimators'],
            random_state=settings['random_state'],
            test_size=settings['test_size'],
            smoothing_radius=settings['smoothing_radius'],
        )
        instance.model = joblib.load(model_dir / "random_forest_model.joblib")
        instance.scaler = joblib.load(model_dir / "scaler.joblib")

        metrics_path = model_dir / "metrics.json"
        if metrics_path.exists():
            with open(metrics_path) as f:
                instance.metrics = json.load(f)

        importance_path = model_dir / "feature_importance.csv"
        if importance_path.exists():
            instance.feature_importance = pd.read_csv(importance_path)

        logger.info(f"Model loaded from: {model_dir}")
        return instance

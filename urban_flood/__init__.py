"""
Urban Flood Susceptibility Mapping Package
==========================================

This package contains modules for:
- Raster grids, layers and the co-registered feature stack
- Raster / vector preprocessing and alignment
- Covariate construction (slope, distance to drainage, gap-filled Ksat)
- Stratified label sampling and positive-unlabeled refinement
- HAND, cluster and random forest flood classifiers
- Hotspot extraction and the importance-weighted susceptibility index
- Visualization and the end-to-end pipeline
"""

__version__ = "1.0.0"

from .classifiers import ClassifiedRaster, ClusterClassifier, HandThresholdClassifier
from .config import build_config, load_config
from .exceptions import (
    ClusterMappingError, ConfigurationError, GridAlignmentError,
    InsufficientTrainingDataError, RasterIOError, SchemaError, UrbanFloodError
)
from .feature_engineering import CovariateBuilder
from .model import FloodSusceptibilityModel
from .pipeline import FloodSusceptibilityPipeline, PipelineResult
from .postprocessing import Hotspot, HotspotExtractor, HotspotResult
from .preprocessing import RasterStore, VectorStore
from .pu_learning import PULabelRefiner, RefinementResult
from .raster import FeatureStack, GridSpec, RasterLayer
from .sampling import LabelSampler
from .susceptibility import FeatureWeights, SusceptibilityIndexer, SusceptibilitySurface
from .utils import setup_logging, timer
from .visualization import Visualizer

__all__ = [
    "ClassifiedRaster",
    "ClusterClassifier",
    "ClusterMappingError",
    "ConfigurationError",
    "CovariateBuilder",
    "FeatureStack",
    "FeatureWeights",
    "FloodSusceptibilityModel",
    "FloodSusceptibilityPipeline",
    "GridAlignmentError",
    "GridSpec",
    "HandThresholdClassifier",
    "Hotspot",
    "HotspotExtractor",
    "HotspotResult",
    "InsufficientTrainingDataError",
    "LabelSampler",
    "PipelineResult",
    "PULabelRefiner",
    "RasterIOError",
    "RasterLayer",
    "RasterStore",
    "RefinementResult",
    "SchemaError",
    "SusceptibilityIndexer",
    "SusceptibilitySurface",
    "UrbanFloodError",
    "VectorStore",
    "Visualizer",
    "build_config",
    "load_config",
    "setup_logging",
    "timer",
]

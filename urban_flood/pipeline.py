"""
Urban Flood Susceptibility Pipeline
===================================

Runs every stage in order and writes the results:

    inputs -> feature stack -> samples -> PU refinement -> RF / cluster /
    HAND classifications -> hotspots -> susceptibility index -> outputs

Nothing is written until every stage has succeeded, so an input or
configuration error never leaves partial outputs behind.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd
import geopandas as gpd
from shapely.geometry.base import BaseGeometry

from .classifiers import ClassifiedRaster, ClusterClassifier, HandThresholdClassifier
from .config import FEATURE_BANDS, OUTPUT_LAYOUT, build_config
from .exceptions import ConfigurationError
from .feature_engineering import CovariateBuilder
from .model import FloodSusceptibilityModel
from .postprocessing import HotspotExtractor, HotspotResult, coverage_report, urban_mask
from .preprocessing import RasterStore, VectorStore
from .pu_learning import PULabelRefiner, RefinementResult
from .raster import FeatureStack, RasterLayer
from .sampling import LabelSampler, read_table, region_table, validate_table, write_table
from .susceptibility import SusceptibilityIndexer, SusceptibilitySurface
from .utils import ensure_dir, get_logger, get_timestamp, save_json, timer
from .visualization import Visualizer

logger = get_logger(__name__)

RASTER_INPUTS = ("elevation", "conductivity", "hand", "twi", "landcover")
OPTIONAL_RASTER_INPUTS = ("distance",)
VECTOR_INPUTS = ("risk_zones", "drainage", "streams")
REQUIRED_INPUTS = RASTER_INPUTS + ("risk_zones", "study_area")


@dataclass
class PipelineResult:
    """Everything produced by one run."""

    stack: FeatureStack
    training_table: pd.DataFrame
    model: FloodSusceptibilityModel
    classified: Dict[str, ClassifiedRaster]
    hotspots: Dict[str, HotspotResult]
    coverage: pd.DataFrame
    surface: SusceptibilitySurface
    statistics: Dict
    validation: Dict
    urban: np.ndarray
    risk_mask: np.ndarray
    reference_mask: np.ndarray
    samples: Optional[gpd.GeoDataFrame] = None
    refinement: Optional[RefinementResult] = None
    separability: Optional[gpd.GeoDataFrame] = None
    outputs: Dict[str, Path] = field(default_factory=dict)

    @property
    def metrics(self) -> Dict:
        return self.model.metrics

    def flags(self) -> Dict:
        """Approximation flags collected from every stage."""
        flags = {f"stack.{name}": value for name, value in self.stack.flags().items()}
        if self.samples is not None and self.samples.attrs.get("flags"):
            flags["sampling"] = dict(self.samples.attrs["flags"])
        if self.refinement is not None and self.refinement.flags:
            flags["pu_learning"] = dict(self.refinement.flags)
        for method, result in self.hotspots.items():
            if result.flags:
                flags[f"hotspots.{method}"] = dict(result.flags)
        if self.surface.flags:
            flags["susceptibility"] = dict(self.surface.flags)
        return flags


class FloodSusceptibilityPipeline:
    """
    End-to-end orchestration of the susceptibility workflow.

    Parameters
    ----------
    config : dict, optional
        Configuration from ``build_config`` / ``load_config``

    Example
    -------
    >>> pipeline = FloodSusceptibilityPipeline(load_config("overrides.json"))
    >>> result = pipeline.run(inputs, output_dir="outputs")
    >>> result.coverage
    """

    def __init__(self, config: Optional[Dict] = None):
        self.config = config or build_config()
        processing = self.config["processing"]
        self.store = RasterStore(nodata=processing["nodata_value"])
        self.vectors = VectorStore(processing["target_crs"])
        self.feature_names = list(FEATURE_BANDS)
        self.builder: Optional[CovariateBuilder] = None

    # =========================================================================
    # INPUTS
    # =========================================================================

    def load_inputs(self, inputs: Mapping) -> Dict:
        """
        Resolve file paths and in-memory objects into layers and geometries.

        Raster entries may be paths or RasterLayers, vector entries paths or
        GeoDataFrames; ``study_area`` may also be a shapely geometry. Risk
        zones are filtered to the configured flood attribute value.
        """
        missing = [key for key in REQUIRED_INPUTS if inputs.get(key) is None]
        if missing:
            raise ConfigurationError(f"Missing pipeline inputs: {missing}")
        if inputs.get("drainage") is None and inputs.get("distance") is None:
            raise ConfigurationError("Pipeline needs either a 'drainage' or a 'distance' input")

        resolved: Dict = {}
        for key in RASTER_INPUTS + OPTIONAL_RASTER_INPUTS:
            value = inputs.get(key)
            if value is None:
                continue
            resolved[key] = value if isinstance(value, RasterLayer) else self.store.load(value, name=key)

        for key in VECTOR_INPUTS:
            value = inputs.get(key)
            if value is None:
                continue
            if isinstance(value, gpd.GeoDataFrame):
                resolved[key] = self.vectors.prepare(value, name=key)
            else:
                resolved[key] = self.vectors.load(value)

        labels = self.config["labels"]
        resolved["risk_zones"] = self.vectors.filter_equals(
            resolved["risk_zones"], labels["risk_attribute"], labels["risk_value"]
        )
        resolved["study_area"] = self._study_geometry(inputs["study_area"])
        resolved["reference_point"] = self._reference_point(inputs.get("reference_point"))
        return resolved

    def _study_geometry(self, value) -> BaseGeometry:
        if isinstance(value, BaseGeometry):
            geometry = value
        else:
            gdf = value if isinstance(value, gpd.GeoDataFrame) else self.vectors.load(value)
            geometry = self.vectors.union(self.vectors.prepare(gdf, name="study_area"))
        if geometry.is_empty:
            raise ConfigurationError("Input 'study_area' is an empty geometry")
        return geometry

    def _reference_point(self, value) -> Optional[Tuple[float, float]]:
        if value is None:
            value = self.config["study_area"]["reference_point"]
        if value is None:
            return None
        x, y = value
        return float(x), float(y)

    # =========================================================================
    # STAGES
    # =========================================================================

    @timer
    def build_stack(self, inputs: Mapping) -> FeatureStack:
        """Co-registered covariate stack with the class band."""
        self.builder = CovariateBuilder.from_config(self.config, inputs["study_area"], self.store)
        return self.builder.build_stack(
            elevation=inputs["elevation"],
            conductivity=inputs["conductivity"],
            hand=inputs["hand"],
            twi=inputs["twi"],
            landcover=inputs["landcover"],
            risk_zones=inputs["risk_zones"],
            drainage=inputs.get("drainage"),
            streams=inputs.get("streams"),
            distance=inputs.get("distance"),
        )

    def sample(self, stack: FeatureStack) -> gpd.GeoDataFrame:
        sampling = self.config["sampling"]
        sampler = LabelSampler(
            sampling["class_points"],
            self.feature_names,
            class_band=self.config["labels"]["class_band"],
            random_state=sampling["random_state"],
        )
        samples = sampler.sample(stack)
        samples.attrs["flags"] = dict(sampler.flags)
        return samples

    def refine(self, samples: pd.DataFrame) -> RefinementResult:
        pu = self.config["pu_learning"]
        refiner = PULabelRefiner(
            self.feature_names,
            label_column=self.config["labels"]["class_band"],
            output_column=pu["label_column"],
            spy_fraction=pu["spy_fraction"],
            threshold_policy=pu["threshold_policy"],
            threshold_k=pu["threshold_k"],
            threshold_percentile=pu["threshold_percentile"],
            oversample=pu["oversample"],
            smote_k_neighbors=pu["smote_k_neighbors"],
            min_positive_samples=pu["min_positive_samples"],
            random_state=pu["random_state"],
        )
        return refiner.refine(samples)

    def train(self, table: pd.DataFrame) -> FloodSusceptibilityModel:
        """Train and evaluate the random forest on the refined table."""
        settings = self.config["model"]
        params = dict(settings["params"])
        model = FloodSusceptibilityModel(
            self.feature_names,
            label_column=self.config["pu_learning"]["label_column"],
            n_estimators=params.pop("n_estimators"),
            random_state=params.pop("random_state"),
            test_size=settings["test_size"],
            min_samples_per_class=settings["min_samples_per_class"],
            cv_folds=settings["cv_folds"],
            smoothing_radius=self.config["smoothing"]["kernel_radius"],
            **params
        )
        model.prepare_training_data(table)
        model.train()
        model.evaluate()
        return model

    @timer
    def classify(
        self,
        stack: FeatureStack,
        model: FloodSusceptibilityModel,
        table: pd.DataFrame,
        reference_xy: Optional[Tuple[float, float]]
    ) -> Dict[str, ClassifiedRaster]:
        """HAND slices, the cluster model and the random forest."""
        logger.info("=" * 60)
        logger.info("CLASSIFYING")
        logger.info("=" * 60)

        hand = self.config["hand"]
        classified = {}
        for threshold in hand["thresholds_m"]:
            classifier = HandThresholdClassifier(threshold, band=hand["band"])
            classified[classifier.method] = classifier.classify(stack)

        clustering = self.config["clustering"]
        clusterer = ClusterClassifier(
            clustering["bands"],
            k_min=clustering["k_min"],
            k_max=clustering["k_max"],
            random_state=clustering["random_state"],
            smoothing_radius=self.config["smoothing"]["kernel_radius"],
            min_support_px=clustering["min_support_px"],
        )
        clusterer.fit(table)
        classified["cluster"] = clusterer.classify(stack, reference_xy)

        classified["rf"] = model.predict_raster(stack)
        return classified

    def extract_hotspots(
        self,
        classified: Mapping[str, ClassifiedRaster],
        urban: np.ndarray
    ) -> Dict[str, HotspotResult]:
        hotspots = self.config["hotspots"]
        extractor = HotspotExtractor(
            connectivity=hotspots["connectivity"],
            max_component_size=hotspots["max_component_size"],
            min_area_m2=hotspots["min_area_m2"],
        )
        return extractor.extract_all(classified, urban)

    def index_susceptibility(
        self,
        stack: FeatureStack,
        model: FloodSusceptibilityModel,
        reference_mask: np.ndarray
    ) -> SusceptibilitySurface:
        susceptibility = self.config["susceptibility"]
        indexer = SusceptibilityIndexer(
            model.feature_weights(),
            directions=susceptibility["directions"],
            smoothing_radius=self.config["smoothing"]["kernel_radius"],
        )
        urban_class = self.config["labels"]["urban_class"] if susceptibility["restrict_to_urban"] else None
        analysis = indexer.analysis_mask(stack, reference_mask, urban_class=urban_class)
        return indexer.compute(stack, reference_mask, analysis)

    def separability(
        self,
        stack: FeatureStack,
        classified: Mapping[str, ClassifiedRaster],
        risk_zones
    ) -> gpd.GeoDataFrame:
        """Covariates and classifications of every pixel near the risk sectors."""
        buffer_m = self.config["separability"]["buffer_m"]
        region = self.vectors.buffer_union(risk_zones, buffer_m)
        inside = self.store.rasterize(region, stack.grid).astype(bool)

        hand = HandThresholdClassifier(max(self.config["hand"]["thresholds_m"])).method
        bands = {
            "classification": classified["rf"].data,
            "cluster": classified["cluster"].data,
            "classification_hand": classified[hand].data,
        }
        logger.info(f"Separability table: {buffer_m:g} m around the risk sectors, HAND from {hand}")
        return region_table(stack, inside, self.feature_names, bands)

    # =========================================================================
    # RUN
    # =========================================================================

    @timer
    def run(
        self,
        inputs: Mapping,
        output_dir: Optional[Union[str, Path]] = None,
        refined_table: Optional[Union[str, Path, pd.DataFrame]] = None,
        figures: Optional[bool] = None
    ) -> PipelineResult:
        """
        Run every stage, then write outputs.

        Parameters
        ----------
        inputs : mapping
            Layers / paths keyed by input name (see ``load_inputs``)
        output_dir : str or Path, optional
            Where to write results; nothing is written when None
        refined_table : str, Path or DataFrame, optional
            Externally refined training table; skips sampling and PU
            refinement
        figures : bool, optional
            Override ``VISUALIZATION.enabled``

        Returns
        -------
        PipelineResult
        """
        logger.info("=" * 60)
        logger.info("URBAN FLOOD SUSCEPTIBILITY PIPELINE")
        logger.info("=" * 60)

        resolved = self.load_inputs(inputs)
        stack = self.build_stack(resolved)

        samples, refinement = None, None
        if refined_table is None:
            samples = self.sample(stack)
            refinement = self.refine(samples)
            table = refinement.table
        elif isinstance(refined_table, pd.DataFrame):
            table = validate_table(
                refined_table, self.feature_names,
                label_column=self.config["pu_learning"]["label_column"], crs=stack.grid.crs,
                source="Refined table"
            )
        else:
            table = read_table(
                refined_table, self.feature_names,
                label_column=self.config["pu_learning"]["label_column"], crs=stack.grid.crs
            )

        model = self.train(table)
        classified = self.classify(stack, model, table, resolved["reference_point"])

        urban = urban_mask(stack["landcover"], self.config["labels"]["urban_class"])
        risk_mask = self.store.rasterize(resolved["risk_zones"], stack.grid).astype(bool)
        reference_mask = self.builder.reference_mask(resolved["risk_zones"])

        hotspots = self.extract_hotspots(classified, urban)
        coverage = coverage_report(classified, risk_mask, urban)

        surface = self.index_susceptibility(stack, model, reference_mask)
        levels = self.config["susceptibility"]["slice_levels"]

        separability = None
        if self.config["separability"]["enabled"]:
            separability = self.separability(stack, classified, resolved["risk_zones"])

        result = PipelineResult(
            stack=stack,
            training_table=table,
            model=model,
            classified=classified,
            hotspots=hotspots,
            coverage=coverage,
            surface=surface,
            statistics=surface.describe(),
            validation=surface.validate(risk_mask, levels, region=urban),
            urban=urban,
            risk_mask=risk_mask,
            reference_mask=reference_mask,
            samples=samples,
            refinement=refinement,
            separability=separability,
        )

        self._log_summary(result)
        if output_dir is not None:
            result.outputs = self.write_outputs(result, output_dir, figures)
        return result

    def _log_summary(self, result: PipelineResult):
        logger.info("=" * 60)
        logger.info("SUMMARY")
        logger.info("=" * 60)
        for _, row in result.coverage.iterrows():
            n = len(result.hotspots[row["method"]].hotspots)
            logger.info(f"  {row['method']:>8}: {n} hotspots, risk-zone coverage {row['coverage_pct']:.1f}%")
        stats = result.statistics
        if stats["count"]:
            logger.info(f"  Susceptibility: mean {stats['mean']:.3f}, median {stats['median']:.3f}")
        for key, value in result.flags().items():
            logger.warning(f"  Flag {key}: {value}")

    # =========================================================================
    # OUTPUTS
    # =========================================================================

    @timer
    def write_outputs(
        self,
        result: PipelineResult,
        output_dir: Union[str, Path],
        figures: Optional[bool] = None
    ) -> Dict[str, Path]:
        """Write rasters, tables, reports, the model and figures."""
        output_dir = ensure_dir(output_dir)
        dirs = {key: ensure_dir(output_dir / name) for key, name in OUTPUT_LAYOUT.items()}
        outputs: Dict[str, Path] = {}

        # Rasters
        outputs["stack"] = self.store.write_stack(result.stack, dirs["rasters"] / "feature_stack.tif")
        for method, raster in result.classified.items():
            outputs[f"raster.{method}"] = self.store.write(
                raster.layer, dirs["rasters"] / f"{method}.tif", dtype="uint8"
            )
        for method, hotspot in result.hotspots.items():
            outputs[f"hotspots.{method}"] = self.store.write(
                hotspot.raster.layer, dirs["rasters"] / f"{method}_hotspots.tif", dtype="uint8"
            )
        clusters = result.classified["cluster"].auxiliary.get("clusters")
        if clusters is not None:
            outputs["raster.cluster_id"] = self.store.write(
                clusters, dirs["rasters"] / "cluster_id.tif", dtype="int16"
            )
        outputs["susceptibility"] = self.store.write(
            result.surface.layer, dirs["rasters"] / "susceptibility.tif"
        )

        # Tables
        if result.samples is not None:
            outputs["samples"] = write_table(result.samples, dirs["tables"] / "samples.csv")
        outputs["training_table"] = write_table(result.training_table, dirs["tables"] / "training_table.csv")
        if result.separability is not None:
            outputs["separability"] = write_table(result.separability, dirs["tables"] / "separability.csv")

        frames = [h.to_frame() for h in result.hotspots.values()]
        hotspot_table = dirs["tables"] / "hotspots.csv"
        pd.concat(frames, ignore_index=True).to_csv(hotspot_table, index=False)
        outputs["hotspot_table"] = hotspot_table

        coverage_path = dirs["tables"] / "coverage.csv"
        result.coverage.to_csv(coverage_path, index=False)
        outputs["coverage"] = coverage_path

        weights_path = dirs["tables"] / "feature_weights.csv"
        result.surface.weights.to_frame().to_csv(weights_path, index=False)
        outputs["feature_weights"] = weights_path

        # Reports
        outputs["statistics"] = save_json(result.statistics, dirs["tables"] / "susceptibility_statistics.json")
        report = {
            "created": get_timestamp(),
            "metrics": result.metrics,
            "validation": result.validation,
            "normalization_bounds": {k: list(v) for k, v in result.surface.bounds.items()},
            "methods": {m: dict(r.parameters) for m, r in result.classified.items()},
            "flags": result.flags(),
        }
        if result.refinement is not None:
            report["pu_refinement"] = result.refinement.summary()
        outputs["report"] = save_json(report, dirs["tables"] / "run_report.json")

        for key, path in result.model.save_model(dirs["models"]).items():
            outputs[f"model.{key}"] = path

        visualization = self.config["visualization"]
        if visualization["enabled"] if figures is None else figures:
            viz = Visualizer(
                dirs["figures"],
                dpi=visualization["figure_dpi"],
                format=visualization["figure_format"],
                colormap=visualization["colormap"],
            )
            created = viz.create_all_figures(
                {
                    "feature_importance": result.model.feature_importance,
                    "metrics": result.metrics,
                    "surface": result.surface,
                    "hotspots": result.hotspots,
                    "urban": result.urban,
                    "coverage": result.coverage,
                },
                slice_levels=self.config["susceptibility"]["slice_levels"],
                fps=visualization["animation_fps"],
            )
            outputs.update({f"figure.{k}": v for k, v in created.items()})

        logger.info(f"Wrote {len(outputs)} outputs to {output_dir}")
        return outputs

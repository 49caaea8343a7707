"""
Tests for urban_flood.sampling
==============================
"""

import numpy as np
import pandas as pd
import geopandas as gpd
import pytest
from shapely.geometry import Point

from urban_flood.config import FEATURE_BANDS
from urban_flood.exceptions import ConfigurationError, SchemaError
from urban_flood.sampling import LabelSampler, read_table, region_table, validate_table, write_table


def _sampler(class_points=None, seed: int = 42) -> LabelSampler:
    return LabelSampler(class_points or {0: 300, 1: 40}, FEATURE_BANDS, random_state=seed)


# ---------------------------------------------------------------------------
# Stratified sampling
# ---------------------------------------------------------------------------

class TestLabelSampler:
    def test_counts_and_columns(self, demo_stack) -> None:
        samples = _sampler().sample(demo_stack)

        assert (samples["classes"] == 0).sum() == 300
        assert (samples["classes"] == 1).sum() == 40
        assert list(samples.columns[:len(FEATURE_BANDS)]) == FEATURE_BANDS
        assert {"classes", "x", "y", "geometry"} <= set(samples.columns)
        assert not samples[FEATURE_BANDS].isna().any().any()

    def test_samples_lie_on_labeled_pixels(self, demo_stack) -> None:
        samples = _sampler().sample(demo_stack)
        classes = demo_stack["classes"]

        for x, y, label in zip(samples["x"], samples["y"], samples["classes"]):
            row, col = demo_stack.grid.rowcol(x, y)
            assert classes.valid[row, col]
            assert classes.data[row, col] == label

    def test_same_seed_same_sample(self, demo_stack) -> None:
        a = _sampler(seed=7).sample(demo_stack)
        b = _sampler(seed=7).sample(demo_stack)
        c = _sampler(seed=8).sample(demo_stack)

        pd.testing.assert_frame_equal(pd.DataFrame(a.drop(columns="geometry")),
                                      pd.DataFrame(b.drop(columns="geometry")))
        assert not np.array_equal(a["x"].to_numpy(), c["x"].to_numpy())

    def test_shortfall_returns_all_and_warns(self, demo_stack, caplog) -> None:
        sampler = _sampler({0: 10, 1: 10**6})
        samples = sampler.sample(demo_stack)

        available = int(np.sum(
            (demo_stack["classes"].data.filled(-1) == 1) & demo_stack.valid_mask(FEATURE_BANDS)
        ))
        assert (samples["classes"] == 1).sum() == available
        assert sampler.flags["class_1_short"] == {"requested": 10**6, "available": available}
        assert "only" in caplog.text

    def test_zero_request_returns_no_rows_for_class(self, demo_stack) -> None:
        samples = _sampler({0: 0, 1: 5}).sample(demo_stack)
        assert len(samples) == 5
        assert set(samples["classes"]) == {1}

    def test_negative_count_raises(self) -> None:
        with pytest.raises(ConfigurationError):
            _sampler({0: -1})

    def test_empty_request_raises(self) -> None:
        with pytest.raises(ConfigurationError):
            LabelSampler({}, FEATURE_BANDS)


# ---------------------------------------------------------------------------
# Region tables
# ---------------------------------------------------------------------------

class TestRegionTable:
    def test_every_region_pixel_with_extra_bands(self, demo_stack) -> None:
        shape = demo_stack.grid.shape
        region = np.zeros(shape, dtype=bool)
        region[10:20, 30:45] = True
        mask = np.zeros(shape, dtype=bool)
        mask[:, :35] = True
        band = np.ma.array(np.ones(shape, dtype=int), mask=mask)

        table = region_table(demo_stack, region, FEATURE_BANDS, {"classification": band})

        assert list(table.columns) == FEATURE_BANDS + ["classification", "x", "y", "geometry"]
        assert len(table) == int((region & demo_stack.valid_mask(FEATURE_BANDS)).sum()) > 0
        assert not table[FEATURE_BANDS].isna().any().any()
        for x, y, value in zip(table["x"], table["y"], table["classification"]):
            row, col = demo_stack.grid.rowcol(x, y)
            assert region[row, col]
            assert value == (0 if col < 35 else 1)

    def test_region_shape_mismatch_raises(self, demo_stack) -> None:
        with pytest.raises(ConfigurationError, match="Region mask"):
            region_table(demo_stack, np.ones((3, 3), dtype=bool), FEATURE_BANDS)


# ---------------------------------------------------------------------------
# Table export / import
# ---------------------------------------------------------------------------

class TestTables:
    def test_csv_round_trip(self, demo_stack, tmp_path) -> None:
        samples = _sampler().sample(demo_stack)
        path = write_table(samples, tmp_path / "samples.csv")

        loaded = read_table(path, FEATURE_BANDS, "classes", crs=demo_stack.grid.crs)

        assert len(loaded) == len(samples)
        assert loaded["classes"].dtype.kind == "i"
        assert loaded.geometry.iloc[0].x == pytest.approx(samples["x"].iloc[0])

    def test_gpkg_round_trip(self, demo_stack, tmp_path) -> None:
        samples = _sampler({0: 20, 1: 10}).sample(demo_stack)
        path = write_table(samples, tmp_path / "samples.gpkg")

        loaded = read_table(path, FEATURE_BANDS, "classes")

        assert len(loaded) == 30
        assert loaded.crs.to_epsg() == 31983

    def test_missing_column_raises(self, tmp_path) -> None:
        path = tmp_path / "bad.csv"
        pd.DataFrame({"hand": [1.0], "classes": [1], "x": [0.0], "y": [0.0]}).to_csv(path, index=False)
        with pytest.raises(SchemaError, match="missing columns"):
            read_table(path, FEATURE_BANDS, "classes")

    def test_non_binary_labels_raise(self, tmp_path) -> None:
        path = tmp_path / "bad.csv"
        pd.DataFrame({"hand": [1.0, 2.0], "new_class": [0, 2], "x": [0.0, 1.0], "y": [0.0, 1.0]}).to_csv(
            path, index=False
        )
        with pytest.raises(SchemaError, match="0/1"):
            read_table(path, ["hand"], "new_class")

    def test_missing_values_raise(self, tmp_path) -> None:
        path = tmp_path / "bad.csv"
        pd.DataFrame({"hand": [np.nan], "new_class": [1], "x": [0.0], "y": [0.0]}).to_csv(path, index=False)
        with pytest.raises(SchemaError, match="missing values"):
            read_table(path, ["hand"], "new_class")

    def test_validate_in_memory_table(self) -> None:
        frame = pd.DataFrame({"hand": [1.0, 2.0], "new_class": [0.0, 1.0], "x": [5.0, 15.0], "y": [5.0, 5.0]})

        table = validate_table(frame, ["hand"], "new_class", crs="EPSG:31983")

        assert table["new_class"].tolist() == [0, 1]
        assert table.crs.to_epsg() == 31983
        assert table.geometry.iloc[1].x == pytest.approx(15.0)
        assert frame["new_class"].dtype.kind == "f"

    def test_validate_takes_coordinates_from_geometry(self) -> None:
        frame = gpd.GeoDataFrame({"hand": [1.0], "new_class": [1]},
                                 geometry=[Point(240005.0, 9675995.0)], crs="EPSG:31983")
        table = validate_table(frame, ["hand"], "new_class")
        assert table["x"].iloc[0] == pytest.approx(240005.0)

    def test_validate_rejects_leftover_unlabeled_rows(self) -> None:
        frame = pd.DataFrame({"hand": [1.0, 2.0], "new_class": [1, -1], "x": [0.0, 1.0], "y": [0.0, 1.0]})
        with pytest.raises(SchemaError, match="0/1"):
            validate_table(frame, ["hand"], "new_class", source="Refined table")

    def test_unknown_format_raises(self, tmp_path) -> None:
        with pytest.raises(ConfigurationError):
            write_table(pd.DataFrame({"a": [1]}), tmp_path / "table.parquet")

    def test_missing_file_raises(self, tmp_path) -> None:
        with pytest.raises(ConfigurationError):
            read_table(tmp_path / "none.csv", ["hand"], "new_class")

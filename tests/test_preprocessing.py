"""
Tests for urban_flood.preprocessing
===================================
"""

import numpy as np
import pytest
import geopandas as gpd
import rasterio
from shapely.geometry import LineString, Point, box

from urban_flood.exceptions import ConfigurationError, GridAlignmentError, RasterIOError
from urban_flood.preprocessing import RasterStore, VectorStore, as_geometry_list
from urban_flood.raster import RasterLayer

from conftest import CRS, ORIGIN, make_grid, make_stack


def _ramp_layer(name: str = "elevation", width: int = 6, height: int = 4, resolution: float = 10.0) -> RasterLayer:
    grid = make_grid(width, height, resolution=resolution)
    values = np.arange(width * height, dtype=float).reshape(height, width)
    return RasterLayer(name, np.ma.array(values, mask=False), grid)


# ---------------------------------------------------------------------------
# GeoTIFF I/O
# ---------------------------------------------------------------------------

class TestRasterIO:
    def test_write_then_load_keeps_grid_and_mask(self, tmp_path) -> None:
        store = RasterStore()
        layer = _ramp_layer()
        layer.data[1, 2] = np.ma.masked

        path = store.write(layer, tmp_path / "elevation.tif")
        loaded = store.load(path)

        assert loaded.name == "elevation"
        assert loaded.grid.is_aligned_with(layer.grid)
        assert not loaded.valid[1, 2]
        assert loaded.data[3, 5] == pytest.approx(23.0)

    def test_load_masks_extra_sentinel(self, tmp_path) -> None:
        store = RasterStore()
        layer = _ramp_layer()
        layer.data[0, 0] = 1000.0
        path = store.write(layer, tmp_path / "ksat.tif")

        loaded = store.load(path, nodata=1000.0)
        assert not loaded.valid[0, 0]
        assert loaded.valid[0, 1]

    def test_missing_file_raises(self, tmp_path) -> None:
        with pytest.raises(RasterIOError):
            RasterStore().load(tmp_path / "missing.tif")

    def test_uint8_layer_uses_its_own_nodata(self, tmp_path) -> None:
        grid = make_grid(3, 2)
        data = np.ma.array(np.array([[0, 1, 1], [0, 0, 1]], dtype=np.uint8),
                           mask=[[False, False, True], [False, False, False]])
        layer = RasterLayer("rf", data, grid, 255)

        path = RasterStore().write(layer, tmp_path / "rf.tif", dtype="uint8")
        with rasterio.open(path) as src:
            assert src.nodata == 255
            assert src.read(1)[0, 2] == 255
            assert src.descriptions[0] == "rf"

    def test_write_stack_sets_descriptions_and_freezes(self, tmp_path) -> None:
        grid = make_grid(3, 3)
        stack = make_stack(grid, hand=np.ones((3, 3)), twi=np.full((3, 3), 7.0))

        path = RasterStore().write_stack(stack, tmp_path / "stack.tif")

        with rasterio.open(path) as src:
            assert src.count == 2
            assert src.descriptions == ("hand", "twi")
            assert src.read(2)[1, 1] == pytest.approx(7.0)
        assert stack.frozen
        with pytest.raises(GridAlignmentError):
            stack.add_band(RasterLayer("slope", np.zeros((3, 3)), grid))


# ---------------------------------------------------------------------------
# Grid operations
# ---------------------------------------------------------------------------

class TestGridOperations:
    def test_reproject_30m_to_10m(self) -> None:
        coarse = RasterLayer("ksat", np.full((4, 4), 5.0), make_grid(4, 4, resolution=30.0))
        target = make_grid(12, 12)

        fine = RasterStore().reproject_to_grid(coarse, target, resampling="nearest")

        assert fine.grid.is_aligned_with(target)
        assert fine.data.shape == (12, 12)
        assert np.allclose(fine.data.compressed(), 5.0)
        assert fine.valid.all()

    def test_reproject_unknown_resampling_raises(self) -> None:
        layer = _ramp_layer()
        with pytest.raises(ConfigurationError):
            RasterStore().reproject_to_grid(layer, make_grid(3, 3), resampling="lanczos9")

    def test_aligned_reprojection_copies(self) -> None:
        layer = _ramp_layer()
        copy = RasterStore().reproject_to_grid(layer, layer.grid, name="dem")
        copy.data[0, 0] = -1.0
        assert copy.name == "dem"
        assert layer.data[0, 0] == 0.0

    def test_clip_masks_cells_outside_geometry(self) -> None:
        layer = _ramp_layer(width=4, height=4)
        left, top = ORIGIN
        clipped = RasterStore().clip_to_geometry(layer, box(left, top - 20, left + 20, top))

        assert clipped.valid[:2, :2].all()
        assert int(clipped.valid.sum()) == 4

    def test_clip_to_empty_geometry_raises(self) -> None:
        with pytest.raises(ConfigurationError):
            RasterStore().clip_to_geometry(_ramp_layer(), [])

    def test_check_overlap_raises_for_disjoint_layer(self) -> None:
        layer = _ramp_layer()
        with pytest.raises(ConfigurationError, match="does not intersect"):
            RasterStore().check_overlap(layer, box(0, 0, 10, 10), layer.grid.crs)

    def test_rasterize_polygon(self) -> None:
        grid = make_grid(5, 5)
        left, top = ORIGIN
        burned = RasterStore().rasterize(box(left, top - 30, left + 20, top), grid)

        assert burned.dtype == np.uint8
        assert int(burned.sum()) == 6
        assert burned[:3, :2].all()

    def test_rasterize_nothing_returns_fill(self) -> None:
        burned = RasterStore().rasterize([], make_grid(3, 3), fill=0)
        assert not burned.any()

    def test_zonal_statistics(self) -> None:
        layer = _ramp_layer(width=3, height=2)
        layer.data[0, 1] = np.ma.masked
        zone = np.array([[True, True, False], [True, False, False]])

        stats = RasterStore().zonal_statistics(layer, zone)

        assert stats["count"] == 2
        assert stats["sum"] == pytest.approx(3.0)
        assert stats["min"] == 0.0
        assert stats["max"] == 3.0

    def test_zonal_statistics_of_empty_zone(self) -> None:
        stats = RasterStore().zonal_statistics(_ramp_layer(), np.zeros((4, 6), dtype=bool))
        assert stats["count"] == 0
        assert np.isnan(stats["mean"])


# ---------------------------------------------------------------------------
# Vectors
# ---------------------------------------------------------------------------

class TestVectorStore:
    def test_load_reprojects_and_drops_empty(self, tmp_path) -> None:
        gdf = gpd.GeoDataFrame(
            {"tipolo_g1": ["Inundação", "Inundação"]},
            geometry=[Point(-47.35, -2.99).buffer(0.001), Point(-47.36, -2.98).buffer(0.001)],
            crs="EPSG:4326",
        )
        path = tmp_path / "sectors.gpkg"
        gdf.to_file(path, driver="GPKG")

        loaded = VectorStore(CRS).load(path)

        assert loaded.crs.to_epsg() == 31983
        assert len(loaded) == 2
        assert loaded.total_bounds[0] > 100000

    def test_load_missing_file_raises(self, tmp_path) -> None:
        with pytest.raises(ConfigurationError):
            VectorStore(CRS).load(tmp_path / "nope.gpkg")

    def test_prepare_requires_crs(self) -> None:
        with pytest.raises(ConfigurationError):
            VectorStore(CRS).prepare(gpd.GeoDataFrame(geometry=[Point(0, 0)]))

    def test_filter_equals(self, study) -> None:
        vectors = VectorStore(CRS)
        floods = vectors.filter_equals(study["risk_zones"], "tipolo_g1", "Inundação")
        assert sorted(floods["sector"]) == ["A", "B"]

    def test_filter_unknown_column_raises(self, study) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            VectorStore(CRS).filter_equals(study["risk_zones"], "tipo", "Inundação")

    def test_filter_without_matches_raises(self, study) -> None:
        with pytest.raises(ConfigurationError, match="No features"):
            VectorStore(CRS).filter_equals(study["risk_zones"], "tipolo_g1", "Erosão")

    def test_buffer_union_dissolves(self) -> None:
        merged = VectorStore(CRS).buffer_union([Point(0, 0), Point(1, 0)], 1.0)
        assert merged.geom_type == "Polygon"

    def test_empty_intersection_raises(self) -> None:
        with pytest.raises(ConfigurationError, match="Empty"):
            VectorStore.intersection(box(0, 0, 1, 1), box(5, 5, 6, 6))

    def test_intersection(self) -> None:
        result = VectorStore.intersection(box(0, 0, 2, 2), LineString([(1, -1), (1, 3)]))
        assert result.length == pytest.approx(2.0)

    def test_as_geometry_list_skips_empty(self) -> None:
        assert as_geometry_list(None) == []
        assert as_geometry_list(Point(0, 0).buffer(0)) == []
        assert len(as_geometry_list([Point(0, 0), None, box(0, 0, 1, 1)])) == 2

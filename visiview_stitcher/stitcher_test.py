import pathlib
import unittest

import numpy as np
import tifffile
from ome_zarr.io import parse_url
from ome_zarr.reader import Reader

from .engine import FusionMode
from .errors import FormatIncompatibilityError, GeometryError
from .illumination import IlluminationCorrection, gaussian_2d
from .image_loaders import DatasetShape, DatasetSource
from .parameters import OutputFormat, OutputMode, OverlapMode
from .positions import CalibrationModel, Provenance
from .stitcher import (
    ProgressCallbacks,
    Stitcher,
    StitchPath,
    StitchState,
    dimensionality_for,
    select_stitch_path,
)
from .testutil import (
    InMemorySeriesSource,
    as_tile,
    descriptor_entries,
    temporary_dataset_params,
    textured_image,
    write_descriptor,
    write_stage_file,
)

TILE = 100
# Grid names place neighbours at 90% of the tile size.
STEP = 90


def _grid(world: np.ndarray, n_rows: int, n_cols: int) -> tuple[list[np.ndarray], list[str]]:
    tiles, names = [], []
    for r in range(n_rows):
        for c in range(n_cols):
            y, x = r * STEP, c * STEP
            tiles.append(as_tile(world[y : y + TILE, x : x + TILE]))
            names.append(f"Row{r}_Col{c}")
    return tiles, names


def _stitcher(params, source: InMemorySeriesSource, callbacks=None) -> Stitcher:
    return Stitcher(
        params, callbacks or ProgressCallbacks.no_op(), source_factory=lambda _p: source
    )


class StitchPathTest(unittest.TestCase):
    def shape(self, series_count: int, size_z: int) -> DatasetShape:
        return DatasetShape(series_count=series_count, size_x=8, size_y=8, size_z=size_z)

    def test_single_stack(self) -> None:
        self.assertEqual(
            select_stitch_path(self.shape(1, 5), OverlapMode.full, OutputMode.full),
            StitchPath.SINGLE_STACK,
        )

    def test_projection_requested(self) -> None:
        self.assertEqual(
            select_stitch_path(self.shape(1, 5), OverlapMode.via_mip, OutputMode.full),
            StitchPath.MIP,
        )
        self.assertEqual(
            select_stitch_path(self.shape(4, 5), OverlapMode.none, OutputMode.mip),
            StitchPath.MIP,
        )

    def test_full_volume(self) -> None:
        self.assertEqual(
            select_stitch_path(self.shape(4, 5), OverlapMode.full, OutputMode.full),
            StitchPath.FULL_VOLUME,
        )
        self.assertEqual(
            select_stitch_path(self.shape(1, 1), OverlapMode.none, OutputMode.full),
            StitchPath.FULL_VOLUME,
        )

    def test_dimensionality(self) -> None:
        flat = [np.zeros((1, 1, 1, 4, 4))]
        deep = [np.zeros((1, 1, 3, 4, 4))]
        self.assertEqual(dimensionality_for(StitchPath.FULL_VOLUME, flat), 2)
        self.assertEqual(dimensionality_for(StitchPath.FULL_VOLUME, deep), 3)
        self.assertEqual(dimensionality_for(StitchPath.MIP, deep), 2)
        self.assertEqual(dimensionality_for(StitchPath.SINGLE_STACK, deep), 2)

    def test_compute_mip(self) -> None:
        series = np.zeros((2, 1, 3, 2, 2), dtype=np.uint16)
        series[0, 0, 1] = [[1, 5], [2, 0]]
        series[0, 0, 2] = [[4, 1], [0, 3]]
        mip = Stitcher.compute_mip(series)
        self.assertEqual(mip.shape, (2, 1, 1, 2, 2))
        np.testing.assert_array_equal(mip[0, 0, 0], [[4, 5], [2, 3]])
        with self.assertRaises(ValueError):
            Stitcher.compute_mip(np.zeros((0, 1, 1, 2, 2)))


class StitcherTest(unittest.TestCase):
    def setUp(self) -> None:
        self.world = textured_image(STEP + TILE, STEP + TILE, seed=7)

    def test_grid_dataset(self) -> None:
        tiles, names = _grid(self.world, 2, 2)
        source = InMemorySeriesSource(tiles, names)
        progress = []
        finished = []
        callbacks = ProgressCallbacks.no_op()
        callbacks.update_progress = lambda done, total: progress.append((done, total))
        callbacks.finished = finished.append

        with temporary_dataset_params(names, fusion_mode=FusionMode.overlap_only) as params:
            stitcher = _stitcher(params, source, callbacks)
            resolution = stitcher.load_dataset()
            self.assertEqual(stitcher.state, StitchState.READY)
            self.assertEqual(resolution.provenance, Provenance.GRID)
            self.assertTrue(stitcher.preview.any())
            self.assertEqual(source.read_calls, 0)

            result = stitcher.run()

        self.assertEqual(stitcher.state, StitchState.FUSED)
        self.assertEqual(result.path, StitchPath.FULL_VOLUME)
        self.assertEqual(result.dimensionality, 2)
        self.assertEqual(result.tile_names, names)
        self.assertEqual(source.read_calls, 4)
        self.assertTrue(source.closed)
        self.assertEqual(progress[-1], (4, 4))
        self.assertEqual(finished, [result])
        self.assertEqual(result.image.dtype, np.uint16)
        np.testing.assert_array_equal(result.image[0, 0, 0], self.world)

    def test_registration_with_blending(self) -> None:
        tiles, names = _grid(self.world, 2, 2)
        source = InMemorySeriesSource(tiles, names)
        with temporary_dataset_params(names, overlap_mode=OverlapMode.full) as params:
            result = _stitcher(params, source).run()
        offsets = np.array([m.offset for m in result.models])
        np.testing.assert_allclose(offsets, [[0, 0], [90, 0], [0, 90], [90, 90]], atol=0.5)
        np.testing.assert_allclose(result.image[0, 0, 0], self.world, atol=1)

    def test_unresolved_positions_fail_before_reading(self) -> None:
        tiles, _names = _grid(self.world, 1, 2)
        source = InMemorySeriesSource(tiles, ["Position 1", "Position 2"])
        with temporary_dataset_params(["Position 1", "Position 2"]) as params:
            stitcher = _stitcher(params, source)
            resolution = stitcher.load_dataset()
            self.assertTrue(resolution.stage_file_required)
            self.assertEqual(stitcher.state, StitchState.AWAITING_POSITIONS)
            with self.assertRaises(GeometryError) as cm:
                stitcher.run()
        self.assertIn("Initial tile positions cannot be determined", str(cm.exception))
        self.assertEqual(source.read_calls, 0)
        self.assertEqual(stitcher.state, StitchState.AWAITING_POSITIONS)

    def test_offset_count_mismatch_fails_before_reading(self) -> None:
        tiles = [np.zeros((1, 2, 1, 16, 16), dtype=np.uint16) for _ in range(2)]
        names = ["Row0_Col0", "Row0_Col1"]
        source = InMemorySeriesSource(tiles, names)
        with temporary_dataset_params(
            names,
            illumination_correction=IlluminationCorrection.estimated,
            illumination_offsets="100,200,300",
        ) as params:
            stitcher = _stitcher(params, source)
            with self.assertRaises(GeometryError):
                stitcher.run()
        self.assertEqual(source.read_calls, 0)

    def test_illumination_channel_out_of_range(self) -> None:
        tiles = [np.zeros((1, 1, 1, 16, 16), dtype=np.uint16)]
        source = InMemorySeriesSource(tiles, ["Row0_Col0"])
        with temporary_dataset_params(
            ["Row0_Col0"],
            illumination_correction=IlluminationCorrection.estimated,
            illumination_channel=3,
        ) as params:
            with self.assertRaises(GeometryError):
                _stitcher(params, source).run()
        self.assertEqual(source.read_calls, 0)

    def test_read_failure_fails_run(self) -> None:
        tiles, names = _grid(self.world, 1, 2)
        error = FormatIncompatibilityError("corrupt tile")
        source = InMemorySeriesSource(tiles, names, fail_on_read=error)
        with temporary_dataset_params(names) as params:
            stitcher = _stitcher(params, source)
            with self.assertRaises(FormatIncompatibilityError):
                stitcher.run()
        self.assertEqual(stitcher.state, StitchState.FAILED)
        self.assertIs(stitcher.failure, error)
        self.assertTrue(source.closed)

    def test_unreadable_dataset(self) -> None:
        def factory(_params):
            raise FormatIncompatibilityError("no reader")

        with temporary_dataset_params(["Row0_Col0"]) as params:
            stitcher = Stitcher(params, ProgressCallbacks.no_op(), source_factory=factory)
            resolution = stitcher.load_dataset()
            self.assertFalse(resolution.resolved)
            self.assertEqual(stitcher.state, StitchState.AWAITING_DATASET)
            with self.assertRaises(FormatIncompatibilityError):
                stitcher.run()

    def test_stage_file_positions(self) -> None:
        tiles, _names = _grid(self.world, 1, 2)
        names = ["Position 1", "Position 2"]
        source = InMemorySeriesSource(tiles, names, calibration=CalibrationModel(0.5, 0.5))
        with temporary_dataset_params(names, fusion_mode=FusionMode.overlap_only) as params:
            # Found next to "experiment_1.nd" without being configured.
            write_stage_file(
                pathlib.Path(params.descriptor_file).parent / "experiment_.stg",
                [("Position 1", 0.0, 0.0), ("Position 2", STEP * 0.5, 0.0)],
            )
            stitcher = _stitcher(params, source)
            resolution = stitcher.load_dataset()
            self.assertEqual(resolution.provenance, Provenance.STAGE_FILE)
            result = stitcher.run()
        self.assertEqual(result.image.shape, (1, 1, 1, TILE, STEP + TILE))
        np.testing.assert_array_equal(result.image[0, 0, 0], self.world[:TILE])

    def test_late_stage_file_and_calibration(self) -> None:
        tiles, _names = _grid(self.world, 1, 2)
        names = ["A", "B"]
        source = InMemorySeriesSource(tiles, names)
        with temporary_dataset_params(names) as params:
            stage_file = write_stage_file(
                pathlib.Path(params.descriptor_file).parent / "positions.stg",
                [("A", 0.0, 0.0), ("B", 45.0, 0.0)],
            )
            stitcher = _stitcher(params, source)
            stitcher.load_dataset()
            self.assertEqual(stitcher.state, StitchState.AWAITING_POSITIONS)

            resolution = stitcher.set_stage_file(stage_file)
            self.assertFalse(resolution.resolved)
            self.assertIn("calibration", stitcher.message)

            resolution = stitcher.update_calibration(0.5)
            self.assertTrue(resolution.resolved)
            self.assertEqual(stitcher.state, StitchState.READY)
            self.assertEqual(stitcher.calibration, CalibrationModel(0.5, 0.5, 1.0))
            self.assertEqual(resolution.positions[1].x, 90.0)

            self.assertTrue(stitcher.preview.any())

            stitcher.update_calibration(-1.0)
            self.assertEqual(stitcher.state, StitchState.AWAITING_POSITIONS)
            self.assertFalse(stitcher.preview.any())

    def test_calibration_survives_rerun(self) -> None:
        tiles, _names = _grid(self.world, 1, 2)
        names = ["A", "B"]
        source = InMemorySeriesSource(tiles, names)
        with temporary_dataset_params(names, fusion_mode=FusionMode.overlap_only) as params:
            stage_file = write_stage_file(
                pathlib.Path(params.descriptor_file).parent / "positions.stg",
                [("A", 0.0, 0.0), ("B", 45.0, 0.0)],
            )
            stitcher = _stitcher(params, source)
            stitcher.load_dataset()
            stitcher.set_stage_file(stage_file)
            stitcher.update_calibration(0.5)

            first = stitcher.run()
            self.assertEqual(stitcher.state, StitchState.FUSED)
            second = stitcher.run()
        self.assertEqual(stitcher.state, StitchState.FUSED)
        self.assertEqual(stitcher.calibration, CalibrationModel(0.5, 0.5, 1.0))
        np.testing.assert_array_equal(first.image, second.image)

    def test_calibration_override(self) -> None:
        tiles, names = _grid(self.world, 1, 1)
        source = InMemorySeriesSource(
            tiles, names, calibration=CalibrationModel(0.3, 0.3, 2.0)
        )
        with temporary_dataset_params(names, pixel_spacing_x=0.65) as params:
            stitcher = _stitcher(params, source)
            stitcher.load_dataset()
        self.assertEqual(stitcher.calibration, CalibrationModel(0.65, 0.65, 2.0))

    def test_single_stack(self) -> None:
        volume = np.stack([self.world[:TILE, z * STEP // 2 : z * STEP // 2 + TILE] for z in range(3)])
        source = InMemorySeriesSource(
            [as_tile(volume)], ["Stack"], calibration=CalibrationModel(1.0, 1.0)
        )
        with temporary_dataset_params(
            ["Stack"], name="stack_1.nd", fusion_mode=FusionMode.overlap_only
        ) as params:
            write_stage_file(
                pathlib.Path(params.descriptor_file).parent / "stack_.stg",
                [(f"Z{z}", z * STEP / 2, 0.0) for z in range(3)],
            )
            result = _stitcher(params, source).run()
        self.assertEqual(result.path, StitchPath.SINGLE_STACK)
        self.assertEqual(source.read_calls, 1)
        self.assertEqual(len(result.models), 3)
        np.testing.assert_array_equal(result.image[0, 0, 0], self.world[:TILE, : STEP + TILE])

    def test_single_position_companion_stack(self) -> None:
        volume = np.stack([self.world[:TILE, z * STEP // 2 : z * STEP // 2 + TILE] for z in range(3)])
        with temporary_dataset_params(
            ["Stack"],
            name="stack_1.nd",
            dataset_source=DatasetSource.companion_files,
            fusion_mode=FusionMode.overlap_only,
            pixel_spacing_x=1.0,
        ) as params:
            directory = pathlib.Path(params.descriptor_file).parent
            write_descriptor(params.descriptor_file, descriptor_entries(["Stack"], z_series=True))
            tifffile.imwrite(directory / "stack_1.stk", volume)
            write_stage_file(
                directory / "stack_.stg",
                [(f"Z{z}", z * STEP / 2, 0.0) for z in range(3)],
            )
            stitcher = Stitcher(params)
            stitcher.load_dataset()
            self.assertEqual(stitcher.state, StitchState.READY)
            self.assertEqual(stitcher.shape.position_names, [])
            self.assertEqual(stitcher.resolution.provenance, Provenance.STAGE_FILE)
            result = stitcher.run()
        self.assertEqual(result.path, StitchPath.SINGLE_STACK)
        self.assertEqual(len(result.models), 3)
        np.testing.assert_array_equal(result.image[0, 0, 0], self.world[:TILE, : STEP + TILE])

    def test_full_volume_in_3d(self) -> None:
        tiles = [np.full((1, 1, 3, 20, 20), v, dtype=np.uint8) for v in (1, 2)]
        names = ["Row0_Col0", "Row0_Col1"]
        source = InMemorySeriesSource(tiles, names)
        with temporary_dataset_params(names, fusion_mode=FusionMode.max) as params:
            result = _stitcher(params, source).run()
        self.assertEqual(result.dimensionality, 3)
        self.assertEqual(result.models[1].offset, (18.0, 0.0, 0.0))
        self.assertEqual(result.image.shape, (1, 1, 3, 20, 38))
        self.assertEqual(result.image[0, 0, 2, 0, 19], 2)

    def test_mip_with_estimated_illumination(self) -> None:
        ys, xs = np.mgrid[0:40, 0:40]
        field = gaussian_2d(np.stack((xs, ys)), 1000.0, 20.0, 20.0, 1 / (2 * 20.0**2))
        series = np.stack([field * 0.5, field]).astype(np.uint16)[np.newaxis, np.newaxis]
        names = ["Row0_Col0", "Row0_Col1"]
        source = InMemorySeriesSource([series, series], names)
        with temporary_dataset_params(
            names,
            output_mode=OutputMode.mip,
            fusion_mode=FusionMode.overlap_only,
            illumination_correction=IlluminationCorrection.estimated,
        ) as params:
            result = _stitcher(params, source).run()
        self.assertEqual(result.path, StitchPath.MIP)
        self.assertEqual(result.illumination_field.shape, (40, 40))
        self.assertEqual(result.image.dtype, np.float32)
        self.assertEqual(result.image.shape, (1, 1, 1, 40, 76))
        np.testing.assert_allclose(result.image, 1000.0, rtol=0.02)

    def test_reference_illumination(self) -> None:
        tiles = [np.full((1, 1, 1, 4, 4), 12, dtype=np.uint16)]
        source = InMemorySeriesSource(tiles, ["Row0_Col0"])
        with temporary_dataset_params(["Row0_Col0"], illumination_offsets="2") as params:
            reference = pathlib.Path(params.descriptor_file).parent / "flat.tif"
            tifffile.imwrite(reference, np.full((4, 4), 0.5, dtype=np.float32))
            params.illumination_correction = IlluminationCorrection.from_file
            params.illumination_reference = reference
            result = _stitcher(params, source).run()
        np.testing.assert_allclose(result.image, 10.0)

    def test_coordinates_only(self) -> None:
        tiles, names = _grid(self.world, 1, 2)
        source = InMemorySeriesSource(tiles, names)
        with temporary_dataset_params(names, output_mode=OutputMode.coordinates) as params:
            stitcher = _stitcher(params, source)
            result = stitcher.run()
            self.assertIsNone(result.image)
            paths = stitcher.save(result)
            self.assertEqual(paths, [params.tile_configuration_path])
            lines = paths[0].read_text().splitlines()
        self.assertIn("dim = 2", lines)
        self.assertIn("Row0_Col0; ; (0.0000, 0.0000)", lines)
        self.assertIn("Row0_Col1; ; (90.0000, 0.0000)", lines)

    def test_save_ome_zarr(self) -> None:
        tiles, names = _grid(self.world, 2, 2)
        source = InMemorySeriesSource(
            tiles, names, calibration=CalibrationModel(0.5, 0.5), channel_names=["DAPI"]
        )
        with temporary_dataset_params(
            names, fusion_mode=FusionMode.overlap_only, num_pyramid_levels=2
        ) as params:
            stitcher = _stitcher(params, source)
            result = stitcher.run()
            paths = stitcher.save(result)
            self.assertEqual(len(paths), 2)
            self.assertEqual(result.output_paths, paths)
            output = paths[1]
            self.assertTrue(output.name.endswith(".ome.zarr"))

            im = next(Reader(parse_url(output))()).data[0]
            self.assertEqual(im.shape, (1, 1, 1, STEP + TILE, STEP + TILE))
            np.testing.assert_array_equal(im[0, 0, 0].compute(), self.world)

    def test_save_ome_tiff(self) -> None:
        tiles, names = _grid(self.world, 1, 2)
        source = InMemorySeriesSource(tiles, names, calibration=CalibrationModel(0.5, 0.5))
        with temporary_dataset_params(
            names, fusion_mode=FusionMode.overlap_only, output_format=OutputFormat.ome_tiff
        ) as params:
            stitcher = _stitcher(params, source)
            result = stitcher.run()
            output = stitcher.save(result)[1]
            self.assertTrue(output.name.endswith(".ome.tiff"))
            np.testing.assert_array_equal(tifffile.imread(output), result.image[0, 0, 0])

    def test_companion_file_dataset(self) -> None:
        world = textured_image(64, 122, seed=3)
        names = ["Row0_Col0", "Row0_Col1"]
        with temporary_dataset_params(
            names,
            dataset_source=DatasetSource.companion_files,
            fusion_mode=FusionMode.overlap_only,
        ) as params:
            directory = pathlib.Path(params.descriptor_file).parent
            tifffile.imwrite(directory / "experiment_1_s1.tif", world[:, :64])
            tifffile.imwrite(directory / "experiment_1_s2.tif", world[:, 58:])
            stitcher = Stitcher(params)
            stitcher.load_dataset()
            self.assertEqual(stitcher.shape.series_count, 2)
            result = stitcher.run()
        # Col1 lands at 0.9 * 64 = 57.6 px, rounded to whole pixels when fusing.
        self.assertEqual(result.image.shape, (1, 1, 1, 64, 122))
        np.testing.assert_array_equal(result.image[0, 0, 0], world)

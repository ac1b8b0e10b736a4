import json

import numpy as np
import pytest

from quality_criteria import MinimumSizeCriterion, TraversingCriterion
from volume_segmenter import VolumeSegmenter, build_parser, main


@pytest.fixture
def raw_volume():
    raw = np.zeros((4, 12, 12), dtype=np.float32)
    raw[:, 2:6, 2:10] = 1.0
    raw[:, 8:11, 3:9] = 0.6
    return raw


def test_default_criterion():
    assert isinstance(VolumeSegmenter().criterion, TraversingCriterion)


def test_process_volume_keeps_shape_and_background(raw_volume):
    segmenter = VolumeSegmenter(n_segments=12, threshold=0.3)

    labels = segmenter.process_volume(raw_volume)

    assert labels.shape == raw_volume.shape
    assert np.all(labels[raw_volume <= 0.3] == 0)
    assert np.all(labels[raw_volume > 0.3] > 0)


def test_traversing_merge_leaves_full_depth_regions(raw_volume):
    segmenter = VolumeSegmenter(n_segments=24, threshold=0.3)

    labels = segmenter.process_volume(raw_volume)

    for label in segmenter.summarize(labels):
        z_planes = np.unique(np.nonzero(labels == label)[0])
        assert z_planes.tolist() == [0, 1, 2, 3]


def test_process_volume_rejects_2d():
    with pytest.raises(ValueError):
        VolumeSegmenter().process_volume(np.zeros((4, 4)))


def test_preprocess_downscales_large_slices():
    segmenter = VolumeSegmenter(max_slice_dim=4)
    volume = np.ones((2, 8, 16), dtype=np.uint8)

    resized, scaling_factor = segmenter.preprocess_volume(volume)

    assert scaling_factor == 0.25
    assert resized.shape == (2, 2, 4)
    assert resized.dtype == np.float32


def test_preprocess_keeps_small_slices():
    segmenter = VolumeSegmenter(max_slice_dim=16)
    volume = np.ones((2, 8, 16), dtype=np.uint16)

    resized, scaling_factor = segmenter.preprocess_volume(volume)

    assert scaling_factor == 1.0
    assert resized.shape == volume.shape


def test_restore_labels_nearest():
    segmenter = VolumeSegmenter()
    labels = np.array([[[1, 2], [3, 4]]], dtype=np.int64)

    restored = segmenter.restore_labels(labels, (1, 4, 4), 0.5)

    assert restored.shape == (1, 4, 4)
    assert set(np.unique(restored)) == {1, 2, 3, 4}
    assert restored[0, 0, 0] == 1 and restored[0, 3, 3] == 4


def test_downscaled_run_restores_original_shape(raw_volume):
    segmenter = VolumeSegmenter(n_segments=8, threshold=0.3, max_slice_dim=6)

    labels = segmenter.process_volume(raw_volume)

    assert labels.shape == raw_volume.shape


def test_summarize_filters_small_regions():
    segmenter = VolumeSegmenter()
    labels = np.array([0, 0, 1, 1, 1, 2], dtype=np.int64).reshape(1, 1, 6)

    assert segmenter.summarize(labels) == {1: 3, 2: 1}
    assert segmenter.summarize(labels, min_size=2) == {1: 3}


def test_load_volume_npy(tmp_path, raw_volume):
    path = tmp_path / "vol.npy"
    np.save(path, raw_volume)

    loaded = VolumeSegmenter().load_volume(str(path))

    assert np.array_equal(loaded, raw_volume)


def test_load_volume_rejects_unknown_format(tmp_path):
    path = tmp_path / "vol.raw"
    path.write_bytes(b"\x00" * 8)

    with pytest.raises(ValueError):
        VolumeSegmenter().load_volume(str(path))


def test_load_volume_rejects_2d_array(tmp_path):
    path = tmp_path / "flat.npy"
    np.save(path, np.zeros((3, 3)))

    with pytest.raises(ValueError):
        VolumeSegmenter().load_volume(str(path))


def test_process_folder(tmp_path, raw_volume):
    input_folder = tmp_path / "volumes"
    output_folder = tmp_path / "labels"
    input_folder.mkdir()
    np.save(input_folder / "a.npy", raw_volume)
    np.save(input_folder / "b.npy", raw_volume[::-1].copy())
    np.save(input_folder / "broken.npy", np.zeros((3, 3)))
    (input_folder / "notes.txt").write_text("not a volume")

    segmenter = VolumeSegmenter(criterion=MinimumSizeCriterion(min_size=20),
                                n_segments=8, threshold=0.3)
    summary = VolumeSegmenter.process_folder(str(input_folder), str(output_folder),
                                             num_workers=1, segmenter=segmenter)

    assert set(summary) == {"a.npy", "b.npy", "broken.npy"}
    assert summary["broken.npy"] == {}
    assert summary["a.npy"]
    assert (output_folder / "a_labels.npy").exists()
    assert (output_folder / "b_labels.npy").exists()
    assert not (output_folder / "broken_labels.npy").exists()

    saved = json.loads((output_folder / "summary.json").read_text())
    assert saved == summary

    labels = np.load(output_folder / "a_labels.npy")
    sizes = {str(label): int(np.sum(labels == label)) for label in np.unique(labels) if label}
    assert sizes == summary["a.npy"]


def test_process_folder_without_volumes(tmp_path):
    summary = VolumeSegmenter.process_folder(str(tmp_path), str(tmp_path / "out"), num_workers=1)

    assert summary == {}
    assert (tmp_path / "out").is_dir()


def test_parser_defaults():
    args = build_parser().parse_args(["in", "out"])

    assert args.workers is None
    assert args.min_size is None
    assert args.verbose == 0
    assert args.axis == 0


def test_main_runs_folder(tmp_path, raw_volume):
    input_folder = tmp_path / "volumes"
    input_folder.mkdir()
    np.save(input_folder / "a.npy", raw_volume)

    main([str(input_folder), str(tmp_path / "out"), "--workers", "1",
          "--segments", "8", "--threshold", "0.3", "--min-size", "10", "-vv"])

    assert (tmp_path / "out" / "a_labels.npy").exists()
    assert (tmp_path / "out" / "summary.json").exists()

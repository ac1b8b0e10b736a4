from labeled_volume import LabeledVolume
from quality_criteria import MinimumSizeCriterion, TraversingCriterion
from region_merging import merge_regions
import numpy as np
from typing import Dict, List, Optional, Tuple
import argparse
import cv2
import os
import glob
import json
import logging
from multiprocessing import Pool, cpu_count
from functools import partial

logger = logging.getLogger(__name__)

DEFAULT_N_SEGMENTS = 500
DEFAULT_COMPACTNESS = 0.1
MAX_SLICE_DIM = 256
MIN_REGION_SIZE = 1
VOLUME_EXTENSIONS = ('.npy', '.tif', '.tiff')


class VolumeSegmenter:
    def __init__(self, criterion=None, n_segments: int = DEFAULT_N_SEGMENTS,
                 compactness: float = DEFAULT_COMPACTNESS, threshold: Optional[float] = None,
                 max_slice_dim: int = MAX_SLICE_DIM, verbosity: int = 0):
        self.criterion = criterion if criterion is not None else TraversingCriterion()
        self.n_segments = n_segments
        self.compactness = compactness
        self.threshold = threshold
        self.max_slice_dim = max_slice_dim
        self.verbosity = verbosity

    @staticmethod
    def process_folder(input_folder: str, output_folder: str, num_workers: int = None,
                       segmenter: 'VolumeSegmenter' = None) -> Dict[str, Dict[str, int]]:
        """
        Segment every volume in a folder and save labels plus a JSON summary.

        Args:
            input_folder (str): Folder containing .npy or multi-page .tif volumes
            output_folder (str): Folder receiving <name>_labels.npy files and summary.json
            num_workers (int): Number of parallel processes (default: CPU count)
            segmenter (VolumeSegmenter): Settings to use (default: VolumeSegmenter())

        Returns:
            Dict mapping file name to {label: voxel_count}
        """
        if not os.path.exists(output_folder):
            os.makedirs(output_folder, exist_ok=True)

        if num_workers is None:
            num_workers = cpu_count()
        if segmenter is None:
            segmenter = VolumeSegmenter()

        volume_paths = sorted(
            path for path in glob.glob(os.path.join(input_folder, '*.*'))
            if path.lower().endswith(VOLUME_EXTENSIONS)
        )

        if not volume_paths:
            logger.warning("No volumes found in %s", input_folder)
            return {}

        logger.info("Processing %d volumes with %d workers...", len(volume_paths), num_workers)

        process_func = partial(VolumeSegmenter._process_single_volume,
                               output_folder=output_folder, segmenter=segmenter)
        if num_workers == 1:
            results = [process_func(path) for path in volume_paths]
        else:
            with Pool(num_workers) as pool:
                results = pool.map(process_func, volume_paths)

        summary = {os.path.basename(path): regions for path, regions in results}

        output_file = os.path.join(output_folder, 'summary.json')
        with open(output_file, 'w') as f:
            json.dump(summary, f, indent=2, sort_keys=True)

        logger.info("Saved region summary to %s", output_file)
        return summary

    @staticmethod
    def _process_single_volume(volume_path: str, output_folder: str,
                               segmenter: 'VolumeSegmenter') -> Tuple[str, Dict[str, int]]:
        """
        Segment one volume file and save its labels.
        Static method for multiprocessing compatibility.

        Args:
            volume_path (str): Path to the volume file
            output_folder (str): Folder for the <name>_labels.npy output
            segmenter (VolumeSegmenter): Settings to use

        Returns:
            Tuple of (volume_path, {label: voxel_count}); the dict is empty
            when the volume could not be processed
        """
        try:
            volume = segmenter.load_volume(volume_path)
            labels = segmenter.process_volume(volume)
        except Exception:
            logger.exception("Error processing %s", volume_path)
            return volume_path, {}

        name = os.path.splitext(os.path.basename(volume_path))[0]
        np.save(os.path.join(output_folder, f'{name}_labels.npy'), labels)

        regions = segmenter.summarize(labels)
        return volume_path, {str(label): size for label, size in regions.items()}

    def load_volume(self, volume_path: str) -> np.ndarray:
        """
        Read a volume from disk.

        Args:
            volume_path (str): .npy array or multi-page TIFF (one page per z-slice)

        Returns:
            3-D array (Z, Y, X)

        Raises:
            ValueError: If the file type is unsupported or cannot be read
        """
        extension = os.path.splitext(volume_path)[1].lower()
        if extension == '.npy':
            volume = np.load(volume_path)
        elif extension in ('.tif', '.tiff'):
            ok, pages = cv2.imreadmulti(volume_path, flags=cv2.IMREAD_ANYDEPTH)
            if not ok or not pages:
                raise ValueError(f"Could not read {volume_path}")
            volume = np.stack(pages)
        else:
            raise ValueError(f"Unsupported volume format: {volume_path}")

        if volume.ndim != 3:
            raise ValueError(f"Expected a 3-D volume in {volume_path}, got shape {volume.shape}")
        return volume

    def process_volume(self, volume: np.ndarray) -> np.ndarray:
        """
        Over-segment a volume, merge the supervoxels and return the labels.

        Args:
            volume (np.ndarray): Grayscale volume (Z, Y, X)

        Returns:
            Label array with the same shape as the input, background 0
        """
        volume = np.asarray(volume)
        if volume.ndim != 3:
            raise ValueError(f"Expected a 3-D volume (Z, Y, X), got shape {volume.shape}")

        resized_volume, scaling_factor = self.preprocess_volume(volume)
        labeled = LabeledVolume.from_intensity(
            resized_volume,
            n_segments=self.n_segments,
            compactness=self.compactness,
            threshold=self.threshold,
        )
        merge_regions(labeled, self.criterion, verbosity=self.verbosity)
        return self.restore_labels(labeled.labels, volume.shape, scaling_factor)

    def preprocess_volume(self, volume: np.ndarray) -> Tuple[np.ndarray, float]:
        """
        Shrink z-slices in-plane for faster processing.

        Args:
            volume (np.ndarray): Input volume (Z, Y, X)

        Returns:
            Tuple of (resized_volume, scaling_factor)
        """
        volume = volume.astype(np.float32)
        height, width = volume.shape[1:]

        if max(height, width) > self.max_slice_dim:
            scaling_factor = self.max_slice_dim / float(max(height, width))
            new_size = (max(1, int(width * scaling_factor)), max(1, int(height * scaling_factor)))
            volume = np.stack([
                cv2.resize(z_slice, new_size, interpolation=cv2.INTER_AREA)
                for z_slice in volume
            ])
        else:
            scaling_factor = 1.0
        return volume, scaling_factor

    def restore_labels(self, labels: np.ndarray, shape: Tuple[int, int, int],
                       scaling_factor: float) -> np.ndarray:
        """
        Scale label slices back to the original in-plane size.

        Args:
            labels (np.ndarray): Labels at processing resolution
            shape (Tuple): Original volume shape (Z, Y, X)
            scaling_factor (float): Scale factor from preprocessing

        Returns:
            Label array of the original shape
        """
        if scaling_factor == 1.0:
            return labels
        height, width = shape[1:]
        return np.stack([
            cv2.resize(z_slice.astype(np.int32), (width, height), interpolation=cv2.INTER_NEAREST)
            for z_slice in labels
        ]).astype(np.int64)

    def summarize(self, labels: np.ndarray, min_size: int = MIN_REGION_SIZE) -> Dict[int, int]:
        """
        Count voxels per region, dropping regions smaller than min_size.

        Args:
            labels (np.ndarray): Final label array, background 0
            min_size (int): Minimum region size in voxels

        Returns:
            Dict of {label: voxel_count}
        """
        values, counts = np.unique(labels, return_counts=True)
        return {
            int(label): int(count)
            for label, count in zip(values, counts)
            if label != 0 and count >= min_size
        }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Over-segment 3-D volumes and merge regions greedily.")
    parser.add_argument('input_folder', help="Folder of .npy or multi-page .tif volumes")
    parser.add_argument('output_folder', help="Folder for label arrays and summary.json")
    parser.add_argument('--workers', type=int, default=None,
                        help="Parallel processes (default: CPU count)")
    parser.add_argument('--segments', type=int, default=DEFAULT_N_SEGMENTS,
                        help="Approximate number of initial supervoxels")
    parser.add_argument('--compactness', type=float, default=DEFAULT_COMPACTNESS)
    parser.add_argument('--threshold', type=float, default=None,
                        help="Intensity at or below which voxels are background")
    parser.add_argument('--max-slice-dim', type=int, default=MAX_SLICE_DIM)
    parser.add_argument('--axis', type=int, default=0, choices=(0, 1, 2),
                        help="Axis a region must traverse to be complete")
    parser.add_argument('--size-weight', type=float, default=1.0)
    parser.add_argument('--min-size', type=int, default=None,
                        help="Use a minimum-size criterion instead of traversal")
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help="Repeat for more diagnostics (up to -vvvv)")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    level = logging.INFO if args.verbose <= 2 else logging.DEBUG
    logging.basicConfig(level=level, format='%(asctime)s - %(levelname)s - %(message)s')

    if args.min_size is not None:
        criterion = MinimumSizeCriterion(args.min_size)
    else:
        criterion = TraversingCriterion(axis=args.axis, size_weight=args.size_weight)

    segmenter = VolumeSegmenter(
        criterion=criterion,
        n_segments=args.segments,
        compactness=args.compactness,
        threshold=args.threshold,
        max_slice_dim=args.max_slice_dim,
        verbosity=min(args.verbose, 4),
    )
    VolumeSegmenter.process_folder(args.input_folder, args.output_folder,
                                   num_workers=args.workers, segmenter=segmenter)


if __name__ == "__main__":
    main()

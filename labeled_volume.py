"""
Labeled 3-D volumes for region merging.

This module holds the voxel side of the merge: a 3-D array of integer labels
with a distinguished background label, and the single mutation the merge
driver needs, which fuses the voxels of one region into another.

Key concepts:
- Labels: every non-background value in the array names one region
- Flattened indices: each region keeps the flat positions of its voxels so a
  merge only touches the losing region's voxels
- Over-segmentation: LabeledVolume.from_intensity() builds a fine initial
  partition of a grayscale volume with SLIC superpixels

Usage:
    vol = LabeledVolume.from_intensity(raw, n_segments=500)
    vol.merge_regions(3, 7)   # voxels of 7 now belong to 3
    labels = vol.labels
"""

from skimage import segmentation
from skimage.util import img_as_float
import numpy as np


class LabeledVolume:
    """
    Mutable labeled partition of a 3-D volume.

    Attributes:
        shape (tuple): Volume dimensions in storage order
        background (int): Label that belongs to no region

    Region bookkeeping:
        {
            label: np.ndarray,   # Flattened voxel indices carrying that label
        }
    """

    def __init__(self, labels, background=0):
        """
        Wrap a 3-D label array.

        Args:
            labels (np.ndarray): Integer label array with three dimensions.
                The array is copied; the caller's array is never modified.
            background (int): Label excluded from the set of regions.

        Raises:
            ValueError: If the array is not 3-dimensional or holds
                non-integer values
        """
        labels = np.asarray(labels)
        if labels.ndim != 3:
            raise ValueError(f"Expected a 3-D label volume, got shape {labels.shape}")
        if labels.dtype.kind not in "iub":
            raise ValueError(f"Label volume must hold integers, got dtype {labels.dtype}")

        self._array = np.ascontiguousarray(labels, dtype=np.int64).copy()
        self._flat = self._array.reshape(-1)
        self.shape = self._array.shape
        self.background = int(background)
        self._indices = self._index_regions()
        self._region_count = len(self._indices)

    @classmethod
    def from_intensity(cls, volume, n_segments=500, compactness=0.1, threshold=None):
        """
        Over-segment a grayscale volume into SLIC supervoxels.

        Voxels at or below ``threshold`` are masked out and become background
        (label 0). Supervoxel labels start at 1.

        Args:
            volume (np.ndarray): Grayscale intensity volume (Z, Y, X)
            n_segments (int): Approximate number of supervoxels
            compactness (float): Balance between intensity proximity and
                spatial proximity; small values follow intensity edges
            threshold (float or None): Intensity at or below which voxels are
                background. None keeps every voxel.

        Returns:
            LabeledVolume: Fresh volume with background 0
        """
        volume = np.asarray(volume)
        if volume.ndim != 3:
            raise ValueError(f"Expected a 3-D intensity volume, got shape {volume.shape}")

        mask = None
        if threshold is not None:
            mask = volume > threshold
            if not mask.any():
                return cls(np.zeros(volume.shape, dtype=np.int64), background=0)

        segments = segmentation.slic(
            img_as_float(volume),
            n_segments=n_segments,
            compactness=compactness,
            start_label=1,
            mask=mask,
            channel_axis=None,
        )
        return cls(segments, background=0)

    def _index_regions(self):
        order = np.argsort(self._flat, kind="stable")
        values = self._flat[order]
        unique, starts = np.unique(values, return_index=True)
        bounds = list(starts[1:]) + [len(values)]

        indices = {}
        for label, start, stop in zip(unique, starts, bounds):
            label = int(label)
            if label == self.background:
                continue
            indices[label] = order[start:stop]
        return indices

    def distinct_region_labels(self):
        """Non-background labels, ascending (discovery order)."""
        return sorted(self._indices)

    def background_label(self):
        return self.background

    def dimensions(self):
        return self.shape

    def voxel(self, x, y, z):
        return int(self._array[x, y, z])

    def region_count(self):
        return self._region_count

    def indices(self, label):
        """Flattened voxel indices of a live region."""
        return self._indices[label]

    def size(self, label):
        return len(self._indices[label])

    def merge_regions(self, winner, loser):
        """
        Reassign every voxel of ``loser`` to ``winner``.

        The region count drops by exactly one.

        Args:
            winner (int): Label that survives
            loser (int): Label that disappears

        Raises:
            ValueError: If the labels are equal, either is the background, or
                either is not a live region
        """
        if winner == loser:
            raise ValueError(f"Cannot merge region {winner} into itself")
        for label in (winner, loser):
            if label == self.background:
                raise ValueError("Background label cannot take part in a merge")
            if label not in self._indices:
                raise ValueError(f"Unknown region label {label}")

        moved = self._indices.pop(loser)
        self._flat[moved] = winner
        self._indices[winner] = np.concatenate([self._indices[winner], moved])
        self._region_count -= 1

    @property
    def labels(self):
        """Copy of the current label array."""
        return self._array.copy()

    def __repr__(self):
        return (f"LabeledVolume(shape={self.shape}, regions={self._region_count}, "
                f"background={self.background})")

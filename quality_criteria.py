"""
Quality criteria for region merging.

A criterion tells the merge driver three things about a region, always through
an aggregable cache of statistics:

1. How good the region is (evaluate), used to order and finalize regions
2. How good a candidate merge is (evaluate_without_size_penalty), used to pick
   the best neighbour
3. Whether the region is complete (is_complete); incomplete regions keep
   growing regardless of quality

Caches are combined pairwise with combine() when two regions merge, so a
criterion never needs to rescan voxels after initialization.

Provided criteria:
- MinimumSizeCriterion: complete once a region reaches a voxel count
- TraversingCriterion: complete once a region spans the volume along an axis,
  scored by how compactly it fills its bounding box
"""

from collections import namedtuple

import numpy as np


RegionStats = namedtuple("RegionStats", ["count", "bbox", "extent"])
RegionStats.__doc__ = """
Aggregable per-region statistics.

Fields:
    count (int): Number of voxels in the region
    bbox (tuple): Inclusive bounding box (z0, z1, y0, y1, x0, x1)
    extent (tuple): Shape of the volume the region lives in
"""


def region_stats(volume, label):
    """
    Scan a labeled volume once for the statistics of one region.

    Args:
        volume (LabeledVolume): Volume holding the region
        label (int): Region label

    Returns:
        RegionStats: Voxel count, bounding box and volume extent
    """
    coords = np.unravel_index(volume.indices(label), volume.dimensions())
    bbox = []
    for axis_coords in coords:
        bbox.extend((int(axis_coords.min()), int(axis_coords.max())))
    return RegionStats(len(coords[0]), tuple(bbox), tuple(volume.dimensions()))


def combine_stats(a, b):
    """Statistics of the union of two disjoint regions."""
    ba, bb = a.bbox, b.bbox
    bbox = (
        min(ba[0], bb[0]), max(ba[1], bb[1]),
        min(ba[2], bb[2]), max(ba[3], bb[3]),
        min(ba[4], bb[4]), max(ba[5], bb[5]),
    )
    return RegionStats(a.count + b.count, bbox, a.extent)


class QualityCriterion:
    """
    Interface every merge criterion implements.

    Subclasses provide the cache type and the five pure operations below.
    Higher quality is better.
    """

    def cache(self, volume, label):
        raise NotImplementedError

    def evaluate(self, cache):
        raise NotImplementedError

    def evaluate_without_size_penalty(self, cache):
        raise NotImplementedError

    def combine(self, cache_a, cache_b):
        raise NotImplementedError

    def is_complete(self, cache):
        raise NotImplementedError


class MinimumSizeCriterion(QualityCriterion):
    """
    Grow regions until they reach ``min_size`` voxels.

    Quality is the voxel count itself, so once complete a region still
    merges whenever a neighbour exists (any union is larger).
    """

    def __init__(self, min_size=1):
        if min_size < 1:
            raise ValueError(f"min_size must be positive, got {min_size}")
        self.min_size = min_size

    def cache(self, volume, label):
        return region_stats(volume, label)

    def evaluate(self, cache):
        return float(cache.count)

    def evaluate_without_size_penalty(self, cache):
        return float(cache.count)

    def combine(self, cache_a, cache_b):
        return combine_stats(cache_a, cache_b)

    def is_complete(self, cache):
        return cache.count >= self.min_size


class TraversingCriterion(QualityCriterion):
    """
    Grow regions until they traverse the volume, then keep them compact.

    A region is complete ("traversing") when its bounding box touches both
    end planes of the volume along ``axis``.

    Scoring:
        fill(r)    = count(r) / bbox_volume(r)                 in (0, 1]
        quality(r) = fill(r) - size_weight * count(r) / volume_size

    The fill ratio alone ranks merge candidates; the size penalty only
    affects ordering and the decision to stop growing.

    Args:
        axis (int): Axis a region must span to be complete (0 = z)
        size_weight (float): Weight of the size penalty, >= 0
    """

    def __init__(self, axis=0, size_weight=1.0):
        if axis not in (0, 1, 2):
            raise ValueError(f"axis must be 0, 1 or 2, got {axis}")
        if size_weight < 0:
            raise ValueError(f"size_weight must be non-negative, got {size_weight}")
        self.axis = axis
        self.size_weight = size_weight

    def cache(self, volume, label):
        return region_stats(volume, label)

    @staticmethod
    def fill_ratio(cache):
        b = cache.bbox
        bbox_volume = (b[1] - b[0] + 1) * (b[3] - b[2] + 1) * (b[5] - b[4] + 1)
        return cache.count / bbox_volume

    def evaluate(self, cache):
        volume_size = int(np.prod(cache.extent))
        penalty = self.size_weight * cache.count / volume_size
        return self.fill_ratio(cache) - penalty

    def evaluate_without_size_penalty(self, cache):
        return self.fill_ratio(cache)

    def combine(self, cache_a, cache_b):
        return combine_stats(cache_a, cache_b)

    def is_complete(self, cache):
        low, high = cache.bbox[2 * self.axis], cache.bbox[2 * self.axis + 1]
        return low == 0 and high == cache.extent[self.axis] - 1

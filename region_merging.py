"""
Greedy Region Merging for Labeled Volumes

This module contracts a region adjacency graph until no merge improves quality
and every surviving region is complete. It is criterion-agnostic: all
domain knowledge lives in a QualityCriterion (see quality_criteria.py), and
all voxel work in a LabeledVolume (see labeled_volume.py).

The algorithm repeatedly takes the globally worst region and merges it into
its best-matching neighbour:
1. Seed one graph node and one worklist entry per region label
2. Connect regions whose voxels touch along a grid axis
3. Pop the worst region; incomplete regions always merge into their best
   neighbour, complete regions merge only when the merge beats their quality
4. Regions with no (improving) merge are finalized: their label is definitive

Key concepts:
- Region graph: arena of region records addressed by label, adjacency kept
  as label sets so every edge is reciprocal
- Ordered worklist: heap keyed by (is_complete, quality); incomplete regions
  always come first, then the lowest quality
- Two phases: while the worst region is incomplete (phase 1) merges are
  unconditional; once it is complete (phase 2) every region is, and merges
  must strictly improve quality

Usage:
    volume = LabeledVolume(labels)
    merger = RegionMerger(volume, TraversingCriterion(), verbosity=1)
    events = merger.merge()
    result = volume.labels

Performance notes:
    - Adjacency seeding is vectorised over the whole volume, O(voxels)
    - Each iteration costs O(degree) criterion calls plus O(log n) heap work
    - Exactly one iteration per initial region
"""

from collections import namedtuple
import heapq
import logging

import numpy as np

from labeled_volume import LabeledVolume


logger = logging.getLogger(__name__)

# Marks a superseded heap entry.
_REMOVED = object()

MergeEvent = namedtuple("MergeEvent", ["action", "label", "target", "quality", "phase"])
MergeEvent.__doc__ = """
One iteration of the merge loop.

Fields:
    action (str): "merge" or "finalize"
    label (int): Region taken from the front of the worklist
    target (int or None): Region that absorbed it, None when finalized
    quality (float): Winner's new quality for merges, the region's own
        quality for finalizations
    phase (int): 1 if the region was incomplete when processed, else 2
"""


class _Region:
    __slots__ = ("label", "quality", "cache", "neighbours")

    def __init__(self, label, quality, cache):
        self.label = label
        self.quality = quality
        self.cache = cache
        self.neighbours = set()

    def __repr__(self):
        return (f"_Region(label={self.label}, quality={self.quality:.4g}, "
                f"neighbours={sorted(self.neighbours)})")


class RegionGraph:
    """
    Undirected region adjacency graph.

    Nodes are region records owned by the graph and addressed by label.
    Edges are stored on both endpoints; every mutation keeps them reciprocal:
    B in neighbours(A) if and only if A in neighbours(B).
    """

    def __init__(self):
        self._regions = {}

    def create(self, label, quality, cache):
        """
        Add an isolated region.

        Raises:
            ValueError: If a region with this label already exists
        """
        if label in self._regions:
            raise ValueError(f"Duplicate region label {label}")
        region = _Region(label, quality, cache)
        self._regions[label] = region
        return region

    def connect(self, a, b):
        """
        Add the edge a-b on both endpoints. Connecting twice is a no-op.

        Raises:
            ValueError: If a == b
            KeyError: If either region does not exist
        """
        if a == b:
            raise ValueError(f"Cannot connect region {a} to itself")
        ra, rb = self._regions[a], self._regions[b]
        ra.neighbours.add(b)
        rb.neighbours.add(a)

    def neighbours(self, label):
        """Snapshot of the live neighbours of a region."""
        return frozenset(self._regions[label].neighbours)

    def update(self, label, quality, cache):
        """Replace the quality and cache of a region after it absorbed another."""
        region = self._regions[label]
        region.quality = quality
        region.cache = cache

    def absorb(self, winner, loser):
        """
        Contract the loser into the winner.

        The winner inherits every neighbour of the loser (except itself),
        those neighbours gain the winner, and the loser is removed together
        with all of its edges.

        Args:
            winner (int): Surviving region
            loser (int): Region that disappears

        Raises:
            ValueError: If winner == loser
            KeyError: If either region does not exist
        """
        if winner == loser:
            raise ValueError(f"Region {winner} cannot absorb itself")
        survivor = self._regions[winner]
        absorbed = self._regions.pop(loser)

        for label in absorbed.neighbours:
            neighbour = self._regions[label]
            neighbour.neighbours.discard(loser)
            if label != winner:
                neighbour.neighbours.add(winner)
                survivor.neighbours.add(label)
        survivor.neighbours.discard(loser)

    def finalize(self, label):
        """Remove a region and every edge touching it."""
        region = self._regions.pop(label)
        for other in region.neighbours:
            self._regions[other].neighbours.discard(label)
        return region

    def check_reciprocity(self):
        """True when every edge is stored on both live endpoints."""
        for label, region in self._regions.items():
            for other in region.neighbours:
                if other == label or other not in self._regions:
                    return False
                if label not in self._regions[other].neighbours:
                    return False
        return True

    def __getitem__(self, label):
        return self._regions[label]

    def __contains__(self, label):
        return label in self._regions

    def __len__(self):
        return len(self._regions)

    def __iter__(self):
        return iter(self._regions)


class OrderedWorklist:
    """
    Mutable priority queue over regions.

    Ordering (front first):
        1. Incomplete regions before complete ones, whatever their quality
        2. Lower quality before higher quality
        3. On equal keys, the region inserted last comes first

    Data structures:
        - heap: min-heap of [is_complete, quality, -sequence, timestamp, label]
          lists; superseded entries have their label replaced by a marker and
          are skipped lazily
        - entries: label -> live heap entry
        - sequence: label -> insertion order, kept across updates

    The handle returned by insert() is the region label; it stays valid
    until the region is extracted or removed, whatever happens to other
    entries.
    """

    def __init__(self):
        self._heap = []
        self._entries = {}
        self._sequence = {}
        self._inserted = 0
        self._timestamp = 0

    def _push(self, label, key):
        is_complete, quality = key
        entry = [bool(is_complete), float(quality), -self._sequence[label], self._timestamp, label]
        self._timestamp += 1
        self._entries[label] = entry
        heapq.heappush(self._heap, entry)

    def insert(self, label, key):
        """
        Add a region with key (is_complete, quality).

        Returns:
            The handle used by update() and remove()

        Raises:
            ValueError: If the region is already queued
        """
        if label in self._entries:
            raise ValueError(f"Region {label} is already in the worklist")
        self._sequence[label] = self._inserted
        self._inserted += 1
        self._push(label, key)
        return label

    def update(self, handle, key):
        """Re-key a queued region in place. Raises KeyError if absent."""
        entry = self._entries.pop(handle)
        entry[-1] = _REMOVED
        self._push(handle, key)

    def remove(self, handle):
        entry = self._entries.pop(handle)
        entry[-1] = _REMOVED
        del self._sequence[handle]

    def key(self, handle):
        entry = self._entries[handle]
        return entry[0], entry[1]

    def _discard_stale(self):
        while self._heap and self._heap[0][-1] is _REMOVED:
            heapq.heappop(self._heap)

    def peek_front(self):
        self._discard_stale()
        if not self._heap:
            raise IndexError("peek at an empty worklist")
        return self._heap[0][-1]

    def extract_front(self):
        """
        Remove and return the region to process next.

        Raises:
            IndexError: If the worklist is empty
        """
        self._discard_stale()
        if not self._heap:
            raise IndexError("extract from an empty worklist")
        label = heapq.heappop(self._heap)[-1]
        del self._entries[label]
        del self._sequence[label]
        return label

    def size(self):
        return len(self._entries)

    def empty(self):
        return not self._entries

    def __len__(self):
        return len(self._entries)

    def __contains__(self, handle):
        return handle in self._entries


def seed_adjacency(graph, labels, background):
    """
    Connect regions whose voxels touch along a grid axis.

    Each voxel is compared with its forward neighbour along every axis (the
    last plane of an axis has none), so every touching pair is seen from one
    side only. Pairs involving the background, or a label the graph does not
    know, are skipped.

    Args:
        graph (RegionGraph): Graph holding one node per region
        labels (np.ndarray): 3-D label array
        background (int): Background label

    Returns:
        int: Number of distinct edges added
    """
    labels = np.asarray(labels)
    known = np.fromiter(graph, dtype=np.int64, count=len(graph))
    pairs = []

    for axis in range(labels.ndim):
        moved = np.moveaxis(labels, axis, 0)
        a = moved[:-1].ravel()
        b = moved[1:].ravel()

        touching = (a != b) & (a != background) & (b != background)
        a, b = a[touching], b[touching]
        tracked = np.isin(a, known) & np.isin(b, known)
        a, b = a[tracked], b[tracked]

        pairs.append(np.stack([np.minimum(a, b), np.maximum(a, b)], axis=1))

    edges = np.concatenate(pairs) if pairs else np.empty((0, 2), dtype=np.int64)
    if len(edges) == 0:
        return 0

    edges = np.unique(edges, axis=0)
    for a, b in edges:
        graph.connect(int(a), int(b))
    return len(edges)


def volume_label_array(volume):
    """
    Dense label array of a volume, read through voxel().

    LabeledVolume already holds its array and hands out a copy; any other
    volume is scanned voxel by voxel over its dimensions().
    """
    if isinstance(volume, LabeledVolume):
        return volume.labels

    sx, sy, sz = volume.dimensions()
    return np.array(
        [[[volume.voxel(x, y, z) for z in range(sz)] for y in range(sy)] for x in range(sx)],
        dtype=np.int64,
    ).reshape(sx, sy, sz)


class RegionMerger:
    """
    Two-phase greedy contraction of a labeled volume.

    Attributes:
        volume (LabeledVolume): Volume being merged; mutated in place
        criterion (QualityCriterion): Supplies caches, qualities, completeness
        verbosity (int): Diagnostic level 0-4
            0: silent
            1: run summary
            2: phase transitions
            3: merge decisions
            4: finalizations and worklist state
        graph (RegionGraph): Live regions and their adjacency
        worklist (OrderedWorklist): Live regions in processing order
        phase (int): 1 while incomplete regions remain at the front, then 2
        history (list): MergeEvent per processed region, in order
    """

    def __init__(self, volume, criterion, verbosity=0):
        self.volume = volume
        self.criterion = criterion
        self.verbosity = verbosity
        self.graph = RegionGraph()
        self.worklist = OrderedWorklist()
        self.phase = 1
        self.history = []
        self._initialized = False

    def _log(self, level, msg, *args):
        if self.verbosity >= level:
            logger.log(logging.INFO if level <= 2 else logging.DEBUG, msg, *args)

    def _key(self, cache, quality):
        return self.criterion.is_complete(cache), quality

    def initialize(self):
        """
        Build one graph node and one worklist entry per region, then wire
        adjacency from the voxel grid.

        Raises:
            RuntimeError: If called twice on the same merger
        """
        if self._initialized:
            raise RuntimeError("RegionMerger is already initialized")

        for label in self.volume.distinct_region_labels():
            label = int(label)
            cache = self.criterion.cache(self.volume, label)
            quality = self.criterion.evaluate(cache)
            self.graph.create(label, quality, cache)
            self.worklist.insert(label, self._key(cache, quality))

        edges = seed_adjacency(self.graph, volume_label_array(self.volume),
                               self.volume.background_label())
        self._initialized = True
        self._log(1, "Initialized %d regions with %d adjacencies", len(self.graph), edges)

    def step(self):
        """
        Process the region at the front of the worklist.

        The region stays queued until every criterion call for it has
        returned, so a collaborator error leaves the graph and the worklist
        holding the same regions.

        Returns:
            MergeEvent: What happened to the region

        Raises:
            IndexError: If no region is left
        """
        if not self._initialized:
            self.initialize()

        label = self.worklist.peek_front()
        worst = self.graph[label]
        is_done = self.criterion.is_complete(worst.cache)
        phase = 2 if is_done else 1

        if is_done and self.phase == 1:
            self.phase = 2
            self._log(2, "Phase 2: all %d remaining regions are complete", len(self.worklist))

        best, best_cache, best_quality = None, None, None
        for other in sorted(self.graph.neighbours(label)):
            combined = self.criterion.combine(worst.cache, self.graph[other].cache)
            candidate = self.criterion.evaluate_without_size_penalty(combined)
            # Strict comparison: the lowest label wins ties.
            if best is None or candidate > best_quality:
                best, best_cache, best_quality = other, combined, candidate

        if best is None:
            self._log(4, "Finalizing isolated region %d (quality %.4g)", label, worst.quality)
            return self._finalize(label, phase)

        if not is_done or best_quality > worst.quality:
            return self._commit(label, best, best_cache, phase)

        self._log(4, "Finalizing region %d: best merge %.4g with %d does not beat %.4g",
                  label, best_quality, best, worst.quality)
        return self._finalize(label, phase)

    def _finalize(self, label, phase):
        region = self.graph.finalize(label)
        self.worklist.remove(label)
        event = MergeEvent("finalize", label, None, region.quality, phase)
        self.history.append(event)
        return event

    def _commit(self, loser, winner, combined, phase):
        quality = self.criterion.evaluate(combined)
        key = self._key(combined, quality)

        self.volume.merge_regions(winner, loser)
        self.graph.absorb(winner, loser)
        self.worklist.remove(loser)
        self.graph.update(winner, quality, combined)
        self.worklist.update(winner, key)

        self._log(3, "Merged region %d into %d (phase %d, new quality %.4g, %d regions left)",
                  loser, winner, phase, quality, self.volume.region_count())
        event = MergeEvent("merge", loser, winner, quality, phase)
        self.history.append(event)
        return event

    def merge(self, should_stop=None):
        """
        Run the merge loop until every region is finalized.

        Args:
            should_stop (callable or None): Checked before every iteration;
                returning True stops the loop early, leaving the remaining
                regions queued

        Returns:
            list: MergeEvent for every processed region, in order
        """
        if not self._initialized:
            self.initialize()

        start_count = self.volume.region_count()
        while not self.worklist.empty():
            if should_stop is not None and should_stop():
                self._log(1, "Stopped early with %d regions still queued", len(self.worklist))
                break
            if self.verbosity >= 4:
                self._log(4, "Worklist: %d regions, front %d",
                          len(self.worklist), self.worklist.peek_front())
            self.step()

        merges = sum(1 for event in self.history if event.action == "merge")
        self._log(1, "Merged %d regions: %d -> %d", merges, start_count, self.volume.region_count())
        return self.history


def merge_regions(volume, criterion, verbosity=0):
    """
    Merge a labeled volume in place under a criterion.

    Returns:
        list: MergeEvent for every processed region
    """
    return RegionMerger(volume, criterion, verbosity=verbosity).merge()

# ============================================================================
# Region Merging - Pytest Configuration
# ============================================================================
# Shared fixtures and scripted criteria for all tests
# ============================================================================

import sys
from pathlib import Path

import numpy as np
import pytest


# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from quality_criteria import QualityCriterion  # noqa: E402


class ScriptedCriterion(QualityCriterion):
    """
    Criterion whose caches are frozensets of initial labels.

    Qualities are looked up in tables keyed by those sets, so each test can
    spell out exactly which merge wins.
    """

    def __init__(self, quality, merge_quality=None, complete=None, default=0.0):
        self.quality = quality
        self.merge_quality = merge_quality or {}
        self.complete = complete
        self.default = default

    def cache(self, volume, label):
        return frozenset([label])

    def evaluate(self, cache):
        return self.quality.get(cache, self.default)

    def evaluate_without_size_penalty(self, cache):
        return self.merge_quality.get(cache, self.evaluate(cache))

    def combine(self, cache_a, cache_b):
        return cache_a | cache_b

    def is_complete(self, cache):
        # None means every region is complete.
        if self.complete is None:
            return True
        return bool(cache & self.complete)


@pytest.fixture
def scripted():
    return ScriptedCriterion


@pytest.fixture
def line_volume():
    """Build a 1-voxel-thick line of labels along the first axis."""
    def build(*labels):
        return np.array(labels, dtype=np.int64).reshape(len(labels), 1, 1)
    return build


@pytest.fixture
def random_labels():
    rng = np.random.default_rng(0)
    return rng.integers(0, 6, size=(4, 5, 6))

"""
Face descriptor comparison.

Both policies map two equal-length descriptors to a similarity in [0, 1]
(higher = more alike) and return 0.0 when either descriptor is missing or
the lengths differ.
"""

import numpy as np
import scipy.spatial as spatial

DESCRIPTOR_LENGTH = 128

COSINE = "cosine"
DISTANCE = "distance"


def _as_vectors(a, b):
    if a is None or b is None:
        return None
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.size == 0 or a.shape != b.shape:
        return None
    return a, b


def cosine_similarity(a, b):
    """Cosine of the angle between a and b, rescaled from [-1, 1] to [0, 1]."""
    vectors = _as_vectors(a, b)
    if vectors is None:
        return 0.0
    a, b = vectors
    if not np.any(a) or not np.any(b):
        return 0.0

    cosine = 1.0 - spatial.distance.cosine(a, b)
    cosine = min(1.0, max(-1.0, cosine))
    return float((cosine + 1.0) / 2.0)


def distance_similarity(a, b):
    """1 - Euclidean distance, floored at 0."""
    vectors = _as_vectors(a, b)
    if vectors is None:
        return 0.0
    a, b = vectors
    distance = np.linalg.norm(a - b)
    return float(max(0.0, 1.0 - distance))


SIMILARITY_POLICIES = {
    COSINE: cosine_similarity,
    DISTANCE: distance_similarity,
}


def get_comparator(policy=COSINE):
    """Return the similarity function for a policy name."""
    try:
        return SIMILARITY_POLICIES[policy]
    except KeyError as e:
        raise ValueError(f"Unknown similarity policy: {policy!r}") from e


def compare_descriptors(a, b, policy=COSINE):
    return get_comparator(policy)(a, b)

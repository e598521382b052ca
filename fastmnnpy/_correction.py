# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging

import numpy as np

from scipy.sparse import csr_matrix

from ._neighbors import AnchorPairs, ExactNeighborIndex
from .errors import ConfigurationError, IntegrationError

logger = logging.getLogger("fastmnnpy")


def _check_smoothing_params(bandwidth: float, n_smooth: int, batch=None) -> None:
    if not np.isfinite(bandwidth) or bandwidth <= 0:
        raise ConfigurationError(
            f"bandwidth must be a positive finite number, got {bandwidth}",
            stage="compute_corrections",
            batch=batch,
        )
    if int(n_smooth) != n_smooth or n_smooth < 1:
        raise ConfigurationError(
            f"n_smooth must be a positive integer, got {n_smooth}",
            stage="compute_corrections",
            batch=batch,
        )


def _gaussian_weights(distances: np.ndarray, bandwidth: float) -> tuple[np.ndarray, np.ndarray]:
    """
    Row-normalized Gaussian kernel weights.
    Rows whose kernel underflows to zero everywhere (or has no finite distance)
    get all the weight on their nearest anchor; they are flagged in the returned mask.
    """
    # [Nq, m]
    W = np.exp(-(distances**2) / (2.0 * bandwidth**2))
    W[~np.isfinite(W)] = 0
    sums = W.sum(axis=1)

    fallback = ~(sums > 0)

    W[fallback] = 0
    W[fallback, 0] = 1
    sums[fallback] = 1

    return W / sums[:, np.newaxis], fallback


def _compute_corrections(
    pairs: AnchorPairs,
    reference_expr: np.ndarray,
    query_expr: np.ndarray,
    query_search: np.ndarray | None = None,
    bandwidth: float = 1.0,
    n_smooth: int = 20,
    batch=None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Smoothed correction vector for every query cell.

    Raw vectors are differences reference - query over the anchor pairs.
    Each query cell averages the raw vectors of its `n_smooth` nearest anchors,
    the anchor position being its query cell in the search space.

    Returns:
        corrections [Nq, G] and a boolean mask of the cells that fell back
        to the nearest anchor's raw vector.
    """
    _check_smoothing_params(bandwidth, n_smooth, batch=batch)

    if len(pairs) == 0:
        raise IntegrationError(
            "no anchor pairs to compute corrections from",
            stage="compute_corrections",
            batch=batch,
        )

    if query_search is None:
        query_search = query_expr

    # [A, G]
    raw = reference_expr[pairs.reference] - query_expr[pairs.query]

    m = int(min(n_smooth, len(pairs)))

    # [Nq, m] nearest anchors of every query cell
    anchor_index = ExactNeighborIndex(query_search[pairs.query])
    idx, dist = anchor_index.query(query_search, m)

    W, fallback = _gaussian_weights(dist, bandwidth)

    n_query = query_expr.shape[0]
    # [Nq, A] sparse smoothing operator
    W_sparse = csr_matrix(
        (W.ravel(), idx.ravel(), np.arange(0, n_query * m + 1, m)),
        shape=(n_query, len(pairs)),
    )

    # [Nq, G] = [Nq, A] x [A, G]
    corrections = np.asarray(W_sparse @ raw)

    if fallback.any():
        logger.warning(
            "%i query cells have no anchor within kernel reach, "
            "their correction is the raw vector of the nearest anchor. "
            "Consider increasing `bandwidth`",
            fallback.sum(),
        )

    return corrections, fallback

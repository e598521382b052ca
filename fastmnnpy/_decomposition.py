# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging

from dataclasses import dataclass

import numpy as np
import scipy.linalg

from sklearn.utils.extmath import randomized_svd

from .errors import ConfigurationError, NumericalError

logger = logging.getLogger("fastmnnpy")


class TruncatedSVD:
    """
    Rank-d decomposition X ~ U diag(S) Vt of an already centered matrix.
    Subclasses implement `fit`, returning (U [N, d], S [d], Vt [d, G]).
    """

    name: str = None

    def __init__(self, random_seed: int = 0):
        self.random_seed = random_seed

    def fit(self, X: np.ndarray, d: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        raise NotImplementedError


class FullSVD(TruncatedSVD):
    name = "svd"

    def fit(self, X, d):
        U, S, Vt = scipy.linalg.svd(X, full_matrices=False, lapack_driver="gesdd")
        return U[:, :d], S[:d], Vt[:d]


class RandomizedSVD(TruncatedSVD):
    name = "randomized"

    def __init__(self, random_seed=0, n_iter: int = 7, n_oversamples: int = 10):
        super().__init__(random_seed=random_seed)
        self.n_iter = n_iter
        self.n_oversamples = n_oversamples

    def fit(self, X, d):
        return randomized_svd(
            X,
            n_components=d,
            n_iter=self.n_iter,
            n_oversamples=self.n_oversamples,
            random_state=self.random_seed,
        )


SVD_SOLVERS = {
    FullSVD.name: FullSVD,
    RandomizedSVD.name: RandomizedSVD,
}


def _get_svd_solver(name: str, random_seed: int = 0) -> TruncatedSVD:
    try:
        return SVD_SOLVERS[name](random_seed=random_seed)
    except KeyError as e:
        raise ConfigurationError(
            f"unknown svd solver {name!r}, expected one of {sorted(SVD_SOLVERS)}",
            stage="reduce_dimensions",
        ) from e


@dataclass(frozen=True)
class Decomposition:
    # [N, d]
    scores: np.ndarray
    # [d, G]
    loadings: np.ndarray
    # [d]
    singular_values: np.ndarray
    # [G]
    mean: np.ndarray
    # [d], +1 or -1 applied to each component
    signs: np.ndarray

    def transform(self, X: np.ndarray) -> np.ndarray:
        """Projects new rows onto the components."""
        return (X - self.mean) @ self.loadings.T


def _fix_signs(U: np.ndarray, Vt: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Makes the largest-magnitude loading of every component positive."""
    max_abs_rows = np.argmax(np.abs(Vt), axis=1)
    signs = np.sign(Vt[np.arange(Vt.shape[0]), max_abs_rows])
    signs[signs == 0] = 1
    return U * signs, Vt * signs[:, np.newaxis], signs


def _decompose(
    X: np.ndarray,
    d: int,
    svd_solver: str = "randomized",
    random_seed: int = 0,
    stage: str = "reduce_dimensions",
) -> Decomposition:
    """
    Mean-centered truncated decomposition of X [N, G] with a sign convention,
    so that identical inputs always give identical scores.
    """
    n_cells, n_genes = X.shape

    if int(d) != d or d < 1:
        raise ConfigurationError(f"d must be a positive integer, got {d}", stage=stage)
    if n_cells < d:
        raise NumericalError(
            f"can't compute {d} components from {n_cells} cells", stage=stage
        )
    if n_genes < d:
        raise NumericalError(
            f"can't compute {d} components from {n_genes} genes", stage=stage
        )
    if not np.all(np.isfinite(X)):
        raise NumericalError("matrix contains non-finite values", stage=stage)

    solver = _get_svd_solver(svd_solver, random_seed=random_seed)

    mean = X.mean(axis=0)
    X_centered = X - mean

    try:
        U, S, Vt = solver.fit(X_centered, d)
    except (np.linalg.LinAlgError, ValueError) as e:
        raise NumericalError(f"{solver.name} decomposition failed: {e}", stage=stage) from e

    U, Vt, signs = _fix_signs(U, Vt)

    if S.size and S[-1] <= S[0] * np.finfo(np.float64).eps * max(n_cells, n_genes):
        logger.warning(
            "%i of %i components have near-zero singular values, "
            "the corrected matrix has rank below d",
            (S <= S[0] * np.finfo(np.float64).eps * max(n_cells, n_genes)).sum(),
            d,
        )

    return Decomposition(
        scores=U * S,
        loadings=Vt,
        singular_values=S,
        mean=mean,
        signs=signs,
    )

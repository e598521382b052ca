# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging

from typing import Mapping, Sequence

import numpy as np
import pandas as pd

from anndata import AnnData
from scipy.sparse import diags, issparse

from .errors import ConfigurationError, NumericalError, ValidationError

logger = logging.getLogger("fastmnnpy")


def _to_dense(X) -> np.ndarray:
    """Returns a float64 dense copy of a numpy or scipy.sparse matrix."""
    t = X.toarray() if issparse(X) else np.array(X, copy=True)
    return np.asarray(t, dtype=np.float64)


def _as_batch_dict(batches: Mapping[str, AnnData] | Sequence[AnnData]) -> dict:
    """
    Batches come either as a mapping {batch_id: AnnData},
    or as a plain sequence, in which case ids are "0", "1", ...
    Iteration order of the result is the input order.
    """
    if isinstance(batches, Mapping):
        out = {str(b): adata for b, adata in batches.items()}
        if len(out) != len(batches):
            raise ConfigurationError(
                "batch ids must stay unique after conversion to str",
                stage="input",
            )
    else:
        out = {str(i): adata for i, adata in enumerate(batches)}

    if len(out) == 0:
        raise ConfigurationError("at least one batch is required", stage="input")

    for batch_id, adata in out.items():
        if not isinstance(adata, AnnData):
            raise ConfigurationError(
                f"expected AnnData, got {type(adata).__name__}",
                stage="input",
                batch=batch_id,
            )
    return out


def _check_merge_order(merge_order: Sequence[str], batch_ids: Sequence[str]) -> list:
    if merge_order is None:
        raise ConfigurationError(
            "`merge_order` is required: results depend on it", stage="merge_order"
        )

    merge_order = [str(b) for b in merge_order]

    missing = [b for b in batch_ids if b not in merge_order]
    unknown = [b for b in merge_order if b not in batch_ids]
    duplicated = pd.Index(merge_order)[pd.Index(merge_order).duplicated()].tolist()

    if missing:
        raise ConfigurationError(
            f"batches missing from merge_order: {missing}", stage="merge_order"
        )
    if unknown:
        raise ConfigurationError(
            f"merge_order mentions unknown batches: {unknown}", stage="merge_order"
        )
    if duplicated:
        raise ConfigurationError(
            f"merge_order lists batches more than once: {duplicated}",
            stage="merge_order",
        )
    return merge_order


def _check_cells(batches: dict, stage: str) -> None:
    for batch_id, adata in batches.items():
        if adata.n_obs == 0:
            raise ValidationError(
                "batch has zero cells left after filtering", stage=stage, batch=batch_id
            )


def _first_occurrence(var_names: pd.Index) -> np.ndarray:
    """Positions of genes, keeping the first of duplicated ids."""
    dup = np.asarray(var_names.duplicated())
    if dup.any():
        logger.warning(
            "%i duplicated gene ids found, only their first occurrence is kept",
            dup.sum(),
        )
    return np.flatnonzero(~dup)


def _intersect_genes(
    gene_lists: Mapping[str, pd.Index], genes: Sequence[str] | None = None
) -> pd.Index:
    """
    Intersection of gene ids over all the batches in lexical order.
    Optional `genes` (e.g. an upstream HVG list) restricts it further.
    """
    keep = None
    for batch_id, var_names in gene_lists.items():
        keep = set(var_names) if keep is None else keep & set(var_names)
        logger.debug("after batch %s: %i genes in common", batch_id, len(keep))

    if genes is not None:
        keep &= set(genes)

    if not keep:
        raise ConfigurationError(
            "no genes are shared by all the batches", stage="align_genes"
        )

    return pd.Index(sorted(keep))


def _library_size_factors(counts) -> np.ndarray:
    """Library size factors centered to unit mean."""
    lib = np.asarray(counts.sum(axis=1)).ravel().astype(np.float64)
    mean = lib.mean()
    if mean <= 0:
        return np.ones_like(lib)
    return lib / mean


def _batch_depth(counts) -> float:
    """Average library size of a batch."""
    return float(np.asarray(counts.sum(axis=1)).ravel().mean())


def _log_normalize(counts, size_factors: np.ndarray, pseudo_count: float = 1.0):
    """log(counts / size_factor + pseudo_count), row-wise, keeping sparsity if possible."""
    inv = 1.0 / size_factors

    if issparse(counts):
        X = counts.tocsr(copy=True).astype(np.float64)
        X = (diags(inv) @ X).tocsr()
        if pseudo_count == 1:
            X.data = np.log1p(X.data)
            return X
        X = X.toarray()
    else:
        X = np.asarray(counts, dtype=np.float64) * inv[:, np.newaxis]

    return np.log(X + pseudo_count)


def _l2_normalize_rows(X: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(X, ord=2, axis=1, keepdims=True)
    norm[norm == 0] = 1
    return X / norm


def _check_finite(X: np.ndarray, stage: str, batch=None) -> None:
    if not np.all(np.isfinite(X)):
        raise NumericalError(
            f"{(~np.isfinite(X)).sum()} non-finite values", stage=stage, batch=batch
        )

# pylint: disable=C0103, W0511, C0114
from __future__ import annotations

import logging

from typing import Mapping, Sequence

import numpy as np
import pandas as pd

from anndata import AnnData
from scipy.sparse import issparse

from ._utils import (
    _as_batch_dict,
    _batch_depth,
    _check_cells,
    _first_occurrence,
    _intersect_genes,
    _l2_normalize_rows,
    _library_size_factors,
    _log_normalize,
    _to_dense,
)
from .errors import ConfigurationError, ValidationError


logger = logging.getLogger("fastmnnpy")


def align_genes(
    batches: Mapping[str, AnnData] | Sequence[AnnData],
    genes: Sequence[str] | None = None,
) -> dict[str, AnnData]:
    """
    Restricts every batch to the genes shared by all of them
    and puts the genes in the same (lexical) order.

    Args:
        batches (Mapping[str, AnnData] | Sequence[AnnData]): batches as {batch_id: adata},
            a plain list gets ids "0", "1", ...
        genes (Sequence[str] | None, optional): if given (e.g. highly variable genes
            selected upstream), the shared genes are restricted to these. Defaults to None.

    Returns:
        dict[str, AnnData]: new AnnData objects with identical var_names, in input order.
    """
    batches = _as_batch_dict(batches)

    positions = {b: _first_occurrence(adata.var_names) for b, adata in batches.items()}
    shared = _intersect_genes(
        {b: batches[b].var_names[pos] for b, pos in positions.items()}, genes=genes
    )
    logger.info("%i genes shared by %i batches", len(shared), len(batches))

    aligned = {}
    for batch_id, adata in batches.items():
        pos = positions[batch_id]
        order = pd.Index(adata.var_names[pos]).get_indexer(shared)
        aligned[batch_id] = adata[:, pos[order]].copy()

    return aligned


def rescale_batches(
    batches: Mapping[str, AnnData] | Sequence[AnnData],
    counts_layer: str | None = "counts",
    size_factors_key: str = "size_factors",
    reference: str = "median",
    pseudo_count: float = 1.0,
) -> dict[str, AnnData]:
    """
    Removes the systematic difference in sequencing depth between batches.

    Size factors computed within each batch are centered to mean 1
    and multiplied by the batch's average library size relative to the reference depth.
    Log-normalized expression, log(counts / size_factor + pseudo_count),
    is then recomputed into `.X`.

    Args:
        batches (Mapping[str, AnnData] | Sequence[AnnData]): gene-aligned batches
            (see `align_genes`).
        counts_layer (str | None, optional): layer with raw counts, `.X` if None. Defaults to "counts".
        size_factors_key (str, optional): per-cell size factors in `.obs`;
            library size factors are used for batches lacking them. Defaults to "size_factors".
        reference (str, optional): "median" (median batch depth), "min" (lowest depth,
            downscaling the deeper batches) or a batch id. Defaults to "median".
        pseudo_count (float, optional): added before the log. Defaults to 1.

    Returns:
        dict[str, AnnData]: new objects with rescaled size factors in `.obs[size_factors_key]`
        and the batch-level numbers in `.uns["rescale"]`.
    """
    batches = _as_batch_dict(batches)
    _check_cells(batches, stage="rescale_batches")

    var_names = next(iter(batches.values())).var_names
    for batch_id, adata in batches.items():
        if not var_names.equals(adata.var_names):
            raise ConfigurationError(
                "batches are not aligned to the same genes, run align_genes first",
                stage="rescale_batches",
                batch=batch_id,
            )

    counts = {}
    for batch_id, adata in batches.items():
        if counts_layer is None:
            counts[batch_id] = adata.X
        elif counts_layer in adata.layers:
            counts[batch_id] = adata.layers[counts_layer]
        else:
            raise ConfigurationError(
                f"layer {counts_layer!r} with raw counts not found",
                stage="rescale_batches",
                batch=batch_id,
            )

    depths = pd.Series({b: _batch_depth(c) for b, c in counts.items()})

    if reference == "median":
        ref_depth = float(np.median(depths))
    elif reference == "min":
        ref_depth = float(depths.min())
    elif str(reference) in depths.index:
        ref_depth = float(depths[str(reference)])
    else:
        raise ConfigurationError(
            f"reference must be 'median', 'min' or a batch id, got {reference!r}",
            stage="rescale_batches",
        )

    if ref_depth <= 0:
        raise ValidationError("reference depth is zero", stage="rescale_batches")

    rescaled = {}
    for batch_id, adata in batches.items():
        if size_factors_key in adata.obs:
            sf = np.asarray(adata.obs[size_factors_key], dtype=np.float64)
        else:
            logger.info(
                "no size factors in .obs[%r] of batch %s, using library sizes",
                size_factors_key,
                batch_id,
            )
            sf = _library_size_factors(counts[batch_id])

        if not np.all(np.isfinite(sf)) or np.any(sf <= 0):
            raise ValidationError(
                "size factors must be positive and finite",
                stage="rescale_batches",
                batch=batch_id,
            )

        scale = depths[batch_id] / ref_depth
        sf = sf / sf.mean() * scale

        logger.info("batch %s: depth %.1f, scale factor %.3f", batch_id, depths[batch_id], scale)

        new = adata.copy()
        new.obs[size_factors_key] = sf
        new.X = _log_normalize(counts[batch_id], sf, pseudo_count=pseudo_count)
        new.uns["rescale"] = {
            "depth": float(depths[batch_id]),
            "reference_depth": ref_depth,
            "scale": float(scale),
            "pseudo_count": pseudo_count,
        }
        new.uns["log1p"] = {"base": None}
        rescaled[batch_id] = new

    return rescaled


def cosine_normalize(
    batches: Mapping[str, AnnData] | Sequence[AnnData],
) -> dict[str, AnnData]:
    """
    Scales every cell's expression vector to unit L2 norm,
    so that distances depend on the direction of expression only.
    Returns dense copies.
    """
    batches = _as_batch_dict(batches)

    normalized = {}
    for batch_id, adata in batches.items():
        new = adata.copy()
        if issparse(new.X):
            logger.info("densifying .X of batch %s for cosine normalization", batch_id)
        new.X = _l2_normalize_rows(_to_dense(new.X))
        new.uns["cos_norm"] = True
        normalized[batch_id] = new

    return normalized

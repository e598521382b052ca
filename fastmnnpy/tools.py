# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import warnings

from importlib.metadata import version as pkg_version
from typing import Mapping, Sequence

import anndata as ad
import numpy as np
import pandas as pd

from anndata import AnnData
from packaging import version
from sklearn.neighbors import KNeighborsClassifier, NearestNeighbors

from ._correction import _compute_corrections
from ._decomposition import Decomposition, _decompose
from ._merge import MergeReport, _merge_batches
from ._neighbors import AnchorPairs, _check_k, _find_mutual_neighbors
from ._utils import (
    _as_batch_dict,
    _check_cells,
    _check_merge_order,
    _l2_normalize_rows,
    _to_dense,
)
from .errors import ConfigurationError, NumericalError, ValidationError
from .preprocessing import align_genes, rescale_batches


ANNDATA_MIN_VERSION = version.parse("0.8")
logger = logging.getLogger("fastmnnpy")


def _check_anndata_version():
    anndata_version = version.parse(pkg_version("anndata"))
    if anndata_version < ANNDATA_MIN_VERSION:
        raise ValueError(
            f"fastmnnpy only works correctly with anndata>={ANNDATA_MIN_VERSION} "
            f"(you have {anndata_version}) as prior to {ANNDATA_MIN_VERSION}, "
            "`anndata.concat` didn't handle `.obsm` and `.layers` the same way."
        )


def find_mutual_neighbors(
    reference,
    query,
    k: int,
    neighbor_backend: str = "exact",
    random_seed: int = 0,
    n_jobs: int | None = None,
    **backend_kwargs,
) -> AnchorPairs:
    """
    Finds pairs (r, q) such that q is among the `k` nearest query cells of r
    and r is among the `k` nearest reference cells of q (Euclidean distance).

    With the approximate backend the pairs are mutual according to the
    neighbour lists it returns, they are not re-checked by brute force.

    Args:
        reference (np.ndarray | sparse matrix): [N_ref, features] reference cells.
        query (np.ndarray | sparse matrix): [N_query, features] query cells.
        k (int): number of neighbours searched in each direction,
            1 <= k <= min(N_ref, N_query).
        neighbor_backend (str, optional): "exact" or "approximate". Defaults to "exact".
        random_seed (int, optional): seed of the approximate index. Defaults to 0.
        n_jobs (int | None, optional): threads for the approximate index. Defaults to None.
        backend_kwargs: forwarded to the neighbour index.

    Returns:
        AnchorPairs: row indices of the pairs, sorted by query then reference index.
    """
    return _find_mutual_neighbors(
        _to_dense(reference),
        _to_dense(query),
        k,
        backend=neighbor_backend,
        random_seed=random_seed,
        n_jobs=n_jobs,
        **backend_kwargs,
    )


def compute_corrections(
    pairs: AnchorPairs,
    reference,
    query,
    bandwidth: float = 1.0,
    n_smooth: int = 20,
    return_fallback: bool = False,
):
    """
    Smoothed correction vector for every query cell.

    Each anchor pair gives a raw vector reference - query. A query cell gets
    the average of the raw vectors of its `n_smooth` nearest anchors, weighted by
    a Gaussian kernel of width `bandwidth` on the distance to the anchor's query cell.
    Cells out of reach of every anchor take the raw vector of the nearest one.

    Args:
        pairs (AnchorPairs): output of `find_mutual_neighbors`.
        reference (np.ndarray | sparse matrix): [N_ref, genes] reference expression.
        query (np.ndarray | sparse matrix): [N_query, genes] query expression.
        bandwidth (float, optional): kernel width. Defaults to 1.
        n_smooth (int, optional): anchors used per cell. Defaults to 20.
        return_fallback (bool, optional): also return the mask of cells
            corrected by their nearest anchor only. Defaults to False.

    Returns:
        np.ndarray: [N_query, genes] corrections, row i belongs to query cell i
        (and the fallback mask if `return_fallback`).
    """
    corrections, fallback = _compute_corrections(
        pairs,
        _to_dense(reference),
        _to_dense(query),
        bandwidth=bandwidth,
        n_smooth=n_smooth,
    )
    if return_fallback:
        return corrections, fallback
    return corrections


def reduce_dimensions(
    X,
    d: int = 50,
    svd_solver: str = "randomized",
    random_seed: int = 0,
) -> Decomposition:
    """
    Mean-centered rank-`d` decomposition of X [cells, genes].
    The sign of every component is fixed so that its largest-magnitude
    loading is positive, the applied flips are in `Decomposition.signs`.
    """
    return _decompose(_to_dense(X), d, svd_solver=svd_solver, random_seed=random_seed)


def _expression(adata: AnnData, layer: str | None) -> np.ndarray:
    return _to_dense(adata.X if layer is None else adata.layers[layer])


def _rescale(
    batches: dict,
    layer: str | None,
    counts_layer: str,
    size_factors_key: str,
    reference: str,
) -> tuple[dict, bool]:
    """
    Rescales gene-aligned batches from raw counts unless that was done already.
    Returns the batches and whether they were rescaled here.
    """
    if all("rescale" in adata.uns for adata in batches.values()):
        logger.info("batches were already rescaled, skipping depth rescaling")
        return batches, False

    if layer is not None:
        raise ConfigurationError(
            "depth rescaling recomputes .X from raw counts, "
            "pass rescale=False to correct a layer as it is",
            stage="rescale_batches",
        )

    missing = [b for b, adata in batches.items() if counts_layer not in adata.layers]
    if missing:
        warnings.warn(
            f"No raw counts in .layers[{counts_layer!r}] of batches {missing}, "
            "sequencing depth differences between batches are not removed "
            "(run fastmnnpy.pp.rescale_batches first or pass rescale=False)"
        )
        return batches, False

    rescaled = rescale_batches(
        batches,
        counts_layer=counts_layer,
        size_factors_key=size_factors_key,
        reference=reference,
    )
    return rescaled, True


def integrate(
    batches: Mapping[str, AnnData] | Sequence[AnnData],
    merge_order: Sequence[str],
    k: int = 20,
    d: int = 50,
    bandwidth: float = 1.0,
    n_smooth: int = 20,
    neighbor_backend: str = "exact",
    svd_solver: str = "randomized",
    random_seed: int = 0,
    cos_norm: bool = False,
    n_pcs: int | None = None,
    genes: Sequence[str] | None = None,
    layer: str | None = None,
    rescale: bool = True,
    counts_layer: str = "counts",
    size_factors_key: str = "size_factors",
    rescale_reference: str = "median",
    n_jobs: int | None = None,
    verbose: bool = False,
    **backend_kwargs,
) -> tuple[AnnData, MergeReport]:
    """
    Runs mutual nearest neighbours batch correction and reduces
    the corrected expression to `d` dimensions.

    Batches are merged one at a time in `merge_order`: the first one is the
    initial reference, every next one is corrected towards all the cells merged
    before it and then appended to them. The result depends on the order.

    After gene alignment, batches carrying raw counts are rescaled to a common
    sequencing depth (see `fastmnnpy.pp.rescale_batches`) unless they were
    rescaled before.

    Args:
        batches (Mapping[str, AnnData] | Sequence[AnnData]): batches
            as {batch_id: adata} (a list gets ids "0", "1", ...).
            Their order is the row order of the output.
        merge_order (Sequence[str]): every batch id exactly once, the first one being the reference.
        k (int, optional): neighbours searched in each direction. Defaults to 20.
        d (int, optional): dimensionality of the output embedding. Defaults to 50.
        bandwidth (float, optional): width of the Gaussian kernel smoothing the corrections. Defaults to 1.
        n_smooth (int, optional): nearest anchors averaged for each cell. Defaults to 20.
        neighbor_backend (str, optional): "exact" or "approximate". Defaults to "exact".
        svd_solver (str, optional): "svd" or "randomized". Defaults to "randomized".
        random_seed (int, optional): seed of randomized index and decomposition. Defaults to 0.
        cos_norm (bool, optional): L2-normalize every cell first. Defaults to False.
        n_pcs (int | None, optional): if set, neighbours are searched in the space of
            the first `n_pcs` components of all the uncorrected batches. Defaults to None.
        genes (Sequence[str] | None, optional): restrict shared genes to these
            (e.g. highly variable genes). Defaults to None.
        layer (str | None, optional): use `adata.layers[layer]` instead of `.X`,
            requires `rescale=False` unless the batches are rescaled already. Defaults to None.
        rescale (bool, optional): rescale batch depths from raw counts.
            Without counts a warning is issued and `.X` is used as it is. Defaults to True.
        counts_layer (str, optional): layer with raw counts. Defaults to "counts".
        size_factors_key (str, optional): per-cell size factors in `.obs`. Defaults to "size_factors".
        rescale_reference (str, optional): reference depth, "median", "min" or a batch id.
            Defaults to "median".
        n_jobs (int | None, optional): threads for the approximate index. Defaults to None.
        verbose (bool, optional): log progress at INFO level. Defaults to False.
        backend_kwargs: forwarded to the neighbour index.

    Returns:
        tuple[AnnData, MergeReport]: corrected object in input cell order
        (`.X` corrected expression, `.obsm["X_mnn"]` embedding,
        `.obs["batch"]`, `.obs["original_index"]` provenance,
        `.varm["mnn_loadings"]` gene loadings) and the run diagnostics.
    """
    _check_anndata_version()
    if verbose:
        logger.setLevel(logging.INFO)

    batches = _as_batch_dict(batches)
    batch_ids = list(batches)
    merge_order = _check_merge_order(merge_order, batch_ids)

    if int(k) != k or k < 1:
        raise ConfigurationError(f"k must be a positive integer, got {k}", stage="integrate")
    if int(d) != d or d < 1:
        raise ConfigurationError(f"d must be a positive integer, got {d}", stage="integrate")
    if n_pcs is not None and (int(n_pcs) != n_pcs or n_pcs < 1):
        raise ConfigurationError(
            f"n_pcs must be a positive integer or None, got {n_pcs}", stage="integrate"
        )

    aligned = align_genes(batches, genes=genes)
    _check_cells(aligned, stage="integrate")

    rescaled = False
    if rescale:
        aligned, rescaled = _rescale(
            aligned, layer, counts_layer, size_factors_key, rescale_reference
        )

    n_cells = sum(adata.n_obs for adata in aligned.values())
    n_genes = next(iter(aligned.values())).n_vars
    if n_cells < d:
        raise NumericalError(
            f"can't compute {d} components from {n_cells} cells", stage="reduce_dimensions"
        )
    if n_genes < d:
        raise NumericalError(
            f"can't compute {d} components from {n_genes} shared genes",
            stage="reduce_dimensions",
        )

    for batch_id in merge_order[1:]:
        _check_k(k, aligned[merge_order[0]].n_obs, aligned[batch_id].n_obs, batch=batch_id)

    for batch_id, adata in aligned.items():
        if layer is None and "log1p" not in adata.uns:
            warnings.warn(
                f"Gene expressions of batch {batch_id} should be log-normalized "
                f"(run fastmnnpy.pp.rescale_batches or scanpy.pp.log1p)"
            )

    expressions = {}
    for batch_id, adata in aligned.items():
        X = _expression(adata, layer)
        if not np.all(np.isfinite(X)):
            raise ValidationError(
                "expression contains non-finite values", stage="integrate", batch=batch_id
            )
        expressions[batch_id] = _l2_normalize_rows(X) if cos_norm else X

    project = None
    if n_pcs is not None:
        search_pca = _decompose(
            np.concatenate([expressions[b] for b in batch_ids]),
            n_pcs,
            svd_solver=svd_solver,
            random_seed=random_seed,
            stage="search_space",
        )
        project = search_pca.transform
        logger.info("searching neighbours in %i principal components", n_pcs)

    params = {
        "k": k,
        "d": d,
        "bandwidth": bandwidth,
        "n_smooth": n_smooth,
        "neighbor_backend": neighbor_backend,
        "svd_solver": svd_solver,
        "random_seed": random_seed,
        "cos_norm": cos_norm,
        "n_pcs": n_pcs,
        "layer": layer,
        "rescaled": rescaled,
    }

    pool, steps = _merge_batches(
        expressions,
        merge_order,
        k=k,
        bandwidth=bandwidth,
        n_smooth=n_smooth,
        neighbor_backend=neighbor_backend,
        random_seed=random_seed,
        n_jobs=n_jobs,
        project=project,
        **backend_kwargs,
    )

    # back to input order
    rows = np.concatenate([pool.rows_of(b) for b in batch_ids])
    corrected = pool.expression[rows]

    decomposition = _decompose(corrected, d, svd_solver=svd_solver, random_seed=random_seed)

    report = MergeReport(
        merge_order=merge_order,
        steps=steps,
        cells_per_batch={b: int(aligned[b].n_obs) for b in batch_ids},
        signs=decomposition.signs.astype(int).tolist(),
        singular_values=decomposition.singular_values.tolist(),
        params=params,
    )

    result = ad.concat(
        [aligned[b] for b in batch_ids],
        label="batch",
        keys=batch_ids,
        merge="same",
    )
    if not result.obs_names.is_unique:
        logger.info("cell ids are not unique across batches, making them unique")
        result.obs_names_make_unique()

    result.layers["uncorrected"] = result.X if layer is None else result.layers[layer]
    result.X = corrected
    result.obs["original_index"] = pool.cell_index[rows]
    result.obsm["X_mnn"] = decomposition.scores
    result.varm["mnn_loadings"] = decomposition.loadings.T
    result.uns["mnn"] = report.to_uns()

    logger.info(
        "integrated %i cells from %i batches into %i dimensions",
        result.n_obs,
        len(batch_ids),
        d,
    )

    return result, report


def mnn_integrate(
    adata: AnnData,
    key: str,
    merge_order: Sequence[str],
    basis: str = "X_mnn",
    corrected_layer: str | None = "mnn_corrected",
    use_genes_column: str | None = "highly_variable",
    uns: str = "mnn",
    **integrate_kwargs,
) -> MergeReport:
    """
    Runs `integrate` on an AnnData object holding all the batches
    and writes the results back into it.

    Saves the embedding to `adata.obsm[basis]`, corrected expression to
    `adata.layers[corrected_layer]` (genes not used for the correction keep
    their values) and parameters with diagnostics to `adata.uns[uns]`.

    Args:
        adata (AnnData): log-normalized cells of all batches.
        key (str): column of `adata.obs` with batch ids.
        merge_order (Sequence[str]): batch ids in merging order.
        basis (str, optional): obsm slot of the embedding. Defaults to "X_mnn".
        corrected_layer (str | None, optional): layer for corrected expression,
            not saved if None. Defaults to "mnn_corrected".
        use_genes_column (str | None, optional): boolean column of `adata.var` selecting
            genes for the correction, ignored if missing. Defaults to "highly_variable".
        uns (str, optional): uns slot for parameters and report. Defaults to "mnn".
        integrate_kwargs: forwarded to `integrate`.

    Returns:
        MergeReport: the run diagnostics.
    """
    assert key in adata.obs, f"Column `{key}` not found in adata.obs"

    if not adata.var_names.is_unique:
        raise ConfigurationError(
            "var_names must be unique, run adata.var_names_make_unique()",
            stage="mnn_integrate",
        )

    genes = integrate_kwargs.pop("genes", None)
    if genes is None and use_genes_column is not None and use_genes_column in adata.var:
        genes = adata.var_names[adata.var[use_genes_column].astype(bool)]
        logger.info("using %i genes from adata.var[%r]", len(genes), use_genes_column)

    labels = adata.obs[key].astype(str)
    batch_ids = pd.unique(labels)

    positions = {b: np.flatnonzero(labels == b) for b in batch_ids}
    batches = {b: adata[positions[b]] for b in batch_ids}

    result, report = integrate(batches, merge_order, genes=genes, **integrate_kwargs)

    # [N] row of `result` for every row of `adata`
    order = np.empty(adata.n_obs, dtype=np.int64)
    order[np.concatenate([positions[b] for b in batch_ids])] = np.arange(adata.n_obs)

    adata.obsm[basis] = result.obsm["X_mnn"][order]

    if corrected_layer is not None:
        layer = integrate_kwargs.get("layer")
        full = _to_dense(adata.X if layer is None else adata.layers[layer])
        gene_pos = adata.var_names.get_indexer(result.var_names)
        full[:, gene_pos] = result.X[order]
        adata.layers[corrected_layer] = full

    adata.uns[uns] = {"key": key, "basis": basis, **report.to_uns()}

    return report


def batch_mixing_entropy(
    adata: AnnData,
    key: str,
    basis: str = "X_mnn",
    n_neighbors: int = 30,
    obs: str | None = "mnn_batch_entropy",
) -> float:
    """
    Shannon entropy (bits) of batch labels among each cell's `n_neighbors`
    nearest neighbours in `adata.obsm[basis]`. Higher means better mixed batches,
    log2(number of batches) is the maximum.

    Args:
        adata (AnnData): integrated adata.
        key (str): column of `adata.obs` with batch ids.
        basis (str, optional): representation to evaluate. Defaults to "X_mnn".
        n_neighbors (int, optional): neighbourhood size. Defaults to 30.
        obs (str | None, optional): if not None, per-cell values go to `adata.obs[obs]`.

    Returns:
        float: mean entropy over cells.
    """
    X = adata.obsm[basis]
    n_neighbors = min(n_neighbors, adata.n_obs)

    nn = NearestNeighbors(n_neighbors=n_neighbors).fit(X)
    # [N, n_neighbors]
    ind = nn.kneighbors(X, return_distance=False)

    codes = pd.Categorical(adata.obs[key].astype(str)).codes
    # [N, B] fraction of each batch in the neighbourhood
    W = np.stack(
        [(codes[ind] == b).mean(axis=1) for b in range(codes.max() + 1)], axis=1
    )
    entropy = -(W * np.log2(W + 1e-10)).sum(axis=1)

    if obs is not None:
        adata.obs[obs] = entropy

    return float(entropy.mean())


def transfer_labels_kNN(
    adata: AnnData,
    key: str,
    labels: str,
    reference_batches: Sequence[str] | str,
    *kNN_args,
    basis: str = "X_mnn",
    obs: str | None = None,
    **kNN_kwargs,
) -> float:
    """
    Trains sklearn kNN classificator on the cells of `reference_batches`
    and predicts labels of all the other cells from the integrated representation.
    Cell type labels are used here only for evaluation.

    Args:
        adata (AnnData): integrated adata.
        key (str): column of `adata.obs` with batch ids.
        labels (str): column of `adata.obs` with cell types.
        reference_batches (Sequence[str] | str): batches to train on.
        kNN_args: will be passed to kNN class init function.
        basis (str, optional): adata.obsm[basis] is used as features. Defaults to "X_mnn".
        obs (str | None, optional): where to save predicted labels of the other batches.
            Defaults to f"{labels}_predicted".
        kNN_kwargs: will be passed to kNN class init function.

    Returns:
        float: accuracy of the predictions.
    """
    if isinstance(reference_batches, str):
        reference_batches = [reference_batches]

    is_ref = adata.obs[key].astype(str).isin([str(b) for b in reference_batches]).to_numpy()
    assert is_ref.any(), "no cells of the reference batches found"
    assert (~is_ref).any(), "no cells outside of the reference batches"

    knn = KNeighborsClassifier(*kNN_args, **kNN_kwargs)
    knn.fit(adata.obsm[basis][is_ref], adata.obs[labels][is_ref].astype(str))

    predicted = knn.predict(adata.obsm[basis][~is_ref])

    if obs is None:
        obs = f"{labels}_predicted"
    adata.obs[obs] = pd.Series(pd.NA, index=adata.obs_names, dtype=object)
    adata.obs.loc[~is_ref, obs] = predicted

    truth = adata.obs[labels][~is_ref].astype(str).to_numpy()
    return float((predicted == truth).mean())

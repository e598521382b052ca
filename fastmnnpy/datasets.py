from __future__ import annotations

from typing import Sequence

import numpy as np
import pandas as pd

from anndata import AnnData
from scipy.sparse import csr_matrix


def simulate_batches(
    n_cells: int | Sequence[int] = 200,
    n_genes: int = 300,
    n_cell_types: int = 3,
    batch_names: Sequence[str] = ("10x", "smartseq2"),
    batch_effect: float = 1.0,
    affected_fraction: float = 0.3,
    depths: Sequence[float] | None = None,
    type_fold_change: float = 2.0,
    random_seed: int = 0,
) -> AnnData:
    """
    Counts of several batches sharing the same cell types: Poisson given the
    cell's log-normal library size, so overdispersed (negative-binomial-like)
    across cells.

    Each cell type up-regulates its own block of marker genes by `type_fold_change`
    (natural log scale). Every batch shifts a random `affected_fraction` of genes
    by N(0, batch_effect) in log scale and has its own average library size.

    Returns:
        AnnData: raw counts in `.X` and `.layers["counts"]`,
        `.obs["batch"]` and `.obs["cell_type"]`.
    """
    rng = np.random.default_rng(random_seed)
    n_batches = len(batch_names)

    if isinstance(n_cells, int):
        n_cells = [n_cells] * n_batches
    if depths is None:
        depths = np.linspace(2000, 6000, n_batches)

    # [G] baseline log abundances
    base = rng.normal(0, 1, n_genes)

    # [T, G] cell type programs
    programs = np.tile(base, (n_cell_types, 1))
    markers = np.array_split(rng.permutation(n_genes)[: n_genes // 2], n_cell_types)
    for t, genes in enumerate(markers):
        programs[t, genes] += type_fold_change

    blocks = []
    obs = []
    for b, name in enumerate(batch_names):
        shift = np.zeros(n_genes)
        affected = rng.choice(n_genes, int(affected_fraction * n_genes), replace=False)
        shift[affected] = rng.normal(0, batch_effect, affected.size)

        types = rng.integers(0, n_cell_types, n_cells[b])
        # [N, G]
        log_mu = programs[types] + shift
        p = np.exp(log_mu - log_mu.max(axis=1, keepdims=True))
        p /= p.sum(axis=1, keepdims=True)

        lib = rng.lognormal(np.log(depths[b]), 0.3, n_cells[b])
        blocks.append(rng.poisson(p * lib[:, np.newaxis]))

        obs.append(
            pd.DataFrame(
                {
                    "batch": name,
                    "cell_type": [f"type_{t}" for t in types],
                },
                index=[f"{name}_cell{i}" for i in range(n_cells[b])],
            )
        )

    obs = pd.concat(obs)
    obs["batch"] = pd.Categorical(obs["batch"], categories=list(batch_names))
    obs["cell_type"] = obs["cell_type"].astype("category")

    X = csr_matrix(np.concatenate(blocks).astype(np.float32))
    adata = AnnData(
        X=X,
        obs=obs,
        var=pd.DataFrame(index=[f"gene_{g}" for g in range(n_genes)]),
    )
    adata.layers["counts"] = X.copy()

    return adata


def split_batches(adata: AnnData, key: str = "batch") -> dict[str, AnnData]:
    """Splits `adata` into {batch_id: adata} in order of appearance."""
    labels = adata.obs[key].astype(str)
    return {b: adata[(labels == b).to_numpy()].copy() for b in pd.unique(labels)}

# pylint: disable=E1123, W0621, C0116, W0511, E1121

from __future__ import annotations

import logging

from typing import Sequence

import anndata as ad
import scanpy as sc
from anndata import AnnData

import fastmnnpy as fm


logger = logging.getLogger("fastmnnpy")


def run_fastmnn(
    adata: AnnData,
    batch_key: str,
    merge_order: Sequence[str],
    labels: str | None,
    n_top_genes: int | None,
    k: int,
    d: int,
    bandwidth: float,
    neighbor_backend: str = "exact",
    random_seed: int = 0,
) -> tuple[AnnData, fm.MergeReport]:
    """
    This function is supposed to be used mostly for debugging
    1. preprocessing (raw counts in adata.X)
        - per batch size factors from library sizes
        - gene alignment, depth rescaling between batches
        - highly variable genes over the rescaled batches
    2. run fastMNN
        - correct batches in merge_order
        - reduce to d dimensions
    3. evaluate
        - batch mixing entropy
        - label transfer from the first batch, if labels are given
    """
    sc.pp.calculate_qc_metrics(adata, percent_top=None, log1p=False, inplace=True)

    batches = fm.datasets.split_batches(adata, batch_key)
    for batch in batches.values():
        batch.obs["size_factors"] = (
            batch.obs["total_counts"] / batch.obs["total_counts"].mean()
        )
        if "counts" not in batch.layers:
            batch.layers["counts"] = batch.X.copy()

    batches = fm.pp.align_genes(batches)
    batches = fm.pp.rescale_batches(batches, reference="median")

    genes = None
    if n_top_genes is not None:
        adata_log = ad.concat(batches, label="batch_fastmnn")
        adata_log.uns["log1p"] = {"base": None}
        sc.pp.highly_variable_genes(
            adata_log, batch_key="batch_fastmnn", n_top_genes=n_top_genes
        )
        genes = adata_log.var_names[adata_log.var["highly_variable"]]
        logger.info("%i highly variable genes selected", len(genes))

    corrected, report = fm.tl.integrate(
        batches,
        merge_order,
        k=k,
        d=d,
        bandwidth=bandwidth,
        genes=genes,
        neighbor_backend=neighbor_backend,
        random_seed=random_seed,
        verbose=True,
    )

    entropy = fm.tl.batch_mixing_entropy(corrected, "batch")
    logger.info("mean batch mixing entropy: %.3f", entropy)

    if labels is not None:
        accuracy = fm.tl.transfer_labels_kNN(
            corrected, "batch", labels, merge_order[0], n_neighbors=10
        )
        logger.info("label transfer accuracy: %.3f", accuracy)

    print(report.steps_frame())

    return corrected, report


if __name__ == "__main__":

    logging.basicConfig(level=logging.INFO)

    adata = fm.datasets.simulate_batches(
        n_cells=[400, 300, 200],
        batch_names=["10x_v2", "10x_v3", "smartseq2"],
        batch_effect=1.5,
        random_seed=42,
    )

    run_fastmnn(
        adata,
        batch_key="batch",
        merge_order=["10x_v2", "10x_v3", "smartseq2"],
        labels="cell_type",
        n_top_genes=150,
        k=20,
        d=20,
        bandwidth=1.0,
    )

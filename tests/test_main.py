import numpy as np

import fastmnnpy as fm
from fastmnnpy.main import run_fastmnn


class TestRunFastMNN:
    def test_pipeline_from_raw_counts(self):
        adata = fm.datasets.simulate_batches(
            n_cells=[120, 100, 80],
            n_genes=150,
            batch_names=["a", "b", "c"],
            random_seed=1,
        )

        corrected, report = run_fastmnn(
            adata,
            batch_key="batch",
            merge_order=["b", "a", "c"],
            labels="cell_type",
            n_top_genes=100,
            k=10,
            d=8,
            bandwidth=3.0,
        )

        assert 0 < corrected.n_vars <= 150
        assert corrected.obsm["X_mnn"].shape == (300, 8)
        assert [s.batch for s in report.steps] == ["a", "c"]
        assert report.cells_per_batch == {"a": 120, "b": 100, "c": 80}
        assert "mnn_batch_entropy" in corrected.obs
        assert "cell_type_predicted" in corrected.obs


class TestSimulateBatches:
    def test_shapes_and_labels(self):
        adata = fm.datasets.simulate_batches(
            n_cells=[30, 20], n_genes=40, n_cell_types=2, batch_names=["x", "y"]
        )

        assert adata.shape == (50, 40)
        assert adata.obs["batch"].value_counts().to_dict() == {"x": 30, "y": 20}
        assert set(adata.obs["cell_type"]) <= {"type_0", "type_1"}
        assert (adata.layers["counts"] != adata.X).nnz == 0

        batches = fm.datasets.split_batches(adata)
        assert list(batches) == ["x", "y"]
        assert batches["y"].n_obs == 20

    def test_counts_are_overdispersed(self):
        adata = fm.datasets.simulate_batches(n_cells=[300], batch_names=["x"], random_seed=4)

        totals = np.asarray(adata.X.sum(axis=1)).ravel()
        # Poisson alone would give variance close to the mean
        assert totals.var() > 10 * totals.mean()

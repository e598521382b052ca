import numpy as np
import pandas as pd
import pytest

from anndata import AnnData
from scipy.sparse import csr_matrix

import fastmnnpy as fm


def make_adata(X, genes, prefix="cell", size_factors=None):
    adata = AnnData(
        X=np.asarray(X, dtype=np.float64),
        obs=pd.DataFrame(index=[f"{prefix}{i}" for i in range(len(X))]),
        var=pd.DataFrame(index=genes),
    )
    adata.layers["counts"] = adata.X.copy()
    if size_factors is not None:
        adata.obs["size_factors"] = size_factors
    return adata


class TestAlignGenes:
    @staticmethod
    def assert_equals(f, s, threshold=1e-10):
        assert (abs(np.asarray(f) - np.asarray(s)) < threshold).all()

    def test_intersection_in_lexical_order(self):
        a = make_adata([[3, 1, 2], [30, 10, 20]], ["g3", "g1", "g2"])
        b = make_adata([[2, 3, 4]], ["g2", "g3", "g4"])

        aligned = fm.pp.align_genes({"a": a, "b": b})

        assert list(aligned) == ["a", "b"]
        for adata in aligned.values():
            assert list(adata.var_names) == ["g2", "g3"]
        self.assert_equals(aligned["a"].X, [[2, 3], [20, 30]])
        self.assert_equals(aligned["b"].X, [[2, 3]])

    def test_inputs_are_not_modified(self):
        a = make_adata([[3, 1, 2]], ["g3", "g1", "g2"])
        b = make_adata([[2, 3, 4]], ["g2", "g3", "g4"])

        fm.pp.align_genes({"a": a, "b": b})

        assert list(a.var_names) == ["g3", "g1", "g2"]

    def test_list_input_gets_string_ids(self):
        a = make_adata([[1, 2]], ["g1", "g2"])
        aligned = fm.pp.align_genes([a, a.copy()])
        assert list(aligned) == ["0", "1"]

    def test_restricted_to_given_genes(self):
        a = make_adata([[1, 2, 3]], ["g1", "g2", "g3"])
        b = make_adata([[1, 2, 3]], ["g1", "g2", "g3"])

        aligned = fm.pp.align_genes({"a": a, "b": b}, genes=["g3", "g1", "g9"])

        assert list(aligned["a"].var_names) == ["g1", "g3"]

    def test_duplicated_genes_keep_first(self):
        a = AnnData(
            X=np.array([[1.0, 2.0, 3.0]]),
            var=pd.DataFrame(index=["g1", "g2", "g1"]),
        )
        b = make_adata([[5, 6]], ["g1", "g2"])

        aligned = fm.pp.align_genes({"a": a, "b": b})

        assert list(aligned["a"].var_names) == ["g1", "g2"]
        self.assert_equals(aligned["a"].X, [[1, 2]])

    def test_no_shared_genes(self):
        a = make_adata([[1, 2]], ["g1", "g2"])
        b = make_adata([[1, 2]], ["g3", "g4"])

        with pytest.raises(fm.ConfigurationError):
            fm.pp.align_genes({"a": a, "b": b})


class TestRescaleBatches:
    @staticmethod
    def assert_equals(f, s, threshold=1e-8):
        assert (abs(np.asarray(f) - np.asarray(s)) < threshold).all()

    def setup_method(self):
        rng = np.random.default_rng(0)
        self.counts = rng.poisson(5, size=(40, 30)).astype(np.float64)
        self.genes = [f"g{i}" for i in range(30)]

    def test_depth_difference_is_removed(self):
        shallow = make_adata(self.counts, self.genes, "s", size_factors=np.ones(40))
        deep = make_adata(2 * self.counts, self.genes, "d", size_factors=np.ones(40))

        rescaled = fm.pp.rescale_batches({"shallow": shallow, "deep": deep})

        self.assert_equals(rescaled["shallow"].X, rescaled["deep"].X)
        assert rescaled["deep"].uns["rescale"]["scale"] == pytest.approx(4 / 3)
        assert rescaled["shallow"].uns["rescale"]["scale"] == pytest.approx(2 / 3)
        assert "log1p" in rescaled["deep"].uns

    def test_library_size_factors_by_default(self):
        shallow = make_adata(self.counts, self.genes, "s")
        deep = make_adata(3 * self.counts, self.genes, "d")

        rescaled = fm.pp.rescale_batches({"shallow": shallow, "deep": deep}, reference="min")

        self.assert_equals(rescaled["shallow"].X, rescaled["deep"].X)
        assert rescaled["shallow"].uns["rescale"]["scale"] == pytest.approx(1.0)
        self.assert_equals(
            rescaled["deep"].obs["size_factors"],
            3 * rescaled["shallow"].obs["size_factors"],
        )

    def test_reference_batch_keeps_its_depth(self):
        shallow = make_adata(self.counts, self.genes, "s", size_factors=np.ones(40))
        deep = make_adata(2 * self.counts, self.genes, "d", size_factors=np.ones(40))

        rescaled = fm.pp.rescale_batches({"shallow": shallow, "deep": deep}, reference="deep")

        self.assert_equals(rescaled["deep"].X, np.log1p(2 * self.counts))
        self.assert_equals(rescaled["deep"].obs["size_factors"], np.ones(40))

    def test_sparse_counts(self):
        shallow = make_adata(self.counts, self.genes, "s")
        shallow.layers["counts"] = csr_matrix(self.counts)
        deep = make_adata(2 * self.counts, self.genes, "d")

        rescaled = fm.pp.rescale_batches({"shallow": shallow, "deep": deep})

        self.assert_equals(rescaled["shallow"].X.toarray(), rescaled["deep"].X)

    def test_empty_batch(self):
        full = make_adata(self.counts, self.genes, "f")
        empty = full[:0].copy()

        with pytest.raises(fm.ValidationError) as e:
            fm.pp.rescale_batches({"full": full, "empty": empty})
        assert e.value.batch == "empty"

    def test_non_positive_size_factors(self):
        bad = make_adata(self.counts, self.genes, "b", size_factors=np.zeros(40))
        good = make_adata(self.counts, self.genes, "g")

        with pytest.raises(fm.ValidationError):
            fm.pp.rescale_batches({"good": good, "bad": bad})

    def test_unaligned_genes(self):
        a = make_adata(self.counts, self.genes, "a")
        b = make_adata(self.counts, self.genes[::-1], "b")

        with pytest.raises(fm.ConfigurationError):
            fm.pp.rescale_batches({"a": a, "b": b})

    def test_unknown_reference(self):
        a = make_adata(self.counts, self.genes, "a")

        with pytest.raises(fm.ConfigurationError):
            fm.pp.rescale_batches({"a": a}, reference="nope")


class TestCosineNormalize:
    def test_unit_norm(self):
        a = make_adata([[3, 4], [0, 0], [1, 0]], ["g1", "g2"])

        normalized = fm.pp.cosine_normalize({"a": a})["a"]

        norms = np.linalg.norm(normalized.X, axis=1)
        assert np.allclose(norms, [1, 0, 1])
        assert np.allclose(normalized.X[0], [0.6, 0.8])

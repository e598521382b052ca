import numpy as np
import pytest

import fastmnnpy as fm


class TestReduceDimensions:
    def setup_method(self):
        rng = np.random.default_rng(4)
        # rank 3 signal + small noise
        self.X = rng.normal(size=(60, 3)) @ rng.normal(size=(3, 20)) * 5
        self.X += rng.normal(scale=0.01, size=self.X.shape)

    def test_matches_numpy_svd(self):
        dec = fm.tl.reduce_dimensions(self.X, d=3, svd_solver="svd")

        Xc = self.X - self.X.mean(axis=0)
        U, S, _ = np.linalg.svd(Xc, full_matrices=False)
        expected = U[:, :3] * S[:3]

        for i in range(3):
            sign = np.sign(dec.scores[:, i] @ expected[:, i])
            assert np.allclose(dec.scores[:, i], sign * expected[:, i])
        assert np.allclose(dec.singular_values, S[:3])

    def test_solvers_agree(self):
        exact = fm.tl.reduce_dimensions(self.X, d=3, svd_solver="svd")
        randomized = fm.tl.reduce_dimensions(self.X, d=3, svd_solver="randomized", random_seed=1)

        assert np.allclose(exact.scores, randomized.scores, atol=1e-6)

    def test_sign_convention(self):
        dec = fm.tl.reduce_dimensions(self.X, d=3, svd_solver="svd")
        flipped = fm.tl.reduce_dimensions(-self.X, d=3, svd_solver="svd")

        top = np.argmax(np.abs(dec.loadings), axis=1)
        assert (dec.loadings[np.arange(3), top] > 0).all()
        assert set(dec.signs.tolist()) <= {-1.0, 1.0}
        # negating the data can't flip the output
        assert np.allclose(dec.loadings, flipped.loadings)

    def test_transform(self):
        dec = fm.tl.reduce_dimensions(self.X, d=3, svd_solver="svd")
        assert np.allclose(dec.transform(self.X), dec.scores)

    def test_too_few_cells(self):
        with pytest.raises(fm.NumericalError):
            fm.tl.reduce_dimensions(self.X[:2], d=3)

    def test_non_finite(self):
        X = self.X.copy()
        X[0, 0] = np.nan
        with pytest.raises(fm.NumericalError):
            fm.tl.reduce_dimensions(X, d=3)

    def test_unknown_solver(self):
        with pytest.raises(fm.ConfigurationError):
            fm.tl.reduce_dimensions(self.X, d=3, svd_solver="arpack")

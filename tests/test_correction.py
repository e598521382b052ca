import numpy as np
import pytest

import fastmnnpy as fm


class TestCorrections:
    @staticmethod
    def assert_equals(f, s, threshold=1e-10):
        assert (abs(np.asarray(f) - np.asarray(s)) < threshold).all()

    def test_shifted_line(self):
        reference = np.array([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0]])
        query = np.array([[0.0, 5.0], [1.0, 5.0], [2.0, 5.0]])

        pairs = fm.tl.find_mutual_neighbors(reference, query, 1)
        corrections = fm.tl.compute_corrections(pairs, reference, query, bandwidth=1.0)

        self.assert_equals(corrections, np.tile([0.0, -5.0], (3, 1)))
        self.assert_equals(query + corrections, reference)

    def test_identical_batches_give_zero_vectors(self):
        rng = np.random.default_rng(3)
        X = rng.normal(size=(40, 8))

        pairs = fm.tl.find_mutual_neighbors(X, X.copy(), 1)

        assert (pairs.reference == pairs.query).all()
        self.assert_equals(fm.tl.compute_corrections(pairs, X, X.copy()), 0)

    def test_weights_average_nearest_anchors(self):
        pairs = fm.AnchorPairs(reference=np.array([0, 1]), query=np.array([0, 1]))
        reference = np.array([[0.0, 1.0], [1.0, 3.0]])
        query = np.array([[0.0, 0.0], [1.0, 0.0], [0.5, 0.0]])

        corrections = fm.tl.compute_corrections(pairs, reference, query, bandwidth=1.0)

        w = np.exp(-0.5)
        self.assert_equals(corrections[0], (np.array([0, 1]) + w * np.array([0, 3])) / (1 + w))
        self.assert_equals(corrections[1], (w * np.array([0, 1]) + np.array([0, 3])) / (1 + w))
        # equidistant from both anchors
        self.assert_equals(corrections[2], [0, 2])

    def test_n_smooth_limits_anchors(self):
        pairs = fm.AnchorPairs(reference=np.array([0, 1]), query=np.array([0, 1]))
        reference = np.array([[0.0, 1.0], [1.0, 3.0]])
        query = np.array([[0.0, 0.0], [1.0, 0.0]])

        corrections = fm.tl.compute_corrections(
            pairs, reference, query, bandwidth=100.0, n_smooth=1
        )

        self.assert_equals(corrections, [[0, 1], [0, 3]])

    def test_fallback_to_nearest_anchor(self):
        reference = np.array([[0.0, 0.0]])
        query = np.array([[0.0, 1.0], [0.0, 100.0]])

        pairs = fm.tl.find_mutual_neighbors(reference, query, 1)
        corrections, fallback = fm.tl.compute_corrections(
            pairs, reference, query, bandwidth=1.0, return_fallback=True
        )

        assert fallback.tolist() == [False, True]
        self.assert_equals(corrections, [[0, -1], [0, -1]])

    @pytest.mark.parametrize("bandwidth", [0, -1, np.inf, np.nan])
    def test_bad_bandwidth(self, bandwidth):
        pairs = fm.AnchorPairs(reference=np.array([0]), query=np.array([0]))

        with pytest.raises(fm.ConfigurationError):
            fm.tl.compute_corrections(pairs, np.zeros((1, 2)), np.ones((1, 2)), bandwidth=bandwidth)

    def test_no_anchors(self):
        pairs = fm.AnchorPairs(
            reference=np.array([], dtype=np.int64), query=np.array([], dtype=np.int64)
        )

        with pytest.raises(fm.IntegrationError):
            fm.tl.compute_corrections(pairs, np.zeros((1, 2)), np.ones((1, 2)))

"""
fastMNN batch correction:

1. Preprocessing:
    - intersection of the batches' genes, same (lexical) gene order everywhere
    - per-cell size factors are rescaled by a batch-level factor
        (average library size relative to a reference batch depth),
        so that log-expression values have comparable depth across batches
    - log(counts / size_factor + 1)
    - optionally cosine normalization of every cell

2. Mutual nearest neighbours (MNN)
    - k nearest reference cells of every query cell and vice versa
        (exact brute force or approximate pynndescent index)
    - pairs found in both directions become anchors

3. Correction vectors
    - raw vector for each anchor pair: reference - query expression
    - for each query cell: Gaussian kernel weighted average of the raw vectors
        of its nearest anchors, added to its expression

4. Merging
    - batches are folded one by one in an explicit `merge_order`
        into a growing pool of already corrected cells (order matters)

5. Dimensionality reduction
    - mean-centered truncated SVD of the corrected expression,
        signs fixed so that the largest loading of every component is positive
"""

from . import preprocessing as pp
from . import tools as tl
from . import datasets
from ._merge import MergeReport, MergeStep, ReferencePool
from ._neighbors import AnchorPairs
from ._decomposition import Decomposition
from .errors import (
    FastMNNError,
    ConfigurationError,
    ValidationError,
    IntegrationError,
    NumericalError,
)

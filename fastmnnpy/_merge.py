# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging

from dataclasses import asdict, dataclass, field, replace
from typing import Callable, Sequence

import numpy as np
import pandas as pd

from ._correction import _compute_corrections
from ._neighbors import _find_mutual_neighbors
from ._utils import _check_finite
from .errors import IntegrationError

logger = logging.getLogger("fastmnnpy")


@dataclass(frozen=True)
class ReferencePool:
    """
    Already merged cells. Never modified in place:
    `append` returns a new pool, so a failed step leaves the previous one intact.
    """

    # [N, D] coordinates used for neighbour search
    search: np.ndarray
    # [N, G] corrected expression
    expression: np.ndarray
    # [N] batch of origin
    batch: np.ndarray
    # [N] row of the cell in its batch of origin
    cell_index: np.ndarray

    @classmethod
    def from_batch(cls, batch_id: str, expression: np.ndarray, search: np.ndarray):
        n = expression.shape[0]
        return cls(
            search=search,
            expression=expression,
            batch=np.repeat(np.array([batch_id], dtype=object), n),
            cell_index=np.arange(n),
        )

    def __len__(self) -> int:
        return self.expression.shape[0]

    def append(self, batch_id: str, expression: np.ndarray, search: np.ndarray):
        n = expression.shape[0]
        return replace(
            self,
            search=np.concatenate([self.search, search]),
            expression=np.concatenate([self.expression, expression]),
            batch=np.concatenate([self.batch, np.repeat(np.array([batch_id], dtype=object), n)]),
            cell_index=np.concatenate([self.cell_index, np.arange(n)]),
        )

    def rows_of(self, batch_id: str) -> np.ndarray:
        return np.flatnonzero(self.batch == batch_id)


@dataclass(frozen=True)
class MergeStep:
    step: int
    batch: str
    # pool size the batch was merged into
    n_reference_cells: int
    n_query_cells: int
    n_anchors: int
    n_anchor_reference_cells: int
    n_anchor_query_cells: int
    # cells corrected by their nearest anchor only
    n_fallback_cells: int


@dataclass
class MergeReport:
    """Diagnostics of one integration run."""

    merge_order: list
    steps: list = field(default_factory=list)
    cells_per_batch: dict = field(default_factory=dict)
    # +1/-1 applied to each output component
    signs: list = field(default_factory=list)
    singular_values: list = field(default_factory=list)
    params: dict = field(default_factory=dict)

    @property
    def anchor_counts(self) -> dict:
        return {s.batch: s.n_anchors for s in self.steps}

    @property
    def n_fallback_cells(self) -> int:
        return int(sum(s.n_fallback_cells for s in self.steps))

    def steps_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [asdict(s) for s in self.steps], columns=list(MergeStep.__dataclass_fields__)
        ).set_index("step")

    def to_dict(self) -> dict:
        return {
            "merge_order": list(self.merge_order),
            "steps": [asdict(s) for s in self.steps],
            "cells_per_batch": dict(self.cells_per_batch),
            "signs": list(self.signs),
            "singular_values": list(self.singular_values),
            "params": dict(self.params),
        }

    def to_uns(self) -> dict:
        """Same content as `to_dict`, in types that can be written to .h5ad."""
        return {
            "merge_order": np.array(self.merge_order, dtype=object),
            "steps": self.steps_frame().reset_index(),
            "cells_per_batch": {b: int(n) for b, n in self.cells_per_batch.items()},
            "signs": np.array(self.signs, dtype=np.int64),
            "singular_values": np.array(self.singular_values, dtype=np.float64),
            # None can't be stored
            "params": {p: v for p, v in self.params.items() if v is not None},
        }


def _merge_step(
    pool: ReferencePool,
    batch_id: str,
    step: int,
    expression: np.ndarray,
    search: np.ndarray,
    project: Callable[[np.ndarray], np.ndarray],
    k: int,
    bandwidth: float,
    n_smooth: int,
    neighbor_backend: str,
    random_seed: int,
    n_jobs: int | None,
    **backend_kwargs,
) -> tuple[ReferencePool, MergeStep]:
    logger.info(
        "step %i: merging batch %s (%i cells) into %i reference cells",
        step,
        batch_id,
        expression.shape[0],
        len(pool),
    )

    pairs = _find_mutual_neighbors(
        pool.search,
        search,
        k,
        backend=neighbor_backend,
        random_seed=random_seed,
        n_jobs=n_jobs,
        batch=batch_id,
        **backend_kwargs,
    )

    if len(pairs) == 0:
        raise IntegrationError(
            "no mutual nearest neighbours found, try increasing `k`",
            stage="find_mutual_neighbors",
            batch=batch_id,
        )
    if len(pairs) < k:
        logger.warning(
            "batch %s: only %i mutual nearest neighbour pairs (k=%i), "
            "corrections rely on few anchors",
            batch_id,
            len(pairs),
            k,
        )

    corrections, fallback = _compute_corrections(
        pairs,
        pool.expression,
        expression,
        query_search=search,
        bandwidth=bandwidth,
        n_smooth=n_smooth,
        batch=batch_id,
    )

    corrected = expression + corrections
    _check_finite(corrected, stage="apply_corrections", batch=batch_id)

    info = MergeStep(
        step=step,
        batch=batch_id,
        n_reference_cells=len(pool),
        n_query_cells=expression.shape[0],
        n_anchors=len(pairs),
        n_anchor_reference_cells=pairs.n_reference_cells,
        n_anchor_query_cells=pairs.n_query_cells,
        n_fallback_cells=int(fallback.sum()),
    )

    return pool.append(batch_id, corrected, project(corrected)), info


def _merge_batches(
    expressions: dict,
    merge_order: Sequence[str],
    k: int = 20,
    bandwidth: float = 1.0,
    n_smooth: int = 20,
    neighbor_backend: str = "exact",
    random_seed: int = 0,
    n_jobs: int | None = None,
    project: Callable[[np.ndarray], np.ndarray] | None = None,
    **backend_kwargs,
) -> tuple[ReferencePool, list]:
    """
    Folds batches one by one into the reference pool, in `merge_order`.
    Every batch is corrected towards everything merged before it,
    so the result depends on the order.
    """
    if project is None:
        project = lambda X: X  # noqa: E731

    first = merge_order[0]
    pool = ReferencePool.from_batch(first, expressions[first], project(expressions[first]))
    logger.info("reference batch: %s (%i cells)", first, len(pool))

    steps = []
    for step, batch_id in enumerate(merge_order[1:], start=1):
        expression = expressions[batch_id]
        pool, info = _merge_step(
            pool,
            batch_id,
            step,
            expression,
            project(expression),
            project,
            k=k,
            bandwidth=bandwidth,
            n_smooth=n_smooth,
            neighbor_backend=neighbor_backend,
            random_seed=random_seed,
            n_jobs=n_jobs,
            **backend_kwargs,
        )
        steps.append(info)

    return pool, steps

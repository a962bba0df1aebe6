# gmm_em/_cross_validation.py
"""k-fold cross-validation of the EM fit on held-out log-likelihood."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

import torch

from gmm_em._errors import FitFailedError, GMMFitError, InvalidArgumentError
from gmm_em._fit import _check_fit_args, _spawn_seeds, fit_em
from gmm_em._initialization import InitStrategy
from gmm_em._torch_gmm_em import ArrayLike, _check_n_components, _check_X, evaluate

logger = logging.getLogger(__name__)


@dataclass
class CrossValidationResult:
    fold_log_likelihoods: List[float]  # ordered by fold index, nan for failed folds
    fold_sizes: List[int]
    folds: torch.Tensor  # fold index of every row
    failures: List[Tuple[int, Exception]] = field(default_factory=list)

    @property
    def n_failed(self) -> int:
        return len(self.failures)

    def mean_log_likelihood(self) -> float:
        ok = [ll for ll in self.fold_log_likelihoods if not math.isnan(ll)]
        return sum(ok) / len(ok) if ok else float("nan")


def assign_folds(n_samples: int, n_folds: int, seed: Optional[int] = None) -> torch.Tensor:
    """Fold index (0..n_folds-1) for each of n_samples rows.

    Rows are cut into n_folds contiguous blocks whose sizes differ by at most
    one, then the block labels are shuffled with a generator seeded by seed.
    """
    if n_folds < 2:
        raise InvalidArgumentError(f"n_folds must be at least 2, got {n_folds}")
    if n_folds > n_samples:
        raise InvalidArgumentError(f"n_folds={n_folds} exceeds the number of samples n={n_samples}")

    base, extra = divmod(n_samples, n_folds)
    sizes = torch.tensor([base + (1 if i < extra else 0) for i in range(n_folds)])
    blocks = torch.repeat_interleave(torch.arange(n_folds), sizes)

    g = torch.Generator()
    if seed is None:
        g.seed()
    else:
        g.manual_seed(seed)
    return blocks[torch.randperm(n_samples, generator=g)]


def cross_validate(
    X: ArrayLike,
    n_components: int,
    n_folds: int = 5,
    max_iter: int = 100,
    init_params: Union[InitStrategy, str] = InitStrategy.RANDOM_CENTROIDS,
    seed: Optional[int] = None,
    n_init: int = 1,
    tol: Optional[float] = None,
    reg_covar: float = 0.0,
    kmeans_n_init: int = 10,
    device=None,
    dtype: Optional[torch.dtype] = torch.float64,
) -> CrossValidationResult:
    """Held-out log-likelihood of the EM fit for every fold.

    The partition depends only on (n, n_folds, seed), so the same seed gives the
    same folds for every n_components. A failed fold is reported in failures and
    holds nan; FitFailedError is raised only when every fold failed.
    """
    _check_fit_args(max_iter, n_init, tol, reg_covar, kmeans_n_init)
    init_params = InitStrategy.coerce(init_params)
    X = _check_X(X, device=device, dtype=dtype)
    N = X.shape[0]

    folds = assign_folds(N, n_folds, seed).to(X.device)
    fold_sizes = [int((folds == i).sum().item()) for i in range(n_folds)]
    _check_n_components(n_components, N - max(fold_sizes))

    fold_lls: List[float] = []
    failures: List[Tuple[int, Exception]] = []

    for i, fold_seed in enumerate(_spawn_seeds(seed, n_folds)):
        train, held_out = X[folds != i], X[folds == i]
        try:
            result = fit_em(
                train,
                n_components,
                max_iter=max_iter,
                init_params=init_params,
                n_init=n_init,
                seed=fold_seed,
                tol=tol,
                reg_covar=reg_covar,
                kmeans_n_init=kmeans_n_init,
                device=device,
                dtype=X.dtype,
            )
            ll = evaluate(held_out, result.params).log_likelihood
        except GMMFitError as exc:
            logger.warning("fold %d failed: %s", i, exc)
            failures.append((i, exc))
            fold_lls.append(float("nan"))
            continue
        logger.info("fold %d: held-out log-likelihood %.6f (%d rows)", i, ll, fold_sizes[i])
        fold_lls.append(ll)

    if len(failures) == n_folds:
        raise FitFailedError(f"all {n_folds} fold(s) failed", failures)
    if failures:
        logger.warning("%d of %d fold(s) failed", len(failures), n_folds)

    return CrossValidationResult(
        fold_log_likelihoods=fold_lls,
        fold_sizes=fold_sizes,
        folds=folds,
        failures=failures,
    )

# gmm_em/_fit.py
"""EM fitting engine with independent restarts, plus an sklearn-shaped facade.

Stopping rule: a restart stops as soon as the log-likelihood of an iteration is
exactly equal to the previous one (tol=None, the default). Passing a float tol
switches to |change| <= tol. Otherwise the restart runs max_iter iterations.

Each restart draws its own seed from numpy's SeedSequence, so the result is
the same whether restarts run one after another or independently.
A restart that hits a degenerate covariance or a numeric failure is recorded
and skipped; only when every restart fails does fit raise FitFailedError.

Exposed sklearn-like attributes after TorchGaussianMixture.fit:
- weights_, means_, covariances_, precisions_cholesky_
- converged_, n_iter_, lower_bound_ (total log-likelihood, not the mean)
- lower_bounds_ (per-iteration log-likelihood history)
- means_history_ (n_iter, K*D)
- n_failed_restarts_
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import torch

from gmm_em._errors import FitFailedError, GMMFitError, InvalidArgumentError
from gmm_em._initialization import InitStrategy, initialize
from gmm_em._torch_gmm_em import (
    ArrayLike,
    GMMParams,
    Metrics,
    _check_n_components,
    _check_X,
    _expectation_step_precchol,
    _maximization_step,
    _metrics_from_log_likelihood,
    classify,
    evaluate,
    predict_proba,
    score_samples,
)

logger = logging.getLogger(__name__)


@dataclass
class FitResult:
    params: GMMParams
    log_likelihood: float
    aic: float
    bic: float
    log_likelihood_history: List[float]
    means_history: torch.Tensor  # (n_iter, K*D)
    n_iter: int
    converged: bool
    seed: Optional[int] = None
    restart: int = 0
    n_failed_restarts: int = 0
    failures: List[Tuple[int, Exception]] = field(default_factory=list)

    @property
    def metrics(self) -> Metrics:
        return Metrics(log_likelihood=self.log_likelihood, aic=self.aic, bic=self.bic)


def _spawn_seeds(seed: Optional[int], n: int) -> List[int]:
    """n independent integer seeds derived from seed."""
    children = np.random.SeedSequence(seed).spawn(n)
    return [int(child.generate_state(1)[0]) for child in children]


def _check_fit_args(
    max_iter: int, n_init: int, tol: Optional[float], reg_covar: float, kmeans_n_init: int = 10
) -> None:
    if max_iter <= 0:
        raise InvalidArgumentError("max_iter must be positive")
    if n_init <= 0:
        raise InvalidArgumentError("n_init must be positive")
    if tol is not None and tol < 0:
        raise InvalidArgumentError("tol must be non-negative or None")
    if reg_covar < 0:
        raise InvalidArgumentError("reg_covar must be non-negative")
    if kmeans_n_init <= 0:
        raise InvalidArgumentError("kmeans_n_init must be positive")


def _is_better(candidate: FitResult, best: Optional[FitResult]) -> bool:
    # strictly higher wins, so ties keep the earlier restart
    return best is None or candidate.log_likelihood > best.log_likelihood


def select_best_restart(results: Sequence[Optional[FitResult]]) -> Optional[FitResult]:
    """Highest final log-likelihood among completed restarts (None entries are failed ones)."""
    best: Optional[FitResult] = None
    for result in results:
        if result is not None and _is_better(result, best):
            best = result
    return best


@torch.no_grad()
def run_restart(
    X: torch.Tensor,
    n_components: int,
    max_iter: int = 100,
    init_params: Union[InitStrategy, str] = InitStrategy.RANDOM_CENTROIDS,
    seed: Optional[int] = None,
    tol: Optional[float] = None,
    reg_covar: float = 0.0,
    kmeans_n_init: int = 10,
    restart: int = 0,
) -> FitResult:
    """One EM run from a fresh initialization. X must already be a checked tensor."""
    N, D = X.shape
    K = n_components

    p = initialize(X, K, init_params, seed=seed, reg_covar=reg_covar, kmeans_n_init=kmeans_n_init)
    _, log_resp = _expectation_step_precchol(X, p.means, p.precisions_cholesky, p.weights)

    history: List[float] = []
    means_history: List[torch.Tensor] = []
    prev_ll: Optional[float] = None
    converged = False

    for it in range(max_iter):
        weights, means, cov = _maximization_step(X, log_resp, reg_covar=reg_covar)
        p = GMMParams.from_covariances(weights, means, cov)

        # E-step on the updated parameters gives both their log-likelihood
        # and the responsibilities for the next M-step
        log_prob_norm, log_resp = _expectation_step_precchol(X, p.means, p.precisions_cholesky, p.weights)
        ll = float(log_prob_norm.sum().item())
        history.append(ll)
        means_history.append(p.means.reshape(-1).clone())
        logger.debug("restart %d iter %d: log-likelihood %.10f", restart, it + 1, ll)

        if prev_ll is not None:
            if (tol is None and ll == prev_ll) or (tol is not None and abs(ll - prev_ll) <= tol):
                converged = True
                break
        prev_ll = ll

    m = _metrics_from_log_likelihood(history[-1], K, N, D)
    logger.info(
        "restart %d: %d iterations, log-likelihood %.6f, converged=%s",
        restart, len(history), m.log_likelihood, converged,
    )
    return FitResult(
        params=p,
        log_likelihood=m.log_likelihood,
        aic=m.aic,
        bic=m.bic,
        log_likelihood_history=history,
        means_history=torch.stack(means_history, dim=0),
        n_iter=len(history),
        converged=converged,
        seed=seed,
        restart=restart,
    )


def fit_em(
    X: ArrayLike,
    n_components: int,
    max_iter: int = 100,
    init_params: Union[InitStrategy, str] = InitStrategy.RANDOM_CENTROIDS,
    n_init: int = 1,
    seed: Optional[int] = None,
    tol: Optional[float] = None,
    reg_covar: float = 0.0,
    kmeans_n_init: int = 10,
    device=None,
    dtype: Optional[torch.dtype] = torch.float64,
) -> FitResult:
    """Fit a full-covariance GMM with n_init restarts and return the best one.

    Raises InvalidArgumentError for bad arguments and FitFailedError when every
    restart failed. Partial failures are reported on the result
    (n_failed_restarts, failures).
    """
    _check_fit_args(max_iter, n_init, tol, reg_covar, kmeans_n_init)
    init_params = InitStrategy.coerce(init_params)
    X = _check_X(X, device=device, dtype=dtype)
    _check_n_components(n_components, X.shape[0])

    best: Optional[FitResult] = None
    failures: List[Tuple[int, Exception]] = []

    for r, restart_seed in enumerate(_spawn_seeds(seed, n_init)):
        try:
            result = run_restart(
                X,
                n_components,
                max_iter=max_iter,
                init_params=init_params,
                seed=restart_seed,
                tol=tol,
                reg_covar=reg_covar,
                kmeans_n_init=kmeans_n_init,
                restart=r,
            )
        except GMMFitError as exc:
            logger.warning("restart %d failed: %s", r, exc)
            failures.append((r, exc))
            continue
        if _is_better(result, best):
            best = result

    if best is None:
        raise FitFailedError(f"all {n_init} restart(s) failed", failures)

    best.n_failed_restarts = len(failures)
    best.failures = failures
    if failures:
        logger.warning("%d of %d restart(s) failed; best is restart %d", len(failures), n_init, best.restart)
    logger.info("best restart %d with log-likelihood %.6f", best.restart, best.log_likelihood)
    return best


# ---------------------------
# Model wrapper
# ---------------------------

class TorchGaussianMixture:
    """Sklearn-shaped full-covariance GaussianMixture backed by fit_em."""

    def __init__(
        self,
        n_components: int,
        max_iter: int = 100,
        n_init: int = 1,
        init_params: Union[InitStrategy, str] = InitStrategy.RANDOM_CENTROIDS,
        tol: Optional[float] = None,
        reg_covar: float = 0.0,
        kmeans_n_init: int = 10,
        random_state: Optional[int] = None,
        device=None,
        dtype: Optional[torch.dtype] = torch.float64,
    ) -> None:
        if n_components <= 0:
            raise InvalidArgumentError("n_components must be positive")
        _check_fit_args(max_iter, n_init, tol, reg_covar, kmeans_n_init)

        self.n_components = n_components
        self.max_iter = max_iter
        self.n_init = n_init
        self.init_params = InitStrategy.coerce(init_params)
        self.tol = tol
        self.reg_covar = reg_covar
        self.kmeans_n_init = kmeans_n_init
        self.random_state = random_state
        self.device = device
        self.dtype = dtype

        self.weights_: Optional[torch.Tensor] = None
        self.means_: Optional[torch.Tensor] = None
        self.covariances_: Optional[torch.Tensor] = None
        self.precisions_cholesky_: Optional[torch.Tensor] = None

        self.converged_: bool = False
        self.n_iter_: int = 0
        self.lower_bound_: float = float("-inf")
        self.lower_bounds_: List[float] = []
        self.means_history_: Optional[torch.Tensor] = None
        self.n_failed_restarts_: int = 0

        self.result_: Optional[FitResult] = None

    def _check_is_fitted(self) -> FitResult:
        if self.result_ is None:
            raise RuntimeError("Model is not fitted yet.")
        return self.result_

    def fit(self, X: ArrayLike) -> "TorchGaussianMixture":
        result = fit_em(
            X,
            self.n_components,
            max_iter=self.max_iter,
            init_params=self.init_params,
            n_init=self.n_init,
            seed=self.random_state,
            tol=self.tol,
            reg_covar=self.reg_covar,
            kmeans_n_init=self.kmeans_n_init,
            device=self.device,
            dtype=self.dtype,
        )
        self.result_ = result

        p = result.params
        self.weights_ = p.weights
        self.means_ = p.means
        self.covariances_ = p.covariances
        self.precisions_cholesky_ = p.precisions_cholesky

        self.lower_bound_ = result.log_likelihood
        self.lower_bounds_ = result.log_likelihood_history
        self.means_history_ = result.means_history
        self.n_iter_ = result.n_iter
        self.converged_ = result.converged
        self.n_failed_restarts_ = result.n_failed_restarts
        return self

    def fit_predict(self, X: ArrayLike) -> torch.Tensor:
        return self.fit(X).predict(X)

    def score_samples(self, X: ArrayLike) -> torch.Tensor:
        """Per-sample log-likelihood (N,)."""
        return score_samples(X, self._check_is_fitted().params)

    def score(self, X: ArrayLike) -> float:
        """Total log-likelihood of X."""
        return evaluate(X, self._check_is_fitted().params).log_likelihood

    def predict_proba(self, X: ArrayLike) -> torch.Tensor:
        return predict_proba(X, self._check_is_fitted().params)

    def predict(self, X: ArrayLike) -> torch.Tensor:
        return classify(X, self._check_is_fitted().params)

    def aic(self, X: ArrayLike) -> float:
        """logL - p (higher is better)."""
        return evaluate(X, self._check_is_fitted().params).aic

    def bic(self, X: ArrayLike) -> float:
        """logL - 0.5 * p * log(N) (higher is better)."""
        return evaluate(X, self._check_is_fitted().params).bic

    @torch.no_grad()
    def sample(self, n_samples: int, seed: Optional[int] = None) -> Tuple[torch.Tensor, torch.Tensor]:
        """Sample from the fitted mixture.

        Returns:
          X: (n_samples, D)
          labels: (n_samples,)
        """
        p = self._check_is_fitted().params
        if n_samples <= 0:
            raise InvalidArgumentError("n_samples must be positive")

        g = torch.Generator()
        if seed is None:
            g.seed()
        else:
            g.manual_seed(seed)

        K, D = p.means.shape
        weights = p.weights.detach().cpu()
        labels = torch.multinomial(weights, n_samples, replacement=True, generator=g)
        noise = torch.randn((n_samples, D), generator=g, dtype=p.means.dtype)

        L = torch.linalg.cholesky(p.covariances).cpu()  # (K,D,D)
        X_out = p.means.cpu()[labels] + torch.einsum('nde,ne->nd', L[labels], noise)
        return X_out.to(p.means.device), labels.to(p.means.device)

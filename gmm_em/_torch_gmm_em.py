# gmm_em/_torch_gmm_em.py
"""Full-covariance Gaussian Mixture Model primitives in PyTorch.

This module holds the numeric building blocks of the EM engine:

- a stable log-sum-exp reducer,
- the multivariate normal log-density, evaluated through precision Cholesky
  factors (like sklearn) rather than explicit inverses,
- the E-step (log-space responsibilities) and the M-step,
- the metrics evaluator (log-likelihood, AIC, BIC),
- posterior-based hard classification.

Conventions:
- Every component has its own full covariance, shape (K, D, D).
- Covariances are NOT regularized unless the caller passes reg_covar > 0.
  A covariance that is not positive definite raises DegenerateCovarianceError.
- AIC and BIC follow the "higher is better" convention:
    AIC = logL - p
    BIC = logL - 0.5 * p * log(N)
  with p = (K - 1) + K*D + K*D*(D - 1)/2.

Restarts, initialization and cross-validation live in _fit.py,
_initialization.py and _cross_validation.py.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import torch

from gmm_em._errors import DegenerateCovarianceError, InvalidArgumentError, NumericFailureError

ArrayLike = Union[torch.Tensor, np.ndarray, Sequence[Sequence[float]]]


# ---------------------------
# Utilities
# ---------------------------

def logsumexp(x: Union[torch.Tensor, Sequence[float]], dim: int = -1) -> torch.Tensor:
    """log(sum(exp(x))) along dim, computed as max(x) + log(sum(exp(x - max(x))))."""
    if not isinstance(x, torch.Tensor):
        x = torch.as_tensor(x, dtype=torch.float64)
    if x.dim() == 0 or x.shape[dim] == 0:
        raise InvalidArgumentError("logsumexp of an empty sequence is undefined")

    x_max = x.max(dim=dim, keepdim=True).values
    # rows that are entirely -inf stay -inf instead of turning into nan
    x_max = torch.where(torch.isfinite(x_max), x_max, torch.zeros_like(x_max))
    out = x_max + torch.log(torch.exp(x - x_max).sum(dim=dim, keepdim=True))
    return out.squeeze(dim)


def _check_X(
    X: ArrayLike,
    device: Optional[Union[str, torch.device]] = None,
    dtype: Optional[torch.dtype] = None,
) -> torch.Tensor:
    """Convert X to a 2-D floating tensor and reject empty or non-finite input."""
    if isinstance(X, torch.Tensor):
        X = X.to(dtype=dtype or (X.dtype if X.is_floating_point() else torch.float64))
    else:
        X = torch.as_tensor(np.asarray(X), dtype=dtype or torch.float64)
    if device is not None:
        X = X.to(device)

    if X.dim() != 2:
        raise InvalidArgumentError(f"X must be 2-D (n_samples, n_features), got shape {tuple(X.shape)}")
    if X.shape[0] == 0 or X.shape[1] == 0:
        raise InvalidArgumentError(f"X must be non-empty, got shape {tuple(X.shape)}")
    if not torch.isfinite(X).all():
        raise InvalidArgumentError("X contains NaN or Inf")
    return X


def _check_n_components(n_components: int, n_samples: int) -> None:
    if n_components <= 0:
        raise InvalidArgumentError(f"n_components must be positive, got {n_components}")
    if n_components > n_samples:
        raise InvalidArgumentError(
            f"n_components={n_components} exceeds the number of samples n={n_samples}"
        )


def _add_reg_diag(cov: torch.Tensor, reg_covar: float) -> torch.Tensor:
    """Add reg_covar to the diagonal of a (D,D) or (K,D,D) covariance."""
    if reg_covar == 0.0:
        return cov
    D = cov.shape[-1]
    eye = torch.eye(D, device=cov.device, dtype=cov.dtype)
    return cov + reg_covar * eye


def _sample_covariance(X: torch.Tensor) -> torch.Tensor:
    """Unbiased sample covariance (D,D) of the rows of X."""
    N = X.shape[0]
    if N < 2:
        raise DegenerateCovarianceError(f"sample covariance needs at least 2 rows, got {N}")
    Xc = X - X.mean(dim=0, keepdim=True)
    cov = (Xc.T @ Xc) / (N - 1)
    return 0.5 * (cov + cov.T)


# ---------------------------
# Precision-Cholesky helpers
# ---------------------------

@torch.no_grad()
def _compute_precisions_cholesky(cov: torch.Tensor) -> torch.Tensor:
    """Compute precision Cholesky factors (K,D,D) from full covariances (K,D,D).

    cov = L L^T (L lower), precision_chol = inv(L), so that
    precision = inv(cov) = precision_chol^T precision_chol.

    Raises DegenerateCovarianceError naming every component whose covariance
    is not positive definite.
    """
    if not torch.isfinite(cov).all():
        bad = torch.nonzero(~torch.isfinite(cov).flatten(1).all(dim=1)).flatten().tolist()
        raise DegenerateCovarianceError(f"covariance of component(s) {bad} has non-finite entries")

    L, info = torch.linalg.cholesky_ex(cov)
    bad = torch.nonzero(info).flatten().tolist()
    if bad:
        raise DegenerateCovarianceError(f"covariance of component(s) {bad} is not positive definite")

    K, D, _ = cov.shape
    I = torch.eye(D, device=cov.device, dtype=cov.dtype).unsqueeze(0).expand(K, D, D)
    return torch.linalg.solve_triangular(L, I, upper=False)


# ---------------------------
# Mixture parameters
# ---------------------------

@dataclass
class GMMParams:
    """Mixture parameters, indexed consistently by component 0..K-1.

    weights:             (K,)     mixing proportions, sum to 1
    means:               (K,D)
    covariances:         (K,D,D)  symmetric positive definite
    precisions_cholesky: (K,D,D)  derived from covariances
    """

    weights: torch.Tensor
    means: torch.Tensor
    covariances: torch.Tensor
    precisions_cholesky: torch.Tensor

    @classmethod
    def from_covariances(
        cls,
        weights: torch.Tensor,
        means: torch.Tensor,
        covariances: torch.Tensor,
    ) -> "GMMParams":
        weights = torch.as_tensor(weights)
        means = torch.as_tensor(means)
        covariances = torch.as_tensor(covariances)

        if means.dim() != 2:
            raise InvalidArgumentError(f"means must have shape (K,D), got {tuple(means.shape)}")
        K, D = means.shape
        if weights.shape != (K,):
            raise InvalidArgumentError(f"weights must have shape (K,) = {(K,)}, got {tuple(weights.shape)}")
        if covariances.shape != (K, D, D):
            raise InvalidArgumentError(
                f"covariances must have shape (K,D,D) = {(K, D, D)}, got {tuple(covariances.shape)}"
            )
        if (
            not torch.isfinite(weights).all()
            or (weights < 0).any()
            or abs(float(weights.sum()) - 1.0) > 1e-6
        ):
            raise InvalidArgumentError(f"weights must be finite, non-negative and sum to 1, got {weights.tolist()}")

        prec_chol = _compute_precisions_cholesky(covariances)
        return cls(weights=weights, means=means, covariances=covariances, precisions_cholesky=prec_chol)

    @property
    def n_components(self) -> int:
        return int(self.means.shape[0])

    @property
    def n_features(self) -> int:
        return int(self.means.shape[1])

    def component(self, k: int) -> Tuple[float, torch.Tensor, torch.Tensor]:
        """(weight, mean, covariance) of component k."""
        if not 0 <= k < self.n_components:
            raise InvalidArgumentError(f"component index {k} out of range 0..{self.n_components - 1}")
        return float(self.weights[k]), self.means[k], self.covariances[k]

    def to(self, device=None, dtype=None) -> "GMMParams":
        return GMMParams(
            weights=self.weights.to(device=device, dtype=dtype),
            means=self.means.to(device=device, dtype=dtype),
            covariances=self.covariances.to(device=device, dtype=dtype),
            precisions_cholesky=self.precisions_cholesky.to(device=device, dtype=dtype),
        )


def _check_params_match(X: torch.Tensor, params: GMMParams) -> GMMParams:
    if X.shape[1] != params.n_features:
        raise InvalidArgumentError(
            f"X has {X.shape[1]} features but the parameters describe {params.n_features}"
        )
    if params.means.dtype != X.dtype or params.means.device != X.device:
        params = params.to(device=X.device, dtype=X.dtype)
    return params


# ---------------------------
# Log Gaussian probability via precisions_cholesky (E-step kernel)
# ---------------------------

def _estimate_log_gaussian_prob_full_precchol(
    X: torch.Tensor,
    means: torch.Tensor,
    precisions_chol: torch.Tensor,
) -> torch.Tensor:
    """Full-cov log N(X | means_k, cov_k) for all k, shape (N,K)."""
    N, D = X.shape
    K, D2 = means.shape
    assert D == D2
    assert precisions_chol.shape == (K, D, D)

    diff = X.unsqueeze(1) - means.unsqueeze(0)  # (N,K,D)

    # 0.5 * logdet(precision) = sum_d log(diag(prec_chol_k))
    log_det_term = torch.sum(torch.log(torch.diagonal(precisions_chol, dim1=1, dim2=2)), dim=1)  # (K,)

    # y[n,k,:] = diff[n,k,:] @ P[k]^T
    y = torch.einsum('nkd,kde->nke', diff, precisions_chol.transpose(-1, -2))  # (N,K,D)
    mahal = torch.sum(y * y, dim=2)  # (N,K)

    return -0.5 * (D * math.log(2 * math.pi) + mahal) + log_det_term.unsqueeze(0)


def log_gaussian_density(X: ArrayLike, mean: torch.Tensor, covariance: torch.Tensor) -> torch.Tensor:
    """Multivariate normal log-density of each row of X, shape (N,)."""
    X = _check_X(X)
    mean = torch.as_tensor(mean, dtype=X.dtype, device=X.device)
    covariance = torch.as_tensor(covariance, dtype=X.dtype, device=X.device)
    if mean.shape != (X.shape[1],) or covariance.shape != (X.shape[1], X.shape[1]):
        raise InvalidArgumentError("mean/covariance shape does not match the number of features of X")
    prec_chol = _compute_precisions_cholesky(covariance.unsqueeze(0))
    return _estimate_log_gaussian_prob_full_precchol(X, mean.unsqueeze(0), prec_chol)[:, 0]


# ---------------------------
# EM steps
# ---------------------------

def _expectation_step_precchol(
    X: torch.Tensor,
    means: torch.Tensor,
    precisions_chol: torch.Tensor,
    weights: torch.Tensor,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """E-step. Returns (log p(x_n) of shape (N,), log responsibilities of shape (N,K))."""
    log_prob = _estimate_log_gaussian_prob_full_precchol(X, means, precisions_chol)  # (N,K)
    weighted_log_prob = log_prob + torch.log(weights).unsqueeze(0)  # (N,K)
    if torch.isnan(weighted_log_prob).any() or torch.isposinf(weighted_log_prob).any():
        raise NumericFailureError("non-finite weighted log-density in E-step")

    log_prob_norm = logsumexp(weighted_log_prob, dim=1)  # (N,)
    if not torch.isfinite(log_prob_norm).all():
        raise NumericFailureError("log-likelihood of some samples is not finite")

    log_resp = weighted_log_prob - log_prob_norm.unsqueeze(1)  # (N,K)
    return log_prob_norm, log_resp


def _maximization_step(
    X: torch.Tensor,
    log_resp: torch.Tensor,
    reg_covar: float = 0.0,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """M-step producing updated (weights, means, covariances)."""
    N, D = X.shape
    assert log_resp.shape[0] == N

    resp = log_resp.exp()  # (N,K)
    nk = resp.sum(dim=0)  # (K,)

    empty = torch.nonzero(nk <= 0).flatten().tolist()
    if empty:
        raise DegenerateCovarianceError(f"component(s) {empty} received zero total responsibility")

    new_weights = nk / N
    new_means = (resp.T @ X) / nk.unsqueeze(1)  # (K,D)

    diff = X.unsqueeze(1) - new_means.unsqueeze(0)  # (N,K,D)
    # For each k: sum_n resp[n,k] * diff[n,k,:] * diff[n,k,:]^T / nk[k]
    cov_sum = torch.einsum('nk,nkd,nke->kde', resp, diff, diff)  # (K,D,D)
    new_cov = cov_sum / nk.view(-1, 1, 1)
    new_cov = 0.5 * (new_cov + new_cov.transpose(-1, -2))
    new_cov = _add_reg_diag(new_cov, reg_covar)

    return new_weights, new_means, new_cov


# ---------------------------
# Metrics
# ---------------------------

@dataclass(frozen=True)
class Metrics:
    log_likelihood: float
    aic: float
    bic: float


def n_parameters(n_components: int, n_features: int) -> int:
    """Free parameter count: (K-1) weights, K*D means, K*D*(D-1)/2 covariance entries."""
    K, D = n_components, n_features
    return int((K - 1) + K * D + K * D * (D - 1) // 2)


def _metrics_from_log_likelihood(log_likelihood: float, n_components: int, n_samples: int, n_features: int) -> Metrics:
    p = n_parameters(n_components, n_features)
    return Metrics(
        log_likelihood=log_likelihood,
        aic=log_likelihood - p,
        bic=log_likelihood - 0.5 * p * math.log(n_samples),
    )


@torch.no_grad()
def score_samples(X: ArrayLike, params: GMMParams) -> torch.Tensor:
    """Per-sample log-likelihood (N,)."""
    X = _check_X(X, dtype=params.means.dtype)
    params = _check_params_match(X, params)
    log_prob_norm, _ = _expectation_step_precchol(X, params.means, params.precisions_cholesky, params.weights)
    return log_prob_norm


@torch.no_grad()
def evaluate(X: ArrayLike, params: GMMParams) -> Metrics:
    """Log-likelihood, AIC and BIC of params on X. X may be disjoint from the fit data."""
    X = _check_X(X, dtype=params.means.dtype)
    N, D = X.shape
    ll = float(score_samples(X, params).sum().item())
    return _metrics_from_log_likelihood(ll, params.n_components, N, D)


# ---------------------------
# Classification
# ---------------------------

@torch.no_grad()
def predict_proba(X: ArrayLike, params: GMMParams) -> torch.Tensor:
    """Posterior responsibilities (N,K); each row sums to 1."""
    X = _check_X(X, dtype=params.means.dtype)
    params = _check_params_match(X, params)
    _, log_resp = _expectation_step_precchol(X, params.means, params.precisions_cholesky, params.weights)
    return log_resp.exp()


@torch.no_grad()
def classify(X: ArrayLike, params: GMMParams) -> torch.Tensor:
    """Index of the most probable component per row; ties go to the lowest index."""
    return torch.argmax(predict_proba(X, params), dim=1)

# gmm_em/_initialization.py
"""Initial parameter guesses for the EM engine.

Two strategies:
- RANDOM_CENTROIDS: K distinct rows of X as means, the global sample covariance
  for every component, uniform weights.
- K_MEANS: sklearn KMeans (several restarts) centroids as means, the sample
  covariance of each k-means cluster, cluster sizes / N as weights.

Neither strategy regularizes covariances unless reg_covar > 0 is passed, so a
k-means cluster with too few points raises DegenerateCovarianceError.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Union

import numpy as np
import torch
from sklearn.cluster import KMeans

from gmm_em._errors import DegenerateCovarianceError, InvalidArgumentError
from gmm_em._torch_gmm_em import (
    GMMParams,
    _add_reg_diag,
    _check_n_components,
    _sample_covariance,
)


class InitStrategy(str, enum.Enum):
    RANDOM_CENTROIDS = "random_centroids"
    K_MEANS = "k_means"

    @classmethod
    def coerce(cls, value: Union["InitStrategy", str]) -> "InitStrategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(repr(s.value) for s in cls)
            raise InvalidArgumentError(f"init_params must be one of: {allowed}; got {value!r}") from None


# ---------------------------
# k-means collaborator
# ---------------------------

@dataclass
class KMeansResult:
    centroids: torch.Tensor  # (K,D)
    labels: torch.Tensor     # (N,)
    sizes: torch.Tensor      # (K,)


@torch.no_grad()
def run_kmeans(X: torch.Tensor, n_clusters: int, seed: Optional[int] = None, n_init: int = 10) -> KMeansResult:
    """Run sklearn KMeans on X and return centroids, labels and cluster sizes as tensors."""
    _check_n_components(n_clusters, X.shape[0])
    X_np = X.detach().cpu().numpy()

    km = KMeans(n_clusters=n_clusters, n_init=n_init, random_state=seed).fit(X_np)

    labels = torch.from_numpy(km.labels_.astype(np.int64)).to(X.device)
    centroids = torch.from_numpy(km.cluster_centers_).to(device=X.device, dtype=X.dtype)
    sizes = torch.bincount(labels, minlength=n_clusters)
    return KMeansResult(centroids=centroids, labels=labels, sizes=sizes)


# ---------------------------
# Strategies
# ---------------------------

@torch.no_grad()
def init_random_centroids(
    X: torch.Tensor,
    n_components: int,
    seed: Optional[int] = None,
    reg_covar: float = 0.0,
    **_: object,
) -> GMMParams:
    N, D = X.shape
    K = n_components
    if N <= D and reg_covar == 0.0:
        raise DegenerateCovarianceError(f"global covariance of {N} rows in {D} dimensions is singular")

    g = torch.Generator()
    if seed is None:
        g.seed()
    else:
        g.manual_seed(int(seed))
    idx = torch.randperm(N, generator=g)[:K].to(X.device)
    means = X[idx].clone()

    cov_global = _add_reg_diag(_sample_covariance(X), reg_covar)
    cov = cov_global.unsqueeze(0).expand(K, D, D).contiguous()
    weights = torch.full((K,), 1.0 / K, device=X.device, dtype=X.dtype)

    return GMMParams.from_covariances(weights, means, cov)


@torch.no_grad()
def init_kmeans(
    X: torch.Tensor,
    n_components: int,
    seed: Optional[int] = None,
    reg_covar: float = 0.0,
    kmeans_n_init: int = 10,
) -> GMMParams:
    N, D = X.shape
    K = n_components

    km = run_kmeans(X, K, seed=seed, n_init=kmeans_n_init)

    # m points span at most m-1 dimensions
    min_members = 2 if reg_covar > 0 else D + 1
    covs = []
    for k in range(K):
        members = X[km.labels == k]
        if members.shape[0] < min_members:
            raise DegenerateCovarianceError(
                f"k-means cluster {k} has {members.shape[0]} member(s) in {D} dimensions; its covariance is singular"
            )
        covs.append(_sample_covariance(members))
    cov = _add_reg_diag(torch.stack(covs, dim=0), reg_covar)

    weights = km.sizes.to(X.dtype) / N
    return GMMParams.from_covariances(weights, km.centroids, cov)


_INITIALIZERS: Dict[InitStrategy, Callable[..., GMMParams]] = {
    InitStrategy.RANDOM_CENTROIDS: init_random_centroids,
    InitStrategy.K_MEANS: init_kmeans,
}
assert set(_INITIALIZERS) == set(InitStrategy)


def initialize(
    X: torch.Tensor,
    n_components: int,
    strategy: Union[InitStrategy, str] = InitStrategy.RANDOM_CENTROIDS,
    seed: Optional[int] = None,
    reg_covar: float = 0.0,
    kmeans_n_init: int = 10,
) -> GMMParams:
    """Initial parameters for one restart. X must already be a checked 2-D tensor."""
    _check_n_components(n_components, X.shape[0])
    strategy = InitStrategy.coerce(strategy)
    return _INITIALIZERS[strategy](
        X, n_components, seed=seed, reg_covar=reg_covar, kmeans_n_init=kmeans_n_init
    )

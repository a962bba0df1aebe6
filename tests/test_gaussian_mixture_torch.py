# tests/test_gaussian_mixture_torch.py
import math

import numpy as np
import torch
import pytest

from gmm_em._errors import DegenerateCovarianceError, InvalidArgumentError, NumericFailureError
from gmm_em._torch_gmm_em import (
    GMMParams,
    _compute_precisions_cholesky,
    _expectation_step_precchol,
    _maximization_step,
    log_gaussian_density,
    logsumexp,
)


class RandomData:
    """Random full-covariance GMM data for testing."""
    def __init__(self, rng, n_samples=200, n_components=2, n_features=2):
        self.n_samples = int(n_samples)
        self.n_components = int(n_components)
        self.n_features = int(n_features)

        # weights on simplex
        w = rng.rand(self.n_components).astype(np.float64)
        self.weights = w / w.sum()

        # means spread out
        self.means = rng.rand(self.n_components, self.n_features).astype(np.float64) * 50.0

        self.cov = self._make_covariance(rng)
        self.X = self._generate_samples(rng)

    def _make_covariance(self, rng):
        covs = []
        for _ in range(self.n_components):
            A = rng.randn(self.n_features, self.n_features).astype(np.float64)
            C = A @ A.T
            C /= (np.trace(C) / self.n_features)
            C += 1e-3 * np.eye(self.n_features)
            covs.append(C)
        return np.stack(covs, axis=0)  # (K,D,D)

    def _generate_samples(self, rng):
        L = np.linalg.cholesky(self.cov)
        labels = rng.choice(self.n_components, size=self.n_samples, p=self.weights)
        z = rng.randn(self.n_samples, self.n_features)
        return self.means[labels] + np.einsum('nde,ne->nd', L[labels], z)

    def params(self):
        return GMMParams.from_covariances(
            torch.from_numpy(self.weights),
            torch.from_numpy(self.means),
            torch.from_numpy(self.cov),
        )


def _e_step(X, p):
    return _expectation_step_precchol(X, p.means, p.precisions_cholesky, p.weights)


# ---------------------------
# log-sum-exp
# ---------------------------

@pytest.mark.parametrize("seed", [0, 1, 2])
def test_logsumexp_matches_naive_formula(seed):
    x = torch.from_numpy(np.random.RandomState(seed).randn(7) * 3.0)
    expected = math.log(sum(math.exp(v) for v in x.tolist()))
    assert float(logsumexp(x)) == pytest.approx(expected, rel=1e-12)


def test_logsumexp_dominating_value_does_not_overflow():
    out = float(logsumexp([1000.0, 1.0, 1.0]))
    assert math.isfinite(out)
    assert out == pytest.approx(1000.0, abs=1e-9)

    out = float(logsumexp([1000.0, 1000.0]))
    assert out == pytest.approx(1000.0 + math.log(2.0), abs=1e-9)


def test_logsumexp_large_negative_values_do_not_underflow():
    out = float(logsumexp([-1000.0, -1000.0, -1000.0]))
    assert out == pytest.approx(-1000.0 + math.log(3.0), abs=1e-9)


def test_logsumexp_rows_along_dim():
    x = torch.tensor([[0.0, 0.0], [1.0, 2.0], [-5.0, 700.0]], dtype=torch.float64)
    assert torch.allclose(logsumexp(x, dim=1), torch.logsumexp(x, dim=1))


def test_logsumexp_all_neg_inf_stays_neg_inf():
    out = logsumexp(torch.tensor([float("-inf"), float("-inf")], dtype=torch.float64))
    assert out.item() == float("-inf")


def test_logsumexp_empty_raises():
    with pytest.raises(InvalidArgumentError):
        logsumexp([])


# ---------------------------
# Densities and precisions
# ---------------------------

def test_log_gaussian_density_matches_torch_distribution():
    rng = np.random.RandomState(3)
    X = torch.from_numpy(rng.randn(20, 3))
    mean = torch.tensor([0.5, -1.0, 2.0], dtype=torch.float64)
    cov = torch.tensor([[2.0, 0.3, 0.0],
                        [0.3, 1.0, -0.2],
                        [0.0, -0.2, 0.5]], dtype=torch.float64)

    ours = log_gaussian_density(X, mean, cov)
    ref = torch.distributions.MultivariateNormal(mean, covariance_matrix=cov).log_prob(X)
    assert torch.allclose(ours, ref, atol=1e-10)


def test_precision_cholesky_reconstructs_inverse():
    cov = torch.tensor([[[2.0, 0.5],
                         [0.5, 3.0]],
                        [[4.0, 0.0],
                         [0.0, 1.0]]], dtype=torch.float64)
    P = _compute_precisions_cholesky(cov)
    precision = P.transpose(-1, -2) @ P
    assert torch.allclose(precision, torch.linalg.inv(cov), atol=1e-12)


def test_singular_covariance_is_reported_not_regularized():
    cov = torch.stack([
        torch.eye(2, dtype=torch.float64),
        torch.tensor([[1.0, 1.0], [1.0, 1.0]], dtype=torch.float64),  # rank 1
    ])
    with pytest.raises(DegenerateCovarianceError, match=r"\[1\]"):
        _compute_precisions_cholesky(cov)


def test_params_reject_bad_shapes_and_weights():
    with pytest.raises(InvalidArgumentError):
        GMMParams.from_covariances(
            torch.tensor([0.5, 0.5], dtype=torch.float64),
            torch.zeros(3, 2, dtype=torch.float64),
            torch.eye(2, dtype=torch.float64).expand(3, 2, 2),
        )
    with pytest.raises(InvalidArgumentError):
        GMMParams.from_covariances(
            torch.tensor([0.7, 0.7], dtype=torch.float64),
            torch.zeros(2, 2, dtype=torch.float64),
            torch.eye(2, dtype=torch.float64).expand(2, 2, 2),
        )
    with pytest.raises(InvalidArgumentError):
        GMMParams.from_covariances(
            torch.tensor([float("nan"), 0.5], dtype=torch.float64),
            torch.zeros(2, 2, dtype=torch.float64),
            torch.eye(2, dtype=torch.float64).expand(2, 2, 2),
        )


# ---------------------------
# EM steps
# ---------------------------

@pytest.mark.parametrize("seed", [0, 7, 42])
def test_responsibilities_sum_to_one(seed):
    data = RandomData(np.random.RandomState(seed), n_samples=60, n_components=3, n_features=2)
    X = torch.from_numpy(data.X)

    _, log_resp = _e_step(X, data.params())
    resp = log_resp.exp()
    assert ((resp >= 0) & (resp <= 1)).all()
    assert torch.allclose(resp.sum(dim=1), torch.ones(60, dtype=torch.float64), atol=1e-9)


@pytest.mark.parametrize("seed", [0, 7, 42])
def test_proportions_sum_to_one_after_m_step(seed):
    data = RandomData(np.random.RandomState(seed), n_samples=100, n_components=3, n_features=2)
    X = torch.from_numpy(data.X)

    _, log_resp = _e_step(X, data.params())
    weights, means, cov = _maximization_step(X, log_resp)

    assert weights.sum().item() == pytest.approx(1.0, abs=1e-12)
    assert means.shape == (3, 2)
    assert torch.allclose(cov, cov.transpose(-1, -2))


def test_m_step_matches_weighted_formulas():
    rng = np.random.RandomState(5)
    X = torch.from_numpy(rng.randn(30, 2))
    resp = torch.from_numpy(rng.rand(30, 2))
    resp = resp / resp.sum(dim=1, keepdim=True)

    weights, means, cov = _maximization_step(X, resp.log())

    for k in range(2):
        nk = resp[:, k].sum()
        mu = (resp[:, k:k + 1] * X).sum(dim=0) / nk
        diff = X - mu
        S = (resp[:, k:k + 1] * diff).T @ diff / nk
        assert weights[k].item() == pytest.approx((nk / 30).item())
        assert torch.allclose(means[k], mu)
        assert torch.allclose(cov[k], S)


def test_monotonic_likelihood_under_em_steps():
    """EM never decreases the log-likelihood."""
    data = RandomData(np.random.RandomState(11), n_samples=200, n_components=2, n_features=2)
    X = torch.from_numpy(data.X)

    # deliberately poor start
    p = GMMParams.from_covariances(
        torch.tensor([0.5, 0.5], dtype=torch.float64),
        X[:2].clone(),
        torch.eye(2, dtype=torch.float64).expand(2, 2, 2).contiguous() * 10.0,
    )

    log_prob_norm, log_resp = _e_step(X, p)
    likelihoods = [log_prob_norm.sum().item()]
    for _ in range(15):
        weights, means, cov = _maximization_step(X, log_resp)
        p = GMMParams.from_covariances(weights, means, cov)
        log_prob_norm, log_resp = _e_step(X, p)
        likelihoods.append(log_prob_norm.sum().item())

    for i in range(1, len(likelihoods)):
        assert likelihoods[i] >= likelihoods[i - 1] - 1e-7, \
            f"decreased at iter {i}: {likelihoods[i-1]} -> {likelihoods[i]}"


def test_extreme_separations_stay_finite():
    X1 = torch.randn(100, 2, dtype=torch.float64, generator=torch.Generator().manual_seed(0)) * 0.1
    X2 = X1 + 1000.0
    X = torch.cat([X1, X2], dim=0)
    p = GMMParams.from_covariances(
        torch.tensor([0.5, 0.5], dtype=torch.float64),
        torch.tensor([[0.0, 0.0], [1000.0, 1000.0]], dtype=torch.float64),
        torch.eye(2, dtype=torch.float64).expand(2, 2, 2).contiguous(),
    )
    _, log_resp = _e_step(X, p)
    resp = log_resp.exp()
    assert torch.isfinite(resp).all()
    assert torch.allclose(resp.sum(dim=1), torch.ones(200, dtype=torch.float64))


def test_collapsed_component_raises_degenerate():
    X = torch.tensor([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [1.0, 1.0]], dtype=torch.float64)
    log_resp = torch.log(torch.tensor([[1.0, 0.0]] * 4, dtype=torch.float64))
    with pytest.raises(DegenerateCovarianceError):
        _maximization_step(X, log_resp)


def test_zero_density_everywhere_is_a_numeric_failure():
    X = torch.tensor([[0.0, 0.0], [1.0, 1.0]], dtype=torch.float64)
    p = GMMParams.from_covariances(
        torch.tensor([1.0, 0.0], dtype=torch.float64),
        torch.tensor([[1e200, 1e200], [0.0, 0.0]], dtype=torch.float64),
        torch.eye(2, dtype=torch.float64).expand(2, 2, 2).contiguous(),
    )
    with pytest.raises(NumericFailureError):
        _e_step(X, p)

# tests/test_metrics_and_classify.py
import math

import numpy as np
import torch
import pytest

from gmm_em._errors import InvalidArgumentError
from gmm_em._fit import fit_em
from gmm_em._torch_gmm_em import GMMParams, classify, evaluate, n_parameters, predict_proba


def _single_gaussian(X):
    X = torch.as_tensor(X, dtype=torch.float64)
    mean = X.mean(dim=0)
    cov = torch.cov(X.T)
    return GMMParams.from_covariances(
        torch.ones(1, dtype=torch.float64), mean.unsqueeze(0), cov.unsqueeze(0)
    ), mean, cov


@pytest.mark.parametrize("K,D,expected", [
    (1, 1, 1),
    (1, 2, 3),
    (3, 2, 2 + 6 + 3),
    (2, 4, 1 + 8 + 12),
])
def test_n_parameters(K, D, expected):
    assert n_parameters(K, D) == expected


def test_single_component_log_likelihood_matches_torch_distribution():
    X = np.random.RandomState(0).randn(80, 3)
    params, mean, cov = _single_gaussian(X)

    m = evaluate(X, params)
    ref = torch.distributions.MultivariateNormal(mean, covariance_matrix=cov).log_prob(
        torch.from_numpy(X)
    ).sum().item()

    assert m.log_likelihood == pytest.approx(ref, rel=1e-10)
    p = n_parameters(1, 3)
    assert m.aic == pytest.approx(ref - p, rel=1e-10)
    assert m.bic == pytest.approx(ref - 0.5 * p * math.log(80), rel=1e-10)


def test_evaluate_on_held_out_data_does_not_mutate_inputs(three_blobs):
    X, _ = three_blobs
    result = fit_em(X[:100], 3, max_iter=100, init_params="k_means", n_init=2, seed=0)
    params = result.params
    before = [t.clone() for t in (params.weights, params.means, params.covariances)]
    X_held_out = X[100:].copy()

    m = evaluate(X_held_out, params)

    assert math.isfinite(m.log_likelihood)
    assert np.array_equal(X_held_out, X[100:])
    for b, a in zip(before, (params.weights, params.means, params.covariances)):
        assert torch.equal(b, a)


def test_evaluate_rejects_dimension_mismatch(three_blobs):
    X, _ = three_blobs
    params, _, _ = _single_gaussian(X)
    with pytest.raises(InvalidArgumentError):
        evaluate(np.zeros((5, 3)), params)
    with pytest.raises(InvalidArgumentError):
        classify(np.zeros((5, 3)), params)


def test_bic_penalizes_extra_components_more_than_aic(three_blobs):
    X, _ = three_blobs
    metrics = {}
    for k in (1, 2, 3, 4):
        metrics[k] = fit_em(X, k, max_iter=100, init_params="k_means", n_init=2, seed=0).metrics

    for k1 in metrics:
        for k2 in metrics:
            if k1 < k2:
                d_bic = metrics[k2].bic - metrics[k1].bic
                d_aic = metrics[k2].aic - metrics[k1].aic
                assert d_bic <= d_aic


def test_responsibilities_of_fitted_model_sum_to_one(three_blobs):
    X, _ = three_blobs
    result = fit_em(X, 3, max_iter=100, n_init=3, seed=0)
    proba = predict_proba(X, result.params)
    assert torch.allclose(proba.sum(dim=1), torch.ones(150, dtype=torch.float64), atol=1e-9)


def test_classify_is_idempotent(three_blobs):
    X, _ = three_blobs
    result = fit_em(X, 3, max_iter=100, n_init=3, seed=0)
    first = classify(X, result.params)
    second = classify(X, result.params)
    assert torch.equal(first, second)
    assert first.shape == (150,)


def test_classify_breaks_ties_by_lowest_index():
    cov = torch.eye(2, dtype=torch.float64).expand(3, 2, 2).contiguous()
    params = GMMParams.from_covariances(
        torch.full((3,), 1.0 / 3, dtype=torch.float64),
        torch.zeros(3, 2, dtype=torch.float64),
        cov,
    )
    X = np.random.RandomState(0).randn(10, 2)
    assert classify(X, params).tolist() == [0] * 10


def test_classify_picks_nearest_component():
    params = GMMParams.from_covariances(
        torch.tensor([0.5, 0.5], dtype=torch.float64),
        torch.tensor([[0.0, 0.0], [10.0, 10.0]], dtype=torch.float64),
        torch.eye(2, dtype=torch.float64).expand(2, 2, 2).contiguous(),
    )
    X = np.array([[0.1, -0.2], [9.5, 10.3], [1.0, 1.0], [8.0, 9.0]])
    assert classify(X, params).tolist() == [0, 1, 0, 1]

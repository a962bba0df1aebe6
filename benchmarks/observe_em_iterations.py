"""Observe EM parameter updates iteration-by-iteration."""

import os
import sys
import logging

import numpy as np
from sklearn.datasets import make_blobs
from sklearn.mixture import GaussianMixture

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from gmm_em._fit import fit_em  # noqa: E402

N_COMPONENTS = 3
CENTERS = np.array([[0.0, 0.0], [10.0, 0.0], [5.0, 10.0]])


def make_data():
    return make_blobs(n_samples=[50, 50, 50], centers=CENTERS, cluster_std=1.0, random_state=42)


def observe_sklearn(X):
    """Observe scikit-learn EM iterations."""
    print("=" * 70)
    print("SCIKIT-LEARN GMM - Observing EM Iterations")
    print("=" * 70)

    gmm = GaussianMixture(
        n_components=N_COMPONENTS,
        covariance_type="full",
        max_iter=50,
        n_init=1,
        init_params="kmeans",
        reg_covar=0.0,
        tol=1e-10,
        random_state=42,
        verbose=2,
        verbose_interval=1,
    )
    gmm.fit(X)

    print(f"\n{'=' * 70}")
    print("Final Results:")
    print(f"  Converged: {gmm.converged_}")
    print(f"  Iterations: {gmm.n_iter_}")
    print(f"  Final log-likelihood: {gmm.score(X) * X.shape[0]:.6f}")
    print(f"  Final Weights: {gmm.weights_}")
    for k in range(N_COMPONENTS):
        print(f"    Component {k}: {gmm.means_[k]}")
    print("=" * 70 + "\n")


def observe_torch(X):
    """Observe the PyTorch engine through its per-iteration histories."""
    print("=" * 70)
    print("PYTORCH GMM - Observing EM Iterations")
    print("=" * 70)

    result = fit_em(X, N_COMPONENTS, max_iter=50, init_params="k_means", n_init=1, seed=42)

    prev = -np.inf
    for it, (ll, means) in enumerate(zip(result.log_likelihood_history, result.means_history)):
        delta = ll - prev
        print(f"Iteration {it + 1:2d}: log-likelihood = {ll:12.6f} (delta = {delta:+.6e})")
        if it % 5 == 0:
            print(f"    Means: {means.view(N_COMPONENTS, -1).numpy()}")
        prev = ll

    print(f"\n{'=' * 70}")
    print("Final Results:")
    print(f"  Converged (exact equality): {result.converged}")
    print(f"  Iterations: {result.n_iter}")
    print(f"  Final log-likelihood: {result.log_likelihood:.6f}")
    print(f"  AIC: {result.aic:.6f}   BIC: {result.bic:.6f}")
    print(f"  Final Weights: {result.params.weights.numpy()}")
    for k in range(N_COMPONENTS):
        print(f"    Component {k}: {result.params.means[k].numpy()}")
    print("=" * 70 + "\n")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(levelname)s - %(message)s")
    X, _ = make_data()

    observe_sklearn(X)

    print("\n" + "=" * 70)
    print("=" * 70)
    print("\n")

    observe_torch(X)

# tests/conftest.py
import sys
import os

# Add parent directory to path so we can import gmm_em without installing it
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import numpy as np
import pytest
from sklearn.datasets import make_blobs

BLOB_CENTERS = np.array([[0.0, 0.0], [10.0, 0.0], [5.0, 10.0]])


@pytest.fixture
def three_blobs():
    """Three well-separated unit-variance 2-D blobs, 50 points each."""
    X, y = make_blobs(
        n_samples=[50, 50, 50],
        centers=BLOB_CENTERS,
        cluster_std=1.0,
        random_state=0,
    )
    return X, y

# gmm_em/_model_selection.py
"""Sweep over candidate component counts K.

For every candidate K this collects the fitted log-likelihood, AIC and BIC
and, when n_folds is given, the held-out log-likelihood of every fold.
All criteria are "higher is better". The same seed is reused for every K so
that cross-validation compares the candidates on identical folds.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
import torch

from gmm_em._cross_validation import cross_validate
from gmm_em._errors import FitFailedError, InvalidArgumentError
from gmm_em._fit import FitResult, _check_fit_args, fit_em
from gmm_em._initialization import InitStrategy
from gmm_em._torch_gmm_em import ArrayLike, _check_X

logger = logging.getLogger(__name__)

CRITERIA = ("log_likelihood", "aic", "bic", "cv")


@dataclass
class ModelSelectionResult:
    n_components: List[int]
    log_likelihood: np.ndarray  # (len(n_components),)
    aic: np.ndarray
    bic: np.ndarray
    cv_log_likelihood: Optional[np.ndarray] = None  # (len(n_components), n_folds)
    fits: Dict[int, FitResult] = field(default_factory=dict)

    def _scores(self, criterion: str) -> np.ndarray:
        if criterion not in CRITERIA:
            raise InvalidArgumentError(f"criterion must be one of {CRITERIA}, got {criterion!r}")
        if criterion == "cv":
            if self.cv_log_likelihood is None:
                raise InvalidArgumentError("no cross-validation scores; pass n_folds to select_n_components")
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", category=RuntimeWarning)
                return np.nanmean(self.cv_log_likelihood, axis=1)
        return getattr(self, criterion)

    def best_k(self, criterion: str = "bic") -> int:
        scores = self._scores(criterion)
        if np.all(np.isnan(scores)):
            raise FitFailedError(f"no candidate produced a {criterion} score", [])
        return self.n_components[int(np.nanargmax(scores))]

    def to_frame(self) -> pd.DataFrame:
        df = pd.DataFrame({
            "n_components": self.n_components,
            "log_likelihood": self.log_likelihood,
            "aic": self.aic,
            "bic": self.bic,
        })
        if self.cv_log_likelihood is not None:
            for i in range(self.cv_log_likelihood.shape[1]):
                df[f"cv_fold_{i}"] = self.cv_log_likelihood[:, i]
            df["cv_mean"] = self._scores("cv")
        return df


def select_n_components(
    X: ArrayLike,
    candidates: Sequence[int],
    max_iter: int = 100,
    init_params: Union[InitStrategy, str] = InitStrategy.RANDOM_CENTROIDS,
    n_init: int = 1,
    n_folds: Optional[int] = None,
    seed: Optional[int] = None,
    tol: Optional[float] = None,
    reg_covar: float = 0.0,
    kmeans_n_init: int = 10,
    dtype: Optional[torch.dtype] = torch.float64,
) -> ModelSelectionResult:
    if len(candidates) == 0:
        raise InvalidArgumentError("candidates must not be empty")
    _check_fit_args(max_iter, n_init, tol, reg_covar, kmeans_n_init)
    init_params = InitStrategy.coerce(init_params)
    X = _check_X(X, dtype=dtype)
    ks = [int(k) for k in candidates]

    ll = np.full(len(ks), np.nan)
    aic = np.full(len(ks), np.nan)
    bic = np.full(len(ks), np.nan)
    cv = np.full((len(ks), n_folds), np.nan) if n_folds is not None else None
    fits: Dict[int, FitResult] = {}

    for j, k in enumerate(ks):
        try:
            result = fit_em(
                X, k,
                max_iter=max_iter,
                init_params=init_params,
                n_init=n_init,
                seed=seed,
                tol=tol,
                reg_covar=reg_covar,
                kmeans_n_init=kmeans_n_init,
                dtype=dtype,
            )
        except FitFailedError as exc:
            logger.warning("K=%d: fit failed: %s", k, exc)
        else:
            fits[k] = result
            ll[j], aic[j], bic[j] = result.log_likelihood, result.aic, result.bic

        if cv is not None:
            try:
                cvr = cross_validate(
                    X, k,
                    n_folds=n_folds,
                    max_iter=max_iter,
                    init_params=init_params,
                    seed=seed,
                    n_init=n_init,
                    tol=tol,
                    reg_covar=reg_covar,
                    kmeans_n_init=kmeans_n_init,
                    dtype=dtype,
                )
            except FitFailedError as exc:
                logger.warning("K=%d: cross-validation failed: %s", k, exc)
            else:
                cv[j] = cvr.fold_log_likelihoods

    return ModelSelectionResult(
        n_components=ks,
        log_likelihood=ll,
        aic=aic,
        bic=bic,
        cv_log_likelihood=cv,
        fits=fits,
    )

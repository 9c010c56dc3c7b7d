"""ZE3RA baseline estimate for a raw channel.

Each minibuffer contributes the mean and variance of its first samples. Adjacent
minibuffers are compared with an F-test on their variances; minibuffers whose
variance is consistent with the next one are averaged into the baseline.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

import numpy as np
from scipy.special import betainc

from ncv_rate_analyzer.models.raw import Channel


NUM_BASELINE_SAMPLES = 25
Q_CRITICAL = 1e-4


@dataclass(frozen=True)
class BaselineEstimate:
    mean: float
    sigma: float
    n_consistent: int


def _mean_and_var(samples: np.ndarray) -> Tuple[float, float]:
    if samples.size == 0:
        return float("nan"), float("nan")
    if samples.size == 1:
        return float(samples[0]), 0.0
    x = samples.astype(float)
    return float(x.mean()), float(x.var(ddof=1))


def f_test_probability(var_a: float, var_b: float, num_samples: int = NUM_BASELINE_SAMPLES) -> float:
    """Probability of a variance ratio at least as large as the observed one.

    Both variances come from ``num_samples`` samples, so the ratio follows an F
    distribution with ``num_samples - 1`` degrees of freedom on each side.
    """
    hi, lo = max(var_a, var_b), min(var_a, var_b)
    if hi == 0.0:
        return 1.0
    if lo == 0.0:
        return 0.0
    F = hi / lo
    nu = (num_samples - 1) / 2.0
    return float(betainc(nu, nu, 1.0 / (1.0 + F)))


def ze3ra_baseline(
    channel: Channel,
    *,
    num_samples: int = NUM_BASELINE_SAMPLES,
    q_critical: float = Q_CRITICAL,
) -> BaselineEstimate:
    """Estimate the baseline mean and noise of ``channel``.

    Minibuffer ``k`` is consistent when the F-test against minibuffer ``k + 1`` gives
    ``Q >= q_critical``. If no minibuffer is consistent the one closest to passing
    (largest ``Q``) is used alone.
    """
    means = []
    variances = []
    for mb in range(channel.num_minibuffers):
        m, v = _mean_and_var(channel.minibuffer_data(mb)[:num_samples])
        means.append(m)
        variances.append(v)

    if len(means) == 1:
        return BaselineEstimate(means[0], math.sqrt(variances[0]), 0)

    qs = [f_test_probability(variances[j], variances[j + 1], num_samples) for j in range(len(variances) - 1)]

    passing = [k for k, q in enumerate(qs) if q >= q_critical]
    if passing:
        mean = float(np.mean([means[k] for k in passing]))
        sigma = float(np.mean([math.sqrt(variances[k]) for k in passing]))
        return BaselineEstimate(mean, sigma, len(passing))

    best = int(np.argmax(qs))
    return BaselineEstimate(means[best], math.sqrt(variances[best]), 0)

"""
Dirichlet-multinomial marginal likelihood of responder configurations.

For subject i with stimulated row ``s``, unstimulated row ``u`` and prior
concentration ``alpha``, let ``R`` be the categories flagged as responses and
``N`` the rest (always containing the baseline). Non-responding stimulated
cells share the within-``N`` composition of the unstimulated cells;
responding stimulated cells follow their own composition ``phi ~ Dir(alpha[R])``
and take a share ``w ~ Beta(a_w, b_w)`` of the stimulated total. Integrating
out the compositions gives, up to terms constant in ``R``::

    D(R; s) = lnB(alpha[N] + u[N] + s[N]) - lnB(alpha[N] + u[N])
            + [R non-empty] * ( lnB(alpha[R] + s[R]) - lnB(alpha[R])
                                + betaln(a_w + s(R), b_w + s(N)) - betaln(a_w, b_w) )

with ``lnB(v) = sum(lgamma(v)) - lgamma(sum(v))``. The sampled score is::

    log L(R) = D(R; s) - D(R; s_ref) + sum_{c in R} e[c]

where ``s_ref`` repeats the unstimulated composition at the stimulated depth.
Subtracting ``D(R; s_ref)`` removes the cost of the extra responder
parameters, so a subject whose stimulated row has the same composition as
its unstimulated row scores every ``R`` equally. ``e`` is the one-sided
offset ``log P(p_s > p_u | data) - log P(p_s > p_u | prior)``, which is zero
when there is no stimulated data.

Categories with no counts in any subject of either matrix never enter ``R``,
so their indicators follow the response-rate prior. All terms are computed
in log space and the pseudocounts keep every gamma argument positive.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.special import betaln, gammaln
from scipy.stats import norm

from compass_pipeline.model.specification import ModelSpecification


def _beta_moments(a: np.ndarray, b: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    total = a + b
    mean = a / total
    var = a * b / (total ** 2 * (total + 1.0))
    return mean, var


def elevation_offsets(spec: ModelSpecification) -> np.ndarray:
    """
    One-sided log Bayes-factor correction for every (subject, category).

    Uses per-category Beta marginals of the stimulated and unstimulated
    proportions and a normal approximation of ``P(p_s > p_u)``. Subjects
    with no stimulated cells get zero offsets.

    Returns:
        Array of shape (n_subjects, n_categories).
    """
    alpha = spec.alpha[None, :]
    a_total = spec.alpha.sum()
    s = spec.stimulated.astype(np.float64)
    u = spec.unstimulated.astype(np.float64)
    S = spec.stimulated_totals.astype(np.float64)[:, None]
    U = spec.unstimulated_totals.astype(np.float64)[:, None]

    ms, vs = _beta_moments(alpha + s, a_total - alpha + S - s)
    mu, vu = _beta_moments(alpha + u, a_total - alpha + U - u)
    log_post = norm.logcdf((ms - mu) / np.sqrt(vs + vu))

    # Both proportions share the same prior, so P(p_s > p_u | prior) = 1/2.
    offsets = log_post - np.log(0.5)
    offsets[ms == mu] = 0.0
    offsets[spec.stimulated_totals == 0, :] = 0.0
    return offsets


def reference_counts(spec: ModelSpecification) -> np.ndarray:
    """
    Stimulated counts that repeat each subject's unstimulated composition.

    Row i is ``u[i] * S[i] / U[i]``. Subjects without unstimulated cells use
    the prior mean composition. The values are not rounded.
    """
    u = spec.unstimulated.astype(np.float64)
    S = spec.stimulated_totals.astype(np.float64)[:, None]
    U = spec.unstimulated_totals.astype(np.float64)[:, None]
    prior_mean = np.broadcast_to(spec.alpha / spec.alpha.sum(), u.shape)

    with np.errstate(divide="ignore", invalid="ignore"):
        scaled = u * S / U
    return np.where(U > 0, scaled, prior_mean * S)


@dataclass(frozen=True)
class LikelihoodTables:
    """Per-(subject, category) terms precomputed once per fit."""

    g_null: np.ndarray
    """lgamma(alpha + u + s) - lgamma(alpha + u)."""

    g_resp: np.ndarray
    """lgamma(alpha + s) - lgamma(alpha)."""

    a_us: np.ndarray
    """alpha + u + s."""

    a_u: np.ndarray
    """alpha + u."""

    a_s: np.ndarray
    """alpha + s."""

    alpha: np.ndarray
    """alpha broadcast to (subjects, categories)."""

    stim: np.ndarray
    """Stimulated counts as floats."""

    stim_totals: np.ndarray
    offsets: np.ndarray
    informative: np.ndarray
    """Categories with at least one count in either matrix."""

    share_a: float
    share_b: float
    reference: Optional["LikelihoodTables"] = None
    """Same terms for ``reference_counts``; subtracted from every score."""

    @classmethod
    def _from_counts(
        cls,
        alpha: np.ndarray,
        s: np.ndarray,
        u: np.ndarray,
        offsets: np.ndarray,
        informative: np.ndarray,
        share_a: float,
        share_b: float,
        reference: Optional["LikelihoodTables"] = None,
    ) -> "LikelihoodTables":
        a_u = alpha + u
        a_us = a_u + s
        a_s = alpha + s
        return cls(
            g_null=gammaln(a_us) - gammaln(a_u),
            g_resp=gammaln(a_s) - gammaln(alpha),
            a_us=a_us,
            a_u=a_u,
            a_s=a_s,
            alpha=alpha,
            stim=s,
            stim_totals=s.sum(axis=1),
            offsets=offsets,
            informative=informative,
            share_a=float(share_a),
            share_b=float(share_b),
            reference=reference,
        )

    @classmethod
    def build(
        cls,
        spec: ModelSpecification,
        share_a: float = 1.0,
        share_b: float = 1.0,
        one_sided: bool = True,
        calibrated: bool = True,
    ) -> "LikelihoodTables":
        s = spec.stimulated.astype(np.float64)
        u = spec.unstimulated.astype(np.float64)
        alpha = np.broadcast_to(spec.alpha, s.shape).astype(np.float64)
        informative = (s + u).sum(axis=0) > 0

        offsets = elevation_offsets(spec) if one_sided else np.zeros_like(s)
        reference = None
        if calibrated:
            reference = cls._from_counts(
                alpha, reference_counts(spec), u, np.zeros_like(s),
                informative, share_a, share_b,
            )
        return cls._from_counts(
            alpha, s, u, offsets, informative, share_a, share_b, reference
        )

    @property
    def n_subjects(self) -> int:
        return self.g_null.shape[0]


def _dirichlet_multinomial_term(tables: LikelihoodTables, r: np.ndarray) -> np.ndarray:
    n = ~r

    null_part = (
        np.where(n, tables.g_null, 0.0).sum(axis=1)
        - gammaln(np.where(n, tables.a_us, 0.0).sum(axis=1))
        + gammaln(np.where(n, tables.a_u, 0.0).sum(axis=1))
    )

    has_r = r.any(axis=1)
    sum_alpha_r = np.where(r, tables.alpha, 0.0).sum(axis=1)
    sum_as_r = np.where(r, tables.a_s, 0.0).sum(axis=1)
    stim_r = np.where(r, tables.stim, 0.0).sum(axis=1)
    stim_n = tables.stim_totals - stim_r

    # Placeholder arguments keep lgamma finite on rows with an empty R.
    safe_alpha_r = np.where(has_r, sum_alpha_r, 1.0)
    safe_as_r = np.where(has_r, sum_as_r, 1.0)

    resp_part = (
        np.where(r, tables.g_resp, 0.0).sum(axis=1)
        - gammaln(safe_as_r)
        + gammaln(safe_alpha_r)
        + betaln(tables.share_a + stim_r, tables.share_b + stim_n)
        - betaln(tables.share_a, tables.share_b)
    )

    return null_part + np.where(has_r, resp_part, 0.0)


def log_marginal(tables: LikelihoodTables, responders: np.ndarray) -> np.ndarray:
    """
    Log marginal likelihood of each subject's responder configuration.

    Args:
        tables: Precomputed terms.
        responders: Boolean matrix (subjects x categories); True marks ``R``.

    Returns:
        Array of shape (n_subjects,).
    """
    r = np.asarray(responders, dtype=bool) & tables.informative[None, :]

    value = (
        _dirichlet_multinomial_term(tables, r)
        + np.where(r, tables.offsets, 0.0).sum(axis=1)
    )
    if tables.reference is not None:
        value = value - _dirichlet_multinomial_term(tables.reference, r)
    return value

"""
Posterior aggregation across independent chains.

Each chain streams its post-burn-in draws into a ``DrawAccumulator``; the
``PosteriorAggregator`` then reduces all accumulators into one posterior
probability matrix. The reduction is a sum of sums divided by a total
count, so it does not depend on the order in which chains finish.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Sequence
import logging

import numpy as np

from compass_pipeline.core.config import DiagnosticsConfig, SamplerConfig
from compass_pipeline.core.exceptions import ConfigurationError, ConvergenceWarning

if TYPE_CHECKING:
    from compass_pipeline.sampler.chain import ChainResult, ChainState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionPlan:
    """Which iterations of a chain are kept."""

    iterations: int
    """Iterations per chain."""

    burn_in_fraction: float = 0.5
    """Leading fraction of iterations discarded."""

    thin: int = 1
    """Keep every ``thin``-th iteration after burn-in."""

    def __post_init__(self):
        if self.iterations < 1:
            raise ConfigurationError(f"iterations must be >= 1, got {self.iterations}")
        if not 0.0 <= self.burn_in_fraction < 1.0:
            raise ConfigurationError(
                f"burn_in_fraction must be in [0, 1), got {self.burn_in_fraction}"
            )
        if self.thin < 1:
            raise ConfigurationError(f"thin must be >= 1, got {self.thin}")
        if self.n_retained == 0:
            raise ConfigurationError("Retention plan keeps no draws")

    @classmethod
    def from_config(cls, config: SamplerConfig) -> "RetentionPlan":
        return cls(
            iterations=config.iterations,
            burn_in_fraction=config.burn_in_fraction,
            thin=config.thin,
        )

    @property
    def burn_in(self) -> int:
        return int(self.iterations * self.burn_in_fraction)

    @property
    def n_retained(self) -> int:
        return len(range(self.burn_in, self.iterations, self.thin))

    def retains(self, iteration: int) -> bool:
        return iteration >= self.burn_in and (iteration - self.burn_in) % self.thin == 0


class DrawAccumulator:
    """
    Running sums of one chain's retained draws.

    Indicator sums are split into the first and second half of the retained
    draws so split R-hat can be computed without storing every draw.
    """

    def __init__(
        self,
        plan: RetentionPlan,
        n_subjects: int,
        n_categories: int,
        keep_draws: bool = False,
    ):
        self.plan = plan
        self.z_sum = np.zeros((2, n_subjects, n_categories), dtype=np.int64)
        self.half_counts = np.zeros(2, dtype=np.int64)
        self.theta_sum = np.zeros(n_categories)
        self.phi_sum = np.zeros((n_subjects, n_categories))
        self.omega_sum = np.zeros(n_categories)
        self.loglik_trace = np.full(plan.iterations, np.nan)
        self.draws: Optional[list[np.ndarray]] = [] if keep_draws else None
        self._boundary = plan.n_retained // 2

    def observe(self, iteration: int, state: "ChainState") -> None:
        """Record the state after ``iteration``."""
        self.loglik_trace[iteration] = float(state.loglik.sum())
        if not self.plan.retains(iteration):
            return
        half = 0 if self.n_retained < self._boundary else 1
        self.z_sum[half] += state.responders
        self.half_counts[half] += 1
        self.theta_sum += state.theta
        self.phi_sum += state.phi
        self.omega_sum += state.omega
        if self.draws is not None:
            self.draws.append(state.responders.copy())

    @property
    def n_retained(self) -> int:
        return int(self.half_counts.sum())

    @property
    def z_total(self) -> np.ndarray:
        return self.z_sum.sum(axis=0)

    @property
    def mean_loglik(self) -> float:
        """Mean summed log-likelihood over the post-burn-in iterations observed so far."""
        tail = self.loglik_trace[self.plan.burn_in:]
        tail = tail[~np.isnan(tail)]
        return float(tail.mean()) if tail.size else float("nan")

    def mean(self) -> np.ndarray:
        """Posterior mean of the indicators for this chain alone."""
        return self.z_total / max(self.n_retained, 1)


@dataclass
class ConvergenceDiagnostics:
    """Between-chain agreement and sampler health."""

    n_chains: int
    draws_per_chain: int
    acceptance_rates: list[float]
    max_disagreement: float
    """Largest spread of per-chain posterior means over any (subject, category)."""

    max_rhat: float
    """Largest split R-hat over sampled cells (nan when undefined)."""

    warnings: list[ConvergenceWarning] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return not self.warnings

    @property
    def messages(self) -> list[str]:
        return [w.message for w in self.warnings]

    def to_dict(self) -> dict[str, Any]:
        return {
            "n_chains": self.n_chains,
            "draws_per_chain": self.draws_per_chain,
            "acceptance_rates": list(self.acceptance_rates),
            "max_disagreement": self.max_disagreement,
            "max_rhat": self.max_rhat,
            "converged": self.converged,
            "warnings": [{"kind": w.kind, "message": w.message} for w in self.warnings],
        }


@dataclass
class AggregatedPosterior:
    """Reduced posterior across all chains."""

    posterior: np.ndarray
    """Posterior response probability per (subject, category)."""

    theta_mean: np.ndarray
    """Posterior mean of the shared null composition."""

    phi_mean: np.ndarray
    """Posterior mean of the per-subject responder compositions."""

    omega_mean: np.ndarray
    """Posterior mean of the per-category response rate."""

    n_draws: int
    diagnostics: ConvergenceDiagnostics


def split_rhat(half_means: np.ndarray, half_counts: np.ndarray) -> np.ndarray:
    """
    Split R-hat for Bernoulli draws from per-half means.

    Args:
        half_means: Array (n_halves, ...) of per-half indicator means.
        half_counts: Draw count of each half.

    Returns:
        R-hat per cell; 1 where every half is constant and identical,
        nan when fewer than two draws per half are available.
    """
    n = int(np.min(half_counts))
    m = half_means.shape[0]
    if n < 2 or m < 2:
        return np.full(half_means.shape[1:], np.nan)

    variances = half_means * (1.0 - half_means) * n / (n - 1)
    w = variances.mean(axis=0)
    b = n * half_means.var(axis=0, ddof=1)
    var_plus = (n - 1) / n * w + b / n

    with np.errstate(divide="ignore", invalid="ignore"):
        rhat = np.sqrt(var_plus / w)
    rhat = np.where((w == 0) & (b == 0), 1.0, rhat)
    return rhat


class PosteriorAggregator:
    """
    Reduces chain accumulators into a posterior matrix with diagnostics.

    Example:
        >>> plan = RetentionPlan(iterations=2000, burn_in_fraction=0.5, thin=1)
        >>> aggregator = PosteriorAggregator(plan)
        >>> reduced = aggregator.reduce(chain_results, active=spec.active)
        >>> reduced.posterior.shape
        (n_subjects, n_categories)
    """

    def __init__(
        self,
        plan: RetentionPlan,
        config: Optional[DiagnosticsConfig] = None,
    ):
        self.plan = plan
        self.config = config or DiagnosticsConfig()

    def reduce(
        self,
        chains: Sequence["ChainResult"],
        active: Optional[np.ndarray] = None,
    ) -> AggregatedPosterior:
        """
        Pool retained draws of all chains.

        Args:
            chains: Finished chains (any order).
            active: Categories that were sampled; others are excluded from diagnostics.

        Returns:
            AggregatedPosterior with the posterior matrix and diagnostics.
        """
        if not chains:
            raise ValueError("No chains to aggregate")
        chains = sorted(chains, key=lambda c: c.index)
        accs = [c.accumulator for c in chains]

        total = sum(a.n_retained for a in accs)
        z_total = np.sum([a.z_total for a in accs], axis=0)
        posterior = np.clip(z_total / total, 0.0, 1.0)

        theta_mean = np.sum([a.theta_sum for a in accs], axis=0) / total
        phi_mean = np.sum([a.phi_sum for a in accs], axis=0) / total
        omega_mean = np.sum([a.omega_sum for a in accs], axis=0) / total

        diagnostics = self.diagnose(chains, active)
        return AggregatedPosterior(
            posterior=posterior,
            theta_mean=theta_mean,
            phi_mean=phi_mean,
            omega_mean=omega_mean,
            n_draws=total,
            diagnostics=diagnostics,
        )

    def diagnose(
        self,
        chains: Sequence["ChainResult"],
        active: Optional[np.ndarray] = None,
    ) -> ConvergenceDiagnostics:
        """Compare chains and flag pathological acceptance rates."""
        cfg = self.config
        accs = [c.accumulator for c in chains]
        n_categories = accs[0].z_sum.shape[2]
        cols = np.ones(n_categories, dtype=bool) if active is None else np.asarray(active, dtype=bool)

        warnings: list[ConvergenceWarning] = []

        chain_means = np.stack([a.mean()[:, cols] for a in accs])
        if len(accs) > 1 and chain_means.size:
            max_disagreement = float((chain_means.max(axis=0) - chain_means.min(axis=0)).max())
        else:
            max_disagreement = 0.0
        if max_disagreement > cfg.chain_tolerance:
            warnings.append(ConvergenceWarning(
                "chain_disagreement",
                f"Per-chain posterior means differ by up to {max_disagreement:.3f} "
                f"(tolerance {cfg.chain_tolerance}); consider more iterations",
            ))

        half_means = []
        half_counts = []
        for a in accs:
            for h in range(2):
                if a.half_counts[h] > 0:
                    half_means.append(a.z_sum[h][:, cols] / a.half_counts[h])
                    half_counts.append(a.half_counts[h])
        if half_means and chain_means.size:
            rhat = split_rhat(np.stack(half_means), np.asarray(half_counts))
            defined = rhat[~np.isnan(rhat)]
            max_rhat = float(defined.max()) if defined.size else float("nan")
        else:
            max_rhat = float("nan")
        if max_rhat > cfg.max_rhat:
            warnings.append(ConvergenceWarning(
                "rhat",
                f"Split R-hat reaches {max_rhat:.3f} (threshold {cfg.max_rhat})",
            ))

        rates = [c.acceptance_rate for c in chains]
        for c in chains:
            rate = c.acceptance_rate
            if c.proposed == 0:
                continue
            if rate < cfg.min_acceptance:
                warnings.append(ConvergenceWarning(
                    "low_acceptance",
                    f"Chain {c.index} acceptance rate {rate:.4f} is below {cfg.min_acceptance}",
                ))
            elif rate > cfg.max_acceptance:
                warnings.append(ConvergenceWarning(
                    "high_acceptance",
                    f"Chain {c.index} acceptance rate {rate:.4f} is above {cfg.max_acceptance}",
                ))

        for w in warnings:
            logger.warning("Convergence: %s", w.message)

        return ConvergenceDiagnostics(
            n_chains=len(chains),
            draws_per_chain=self.plan.n_retained,
            acceptance_rates=rates,
            max_disagreement=max_disagreement,
            max_rhat=max_rhat,
            warnings=warnings,
        )

"""
Main pipeline class that turns count matrices into a CompassResult.
"""

from __future__ import annotations

from typing import Optional, Sequence, Union
import logging
import threading
import time

from compass_pipeline.core.config import Config
from compass_pipeline.model.categories import CategorySpace, build_category_space
from compass_pipeline.model.specification import (
    CategoryFilter,
    CountInput,
    ModelSpecification,
)
from compass_pipeline.result import CompassResult
from compass_pipeline.sampler.aggregator import PosteriorAggregator, RetentionPlan
from compass_pipeline.sampler.runner import ChainRunner
from compass_pipeline.scoring.scores import Scorer

logger = logging.getLogger(__name__)


class CompassPipeline:
    """Fits the response model and scores every subject.

    Example:
        >>> from compass_pipeline import CompassPipeline, Config
        >>>
        >>> config = Config(iterations=2000, replications=2, seed=42)
        >>> pipeline = CompassPipeline(config)
        >>> result = pipeline.fit(stimulated, unstimulated, markers=["A", "B"])
        >>> result.scores()
    """

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()

    def build_specification(
        self,
        stimulated: CountInput,
        unstimulated: CountInput,
        markers: Union[Sequence[str], CategorySpace],
        subject_ids: Optional[Sequence] = None,
    ) -> ModelSpecification:
        """Validate inputs into a ModelSpecification using the configured prior and filter."""
        space = markers if isinstance(markers, CategorySpace) else build_category_space(markers)
        category_filter = None
        if self.config.filter.enabled:
            category_filter = CategoryFilter(
                min_count=self.config.filter.min_count,
                min_subjects=self.config.filter.min_subjects,
            )
        return ModelSpecification(
            stimulated,
            unstimulated,
            space,
            prior=self.config.prior.concentration,
            subject_ids=subject_ids,
            category_filter=category_filter,
        )

    def fit(
        self,
        stimulated: CountInput,
        unstimulated: CountInput,
        markers: Union[Sequence[str], CategorySpace],
        subject_ids: Optional[Sequence] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> CompassResult:
        """Run the full fit.

        Parameters
        ----------
        stimulated : array-like or pd.DataFrame
            Stimulated counts (subjects x 2^K categories)
        unstimulated : array-like or pd.DataFrame
            Unstimulated counts with the same shape and ordering
        markers : list[str] or CategorySpace
            Marker names defining the category columns
        subject_ids : list, optional
            Subject keys (DataFrame index used when omitted)
        cancel_event : threading.Event, optional
            Setting it stops all chains at their next iteration

        Returns
        -------
        CompassResult
            Posterior matrix, scores and diagnostics

        Raises
        ------
        ConfigurationError
            Invalid configuration, markers or counts
        DimensionMismatch
            Count matrices do not align with each other or with the markers
        FitCancelled
            The cancellation token was set
        """
        start = time.time()
        total_steps = 4

        self.config.validate()
        plan = RetentionPlan.from_config(self.config.sampler)

        self._update_progress(1, total_steps, "Validating inputs...")
        spec = self.build_specification(stimulated, unstimulated, markers, subject_ids)
        logger.info("%r", spec)

        self._update_progress(
            2, total_steps,
            f"Sampling {self.config.sampler.replications} chains x {plan.iterations} iterations...",
        )
        runner = ChainRunner(
            sampler=self.config.sampler,
            prior=self.config.prior,
            parallel=self.config.parallel,
        )
        chains = runner.run(spec, plan, cancel_event=cancel_event)

        self._update_progress(3, total_steps, "Aggregating chains...")
        aggregator = PosteriorAggregator(plan, self.config.diagnostics)
        reduced = aggregator.reduce(chains, active=spec.active)

        self._update_progress(4, total_steps, "Scoring subjects...")
        scorer = Scorer(space=spec.space, active=spec.active, policy=self.config.scoring_policy)
        fs, pfs = scorer.score(reduced.posterior)

        result = CompassResult(
            space=spec.space,
            subject_ids=spec.subject_ids,
            posterior_matrix=reduced.posterior,
            fs=fs,
            pfs=pfs,
            active=spec.active,
            diagnostics=reduced.diagnostics,
            plan=plan,
            policy=scorer.policy,
            theta_mean=reduced.theta_mean,
            phi_mean=reduced.phi_mean,
            omega_mean=reduced.omega_mean,
            chains=tuple(c.summary() for c in chains),
            config=self.config.to_dict(),
            fit_seconds=time.time() - start,
        )
        logger.info(
            "Fit complete in %.1fs: %d subjects, %d draws pooled, converged=%s",
            result.fit_seconds, result.n_subjects, reduced.n_draws, result.is_converged,
        )
        return result

    def _update_progress(self, step: int, total: int, message: str) -> None:
        """Log progress for the current step."""
        logger.info("[%d/%d] %s", step, total, message)


def fit_compass(
    stimulated: CountInput,
    unstimulated: CountInput,
    markers: Union[Sequence[str], CategorySpace],
    config: Optional[Config] = None,
    subject_ids: Optional[Sequence] = None,
    cancel_event: Optional[threading.Event] = None,
    **kwargs,
) -> CompassResult:
    """Fit in one call.

    Example:
        >>> result = fit_compass(stim, unstim, ["A", "B"], iterations=2000, seed=1)
    """
    if config is None:
        config = Config(**kwargs)
    elif kwargs:
        raise TypeError("Pass either a Config or keyword settings, not both")
    return CompassPipeline(config).fit(
        stimulated, unstimulated, markers,
        subject_ids=subject_ids, cancel_event=cancel_event,
    )

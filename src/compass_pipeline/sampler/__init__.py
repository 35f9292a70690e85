"""
MCMC sampling: per-chain kernel, parallel runner and cross-chain aggregation.
"""

from compass_pipeline.sampler.aggregator import (
    AggregatedPosterior,
    ConvergenceDiagnostics,
    DrawAccumulator,
    PosteriorAggregator,
    RetentionPlan,
    split_rhat,
)
from compass_pipeline.sampler.chain import (
    ChainResult,
    ChainState,
    gibbs_refresh,
    initial_state,
    metropolis_step,
    run_chain,
)
from compass_pipeline.sampler.runner import ChainRunner

__all__ = [
    "AggregatedPosterior",
    "ConvergenceDiagnostics",
    "DrawAccumulator",
    "PosteriorAggregator",
    "RetentionPlan",
    "split_rhat",
    "ChainResult",
    "ChainState",
    "gibbs_refresh",
    "initial_state",
    "metropolis_step",
    "run_chain",
    "ChainRunner",
]

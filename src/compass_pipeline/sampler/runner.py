"""
Parallel execution of independent chains.

Chains share only the read-only model specification. Each gets its own
generator spawned from the master seed, so results do not depend on
scheduling or completion order.
"""

from __future__ import annotations

import concurrent.futures
import logging
import os
import threading
from typing import Optional

import numpy as np

from compass_pipeline.core.config import ParallelConfig, PriorConfig, SamplerConfig
from compass_pipeline.core.exceptions import FitCancelled
from compass_pipeline.model.likelihood import LikelihoodTables
from compass_pipeline.model.specification import ModelSpecification
from compass_pipeline.sampler.aggregator import RetentionPlan
from compass_pipeline.sampler.chain import ChainResult, run_chain

logger = logging.getLogger(__name__)


class ChainRunner:
    """
    Runs R independent chains on a thread pool, a process pool, or serially.

    Example:
        >>> runner = ChainRunner(SamplerConfig(iterations=2000, replications=4))
        >>> chains = runner.run(spec, RetentionPlan(iterations=2000))
        >>> [c.index for c in chains]
        [0, 1, 2, 3]
    """

    def __init__(
        self,
        sampler: Optional[SamplerConfig] = None,
        prior: Optional[PriorConfig] = None,
        parallel: Optional[ParallelConfig] = None,
    ):
        self.sampler = sampler or SamplerConfig()
        self.prior = prior or PriorConfig()
        self.parallel = parallel or ParallelConfig()

    def seeds(self) -> list[np.random.SeedSequence]:
        """Independent per-chain seed sequences derived from the master seed."""
        return np.random.SeedSequence(self.sampler.seed).spawn(self.sampler.replications)

    @property
    def max_workers(self) -> int:
        if self.parallel.max_workers is not None:
            return self.parallel.max_workers
        return max(1, min(self.sampler.replications, os.cpu_count() or 1))

    def run(
        self,
        spec: ModelSpecification,
        plan: RetentionPlan,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[ChainResult]:
        """
        Run all chains and wait for every one of them.

        Args:
            spec: Model specification shared by all chains.
            plan: Retention plan.
            cancel_event: Setting it stops every chain at its next iteration.

        Returns:
            Chain results sorted by chain index.

        Raises:
            FitCancelled: A chain observed the cancellation token.
            RuntimeError: A chain failed; the original error is chained.
        """
        backend = self.parallel.backend
        seeds = self.seeds()
        logger.info(
            "Running %d chains x %d iterations (%s backend)",
            len(seeds), plan.iterations, backend,
        )

        if backend == "process":
            return self._run_processes(spec, plan, seeds)

        tables = LikelihoodTables.build(
            spec,
            share_a=self.prior.response_share_a,
            share_b=self.prior.response_share_b,
            one_sided=self.prior.one_sided,
            calibrated=self.prior.calibrated,
        )
        stop = cancel_event if cancel_event is not None else threading.Event()

        if backend == "serial":
            results = []
            for i, seed in enumerate(seeds):
                results.append(self._run_one(spec, plan, seed, i, stop, tables))
            return results

        results = []
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(self._run_one, spec, plan, seed, i, stop, tables): i
                for i, seed in enumerate(seeds)
            }
            try:
                for future in concurrent.futures.as_completed(futures):
                    results.append(future.result())
            except BaseException:
                if cancel_event is None:
                    stop.set()
                for f in futures:
                    f.cancel()
                raise

        results.sort(key=lambda r: r.index)
        return results

    def _run_one(
        self,
        spec: ModelSpecification,
        plan: RetentionPlan,
        seed: np.random.SeedSequence,
        index: int,
        stop: Optional[threading.Event],
        tables: Optional[LikelihoodTables],
    ) -> ChainResult:
        try:
            result = run_chain(
                spec, self.sampler, self.prior, plan, seed,
                chain_index=index, cancel_event=stop, tables=tables,
            )
        except FitCancelled:
            raise
        except Exception as e:
            raise RuntimeError(f"Chain {index} failed: {e}") from e
        logger.info(
            "Chain %d complete: acceptance %.3f, %d draws retained",
            index, result.acceptance_rate, result.accumulator.n_retained,
        )
        return result

    def _run_processes(
        self,
        spec: ModelSpecification,
        plan: RetentionPlan,
        seeds: list[np.random.SeedSequence],
    ) -> list[ChainResult]:
        results = []
        with concurrent.futures.ProcessPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(
                    run_chain, spec, self.sampler, self.prior, plan, seed, i,
                ): i
                for i, seed in enumerate(seeds)
            }
            for future in concurrent.futures.as_completed(futures):
                index = futures[future]
                try:
                    results.append(future.result())
                except Exception as e:
                    raise RuntimeError(f"Chain {index} failed: {e}") from e

        results.sort(key=lambda r: r.index)
        return results

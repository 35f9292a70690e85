"""
Pipeline configuration management.

Provides dataclass-based configuration with validation and serialization.
"""

from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Literal, Any
import json
import os

import yaml

from compass_pipeline.core.exceptions import ConfigurationError


@dataclass
class SamplerConfig:
    """Markov-chain Monte Carlo configuration."""

    iterations: int = 40000
    """Iterations per chain."""

    replications: int = 8
    """Number of independent chains."""

    burn_in_fraction: float = 0.5
    """Fraction of each chain discarded as burn-in."""

    thin: int = 1
    """Keep every ``thin``-th post-burn-in draw."""

    seed: int = 0
    """Master seed; per-chain streams are spawned from it."""

    max_toggle: int = 2
    """Largest number of indicators toggled by one proposal."""

    updates_per_iteration: int = 1
    """Indicator proposals per subject per iteration."""

    gibbs_interval: int = 10
    """Iterations between Gibbs refreshes of the probability parameters."""

    keep_draws: bool = False
    """Store every retained indicator draw (memory heavy)."""

    log_every: int = 5000
    """Iterations between per-chain progress log lines."""


@dataclass
class PriorConfig:
    """Prior hyperparameters."""

    concentration: float = 1.0
    """Uniform Dirichlet concentration per category (pseudocount)."""

    response_share_a: float = 1.0
    """Beta prior on the share of stimulated cells in responding categories."""

    response_share_b: float = 1.0

    response_rate_a: float = 1.0
    """Beta prior on the per-category response rate shared across subjects."""

    response_rate_b: float = 1.0

    one_sided: bool = True
    """Only count elevated stimulated proportions as responses."""

    calibrated: bool = True
    """Score responders against stimulated counts that repeat the unstimulated composition."""


@dataclass
class DiagnosticsConfig:
    """Convergence diagnostic thresholds."""

    chain_tolerance: float = 0.1
    """Largest tolerated disagreement between per-chain posterior means."""

    min_acceptance: float = 0.01
    """Acceptance rates below this are reported."""

    max_acceptance: float = 0.99
    """Acceptance rates above this are reported."""

    max_rhat: float = 1.1
    """Split R-hat above this is reported."""


@dataclass
class ParallelConfig:
    """Chain execution configuration."""

    backend: Literal["thread", "process", "serial"] = "thread"
    """Executor used to run chains."""

    max_workers: Optional[int] = None
    """Worker count (defaults to min(replications, cpu count))."""


@dataclass
class FilterConfig:
    """Category filter applied before sampling."""

    enabled: bool = False
    """Drop rarely observed categories from sampling."""

    min_count: int = 5
    """Minimum stimulated count for a subject to support a category."""

    min_subjects: int = 2
    """Minimum number of supporting subjects to keep a category."""


@dataclass
class Config:
    """
    Main pipeline configuration.

    Example:
        >>> config = Config(
        ...     iterations=2000,
        ...     replications=4,
        ...     seed=42,
        ... )
        >>> pipeline = CompassPipeline(config)
    """

    # Convenience shortcuts (when set, these override sub-config values)
    iterations: Optional[int] = None
    """Iterations per chain."""

    replications: Optional[int] = None
    """Number of independent chains."""

    burn_in_fraction: Optional[float] = None
    """Fraction of each chain discarded as burn-in."""

    thin: Optional[int] = None
    """Thinning interval."""

    seed: Optional[int] = None
    """Master random seed."""

    concentration: Optional[float] = None
    """Dirichlet prior concentration."""

    # Sub-configurations
    sampler: SamplerConfig = field(default_factory=SamplerConfig)
    prior: PriorConfig = field(default_factory=PriorConfig)
    diagnostics: DiagnosticsConfig = field(default_factory=DiagnosticsConfig)
    parallel: ParallelConfig = field(default_factory=ParallelConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)

    # Scoring
    scoring_policy: Literal["degree", "binomial"] = "degree"
    """Weighting used by the polyfunctionality score."""

    # Logging
    verbose: bool = False
    """Enable verbose logging."""

    log_file: Optional[Path] = None
    """Log file path."""

    def __post_init__(self):
        """Synchronize shortcut values with sub-configs."""
        if self.iterations is not None:
            self.sampler.iterations = self.iterations
        if self.replications is not None:
            self.sampler.replications = self.replications
        if self.burn_in_fraction is not None:
            self.sampler.burn_in_fraction = self.burn_in_fraction
        if self.thin is not None:
            self.sampler.thin = self.thin
        if self.seed is not None:
            self.sampler.seed = self.seed
        if self.concentration is not None:
            self.prior.concentration = self.concentration

        self.iterations = self.sampler.iterations
        self.replications = self.sampler.replications
        self.burn_in_fraction = self.sampler.burn_in_fraction
        self.thin = self.sampler.thin
        self.seed = self.sampler.seed
        self.concentration = self.prior.concentration

        if self.log_file is not None:
            self.log_file = Path(self.log_file)

    def validate(self) -> "Config":
        """Check all settings, raising ConfigurationError on the first problem."""
        s = self.sampler
        if not isinstance(s.iterations, int) or s.iterations < 1:
            raise ConfigurationError(f"iterations must be a positive integer, got {s.iterations!r}")
        if not isinstance(s.replications, int) or s.replications < 1:
            raise ConfigurationError(f"replications must be a positive integer, got {s.replications!r}")
        if not 0.0 <= s.burn_in_fraction < 1.0:
            raise ConfigurationError(f"burn_in_fraction must be in [0, 1), got {s.burn_in_fraction}")
        if not isinstance(s.thin, int) or s.thin < 1:
            raise ConfigurationError(f"thin must be a positive integer, got {s.thin!r}")
        if s.max_toggle < 1:
            raise ConfigurationError(f"max_toggle must be >= 1, got {s.max_toggle}")
        if s.updates_per_iteration < 1:
            raise ConfigurationError(
                f"updates_per_iteration must be >= 1, got {s.updates_per_iteration}"
            )
        if s.gibbs_interval < 1:
            raise ConfigurationError(f"gibbs_interval must be >= 1, got {s.gibbs_interval}")
        if isinstance(s.seed, bool) or not isinstance(s.seed, int) or s.seed < 0:
            raise ConfigurationError(f"seed must be a non-negative integer, got {s.seed!r}")

        p = self.prior
        for name in ("concentration", "response_share_a", "response_share_b",
                     "response_rate_a", "response_rate_b"):
            value = getattr(p, name)
            if not value > 0:
                raise ConfigurationError(f"prior {name} must be positive, got {value}")

        if self.parallel.backend not in ("thread", "process", "serial"):
            raise ConfigurationError(f"Unknown parallel backend: {self.parallel.backend}")
        if self.parallel.max_workers is not None and self.parallel.max_workers < 1:
            raise ConfigurationError(
                f"max_workers must be >= 1, got {self.parallel.max_workers}"
            )

        if self.filter.min_count < 0 or self.filter.min_subjects < 0:
            raise ConfigurationError("category filter thresholds must be non-negative")

        if self.scoring_policy not in ("degree", "binomial"):
            raise ConfigurationError(f"Unknown scoring policy: {self.scoring_policy}")
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        d = asdict(self)
        # Convert Path objects to strings
        for key, value in d.items():
            if isinstance(value, Path):
                d[key] = str(value)
        return d

    def to_json(self, path: Path | str) -> None:
        """Save configuration to JSON file."""
        path = Path(path)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    def with_overrides(self, **overrides) -> "Config":
        """Return a copy with top-level fields replaced (None values are ignored)."""
        d = self.to_dict()
        d.update({k: v for k, v in overrides.items() if v is not None})
        return Config.from_dict(d)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Config":
        """Create from dictionary."""
        d = dict(d)
        # Handle nested configs
        nested = {
            "sampler": SamplerConfig,
            "prior": PriorConfig,
            "diagnostics": DiagnosticsConfig,
            "parallel": ParallelConfig,
            "filter": FilterConfig,
        }
        for key, sub_cls in nested.items():
            if key in d and isinstance(d[key], dict):
                try:
                    d[key] = sub_cls(**d[key])
                except TypeError as e:
                    raise ConfigurationError(f"Invalid '{key}' section: {e}") from e
        try:
            return cls(**d)
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    @classmethod
    def from_json(cls, path: Path | str) -> "Config":
        """Load configuration from JSON file."""
        path = Path(path)
        with open(path) as f:
            d = json.load(f)
        return cls.from_dict(d)

    @classmethod
    def from_yaml(cls, path: Path | str) -> "Config":
        """Load configuration from a YAML file (an optional top-level ``config`` key is unwrapped)."""
        path = Path(path)
        with open(path) as f:
            d = yaml.safe_load(f) or {}
        if "config" in d and isinstance(d["config"], dict):
            d = d["config"]
        return cls.from_dict(d)

    @classmethod
    def from_env(cls) -> "Config":
        """Create configuration from environment variables."""
        return cls(
            iterations=int(os.getenv("COMPASS_ITERATIONS", "40000")),
            replications=int(os.getenv("COMPASS_REPLICATIONS", "8")),
            burn_in_fraction=float(os.getenv("COMPASS_BURN_IN", "0.5")),
            thin=int(os.getenv("COMPASS_THIN", "1")),
            seed=int(os.getenv("COMPASS_SEED", "0")),
            verbose=os.getenv("COMPASS_VERBOSE", "").lower() in ("1", "true", "yes"),
        )

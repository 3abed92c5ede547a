"""
Balancer configuration.
"""

from dataclasses import dataclass, fields

from tabletbalancer.errors import ConfigurationError
from tabletbalancer.utils.config import Config


@dataclass
class BalancerOptions:
    """
    Configuration for the balancer, fixed for the lifetime of a balancer.

    Attributes:
        max_concurrent_adds: Ceiling on outstanding replica adds cluster-wide
        max_concurrent_removals: Ceiling on outstanding replica removals
        max_concurrent_leader_moves: Ceiling on leader-balancing stepdowns per run
        allow_limit_starting_tablets: Starting tablets receive no adds
        allow_limit_over_replicated_tablets: Over-replicated tablets are not
            used for load or leader balancing
        max_over_replicated_tablets: Load moves stop at this many
            over-replicated tablets (when limiting is on)
        placement_before_replication: Placement violations outrank
            under-replication
        balance_replica_load: Move replicas between servers of a table
        min_load_variance: Replica count gap that triggers a load move
        balance_leader_load: Move leaders to even out leader counts
        min_leader_variance: Leader count gap that triggers a leader move
        interval_ms: Period of the background run loop
    """
    max_concurrent_adds: int = 1
    max_concurrent_removals: int = 1
    max_concurrent_leader_moves: int = 2
    allow_limit_starting_tablets: bool = True
    allow_limit_over_replicated_tablets: bool = True
    max_over_replicated_tablets: int = 1
    placement_before_replication: bool = True
    balance_replica_load: bool = False
    min_load_variance: int = 2
    balance_leader_load: bool = False
    min_leader_variance: int = 2
    interval_ms: int = 1000

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ConfigurationError for out-of-range values."""
        for name in (
            "max_concurrent_adds",
            "max_concurrent_removals",
            "max_concurrent_leader_moves",
            "max_over_replicated_tablets",
        ):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be non-negative")

        if self.min_load_variance < 1 or self.min_leader_variance < 1:
            raise ConfigurationError("variance thresholds must be at least 1")

        if self.interval_ms <= 0:
            raise ConfigurationError("interval_ms must be positive")

    @classmethod
    def from_config(cls, config: Config) -> "BalancerOptions":
        """
        Build options from the "balancer" section of a Config.

        Args:
            config: Loaded configuration

        Returns:
            Balancer options; missing keys keep their defaults
        """
        section = config.get("balancer", {}) or {}
        known = {f.name for f in fields(cls)}
        unknown = set(section) - known

        if unknown:
            raise ConfigurationError(f"unknown balancer options: {sorted(unknown)}")

        return cls(**section)

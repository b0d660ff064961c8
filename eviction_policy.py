"""
Eviction policy resolution.

A VMI's effective eviction strategy is its own spec.evictionStrategy if set,
otherwise the cluster-wide default, otherwise UNSET.
"""

import logging
from typing import Optional

from errors import ClusterConfigError
from stores import ClusterConfigProvider
from vmi import EvictionStrategy, VirtualMachineInstance

logger = logging.getLogger(__name__)


class EvictionPolicyResolver:
    """Computes the effective EvictionStrategy of a VMI. Holds no mutable state."""

    def __init__(self, config_provider: ClusterConfigProvider):
        self.config_provider = config_provider

    def resolve(self, vmi: VirtualMachineInstance) -> EvictionStrategy:
        """
        Resolve the eviction strategy for a VMI.

        Raises:
            ValueError: the VMI or cluster setting is not a known strategy
            ClusterConfigError: the cluster configuration could not be read
        """
        if vmi.eviction_strategy:
            return EvictionStrategy.parse(vmi.eviction_strategy)

        try:
            default: Optional[str] = self.config_provider.get_eviction_strategy()
        except Exception as e:
            raise ClusterConfigError("reading the cluster eviction strategy") from e

        strategy = EvictionStrategy.parse(default)
        logger.debug(f"VMI {vmi.namespace}/{vmi.name} has no eviction strategy, cluster default is {strategy.name}")
        return strategy

"""
Routing and aggregation over registered providers.
"""

from chainfeed.aggregator.conflicts import Contribution, resolve_field
from chainfeed.aggregator.router import FieldRouter
from chainfeed.aggregator.engine import DataAggregator

__all__ = [
    "Contribution",
    "resolve_field",
    "FieldRouter",
    "DataAggregator",
]

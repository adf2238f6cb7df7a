"""
otcx market layer: order classification and market aggregation.
"""

from otcx.market.aggregator import GlobalStats, MarketSnapshot, aggregate, aggregate_global
from otcx.market.classifier import Actions, Classification, classify

__all__ = [
    "Actions",
    "Classification",
    "classify",
    "MarketSnapshot",
    "GlobalStats",
    "aggregate",
    "aggregate_global",
]

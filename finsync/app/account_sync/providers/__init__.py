"""
Account Data Provider Implementations

Abstract adapter contract plus the aggregator API and website scraping
implementations.
"""

from .base import ProviderAdapter, ProgressEvent, NormalizedAccount, NormalizedTransaction, FetchResult
from .token import TokenAdapter
from .browser import BrowserAdapter

__all__ = [
    'ProviderAdapter', 'ProgressEvent', 'NormalizedAccount', 'NormalizedTransaction',
    'FetchResult', 'TokenAdapter', 'BrowserAdapter'
]

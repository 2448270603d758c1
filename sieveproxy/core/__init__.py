"""
SieveProxy Core Module
"""

from sieveproxy.core.blocklist import BlockedHostSet, load_blocklist
from sieveproxy.core.cache import CachedEntry, ResponseCache
from sieveproxy.core.pipeline import DispatchState, HttpDispatcher, ProxyRequest
from sieveproxy.core.tunnel import TunnelRelay, TunnelSession

__all__ = [
    "BlockedHostSet",
    "load_blocklist",
    "CachedEntry",
    "ResponseCache",
    "DispatchState",
    "HttpDispatcher",
    "ProxyRequest",
    "TunnelRelay",
    "TunnelSession",
]

"""
SieveProxy: Filtering, Caching Forward Proxy
============================================

  • Blocklist – reject requests whose host contains a blocked substring
  • Cache     – replay repeated HTTP responses from a time-limited store
  • Tunnel    – opaque CONNECT byte relay for encrypted traffic
"""

__version__ = "1.0.0"
__app_name__ = "SieveProxy"

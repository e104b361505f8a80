"""
Gateway application package.

The gateway fronts client requests, enforcing:
- Routing: `/rpc/{backend}` and `/indexer` to their upstream providers
- Rate limiting: in-memory token bucket per client IP
- Forex: cached snapshot refreshed in the background
- TLS: ACME-managed certificates when HTTPS is enabled
"""

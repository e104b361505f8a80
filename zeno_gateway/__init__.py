"""
Zeno edge gateway.

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.routing: backend route table and streaming reverse proxy.
- app.ratelimit: per-client token bucket and request adapter.
- app.forex: quote client and background-refreshed snapshot.
- app.certs: ACME issuance, certificate cache and renewal.
- app.domain: request instrumentation.
- server: uvicorn listeners (plaintext and HTTPS).
"""

"""
Gateway service package for the Billing Gateway.

The gateway fronts tenant requests for the billing API, enforcing
per-tenant and per-IP quotas before any handler runs.

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.ratelimit: Counter stores, policy registry, admission gate and
  the HTTP middleware that decorates responses.
"""

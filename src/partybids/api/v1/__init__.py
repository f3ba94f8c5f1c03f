"""API v1 routers."""

from partybids.api.v1 import aggregates, bids, maintenance

__all__ = ["aggregates", "bids", "maintenance"]

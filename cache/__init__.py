"""
cache — persisted per-account response cache.

Provides:
  • TTL-bounded upserts keyed by (account_id, cache_key)
  • lazy expiry on read plus a bulk sweep for an external scheduler
  • strict (miss → fetch) and stale-while-revalidate read strategies
"""

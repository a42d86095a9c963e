"""
Key set retrieval and caching.

Keys are fetched from ``{authority}/.well-known/jwks.json`` with a bounded
timeout and cached per authority for a fixed TTL. Fetch failures are never
treated as an empty key set.
"""

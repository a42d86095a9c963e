"""
Token verification for inbound requests.

- app.jwks: key set fetching and the shared, single-flight key set cache.
- app.validation: bearer token verification producing an AuthContext.
- app.interceptors: pipeline interceptors for bearer tokens and the admin key.
- app.identity: maps a verified subject to a local user record.

Importing this package performs no network calls; HTTP clients are created by
constructors and closed explicitly.
"""

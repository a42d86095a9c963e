"""
Bearer token validation.

Resolves the authority for a token from its issuer (or a configured frontend
authority), looks the signing key up by key id and verifies signature and
temporal claims. Verification is all-or-nothing.
"""

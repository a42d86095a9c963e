"""
Key set data types.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict


class JsonWebKey(BaseModel):
    """One public signing key as published at ``/.well-known/jwks.json``."""

    model_config = ConfigDict(extra="allow", frozen=True)

    kty: str
    kid: str
    alg: Optional[str] = None
    use: Optional[str] = None
    n: Optional[str] = None
    e: Optional[str] = None

    def as_jwk(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class JWKSDocument(BaseModel):
    model_config = ConfigDict(extra="allow")

    keys: List[JsonWebKey]


@dataclass(frozen=True)
class KeySet:
    """Keys fetched from one authority. Replaced wholesale, never edited."""

    authority_url: str
    keys: Tuple[JsonWebKey, ...]

    def find(self, kid: str) -> Optional[JsonWebKey]:
        for key in self.keys:
            if key.kid == kid:
                return key
        return None

    @property
    def kids(self) -> List[str]:
        return [key.kid for key in self.keys]


@dataclass(frozen=True)
class CacheEntry:
    key_set: KeySet
    expires_at: float

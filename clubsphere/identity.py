import json
import logging
import time

import httpx
import jwt
import redis
from jwt.algorithms import RSAAlgorithm

from .services.exceptions import Unauthorized, UpstreamFailure

logger = logging.getLogger(__name__)

JWKS_URL = "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com"

KEYS_CACHE_KEY = "clubsphere:firebase_jwks"


class FirebaseVerifier:
    """Verify Firebase ID tokens and return the principal's email.

    Google's signing keys are cached in Redis when a client is supplied and
    in process memory otherwise.
    """

    def __init__(
        self,
        project_id: str,
        *,
        cache: "redis.Redis | None" = None,
        cache_ttl: int = 3600,
        http_client: httpx.Client | None = None,
        jwks_url: str = JWKS_URL,
    ):
        self.project_id = project_id
        self.issuer = f"https://securetoken.google.com/{project_id}"
        self._cache = cache
        self._cache_ttl = cache_ttl
        self._http = http_client or httpx.Client(timeout=5)
        self._jwks_url = jwks_url
        self._local = {"keys": None, "fetched_at": 0.0}

    def _cached_keys(self) -> list[dict] | None:
        if self._cache is not None:
            try:
                data = self._cache.get(KEYS_CACHE_KEY)
                if data:
                    return json.loads(data)
            except redis.RedisError as exc:
                logger.warning("Redis unavailable for key cache: %s", exc)
        if self._local["keys"] and time.time() - self._local["fetched_at"] < self._cache_ttl:
            return self._local["keys"]
        return None

    def _store_keys(self, keys: list[dict]) -> None:
        self._local = {"keys": keys, "fetched_at": time.time()}
        if self._cache is not None:
            try:
                self._cache.setex(KEYS_CACHE_KEY, self._cache_ttl, json.dumps(keys))
            except redis.RedisError as exc:
                logger.warning("Redis unavailable for key cache: %s", exc)

    def _fetch_keys(self, refresh: bool = False) -> list[dict]:
        if not refresh:
            keys = self._cached_keys()
            if keys:
                return keys
        try:
            resp = self._http.get(self._jwks_url)
            resp.raise_for_status()
            keys = resp.json()["keys"]
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            logger.error("Could not fetch token signing keys from %s: %s", self._jwks_url, exc)
            raise UpstreamFailure("Identity provider unavailable, please retry")
        self._store_keys(keys)
        return keys

    def _public_key(self, kid: str | None):
        for refresh in (False, True):
            keys = self._fetch_keys(refresh=refresh)
            jwk = next((k for k in keys if k.get("kid") == kid), None)
            if jwk:
                return RSAAlgorithm.from_jwk(json.dumps(jwk))
        raise Unauthorized("Unauthorized access: Invalid token")

    def verify(self, token: str) -> str:
        """Return the verified email for ``token`` or raise ``Unauthorized``."""
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError:
            raise Unauthorized("Unauthorized access: Invalid token")
        key = self._public_key(header.get("kid"))
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=["RS256"],
                audience=self.project_id,
                issuer=self.issuer,
            )
        except jwt.PyJWTError as exc:
            logger.info("Token verification failed: %s", exc)
            raise Unauthorized("Unauthorized access: Invalid token")
        email = claims.get("email")
        if not email:
            raise Unauthorized("Unauthorized access: Token has no email")
        return email

    def close(self) -> None:
        self._http.close()

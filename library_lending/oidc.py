"""Federated login against an OpenID Connect provider.

Only the pieces the service needs are implemented: provider discovery,
the authorization redirect, the authorization-code exchange and the
refresh-token grant.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import requests
from jose import JWTError, jwt

from library_lending import config
from library_lending.exceptions import FederatedAuthError

logger = logging.getLogger(__name__)


@dataclass
class TokenSet:
    """Tokens and identity claims returned by the token endpoint."""

    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime
    claims: Dict[str, Any] = field(default_factory=dict)
    id_token: Optional[str] = None


class OIDCClient:
    """Thin OpenID Connect relying-party client built on requests."""

    def __init__(
        self,
        issuer_url: str,
        client_id: str,
        client_secret: Optional[str] = None,
        timeout: int = config.OIDC_HTTP_TIMEOUT_SECONDS,
    ):
        self.issuer_url = issuer_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._metadata: Optional[Dict[str, Any]] = None
        self._metadata_fetched_at = 0.0

    def discover(self) -> Dict[str, Any]:
        """Fetch provider metadata, cached for OIDC_DISCOVERY_TTL_SECONDS."""
        now = time.monotonic()
        if self._metadata is not None and now - self._metadata_fetched_at < config.OIDC_DISCOVERY_TTL_SECONDS:
            return self._metadata

        url = f"{self.issuer_url}/.well-known/openid-configuration"
        try:
            response = requests.get(url, timeout=self.timeout)
            response.raise_for_status()
            metadata = response.json()
        except (requests.RequestException, ValueError) as e:
            raise FederatedAuthError(f"OIDC discovery failed: {e}") from e

        self._metadata = metadata
        self._metadata_fetched_at = now
        return metadata

    def authorization_url(self, redirect_uri: str, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": config.OIDC_SCOPE,
            "state": state,
            "prompt": "login consent",
        }
        return f"{self.discover()['authorization_endpoint']}?{urlencode(params)}"

    def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        return self._token_request(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri}
        )

    def refresh(self, refresh_token: str) -> TokenSet:
        token_set = self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )
        # Providers may omit a rotated refresh token
        if token_set.refresh_token is None:
            token_set.refresh_token = refresh_token
        return token_set

    def _token_request(self, data: Dict[str, str]) -> TokenSet:
        payload = dict(data, client_id=self.client_id)
        if self.client_secret:
            payload["client_secret"] = self.client_secret
        try:
            response = requests.post(
                self.discover()["token_endpoint"], data=payload, timeout=self.timeout
            )
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Token request (%s) failed: %s", data["grant_type"], e)
            raise FederatedAuthError("Identity provider rejected the token request") from e
        return self._parse_token_response(body)

    @staticmethod
    def _parse_token_response(body: Dict[str, Any]) -> TokenSet:
        access_token = body.get("access_token")
        if not access_token:
            raise FederatedAuthError("Token response has no access_token")

        claims: Dict[str, Any] = {}
        id_token = body.get("id_token")
        if id_token:
            # Received directly from the token endpoint over TLS
            try:
                claims = jwt.get_unverified_claims(id_token)
            except JWTError as e:
                raise FederatedAuthError("Malformed id_token") from e

        if "exp" in claims:
            expires_at = datetime.fromtimestamp(int(claims["exp"]))
        else:
            expires_at = datetime.now() + timedelta(seconds=int(body.get("expires_in", 3600)))

        return TokenSet(
            access_token=access_token,
            refresh_token=body.get("refresh_token"),
            expires_at=expires_at,
            claims=claims,
            id_token=id_token,
        )


_client: Optional[OIDCClient] = None


def get_oidc_client() -> Optional[OIDCClient]:
    """Return the process-wide client, or None when federated login is off."""
    global _client
    if not config.oidc_enabled():
        return None
    if _client is None:
        _client = OIDCClient(
            config.OIDC_ISSUER_URL, config.OIDC_CLIENT_ID, config.OIDC_CLIENT_SECRET
        )
    return _client

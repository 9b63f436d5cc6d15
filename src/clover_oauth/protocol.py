"""
Token exchange protocol for Clover OAuth.

Clover answers token requests on two endpoint generations depending on the
environment: a versioned JSON API (``/oauth/v2/token``, ``/oauth/v2/refresh``)
and the legacy form-encoded ``/oauth/token``. Each generation is a tier; the
protocol walks the tiers in order until one returns a usable token and
normalizes whatever came back into a CredentialRecord.
"""

import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from log_utils import LogEvent, LogRecord, debug, error, info

from .config import AuthorizeUrlVariant, CloverConfig
from .credentials import ACCESS_TOKEN_DEFAULT_TTL, REFRESH_TOKEN_DEFAULT_TTL, CredentialRecord
from .errors import ExchangeError, RefreshError

Clock = Callable[[], float]


def build_authorize_url(base_url: str, client_id: str, redirect_uri: str, state: str,
                        variant: AuthorizeUrlVariant = AuthorizeUrlVariant.LEGACY) -> str:
    """Build the URL the merchant opens to authorize the app."""
    if variant == AuthorizeUrlVariant.VERSIONED:
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "state": state,
        }
        return f"{base_url}/oauth/v2/authorize?{urlencode(params)}"

    params = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "state": state,
    }
    return f"{base_url}/oauth/authorize?{urlencode(params)}"


def redact_tokens(text: str) -> str:
    """Strip token values out of a response body before it is logged."""
    text = re.sub(r'"(access_token|refresh_token)"\s*:\s*"[^"]*"', r'"\1":"[REDACTED]"', text)
    text = re.sub(r'(access_token|refresh_token)=[^&\s]*', r'\1=[REDACTED]', text)
    return text[:500]


class VersionedTokenResponse(BaseModel):
    """Body returned by /oauth/v2/token and /oauth/v2/refresh"""
    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    refresh_token: Optional[str] = None
    merchant_id: Optional[str] = None
    access_token_expiry: Optional[float] = None  # unix timestamp
    refresh_token_expiry: Optional[float] = None  # unix timestamp


class LegacyTokenResponse(BaseModel):
    """Body returned by /oauth/token"""
    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    refresh_token: Optional[str] = None
    merchant_id: Optional[str] = None
    expires_in: Optional[float] = None  # seconds from now


class TierError(Exception):
    """A single tier could not produce a token."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class TierFailure:
    tier: str
    status_code: Optional[int]
    message: str

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.tier}: HTTP {self.status_code} {self.message}"
        return f"{self.tier}: {self.message}"


@dataclass
class ProtocolOutcome:
    """Result of walking the tiers: a record, or every failure in order."""
    record: Optional[CredentialRecord] = None
    tier: Optional[str] = None
    failures: List[TierFailure] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.record is not None


def _timestamp(value: Optional[float]) -> Optional[int]:
    if value is None or value != value or value <= 0:  # missing, NaN or nonsense
        return None
    return int(value)


def _upstream_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        for key in ("message", "error_description", "error"):
            if isinstance(body.get(key), str) and body[key]:
                return body[key]
    return response.text[:200]


class TokenTier:
    """One generation of the token endpoints."""

    name = "tier"

    async def exchange_code(self, client: httpx.AsyncClient, config: CloverConfig,
                            code: str, now: int) -> CredentialRecord:
        raise NotImplementedError

    async def refresh(self, client: httpx.AsyncClient, config: CloverConfig, refresh_token: str,
                      previous: Optional[CredentialRecord], now: int) -> CredentialRecord:
        raise NotImplementedError

    async def _post(self, client: httpx.AsyncClient, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await client.post(path, headers={"Accept": "application/json"}, **kwargs)
        except httpx.HTTPError as e:
            raise TierError(f"Network/Connection error: {e}") from e

        debug(LogRecord(
            event=LogEvent.TOKEN_RESPONSE.value,
            message=f"{self.name} {path} -> {response.status_code}: {redact_tokens(response.text)}",
            data={"tier": self.name, "status_code": response.status_code}
        ))

        if not response.is_success:
            raise TierError(_upstream_message(response), status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError as e:
            raise TierError("Malformed token response: body is not JSON",
                            status_code=response.status_code) from e
        if not isinstance(payload, dict):
            raise TierError("Malformed token response: expected a JSON object",
                            status_code=response.status_code)
        return payload

    @staticmethod
    def _finish(access_token: str, refresh_token: Optional[str], merchant_id: Optional[str],
                access_expiry: Optional[int], refresh_expiry: Optional[int],
                previous: Optional[CredentialRecord], now: int) -> CredentialRecord:
        """Apply expiry defaults and back-fill anything the provider left out."""
        if access_expiry is None:
            access_expiry = now + ACCESS_TOKEN_DEFAULT_TTL
        if refresh_expiry is None:
            if previous is not None and previous.refresh_token_expiry:
                refresh_expiry = previous.refresh_token_expiry
            else:
                refresh_expiry = now + REFRESH_TOKEN_DEFAULT_TTL

        return CredentialRecord(
            access_token=access_token,
            refresh_token=refresh_token or (previous.refresh_token if previous else ""),
            merchant_id=merchant_id or (previous.merchant_id if previous else ""),
            access_token_expiry=access_expiry,
            refresh_token_expiry=refresh_expiry,
        )


class VersionedJsonTier(TokenTier):
    """/oauth/v2 endpoints: JSON in, JSON out, absolute expiries."""

    name = "v2"

    def _parse(self, payload: Dict[str, Any], previous: Optional[CredentialRecord],
               now: int) -> CredentialRecord:
        try:
            data = VersionedTokenResponse.model_validate(payload)
        except ValidationError as e:
            raise TierError(f"Malformed token response: {e.error_count()} validation errors") from e
        return self._finish(
            data.access_token, data.refresh_token, data.merchant_id,
            _timestamp(data.access_token_expiry), _timestamp(data.refresh_token_expiry),
            previous, now,
        )

    async def exchange_code(self, client, config, code, now):
        payload = await self._post(client, "/oauth/v2/token", json={
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "code": code,
        })
        return self._parse(payload, None, now)

    async def refresh(self, client, config, refresh_token, previous, now):
        payload = await self._post(client, "/oauth/v2/refresh", json={
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "refresh_token": refresh_token,
        })
        return self._parse(payload, previous, now)


class LegacyFormTier(TokenTier):
    """/oauth/token: form-encoded in, relative ``expires_in`` out."""

    name = "v1"

    def _parse(self, payload: Dict[str, Any], previous: Optional[CredentialRecord],
               now: int) -> CredentialRecord:
        try:
            data = LegacyTokenResponse.model_validate(payload)
        except ValidationError as e:
            raise TierError(f"Malformed token response: {e.error_count()} validation errors") from e
        expires_in = _timestamp(data.expires_in) or ACCESS_TOKEN_DEFAULT_TTL
        return self._finish(
            data.access_token, data.refresh_token, data.merchant_id,
            now + expires_in, None, previous, now,
        )

    async def exchange_code(self, client, config, code, now):
        payload = await self._post(client, "/oauth/token", data={
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "code": code,
        })
        return self._parse(payload, None, now)

    async def refresh(self, client, config, refresh_token, previous, now):
        payload = await self._post(client, "/oauth/token", data={
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "refresh_token": refresh_token,
        })
        return self._parse(payload, previous, now)


class TokenExchangeProtocol:
    """Exchanges codes and refresh tokens, newest tier first."""

    def __init__(self, config: CloverConfig, tiers: Optional[List[TokenTier]] = None,
                 clock: Clock = time.time, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.tiers = tiers if tiers is not None else [VersionedJsonTier(), LegacyFormTier()]
        self.clock = clock
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        client_kwargs: Dict[str, Any] = {
            "base_url": self.config.base_url,
            "timeout": self.config.http_timeout,
        }
        if self.config.proxy:
            client_kwargs["proxy"] = self.config.proxy
        if self._transport is not None:
            client_kwargs["transport"] = self._transport
        return httpx.AsyncClient(**client_kwargs)

    async def _negotiate(
        self,
        operation: str,
        attempt: Callable[[TokenTier, httpx.AsyncClient], Awaitable[CredentialRecord]],
    ) -> ProtocolOutcome:
        outcome = ProtocolOutcome()
        async with self._client() as client:
            for tier in self.tiers:
                debug(LogRecord(
                    event=LogEvent.TIER_ATTEMPT.value,
                    message=f"Attempting {operation} using {tier.name} endpoint",
                    data={"tier": tier.name}
                ))
                try:
                    record = await attempt(tier, client)
                except TierError as e:
                    failure = TierFailure(tier.name, e.status_code, e.message)
                    outcome.failures.append(failure)
                    debug(LogRecord(
                        event=LogEvent.TIER_FAILED.value,
                        message=f"OAuth {tier.name} {operation} failed: {failure}",
                        data={"tier": tier.name, "status_code": e.status_code}
                    ))
                    continue

                outcome.record = record
                outcome.tier = tier.name
                debug(LogRecord(
                    event=LogEvent.TIER_SUCCEEDED.value,
                    message=f"Successfully used OAuth {tier.name} endpoint for {operation}",
                    data={"tier": tier.name}
                ))
                break
        return outcome

    async def exchange_code(self, code: str) -> CredentialRecord:
        """Exchange an authorization code for a credential record."""
        now = int(self.clock())
        outcome = await self._negotiate(
            "code exchange",
            lambda tier, client: tier.exchange_code(client, self.config, code, now),
        )
        if not outcome.succeeded:
            exc = ExchangeError(outcome.failures)
            error(LogRecord(
                event=LogEvent.EXCHANGE_FAILED.value,
                message=exc.message,
                data={"status_code": exc.status_code}
            ))
            raise exc
        return outcome.record

    async def refresh(self, refresh_token: str,
                      previous: Optional[CredentialRecord] = None) -> CredentialRecord:
        """Trade a refresh token for a new record, keeping fields the provider omits."""
        now = int(self.clock())
        outcome = await self._negotiate(
            "token refresh",
            lambda tier, client: tier.refresh(client, self.config, refresh_token, previous, now),
        )
        if not outcome.succeeded:
            exc = RefreshError(
                outcome.failures,
                message="OAuth refresh error: Token expired or invalid. Please reauthenticate.",
            )
            error(LogRecord(
                event=LogEvent.REFRESH_FAILED.value,
                message=f"{exc.message} ({'; '.join(str(f) for f in outcome.failures)})",
                data={"status_code": exc.status_code}
            ))
            raise exc

        info(LogRecord(
            event=LogEvent.TOKEN_REFRESHED.value,
            message=f"Successfully refreshed token with {outcome.tier} endpoint",
            data={"tier": outcome.tier, "access_token_expiry": outcome.record.access_token_expiry}
        ))
        return outcome.record

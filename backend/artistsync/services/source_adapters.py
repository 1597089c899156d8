from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from artistsync.models.sync_job import ErrorKind, Source


# -------------------------
# Contract
# -------------------------

class SourceAdapter(Protocol):
    async def fetch(self, source: Source, source_id: str) -> str:
        """Return the provider's raw JSON payload for one artist."""
        ...


# -------------------------
# Errors
# -------------------------

class SourceAdapterError(Exception):
    kind: ErrorKind = ErrorKind.ADAPTER_UNAVAILABLE

    def __init__(self, message: str, retry_after_seconds: int | None = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class AdapterUnavailableError(SourceAdapterError):
    kind = ErrorKind.ADAPTER_UNAVAILABLE


class RateLimitedError(SourceAdapterError):
    """Raised when the provider asks the client to slow down.

    retry_after_seconds (if the provider sent one) is a lower bound for the
    next attempt.
    """

    kind = ErrorKind.RATE_LIMITED


class NotFoundUpstreamError(SourceAdapterError):
    kind = ErrorKind.NOT_FOUND_UPSTREAM


# -------------------------
# HTTP adapter
# -------------------------

# Last.fm reports failures inside a 200 JSON body.
_LASTFM_NOT_FOUND = 6
_LASTFM_RATE_LIMITED = 29

_USER_AGENT = "ArtistSync Engine"


@dataclass
class ProviderEndpoint:
    url_template: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)
    id_param: str | None = None

    def build(self, source_id: str) -> tuple[str, dict[str, str]]:
        params = dict(self.params)
        if self.id_param:
            params[self.id_param] = source_id
        return self.url_template.format(source_id=source_id), params


def _extract_retry_after_seconds(resp: httpx.Response) -> int | None:
    """
    Providers send either a Retry-After header or a message such as
      "Please wait for 106 seconds before retrying"

    Extracts the 106.
    """
    header = resp.headers.get("retry-after")
    if header and header.strip().isdigit():
        return int(header.strip())

    m = re.search(r"wait for\s+(\d+)\s+seconds", resp.text or "", flags=re.IGNORECASE)
    if m:
        return int(m.group(1))

    return None


def _check_lastfm_body(body: str) -> None:
    try:
        payload = json.loads(body)
    except ValueError:
        return
    if not isinstance(payload, dict) or "error" not in payload:
        return

    code = payload.get("error")
    message = str(payload.get("message") or "Last.fm request failed")
    if code == _LASTFM_NOT_FOUND:
        raise NotFoundUpstreamError(f"Last.fm: {message}")
    if code == _LASTFM_RATE_LIMITED:
        raise RateLimitedError(f"Last.fm: {message}")
    raise AdapterUnavailableError(f"Last.fm error {code}: {message}")


class HttpSourceAdapter:
    """Fetches artist payloads from the provider HTTP APIs with httpx."""

    def __init__(
        self,
        endpoints: dict[Source, ProviderEndpoint],
        *,
        timeout_seconds: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoints = endpoints
        self._timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    @classmethod
    def from_settings(cls, settings, transport: httpx.AsyncBaseTransport | None = None) -> "HttpSourceAdapter":
        endpoints: dict[Source, ProviderEndpoint] = {}
        if settings.spotify_token:
            endpoints[Source.SPOTIFY] = ProviderEndpoint(
                url_template="https://api.spotify.com/v1/artists/{source_id}",
                headers={"Authorization": f"Bearer {settings.spotify_token}"},
            )
        if settings.genius_token:
            endpoints[Source.GENIUS] = ProviderEndpoint(
                url_template="https://api.genius.com/artists/{source_id}",
                headers={"Authorization": f"Bearer {settings.genius_token}"},
            )
        if settings.lastfm_api_key:
            endpoints[Source.LASTFM] = ProviderEndpoint(
                url_template="https://ws.audioscrobbler.com/2.0/",
                params={"method": "artist.getinfo", "api_key": settings.lastfm_api_key, "format": "json"},
                id_param="mbid",
            )
        return cls(endpoints, timeout_seconds=settings.http_timeout_seconds, transport=transport)

    async def fetch(self, source: Source, source_id: str) -> str:
        endpoint = self._endpoints.get(source)
        if endpoint is None:
            raise AdapterUnavailableError(f"No credentials configured for source '{source.value}'.")

        url, params = endpoint.build(source_id)
        headers = {"User-Agent": _USER_AGENT, "Accept": "application/json", **endpoint.headers}

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                resp = await client.get(url, params=params, headers=headers)
        except httpx.RequestError as exc:
            raise AdapterUnavailableError(f"Unable to reach {source.value}: {exc.__class__.__name__}") from exc

        snippet = (resp.text or "")[:300]

        if resp.status_code == 404:
            raise NotFoundUpstreamError(f"{source.value} has no artist '{source_id}'.")

        # 417 is how some providers signal a cooldown
        if resp.status_code in {417, 429}:
            wait_s = _extract_retry_after_seconds(resp)
            if wait_s:
                raise RateLimitedError(
                    f"{source.value} rate-limited. Retry after {wait_s} seconds.",
                    retry_after_seconds=wait_s,
                )
            raise RateLimitedError(f"{source.value} rate-limited ({resp.status_code}).")

        if resp.status_code in {401, 403}:
            raise AdapterUnavailableError(f"{source.value} credentials are invalid or access is denied.")

        if resp.status_code >= 400:
            raise AdapterUnavailableError(
                f"{source.value} request failed with status {resp.status_code}. snippet={snippet!r}"
            )

        body = resp.text or ""
        if source == Source.LASTFM:
            _check_lastfm_body(body)
        return body

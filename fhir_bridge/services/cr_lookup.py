"""
Client Registry (CR) identity resolution, offline-first.

Strategy:
  1. If a bearer token is configured, ask the registry
     (GET {base}/v1/patient-search?identification_number={id}) and take
     entry[0].resource.id from the returned Bundle. The whole exchange,
     from connect to the last body byte, must finish inside the lookup
     deadline (at most 5 s).
  2. On any failure (no token, bad base URL, network error, deadline,
     non-2xx, bad body) derive a deterministic synthetic id from the
     national id instead.

Synthetic ids look like ``CR-SYNTH-<18 hex>`` so they can be found and
replaced once the facility is back online. Live ids are ``CR-<registry id>``
and are never allowed to take the synthetic shape.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any

import httpx
import jsonschema

from fhir_bridge.errors import LookupUnavailable
from fhir_bridge.schemas.fhir import CR_SEARCH_BUNDLE_SCHEMA

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://uat.dha.go.ke"
SEARCH_PATH = "/v1/patient-search"
FHIR_JSON = "application/fhir+json"
MAX_LOOKUP_SECONDS = 5.0

LIVE_PREFIX = "CR-"
SYNTHETIC_PREFIX = "CR-SYNTH-"

# Private namespace for CR-id derivation; the "cr:" salt keeps these ids
# distinct from patient UUIDs derived from the same namespace.
CR_NAMESPACE = uuid.UUID("6ba7b810-9dad-11d1-80b4-00c04fd430c9")
CR_SEED_SALT = "cr:"
SYNTHETIC_HEX_LENGTH = 18

_search_bundle_validator = jsonschema.Draft7Validator(CR_SEARCH_BUNDLE_SCHEMA)


@dataclass(frozen=True)
class CrLookupResult:
    identifier: str
    provenance: bool  # True = live registry, False = synthetic fallback


@dataclass(frozen=True)
class CrLookupConfig:
    token: str | None = None
    base_url: str = DEFAULT_BASE_URL
    timeout: float = MAX_LOOKUP_SECONDS

    def __post_init__(self):
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        # Hard ceiling regardless of what the environment asks for
        object.__setattr__(self, "timeout", min(float(self.timeout), MAX_LOOKUP_SECONDS))

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    @classmethod
    def from_settings(cls, settings: Any) -> CrLookupConfig:
        return cls(
            token=settings.AFYALINK_TOKEN or None,
            base_url=settings.AFYALINK_BASE_URL or DEFAULT_BASE_URL,
            timeout=settings.CR_LOOKUP_TIMEOUT_SECONDS,
        )


def synthetic_cr_id(national_id: str) -> str:
    """Derive the stable offline CR id for a national id (UUID v5)."""
    digest = uuid.uuid5(CR_NAMESPACE, f"{CR_SEED_SALT}{national_id}").hex
    return f"{SYNTHETIC_PREFIX}{digest[:SYNTHETIC_HEX_LENGTH]}"


def is_synthetic(identifier: str) -> bool:
    return identifier.startswith(SYNTHETIC_PREFIX)


def search_bundle_problems(body: Any) -> list[str]:
    """Every way ``body`` falls short of a usable patient-search Bundle."""
    return [error.message for error in _search_bundle_validator.iter_errors(body)]


def extract_cr_id(body: Any) -> str:
    """
    Pull the CR id out of a patient-search Bundle.
    Raises LookupUnavailable if the document does not have the expected shape.
    """
    problems = search_bundle_problems(body)
    if problems:
        raise LookupUnavailable(f"Unexpected patient-search response: {problems[0]}")

    raw_id = body["entry"][0]["resource"]["id"]
    cr_id = raw_id if raw_id.startswith(LIVE_PREFIX) else f"{LIVE_PREFIX}{raw_id}"
    if is_synthetic(cr_id):
        raise LookupUnavailable("Registry returned an id in the synthetic format")
    return cr_id


class IdentityResolver:
    """
    Resolves CR identifiers for national ids. Never raises.

    Args:
        config: Registry credentials and timeout. ``token=None`` disables the
                live lookup entirely (the offline default).
        client: Optional ``httpx.Client`` to issue requests with. When omitted
                a short-lived client is opened and closed per lookup. Tests
                pass a client built on ``httpx.MockTransport``.
    """

    def __init__(self, config: CrLookupConfig | None = None, client: httpx.Client | None = None):
        self.config = config or CrLookupConfig()
        self._client = client

    def resolve(self, national_id: str) -> CrLookupResult:
        try:
            return CrLookupResult(identifier=self._live_lookup(national_id), provenance=True)
        except LookupUnavailable as exc:
            if self.config.enabled:
                logger.warning("CR lookup unavailable, using synthetic id: %s", exc)
            else:
                logger.debug("CR lookup disabled, using synthetic id")
        return CrLookupResult(identifier=synthetic_cr_id(national_id), provenance=False)

    def _live_lookup(self, national_id: str) -> str:
        if not self.config.enabled:
            raise LookupUnavailable("No registry token configured")

        deadline = time.monotonic() + self.config.timeout
        outcome: dict[str, Any] = {}

        def work():
            try:
                if self._client is not None:
                    outcome["raw"] = self._fetch(self._client, national_id, deadline)
                else:
                    with httpx.Client(timeout=self.config.timeout) as client:
                        outcome["raw"] = self._fetch(client, national_id, deadline)
            except Exception as exc:
                outcome["error"] = exc

        # The caller waits at most until the deadline; a worker stuck in a
        # single slow read is abandoned and exits on its own read timeout.
        worker = threading.Thread(target=work, name="cr-lookup", daemon=True)
        worker.start()
        worker.join(max(0.0, deadline - time.monotonic()))
        if worker.is_alive():
            raise LookupUnavailable(f"Registry lookup exceeded the {self.config.timeout:g}s deadline")

        error = outcome.get("error")
        if isinstance(error, LookupUnavailable):
            raise error
        if isinstance(error, (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError)):
            raise LookupUnavailable(f"Registry request failed: {error.__class__.__name__}") from error
        if error is not None:
            raise LookupUnavailable(f"Registry lookup failed: {error.__class__.__name__}") from error
        raw = outcome["raw"]

        try:
            body = json.loads(raw)
        except ValueError as exc:
            raise LookupUnavailable("Registry response is not valid JSON") from exc

        cr_id = extract_cr_id(body)
        logger.info("Resolved CR id from registry")
        return cr_id

    def _fetch(self, client: httpx.Client, national_id: str, deadline: float) -> bytes:
        """
        Stream the search response, abandoning it once ``deadline`` passes.
        httpx timeouts apply per phase and per read, so the deadline is also
        checked as each chunk arrives. Leaving the ``with`` block closes the
        connection.
        """
        url = f"{self.config.base_url.rstrip('/')}{SEARCH_PATH}"
        headers = {
            "Authorization": f"Bearer {self.config.token}",
            "Accept": FHIR_JSON,
        }
        params = {"identification_number": national_id}

        with client.stream(
            "GET", url, params=params, headers=headers, timeout=self.config.timeout
        ) as response:
            if not response.is_success:
                raise LookupUnavailable(f"Registry returned HTTP {response.status_code}")
            chunks = []
            for chunk in response.iter_bytes():
                if time.monotonic() > deadline:
                    raise LookupUnavailable(
                        f"Registry response exceeded the {self.config.timeout:g}s deadline"
                    )
                chunks.append(chunk)
            if time.monotonic() > deadline:
                raise LookupUnavailable(
                    f"Registry response exceeded the {self.config.timeout:g}s deadline"
                )
        return b"".join(chunks)

"""HTTP client for a remote vault service.

This module provides the HttpVaultClient class, which implements both the
`WrappedAsset` and `Vault` protocols used by the VaultBridge against a vault
service reachable over HTTP. It includes:

- Short-lived JWT authentication with a shared secret
- Idempotency keys on deposits
- Circuit breaker pattern for fault tolerance

Calls are synchronous: the ledger performs the deposit inside its critical
section and must not release it before the vault answers.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx
from jose import jwt

from lockdrop.core.settings import settings
from lockdrop.services.errors import LockdropError

# Configure logger for this module
logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_OK = 200
HTTP_CREATED = 201
HTTP_INTERNAL_SERVER_ERROR = 500


class VaultClientError(LockdropError):
    """Raised for transport or protocol failures talking to the vault service."""


class VaultDisabledError(VaultClientError):
    """Raised when vault operations are attempted while the client is disabled."""


class CircuitState(Enum):
    """Whether calls to the vault service are let through."""

    CLOSED = "closed"
    OPEN = "open"
    # Cooling-off elapsed; calls go through until enough succeed or one fails.
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """Stops calling the vault service after repeated failures.

    Shared by every thread that calls through one client, so each state
    transition happens under ``_lock``.
    """

    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    success_threshold: int = 3

    _state: CircuitState = CircuitState.CLOSED
    _failure_count: int = 0
    _success_count: int = 0
    _opened_at: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def is_open(self) -> bool:
        """Return True while calls must be refused."""
        with self._lock:
            if self._state is CircuitState.OPEN and time.monotonic() - self._opened_at > self.recovery_timeout:
                logger.info("Vault circuit half-open after %.1fs", self.recovery_timeout)
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
            return self._state is CircuitState.OPEN

    def record_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count < self.success_threshold:
                    return
                logger.info("Vault circuit closed after %d successful calls", self._success_count)
                self._state = CircuitState.CLOSED
            self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            if self._state is CircuitState.OPEN:
                return
            if self._state is CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
                logger.warning("Vault circuit opened after %d failures", self._failure_count)
                self._state = CircuitState.OPEN
                self._opened_at = time.monotonic()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count


@dataclass(frozen=True)
class VaultClientConfig:
    """Immutable configuration for vault operations."""

    enabled: bool
    base_url: str | None
    vault_address: str | None
    shared_secret: str | None
    audience: str
    token_ttl_seconds: int
    timeout_seconds: float
    client_id: str


def load_vault_client_config() -> VaultClientConfig:
    """Build configuration object from global settings."""
    return VaultClientConfig(
        enabled=bool(settings.vault_enabled and settings.vault_base_url),
        base_url=settings.vault_base_url,
        vault_address=settings.vault_address,
        shared_secret=settings.vault_shared_secret,
        audience=settings.vault_audience,
        token_ttl_seconds=settings.vault_token_ttl_seconds,
        timeout_seconds=float(settings.vault_http_timeout_seconds),
        client_id=settings.ledger_holder_address,
    )


class HttpVaultClient:
    """HTTP wrapper exposing the remote wrapped asset and vault."""

    def __init__(
        self,
        config: VaultClientConfig | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config = config or load_vault_client_config()
        self._transport = transport
        self._client: httpx.Client | None = None
        self._circuit_breaker = CircuitBreaker()

    @property
    def enabled(self) -> bool:
        return self.config.enabled and bool(self.config.base_url)

    @property
    def address(self) -> str:
        if not self.config.vault_address:
            raise VaultClientError("LOCKDROP_VAULT_ADDRESS is not configured")
        return self.config.vault_address

    def _ensure_client(self) -> httpx.Client:
        if not self.enabled:
            raise VaultDisabledError("Vault service is not enabled")
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.config.base_url or "",
                timeout=httpx.Timeout(self.config.timeout_seconds),
                transport=self._transport,
            )
        return self._client

    def _build_auth_headers(self, *, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"X-Lockdrop-Client-Id": self.config.client_id}

        if self.config.shared_secret:
            now = int(time.time())
            payload = {
                "iss": self.config.client_id,
                "aud": self.config.audience,
                "iat": now,
                "exp": now + max(1, self.config.token_ttl_seconds),
                "jti": secrets.token_hex(8),
            }
            token = jwt.encode(payload, self.config.shared_secret, algorithm="HS256")
            headers["Authorization"] = f"Bearer {token}"

        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_data: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        if self._circuit_breaker.is_open():
            raise VaultClientError("Vault circuit breaker is open - service unavailable")

        client = self._ensure_client()
        headers = self._build_auth_headers(idempotency_key=idempotency_key)

        try:
            response = client.request(method, path, json=json_data, params=params, headers=headers)
        except httpx.HTTPError as exc:
            self._circuit_breaker.record_failure()
            raise VaultClientError(f"Vault request failed: {exc}") from exc

        if response.status_code >= HTTP_INTERNAL_SERVER_ERROR:
            self._circuit_breaker.record_failure()
            raise VaultClientError(f"Vault responded with {response.status_code}")
        self._circuit_breaker.record_success()

        if response.status_code not in (HTTP_OK, HTTP_CREATED):
            raise VaultClientError(
                f"Unexpected vault response ({response.status_code}) for {method} {path}"
            )
        try:
            return dict(response.json())
        except ValueError as exc:
            raise VaultClientError(f"Vault returned invalid JSON for {method} {path}") from exc

    # --- WrappedAsset ---------------------------------------------------------------

    def wrap(self, holder: str, amount: int) -> None:
        self._request("POST", "/api/vault/asset/wrap", json_data={"holder": holder, "amount": amount})

    def unwrap(self, holder: str, amount: int) -> None:
        self._request(
            "POST", "/api/vault/asset/unwrap", json_data={"holder": holder, "amount": amount}
        )

    def approve(self, holder: str, spender: str, amount: int) -> None:
        self._request(
            "POST",
            "/api/vault/asset/approve",
            json_data={"holder": holder, "spender": spender, "amount": amount},
        )

    def allowance(self, holder: str, spender: str) -> int:
        body = self._request(
            "GET", "/api/vault/asset/allowance", params={"holder": holder, "spender": spender}
        )
        return int(body.get("allowance", 0))

    def balance_of(self, holder: str) -> int:
        body = self._request("GET", "/api/vault/asset/balance", params={"holder": holder})
        return int(body.get("balance", 0))

    # --- Vault ----------------------------------------------------------------------

    def deposit(self, amount: int, beneficiary: str) -> int:
        """Deposit approved wrapped value for ``beneficiary`` and return minted shares."""
        body = self._request(
            "POST",
            "/api/vault/deposit",
            json_data={
                "vault": self.address,
                "amount": amount,
                "beneficiary": beneficiary,
                "depositor": self.config.client_id,
            },
            idempotency_key=f"migrate:{beneficiary}",
        )
        if "shares" not in body:
            raise VaultClientError("Vault deposit response is missing 'shares'")
        return int(body["shares"])

    def health_check(self) -> dict[str, Any]:
        """Return a health summary of the vault connection."""
        if not self.enabled:
            return {"status": "disabled", "enabled": False}
        try:
            body = self._request("GET", "/health")
        except VaultClientError as exc:
            return {
                "status": "error",
                "enabled": True,
                "error": str(exc),
                "circuit_breaker": self._circuit_breaker.state.value,
            }
        return {
            "status": "healthy",
            "enabled": True,
            "vault_status": body,
            "circuit_breaker": self._circuit_breaker.state.value,
        }

    def close(self) -> None:
        """Clean up underlying HTTP client resources."""
        if self._client is not None:
            self._client.close()
            self._client = None

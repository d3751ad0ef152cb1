"""
Registry adapter interface.

An adapter translates the engine's account operations into one registry's
HTTP protocol. Adapters never persist anything: they talk to the external
system and return values the caller stores.

HTTP retry with backoff and the translation of registry responses into the
engine's error taxonomy live here, so concrete adapters only describe URLs,
payloads and naming.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import requests

from ..config import AdapterHttpConfig
from ..exceptions import (
    AdapterRejectedError,
    AdapterUnavailableError,
    ConflictAlreadyExistsError,
    not_found,
)
from ..schemas.credential_schemas import ExternalAccount, OwnerContext
from ..schemas.registry_schemas import RegistryConfig
from ..utils.backoff_utils import calculate_exponential_backoff
from ..utils.logger import get_logger

# 4xx answers that are worth retrying
TRANSIENT_STATUS_CODES = frozenset({408, 429})


class RegistryAdapter(ABC):
    """
    Uniform account protocol over one external registry.

    Capability flags tell the engine which optional operations a variant
    implements; the engine never branches on the concrete class.
    """

    supports_recover = False
    supports_relabel = False

    def __init__(
        self,
        registry: RegistryConfig,
        http_config: Optional[AdapterHttpConfig] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the adapter.

        Args:
            registry: Static registry configuration
            http_config: Timeout and retry policy
            session: Pre-built HTTP session (tests inject a mock)
            sleep: Backoff sleep function
        """
        self.registry = registry
        self.http_config = http_config or AdapterHttpConfig()
        self.session = session if session is not None else self._build_session()
        self.logger = get_logger()
        self._sleep = sleep

    @property
    def service_name(self) -> str:
        return self.registry.id

    @abstractmethod
    def _build_session(self) -> requests.Session:
        """Create an HTTP session carrying this variant's authentication."""

    @abstractmethod
    def create_account(self, owner: OwnerContext) -> ExternalAccount:
        """
        Create a new external account for ``owner``.

        Returns:
            The external name (as the registry reports it) and its secret

        Raises:
            AdapterUnavailableError: Registry unreachable after retries
            AdapterRejectedError: Registry refused the request permanently
        """

    @abstractmethod
    def delete_account(self, external_name: str) -> None:
        """
        Delete an external account.

        Raises:
            NotFoundError: The account does not exist
            AdapterUnavailableError: Registry unreachable after retries
            AdapterRejectedError: Registry refused the request permanently
        """

    def recover_account(self, external_name: str) -> ExternalAccount:
        """Undo a soft delete. Only meaningful when ``supports_recover`` is set."""
        raise AdapterRejectedError(
            f"Registry {self.registry.id} does not support account recovery",
            service_name=self.service_name,
            external_name=external_name,
        )

    def relabel_account(self, external_name: str, owner: OwnerContext) -> None:
        """Re-label a pool account for its new owner. Only with ``supports_relabel``."""
        raise AdapterRejectedError(
            f"Registry {self.registry.id} does not support account relabeling",
            service_name=self.service_name,
            external_name=external_name,
        )

    def describe_owner(self, owner: OwnerContext) -> str:
        """Human-readable account label; carries no secret material."""
        if owner.is_placeholder:
            return "pull secret pool account (unassigned)"
        return f"pull secret for cluster {owner.cluster_id} ({owner.cloud_provider}/{owner.region})"

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """
        Perform one logical registry call with bounded retries.

        Connection errors, timeouts, 408/429 and 5xx answers are retried with
        exponential backoff. Any other answer is returned to the caller.

        Raises:
            AdapterUnavailableError: The call kept failing transiently
        """
        max_attempts = self.http_config.max_attempts
        last_error: Optional[Exception] = None
        reason = ""

        for attempt in range(max_attempts):
            try:
                response = self.session.request(
                    method, url, timeout=self.http_config.timeout_seconds, **kwargs
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = e
                reason = type(e).__name__
            else:
                status = response.status_code
                if status < 500 and status not in TRANSIENT_STATUS_CODES:
                    return response
                last_error = None
                reason = f"HTTP {status}"

            if attempt + 1 < max_attempts:
                delay = calculate_exponential_backoff(
                    retry_count=attempt,
                    base_delay=self.http_config.retry_backoff_base,
                    max_delay=self.http_config.retry_backoff_max,
                    multiplier=self.http_config.retry_backoff_multiplier,
                )
                self.logger.warning(
                    "Registry call failed, retrying",
                    extra={
                        "registry_id": self.registry.id,
                        "method": method,
                        "attempt": attempt + 1,
                        "max_attempts": max_attempts,
                        "reason": reason,
                        "retry_delay": round(delay, 3),
                    },
                )
                self._sleep(delay)

        raise AdapterUnavailableError(
            f"Registry {self.registry.id} unavailable after {max_attempts} attempts: {reason}",
            service_name=self.service_name,
            cause=last_error,
            method=method,
            attempts=max_attempts,
        )

    def _raise_for_status(self, response: requests.Response, **context: Any) -> None:
        """
        Translate a non-success registry answer into the engine's taxonomy.

        404 -> NotFoundError, 409 -> ConflictAlreadyExistsError, any other
        4xx -> AdapterRejectedError.
        """
        status = response.status_code
        if 200 <= status < 300:
            return

        detail = self._error_detail(response)

        if status == 404:
            raise not_found("ExternalAccount", registry_id=self.registry.id, **context)
        if status == 409:
            raise ConflictAlreadyExistsError(
                f"Account already exists on registry {self.registry.id}",
                service_name=self.service_name,
                **context,
            )
        raise AdapterRejectedError(
            f"Registry {self.registry.id} rejected the request (HTTP {status}): {detail}",
            service_name=self.service_name,
            response_status=status,
            **context,
        )

    @staticmethod
    def _error_detail(response: requests.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return ""
        if not isinstance(payload, dict):
            return ""
        for key in ("message", "error_message", "error", "reason", "detail"):
            value = payload.get(key)
            if isinstance(value, str):
                return value[:200]
        return ""

    def _json_payload(self, response: requests.Response) -> Dict[str, Any]:
        """Decode a success body; a malformed body is a permanent rejection."""
        try:
            payload = response.json()
        except ValueError as e:
            raise AdapterRejectedError(
                f"Registry {self.registry.id} returned a non-JSON body",
                service_name=self.service_name,
                cause=e,
            ) from e
        if not isinstance(payload, dict):
            raise AdapterRejectedError(
                f"Registry {self.registry.id} returned an unexpected body",
                service_name=self.service_name,
            )
        return payload

    def _account_from_payload(
        self, payload: Dict[str, Any], fallback_name: str, secret_key: str = "token"
    ) -> ExternalAccount:
        secret = payload.get(secret_key)
        if not secret:
            raise AdapterRejectedError(
                f"Registry {self.registry.id} returned an account without a secret",
                service_name=self.service_name,
                external_name=payload.get("name") or fallback_name,
            )
        return ExternalAccount(
            external_name=payload.get("name") or fallback_name,
            secret=secret,
            description=payload.get("description"),
            deleted=bool(payload.get("deleted", False)),
        )

    def close(self) -> None:
        self.session.close()

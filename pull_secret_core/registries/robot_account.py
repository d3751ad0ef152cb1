"""
Robot-account registry adapter (bearer-token API).

Robot names must match ``[a-z0-9_]{1,254}``. The registry reports created
accounts as ``{organization}+{name}``; calls that address an existing
account use the bare name. Deletion is permanent and accounts cannot be
re-labeled, so this variant never draws from the credential pool.
"""

import re
import secrets
from typing import Optional
from urllib.parse import quote

import requests

from ..constants import (
    DEFAULT_ROBOT_NAME_PREFIX,
    ROBOT_NAME_MAX_LENGTH,
    ROBOT_NAME_SEPARATOR,
    ROBOT_ORGANIZATION_SEPARATOR,
)
from ..context.operation_context import operation
from ..exceptions import ConflictAlreadyExistsError, NameFormatError
from ..schemas.credential_schemas import ExternalAccount, OwnerContext
from .base import RegistryAdapter

_INVALID_CHARS = re.compile(r"[^a-z0-9_]")
_SEPARATOR_RUNS = re.compile(r"_+")

# Fallback when nothing of the input survives normalization
_EMPTY_NAME = "robot"

# Provider and region segments are capped so the random suffix always survives
_SEGMENT_MAX_LENGTH = 63


def normalize_robot_name(value: str) -> str:
    """
    Normalize any string into the robot naming grammar.

    Lowercases, strips characters outside ``[a-z0-9_]``, collapses separator
    runs, forces an alphanumeric first character and caps the length.
    Idempotent and total.
    """
    name = _INVALID_CHARS.sub("", (value or "").lower())
    name = _SEPARATOR_RUNS.sub(ROBOT_NAME_SEPARATOR, name)
    name = name.lstrip(ROBOT_NAME_SEPARATOR)
    if not name:
        return _EMPTY_NAME
    return name[:ROBOT_NAME_MAX_LENGTH]


def normalize_robot_region(region: str) -> str:
    """Normalize a region without keeping separators (``us-east-1`` -> ``useast1``)."""
    return _INVALID_CHARS.sub("", (region or "").lower()).replace(ROBOT_NAME_SEPARATOR, "")


def generate_robot_name(
    provider: str,
    region: str,
    prefix: str = DEFAULT_ROBOT_NAME_PREFIX,
    suffix: Optional[str] = None,
) -> str:
    """
    Build a robot name from the owner's provider/region plus a random suffix.

    Example: ``gcp``, ``us-east-1`` -> ``hyperfleet_gcp_useast1_<16 hex>``.
    """
    if suffix is None:
        suffix = secrets.token_hex(8)

    parts = [
        prefix,
        _INVALID_CHARS.sub("", (provider or "").lower())[:_SEGMENT_MAX_LENGTH],
        normalize_robot_region(region)[:_SEGMENT_MAX_LENGTH],
        suffix,
    ]
    return normalize_robot_name(ROBOT_NAME_SEPARATOR.join(parts))


def compose_robot_name(organization: str, name: str) -> str:
    return f"{organization}{ROBOT_ORGANIZATION_SEPARATOR}{name}"


def strip_organization_prefix(organization: str, external_name: str) -> str:
    """
    Recover the bare robot name from ``{organization}+{name}``.

    A name without the separator is already bare and returned unchanged.

    Raises:
        NameFormatError: The name is prefixed with a different organization
    """
    if ROBOT_ORGANIZATION_SEPARATOR not in external_name:
        return external_name

    owner_org, _, bare = external_name.partition(ROBOT_ORGANIZATION_SEPARATOR)
    if owner_org != organization or not bare:
        raise NameFormatError(
            f"Robot name is not in organization {organization}",
            value=external_name,
            organization=organization,
        )
    return bare


class RobotAccountAdapter(RegistryAdapter):
    """Adapter for the token-authenticated robot-account API."""

    supports_recover = False
    supports_relabel = False

    def _build_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update(
            {
                "Authorization": f"Bearer {self.registry.token or ''}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )
        return session

    @property
    def organization(self) -> str:
        return self.registry.organization

    def _robot_url(self, bare_name: str) -> str:
        return (
            f"{self.registry.base_url}/api/v1/organization/"
            f"{quote(self.organization, safe='')}/robots/{quote(bare_name, safe='')}"
        )

    def generate_name(self, owner: OwnerContext) -> str:
        return generate_robot_name(
            owner.cloud_provider,
            owner.region,
            prefix=self.registry.name_prefix or DEFAULT_ROBOT_NAME_PREFIX,
        )

    @operation(name="robot_account.create_account")
    def create_account(self, owner: OwnerContext) -> ExternalAccount:
        bare_name = self.generate_name(owner)
        external_name = compose_robot_name(self.organization, bare_name)

        response = self._request(
            "PUT", self._robot_url(bare_name), json={"description": self.describe_owner(owner)}
        )
        try:
            self._raise_for_status(response, external_name=external_name)
        except ConflictAlreadyExistsError:
            # A retried PUT whose first attempt landed; use what the registry holds
            return self._fetch_account(bare_name, external_name)

        account = self._account_from_payload(self._json_payload(response), external_name)
        self.logger.info(
            "Created robot account",
            extra={"registry_id": self.registry.id, "external_name": account.external_name},
        )
        return account

    def _fetch_account(self, bare_name: str, external_name: str) -> ExternalAccount:
        response = self._request("GET", self._robot_url(bare_name))
        self._raise_for_status(response, external_name=external_name)
        return self._account_from_payload(self._json_payload(response), external_name)

    @operation(name="robot_account.delete_account")
    def delete_account(self, external_name: str) -> None:
        bare_name = strip_organization_prefix(self.organization, external_name)
        response = self._request("DELETE", self._robot_url(bare_name))
        self._raise_for_status(response, external_name=external_name)
        self.logger.info(
            "Deleted robot account",
            extra={"registry_id": self.registry.id, "external_name": external_name},
        )

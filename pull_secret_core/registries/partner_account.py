"""
Partner service-account registry adapter (mutual-TLS API).

Account names are limited to 49 characters. The registry prepends ``|`` to
the name it returns on creation; the engine stores the returned form (it is
the pull secret username) and strips the separator again whenever the API
addresses an existing account.

Deletion is soft: a deleted account can be recovered explicitly. Accounts
carry a free-form description, which is how pool accounts get re-labeled
for the cluster they are bound to.
"""

import re
import secrets
import uuid
from typing import Optional
from urllib.parse import quote

import requests

from ..constants import (
    DEFAULT_PARTNER_NAME_PREFIX,
    PARTNER_ACCOUNT_SEPARATOR,
    PARTNER_NAME_MAX_LENGTH,
    PARTNER_POOL_NAME_PREFIX,
)
from ..context.operation_context import operation
from ..exceptions import (
    AdapterRejectedError,
    AdapterUnavailableError,
    ConflictAlreadyExistsError,
    NameFormatError,
    NotFoundError,
)
from ..schemas.credential_schemas import ExternalAccount, OwnerContext
from .base import RegistryAdapter

_INVALID_CHARS = re.compile(r"[^a-z0-9-]")


def _clean_identifier(value: str) -> str:
    return _INVALID_CHARS.sub("-", (value or "").lower()).strip("-")


def generate_partner_name(
    owner_id: str,
    discriminator: Optional[str] = None,
    prefix: str = DEFAULT_PARTNER_NAME_PREFIX,
    suffix: Optional[str] = None,
) -> str:
    """
    Build a partner account name within the 49-character limit.

    The owner id is used when it fits; otherwise the external-resource
    discriminator is substituted; whatever is chosen is finally truncated
    so the prefix and suffix always survive.
    """
    suffix_part = f"-{suffix}" if suffix else ""
    room = PARTNER_NAME_MAX_LENGTH - len(prefix) - len(suffix_part)

    identifier = _clean_identifier(owner_id)
    if len(identifier) > room and discriminator:
        identifier = _clean_identifier(discriminator)

    identifier = identifier[: max(room, 0)].rstrip("-")
    return f"{prefix}{identifier}{suffix_part}"[:PARTNER_NAME_MAX_LENGTH]


def strip_account_separator(external_name: str) -> str:
    """
    Remove the ``|`` the registry prepends to created account names.

    Raises:
        NameFormatError: The separator is absent
    """
    if not external_name or not external_name.startswith(PARTNER_ACCOUNT_SEPARATOR):
        raise NameFormatError(
            f"Partner account name is missing the '{PARTNER_ACCOUNT_SEPARATOR}' separator",
            value=external_name,
        )
    return external_name[len(PARTNER_ACCOUNT_SEPARATOR) :]


class PartnerAccountAdapter(RegistryAdapter):
    """Adapter for the certificate-gated partner service-account API."""

    supports_recover = True
    supports_relabel = True

    def _build_session(self) -> requests.Session:
        session = requests.Session()
        if self.registry.client_cert_path:
            if self.registry.client_key_path:
                session.cert = (self.registry.client_cert_path, self.registry.client_key_path)
            else:
                session.cert = self.registry.client_cert_path
        session.verify = self.registry.ca_bundle_path or True
        session.headers.update({"Content-Type": "application/json", "Accept": "application/json"})
        return session

    @property
    def _collection_url(self) -> str:
        return f"{self.registry.base_url}/service_accounts"

    def _account_url(self, bare_name: str) -> str:
        return f"{self._collection_url}/{quote(bare_name, safe='')}"

    def generate_name(self, owner: OwnerContext) -> str:
        # A short random suffix keeps names unique across rotations and
        # re-creation after a soft delete
        suffix = secrets.token_hex(3)
        if owner.is_placeholder:
            return generate_partner_name(
                uuid.uuid4().hex[:16], prefix=PARTNER_POOL_NAME_PREFIX, suffix=suffix
            )
        return generate_partner_name(
            owner.cluster_id,
            discriminator=owner.external_resource_id,
            prefix=self.registry.name_prefix or DEFAULT_PARTNER_NAME_PREFIX,
            suffix=suffix,
        )

    def _validated_account(self, account: ExternalAccount) -> ExternalAccount:
        try:
            strip_account_separator(account.external_name)
        except NameFormatError as e:
            raise AdapterRejectedError(
                f"Registry {self.registry.id} returned a malformed account name",
                service_name=self.service_name,
                cause=e,
                external_name=account.external_name,
            ) from e
        return account

    @operation(name="partner_account.create_account")
    def create_account(self, owner: OwnerContext) -> ExternalAccount:
        bare_name = self.generate_name(owner)
        fallback_name = f"{PARTNER_ACCOUNT_SEPARATOR}{bare_name}"

        response = self._request(
            "POST",
            self._collection_url,
            json={"name": bare_name, "description": self.describe_owner(owner)},
        )
        try:
            self._raise_for_status(response, external_name=fallback_name)
        except ConflictAlreadyExistsError:
            return self._fetch_existing(bare_name, fallback_name)

        account = self._validated_account(
            self._account_from_payload(self._json_payload(response), fallback_name)
        )
        self.logger.info(
            "Created partner service account",
            extra={"registry_id": self.registry.id, "external_name": account.external_name},
        )
        return account

    def _fetch_existing(self, bare_name: str, fallback_name: str) -> ExternalAccount:
        """Resolve a create conflict by reading the account that already exists."""
        response = self._request("GET", self._account_url(bare_name))
        try:
            self._raise_for_status(response, external_name=fallback_name)
        except NotFoundError as e:
            # Deleted between the conflict and the read; the caller may retry
            raise AdapterUnavailableError(
                f"Account on registry {self.registry.id} vanished after a create conflict",
                service_name=self.service_name,
                cause=e,
                external_name=fallback_name,
            ) from e

        account = self._validated_account(
            self._account_from_payload(self._json_payload(response), fallback_name)
        )
        if account.deleted:
            raise AdapterRejectedError(
                f"Existing account on registry {self.registry.id} is soft-deleted",
                service_name=self.service_name,
                external_name=account.external_name,
            )

        self.logger.info(
            "Reused existing partner service account after create conflict",
            extra={"registry_id": self.registry.id, "external_name": account.external_name},
        )
        return account

    @operation(name="partner_account.delete_account")
    def delete_account(self, external_name: str) -> None:
        bare_name = strip_account_separator(external_name)
        response = self._request("DELETE", self._account_url(bare_name))
        self._raise_for_status(response, external_name=external_name)
        self.logger.info(
            "Soft-deleted partner service account",
            extra={"registry_id": self.registry.id, "external_name": external_name},
        )

    @operation(name="partner_account.recover_account")
    def recover_account(self, external_name: str) -> ExternalAccount:
        bare_name = strip_account_separator(external_name)
        response = self._request("PATCH", self._account_url(bare_name), json={"deleted": False})
        self._raise_for_status(response, external_name=external_name)

        account = self._validated_account(
            self._account_from_payload(self._json_payload(response), external_name)
        )
        self.logger.info(
            "Recovered partner service account",
            extra={"registry_id": self.registry.id, "external_name": account.external_name},
        )
        return account

    @operation(name="partner_account.relabel_account")
    def relabel_account(self, external_name: str, owner: OwnerContext) -> None:
        bare_name = strip_account_separator(external_name)
        response = self._request(
            "PATCH", self._account_url(bare_name), json={"description": self.describe_owner(owner)}
        )
        self._raise_for_status(response, external_name=external_name)

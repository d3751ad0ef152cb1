"""
Pydantic schemas for the static registry catalog.

Registries are loaded once at process start and never mutated afterwards,
so every model here is frozen and the catalog stores a tuple.
"""

import json
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..constants import RegistryVariant
from ..exceptions import ErrorCode, ValidationError, not_found


class RegistryConfig(BaseModel):
    """One configured container registry."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="forbid")

    id: str = Field(..., min_length=1, max_length=100, description="Registry identifier")
    name: str = Field(..., min_length=1, description="Display name")
    variant: RegistryVariant = Field(..., description="External account model")
    base_url: str = Field(..., min_length=1, description="Registry API base URL")
    organization: str = Field(default="", description="Owning organization / tenant")
    account_group: Optional[str] = Field(None, description="Grouping identifier for accounts")
    registry_hostname: Optional[str] = Field(
        None, description="Hostname emitted in pull secrets; defaults to the API host"
    )
    alias_hostname: Optional[str] = Field(None, description="Alias emitted alongside the host")
    emit_alias: bool = Field(default=False, description="Emit a duplicate entry under the alias")
    pool_enabled: bool = Field(default=False, description="Draw from the spare credential pool")
    name_prefix: Optional[str] = Field(None, description="Override of the account name prefix")

    # Robot-account API
    token: Optional[str] = Field(None, repr=False, description="Bearer token")

    # Partner-account API
    client_cert_path: Optional[str] = Field(None, description="Client certificate (PEM)")
    client_key_path: Optional[str] = Field(None, description="Client private key (PEM)")
    ca_bundle_path: Optional[str] = Field(None, description="CA bundle for the registry API")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v):
        """Registry ids are used in key material and log extras."""
        if not re.match(r"^[a-zA-Z0-9_.-]+$", v):
            raise ValueError("Registry id can only contain letters, numbers, underscore, hyphen, and dot")
        return v

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v):
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("base_url must be an absolute http(s) URL")
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_variant_settings(self) -> "RegistryConfig":
        if self.variant == RegistryVariant.ROBOT_ACCOUNT and not self.organization:
            raise ValueError("robot_account registries require an organization")
        if self.emit_alias and not self.alias_hostname:
            raise ValueError("emit_alias requires alias_hostname")
        return self

    @property
    def hostname(self) -> str:
        """Hostname the pull secret is keyed by."""
        return self.registry_hostname or urlparse(self.base_url).netloc

    def auth_hostnames(self) -> List[str]:
        """Every hostname that receives an auth entry for this registry."""
        hosts = [self.hostname]
        if self.emit_alias and self.alias_hostname and self.alias_hostname != self.hostname:
            hosts.append(self.alias_hostname)
        return hosts


class RegistryCatalog(BaseModel):
    """Immutable, ordered set of configured registries."""

    model_config = ConfigDict(frozen=True)

    registries: Tuple[RegistryConfig, ...] = Field(default_factory=tuple)

    @model_validator(mode="after")
    def validate_unique_ids(self) -> "RegistryCatalog":
        ids = [registry.id for registry in self.registries]
        duplicates = sorted({rid for rid in ids if ids.count(rid) > 1})
        if duplicates:
            raise ValueError(f"Duplicate registry ids: {duplicates}")

        # Each hostname keys exactly one auth entry in the pull secret
        hosts = [host for registry in self.registries for host in registry.auth_hostnames()]
        shared = sorted({host for host in hosts if hosts.count(host) > 1})
        if shared:
            raise ValueError(f"Hostnames used by more than one registry: {shared}")
        return self

    @classmethod
    def from_dicts(cls, items: Iterable[Dict[str, Any]]) -> "RegistryCatalog":
        return cls(registries=tuple(RegistryConfig.model_validate(item) for item in items))

    @property
    def ids(self) -> List[str]:
        return [registry.id for registry in self.registries]

    def get(self, registry_id: str) -> RegistryConfig:
        for registry in self.registries:
            if registry.id == registry_id:
                return registry
        raise not_found("Registry", registry_id=registry_id)

    def select(self, registry_ids: Optional[Iterable[str]] = None) -> List[RegistryConfig]:
        """
        Resolve a caller-specified subset, keeping catalog order.

        None means every configured registry.

        Raises:
            NotFoundError: If an id is not configured
        """
        if registry_ids is None:
            return list(self.registries)
        wanted = list(dict.fromkeys(registry_ids))
        for registry_id in wanted:
            self.get(registry_id)
        return [registry for registry in self.registries if registry.id in wanted]

    def pool_registries(self) -> List[RegistryConfig]:
        return [registry for registry in self.registries if registry.pool_enabled]


def load_registry_catalog(path: str) -> RegistryCatalog:
    """
    Load the registry catalog from a JSON document.

    The document is either a list of registry objects or an object with a
    ``registries`` list.

    Raises:
        ValidationError: If the file cannot be read or does not validate
    """
    try:
        with open(path, encoding="utf-8") as handle:
            raw = json.load(handle)
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(
            f"Cannot load registry catalog: {e}",
            field="registry_config_path",
            error_code=ErrorCode.CONFIGURATION_ERROR,
            cause=e,
            path=path,
        ) from e

    items = raw.get("registries", []) if isinstance(raw, dict) else raw

    try:
        return RegistryCatalog.from_dicts(items)
    except ValueError as e:
        raise ValidationError(
            f"Invalid registry catalog: {e}",
            field="registries",
            error_code=ErrorCode.CONFIGURATION_ERROR,
            cause=e,
            path=path,
        ) from e

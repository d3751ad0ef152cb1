"""
Adapter construction.

This is the only place that branches on the registry variant; everything
downstream works against ``RegistryAdapter`` and its capability flags.
"""

from typing import Dict, Optional, Type

from ..config import AdapterHttpConfig
from ..constants import RegistryVariant
from ..exceptions import ErrorCode, ValidationError
from ..schemas.registry_schemas import RegistryCatalog, RegistryConfig
from .base import RegistryAdapter
from .partner_account import PartnerAccountAdapter
from .robot_account import RobotAccountAdapter

ADAPTER_CLASSES: Dict[RegistryVariant, Type[RegistryAdapter]] = {
    RegistryVariant.ROBOT_ACCOUNT: RobotAccountAdapter,
    RegistryVariant.PARTNER_ACCOUNT: PartnerAccountAdapter,
}


def build_adapter(
    registry: RegistryConfig, http_config: Optional[AdapterHttpConfig] = None
) -> RegistryAdapter:
    """Create the adapter matching the registry's variant."""
    adapter_class = ADAPTER_CLASSES.get(registry.variant)
    if adapter_class is None:
        raise ValidationError(
            f"No adapter for registry variant {registry.variant}",
            field="variant",
            error_code=ErrorCode.CONFIGURATION_ERROR,
            registry_id=registry.id,
        )
    return adapter_class(registry, http_config)


def build_adapters(
    catalog: RegistryCatalog, http_config: Optional[AdapterHttpConfig] = None
) -> Dict[str, RegistryAdapter]:
    """Create one adapter per configured registry, keyed by registry id."""
    return {registry.id: build_adapter(registry, http_config) for registry in catalog.registries}

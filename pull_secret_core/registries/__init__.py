from .adapter_factory import build_adapter, build_adapters
from .base import RegistryAdapter
from .partner_account import (
    PartnerAccountAdapter,
    generate_partner_name,
    strip_account_separator,
)
from .robot_account import (
    RobotAccountAdapter,
    compose_robot_name,
    generate_robot_name,
    normalize_robot_name,
    normalize_robot_region,
    strip_organization_prefix,
)

__all__ = [
    "build_adapter",
    "build_adapters",
    "RegistryAdapter",
    "PartnerAccountAdapter",
    "generate_partner_name",
    "strip_account_separator",
    "RobotAccountAdapter",
    "compose_robot_name",
    "generate_robot_name",
    "normalize_robot_name",
    "normalize_robot_region",
    "strip_organization_prefix",
]

"""
SCIM provisioning and identity-provider sync.
"""

from .service import provisioning_service, ProvisioningService, generate_api_key, hash_api_key

__all__ = [
    "provisioning_service",
    "ProvisioningService",
    "generate_api_key",
    "hash_api_key",
]

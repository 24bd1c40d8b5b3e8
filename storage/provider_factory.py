"""
Factory for creating blob store instances.

Simplifies provider selection and initialization.
"""

from typing import Any, Dict, Optional

from shared.constants import (
    AWS_S3_ENDPOINT_TEMPLATE,
    BACKBLAZE_B2_ENDPOINT_TEMPLATE,
    CLOUDFLARE_R2_ENDPOINT_TEMPLATE,
)
from shared.errors import InvalidInput, StorageFailure
from shared.models import StorageProvider
from .blob_store import BlobStore
from .local_provider import LocalStorageProvider
from .s3_provider import S3StorageProvider


class StorageProviderFactory:
    """Factory for creating blob store instances."""

    @staticmethod
    def endpoint_for(provider_type: StorageProvider, endpoint: Optional[str],
                     region: Optional[str]) -> Optional[str]:
        """
        Resolve the S3 endpoint URL.

        For R2 ``endpoint`` may be a bare account id, for B2 the region selects
        the endpoint. A full URL is always used as given.
        """
        if endpoint and endpoint.startswith(("http://", "https://")):
            return endpoint
        if provider_type == StorageProvider.CLOUDFLARE_R2:
            if not endpoint:
                raise InvalidInput("Cloudflare R2 requires an account id or endpoint")
            return CLOUDFLARE_R2_ENDPOINT_TEMPLATE.format(account_id=endpoint)
        if provider_type == StorageProvider.BACKBLAZE_B2:
            if not region:
                raise InvalidInput("Backblaze B2 requires a region")
            return BACKBLAZE_B2_ENDPOINT_TEMPLATE.format(region=region)
        if provider_type == StorageProvider.AWS_S3 and region:
            return AWS_S3_ENDPOINT_TEMPLATE.format(region=region)
        return None

    @staticmethod
    def create(provider_type: StorageProvider, endpoint: Optional[str] = None,
               region: Optional[str] = None) -> BlobStore:
        """
        Create an unauthenticated blob store instance.

        Raises:
            InvalidInput: If provider type is not supported
        """
        if provider_type == StorageProvider.LOCAL:
            return LocalStorageProvider()

        if provider_type in (StorageProvider.AWS_S3, StorageProvider.CLOUDFLARE_R2,
                             StorageProvider.BACKBLAZE_B2):
            endpoint_url = StorageProviderFactory.endpoint_for(provider_type, endpoint, region)
            return S3StorageProvider(endpoint_url=endpoint_url, region=region)

        raise InvalidInput(f"Unknown provider type: {provider_type}")

    @staticmethod
    def connect(provider_type: StorageProvider, credentials: Dict[str, Any]) -> BlobStore:
        """Create and authenticate a blob store, failing loudly."""
        store = StorageProviderFactory.create(
            provider_type, credentials.get('endpoint'), credentials.get('region')
        )
        if not store.authenticate(credentials):
            raise StorageFailure(
                f"Failed to authenticate {StorageProviderFactory.get_provider_name(provider_type)} storage"
            )
        return store

    @staticmethod
    def get_provider_name(provider_type: StorageProvider) -> str:
        """Get human-readable provider name."""
        names = {
            StorageProvider.LOCAL: "Local Filesystem",
            StorageProvider.CLOUDFLARE_R2: "Cloudflare R2",
            StorageProvider.BACKBLAZE_B2: "Backblaze B2",
            StorageProvider.AWS_S3: "Amazon S3",
        }
        return names.get(provider_type, "Unknown")

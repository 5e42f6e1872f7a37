"""Shared Image Gallery and resource group operations for image-build prep.

ImageGalleryProvider is the protocol image_prep depends on;
AzureImageGalleryProvider implements it with azure-mgmt-resource and
azure-mgmt-compute. "Not found" is returned as None/False/[] and other SDK
failures surface as ProviderError (see providers.call_sdk).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from azure.core.exceptions import ResourceNotFoundError
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.compute.models import (
    Gallery,
    GalleryImage,
    GalleryImageIdentifier,
    GalleryUpdate,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import ResourceGroup, ResourceGroupPatchable

from avdops.providers import call_sdk, resource_group_from_id

logger = logging.getLogger(__name__)

IMAGE_PUBLISHER = "MicrosoftWindowsDesktop"
IMAGE_OFFER = "windows-11"


@dataclass
class ResourceGroupInfo:
    name: str
    location: str | None = None
    tags: dict[str, str] = field(default_factory=dict)


@dataclass
class GalleryInfo:
    name: str
    resource_group: str
    location: str | None = None


@runtime_checkable
class ImageGalleryProvider(Protocol):
    """Read and mutate the resources an image build needs."""

    def find_gallery(self, gallery_name: str) -> GalleryInfo | None:
        """Locate a gallery by name anywhere in the subscription."""
        ...

    def get_resource_group(self, name: str) -> ResourceGroupInfo | None: ...

    def list_resource_groups_by_tag(self, tag_name: str, tag_value: str) -> list[str]: ...

    def gallery_exists(self, resource_group: str, gallery_name: str) -> bool: ...

    def image_definition_exists(
        self, resource_group: str, gallery_name: str, definition: str
    ) -> bool: ...

    def list_image_versions(
        self, resource_group: str, gallery_name: str, definition: str
    ) -> list[str]: ...

    def create_resource_group(self, name: str, location: str, tags: dict[str, str]) -> None: ...

    def update_resource_group_tags(self, name: str, tags: dict[str, str]) -> None: ...

    def delete_resource_group(self, name: str) -> None:
        """Start deletion without waiting for it to finish."""
        ...

    def create_gallery(
        self, resource_group: str, gallery_name: str, location: str, tags: dict[str, str]
    ) -> None: ...

    def update_gallery_tags(
        self, resource_group: str, gallery_name: str, tags: dict[str, str]
    ) -> None: ...

    def delete_image_version(
        self, resource_group: str, gallery_name: str, definition: str, version: str
    ) -> None: ...

    def delete_image_definition(
        self, resource_group: str, gallery_name: str, definition: str
    ) -> None:
        """Start deletion; callers confirm with image_definition_exists."""
        ...

    def create_image_definition(
        self,
        resource_group: str,
        gallery_name: str,
        definition: str,
        location: str,
        sku: str,
        tags: dict[str, str],
    ) -> None: ...


class AzureImageGalleryProvider:
    """ImageGalleryProvider backed by the resource and compute management SDKs."""

    def __init__(
        self,
        credential: Any,
        subscription_id: str,
        resource_client: Any = None,
        compute_client: Any = None,
    ):
        self.subscription_id = subscription_id
        self.resources = resource_client or ResourceManagementClient(credential, subscription_id)
        self.compute = compute_client or ComputeManagementClient(credential, subscription_id)

    def find_gallery(self, gallery_name: str) -> GalleryInfo | None:
        galleries = call_sdk("Failed to list galleries", lambda: list(self.compute.galleries.list()))
        for gallery in galleries:
            if gallery.name == gallery_name:
                resource_group = resource_group_from_id(getattr(gallery, "id", None))
                if resource_group:
                    return GalleryInfo(
                        name=gallery.name,
                        resource_group=resource_group,
                        location=getattr(gallery, "location", None),
                    )
        return None

    def get_resource_group(self, name: str) -> ResourceGroupInfo | None:
        try:
            group = call_sdk(
                f"Failed to read resource group {name}", self.resources.resource_groups.get, name
            )
        except ResourceNotFoundError:
            return None
        return ResourceGroupInfo(name=group.name, location=group.location, tags=dict(group.tags or {}))

    def list_resource_groups_by_tag(self, tag_name: str, tag_value: str) -> list[str]:
        groups = call_sdk(
            "Failed to list resource groups",
            lambda: list(
                self.resources.resource_groups.list(
                    filter=f"tagName eq '{tag_name}' and tagValue eq '{tag_value}'"
                )
            ),
        )
        return [g.name for g in groups if g.name]

    def gallery_exists(self, resource_group: str, gallery_name: str) -> bool:
        try:
            call_sdk(
                f"Failed to read gallery {gallery_name}",
                self.compute.galleries.get,
                resource_group_name=resource_group,
                gallery_name=gallery_name,
            )
        except ResourceNotFoundError:
            return False
        return True

    def image_definition_exists(
        self, resource_group: str, gallery_name: str, definition: str
    ) -> bool:
        try:
            call_sdk(
                f"Failed to read image definition {definition}",
                self.compute.gallery_images.get,
                resource_group_name=resource_group,
                gallery_name=gallery_name,
                gallery_image_name=definition,
            )
        except ResourceNotFoundError:
            return False
        return True

    def list_image_versions(
        self, resource_group: str, gallery_name: str, definition: str
    ) -> list[str]:
        try:
            versions = call_sdk(
                f"Failed to list versions of {definition}",
                lambda: list(
                    self.compute.gallery_image_versions.list_by_gallery_image(
                        resource_group_name=resource_group,
                        gallery_name=gallery_name,
                        gallery_image_name=definition,
                    )
                ),
            )
        except ResourceNotFoundError:
            return []
        return [v.name for v in versions if v.name]

    def create_resource_group(self, name: str, location: str, tags: dict[str, str]) -> None:
        call_sdk(
            f"Failed to create resource group {name}",
            self.resources.resource_groups.create_or_update,
            name,
            ResourceGroup(location=location, tags=tags),
        )

    def update_resource_group_tags(self, name: str, tags: dict[str, str]) -> None:
        existing = self.get_resource_group(name)
        merged = {**(existing.tags if existing else {}), **tags}
        call_sdk(
            f"Failed to tag resource group {name}",
            self.resources.resource_groups.update,
            name,
            ResourceGroupPatchable(tags=merged),
        )

    def delete_resource_group(self, name: str) -> None:
        try:
            call_sdk(
                f"Failed to delete resource group {name}",
                self.resources.resource_groups.begin_delete,
                name,
            )
        except ResourceNotFoundError:
            logger.debug(f"Resource group already gone: {name}")

    def create_gallery(
        self, resource_group: str, gallery_name: str, location: str, tags: dict[str, str]
    ) -> None:
        call_sdk(
            f"Failed to create gallery {gallery_name}",
            lambda: self.compute.galleries.begin_create_or_update(
                resource_group_name=resource_group,
                gallery_name=gallery_name,
                gallery=Gallery(location=location, tags=tags),
            ).result(),
        )

    def update_gallery_tags(
        self, resource_group: str, gallery_name: str, tags: dict[str, str]
    ) -> None:
        gallery = call_sdk(
            f"Failed to read gallery {gallery_name}",
            self.compute.galleries.get,
            resource_group_name=resource_group,
            gallery_name=gallery_name,
        )
        merged = {**(getattr(gallery, "tags", None) or {}), **tags}
        call_sdk(
            f"Failed to tag gallery {gallery_name}",
            lambda: self.compute.galleries.begin_update(
                resource_group_name=resource_group,
                gallery_name=gallery_name,
                gallery=GalleryUpdate(tags=merged),
            ).result(),
        )

    def delete_image_version(
        self, resource_group: str, gallery_name: str, definition: str, version: str
    ) -> None:
        try:
            call_sdk(
                f"Failed to delete image version {version}",
                lambda: self.compute.gallery_image_versions.begin_delete(
                    resource_group_name=resource_group,
                    gallery_name=gallery_name,
                    gallery_image_name=definition,
                    gallery_image_version_name=version,
                ).result(),
            )
        except ResourceNotFoundError:
            logger.debug(f"Image version already gone: {definition}/{version}")

    def delete_image_definition(
        self, resource_group: str, gallery_name: str, definition: str
    ) -> None:
        try:
            call_sdk(
                f"Failed to delete image definition {definition}",
                self.compute.gallery_images.begin_delete,
                resource_group_name=resource_group,
                gallery_name=gallery_name,
                gallery_image_name=definition,
            )
        except ResourceNotFoundError:
            logger.debug(f"Image definition already gone: {definition}")

    def create_image_definition(
        self,
        resource_group: str,
        gallery_name: str,
        definition: str,
        location: str,
        sku: str,
        tags: dict[str, str],
    ) -> None:
        image = GalleryImage(
            location=location,
            tags=tags,
            os_type="Windows",
            os_state="Generalized",
            hyper_v_generation="V2",
            identifier=GalleryImageIdentifier(publisher=IMAGE_PUBLISHER, offer=IMAGE_OFFER, sku=sku),
        )
        call_sdk(
            f"Failed to create image definition {definition}",
            lambda: self.compute.gallery_images.begin_create_or_update(
                resource_group_name=resource_group,
                gallery_name=gallery_name,
                gallery_image_name=definition,
                gallery_image=image,
            ).result(),
        )


__all__ = [
    "AzureImageGalleryProvider",
    "GalleryInfo",
    "IMAGE_OFFER",
    "IMAGE_PUBLISHER",
    "ImageGalleryProvider",
    "ResourceGroupInfo",
]

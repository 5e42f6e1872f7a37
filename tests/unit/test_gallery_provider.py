"""Tests for AzureImageGalleryProvider with mocked management clients."""

from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError

from avdops.errors import ProviderError
from avdops.gallery_provider import (
    IMAGE_OFFER,
    IMAGE_PUBLISHER,
    AzureImageGalleryProvider,
    ImageGalleryProvider,
)
from tests.mocks.avd_mock import FakeGalleryProvider

GALLERY_ID = (
    "/subscriptions/0000/resourceGroups/rg-images/providers/"
    "Microsoft.Compute/galleries/avdgallery"
)


@pytest.fixture
def resource_client():
    return Mock()


@pytest.fixture
def compute_client():
    return Mock()


@pytest.fixture
def provider(resource_client, compute_client):
    return AzureImageGalleryProvider(
        credential=None,
        subscription_id="0000",
        resource_client=resource_client,
        compute_client=compute_client,
    )


def test_fake_satisfies_protocol():
    assert isinstance(FakeGalleryProvider(), ImageGalleryProvider)


class TestReads:
    def test_find_gallery(self, provider, compute_client):
        compute_client.galleries.list.return_value = [
            SimpleNamespace(name="other", id=GALLERY_ID, location="westeurope"),
            SimpleNamespace(name="avdgallery", id=GALLERY_ID, location="northeurope"),
        ]

        gallery = provider.find_gallery("avdgallery")

        assert gallery.resource_group == "rg-images"
        assert gallery.location == "northeurope"

    def test_find_gallery_missing(self, provider, compute_client):
        compute_client.galleries.list.return_value = []

        assert provider.find_gallery("avdgallery") is None

    def test_get_resource_group(self, provider, resource_client):
        resource_client.resource_groups.get.return_value = SimpleNamespace(
            name="rg-images", location="westeurope", tags=None
        )

        group = provider.get_resource_group("rg-images")

        assert group.location == "westeurope"
        assert group.tags == {}

    def test_get_resource_group_missing(self, provider, resource_client):
        resource_client.resource_groups.get.side_effect = ResourceNotFoundError("nope")

        assert provider.get_resource_group("rg-images") is None

    def test_list_resource_groups_by_tag(self, provider, resource_client):
        resource_client.resource_groups.list.return_value = [SimpleNamespace(name="rg-staging-1")]

        names = provider.list_resource_groups_by_tag("Purpose", "AIB staging resources")

        assert names == ["rg-staging-1"]
        assert resource_client.resource_groups.list.call_args.kwargs["filter"] == (
            "tagName eq 'Purpose' and tagValue eq 'AIB staging resources'"
        )

    def test_existence_checks(self, provider, compute_client):
        compute_client.gallery_images.get.side_effect = ResourceNotFoundError("nope")

        assert provider.gallery_exists("rg-images", "avdgallery") is True
        assert provider.image_definition_exists("rg-images", "avdgallery", "def") is False

    def test_list_image_versions(self, provider, compute_client):
        compute_client.gallery_image_versions.list_by_gallery_image.return_value = [
            SimpleNamespace(name="1.0"),
            SimpleNamespace(name="1.1"),
        ]

        assert provider.list_image_versions("rg-images", "avdgallery", "def") == ["1.0", "1.1"]

    def test_read_failure_raises_provider_error(self, provider, compute_client):
        compute_client.galleries.list.side_effect = HttpResponseError(message="Forbidden")

        with pytest.raises(ProviderError, match="Failed to list galleries"):
            provider.find_gallery("avdgallery")


class TestMutations:
    def test_create_resource_group(self, provider, resource_client):
        provider.create_resource_group("rg-images", "westeurope", {"SecurityControl": "Ignore"})

        name, group = resource_client.resource_groups.create_or_update.call_args.args
        assert name == "rg-images"
        assert group.location == "westeurope"
        assert group.tags == {"SecurityControl": "Ignore"}

    def test_update_tags_merges_existing(self, provider, resource_client):
        resource_client.resource_groups.get.return_value = SimpleNamespace(
            name="rg-images", location="westeurope", tags={"Owner": "vdi-team"}
        )

        provider.update_resource_group_tags("rg-images", {"SecurityControl": "Ignore"})

        _, patch = resource_client.resource_groups.update.call_args.args
        assert patch.tags == {"Owner": "vdi-team", "SecurityControl": "Ignore"}

    def test_delete_resource_group_does_not_wait(self, provider, resource_client):
        provider.delete_resource_group("rg-staging-1")

        resource_client.resource_groups.begin_delete.assert_called_once_with("rg-staging-1")
        resource_client.resource_groups.begin_delete.return_value.result.assert_not_called()

    def test_delete_missing_resource_group_is_quiet(self, provider, resource_client):
        resource_client.resource_groups.begin_delete.side_effect = ResourceNotFoundError("gone")

        provider.delete_resource_group("rg-staging-1")

    def test_create_image_definition(self, provider, compute_client):
        provider.create_image_definition(
            "rg-images", "avdgallery", "def-64gb", "westeurope", "win11-25h2-ent-64gb", {}
        )

        kwargs = compute_client.gallery_images.begin_create_or_update.call_args.kwargs
        image = kwargs["gallery_image"]
        assert kwargs["gallery_image_name"] == "def-64gb"
        assert image.identifier.publisher == IMAGE_PUBLISHER
        assert image.identifier.offer == IMAGE_OFFER
        assert image.identifier.sku == "win11-25h2-ent-64gb"
        assert image.hyper_v_generation == "V2"
        compute_client.gallery_images.begin_create_or_update.return_value.result.assert_called_once()

    def test_update_gallery_tags(self, provider, compute_client):
        compute_client.galleries.get.return_value = SimpleNamespace(tags={"Owner": "vdi-team"})

        provider.update_gallery_tags("rg-images", "avdgallery", {"SecurityControl": "Ignore"})

        update = compute_client.galleries.begin_update.call_args.kwargs["gallery"]
        assert update.tags == {"Owner": "vdi-team", "SecurityControl": "Ignore"}

    def test_delete_image_version_waits(self, provider, compute_client):
        provider.delete_image_version("rg-images", "avdgallery", "def", "1.0")

        compute_client.gallery_image_versions.begin_delete.return_value.result.assert_called_once()

    def test_create_failure_raises(self, provider, compute_client):
        compute_client.galleries.begin_create_or_update.side_effect = HttpResponseError(
            message="InvalidLocation"
        )

        with pytest.raises(ProviderError, match="Failed to create gallery"):
            provider.create_gallery("rg-images", "avdgallery", "nowhere", {})

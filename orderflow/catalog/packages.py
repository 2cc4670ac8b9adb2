"""Service package management.

Packages are read by the workflow when an order is created and their
counters are bumped on order creation and completion; everything else
about them is managed here by their creator.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, Field

from orderflow.errors import NotFoundError, NotFoundOrUnauthorizedError
from orderflow.models.schemas import Money, ServicePackage
from orderflow.models.stores import CatalogStore, PackageStore
from orderflow.utils.logger import get_logger

log = get_logger(__name__, component="catalog")

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    return _SLUG_STRIP.sub("-", text.lower()).strip("-") or "service"


class PackageDraft(BaseModel):
    """Fields a creator supplies when publishing a package."""

    catalog_item_id: str
    name: str = Field(min_length=1)
    description: str = ""
    price: Money
    delivery_days: int = Field(ge=1)
    revisions: int = Field(default=0, ge=0)
    features: list[str] = Field(default_factory=list)
    requirements: str = ""


class PackageService:
    def __init__(self, packages: PackageStore, catalog: CatalogStore) -> None:
        self._packages = packages
        self._catalog = catalog

    async def create_package(self, creator_id: str, draft: PackageDraft) -> ServicePackage:
        """Publish a package on one of the creator's own catalog items."""
        item = await self._catalog.get(draft.catalog_item_id)
        if item is None or item.creator_id != creator_id:
            raise NotFoundOrUnauthorizedError("Catalog item not found or unauthorized")

        package = ServicePackage(
            creator_id=creator_id,
            slug=await self._unique_slug(draft.name),
            **draft.model_dump(),
        )
        await self._packages.insert(package)
        log.info(
            "catalog.package_created",
            package_id=package.id,
            creator_id=creator_id,
            price=str(package.price),
        )
        return package

    async def get_package_by_slug(self, slug: str) -> ServicePackage:
        """Public lookup of an active package by its slug."""
        package = await self._packages.get_by_slug(slug)
        if package is None:
            raise NotFoundError("Service not found")
        return package

    async def list_creator_packages(self, creator_id: str) -> list[ServicePackage]:
        return await self._packages.list_by_creator(creator_id)

    async def list_packages_for_item(self, catalog_item_id: str) -> list[ServicePackage]:
        return await self._packages.list_active_for_item(catalog_item_id)

    async def set_active(self, package_id: str, creator_id: str, active: bool) -> ServicePackage:
        package = await self._packages.get(package_id)
        if package is None or package.creator_id != creator_id:
            raise NotFoundOrUnauthorizedError("Service package not found or unauthorized")
        await self._packages.set_active(package_id, active)
        package.is_active = active
        log.info("catalog.package_toggled", package_id=package_id, active=active)
        return package

    async def _unique_slug(self, name: str) -> str:
        base = slugify(name)
        slug, counter = base, 1
        while await self._packages.slug_exists(slug):
            slug = f"{base}-{counter}"
            counter += 1
        return slug

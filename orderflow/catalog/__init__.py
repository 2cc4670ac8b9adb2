"""Creator-published service packages that orders are created from."""

from orderflow.catalog.packages import PackageService

__all__ = ["PackageService"]

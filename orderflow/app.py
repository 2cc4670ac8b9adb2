"""Assemble the stores, engine, and services around one ``Database``."""

from __future__ import annotations

from dataclasses import dataclass

from config.settings import Settings
from orderflow.catalog.packages import PackageService
from orderflow.models.database import Database
from orderflow.models.stores import CatalogStore, OrderStore, PackageStore, UserDirectory
from orderflow.notifications.dispatcher import NotificationDispatcher
from orderflow.notifications.sinks import DatabaseNotificationSink, NotificationSink
from orderflow.orchestrator.assignment import AdminAssignmentService
from orderflow.orchestrator.disputes import DisputeResolutionService
from orderflow.orchestrator.engine import OrderWorkflowEngine
from orderflow.orchestrator.payments import PaymentGateway, PaymentService, gateway_from_settings


@dataclass
class Services:
    engine: OrderWorkflowEngine
    disputes: DisputeResolutionService
    assignment: AdminAssignmentService
    packages: PackageService
    payments: PaymentService
    sink: NotificationSink


def build_services(
    db: Database,
    settings: Settings,
    *,
    sink: NotificationSink | None = None,
    gateway: PaymentGateway | None = None,
) -> Services:
    """Wire every service over *db*.

    Notifications default to the database sink and payments to the Stripe
    gateway built from *settings* (disabled when no key is set).
    """
    sink = sink or DatabaseNotificationSink(db)
    if gateway is None:
        gateway = gateway_from_settings(settings)
    catalog = CatalogStore(db)
    package_store = PackageStore(db)
    engine = OrderWorkflowEngine(
        orders=OrderStore(db),
        packages=package_store,
        users=UserDirectory(db),
        catalog=catalog,
        notifier=NotificationDispatcher(sink, timeout=settings.notification_timeout_seconds),
        settings=settings,
    )
    return Services(
        engine=engine,
        disputes=DisputeResolutionService(engine),
        assignment=AdminAssignmentService(engine),
        packages=PackageService(package_store, catalog),
        payments=PaymentService(engine, gateway),
        sink=sink,
    )

"""HTTP-facing layer: request validation, role checks, error envelopes."""

from orderflow.api.controller import OrderController
from orderflow.api.routes import create_app

__all__ = ["OrderController", "create_app"]

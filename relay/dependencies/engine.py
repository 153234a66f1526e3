"""
Delivery engine dependency.

The engine is built once in the application lifespan and kept on
app.state; routes receive it through this dependency so tests can
override it.
"""
from fastapi import Request

from relay.services.webhook_service import WebhookDeliveryEngine


def get_engine(request: Request) -> WebhookDeliveryEngine:
    return request.app.state.engine

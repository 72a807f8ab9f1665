"""Service wiring for the API routes."""
from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException, status

from hotspot_bridge.config import get_settings
from hotspot_bridge.core.coordinator import AccessHandoffCoordinator
from hotspot_bridge.core.pull_queue import PullQueue, build_pull_queue
from hotspot_bridge.core.state_machine import PaymentStateMachine
from hotspot_bridge.integrations.daraja_client import DarajaClient, PaymentGateway

settings = get_settings()


@lru_cache()
def get_gateway() -> PaymentGateway:
    return DarajaClient(get_settings())


@lru_cache()
def get_pull_queue() -> PullQueue:
    return build_pull_queue(get_settings())


@lru_cache()
def get_coordinator() -> AccessHandoffCoordinator:
    """Process-wide coordinator; it owns the pull queue."""
    state_machine = PaymentStateMachine(get_gateway(), settings=get_settings())
    return AccessHandoffCoordinator(state_machine, get_pull_queue())


def require_admin_key(
    api_key: Optional[str] = Header(default=None, alias=settings.api_key_header),
) -> None:
    """Reject admin calls without the configured key. Open when no key is configured."""
    expected = get_settings().admin_api_key
    if expected and api_key != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

"""
FastAPI dependencies resolving the components built in the app lifespan.
"""

from fastapi import Request

from ledgerbridge.connectors.kledo_client import KledoClient
from ledgerbridge.connectors.oauth_client import KledoOAuthClient
from ledgerbridge.connectors.token_manager import TokenManager
from ledgerbridge.connectors.webhook_handler import XenditWebhookHandler
from ledgerbridge.connectors.xendit_client import XenditClient
from ledgerbridge.services.transfer_service import TransferOrchestrator
from ledgerbridge.storage.base import StorageBackend


def get_storage_backend(request: Request) -> StorageBackend:
    return request.app.state.storage


def get_oauth_client(request: Request) -> KledoOAuthClient:
    return request.app.state.oauth_client


def get_token_manager(request: Request) -> TokenManager:
    return request.app.state.token_manager


def get_kledo_client(request: Request) -> KledoClient:
    return request.app.state.kledo_client


def get_xendit_client(request: Request) -> XenditClient:
    return request.app.state.xendit_client


def get_orchestrator(request: Request) -> TransferOrchestrator:
    return request.app.state.orchestrator


def get_webhook_handler(request: Request) -> XenditWebhookHandler:
    return request.app.state.webhook_handler

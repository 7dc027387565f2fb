"""
api/routes/v1/connections.py -- Provider connections for the signed-in user's account.

Routes:
  GET    /api/v1/connections                          -- list the account's connections
  GET    /api/v1/connections/{provider}/consent       -- redirect to the provider's consent page
  GET    /api/v1/connections/{provider}/callback      -- code exchange -> store the connection
  POST   /api/v1/connections/{connection_id}/refresh  -- refresh the stored provider tokens
  DELETE /api/v1/connections/{connection_id}          -- remove a connection

Every route requires auth. Connections are confined to the caller's account;
another account's connection id answers 403. Provider tokens are never
returned, only their metadata.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import ConnectionResponse
from auth.connections import ConnectionService
from auth.dependencies import get_current_user
from auth.models import AppUser
from auth.oauth import get_enabled_providers
from core.config import get_settings

logger = logging.getLogger("tenantgate.api.connections")

router = APIRouter()


def _check_provider(provider: str) -> None:
    if provider not in {p["name"] for p in get_enabled_providers()}:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": f"Unknown provider {provider!r}."},
        )


def _provider_error(provider: str) -> HTTPException:
    return HTTPException(
        status_code=502,
        detail={"code": "provider_error", "message": f"{provider} refused the token request."},
    )


@router.get("/connections", response_model=list[ConnectionResponse])
async def list_connections(
    request: Request,
    current_user: AppUser = Depends(get_current_user),
) -> list[ConnectionResponse]:
    connections: ConnectionService = request.app.state.connections
    return [ConnectionResponse.from_connection(c) for c in connections.list_connections(current_user.account_id)]


@router.get("/connections/{provider}/consent", name="connection_consent")
async def connection_consent(
    request: Request,
    provider: str,
    current_user: AppUser = Depends(get_current_user),
):
    """Send the browser to the provider asking for offline access and the configured scopes."""
    _check_provider(provider)
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("connection_callback", provider=provider))
    params = {"access_type": "offline", "prompt": "consent"}
    scope = get_settings().connection_scopes.get(provider)
    if scope:
        params["scope"] = scope
    return await client.authorize_redirect(request, redirect_uri, **params)


@router.get("/connections/{provider}/callback", name="connection_callback", response_model=ConnectionResponse)
async def connection_callback(
    request: Request,
    provider: str,
    current_user: AppUser = Depends(get_current_user),
) -> ConnectionResponse:
    """Exchange the code and save the tokens as the caller's connection to provider."""
    _check_provider(provider)
    connections: ConnectionService = request.app.state.connections
    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError as exc:
        logger.exception("Connection code exchange failed for provider %r", provider)
        raise _provider_error(provider) from exc

    connection = connections.connection_from_token(
        token, provider, current_user, scope=get_settings().connection_scopes.get(provider)
    )
    connection = connections.persist_connection(connection, persisted_by=current_user.email)
    return ConnectionResponse.from_connection(connection)


@router.post("/connections/{connection_id}/refresh", response_model=ConnectionResponse)
async def refresh_connection(
    request: Request,
    connection_id: int,
    current_user: AppUser = Depends(get_current_user),
) -> ConnectionResponse:
    connections: ConnectionService = request.app.state.connections
    connection = connections.require_connection(connection_id, acting_account_id=current_user.account_id)
    _check_provider(connection.provider_name)
    client = request.app.state.oauth.create_client(connection.provider_name)
    try:
        connection = await connections.refresh_connection(client, connection, refreshed_by=current_user.email)
    except OAuthError as exc:
        logger.exception("Refreshing connection %s with %s failed", connection_id, connection.provider_name)
        raise _provider_error(connection.provider_name) from exc
    return ConnectionResponse.from_connection(connection)


@router.delete("/connections/{connection_id}", status_code=204)
async def delete_connection(
    request: Request,
    connection_id: int,
    current_user: AppUser = Depends(get_current_user),
) -> Response:
    connections: ConnectionService = request.app.state.connections
    connections.delete_connection(
        connection_id, deleted_by=current_user.email, acting_account_id=current_user.account_id
    )
    return Response(status_code=204)

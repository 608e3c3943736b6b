"""SYNCWARD — Platform Connection Routes."""

from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from syncward.connectors.meta.client import MetaClient
from syncward.core.errors import MetaAPIError
from syncward.core.logging import get_logger
from syncward.database import get_db_session
from syncward.models.fact_models import Connection
from syncward.models.schemas import ConnectionIn

logger = get_logger("api.connections")

router = APIRouter(prefix="/connections", tags=["Connections"])


def _public(connection: Connection) -> dict:
    data = connection.model_dump(exclude={"access_token"})
    data["entity_types"] = connection.entity_type_list()
    data["has_token"] = bool(connection.access_token)
    return data


def _load(session: Session, connection_id: str) -> Connection:
    connection = session.get(Connection, connection_id)
    if connection is None:
        raise HTTPException(status_code=404, detail=f"Connection {connection_id} not found")
    return connection


@router.post("", status_code=201)
async def upsert_connection(body: ConnectionIn, session: Session = Depends(get_db_session)):
    """Register a connection, or update it when the id already exists."""
    connection = session.get(Connection, body.connection_id)
    if connection is not None and connection.tenant_id != body.tenant_id:
        raise HTTPException(
            status_code=409, detail="Connection id belongs to another tenant"
        )

    values = body.model_dump()
    values["entity_types"] = ",".join(body.entity_types)
    if connection is None:
        connection = Connection(**values)
    else:
        for name, value in values.items():
            setattr(connection, name, value)
    session.add(connection)
    session.commit()
    session.refresh(connection)
    logger.info(
        f"🔗 Connection saved for {connection.ad_account_id}",
        extra={"tenant_id": connection.tenant_id, "connection_id": connection.connection_id},
    )
    return _public(connection)


@router.get("")
async def list_connections(tenant_id: str, session: Session = Depends(get_db_session)) -> List[dict]:
    """A tenant's connections (tokens are never returned)."""
    connections = session.exec(
        select(Connection).where(Connection.tenant_id == tenant_id)
    ).all()
    return [_public(c) for c in connections]


@router.get("/{connection_id}/validate-token")
async def validate_token(connection_id: str, session: Session = Depends(get_db_session)):
    """Check if the connection's Meta access token is valid.

    Returns validity status, expiration, and granted scopes.
    """
    connection = _load(session, connection_id)
    client = MetaClient(access_token=connection.access_token or None)
    try:
        result = await client.validate_token()
        return {"status": "success", "connection_id": connection_id, **result}
    except MetaAPIError as e:
        raise HTTPException(status_code=400, detail=f"Token validation failed: {str(e)}")
    finally:
        await client.close()


@router.post("/{connection_id}/sync-account")
async def sync_account(connection_id: str, session: Session = Depends(get_db_session)):
    """Refresh the account's timezone from Meta.

    Day boundaries for gap detection follow the account timezone, so this
    should run once after registering a connection.
    """
    connection = _load(session, connection_id)
    client = MetaClient(access_token=connection.access_token or None)
    try:
        account = await client.get_account_info(connection.ad_account_id)
    except MetaAPIError as e:
        raise HTTPException(status_code=400, detail=f"Failed to fetch account info: {str(e)}")
    finally:
        await client.close()

    if account.get("timezone_name"):
        connection.timezone_name = account["timezone_name"]
        session.add(connection)
        session.commit()
        session.refresh(connection)
    return {"status": "success", "account": account, "connection": _public(connection)}

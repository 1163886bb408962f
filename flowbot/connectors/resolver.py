"""Credential resolver for step connectors.

Loads a user's *active* service connections once per execution and hands
the connectors an immutable snapshot. The engine never writes connections;
token refresh belongs to the onboarding side.
"""

from __future__ import annotations

import logging

from flowbot.crud import crud
from flowbot.database import SessionFactory
from flowbot.database import db_session
from flowbot.schemas.workflow import ConnectionMap
from flowbot.schemas.workflow import ServiceCredentials

logger = logging.getLogger(__name__)


class CredentialResolver:
    """Resolves a user's active connections keyed by service type.

    Usage:
        resolver = CredentialResolver(session_factory)
        connections = resolver.load(agent.user_id)
        notion = connections.get(ServiceType.NOTION)
    """

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    def load(self, user_id: str) -> ConnectionMap:
        with db_session(self.session_factory) as db:
            rows = crud.get_active_connections(db, user_id)
            connections: ConnectionMap = {}
            for row in rows:
                credentials = ServiceCredentials.model_validate(row)
                if credentials.service_type in connections:
                    # unique index should prevent this; keep the newest row
                    logger.warning(f"[CredentialResolver] Duplicate active {credentials.service_type.value} connection for user {user_id}")
                connections[credentials.service_type] = credentials
        logger.debug(f"[CredentialResolver] user={user_id} services={[s.value for s in connections]}")
        return connections

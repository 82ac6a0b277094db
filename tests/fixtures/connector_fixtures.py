"""Raw payloads as the connectors return them, plus a mocked asyncpg pool."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock
from unittest.mock import MagicMock

import pytest


@pytest.fixture
def graph_user():
    """Factory for Microsoft Graph user objects."""

    def _create_user(
        user_id: str = "4f1c2d3e-0000-4000-8000-000000000001",
        mail: str = "jane.doe@example.com",
        given_name: str = "Jane",
        surname: str = "Doe",
        account_enabled: bool = True,
        **extra,
    ):
        user = {
            "id": user_id,
            "displayName": f"{given_name} {surname}",
            "userPrincipalName": mail,
            "mail": mail,
            "givenName": given_name,
            "surname": surname,
            "department": "Finance",
            "jobTitle": "Controller",
            "accountEnabled": account_enabled,
            "createdDateTime": "2024-03-01T08:00:00Z",
            "businessPhones": ["+49 30 1234567"],
            "userType": "Member",
        }
        user.update(extra)
        return user

    return _create_user


@pytest.fixture
def ldap_entry():
    """Factory for LDAP entries shaped like ldap3's entry_attributes_as_dict plus dn."""

    def _create_entry(
        cn: str = "Jane Doe",
        mail: str = "jane.doe@example.com",
        user_account_control: str = "512",
        **extra,
    ):
        given_name, _, surname = cn.partition(" ")
        entry = {
            "dn": f"CN={cn},OU=Staff,DC=example,DC=com",
            "cn": [cn],
            "sn": [surname],
            "givenName": [given_name],
            "mail": [mail],
            "department": ["Finance"],
            "userAccountControl": [user_account_control],
            "memberOf": [
                "CN=Staff,OU=Groups,DC=example,DC=com",
                "CN=Finance,OU=Groups,DC=example,DC=com",
            ],
        }
        entry.update(extra)
        return entry

    return _create_entry


@pytest.fixture
def mock_db_pool():
    """
    IdentityDBPool stand-in whose acquire() yields one AsyncMock connection.

    The connection is exposed as ``pool.conn``; its transaction() is an async context
    manager that does nothing.
    """
    conn = AsyncMock()

    @asynccontextmanager
    async def _transaction():
        yield

    conn.transaction = MagicMock(side_effect=lambda: _transaction())

    @asynccontextmanager
    async def _acquire():
        yield conn

    pool = MagicMock()
    pool.acquire = MagicMock(side_effect=lambda: _acquire())
    pool.conn = conn
    return pool

"""
LDAP Connector

Paged subtree search for user entries. ldap3 is synchronous, so every call runs in a
worker thread through asyncio.to_thread.
"""

import asyncio
from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from ldap3 import BASE
from ldap3 import NONE
from ldap3 import SUBTREE
from ldap3 import Connection
from ldap3 import Server
from ldap3.core.exceptions import LDAPException
from loguru import logger

from identity_sync.connectors.base import RawRecord
from identity_sync.connectors.base import SourceConnector
from identity_sync.enums import Source
from identity_sync.errors import NotConfigured
from identity_sync.errors import SourceConnectionError
from identity_sync.models.sync import ConnectionReport

USER_ATTRIBUTES = [
    "cn",
    "sn",
    "givenName",
    "displayName",
    "mail",
    "telephoneNumber",
    "mobile",
    "title",
    "department",
    "company",
    "o",
    "physicalDeliveryOfficeName",
    "memberOf",
    "employeeID",
    "employeeNumber",
    "userAccountControl",
    "whenCreated",
    "whenChanged",
]

# Simple paged results control (RFC 2696)
PAGED_RESULTS_OID = "1.2.840.113556.1.4.319"


def generalized_time(value: datetime) -> str:
    """Format a timestamp as LDAP GeneralizedTime in UTC (e.g. 20240131120000Z)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y%m%d%H%M%SZ")


def _next_cookie(connection: Connection) -> Optional[bytes]:
    controls = connection.result.get("controls") or {}
    paged = controls.get(PAGED_RESULTS_OID) or {}
    return (paged.get("value") or {}).get("cookie") or None


class LdapConnector(SourceConnector):
    """LDAP user connector (Active Directory or any RFC 4511 server)."""

    source = Source.LDAP

    def __init__(
        self,
        url: Optional[str],
        bind_dn: Optional[str],
        bind_password: Optional[str],
        base_dn: Optional[str],
        user_filter: str = "(&(objectClass=person)(mail=*))",
        page_size: int = 500,
        timeout_seconds: float = 30.0,
    ):
        self.url = url
        self.bind_dn = bind_dn
        self.bind_password = bind_password
        self.base_dn = base_dn
        self.user_filter = user_filter
        self.page_size = page_size
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings) -> "LdapConnector":
        return cls(
            url=settings.ldap_url,
            bind_dn=settings.ldap_bind_dn,
            bind_password=settings.ldap_bind_password,
            base_dn=settings.ldap_base_dn,
            user_filter=settings.ldap_user_filter,
            page_size=settings.ldap_page_size,
            timeout_seconds=settings.connector_timeout_seconds,
        )

    def is_configured(self) -> bool:
        return bool(self.url and self.bind_dn and self.bind_password and self.base_dn)

    def build_filter(self, since: Optional[datetime] = None) -> str:
        """User filter, narrowed to entries modified at or after ``since`` when given."""
        if since is None:
            return self.user_filter
        return f"(&{self.user_filter}(modifyTimestamp>={generalized_time(since)}))"

    def _connect(self) -> Connection:
        """Open and bind a connection. Caller must unbind."""
        server = Server(
            self.url,
            use_ssl=self.url.lower().startswith("ldaps://"),
            get_info=NONE,
            connect_timeout=self.timeout_seconds,
        )
        connection = Connection(
            server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.timeout_seconds,
        )
        if not connection.bind():
            result = connection.result
            connection.unbind()
            raise SourceConnectionError(
                f"LDAP bind failed: {result.get('description', 'unknown error')}", source=self.source.value
            )
        return connection

    def _search_users(self, search_filter: str) -> List[RawRecord]:
        connection = self._connect()
        records: List[RawRecord] = []
        cookie = None
        page_count = 0
        try:
            while True:
                success = connection.search(
                    search_base=self.base_dn,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=USER_ATTRIBUTES,
                    paged_size=self.page_size,
                    paged_cookie=cookie,
                )
                if not success and connection.result.get("result") not in (0, None):
                    raise SourceConnectionError(
                        f"LDAP search failed: {connection.result.get('description', 'unknown error')}",
                        source=self.source.value,
                    )

                page_count += 1
                for entry in connection.entries:
                    attributes: Dict[str, Any] = dict(entry.entry_attributes_as_dict)
                    attributes["dn"] = str(entry.entry_dn)
                    records.append(attributes)

                cookie = _next_cookie(connection)
                if not cookie:
                    break
        finally:
            connection.unbind()

        logger.debug("LDAP search finished", pages=page_count, entries=len(records))
        return records

    async def fetch(self, since: Optional[datetime] = None) -> List[RawRecord]:
        if not self.is_configured():
            raise NotConfigured("LDAP connection is not configured", source=self.source.value)

        search_filter = self.build_filter(since)
        try:
            records = await asyncio.to_thread(self._search_users, search_filter)
        except LDAPException as e:
            raise SourceConnectionError(f"LDAP error: {e}", source=self.source.value) from e

        logger.info("Fetched LDAP entries", count=len(records), incremental=since is not None)
        return records

    def _check_base_dn(self) -> Dict[str, Any]:
        connection = self._connect()
        try:
            found = connection.search(
                search_base=self.base_dn,
                search_filter="(objectClass=*)",
                search_scope=BASE,
                attributes=["objectClass"],
            )
        finally:
            connection.unbind()
        return {"server": self.url, "base_dn": self.base_dn, "base_dn_found": bool(found)}

    async def test_connection(self) -> ConnectionReport:
        if not self.is_configured():
            return ConnectionReport(success=False, details={"error": NotConfigured.code})

        try:
            details = await asyncio.to_thread(self._check_base_dn)
        except SourceConnectionError as e:
            return ConnectionReport(success=False, details={"error": e.code, "message": e.message})
        except LDAPException as e:
            return ConnectionReport(success=False, details={"error": SourceConnectionError.code, "message": str(e)})

        return ConnectionReport(success=details["base_dn_found"], details=details)

"""
Directory Connector (Microsoft Graph)

Fetches member users of one tenant with the OAuth2 client credentials flow. The token is
requested per fetch; a sync runs at most a few times a day, so nothing is cached.
"""

from datetime import datetime
from typing import List
from typing import Optional

import httpx
from loguru import logger

from identity_sync.connectors.base import RawRecord
from identity_sync.connectors.base import SourceConnector
from identity_sync.enums import Source
from identity_sync.errors import NotConfigured
from identity_sync.errors import SourceConnectionError
from identity_sync.models.sync import ConnectionReport

GRAPH_SCOPE = "https://graph.microsoft.com/.default"

SELECT_FIELDS = (
    "id",
    "displayName",
    "userPrincipalName",
    "mail",
    "department",
    "jobTitle",
    "accountEnabled",
    "createdDateTime",
    "givenName",
    "surname",
    "officeLocation",
    "mobilePhone",
    "businessPhones",
    "companyName",
    "employeeId",
    "usageLocation",
    "preferredLanguage",
    "userType",
)

# Graph caps $top at 999 for /users
PAGE_SIZE = 999
MEMBER_FILTER = "userType eq 'Member'"


class DirectoryConnector(SourceConnector):
    """Microsoft Graph user connector."""

    source = Source.DIRECTORY

    def __init__(
        self,
        tenant_id: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str],
        authority_url: str = "https://login.microsoftonline.com",
        graph_url: str = "https://graph.microsoft.com/v1.0",
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            tenant_id: Directory tenant
            client_id: App registration client ID
            client_secret: App registration secret
            authority_url: OAuth authority host
            graph_url: Graph API base URL
            timeout_seconds: Connect/read timeout for every request
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.authority_url = authority_url.rstrip("/")
        self.graph_url = graph_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @classmethod
    def from_settings(cls, settings) -> "DirectoryConnector":
        return cls(
            tenant_id=settings.directory_tenant_id,
            client_id=settings.directory_client_id,
            client_secret=settings.directory_client_secret,
            authority_url=settings.directory_authority_url,
            graph_url=settings.directory_graph_url,
            timeout_seconds=settings.connector_timeout_seconds,
        )

    def is_configured(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds), transport=self.transport)

    async def _get_token(self, client: httpx.AsyncClient) -> str:
        response = await client.post(
            f"{self.authority_url}/{self.tenant_id}/oauth2/v2.0/token",
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "scope": GRAPH_SCOPE,
            },
        )
        if response.status_code != 200:
            raise SourceConnectionError(
                f"Token request failed with status {response.status_code}", source=self.source.value
            )

        access_token = response.json().get("access_token")
        if not access_token:
            raise SourceConnectionError("Access token not found in token response", source=self.source.value)
        return access_token

    async def fetch(self, since: Optional[datetime] = None) -> List[RawRecord]:
        """
        Fetch all member users, following @odata.nextLink until exhausted.

        Graph's /users endpoint cannot filter on modification time, so ``since`` is
        ignored and every call is a full fetch.
        """
        if not self.is_configured():
            raise NotConfigured("Directory credentials are not configured", source=self.source.value)
        if since is not None:
            logger.debug("Directory source has no change filter, fetching all users", since=since.isoformat())

        users: List[RawRecord] = []
        try:
            async with self._client() as client:
                token = await self._get_token(client)
                headers = {"Authorization": f"Bearer {token}", "ConsistencyLevel": "eventual"}

                url: Optional[str] = f"{self.graph_url}/users"
                params: Optional[dict] = {
                    "$select": ",".join(SELECT_FIELDS),
                    "$top": str(PAGE_SIZE),
                    "$filter": MEMBER_FILTER,
                }
                while url:
                    response = await client.get(url, headers=headers, params=params)
                    if response.status_code != 200:
                        raise SourceConnectionError(
                            f"Graph API returned status {response.status_code}", source=self.source.value
                        )
                    data = response.json()
                    users.extend(data.get("value", []))

                    # nextLink already carries the query string
                    url = data.get("@odata.nextLink")
                    params = None

                    if url:
                        logger.debug("Fetching next page of directory users", fetched_so_far=len(users))

        except httpx.HTTPError as e:
            raise SourceConnectionError(f"Graph API request failed: {e}", source=self.source.value) from e
        except ValueError as e:
            # response.json() on a non-JSON body
            raise SourceConnectionError(f"Invalid response from Graph API: {e}", source=self.source.value) from e

        logger.info("Fetched directory users", count=len(users))
        return users

    async def test_connection(self) -> ConnectionReport:
        if not self.is_configured():
            return ConnectionReport(success=False, details={"error": NotConfigured.code})

        try:
            async with self._client() as client:
                token = await self._get_token(client)
                response = await client.get(
                    f"{self.graph_url}/users",
                    headers={"Authorization": f"Bearer {token}"},
                    params={"$top": "1", "$select": "id"},
                )
                if response.status_code != 200:
                    return ConnectionReport(
                        success=False,
                        details={"error": SourceConnectionError.code, "status_code": response.status_code},
                    )
        except SourceConnectionError as e:
            return ConnectionReport(success=False, details={"error": e.code, "message": e.message})
        except httpx.HTTPError as e:
            return ConnectionReport(success=False, details={"error": SourceConnectionError.code, "message": str(e)})

        return ConnectionReport(success=True, details={"tenant_id": self.tenant_id, "graph_url": self.graph_url})

"""Tests for sync endpoints."""

from identity_sync.enums import Source
from identity_sync.errors import SourceConnectionError
from tests.consts import API_BASE

LDAP_ENTRY = {"dn": "CN=Jane Doe,OU=Staff,DC=example,DC=com", "mail": "jane.doe@example.com", "cn": "Jane Doe"}
DIRECTORY_USER = {"id": "u1", "mail": "jane.doe@example.com", "displayName": "Jane Doe"}


class TestSyncStatus:
    def test_status_lists_every_source(self, client):
        response = client.get(f"{API_BASE}/sync/status")

        assert response.status_code == 200
        data = {item["source"]: item for item in response.json()}
        assert set(data) == {"directory", "ldap", "upload", "manual"}
        assert data["ldap"]["state"] == "idle"
        assert data["ldap"]["sync_supported"] is True
        assert data["manual"]["sync_supported"] is False

    def test_running_is_empty(self, client):
        response = client.get(f"{API_BASE}/sync/running")

        assert response.status_code == 200
        assert response.json() == []

    def test_connections(self, client, ldap_connector):
        ldap_connector.configured = False

        response = client.get(f"{API_BASE}/sync/connections")

        assert response.status_code == 200
        data = response.json()
        assert data["directory"]["success"] is True
        assert data["ldap"] == {"success": False, "details": {"error": "NotConfigured"}}


class TestSyncSource:
    def test_sync_ldap(self, client, ldap_connector):
        ldap_connector.seed(LDAP_ENTRY)

        response = client.post(f"{API_BASE}/sync/ldap", params={"triggered_by": "alice"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["job"]["status"] == "completed"
        assert data["job"]["started_by"] == "alice"
        assert data["job"]["results"]["added"] == 1

        history = client.get(f"{API_BASE}/schedules/history").json()
        assert [entry["trigger_type"] for entry in history] == ["manual"]

    def test_incremental_mode(self, client, ldap_connector):
        response = client.post(f"{API_BASE}/sync/ldap", params={"mode": "incremental"})

        assert response.status_code == 200
        assert response.json()["job"]["mode"] == "incremental"

    def test_failed_job_is_not_an_http_error(self, client, ldap_connector):
        ldap_connector.fail_with(SourceConnectionError("LDAP server unreachable"))

        response = client.post(f"{API_BASE}/sync/ldap")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["error_code"] == "ConnectionError"
        assert data["job"]["status"] == "failed"

    def test_not_configured(self, client, directory_connector):
        directory_connector.configured = False

        response = client.post(f"{API_BASE}/sync/directory")

        assert response.status_code == 400
        assert response.json()["error"] == "NotConfigured"

    def test_pushed_source_cannot_be_synced(self, client):
        response = client.post(f"{API_BASE}/sync/upload")

        assert response.status_code == 400
        assert response.json() == {
            "error": "NoSyncSupported",
            "detail": "Source 'upload' does not support sync",
            "source": "upload",
        }

    def test_unknown_source(self, client):
        response = client.post(f"{API_BASE}/sync/crm")

        assert response.status_code == 422

    def test_sync_all(self, client, ldap_connector, directory_connector):
        ldap_connector.seed(LDAP_ENTRY)
        directory_connector.seed(DIRECTORY_USER)

        response = client.post(f"{API_BASE}/sync")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        # Both sources hold the same email, so the second one to finish reports conflicts
        assert data["completed"] + data["conflicts"] == 2
        assert data["conflicts"] >= 1
        assert set(data["outcomes"]) == {"directory", "ldap"}

        history = client.get(f"{API_BASE}/schedules/history").json()
        assert sorted(entry["source"] for entry in history) == ["directory", "ldap"]
        assert {entry["trigger_type"] for entry in history} == {"manual"}


class TestCancelAndConflicts:
    def test_cancel_without_running_sync(self, client):
        response = client.delete(f"{API_BASE}/sync/ldap")

        assert response.status_code == 404
        assert response.json()["error"] == "NoSyncRunning"

    def test_conflicts(self, client, engine, ldap_connector, directory_connector):
        ldap_connector.seed(LDAP_ENTRY)
        directory_connector.seed({**DIRECTORY_USER, "mail": "JANE.DOE@example.com"})
        client.post(f"{API_BASE}/sync/ldap")
        client.post(f"{API_BASE}/sync/directory")

        response = client.get(f"{API_BASE}/conflicts")

        assert response.status_code == 200
        [conflict] = response.json()
        assert conflict["email"] == "JANE.DOE@example.com"
        assert conflict["sources"] == [Source.DIRECTORY.value, Source.LDAP.value]
        assert len(conflict["users"]) == 2

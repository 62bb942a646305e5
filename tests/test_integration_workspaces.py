"""Integration tests for workspace management and per-user assignments."""

import pytest


@pytest.fixture
def admin(signup):
    return signup("admin@example.com", role="admin", first_name="Ada")


@pytest.fixture
def workspace(client, admin):
    response = client.post(
        "/api/workspaces",
        json={"name": "Research", "description": "Papers", "color": "#10B981", "isShared": True},
        headers=admin[1],
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]["workspace"]


def _assign(client, headers, workspace_id, user_ids, access_level="member"):
    return client.post(
        f"/api/workspaces/{workspace_id}/assign-user",
        json={"userIds": user_ids, "accessLevel": access_level},
        headers=headers,
    )


class TestAdminOnly:
    def test_regular_user_cannot_create(self, client, signup):
        _, headers = signup()
        response = client.post("/api/workspaces", json={"name": "Nope"}, headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Admin access required"

    def test_regular_user_cannot_assign(self, client, signup, workspace):
        member, headers = signup()
        response = _assign(client, headers, workspace["id"], [member["id"]])
        assert response.status_code == 403


class TestWorkspaceCrud:
    def test_create_returns_owner_summary(self, workspace, admin):
        assert workspace["name"] == "Research"
        assert workspace["color"] == "#10B981"
        assert workspace["isShared"] is True
        assert workspace["ownerId"] == admin[0]["id"]
        assert workspace["accessLevel"] == "owner"
        assert workspace["chatCount"] == 0

    def test_invalid_color_rejected(self, client, admin):
        response = client.post(
            "/api/workspaces", json={"name": "Bad", "color": "blue"}, headers=admin[1]
        )
        assert response.status_code == 400

    def test_admin_lists_owned(self, client, admin, workspace):
        data = client.get("/api/workspaces", headers=admin[1]).json()["data"]
        assert [w["id"] for w in data["workspaces"]] == [workspace["id"]]
        assert data["pagination"]["total"] == 1

    def test_listing_sort_options(self, client, admin, workspace):
        client.post("/api/workspaces", json={"name": "Archive"}, headers=admin[1])
        by_name = client.get(
            "/api/workspaces?sortBy=name&sortOrder=asc", headers=admin[1]
        ).json()["data"]["workspaces"]
        assert [w["name"] for w in by_name] == ["Archive", "Research"]
        by_name = client.get(
            "/api/workspaces?sortBy=name&sortOrder=desc", headers=admin[1]
        ).json()["data"]["workspaces"]
        assert [w["name"] for w in by_name] == ["Research", "Archive"]

    def test_listing_rejects_unknown_sort(self, client, admin):
        response = client.get("/api/workspaces?sortBy=owner", headers=admin[1])
        assert response.status_code == 400
        assert response.json()["error"]["message"].startswith("sortBy must be one of")
        response = client.get("/api/workspaces?sortOrder=sideways", headers=admin[1])
        assert response.status_code == 400

    def test_details_include_recent_chats(self, client, admin, workspace):
        client.post(
            "/api/chat",
            json={"title": "Lit review", "workspaceId": workspace["id"]},
            headers=admin[1],
        )
        data = client.get(f"/api/workspaces/{workspace['id']}", headers=admin[1]).json()["data"]
        assert data["message"] == "Workspace details retrieved successfully"
        details = data["workspace"]
        assert details["chatCount"] == 1
        assert [c["title"] for c in details["recentChats"]] == ["Lit review"]

    def test_update(self, client, admin, workspace):
        response = client.put(
            f"/api/workspaces/{workspace['id']}",
            json={"name": "Research v2", "isShared": False},
            headers=admin[1],
        )
        assert response.status_code == 200
        updated = response.json()["data"]["workspace"]
        assert updated["name"] == "Research v2"
        assert updated["isShared"] is False
        assert updated["description"] == "Papers"

    def test_other_admin_cannot_see(self, client, signup, workspace):
        _, other_admin = signup("admin2@example.com", role="admin")
        response = client.get(f"/api/workspaces/{workspace['id']}", headers=other_admin)
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Workspace not found or access denied"

    def test_delete_blocked_by_active_chats(self, client, admin, workspace):
        chat_id = client.post(
            "/api/chat",
            json={"title": "Active", "workspaceId": workspace["id"]},
            headers=admin[1],
        ).json()["data"]["chat"]["id"]
        response = client.delete(f"/api/workspaces/{workspace['id']}", headers=admin[1])
        assert response.status_code == 400
        assert response.json()["error"]["message"] == (
            "Workspace contains active chats. Please archive or move them first."
        )

        client.delete(f"/api/chat/{chat_id}", headers=admin[1])
        response = client.delete(f"/api/workspaces/{workspace['id']}", headers=admin[1])
        assert response.status_code == 200
        assert response.json()["data"]["workspaceId"] == workspace["id"]


class TestAssignments:
    def test_assign_and_member_listing(self, client, signup, admin, workspace):
        member, member_headers = signup("member@example.com")
        response = _assign(client, admin[1], workspace["id"], [member["id"]], "readonly")
        assert response.status_code == 200
        results = response.json()["data"]["results"]
        assert results[0]["status"] == "assigned"
        assert results[0]["assignmentId"]

        listed = client.get("/api/workspaces", headers=member_headers).json()["data"]
        assert [(w["id"], w["accessLevel"]) for w in listed["workspaces"]] == [
            (workspace["id"], "readonly")
        ]
        details = client.get(f"/api/workspaces/{workspace['id']}", headers=member_headers)
        assert details.json()["data"]["workspace"]["accessLevel"] == "readonly"

    def test_assign_reports_each_user(self, client, signup, admin, workspace):
        member, _ = signup("member@example.com")
        _assign(client, admin[1], workspace["id"], [member["id"]])
        response = _assign(
            client,
            admin[1],
            workspace["id"],
            [member["id"], "0b7c9d2e-0000-4000-8000-000000000000"],
        )
        statuses = [r["status"] for r in response.json()["data"]["results"]]
        assert statuses == ["already_assigned", "user_not_found"]

    def test_assign_requires_user_ids(self, client, admin, workspace):
        response = _assign(client, admin[1], workspace["id"], [])
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Please provide an array of user IDs to assign"

    def test_assign_rejects_owner_level(self, client, signup, admin, workspace):
        member, _ = signup()
        response = _assign(client, admin[1], workspace["id"], [member["id"]], "owner")
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Access level must be one of: member, readonly"

    def test_available_users(self, client, signup, admin, workspace):
        assigned, _ = signup("zed@example.com", first_name="Zed")
        signup("amy@example.com", first_name="Amy")
        _assign(client, admin[1], workspace["id"], [assigned["id"]])

        users = client.get(
            f"/api/workspaces/{workspace['id']}/available-users", headers=admin[1]
        ).json()["data"]["users"]
        # Admins are never offered for assignment
        assert [u["firstName"] for u in users] == ["Amy", "Zed"]
        assert [u["isAssigned"] for u in users] == [False, True]
        assert users[1]["accessLevel"] == "member"

        found = client.get(
            f"/api/workspaces/{workspace['id']}/available-users?search=amy", headers=admin[1]
        ).json()["data"]["users"]
        assert [u["email"] for u in found] == ["amy@example.com"]

    def test_update_access_and_remove(self, client, signup, admin, workspace):
        member, _ = signup()
        _assign(client, admin[1], workspace["id"], [member["id"]])
        response = client.put(
            f"/api/workspaces/{workspace['id']}/user-access",
            json={"userId": member["id"], "accessLevel": "readonly"},
            headers=admin[1],
        )
        assert response.status_code == 200
        assert response.json()["data"]["accessLevel"] == "readonly"

        response = client.post(
            f"/api/workspaces/{workspace['id']}/remove-user",
            json={"userIds": [member["id"], member["id"]]},
            headers=admin[1],
        )
        statuses = [r["status"] for r in response.json()["data"]["results"]]
        assert statuses == ["removed", "not_found"]

    def test_update_access_for_unassigned_user(self, client, signup, admin, workspace):
        member, _ = signup()
        response = client.put(
            f"/api/workspaces/{workspace['id']}/user-access",
            json={"userId": member["id"], "accessLevel": "member"},
            headers=admin[1],
        )
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "User is not assigned to this workspace"

    def test_update_access_requires_fields(self, client, admin, workspace):
        response = client.put(
            f"/api/workspaces/{workspace['id']}/user-access", json={}, headers=admin[1]
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "User ID and access level are required"

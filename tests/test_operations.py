"""Named operations posted to /{api_path}/graphql."""

import pytest
from fastapi.testclient import TestClient

from gatehouse.api.operations import available_operations
from gatehouse.app import create_app
from gatehouse.config import AuthConfig, OAuthClient
from gatehouse.service.authorization import Resource

PASSWORD = "TestPassword123!"


def _call(client, name, variables=None, headers=None):
    return client.post(
        "/auth/graphql",
        json={"operationName": name, "variables": variables or {}},
        headers=headers,
    )


@pytest.fixture
def client():
    return TestClient(create_app())


@pytest.fixture
def token_client(configure):
    configure(AUTH_DISABLE_COOKIES=True)
    return TestClient(create_app())


class TestAvailableOperations:
    def test_defaults(self):
        names = set(available_operations(AuthConfig()))

        assert names == {
            "login_user",
            "register_user",
            "request_password_reset",
            "reset_password",
            "authenticated_user",
            "logout_user",
        }

    def test_refresh_replaces_logout_without_cookies(self):
        names = set(available_operations(AuthConfig(disable_cookies=True)))

        assert "refresh_token" in names
        assert "logout_user" not in names

    def test_features_add_operations(self):
        config = AuthConfig(
            two_factor_auth=True,
            verify_emails=True,
            roles_and_permissions=True,
            providers={"google": OAuthClient("g-id")},
        )

        names = set(available_operations(config))

        assert {
            "enable_two_factor_auth",
            "confirm_enable_two_factor_auth",
            "disable_two_factor_auth",
            "confirm_email",
            "resend_verification_email",
            "social_auth_login",
            "social_auth_register",
            "roles",
            "role",
            "insert_roles",
            "delete_permission",
            "update_permissions",
        } <= names

    def test_resource_names_follow_config(self):
        config = AuthConfig(roles_and_permissions=True, role_resource="AccessGroup")

        names = set(available_operations(config))

        assert {"access_groups", "access_group", "insert_access_groups"} <= names
        assert "roles" not in names


class TestAuthOperations:
    def test_register_and_authenticated_user(self, client):
        registered = _call(
            client, "register_user", {"object": {"email": "op@example.com", "password": PASSWORD}}
        )
        me = _call(client, "authenticated_user")

        assert registered.json()["data"]["register_user"]["user"]["email"] == "op@example.com"
        assert registered.cookies.get("gatehouse.sid")
        assert me.json()["data"]["authenticated_user"]["email"] == "op@example.com"

    def test_login_and_logout(self, client):
        _call(client, "register_user", {"email": "op@example.com", "password": PASSWORD})
        client.cookies.clear()

        login = _call(client, "login_user", {"email": "op@example.com", "password": PASSWORD})
        logout = _call(client, "logout_user")
        me = _call(client, "authenticated_user")

        assert login.status_code == 200
        assert logout.json()["data"]["logout_user"] == {"success": True}
        assert me.status_code == 403

    def test_same_errors_as_rest(self, client):
        response = _call(client, "login_user", {"email": "nobody@example.com", "password": PASSWORD})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid credentials."

    def test_unknown_operation(self, client):
        response = _call(client, "drop_everything")

        assert response.status_code == 422
        assert response.json()["error"]["details"]["errors"] == [
            {"field": "operationName", "message": "Unknown operation drop_everything."}
        ]

    def test_refresh_token_only_without_cookies(self, client):
        assert _call(client, "refresh_token", {"refresh_token": "x"}).status_code == 422

    def test_refresh_token_rotation(self, token_client):
        registered = _call(
            token_client, "register_user", {"email": "op@example.com", "password": PASSWORD}
        ).json()["data"]["register_user"]

        rotated = _call(token_client, "refresh_token", {"refresh_token": registered["refresh_token"]})
        replayed = _call(token_client, "refresh_token", {"refresh_token": registered["refresh_token"]})

        assert rotated.json()["data"]["refresh_token"]["access_token"]
        assert replayed.status_code == 401

    def test_password_reset(self, client, mailer):
        _call(client, "register_user", {"email": "op@example.com", "password": PASSWORD})

        requested = _call(client, "request_password_reset", {"email": "op@example.com"})
        token = mailer.last_body_for("op@example.com").rsplit(" ", 1)[-1]
        reset = _call(client, "reset_password", {"token": token, "password": "Another-Pass-1"})

        assert requested.json()["data"] == {"request_password_reset": True}
        assert reset.json()["data"] == {"reset_password": True}

    @pytest.mark.parametrize(
        "name, variables, field",
        [
            ("login_user", {"email": 123, "password": PASSWORD}, "email"),
            ("request_password_reset", {"email": 5}, "email"),
            ("register_user", {"email": "op@example.com", "password": 12345678}, "password"),
            ("reset_password", {"token": ["t"], "password": PASSWORD}, "token"),
        ],
    )
    def test_non_string_variables_are_rejected(self, client, name, variables, field):
        response = _call(client, name, variables)

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"
        assert response.json()["error"]["details"]["errors"][0]["field"] == field

    def test_blocked_owner_cannot_refresh(self, token_client):
        registered = _call(
            token_client, "register_user", {"email": "op@example.com", "password": PASSWORD}
        ).json()["data"]["register_user"]
        rotated = _call(
            token_client, "refresh_token", {"refresh_token": registered["refresh_token"]}
        ).json()["data"]["refresh_token"]
        _call(token_client, "refresh_token", {"refresh_token": registered["refresh_token"]})

        response = _call(token_client, "refresh_token", {"refresh_token": rotated["refresh_token"]})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid refresh token."


class TestResourceOperations:
    @pytest.fixture
    def admin_headers(self, configure):
        runtime = configure(AUTH_ROLES_AND_PERMISSIONS=True, AUTH_DISABLE_COOKIES=True)
        roles = runtime.access.seed_defaults([Resource("Role"), Resource("Permission")])
        user = runtime.store.create_user(
            "admin@example.com", role_ids=[roles["authenticated"].id, roles["admin"].id]
        )
        return {"Authorization": f"Bearer {runtime.codec.issue_access_token(user.id)}"}

    def test_bulk_insert_fetch_and_delete(self, admin_headers):
        client = TestClient(create_app())

        inserted = _call(
            client,
            "insert_roles",
            {"objects": [{"name": "Editor", "slug": "editor"}, {"name": "Viewer", "slug": "viewer"}]},
            admin_headers,
        ).json()["data"]["insert_roles"]
        ids = [r["id"] for r in inserted]
        fetched = _call(client, "roles", {}, admin_headers).json()["data"]["roles"]
        updated = _call(
            client, "update_roles", {"ids": ids, "object": {"description": "bulk"}}, admin_headers
        ).json()["data"]["update_roles"]
        deleted = _call(client, "delete_roles", {"ids": ids}, admin_headers).json()["data"]

        assert {"editor", "viewer"} <= {r["slug"] for r in fetched}
        assert [r["description"] for r in updated] == ["bulk", "bulk"]
        assert deleted == {"delete_roles": ids}

    def test_single_show_and_update(self, admin_headers):
        client = TestClient(create_app())
        created = _call(
            client, "insert_permission", {"object": {"name": "Publish", "slug": "publish:post"}}, admin_headers
        ).json()["data"]["insert_permission"]

        shown = _call(client, "permission", {"id": created["id"]}, admin_headers)
        updated = _call(
            client, "update_permission", {"id": created["id"], "object": {"name": "Publish posts"}}, admin_headers
        )

        assert shown.json()["data"]["permission"]["slug"] == "publish:post"
        assert updated.json()["data"]["update_permission"]["name"] == "Publish posts"

    def test_invalid_object(self, admin_headers):
        client = TestClient(create_app())

        response = _call(client, "insert_role", {"object": {"slug": "editor"}}, admin_headers)

        assert response.status_code == 422
        assert response.json()["error"]["details"]["errors"][0]["field"] == "name"

    def test_invalid_page_variables(self, admin_headers):
        client = TestClient(create_app())

        for variables in ({"limit": "many"}, {"limit": 0}, {"offset": -1}):
            response = _call(client, "roles", variables, admin_headers)
            assert response.status_code == 422

        response = _call(client, "insert_roles", {"objects": 7}, admin_headers)
        assert response.json()["error"]["details"]["errors"] == [
            {"field": "objects", "message": "The objects must be a list."}
        ]

    def test_permission_is_required(self, admin_headers):
        client = TestClient(create_app())

        response = _call(client, "roles")

        assert response.status_code == 403

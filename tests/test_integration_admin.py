"""Admin user management over HTTP."""

from asphaltworks.service.runtime import get_runtime


def _admin(make_user, login) -> dict:
    make_user("boss", "boss@example.com", role="admin")
    return login("boss@example.com")


class TestUserListing:
    def test_list_search_and_filters(self, client, make_user, login):
        headers = _admin(make_user, login)
        make_user("alice", "alice@example.com")
        make_user("bob", "bob@example.com", role="moderator")

        listing = client.get("/api/users", headers=headers, params={"limit": 2})
        assert listing.status_code == 200
        data = listing.json()["data"]
        assert data["pagination"]["totalItems"] == 3
        assert data["pagination"]["totalPages"] == 2
        assert len(data["items"]) == 2

        mods = client.get("/api/users", headers=headers, params={"role": "moderator"})
        assert [u["username"] for u in mods.json()["data"]["items"]] == ["bob"]

        bad_role = client.get("/api/users", headers=headers, params={"role": "root"})
        assert bad_role.status_code == 400

        found = client.get("/api/users/search", headers=headers, params={"q": "ali"})
        assert [u["email"] for u in found.json()["data"]["users"]] == ["alice@example.com"]
        assert found.headers["RateLimit-Limit"] == "20"

        too_short = client.get("/api/users/search", headers=headers, params={"q": "a"})
        assert too_short.status_code == 400

    def test_stats(self, client, make_user, login):
        headers = _admin(make_user, login)
        make_user("alice", "alice@example.com", verified=False)
        response = client.get("/api/users/stats", headers=headers)
        assert response.status_code == 200
        stats = response.json()["data"]
        assert stats["total"] == 2
        assert stats["unverified"] == 1
        assert stats["byRole"] == {"admin": 1, "user": 1}

    def test_moderator_may_list_but_not_manage(self, client, make_user, login):
        make_user("mod", "mod@example.com", role="moderator")
        target = make_user("alice", "alice@example.com")
        headers = login("mod@example.com")
        assert client.get("/api/users", headers=headers).status_code == 200
        assert client.get("/api/users/stats", headers=headers).status_code == 403
        forbidden = client.delete(f"/api/users/{target.id}", headers=headers)
        assert forbidden.status_code == 403
        assert forbidden.json()["details"]["required"] == ["admin"]

    def test_plain_user_is_forbidden(self, client, make_user, login):
        make_user()
        response = client.get("/api/users", headers=login())
        assert response.status_code == 403
        assert response.json()["code"] == "forbidden"


class TestUserManagement:
    def test_create_update_delete(self, client, make_user, login, outbox):
        headers = _admin(make_user, login)
        created = client.post(
            "/api/users",
            headers=headers,
            json={
                "username": "carla",
                "email": "carla@example.com",
                "password": "Chantier@42",
                "firstName": "Carla",
                "lastName": "Roux",
                "role": "moderator",
            },
        )
        assert created.status_code == 201, created.text
        user = created.json()["data"]["user"]
        assert user["role"] == "moderator"
        assert outbox.token("carla@example.com", "verify-email")

        updated = client.put(
            f"/api/users/{user['id']}",
            headers=headers,
            json={"permissions": ["contacts:manage"], "lastName": "Roux-Martin"},
        )
        assert updated.status_code == 200
        assert updated.json()["data"]["user"]["permissions"] == ["contacts:manage"]

        fetched = client.get(f"/api/users/{user['id']}", headers=headers)
        assert fetched.json()["data"]["user"]["lastName"] == "Roux-Martin"

        assert client.delete(f"/api/users/{user['id']}", headers=headers).status_code == 200
        assert client.get(f"/api/users/{user['id']}", headers=headers).status_code == 404

    def test_email_change_requires_new_confirmation(self, client, make_user, login, outbox):
        headers = _admin(make_user, login)
        alice = make_user("alice", "alice@example.com")
        response = client.put(
            f"/api/users/{alice.id}", headers=headers, json={"email": "alice.new@example.com"}
        )
        assert response.status_code == 200
        assert response.json()["data"]["user"]["isEmailVerified"] is False

        token = outbox.token("alice.new@example.com", "verify-email")
        assert client.get(f"/api/auth/verify-email/{token}").status_code == 200
        assert get_runtime().store.get_user(alice.id).is_email_verified

    def test_admin_may_vouch_for_new_email(self, client, make_user, login, outbox):
        headers = _admin(make_user, login)
        bob = make_user("bob", "bob@example.com")
        response = client.put(
            f"/api/users/{bob.id}",
            headers=headers,
            json={"email": "bob.new@example.com", "isEmailVerified": True},
        )
        assert response.json()["data"]["user"]["isEmailVerified"] is True
        assert outbox.to("bob.new@example.com") == []

    def test_duplicate_email_conflicts(self, client, make_user, login):
        headers = _admin(make_user, login)
        alice = make_user("alice", "alice@example.com")
        make_user("bob", "bob@example.com")
        response = client.put(
            f"/api/users/{alice.id}", headers=headers, json={"email": "bob@example.com"}
        )
        assert response.status_code == 409
        assert response.json()["details"]["field"] == "email"

    def test_admin_cannot_harm_own_account(self, client, make_user, login):
        headers = _admin(make_user, login)
        me = get_runtime().store.get_user_by_email("boss@example.com")
        assert client.delete(f"/api/users/{me.id}", headers=headers).status_code == 400
        assert client.patch(f"/api/users/{me.id}/toggle-status", headers=headers).status_code == 400
        demote = client.put(f"/api/users/{me.id}", headers=headers, json={"role": "user"})
        assert demote.status_code == 400
        deactivate = client.put(f"/api/users/{me.id}", headers=headers, json={"isActive": False})
        assert deactivate.status_code == 400

    def test_toggle_status_revokes_sessions(self, client, make_user, login):
        headers = _admin(make_user, login)
        alice = make_user("alice", "alice@example.com")
        alice_headers = login("alice@example.com")

        toggled = client.patch(f"/api/users/{alice.id}/toggle-status", headers=headers)
        assert toggled.json()["data"]["user"]["isActive"] is False
        assert client.get("/api/auth/profile", headers=alice_headers).status_code == 401

        again = client.patch(f"/api/users/{alice.id}/toggle-status", headers=headers)
        assert again.json()["data"]["user"]["isActive"] is True

    def test_reset_password_generates_temporary_password(self, client, make_user, login, outbox):
        headers = _admin(make_user, login)
        make_user("alice", "alice@example.com")
        alice = get_runtime().store.get_user_by_email("alice@example.com")

        response = client.post(f"/api/users/{alice.id}/reset-password", headers=headers)
        assert response.status_code == 200
        temporary = response.json()["data"]["temporaryPassword"]
        assert len(temporary) == 24
        assert any("reset" in m["subject"] for m in outbox.to("alice@example.com"))

        login("alice@example.com", temporary)

    def test_reset_password_with_chosen_password(self, client, make_user, login, outbox):
        headers = _admin(make_user, login)
        alice = make_user("alice", "alice@example.com")
        response = client.post(
            f"/api/users/{alice.id}/reset-password",
            headers=headers,
            json={"newPassword": "Goudron@77", "sendEmail": False},
        )
        assert response.status_code == 200
        assert "data" not in response.json()
        assert outbox.to("alice@example.com") == []
        login("alice@example.com", "Goudron@77")


class TestBulkOperations:
    def test_bulk_deactivate_skips_the_actor(self, client, make_user, login):
        headers = _admin(make_user, login)
        me = get_runtime().store.get_user_by_email("boss@example.com")
        alice = make_user("alice", "alice@example.com")
        bob = make_user("bob", "bob@example.com")

        response = client.post(
            "/api/users/bulk/deactivate",
            headers=headers,
            json={"userIds": [alice.id, bob.id, me.id, alice.id]},
        )
        assert response.json()["data"]["updated"] == 2
        assert get_runtime().store.get_user(me.id).is_active

        activated = client.post(
            "/api/users/bulk/activate", headers=headers, json={"userIds": [alice.id]}
        )
        assert activated.json()["data"]["updated"] == 1

    def test_bulk_delete(self, client, make_user, login):
        headers = _admin(make_user, login)
        alice = make_user("alice", "alice@example.com")
        response = client.post(
            "/api/users/bulk/delete",
            headers=headers,
            json={"userIds": [alice.id, "missing-id"]},
        )
        assert response.json()["data"]["deleted"] == 1

    def test_only_self_is_rejected(self, client, make_user, login):
        headers = _admin(make_user, login)
        me = get_runtime().store.get_user_by_email("boss@example.com")
        response = client.post(
            "/api/users/bulk/delete", headers=headers, json={"userIds": [me.id]}
        )
        assert response.status_code == 400

    def test_empty_list_is_invalid(self, client, make_user, login):
        headers = _admin(make_user, login)
        response = client.post("/api/users/bulk/delete", headers=headers, json={"userIds": []})
        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "userIds"

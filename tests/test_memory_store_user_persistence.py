from datetime import timedelta

from asphaltworks.storage.memory import MemoryStore
from asphaltworks.storage.models import utcnow


def test_memory_store_persists_users_and_passwords(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user(
        "persist",
        "persist@example.com",
        role="moderator",
        permissions=["contacts:manage"],
        first_name="Paul",
        last_name="Durand",
    )
    store.save_password(user.id, "hash-value", "argon2id")
    lock_until = utcnow() + timedelta(minutes=30)
    store.update_user(user.id, login_attempts=5, lock_until=lock_until)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user
    assert reloaded_user.role == "moderator"
    assert reloaded_user.permissions == ["contacts:manage"]
    assert reloaded_user.login_attempts == 5
    assert reloaded_user.lock_until == lock_until
    assert reloaded.get_password_record(user.id) == ("hash-value", "argon2id")
    assert reloaded.get_user_by_email("persist@example.com").id == user.id


def test_memory_store_persists_content_and_sequence(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    first = store.create_content("services", {"title": "Enrobé"}, slug="enrobe")
    store.create_content("services", {"title": "Pavage"}, slug="pavage")
    store.delete_content("services", first.id)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    assert reloaded.get_content_by_slug("services", "pavage").data == {"title": "Pavage"}
    assert reloaded.get_content("services", first.id) is None
    # ids are never reused after a delete and a restart
    assert reloaded.create_content("services", {"title": "Marquage"}).id == 3


def test_delete_user_forgets_credentials(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("gone", "gone@example.com")
    store.save_password(user.id, "hash-value", "argon2id")

    assert store.delete_user(user.id) is True
    assert store.get_user(user.id) is None
    assert store.get_password_record(user.id) is None
    assert MemoryStore(fs_root=str(tmp_path)).get_user(user.id) is None


def test_non_persistent_store_writes_nothing(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    store.create_user("ephemeral", "ephemeral@example.com")

    assert not (tmp_path / "state" / "memory_store.json").exists()


def test_refresh_rotation_is_compare_and_swap(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = store.create_user("rotor", "rotor@example.com")
    expires = utcnow() + timedelta(days=7)
    store.update_user(user.id, refresh_token="digest-1", refresh_token_expires=expires)

    assert store.rotate_refresh_token(user.id, "stale-digest", "digest-2", expires) is False
    assert store.get_user(user.id).refresh_token == "digest-1"

    assert store.rotate_refresh_token(user.id, "digest-1", "digest-2", expires) is True
    # the same expected digest cannot win twice
    assert store.rotate_refresh_token(user.id, "digest-1", "digest-3", expires) is False
    assert store.get_user(user.id).refresh_token == "digest-2"

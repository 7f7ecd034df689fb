"""Unit tests for LocalContactStore: CRUD, group cleanup, persistence, sync bookkeeping."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.circles.contacts.schemas import (
    Contact,
    ContactGroup,
    GroupType,
    SyncStatus,
)
from src.circles.contacts.store import (
    ContactNotFoundError,
    DuplicateGroupError,
    GroupNotFoundError,
    LocalContactStore,
)
from src.circles.core.storage import StorageKeys
from tests.factories import make_contact


class TestContactSchema:
    def test_synced_requires_remote_id(self):
        """A contact cannot be synced without a remote id."""
        with pytest.raises(ValueError, match="remote_id"):
            make_contact(sync_status=SyncStatus.SYNCED)

    def test_derived_accessors(self):
        """email/first_name/last_name derive from identifiers and name."""
        contact = make_contact(name="Ada King Lovelace")
        assert contact.email == "ada@example.com"
        assert contact.first_name == "Ada"
        assert contact.last_name == "King Lovelace"
        assert contact.phone is None


class TestContactMutations:
    def test_add_is_immediately_visible(self, store):
        """add() is synchronous and readers see the contact at once."""
        store.add(make_contact())
        assert store.get("c-1").name == "Ada Lovelace"
        assert [c.id for c in store.contacts()] == ["c-1"]

    def test_add_duplicate_id_rejected(self, store):
        store.add(make_contact())
        with pytest.raises(ValueError):
            store.add(make_contact())

    def test_add_autocreates_named_groups(self, store):
        """Groups named by a new contact are created as custom groups."""
        store.add(make_contact(groups=["Web Summit"]))

        group = store.find_group_by_name("Web Summit")
        assert group is not None
        assert group.type == GroupType.CUSTOM
        assert group.members == {"c-1"}

    def test_update_keeps_fields_absent_from_partial(self, store):
        """update() merges: fields not in the partial are preserved."""
        store.add(make_contact(city="London"))

        updated = store.update("c-1", {"title": "Countess"})

        assert updated.title == "Countess"
        assert updated.city == "London"
        assert updated.company == "Analytical Engines"
        assert updated.updated_at > datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_update_rejects_unknown_and_protected_fields(self, store):
        store.add(make_contact())
        with pytest.raises(ValueError, match="unknown"):
            store.update("c-1", {"favourite_colour": "blue"})
        with pytest.raises(ValueError, match="cannot be updated"):
            store.update("c-1", {"id": "other"})

    def test_update_missing_contact_raises(self, store):
        with pytest.raises(ContactNotFoundError):
            store.update("nope", {"title": "x"})

    def test_update_groups_syncs_membership(self, store):
        """Changing contact.groups moves the contact between group member sets."""
        store.add(make_contact(groups=["A"]))
        store.update("c-1", {"groups": ["B"]})

        assert "c-1" not in store.find_group_by_name("A").members
        assert store.find_group_by_name("B").members == {"c-1"}

    def test_delete_strips_contact_from_all_groups(self, store):
        """Deleting a contact removes its id from every group's members."""
        store.add(make_contact(groups=["A", "B"]))
        store.add(make_contact(id="c-2", email="bob@example.com", groups=["A"]))

        store.delete("c-1")

        assert store.find("c-1") is None
        assert store.find_group_by_name("A").members == {"c-2"}
        assert store.find_group_by_name("B").members == set()

    def test_toggle_star(self, store):
        store.add(make_contact())
        assert store.toggle_star("c-1").starred is True
        assert store.toggle_star("c-1").starred is False

    def test_find_by_email_is_case_insensitive(self, store):
        store.add(make_contact(email="Ada@Example.com"))
        assert store.find_by_email("ada@example.com").id == "c-1"

    def test_soft_delete_hides_from_default_listing(self, store):
        store.add(make_contact(remote_id="hs-1"))

        store.soft_delete_by_remote_id("hs-1")

        assert store.contacts() == []
        assert store.contacts(include_deleted=True)[0].is_deleted


class TestGroups:
    def test_delete_group_strips_name_from_contacts(self, store):
        """Deleting a group removes its name from member contacts' groups."""
        store.add(make_contact(groups=["Conference", "Friends"]))
        group = store.find_group_by_name("Conference")

        store.delete_group(group.id)

        assert store.get("c-1").groups == ["Friends"]
        with pytest.raises(GroupNotFoundError):
            store.get_group(group.id)

    def test_add_group_rejects_duplicate_name(self, store):
        store.add_group(ContactGroup(id="g1", name="Clients", type=GroupType.CLIENT))
        with pytest.raises(DuplicateGroupError):
            store.add_group(ContactGroup(id="g2", name="Clients"))

    def test_add_group_members_must_exist(self, store):
        with pytest.raises(ContactNotFoundError):
            store.add_group(ContactGroup(id="g1", name="Clients", members={"ghost"}))

    def test_add_group_adds_name_to_members(self, store):
        store.add(make_contact())
        store.add_group(ContactGroup(id="g1", name="Clients", members={"c-1"}))
        assert store.get("c-1").groups == ["Clients"]

    def test_rename_group_propagates_to_contacts(self, store):
        store.add(make_contact(groups=["Old"]))
        group = store.find_group_by_name("Old")

        store.update_group(group.id, {"name": "New"})

        assert store.get("c-1").groups == ["New"]

    def test_member_changes_propagate_to_contacts(self, store):
        """Replacing members updates both the dropped and the added contacts."""
        store.add(make_contact(id="a"))
        store.add(make_contact(id="b", email="b@example.com"))
        store.add_group(ContactGroup(id="g1", name="Conf", members={"a"}))

        store.update_group("g1", {"members": {"b"}})

        assert store.get("a").groups == []
        assert store.get("b").groups == ["Conf"]
        assert store.get_group("g1").members == {"b"}

    def test_rename_with_new_members(self, store):
        store.add(make_contact(id="a", groups=["Old"]))
        store.add(make_contact(id="b", email="b@example.com"))
        group = store.find_group_by_name("Old")

        store.update_group(group.id, {"name": "New", "members": {"a", "b"}})

        assert store.get("a").groups == ["New"]
        assert store.get("b").groups == ["New"]


class TestSyncBookkeeping:
    def test_mark_synced_sets_remote_id_without_touching_updated_at(self, store):
        store.add(make_contact())
        before = store.get("c-1").updated_at

        synced = store.mark_synced("c-1", "hs-9")

        assert synced.sync_status == SyncStatus.SYNCED
        assert synced.remote_id == "hs-9"
        assert synced.last_synced_at is not None
        assert synced.updated_at == before

    def test_mark_failed_records_error(self, store):
        store.add(make_contact())
        failed = store.mark_failed("c-1", "boom")
        assert failed.sync_status == SyncStatus.FAILED
        assert failed.sync_error == "boom"

    def test_apply_remote_preserves_local_only_fields(self, store):
        """apply_remote overwrites only the given fields."""
        store.add(make_contact(remote_id="hs-1", starred=True, groups=["VIP"]))

        updated = store.apply_remote("c-1", {"title": "Engineer"})

        assert updated.title == "Engineer"
        assert updated.starred is True
        assert updated.groups == ["VIP"]
        assert updated.sync_status == SyncStatus.SYNCED

    def test_apply_remote_can_leave_sync_state_alone(self, store):
        store.add(make_contact(remote_id="hs-1", sync_status=SyncStatus.PENDING))

        updated = store.apply_remote("c-1", {"notes": "From CRM"}, mark_synced=False)

        assert updated.notes == "From CRM"
        assert updated.sync_status == SyncStatus.PENDING
        assert updated.last_synced_at is None


class TestPersistence:
    async def test_persist_and_load_round_trip(self, storage, store):
        """persist() writes both blobs; a fresh store loads the same state."""
        store.add(make_contact(groups=["A"], tags={"ai", "math"}))
        await store.persist()

        assert await storage.get(StorageKeys.CONTACTS) is not None
        assert await storage.get(StorageKeys.GROUPS) is not None

        fresh = LocalContactStore(storage)
        await fresh.load()
        contact = fresh.get("c-1")
        assert isinstance(contact, Contact)
        assert contact.tags == {"ai", "math"}
        assert fresh.find_group_by_name("A").members == {"c-1"}

    async def test_load_empty_storage(self, store):
        await store.load()
        assert store.contacts() == []
        assert store.groups() == []

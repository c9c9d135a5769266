import base64
import os
import shutil
import sys
import tempfile
import unittest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from app.attachments import UploadStorage
from app.config import ServiceConfig
from app.default_modules import DEFAULT_MODULES
from app.errors import AccessDenied, InvalidArgument, NotFound, StorageFailure
from app.pagination import ALL_RECORDS
from app.policy import PolicyEvaluator
from app.record_service import ListQuery, RecordService, set_record_update_params
from app.stores import MemoryRecordStore, Record
from module_registry import ModuleRegistry

ADMIN = {"user_id": "admin-1", "role": "admin"}
AGENT = {"user_id": "agent-1", "role": "agent"}
OTHER_AGENT = {"user_id": "agent-2", "role": "agent"}


class DenyAllPolicy(PolicyEvaluator):
    def can_access(self, record, action, actor):
        return False


class FailingStorage:
    def write(self, storage_key, data, filename=None):
        raise OSError("disk full")


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class RecordServiceCase(unittest.TestCase):
    max_limit = 1000

    def setUp(self) -> None:
        self.upload_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.upload_dir, True)
        self.registry = ModuleRegistry()
        self.registry.register_many(DEFAULT_MODULES)
        self.store = MemoryRecordStore()
        self.config = ServiceConfig(upload_dir=self.upload_dir, list_max_limit=self.max_limit)
        self.service = self._service()

    def _service(self, policy=None, storage=None) -> RecordService:
        return RecordService(
            self.registry,
            self.store,
            policy or PolicyEvaluator(self.registry),
            self.config,
            storage=storage or UploadStorage(self.upload_dir),
        )

    def _create(self, module="Accounts", record_id=None, actor=ADMIN, **attributes) -> dict:
        return self.service.create_record(module, record_id, attributes, path=f"/V8/module/{module}", actor=actor)["data"]


class TestGetRecord(RecordServiceCase):
    def test_round_trip(self):
        created = self._create(name="Acme", industry="Energy", employees=12)
        doc = self.service.get_record("Accounts", created["id"], path=f"/V8/module/Accounts/{created['id']}", actor=ADMIN)
        data = doc["data"]
        self.assertEqual(data["type"], "Account")
        self.assertEqual(data["id"], created["id"])
        self.assertEqual(data["attributes"]["name"], "Acme")
        self.assertEqual(data["attributes"]["industry"], "Energy")
        self.assertEqual(data["attributes"]["employees"], 12)
        self.assertNotIn("id", data["attributes"])
        self.assertFalse(data["attributes"]["deleted"])

    def test_relationship_links(self):
        created = self._create(name="Acme")
        base = f"/V8/module/Accounts/{created['id']}"
        data = self.service.get_record("Accounts", created["id"], path=base, actor=ADMIN)["data"]
        self.assertEqual(set(data["relationships"]), {"contacts", "notes"})
        link = f"{base}/relationships/contacts"
        self.assertEqual(data["relationships"]["contacts"], {"links": {"self": link, "related": link}})

    def test_field_restriction(self):
        created = self._create(name="Acme", industry="Energy")
        data = self.service.get_record("Accounts", created["id"], fields=["name", "nonexistent"], actor=ADMIN)["data"]
        self.assertEqual(data["attributes"], {"name": "Acme"})

    def test_not_found(self):
        with self.assertRaises(NotFound):
            self.service.get_record("Accounts", "missing", actor=ADMIN)

    def test_unknown_module(self):
        with self.assertRaises(NotFound) as ctx:
            self.service.get_record("Widgets", "x", actor=ADMIN)
        self.assertEqual(ctx.exception.code, "MODULE_NOT_FOUND")

    def test_not_found_is_checked_before_access(self):
        created = self._create(name="Acme")
        denied = self._service(policy=DenyAllPolicy(self.registry))
        with self.assertRaises(NotFound):
            denied.get_record("Accounts", "missing", actor=AGENT)
        with self.assertRaises(AccessDenied):
            denied.get_record("Accounts", created["id"], actor=AGENT)

    def test_field_acl_hides_values_from_non_owners(self):
        created = self._create(module="Contacts", actor=AGENT, last_name="Lovelace", birthdate="1815-12-10")
        self.assertEqual(created["attributes"]["birthdate"], "1815-12-10")
        other = self.service.get_record("Contacts", created["id"], actor=OTHER_AGENT)["data"]
        self.assertNotIn("birthdate", other["attributes"])
        self.assertEqual(other["attributes"]["last_name"], "Lovelace")


class TestCreateRecord(RecordServiceCase):
    def test_client_id(self):
        created = self._create(record_id="acc-1", name="Acme")
        self.assertEqual(created["id"], "acc-1")
        self.assertEqual(self.store.load("Accounts", "acc-1").get("created_by"), "admin-1")

    def test_duplicate_id(self):
        self._create(record_id="acc-1", name="Acme")
        with self.assertRaises(InvalidArgument) as ctx:
            self._create(record_id="acc-1", name="Other")
        self.assertEqual(ctx.exception.code, "RECORD_ALREADY_EXISTS")
        self.assertEqual(self.store.load("Accounts", "acc-1").get("name"), "Acme")

    def test_reusing_a_deleted_id(self):
        self._create(record_id="acc-1", name="Acme")
        self.service.delete_record("Accounts", "acc-1", actor=ADMIN)
        created = self._create(record_id="acc-1", name="Reborn")
        self.assertEqual(created["attributes"]["name"], "Reborn")
        self.assertFalse(created["attributes"]["deleted"])

    def test_required_field(self):
        with self.assertRaises(InvalidArgument) as ctx:
            self._create(industry="Energy")
        self.assertEqual(ctx.exception.code, "REQUIRED_FIELD")
        self.assertEqual(self.store.count("Accounts"), 0)

    def test_unknown_attribute(self):
        with self.assertRaises(InvalidArgument) as ctx:
            self._create(name="Acme", colour="red")
        self.assertEqual(ctx.exception.code, "UNKNOWN_FIELD")
        self.assertEqual(ctx.exception.detail["errors"][0]["path"], "colour")

    def test_access_denied(self):
        denied = self._service(policy=DenyAllPolicy(self.registry))
        with self.assertRaises(AccessDenied):
            denied.create_record("Accounts", None, {"name": "Acme"}, actor=AGENT)
        self.assertEqual(self.store.count("Accounts"), 0)

    def test_provenance_defaults(self):
        created = self._create(name="Acme")
        record = self.store.load("Accounts", created["id"])
        self.assertEqual(record.get("created_by"), "admin-1")
        self.assertEqual(record.get("modified_user_id"), "admin-1")
        self.assertTrue(record.get("date_entered"))

    def test_caller_provenance_is_kept(self):
        created = self._create(
            name="Acme",
            created_by="importer",
            modified_user_id="importer",
            date_entered="2019-03-01T09:00:00Z",
            date_modified="2019-03-02T09:00:00Z",
        )
        attrs = created["attributes"]
        self.assertEqual(attrs["created_by"], "importer")
        self.assertEqual(attrs["modified_user_id"], "importer")
        self.assertEqual(attrs["date_entered"], "2019-03-01T09:00:00Z")
        self.assertEqual(attrs["date_modified"], "2019-03-02T09:00:00Z")

    def test_update_params_follow_keys_not_values(self):
        record = Record(module="Accounts")
        set_record_update_params(record, {"created_by_name": None, "modified_by_name": None, "date_entered": None})
        self.assertFalse(record.set_created_by)
        self.assertFalse(record.update_modified_by)
        self.assertTrue(record.update_date_entered)
        self.assertTrue(record.update_date_modified)
        set_record_update_params(record, {"date_modified": ""})
        self.assertTrue(record.set_created_by)
        self.assertFalse(record.update_date_entered)
        self.assertFalse(record.update_date_modified)


class TestUpdateRecord(RecordServiceCase):
    def test_update(self):
        created = self._create(name="Acme", industry="Energy")
        updated = self.service.update_record("Accounts", created["id"], {"industry": "Retail"}, actor=OTHER_AGENT)["data"]
        self.assertEqual(updated["id"], created["id"])
        self.assertEqual(updated["attributes"]["industry"], "Retail")
        self.assertEqual(updated["attributes"]["name"], "Acme")
        self.assertEqual(updated["attributes"]["created_by"], "admin-1")
        self.assertEqual(updated["attributes"]["modified_user_id"], "agent-2")

    def test_update_missing(self):
        with self.assertRaises(NotFound):
            self.service.update_record("Accounts", "missing", {"name": "x"}, actor=ADMIN)

    def test_update_rejects_id_change(self):
        created = self._create(name="Acme")
        with self.assertRaises(InvalidArgument) as ctx:
            self.service.update_record("Accounts", created["id"], {"id": "other"}, actor=ADMIN)
        self.assertEqual(ctx.exception.code, "READONLY_FIELD")

    def test_update_access_denied(self):
        created = self._create(name="Acme")
        denied = self._service(policy=DenyAllPolicy(self.registry))
        with self.assertRaises(AccessDenied):
            denied.update_record("Accounts", created["id"], {"name": "x"}, actor=AGENT)
        self.assertEqual(self.store.load("Accounts", created["id"]).get("name"), "Acme")


class TestDeleteRecord(RecordServiceCase):
    def test_soft_delete(self):
        keep = self._create(name="Keep")
        gone = self._create(name="Gone")
        res = self.service.delete_record("Accounts", gone["id"], actor=ADMIN)
        self.assertEqual(res, {"meta": {"message": f"Record with id {gone['id']} is deleted"}})
        listed = self.service.list_records(ListQuery(module="Accounts"), actor=ADMIN)
        self.assertEqual([d["id"] for d in listed["data"]], [keep["id"]])
        fetched = self.service.get_record("Accounts", gone["id"], actor=ADMIN)["data"]
        self.assertTrue(fetched["attributes"]["deleted"])
        with_deleted = self.service.list_records(ListQuery(module="Accounts", include_deleted=True), actor=ADMIN)
        self.assertEqual(len(with_deleted["data"]), 2)

    def test_delete_missing(self):
        with self.assertRaises(NotFound):
            self.service.delete_record("Accounts", "missing", actor=ADMIN)

    def test_delete_access_denied(self):
        created = self._create(name="Acme")
        denied = self._service(policy=DenyAllPolicy(self.registry))
        with self.assertRaises(AccessDenied):
            denied.delete_record("Accounts", created["id"], actor=AGENT)
        self.assertTrue(self.store.exists("Accounts", created["id"]))


class TestListRecords(RecordServiceCase):
    BASE = "http://testserver/V8/module/Accounts"

    def _seed(self, count: int) -> None:
        for idx in range(count):
            self._create(name=f"Account {idx:02d}", employees=idx)

    def _list(self, **kwargs) -> dict:
        query = ListQuery(module="Accounts", sort=(("name", False),), **kwargs)
        return self.service.list_records(query, path="/V8/module/Accounts", base_url=self.BASE, actor=ADMIN)

    def test_second_page_of_three(self):
        self._seed(25)
        res = self._list(page_size=10, page_number=2)
        self.assertEqual(len(res["data"]), 10)
        self.assertEqual(res["data"][0]["attributes"]["name"], "Account 10")
        self.assertEqual(res["meta"], {"total-pages": 3, "records-on-this-page": 10})
        self.assertIn("prev", res["links"])
        self.assertIn("next", res["links"])
        self.assertTrue(res["links"]["last"].startswith(self.BASE + "?"))

    def test_last_page(self):
        self._seed(25)
        res = self._list(page_size=10, page_number=3)
        self.assertEqual(len(res["data"]), 5)
        self.assertEqual(res["meta"]["records-on-this-page"], 5)
        self.assertNotIn("next", res["links"])

    def test_all_records_is_never_paginated(self):
        self._seed(25)
        res = self._list(page_size=ALL_RECORDS, page_number=3)
        self.assertEqual(len(res["data"]), 25)
        self.assertNotIn("meta", res)
        self.assertNotIn("links", res)

    def test_empty_result_has_no_meta(self):
        res = self._list(page_size=10)
        self.assertEqual(res, {"data": []})

    def test_item_links_use_request_path(self):
        self._seed(1)
        item = self._list()["data"][0]
        link = item["relationships"]["notes"]["links"]["self"]
        self.assertEqual(link, f"/V8/module/Accounts/{item['id']}/relationships/notes")

    def test_filter_and_sort(self):
        self._seed(6)
        cond = {"op": "gte", "field": "employees", "value": 3}
        res = self.service.list_records(
            ListQuery(module="Accounts", condition=cond, sort=(("employees", True),)),
            actor=ADMIN,
        )
        self.assertEqual([d["attributes"]["employees"] for d in res["data"]], [5, 4, 3])

    def test_requested_fields(self):
        self._seed(2)
        res = self._list(fields=("name",))
        self.assertEqual(res["data"][0]["attributes"], {"name": "Account 00"})

    def test_unknown_filter_field(self):
        with self.assertRaises(InvalidArgument) as ctx:
            self._list(condition={"op": "eq", "field": "colour", "value": "red"})
        self.assertEqual(ctx.exception.code, "FILTER_FIELD_UNKNOWN")

    def test_unknown_sort_field(self):
        with self.assertRaises(InvalidArgument) as ctx:
            self.service.list_records(ListQuery(module="Accounts", sort=(("colour", False),)), actor=ADMIN)
        self.assertEqual(ctx.exception.code, "SORT_FIELD_UNKNOWN")

    def test_filter_on_field_the_actor_cannot_read(self):
        self._create(module="Contacts", actor=AGENT, last_name="Lovelace", birthdate="1815-12-10")
        query = ListQuery(module="Contacts", condition={"op": "eq", "field": "birthdate", "value": "1815-12-10"})
        with self.assertRaises(AccessDenied) as ctx:
            self.service.list_records(query, actor=OTHER_AGENT)
        self.assertEqual(ctx.exception.code, "FILTER_FIELD_FORBIDDEN")
        self.assertEqual(ctx.exception.path, "filter")

    def test_sort_on_field_the_actor_cannot_read(self):
        query = ListQuery(module="Contacts", sort=(("birthdate", True),))
        with self.assertRaises(AccessDenied) as ctx:
            self.service.list_records(query, actor=AGENT)
        self.assertEqual(ctx.exception.code, "SORT_FIELD_FORBIDDEN")

    def test_filter_on_restricted_field_by_granted_role(self):
        self._create(module="Contacts", actor=AGENT, last_name="Lovelace", birthdate="1815-12-10")
        self._create(module="Contacts", actor=AGENT, last_name="Babbage", birthdate="1791-12-26")
        query = ListQuery(module="Contacts", condition={"op": "eq", "field": "birthdate", "value": "1815-12-10"})
        for actor in (ADMIN, {"user_id": "manager-1", "role": "manager"}):
            res = self.service.list_records(query, actor=actor)
            self.assertEqual([d["attributes"]["last_name"] for d in res["data"]], ["Lovelace"])

    def test_access_denied(self):
        denied = self._service(policy=DenyAllPolicy(self.registry))
        with self.assertRaises(AccessDenied):
            denied.list_records(ListQuery(module="Accounts"), actor=AGENT)


SECRETS_MANIFEST = {
    "module": {"id": "Secrets", "name": "Secrets", "object_name": "Secret"},
    "fields": [
        {"id": "name", "type": "string", "required": True},
        {"id": "pin", "type": "string", "acl": {"read": ["owner"]}},
    ],
    "acl": {"view": ["owner", "manager"]},
}
MANAGER = {"user_id": "manager-1", "role": "manager"}


class TestOwnerScopedListing(RecordServiceCase):
    def setUp(self) -> None:
        super().setUp()
        self.registry.register(SECRETS_MANIFEST)
        for idx in range(3):
            self._create(module="Secrets", actor=AGENT, name=f"agent-1 private {idx}", pin=f"00{idx}")
        self._create(module="Secrets", actor=OTHER_AGENT, name="agent-2 private", pin="999")

    def _names(self, actor, **kwargs) -> list[str]:
        query = ListQuery(module="Secrets", sort=(("name", False),), **kwargs)
        res = self.service.list_records(query, path="/V8/module/Secrets", actor=actor)
        return [d["attributes"]["name"] for d in res["data"]]

    def test_only_own_records_are_listed(self):
        self.assertEqual(self._names(OTHER_AGENT), ["agent-2 private"])
        self.assertEqual(self._names(AGENT), ["agent-1 private 0", "agent-1 private 1", "agent-1 private 2"])

    def test_listing_matches_get(self):
        created = self._create(module="Secrets", actor=AGENT, name="agent-1 hidden")
        with self.assertRaises(AccessDenied):
            self.service.get_record("Secrets", created["id"], actor=OTHER_AGENT)
        self.assertNotIn("agent-1 hidden", self._names(OTHER_AGENT))

    def test_assigned_records_are_listed(self):
        self._create(module="Secrets", actor=AGENT, name="handed over", assigned_user_id="agent-2")
        self.assertEqual(self._names(OTHER_AGENT), ["agent-2 private", "handed over"])

    def test_role_grant_sees_every_record(self):
        self.assertEqual(len(self._names(MANAGER)), 4)
        self.assertEqual(len(self._names(ADMIN)), 4)

    def test_scope_combines_with_filter(self):
        names = self._names(OTHER_AGENT, condition={"op": "like", "field": "name", "value": "agent-1%"})
        self.assertEqual(names, [])

    def test_page_totals_count_own_records_only(self):
        query = ListQuery(module="Secrets", sort=(("name", False),), page_size=2, page_number=1)
        res = self.service.list_records(query, path="/V8/module/Secrets", actor=OTHER_AGENT)
        self.assertEqual(res["meta"], {"total-pages": 1, "records-on-this-page": 1})

    def test_owner_readable_field_is_filterable_within_own_records(self):
        names = self._names(AGENT, condition={"op": "eq", "field": "pin", "value": "001"})
        self.assertEqual(names, ["agent-1 private 1"])

    def test_actor_without_id_sees_nothing(self):
        self.assertEqual(self._names({"role": "agent"}), [])


class TestListRecordsLimit(RecordServiceCase):
    max_limit = 5

    def test_all_records_is_capped_by_configured_limit(self):
        for idx in range(8):
            self._create(name=f"Account {idx}")
        res = self.service.list_records(ListQuery(module="Accounts"), actor=ADMIN)
        self.assertEqual(len(res["data"]), 5)
        self.assertNotIn("meta", res)


class TestAttachments(RecordServiceCase):
    def test_note_upload(self):
        content = b"%PDF-1.4 minimal"
        created = self._create(module="Notes", name="Contract", filename="contract.pdf", filecontents=_b64(content))
        attrs = created["attributes"]
        self.assertEqual(attrs["filename"], "contract.pdf")
        self.assertEqual(attrs["uploadfile"], "contract.pdf")
        self.assertEqual(attrs["file_mime_type"], "application/pdf")
        with open(os.path.join(self.upload_dir, created["id"]), "rb") as handle:
            self.assertEqual(handle.read(), content)

    def test_upload_on_update(self):
        created = self._create(module="Notes", name="Readme")
        updated = self.service.update_record(
            "Notes",
            created["id"],
            {"filename": "readme.txt", "filecontents": _b64(b"hello")},
            actor=ADMIN,
        )["data"]
        self.assertEqual(updated["attributes"]["file_mime_type"], "text/plain")

    def test_bad_extension_keeps_primary_record(self):
        with self.assertRaises(InvalidArgument) as ctx:
            self._create(module="Notes", record_id="note-1", name="Script", filename="shell.PHP", filecontents=_b64(b"<?php"))
        self.assertEqual(ctx.exception.code, "FILE_EXTENSION_INVALID")
        note = self.store.load("Notes", "note-1")
        self.assertIsNotNone(note)
        self.assertIsNone(note.get("filename"))
        self.assertFalse(os.listdir(self.upload_dir))

    def test_missing_extension_keeps_primary_record(self):
        with self.assertRaises(InvalidArgument) as ctx:
            self._create(module="Notes", record_id="note-1", name="Readme", filename="README", filecontents=_b64(b"hi"))
        self.assertEqual(ctx.exception.code, "FILE_EXTENSION_INVALID")
        self.assertTrue(self.store.exists("Notes", "note-1"))
        self.assertFalse(os.listdir(self.upload_dir))

    def test_malformed_contents(self):
        with self.assertRaises(InvalidArgument) as ctx:
            self._create(module="Notes", record_id="note-1", name="Broken", filename="a.txt", filecontents="abc")
        self.assertEqual(ctx.exception.code, "FILE_CONTENTS_INVALID")
        self.assertTrue(self.store.exists("Notes", "note-1"))

    def test_storage_failure_keeps_primary_record(self):
        self.service = self._service(storage=FailingStorage())
        with self.assertRaises(StorageFailure):
            self._create(module="Notes", record_id="note-1", name="Doc", filename="a.txt", filecontents=_b64(b"x"))
        self.assertTrue(self.store.exists("Notes", "note-1"))

    def test_companion_note_missing(self):
        with self.assertRaises(InvalidArgument) as ctx:
            self._create(record_id="acc-1", name="Acme", filename="a.txt", filecontents=_b64(b"x"))
        self.assertEqual(ctx.exception.code, "FILE_NOTE_MISSING")
        self.assertTrue(self.store.exists("Accounts", "acc-1"))

    def test_companion_note_sharing_the_id(self):
        self._create(module="Notes", record_id="shared-1", name="Attachment")
        self._create(record_id="shared-1", name="Acme", filename="logo.png", filecontents=_b64(b"\x89PNG\r\n\x1a\nrest"))
        note = self.store.load("Notes", "shared-1")
        self.assertEqual(note.get("filename"), "logo.png")
        self.assertEqual(note.get("file_mime_type"), "image/png")
        self.assertIsNone(self.store.load("Accounts", "shared-1").get("filename"))


if __name__ == "__main__":
    unittest.main()

import os
import sys
import unittest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from app.default_modules import DEFAULT_MODULES
from app.errors import InvalidArgument
from app.pagination import ALL_RECORDS
from app.query_params import parse_deleted, parse_fields, parse_filter, parse_list_query, parse_page, parse_sort
from module_registry import ModuleRegistry


class TestQueryParams(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = ModuleRegistry()
        self.registry.register_many(DEFAULT_MODULES)
        self.accounts = self.registry.field_defs("Accounts")
        self.contacts = self.registry.field_defs("Contacts")

    def test_fields(self):
        self.assertEqual(parse_fields([("fields[Accounts]", "name, industry")], "Accounts", "Account"), ("name", "industry"))
        self.assertEqual(parse_fields([("fields[Account]", "name")], "Accounts", "Account"), ("name",))
        self.assertIsNone(parse_fields([("sort", "name")], "Accounts", "Account"))
        self.assertIsNone(parse_fields([("fields[Accounts]", "")], "Accounts", "Account"))

    def test_fields_for_other_module(self):
        with self.assertRaises(InvalidArgument) as ctx:
            parse_fields([("fields[Contacts]", "name")], "Accounts", "Account")
        self.assertEqual(ctx.exception.code, "FIELDS_MODULE_MISMATCH")

    def test_single_filter(self):
        cond = parse_filter([("filter[name][like]", "Acme%")], self.accounts)
        self.assertEqual(cond, {"op": "like", "field": "name", "value": "Acme%"})

    def test_filter_defaults_to_eq(self):
        cond = parse_filter([("filter[industry]", "Energy")], self.accounts)
        self.assertEqual(cond, {"op": "eq", "field": "industry", "value": "Energy"})

    def test_filter_group_and_coercion(self):
        items = [
            ("filter[operator]", "or"),
            ("filter[employees][GTE]", "10"),
            ("filter[account_type][in]", "Customer,Partner"),
        ]
        cond = parse_filter(items, self.accounts)
        self.assertEqual(
            cond,
            {
                "op": "or",
                "conditions": [
                    {"op": "gte", "field": "employees", "value": 10},
                    {"op": "in", "field": "account_type", "value": ["Customer", "Partner"]},
                ],
            },
        )

    def test_filter_boolean_and_float(self):
        cond = parse_filter([("filter[do_not_call]", "true")], self.contacts)
        self.assertEqual(cond["value"], True)
        cond = parse_filter([("filter[employees][lt]", "2.5")], self.accounts)
        self.assertEqual(cond["value"], 2.5)

    def test_text_operators_keep_raw_values(self):
        cond = parse_filter([("filter[employees][like]", "1%")], self.accounts)
        self.assertEqual(cond, {"op": "like", "field": "employees", "value": "1%"})
        cond = parse_filter([("filter[employees][like]", "12")], self.accounts)
        self.assertEqual(cond["value"], "12")
        cond = parse_filter([("filter[description][contains]", "renewal")], self.accounts)
        self.assertEqual(cond, {"op": "contains", "field": "description", "value": "renewal"})

    def test_unlisted_operators_are_rejected(self):
        for op in ("not", "exists"):
            with self.assertRaises(InvalidArgument) as ctx:
                parse_filter([(f"filter[website][{op}]", "1")], self.accounts)
            self.assertEqual(ctx.exception.code, "FILTER_OPERATOR_INVALID")

    def test_filter_errors(self):
        with self.assertRaises(InvalidArgument):
            parse_filter([("filter[name][regex]", "x")], self.accounts)
        with self.assertRaises(InvalidArgument):
            parse_filter([("filter[operator]", "xor")], self.accounts)
        with self.assertRaises(InvalidArgument):
            parse_filter([("filter[employees]", "many")], self.accounts)
        with self.assertRaises(InvalidArgument):
            parse_filter([("filter[do_not_call]", "maybe")], self.contacts)

    def test_no_filter(self):
        self.assertIsNone(parse_filter([("page[size]", "10")], self.accounts))

    def test_sort(self):
        self.assertEqual(parse_sort("-date_entered, name"), (("date_entered", True), ("name", False)))
        self.assertEqual(parse_sort(None), ())
        with self.assertRaises(InvalidArgument):
            parse_sort("-")

    def test_page_defaults(self):
        self.assertEqual(parse_page([]), (ALL_RECORDS, 1))
        self.assertEqual(parse_page([("page[size]", "20"), ("page[number]", "0")]), (20, 0))

    def test_page_errors(self):
        for items in (
            [("page[size]", "0")],
            [("page[size]", "-1")],
            [("page[number]", "-2")],
            [("page[size]", "ten")],
        ):
            with self.assertRaises(InvalidArgument, msg=str(items)) as ctx:
                parse_page(items)
            self.assertEqual(ctx.exception.code, "PAGE_INVALID")

    def test_deleted(self):
        self.assertFalse(parse_deleted(None))
        self.assertTrue(parse_deleted("1"))
        self.assertFalse(parse_deleted("0"))
        with self.assertRaises(InvalidArgument):
            parse_deleted("sometimes")

    def test_list_query(self):
        items = [
            ("fields[Accounts]", "name"),
            ("filter[industry]", "Energy"),
            ("sort", "-name"),
            ("page[size]", "10"),
            ("page[number]", "2"),
            ("deleted", "true"),
        ]
        query = parse_list_query(items, self.registry, "Accounts")
        self.assertEqual(query.module, "Accounts")
        self.assertEqual(query.fields, ("name",))
        self.assertEqual(query.condition, {"op": "eq", "field": "industry", "value": "Energy"})
        self.assertEqual(query.sort, (("name", True),))
        self.assertEqual((query.page_size, query.page_number), (10, 2))
        self.assertTrue(query.include_deleted)


if __name__ == "__main__":
    unittest.main()

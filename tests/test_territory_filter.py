import unittest

from services.territory_filter import (
    DENY_ALL_ID,
    Role,
    ScopedUser,
    TokenKind,
    apply_territory_filter,
    build_territory_filter,
    can_access_record,
    classify_token,
    get_territory_display_name,
    is_record_in_territory,
    parse_role,
    parse_territory,
    validate_territory,
)


def _query(filter_=None):
    return {
        "pagination": {"page": 1, "perPage": 25},
        "sort": {"field": "id", "order": "ASC"},
        "filter": dict(filter_ or {}),
    }


def _broker(territory):
    return ScopedUser(id=7, role="broker", territory=list(territory))


class ClassifyTokenTests(unittest.TestCase):
    def test_two_uppercase_letters_is_state(self):
        self.assertIs(classify_token("CA").kind, TokenKind.STATE)

    def test_lowercase_state_is_city(self):
        self.assertIs(classify_token("ca").kind, TokenKind.CITY)

    def test_zip_and_zip_plus_four(self):
        self.assertIs(classify_token("90210").kind, TokenKind.ZIP_CODE)
        token = classify_token("90210-1234")
        self.assertIs(token.kind, TokenKind.ZIP_CODE)
        self.assertEqual(token.match_value, "90210")

    def test_anything_else_is_city(self):
        self.assertIs(classify_token("9021").kind, TokenKind.CITY)
        self.assertIs(classify_token("Los Angeles").kind, TokenKind.CITY)
        self.assertEqual(classify_token("Los Angeles").match_value, "los angeles")

    def test_parse_role(self):
        self.assertIs(parse_role("broker"), Role.BROKER)
        self.assertIs(parse_role("admin"), Role.ADMIN)
        self.assertIsNone(parse_role("ADMIN"))
        self.assertIsNone(parse_role(" broker "))
        self.assertIsNone(parse_role("superuser"))
        self.assertIsNone(parse_role(None))


class ParseAndValidateTests(unittest.TestCase):
    def test_parse_mixed_territory(self):
        self.assertEqual(
            parse_territory("CA, Los Angeles, 90210"),
            {"states": ["CA"], "cities": ["Los Angeles"], "zipCodes": ["90210"]},
        )

    def test_parse_drops_empty_tokens(self):
        self.assertEqual(
            parse_territory(" , TX,,"),
            {"states": ["TX"], "cities": [], "zipCodes": []},
        )

    def test_validate_reports_empty_and_malformed(self):
        result = validate_territory(["CA", " ", "San Jose", "Zone #4"])
        self.assertFalse(result["isValid"])
        self.assertEqual(
            result["errors"],
            ["Territory area 2 is empty", 'Territory area "Zone #4" has invalid format'],
        )

    def test_validate_accepts_clean_territory(self):
        self.assertEqual(validate_territory(["CA", "O'Fallon", "10001-0001"]), {"isValid": True, "errors": []})

    def test_display_name(self):
        self.assertEqual(get_territory_display_name([]), "No Territory Assigned")
        self.assertEqual(get_territory_display_name(["CA"]), "CA")
        self.assertEqual(get_territory_display_name(["CA", "NV", "AZ"]), "CA, NV, AZ")
        self.assertEqual(get_territory_display_name(["CA", "NV", "AZ", "OR"]), "CA, NV +2 more")


class BuildFilterTests(unittest.TestCase):
    def test_state_only_for_direct_resource(self):
        self.assertEqual(build_territory_filter(["CA"], "organizations"), {"state@in": ["CA"]})

    def test_zip_plus_four_uses_prefix(self):
        self.assertEqual(build_territory_filter(["90210-1234"], "customers"), {"zipCode@in": ["90210"]})

    def test_organization_hop_emits_all_keys(self):
        self.assertEqual(
            build_territory_filter(["CA", "Austin"], "deals"),
            {
                "organization.state@in": ["CA"],
                "organization.city@in": ["Austin"],
                "organization.zipCode@in": [],
            },
        )

    def test_users_overlap(self):
        self.assertEqual(build_territory_filter(["CA", "NV"], "users"), {"territory@overlap": ["CA", "NV"]})

    def test_unknown_resource_has_no_predicates(self):
        self.assertEqual(build_territory_filter(["CA"], "products"), {})


class ApplyFilterTests(unittest.TestCase):
    def test_admin_and_manager_get_query_back_unchanged(self):
        query = _query({"name": "Acme"})
        for role in ("admin", "manager"):
            user = ScopedUser(id=1, role=role, territory=["CA"])
            self.assertIs(apply_territory_filter(user, "organizations", query), query)

    def test_broker_without_territory_is_denied_everything(self):
        result = apply_territory_filter(_broker([]), "organizations", _query({"name": "Acme"}))
        self.assertEqual(result["filter"], {"name": "Acme", "id": DENY_ALL_ID})

    def test_broker_filter_merges_and_keeps_other_keys(self):
        query = _query({"name": "Acme", "state@in": ["NY"]})
        result = apply_territory_filter(_broker(["CA"]), "organizations", query)
        self.assertEqual(result["filter"], {"name": "Acme", "state@in": ["CA"]})
        self.assertEqual(result["pagination"], query["pagination"])
        self.assertEqual(result["sort"], query["sort"])

    def test_input_query_is_not_mutated(self):
        query = _query({"name": "Acme"})
        apply_territory_filter(_broker(["CA"]), "organizations", query)
        self.assertEqual(query["filter"], {"name": "Acme"})

    def test_filtering_is_idempotent(self):
        user = _broker(["CA", "Los Angeles", "90210"])
        once = apply_territory_filter(user, "contacts", _query())
        twice = apply_territory_filter(user, "contacts", once)
        self.assertEqual(once, twice)

    def test_unrecognized_role_passes_query_through(self):
        query = _query()
        user = ScopedUser(id=3, role="auditor", territory=["CA"])
        with self.assertLogs("services.territory_filter", level="WARNING"):
            self.assertIs(apply_territory_filter(user, "organizations", query), query)

    def test_missing_user_is_an_error(self):
        with self.assertRaises(ValueError):
            apply_territory_filter(None, "organizations", _query())


class RecordAccessTests(unittest.TestCase):
    def test_admin_sees_everything(self):
        self.assertTrue(can_access_record(ScopedUser(id=1, role="admin"), {"state": "TX"}, "organizations"))

    def test_broker_state_city_and_zip_matching(self):
        user = _broker(["CA", "los angeles", "10001"])
        self.assertTrue(can_access_record(user, {"state": "CA"}, "organizations"))
        self.assertTrue(can_access_record(user, {"state": "NV", "city": "Los Angeles"}, "organizations"))
        self.assertTrue(can_access_record(user, {"state": "NY", "zipCode": "10001-2345"}, "customers"))
        self.assertFalse(can_access_record(user, {"state": "TX", "city": "Austin"}, "organizations"))

    def test_child_records_use_their_organization(self):
        user = _broker(["CA"])
        self.assertTrue(can_access_record(user, {"organization": {"state": "CA"}}, "deals"))
        self.assertFalse(can_access_record(user, {"organization": None}, "deals"))
        self.assertFalse(can_access_record(user, {"state": "CA"}, "contacts"))

    def test_untyped_resource_is_allowed_for_broker_with_territory(self):
        self.assertTrue(can_access_record(_broker(["CA"]), {}, "products"))

    def test_broker_without_territory_sees_nothing(self):
        self.assertFalse(can_access_record(_broker([]), {"state": "CA"}, "organizations"))
        self.assertFalse(is_record_in_territory([], {}, "products"))

    def test_unrecognized_role_is_denied(self):
        user = ScopedUser(id=4, role="auditor", territory=["CA"])
        self.assertFalse(can_access_record(user, {"state": "CA"}, "organizations"))

    def test_role_match_is_case_sensitive(self):
        shouting_admin = ScopedUser(id=6, role="ADMIN", territory=[])
        self.assertIsNone(shouting_admin.role_kind)
        self.assertFalse(can_access_record(shouting_admin, {"state": "TX"}, "organizations"))

    def test_scoped_user_from_dict_splits_string_territory(self):
        user = ScopedUser.from_dict({"id": 5, "role": "broker", "territory": "CA, Austin ,", "principals": ["Acme"]})
        self.assertEqual(user.territory, ["CA", "Austin"])
        self.assertEqual(user.principals, ["Acme"])
        self.assertTrue(user.has_restrictions)
        self.assertFalse(ScopedUser.from_dict({"id": 6, "role": "manager", "territory": ["CA"]}).has_restrictions)


if __name__ == "__main__":
    unittest.main()

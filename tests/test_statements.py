"""Tests for the statement registry and table reference extraction."""

import pytest

from src.exceptions import (
    HardcodedTenantSchemaException,
    StatementNotRegisteredException,
    StatementRegistrationException,
    UndeclaredTableReferenceException,
    UnqualifiedSharedReferenceException,
)
from src.modules.tenancy.statements import (
    StatementRegistry,
    TableReference,
    extract_table_references,
)


@pytest.fixture
def registry() -> StatementRegistry:
    return StatementRegistry("public", ["bed_categories", "subscription_tiers", "permissions"])


class TestExtractTableReferences:
    def test_select_with_join_and_aliases(self):
        refs = extract_table_references(
            "SELECT b.id, c.name FROM beds AS b JOIN public.bed_categories c ON c.id = b.category_id"
        )
        assert refs == [TableReference("beds"), TableReference("bed_categories", "public")]

    def test_comma_separated_from_list(self):
        refs = extract_table_references("SELECT * FROM beds b, wards w WHERE b.ward_id = w.id")
        assert [r.table for r in refs] == ["beds", "wards"]

    def test_insert_with_column_list(self):
        refs = extract_table_references(
            "INSERT INTO bed_assignments (bed_id, patient_ref) VALUES (:bed_id, :ref)"
        )
        assert refs == [TableReference("bed_assignments")]

    def test_update_and_delete_using(self):
        assert extract_table_references("UPDATE beds SET status = :s WHERE id = :id") == [
            TableReference("beds")
        ]
        refs = extract_table_references(
            "DELETE FROM bed_assignments USING beds WHERE beds.id = bed_assignments.bed_id"
        )
        assert [r.table for r in refs] == ["bed_assignments", "beds"]

    def test_function_call_from_is_not_a_table(self):
        refs = extract_table_references(
            "SELECT EXTRACT(YEAR FROM admitted_at) AS y FROM admissions"
        )
        assert refs == [TableReference("admissions")]

    def test_subquery_tables_are_found(self):
        refs = extract_table_references(
            "SELECT * FROM beds WHERE category_id IN (SELECT id FROM public.bed_categories)"
        )
        assert refs == [TableReference("beds"), TableReference("bed_categories", "public")]

    def test_subquery_inside_constructor_is_scanned(self):
        refs = extract_table_references(
            "SELECT b.id, ARRAY(SELECT name FROM bed_categories) AS names FROM beds b"
        )
        assert refs == [TableReference("bed_categories"), TableReference("beds")]

    def test_cte_names_are_excluded(self):
        refs = extract_table_references(
            "WITH free AS (SELECT id FROM beds WHERE status = 'available') SELECT * FROM free"
        )
        assert refs == [TableReference("beds")]

    def test_strings_comments_and_casts_are_ignored(self):
        refs = extract_table_references(
            "SELECT 'FROM nowhere' AS s, id::text -- FROM commented\nFROM /* JOIN x */ beds"
        )
        assert refs == [TableReference("beds")]

    def test_quoted_identifiers_keep_case(self):
        refs = extract_table_references('SELECT * FROM "public"."Bed_Categories"')
        assert refs == [TableReference("Bed_Categories", "public")]


class TestRegistration:
    def test_registers_tenant_statement(self, registry):
        statement = registry.register(
            "beds.list", "SELECT id FROM beds", tenant_tables=["beds"]
        )
        assert statement.tenant_tables == frozenset({"beds"})
        assert not statement.touches_shared
        assert registry.get("beds.list") is statement
        assert "beds.list" in registry
        assert len(registry) == 1

    def test_unqualified_shared_reference_fails_at_registration(self, registry):
        with pytest.raises(UnqualifiedSharedReferenceException):
            registry.register(
                "beds.with_category",
                "SELECT b.id, c.name FROM beds b JOIN bed_categories c ON c.id = b.category_id",
                tenant_tables=["beds"],
                shared_tables=["bed_categories"],
            )
        assert "beds.with_category" not in registry

    def test_unqualified_shared_reference_in_array_subquery_fails(self, registry):
        with pytest.raises(UnqualifiedSharedReferenceException):
            registry.register(
                "beds.with_category_names",
                "SELECT b.id, ARRAY(SELECT name FROM bed_categories) AS names FROM beds b",
                tenant_tables=["beds"],
                shared_tables=["bed_categories"],
            )

    def test_shared_table_qualified_with_other_schema_fails(self, registry):
        with pytest.raises(UnqualifiedSharedReferenceException):
            registry.register(
                "categories.other",
                "SELECT * FROM tenant_a.bed_categories",
                shared_tables=["bed_categories"],
            )

    def test_qualified_shared_reference_is_accepted(self, registry):
        statement = registry.register(
            "beds.with_category",
            "SELECT b.id, c.name FROM beds b JOIN public.bed_categories c ON c.id = b.category_id",
            tenant_tables=["beds"],
            shared_tables=["bed_categories"],
        )
        assert statement.touches_shared

    def test_hardcoded_tenant_schema_is_rejected(self, registry):
        with pytest.raises(HardcodedTenantSchemaException):
            registry.register("beds.pinned", "SELECT * FROM tenant_a.beds", tenant_tables=["beds"])

    def test_undeclared_tenant_table_is_rejected(self, registry):
        with pytest.raises(UndeclaredTableReferenceException):
            registry.register(
                "beds.with_wards",
                "SELECT * FROM beds JOIN wards ON wards.id = beds.ward_id",
                tenant_tables=["beds"],
            )

    def test_undeclared_shared_table_is_rejected(self, registry):
        with pytest.raises(UndeclaredTableReferenceException):
            registry.register("tiers", "SELECT * FROM public.subscription_tiers")

    def test_unknown_table_in_shared_schema_is_rejected(self, registry):
        with pytest.raises(UndeclaredTableReferenceException):
            registry.register("beds.public", "SELECT * FROM public.beds", tenant_tables=["beds"])

    def test_declaring_shared_table_as_tenant_is_rejected(self, registry):
        with pytest.raises(StatementRegistrationException):
            registry.register(
                "perm.list", "SELECT * FROM public.permissions", tenant_tables=["permissions"]
            )

    def test_duplicate_name_with_different_sql_is_rejected(self, registry):
        registry.register("beds.list", "SELECT id FROM beds", tenant_tables=["beds"])
        assert registry.register("beds.list", "SELECT id FROM beds", tenant_tables=["beds"])
        with pytest.raises(ValueError):
            registry.register("beds.list", "SELECT label FROM beds", tenant_tables=["beds"])

    def test_unparseable_statement_is_rejected(self, registry):
        with pytest.raises(StatementRegistrationException):
            registry.register("broken", "SELECT 'unterminated FROM beds", tenant_tables=["beds"])

    def test_newly_shared_table_revalidates_existing_statements(self, registry):
        registry.register("wards.list", "SELECT * FROM wards", tenant_tables=["wards"])

        with pytest.raises(StatementRegistrationException):
            registry.add_shared_table("wards")


class TestLookup:
    def test_unknown_statement_name(self, registry):
        with pytest.raises(StatementNotRegisteredException):
            registry.get("nope")

    def test_owns_only_registered_instances(self, registry):
        statement = registry.register("beds.list", "SELECT id FROM beds", tenant_tables=["beds"])
        other = StatementRegistry("public", []).register(
            "beds.list", "SELECT id FROM beds", tenant_tables=["beds"]
        )
        assert registry.owns(statement)
        assert not registry.owns(other)

    def test_shared_lookup_is_qualified_and_reused(self, registry):
        statement = registry.shared_lookup("bed_categories")

        assert statement.name == "shared.bed_categories.by_id"
        assert statement.references == (TableReference("bed_categories", "public"),)
        assert registry.shared_lookup("bed_categories") is statement

    def test_shared_lookup_of_unknown_table(self, registry):
        with pytest.raises(UndeclaredTableReferenceException):
            registry.shared_lookup("beds")

"""
Unit tests for the enrichment rule engine and the target-table store.
Runs against in-memory SQLite with SAVEPOINT support enabled.
"""

from datetime import datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from salesboard.services.shared.models import (
    Dataset, DatasetField, EnrichmentRule, FieldType, Lead, Payment, SalesEvent, WebhookConnection,
)
from salesboard.services.webhooks.enrichment import apply_rule, run_enrichments
from salesboard.services.webhooks.extraction import extract_fields
from salesboard.services.webhooks.target_store import EnrichmentConfigError, TargetStore, validate_target

ORG = "org-1"


@pytest.fixture
def connection(db):
    dataset = Dataset(organization_id=ORG, name="Payments")
    db.add(dataset)
    db.flush()
    conn = WebhookConnection(organization_id=ORG, name="Stripe", dataset_id=dataset.id)
    db.add(conn)
    db.commit()
    return conn


def add_rule(db, connection, **kwargs) -> EnrichmentRule:
    defaults = {
        "dataset_id":             connection.dataset_id,
        "organization_id":        ORG,
        "target_table":           "payments",
        "match_field":            "invoice_id",
        "target_field":           "invoice_id",
        "field_mappings":         [],
        "auto_create_if_missing": False,
    }
    defaults.update(kwargs)
    rule = EnrichmentRule(**defaults)
    db.add(rule)
    db.commit()
    return rule


# ── Update / match ───────────────────────────────────────────────────────────

def test_update_on_match(db, connection):
    payment = Payment(organization_id=ORG, invoice_id="inv_1", payment_status="open")
    db.add(payment)
    db.commit()
    rule = add_rule(db, connection, field_mappings=[{"source_field": "status", "target_column": "payment_status"}])

    outcomes = run_enrichments(db, connection, {"invoice_id": "inv_1", "status": "paid"})

    assert outcomes == [{
        "enrichment_id": rule.id, "target_table": "payments", "action": "updated",
        "record_id": payment.id, "error": None,
    }]
    db.expire_all()
    row = db.get(Payment, payment.id)
    assert row.payment_status == "paid"
    assert row.updated_at is not None


def test_match_without_mapped_values_reports_matched(db, connection):
    payment = Payment(organization_id=ORG, invoice_id="inv_1")
    db.add(payment)
    db.commit()
    add_rule(db, connection, field_mappings=[{"source_field": "status", "target_column": "payment_status"}])

    [outcome] = run_enrichments(db, connection, {"invoice_id": "inv_1"})
    assert outcome["action"] == "matched"
    assert outcome["record_id"] == payment.id


def test_match_is_scoped_to_organization(db, connection):
    db.add(Payment(organization_id="org-2", invoice_id="inv_1"))
    db.commit()
    add_rule(db, connection)

    [outcome] = run_enrichments(db, connection, {"invoice_id": "inv_1"})
    assert outcome["action"] == "skipped"
    assert outcome["error"] is None


def test_absent_match_value_is_skipped_with_reason(db, connection):
    add_rule(db, connection, auto_create_if_missing=True)

    [outcome] = run_enrichments(db, connection, {"invoice_id": "", "status": "paid"})
    assert outcome["action"] == "skipped"
    assert outcome["error"] == 'Match field "invoice_id" not found in extracted data'
    assert db.query(Payment).count() == 0


# ── Create on miss ───────────────────────────────────────────────────────────

def test_create_on_miss_applies_mappings(db, connection):
    add_rule(
        db, connection,
        auto_create_if_missing=True,
        field_mappings=[
            {"source_field": "status", "target_column": "payment_status"},
            {"source_field": "amount", "target_column": "amount"},
            {"source_field": "paid_at", "target_column": "payment_date"},
        ],
    )

    [outcome] = run_enrichments(
        db, connection,
        {"invoice_id": "inv_9", "status": "paid", "amount": 42.0, "paid_at": "2026-02-01T09:00:00.000Z"},
    )

    assert outcome["action"] == "created"
    row = db.get(Payment, outcome["record_id"])
    assert (row.invoice_id, row.organization_id, row.payment_status, row.amount) == ("inv_9", ORG, "paid", 42.0)
    assert row.payment_date == datetime(2026, 2, 1, 9, 0)


def test_redelivery_after_create_matches_existing_row(db, connection):
    add_rule(db, connection, auto_create_if_missing=True)

    first = run_enrichments(db, connection, {"invoice_id": "inv_9"})
    second = run_enrichments(db, connection, {"invoice_id": "inv_9"})

    assert first[0]["action"] == "created"
    assert second[0]["action"] == "matched"
    assert second[0]["record_id"] == first[0]["record_id"]
    assert db.query(Payment).count() == 1


def test_concurrent_create_collapses_via_upsert(db, connection):
    rule = add_rule(
        db, connection,
        auto_create_if_missing=True,
        field_mappings=[{"source_field": "status", "target_column": "payment_status"}],
    )

    # Both deliveries miss on lookup before either has inserted
    store = TargetStore(db)
    store.find_one = MagicMock(return_value=None)

    a = apply_rule(store, rule, ORG, {"invoice_id": "inv_race"})
    b = apply_rule(store, rule, ORG, {"invoice_id": "inv_race", "status": "paid"})
    db.commit()

    assert a.action == b.action == "created"
    assert a.record_id == b.record_id
    row = db.query(Payment).filter_by(invoice_id="inv_race").one()
    assert row.payment_status == "paid"
    assert row.organization_id == ORG


def test_table_without_unique_key_falls_back_to_insert(db, connection):
    add_rule(
        db, connection,
        target_table="events", match_field="event_id", target_field="external_id",
        auto_create_if_missing=True,
        field_mappings=[{"source_field": "start", "target_column": "scheduled_at"}],
    )

    [outcome] = run_enrichments(db, connection, {"event_id": "ev_1", "start": "2026-03-04T15:00:00.000Z"})

    assert outcome["action"] == "created"
    row = db.get(SalesEvent, outcome["record_id"])
    assert row.external_id == "ev_1"
    assert row.scheduled_at == datetime(2026, 3, 4, 15, 0)


def test_no_auto_create_leaves_table_untouched(db, connection):
    add_rule(db, connection)
    [outcome] = run_enrichments(db, connection, {"invoice_id": "inv_404"})
    assert outcome == {
        "enrichment_id": outcome["enrichment_id"], "target_table": "payments",
        "action": "skipped", "record_id": None, "error": None,
    }
    assert db.query(Payment).count() == 0


# ── Value coercion ───────────────────────────────────────────────────────────

def test_numeric_match_value_finds_string_keyed_row(db, connection):
    payment = Payment(organization_id=ORG, invoice_id="1001")
    db.add(payment)
    db.commit()
    add_rule(db, connection, auto_create_if_missing=True)

    extracted = extract_fields({"id": 1001}, [DatasetField(field_slug="invoice_id", json_path="id", field_type=FieldType.number)])
    [outcome] = run_enrichments(db, connection, extracted)

    assert outcome["action"] == "matched"
    assert outcome["record_id"] == payment.id
    assert [p.invoice_id for p in db.query(Payment).all()] == ["1001"]


def test_non_string_values_are_written_as_json_text(db, connection):
    add_rule(
        db, connection,
        target_table="leads", match_field="email", target_field="email",
        auto_create_if_missing=True,
        field_mappings=[
            {"source_field": "vip", "target_column": "status"},
            {"source_field": "phone", "target_column": "phone"},
        ],
    )

    [outcome] = run_enrichments(db, connection, {"email": "a@b.com", "vip": True, "phone": 5551234.0})

    row = db.get(Lead, outcome["record_id"])
    assert (row.status, row.phone) == ("true", "5551234")


@pytest.mark.parametrize("text,expected", [("false", False), ("FALSE", False), ("0", False), ("no", False),
                                           ("true", True), ("T", True), ("1", True), ("yes", True)])
def test_boolean_columns_parse_text(db, connection, text, expected):
    add_rule(
        db, connection,
        auto_create_if_missing=True,
        field_mappings=[{"source_field": "refunded", "target_column": "refunded"}],
    )

    [outcome] = run_enrichments(db, connection, {"invoice_id": "inv_b", "refunded": text})

    assert outcome["action"] == "created"
    assert db.get(Payment, outcome["record_id"]).refunded is expected


def test_unparseable_boolean_is_reported_not_written(db, connection):
    add_rule(
        db, connection,
        auto_create_if_missing=True,
        field_mappings=[{"source_field": "refunded", "target_column": "refunded"}],
    )

    [outcome] = run_enrichments(db, connection, {"invoice_id": "inv_b", "refunded": "maybe"})

    assert outcome["action"] == "skipped"
    assert "invalid boolean" in outcome["error"]
    assert db.query(Payment).count() == 0


def test_explicit_empty_string_is_mapped(db, connection):
    payment = Payment(organization_id=ORG, invoice_id="inv_1", payment_status="open")
    db.add(payment)
    db.commit()
    add_rule(db, connection, field_mappings=[{"source_field": "status", "target_column": "payment_status"}])

    [outcome] = run_enrichments(db, connection, {"invoice_id": "inv_1", "status": ""})

    assert outcome["action"] == "updated"
    db.expire_all()
    assert db.get(Payment, payment.id).payment_status == ""


# ── Fan-out ──────────────────────────────────────────────────────────────────

def test_failing_rule_does_not_block_siblings(db, connection):
    bad = add_rule(
        db, connection,
        auto_create_if_missing=True,
        field_mappings=[{"source_field": "amount_text", "target_column": "amount"}],
    )
    good = add_rule(
        db, connection,
        target_table="leads", match_field="email", target_field="email",
        auto_create_if_missing=True,
        field_mappings=[{"source_field": "name", "target_column": "full_name"}],
    )

    outcomes = run_enrichments(
        db, connection,
        {"invoice_id": "inv_1", "amount_text": "n/a", "email": "a@b.com", "name": "Ann"},
    )

    assert [o["enrichment_id"] for o in outcomes] == [bad.id, good.id]
    assert outcomes[0]["action"] == "skipped" and outcomes[0]["error"]
    assert outcomes[1]["action"] == "created" and outcomes[1]["error"] is None
    assert db.query(Payment).count() == 0
    assert db.query(Lead).one().full_name == "Ann"


def test_storage_error_in_one_rule_is_captured(db, connection):
    add_rule(db, connection)
    add_rule(db, connection, target_table="leads", match_field="email", target_field="email", auto_create_if_missing=True)

    store = TargetStore(db)
    real_find = store.find_one

    def flaky_find(table, *args):
        if table == "payments":
            raise OperationalError("SELECT", {}, Exception("relation busy"))
        return real_find(table, *args)

    store.find_one = flaky_find
    outcomes = run_enrichments(db, connection, {"invoice_id": "inv_1", "email": "b@c.com"}, store=store)

    assert "relation busy" in outcomes[0]["error"]
    assert outcomes[1]["action"] == "created"
    assert db.query(Lead).filter_by(email="b@c.com").count() == 1


def test_inactive_rules_are_ignored(db, connection):
    add_rule(db, connection, is_active=False, auto_create_if_missing=True)
    assert run_enrichments(db, connection, {"invoice_id": "inv_1"}) == []


# ── Allow-list ───────────────────────────────────────────────────────────────

def test_validate_target_accepts_known_columns():
    validate_target("payments", ["invoice_id", "payment_status", "amount"])


@pytest.mark.parametrize("table,columns", [
    ("invoices", ["invoice_id"]),
    ("payments", ["nope"]),
    ("leads", ["organization_id"]),
    ("leads", ["id"]),
])
def test_validate_target_rejects_unknown_or_protected(table, columns):
    with pytest.raises(EnrichmentConfigError):
        validate_target(table, columns)


def test_unknown_table_in_stored_rule_is_reported(db, connection):
    add_rule(db, connection, target_table="users", target_field="email", match_field="email")
    [outcome] = run_enrichments(db, connection, {"email": "x@y.z"})
    assert outcome["error"] == "Unknown target table: users"

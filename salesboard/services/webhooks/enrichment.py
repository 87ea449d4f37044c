"""
Enrichment rule engine.

For each active EnrichmentRule on the delivery's dataset, in id order:

  1. match_value = extracted[rule.match_field]; absent/empty -> skipped
  2. find target row where target_field = match_value (same organization)
  3. found     -> matched; apply field_mappings if any produced a value -> updated
  4. not found -> skipped, unless auto_create_if_missing
  5. create    -> upsert on (target_field, organization_id); tables without
                  that unique constraint fall back to a plain insert -> created

Each rule runs in its own SAVEPOINT: a failing rule is rolled back and its
error reported in its outcome, sibling rules still run.
"""

from dataclasses import asdict, dataclass
from typing import Any, Optional

import structlog
from sqlalchemy import select

from salesboard.services.shared.models import EnrichmentRule
from salesboard.services.webhooks.target_store import TargetStore

logger = structlog.get_logger()


@dataclass
class EnrichmentOutcome:
    enrichment_id: int
    target_table: str
    action: str                     # matched | created | updated | skipped
    record_id: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def list_active_rules(db, dataset_id: int) -> list[EnrichmentRule]:
    return list(
        db.execute(
            select(EnrichmentRule)
            .where(EnrichmentRule.dataset_id == dataset_id, EnrichmentRule.is_active == True)  # noqa: E712
            .order_by(EnrichmentRule.id)
        ).scalars()
    )


def _mapped_values(rule: EnrichmentRule, extracted: dict[str, Any]) -> dict[str, Any]:
    values = {}
    for mapping in rule.field_mappings or []:
        source = mapping.get("source_field")
        target = mapping.get("target_column")
        if not source or not target:
            continue
        if source in extracted:
            values[target] = extracted[source]
    return values


def apply_rule(store: TargetStore, rule: EnrichmentRule, organization_id: str, extracted: dict[str, Any]) -> EnrichmentOutcome:
    outcome = EnrichmentOutcome(enrichment_id=rule.id, target_table=rule.target_table, action="skipped")

    match_value = extracted.get(rule.match_field)
    if _is_empty(match_value):
        outcome.error = f'Match field "{rule.match_field}" not found in extracted data'
        return outcome

    mapped = _mapped_values(rule, extracted)
    existing_id = store.find_one(rule.target_table, rule.target_field, match_value, organization_id)

    if existing_id is not None:
        outcome.action = "matched"
        outcome.record_id = existing_id
        if mapped:
            store.update(rule.target_table, existing_id, mapped)
            outcome.action = "updated"
        return outcome

    if not rule.auto_create_if_missing:
        return outcome

    row = {**mapped, rule.target_field: match_value, "organization_id": organization_id}
    conflict_columns = [rule.target_field, "organization_id"]
    try:
        outcome.record_id = store.upsert(rule.target_table, conflict_columns, row)
    except LookupError as exc:
        logger.warning(
            "enrichment_upsert_fallback_insert",
            enrichment_id=rule.id,
            target_table=rule.target_table,
            reason=str(exc),
        )
        outcome.record_id = store.insert(rule.target_table, row)
    outcome.action = "created"
    return outcome


def run_enrichments(db, connection, extracted: dict[str, Any], store: Optional[TargetStore] = None) -> list[dict[str, Any]]:
    """Evaluate every active rule of the connection's dataset; returns outcome dicts in rule order."""
    if connection.dataset_id is None:
        return []
    rules = list_active_rules(db, connection.dataset_id)
    if not rules:
        return []

    store = store or TargetStore(db)
    outcomes = []
    for rule in rules:
        rule_id, target_table = rule.id, rule.target_table
        try:
            with db.begin_nested():
                outcome = apply_rule(store, rule, connection.organization_id, extracted)
        except Exception as exc:
            logger.error(
                "enrichment_rule_failed",
                enrichment_id=rule_id,
                target_table=target_table,
                error=str(exc),
            )
            outcome = EnrichmentOutcome(
                enrichment_id=rule_id, target_table=target_table, action="skipped", error=str(exc),
            )
        outcomes.append(outcome.to_dict())

    db.commit()
    logger.info(
        "enrichments_applied",
        connection_id=connection.id,
        rules=len(outcomes),
        errors=sum(1 for o in outcomes if o["error"]),
    )
    return outcomes

from __future__ import annotations

import logging
from typing import Optional, Sequence

from charterdesk.app.errors import CharterDeskError, ValidationError
from charterdesk.app.models import BulkUpdateError, BulkUpdateOutcome, BulkUpdateSummary
from charterdesk.app.services.status import StatusService
from charterdesk.app.services.workflow import StatusValue, parse_status

logger = logging.getLogger("charterdesk.bulk")


def bulk_update_status(
    service: StatusService,
    entity_ids: Sequence[str],
    new_status: StatusValue,
    changed_by: str,
    note: Optional[str] = None,
) -> list[BulkUpdateOutcome]:
    """Apply one status change to many entities, one independent update per ID.

    No atomicity across the batch: a failing ID is reported in its outcome
    and the remaining IDs are still processed.
    """
    if entity_ids is None or isinstance(entity_ids, str):
        raise ValidationError("entity_ids must be a list of ids")
    if not entity_ids:
        raise ValidationError("entity_ids cannot be empty")
    target = parse_status(service.kind, new_status)

    outcomes: list[BulkUpdateOutcome] = []
    for entity_id in entity_ids:
        try:
            record = service.update_status(entity_id, target, changed_by, note)
        except CharterDeskError as exc:
            logger.warning(
                "bulk_update_failed kind=%s entity_id=%s reason=%s detail=%s",
                service.kind.value,
                entity_id,
                exc.reason,
                exc,
            )
            outcomes.append(
                BulkUpdateOutcome(
                    entity_id=entity_id,
                    succeeded=False,
                    error=BulkUpdateError(reason=exc.reason, message=str(exc)),
                )
            )
            continue
        outcomes.append(BulkUpdateOutcome(entity_id=entity_id, succeeded=True, record=record))
    return outcomes


def summarize(outcomes: Sequence[BulkUpdateOutcome]) -> BulkUpdateSummary:
    updated = len([outcome for outcome in outcomes if outcome.succeeded])
    return BulkUpdateSummary(
        requested=len(outcomes),
        updated=updated,
        failed=len(outcomes) - updated,
        results=list(outcomes),
    )

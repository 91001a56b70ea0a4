"""
Record filtering applied before planning.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Iterable, List, Optional, Sequence, Union

from .models import Record

logger = logging.getLogger(__name__)

# Intent tags marking tickets that carry no product knowledge
SPAM_TAGS = frozenset([
    "intent__misc__not_received__email_delivery_failed",
    "intent__misc__unsolicited__marketing_or_newsletter",
    "intent__misc__unsolicited__partnership",
    "intent__misc__previous_message__check",
    "intent__misc__received__shareable_file_link",
    "intent__misc__unsolicited__event_invitation",
    "intent__billing__balance__wrong_account_balance",
    "intent__billing__documentation__statement_report",
    "intent__billing__invoice__request",
    "intent__billing__price_clarification__info_included_in_price",
    "intent__billing__price_clarification__which_price",
    "intent__billing__subscription_cancel__request",
    "intent__billing__subscription_update__downgrade",
    "intent__misc__job_application__new",
    "intent__order__new__quote_request",
    "intent__service__appointment__new",
    "intent__misc__thanks__thanks",
    "intent__account__invitation__user_invitation",
    "spam",
    "intent__software__security__detected_flaw",
])

JIRA_ESCALATED_TAG = "jira_escalated"
EXCLUDED_AREA_TAG = "tpa_adopt"

DateLike = Union[str, date, datetime, None]


def _to_utc(value: DateLike, end_of_day: bool = False) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.max if end_of_day else time.min)
    elif end_of_day and value.time() == time.min:
        value = datetime.combine(value.date(), time.max, value.tzinfo)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def record_tags(record: Record) -> List[str]:
    """Tags of a record, read from metadata or structured content."""
    tags = record.metadata.get("tags")
    if tags is None and isinstance(record.content, dict):
        tags = record.content.get("tags")
    if tags is None:
        return []
    if isinstance(tags, str):
        return [tag for tag in tags.replace(",", " ").split() if tag]
    return [str(tag) for tag in tags]


@dataclass
class RecordFilter:
    """
    Selects records worth sending to the generation service.

    Args:
        category: Keep only records tagged with this product area (tpa)
        subcategory: Keep only records tagged with this sub area (tpsa), used when no category is set
        start_date: Inclusive start of the creation window (UTC start of day)
        end_date: Inclusive end of the creation window (UTC end of day)
        include_jira: Keep Jira-escalated records (only honoured with a subcategory filter)
        export_mode: Keep Jira-escalated records regardless of filters
    """

    category: Optional[str] = None
    subcategory: Optional[str] = None
    start_date: DateLike = None
    end_date: DateLike = None
    include_jira: bool = False
    export_mode: bool = False

    def _keep_jira(self) -> bool:
        if self.export_mode:
            return True
        return bool(self.include_jira and self.subcategory and not self.category)

    def matches(self, record: Record) -> bool:
        tags = set(record_tags(record))

        if self.category and self.category not in tags:
            return False
        if not self.category and self.subcategory and self.subcategory not in tags:
            return False
        if EXCLUDED_AREA_TAG in tags:
            return False
        if tags & SPAM_TAGS:
            return False
        if JIRA_ESCALATED_TAG in tags and not self._keep_jira():
            return False

        start = _to_utc(self.start_date)
        end = _to_utc(self.end_date, end_of_day=True)
        if start or end:
            try:
                created_at = _to_utc(record.metadata.get("created_at"))
            except (TypeError, ValueError):
                logger.warning(f"Dropping record {record.id}: invalid created_at")
                return False
            if created_at is None:
                return False
            if start and created_at < start:
                return False
            if end and created_at > end:
                return False

        return True

    def apply(self, records: Iterable[Record]) -> List[Record]:
        """Return matching records in their original order."""
        records = list(records)
        filtered = [record for record in records if self.matches(record)]
        logger.info(f"Total records after filtering: {len(filtered)} of {len(records)}")
        return filtered


def filter_records(records: Sequence[Record], **criteria) -> List[Record]:
    return RecordFilter(**criteria).apply(records)

"""
Result processor for repairing generation output and reattaching record metadata.
"""

import re
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from json_repair import repair_json

from ..exceptions import ResultParseError
from ..models import Artifact, BatchFailure, GenerationResult, Record

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArtifactSchema:
    """Field names the model uses for one kind of artifact."""

    id_field: str
    content_field: Optional[str] = None
    title_field: str = "question"
    body_field: str = "answer"
    category_fields: Tuple[str, ...] = ("tpa", "tpsa")


# Knowledge base articles: {"Ticket IDs": [...], "Knowledge Base Article": {...}, "tpa", "tpsa"}
ARTICLE_SCHEMA = ArtifactSchema(id_field="Ticket IDs", content_field="Knowledge Base Article")

# Ticket categorisation: {"id": ..., "tpa": ..., "tpsa": ...}
TAG_SCHEMA = ArtifactSchema(id_field="id", title_field="", body_field="")


@dataclass
class ProcessedResults:
    """Artifacts flattened across batches plus the batches that failed to parse."""

    artifacts: List[Artifact] = field(default_factory=list)
    failures: List[BatchFailure] = field(default_factory=list)


class ResultProcessor:
    """
    Turns raw generation text into artifacts.

    This component:
    1. Strips formatting markers wrapped around the JSON
    2. Parses the text, repairing near-JSON when strict parsing fails
    3. Matches the ids the model echoed back against the batch's records
    """

    def __init__(self, schema: ArtifactSchema = ARTICLE_SCHEMA):
        """
        Initialize the result processor.

        Args:
            schema: Field layout of the artifacts in the model output
        """
        self.schema = schema
        # Fence wrapping the whole payload
        self.fence_pattern = re.compile(r"^\s*```(?:json|JSON)?\s*(.*?)\s*```\s*$", re.DOTALL)
        # Fence after leading prose, closed by the last fence in the text
        self.prose_fence_pattern = re.compile(r"```(?:json|JSON)?\s*(.*)```", re.DOTALL)
        self.leading_marker_pattern = re.compile(r"^`+\s*(?:json|JSON)?\s*")
        self.trailing_marker_pattern = re.compile(r"\s*`+$")

    def strip_markers(self, raw_text: str) -> str:
        """
        Remove wrapper markers around the payload.

        Only fences that enclose the payload are stripped. Text that already
        starts like JSON is never searched for fences, since article bodies
        often contain fenced snippets of their own.
        """
        text = raw_text.strip()
        fenced = self.fence_pattern.match(text)
        if fenced:
            return fenced.group(1).strip()
        if text and text[0] not in "[{`":
            fenced = self.prose_fence_pattern.search(text)
            if fenced:
                return fenced.group(1).strip()
        text = self.leading_marker_pattern.sub("", text)
        text = self.trailing_marker_pattern.sub("", text)
        return text.strip()

    def parse(self, raw_text: str, record_ids: Sequence[str] = (), batch_index: Optional[int] = None) -> List[Any]:
        """
        Parse raw text into a flat list of items.

        Args:
            raw_text: Text returned by the service
            record_ids: Ids of the batch, kept on the error for diagnostics
            batch_index: Index of the batch, kept on the error for diagnostics

        Returns:
            Flat list of parsed items

        Raises:
            ResultParseError: When neither strict parsing nor repair yields JSON
        """
        text = (raw_text or "").strip()
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            cleaned = self.strip_markers(text)
            try:
                data = json.loads(cleaned)
            except json.JSONDecodeError:
                logger.warning(f"Batch {batch_index} returned malformed JSON, attempting repair")
                try:
                    data = json.loads(repair_json(cleaned))
                except (json.JSONDecodeError, ValueError) as e:
                    raise ResultParseError(
                        f"Failed to repair or parse JSON for batch {batch_index}: {e}",
                        raw_text=raw_text,
                        record_ids=record_ids,
                        batch_index=batch_index,
                    ) from e

        if not isinstance(data, (list, dict)):
            raise ResultParseError(
                f"Batch {batch_index} did not contain a JSON array or object",
                raw_text=raw_text,
                record_ids=record_ids,
                batch_index=batch_index,
            )

        return self._flatten(data)

    def _flatten(self, data: Any) -> List[Any]:
        if isinstance(data, dict):
            return [data]
        items = []
        for item in data:
            if isinstance(item, list):
                items.extend(self._flatten(item))
            else:
                items.append(item)
        return items

    def repair_and_merge(
        self,
        result: GenerationResult,
        records: Optional[Sequence[Record]] = None,
    ) -> List[Artifact]:
        """
        Parse one generation result and merge it with its source records.

        Args:
            result: Raw result for one batch
            records: Records originally sent in the batch, defaults to the result's batch

        Returns:
            Artifacts in the order the model produced them

        Raises:
            ResultParseError: When the raw text cannot be parsed
        """
        batch = result.batch
        batch_index = getattr(batch, "index", None)
        if records is None:
            records = batch.records
        lookup: Dict[str, Record] = {str(record.id): record for record in records}

        items = self.parse(result.raw_text, list(lookup), batch_index)
        artifacts = []

        for position, item in enumerate(items):
            if not isinstance(item, dict):
                logger.warning(f"Skipping non-object item {position} in batch {batch_index}")
                continue

            echoed = self._echoed_ids(item)
            known = [source_id for source_id in echoed if source_id in lookup]
            unknown = [source_id for source_id in echoed if source_id not in lookup]
            if unknown:
                logger.warning(f"Dropping ids not present in batch {batch_index}: {unknown}")
            if not known:
                logger.warning(f"Dropping item {position} in batch {batch_index}: no known record ids")
                continue

            artifacts.append(self._build_artifact(item, known, lookup, batch_index))

        logger.info(f"Extracted {len(artifacts)} artifacts from batch {batch_index} ({len(items)} items parsed)")
        return artifacts

    def _echoed_ids(self, item: Dict[str, Any]) -> List[str]:
        value = item.get(self.schema.id_field)
        if value is None:
            return []
        if not isinstance(value, list):
            value = [value]
        ids = []
        for source_id in value:
            source_id = str(source_id).strip()
            if source_id and source_id not in ids:
                ids.append(source_id)
        return ids

    def _build_artifact(
        self,
        item: Dict[str, Any],
        source_ids: List[str],
        lookup: Dict[str, Record],
        batch_index: Optional[int],
    ) -> Artifact:
        content = item
        if self.schema.content_field:
            content = item.get(self.schema.content_field) or {}
            if not isinstance(content, dict):
                content = {self.schema.body_field: str(content)}

        categories = {
            name: item.get(name)
            for name in self.schema.category_fields
            if item.get(name) is not None
        }
        fields = {key: value for key, value in content.items()} if content is not item else {}
        fields.update(categories)

        return Artifact(
            source_ids=list(source_ids),
            category=categories.get(self.schema.category_fields[0]) if self.schema.category_fields else None,
            title=str(content.get(self.schema.title_field, "")) if self.schema.title_field else "",
            body=str(content.get(self.schema.body_field, "")) if self.schema.body_field else "",
            fields=fields,
            source_records=tuple(lookup[source_id] for source_id in source_ids),
            batch_index=batch_index,
        )

    def process_all(self, results: Sequence[GenerationResult]) -> ProcessedResults:
        """
        Repair every result and flatten the artifacts into one list.

        Artifact order follows the order of `results`, which under concurrent
        execution is completion order, not input order.

        Raises:
            ResultParseError: When no batch could be parsed at all
        """
        processed = ProcessedResults()
        last_error: Optional[ResultParseError] = None

        for result in results:
            try:
                processed.artifacts.extend(self.repair_and_merge(result))
            except ResultParseError as e:
                logger.error(f"{e.message}. Raw text that caused error: {e.raw_text[:500]}")
                processed.failures.append(
                    BatchFailure(
                        batch_index=e.batch_index if e.batch_index is not None else -1,
                        record_ids=e.record_ids,
                        error=e.message,
                        raw_text=e.raw_text,
                    )
                )
                last_error = e

        if results and len(processed.failures) == len(results):
            raise last_error

        return processed

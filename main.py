#!/usr/bin/env python3
import os
import json
import asyncio
import argparse
import logging
import sys
from typing import List

from kbsynth.config import GENERATION_INSTRUCTION, TAGGING_INSTRUCTION, PipelineConfig
from kbsynth.embedder import create_embedder
from kbsynth.filters import RecordFilter
from kbsynth.llm_client import GeminiClient
from kbsynth.models import Record
from kbsynth.orchestrator import KnowledgeBasePipeline
from kbsynth.processors import ARTICLE_SCHEMA, TAG_SCHEMA
from kbsynth.sinks import JsonFileSink, VectorStoreSink
from kbsynth.storage import VectorStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler("kbsynth.log")
    ]
)
logger = logging.getLogger(__name__)

CONTENT_FIELDS = ("content", "description", "body", "text")


def load_records(path: str) -> List[Record]:
    """
    Load records from a JSON array of objects.

    Each object needs an ``id``. The first of content/description/body/text
    becomes the record content and every other field becomes string metadata
    (lists are joined with commas).
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = data.get("records") or data.get("tickets") or []

    records = []
    for item in data:
        if "id" not in item:
            logger.warning(f"Skipping record without id: {str(item)[:80]}")
            continue
        content_key = next((key for key in CONTENT_FIELDS if key in item), None)
        metadata = {}
        for key, value in item.items():
            if key in ("id", content_key) or value is None:
                continue
            metadata[key] = ",".join(str(v) for v in value) if isinstance(value, list) else str(value)
        records.append(
            Record(id=str(item["id"]), content=item.get(content_key, "") if content_key else "", metadata=metadata)
        )
    return records


async def run(args) -> None:
    config = PipelineConfig.from_env()
    if args.timeout:
        config.timeout = args.timeout

    records = load_records(args.input)
    logger.info(f"Loaded {len(records)} records from {args.input}")

    record_filter = RecordFilter(
        category=args.category,
        subcategory=args.subcategory,
        start_date=args.start_date,
        end_date=args.end_date,
        include_jira=args.include_jira,
        export_mode=args.export,
    )
    records = record_filter.apply(records)

    if args.mode == "tag":
        client = GeminiClient(instruction=TAGGING_INSTRUCTION)
        pipeline = KnowledgeBasePipeline(client, config=config, schema=TAG_SCHEMA, show_progress=True)
        tagged = await pipeline.tag_records(records)
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(
                [{"id": record.id, **dict(record.metadata)} for record in tagged],
                f,
                indent=2,
                ensure_ascii=False,
            )
        logger.info(f"Tagged records saved to {args.output}")
        return

    shared_context = None
    if args.docs:
        with open(args.docs, "r", encoding="utf-8") as f:
            shared_context = json.load(f)

    embedder = None
    store = None
    if args.store != "none":
        embedder = create_embedder(args.embedder, dimensions=config.embedding_dimensions)
        store = VectorStore.create(args.store, {**config.vector_db, "dimensions": config.embedding_dimensions})

    sinks = [JsonFileSink(args.output)]
    if args.ingest and store is not None:
        sinks.append(VectorStoreSink(store))

    client = GeminiClient(instruction=GENERATION_INSTRUCTION)
    pipeline = KnowledgeBasePipeline(
        client,
        embedder=embedder,
        store=store,
        config=config,
        schema=ARTICLE_SCHEMA,
        sinks=sinks,
        show_progress=True,
    )
    result = await pipeline.run(records, shared_context)

    if args.report:
        with open(args.report, "w", encoding="utf-8") as f:
            json.dump(result.to_dict(), f, indent=2, ensure_ascii=False)
        logger.info(f"Run report saved to {args.report}")


def main():
    """
    Main entry point for knowledge base synthesis.
    """
    parser = argparse.ArgumentParser(
        description="Knowledge base synthesis: turn support records into deduplicated articles"
    )

    parser.add_argument("-i", "--input", required=True, help="Path to the records JSON file")
    parser.add_argument("-d", "--docs", help="Path to a JSON file with existing documentation sent as shared context")
    parser.add_argument(
        "-o", "--output",
        help="Path to save the output JSON file. If not provided, will use the input filename with _articles.json."
    )
    parser.add_argument("--report", help="Path to save the full run report (merged and failed items)")
    parser.add_argument("--mode", choices=["article", "tag"], default="article", help="Generate articles or tag records")
    parser.add_argument(
        "--store", choices=["none", "memory", "elasticsearch"], default="elasticsearch",
        help="Corpus vector store used for deduplication"
    )
    parser.add_argument("--embedder", choices=["gemini", "openai"], default="gemini", help="Embedding provider")
    parser.add_argument("--ingest", action="store_true", help="Insert new articles into the vector store")
    parser.add_argument("--category", help="Keep only records tagged with this product area (tpa)")
    parser.add_argument("--subcategory", help="Keep only records tagged with this sub area (tpsa)")
    parser.add_argument("--start-date", help="Inclusive start date (YYYY-MM-DD, UTC)")
    parser.add_argument("--end-date", help="Inclusive end date (YYYY-MM-DD, UTC)")
    parser.add_argument("--include-jira", action="store_true", help="Keep Jira-escalated records for subcategory runs")
    parser.add_argument("--export", action="store_true", help="Keep Jira-escalated records regardless of filters")
    parser.add_argument("--timeout", type=float, help="Overall deadline in seconds")

    args = parser.parse_args()

    # Validate input file
    args.input = os.path.abspath(args.input)
    if not os.path.exists(args.input):
        logger.error(f"Input file not found: {args.input}")
        sys.exit(1)

    if args.docs and not os.path.exists(args.docs):
        logger.error(f"Docs file not found: {args.docs}")
        sys.exit(1)

    # Determine output path
    if args.output:
        args.output = os.path.abspath(args.output)
    else:
        input_name = os.path.splitext(os.path.basename(args.input))[0]
        output_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), "output")
        suffix = "tags" if args.mode == "tag" else "articles"
        args.output = os.path.join(output_dir, f"{input_name}_{suffix}.json")

    # Create output directory if it doesn't exist
    os.makedirs(os.path.dirname(args.output), exist_ok=True)

    logger.info(f"Starting knowledge base synthesis on {args.input}")
    logger.info(f"Output will be saved to {args.output}")

    try:
        asyncio.run(run(args))
        logger.info(f"Processing complete. Results saved to {args.output}")
    except Exception as e:
        logger.error(f"Error during processing: {str(e)}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

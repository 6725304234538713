#!/usr/bin/env python3
"""Metadata extraction CLI script.

Runs the canvas pipeline over a free-text description and prints the resulting
metadata as JSON.

Usage:
    python scripts/extract_metadata.py "Workshop zur digitalen Bildung am 15.9.2026 in Berlin"
    python scripts/extract_metadata.py --file description.txt --format repository
    echo "..." | python scripts/extract_metadata.py --output result.json

Options:
    --file, -f: Read the text from a file ("-" for stdin)
    --config, -c: Path to config file (default: config/config.yaml)
    --schema-dir: Directory containing schema files
    --language: Schema language (de or en)
    --format: document | repository | export (default: document)
    --output, -o: Write JSON to a file instead of stdout
    --verbose, -v: Enable verbose logging
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from loguru import logger

from metadata_canvas.pipeline import CanvasPipeline
from metadata_canvas.utils.config import Config, load_config
from metadata_canvas.utils.errors import SchemaLoadError
from metadata_canvas.utils.log_setup import setup_logging


def read_input_text(text: str | None, file: Path | None) -> str:
    """Text from the positional argument, a file, or stdin."""
    if text:
        return text
    if file is not None and str(file) != "-":
        return file.read_text(encoding="utf-8")
    return sys.stdin.read()


def build_output(pipeline: CanvasPipeline, output_format: str) -> dict:
    if output_format == "repository":
        return pipeline.repository_payload()
    if output_format == "export":
        return pipeline.export_as_json()
    return pipeline.metadata_document()


async def run(config: Config, text: str, output_format: str) -> dict:
    pipeline = CanvasPipeline(config)
    state = await pipeline.start_extraction(text)
    logger.info(
        f"Filled {state.filled_fields}/{state.total_fields} fields "
        f"({state.extraction_progress:.0f}%)"
    )
    if state.selected_content_type:
        logger.info(
            f"Content type: {state.selected_content_type} "
            f"({state.content_type_confidence:.0%}, {state.content_type_reason})"
        )
    return build_output(pipeline, output_format)


def main():
    """Main CLI function."""
    parser = argparse.ArgumentParser(
        description="Extract schema-driven metadata from free text",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument("text", nargs="?", help="Description of the resource")

    parser.add_argument("--file", "-f", type=Path, help="Read the text from a file ('-' for stdin)")

    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config/config.yaml"),
        help="Path to configuration file (default: config/config.yaml)",
    )

    parser.add_argument("--schema-dir", type=Path, help="Directory containing schema files")

    parser.add_argument("--language", choices=["de", "en"], help="Schema language")

    parser.add_argument(
        "--format",
        choices=["document", "repository", "export"],
        default="document",
        help="Output format (default: document)",
    )

    parser.add_argument("--output", "-o", type=Path, help="Write JSON to this file")

    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    try:
        if args.config.exists():
            config = load_config(args.config)
        else:
            config = Config()
    except (ValueError, OSError) as e:
        print(f"Failed to load configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(config.logging, verbose=args.verbose)
    logger.info(f"Loaded configuration from {args.config}")

    if args.schema_dir:
        config.schema_source.schema_dir = args.schema_dir
    if args.language:
        config.schema_source.language = args.language

    text = read_input_text(args.text, args.file).strip()
    if not text:
        parser.error("No input text given. Pass it as argument, via --file or on stdin.")

    try:
        result = asyncio.run(run(config, text, args.format))
    except SchemaLoadError as e:
        logger.error(f"Schema loading failed: {e}")
        return 1

    rendered = json.dumps(result, indent=2, ensure_ascii=False)
    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(rendered + "\n", encoding="utf-8")
        logger.success(f"Wrote metadata to {args.output}")
    else:
        print(rendered)
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""Command line entry points for the customer classification engine."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from customer_tiering.config import ConfigurationError
from customer_tiering.pipeline import ClassificationEngine
from customer_tiering.storage import InMemoryStore
from customer_tiering.validation.checks import CheckStatus, validate_classification

logger = logging.getLogger(__name__)


MAX_INPUT_BYTES = 25 * 1024 * 1024  # 25 MiB cap to avoid accidental OOM


def _load_dataset(path: Path) -> dict[str, Any]:
    resolved = path.resolve()
    size = resolved.stat().st_size
    if size > MAX_INPUT_BYTES:
        raise ValueError(
            f"Input file {resolved} is {size} bytes; exceeds limit of {MAX_INPUT_BYTES} bytes"
        )
    with path.open("r", encoding="utf-8") as fh:
        payload = json.load(fh)
    if not isinstance(payload, dict):
        raise ValueError("Expected a JSON object with customers, bookings and order_lines")
    return payload


def _parse_as_of(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _write_output(payload: dict[str, Any], output: Path | None) -> None:
    if output:
        output_path = output.resolve()
        cwd = Path.cwd().resolve()
        try:
            output_path.relative_to(cwd)
        except ValueError:
            raise ValueError(
                f"Output path {output_path} must reside within the current working directory"
            )
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with output_path.open("w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2, sort_keys=True)
    else:  # stdout fallback enables piping in shell usage.
        json.dump(payload, fp=sys.stdout, indent=2, sort_keys=True)
        print()


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "input",
        type=Path,
        help="Path to JSON dataset (customers, bookings, order_lines, settings, storage_status)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        help="Optional path for writing the result as JSON (defaults to stdout).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: INFO)",
    )


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def classify_customers_cli(argv: list[str] | None = None) -> int:
    """Run the full classification pipeline over a JSON dataset.

    Writes the run statistics, feature rows, segment rows, stage status rows
    and the validation report as one JSON document.

    Returns:
        Exit code (0 for success, 1 for configuration errors)
    """
    parser = argparse.ArgumentParser(
        description="Classify customers into lifecycle, value and pyramid tiers"
    )
    _add_common_arguments(parser)
    parser.add_argument(
        "--as-of",
        type=str,
        help="Run date (ISO format). Defaults to now; pin it for reproducible output.",
    )
    parser.add_argument(
        "--serial",
        action="store_true",
        help="Disable multiprocessing for feature aggregation.",
    )
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)

    logger.info("Loading dataset from %s", args.input)
    store = InMemoryStore.from_dataset(_load_dataset(args.input))
    engine = ClassificationEngine(store, parallel=not args.serial)

    try:
        stats = engine.run_classification(as_of=_parse_as_of(args.as_of))
    except ConfigurationError as exc:
        logger.error("Classification aborted: %s", exc)
        return 1

    payload = {
        "run": stats,
        **store.as_dict(),
        "validation": engine.validate().as_dict(),
    }
    _write_output(payload, args.output)
    logger.info(
        "Classified %d customers in %.2fs",
        stats["processed_count"],
        stats["duration_seconds"],
    )
    return 0


def validate_classification_cli(argv: list[str] | None = None) -> int:
    """Audit classification output against its source dataset.

    Returns:
        Exit code (0 for pass or warning, 1 when any check fails)
    """
    parser = argparse.ArgumentParser(
        description="Validate feature and segment coverage of a classification run"
    )
    _add_common_arguments(parser)
    parser.add_argument(
        "--classification",
        type=Path,
        help=(
            "Output of classify-customers; its features and segments replace any "
            "in the input dataset."
        ),
    )
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)

    payload = _load_dataset(args.input)
    if args.classification:
        classified = _load_dataset(args.classification)
        payload = {
            **payload,
            "features": classified.get("features", []),
            "segments": classified.get("segments", []),
        }

    report = validate_classification(InMemoryStore.from_dataset(payload))
    _write_output(report.as_dict(), args.output)
    return 1 if report.overall_status is CheckStatus.FAIL else 0


def main() -> None:
    raise SystemExit(classify_customers_cli())


if __name__ == "__main__":  # pragma: no cover
    main()

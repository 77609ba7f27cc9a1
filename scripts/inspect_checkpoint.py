#!/usr/bin/env python

# scripts/inspect_checkpoint.py

"""
Decodes a persisted partition checkpoint and prints where the partition
stands: the resume position, the open upload session and the objects it has
completed. Reads a local JSON file or an ``s3://bucket/key`` URL.
"""

import argparse
import json
import sys
from pathlib import Path
from urllib.parse import urlparse

import boto3
from botocore.exceptions import ClientError, NoCredentialsError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from bulk_transfer.checkpoint import decode_checkpoint
from bulk_transfer.exceptions import CheckpointCorruptionError
from bulk_transfer.schemas import CheckpointState
from bulk_transfer.summary import build_output_descriptors, parse_summary


def load_raw(location: str) -> str:
    parsed = urlparse(location)
    if parsed.scheme == "s3":
        body = boto3.client("s3").get_object(
            Bucket=parsed.netloc, Key=parsed.path.lstrip("/")
        )["Body"]
        return body.read().decode("utf-8")
    return Path(location).read_text(encoding="utf-8")


def render(console: Console, state: CheckpointState, args: argparse.Namespace) -> None:
    overview = Table(title="Checkpoint", show_header=False)
    overview.add_column("Field", style="cyan")
    overview.add_column("Value")
    overview.add_row("Exhausted", "[green]yes[/green]" if state.exhausted else "no")
    overview.add_row("Unit", str(state.partition_cursor_index))
    overview.add_row(
        "Resume at",
        f"page {state.last_flushed_page + 1}, skipping {state.page_record_offset} records",
    )
    overview.add_row(
        "Pages", f"{state.page_number} of {state.last_page_number or 'unknown'}"
    )
    overview.add_row("Upload session", state.upload_id or "-")
    overview.add_row("Parts in session", str(len(state.uploaded_parts)))
    overview.add_row(
        "Current object",
        f"{state.current_object_resource_count} records, {state.current_object_byte_size} bytes",
    )
    overview.add_row("Completed objects", str(state.upload_count))
    overview.add_row("Total records", str(state.total_resource_count))
    console.print(overview)

    groups = parse_summary(state.object_summary)
    if groups:
        objects = Table(title="Completed objects")
        objects.add_column("Label", style="cyan")
        objects.add_column("Index", justify="right")
        objects.add_column("Records", justify="right")
        for label, counts in groups.items():
            for index, count in enumerate(counts, start=1):
                objects.add_row(label, str(index), str(count))
        console.print(objects)

    if args.bucket:
        descriptors = build_output_descriptors(
            state.object_summary, args.base_url, args.bucket, args.prefix
        )
        for descriptor in descriptors:
            console.print(f"{descriptor.type}: {descriptor.url} ({descriptor.count})")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Inspect a bulk transfer partition checkpoint.",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("location", help="Path to a checkpoint JSON file or an s3:// URL.")
    parser.add_argument("--bucket", help="Export bucket, to print download URLs.")
    parser.add_argument("--prefix", default="", help="Job path prefix inside the bucket.")
    parser.add_argument(
        "--base-url",
        default="https://s3.amazonaws.com",
        help="Base URL for download descriptors.",
    )
    parser.add_argument(
        "--json", action="store_true", help="Print the decoded checkpoint as JSON."
    )
    args = parser.parse_args(argv)
    console = Console()

    try:
        raw = load_raw(args.location)
        state = decode_checkpoint(raw)
    except (OSError, ClientError, NoCredentialsError) as e:
        console.print(Panel(str(e), title="Could not read checkpoint", border_style="red"))
        return 2
    except CheckpointCorruptionError as e:
        console.print(
            Panel(
                json.dumps(e.to_dict(), indent=2, default=str),
                title="Corrupt checkpoint",
                border_style="red",
            )
        )
        return 1

    if args.json:
        console.print_json(state.model_dump_json(by_alias=True))
    else:
        render(console, state, args)
    return 0


if __name__ == "__main__":
    sys.exit(main())

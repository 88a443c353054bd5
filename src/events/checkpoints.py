"""Named consumer checkpoints: events/checkpoints/consumer-<name>.json."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import structlog

from src.config.project import ProjectContext
from src.config.settings import CONSUMER_NAME_RE
from src.events.models import ConsumerCheckpoint
from src.events.store import SegmentLine
from src.infra.atomic import write_json_atomic
from src.infra.clock import iso_z, utc_now
from src.infra.records import load_record_optional

logger = structlog.get_logger()


def checkpoint_path(context: ProjectContext, consumer: str) -> Path:
    name = consumer.strip() if isinstance(consumer, str) else ""
    if not name:
        raise ValueError("checkpoint consumer is required")
    if not CONSUMER_NAME_RE.match(name):
        raise ValueError(f"Invalid checkpoint consumer name '{name}'")
    return context.event_checkpoints_dir / f"consumer-{name}.json"


def read_checkpoint(context: ProjectContext, consumer: str) -> ConsumerCheckpoint:
    """Stored checkpoint, or a fresh one (start of the log) if none exists yet."""
    path = checkpoint_path(context, consumer)
    checkpoint = load_record_optional(ConsumerCheckpoint, path)
    if checkpoint is None:
        return ConsumerCheckpoint(consumer=consumer.strip())
    return checkpoint


def write_checkpoint(
    context: ProjectContext,
    consumer: str,
    position: SegmentLine,
    *,
    now: datetime | None = None,
) -> ConsumerCheckpoint:
    """Advance a consumer to the given log line."""
    path = checkpoint_path(context, consumer)
    checkpoint = ConsumerCheckpoint(
        consumer=consumer.strip(),
        last_processed_event_id=position.event.event_id,
        last_processed_segment=position.segment,
        last_processed_line=position.line,
        updated_at=iso_z(now or utc_now()),
    )
    write_json_atomic(path, checkpoint)
    logger.debug(
        "consumer_checkpoint_written",
        consumer=checkpoint.consumer,
        segment=position.segment,
        line=position.line,
    )
    return checkpoint

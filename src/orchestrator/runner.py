"""One locked orchestrator run.

acquire lock -> lock status snapshot -> gather evidence -> decide ->
state.json + STATE.md -> QA follow-ups (best effort) -> release lock.

The checkpoint write is the only primary mutation. A failure before it leaves
the previous state.json in place and records state.error.json.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

import structlog
from pydantic import BaseModel, ConfigDict

from src.config.project import ProjectContext
from src.config.settings import Settings
from src.decisions.store import DecisionStore
from src.events.store import DEFAULT_MAX_SEGMENT_BYTES, EventStore
from src.infra.atomic import write_json_atomic, write_text_atomic
from src.infra.clock import fs_safe_timestamp, iso_z, utc_now
from src.infra.errors import LanekeeperError
from src.infra.records import load_record_optional
from src.lock.advisory import DEFAULT_TTL_MS, AdvisoryLock, LockAcquisition
from src.lock.models import LockRecord
from src.orchestrator.decide import decide
from src.orchestrator.evidence import gather_evidence
from src.orchestrator.followups import DEFAULT_CONSUMER, FollowupReport, QaFollowupConsumer
from src.orchestrator.models import Decision, OrchestratorCheckpoint

logger = structlog.get_logger()

_LOCK_STATUS_RE = re.compile(r"^LOCK_STATUS-\d{8}_\d{9}(?:_\d+)?\.json$")


class LockStatusSnapshot(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    version: Literal[1] = 1
    ts: str
    project_root: str
    lock_path: str
    acquired: bool
    reason: str
    lock: LockRecord | None = None


@dataclass(frozen=True)
class RunOutcome:
    skipped: bool
    reason: str
    decision: Decision | None = None
    checkpoint: OrchestratorCheckpoint | None = None
    followups: FollowupReport | None = None
    lock: LockRecord | None = None

    def as_dict(self) -> dict:
        return {
            "skipped": self.skipped,
            "reason": self.reason,
            "stage": self.decision.stage.value if self.decision else None,
            "next_action": self.decision.next_action.model_dump(mode="json") if self.decision else None,
            "stale": self.checkpoint.stale.model_dump(mode="json") if self.checkpoint else None,
            "followups": self.followups.as_dict() if self.followups else None,
            "lock": self.lock.model_dump(mode="json") if self.lock else None,
        }


def render_state_md(checkpoint: OrchestratorCheckpoint) -> str:
    ev = checkpoint.evidence_state
    action = checkpoint.next_action
    lines = [
        "ORCHESTRATOR STATE",
        "",
        f"stage: {checkpoint.stage.value}",
        f"updated_at: {checkpoint.updated_at}",
        f"repos: {', '.join(ev.repos) or '-'}",
        f"scan_coverage_complete: {str(ev.scan_coverage_complete).lower()}",
        f"minimum_sufficient: {str(ev.minimum_sufficient).lower()}",
        f"open_decisions: {len(ev.open_decisions)}",
        f"last_index_at: {ev.last_index_at or '-'}",
        f"last_scan_at: {ev.last_scan_at or '-'}",
        f"stale: {str(checkpoint.stale.stale).lower()}",
    ]
    if checkpoint.stale.reasons:
        lines.append(f"stale_reasons: {', '.join(checkpoint.stale.reasons)}")
    lines += [
        "",
        "NEXT ACTION",
        "",
        f"type: {action.type.value}",
        f"target_repos: {', '.join(action.target_repos) or '-'}",
        f"scope: {action.scope}",
    ]
    if action.decision_id:
        lines.append(f"decision_id: {action.decision_id}")
    lines += [f"reason: {action.reason}", ""]
    return "\n".join(lines) + "\n"


class Orchestrator:
    def __init__(
        self,
        context: ProjectContext,
        *,
        lock_ttl_ms: int = DEFAULT_TTL_MS,
        lock_name: str = "lane-orchestrate",
        status_keep: int = 50,
        repo_limit: int | None = None,
        followups_enabled: bool = True,
        followup_consumer: str = DEFAULT_CONSUMER,
        max_followup_events: int | None = None,
        max_segment_bytes: int = DEFAULT_MAX_SEGMENT_BYTES,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ctx = context
        self._now_fn = now_fn
        self._status_keep = status_keep
        self._repo_limit = repo_limit
        self._followups_enabled = followups_enabled
        self._followup_consumer = followup_consumer
        self._max_followup_events = max_followup_events
        self.lock = AdvisoryLock(context.lock_file, ttl_ms=lock_ttl_ms, lock_name=lock_name, now_fn=now_fn)
        self.events = EventStore(context, max_segment_bytes=max_segment_bytes, now_fn=now_fn)
        self.decisions = DecisionStore(context, events=self.events, now_fn=now_fn)

    @classmethod
    def from_settings(
        cls,
        context: ProjectContext,
        settings: Settings,
        *,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> Orchestrator:
        return cls(
            context,
            lock_ttl_ms=settings.lock.ttl_ms,
            lock_name=settings.lock.lock_name,
            status_keep=settings.lock.status_keep,
            repo_limit=settings.orchestrator.repo_limit,
            followups_enabled=settings.orchestrator.followups_enabled,
            followup_consumer=settings.orchestrator.followup_consumer,
            max_followup_events=settings.orchestrator.max_followup_events,
            max_segment_bytes=settings.events.max_segment_bytes,
            now_fn=now_fn,
        )

    def evaluate(self, *, limit: int | None = None) -> OrchestratorCheckpoint:
        """Gather and decide without locking or writing anything."""
        evidence = gather_evidence(
            self._ctx,
            events=self.events,
            decisions=self.decisions,
            repo_limit=limit if limit is not None else self._repo_limit,
        )
        decision = decide(evidence)
        return OrchestratorCheckpoint(
            stage=decision.stage,
            next_action=decision.next_action,
            evidence_state=evidence,
            stale=evidence.staleness,
            updated_at=iso_z(self._now_fn()),
        )

    def run(self, *, limit: int | None = None, dry_run: bool = False) -> RunOutcome:
        acquisition = self.lock.acquire()
        if not dry_run:
            self._write_lock_status(acquisition)
        if not acquisition.acquired:
            logger.info("orchestrator_skipped", reason="lock_held")
            return RunOutcome(skipped=True, reason="lock_held", lock=acquisition.lock)

        token = acquisition.lock.owner_token if acquisition.lock else None
        try:
            try:
                checkpoint = self.evaluate(limit=limit)
            except Exception as e:
                if not dry_run:
                    self._write_error(e)
                raise

            decision = Decision(stage=checkpoint.stage, next_action=checkpoint.next_action)
            logger.info(
                "orchestrator_decided",
                stage=checkpoint.stage.value,
                action=checkpoint.next_action.type.value,
                target_repos=checkpoint.next_action.target_repos,
                stale=checkpoint.stale.stale,
                dry_run=dry_run,
            )
            if dry_run:
                return RunOutcome(skipped=False, reason="dry_run", decision=decision, checkpoint=checkpoint)

            self._write_checkpoint(checkpoint)
            followups = self._run_followups()
            return RunOutcome(
                skipped=False,
                reason="completed",
                decision=decision,
                checkpoint=checkpoint,
                followups=followups,
            )
        finally:
            self.lock.release(token)

    # -- persistence ---------------------------------------------------------

    def read_checkpoint(self) -> OrchestratorCheckpoint | None:
        return load_record_optional(OrchestratorCheckpoint, self._ctx.state_file)

    def _write_checkpoint(self, checkpoint: OrchestratorCheckpoint) -> None:
        write_json_atomic(self._ctx.state_file, checkpoint)
        write_text_atomic(self._ctx.state_md_file, render_state_md(checkpoint))
        self._ctx.state_error_file.unlink(missing_ok=True)

    def _write_error(self, error: Exception) -> None:
        code = error.code if isinstance(error, LanekeeperError) else "INTERNAL_ERROR"
        payload = {
            "version": 1,
            "ok": False,
            "code": code,
            "error_type": type(error).__name__,
            "message": str(error),
            "failed_at": iso_z(self._now_fn()),
        }
        write_json_atomic(self._ctx.state_error_file, payload)
        logger.error("orchestrator_failed", code=code, error=str(error))

    def _write_lock_status(self, acquisition: LockAcquisition) -> None:
        now = self._now_fn()
        snapshot = LockStatusSnapshot(
            ts=iso_z(now),
            project_root=str(self._ctx.root_path),
            lock_path=str(self.lock.path),
            acquired=acquisition.acquired,
            reason=acquisition.reason,
            lock=acquisition.lock,
        )
        try:
            status_dir = self._ctx.lock_status_dir
            status_dir.mkdir(parents=True, exist_ok=True)
            stem = f"LOCK_STATUS-{fs_safe_timestamp(now)}"
            path = status_dir / f"{stem}.json"
            n = 1
            while path.exists():
                path = status_dir / f"{stem}_{n}.json"
                n += 1
            write_json_atomic(path, snapshot)
            files = sorted(p.name for p in status_dir.iterdir() if _LOCK_STATUS_RE.match(p.name))
            for name in files[: max(0, len(files) - self._status_keep)]:
                (status_dir / name).unlink(missing_ok=True)
        except OSError:
            logger.warning("lock_status_write_failed", exc_info=True)

    def _run_followups(self) -> FollowupReport | None:
        if not self._followups_enabled:
            return None
        consumer = QaFollowupConsumer(
            self._ctx,
            self.events,
            consumer=self._followup_consumer,
            max_events=self._max_followup_events,
            now_fn=self._now_fn,
        )
        try:
            return consumer.run()
        except Exception:
            logger.warning("followups_failed", consumer=self._followup_consumer, exc_info=True)
            return None

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class ProjectContext:
    """Explicit per-project root handed to every component.

    Components derive all of their paths from here and never consult the
    environment, so independent projects never share mutable state.
    """

    root_path: Path
    lock_path_override: Path | None = None

    @classmethod
    def at(cls, root: Path | str, *, lock_path: Path | str | None = None) -> ProjectContext:
        return cls(
            root_path=Path(root).expanduser().resolve(),
            lock_path_override=Path(lock_path).expanduser().resolve() if lock_path else None,
        )

    # events/

    @property
    def events_dir(self) -> Path:
        return self.root_path / "events"

    @property
    def events_index_file(self) -> Path:
        return self.events_dir / "index.json"

    @property
    def segments_dir(self) -> Path:
        return self.events_dir / "segments"

    @property
    def event_checkpoints_dir(self) -> Path:
        return self.events_dir / "checkpoints"

    @property
    def compaction_checkpoint_file(self) -> Path:
        return self.event_checkpoints_dir / "last_compacted.json"

    # decisions/

    @property
    def decisions_dir(self) -> Path:
        return self.root_path / "decisions"

    def decision_json(self, decision_id: str) -> Path:
        return self.decisions_dir / f"DECISION-{decision_id}.json"

    def decision_md(self, decision_id: str) -> Path:
        return self.decisions_dir / f"DECISION-{decision_id}.md"

    # orchestrator/

    @property
    def orchestrator_dir(self) -> Path:
        return self.root_path / "orchestrator"

    @property
    def state_file(self) -> Path:
        return self.orchestrator_dir / "state.json"

    @property
    def state_md_file(self) -> Path:
        return self.orchestrator_dir / "STATE.md"

    @property
    def state_error_file(self) -> Path:
        return self.orchestrator_dir / "state.error.json"

    @property
    def lock_status_dir(self) -> Path:
        return self.orchestrator_dir / "locks"

    @property
    def lock_file(self) -> Path:
        return self.lock_path_override or self.root_path / "orchestrator.lock"

    # evidence written by external producers

    @property
    def repo_registry_file(self) -> Path:
        return self.root_path / "config" / "REPOS.json"

    @property
    def knowledge_dir(self) -> Path:
        return self.root_path / "knowledge"

    def repo_index_file(self, repo_id: str) -> Path:
        return self.knowledge_dir / "evidence" / "index" / "repos" / repo_id / "repo_index.json"

    def repo_scan_file(self, repo_id: str) -> Path:
        return self.knowledge_dir / "ssot" / "repos" / repo_id / "scan.json"

    def repo_committee_dir(self, repo_id: str) -> Path:
        return self.knowledge_dir / "ssot" / "repos" / repo_id / "committee"

    @property
    def system_ssot_dir(self) -> Path:
        return self.knowledge_dir / "ssot" / "system"

    @property
    def minimum_file(self) -> Path:
        return self.system_ssot_dir / "minimum.json"

    @property
    def integration_committee_dir(self) -> Path:
        return self.system_ssot_dir / "committee" / "integration"

    @property
    def kickoff_latest_file(self) -> Path:
        return self.knowledge_dir / "sessions" / "kickoff" / "LATEST.json"

    # follow-up work items

    @property
    def intake_inbox_dir(self) -> Path:
        return self.root_path / "intake" / "inbox"

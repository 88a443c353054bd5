from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime

from src.infra.clock import parse_timestamp
from src.orchestrator.models import StalenessSignal


def evaluate_staleness(
    *,
    repos: Iterable[str],
    scanned_at: Mapping[str, str | None],
    committee_markers: Iterable[str],
    integration_marker: bool,
    merged_at: Mapping[str, datetime],
) -> StalenessSignal:
    """A repo is stale if its committee carries a STALE marker or a merge landed after its scan."""
    markers = set(committee_markers)
    stale_repos: list[str] = []
    reasons: list[str] = []

    for repo_id in sorted(set(repos)):
        repo_reasons = []
        if repo_id in markers:
            repo_reasons.append(f"{repo_id}:committee_marker")
        merged = merged_at.get(repo_id)
        scan_ts = scanned_at.get(repo_id)
        if merged is not None and scan_ts and merged > parse_timestamp(scan_ts):
            repo_reasons.append(f"{repo_id}:merge_after_scan")
        if repo_reasons:
            stale_repos.append(repo_id)
            reasons.extend(repo_reasons)

    if integration_marker:
        reasons.append("system:integration_marker")

    return StalenessSignal(stale=bool(reasons), repos=stale_repos, reasons=reasons)

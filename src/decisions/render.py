from __future__ import annotations

from src.decisions.models import DecisionPacket


def _fmt_answer(value: object) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


def render_decision_md(packet: DecisionPacket) -> str:
    """Human-readable DECISION-<id>.md. Derived from the JSON, never read back."""
    lines = [
        f"# Decision Packet: {packet.decision_id}",
        "",
        f"status: {packet.status}",
        f"scope: {packet.scope}",
        f"trigger: {packet.trigger}",
        f"blocking_state: {packet.blocking_state}",
        f"created_at: {packet.created_at}",
    ]
    if packet.answered_at:
        lines.append(f"answered_at: {packet.answered_at}")
    lines += [
        "",
        "## Context",
        "",
        packet.context.summary,
        "",
        "Why this is being asked:",
        packet.context.why_automation_failed,
        "",
        "What is known:",
        "",
    ]
    if not packet.context.what_is_known:
        lines.append("- (none)")
    lines += [f"- {k}" for k in packet.context.what_is_known]
    lines += ["", "## Questions", ""]
    for q in packet.questions:
        lines.append(f"- {q.id} ({q.expected_answer_type})")
        lines.append(f"  - {q.question}")
        if q.constraints:
            lines.append(f"  - constraints: {q.constraints}")
        if q.blocks:
            lines.append(f"  - blocks: {', '.join(q.blocks)}")
        if q.answer is not None:
            lines.append(f"  - answer: {_fmt_answer(q.answer)}")
    lines += ["", "## Assumptions if unanswered", "", packet.assumptions_if_unanswered, ""]
    return "\n".join(lines) + "\n"

"""Ticket prompt construction."""

from __future__ import annotations

from ticketloom.state import Ticket


def build_ticket_prompt(ticket: Ticket, extra: str = "") -> str:
    lines = [
        f"# Task: {ticket.title}",
        "",
        ticket.description.strip() or ticket.title,
        "",
        "## Scope",
    ]
    if ticket.allowed_paths:
        lines.append("Only modify files matching these paths:")
        lines.extend(f"- {p}" for p in ticket.allowed_paths)
    else:
        lines.append("Any file in the repository may be modified.")
    if ticket.forbidden_paths:
        lines.append("")
        lines.append("Never modify files matching:")
        lines.extend(f"- {p}" for p in ticket.forbidden_paths)
    lines += [
        "",
        "## Rules",
        "- Make the smallest change that fully solves the task.",
        "- Do not commit, push, or create branches; that is handled for you.",
        "- If nothing needs to change, make no changes.",
    ]
    if extra:
        lines += ["", extra.strip()]
    return "\n".join(lines) + "\n"

"""Merge and de-duplication rules for findings accumulated across analysis batches.

The same functions serve the incremental per-batch merge and the final bulk
pass, so a finding is treated identically whenever it is folded in.
"""
from __future__ import annotations

from typing import Iterable, List, Sequence

from coldcase.analysis.contracts import CaseFindings, Conflict, PersonMention, SuspectNote, TimelineEvent

MAX_CONTEXTS_PER_MERGE = 3
TIMELINE_KEY_CHARS = 50
RECENT_EVENTS_IN_CONTEXT = 10


def _same_person(known: PersonMention, mention: PersonMention) -> bool:
    known_name, name = known.name.lower(), mention.name.lower()
    return (
        known_name == name
        or name in {a.lower() for a in known.aliases}
        or known_name in {a.lower() for a in mention.aliases}
    )


def _extend_unique(target: List[str], values: Iterable[str]) -> None:
    for value in values:
        if value not in target:
            target.append(value)


def merge_person_mentions(existing: List[PersonMention], incoming: Iterable[PersonMention]) -> None:
    """Fold ``incoming`` into ``existing`` in place.

    Two mentions are one person when their names agree or one lists the other's
    name as an alias (case-insensitive). A shared alias alone is not enough.
    """
    for mention in incoming:
        found = next((p for p in existing if _same_person(p, mention)), None)
        if found is None:
            existing.append(mention.model_copy(deep=True))
            continue

        found.mention_count += mention.mention_count
        _extend_unique(found.mentioned_by, mention.mentioned_by)
        found.contexts.extend(mention.contexts[:MAX_CONTEXTS_PER_MERGE])
        known = {a.lower() for a in found.aliases} | {found.name.lower()}
        for alias in [mention.name, *mention.aliases]:
            if alias.lower() not in known:
                found.aliases.append(alias)
                known.add(alias.lower())
        # a single strong signal must survive weaker batches
        found.suspicion_score = max(found.suspicion_score, mention.suspicion_score)
        if mention.role and mention.role != "unknown":
            found.role = mention.role


def deduplicate_persons(persons: Sequence[PersonMention]) -> List[PersonMention]:
    merged: List[PersonMention] = []
    merge_person_mentions(merged, persons)
    return sorted(merged, key=lambda p: p.suspicion_score, reverse=True)


def timeline_key(event: TimelineEvent) -> tuple[str, str]:
    return (event.date or "", (event.description or "")[:TIMELINE_KEY_CHARS])


def deduplicate_timeline(events: Sequence[TimelineEvent]) -> List[TimelineEvent]:
    seen: dict[tuple[str, str], TimelineEvent] = {}
    for event in events:
        seen.setdefault(timeline_key(event), event)
    return sorted(seen.values(), key=lambda e: e.date or "")


def deduplicate_suspects(suspects: Sequence[SuspectNote]) -> List[SuspectNote]:
    seen: dict[str, SuspectNote] = {}
    for suspect in suspects:
        key = suspect.name.lower()
        if not key:
            continue
        current = seen.get(key)
        if current is None:
            seen[key] = suspect.model_copy()
            continue
        current.risk_score = max(current.risk_score, suspect.risk_score)
        current.reasoning = f"{current.reasoning}; {suspect.reasoning}"
    return sorted(seen.values(), key=lambda s: s.risk_score, reverse=True)


def deduplicate_insights(insights: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(insights))


def accumulate(state, findings: CaseFindings) -> None:
    """Append one batch's findings to the accumulators carried by ``state``."""
    state.accumulated_timeline.extend(findings.timeline)
    merge_person_mentions(state.accumulated_persons, findings.person_mentions)
    state.accumulated_conflicts.extend(findings.conflicts)
    state.accumulated_insights.extend(findings.key_insights)
    state.accumulated_tips.extend(findings.unfollowed_tips)
    state.accumulated_suspects.extend(findings.suspect_analysis)


def has_findings(state) -> bool:
    return bool(
        state.accumulated_timeline
        or state.accumulated_persons
        or state.accumulated_conflicts
        or state.accumulated_insights
        or state.accumulated_tips
        or state.accumulated_suspects
    )


def consolidate_locally(state) -> CaseFindings:
    return CaseFindings(
        timeline=deduplicate_timeline(state.accumulated_timeline),
        conflicts=list(state.accumulated_conflicts),
        person_mentions=deduplicate_persons(state.accumulated_persons),
        unfollowed_tips=list(state.accumulated_tips),
        key_insights=deduplicate_insights(state.accumulated_insights),
        suspect_analysis=deduplicate_suspects(state.accumulated_suspects),
    )


def build_previous_context(
    timeline: Sequence[TimelineEvent],
    persons: Sequence[PersonMention],
    conflicts: Sequence[Conflict],
) -> str:
    if not timeline and not persons:
        return ""

    parts = ["CONTEXT FROM PREVIOUS BATCHES (use it to find connections and contradictions):"]
    if persons:
        parts.append("Known persons: " + ", ".join(f"{p.name} ({p.role})" for p in persons))
    if timeline:
        recent = timeline[-RECENT_EVENTS_IN_CONTEXT:]
        parts.append("Recent events: " + "; ".join(f"[{e.date or 'unknown'}] {e.description}" for e in recent))
    if conflicts:
        parts.append("Known conflicts: " + "; ".join(c.description for c in conflicts))
    return "\n".join(parts)


def build_digest(state) -> str:
    """Plain-text digest of everything accumulated, for the consolidation call."""
    timeline = "\n".join(
        f"[{e.date or 'unknown'}] {e.description} (source: {e.source or 'unknown'}, "
        f"persons: {', '.join(e.involved_persons) or 'none'})"
        for e in state.accumulated_timeline
    )
    persons = "\n".join(
        f"{p.name} ({p.role}, mentions: {p.mention_count}, suspicion: {p.suspicion_score})"
        for p in state.accumulated_persons
    )
    conflicts = "\n".join(f"[{c.severity}] {c.description}" for c in state.accumulated_conflicts)
    tips = "\n".join(f"[{t.priority}] {t.description}" for t in state.accumulated_tips)
    suspects = "\n".join(f"{s.name} (risk: {s.risk_score}): {s.reasoning}" for s in state.accumulated_suspects)
    insights = "\n".join(state.accumulated_insights)

    return "\n\n".join(
        [
            f"Documents analysed: {state.total_documents} in {state.total_batches} batches.",
            f"TIMELINE EVENTS ({len(state.accumulated_timeline)}):\n{timeline or 'None'}",
            f"PERSONS ({len(state.accumulated_persons)}):\n{persons or 'None'}",
            f"CONFLICTS ({len(state.accumulated_conflicts)}):\n{conflicts or 'None'}",
            f"UNFOLLOWED TIPS ({len(state.accumulated_tips)}):\n{tips or 'None'}",
            f"SUSPECT NOTES ({len(state.accumulated_suspects)}):\n{suspects or 'None'}",
            f"INSIGHTS:\n{insights or 'None'}",
        ]
    )

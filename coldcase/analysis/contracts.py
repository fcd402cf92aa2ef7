from __future__ import annotations
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

FINDINGS_KEYS = (
    "timeline",
    "conflicts",
    "personMentions",
    "unfollowedTips",
    "keyInsights",
    "suspectAnalysis",
)


class _Finding(BaseModel):
    # model output is camelCase; nulls fall back to field defaults
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class TimelineEvent(_Finding):
    id: str = ""
    date: str = ""
    time: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    description: str = ""
    source: str = ""
    source_type: str = "other"
    location: Optional[str] = None
    involved_persons: List[str] = Field(default_factory=list)
    confidence: float = 0.5
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PersonMention(_Finding):
    name: str
    aliases: List[str] = Field(default_factory=list)
    mentioned_by: List[str] = Field(default_factory=list)
    mention_count: int = 1
    contexts: List[str] = Field(default_factory=list)
    role: str = "unknown"
    suspicion_score: float = 0.0


class Conflict(_Finding):
    type: str = "statement_contradiction"
    severity: str = "medium"
    description: str = ""
    events: List[Any] = Field(default_factory=list)
    affected_persons: List[str] = Field(default_factory=list)
    details: str = ""
    recommendation: Optional[str] = None


class UnfollowedTip(_Finding):
    tip_id: str = ""
    source: str = ""
    description: str = ""
    suggested_action: str = ""
    priority: str = "medium"
    reason: str = ""


class SuspectNote(_Finding):
    name: str
    risk_score: float = 0.0
    reasoning: str = ""


class CaseFindings(_Finding):
    timeline: List[TimelineEvent] = Field(default_factory=list)
    conflicts: List[Conflict] = Field(default_factory=list)
    person_mentions: List[PersonMention] = Field(default_factory=list)
    unfollowed_tips: List[UnfollowedTip] = Field(default_factory=list)
    key_insights: List[str] = Field(default_factory=list)
    suspect_analysis: List[SuspectNote] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (
            self.timeline
            or self.conflicts
            or self.person_mentions
            or self.unfollowed_tips
            or self.key_insights
            or self.suspect_analysis
        )

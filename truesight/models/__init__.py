from .post import Post, Platform
from .investigation import Investigation, InvestigationStatus, ContentProvenance, TERMINAL_STATUSES
from .investigation_run import InvestigationRun
from .claim import Claim, ClaimSource
from .investigation_attempt import InvestigationAttempt, AttemptOutcome
from .key_source import InvestigationKeySource
from .post_view_credit import PostViewCredit
from .investigation_trace_event import InvestigationTraceEvent

__all__ = [
    "Post",
    "Platform",
    "Investigation",
    "InvestigationStatus",
    "ContentProvenance",
    "TERMINAL_STATUSES",
    "InvestigationRun",
    "Claim",
    "ClaimSource",
    "InvestigationAttempt",
    "AttemptOutcome",
    "InvestigationKeySource",
    "PostViewCredit",
    "InvestigationTraceEvent",
]

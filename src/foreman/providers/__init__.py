from foreman.providers.base import ContentProvider
from foreman.providers.guards import (
    has_placeholders,
    is_removal_instruction,
    is_suspicious_shrink,
)
from foreman.providers.llm import (
    DELETE_FILE,
    BackendContentProvider,
    parse_build_output,
    parse_review,
)
from foreman.providers.results import (
    Approved,
    Assignment,
    AutoFixed,
    BuildResult,
    CommandSuggested,
    DeletionRequest,
    NormalEdit,
    PlanResult,
    Rejected,
    ReviewResult,
)

__all__ = [
    "DELETE_FILE",
    "Approved",
    "Assignment",
    "AutoFixed",
    "BackendContentProvider",
    "BuildResult",
    "CommandSuggested",
    "ContentProvider",
    "DeletionRequest",
    "NormalEdit",
    "PlanResult",
    "Rejected",
    "ReviewResult",
    "has_placeholders",
    "is_removal_instruction",
    "is_suspicious_shrink",
    "parse_build_output",
    "parse_review",
]

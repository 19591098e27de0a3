"""
Error kinds shared by the coordinator, specialists and outcome memory.
"""

from __future__ import annotations

PARSE_ERROR = "PARSE_ERROR"
TOOL_ERROR = "TOOL_ERROR"
TIMEOUT = "TIMEOUT"
EMBEDDING_FAILURE = "EMBEDDING_FAILURE"
PATCH_MISMATCH = "PATCH_MISMATCH"


class OrchestrationError(RuntimeError):
    """Base class for errors raised inside a coordinator round."""

    kind = TOOL_ERROR

    def __init__(self, message: str, *, kind: str | None = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class CoordinatorParseError(OrchestrationError):
    """Raised when the coordinator's own response is not valid structured output."""

    kind = PARSE_ERROR

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class PatchMismatchError(OrchestrationError):
    """Raised when a patch search string is missing and the policy is ``fail``."""

    kind = PATCH_MISMATCH

    def __init__(self, file_name: str, patch_index: int):
        super().__init__(f"Patch {patch_index} search text not found in {file_name}")
        self.file_name = file_name
        self.patch_index = patch_index


class SpecialistTimeout(OrchestrationError):
    kind = TIMEOUT


class LLMCallError(OrchestrationError):
    """Raised when every configured model failed for one completion."""

    kind = TOOL_ERROR


SUGGESTED_ACTIONS = {
    PARSE_ERROR: "Rephrase the request with the exact files and the change you expect.",
    TOOL_ERROR: "Check that the referenced files exist and retry the request.",
    TIMEOUT: "Retry with fewer files or split the request into smaller steps.",
    PATCH_MISMATCH: "Reload the file so edits are made against its current content.",
    EMBEDDING_FAILURE: "No action needed; similar-task memory was skipped for this run.",
}


def suggested_action(kind: str) -> str:
    return SUGGESTED_ACTIONS.get(kind, SUGGESTED_ACTIONS[TOOL_ERROR])

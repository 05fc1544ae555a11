"""Approval classification for patches before they touch the workspace."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Mapping

from .patch import PatchSummary

LOGGER = logging.getLogger(__name__)

APPROVAL_ENV_VAR = "ACODE_APPLY_PATCH_APPROVAL"
DELETION_REASON = "contains file deletion"


class SafetyLevel(str, Enum):
    """How a patch must be handled before it is applied."""

    SAFE = "safe"
    ASK_USER = "ask_user"
    REJECT = "reject"


class ApprovalPolicy(str, Enum):
    """Session-wide override of the default classification."""

    AUTO = "auto"
    ALWAYS_ASK = "always_ask"
    ALWAYS_APPROVE = "always_approve"


@dataclass(slots=True)
class PatchSafetyDecision:
    """Classification result with a reason and the affected paths."""

    level: SafetyLevel
    reason: str = ""
    paths: List[str] = field(default_factory=list)


def evaluate_patch_safety(summary: PatchSummary) -> PatchSafetyDecision:
    """Classify a patch: deletions need a human, everything else is safe.

    ``SafetyLevel.REJECT`` is never produced here; stricter classifiers can
    return it and the session will refuse the patch outright.
    """
    paths = list(summary.paths)
    if not paths:
        paths = [*summary.added, *summary.modified, *summary.deleted]
    if summary.has_deletes():
        return PatchSafetyDecision(level=SafetyLevel.ASK_USER, reason=DELETION_REASON, paths=paths)
    return PatchSafetyDecision(level=SafetyLevel.SAFE, paths=paths)


def apply_approval_policy(decision: PatchSafetyDecision, policy: ApprovalPolicy) -> PatchSafetyDecision:
    """Upgrade or downgrade ``decision`` according to ``policy``."""
    if policy is ApprovalPolicy.ALWAYS_ASK and decision.level is SafetyLevel.SAFE:
        return replace(decision, level=SafetyLevel.ASK_USER, reason=decision.reason or "approval policy is always_ask")
    if policy is ApprovalPolicy.ALWAYS_APPROVE and decision.level is SafetyLevel.ASK_USER:
        return replace(decision, level=SafetyLevel.SAFE)
    return decision


def classify_patch(summary: PatchSummary, policy: ApprovalPolicy = ApprovalPolicy.AUTO) -> PatchSafetyDecision:
    """Run the default classifier and apply the session policy on top."""
    return apply_approval_policy(evaluate_patch_safety(summary), policy)


def parse_approval_policy(value: object, *, default: ApprovalPolicy = ApprovalPolicy.AUTO) -> ApprovalPolicy:
    """Interpret ``value`` as an approval policy, falling back to ``default``."""
    if isinstance(value, ApprovalPolicy):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return ApprovalPolicy(value.strip().lower())
        except ValueError:
            LOGGER.warning("Unknown approval policy %r; using %s", value, default.value)
    return default


def approval_policy_from_env(env: Mapping[str, str] | None = None) -> ApprovalPolicy | None:
    """Return the policy requested through the environment, if any."""
    mapping = env if env is not None else os.environ
    raw = mapping.get(APPROVAL_ENV_VAR)
    if raw is None or not raw.strip():
        return None
    return parse_approval_policy(raw)


__all__ = [
    "APPROVAL_ENV_VAR",
    "ApprovalPolicy",
    "PatchSafetyDecision",
    "SafetyLevel",
    "apply_approval_policy",
    "approval_policy_from_env",
    "classify_patch",
    "evaluate_patch_safety",
    "parse_approval_policy",
]

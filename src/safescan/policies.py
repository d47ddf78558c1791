from __future__ import annotations

from importlib import resources
from pathlib import Path

import yaml  # type: ignore[import-untyped]

from safescan.models import Policy

BUILTIN_PROFILES = ("default", "strict")


def load_builtin_policy(profile: str = "default") -> Policy:
    if profile not in BUILTIN_PROFILES:
        raise ValueError(f"Unknown policy profile: {profile}")
    data = resources.files("safescan.data.policies").joinpath(f"{profile}.yaml").read_text(encoding="utf-8")
    parsed = yaml.safe_load(data)
    return Policy.model_validate(parsed)


def load_policy_file(path: Path) -> Policy:
    parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
    return Policy.model_validate(parsed)


def policy_summary(policy: Policy) -> str:
    return (
        f"{policy.name}: votes <= {policy.community.max_votes_per_window} per "
        f"{policy.community.rate_window_seconds:g}s, min votes={policy.community.min_votes}, "
        f"circuit opens after {policy.resilience.failure_threshold} failures, "
        f"history cap={policy.history.max_entries}"
    )

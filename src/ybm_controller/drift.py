"""Drift detection between desired spec and reconciled state.

Only fields the caller actually supplied are compared (pydantic
model_fields_set, recursively), so defaults the service fills in never show
up as drift. What remains is passed through per-kind normalization rules
before comparison.

COMMON FALSE POSITIVES HANDLED:
1. Empty list vs null vs empty string
2. Case differences in enum-like strings ("paused" vs "Paused")
3. Ordering of unordered collections (allow list ids, CIDRs)
4. Write-only secrets the service masks or never returns
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel

from .models import ResourceKind, ResourceModel

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # [], "", null are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    CASE_INSENSITIVE = "case_insensitive"

    ARRAY_UNORDERED = "array_unordered"

    # Write-only: never compared
    IGNORE = "ignore"


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        kind: Resource kind to match, or "*".
        path_pattern: Dotted field path glob; "*" matches one segment and
            "**" any number of segments. List indices are segments.
        normalization_type: Type of normalization to apply.
        reason: Human-readable explanation.
    """

    kind: str
    path_pattern: str
    normalization_type: NormalizationType
    reason: str = ""

    def matches(self, kind: str, path: str) -> bool:
        if self.kind != "*" and self.kind != kind:
            return False
        return _glob_match(path, self.path_pattern)


def _glob_match(value: str, pattern: str) -> bool:
    regex = "^"
    i = 0
    while i < len(pattern):
        if pattern[i : i + 2] == "**":
            regex += ".*"
            i += 2
        elif pattern[i] == "*":
            regex += "[^.]*"
            i += 1
        else:
            regex += re.escape(pattern[i])
            i += 1
    return re.match(regex + "$", value) is not None


DEFAULT_RULES: list[NormalizationRule] = [
    NormalizationRule("*", "**", NormalizationType.EMPTY_EQUIVALENCE, "Empty equals unset"),
    # Enum-like strings
    NormalizationRule(
        ResourceKind.CLUSTER.value,
        "desired_state",
        NormalizationType.CASE_INSENSITIVE,
        "Desired state is accepted case-insensitively",
    ),
    NormalizationRule(
        ResourceKind.CLUSTER.value,
        "desired_connection_pooling_state",
        NormalizationType.CASE_INSENSITIVE,
    ),
    NormalizationRule("*", "cloud_type", NormalizationType.CASE_INSENSITIVE),
    NormalizationRule("*", "cluster_tier", NormalizationType.CASE_INSENSITIVE),
    NormalizationRule("*", "**.state", NormalizationType.CASE_INSENSITIVE),
    # Unordered collections
    NormalizationRule(
        ResourceKind.CLUSTER.value,
        "cluster_allow_list_ids",
        NormalizationType.ARRAY_UNORDERED,
        "Allow lists are a set",
    ),
    NormalizationRule(ResourceKind.ALLOW_LIST.value, "cidr_list", NormalizationType.ARRAY_UNORDERED),
    NormalizationRule(
        ResourceKind.DB_AUDIT_LOGGING.value,
        "ysql_config.statement_classes",
        NormalizationType.ARRAY_UNORDERED,
    ),
    # Write-only secrets
    NormalizationRule(ResourceKind.CLUSTER.value, "credentials**", NormalizationType.IGNORE),
    NormalizationRule(ResourceKind.CLUSTER.value, "restore_backup_id", NormalizationType.IGNORE),
    NormalizationRule(ResourceKind.CLUSTER.value, "cmk_spec.*_cmk_spec**", NormalizationType.IGNORE),
    NormalizationRule(ResourceKind.INTEGRATION.value, "datadog_spec.api_key", NormalizationType.IGNORE),
    NormalizationRule(
        ResourceKind.INTEGRATION.value, "grafana_spec.access_policy_token", NormalizationType.IGNORE
    ),
    NormalizationRule(ResourceKind.INTEGRATION.value, "sumologic_spec.*", NormalizationType.IGNORE),
    NormalizationRule(
        ResourceKind.INTEGRATION.value, "googlecloud_spec.private_key*", NormalizationType.IGNORE
    ),
]


@dataclass(frozen=True)
class DriftItem:
    """One field whose observed value differs from the desired one."""

    path: str
    desired: Any
    observed: Any


@dataclass
class DriftReport:
    kind: str
    items: list[DriftItem] = field(default_factory=list)

    @property
    def has_drift(self) -> bool:
        return bool(self.items)

    def paths(self) -> list[str]:
        return [item.path for item in self.items]


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


class DriftDetector:
    """Compares the fields a caller set against the reconciled state."""

    def __init__(self, rules: list[NormalizationRule] | None = None) -> None:
        self._rules = list(DEFAULT_RULES)
        if rules:
            self._rules.extend(rules)

    def detect(self, kind: ResourceKind | str, spec: ResourceModel, state: ResourceModel | None) -> DriftReport:
        kind_value = kind.value if isinstance(kind, ResourceKind) else kind
        report = DriftReport(kind=kind_value)
        if state is None:
            return report
        self._compare_model(kind_value, "", spec, state, report)
        return report

    def _compare_model(
        self,
        kind: str,
        prefix: str,
        desired: BaseModel,
        observed: BaseModel,
        report: DriftReport,
    ) -> None:
        fields = desired.model_fields_set
        if isinstance(desired, ResourceModel):
            fields = desired.desired_fields()
        for name in sorted(fields):
            path = f"{prefix}{name}"
            self._compare(kind, path, getattr(desired, name), getattr(observed, name, None), report)

    def _compare(self, kind: str, path: str, desired: Any, observed: Any, report: DriftReport) -> None:
        if self._ignored(kind, path):
            return

        if isinstance(desired, BaseModel) and isinstance(observed, BaseModel):
            self._compare_model(kind, f"{path}.", desired, observed, report)
            return

        if (
            isinstance(desired, list)
            and isinstance(observed, list)
            and len(desired) == len(observed)
            and all(isinstance(d, BaseModel) and isinstance(o, BaseModel) for d, o in zip(desired, observed))
        ):
            for index, (d, o) in enumerate(zip(desired, observed)):
                self._compare_model(kind, f"{path}.{index}.", d, o, report)
            return

        if not self.are_equivalent(kind, path, desired, observed):
            report.items.append(DriftItem(path=path, desired=_plain(desired), observed=_plain(observed)))
            logger.debug(
                "Drift detected",
                extra={"kind": kind, "path": path},
            )

    def _ignored(self, kind: str, path: str) -> bool:
        return any(
            rule.normalization_type == NormalizationType.IGNORE and rule.matches(kind, path)
            for rule in self._rules
        )

    def normalize_value(self, kind: str, path: str, value: Any) -> Any:
        normalized = _plain(value)
        for rule in self._rules:
            if rule.matches(kind, path):
                normalized = self._apply(normalized, rule.normalization_type)
        return normalized

    def _apply(self, value: Any, normalization_type: NormalizationType) -> Any:
        match normalization_type:
            case NormalizationType.EMPTY_EQUIVALENCE:
                if value == "" or value == [] or value == {}:
                    return None
                return value
            case NormalizationType.CASE_INSENSITIVE:
                return value.lower() if isinstance(value, str) else value
            case NormalizationType.ARRAY_UNORDERED:
                if isinstance(value, list):
                    return sorted(value, key=str)
                return value
            case _:
                return value

    def are_equivalent(self, kind: str, path: str, desired: Any, observed: Any) -> bool:
        return self.normalize_value(kind, path, desired) == self.normalize_value(kind, path, observed)

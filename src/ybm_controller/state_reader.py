"""Settlement reads: fetched remote state merged into the canonical state.

Lists come back from the service in whatever order it stores them. Callers
care about their own order, so every list-valued sub-resource is put back in
the order the caller declared, matched on a natural key (region, id) rather
than on list position:

    declared: [A, B, C]     fetched: [C, A, B]     state: [A, B, C]

Elements the caller never declared (added out-of-band) keep their fetched
relative order and are appended after the declared ones.

Write-only values the service never echoes (passwords, CMK secrets, the
restore backup id) are merged back from the desired state so a subsequent
drift check does not flag them.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from enum import Enum
from typing import Any, TypeVar

from .models import CloudType, Cluster, CmkSpec, Credentials, Integration, is_set

T = TypeVar("T")


class ReadMode(str, Enum):
    """Why a read is issued, which decides how a missing resource is reported."""

    REFRESH = "refresh"  # NotFoundError propagates to the caller
    DELETE_PRECHECK = "delete_precheck"  # missing resource reads as None
    LOOKUP = "lookup"  # no prior ordering, server order is kept


def reorder_by_key(
    items: Sequence[T],
    key: Callable[[T], str],
    index_map: dict[str, int] | None,
) -> list[T]:
    """Order items by the caller's index map, appending unmapped ones.

    Stable: items sharing a mapped position, and all unmapped items, keep
    their fetched relative order.
    """
    if not index_map:
        return list(items)

    mapped: list[tuple[int, int, T]] = []
    unmapped: list[T] = []
    for position, item in enumerate(items):
        index = index_map.get(key(item))
        if index is None:
            unmapped.append(item)
        else:
            mapped.append((index, position, item))

    mapped.sort(key=lambda entry: (entry[0], entry[1]))
    return [item for _, _, item in mapped] + unmapped


def filter_preserving_input_order(desired: Iterable[str], observed: Iterable[str]) -> list[str]:
    """Observed values in the caller's order; extras follow in observed order."""
    observed_list = list(observed)
    observed_set = set(observed_list)
    ordered = [value for value in desired if value in observed_set]
    seen = set(ordered)
    ordered.extend(value for value in observed_list if value not in seen)
    return ordered


def same_members(left: Iterable[str], right: Iterable[str]) -> bool:
    """Order-insensitive equality, counting duplicates."""
    return sorted(left) == sorted(right)


def keep_caller_order(desired: list[str] | None, observed: list[str]) -> list[str]:
    """Return the caller's list when it holds the same members as the observed one."""
    if desired is not None and same_members(desired, observed):
        return list(desired)
    return list(observed)


# =============================================================================
# Write-only merge-back
# =============================================================================


def merge_credentials(desired: Credentials) -> Credentials:
    """Credentials as stored in state: the unused group is explicit null."""
    if is_set(desired, "username"):
        return Credentials(
            username=desired.username,
            password=desired.password,
            ysql_username=None,
            ysql_password=None,
            ycql_username=None,
            ycql_password=None,
        )
    return Credentials(
        username=None,
        password=None,
        ysql_username=desired.ysql_username,
        ysql_password=desired.ysql_password,
        ycql_username=desired.ycql_username,
        ycql_password=desired.ycql_password,
    )


def merge_cmk_spec(desired: CmkSpec | None, observed: dict[str, Any] | None) -> CmkSpec | None:
    """The CMK spec as stored in state.

    The service masks secrets, so the caller's values are kept; only the
    provider and enablement flag come from the service.
    """
    if desired is None:
        return None
    if not observed:
        return desired
    spec = observed.get("spec", observed)
    return desired.model_copy(
        update={
            "provider_type": CloudType(spec.get("provider_type", desired.provider_type)),
            "is_enabled": spec.get("is_enabled", desired.is_enabled),
        }
    )


def merge_cluster_write_only(
    state: Cluster,
    desired: Cluster | None,
    observed_cmk: dict[str, Any] | None = None,
) -> Cluster:
    if desired is None:
        return state
    update: dict[str, Any] = {"credentials": merge_credentials(desired.credentials)}
    if "restore_backup_id" in desired.model_fields_set:
        update["restore_backup_id"] = desired.restore_backup_id
    if desired.cmk_spec is not None:
        update["cmk_spec"] = merge_cmk_spec(desired.cmk_spec, observed_cmk)
    return state.model_copy(update=update)


INTEGRATION_SECRET_FIELDS: dict[str, tuple[str, ...]] = {
    "datadog_spec": ("api_key",),
    "grafana_spec": ("access_policy_token",),
    "sumologic_spec": ("access_key", "access_id", "installation_token"),
    "googlecloud_spec": ("private_key", "private_key_id"),
}


def merge_integration_secrets(state: Integration, desired: Integration | None) -> Integration:
    """Restore masked integration secrets from the caller's spec."""
    if desired is None:
        return state
    update: dict[str, Any] = {}
    for spec_field, secrets in INTEGRATION_SECRET_FIELDS.items():
        observed_spec = getattr(state, spec_field)
        desired_spec = getattr(desired, spec_field)
        if observed_spec is None or desired_spec is None:
            continue
        restored = {name: getattr(desired_spec, name) for name in secrets}
        update[spec_field] = observed_spec.model_copy(update=restored)
    if not update:
        return state
    return state.model_copy(update=update)

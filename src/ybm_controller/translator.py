"""Spec translation: desired state to outbound request payloads.

Validation that the schema layer cannot express happens here, before any
mutating call is issued:

- Credential groups: a shared username/password pair XOR separate YSQL and
  YCQL pairs, never a mix.
- Disk size: PAID clusters need at least 50 GB.
- Disk IOPS: AWS only; PAID tier takes multiples of 1000 within
  [3000, 16000], other tiers only the 3000 default.
- Cross references: each region or replica picks its VPC by name or by id,
  decided per element rather than for the whole list.

Cross references are resolved through a ReferenceResolver whose lookups are
cached for the duration of one reconciliation pass. Apart from those
lookups, translation has no side effects.

The cluster payload comes with a region->index map so the State Reader can
put regions back in the caller's order after settlement.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from .config import FeatureFlags
from .errors import ConfigurationError
from .models import (
    AllowList,
    Backup,
    BackupSchedule,
    CloudType,
    Cluster,
    ClusterTier,
    ClusterType,
    CmkSpec,
    ConnectionPoolingState,
    Credentials,
    DbAuditLogging,
    GcpServiceAccount,
    Integration,
    IntegrationType,
    ReadReplicas,
    Vpc,
    is_set,
)

logger = logging.getLogger(__name__)

# Disk constraints
MIN_PAID_DISK_SIZE_GB = 50
DEFAULT_DISK_IOPS = 3000
MIN_DISK_IOPS = 3000
MAX_DISK_IOPS = 16000
DISK_IOPS_STEP = 1000

# Tier used to size read replica nodes
READ_REPLICA_TIER = ClusterTier.PAID

# Track requested as "Stable" is published under this name
STABLE_TRACK_ALIAS = "Production"

ACCESSIBILITY_PUBLIC = "PUBLIC"
ACCESSIBILITY_PRIVATE = "PRIVATE"
ACCESSIBILITY_PRIVATE_SERVICE_ENDPOINT = "PRIVATE_SERVICE_ENDPOINT"

CREDENTIALS_MESSAGE = (
    "Please provide 'username' and 'password' (which would be used in common for "
    "both YSQL and YCQL) OR all of 'ysql_username', 'ysql_password', "
    "'ycql_username' and 'ycql_password' but not a mix of both."
)
DISK_SIZE_MESSAGE = "The disk size for a paid cluster must be at least 50 GB."
VPC_REFERENCE_MESSAGE = "To select a vpc, use either vpc_name or vpc_id. Don't provide both."

_CREDENTIAL_PAIRS = {
    "common": ("username", "password"),
    "ysql": ("ysql_username", "ysql_password"),
    "ycql": ("ycql_username", "ycql_password"),
}


@dataclass
class TranslatedRequest:
    """An outbound payload plus the ordering key for the settlement read."""

    payload: dict[str, Any]
    region_index: dict[str, int] = field(default_factory=dict)


def region_index_map(regions: Iterable[str]) -> dict[str, int]:
    """Map each region to its position in the caller's list (first occurrence wins)."""
    index: dict[str, int] = {}
    for position, region in enumerate(regions):
        index.setdefault(region, position)
    return index


def b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


# =============================================================================
# Validation
# =============================================================================


def _pair_state(credentials: Credentials, group: str) -> str:
    user_field, password_field = _CREDENTIAL_PAIRS[group]
    supplied = [is_set(credentials, user_field), is_set(credentials, password_field)]
    if all(supplied):
        return "complete"
    if any(supplied):
        return "partial"
    return "missing"


def validate_credentials(credentials: Credentials) -> None:
    """Enforce the shared-pair XOR separate-pairs rule.

    Raises:
        ConfigurationError: Naming the supplied fields when the groups are mixed
            or incomplete.
    """
    common = _pair_state(credentials, "common")
    ysql = _pair_state(credentials, "ysql")
    ycql = _pair_state(credentials, "ycql")

    shared_only = common == "complete" and ysql == "missing" and ycql == "missing"
    separate_only = ysql == "complete" and ycql == "complete" and common == "missing"
    if shared_only or separate_only:
        return

    supplied = sorted(
        name
        for pair in _CREDENTIAL_PAIRS.values()
        for name in pair
        if is_set(credentials, name)
    )
    raise ConfigurationError(
        f"{CREDENTIALS_MESSAGE} Supplied fields: {', '.join(supplied) or 'none'}.",
        title="Invalid credentials",
    )


def is_disk_size_valid(tier: ClusterTier | str, disk_size_gb: int) -> bool:
    return not (ClusterTier(tier) == ClusterTier.PAID and disk_size_gb < MIN_PAID_DISK_SIZE_GB)


def disk_iops_error(cloud: CloudType | str | None, tier: ClusterTier | str, disk_iops: int) -> str | None:
    """Return why a disk IOPS value is invalid, or None when it is acceptable.

    Zero is the stored default for non-AWS clouds and always passes there.
    """
    if cloud is None or CloudType(cloud) != CloudType.AWS:
        if disk_iops != 0:
            return "Custom Disk IOPS is only supported for AWS"
        return None

    if ClusterTier(tier) != ClusterTier.PAID:
        if disk_iops != DEFAULT_DISK_IOPS:
            return "Custom Disk IOPS is only supported for PAID tier"
        return None

    if disk_iops % DISK_IOPS_STEP != 0:
        return "Disk IOPS must be a multiple of 1000"
    if not (MIN_DISK_IOPS <= disk_iops <= MAX_DISK_IOPS):
        return "Disk IOPS must be between 3000 and 16000 (inclusive)"
    return None


def validate_disk_size(tier: ClusterTier | str, disk_size_gb: int, *, region: str | None = None) -> None:
    if not is_disk_size_valid(tier, disk_size_gb):
        title = f"Invalid disk size in {region}" if region else "Invalid disk size"
        raise ConfigurationError(DISK_SIZE_MESSAGE, title=title)


def validate_disk_iops(
    cloud: CloudType | str | None,
    tier: ClusterTier | str,
    disk_iops: int,
    *,
    region: str | None = None,
) -> None:
    error = disk_iops_error(cloud, tier, disk_iops)
    if error is not None:
        title = f"Invalid disk IOPS in {region}" if region else "Invalid disk IOPS"
        raise ConfigurationError(error, title=title)


def validate_vpc_reference(element: Any, *, required: bool = False) -> None:
    """Check that one element picks its VPC by name or by id, not both.

    With required=True exactly one of the two must be supplied.
    """
    name_present = is_set(element, "vpc_name")
    id_present = is_set(element, "vpc_id")
    if name_present and id_present:
        raise ConfigurationError(VPC_REFERENCE_MESSAGE, title="Specify VPC name or VPC ID")
    if required and not (name_present or id_present):
        raise ConfigurationError(VPC_REFERENCE_MESSAGE, title="Specify VPC name or VPC ID")


def validate_cmk_spec(cmk: CmkSpec, *, creating: bool) -> None:
    if creating and not cmk.is_enabled:
        raise ConfigurationError(
            "Cluster creation with EAR disabled is not supported.",
            title="EAR will be enabled by default.",
        )

    provided = [
        spec for spec in (cmk.aws_cmk_spec, cmk.gcp_cmk_spec, cmk.azure_cmk_spec) if spec is not None
    ]
    if len(provided) != 1:
        raise ConfigurationError(
            "invalid input. Only one CMK Provider out of AWS, GCP, or AZURE must be present",
            title="Error creating CMK Spec.",
        )

    expected = {
        CloudType.AWS: cmk.aws_cmk_spec,
        CloudType.GCP: cmk.gcp_cmk_spec,
        CloudType.AZURE: cmk.azure_cmk_spec,
    }[cmk.provider_type]
    if expected is None:
        provider = cmk.provider_type.value
        raise ConfigurationError(
            f"provider type is {provider} but {provider} CMK spec is missing",
            title="Error creating CMK Spec.",
        )


def validate_backup_schedules(schedules: list[BackupSchedule] | None) -> None:
    if not schedules:
        return
    if len(schedules) > 1:
        raise ConfigurationError(
            "More than one schedules were passed", title="Unable to set backup schedule"
        )

    schedule = schedules[0]
    has_state = is_set(schedule, "state")
    has_retention = bool(schedule.retention_period_in_days)
    if has_state != has_retention:
        raise ConfigurationError(
            "Pass both state and retention period in days", title="Unable to set backup schedule"
        )
    if schedule.time_interval_in_days and is_set(schedule, "cron_expression"):
        raise ConfigurationError(
            "unable to create custom backup schedule. You can't pass both the cron "
            "expression and time interval in days",
            title="Unable to set backup schedule",
        )


def validate_cluster(
    cluster: Cluster,
    *,
    creating: bool,
    flags: FeatureFlags,
    cloud: CloudType | None = None,
) -> CloudType:
    """Validate a cluster spec before any network call.

    Args:
        cluster: Desired state.
        creating: True for create, False for update.
        flags: Feature flags gating optional fields.
        cloud: Cloud of the existing cluster, used when the spec omits it.

    Returns:
        The effective cloud type.

    Raises:
        ConfigurationError: On the first violated rule.
    """
    if creating and is_set(cluster, "cluster_id"):
        raise ConfigurationError(
            "The cluster_id was provided even though a new cluster is being created. "
            "Do not include this field in the provider when creating a cluster.",
            title="Cluster ID provided for new cluster",
        )

    effective_cloud = cluster.cloud_type or cloud
    if effective_cloud is None:
        raise ConfigurationError("cloud_type is required when creating a cluster")

    if cluster.desired_connection_pooling_state is not None and not flags.connection_pooling:
        raise ConfigurationError(
            "desired_connection_pooling_state requires the CONNECTION_POOLING feature flag"
        )

    validate_credentials(cluster.credentials)

    tier = cluster.cluster_tier
    node_config = cluster.node_config
    if node_config is not None:
        if node_config.disk_size_gb is not None:
            validate_disk_size(tier, node_config.disk_size_gb)
        if node_config.disk_iops is not None:
            validate_disk_iops(effective_cloud, tier, node_config.disk_iops)

    for region_info in cluster.cluster_region_info:
        validate_vpc_reference(region_info)
        if region_info.num_cores is None and (node_config is None or node_config.num_cores is None):
            raise ConfigurationError(
                "num_cores must be set for the region or in node_config",
                title=f"Invalid node configuration in {region_info.region}",
            )
        if region_info.disk_size_gb is not None:
            validate_disk_size(tier, region_info.disk_size_gb, region=region_info.region)
        if region_info.disk_iops is not None:
            validate_disk_iops(effective_cloud, tier, region_info.disk_iops, region=region_info.region)

    if cluster.cmk_spec is not None:
        validate_cmk_spec(cluster.cmk_spec, creating=creating)

    validate_backup_schedules(cluster.backup_schedules)

    return effective_cloud


def validate_vpc(vpc: Vpc) -> None:
    if is_set(vpc, "vpc_id"):
        raise ConfigurationError(
            "The vpc_id was provided even though a new VPC is being created. "
            "Do not include this field in the provider when creating a VPC.",
            title="VPC ID provided for new VPC",
        )

    global_cidr_present = is_set(vpc, "global_cidr")
    region_info_present = vpc.region_cidr_info is not None
    if global_cidr_present == region_info_present:
        raise ConfigurationError(
            "Specify either the global CIDR or the CIDR information for the regions. "
            "Don't provide both.",
            title="Global and region CIDR details provided",
        )
    if vpc.cloud != CloudType.GCP and global_cidr_present:
        raise ConfigurationError("Global CIDR only applies to GCP.", title="Global CIDR specified")

    regions = vpc.region_cidr_info or []
    if vpc.cloud == CloudType.AZURE:
        if len(regions) != 1:
            raise ConfigurationError(
                "Only one region supported per Azure VPC.", title="Unable to create VPC"
            )
        if is_set(regions[0], "cidr"):
            raise ConfigurationError(
                "CIDR are auto-assigned for AZURE. Please remove it", title="CIDR specified"
            )

    if len({info.region for info in regions}) != len(regions):
        raise ConfigurationError("Ensure the regions are unique.", title="Duplicate regions")


def validate_read_replicas(read_replicas: ReadReplicas) -> None:
    if not read_replicas.read_replicas_info:
        raise ConfigurationError(
            "You must specify at least one read replica.", title="No read replica specified"
        )
    for replica in read_replicas.read_replicas_info:
        validate_vpc_reference(replica, required=True)
        disk_iops = replica.node_config.disk_iops
        if disk_iops is not None:
            validate_disk_iops(replica.cloud_type, READ_REPLICA_TIER, disk_iops, region=replica.region)
        if replica.node_config.num_cores is None:
            raise ConfigurationError(
                "node_config.num_cores is required",
                title=f"Invalid node configuration in {replica.region}",
            )
        if replica.node_config.disk_size_gb is None:
            raise ConfigurationError(
                "node_config.disk_size_gb is required",
                title=f"Invalid node configuration in {replica.region}",
            )


def validate_integration(integration: Integration, flags: FeatureFlags) -> None:
    if integration.type == IntegrationType.GOOGLECLOUD and not flags.googlecloud_integration:
        raise ConfigurationError(
            "Integration of type GOOGLECLOUD is currently not supported",
            title="Invalid integration type",
        )
    spec_field = f"{integration.type.value.lower()}_spec"
    if getattr(integration, spec_field) is None:
        raise ConfigurationError(
            f"{spec_field} is required when telemetry sink is {integration.type.value}. "
            "Please include this field in the resource",
            title=f"{spec_field} is required for type {integration.type.value}",
        )


# =============================================================================
# Cross-reference resolution
# =============================================================================


class ReferenceResolver:
    """Resolves names to ids through injected listing callbacks.

    Every lookup is cached, so one resolver must live for exactly one
    reconciliation pass.
    """

    def __init__(
        self,
        *,
        find_vpcs: Callable[[str], list[dict[str, Any]]],
        list_tracks: Callable[[], list[dict[str, Any]]],
        list_node_options: Callable[[str, str, str], list[dict[str, Any]]],
    ) -> None:
        """Initialize resolver.

        Args:
            find_vpcs: Returns the VPCs carrying a given name.
            list_tracks: Returns the software release tracks.
            list_node_options: Returns node configurations for (cloud, tier, region).
        """
        self._find_vpcs = find_vpcs
        self._list_tracks = list_tracks
        self._list_node_options = list_node_options
        self._vpc_ids: dict[str, str] = {}
        self._tracks: list[dict[str, Any]] | None = None
        self._node_options: dict[tuple[str, str, str], list[dict[str, Any]]] = {}

    def vpc_id(self, name: str) -> str:
        if name not in self._vpc_ids:
            matches = self._find_vpcs(name)
            if not matches:
                raise ConfigurationError(f"VPC {name} not found", title="Unable to resolve VPC")
            if len(matches) > 1:
                raise ConfigurationError(
                    f"more than 1 VPC found with name {name}", title="Unable to resolve VPC"
                )
            self._vpc_ids[name] = matches[0]["info"]["id"]
        return self._vpc_ids[name]

    def track_id(self, track_name: str) -> str:
        if self._tracks is None:
            self._tracks = self._list_tracks()
        for track in self._tracks:
            name = track["spec"]["name"]
            if name == track_name or (name == STABLE_TRACK_ALIAS and track_name == "Stable"):
                return track["info"]["id"]
        raise ConfigurationError(
            "The database version doesn't exist.", title="Unable to resolve database track"
        )

    def node_option(self, cloud: str, tier: str, region: str, num_cores: int) -> dict[str, Any]:
        """Find the node configuration offering num_cores in a region."""
        key = (cloud, tier, region)
        if key not in self._node_options:
            self._node_options[key] = self._list_node_options(cloud, tier, region)
        options = self._node_options[key]
        if not options:
            raise ConfigurationError(
                "No instances configured for the given region.",
                title=f"Unable to size nodes in {region}",
            )
        for option in options:
            if option["num_cores"] == num_cores:
                return option
        logger.debug(
            "No node configuration matches requested cores",
            extra={"cloud": cloud, "region": region, "num_cores": num_cores},
        )
        raise ConfigurationError(
            "Node with the given number of CPU cores doesn't exist in the given region.",
            title=f"Unable to size nodes in {region}",
        )


# =============================================================================
# Payload builders
# =============================================================================


def encode_credentials(credentials: Credentials) -> dict[str, Any]:
    """Base64-encode credentials into YSQL and YCQL pairs."""
    if is_set(credentials, "username"):
        shared = {"username": b64(credentials.username or ""), "password": b64(credentials.password or "")}
        return {"ysql": dict(shared), "ycql": dict(shared)}
    return {
        "ysql": {
            "username": b64(credentials.ysql_username or ""),
            "password": b64(credentials.ysql_password or ""),
        },
        "ycql": {
            "username": b64(credentials.ycql_username or ""),
            "password": b64(credentials.ycql_password or ""),
        },
    }


def _gcp_service_account_payload(account: GcpServiceAccount) -> dict[str, Any]:
    payload = account.model_dump(exclude={"private_key", "universe_domain"})
    if is_set(account, "private_key"):
        payload["private_key"] = account.private_key
    if is_set(account, "universe_domain"):
        payload["universe_domain"] = account.universe_domain
    return payload


def build_cmk_spec(cmk: CmkSpec) -> dict[str, Any]:
    payload: dict[str, Any] = {"provider_type": cmk.provider_type.value, "is_enabled": cmk.is_enabled}
    match cmk.provider_type:
        case CloudType.AWS if cmk.aws_cmk_spec is not None:
            payload["aws_cmk_spec"] = cmk.aws_cmk_spec.model_dump()
        case CloudType.GCP if cmk.gcp_cmk_spec is not None:
            gcp = cmk.gcp_cmk_spec
            payload["gcp_cmk_spec"] = {
                "key_ring_name": gcp.key_ring_name,
                "key_name": gcp.key_name,
                "location": gcp.location,
                "protection_level": gcp.protection_level,
                "gcp_service_account": _gcp_service_account_payload(gcp.gcp_service_account),
            }
        case CloudType.AZURE if cmk.azure_cmk_spec is not None:
            payload["azure_cmk_spec"] = cmk.azure_cmk_spec.model_dump()
    return payload


def build_cluster_spec(
    cluster: Cluster,
    resolver: ReferenceResolver,
    *,
    cloud: CloudType,
    existing: dict[str, Any] | None = None,
    version: int | None = None,
) -> TranslatedRequest:
    """Translate a cluster into the API's cluster spec.

    Args:
        cluster: Validated desired state.
        resolver: Cross-reference lookups for this pass.
        cloud: Effective cloud type.
        existing: Current remote cluster, on update; its private service
            endpoint regions are carried over.
        version: Current cluster version, required by the edit endpoint.
    """
    software_info: dict[str, Any] = {}
    if cluster.database_track is not None:
        software_info["track_id"] = resolver.track_id(cluster.database_track)

    pse_by_region: dict[str, Any] = {}
    if existing is not None:
        for info in existing["spec"].get("cluster_region_info", []):
            if ACCESSIBILITY_PRIVATE_SERVICE_ENDPOINT in info.get("accessibility_types", []):
                region = info["placement_info"]["cloud_info"]["region"]
                pse_by_region[region] = info.get("private_service_endpoint_info")

    tier = cluster.cluster_tier
    node_config = cluster.node_config
    total_nodes = 0
    default_seen = False
    region_payloads: list[dict[str, Any]] = []

    for region_info in cluster.cluster_region_info:
        region = region_info.region
        total_nodes += region_info.num_nodes

        vpc_id = region_info.vpc_id if is_set(region_info, "vpc_id") else None
        if is_set(region_info, "vpc_name"):
            vpc_id = resolver.vpc_id(region_info.vpc_name or "")

        num_cores = region_info.num_cores
        if num_cores is None and node_config is not None:
            num_cores = node_config.num_cores
        assert num_cores is not None  # enforced by validate_cluster
        option = resolver.node_option(cloud.value, tier.value, region, num_cores)

        if region_info.disk_size_gb is not None:
            disk_size_gb = region_info.disk_size_gb
        elif node_config is not None and node_config.disk_size_gb is not None:
            disk_size_gb = node_config.disk_size_gb
        else:
            disk_size_gb = option["include_disk_size_gb"]

        node_info: dict[str, Any] = {
            "num_cores": num_cores,
            "memory_mb": option["memory_mb"],
            "disk_size_gb": disk_size_gb,
        }
        if region_info.disk_iops:
            node_info["disk_iops"] = region_info.disk_iops
        elif node_config is not None and node_config.disk_iops:
            node_info["disk_iops"] = node_config.disk_iops

        placement: dict[str, Any] = {
            "cloud_info": {"code": cloud.value, "region": region},
            "num_nodes": region_info.num_nodes,
        }
        if vpc_id:
            placement["vpc_id"] = vpc_id
            accessibility = [ACCESSIBILITY_PRIVATE]
            if region_info.public_access:
                accessibility.append(ACCESSIBILITY_PUBLIC)
        else:
            accessibility = [ACCESSIBILITY_PUBLIC]
            if region_info.public_access is False:
                raise ConfigurationError(
                    "Cluster is in a public VPC and public access is disabled. "
                    "Please enable public access.",
                    title="Unable to create cluster spec",
                )
        if cluster.cluster_type == ClusterType.SYNCHRONOUS:
            placement["multi_zone"] = False

        payload: dict[str, Any] = {
            "placement_info": placement,
            "node_info": node_info,
            "accessibility_types": accessibility,
            "is_default": False,
            "is_affinitized": bool(region_info.is_preferred),
        }
        if region in pse_by_region:
            accessibility.append(ACCESSIBILITY_PRIVATE_SERVICE_ENDPOINT)
            payload["private_service_endpoint_info"] = pse_by_region[region]

        if region_info.is_default:
            if default_seen:
                raise ConfigurationError(
                    "Cluster must have exactly one default region.",
                    title="Unable to create cluster spec",
                )
            payload["is_default"] = True
            default_seen = True

        region_payloads.append(payload)

    if len(region_payloads) == 1:
        region_payloads[0]["is_default"] = True

    cluster_info: dict[str, Any] = {
        "cluster_tier": tier.value,
        "num_nodes": total_nodes,
        "is_production": tier != ClusterTier.FREE,
        "cluster_type": cluster.cluster_type.value,
    }
    if cluster.fault_tolerance is not None:
        cluster_info["fault_tolerance"] = cluster.fault_tolerance.value
    if cluster.num_faults_to_tolerate is not None:
        cluster_info["num_faults_to_tolerate"] = cluster.num_faults_to_tolerate
    if version is not None:
        cluster_info["version"] = version

    spec = {
        "name": cluster.cluster_name,
        "cluster_info": cluster_info,
        "software_info": software_info,
        "cluster_region_info": region_payloads,
    }
    return TranslatedRequest(
        payload=spec,
        region_index=region_index_map(info.region for info in cluster.cluster_region_info),
    )


def build_create_cluster_request(
    cluster: Cluster,
    resolver: ReferenceResolver,
    *,
    cloud: CloudType,
) -> TranslatedRequest:
    translated = build_cluster_spec(cluster, resolver, cloud=cloud)
    payload: dict[str, Any] = {
        "cluster_spec": translated.payload,
        "db_credentials": encode_credentials(cluster.credentials),
    }
    if cluster.cmk_spec is not None:
        payload["security_cmk_spec"] = build_cmk_spec(cluster.cmk_spec)
    return TranslatedRequest(payload=payload, region_index=translated.region_index)


def build_backup_schedule(schedule: BackupSchedule, existing_description: str) -> dict[str, Any] | None:
    """Translate the backup schedule, or None when nothing should change.

    A schedule is only modified when both its state and retention are given.
    The description defaults to the one already on the server.
    """
    if not (is_set(schedule, "state") and schedule.retention_period_in_days):
        return None

    payload: dict[str, Any] = {
        "state": schedule.state,
        "retention_period_in_days": schedule.retention_period_in_days,
        "description": schedule.backup_description
        if is_set(schedule, "backup_description")
        else existing_description,
    }
    if schedule.incremental_interval_in_mins:
        payload["incremental_interval_in_minutes"] = schedule.incremental_interval_in_mins
    if schedule.time_interval_in_days:
        payload["time_interval_in_days"] = schedule.time_interval_in_days
    if is_set(schedule, "cron_expression"):
        payload["cron_expression"] = schedule.cron_expression
    return payload


def build_connection_pooling_operation(state: ConnectionPoolingState) -> dict[str, Any]:
    return {"operation": "ENABLE" if state == ConnectionPoolingState.ENABLED else "DISABLE"}


def build_vpc_spec(vpc: Vpc) -> dict[str, Any]:
    region_specs = []
    for info in vpc.region_cidr_info or []:
        region_spec: dict[str, Any] = {"region": info.region}
        if vpc.cloud != CloudType.AZURE:
            region_spec["cidr"] = info.cidr
        region_specs.append(region_spec)

    spec: dict[str, Any] = {
        "name": vpc.name,
        "cloud": vpc.cloud.value,
        "region_specs": region_specs,
    }
    if is_set(vpc, "global_cidr"):
        spec["parent_cidr"] = vpc.global_cidr
    return {"spec": spec}


def build_allow_list_spec(allow_list: AllowList) -> dict[str, Any]:
    return {
        "name": allow_list.allow_list_name,
        "description": allow_list.allow_list_description,
        "allow_list": list(allow_list.cidr_list),
    }


def build_read_replicas_spec(read_replicas: ReadReplicas, resolver: ReferenceResolver) -> TranslatedRequest:
    specs: list[dict[str, Any]] = []
    for replica in read_replicas.read_replicas_info:
        num_cores = replica.node_config.num_cores or 0
        option = resolver.node_option(
            replica.cloud_type.value, READ_REPLICA_TIER.value, replica.region, num_cores
        )
        node_info: dict[str, Any] = {
            "num_cores": num_cores,
            "memory_mb": option["memory_mb"],
            "disk_size_gb": replica.node_config.disk_size_gb,
        }
        if replica.node_config.disk_iops is not None:
            node_info["disk_iops"] = replica.node_config.disk_iops

        vpc_id = replica.vpc_id
        if is_set(replica, "vpc_name"):
            vpc_id = resolver.vpc_id(replica.vpc_name or "")

        specs.append(
            {
                "placement_info": {
                    "cloud_info": {"code": replica.cloud_type.value, "region": replica.region},
                    "num_nodes": replica.num_nodes,
                    "num_replicas": replica.num_replicas,
                    "vpc_id": vpc_id,
                    "multi_zone": True if replica.multi_zone is None else replica.multi_zone,
                },
                "region_node_info": node_info,
            }
        )
    return TranslatedRequest(
        payload={"read_replicas": specs},
        region_index=region_index_map(r.region for r in read_replicas.read_replicas_info),
    )


def build_backup_spec(backup: Backup) -> dict[str, Any]:
    if is_set(backup, "backup_id"):
        raise ConfigurationError(
            "The backup_id was provided even though a new backup is being created. "
            "Do not include this field in the provider when creating a backup.",
            title="Backup ID provided for new backup",
        )
    payload: dict[str, Any] = {
        "cluster_id": backup.cluster_id,
        "retention_period_in_days": backup.retention_period_in_days,
    }
    if backup.backup_description is not None:
        payload["description"] = backup.backup_description
    return payload


def build_integration_spec(integration: Integration, flags: FeatureFlags) -> dict[str, Any]:
    validate_integration(integration, flags)
    spec_field = f"{integration.type.value.lower()}_spec"
    type_spec = getattr(integration, spec_field)
    if integration.type == IntegrationType.GOOGLECLOUD:
        type_payload = _gcp_service_account_payload(type_spec)
    else:
        type_payload = type_spec.model_dump()
    return {
        "name": integration.config_name,
        "type": integration.type.value,
        spec_field: type_payload,
    }


def build_audit_logging_spec(audit: DbAuditLogging, integration_id: str) -> dict[str, Any]:
    ysql_config: dict[str, Any] = {"statement_classes": list(audit.ysql_config.statement_classes)}
    settings = audit.ysql_config.log_settings
    if settings is not None:
        ysql_config["log_settings"] = settings.model_dump(mode="json", exclude_none=True)
    return {"exporter_id": integration_id, "ysql_config": ysql_config}

"""Pydantic models for the manageable resources.

These models provide:
1. Type-safe YAML parsing (shape validation at the boundary)
2. The canonical in-memory representation shared by desired and observed state
3. Explicit field presence: absent vs explicit null vs value

The same model describes both the desired state a caller declares and the
settled state the reader produces. Fields a caller never supplies (ids,
timestamps, status) are listed in each model's COMPUTED_FIELDS.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, ClassVar

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Enumerations
# =============================================================================


class CloudType(str, Enum):
    """Cloud providers a cluster or VPC can live in."""

    AWS = "AWS"
    GCP = "GCP"
    AZURE = "AZURE"


class ClusterTier(str, Enum):
    FREE = "FREE"
    PAID = "PAID"


class ClusterType(str, Enum):
    SYNCHRONOUS = "SYNCHRONOUS"
    GEO_PARTITIONED = "GEO_PARTITIONED"


class FaultTolerance(str, Enum):
    NONE = "NONE"
    NODE = "NODE"
    ZONE = "ZONE"
    REGION = "REGION"


class DesiredState(str, Enum):
    ACTIVE = "Active"
    PAUSED = "Paused"


class ConnectionPoolingState(str, Enum):
    ENABLED = "Enabled"
    DISABLED = "Disabled"


class IntegrationType(str, Enum):
    DATADOG = "DATADOG"
    PROMETHEUS = "PROMETHEUS"
    GRAFANA = "GRAFANA"
    SUMOLOGIC = "SUMOLOGIC"
    GOOGLECLOUD = "GOOGLECLOUD"


class AuditLogLevel(str, Enum):
    NOTICE = "NOTICE"
    WARNING = "WARNING"
    LOG = "LOG"


class ResourceKind(str, Enum):
    """Resource kinds accepted in plan files."""

    CLUSTER = "Cluster"
    VPC = "Vpc"
    ALLOW_LIST = "AllowList"
    BACKUP = "Backup"
    READ_REPLICAS = "ReadReplicas"
    INTEGRATION = "Integration"
    DB_AUDIT_LOGGING = "DbAuditLogging"


# =============================================================================
# Field Presence
# =============================================================================


class Presence(str, Enum):
    """Three-state presence of an optional field."""

    ABSENT = "absent"
    NULL = "null"
    VALUE = "value"


def presence_of(model: BaseModel, name: str) -> Presence:
    """Tell apart a field never supplied, supplied as null, and supplied with a value."""
    if name not in model.model_fields_set:
        return Presence.ABSENT
    if getattr(model, name) is None:
        return Presence.NULL
    return Presence.VALUE


def is_set(model: BaseModel, name: str) -> bool:
    """True only when the field carries a non-empty value."""
    if presence_of(model, name) != Presence.VALUE:
        return False
    return getattr(model, name) != ""


# =============================================================================
# Base Model
# =============================================================================


class ResourceModel(BaseModel):
    """Base for every resource and nested block."""

    model_config = {"extra": "forbid"}  # Reject unknown fields

    COMPUTED_FIELDS: ClassVar[frozenset[str]] = frozenset()
    # Remote id a persisted state must carry; None when reads can find it by name
    ID_FIELD: ClassVar[str | None] = None

    def desired_fields(self) -> set[str]:
        """Fields the caller supplied, excluding computed ones."""
        return set(self.model_fields_set) - self.COMPUTED_FIELDS


# =============================================================================
# Cluster
# =============================================================================


class NodeConfig(ResourceModel):
    """Per-node sizing."""

    num_cores: int | None = None
    disk_size_gb: int | None = None
    disk_iops: int | None = None


class RegionInfo(ResourceModel):
    """Placement of a cluster in one region."""

    region: Annotated[str, Field(min_length=1)]
    num_nodes: Annotated[int, Field(ge=1)]
    num_cores: int | None = None
    disk_size_gb: int | None = None
    disk_iops: int | None = None
    vpc_id: str | None = None
    vpc_name: str | None = None
    public_access: bool | None = None
    is_preferred: bool | None = None
    is_default: bool | None = None


class Credentials(ResourceModel):
    """Database credentials.

    Either username/password (shared by YSQL and YCQL) or all four
    ysql_*/ycql_* fields, never a mix.
    """

    username: str | None = None
    password: str | None = None
    ysql_username: str | None = None
    ysql_password: str | None = None
    ycql_username: str | None = None
    ycql_password: str | None = None


class ClusterInfo(ResourceModel):
    state: str | None = None
    software_version: str | None = None
    created_time: str | None = None
    updated_time: str | None = None


class BackupSchedule(ResourceModel):
    """Scheduled backup policy for a cluster."""

    COMPUTED_FIELDS: ClassVar[frozenset[str]] = frozenset({"schedule_id"})

    state: str | None = None
    retention_period_in_days: int | None = None
    schedule_id: str | None = None
    backup_description: str | None = None
    cron_expression: str | None = None
    time_interval_in_days: int | None = None
    incremental_interval_in_mins: Annotated[int | None, Field(ge=60)] = None


class ClusterEndpoint(ResourceModel):
    accessibility_type: str
    host: str
    region: str


class AwsCmkSpec(ResourceModel):
    access_key: str
    secret_key: str
    arn_list: list[str]


class GcpServiceAccount(ResourceModel):
    type: str
    project_id: str
    private_key: str
    private_key_id: str
    client_email: str
    client_id: str
    auth_uri: str
    token_uri: str
    auth_provider_x509_cert_url: str
    client_x509_cert_url: str
    universe_domain: str | None = None


class GcpCmkSpec(ResourceModel):
    key_ring_name: str
    key_name: str
    location: str
    protection_level: str
    gcp_service_account: GcpServiceAccount


class AzureCmkSpec(ResourceModel):
    client_id: str
    client_secret: str
    tenant_id: str
    key_vault_uri: str
    key_name: str


class CmkSpec(ResourceModel):
    """Customer managed key (encryption at rest) configuration."""

    provider_type: CloudType
    is_enabled: bool
    aws_cmk_spec: AwsCmkSpec | None = None
    gcp_cmk_spec: GcpCmkSpec | None = None
    azure_cmk_spec: AzureCmkSpec | None = None


class Cluster(ResourceModel):
    """A YugabyteDB cluster."""

    ID_FIELD: ClassVar[str | None] = "cluster_id"
    COMPUTED_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {
            "account_id",
            "project_id",
            "cluster_id",
            "cluster_info",
            "cluster_version",
            "cluster_endpoints",
            "endpoints",
            "cluster_certificate",
        }
    )

    cluster_name: Annotated[str, Field(min_length=1)]
    cluster_type: ClusterType
    cluster_tier: ClusterTier
    credentials: Credentials
    cluster_region_info: Annotated[list[RegionInfo], Field(min_length=1)]
    cloud_type: CloudType | None = None
    fault_tolerance: FaultTolerance | None = None
    num_faults_to_tolerate: Annotated[int | None, Field(ge=0, le=3)] = None
    database_track: str | None = None
    desired_state: DesiredState | None = None
    desired_connection_pooling_state: ConnectionPoolingState | None = None
    cluster_allow_list_ids: list[str] | None = None
    restore_backup_id: str | None = None
    node_config: NodeConfig | None = None
    backup_schedules: list[BackupSchedule] | None = None
    cmk_spec: CmkSpec | None = None

    # Computed
    account_id: str | None = None
    project_id: str | None = None
    cluster_id: str | None = None
    cluster_info: ClusterInfo | None = None
    cluster_version: str | None = None
    cluster_endpoints: dict[str, str] | None = None
    endpoints: list[ClusterEndpoint] | None = None
    cluster_certificate: str | None = None

    @field_validator("desired_state", "desired_connection_pooling_state", mode="before")
    @classmethod
    def capitalize_state(cls, v: Any) -> Any:
        # Accepted case-insensitively, stored capitalized
        if isinstance(v, str):
            return v.capitalize()
        return v

    @property
    def resource_name(self) -> str:
        return self.cluster_name


# =============================================================================
# VPC
# =============================================================================


class VpcRegionInfo(ResourceModel):
    region: Annotated[str, Field(min_length=1)]
    cidr: str | None = None


class Vpc(ResourceModel):
    """A dedicated VPC clusters can be placed in."""

    ID_FIELD: ClassVar[str | None] = "vpc_id"
    COMPUTED_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"account_id", "project_id", "vpc_id", "external_vpc_id"}
    )

    name: Annotated[str, Field(min_length=1)]
    cloud: CloudType
    global_cidr: str | None = None
    region_cidr_info: list[VpcRegionInfo] | None = None

    # Computed
    account_id: str | None = None
    project_id: str | None = None
    vpc_id: str | None = None
    external_vpc_id: str | None = None

    @property
    def resource_name(self) -> str:
        return self.name


# =============================================================================
# Allow List
# =============================================================================


class AllowList(ResourceModel):
    """A named set of CIDRs allowed to reach clusters."""

    COMPUTED_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"account_id", "project_id", "allow_list_id", "cluster_ids"}
    )

    allow_list_name: Annotated[str, Field(min_length=1)]
    allow_list_description: str
    cidr_list: Annotated[list[str], Field(min_length=1)]

    # Computed
    account_id: str | None = None
    project_id: str | None = None
    allow_list_id: str | None = None
    cluster_ids: list[str] | None = None

    @field_validator("cidr_list")
    @classmethod
    def validate_cidrs(cls, v: list[str]) -> list[str]:
        for cidr in v:
            if "/" not in cidr:
                raise ValueError(f"Invalid CIDR format: {cidr}")
        return v

    @property
    def resource_name(self) -> str:
        return self.allow_list_name


# =============================================================================
# Backup
# =============================================================================


class Backup(ResourceModel):
    """An on-demand cluster backup."""

    ID_FIELD: ClassVar[str | None] = "backup_id"
    COMPUTED_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"account_id", "project_id", "backup_id", "most_recent", "timestamp"}
    )

    cluster_id: Annotated[str, Field(min_length=1)]
    retention_period_in_days: Annotated[int, Field(ge=1)]
    backup_description: str | None = None

    # Computed
    account_id: str | None = None
    project_id: str | None = None
    backup_id: str | None = None
    most_recent: bool | None = None
    timestamp: str | None = None

    @property
    def resource_name(self) -> str:
        return self.backup_description or self.cluster_id


# =============================================================================
# Read Replicas
# =============================================================================


class ReadReplicaInfo(ResourceModel):
    COMPUTED_FIELDS: ClassVar[frozenset[str]] = frozenset({"endpoint"})

    cloud_type: CloudType
    region: Annotated[str, Field(min_length=1)]
    num_nodes: Annotated[int, Field(ge=1)]
    num_replicas: Annotated[int, Field(ge=1)]
    node_config: NodeConfig
    vpc_id: str | None = None
    vpc_name: str | None = None
    multi_zone: bool | None = None
    endpoint: str | None = None


class ReadReplicas(ResourceModel):
    """The read replica set of a primary cluster."""

    COMPUTED_FIELDS: ClassVar[frozenset[str]] = frozenset({"account_id", "project_id"})

    primary_cluster_id: Annotated[str, Field(min_length=1)]
    read_replicas_info: list[ReadReplicaInfo]

    # Computed
    account_id: str | None = None
    project_id: str | None = None

    @property
    def resource_name(self) -> str:
        return self.primary_cluster_id


# =============================================================================
# Integration
# =============================================================================


class DataDogSpec(ResourceModel):
    api_key: str
    site: str


class PrometheusSpec(ResourceModel):
    endpoint: str


class GrafanaSpec(ResourceModel):
    access_policy_token: str
    zone: str
    instance_id: str
    org_slug: str


class SumoLogicSpec(ResourceModel):
    access_key: str
    access_id: str
    installation_token: str


class Integration(ResourceModel):
    """A telemetry provider clusters export logs and metrics to."""

    COMPUTED_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"account_id", "project_id", "config_id", "is_valid"}
    )

    config_name: Annotated[str, Field(min_length=1)]
    type: IntegrationType
    datadog_spec: DataDogSpec | None = None
    prometheus_spec: PrometheusSpec | None = None
    grafana_spec: GrafanaSpec | None = None
    sumologic_spec: SumoLogicSpec | None = None
    googlecloud_spec: GcpServiceAccount | None = None

    # Computed
    account_id: str | None = None
    project_id: str | None = None
    config_id: str | None = None
    is_valid: bool | None = None

    @field_validator("type", mode="before")
    @classmethod
    def upper_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.upper()
        return v

    @property
    def resource_name(self) -> str:
        return self.config_name


# =============================================================================
# DB Audit Logging
# =============================================================================


class LogSettings(ResourceModel):
    log_catalog: bool | None = None
    log_client: bool | None = None
    log_relation: bool | None = None
    log_level: AuditLogLevel | None = None
    log_statement_once: bool | None = None
    log_parameter: bool | None = None


class YsqlConfig(ResourceModel):
    statement_classes: Annotated[list[str], Field(min_length=1)]
    log_settings: LogSettings | None = None


class DbAuditLogging(ResourceModel):
    """Database audit log export from a cluster to an integration."""

    COMPUTED_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"account_id", "project_id", "integration_id", "state", "config_id"}
    )

    cluster_id: Annotated[str, Field(min_length=1)]
    integration_name: Annotated[str, Field(min_length=1)]
    ysql_config: YsqlConfig

    # Computed
    account_id: str | None = None
    project_id: str | None = None
    integration_id: str | None = None
    state: str | None = None
    config_id: str | None = None

    @property
    def resource_name(self) -> str:
        return self.cluster_id


# =============================================================================
# Kind Registry
# =============================================================================

RESOURCE_MODELS: dict[ResourceKind, type[ResourceModel]] = {
    ResourceKind.CLUSTER: Cluster,
    ResourceKind.VPC: Vpc,
    ResourceKind.ALLOW_LIST: AllowList,
    ResourceKind.BACKUP: Backup,
    ResourceKind.READ_REPLICAS: ReadReplicas,
    ResourceKind.INTEGRATION: Integration,
    ResourceKind.DB_AUDIT_LOGGING: DbAuditLogging,
}


def get_model_class(kind: str) -> type[ResourceModel]:
    """Get the model class for a plan kind.

    Raises:
        ValueError: If the kind is not recognized.
    """
    try:
        return RESOURCE_MODELS[ResourceKind(kind)]
    except ValueError as e:
        valid = [k.value for k in ResourceKind]
        raise ValueError(f"Unknown kind '{kind}'. Valid kinds: {valid}") from e

"""Desired-state descriptors of the custom resources handled by the operator."""

import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import InvalidSpecError

logger = logging.getLogger(__name__)

DEFAULT_KAFKA_IMAGE = 'quay.io/strimzi/kafka:latest-kafka-3.7.0'


class SpecModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='ignore')


class MaintenanceWindow(SpecModel):
    """Quartz-style cron expression plus the time zone it is evaluated in."""

    cron: str
    time_zone: str = 'GMT'

    @field_validator('cron')
    @classmethod
    def validate_cron(cls, v: str) -> str:
        if len(v.split()) not in (6, 7):
            raise ValueError(f"maintenance window '{v}' must have 6 or 7 fields")
        return v


class CertificateAuthoritySpec(SpecModel):
    validity_days: int = Field(default=365, gt=0)
    renewal_days: int = Field(default=30, gt=0)
    generate_certificate_authority: bool = True

    @model_validator(mode='after')
    def check_renewal(self) -> 'CertificateAuthoritySpec':
        if self.renewal_days >= self.validity_days:
            raise ValueError('renewalDays must be smaller than validityDays')
        return self


class PodTemplateMetadata(SpecModel):
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)


class PodTemplate(SpecModel):
    metadata: PodTemplateMetadata = Field(default_factory=PodTemplateMetadata)


class PodDisruptionBudgetTemplate(SpecModel):
    max_unavailable: int = Field(default=1, ge=0)


class ResourceTemplate(SpecModel):
    pod: PodTemplate = Field(default_factory=PodTemplate)
    pod_disruption_budget: PodDisruptionBudgetTemplate = Field(default_factory=PodDisruptionBudgetTemplate)


class BrokerOverride(SpecModel):
    broker: int = Field(ge=0)
    advertised_host: str


class ExternalListener(SpecModel):
    type: str = 'route'
    bootstrap_address: Optional[str] = None
    brokers: List[BrokerOverride] = Field(default_factory=list)

    @field_validator('type')
    @classmethod
    def validate_type(cls, v: str) -> str:
        allowed = ['route', 'loadbalancer', 'nodeport', 'ingress']
        if v not in allowed:
            raise ValueError(f"Invalid external listener type. Allowed: {allowed}")
        return v


class Listeners(SpecModel):
    plain: bool = True
    tls: bool = True
    external: Optional[ExternalListener] = None


class KafkaClusterSpec(SpecModel):
    replicas: int = Field(ge=1)
    image: str = DEFAULT_KAFKA_IMAGE
    config: Dict[str, Any] = Field(default_factory=dict)
    listeners: Listeners = Field(default_factory=Listeners)
    template: ResourceTemplate = Field(default_factory=ResourceTemplate)


class ZookeeperClusterSpec(SpecModel):
    replicas: int = Field(ge=1)
    image: str = DEFAULT_KAFKA_IMAGE
    config: Dict[str, Any] = Field(default_factory=dict)
    template: ResourceTemplate = Field(default_factory=ResourceTemplate)


def _windows(value: Any) -> Any:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError('maintenanceTimeWindows must be a list of cron expressions or windows')
    return [{'cron': w} if isinstance(w, str) else w for w in value]


class KafkaSpec(SpecModel):
    kafka: KafkaClusterSpec
    zookeeper: ZookeeperClusterSpec
    cluster_ca: CertificateAuthoritySpec = Field(default_factory=CertificateAuthoritySpec)
    clients_ca: CertificateAuthoritySpec = Field(default_factory=CertificateAuthoritySpec)
    maintenance_time_windows: List[MaintenanceWindow] = Field(default_factory=list)

    @field_validator('maintenance_time_windows', mode='before')
    @classmethod
    def accept_plain_windows(cls, v: Any) -> Any:
        return _windows(v)


class PasswordSecret(SpecModel):
    secret_name: str
    password: str


class ClusterAuthentication(SpecModel):
    type: str
    username: Optional[str] = None
    password_secret: Optional[PasswordSecret] = None

    @field_validator('type')
    @classmethod
    def validate_type(cls, v: str) -> str:
        allowed = ['tls', 'plain', 'scram-sha-512']
        if v not in allowed:
            raise ValueError(f"Invalid authentication type. Allowed: {allowed}")
        return v

    @model_validator(mode='after')
    def require_credentials(self) -> 'ClusterAuthentication':
        if self.type in ('plain', 'scram-sha-512') and not (self.username and self.password_secret):
            raise ValueError(f"{self.type} authentication requires username and passwordSecret")
        return self


class TrustedCertificate(SpecModel):
    secret_name: str
    certificate: str


class ClusterTls(SpecModel):
    trusted_certificates: List[TrustedCertificate] = Field(default_factory=list)


class MirrorMaker2ClusterSpec(SpecModel):
    alias: str
    bootstrap_servers: str
    tls: Optional[ClusterTls] = None
    authentication: Optional[ClusterAuthentication] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class KafkaConnectSpec(SpecModel):
    replicas: int = Field(default=1, ge=0)
    image: str = DEFAULT_KAFKA_IMAGE
    bootstrap_servers: str
    tls: Optional[ClusterTls] = None
    authentication: Optional[ClusterAuthentication] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    template: ResourceTemplate = Field(default_factory=ResourceTemplate)


class MirrorMaker2ConnectorSpec(SpecModel):
    config: Dict[str, Any] = Field(default_factory=dict)
    pause: bool = False
    tasks_max: Optional[int] = Field(default=None, ge=1)


def _prefer_current(current: Optional[str], deprecated: Optional[str],
                    current_name: str, deprecated_name: str) -> Optional[str]:
    if current is not None and deprecated is not None:
        logger.warning(f"Both {current_name} and {deprecated_name} fields are present. "
                       f"{deprecated_name} is deprecated and will be ignored.")
        return current
    return current if current is not None else deprecated


class MirrorSpec(SpecModel):
    source_cluster: Optional[str] = None
    target_cluster: Optional[str] = None
    source_connector: Optional[MirrorMaker2ConnectorSpec] = None
    checkpoint_connector: Optional[MirrorMaker2ConnectorSpec] = None
    heartbeat_connector: Optional[MirrorMaker2ConnectorSpec] = None
    topics_pattern: Optional[str] = None
    topics_exclude_pattern: Optional[str] = None
    topics_blacklist_pattern: Optional[str] = None
    groups_pattern: Optional[str] = None
    groups_exclude_pattern: Optional[str] = None
    groups_blacklist_pattern: Optional[str] = None

    @model_validator(mode='after')
    def resolve_deprecated_patterns(self) -> 'MirrorSpec':
        self.topics_exclude_pattern = _prefer_current(
            self.topics_exclude_pattern, self.topics_blacklist_pattern,
            'topicsExcludePattern', 'topicsBlacklistPattern')
        self.groups_exclude_pattern = _prefer_current(
            self.groups_exclude_pattern, self.groups_blacklist_pattern,
            'groupsExcludePattern', 'groupsBlacklistPattern')
        return self


class KafkaMirrorMaker2Spec(SpecModel):
    replicas: int = Field(default=1, ge=0)
    image: str = DEFAULT_KAFKA_IMAGE
    connect_cluster: str
    clusters: List[MirrorMaker2ClusterSpec] = Field(default_factory=list)
    mirrors: List[MirrorSpec] = Field(default_factory=list)
    config: Dict[str, Any] = Field(default_factory=dict)
    template: ResourceTemplate = Field(default_factory=ResourceTemplate)

    @model_validator(mode='after')
    def check_connect_cluster(self) -> 'KafkaMirrorMaker2Spec':
        aliases = [c.alias for c in self.clusters]
        if self.connect_cluster not in aliases:
            raise ValueError(f"connectCluster with alias {self.connect_cluster} "
                             f"cannot be found in the list of clusters at spec.clusters")
        return self

    def cluster(self, alias: str) -> Optional[MirrorMaker2ClusterSpec]:
        for c in self.clusters:
            if c.alias == alias:
                return c
        return None


class MirrorMakerClientSpec(SpecModel):
    bootstrap_servers: str
    group_id: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class KafkaMirrorMakerSpec(SpecModel):
    replicas: int = Field(default=1, ge=0)
    image: str = DEFAULT_KAFKA_IMAGE
    consumer: MirrorMakerClientSpec
    producer: MirrorMakerClientSpec
    include: Optional[str] = None
    whitelist: Optional[str] = None
    template: ResourceTemplate = Field(default_factory=ResourceTemplate)

    @model_validator(mode='after')
    def resolve_include(self) -> 'KafkaMirrorMakerSpec':
        if self.include is None and self.whitelist is None:
            raise ValueError('One of the fields include or whitelist needs to be specified.')
        self.include = _prefer_current(self.include, self.whitelist, 'include', 'whitelist')
        return self

    @field_validator('consumer')
    @classmethod
    def require_group(cls, v: MirrorMakerClientSpec) -> MirrorMakerClientSpec:
        if not v.group_id:
            raise ValueError('consumer.groupId is required')
        return v


SpecT = TypeVar('SpecT', bound=SpecModel)


def parse_spec(resource: Dict[str, Any], spec_type: Type[SpecT]) -> SpecT:
    """Validate the ``spec`` of a custom resource, raising ``InvalidSpecError`` on failure."""
    spec = resource.get('spec')
    if spec is None:
        raise InvalidSpecError('spec property is required')
    try:
        return spec_type.model_validate(spec)
    except ValidationError as e:
        problems = '; '.join(
            f"{'.'.join(str(p) for p in err['loc']) or 'spec'}: {err['msg']}" for err in e.errors()
        )
        raise InvalidSpecError(problems) from e


"""
Certificate authority lifecycle for Kafka assemblies.

A cluster owns two certificate authorities with identical lifecycles:

1. the *cluster* CA, signing broker and ZooKeeper node certificates
2. the *clients* CA, trusted by brokers for TLS client authentication

Each CA is persisted as a pair of Secrets (certificate and private key) and
carries a generation counter in an annotation on the certificate Secret. The
generation is bumped by exactly one whenever the key pair is replaced, so that
pods annotated with an older generation can be identified and rolled.
"""

import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from . import naming
from .errors import CaInitializationError

logger = logging.getLogger(__name__)

ORGANIZATION = 'kafka-assembly-operator'
CA_CERT_KEY = 'ca.crt'
CA_KEY_KEY = 'ca.key'
DEFAULT_KEY_SIZE = 2048


class CaRole(str, Enum):
    CLUSTER = 'cluster'
    CLIENTS = 'clients'

    @property
    def pod_annotation(self) -> str:
        """Pod annotation recording the generation of this CA the pod trusts."""
        if self is CaRole.CLUSTER:
            return naming.ANNO_CLUSTER_CA_CERT_GENERATION
        return naming.ANNO_CLIENTS_CA_CERT_GENERATION


@dataclass(frozen=True)
class Subject:
    common_name: str
    sans: Tuple[str, ...] = ()
    organization: str = ORGANIZATION


@dataclass(frozen=True)
class CertAndKey:
    cert_pem: bytes
    key_pem: bytes

    @property
    def certificate(self) -> x509.Certificate:
        return x509.load_pem_x509_certificate(self.cert_pem)


@dataclass(frozen=True)
class NotDue:
    pass


@dataclass(frozen=True)
class Renewed:
    generation: int


RenewalOutcome = Union[NotDue, Renewed]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _secret_data(secret: Optional[Mapping[str, Any]]) -> Dict[str, bytes]:
    if not secret:
        return {}
    return {k: base64.b64decode(v) for k, v in (secret.get('data') or {}).items() if v is not None}


def _secret_generation(secret: Optional[Mapping[str, Any]]) -> Optional[int]:
    if not secret:
        return None
    annotations = (secret.get('metadata') or {}).get('annotations') or {}
    raw = annotations.get(naming.ANNO_CA_CERT_GENERATION)
    try:
        return int(raw) if raw is not None else None
    except ValueError:
        return None


def _public_der(public_key) -> bytes:
    return public_key.public_bytes(serialization.Encoding.DER,
                                   serialization.PublicFormat.SubjectPublicKeyInfo)


def _key_pem(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _dns_names(cert: x509.Certificate) -> frozenset:
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return frozenset()
    return frozenset(san.get_values_for_type(x509.DNSName))


def _b64(value: bytes) -> str:
    return base64.b64encode(value).decode('ascii')


class CertificateAuthority:
    """A self-signed root for one ``CaRole`` of one cluster."""

    def __init__(self, role: CaRole, cluster: str, key, cert: x509.Certificate, generation: int,
                 validity_days: int, renewal_days: int, generate: bool,
                 key_size: int = DEFAULT_KEY_SIZE):
        self.role = role
        self.cluster = cluster
        self._key = key
        self._cert = cert
        self.generation = generation
        self.validity_days = validity_days
        self.renewal_days = renewal_days
        self.generate = generate
        self.key_size = key_size
        self.expired_at_renewal = False
        self.material_changed = False
        self._renewed = False

    @classmethod
    def load_or_generate(cls, role: CaRole, cluster: str,
                         cert_secret: Optional[Mapping[str, Any]],
                         key_secret: Optional[Mapping[str, Any]],
                         validity_days: int = 365, renewal_days: int = 30,
                         generate: bool = True, now: Optional[datetime] = None,
                         key_size: int = DEFAULT_KEY_SIZE) -> 'CertificateAuthority':
        """Load the persisted CA, creating a new root when allowed and needed."""
        now = now or _now()
        previous_generation = _secret_generation(cert_secret)

        if cert_secret is None and key_secret is None:
            if not generate:
                raise CaInitializationError(
                    f"{role.value} CA of cluster {cluster} is user managed but secrets "
                    f"{naming.ca_cert_secret_name(cluster, role.value)} and "
                    f"{naming.ca_key_secret_name(cluster, role.value)} do not exist")
            logger.info(f"Generating {role.value} CA for cluster {cluster}")
            return cls._generated(role, cluster, 0, validity_days, renewal_days, generate, now, key_size)

        try:
            key, cert = cls._parse(_secret_data(cert_secret).get(CA_CERT_KEY),
                                   _secret_data(key_secret).get(CA_KEY_KEY))
        except (ValueError, TypeError, x509.ExtensionNotFound) as e:
            if not generate:
                raise CaInitializationError(
                    f"{role.value} CA of cluster {cluster} could not be loaded: {e}") from e
            generation = 0 if previous_generation is None else previous_generation + 1
            logger.warning(f"{role.value} CA of cluster {cluster} could not be loaded ({e}), "
                           f"replacing it with generation {generation}")
            return cls._generated(role, cluster, generation, validity_days, renewal_days, generate, now, key_size)

        return cls(role, cluster, key, cert, previous_generation or 0,
                   validity_days, renewal_days, generate, key_size)

    @classmethod
    def _generated(cls, role, cluster, generation, validity_days, renewal_days, generate, now,
                   key_size) -> 'CertificateAuthority':
        key, cert = _create_root(role, generation, validity_days, now, key_size)
        ca = cls(role, cluster, key, cert, generation, validity_days, renewal_days, generate, key_size)
        ca.material_changed = True
        return ca

    @staticmethod
    def _parse(cert_pem: Optional[bytes], key_pem: Optional[bytes]):
        if not cert_pem:
            raise ValueError(f'{CA_CERT_KEY} is missing')
        if not key_pem:
            raise ValueError(f'{CA_KEY_KEY} is missing')
        cert = x509.load_pem_x509_certificate(cert_pem)
        key = serialization.load_pem_private_key(key_pem, password=None)
        if _public_der(cert.public_key()) != _public_der(key.public_key()):
            raise ValueError('private key does not match the CA certificate')
        constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
        if not constraints.ca:
            raise ValueError('certificate is not a CA certificate')
        return key, cert

    @property
    def certificate(self) -> x509.Certificate:
        return self._cert

    @property
    def cert_pem(self) -> bytes:
        return self._cert.public_bytes(serialization.Encoding.PEM)

    @property
    def not_after(self) -> datetime:
        return self._cert.not_valid_after_utc

    def renewal_due(self, now: datetime) -> bool:
        return now >= self.not_after - timedelta(days=self.renewal_days)

    def renew_if_needed(self, now: Optional[datetime] = None) -> RenewalOutcome:
        """Replace the key pair and root certificate when inside the renewal period."""
        now = now or _now()
        if not self.renewal_due(now):
            return NotDue()

        if not self.generate:
            logger.warning(f"{self.role.value} CA of cluster {self.cluster} expires at "
                           f"{self.not_after.isoformat()} but is user managed and will not be renewed")
            return NotDue()

        self.expired_at_renewal = now >= self.not_after
        self.generation += 1
        self._key, self._cert = _create_root(self.role, self.generation, self.validity_days,
                                             now, self.key_size)
        self._renewed = True
        self.material_changed = True
        logger.info(f"Renewed {self.role.value} CA of cluster {self.cluster}, "
                    f"new generation {self.generation}")
        return Renewed(self.generation)

    def cert_renewed(self) -> bool:
        """True only if this pass replaced the CA key pair."""
        return self._renewed

    def issue_leaf_certificates(self, replicas: int, subject_fn: Callable[[int], Subject],
                                existing_secret: Optional[Mapping[str, Any]],
                                pod_name_fn: Callable[[int], str],
                                now: Optional[datetime] = None) -> Dict[str, CertAndKey]:
        """Certificates for pods ``0..replicas-1``, reusing existing ones where still valid."""
        now = now or _now()
        existing = _secret_data(existing_secret)
        result = {}
        for ordinal in range(replicas):
            pod = pod_name_fn(ordinal)
            subject = subject_fn(ordinal)
            reused = self._reusable(existing.get(f'{pod}.crt'), existing.get(f'{pod}.key'), subject, now)
            if reused is not None:
                result[pod] = reused
            else:
                logger.debug(f"Issuing certificate for {pod} with SANs {list(subject.sans)}")
                result[pod] = self._issue_leaf(subject, now)
        return result

    def _reusable(self, cert_pem: Optional[bytes], key_pem: Optional[bytes], subject: Subject,
                  now: datetime) -> Optional[CertAndKey]:
        if not cert_pem or not key_pem:
            return None
        try:
            cert = x509.load_pem_x509_certificate(cert_pem)
            cert.verify_directly_issued_by(self._cert)
        except (ValueError, TypeError, InvalidSignature):
            return None
        if _dns_names(cert) != frozenset(subject.sans):
            return None
        if now >= cert.not_valid_after_utc - timedelta(days=self.renewal_days):
            return None
        return CertAndKey(cert_pem, key_pem)

    def _issue_leaf(self, subject: Subject, now: datetime) -> CertAndKey:
        key = rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)
        name = x509.Name([
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, subject.organization),
            x509.NameAttribute(NameOID.COMMON_NAME, subject.common_name),
        ])
        builder = (
            x509.CertificateBuilder()
            .serial_number(x509.random_serial_number())
            .issuer_name(self._cert.subject)
            .subject_name(name)
            .public_key(key.public_key())
            .not_valid_before(now)
            .not_valid_after(now + timedelta(days=self.validity_days))
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=True,
                data_encipherment=False, key_agreement=False, key_cert_sign=False,
                crl_sign=False, encipher_only=False, decipher_only=False), critical=True)
            .add_extension(x509.ExtendedKeyUsage(
                [ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]), critical=False)
            .add_extension(x509.AuthorityKeyIdentifier.from_issuer_public_key(self._key.public_key()),
                           critical=False)
        )
        if subject.sans:
            builder = builder.add_extension(
                x509.SubjectAlternativeName([x509.DNSName(san) for san in subject.sans]), critical=False)
        cert = builder.sign(self._key, hashes.SHA256())
        return CertAndKey(cert.public_bytes(serialization.Encoding.PEM), _key_pem(key))

    def cert_secret(self, namespace: str, labels: Dict[str, str]) -> Dict[str, Any]:
        return {
            'apiVersion': 'v1',
            'kind': 'Secret',
            'metadata': {
                'name': naming.ca_cert_secret_name(self.cluster, self.role.value),
                'namespace': namespace,
                'labels': labels,
                'annotations': {naming.ANNO_CA_CERT_GENERATION: str(self.generation)},
            },
            'type': 'Opaque',
            'data': {CA_CERT_KEY: _b64(self.cert_pem)},
        }

    def key_secret(self, namespace: str, labels: Dict[str, str]) -> Dict[str, Any]:
        return {
            'apiVersion': 'v1',
            'kind': 'Secret',
            'metadata': {
                'name': naming.ca_key_secret_name(self.cluster, self.role.value),
                'namespace': namespace,
                'labels': labels,
            },
            'type': 'Opaque',
            'data': {CA_KEY_KEY: _b64(_key_pem(self._key))},
        }


def _create_root(role: CaRole, generation: int, validity_days: int, now: datetime, key_size: int):
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    name = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
        x509.NameAttribute(NameOID.COMMON_NAME, f'{role.value}-ca v{generation}'),
    ])
    cert = (
        x509.CertificateBuilder()
        .serial_number(x509.random_serial_number())
        .issuer_name(name)
        .subject_name(name)
        .public_key(key.public_key())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=validity_days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(x509.KeyUsage(
            digital_signature=False, content_commitment=False, key_encipherment=False,
            data_encipherment=False, key_agreement=False, key_cert_sign=True,
            crl_sign=True, encipher_only=False, decipher_only=False), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )
    return key, cert


def certificates_secret(name: str, namespace: str, labels: Dict[str, str],
                        ca: CertificateAuthority, certs: Dict[str, CertAndKey]) -> Dict[str, Any]:
    """Secret holding the per-pod certificates plus the CA certificate they chain to."""
    data = {CA_CERT_KEY: _b64(ca.cert_pem)}
    for pod, cert_and_key in sorted(certs.items()):
        data[f'{pod}.crt'] = _b64(cert_and_key.cert_pem)
        data[f'{pod}.key'] = _b64(cert_and_key.key_pem)
    return {
        'apiVersion': 'v1',
        'kind': 'Secret',
        'metadata': {'name': name, 'namespace': namespace, 'labels': labels},
        'type': 'Opaque',
        'data': data,
    }


def kafka_broker_subject_fn(cluster: str, namespace: str, dns_domain: str,
                            external_bootstrap: Optional[str] = None,
                            external_addresses: Optional[Dict[int, str]] = None) -> Callable[[int], Subject]:
    """SAN builder for broker certificates, including advertised external addresses."""
    service = naming.kafka_service_name(cluster)
    headless = naming.kafka_headless_service_name(cluster)
    external_addresses = external_addresses or {}

    def subject(ordinal: int) -> Subject:
        sans = [
            service,
            f'{service}.{namespace}',
            naming.qualified_service_name(service, namespace, dns_domain),
            f'{naming.kafka_pod_name(cluster, ordinal)}.{headless}.{namespace}.svc.{dns_domain}',
        ]
        if external_bootstrap:
            sans.append(external_bootstrap)
        if external_addresses.get(ordinal):
            sans.append(external_addresses[ordinal])
        return Subject(common_name=naming.kafka_statefulset_name(cluster), sans=tuple(sans))

    return subject


def zookeeper_node_subject_fn(cluster: str, namespace: str, dns_domain: str) -> Callable[[int], Subject]:
    service = naming.zookeeper_service_name(cluster)
    headless = naming.zookeeper_headless_service_name(cluster)

    def subject(ordinal: int) -> Subject:
        sans = (
            service,
            f'{service}.{namespace}',
            naming.qualified_service_name(service, namespace, dns_domain),
            f'{naming.zookeeper_pod_name(cluster, ordinal)}.{headless}.{namespace}.svc.{dns_domain}',
        )
        return Subject(common_name=naming.zookeeper_statefulset_name(cluster), sans=sans)

    return subject

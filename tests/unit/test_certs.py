"""
Unit tests for the certificate authority lifecycle.

Covers:
- first creation and loading back from the persisted secrets
- renewal inside the renewal period and the generation counter
- user-managed CAs which are missing, malformed or expiring
- issuing, reusing and reissuing per-pod leaf certificates
"""

import base64
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509

from kafka_operator import naming
from kafka_operator.certs import (CA_CERT_KEY, CaRole, CertificateAuthority, NotDue, Renewed, certificates_secret,
                                  kafka_broker_subject_fn)
from kafka_operator.errors import CaInitializationError

KEY_SIZE = 1024
NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
LABELS = {naming.CLUSTER_LABEL: 'my-cluster'}


def new_ca(now=NOW, validity_days=10, renewal_days=2, **kwargs):
    return CertificateAuthority.load_or_generate(CaRole.CLUSTER, 'my-cluster', None, None,
                                                 validity_days=validity_days, renewal_days=renewal_days,
                                                 now=now, key_size=KEY_SIZE, **kwargs)


def reload(ca, now=NOW, **kwargs):
    kwargs.setdefault('validity_days', ca.validity_days)
    kwargs.setdefault('renewal_days', ca.renewal_days)
    return CertificateAuthority.load_or_generate(ca.role, ca.cluster,
                                                 ca.cert_secret('test', LABELS), ca.key_secret('test', LABELS),
                                                 now=now, key_size=KEY_SIZE, **kwargs)


def sans_of(cert_pem: bytes):
    cert = x509.load_pem_x509_certificate(cert_pem)
    return set(cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
               .get_values_for_type(x509.DNSName))


class TestCreationAndLoading:
    """A CA is generated once and loaded back unchanged afterwards."""

    def test_first_creation_has_generation_zero(self):
        ca = new_ca()

        assert ca.generation == 0
        assert ca.material_changed is True
        assert ca.cert_renewed() is False
        assert ca.certificate.extensions.get_extension_for_class(x509.BasicConstraints).value.ca

    def test_secrets_round_trip(self):
        ca = new_ca()

        loaded = reload(ca)

        assert loaded.generation == 0
        assert loaded.cert_pem == ca.cert_pem
        assert loaded.material_changed is False

    def test_cert_secret_carries_generation_annotation(self):
        secret = new_ca().cert_secret('test', LABELS)

        assert secret['metadata']['name'] == 'my-cluster-cluster-ca-cert'
        assert secret['metadata']['annotations'][naming.ANNO_CA_CERT_GENERATION] == '0'
        assert base64.b64decode(secret['data'][CA_CERT_KEY]).startswith(b'-----BEGIN CERTIFICATE-----')

    def test_user_managed_ca_missing(self):
        with pytest.raises(CaInitializationError, match='user managed'):
            new_ca(generate=False)

    def test_user_managed_ca_malformed(self):
        ca = new_ca()
        cert_secret = ca.cert_secret('test', LABELS)
        cert_secret['data'][CA_CERT_KEY] = base64.b64encode(b'not a certificate').decode()

        with pytest.raises(CaInitializationError):
            CertificateAuthority.load_or_generate(CaRole.CLUSTER, 'my-cluster', cert_secret,
                                                  ca.key_secret('test', LABELS), generate=False,
                                                  now=NOW, key_size=KEY_SIZE)

    def test_malformed_generated_ca_is_replaced_with_next_generation(self):
        ca = new_ca()
        cert_secret = ca.cert_secret('test', LABELS)
        cert_secret['metadata']['annotations'][naming.ANNO_CA_CERT_GENERATION] = '4'
        key_secret = ca.key_secret('test', LABELS)
        key_secret['data'] = {}

        replaced = CertificateAuthority.load_or_generate(CaRole.CLUSTER, 'my-cluster', cert_secret, key_secret,
                                                         now=NOW, key_size=KEY_SIZE)

        assert replaced.generation == 5
        assert replaced.material_changed is True
        assert replaced.cert_pem != ca.cert_pem


class TestRenewal:
    """Renewal replaces the key pair and bumps the generation by exactly one."""

    def test_not_due_before_renewal_period(self):
        ca = new_ca()

        assert isinstance(ca.renew_if_needed(NOW + timedelta(days=7)), NotDue)
        assert ca.generation == 0
        assert ca.cert_renewed() is False

    def test_renewal_inside_renewal_period(self):
        ca = reload(new_ca())
        old_pem = ca.cert_pem

        outcome = ca.renew_if_needed(NOW + timedelta(days=9))

        assert outcome == Renewed(1)
        assert ca.generation == 1
        assert ca.cert_renewed() is True
        assert ca.material_changed is True
        assert ca.expired_at_renewal is False
        assert ca.cert_pem != old_pem

    def test_generation_never_decreases_across_passes(self):
        ca = new_ca()
        later = NOW + timedelta(days=9)
        ca.renew_if_needed(later)

        again = reload(ca, now=later)

        assert isinstance(again.renew_if_needed(later), NotDue)
        assert again.generation == 1

    def test_expired_ca_is_flagged(self):
        ca = new_ca()

        ca.renew_if_needed(NOW + timedelta(days=11))

        assert ca.expired_at_renewal is True
        assert ca.generation == 1

    def test_user_managed_ca_is_never_renewed(self):
        ca = reload(new_ca(), generate=False)

        assert isinstance(ca.renew_if_needed(NOW + timedelta(days=9)), NotDue)
        assert ca.generation == 0
        assert ca.material_changed is False


class TestLeafCertificates:
    """Per-pod certificates signed by the cluster CA."""

    def pod_name(self, ordinal):
        return naming.kafka_pod_name('my-cluster', ordinal)

    def issue(self, ca, existing=None, now=NOW, **subject_kwargs):
        subject_fn = kafka_broker_subject_fn('my-cluster', 'test', 'cluster.local', **subject_kwargs)
        return ca.issue_leaf_certificates(2, subject_fn, existing, self.pod_name, now)

    def test_issues_certificate_per_pod(self):
        ca = new_ca()

        certs = self.issue(ca)

        assert sorted(certs) == ['my-cluster-kafka-0', 'my-cluster-kafka-1']
        leaf = certs['my-cluster-kafka-1'].certificate
        leaf.verify_directly_issued_by(ca.certificate)
        assert sans_of(certs['my-cluster-kafka-1'].cert_pem) == {
            'my-cluster-kafka-bootstrap',
            'my-cluster-kafka-bootstrap.test',
            'my-cluster-kafka-bootstrap.test.svc.cluster.local',
            'my-cluster-kafka-1.my-cluster-kafka-brokers.test.svc.cluster.local',
        }

    def test_external_addresses_are_included(self):
        certs = self.issue(new_ca(), external_bootstrap='bootstrap.example.com',
                           external_addresses={0: 'broker-0.example.com'})

        assert {'bootstrap.example.com', 'broker-0.example.com'} <= sans_of(certs['my-cluster-kafka-0'].cert_pem)
        assert 'broker-0.example.com' not in sans_of(certs['my-cluster-kafka-1'].cert_pem)

    def test_valid_certificates_are_reused(self):
        ca = new_ca()
        certs = self.issue(ca)
        secret = certificates_secret('my-cluster-kafka-brokers', 'test', LABELS, ca, certs)

        again = self.issue(ca, existing=secret)

        assert again == certs

    def test_changed_sans_issue_new_certificate(self):
        ca = new_ca()
        certs = self.issue(ca)
        secret = certificates_secret('my-cluster-kafka-brokers', 'test', LABELS, ca, certs)

        again = self.issue(ca, existing=secret, external_bootstrap='bootstrap.example.com')

        assert again['my-cluster-kafka-0'] != certs['my-cluster-kafka-0']

    def test_renewed_ca_reissues_certificates(self):
        ca = new_ca()
        certs = self.issue(ca)
        secret = certificates_secret('my-cluster-kafka-brokers', 'test', LABELS, ca, certs)
        later = NOW + timedelta(days=9)
        ca.renew_if_needed(later)

        again = self.issue(ca, existing=secret, now=later)

        assert again['my-cluster-kafka-0'] != certs['my-cluster-kafka-0']
        again['my-cluster-kafka-0'].certificate.verify_directly_issued_by(ca.certificate)

"""
Unit tests for validation of the custom resource specs.
"""

import logging

import pytest

from kafka_operator.errors import InvalidSpecError
from kafka_operator.model import KafkaMirrorMaker2Spec, KafkaMirrorMakerSpec, KafkaSpec, MirrorSpec, parse_spec


def mirror_maker(**extra):
    spec = {
        'consumer': {'bootstrapServers': 'source:9092', 'groupId': 'mirror'},
        'producer': {'bootstrapServers': 'target:9092'},
    }
    spec.update(extra)
    return {'spec': spec}


class TestParseSpec:

    def test_missing_spec(self):
        with pytest.raises(InvalidSpecError, match='spec property is required'):
            parse_spec({'metadata': {'name': 'x'}}, KafkaSpec)

    def test_errors_name_the_field(self):
        with pytest.raises(InvalidSpecError) as exc_info:
            parse_spec({'spec': {'kafka': {'replicas': 0}, 'zookeeper': {'replicas': 1}}}, KafkaSpec)

        assert 'kafka.replicas' in str(exc_info.value)
        assert exc_info.value.reason == 'InvalidResourceException'

    def test_maintenance_windows_as_strings(self):
        spec = parse_spec({'spec': {
            'kafka': {'replicas': 3}, 'zookeeper': {'replicas': 3},
            'maintenanceTimeWindows': ['* * 8-10 * * ?', {'cron': '* * 0-1 ? * 1', 'timeZone': 'Europe/Paris'}],
        }}, KafkaSpec)

        assert [w.cron for w in spec.maintenance_time_windows] == ['* * 8-10 * * ?', '* * 0-1 ? * 1']
        assert spec.maintenance_time_windows[0].time_zone == 'GMT'
        assert spec.maintenance_time_windows[1].time_zone == 'Europe/Paris'

    def test_maintenance_windows_must_be_a_list(self):
        with pytest.raises(InvalidSpecError, match='must be a list'):
            parse_spec({'spec': {'kafka': {'replicas': 1}, 'zookeeper': {'replicas': 1},
                                 'maintenanceTimeWindows': '* * 8-10 * * ?'}}, KafkaSpec)

    def test_renewal_must_be_shorter_than_validity(self):
        with pytest.raises(InvalidSpecError, match='renewalDays'):
            parse_spec({'spec': {'kafka': {'replicas': 1}, 'zookeeper': {'replicas': 1},
                                 'clusterCa': {'validityDays': 10, 'renewalDays': 10}}}, KafkaSpec)


class TestMirrorMakerInclude:

    def test_include(self):
        assert parse_spec(mirror_maker(include='a.*'), KafkaMirrorMakerSpec).include == 'a.*'

    def test_deprecated_whitelist(self):
        assert parse_spec(mirror_maker(whitelist='b.*'), KafkaMirrorMakerSpec).include == 'b.*'

    def test_include_wins_over_whitelist(self, caplog):
        with caplog.at_level(logging.WARNING):
            spec = parse_spec(mirror_maker(include='a.*', whitelist='b.*'), KafkaMirrorMakerSpec)

        assert spec.include == 'a.*'
        assert 'whitelist is deprecated' in caplog.text

    def test_one_of_include_or_whitelist_is_required(self):
        with pytest.raises(InvalidSpecError, match='include or whitelist'):
            parse_spec(mirror_maker(), KafkaMirrorMakerSpec)

    def test_consumer_group_is_required(self):
        spec = mirror_maker(include='a.*')
        del spec['spec']['consumer']['groupId']

        with pytest.raises(InvalidSpecError, match='groupId'):
            parse_spec(spec, KafkaMirrorMakerSpec)


class TestMirrorExcludePatterns:

    def test_exclude_wins_over_blacklist(self):
        mirror = MirrorSpec.model_validate({'topicsExcludePattern': 'x', 'topicsBlacklistPattern': 'y',
                                            'groupsBlacklistPattern': 'g'})

        assert mirror.topics_exclude_pattern == 'x'
        assert mirror.groups_exclude_pattern == 'g'

    def test_connect_cluster_must_be_listed(self):
        with pytest.raises(InvalidSpecError, match='connectCluster'):
            parse_spec({'spec': {'connectCluster': 'missing',
                                 'clusters': [{'alias': 'a', 'bootstrapServers': 'a:9092'}]}},
                       KafkaMirrorMaker2Spec)

    def test_sasl_requires_credentials(self):
        with pytest.raises(InvalidSpecError, match='passwordSecret'):
            parse_spec({'spec': {'connectCluster': 'a', 'clusters': [
                {'alias': 'a', 'bootstrapServers': 'a:9092', 'authentication': {'type': 'plain'}}]}},
                KafkaMirrorMaker2Spec)

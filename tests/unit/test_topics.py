"""
Unit tests for topic names and filters
"""
import pytest

from iot_sandbox.topics import (
    TopicError,
    topic_matches,
    validate_filter,
    validate_qos,
    validate_topic,
)


@pytest.mark.unit
class TestValidation:
    """Topic and filter validation"""

    def test_plain_topic_ok(self):
        assert validate_topic('sample/topic1') == 'sample/topic1'

    @pytest.mark.parametrize('topic', ['', 'sample/+', 'sample/#', 'a\x00b'])
    def test_invalid_topics(self, topic):
        with pytest.raises(TopicError):
            validate_topic(topic)

    @pytest.mark.parametrize('f', ['sample/+', '#', 'sample/#', '+/+/x', '$SYS/#'])
    def test_valid_filters(self, f):
        assert validate_filter(f) == f

    @pytest.mark.parametrize('f', ['', 'sample/#/x', 'sample#', 'sam+ple', 'a/b+'])
    def test_invalid_filters(self, f):
        with pytest.raises(TopicError):
            validate_filter(f)

    def test_qos_range(self):
        assert validate_qos(2) == 2
        with pytest.raises(TopicError):
            validate_qos(3)


@pytest.mark.unit
class TestMatching:
    """Wildcard matching"""

    @pytest.mark.parametrize('f, topic', [
        ('sample/+', 'sample/topic1'),
        ('sample/#', 'sample'),
        ('sample/#', 'sample/a/b'),
        ('#', 'anything/at/all'),
        ('+/+', 'a/b'),
        ('sample/topic1', 'sample/topic1'),
    ])
    def test_matches(self, f, topic):
        assert topic_matches(f, topic)

    @pytest.mark.parametrize('f, topic', [
        ('sample/+', 'sample/a/b'),
        ('sample/+', 'other/topic1'),
        ('sample/+', 'sample'),
        ('+/+', 'a'),
        ('#', '$SYS/uptime'),
        ('+/uptime', '$SYS/uptime'),
    ])
    def test_no_match(self, f, topic):
        assert not topic_matches(f, topic)

    def test_dollar_topic_matched_explicitly(self):
        assert topic_matches('$SYS/#', '$SYS/uptime')

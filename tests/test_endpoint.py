import pytest

from streamrec.config import EndpointConfig, EndpointRule
from streamrec.engine.endpoint import (
    EndpointDetector,
    EndpointState,
    EndpointStatus,
    rule_activated,
)

# 10 ms frames, subsampled by 4.
SHIFT = 0.04


def make_detector(enabled=True) -> EndpointDetector:
    return EndpointDetector(EndpointConfig(), SHIFT, enabled=enabled)


def seconds(value: float) -> int:
    return round(value / SHIFT)


class TestRuleActivated:
    def test_needs_nonblank_when_required(self):
        rule = EndpointRule(True, 1.0, 0.0)
        assert rule_activated(rule, False, 5.0, 5.0) is False
        assert rule_activated(rule, True, 5.0, 5.0) is True

    def test_silence_only_rule(self):
        rule = EndpointRule(False, 1.0, 0.0)
        assert rule_activated(rule, False, 1.0, 1.0) is True

    def test_thresholds_are_inclusive(self):
        rule = EndpointRule(True, 1.2, 3.0)
        assert rule_activated(rule, True, 1.2, 3.0) is True
        assert rule_activated(rule, True, 1.1, 3.0) is False
        assert rule_activated(rule, True, 1.2, 2.9) is False


class TestEndpointDetector:
    def test_long_pause_ends_short_utterance(self):
        detector = make_detector()
        state = EndpointState()
        assert not detector.update(state, seconds(3.0), seconds(1.2), True)
        assert not detector.update(state, seconds(4.0), seconds(2.0), True)
        assert detector.update(state, seconds(4.5), seconds(2.4), True)
        assert state.status is EndpointStatus.ENDPOINT_REACHED
        assert state.rule == 1

    def test_short_pause_ends_long_utterance(self):
        detector = make_detector()
        state = EndpointState()
        assert not detector.update(state, seconds(6.0), seconds(1.0), True)
        assert detector.update(state, seconds(6.5), seconds(1.2), True)
        assert state.rule == 2

    def test_rules_are_checked_in_order(self):
        detector = make_detector()
        state = EndpointState()
        assert detector.update(state, seconds(30.0), seconds(2.4), True)
        assert state.rule == 1

    def test_utterance_length_cap(self):
        detector = make_detector()
        state = EndpointState()
        assert detector.update(state, seconds(20.0), 0, True)
        assert state.rule == 3

    def test_pure_silence_never_fires(self):
        detector = make_detector()
        state = EndpointState()
        for n in (seconds(5.0), seconds(30.0), seconds(120.0)):
            assert not detector.update(state, n, n, False)
        assert not detector.is_endpoint(state)

    def test_reached_is_sticky_until_reset(self):
        detector = make_detector()
        state = EndpointState()
        assert detector.update(state, seconds(4.0), seconds(3.0), True)
        # A new token arrives: still at endpoint.
        assert detector.update(state, seconds(4.1), 0, True)
        assert detector.is_endpoint(state)
        state.reset()
        assert not detector.is_endpoint(state)
        assert state.has_nonblank is False
        assert not detector.update(state, seconds(0.5), 0, True)

    def test_disabled_detector(self):
        detector = make_detector(enabled=False)
        state = EndpointState()
        assert not detector.update(state, seconds(60.0), seconds(60.0), True)
        assert not detector.is_endpoint(state)
        assert state.num_frames == seconds(60.0)

    @pytest.mark.parametrize("trailing", [0.0, 0.5, 1.1])
    def test_short_pause_does_not_fire(self, trailing):
        detector = make_detector()
        state = EndpointState()
        assert not detector.update(state, seconds(5.0), seconds(trailing), True)

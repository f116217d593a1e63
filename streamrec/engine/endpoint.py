from dataclasses import dataclass
from enum import Enum, auto
import logging

from streamrec.config import EndpointConfig, EndpointRule


class EndpointStatus(Enum):
    LISTENING = auto()
    ENDPOINT_REACHED = auto()


@dataclass
class EndpointState:
    status: EndpointStatus = EndpointStatus.LISTENING
    num_frames: int = 0
    trailing_silence_frames: int = 0
    has_nonblank: bool = False
    # Index of the rule (1-3) that fired, for diagnostics.
    rule: int | None = None

    @property
    def reached(self) -> bool:
        return self.status == EndpointStatus.ENDPOINT_REACHED

    def reset(self) -> None:
        self.status = EndpointStatus.LISTENING
        self.num_frames = 0
        self.trailing_silence_frames = 0
        self.has_nonblank = False
        self.rule = None


def rule_activated(
    rule: EndpointRule,
    has_nonblank: bool,
    trailing_silence: float,
    utterance_length: float,
) -> bool:
    return (
        (has_nonblank or not rule.must_contain_nonsilence)
        and trailing_silence >= rule.min_trailing_silence
        and utterance_length >= rule.min_utterance_length
    )


class EndpointDetector:
    """Declares end of utterance from trailing blank frames.

    Once reached the state is sticky until the stream is reset.
    """

    def __init__(
        self,
        config: EndpointConfig,
        frame_shift_seconds: float,
        enabled: bool = True,
        logger: logging.Logger | None = None,
    ):
        self.config = config
        self.frame_shift_seconds = frame_shift_seconds
        self.enabled = enabled
        self.logger = logger or logging.getLogger(__name__)

    def update(
        self,
        state: EndpointState,
        num_frames: int,
        trailing_silence_frames: int,
        has_nonblank: bool,
    ) -> bool:
        state.num_frames = num_frames
        state.trailing_silence_frames = trailing_silence_frames
        state.has_nonblank = has_nonblank
        if not self.enabled:
            return False
        if state.reached:
            return True

        utterance_length = num_frames * self.frame_shift_seconds
        trailing_silence = trailing_silence_frames * self.frame_shift_seconds
        for idx, rule in enumerate(self.config.rules, start=1):
            if rule_activated(rule, has_nonblank, trailing_silence, utterance_length):
                state.status = EndpointStatus.ENDPOINT_REACHED
                state.rule = idx
                self.logger.debug(
                    "Endpoint rule%d fired: utterance=%.2fs trailing_silence=%.2fs",
                    idx,
                    utterance_length,
                    trailing_silence,
                )
                return True
        return False

    def is_endpoint(self, state: EndpointState) -> bool:
        return self.enabled and state.reached
